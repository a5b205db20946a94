#!/usr/bin/env python3
"""Deploy ArgoCD from a directory of ordered manifests.

Applies the 11 ArgoCD manifests in a fixed order, converges the ArgoCD
Deployments through a bounded apply/restart/wait loop, validates pod
readiness and prints the generated admin credential.

Usage:
    cd /path/to/manifests && argocd-deploy
    argocd-deploy --dry-run   # Print config, check manifests and exit

Environment overrides:
    MANIFEST_DIR      — directory holding the manifests (default: .)
    ARGOCD_NAMESPACE  — namespace ArgoCD runs in       (default: argocd)
    KUBECONFIG        — kubeconfig path                (default: client lookup)
    ARGOCD_URL        — access URL printed on success
    STATUS_FILE       — JSON run status, empty disables
                        (default: /tmp/argocd-deploy-status.json)

Steps:
  0.  Preflight: every manifest present
  1.  Apply infrastructure (namespace → services), abort on failure
  2.  Apply deployments with restart/retry until pods settle
  3.  Apply remaining resources (network policies, repository secret)
  4.  Final convergence wait and deployment re-apply
  5.  Validate pods and print admin credentials
"""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from argocd_deploy.backoff import Clock, Delays
from argocd_deploy.common import ClusterError, StepRunner, StepStatus, log, setup_logging, utc_now
from argocd_deploy.pods import PodSummary, summarize

# ---------------------------------------------------------------------------
# Manifests and workloads
# ---------------------------------------------------------------------------
# Order is significant: namespace → CRDs → RBAC → config/secrets → services
# → deployments → network policies → repository secret.
MANIFEST_FILES = (
    "01-namespace.yaml",
    "02-crds.yaml",
    "03-serviceaccounts.yaml",
    "04-clusterroles.yaml",
    "05-clusterrolebindings.yaml",
    "06-configmaps.yaml",
    "07-secrets.yaml",
    "08-services.yaml",
    "09-deployments.yaml",
    "10-networkpolicies.yaml",
    "12-repository-secret.yaml",
)
INFRASTRUCTURE_MANIFESTS = MANIFEST_FILES[:8]
DEPLOYMENTS_MANIFEST = MANIFEST_FILES[8]
REMAINING_MANIFESTS = MANIFEST_FILES[9:]
REPOSITORY_SECRET_MANIFEST = "12-repository-secret.yaml"

ARGOCD_DEPLOYMENTS = (
    "argocd-dex-server",
    "argocd-repo-server",
    "argocd-application-controller",
    "argocd-applicationset-controller",
    "argocd-server",
)

ADMIN_PASSWORD_KEY = "password"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
class DeploymentError(Exception):
    """A failure that ends the deployment with exit status 1."""


class MissingManifestsError(DeploymentError):
    def __init__(self, missing: list[str]):
        self.missing = missing
        super().__init__(f"Missing required files: {', '.join(missing)}")


class ApplyError(DeploymentError):
    def __init__(self, manifest: str):
        self.manifest = manifest
        super().__init__(f"Failed to apply {manifest}")


class RolloutError(DeploymentError):
    """Pods did not settle within the allowed number of attempts."""


class ValidationError(DeploymentError):
    """Final pod validation found pods that are not ready."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
@dataclass
class Config:
    """Deployment configuration sourced from environment variables."""

    manifest_dir: str = field(
        default_factory=lambda: os.getenv("MANIFEST_DIR", ".")
    )
    namespace: str = field(
        default_factory=lambda: os.getenv("ARGOCD_NAMESPACE", "argocd")
    )
    kubeconfig: str = field(
        default_factory=lambda: os.getenv("KUBECONFIG", "")
    )
    access_url: str = field(
        default_factory=lambda: os.getenv(
            "ARGOCD_URL", "https://argocd.integration.oneacrefund.org"
        )
    )
    status_file: str = field(
        default_factory=lambda: os.getenv(
            "STATUS_FILE", "/tmp/argocd-deploy-status.json"
        )
    )
    admin_secret: str = "argocd-initial-admin-secret"
    admin_user: str = "admin"
    dry_run: bool = False

    def manifest(self, name: str) -> Path:
        return Path(self.manifest_dir) / name

    @property
    def status_path(self) -> Optional[Path]:
        return Path(self.status_file) if self.status_file else None

    def print_banner(self) -> None:
        log.info("🚀 ArgoCD Deployment")
        log.info("==================================")
        log.info("Manifests:   %s", Path(self.manifest_dir).resolve())
        log.info("Namespace:   %s", self.namespace)
        log.info("Kubeconfig:  %s", self.kubeconfig or "(default)")
        log.info("Triggered:   %s", utc_now())
        log.info("")


def missing_manifests(cfg: Config) -> list[str]:
    return [name for name in MANIFEST_FILES if not cfg.manifest(name).is_file()]


# ---------------------------------------------------------------------------
# Deployer
# ---------------------------------------------------------------------------
class Deployer:
    """Runs the deployment phases against a cluster.

    ``cluster`` needs ``apply``, ``get_pods``, ``get_deployment_status``,
    ``restart_deployment``, ``wait_for_pods_ready``, ``get_secret`` and
    ``show_pods`` (see ``argocd_deploy.cluster.KubeCluster``).
    """

    def __init__(
        self,
        cluster,
        cfg: Config,
        *,
        delays: Optional[Delays] = None,
        clock: Optional[Clock] = None,
    ):
        self.cluster = cluster
        self.cfg = cfg
        self.delays = delays or Delays()
        self.clock = clock or Clock()
        self.statuses: list[StepStatus] = []
        self.summary: Optional[PodSummary] = None

    def _step(self, name: str) -> StepRunner:
        return StepRunner(name, self.statuses, self.cfg.status_path)

    def _pause(self, seconds: float, reason: str) -> None:
        if seconds > 0:
            log.info("⏳ %s (%gs)...", reason, seconds)
        self.clock.sleep(seconds)

    # -----------------------------------------------------------------------
    # Step 0: Preflight
    # -----------------------------------------------------------------------
    def preflight(self) -> None:
        """Check every manifest exists; report all missing names at once."""
        missing = missing_manifests(self.cfg)
        if missing:
            log.error("❌ Missing required files:")
            for name in missing:
                log.error("   - %s", name)
            raise MissingManifestsError(missing)
        log.info("✓ All %d manifests present", len(MANIFEST_FILES))

    # -----------------------------------------------------------------------
    # Step 1: Infrastructure
    # -----------------------------------------------------------------------
    def _propagation_delay(self, name: str) -> tuple[float, str]:
        return {
            "06-configmaps.yaml": (self.delays.configmaps, "Waiting for ConfigMaps to propagate"),
            "07-secrets.yaml": (self.delays.secrets, "Waiting for Secrets to propagate"),
            "08-services.yaml": (self.delays.services, "Waiting for Services to be ready"),
        }.get(name, (0, ""))

    def apply_infrastructure(self) -> list[str]:
        """Apply manifests 1-8 in order, stopping at the first failure."""
        log.info("=== Step 1: Applying infrastructure ===")
        applied: list[str] = []
        for name in INFRASTRUCTURE_MANIFESTS:
            log.info("📦 Applying %s...", name)
            if not self.cluster.apply(self.cfg.manifest(name)):
                log.error("❌ Failed to apply %s", name)
                raise ApplyError(name)
            applied.append(name)

            seconds, reason = self._propagation_delay(name)
            if seconds:
                self._pause(seconds, reason)
        log.info("")
        return applied

    # -----------------------------------------------------------------------
    # Step 2: Deployments with retry
    # -----------------------------------------------------------------------
    def restart_unhealthy_deployments(self) -> list[str]:
        """Restart every ArgoCD Deployment whose ready count is off.

        Deployments that do not exist are skipped, and so are those whose
        status cannot be read. Returns the names restarted.
        """
        log.info("🔄 Checking for failed deployments in %s...", self.cfg.namespace)
        restarted: list[str] = []
        for name in ARGOCD_DEPLOYMENTS:
            try:
                status = self.cluster.get_deployment_status(name, self.cfg.namespace)
            except ClusterError as exc:
                log.warning("  ⚠ deployment/%s status unknown, skipping: %s", name, exc)
                continue
            if status is None:
                log.debug("  deployment/%s not found, skipping", name)
                continue
            if status.needs_restart:
                ready = "" if status.ready is None else status.ready
                log.info("🔄 Restarting %s (ready: %s/%s)", name, ready, status.desired)
                self.cluster.restart_deployment(name, self.cfg.namespace)
                restarted.append(name)

        if restarted:
            self._pause(self.delays.restart_settle, "Waiting for restarts to take effect")
        else:
            log.info("✅ All deployments appear healthy")
        return restarted

    def wait_for_pods(self, timeout: float) -> bool:
        """Poll until every pod is Running or Completed, or ``timeout`` passes."""
        ns = self.cfg.namespace
        log.info("⏳ Waiting for pods in namespace %s to be ready...", ns)
        deadline = self.clock.monotonic() + timeout

        while self.clock.monotonic() < deadline:
            try:
                summary = summarize(self.cluster.get_pods(ns))
            except ClusterError as exc:
                log.warning("   ⚠ Could not list pods: %s", exc)
            else:
                if summary.unsettled == 0:
                    log.info("✅ All pods are ready")
                    return True
                log.info("   Still waiting... (%d pods not ready)", summary.unsettled)
            self.clock.sleep(self.delays.poll_interval)

        log.warning("⚠️  Timeout waiting for pods to be ready")
        self.cluster.show_pods(ns)
        return False

    def deploy_with_retry(self) -> tuple[int, dict[int, list[str]]]:
        """Apply the Deployments until pods settle.

        Returns the successful attempt number and the Deployments
        restarted on each attempt. Raises RolloutError once
        ``max_attempts`` attempts have failed.
        """
        max_attempts = self.delays.max_attempts
        restarts: dict[int, list[str]] = {}

        for attempt in range(1, max_attempts + 1):
            log.info("")
            log.info("🚀 Deployment attempt %d/%d", attempt, max_attempts)
            log.info("======================================")

            log.info("📦 Applying %s...", DEPLOYMENTS_MANIFEST)
            if not self.cluster.apply(self.cfg.manifest(DEPLOYMENTS_MANIFEST)):
                log.warning("  ⚠ Apply of %s reported errors", DEPLOYMENTS_MANIFEST)
            self._pause(self.delays.initial_rollout, "Waiting for initial deployment")

            restarted = self.restart_unhealthy_deployments()
            restarts[attempt] = restarted
            if restarted:
                self._pause(self.delays.after_restart, "Waiting additional time after restarts")

            if self.wait_for_pods(self.delays.pods_ready_timeout):
                log.info("✅ Deployment successful on attempt %d", attempt)
                return attempt, restarts

            log.error("❌ Deployment attempt %d failed", attempt)
            if attempt == max_attempts:
                log.error("💥 All deployment attempts failed")
                log.info("📊 Final pod status:")
                self.cluster.show_pods(self.cfg.namespace)
                raise RolloutError(f"Pods not ready after {max_attempts} attempts")

            self._pause(self.delays.retry.delay(attempt), "Retrying")

        raise RolloutError("No deployment attempts were made")

    # -----------------------------------------------------------------------
    # Step 3: Remaining resources
    # -----------------------------------------------------------------------
    def apply_remaining(self) -> list[str]:
        """Apply network policies and the repository secret.

        Failures are reported and returned, not raised.
        """
        log.info("")
        log.info("📦 Applying remaining resources...")
        failed: list[str] = []
        for name in REMAINING_MANIFESTS:
            log.info("📦 Applying %s...", name)
            if not self.cluster.apply(self.cfg.manifest(name)):
                log.warning("  ⚠ Failed to apply %s, continuing", name)
                failed.append(name)

            # The repository secret can trigger deployment updates
            if name == REPOSITORY_SECRET_MANIFEST:
                self._pause(
                    self.delays.repository_secret,
                    "Waiting for repository secret changes to propagate",
                )
        return failed

    # -----------------------------------------------------------------------
    # Step 4: Final convergence
    # -----------------------------------------------------------------------
    def final_convergence(self) -> bool:
        """Block on pod readiness once more, then re-apply the Deployments."""
        ns = self.cfg.namespace
        log.info("")
        log.info("⏳ Final check - waiting for all pods to be ready...")
        ready = self.cluster.wait_for_pods_ready(ns, self.delays.final_wait_timeout)
        if not ready:
            log.warning("⚠️  Some pods are still starting, checking status...")
            self.cluster.show_pods(ns)
            self._pause(self.delays.final_grace, "Giving pods additional time to start")

        log.info("")
        log.info("🔄 Final step: Reapplying deployments to ensure consistency...")
        if not self.cluster.apply(self.cfg.manifest(DEPLOYMENTS_MANIFEST)):
            log.warning("  ⚠ Apply of %s reported errors", DEPLOYMENTS_MANIFEST)
        self._pause(self.delays.final_reapply, "Waiting for final deployment updates")
        return ready

    # -----------------------------------------------------------------------
    # Step 5: Validation
    # -----------------------------------------------------------------------
    def _pod_summary(self) -> PodSummary:
        self.summary = summarize(self.cluster.get_pods(self.cfg.namespace))
        return self.summary

    def report_credentials(self) -> Optional[str]:
        """Print the generated admin password, or warn if not created yet."""
        log.info("")
        log.info("🔑 Getting admin credentials...")
        password = self.cluster.get_secret(
            self.cfg.admin_secret, self.cfg.namespace, ADMIN_PASSWORD_KEY
        )
        if password is None:
            log.warning("⚠️  Admin secret not found - may still be initializing")
            return None

        log.info("")
        log.info("🎉 ArgoCD is ready!")
        log.info("🌐 Access URL: %s", self.cfg.access_url)
        log.info("👤 Username: %s", self.cfg.admin_user)
        log.info("🔐 Password: %s", password)
        return password

    def validate(self) -> bool:
        """Classify pods and report credentials when all are ready."""
        ns = self.cfg.namespace
        log.info("")
        log.info("🔍 Validating ArgoCD deployment...")
        log.info("=================================")
        log.info("📊 Pod Status:")
        self.cluster.show_pods(ns)

        summary = self._pod_summary()
        log.info("")
        log.info("📈 Summary: %d/%d pods ready", summary.ready, summary.total)
        if summary.starting > 0:
            log.info("⏳ %d pods still starting...", summary.starting)

        if summary.all_ready:
            log.info("✅ All pods are healthy!")
            self.report_credentials()
            return True

        if summary.only_starting:
            log.info("⏳ Pods are still starting but no failures detected")
            self._pause(self.delays.validation_grace, "Waiting for startup to complete")

            recheck = self._pod_summary()
            if recheck.all_ready:
                log.info("✅ All pods are now healthy!")
                self.report_credentials()
                return True

            log.warning("⚠️  Some pods are still not ready after extended wait")
            self.cluster.show_pods(ns)
            return False

        log.error("❌ Some pods have failed")
        self.cluster.show_pods(ns)
        return False

    # -----------------------------------------------------------------------
    # All steps
    # -----------------------------------------------------------------------
    def run(self) -> None:
        """Run every phase in order. Raises DeploymentError on failure."""
        with self._step("preflight"):
            self.preflight()

        with self._step("apply-infrastructure") as step:
            step.details["applied"] = self.apply_infrastructure()

        with self._step("deploy-with-retry") as step:
            attempt, restarts = self.deploy_with_retry()
            step.details["attempt"] = attempt
            step.details["restarted"] = {str(k): v for k, v in restarts.items()}

        with self._step("apply-remaining") as step:
            failed = self.apply_remaining()
            step.details["failed"] = failed

        with self._step("final-convergence") as step:
            step.details["pods_ready"] = self.final_convergence()

        with self._step("validate") as step:
            ok = self.validate()
            step.details["pods"] = {
                "total": self.summary.total,
                "ready": self.summary.ready,
                "starting": self.summary.starting,
            }
            if failed:
                log.warning("⚠️  Manifests that failed to apply: %s", ", ".join(failed))
            if not ok:
                raise ValidationError("Some pods are not ready")


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------
def dry_run(cfg: Config) -> int:
    log.info("=== DRY RUN — no changes will be made ===")
    log.info("  manifest_dir: %s", cfg.manifest_dir)
    log.info("  namespace:    %s", cfg.namespace)
    log.info("  kubeconfig:   %s", cfg.kubeconfig or "(default)")
    log.info("  access_url:   %s", cfg.access_url)
    log.info("  status_file:  %s", cfg.status_file or "(disabled)")
    log.info("  manifests:")
    for i, name in enumerate(MANIFEST_FILES, 1):
        log.info("    %2d. %s (exists: %s)", i, name, cfg.manifest(name).is_file())
    return 1 if missing_manifests(cfg) else 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Deploy ArgoCD from ordered manifests")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print configuration and check manifests without touching the cluster",
    )
    args = parser.parse_args(argv)

    setup_logging()
    cfg = Config(dry_run=args.dry_run)
    cfg.print_banner()

    if cfg.dry_run:
        return dry_run(cfg)

    try:
        # Imported here so --dry-run works without the kubernetes client installed
        from argocd_deploy.cluster import KubeCluster

        deployer = Deployer(KubeCluster(cfg.kubeconfig), cfg)
        deployer.run()
    except KeyboardInterrupt:
        log.info("\n✗ Deployment interrupted")
        return 130
    except DeploymentError as exc:
        log.info("")
        log.error("✗ %s", exc)
        log.error("⚠️  Deployment completed with issues - manual intervention may be required")
        return 1
    except Exception as exc:
        log.error("✗ Deployment failed: %s", exc, exc_info=True)
        return 1

    log.info("")
    log.info("🎊 Deployment completed successfully!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
