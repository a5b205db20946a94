"""Cluster access for the deployment driver.

Reads and writes go through the official ``kubernetes`` client. The two
operations it has no equivalent for, client-side ``apply`` of a manifest
file and the blocking ``wait --for=condition=ready``, shell out to
``kubectl`` with the same kubeconfig.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.client.exceptions import ApiException

from argocd_deploy.common import ClusterError, log, run_cmd, utc_now
from argocd_deploy.pods import PodSnapshot

RESTARTED_AT_ANNOTATION = "kubectl.kubernetes.io/restartedAt"


@dataclass(frozen=True)
class DeploymentStatus:
    """Desired vs ready replica counts of one Deployment.

    ``ready`` is None when the API reports no ``readyReplicas`` at all,
    which happens while no replica has become ready yet.
    """

    name: str
    desired: int
    ready: Optional[int]

    @property
    def needs_restart(self) -> bool:
        return self.ready is None or self.ready != self.desired


def load_kube_config(kubeconfig: str = "") -> None:
    """Load kubeconfig from ``kubeconfig`` or the default lookup, else in-cluster."""
    if kubeconfig:
        k8s_config.load_kube_config(config_file=kubeconfig)
        return
    try:
        k8s_config.load_kube_config()
    except k8s_config.ConfigException:
        log.info("  → No kubeconfig found, using in-cluster configuration")
        k8s_config.load_incluster_config()


class KubeCluster:
    """The cluster operations the deployment driver needs, nothing more.

    The kubeconfig is loaded on first API use, so a run that fails
    preflight never needs cluster credentials.
    """

    def __init__(
        self,
        kubeconfig: str = "",
        *,
        core_v1: Optional[k8s_client.CoreV1Api] = None,
        apps_v1: Optional[k8s_client.AppsV1Api] = None,
    ):
        self.kubeconfig = kubeconfig
        self._core_v1 = core_v1
        self._apps_v1 = apps_v1

    def _connect(self) -> None:
        load_kube_config(self.kubeconfig)
        self._core_v1 = self._core_v1 or k8s_client.CoreV1Api()
        self._apps_v1 = self._apps_v1 or k8s_client.AppsV1Api()

    @property
    def core_v1(self) -> k8s_client.CoreV1Api:
        if self._core_v1 is None:
            self._connect()
        return self._core_v1

    @property
    def apps_v1(self) -> k8s_client.AppsV1Api:
        if self._apps_v1 is None:
            self._connect()
        return self._apps_v1

    @property
    def _kubectl_env(self) -> dict[str, str]:
        return {"KUBECONFIG": self.kubeconfig} if self.kubeconfig else {}

    # -- kubectl ------------------------------------------------------------
    def apply(self, manifest: Path) -> bool:
        """``kubectl apply -f manifest``; output streams to stdout."""
        result = run_cmd(
            ["kubectl", "apply", "-f", str(manifest)],
            capture=False, env=self._kubectl_env,
        )
        return result.ok

    def wait_for_pods_ready(self, namespace: str, timeout: int) -> bool:
        result = run_cmd(
            ["kubectl", "wait", "--for=condition=ready", "pod", "--all",
             "-n", namespace, f"--timeout={timeout}s"],
            capture=False, timeout=timeout + 30, env=self._kubectl_env,
        )
        return result.ok

    def show_pods(self, namespace: str) -> None:
        run_cmd(
            ["kubectl", "get", "pods", "-n", namespace, "-o", "wide"],
            capture=False, env=self._kubectl_env,
        )

    # -- API ----------------------------------------------------------------
    def get_pods(self, namespace: str) -> list[PodSnapshot]:
        try:
            pods = self.core_v1.list_namespaced_pod(namespace=namespace)
        except ApiException as exc:
            raise ClusterError(f"listing pods in {namespace}: {exc.status} {exc.reason}") from exc
        return [PodSnapshot.from_pod(pod) for pod in pods.items]

    def get_deployment_status(self, name: str, namespace: str) -> Optional[DeploymentStatus]:
        """Replica counts of a Deployment, or None if it does not exist."""
        try:
            dep = self.apps_v1.read_namespaced_deployment(name=name, namespace=namespace)
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise ClusterError(f"reading deployment/{name}: {exc.status} {exc.reason}") from exc
        desired = dep.spec.replicas if dep.spec and dep.spec.replicas is not None else 1
        ready = dep.status.ready_replicas if dep.status else None
        return DeploymentStatus(name=name, desired=desired, ready=ready)

    def restart_deployment(self, name: str, namespace: str) -> None:
        """Trigger a rolling restart the way ``kubectl rollout restart`` does."""
        body = {
            "spec": {
                "template": {
                    "metadata": {
                        "annotations": {RESTARTED_AT_ANNOTATION: utc_now()},
                    }
                }
            }
        }
        self.apps_v1.patch_namespaced_deployment(name=name, namespace=namespace, body=body)

    def get_secret(self, name: str, namespace: str, key: str) -> Optional[str]:
        """Decoded value of ``data[key]`` in a Secret, or None if absent."""
        try:
            secret = self.core_v1.read_namespaced_secret(name=name, namespace=namespace)
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise
        encoded = (secret.data or {}).get(key)
        if not encoded:
            return None
        try:
            return base64.b64decode(encoded).decode()
        except (binascii.Error, UnicodeDecodeError) as exc:
            log.warning("  ⚠ %s/%s key %s is not valid base64 text: %s", namespace, name, key, exc)
            return None
