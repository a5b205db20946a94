from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Union

import pytest

from argocd_deploy.cluster import DeploymentStatus
from argocd_deploy.deploy import ARGOCD_DEPLOYMENTS, MANIFEST_FILES, Config
from argocd_deploy.pods import PodSnapshot


RUNNING = PodSnapshot("argocd-server-6d5f", "Running", 1, 1)
RUNNING_2 = PodSnapshot("argocd-repo-server-7c9b", "Running", 2, 2)
PENDING = PodSnapshot("argocd-dex-server-5b8c", "Pending", 0, 1)
CREATING = PodSnapshot("argocd-dex-server-5b8c", "ContainerCreating", 0, 1)
INIT = PodSnapshot("argocd-repo-server-7c9b", "Init:0/1", 0, 2)
CRASHING = PodSnapshot("argocd-application-controller-0", "CrashLoopBackOff", 0, 1, restarts=4)


class FakeClock:
    """Records sleeps and advances a virtual monotonic clock."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def monotonic(self) -> float:
        return self.now


class FakeCluster:
    """In-memory stand-in for KubeCluster.

    ``pod_polls`` is a list of pod lists; each ``get_pods`` call consumes
    one, and the last is returned for every call after that. An
    exception placed in ``pod_polls`` or ``deployments`` is raised instead.
    """

    def __init__(
        self,
        *,
        pod_polls: Optional[list[Union[list[PodSnapshot], Exception]]] = None,
        deployments: Optional[dict[str, Union[DeploymentStatus, Exception, None]]] = None,
        fail_apply: tuple[str, ...] = (),
        wait_ready: bool = True,
        password: Optional[str] = "s3cr3t-admin",
    ):
        self.pod_polls = list(pod_polls) if pod_polls else [[RUNNING, RUNNING_2]]
        self.deployments = (
            deployments
            if deployments is not None
            else {name: DeploymentStatus(name, 1, 1) for name in ARGOCD_DEPLOYMENTS}
        )
        self.fail_apply = fail_apply
        self.wait_ready = wait_ready
        self.password = password
        self.calls: list[tuple[str, str]] = []

    @property
    def applied(self) -> list[str]:
        return [arg for op, arg in self.calls if op == "apply"]

    @property
    def restarted(self) -> list[str]:
        return [arg for op, arg in self.calls if op == "restart"]

    def count(self, op: str) -> int:
        return sum(1 for name, _ in self.calls if name == op)

    def apply(self, manifest: Path) -> bool:
        self.calls.append(("apply", manifest.name))
        return manifest.name not in self.fail_apply

    def get_pods(self, namespace: str) -> list[PodSnapshot]:
        self.calls.append(("get_pods", namespace))
        pods = self.pod_polls.pop(0) if len(self.pod_polls) > 1 else self.pod_polls[0]
        if isinstance(pods, Exception):
            raise pods
        return pods

    def get_deployment_status(self, name: str, namespace: str) -> Optional[DeploymentStatus]:
        self.calls.append(("get_deployment", name))
        status = self.deployments.get(name)
        if isinstance(status, Exception):
            raise status
        return status

    def restart_deployment(self, name: str, namespace: str) -> None:
        self.calls.append(("restart", name))
        status = self.deployments.get(name)
        if status is not None:
            self.deployments[name] = DeploymentStatus(name, status.desired, status.desired)

    def wait_for_pods_ready(self, namespace: str, timeout: int) -> bool:
        self.calls.append(("wait", str(timeout)))
        return self.wait_ready

    def get_secret(self, name: str, namespace: str, key: str) -> Optional[str]:
        self.calls.append(("get_secret", f"{name}/{key}"))
        return self.password

    def show_pods(self, namespace: str) -> None:
        self.calls.append(("show_pods", namespace))


@pytest.fixture
def manifest_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "manifests"
    directory.mkdir()
    for name in MANIFEST_FILES:
        (directory / name).write_text("apiVersion: v1\nkind: List\nitems: []\n")
    return directory


@pytest.fixture
def cfg(manifest_dir: Path, tmp_path: Path) -> Config:
    return Config(
        manifest_dir=str(manifest_dir),
        namespace="argocd",
        kubeconfig="",
        access_url="https://argocd.example.test",
        status_file=str(tmp_path / "status.json"),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(autouse=True)
def _capture_info(caplog):
    caplog.set_level(logging.INFO, logger="argocd-deploy")
