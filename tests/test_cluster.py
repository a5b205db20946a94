from __future__ import annotations

import base64
from pathlib import Path
from types import SimpleNamespace
from unittest import mock

import pytest
from kubernetes.client.exceptions import ApiException

import argocd_deploy.cluster as cluster_module
from argocd_deploy.cluster import RESTARTED_AT_ANNOTATION, DeploymentStatus, KubeCluster
from argocd_deploy.common import ClusterError, CmdResult


@pytest.fixture
def core_v1():
    return mock.MagicMock()


@pytest.fixture
def apps_v1():
    return mock.MagicMock()


@pytest.fixture
def kube(core_v1, apps_v1):
    return KubeCluster("/etc/kubernetes/admin.conf", core_v1=core_v1, apps_v1=apps_v1)


@pytest.fixture
def commands(monkeypatch):
    """Record kubectl invocations and return exit code 0 unless overridden."""
    calls = []
    state = {"returncode": 0}

    def fake_run_cmd(cmd, **kwargs):
        calls.append((cmd, kwargs))
        return CmdResult(state["returncode"], "", "", " ".join(cmd), 0.01)

    monkeypatch.setattr(cluster_module, "run_cmd", fake_run_cmd)
    return SimpleNamespace(calls=calls, state=state)


def deployment(replicas, ready_replicas):
    return SimpleNamespace(
        spec=SimpleNamespace(replicas=replicas),
        status=SimpleNamespace(ready_replicas=ready_replicas),
    )


# ---------------------------------------------------------------------------
# Deployments
# ---------------------------------------------------------------------------
@pytest.mark.parametrize("replicas, ready, needs_restart", [
    (1, 1, False),
    (2, 1, True),
    (1, None, True),
    (3, 3, False),
])
def test_deployment_status(kube, apps_v1, replicas, ready, needs_restart):
    apps_v1.read_namespaced_deployment.return_value = deployment(replicas, ready)

    status = kube.get_deployment_status("argocd-server", "argocd")

    assert status == DeploymentStatus("argocd-server", replicas, ready)
    assert status.needs_restart is needs_restart
    apps_v1.read_namespaced_deployment.assert_called_once_with(name="argocd-server", namespace="argocd")


def test_missing_deployment_is_none(kube, apps_v1):
    apps_v1.read_namespaced_deployment.side_effect = ApiException(status=404, reason="Not Found")

    assert kube.get_deployment_status("argocd-dex-server", "argocd") is None


def test_other_api_errors_raise_cluster_error(kube, apps_v1):
    apps_v1.read_namespaced_deployment.side_effect = ApiException(status=403, reason="Forbidden")

    with pytest.raises(ClusterError, match="403"):
        kube.get_deployment_status("argocd-dex-server", "argocd")


def test_restart_patches_restarted_at_annotation(kube, apps_v1):
    kube.restart_deployment("argocd-repo-server", "argocd")

    kwargs = apps_v1.patch_namespaced_deployment.call_args.kwargs
    assert kwargs["name"] == "argocd-repo-server"
    assert kwargs["namespace"] == "argocd"
    annotations = kwargs["body"]["spec"]["template"]["metadata"]["annotations"]
    assert RESTARTED_AT_ANNOTATION in annotations


# ---------------------------------------------------------------------------
# Secrets and pods
# ---------------------------------------------------------------------------
def test_get_secret_decodes_value(kube, core_v1):
    encoded = base64.b64encode(b"hunter2-generated").decode()
    core_v1.read_namespaced_secret.return_value = SimpleNamespace(data={"password": encoded})

    assert kube.get_secret("argocd-initial-admin-secret", "argocd", "password") == "hunter2-generated"


def test_get_secret_missing_secret_or_key(kube, core_v1):
    core_v1.read_namespaced_secret.return_value = SimpleNamespace(data={"other": "eA=="})
    assert kube.get_secret("argocd-initial-admin-secret", "argocd", "password") is None

    core_v1.read_namespaced_secret.side_effect = ApiException(status=404, reason="Not Found")
    assert kube.get_secret("argocd-initial-admin-secret", "argocd", "password") is None


def test_get_pods_builds_snapshots(kube, core_v1):
    pod = SimpleNamespace(
        metadata=SimpleNamespace(name="argocd-redis-0", deletion_timestamp=None),
        spec=SimpleNamespace(containers=[object()], init_containers=None),
        status=SimpleNamespace(
            phase="Running",
            reason=None,
            init_container_statuses=None,
            container_statuses=[SimpleNamespace(
                ready=True,
                restart_count=0,
                state=SimpleNamespace(waiting=None, terminated=None, running=object()),
            )],
        ),
    )
    core_v1.list_namespaced_pod.return_value = SimpleNamespace(items=[pod])

    [snap] = kube.get_pods("argocd")

    assert snap.name == "argocd-redis-0"
    assert snap.ready
    core_v1.list_namespaced_pod.assert_called_once_with(namespace="argocd")


def test_pod_list_error_raises_cluster_error(kube, core_v1):
    core_v1.list_namespaced_pod.side_effect = ApiException(status=503, reason="Service Unavailable")

    with pytest.raises(ClusterError, match="503"):
        kube.get_pods("argocd")


# ---------------------------------------------------------------------------
# kubectl
# ---------------------------------------------------------------------------
def test_apply_shells_out_with_kubeconfig(kube, commands):
    assert kube.apply(Path("manifests/01-namespace.yaml"))

    cmd, kwargs = commands.calls[0]
    assert cmd == ["kubectl", "apply", "-f", "manifests/01-namespace.yaml"]
    assert kwargs["env"] == {"KUBECONFIG": "/etc/kubernetes/admin.conf"}


def test_apply_failure_returns_false(kube, commands):
    commands.state["returncode"] = 1

    assert not kube.apply(Path("02-crds.yaml"))


def test_wait_for_pods_ready_uses_condition_wait(kube, commands):
    assert kube.wait_for_pods_ready("argocd", 180)

    cmd, _ = commands.calls[0]
    assert cmd == [
        "kubectl", "wait", "--for=condition=ready", "pod", "--all",
        "-n", "argocd", "--timeout=180s",
    ]


def test_kubeconfig_loaded_lazily(monkeypatch):
    loaded = []
    monkeypatch.setattr(cluster_module, "load_kube_config", lambda path: loaded.append(path))
    monkeypatch.setattr(cluster_module.k8s_client, "CoreV1Api", mock.MagicMock)
    monkeypatch.setattr(cluster_module.k8s_client, "AppsV1Api", mock.MagicMock)

    kube = KubeCluster("/tmp/kubeconfig")
    assert loaded == []

    kube.get_pods("argocd")
    assert loaded == ["/tmp/kubeconfig"]
