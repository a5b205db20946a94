"""Pod readiness snapshots built from the Kubernetes API.

``pod_status`` derives the same STATUS string ``kubectl get pods`` prints
(``Running``, ``Completed``, ``ContainerCreating``, ``Init:0/1``,
``CrashLoopBackOff`` ...) from the structured pod object, so readiness is
classified on API fields rather than on scraped CLI text.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

SETTLED_STATUSES = ("Running", "Completed")
STARTING_STATUSES = ("ContainerCreating",)
INIT_PREFIX = "Init:"


@dataclass(frozen=True)
class PodSnapshot:
    """One pod as seen by a single poll."""

    name: str
    status: str
    ready_containers: int = 0
    total_containers: int = 0
    restarts: int = 0

    @classmethod
    def from_pod(cls, pod) -> "PodSnapshot":
        container_statuses = (pod.status.container_statuses if pod.status else None) or []
        return cls(
            name=pod.metadata.name,
            status=pod_status(pod),
            ready_containers=sum(1 for c in container_statuses if c.ready),
            total_containers=len(pod.spec.containers) if pod.spec else len(container_statuses),
            restarts=sum(c.restart_count or 0 for c in container_statuses),
        )

    @property
    def settled(self) -> bool:
        """Running or Completed: the poll loop stops waiting on this pod."""
        return self.status in SETTLED_STATUSES

    @property
    def ready(self) -> bool:
        """Running with every container ready (``N/N Running``)."""
        return (
            self.status == "Running"
            and self.total_containers > 0
            and self.ready_containers == self.total_containers
        )

    @property
    def starting(self) -> bool:
        return self.status in STARTING_STATUSES or self.status.startswith(INIT_PREFIX)


@dataclass(frozen=True)
class PodSummary:
    total: int
    ready: int
    starting: int
    unsettled: int

    @property
    def all_ready(self) -> bool:
        return self.ready == self.total

    @property
    def only_starting(self) -> bool:
        """Some pods still starting and none failed."""
        return self.starting > 0 and self.ready + self.starting == self.total


def summarize(pods: Iterable[PodSnapshot]) -> PodSummary:
    pods = list(pods)
    return PodSummary(
        total=len(pods),
        ready=sum(1 for p in pods if p.ready),
        starting=sum(1 for p in pods if p.starting),
        unsettled=sum(1 for p in pods if not p.settled),
    )


def _terminated_reason(terminated) -> str:
    if terminated.reason:
        return terminated.reason
    if terminated.signal:
        return f"Signal:{terminated.signal}"
    return f"ExitCode:{terminated.exit_code}"


def pod_status(pod) -> str:
    """Return the STATUS column ``kubectl get pods`` would show for ``pod``."""
    status = pod.status
    reason = (status.reason or status.phase or "Unknown") if status else "Unknown"

    init_specs = (pod.spec.init_containers if pod.spec else None) or []
    init_statuses = (status.init_container_statuses if status else None) or []
    initializing = False
    for i, container in enumerate(init_statuses):
        state = container.state
        terminated = state.terminated if state else None
        waiting = state.waiting if state else None
        if terminated is not None and terminated.exit_code == 0:
            continue
        if terminated is not None:
            reason = INIT_PREFIX + _terminated_reason(terminated)
        elif waiting is not None and waiting.reason and waiting.reason != "PodInitializing":
            reason = INIT_PREFIX + waiting.reason
        else:
            reason = f"{INIT_PREFIX}{i}/{len(init_specs) or len(init_statuses)}"
        initializing = True
        break

    if not initializing:
        has_running = False
        for container in reversed((status.container_statuses if status else None) or []):
            state = container.state
            waiting = state.waiting if state else None
            terminated = state.terminated if state else None
            if waiting is not None and waiting.reason:
                reason = waiting.reason
            elif terminated is not None:
                reason = _terminated_reason(terminated)
            elif container.ready and state is not None and state.running is not None:
                has_running = True

        # A finished sidecar next to a running container still reads Running
        if reason == "Completed" and has_running:
            reason = "Running"

    if pod.metadata.deletion_timestamp is not None:
        reason = "Terminating"

    return reason
