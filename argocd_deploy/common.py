"""
Common utilities for the ArgoCD deployment driver.

Provides the module logger, subprocess execution with timing, and the
step runner that records phase status to a JSON file.

Usage:
    from argocd_deploy.common import StepRunner, run_cmd, log
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
import sys
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union


log = logging.getLogger("argocd-deploy")


def setup_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        stream=sys.stdout,
    )


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class ClusterError(Exception):
    """The cluster API could not answer a request (transient or not)."""


# =============================================================================
# Command Execution
# =============================================================================

@dataclass
class CmdResult:
    """Result of a subprocess execution."""
    returncode: int
    stdout: str
    stderr: str
    command: str
    duration_seconds: float

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def run_cmd(
    cmd: Union[list[str], str],
    *,
    timeout: Optional[int] = 300,
    env: Optional[dict] = None,
    capture: bool = True,
) -> CmdResult:
    """
    Execute a command with logging and timing.

    Args:
        cmd: Command as list of args.
        timeout: Seconds before killing the process.
        env: Additional environment variables (merged with os.environ).
        capture: Capture stdout/stderr (False to stream live).

    Returns:
        CmdResult with exit code, output, and timing.

    A non-zero exit is returned, not raised; callers decide what a
    failure means.
    """
    cmd_str = cmd if isinstance(cmd, str) else " ".join(cmd)
    log.debug("  $ %s", cmd_str)

    merged_env = {**os.environ, **(env or {})}
    start = time.monotonic()

    try:
        result = subprocess.run(
            cmd,
            capture_output=capture,
            text=True,
            timeout=timeout,
            env=merged_env,
        )
    except subprocess.TimeoutExpired:
        log.error("  ✗ Command timed out after %ss: %s", timeout, cmd_str)
        raise

    cmd_result = CmdResult(
        returncode=result.returncode,
        stdout=result.stdout if capture else "",
        stderr=result.stderr if capture else "",
        command=cmd_str,
        duration_seconds=round(time.monotonic() - start, 2),
    )

    if result.returncode != 0:
        log.debug(
            "  command failed (exit %d, %.2fs): %s",
            result.returncode, cmd_result.duration_seconds, cmd_str,
        )
    else:
        log.debug("  command succeeded (%.2fs)", cmd_result.duration_seconds)

    return cmd_result


# =============================================================================
# Step Status Reporting
# =============================================================================

@dataclass
class StepStatus:
    """Status of a single deployment phase."""
    step_name: str
    status: str  # "running", "success", "failed"
    started_at: str = ""
    completed_at: str = ""
    duration_seconds: float = 0.0
    error: str = ""
    details: dict = field(default_factory=dict)


def write_status(statuses: list[StepStatus], status_file: Optional[Path]) -> None:
    """Write step statuses to the status file (JSON). No-op without a path."""
    if status_file is None:
        return
    data = {
        "updated_at": datetime.now(timezone.utc).isoformat(),
        "steps": [asdict(s) for s in statuses],
    }
    try:
        status_file.write_text(json.dumps(data, indent=2))
    except OSError as exc:
        log.warning("  ⚠ Could not write status file %s: %s", status_file, exc)


# =============================================================================
# Step Runner
# =============================================================================

class StepRunner:
    """
    Context manager for running a deployment phase with timing and status reporting.

    Usage:
        with StepRunner("apply-infrastructure", statuses, status_file) as step:
            # ... phase logic ...
            step.details["applied"] = ["01-namespace.yaml"]

        # On success: step.status.status = "success"
        # On exception: step.status.status = "failed", error = str(exception)

    The shared ``statuses`` list is appended to on entry and the status
    file rewritten on exit, so the file always reflects every phase run
    so far.
    """

    def __init__(
        self,
        step_name: str,
        statuses: Optional[list[StepStatus]] = None,
        status_file: Optional[Path] = None,
    ):
        self.step_name = step_name
        self.statuses = statuses if statuses is not None else []
        self.status_file = status_file
        self._status = StepStatus(step_name=step_name, status="running")
        self._start_time = 0.0
        self.details: dict = {}

    def __enter__(self):
        self.statuses.append(self._status)
        self._status.started_at = datetime.now(timezone.utc).isoformat()
        self._start_time = time.monotonic()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = time.monotonic() - self._start_time
        self._status.duration_seconds = round(duration, 2)
        self._status.completed_at = datetime.now(timezone.utc).isoformat()
        self._status.details = self.details

        if exc_type is not None:
            self._status.status = "failed"
            self._status.error = str(exc_val)
            log.debug("Step '%s' failed in %.1fs: %s", self.step_name, duration, exc_val)
        else:
            self._status.status = "success"
            log.debug("Step '%s' completed in %.1fs", self.step_name, duration)

        write_status(self.statuses, self.status_file)
        return False  # Propagate exception

    @property
    def status(self) -> StepStatus:
        return self._status
