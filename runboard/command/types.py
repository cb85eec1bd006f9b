"""Command execution types."""

from __future__ import annotations

import hashlib
import random
from dataclasses import dataclass
from enum import IntEnum
from typing import Any


class ExitCode(IntEnum):
    """Semantic exit codes. Positive values are native process codes."""

    SUCCESS = 0
    ABNORMAL = -2
    TIMEOUT = -3
    MANUAL_STOP = -4
    DUPLICATE = -5


_STATUS_TEXT = {
    ExitCode.SUCCESS: "Success",
    ExitCode.ABNORMAL: "Terminated abnormally",
    ExitCode.TIMEOUT: "Timeout terminated",
    ExitCode.MANUAL_STOP: "Manually stopped",
    ExitCode.DUPLICATE: "Duplicate execution prevented",
}


def command_id(command: str) -> str:
    """Stable identity for a command text, used as the duplicate key."""
    digest = hashlib.md5(command.encode("utf-8")).hexdigest()
    return f"cmd-{digest[:8]}"


def make_run_id(cmd_id: str, timestamp_ms: int) -> str:
    # Random suffix keeps same-millisecond runs apart.
    suffix = f"{random.randint(0, 9999):04d}"
    return f"{cmd_id}_{timestamp_ms}_{suffix}"


def status_text(is_running: bool, exit_code: int | None) -> str:
    if is_running:
        return "Running"
    if exit_code is not None:
        try:
            return _STATUS_TEXT[ExitCode(exit_code)]
        except (ValueError, KeyError):
            pass
    shown = exit_code if exit_code is not None else "unknown"
    return f"Failed (exit code: {shown})"


@dataclass
class ExecutionOptions:
    """Per-invocation options."""

    timeout: int | None = None  # ms
    schedule_id: str | None = None


@dataclass
class CommandResult:
    """One execution attempt of a command."""

    id: str
    run_id: str
    command: str
    output: str = ""
    timestamp: int = 0
    is_running: bool = False
    exit_code: int | None = None
    schedule_id: str | None = None
    execution_time: int | None = None  # ms

    @property
    def status_text(self) -> str:
        return status_text(self.is_running, self.exit_code)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "runId": self.run_id,
            "command": self.command,
            "output": self.output,
            "timestamp": self.timestamp,
            "isRunning": self.is_running,
            "exitCode": self.exit_code,
            "scheduleId": self.schedule_id,
            "executionTime": self.execution_time,
        }
