"""Cron types."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from runboard.command.types import command_id


@dataclass
class ScheduleOptions:
    """Options applied to every execution a schedule triggers."""

    timeout: int | None = None  # ms


@dataclass
class ScheduleConfig:
    """A user-defined recurring command."""

    id: str
    name: str
    command: str
    cron_expression: str
    enabled: bool = True
    options: ScheduleOptions = field(default_factory=ScheduleOptions)
    last_run: int | None = None
    next_run: int | None = None
    created_at: int = 0
    updated_at: int = 0

    @property
    def command_id(self) -> str:
        return command_id(self.command)

    def to_dict(self) -> dict[str, Any]:
        options: dict[str, Any] = {}
        if self.options.timeout is not None:
            options["timeout"] = self.options.timeout
        return {
            "id": self.id,
            "name": self.name,
            "commandId": self.command_id,
            "command": self.command,
            "cronExpression": self.cron_expression,
            "enabled": self.enabled,
            "lastRun": self.last_run,
            "nextRun": self.next_run,
            "options": options,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ScheduleConfig":
        """Build from the persisted camelCase form. Raises on missing keys."""
        options = data.get("options") or {}
        if not isinstance(options, dict):
            raise ValueError("options must be an object")
        timeout = options.get("timeout")
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            command=str(data["command"]),
            cron_expression=str(data["cronExpression"]),
            enabled=bool(data.get("enabled", False)),
            options=ScheduleOptions(timeout=int(timeout) if timeout is not None else None),
            last_run=_optional_int(data.get("lastRun")),
            next_run=_optional_int(data.get("nextRun")),
            created_at=int(data.get("createdAt") or 0),
            updated_at=int(data.get("updatedAt") or 0),
        )


def _optional_int(value: Any) -> int | None:
    if value is None:
        return None
    return int(value)


class ScheduleEventKind(str, Enum):
    ADDED = "added"
    UPDATED = "updated"
    REMOVED = "removed"


@dataclass
class ScheduleEvent:
    """Notification about a schedule change."""

    kind: ScheduleEventKind
    schedule: ScheduleConfig
