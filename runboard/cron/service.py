"""Cron service for scheduled shell commands.

The schedule list lives in one JSON file that several runboard processes
may edit (a long-running ``serve`` plus one-shot CLI commands). Every
read-modify-write holds a lock file next to the store and starts by picking
up whatever another process wrote since the last read.
"""

from __future__ import annotations

import asyncio
import copy
import json
import os
import time
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterator

import psutil
from croniter import croniter
from loguru import logger

from runboard.bus.events import EventBus
from runboard.command.manager import CommandManager
from runboard.command.types import CommandResult, ExecutionOptions
from runboard.cron.types import (
    ScheduleConfig,
    ScheduleEvent,
    ScheduleEventKind,
    ScheduleOptions,
)

CRON_FIELDS = 5
LOCK_TIMEOUT_S = 2.0
RELOAD_INTERVAL_S = 2.0
_UPDATABLE_FIELDS = {"name", "command", "cron_expression", "enabled", "timeout"}


def _now_ms() -> int:
    return int(time.time() * 1000)


def is_valid_expression(expr: str) -> bool:
    """True for a standard five-field cron expression."""
    if not isinstance(expr, str) or len(expr.split()) != CRON_FIELDS:
        return False
    try:
        return bool(croniter.is_valid(expr))
    except Exception:
        return False


def compute_next_run_ms(expr: str, after_ms: int) -> int | None:
    """Next fire time strictly after *after_ms*, or None if *expr* is invalid.

    Evaluated in naive local time so DST transitions follow the host clock.
    """
    if not is_valid_expression(expr):
        return None
    try:
        base = datetime.fromtimestamp(after_ms / 1000)
        it = croniter(expr, base)
        next_ms = int(it.get_next(datetime).timestamp() * 1000)
        while next_ms <= after_ms:
            next_ms = int(it.get_next(datetime).timestamp() * 1000)
        return next_ms
    except Exception as e:
        logger.debug("Cron: cannot compute next run for '{}': {}", expr, e)
        return None


class CronService:
    """Owns schedules, their timers and their persisted list."""

    def __init__(self, store_path: Path, manager: CommandManager):
        self.store_path = Path(store_path)
        self.lock_path = self.store_path.with_name(self.store_path.name + ".lock")
        self.manager = manager
        self._schedules: list[ScheduleConfig] = []
        self._timers: dict[str, asyncio.Task] = {}
        self._watch_task: asyncio.Task | None = None
        self._running = False
        self._last_text: str | None = None
        self._lock_depth = 0
        self._bus: EventBus[ScheduleEvent] = EventBus("schedule-events")

        self._load()
        self._unsubscribe = manager.subscribe(self._on_command_result)

    # ========== Persistence ==========

    def _read_rows(self) -> tuple[str, list[Any]] | None:
        if not self.store_path.exists():
            return None

        try:
            text = self.store_path.read_text(encoding="utf-8")
            raw = json.loads(text)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning("Failed to read schedules from {}: {}", self.store_path, e)
            return None

        if not isinstance(raw, list):
            logger.warning("Schedule store {} is not a list", self.store_path)
            return None
        return text, raw

    def _parse_rows(
        self,
        rows: list[Any],
        now_ms: int,
        keep_next_run: bool = False,
    ) -> list[ScheduleConfig]:
        schedules: list[ScheduleConfig] = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            try:
                schedule = ScheduleConfig.from_dict(row)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed schedule {!r}: {}", row.get("id"), e)
                continue

            if not schedule.enabled:
                schedule.next_run = None
            elif not (
                keep_next_run
                and schedule.next_run is not None
                and schedule.next_run > now_ms
                and is_valid_expression(schedule.cron_expression)
            ):
                self._refresh_next_run(schedule, now_ms)
            schedules.append(schedule)
        return schedules

    def _load(self) -> None:
        loaded = self._read_rows()
        if loaded is None:
            return
        self._last_text, rows = loaded
        self._schedules = self._parse_rows(rows, _now_ms())
        logger.info("Cron: loaded {} schedule(s) from {}", len(self._schedules), self.store_path)

    def _sync(self) -> None:
        """Pick up schedules another process wrote since our last read or write."""
        loaded = self._read_rows()
        if loaded is None or loaded[0] == self._last_text:
            return

        self._last_text, rows = loaded
        previous = {s.id: s for s in self._schedules}
        self._schedules = self._parse_rows(rows, _now_ms(), keep_next_run=True)
        logger.info("Cron: schedule store changed on disk, reloaded {} schedule(s)", len(self._schedules))

        current_ids = {s.id for s in self._schedules}
        for schedule_id, old in previous.items():
            if schedule_id not in current_ids:
                self._disarm(schedule_id)
                self._emit(ScheduleEventKind.REMOVED, old)

        for schedule in self._schedules:
            old = previous.get(schedule.id)
            if old is not None and old.to_dict() == schedule.to_dict():
                continue
            if schedule.enabled:
                self._arm(schedule)
            else:
                self._disarm(schedule.id)
            kind = ScheduleEventKind.ADDED if old is None else ScheduleEventKind.UPDATED
            self._emit(kind, schedule)

    def _save(self) -> None:
        payload = [schedule.to_dict() for schedule in self._schedules]
        text = json.dumps(payload, indent=2, ensure_ascii=False)
        with self._locked():
            try:
                self.store_path.parent.mkdir(parents=True, exist_ok=True)
                tmp_path = self.store_path.with_suffix(self.store_path.suffix + ".tmp")
                tmp_path.write_text(text, encoding="utf-8")
                tmp_path.replace(self.store_path)
            except OSError as e:
                logger.warning("Failed to save schedules to {}: {}", self.store_path, e)
                return
            self._last_text = text

    # ========== Store lock ==========

    @contextmanager
    def _locked(self) -> Iterator[None]:
        """Hold the store lock. Re-entrant within this service."""
        if self._lock_depth:
            self._lock_depth += 1
            try:
                yield
            finally:
                self._lock_depth -= 1
            return

        acquired = self._acquire_lock()
        self._lock_depth = 1
        try:
            yield
        finally:
            self._lock_depth = 0
            if acquired:
                self._release_lock()

    def _acquire_lock(self) -> bool:
        deadline = time.monotonic() + LOCK_TIMEOUT_S
        while True:
            try:
                self.lock_path.parent.mkdir(parents=True, exist_ok=True)
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                if self._lock_is_stale():
                    logger.warning("Cron: removing stale lock {}", self.lock_path)
                    self.lock_path.unlink(missing_ok=True)
                    continue
                if time.monotonic() >= deadline:
                    logger.warning("Cron: {} is still locked; writing without it", self.lock_path)
                    return False
                time.sleep(0.02)
                continue
            except OSError as e:
                logger.warning("Cron: cannot create lock {}: {}", self.lock_path, e)
                return False

            try:
                os.write(fd, str(os.getpid()).encode("utf-8"))
            finally:
                os.close(fd)
            return True

    def _release_lock(self) -> None:
        self.lock_path.unlink(missing_ok=True)

    def _lock_is_stale(self) -> bool:
        try:
            text = self.lock_path.read_text(encoding="utf-8").strip()
            age_s = time.time() - self.lock_path.stat().st_mtime
        except OSError:
            return False
        try:
            pid = int(text)
        except ValueError:
            # The holder may not have written its pid yet.
            return age_s > LOCK_TIMEOUT_S
        return pid != os.getpid() and not psutil.pid_exists(pid)

    # ========== Timers ==========

    async def start(self) -> None:
        """Arm every enabled schedule and follow external edits."""
        if self._running:
            return
        self._running = True
        self._sync()
        for schedule in self._schedules:
            if schedule.enabled:
                self._arm(schedule)
        self._watch_task = asyncio.create_task(self._watch())
        logger.info("Cron service started with {} armed schedule(s)", len(self._timers))

    def stop(self) -> None:
        """Disarm every schedule."""
        self._running = False
        if self._watch_task is not None:
            self._watch_task.cancel()
            self._watch_task = None
        for task in self._timers.values():
            task.cancel()
        self._timers.clear()

    async def _watch(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(RELOAD_INTERVAL_S)
            except asyncio.CancelledError:
                return
            try:
                self._sync()
            except Exception:
                logger.exception("Cron: failed to reload {}", self.store_path)

    def _refresh_next_run(self, schedule: ScheduleConfig, now_ms: int) -> bool:
        next_run = compute_next_run_ms(schedule.cron_expression, now_ms)
        if next_run is None:
            logger.warning(
                "Cron: invalid expression '{}' for schedule '{}' ({}); disabling",
                schedule.cron_expression,
                schedule.name,
                schedule.id,
            )
            schedule.enabled = False
            schedule.next_run = None
            return False
        schedule.next_run = next_run
        return True

    def _disarm(self, schedule_id: str) -> None:
        task = self._timers.pop(schedule_id, None)
        if task is not None:
            task.cancel()

    def _arm(self, schedule: ScheduleConfig) -> None:
        self._disarm(schedule.id)
        if not self._running or not schedule.enabled:
            return

        now_ms = _now_ms()
        if schedule.next_run is None or schedule.next_run < now_ms:
            # Missed tick, clock jump or long sleep: recompute from now.
            if not self._refresh_next_run(schedule, now_ms):
                self._save()
                self._emit(ScheduleEventKind.UPDATED, schedule)
                return
            self._save()

        assert schedule.next_run is not None
        delay_s = max(0, schedule.next_run - now_ms) / 1000
        schedule_id = schedule.id

        async def _tick() -> None:
            try:
                await asyncio.sleep(delay_s)
            except asyncio.CancelledError:
                return
            if self._timers.get(schedule_id) is asyncio.current_task():
                del self._timers[schedule_id]
            await self._fire(schedule_id)

        self._timers[schedule_id] = asyncio.create_task(_tick())
        logger.debug("Cron: armed '{}' in {:.1f}s", schedule.name, delay_s)

    async def _fire(self, schedule_id: str) -> None:
        self._sync()
        schedule = self._find(schedule_id)
        if schedule is None or not schedule.enabled or not self._running:
            return

        fired_for = schedule.next_run or 0
        logger.info("Cron: executing schedule '{}' ({})", schedule.name, schedule.id)
        try:
            await self._execute(schedule)
        except Exception:
            logger.exception("Cron: schedule '{}' failed to start", schedule.name)

        with self._locked():
            self._sync()
            schedule = self._find(schedule_id)
            if schedule is None or not schedule.enabled or not self._running:
                return
            if schedule_id in self._timers:
                # Re-armed by an update while the command was starting.
                return

            if not self._refresh_next_run(schedule, max(_now_ms(), fired_for)):
                self._save()
                self._emit(ScheduleEventKind.UPDATED, schedule)
                return
            self._save()
            self._arm(schedule)

    async def _execute(self, schedule: ScheduleConfig) -> CommandResult:
        options = ExecutionOptions(timeout=schedule.options.timeout, schedule_id=schedule.id)
        return await self.manager.execute_command(schedule.command, options)

    # ========== Events ==========

    def subscribe(self, handler: Callable[[ScheduleEvent], Any]) -> Callable[[], None]:
        """Receive added/updated/removed events."""
        return self._bus.subscribe(handler)

    def _emit(self, kind: ScheduleEventKind, schedule: ScheduleConfig) -> None:
        self._bus.publish(ScheduleEvent(kind=kind, schedule=copy.deepcopy(schedule)))

    def _on_command_result(self, result: CommandResult) -> None:
        if not result.schedule_id:
            return
        with self._locked():
            self._sync()
            schedule = self._find(result.schedule_id)
            if schedule is None:
                return
            # Bookkeeping only: the timer and next_run stay untouched.
            schedule.last_run = _now_ms()
            self._save()
        self._emit(ScheduleEventKind.UPDATED, schedule)

    # ========== Public API ==========

    def _find(self, schedule_id: str) -> ScheduleConfig | None:
        for schedule in self._schedules:
            if schedule.id == schedule_id:
                return schedule
        return None

    def get_schedules(self) -> list[ScheduleConfig]:
        self._sync()
        return [copy.deepcopy(schedule) for schedule in self._schedules]

    def get_schedule_by_id(self, schedule_id: str) -> ScheduleConfig | None:
        self._sync()
        schedule = self._find(schedule_id)
        return copy.deepcopy(schedule) if schedule is not None else None

    def add_schedule(
        self,
        name: str,
        command: str,
        cron_expression: str,
        enabled: bool = True,
        timeout: int | None = None,
    ) -> ScheduleConfig:
        """Add a schedule. An invalid expression leaves it disabled."""
        if not command or not command.strip():
            raise ValueError("command must not be empty")
        if timeout is not None and timeout <= 0:
            raise ValueError("timeout must be > 0")

        with self._locked():
            self._sync()
            now_ms = _now_ms()
            schedule = ScheduleConfig(
                id=str(uuid.uuid4()),
                name=name,
                command=command,
                cron_expression=cron_expression.strip(),
                enabled=bool(enabled),
                options=ScheduleOptions(timeout=timeout),
                created_at=now_ms,
                updated_at=now_ms,
            )
            if schedule.enabled:
                self._refresh_next_run(schedule, now_ms)

            self._schedules.append(schedule)
            self._save()
            self._arm(schedule)

        logger.info("Cron: added schedule '{}' ({})", schedule.name, schedule.id)
        self._emit(ScheduleEventKind.ADDED, schedule)
        return copy.deepcopy(schedule)

    def update_schedule(self, schedule_id: str, **changes: Any) -> ScheduleConfig | None:
        """Merge *changes* into a schedule and re-arm it.

        Accepted keys: name, command, cron_expression, enabled, timeout.
        """
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"unknown schedule field(s): {', '.join(sorted(unknown))}")
        if "command" in changes and not str(changes["command"] or "").strip():
            raise ValueError("command must not be empty")
        timeout = changes.get("timeout")
        if timeout is not None and timeout <= 0:
            raise ValueError("timeout must be > 0")

        with self._locked():
            self._sync()
            schedule = self._find(schedule_id)
            if schedule is None:
                return None

            self._disarm(schedule_id)
            previous_expression = schedule.cron_expression
            was_enabled = schedule.enabled

            if "name" in changes:
                schedule.name = str(changes["name"])
            if "command" in changes:
                schedule.command = str(changes["command"])
            if "cron_expression" in changes:
                schedule.cron_expression = str(changes["cron_expression"]).strip()
            if "enabled" in changes:
                schedule.enabled = bool(changes["enabled"])
            if "timeout" in changes:
                schedule.options.timeout = timeout

            now_ms = _now_ms()
            schedule.updated_at = now_ms
            if not schedule.enabled:
                schedule.next_run = None
            elif (
                schedule.cron_expression != previous_expression
                or not was_enabled
                or schedule.next_run is None
            ):
                self._refresh_next_run(schedule, now_ms)

            self._save()
            self._arm(schedule)

        logger.info("Cron: updated schedule '{}' ({})", schedule.name, schedule.id)
        self._emit(ScheduleEventKind.UPDATED, schedule)
        return copy.deepcopy(schedule)

    def set_schedule_enabled(self, schedule_id: str, enabled: bool) -> ScheduleConfig | None:
        return self.update_schedule(schedule_id, enabled=enabled)

    def remove_schedule(self, schedule_id: str) -> bool:
        with self._locked():
            self._sync()
            schedule = self._find(schedule_id)
            if schedule is None:
                return False

            self._disarm(schedule_id)
            self._schedules.remove(schedule)
            self._save()

        logger.info("Cron: removed schedule '{}' ({})", schedule.name, schedule.id)
        self._emit(ScheduleEventKind.REMOVED, schedule)
        return True

    async def execute_now(self, schedule_id: str) -> CommandResult | None:
        """Run a schedule's command immediately, enabled or not."""
        self._sync()
        schedule = self._find(schedule_id)
        if schedule is None:
            return None
        logger.info("Cron: manual run of '{}' ({})", schedule.name, schedule.id)
        return await self._execute(schedule)

    def get_recent_executions(self, limit: int = 50) -> list[CommandResult]:
        """Scheduled runs still in the result cache, newest first."""
        results = [r for r in self.manager.get_command_results() if r.schedule_id]
        results.sort(key=lambda r: r.timestamp, reverse=True)
        return results[:limit]

    def get_executions_for_schedule(self, schedule_id: str, limit: int = 10) -> list[CommandResult]:
        return [
            r for r in self.get_recent_executions(limit=100) if r.schedule_id == schedule_id
        ][:limit]

    def status(self) -> dict[str, Any]:
        """Get service status."""
        self._sync()
        upcoming = [s.next_run for s in self._schedules if s.enabled and s.next_run is not None]
        return {
            "enabled": self._running,
            "schedules": len(self._schedules),
            "active": sum(1 for s in self._schedules if s.enabled),
            "armed": len(self._timers),
            "next_wake_at_ms": min(upcoming) if upcoming else None,
        }
