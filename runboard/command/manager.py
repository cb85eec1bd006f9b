"""Command execution manager.

Supervises child processes, keeps at most one live run per command text,
streams decoded output into the run's record and persists every state
transition. All state is owned by one asyncio loop; every check-and-set
below completes without an ``await`` in between.
"""

from __future__ import annotations

import asyncio
import copy
import time
from dataclasses import dataclass
from typing import Any, Callable

from loguru import logger

from runboard.bus.events import EventBus
from runboard.command.cache import ResultCache
from runboard.command.encoding import OutputDecoder
from runboard.command.process import (
    build_environment,
    kill_process_tree,
    pump_stream,
    spawn_process,
)
from runboard.command.store import ResultStore
from runboard.command.types import (
    CommandResult,
    ExecutionOptions,
    ExitCode,
    command_id,
    make_run_id,
)

DUPLICATE_MESSAGE = "Error: the same command is already running. Execution was cancelled."
MANUAL_STOP_MESSAGE = "\n\nCommand was manually stopped by user."
SHUTDOWN_MESSAGE = "\n\nCommand was terminated because runboard shut down."


def _now_ms() -> int:
    return int(time.time() * 1000)


def _timeout_message(timeout_ms: int) -> str:
    return f"\nCommand timed out after {timeout_ms / 1000:g} seconds and was terminated.\n"


@dataclass
class _ActiveCommand:
    """Bookkeeping for one live run."""

    result: CommandResult
    started: float
    process: asyncio.subprocess.Process | None = None
    timer: asyncio.TimerHandle | None = None
    finished: bool = False


class CommandManager:
    """Runs shell commands and owns their CommandResult records."""

    def __init__(
        self,
        store: ResultStore,
        max_results: int = 50,
        fallback_encoding: str | None = None,
    ):
        self.store = store
        self.fallback_encoding = fallback_encoding
        self._cache = ResultCache(max_results)
        self._active: dict[str, _ActiveCommand] = {}
        self._supervisors: dict[str, asyncio.Task] = {}
        self._bus: EventBus[CommandResult] = EventBus("command-results")

    # ========== Lifecycle ==========

    def load(self) -> None:
        """Fill the cache from durable storage."""
        try:
            results = self.store.load_recent(self._cache.limit)
        except Exception:
            logger.exception("Failed to load command history from {}", self.store.base_dir)
            results = []
        self._cache.replace_all(results)
        logger.info("Loaded {} command result(s) from {}", len(results), self.store.base_dir)

    async def close(self) -> None:
        """Kill whatever is still running and wait for the supervisors."""
        for active in list(self._active.values()):
            self._terminate(active, ExitCode.ABNORMAL, SHUTDOWN_MESSAGE)
        tasks = list(self._supervisors.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ========== Notifications ==========

    def subscribe(self, handler: Callable[[CommandResult], Any]) -> Callable[[], None]:
        """Receive a snapshot of every CommandResult mutation."""
        return self._bus.subscribe(handler)

    def _record(self, result: CommandResult) -> None:
        self._cache.upsert(result)
        self.store.save(result)
        self._bus.publish(copy.copy(result))

    # ========== Execution ==========

    async def execute_command(
        self,
        command: str,
        options: ExecutionOptions | None = None,
    ) -> CommandResult:
        """Start *command* and return its initial record.

        A second request for a command that is still running is not spawned;
        it produces a terminal record with ``ExitCode.DUPLICATE`` instead.
        """
        if not command or not command.strip():
            raise ValueError("command must not be empty")
        options = options or ExecutionOptions()

        cmd_id = command_id(command)
        timestamp = _now_ms()
        run_id = make_run_id(cmd_id, timestamp)

        if cmd_id in self._active:
            logger.warning("Command {} is already running; rejecting duplicate", cmd_id)
            result = CommandResult(
                id=cmd_id,
                run_id=run_id,
                command=command,
                output=DUPLICATE_MESSAGE,
                timestamp=timestamp,
                is_running=False,
                exit_code=int(ExitCode.DUPLICATE),
                schedule_id=options.schedule_id,
            )
            self._record(result)
            return copy.copy(result)

        result = CommandResult(
            id=cmd_id,
            run_id=run_id,
            command=command,
            timestamp=timestamp,
            is_running=True,
            exit_code=None,
            schedule_id=options.schedule_id,
        )
        active = _ActiveCommand(result=result, started=time.monotonic())
        self._active[cmd_id] = active
        self._record(result)

        logger.info("Executing {} ({}): {}", cmd_id, run_id, command)
        try:
            process = await spawn_process(command, env=build_environment())
        except (OSError, ValueError) as e:
            logger.error("Failed to start {}: {}", cmd_id, e)
            self._finish(active, 1, f"\n\nError executing command: {e}")
            return copy.copy(active.result)

        active.process = process
        if active.finished:
            # Killed while the spawn was in flight.
            kill_process_tree(process.pid)

        if options.timeout and not active.finished:
            loop = asyncio.get_running_loop()
            active.timer = loop.call_later(
                options.timeout / 1000, self._on_timeout, active, options.timeout
            )

        task = asyncio.create_task(self._supervise(active))
        self._supervisors[run_id] = task
        task.add_done_callback(lambda _t: self._supervisors.pop(run_id, None))
        return copy.copy(active.result)

    async def _supervise(self, active: _ActiveCommand) -> None:
        process = active.process
        assert process is not None

        def _append(text: str) -> None:
            self._append_output(active, text)

        try:
            await asyncio.gather(
                pump_stream(process.stdout, OutputDecoder(self.fallback_encoding), _append),
                pump_stream(process.stderr, OutputDecoder(self.fallback_encoding), _append),
            )
            code = await process.wait()
        except Exception as e:
            logger.exception("Supervisor for {} failed", active.result.run_id)
            if not active.finished:
                kill_process_tree(process.pid)
                self._finish(active, int(ExitCode.ABNORMAL), f"\n\nError executing command: {e}")
            return

        if active.finished:
            return
        if code < 0:
            # Killed by a signal nobody here sent.
            code = int(ExitCode.ABNORMAL)
        self._finish(active, code)

    def _append_output(self, active: _ActiveCommand, text: str) -> None:
        if active.finished:
            return
        active.result.output += text
        logger.debug("{} +{} chars", active.result.run_id, len(text))
        self._record(active.result)

    def _finish(self, active: _ActiveCommand, exit_code: int, note: str = "") -> None:
        if active.finished:
            return
        active.finished = True
        if active.timer is not None:
            active.timer.cancel()
            active.timer = None

        result = active.result
        if self._active.get(result.id) is active:
            del self._active[result.id]

        result.output += note
        result.is_running = False
        result.exit_code = int(exit_code)
        result.execution_time = int(round((time.monotonic() - active.started) * 1000))
        logger.info(
            "Command {} finished: {} in {}ms",
            result.run_id,
            result.status_text,
            result.execution_time,
        )
        self._record(result)

    def _terminate(self, active: _ActiveCommand, exit_code: int, note: str) -> None:
        if active.finished:
            return
        if active.timer is not None:
            active.timer.cancel()
            active.timer = None
        if active.process is not None and active.process.returncode is None:
            kill_process_tree(active.process.pid)
        self._finish(active, exit_code, note)

    def _on_timeout(self, active: _ActiveCommand, timeout_ms: int) -> None:
        active.timer = None
        if active.finished:
            return
        logger.warning("Command {} timed out after {}ms", active.result.run_id, timeout_ms)
        self._terminate(active, ExitCode.TIMEOUT, _timeout_message(timeout_ms))

    def kill_command(self, cmd_id: str) -> bool:
        """Stop the running command *cmd_id* on user request."""
        active = self._active.get(cmd_id)
        if active is None:
            logger.debug("Kill requested for {} but nothing is running", cmd_id)
            return False
        logger.info("Manually stopping {}", active.result.run_id)
        self._terminate(active, ExitCode.MANUAL_STOP, MANUAL_STOP_MESSAGE)
        return True

    # ========== Queries ==========

    def get_command_results(self) -> list[CommandResult]:
        """Recent results, newest first."""
        return self._cache.items()

    def get_result(self, run_id: str) -> CommandResult | None:
        for active in self._active.values():
            if active.result.run_id == run_id:
                return copy.copy(active.result)
        return self._cache.get(run_id)

    def is_running(self, cmd_id: str) -> bool:
        return cmd_id in self._active

    def active_ids(self) -> list[str]:
        return list(self._active)

    async def wait(self, run_id: str) -> None:
        """Wait until the process behind *run_id* has been reaped."""
        task = self._supervisors.get(run_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
