"""Durable storage for command run records.

Layout::

    <base_dir>/<command id>/<YYYY-MM-DD_HH-MM-SS>/result.yaml

One YAML document per run, rewritten whole on every state transition.
Run directories written by older releases contain a markdown
``result.md`` instead; those are still readable.
"""

from __future__ import annotations

import os
import re
from datetime import datetime
from pathlib import Path
from typing import Any

import psutil
import yaml
from loguru import logger

from runboard.command.types import CommandResult, ExitCode

RECORD_VERSION = 1
RESULT_FILE = "result.yaml"
LEGACY_RESULT_FILE = "result.md"
RUN_DIR_FORMAT = "%Y-%m-%d_%H-%M-%S"

_LEGACY_FIELD_RE = re.compile(r"^- \*\*(?P<key>[^*]+):\*\*\s*(?P<value>.*)$")
_LEGACY_TIMESTAMP_FORMATS = (
    "%m/%d/%Y, %I:%M:%S %p",
    "%Y/%m/%d %H:%M:%S",
    "%d/%m/%Y, %H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
)


class _RecordDumper(yaml.SafeDumper):
    pass


def _represent_str(dumper: yaml.SafeDumper, data: str) -> yaml.ScalarNode:
    if "\n" in data:
        return dumper.represent_scalar("tag:yaml.org,2002:str", data, style="|")
    return dumper.represent_scalar("tag:yaml.org,2002:str", data)


_RecordDumper.add_representer(str, _represent_str)


def _ms_to_local_iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000).astimezone().isoformat(timespec="seconds")


def _local_iso_to_ms(value: Any) -> int | None:
    if isinstance(value, datetime):
        return int(value.timestamp() * 1000)
    try:
        return int(datetime.fromisoformat(str(value).strip()).timestamp() * 1000)
    except ValueError:
        return None


def run_dir_name(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime(RUN_DIR_FORMAT)


def owner_alive(pid: Any) -> bool:
    """True when *pid* is another live process that may still own a run."""
    if not isinstance(pid, int) or pid <= 0 or pid == os.getpid():
        return False
    return psutil.pid_exists(pid)


def reconcile_stale(result: CommandResult, owner_pid: int | None = None) -> CommandResult:
    """A record still marked running whose writer is gone was never seen to finish."""
    if result.is_running and not owner_alive(owner_pid):
        result.is_running = False
        if result.exit_code is None or result.exit_code >= 0:
            result.exit_code = int(ExitCode.ABNORMAL)
    return result


def result_to_record(result: CommandResult) -> dict[str, Any]:
    record: dict[str, Any] = {
        "version": RECORD_VERSION,
        "command": result.command,
        "id": result.id,
        "run_id": result.run_id,
        "timestamp": _ms_to_local_iso(result.timestamp),
        "timestamp_ms": result.timestamp,
        "status": result.exit_code,
        "status_text": result.status_text,
        "running": result.is_running,
    }
    if result.is_running:
        record["owner_pid"] = os.getpid()
    if result.execution_time is not None:
        record["execution_time"] = round(result.execution_time / 1000, 3)
    if result.schedule_id:
        record["schedule_id"] = result.schedule_id
    record["output"] = result.output
    return record


def record_to_result(record: dict[str, Any]) -> CommandResult | None:
    """Rebuild a CommandResult, or None when required fields are missing."""
    command = record.get("command")
    cmd_id = record.get("id")
    if not isinstance(command, str) or not cmd_id:
        return None

    timestamp = record.get("timestamp_ms")
    if not isinstance(timestamp, int):
        timestamp = _local_iso_to_ms(record.get("timestamp"))
    if timestamp is None:
        return None

    status = record.get("status")
    exit_code = int(status) if isinstance(status, int) else None
    execution_time = record.get("execution_time")

    result = CommandResult(
        id=str(cmd_id),
        run_id=str(record.get("run_id") or f"{cmd_id}_{timestamp}_0000"),
        command=command,
        output=str(record.get("output") or ""),
        timestamp=timestamp,
        is_running=bool(record.get("running", exit_code is None)),
        exit_code=exit_code,
        schedule_id=record.get("schedule_id") or None,
        execution_time=(
            int(round(float(execution_time) * 1000))
            if isinstance(execution_time, (int, float))
            else None
        ),
    )
    return reconcile_stale(result, record.get("owner_pid"))


def _strip_ticks(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value.startswith("`") and value.endswith("`"):
        return value[1:-1]
    return value


def _parse_legacy_timestamp(value: str, run_dir: Path | None) -> int | None:
    text = value.strip()
    for fmt in _LEGACY_TIMESTAMP_FORMATS:
        try:
            return int(datetime.strptime(text, fmt).timestamp() * 1000)
        except ValueError:
            continue
    if run_dir is not None:
        try:
            return int(datetime.strptime(run_dir.name[:19], RUN_DIR_FORMAT).timestamp() * 1000)
        except ValueError:
            pass
    return None


def parse_legacy_markdown(text: str, run_dir: Path | None = None) -> CommandResult | None:
    """Parse a markdown run record from an older release."""
    fields: dict[str, str] = {}
    output = ""
    lines = text.split("\n")
    for index, line in enumerate(lines):
        if line.startswith("```"):
            try:
                end = lines.index("```", index + 1)
            except ValueError:
                end = len(lines)
            output = "\n".join(lines[index + 1:end])
            break
        match = _LEGACY_FIELD_RE.match(line)
        if match:
            fields[match.group("key").strip()] = match.group("value")

    command = fields.get("Command")
    cmd_id = fields.get("ID")
    if command is None or not cmd_id:
        return None
    command = _strip_ticks(command)
    cmd_id = _strip_ticks(cmd_id)

    timestamp = _parse_legacy_timestamp(fields.get("Timestamp", ""), run_dir)
    if timestamp is None:
        return None

    is_running = False
    exit_code: int | None = None
    try:
        status = int(fields.get("Status", "").strip())
    except ValueError:
        status = None
    if status == -1:
        is_running = True
    elif status is not None:
        exit_code = status

    execution_time = None
    raw_time = fields.get("Execution Time", "").replace("seconds", "").strip()
    if raw_time:
        try:
            execution_time = int(round(float(raw_time) * 1000))
        except ValueError:
            pass

    if output == "(No output yet)":
        output = ""

    schedule_id = fields.get("ScheduleID")
    result = CommandResult(
        id=cmd_id,
        run_id=f"{cmd_id}_{timestamp}_0000",
        command=command,
        output=output,
        timestamp=timestamp,
        is_running=is_running,
        exit_code=exit_code,
        schedule_id=_strip_ticks(schedule_id) if schedule_id else None,
        execution_time=execution_time,
    )
    return reconcile_stale(result)


class ResultStore:
    """Reads and writes run records under *base_dir*."""

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir)
        self._run_dirs: dict[str, Path] = {}

    def run_dir(self, result: CommandResult) -> Path:
        """Directory holding *result*, fixed on first use."""
        known = self._run_dirs.get(result.run_id)
        if known is not None:
            return known

        path = self.base_dir / result.id / run_dir_name(result.timestamp)
        if self._is_taken(path, result.run_id):
            suffix = result.run_id.rsplit("_", 1)[-1]
            path = path.with_name(f"{path.name}_{suffix}")
        self._run_dirs[result.run_id] = path
        return path

    def _is_taken(self, path: Path, run_id: str) -> bool:
        if any(p == path for rid, p in self._run_dirs.items() if rid != run_id):
            return True
        if (path / LEGACY_RESULT_FILE).exists():
            return True
        record_path = path / RESULT_FILE
        if not record_path.exists():
            return False
        record = self._read_record(record_path)
        return record is None or record.get("run_id") != run_id

    def save(self, result: CommandResult) -> bool:
        """Write *result*; failures are logged and reported as False.

        A terminal record is written once, so its directory is forgotten
        afterwards.
        """
        path = self.run_dir(result) / RESULT_FILE
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            data = yaml.dump(
                result_to_record(result),
                Dumper=_RecordDumper,
                sort_keys=False,
                allow_unicode=True,
            )
            tmp_path = path.with_suffix(path.suffix + ".tmp")
            tmp_path.write_text(data, encoding="utf-8")
            tmp_path.replace(path)
        except (OSError, yaml.YAMLError) as e:
            logger.warning("Failed to write run record {}: {}", path, e)
            return False
        finally:
            if not result.is_running:
                self._run_dirs.pop(result.run_id, None)
        return True

    def _read_record(self, path: Path) -> dict[str, Any] | None:
        try:
            payload = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
            logger.warning("Failed to read run record {}: {}", path, e)
            return None
        if not isinstance(payload, dict):
            logger.warning("Run record {} is not a YAML object", path)
            return None
        return payload

    def load_run(self, run_dir: Path) -> CommandResult | None:
        record_path = run_dir / RESULT_FILE
        if record_path.exists():
            record = self._read_record(record_path)
            result = record_to_result(record) if record is not None else None
        elif (run_dir / LEGACY_RESULT_FILE).exists():
            try:
                text = (run_dir / LEGACY_RESULT_FILE).read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                logger.warning("Failed to read legacy run record in {}: {}", run_dir, e)
                return None
            result = parse_legacy_markdown(text, run_dir)
        else:
            return None

        if result is None:
            logger.warning("Skipping malformed run record in {}", run_dir)
            return None
        return result

    def load_all(self) -> list[CommandResult]:
        """Every readable record, newest first."""
        if not self.base_dir.is_dir():
            return []

        results: list[CommandResult] = []
        try:
            command_dirs = sorted(p for p in self.base_dir.iterdir() if p.is_dir())
        except OSError as e:
            logger.warning("Failed to scan run records in {}: {}", self.base_dir, e)
            return []

        for command_dir in command_dirs:
            try:
                run_dirs = sorted(p for p in command_dir.iterdir() if p.is_dir())
            except OSError as e:
                logger.warning("Failed to scan {}: {}", command_dir, e)
                continue
            for run_dir in run_dirs:
                result = self.load_run(run_dir)
                if result is not None:
                    results.append(result)

        results.sort(key=lambda r: r.timestamp, reverse=True)
        return results

    def load_recent(self, limit: int) -> list[CommandResult]:
        return self.load_all()[:limit]
