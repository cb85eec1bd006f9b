import os
from datetime import datetime
from pathlib import Path

import pytest
import yaml

from runboard.command.cache import ResultCache
from runboard.command.store import (
    RESULT_FILE,
    ResultStore,
    parse_legacy_markdown,
    run_dir_name,
)
from runboard.command.types import CommandResult, command_id, make_run_id, status_text

TS = int(datetime(2024, 5, 6, 7, 8, 9).timestamp() * 1000)


def _result(command: str = "echo hi", timestamp: int = TS, **kwargs) -> CommandResult:
    cmd_id = command_id(command)
    return CommandResult(
        id=cmd_id,
        run_id=kwargs.pop("run_id", make_run_id(cmd_id, timestamp)),
        command=command,
        timestamp=timestamp,
        **kwargs,
    )


def _read_yaml(path: Path) -> dict:
    return yaml.safe_load(path.read_text(encoding="utf-8"))


def test_command_id_is_stable_per_command_text() -> None:
    assert command_id("echo hi") == command_id("echo hi")
    assert command_id("echo hi") != command_id("echo  hi")
    assert command_id("echo hi").startswith("cmd-")
    assert len(command_id("echo hi")) == len("cmd-") + 8


def test_run_id_embeds_command_and_timestamp() -> None:
    run_id = make_run_id("cmd-abcdef12", 1700000000000)

    prefix, ts, suffix = run_id.split("_")
    assert prefix == "cmd-abcdef12"
    assert ts == "1700000000000"
    assert len(suffix) == 4 and suffix.isdigit()


@pytest.mark.parametrize(
    ("running", "code", "expected"),
    [
        (True, None, "Running"),
        (False, 0, "Success"),
        (False, -2, "Terminated abnormally"),
        (False, -3, "Timeout terminated"),
        (False, -4, "Manually stopped"),
        (False, -5, "Duplicate execution prevented"),
        (False, 7, "Failed (exit code: 7)"),
        (False, None, "Failed (exit code: unknown)"),
    ],
)
def test_status_text(running, code, expected) -> None:
    assert status_text(running, code) == expected


def test_save_writes_yaml_record_in_run_directory(tmp_path) -> None:
    store = ResultStore(tmp_path)
    result = _result(output="line one\nline two\n", exit_code=0, execution_time=1234, schedule_id="s-1")

    assert store.save(result) is True

    path = tmp_path / result.id / run_dir_name(TS) / RESULT_FILE
    assert path.exists()
    text = path.read_text(encoding="utf-8")
    assert "output: |" in text

    payload = _read_yaml(path)
    assert payload["command"] == "echo hi"
    assert payload["run_id"] == result.run_id
    assert payload["status"] == 0
    assert payload["status_text"] == "Success"
    assert payload["running"] is False
    assert payload["execution_time"] == 1.234
    assert payload["schedule_id"] == "s-1"
    assert payload["output"] == "line one\nline two\n"

    loaded = store.load_all()
    assert len(loaded) == 1
    assert loaded[0] == result


def test_running_record_is_marked_abnormal_on_load(tmp_path) -> None:
    ResultStore(tmp_path).save(_result(output="partial", is_running=True))

    loaded = ResultStore(tmp_path).load_all()

    assert len(loaded) == 1
    assert loaded[0].is_running is False
    assert loaded[0].exit_code == -2
    assert loaded[0].output == "partial"


def test_running_record_keeps_terminal_negative_status(tmp_path) -> None:
    result = _result(exit_code=-3)
    store = ResultStore(tmp_path)
    store.save(result)
    path = store.run_dir(result) / RESULT_FILE
    payload = _read_yaml(path)
    payload["running"] = True
    path.write_text(yaml.safe_dump(payload), encoding="utf-8")

    loaded = ResultStore(tmp_path).load_all()

    assert loaded[0].is_running is False
    assert loaded[0].exit_code == -3


def test_same_second_runs_get_separate_directories(tmp_path) -> None:
    store = ResultStore(tmp_path)
    first = _result(run_id="cmd-x_1_0001", exit_code=0)
    second = _result(timestamp=TS + 300, run_id="cmd-x_2_0002", exit_code=-5)

    store.save(first)
    store.save(second)

    assert store.run_dir(first) != store.run_dir(second)
    assert store.run_dir(second).name.endswith("_0002")
    assert {r.run_id for r in ResultStore(tmp_path).load_all()} == {"cmd-x_1_0001", "cmd-x_2_0002"}


def test_load_all_is_newest_first_and_skips_malformed(tmp_path) -> None:
    store = ResultStore(tmp_path)
    old = _result("echo old", timestamp=TS, exit_code=0)
    new = _result("echo new", timestamp=TS + 60_000, exit_code=1)
    store.save(old)
    store.save(new)

    broken = tmp_path / "cmd-broken" / "2024-01-01_00-00-00"
    broken.mkdir(parents=True)
    (broken / RESULT_FILE).write_text("command: [unclosed\n", encoding="utf-8")
    missing = tmp_path / "cmd-missing" / "2024-01-01_00-00-00"
    missing.mkdir(parents=True)
    (missing / RESULT_FILE).write_text("output: nothing else\n", encoding="utf-8")

    loaded = ResultStore(tmp_path).load_all()

    assert [r.command for r in loaded] == ["echo new", "echo old"]
    assert ResultStore(tmp_path).load_recent(1)[0].command == "echo new"


def test_load_all_on_missing_directory(tmp_path) -> None:
    assert ResultStore(tmp_path / "nope").load_all() == []


LEGACY_RECORD = """# Command Execution Result

- **Command:** `echo legacy`
- **ID:** `cmd-1234abcd`
- **Timestamp:** 2024/01/02 03:04:05
- **Status:** 0
- **Execution Time:** 1.500 seconds
- **ScheduleID:** `sched-1`

## Output

```
hello
world
```
"""


def test_parse_legacy_markdown() -> None:
    result = parse_legacy_markdown(LEGACY_RECORD)

    assert result is not None
    assert result.command == "echo legacy"
    assert result.id == "cmd-1234abcd"
    assert result.timestamp == int(datetime(2024, 1, 2, 3, 4, 5).timestamp() * 1000)
    assert result.exit_code == 0
    assert result.execution_time == 1500
    assert result.schedule_id == "sched-1"
    assert result.output == "hello\nworld"


def test_legacy_running_record_is_reconciled() -> None:
    text = LEGACY_RECORD.replace("- **Status:** 0", "- **Status:** -1").replace(
        "hello\nworld", "(No output yet)"
    )

    result = parse_legacy_markdown(text)

    assert result.is_running is False
    assert result.exit_code == -2
    assert result.output == ""


def test_legacy_record_falls_back_to_directory_timestamp(tmp_path) -> None:
    run_dir = tmp_path / "cmd-1234abcd" / "2023-12-31_23-59-58"
    run_dir.mkdir(parents=True)
    text = LEGACY_RECORD.replace("2024/01/02 03:04:05", "sometime")
    (run_dir / "result.md").write_text(text, encoding="utf-8")

    loaded = ResultStore(tmp_path).load_all()

    assert len(loaded) == 1
    assert loaded[0].timestamp == int(datetime(2023, 12, 31, 23, 59, 58).timestamp() * 1000)


def test_legacy_record_without_command_is_rejected() -> None:
    assert parse_legacy_markdown("- **ID:** `cmd-1`\n") is None


def test_cache_keeps_newest_within_limit() -> None:
    cache = ResultCache(limit=2)
    a = _result("echo a", timestamp=1, run_id="a")
    b = _result("echo b", timestamp=2, run_id="b")
    c = _result("echo c", timestamp=3, run_id="c")

    cache.upsert(a)
    cache.upsert(b)
    cache.upsert(c)

    assert [r.run_id for r in cache.items()] == ["c", "b"]
    assert cache.get("a") is None


def test_cache_upsert_replaces_in_place() -> None:
    cache = ResultCache(limit=5)
    cache.replace_all([_result("echo a", timestamp=1, run_id="a"), _result("echo b", timestamp=2, run_id="b")])

    cache.upsert(_result("echo a", timestamp=1, run_id="a", output="done", exit_code=0))

    assert [r.run_id for r in cache.items()] == ["b", "a"]
    assert cache.get("a").output == "done"


def test_cache_rejects_non_positive_limit() -> None:
    with pytest.raises(ValueError):
        ResultCache(limit=0)


def test_terminal_save_forgets_run_directory(tmp_path) -> None:
    store = ResultStore(tmp_path)
    result = _result(is_running=True)

    store.save(result)
    assert len(store._run_dirs) == 1

    result.is_running = False
    result.exit_code = 0
    store.save(result)
    assert store._run_dirs == {}

    for i in range(20):
        store.save(_result(f"true {i}", exit_code=0))
    assert store._run_dirs == {}
    assert len(ResultStore(tmp_path).load_all()) == 21


def test_loading_history_does_not_pin_run_directories(tmp_path) -> None:
    ResultStore(tmp_path).save(_result(exit_code=0))

    store = ResultStore(tmp_path)
    store.load_all()

    assert store._run_dirs == {}


def test_running_record_owned_by_live_process_stays_running(tmp_path) -> None:
    result = _result(output="still going", is_running=True)
    store = ResultStore(tmp_path)
    store.save(result)
    path = store.run_dir(result) / RESULT_FILE

    payload = _read_yaml(path)
    assert payload["owner_pid"] == os.getpid()
    payload["owner_pid"] = os.getppid()
    path.write_text(yaml.safe_dump(payload), encoding="utf-8")

    loaded = ResultStore(tmp_path).load_all()

    assert loaded[0].is_running is True
    assert loaded[0].exit_code is None
    assert loaded[0].status_text == "Running"


def test_terminal_record_has_no_owner(tmp_path) -> None:
    store = ResultStore(tmp_path)
    result = _result(exit_code=0)
    store.save(result)

    assert "owner_pid" not in _read_yaml(store.run_dir(result) / RESULT_FILE)
