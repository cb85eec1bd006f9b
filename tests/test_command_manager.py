import asyncio
import sys

import pytest

from runboard.command.manager import (
    DUPLICATE_MESSAGE,
    MANUAL_STOP_MESSAGE,
    SHUTDOWN_MESSAGE,
    CommandManager,
)
from runboard.command.store import ResultStore
from runboard.command.types import CommandResult, ExecutionOptions, command_id

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="uses POSIX shell commands")


@pytest.fixture
def manager(tmp_path) -> CommandManager:
    return CommandManager(ResultStore(tmp_path / "logdata"))


async def _run(manager: CommandManager, command: str, **options) -> CommandResult:
    started = await manager.execute_command(command, ExecutionOptions(**options))
    await manager.wait(started.run_id)
    return manager.get_result(started.run_id)


@pytest.mark.asyncio
async def test_execute_returns_running_record_then_succeeds(manager) -> None:
    started = await manager.execute_command("echo hi")

    assert started.is_running is True
    assert started.exit_code is None
    assert manager.is_running(command_id("echo hi"))

    await manager.wait(started.run_id)
    result = manager.get_result(started.run_id)

    assert result.is_running is False
    assert result.exit_code == 0
    assert result.output == "hi\n"
    assert result.execution_time is not None
    assert not manager.is_running(result.id)

    stored = manager.store.load_all()
    assert len(stored) == 1
    assert stored[0].exit_code == 0
    assert stored[0].output == "hi\n"


@pytest.mark.asyncio
async def test_native_exit_code_is_kept(manager) -> None:
    result = await _run(manager, "echo oops 1>&2; exit 3")

    assert result.exit_code == 3
    assert result.status_text == "Failed (exit code: 3)"
    assert "oops" in result.output


@pytest.mark.asyncio
async def test_stdout_and_stderr_are_both_captured(manager) -> None:
    result = await _run(manager, "echo out; echo err 1>&2")

    assert "out\n" in result.output
    assert "err\n" in result.output


@pytest.mark.asyncio
async def test_killed_by_signal_is_abnormal(manager) -> None:
    result = await _run(manager, "kill -9 $$")

    assert result.exit_code == -2


@pytest.mark.asyncio
async def test_duplicate_command_is_rejected_while_running(manager) -> None:
    first = await manager.execute_command("sleep 5")
    second = await manager.execute_command("sleep 5")

    assert second.run_id != first.run_id
    assert second.is_running is False
    assert second.exit_code == -5
    assert second.output == DUPLICATE_MESSAGE
    assert manager.is_running(first.id)
    assert manager.active_ids() == [first.id]

    assert manager.kill_command(first.id) is True
    await manager.wait(first.run_id)
    stopped = manager.get_result(first.run_id)

    assert stopped.exit_code == -4
    assert stopped.output.endswith(MANUAL_STOP_MESSAGE)
    assert stopped.execution_time < 5000
    assert not manager.is_running(first.id)
    assert manager.active_ids() == []


@pytest.mark.asyncio
async def test_same_command_can_run_again_after_finishing(manager) -> None:
    first = await _run(manager, "echo again")
    second = await _run(manager, "echo again")

    assert first.exit_code == 0
    assert second.exit_code == 0
    assert first.run_id != second.run_id


@pytest.mark.asyncio
async def test_timeout_terminates_command(manager) -> None:
    result = await _run(manager, "sleep 5", timeout=300)

    assert result.exit_code == -3
    assert "timed out after 0.3 seconds" in result.output
    assert 250 <= result.execution_time < 3000


@pytest.mark.asyncio
async def test_kill_without_running_command(manager) -> None:
    assert manager.kill_command(command_id("sleep 5")) is False


@pytest.mark.asyncio
async def test_notifications_follow_the_run(manager) -> None:
    seen: list[CommandResult] = []
    manager.subscribe(seen.append)

    result = await _run(manager, "echo one; echo two")

    assert seen[0].is_running is True
    assert seen[-1].is_running is False
    assert seen[-1].exit_code == 0
    assert {r.run_id for r in seen} == {result.run_id}
    assert all(r.is_running for r in seen[:-1])


@pytest.mark.asyncio
async def test_spawn_failure_is_recorded(manager, monkeypatch) -> None:
    async def _boom(*_args, **_kwargs):
        raise OSError("boom")

    monkeypatch.setattr("runboard.command.manager.spawn_process", _boom)

    result = await manager.execute_command("echo never")

    assert result.is_running is False
    assert result.exit_code == 1
    assert "Error executing command: boom" in result.output
    assert not manager.is_running(result.id)


@pytest.mark.asyncio
async def test_empty_command_is_rejected(manager) -> None:
    with pytest.raises(ValueError):
        await manager.execute_command("   ")


@pytest.mark.asyncio
async def test_cache_is_capped(tmp_path) -> None:
    manager = CommandManager(ResultStore(tmp_path / "logdata"), max_results=2)

    for word in ("a", "b", "c"):
        await _run(manager, f"echo {word}")

    results = manager.get_command_results()
    assert [r.command for r in results] == ["echo c", "echo b"]
    assert len(manager.store.load_all()) == 3


@pytest.mark.asyncio
async def test_schedule_id_is_carried_on_the_record(manager) -> None:
    result = await _run(manager, "echo scheduled", schedule_id="sched-1")

    assert result.schedule_id == "sched-1"
    assert manager.store.load_all()[0].schedule_id == "sched-1"


@pytest.mark.asyncio
async def test_close_terminates_running_commands(manager) -> None:
    started = await manager.execute_command("sleep 5")

    await manager.close()

    result = manager.get_result(started.run_id)
    assert result.exit_code == -2
    assert result.output.endswith(SHUTDOWN_MESSAGE)


def test_load_reconciles_interrupted_runs(tmp_path) -> None:
    store = ResultStore(tmp_path / "logdata")
    cmd_id = command_id("sleep 100")
    store.save(
        CommandResult(
            id=cmd_id,
            run_id=f"{cmd_id}_1000_0001",
            command="sleep 100",
            timestamp=1000,
            is_running=True,
        )
    )

    manager = CommandManager(ResultStore(tmp_path / "logdata"))
    manager.load()

    results = manager.get_command_results()
    assert len(results) == 1
    assert results[0].is_running is False
    assert results[0].exit_code == -2
    assert not manager.is_running(cmd_id)


@pytest.mark.asyncio
async def test_concurrent_duplicate_requests_spawn_once(manager) -> None:
    first, second = await asyncio.gather(
        manager.execute_command("sleep 5"),
        manager.execute_command("sleep 5"),
    )

    codes = sorted(r.exit_code for r in (first, second) if r.exit_code is not None)
    assert codes == [-5]
    running = first if first.is_running else second
    assert manager.active_ids() == [running.id]

    manager.kill_command(running.id)
    await manager.wait(running.run_id)
    assert manager.get_result(running.run_id).exit_code == -4


@pytest.mark.asyncio
async def test_finished_runs_release_their_run_directories(manager) -> None:
    for i in range(5):
        await _run(manager, f"true {i}")

    assert manager.store._run_dirs == {}
    assert len(manager.store.load_all()) == 5
