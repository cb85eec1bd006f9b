"""Child process lifecycle helpers."""

from __future__ import annotations

import asyncio
import os
import sys
from typing import Callable

import psutil
from loguru import logger

from runboard.command.encoding import OutputDecoder

CHUNK_SIZE = 4096


def build_environment(platform: str | None = None) -> dict[str, str]:
    """Inherited environment with encoding fixes for non-UTF-8 consoles."""
    platform = platform or sys.platform
    env = os.environ.copy()
    if platform == "win32":
        env["PYTHONIOENCODING"] = "utf-8"
    return env


def prepare_command(command: str, platform: str | None = None) -> str:
    """Ask Windows shells for UTF-8 output; other platforms are unchanged."""
    platform = platform or sys.platform
    if platform != "win32":
        return command

    parts = command.split()
    if not parts:
        return command
    program, args = parts[0], parts[1:]
    lowered = program.lower()

    if lowered in ("cmd", "cmd.exe"):
        if args and args[0].lower() in ("/c", "/k"):
            args = args[1:]
        return f"{program} /c chcp 65001 >nul && {' '.join(args)}"
    if "powershell" in lowered and "-OutputEncoding" not in args:
        return " ".join([program, "-OutputEncoding", "utf8", *args])
    return command


async def spawn_process(
    command: str,
    env: dict[str, str] | None = None,
    platform: str | None = None,
) -> asyncio.subprocess.Process:
    """Start *command* through the shell with both output pipes captured."""
    platform = platform or sys.platform
    kwargs: dict = {}
    if platform != "win32":
        # Own session so the whole tree can be signalled together.
        kwargs["start_new_session"] = True
    return await asyncio.create_subprocess_shell(
        prepare_command(command, platform),
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=env if env is not None else build_environment(platform),
        **kwargs,
    )


async def pump_stream(
    stream: asyncio.StreamReader | None,
    decoder: OutputDecoder,
    on_text: Callable[[str], None],
) -> None:
    """Feed decoded chunks of *stream* to *on_text* until EOF."""
    if stream is None:
        return
    while True:
        chunk = await stream.read(CHUNK_SIZE)
        if not chunk:
            break
        text = decoder.decode(chunk)
        if text:
            on_text(text)
    tail = decoder.flush()
    if tail:
        on_text(tail)


def kill_process_tree(pid: int) -> None:
    """Force-kill *pid* and every descendant. Gone processes are ignored."""
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return

    try:
        children = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        children = []

    for proc in [*children, parent]:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied as e:
            logger.warning("Cannot kill process {}: {}", proc.pid, e)
