"""Command execution: process supervision, output capture and run history."""

from runboard.command.manager import CommandManager
from runboard.command.store import ResultStore
from runboard.command.types import CommandResult, ExecutionOptions, ExitCode

__all__ = ["CommandManager", "ResultStore", "CommandResult", "ExecutionOptions", "ExitCode"]
