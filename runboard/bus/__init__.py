"""Publish/subscribe plumbing shared by the command and cron services."""

from runboard.bus.events import EventBus

__all__ = ["EventBus"]
