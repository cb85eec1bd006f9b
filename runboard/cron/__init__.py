"""Cron service for scheduled shell commands."""

from runboard.cron.service import CronService
from runboard.cron.types import ScheduleConfig, ScheduleEvent, ScheduleEventKind, ScheduleOptions

__all__ = ["CronService", "ScheduleConfig", "ScheduleEvent", "ScheduleEventKind", "ScheduleOptions"]
