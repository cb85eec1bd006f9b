"""
runboard - run shell commands on demand or on a cron schedule.
"""

__version__ = "0.1.0"
__logo__ = "▶"
