"""Recurring task scheduling."""

from dirsync.scheduling.runner import IntervalTaskRunner, Scheduler, TaskFn, TaskRunner

__all__ = ["IntervalTaskRunner", "Scheduler", "TaskFn", "TaskRunner"]
