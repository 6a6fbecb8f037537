"""Scheduling – prompt pool, response collection, triad scheduling and sweeps."""

from scheduling.tasks import BackgroundTasks
from scheduling.responses import ResponseCollector
from scheduling.pool import POOL_LOCK_KEY, PoolResult, PromptPoolManager
from scheduling.triad_scheduler import (
    PERSONA_CURSOR_KEY,
    ScheduleResult,
    TriadScheduler,
    partition_queue,
)
from scheduling.sweep import SweepResult, SweepRunner

__all__ = [
    "BackgroundTasks",
    "PERSONA_CURSOR_KEY",
    "POOL_LOCK_KEY",
    "PoolResult",
    "PromptPoolManager",
    "ResponseCollector",
    "ScheduleResult",
    "SweepResult",
    "SweepRunner",
    "TriadScheduler",
    "partition_queue",
]
