"""Sweep Trigger: pool top-up, then scheduling, then evaluation.

Safe to call more often than needed. Each step is guarded on its own (pool
lock, prompt claim, conditional finish), and a failing step is logged
without stopping the ones after it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from evaluation.lifecycle import EvaluationResult, TriadLifecycleEvaluator
    from scheduling.pool import PoolResult, PromptPoolManager
    from scheduling.triad_scheduler import ScheduleResult, TriadScheduler

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    pool: PoolResult | None = None
    schedule: ScheduleResult | None = None
    evaluation: EvaluationResult | None = None
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "pool": self.pool.to_dict() if self.pool else None,
            "schedule": self.schedule.to_dict() if self.schedule else None,
            "evaluation": self.evaluation.to_dict() if self.evaluation else None,
            "errors": self.errors,
        }


class SweepRunner:
    def __init__(
        self,
        pool: PromptPoolManager,
        scheduler: TriadScheduler,
        evaluator: TriadLifecycleEvaluator,
        *,
        pool_target: int = 5,
    ) -> None:
        self.pool = pool
        self.scheduler = scheduler
        self.evaluator = evaluator
        self.pool_target = pool_target

    async def run(self) -> SweepResult:
        result = SweepResult()
        try:
            result.pool = await self.pool.ensure_pool_target(self.pool_target)
        except Exception as exc:
            logger.exception("Sweep: pool top-up failed")
            result.errors["pool"] = str(exc)
        try:
            result.schedule = await self.scheduler.schedule_due_prompts()
        except Exception as exc:
            logger.exception("Sweep: scheduling failed")
            result.errors["schedule"] = str(exc)
        try:
            result.evaluation = await self.evaluator.evaluate_expired_triads()
        except Exception as exc:
            logger.exception("Sweep: evaluation failed")
            result.errors["evaluate"] = str(exc)
        return result
