"""Rollback decisions from sustained metric breaches.

A breach is a decision, not an error: the evaluator reports every
condition that has been breached for its full sustained duration and
says whether the policy allows acting on it automatically.
"""

from __future__ import annotations

from datetime import datetime

import structlog
from pydantic import BaseModel, ConfigDict, Field

from stageflow.metrics_window import MetricsWindow
from stageflow.schemas.pipeline import RollbackCondition, RollbackPolicy

logger = structlog.get_logger(__name__)


class RollbackDecision(BaseModel):
    """Outcome of evaluating a rollback policy.

    Attributes:
        should_rollback: Roll back now (policy enabled, automatic, and breached).
        breaches: Every sustained-breaching condition, in policy order.
        deferred: Breaches exist but the policy leaves the decision to an operator.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    should_rollback: bool = Field(default=False)
    breaches: tuple[RollbackCondition, ...] = Field(default=())
    deferred: bool = Field(default=False)

    @property
    def breached(self) -> bool:
        return bool(self.breaches)

    def astuple(self) -> tuple[bool, list[RollbackCondition]]:
        """Return ``(should_rollback, breaches)``."""
        return self.should_rollback, list(self.breaches)


class RollbackEvaluator:
    """Evaluates a RollbackPolicy against a MetricsWindow."""

    def __init__(self) -> None:
        self._log = logger.bind(component="rollback_evaluator")

    def should_rollback(
        self,
        policy: RollbackPolicy,
        window: MetricsWindow,
        now: datetime,
    ) -> RollbackDecision:
        """Decide whether ``policy`` calls for a rollback at ``now``.

        Args:
            policy: Rollback rules.
            window: Metric samples recorded for the stage.
            now: Evaluation time.

        Returns:
            The decision. A disabled policy never reports breaches.
        """
        if not policy.enabled:
            return RollbackDecision()

        breaches = tuple(
            condition
            for condition in policy.conditions
            if window.sustained_breach(condition, now)
        )
        if not breaches:
            return RollbackDecision()

        decision = RollbackDecision(
            should_rollback=policy.automatic,
            breaches=breaches,
            deferred=not policy.automatic,
        )
        self._log.warning(
            "rollback_conditions_breached",
            breaches=[condition.describe() for condition in breaches],
            automatic=policy.automatic,
        )
        return decision


__all__ = ["RollbackDecision", "RollbackEvaluator"]
