"""Time-windowed metric samples for rollback evaluation.

Samples are kept per metric in the order they were recorded; recording a
sample older than the latest one for that metric is rejected, so the
buffer never needs reordering.

A condition is a sustained breach at ``now`` when:
    - at least one sample lies in ``[now - sustained_seconds, now]``,
    - every sample in that range breaches the condition, and
    - the run of breaching samples ending at the newest in-range sample
      started no later than ``now - sustained_seconds``.

A single good sample inside the range resets the breach, and a run that
has not yet lasted the full duration does not count.

Example:
    >>> window = MetricsWindow()
    >>> window.record("error_rate", 8.0, t0)
    >>> window.record("error_rate", 8.5, t0 + timedelta(seconds=30))
    >>> window.sustained_breach(condition, t0 + timedelta(seconds=30))
    True
"""

from __future__ import annotations

from bisect import bisect_left
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta

from stageflow.schemas.pipeline import RollbackCondition


@dataclass(frozen=True)
class Sample:
    """One recorded metric value."""

    value: float
    at: datetime


class MetricsWindow:
    """Rolling buffer of metric samples, keyed by metric name.

    Args:
        retention: Optional age limit; older samples are pruned on record.
    """

    def __init__(self, retention: timedelta | None = None) -> None:
        self._samples: dict[str, list[Sample]] = {}
        self._retention = retention

    def record(self, metric: str, value: float, at: datetime) -> None:
        """Append a sample.

        Args:
            metric: Metric name, e.g. ``error_rate``.
            value: Observed value.
            at: Observation time.

        Raises:
            ValueError: If ``at`` is earlier than the latest sample of ``metric``.
        """
        series = self._samples.setdefault(metric, [])
        if series and at < series[-1].at:
            raise ValueError(
                f"Sample for {metric} at {at.isoformat()} is older than "
                f"latest sample at {series[-1].at.isoformat()}"
            )
        series.append(Sample(value=value, at=at))
        if self._retention is not None:
            cutoff = at - self._retention
            while series and series[0].at < cutoff:
                series.pop(0)

    def record_many(self, values: dict[str, float], at: datetime) -> None:
        """Record several metrics observed at the same moment."""
        for metric, value in values.items():
            self.record(metric, value, at)

    def samples(self, metric: str, since: datetime | None = None) -> list[Sample]:
        """Return samples for ``metric``, optionally only those at or after ``since``."""
        series = self._samples.get(metric, [])
        if since is None:
            return list(series)
        start = bisect_left([s.at for s in series], since)
        return series[start:]

    def latest(self, metric: str) -> Sample | None:
        series = self._samples.get(metric)
        return series[-1] if series else None

    @property
    def metrics(self) -> list[str]:
        return sorted(self._samples)

    def sustained_breach(self, condition: RollbackCondition, now: datetime) -> bool:
        """Return True if ``condition`` has held continuously for its full duration.

        Args:
            condition: Rollback condition to evaluate.
            now: Evaluation time; samples after ``now`` are ignored.

        Returns:
            True only for a sustained breach. An empty window is never a breach.
        """
        series = [s for s in self._samples.get(condition.metric, []) if s.at <= now]
        window_start = now - timedelta(seconds=condition.sustained_seconds)
        in_window = [s for s in series if s.at >= window_start]
        if not in_window:
            return False
        if not all(condition.is_breached_by(s.value) for s in in_window):
            return False

        run_start = _breach_run_start(condition, series)
        return run_start is not None and run_start <= window_start


def _breach_run_start(condition: RollbackCondition, series: Iterable[Sample]) -> datetime | None:
    """Time of the first sample in the trailing run of breaching samples."""
    run_start: datetime | None = None
    for sample in series:
        if condition.is_breached_by(sample.value):
            if run_start is None:
                run_start = sample.at
        else:
            run_start = None
    return run_start


__all__ = ["MetricsWindow", "Sample"]
