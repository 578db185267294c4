"""Throughput and alerting bookkeeping for the job queue."""

import time
from collections.abc import Callable
from typing import Any

from app.features.queue.domain import JobTypeCounts


class QueueMetrics:
    """
    Turns store counts into a metrics snapshot with alert flags.

    Throughput comes from completion timestamps in the store, so any process
    sharing the store (an API that runs no workers included) reports it.
    """

    def __init__(
        self,
        *,
        window_seconds: float,
        pending_threshold: int,
        failed_threshold: int,
        alert_cooldown_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_seconds = window_seconds
        self.pending_threshold = pending_threshold
        self.failed_threshold = failed_threshold
        self.alert_cooldown_seconds = alert_cooldown_seconds
        self._clock = clock
        self._last_alert_at: float | None = None

    def throughput_per_minute(self, completed: int) -> float:
        """Completed jobs per minute over the trailing window."""
        return round(completed / (self.window_seconds / 60.0), 3)

    def evaluate_alerts(self, counts: dict[str, JobTypeCounts]) -> list[str]:
        alerts = []
        for job_type, bucket in sorted(counts.items()):
            if bucket.pending > self.pending_threshold:
                alerts.append(
                    f"{job_type}: {bucket.pending} pending jobs exceeds threshold {self.pending_threshold}"
                )
            if bucket.failed > self.failed_threshold:
                alerts.append(
                    f"{job_type}: {bucket.failed} failed jobs exceeds threshold {self.failed_threshold}"
                )
        return alerts

    def should_emit_alert(self) -> bool:
        now = self._clock()
        if self._last_alert_at is not None and now - self._last_alert_at < self.alert_cooldown_seconds:
            return False
        self._last_alert_at = now
        return True

    def snapshot(self, counts: dict[str, JobTypeCounts], completed: dict[str, int]) -> dict[str, Any]:
        """``completed`` holds per-type completions inside the window."""
        job_types = sorted(set(counts) | set(completed))
        per_type = {}
        totals = JobTypeCounts()
        for job_type in job_types:
            bucket = counts.get(job_type, JobTypeCounts())
            per_type[job_type] = {
                **bucket.as_dict(),
                "throughput_per_minute": self.throughput_per_minute(completed.get(job_type, 0)),
            }
            totals.pending += bucket.pending
            totals.processing += bucket.processing
            totals.completed += bucket.completed
            totals.failed += bucket.failed

        alerts = self.evaluate_alerts(counts)
        return {
            "job_types": per_type,
            "totals": totals.as_dict(),
            "throughput_per_minute": self.throughput_per_minute(sum(completed.values())),
            "window_seconds": self.window_seconds,
            "alerts": alerts,
            "alerting": bool(alerts),
        }
