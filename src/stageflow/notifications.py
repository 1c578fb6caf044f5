"""Notification routing for pipeline lifecycle events.

Routes PipelineNotifications to configured channels based on the events a
pipeline subscribes to and each channel's minimum severity. Delivery is
fire-and-forget: notifier failures are logged, never propagated into the
pipeline.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from stageflow.interfaces import Notifier
from stageflow.schemas.pipeline import (
    ChannelType,
    NotificationChannel,
    NotificationEvent,
    NotificationSettings,
    Severity,
)

logger = structlog.get_logger(__name__)

# Severity ordering for comparison
SEVERITY_ORDER: dict[Severity, int] = {
    Severity.INFO: 0,
    Severity.WARNING: 1,
    Severity.ERROR: 2,
    Severity.CRITICAL: 3,
}

EVENT_SEVERITY: dict[NotificationEvent, Severity] = {
    NotificationEvent.PIPELINE_START: Severity.INFO,
    NotificationEvent.STAGE_SUCCESS: Severity.INFO,
    NotificationEvent.STAGE_FAILURE: Severity.ERROR,
    NotificationEvent.PIPELINE_SUCCESS: Severity.INFO,
    NotificationEvent.PIPELINE_FAILURE: Severity.CRITICAL,
    NotificationEvent.ROLLBACK_START: Severity.WARNING,
    NotificationEvent.ROLLBACK_SUCCESS: Severity.WARNING,
}


class PipelineNotification(BaseModel):
    """A lifecycle event ready for delivery."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    event: NotificationEvent = Field(..., description="Lifecycle event")
    severity: Severity = Field(..., description="Event severity")
    pipeline: str = Field(..., description="Pipeline name")
    execution_id: str | None = Field(default=None)
    environment: str | None = Field(default=None)
    message: str = Field(..., description="Human-readable summary")
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(..., description="When the event happened")


def build_notification(
    event: NotificationEvent,
    *,
    pipeline: str,
    message: str,
    timestamp: datetime,
    execution_id: str | None = None,
    environment: str | None = None,
    details: dict[str, Any] | None = None,
) -> PipelineNotification:
    """Create a notification with the severity mapped from ``event``."""
    return PipelineNotification(
        event=event,
        severity=EVENT_SEVERITY[event],
        pipeline=pipeline,
        execution_id=execution_id,
        environment=environment,
        message=message,
        details=details or {},
        timestamp=timestamp,
    )


class LogNotifier(Notifier):
    """Notifier that writes notifications to the structured log."""

    def __init__(self) -> None:
        self._log = logger.bind(component="log_notifier")

    async def send(self, notification: PipelineNotification, channel: NotificationChannel) -> bool:
        self._log.info(
            "pipeline_notification",
            notification_event=notification.event.value,
            severity=notification.severity.value,
            pipeline=notification.pipeline,
            execution_id=notification.execution_id,
            environment=notification.environment,
            channel=channel.type.value,
            target=channel.target,
            message=notification.message,
        )
        return True


class NotificationRouter:
    """Routes notifications to channels based on subscriptions and severity.

    Features:
    - Event filtering: only events listed in the pipeline's settings are sent
    - Severity-based routing: channels receive events >= their min_severity
    - Fire-and-forget: notifier failures logged, never propagated

    Args:
        notifiers: Notifier per channel type. Channel types without one use
            ``default``.
        default: Fallback notifier (a LogNotifier if not given).
    """

    def __init__(
        self,
        notifiers: dict[ChannelType, Notifier] | None = None,
        default: Notifier | None = None,
    ) -> None:
        self._notifiers = dict(notifiers or {})
        self._default = default or LogNotifier()
        self._log = logger.bind(component="notification_router")

    async def route(
        self,
        notification: PipelineNotification,
        settings: NotificationSettings,
    ) -> dict[str, bool]:
        """Deliver ``notification`` to every matching channel.

        Returns:
            Mapping of ``"<type>:<target>"`` to delivery success for channels
            that were attempted. Filtered channels are not included.
        """
        results: dict[str, bool] = {}
        if not settings.enabled or notification.event not in settings.events:
            return results

        event_order = SEVERITY_ORDER[notification.severity]
        for channel in settings.channels:
            if event_order < SEVERITY_ORDER[channel.min_severity]:
                continue

            key = f"{channel.type.value}:{channel.target}"
            notifier = self._notifiers.get(channel.type, self._default)
            try:
                success = await notifier.send(notification, channel)
                results[key] = success
                if not success:
                    self._log.warning(
                        "notification_delivery_failed",
                        channel=key,
                        notification_event=notification.event.value,
                    )
            except Exception as e:
                results[key] = False
                self._log.error(
                    "notification_delivery_error",
                    channel=key,
                    notification_event=notification.event.value,
                    error=str(e),
                )

        return results


__all__ = [
    "EVENT_SEVERITY",
    "SEVERITY_ORDER",
    "LogNotifier",
    "NotificationRouter",
    "PipelineNotification",
    "build_notification",
]
