"""
NotificationRouter — severity → channel set, then best-effort fan-out.

Channel selection depends only on the payload severity (never on whether it
describes an alert, an incident or a system event):

  critical → email + sms + webhook
  high     → email + webhook
  medium   → webhook
  low      → webhook

intersected with the channels enabled in the injected NotificationConfig.
Slack, when enabled, is added for every severity.

dispatch() hands the payload to each selected channel's Notifier
independently. A failing channel is logged and reported in the
DispatchResult; it never blocks the other channels and never raises.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Optional

from pydantic import BaseModel

from ddos_guard.config import Settings
from ddos_guard.errors import NotificationDeliveryError
from ddos_guard.models.alert import Alert
from ddos_guard.models.incident import Incident
from ddos_guard.models.notification import (
    DispatchResult,
    NotificationChannel,
    NotificationPayload,
    NotificationType,
)
from ddos_guard.models.traffic import Severity
from ddos_guard.notifications.notifiers import Notifier
from ddos_guard.utils.templates import render_notification

logger = logging.getLogger(__name__)

SEVERITY_CHANNELS: dict[Severity, frozenset[NotificationChannel]] = {
    Severity.CRITICAL: frozenset(
        {NotificationChannel.EMAIL, NotificationChannel.SMS, NotificationChannel.WEBHOOK}
    ),
    Severity.HIGH: frozenset({NotificationChannel.EMAIL, NotificationChannel.WEBHOOK}),
    Severity.MEDIUM: frozenset({NotificationChannel.WEBHOOK}),
    Severity.LOW: frozenset({NotificationChannel.WEBHOOK}),
}


class NotificationConfig(BaseModel):
    """Which channels may be used. Passed to the router at construction."""

    email: bool = True
    sms: bool = True
    webhook: bool = True
    slack: bool = False
    timeout_seconds: float = 5.0

    @classmethod
    def from_settings(cls, settings: Settings) -> NotificationConfig:
        return cls(
            email=settings.notify_email,
            sms=settings.notify_sms,
            webhook=settings.notify_webhook,
            slack=settings.notify_slack,
            timeout_seconds=settings.notification_timeout_seconds,
        )

    def enabled(self, channel: NotificationChannel) -> bool:
        return getattr(self, channel.value)


class NotificationRouter:
    def __init__(
        self,
        config: NotificationConfig,
        notifiers: Mapping[NotificationChannel, Notifier],
    ) -> None:
        self.config = config
        self.notifiers = dict(notifiers)

    def route(self, payload: NotificationPayload) -> frozenset[NotificationChannel]:
        channels = {c for c in SEVERITY_CHANNELS[payload.severity] if self.config.enabled(c)}
        if self.config.slack:
            channels.add(NotificationChannel.SLACK)
        return frozenset(channels)

    async def _deliver(self, channel: NotificationChannel, payload: NotificationPayload) -> None:
        notifier = self.notifiers.get(channel)
        if notifier is None:
            raise NotificationDeliveryError(channel.value, "no notifier configured")
        try:
            await asyncio.wait_for(notifier.send(payload), timeout=self.config.timeout_seconds)
        except NotificationDeliveryError:
            raise
        except asyncio.TimeoutError as e:
            raise NotificationDeliveryError(
                channel.value, f"timed out after {self.config.timeout_seconds}s"
            ) from e
        except Exception as e:
            raise NotificationDeliveryError(channel.value, str(e)) from e

    async def dispatch(self, payload: NotificationPayload) -> DispatchResult:
        """Deliver *payload* on every routed channel. Never raises."""
        # sorted for stable log and result ordering
        channels = sorted(self.route(payload), key=lambda c: c.value)

        logger.info(
            "notification_router.dispatch",
            extra={
                "type": payload.type.value,
                "severity": payload.severity.value,
                "title": payload.title,
                "channels": [c.value for c in channels],
            },
        )

        outcomes = await asyncio.gather(
            *[self._deliver(channel, payload) for channel in channels],
            return_exceptions=True,
        )

        result = DispatchResult()
        for channel, outcome in zip(channels, outcomes):
            if isinstance(outcome, NotificationDeliveryError):
                result.delivery_errors[channel] = outcome.reason
                logger.warning(
                    "notification_router.delivery_failed",
                    extra={"channel": channel.value, "error": outcome.reason},
                )
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                result.delivered_to.append(channel)

        return result


# ---------------------------------------------------------------------------
# Payload builders
# ---------------------------------------------------------------------------

def alert_payload(alert: Alert, event: str) -> NotificationPayload:
    """Build the payload for an alert creation or transition (*event*)."""
    attack_type = alert.metadata.get("attack_type")
    source_ips = alert.metadata.get("source_ips", [])
    title, message = render_notification(
        "alert", alert=alert, event=event, attack_type=attack_type, source_ips=source_ips
    )
    return NotificationPayload(
        type=NotificationType.ALERT,
        severity=alert.severity,
        title=title,
        message=message,
        metadata={
            "alert_id": alert.id,
            "event": event,
            "status": alert.status.value,
            "source": alert.source,
            "target_systems": sorted(alert.affected_systems),
            "source_ips": list(source_ips),
            "attack_type": attack_type,
            "timestamp": alert.updated_at.isoformat(),
        },
    )


def incident_payload(incident: Incident, event: str) -> NotificationPayload:
    title, message = render_notification("incident", incident=incident, event=event)
    last = incident.last_entry
    return NotificationPayload(
        type=NotificationType.INCIDENT,
        severity=incident.severity,
        title=title,
        message=message,
        metadata={
            "incident_id": incident.id,
            "event": event,
            "status": incident.status.value,
            "affected_systems": sorted(incident.affected_systems),
            "timestamp": (last.timestamp if last else incident.created_at).isoformat(),
        },
    )


def system_payload(
    system: str,
    issue: str,
    severity: Severity,
    metadata: Optional[dict[str, Any]] = None,
) -> NotificationPayload:
    """Payload for an operational problem in the detection system itself."""
    title, message = render_notification("system", system=system, issue=issue)
    return NotificationPayload(
        type=NotificationType.SYSTEM,
        severity=severity,
        title=title,
        message=message,
        metadata={"system": system, "issue": issue, **(metadata or {})},
    )
