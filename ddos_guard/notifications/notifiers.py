"""
Channel notifiers — the external side of notification delivery.

The router only decides which channels to use; a Notifier performs the
hand-off for one channel. Email and SMS delivery live outside this service,
so those channels get a LoggingNotifier that records the hand-off. Webhook
and Slack notifiers make real calls; both client libraries are blocking,
so calls run in a worker thread.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

import requests
from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError

from ddos_guard.config import Settings
from ddos_guard.errors import NotificationDeliveryError
from ddos_guard.models.notification import NotificationChannel, NotificationPayload
from ddos_guard.models.traffic import Severity

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def send(self, payload: NotificationPayload) -> None:
        """Deliver *payload*.

        Raises:
            NotificationDeliveryError: If the channel rejected the message.
        """
        ...


class LoggingNotifier:
    """Records the hand-off for channels delivered by an external system."""

    def __init__(self, channel: NotificationChannel) -> None:
        self.channel = channel

    async def send(self, payload: NotificationPayload) -> None:
        logger.info(
            "notifier.handoff",
            extra={
                "channel": self.channel.value,
                "type": payload.type.value,
                "severity": payload.severity.value,
                "title": payload.title,
            },
        )


class WebhookNotifier:
    """POSTs the payload as JSON to a single webhook URL."""

    def __init__(self, url: str, timeout_seconds: float = 5.0) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds

    def _post(self, body: dict[str, Any]) -> None:
        response = requests.post(self.url, json=body, timeout=self.timeout_seconds)
        response.raise_for_status()

    async def send(self, payload: NotificationPayload) -> None:
        try:
            await asyncio.to_thread(self._post, payload.model_dump(mode="json"))
        except requests.RequestException as e:
            raise NotificationDeliveryError(NotificationChannel.WEBHOOK.value, str(e)) from e


_SEVERITY_EMOJI = {
    Severity.CRITICAL: "🔴",
    Severity.HIGH: "🟠",
    Severity.MEDIUM: "🟡",
    Severity.LOW: "🟢",
}


def format_slack_blocks(payload: NotificationPayload) -> list[dict[str, Any]]:
    """Format a notification payload as Slack Block Kit blocks."""
    emoji = _SEVERITY_EMOJI[payload.severity]
    blocks: list[dict[str, Any]] = [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": f"🚨 {payload.title[:140]}", "emoji": True},
        },
        {
            "type": "section",
            "fields": [
                {
                    "type": "mrkdwn",
                    "text": f"*Severity*\n{emoji} {payload.severity.value.capitalize()}",
                },
                {"type": "mrkdwn", "text": f"*Type*\n{payload.type.value}"},
            ],
        },
        {"type": "section", "text": {"type": "mrkdwn", "text": payload.message[:2900]}},
    ]

    record_id = payload.metadata.get("alert_id") or payload.metadata.get("incident_id")
    if record_id:
        blocks.append(
            {"type": "context", "elements": [{"type": "mrkdwn", "text": f"ID: `{record_id}`"}]}
        )
    return blocks


class SlackNotifier:
    """Posts to a Slack channel with the Web API."""

    def __init__(self, client: WebClient, channel: str) -> None:
        self.client = client
        self.channel = channel

    def _post(self, payload: NotificationPayload) -> None:
        self.client.chat_postMessage(
            channel=self.channel,
            text=payload.title,   # fallback for notifications
            blocks=format_slack_blocks(payload),
        )

    async def send(self, payload: NotificationPayload) -> None:
        try:
            await asyncio.to_thread(self._post, payload)
        except SlackApiError as e:
            raise NotificationDeliveryError(
                NotificationChannel.SLACK.value, e.response.get("error", str(e))
            ) from e


def build_notifiers(settings: Settings) -> dict[NotificationChannel, Notifier]:
    """Wire one notifier per channel from settings.

    Webhook falls back to logging when no URL is configured. Slack is only
    wired when a bot token is present; the router reports a delivery error
    if Slack is enabled without one.
    """
    notifiers: dict[NotificationChannel, Notifier] = {
        NotificationChannel.EMAIL: LoggingNotifier(NotificationChannel.EMAIL),
        NotificationChannel.SMS: LoggingNotifier(NotificationChannel.SMS),
    }

    if settings.is_configured("webhook"):
        notifiers[NotificationChannel.WEBHOOK] = WebhookNotifier(
            settings.webhook_url, timeout_seconds=settings.notification_timeout_seconds
        )
    else:
        notifiers[NotificationChannel.WEBHOOK] = LoggingNotifier(NotificationChannel.WEBHOOK)

    if settings.is_configured("slack"):
        notifiers[NotificationChannel.SLACK] = SlackNotifier(
            WebClient(token=settings.slack_bot_token), settings.slack_alert_channel
        )
    elif settings.notify_slack:
        logger.warning("notifiers.slack_not_configured", extra={"missing": "SLACK_BOT_TOKEN"})

    return notifiers
