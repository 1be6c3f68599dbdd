"""
Notification models — outbound payloads and per-dispatch results.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from ddos_guard.models.traffic import Severity


class NotificationType(str, Enum):
    ALERT = "alert"
    INCIDENT = "incident"
    SYSTEM = "system"


class NotificationChannel(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    WEBHOOK = "webhook"
    SLACK = "slack"


class NotificationPayload(BaseModel):
    type: NotificationType
    severity: Severity
    title: str
    message: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class DispatchResult(BaseModel):
    delivered_to: list[NotificationChannel] = Field(default_factory=list)
    delivery_errors: dict[NotificationChannel, str] = Field(default_factory=dict)
