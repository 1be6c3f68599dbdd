"""
AlertEngine — creation, deduplication and the alert state machine.

  active ──acknowledge──▶ acknowledged ──resolve──▶ resolved
     └──────────────────resolve─────────────────────▲

resolved is terminal. The transition functions below are pure: they take an
Alert and return a new one, or raise IllegalTransitionError. The engine
applies them under a per-alert lock so concurrent acknowledge/resolve
requests on one alert are serialized.

Deduplication: a detection whose (source, affected_systems) key matches an
active alert updated within the dedup window refreshes that alert instead
of creating a new one. Refreshes do not notify; creations and transitions
each notify exactly once.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional
from uuid import uuid4

from ddos_guard.errors import IllegalTransitionError
from ddos_guard.lifecycle.base import RecordEngine, utcnow
from ddos_guard.models.alert import Alert, AlertStats, AlertStatus
from ddos_guard.models.traffic import Severity
from ddos_guard.notifications.router import NotificationRouter, alert_payload

logger = logging.getLogger(__name__)

DEFAULT_DEDUP_WINDOW = timedelta(minutes=5)
LIST_LIMIT = 50


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

def acknowledge_alert(alert: Alert, now: datetime, assignee: Optional[str] = None) -> Alert:
    if alert.status is not AlertStatus.ACTIVE:
        raise IllegalTransitionError("acknowledge", alert)
    return alert.model_copy(
        update={
            "status": AlertStatus.ACKNOWLEDGED,
            "assigned_to": assignee or alert.assigned_to,
            "updated_at": now,
        }
    )


def resolve_alert(alert: Alert, now: datetime, assignee: Optional[str] = None) -> Alert:
    if alert.status is AlertStatus.RESOLVED:
        raise IllegalTransitionError("resolve", alert)
    return alert.model_copy(
        update={
            "status": AlertStatus.RESOLVED,
            "assigned_to": assignee or alert.assigned_to,
            "updated_at": now,
        }
    )


def assign_alert(alert: Alert, now: datetime, assignee: Optional[str]) -> Alert:
    """Change the assignee. Not a status transition; allowed until resolved."""
    if alert.status is AlertStatus.RESOLVED:
        raise IllegalTransitionError("assign", alert)
    return alert.model_copy(update={"assigned_to": assignee, "updated_at": now})


def _merge_actions(existing: tuple[str, ...], new: Iterable[str]) -> tuple[str, ...]:
    merged = list(existing)
    for action in new:
        if action not in merged:
            merged.append(action)
    return tuple(merged)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class AlertEngine(RecordEngine[Alert]):
    record_kind = "alert"

    def __init__(
        self,
        router: Optional[NotificationRouter] = None,
        dedup_window: timedelta = DEFAULT_DEDUP_WINDOW,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(router=router, clock=clock)
        self.dedup_window = dedup_window
        self._create_lock = asyncio.Lock()

    def _find_duplicate(self, source: str, systems: frozenset[str], now: datetime) -> Optional[Alert]:
        for alert in self._records.values():
            if (
                alert.status is AlertStatus.ACTIVE
                and alert.dedup_key == (source, systems)
                and now - alert.updated_at <= self.dedup_window
            ):
                return alert
        return None

    async def raise_alert(
        self,
        title: str,
        description: str,
        severity: Severity,
        source: str,
        affected_systems: Iterable[str],
        response_actions: Iterable[str] = (),
        metadata: Optional[dict[str, Any]] = None,
    ) -> Alert:
        """Create a new active alert, or refresh a matching active one.

        Raises:
            pydantic.ValidationError: If affected_systems is empty.
        """
        systems = frozenset(affected_systems)
        actions = tuple(response_actions)

        async with self._create_lock:
            now = self._clock()
            duplicate = self._find_duplicate(source, systems, now)

            if duplicate is not None:
                async with self._locks[duplicate.id]:
                    current = self._records[duplicate.id]
                    if current.status is AlertStatus.ACTIVE:
                        refreshed = current.model_copy(
                            update={
                                "updated_at": now,
                                "response_actions": _merge_actions(current.response_actions, actions),
                            }
                        )
                        self._store(refreshed.id, refreshed)
                        logger.info(
                            "alert_engine.deduplicated",
                            extra={"alert_id": refreshed.id, "source": source},
                        )
                        return refreshed

            alert = Alert(
                id=f"alert-{uuid4().hex[:12]}",
                title=title,
                description=description,
                severity=severity,
                status=AlertStatus.ACTIVE,
                source=source,
                affected_systems=systems,
                response_actions=_merge_actions((), actions),
                created_at=now,
                updated_at=now,
                metadata=metadata or {},
            )
            self._store(alert.id, alert)

        logger.info(
            "alert_engine.created",
            extra={"alert_id": alert.id, "severity": alert.severity.value, "source": source},
        )
        self._notify(alert_payload(alert, "created"))
        return alert

    async def _transition(
        self, alert_id: str, event: str, apply: Callable[[Alert, datetime], Alert], notify: bool = True
    ) -> Alert:
        async with self._lock_for(alert_id):
            current = self._records[alert_id]
            updated = apply(current, self._clock())
            self._store(alert_id, updated)

        logger.info(
            "alert_engine.transition",
            extra={
                "alert_id": alert_id,
                "event": event,
                "from_status": current.status.value,
                "to_status": updated.status.value,
            },
        )
        if notify:
            self._notify(alert_payload(updated, event))
        return updated

    async def acknowledge(self, alert_id: str, assignee: Optional[str] = None) -> Alert:
        """Raises IllegalTransitionError unless the alert is active."""
        return await self._transition(
            alert_id, "acknowledged", lambda a, now: acknowledge_alert(a, now, assignee)
        )

    async def resolve(self, alert_id: str, assignee: Optional[str] = None) -> Alert:
        """Raises IllegalTransitionError if the alert is already resolved."""
        return await self._transition(
            alert_id, "resolved", lambda a, now: resolve_alert(a, now, assignee)
        )

    async def assign(self, alert_id: str, assignee: Optional[str]) -> Alert:
        return await self._transition(
            alert_id, "assigned", lambda a, now: assign_alert(a, now, assignee), notify=False
        )

    async def update(
        self,
        alert_id: str,
        status: Optional[AlertStatus] = None,
        assigned_to: Optional[str] = None,
    ) -> Alert:
        """Apply a record update {status, assigned_to} through the state machine.

        Requesting the status the alert already has is an illegal transition,
        except for a pure re-assignment with status omitted.
        """
        alert = self.get(alert_id)
        if status is AlertStatus.ACKNOWLEDGED:
            return await self.acknowledge(alert_id, assignee=assigned_to)
        if status is AlertStatus.RESOLVED:
            return await self.resolve(alert_id, assignee=assigned_to)
        if status is AlertStatus.ACTIVE:
            raise IllegalTransitionError("reactivate", alert)
        if assigned_to is not None:
            return await self.assign(alert_id, assigned_to)
        return alert

    def list_alerts(
        self,
        severity: Optional[Severity] = None,
        status: Optional[AlertStatus] = None,
        limit: int = LIST_LIMIT,
    ) -> list[Alert]:
        """Newest first, capped at *limit* (never more than LIST_LIMIT)."""
        alerts = [
            a
            for a in self._records.values()
            if (severity is None or a.severity is severity) and (status is None or a.status is status)
        ]
        alerts.sort(key=lambda a: a.created_at, reverse=True)
        return alerts[: min(limit, LIST_LIMIT)]

    def stats(self) -> AlertStats:
        alerts = list(self._records.values())
        return AlertStats(
            total=len(alerts),
            active=sum(1 for a in alerts if a.status is AlertStatus.ACTIVE),
            acknowledged=sum(1 for a in alerts if a.status is AlertStatus.ACKNOWLEDGED),
            resolved=sum(1 for a in alerts if a.status is AlertStatus.RESOLVED),
            by_severity={s: sum(1 for a in alerts if a.severity is s) for s in Severity},
        )
