"""
IncidentEngine — incident records, their state machine and timelines.

  open ──investigate──▶ investigating ──resolve──▶ resolved
    └──────────────────resolve─────────────────────▲

Every transition appends a timeline entry. Free-text notes can be appended
in any state without changing status. Timeline timestamps never go
backwards: an explicit note timestamp earlier than the last entry raises
TimelineOrderError, while transitions stamp max(now, last entry) so clock
skew cannot reject a legitimate status change.

Incidents are opened explicitly. open_from_alert() is the manual escalation
path; nothing opens incidents automatically from alerts.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional
from uuid import uuid4

from ddos_guard.errors import IllegalTransitionError, TimelineOrderError
from ddos_guard.lifecycle.base import RecordEngine, utcnow
from ddos_guard.models.alert import Alert
from ddos_guard.models.incident import Incident, IncidentStats, IncidentStatus, TimelineEntry
from ddos_guard.models.traffic import Severity
from ddos_guard.notifications.router import NotificationRouter, incident_payload

logger = logging.getLogger(__name__)

LIST_LIMIT = 20


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

def append_timeline(incident: Incident, entry: TimelineEntry) -> Incident:
    last = incident.last_entry
    if last is not None and entry.timestamp < last.timestamp:
        raise TimelineOrderError(
            f"Timeline entry at {entry.timestamp.isoformat()} precedes the last entry "
            f"at {last.timestamp.isoformat()} on incident '{incident.id}'"
        )
    return incident.model_copy(update={"timeline": incident.timeline + (entry,)})


def _transition_time(incident: Incident, now: datetime) -> datetime:
    last = incident.last_entry
    return max(now, last.timestamp) if last is not None else now


def investigate_incident(incident: Incident, now: datetime, actor: str) -> Incident:
    if incident.status is not IncidentStatus.OPEN:
        raise IllegalTransitionError("investigate", incident)
    stamped = _transition_time(incident, now)
    updated = append_timeline(
        incident, TimelineEntry(timestamp=stamped, action="Investigation started", actor=actor)
    )
    return updated.model_copy(update={"status": IncidentStatus.INVESTIGATING})


def resolve_incident(
    incident: Incident, now: datetime, actor: str, note: Optional[str] = None
) -> Incident:
    if incident.status is IncidentStatus.RESOLVED:
        raise IllegalTransitionError("resolve", incident)
    stamped = _transition_time(incident, now)
    action = f"Incident resolved: {note}" if note else "Incident resolved"
    updated = append_timeline(incident, TimelineEntry(timestamp=stamped, action=action, actor=actor))
    return updated.model_copy(update={"status": IncidentStatus.RESOLVED, "resolved_at": stamped})


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class IncidentEngine(RecordEngine[Incident]):
    record_kind = "incident"

    def __init__(
        self,
        router: Optional[NotificationRouter] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(router=router, clock=clock)

    async def open_incident(
        self,
        title: str,
        description: str,
        severity: Severity,
        affected_systems: Iterable[str] = (),
        actor: str = "system",
        source_alert_id: Optional[str] = None,
    ) -> Incident:
        now = self._clock()
        incident = Incident(
            id=f"incident-{uuid4().hex[:12]}",
            title=title,
            description=description,
            severity=severity,
            status=IncidentStatus.OPEN,
            affected_systems=frozenset(affected_systems),
            created_at=now,
            timeline=(TimelineEntry(timestamp=now, action="Incident created", actor=actor),),
            source_alert_id=source_alert_id,
        )
        self._store(incident.id, incident)

        logger.info(
            "incident_engine.created",
            extra={"incident_id": incident.id, "severity": severity.value, "actor": actor},
        )
        self._notify(incident_payload(incident, "opened"))
        return incident

    async def open_from_alert(self, alert: Alert, actor: str) -> Incident:
        """Escalate an alert into a new incident by hand."""
        return await self.open_incident(
            title=alert.title,
            description=alert.description,
            severity=alert.severity,
            affected_systems=alert.affected_systems,
            actor=actor,
            source_alert_id=alert.id,
        )

    async def _apply(
        self, incident_id: str, event: Optional[str], apply: Callable[[Incident, datetime], Incident]
    ) -> Incident:
        async with self._lock_for(incident_id):
            current = self._records[incident_id]
            updated = apply(current, self._clock())
            self._store(incident_id, updated)

        if event is not None:
            logger.info(
                "incident_engine.transition",
                extra={
                    "incident_id": incident_id,
                    "event": event,
                    "from_status": current.status.value,
                    "to_status": updated.status.value,
                },
            )
            self._notify(incident_payload(updated, event))
        return updated

    async def investigate(self, incident_id: str, actor: str) -> Incident:
        """Raises IllegalTransitionError unless the incident is open."""
        return await self._apply(
            incident_id, "investigating", lambda i, now: investigate_incident(i, now, actor)
        )

    async def resolve(self, incident_id: str, actor: str, note: Optional[str] = None) -> Incident:
        """Raises IllegalTransitionError if the incident is already resolved."""
        return await self._apply(
            incident_id, "resolved", lambda i, now: resolve_incident(i, now, actor, note)
        )

    async def add_note(
        self,
        incident_id: str,
        action: str,
        actor: str,
        timestamp: Optional[datetime] = None,
    ) -> Incident:
        """Append an operational note without changing status.

        Raises:
            TimelineOrderError: If *timestamp* is earlier than the last entry.
        """
        if timestamp is not None and timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)

        def _append(incident: Incident, now: datetime) -> Incident:
            entry = TimelineEntry(timestamp=timestamp or now, action=action, actor=actor)
            return append_timeline(incident, entry)

        updated = await self._apply(incident_id, None, _append)
        logger.debug("incident_engine.note_added", extra={"incident_id": incident_id, "actor": actor})
        return updated

    def list_incidents(
        self,
        status: Optional[IncidentStatus] = None,
        limit: int = LIST_LIMIT,
    ) -> list[Incident]:
        """Newest first, capped at *limit* (never more than LIST_LIMIT)."""
        incidents = [i for i in self._records.values() if status is None or i.status is status]
        incidents.sort(key=lambda i: i.created_at, reverse=True)
        return incidents[: min(limit, LIST_LIMIT)]

    def stats(self) -> IncidentStats:
        incidents = list(self._records.values())
        return IncidentStats(
            total=len(incidents),
            open=sum(1 for i in incidents if i.status is IncidentStatus.OPEN),
            investigating=sum(1 for i in incidents if i.status is IncidentStatus.INVESTIGATING),
            resolved=sum(1 for i in incidents if i.status is IncidentStatus.RESOLVED),
        )
