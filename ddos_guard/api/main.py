"""
ddos-guard - Main API Server

FastAPI application exposing sample evaluation, alert and incident records,
and threat intelligence lookups over the detection core.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from ddos_guard.errors import (
    IllegalTransitionError,
    NoDetectorAvailableError,
    RecordNotFoundError,
    TimelineOrderError,
)
from ddos_guard.lifecycle.alerts import LIST_LIMIT as ALERT_LIST_LIMIT
from ddos_guard.lifecycle.incidents import LIST_LIMIT as INCIDENT_LIST_LIMIT
from ddos_guard.models.alert import Alert, AlertStats, AlertStatus
from ddos_guard.models.incident import Incident, IncidentStats, IncidentStatus
from ddos_guard.models.threat import FeedAnalysis, ThreatRecord
from ddos_guard.models.traffic import Severity, TrafficSample
from ddos_guard.pipeline import DetectionOutcome
from ddos_guard.service import ThreatDetectionService

logger = logging.getLogger(__name__)


# ============================================================================
# Request Models
# ============================================================================

class AlertCreateRequest(BaseModel):
    title: str
    description: str
    severity: Severity
    source: str
    affected_systems: list[str] = Field(min_length=1)
    response_actions: list[str] = Field(default_factory=list)


class AlertUpdateRequest(BaseModel):
    status: Optional[AlertStatus] = None
    assigned_to: Optional[str] = None


class IncidentCreateRequest(BaseModel):
    title: str
    description: str
    severity: Severity
    affected_systems: list[str] = Field(default_factory=list)
    actor: str = "analyst"


class IncidentEscalateRequest(BaseModel):
    alert_id: str
    actor: str = "analyst"


class IncidentActionRequest(BaseModel):
    actor: str
    note: Optional[str] = None


class TimelineNoteRequest(BaseModel):
    action: str
    actor: str
    timestamp: Optional[datetime] = None


class RefreshResponse(BaseModel):
    refreshed: bool
    threats: int
    stale: bool
    last_error: Optional[str] = None


# ============================================================================
# App Factory
# ============================================================================

def get_service(request: Request) -> ThreatDetectionService:
    return request.app.state.service


def create_app(service: Optional[ThreatDetectionService] = None) -> FastAPI:
    """Build the API. Without *service*, one is wired from Settings at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "service", None) is None:
            app.state.service = ThreatDetectionService.from_settings()
        await app.state.service.start()
        try:
            yield
        finally:
            await app.state.service.stop()

    app = FastAPI(
        title="ddos-guard API",
        description="Real-time network threat detection and alerting",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_routes(app)
    return app


def _not_found(e: RecordNotFoundError) -> HTTPException:
    return HTTPException(status_code=404, detail=str(e))


def _conflict(e: ValueError) -> HTTPException:
    return HTTPException(status_code=409, detail=str(e))


def _register_routes(app: FastAPI) -> None:

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    @app.get("/health")
    async def health_check(service: ThreatDetectionService = Depends(get_service)):
        """Detailed health check."""
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "detectors": [d.name for d in service.ensemble.detectors],
            "threat_intel_stale": service.cache.is_stale,
            "threat_intel_records": len(service.cache.snapshot),
        }

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    @app.post("/api/v1/evaluate", response_model=DetectionOutcome)
    async def evaluate_sample(
        sample: TrafficSample, service: ThreatDetectionService = Depends(get_service)
    ):
        """Score one traffic sample and raise an alert when warranted."""
        try:
            return await service.pipeline.process(sample)
        except NoDetectorAvailableError as e:
            raise HTTPException(status_code=503, detail=str(e))

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    @app.get("/api/v1/alerts", response_model=list[Alert])
    async def list_alerts(
        severity: Optional[Severity] = None,
        status: Optional[AlertStatus] = None,
        limit: int = Query(ALERT_LIST_LIMIT, ge=1, le=ALERT_LIST_LIMIT),
        service: ThreatDetectionService = Depends(get_service),
    ):
        return service.alerts.list_alerts(severity=severity, status=status, limit=limit)

    @app.get("/api/v1/alerts/stats", response_model=AlertStats)
    async def alert_stats(service: ThreatDetectionService = Depends(get_service)):
        return service.alerts.stats()

    @app.post("/api/v1/alerts", response_model=Alert, status_code=201)
    async def create_alert(
        request: AlertCreateRequest, service: ThreatDetectionService = Depends(get_service)
    ):
        return await service.alerts.raise_alert(**request.model_dump())

    @app.patch("/api/v1/alerts/{alert_id}", response_model=Alert)
    async def update_alert(
        alert_id: str,
        request: AlertUpdateRequest,
        service: ThreatDetectionService = Depends(get_service),
    ):
        try:
            return await service.alerts.update(
                alert_id, status=request.status, assigned_to=request.assigned_to
            )
        except RecordNotFoundError as e:
            raise _not_found(e)
        except IllegalTransitionError as e:
            raise _conflict(e)

    # ------------------------------------------------------------------
    # Incidents
    # ------------------------------------------------------------------

    @app.get("/api/v1/incidents", response_model=list[Incident])
    async def list_incidents(
        status: Optional[IncidentStatus] = None,
        limit: int = Query(INCIDENT_LIST_LIMIT, ge=1, le=INCIDENT_LIST_LIMIT),
        service: ThreatDetectionService = Depends(get_service),
    ):
        return service.incidents.list_incidents(status=status, limit=limit)

    @app.get("/api/v1/incidents/stats", response_model=IncidentStats)
    async def incident_stats(service: ThreatDetectionService = Depends(get_service)):
        return service.incidents.stats()

    @app.post("/api/v1/incidents", response_model=Incident, status_code=201)
    async def create_incident(
        request: IncidentCreateRequest, service: ThreatDetectionService = Depends(get_service)
    ):
        return await service.incidents.open_incident(**request.model_dump())

    @app.post("/api/v1/incidents/escalate", response_model=Incident, status_code=201)
    async def escalate_alert(
        request: IncidentEscalateRequest, service: ThreatDetectionService = Depends(get_service)
    ):
        try:
            alert = service.alerts.get(request.alert_id)
        except RecordNotFoundError as e:
            raise _not_found(e)
        return await service.incidents.open_from_alert(alert, actor=request.actor)

    @app.post("/api/v1/incidents/{incident_id}/investigate", response_model=Incident)
    async def investigate_incident(
        incident_id: str,
        request: IncidentActionRequest,
        service: ThreatDetectionService = Depends(get_service),
    ):
        try:
            return await service.incidents.investigate(incident_id, actor=request.actor)
        except RecordNotFoundError as e:
            raise _not_found(e)
        except IllegalTransitionError as e:
            raise _conflict(e)

    @app.post("/api/v1/incidents/{incident_id}/resolve", response_model=Incident)
    async def resolve_incident(
        incident_id: str,
        request: IncidentActionRequest,
        service: ThreatDetectionService = Depends(get_service),
    ):
        try:
            return await service.incidents.resolve(incident_id, actor=request.actor, note=request.note)
        except RecordNotFoundError as e:
            raise _not_found(e)
        except IllegalTransitionError as e:
            raise _conflict(e)

    @app.post("/api/v1/incidents/{incident_id}/timeline", response_model=Incident)
    async def add_timeline_note(
        incident_id: str,
        request: TimelineNoteRequest,
        service: ThreatDetectionService = Depends(get_service),
    ):
        try:
            return await service.incidents.add_note(
                incident_id, action=request.action, actor=request.actor, timestamp=request.timestamp
            )
        except RecordNotFoundError as e:
            raise _not_found(e)
        except TimelineOrderError as e:
            raise _conflict(e)

    # ------------------------------------------------------------------
    # Threat intelligence
    # ------------------------------------------------------------------

    @app.get("/api/v1/threat-intel", response_model=FeedAnalysis)
    async def threat_intel_analysis(service: ThreatDetectionService = Depends(get_service)):
        return service.cache.analyze()

    @app.post("/api/v1/threat-intel/refresh", response_model=RefreshResponse)
    async def refresh_threat_intel(service: ThreatDetectionService = Depends(get_service)):
        refreshed = await service.cache.refresh()
        return RefreshResponse(
            refreshed=refreshed,
            threats=len(service.cache.snapshot),
            stale=service.cache.is_stale,
            last_error=service.cache.last_error,
        )

    @app.get("/api/v1/threat-intel/{ip}", response_model=ThreatRecord)
    async def lookup_ip(ip: str, service: ThreatDetectionService = Depends(get_service)):
        record = service.cache.lookup(ip)
        if record is None:
            raise HTTPException(status_code=404, detail=f"No threat intelligence for '{ip}'")
        return record


app = create_app()


# ============================================================================
# Main Entry Point
# ============================================================================

if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host="0.0.0.0", port=8000)
