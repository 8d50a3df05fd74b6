"""Planner endpoints: events, slot fitting, sync and feed import."""

from __future__ import annotations

import datetime as dt

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from planner_sync.api.deps import get_service
from planner_sync.api.middleware import error_response
from planner_sync.api.models import ApiResponse
from planner_sync.api.models.planner import (
    FeedImportRequest,
    FeedImportResponse,
    FitRequest,
    FitResponse,
    SaveEventResponse,
    SyncResponse,
)
from planner_sync.errors import EventValidationError
from planner_sync.models import (
    CalendarEvent,
    EventSource,
    Notice,
    SyncSettings,
    format_minutes,
    parse_hhmm,
)
from planner_sync.service import OwnedEventDraft, PlannerService

router = APIRouter(prefix="/api/planner", tags=["planner"])


@router.get("/events", response_model=ApiResponse[list[CalendarEvent]])
async def list_events(
    day: dt.date | None = Query(default=None, alias="date"),
    source: EventSource | None = Query(default=None),
    service: PlannerService = Depends(get_service),
) -> ApiResponse[list[CalendarEvent]]:
    events = service.list_events(on=day, source=source)
    return ApiResponse[list[CalendarEvent]](data=events, meta={"count": len(events)})


@router.post("/events", response_model=SaveEventResponse, status_code=201)
async def create_event(
    draft: OwnedEventDraft,
    service: PlannerService = Depends(get_service),
) -> SaveEventResponse:
    event, fit = await service.save_owned_event(draft.model_copy(update={"id": None}))
    return SaveEventResponse(event=event, shifted=fit.shifted)


@router.put("/events/{event_id}", response_model=SaveEventResponse)
async def update_event(
    event_id: str,
    draft: OwnedEventDraft,
    service: PlannerService = Depends(get_service),
) -> SaveEventResponse:
    event, fit = await service.save_owned_event(draft.model_copy(update={"id": event_id}))
    return SaveEventResponse(event=event, shifted=fit.shifted)


@router.delete("/events/{event_id}", status_code=204, response_model=None)
async def delete_event(
    event_id: str,
    service: PlannerService = Depends(get_service),
) -> JSONResponse | None:
    if not await service.delete_owned_event(event_id):
        return error_response(404, "event_not_found", f"Event not found: {event_id}")
    return None


@router.post("/fit", response_model=FitResponse)
async def preview_fit(
    body: FitRequest,
    service: PlannerService = Depends(get_service),
) -> FitResponse:
    """Where an event would land, without saving anything."""
    try:
        start = parse_hhmm(body.start)
        end = parse_hhmm(body.end)
    except ValueError as exc:
        raise EventValidationError(f"Invalid time: {exc}") from exc
    fit = service.resolver.fit_event(body.date, start, end, exclude_event_id=body.exclude_event_id)
    return FitResponse(
        start=format_minutes(fit.start), end=format_minutes(fit.end), shifted=fit.shifted
    )


@router.post("/sync", response_model=SyncResponse)
async def sync_now(service: PlannerService = Depends(get_service)) -> SyncResponse:
    report = await service.scheduler.sync_now()
    return SyncResponse(
        origin=report.origin,
        skipped=report.skipped,
        succeeded=report.succeeded,
        failures=report.failures,
        event_counts=report.event_counts,
        last_synced_at=service.settings.current.last_synced_at,
    )


@router.get("/settings", response_model=SyncSettings)
async def get_settings(service: PlannerService = Depends(get_service)) -> SyncSettings:
    return service.settings.current


@router.post("/feed/import", response_model=FeedImportResponse)
async def import_feed(
    body: FeedImportRequest,
    service: PlannerService = Depends(get_service),
) -> FeedImportResponse:
    if body.text is not None:
        imported = await service.ics.import_text(body.text)
    else:
        imported = await service.ics.import_url(body.url)
    return FeedImportResponse(
        imported=len(imported), feed_url=service.settings.current.feed_url or None
    )


@router.get("/notices", response_model=ApiResponse[list[Notice]])
async def list_notices(
    limit: int = Query(default=20, ge=1, le=50),
    service: PlannerService = Depends(get_service),
) -> ApiResponse[list[Notice]]:
    notices = service.recent_notices(limit)
    return ApiResponse[list[Notice]](data=notices, meta={"count": len(notices)})
