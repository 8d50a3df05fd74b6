"""FastAPI dependencies for the planner API."""

from __future__ import annotations

from fastapi import Request

from planner_sync.service import PlannerService


class ServiceUnavailableError(Exception):
    """Raised when a request arrives before the planner service is started."""


def get_service(request: Request) -> PlannerService:
    service = getattr(request.app.state, "planner", None)
    if service is None:
        raise ServiceUnavailableError("Planner service is not initialized.")
    return service
