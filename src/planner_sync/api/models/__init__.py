"""Response envelopes shared by the planner API.

Successful responses are ``{"data": ..., "meta": {...}}``.  Failures use
``{"error": {"code": ..., "message": ...}}`` and are rendered by
:mod:`planner_sync.api.middleware`.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class ApiResponse[T](BaseModel):
    data: T
    meta: dict[str, Any] = Field(default_factory=dict)


class ErrorDetail(BaseModel):
    code: str
    message: str


class ErrorResponse(BaseModel):
    error: ErrorDetail
