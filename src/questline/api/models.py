"""Pydantic request/response models of the web API."""

from __future__ import annotations

from typing import Generic, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class ApiMeta(BaseModel):
    model_config = {"extra": "allow"}


class ApiResponse(BaseModel, Generic[T]):
    """Successful responses follow ``{"data": T, "meta": {...}}``."""

    data: T
    meta: ApiMeta = Field(default_factory=ApiMeta)


class ErrorDetail(BaseModel):
    """Structured error payload."""

    code: str
    message: str
    flow_id: str | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail


class ProposedSessionResponse(BaseModel):
    """Prefill for the schedule-session form, in the community's local time."""

    flow_id: str
    title: str
    link: str | None = None
    year: int
    month: int
    day: int
    hour: int
    minute: int
    duration: int
    selectable_years: list[int]


class ScheduleSessionResponse(BaseModel):
    title: str
    link: str
    source: str
    migrated: bool = False
    closed_rsvps: bool = False
    transferred_rsvps: int | None = None
