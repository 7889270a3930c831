"""Pydantic models for asynchronous provider responses."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class PendingStatus(str, Enum):
    """Lifecycle of a pending provider response."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    INCOMPLETE = "incomplete"


TERMINAL_PENDING_STATUSES = {
    PendingStatus.COMPLETED,
    PendingStatus.FAILED,
    PendingStatus.CANCELLED,
    PendingStatus.INCOMPLETE,
}


class PendingResponse(BaseModel):
    """One outstanding asynchronous call to a provider."""

    row_id: str
    response_id: str
    owner_id: str
    prompt_row_id: str | None = None
    thread_row_id: str | None = None
    trace_id: str | None = None
    source_function: str = "conversation-run"
    status: PendingStatus = PendingStatus.PENDING
    output_text: str | None = None
    error: str | None = None
    error_code: str | None = None
    model: str | None = None
    reasoning_effort: str | None = None
    request_metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: str
    completed_at: str | None = None
    webhook_event_id: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PENDING_STATUSES


class PendingResponseCreate(BaseModel):
    """Fields recorded when an asynchronous call is dispatched."""

    response_id: str
    owner_id: str
    prompt_row_id: str | None = None
    thread_row_id: str | None = None
    trace_id: str | None = None
    model: str | None = None
    reasoning_effort: str | None = None
    request_metadata: dict[str, Any] = Field(default_factory=dict)


class ResponseIdRequest(BaseModel):
    """Body for poll and cancel requests."""

    response_id: str = Field(..., min_length=1, max_length=100)


class PollResult(BaseModel):
    """Result of polling a provider response."""

    status: str
    reasoning_text: str | None = None
    output_text: str | None = None


class CancelResult(BaseModel):
    """Result of cancelling a provider response."""

    success: bool = True
    status: str
    response_id: str
