"""Trace API routes."""

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request
from pydantic import TypeAdapter, ValidationError

from app.api.deps import UserDep, rate_limited
from app.errors import ErrorCode, ValidationFailed
from app.models import CurrentUser, ExecutionArtefact, ExecutionSpan, TraceAction, TraceWithSpans
from app.services.execution_tracker import get_tracker

router = APIRouter()

_action_adapter: TypeAdapter[Any] = TypeAdapter(TraceAction)


def parse_action(payload: Any) -> Any:
    """Validate a raw request body against the action union."""
    if not isinstance(payload, dict) or not payload.get("action"):
        raise ValidationFailed("action is required", code=ErrorCode.MISSING_FIELD)
    try:
        return _action_adapter.validate_python(payload)
    except ValidationError as e:
        details = [
            {"loc": [str(part) for part in err["loc"]], "msg": err["msg"], "type": err["type"]}
            for err in e.errors()
        ]
        raise ValidationFailed(f"Invalid {payload['action']} request", details=details) from e


@router.post("/execution-manager")
async def execution_manager(
    request: Request,
    user: Annotated[CurrentUser, Depends(rate_limited("execution-manager"))],
) -> dict[str, Any]:
    """Dispatch one trace API action."""
    try:
        payload = await request.json()
    except ValueError as e:
        raise ValidationFailed("Request body must be valid JSON") from e

    action = parse_action(payload)
    result = await get_tracker().execute(action, user.id)
    return result.model_dump()


@router.get("/traces/{trace_id}", response_model=TraceWithSpans)
async def get_trace(trace_id: str, user: UserDep) -> TraceWithSpans:
    """Get a trace with its spans in order."""
    return await get_tracker().get_trace_with_spans(user.id, trace_id)


@router.get("/spans/{span_id}/attempts", response_model=list[ExecutionSpan])
async def get_span_attempts(span_id: str, user: UserDep) -> list[ExecutionSpan]:
    """Get the retry chain ending at a span, oldest attempt first."""
    return await get_tracker().get_attempt_chain(user.id, span_id)


@router.get("/artefacts/{artefact_id}", response_model=ExecutionArtefact)
async def get_artefact(artefact_id: str, user: UserDep) -> ExecutionArtefact:
    """Get the full content of an artefact."""
    return await get_tracker().get_artefact(user.id, artefact_id)
