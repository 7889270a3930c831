"""Prompt run API routes."""

from typing import Annotated

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from app.api.deps import UserDep, rate_limited
from app.models import CancelResult, CurrentUser, ResponseIdRequest, RunRequest
from app.services.reconciler import get_reconciler
from app.services.run_orchestrator import get_orchestrator

router = APIRouter()


@router.post("/conversation-run")
async def conversation_run(
    request: RunRequest,
    user: Annotated[CurrentUser, Depends(rate_limited("conversation-run"))],
) -> StreamingResponse:
    """Run a prompt, streaming progress as server-sent events.

    Frames are `{type: started|progress|heartbeat|complete|interrupt|error}`;
    the stream always ends with `data: [DONE]`.
    """
    return StreamingResponse(
        get_orchestrator().stream(request, user),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.post("/conversation-cancel", response_model=CancelResult)
async def conversation_cancel(request: ResponseIdRequest, user: UserDep) -> CancelResult:
    """Cancel an in-flight background response."""
    return await get_reconciler().cancel(user.id, request.response_id)
