"""Background response API routes."""

from fastapi import APIRouter

from app.api.deps import UserDep
from app.models import PollResult, ResponseIdRequest
from app.services.reconciler import get_reconciler

router = APIRouter()


@router.post("/poll-openai-response", response_model=PollResult)
async def poll_openai_response(request: ResponseIdRequest, user: UserDep) -> PollResult:
    """Check a background response, finishing it locally once the provider has."""
    return await get_reconciler().poll(user.id, request.response_id)
