"""Prompt tree and credential API routes."""

from fastapi import APIRouter

from app.api.deps import UserDep
from app.db import credential_store, prompt_store
from app.errors import NotFoundError, ValidationFailed
from app.models import CredentialWrite, PromptCreate, PromptNode
from app.services.family_threads import family_threads

router = APIRouter()


@router.post("/prompts", response_model=PromptNode, status_code=201)
async def create_prompt(data: PromptCreate, user: UserDep) -> PromptNode:
    """Create a prompt, optionally under a parent."""
    try:
        return await prompt_store.create_prompt(user.id, data)
    except ValueError as e:
        raise NotFoundError(str(e)) from e


@router.get("/prompts/{row_id}", response_model=PromptNode)
async def get_prompt(row_id: str, user: UserDep) -> PromptNode:
    """Get a prompt."""
    prompt = await prompt_store.get_prompt(row_id, user.id)
    if prompt is None:
        raise NotFoundError("Prompt not found")
    return prompt


@router.delete("/prompts/{row_id}")
async def delete_prompt(row_id: str, user: UserDep) -> dict[str, bool]:
    """Soft delete a prompt."""
    if not await prompt_store.soft_delete_prompt(row_id, user.id):
        raise NotFoundError("Prompt not found")
    return {"success": True}


@router.delete("/prompts/{row_id}/thread")
async def clear_prompt_thread(row_id: str, user: UserDep) -> dict[str, int]:
    """Start the prompt's family over with a fresh conversation thread."""
    prompt = await prompt_store.get_prompt(row_id, user.id)
    if prompt is None:
        raise NotFoundError("Prompt not found")
    root_id = await family_threads.resolve_root_prompt_id(prompt.row_id)
    return {"cleared": await family_threads.clear_family_thread(root_id, user.id)}


@router.put("/credentials/{service}/{key}")
async def set_credential(service: str, key: str, data: CredentialWrite, user: UserDep) -> dict[str, bool]:
    """Store an encrypted credential for the caller."""
    if not data.value.strip():
        raise ValidationFailed("Credential value must not be blank")
    await credential_store.set_credential(user.id, service, key, data.value)
    return {"success": True}
