"""Pydantic models for family conversation threads."""

from typing import Literal

from pydantic import BaseModel

from app.models.prompt import Provider


class FamilyThread(BaseModel):
    """The shared conversation context for a prompt tree."""

    row_id: str
    root_prompt_row_id: str
    owner_id: str
    name: str | None = None
    provider: Provider = Provider.OPENAI
    is_active: bool = True
    openai_conversation_id: str | None = None
    external_session_id: str | None = None
    last_response_id: str | None = None
    last_message_at: str | None = None
    created_at: str


class ThreadResolution(BaseModel):
    """Result of get_or_create_family_thread."""

    row_id: str
    last_response_id: str | None = None
    created: bool


class ThreadMessage(BaseModel):
    """One stored turn in a thread."""

    row_id: str
    thread_row_id: str
    role: Literal["user", "assistant"]
    content: str
    response_id: str | None = None
    created_at: str
