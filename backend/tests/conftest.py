"""Pytest configuration and fixtures."""

from collections.abc import Awaitable, Callable
from typing import Any, AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient

import app.llm.client as anthropic_client_module
import app.llm.openai_responses as openai_module
import app.services.cleanup_queue as cleanup_queue_module
import app.services.execution_tracker as tracker_module
import app.services.reconciler as reconciler_module
import app.services.run_orchestrator as orchestrator_module
import app.services.webhook_verifier as verifier_module
from app.config import get_settings
from app.db import prompt_store
from app.db.database import close_database, init_database
from app.db.secrets import _get_fernet
from app.main import app
from app.models import CurrentUser, PromptCreate, PromptNode

OPENAI_BASE_URL = "https://api.openai.com/v1"

USER_ID = "user-1"
OTHER_USER_ID = "user-2"


@pytest.fixture(autouse=True)
async def setup_test_db(tmp_path, monkeypatch):
    """Set up a fresh database and fresh service singletons for each test."""
    db_path = tmp_path / "workbench.db"
    monkeypatch.setenv("DATABASE_PATH", str(db_path))
    monkeypatch.setenv("SECRETS_KEY", "test-secrets-key")
    for name in ("OPENAI_API_KEY", "ANTHROPIC_API_KEY", "OPENAI_WEBHOOK_SECRET", "OPENAI_BASE_URL"):
        monkeypatch.delenv(name, raising=False)

    get_settings.cache_clear()
    _get_fernet.cache_clear()
    monkeypatch.setattr(tracker_module, "_tracker", None)
    monkeypatch.setattr(orchestrator_module, "_orchestrator", None)
    monkeypatch.setattr(reconciler_module, "_reconciler", None)
    monkeypatch.setattr(verifier_module, "_verifier", None)
    monkeypatch.setattr(cleanup_queue_module, "_queue", None)
    monkeypatch.setattr(openai_module, "_client", None)
    monkeypatch.setattr(anthropic_client_module, "_clients", {})

    await init_database(str(db_path))

    yield

    await openai_module.close_openai_client()
    await close_database()
    get_settings.cache_clear()
    _get_fernet.cache_clear()


@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client


@pytest.fixture
def user() -> CurrentUser:
    return CurrentUser(id=USER_ID, email="ada@example.com", name="Ada")


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"X-User-Id": USER_ID, "X-User-Email": "ada@example.com", "X-User-Name": "Ada"}


@pytest.fixture
def make_prompt() -> Callable[..., Awaitable[PromptNode]]:
    """Factory creating prompts owned by the test user."""

    async def _make(name: str = "Prompt", owner_id: str = USER_ID, **fields: Any) -> PromptNode:
        return await prompt_store.create_prompt(owner_id, PromptCreate(prompt_name=name, **fields))

    return _make
