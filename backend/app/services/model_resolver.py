"""Resolve logical model names to provider ids and capability flags."""

import logging

from app.db import PromptStore, prompt_store
from app.models import ModelConfig, Provider

logger = logging.getLogger(__name__)

DEFAULT_MODEL_SETTING = "default_model"
FALLBACK_MODEL = "gpt-4o"


def infer_provider(model_id: str) -> Provider:
    """Guess the provider of a model that is not in the catalogue."""
    if model_id.lower().startswith("claude"):
        return Provider.ANTHROPIC
    return Provider.OPENAI


class ModelResolver:
    """Looks models up in the catalogue, falling back to safe defaults."""

    def __init__(self, store: PromptStore | None = None):
        self.store = store or prompt_store

    async def default_model_id(self) -> str:
        """Model used when neither the assistant nor the request names one."""
        value = await self.store.get_setting(DEFAULT_MODEL_SETTING)
        return value.strip() if value and value.strip() else FALLBACK_MODEL

    async def resolve(self, model_id: str | None) -> ModelConfig:
        """Resolve a model id, or the default model when None."""
        requested = model_id or await self.default_model_id()

        config = await self.store.get_model(requested)
        if config is not None:
            return config

        logger.debug(f"Model {requested} not in catalogue, using defaults")
        return ModelConfig(
            model_id=requested,
            provider=infer_provider(requested),
            api_model_id=requested,
        )


# Global resolver instance
model_resolver = ModelResolver()
