"""Family thread resolution.

Every prompt in a tree shares one conversation thread, keyed by the tree's
root prompt. The thread remembers only the most recent provider response id,
which the next call chains from.
"""

import logging
from datetime import datetime, timezone

from app.db import PromptStore, ThreadStore, prompt_store, thread_store
from app.models import FamilyThread, Provider, ThreadResolution

logger = logging.getLogger(__name__)

MAX_ROOT_DEPTH = 10


class FamilyThreadResolver:
    """Maps prompts to their root and the root's shared thread."""

    def __init__(self, prompts: PromptStore | None = None, threads: ThreadStore | None = None):
        self.prompts = prompts or prompt_store
        self.threads = threads or thread_store

    async def resolve_root_prompt_id(self, prompt_id: str) -> str:
        """Walk parent pointers up to the root, at most MAX_ROOT_DEPTH levels.

        The stored root_prompt_row_id is not trusted; the live parent chain
        decides. Missing ancestors end the walk at the last node found.
        """
        current_id = prompt_id
        for _ in range(MAX_ROOT_DEPTH):
            prompt = await self.prompts.get_prompt(current_id, include_deleted=True)
            if prompt is None or not prompt.parent_row_id:
                return current_id
            current_id = prompt.parent_row_id
        logger.warning(f"Root resolution for {prompt_id} stopped at depth {MAX_ROOT_DEPTH}")
        return current_id

    async def get_or_create_family_thread(
        self,
        root_prompt_row_id: str,
        owner_id: str,
        prompt_name: str | None = None,
        provider: Provider = Provider.OPENAI,
    ) -> ThreadResolution:
        """Find the active thread for a root, creating it on first use."""
        existing = await self.threads.find_active_thread(root_prompt_row_id, owner_id)
        if existing is not None:
            if existing.provider != provider:
                logger.info(
                    f"Thread {existing.row_id} switching provider "
                    f"{existing.provider.value} -> {provider.value}, chain reset"
                )
                await self.threads.switch_provider(existing.row_id, provider)
                return ThreadResolution(row_id=existing.row_id, last_response_id=None, created=False)
            return ThreadResolution(
                row_id=existing.row_id,
                last_response_id=existing.last_response_id,
                created=False,
            )

        name = f"{prompt_name or 'Prompt'} - {datetime.now(timezone.utc).strftime('%Y-%m-%d')}"
        thread, created = await self.threads.create_thread(
            root_prompt_row_id, owner_id, name, provider
        )
        if created:
            logger.info(f"Created family thread {thread.row_id} for root {root_prompt_row_id}")
        return ThreadResolution(
            row_id=thread.row_id,
            last_response_id=thread.last_response_id,
            created=created,
        )

    async def get_family_thread(self, root_prompt_row_id: str, owner_id: str) -> FamilyThread | None:
        """Get the active thread for a root without creating one."""
        return await self.threads.find_active_thread(root_prompt_row_id, owner_id)

    async def update_family_thread_response(self, thread_row_id: str, response_id: str) -> None:
        """Point the thread at the newest provider response."""
        updated = await self.threads.update_last_response(thread_row_id, response_id)
        if not updated:
            logger.warning(f"Thread {thread_row_id} not found when recording {response_id}")

    async def clear_family_thread(self, root_prompt_row_id: str, owner_id: str) -> int:
        """Deactivate the root's thread so the next run starts a fresh one."""
        return await self.threads.deactivate_threads(root_prompt_row_id, owner_id)


# Global resolver instance
family_threads = FamilyThreadResolver()
