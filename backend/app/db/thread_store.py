"""ThreadStore - storage for family threads and their stored turns."""

import uuid
from datetime import datetime, timezone

import aiosqlite

from app.db.database import get_db
from app.models import FamilyThread, Provider, ThreadMessage


def _generate_id() -> str:
    """Generate a unique ID."""
    return str(uuid.uuid4())


def _now() -> str:
    """Get current timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat()


def _row_to_thread(row: aiosqlite.Row) -> FamilyThread:
    data = dict(row)
    data["is_active"] = bool(data["is_active"])
    data["provider"] = Provider(data["provider"] or "openai")
    return FamilyThread(**data)


class ThreadStore:
    """Storage for family threads."""

    # ==================== Threads ====================

    async def get_thread(self, row_id: str, owner_id: str | None = None) -> FamilyThread | None:
        """Get a thread by id, optionally scoped to an owner."""
        db = await get_db()
        if owner_id is None:
            cursor = await db.execute("SELECT * FROM threads WHERE row_id = ?", (row_id,))
        else:
            cursor = await db.execute(
                "SELECT * FROM threads WHERE row_id = ? AND owner_id = ?", (row_id, owner_id)
            )
        row = await cursor.fetchone()
        return _row_to_thread(row) if row else None

    async def find_active_thread(self, root_prompt_row_id: str, owner_id: str) -> FamilyThread | None:
        """Find the active thread for a root prompt and owner."""
        db = await get_db()
        cursor = await db.execute(
            """
            SELECT * FROM threads
            WHERE root_prompt_row_id = ? AND owner_id = ? AND is_active = 1
            ORDER BY last_message_at DESC
            LIMIT 1
            """,
            (root_prompt_row_id, owner_id),
        )
        row = await cursor.fetchone()
        return _row_to_thread(row) if row else None

    async def create_thread(
        self,
        root_prompt_row_id: str,
        owner_id: str,
        name: str,
        provider: Provider = Provider.OPENAI,
    ) -> tuple[FamilyThread, bool]:
        """Create the active thread for a root prompt.

        Returns the thread and whether this call created it. A concurrent
        creator that wins the unique index makes this call return its thread.
        """
        db = await get_db()
        row_id = _generate_id()
        now = _now()

        try:
            await db.execute(
                """
                INSERT INTO threads (row_id, root_prompt_row_id, owner_id, name, provider,
                                     is_active, last_message_at, created_at)
                VALUES (?, ?, ?, ?, ?, 1, ?, ?)
                """,
                (row_id, root_prompt_row_id, owner_id, name, provider.value, now, now),
            )
            await db.commit()
        except aiosqlite.IntegrityError:
            await db.rollback()
            existing = await self.find_active_thread(root_prompt_row_id, owner_id)
            if existing is None:
                raise
            return existing, False

        thread = await self.get_thread(row_id)
        if thread is None:
            raise RuntimeError(f"Thread {row_id} missing after insert")
        return thread, True

    async def switch_provider(self, row_id: str, provider: Provider) -> None:
        """Move a thread to another provider. Chained response ids do not carry over."""
        db = await get_db()
        await db.execute(
            "UPDATE threads SET provider = ?, last_response_id = NULL WHERE row_id = ?",
            (provider.value, row_id),
        )
        await db.commit()

    async def update_last_response(self, row_id: str, response_id: str) -> bool:
        """Record the most recent provider response for a thread."""
        db = await get_db()
        cursor = await db.execute(
            "UPDATE threads SET last_response_id = ?, last_message_at = ? WHERE row_id = ?",
            (response_id, _now(), row_id),
        )
        await db.commit()
        return cursor.rowcount > 0

    async def deactivate_threads(self, root_prompt_row_id: str, owner_id: str) -> int:
        """Deactivate every active thread for a root prompt and owner."""
        db = await get_db()
        cursor = await db.execute(
            """
            UPDATE threads SET is_active = 0
            WHERE root_prompt_row_id = ? AND owner_id = ? AND is_active = 1
            """,
            (root_prompt_row_id, owner_id),
        )
        await db.commit()
        return cursor.rowcount

    async def clear_response_references(self, response_ids: list[str]) -> int:
        """Null out last_response_id wherever it points at one of the given ids."""
        if not response_ids:
            return 0
        db = await get_db()
        placeholders = ", ".join("?" for _ in response_ids)
        cursor = await db.execute(
            f"UPDATE threads SET last_response_id = NULL WHERE last_response_id IN ({placeholders})",
            response_ids,
        )
        await db.commit()
        return cursor.rowcount

    # ==================== Messages ====================

    async def add_message(
        self,
        thread_row_id: str,
        role: str,
        content: str,
        response_id: str | None = None,
    ) -> ThreadMessage:
        """Append a turn to a thread."""
        db = await get_db()
        message = ThreadMessage(
            row_id=_generate_id(),
            thread_row_id=thread_row_id,
            role=role,
            content=content,
            response_id=response_id,
            created_at=_now(),
        )
        await db.execute(
            """
            INSERT INTO thread_messages (row_id, thread_row_id, role, content, response_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                message.row_id,
                message.thread_row_id,
                message.role,
                message.content,
                message.response_id,
                message.created_at,
            ),
        )
        await db.commit()
        return message

    async def list_messages(self, thread_row_id: str, limit: int = 100) -> list[ThreadMessage]:
        """List the most recent turns of a thread, oldest first."""
        db = await get_db()
        cursor = await db.execute(
            """
            SELECT row_id, thread_row_id, role, content, response_id, created_at FROM (
                SELECT *, rowid AS seq FROM thread_messages
                WHERE thread_row_id = ?
                ORDER BY seq DESC
                LIMIT ?
            ) ORDER BY seq ASC
            """,
            (thread_row_id, limit),
        )
        rows = await cursor.fetchall()
        return [ThreadMessage(**dict(row)) for row in rows]


# Global store instance
thread_store = ThreadStore()
