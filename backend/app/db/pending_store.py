"""PendingResponseStore - storage for outstanding asynchronous provider calls."""

import json
import uuid
from datetime import datetime, timedelta, timezone

import aiosqlite

from app.db.database import get_db
from app.models import PendingResponse, PendingResponseCreate, PendingStatus


def _now() -> str:
    """Get current timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat()


def _row_to_pending(row: aiosqlite.Row) -> PendingResponse:
    data = dict(row)
    data["request_metadata"] = json.loads(data.pop("request_metadata_json") or "{}")
    return PendingResponse(**data)


class PendingResponseStore:
    """Storage for pending provider responses.

    Terminal transitions only apply while the row is still `pending`. The
    returned boolean tells the caller whether it won the transition.
    """

    async def create(self, data: PendingResponseCreate) -> PendingResponse:
        """Record a dispatched asynchronous call."""
        db = await get_db()
        row_id = str(uuid.uuid4())
        await db.execute(
            """
            INSERT INTO pending_responses (
                row_id, response_id, owner_id, prompt_row_id, thread_row_id, trace_id,
                status, model, reasoning_effort, request_metadata_json, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, 'pending', ?, ?, ?, ?)
            """,
            (
                row_id,
                data.response_id,
                data.owner_id,
                data.prompt_row_id,
                data.thread_row_id,
                data.trace_id,
                data.model,
                data.reasoning_effort,
                json.dumps(data.request_metadata),
                _now(),
            ),
        )
        await db.commit()

        pending = await self.get_by_response_id(data.response_id)
        if pending is None:
            raise RuntimeError(f"Pending response {data.response_id} missing after insert")
        return pending

    async def get_by_response_id(self, response_id: str) -> PendingResponse | None:
        """Get a pending response by the provider's response id."""
        db = await get_db()
        cursor = await db.execute(
            "SELECT * FROM pending_responses WHERE response_id = ?", (response_id,)
        )
        row = await cursor.fetchone()
        return _row_to_pending(row) if row else None

    async def complete_if_pending(
        self,
        response_id: str,
        status: PendingStatus,
        event_id: str,
        output_text: str | None = None,
        error: str | None = None,
        error_code: str | None = None,
    ) -> bool:
        """Apply a terminal status if the row is still pending."""
        db = await get_db()
        cursor = await db.execute(
            """
            UPDATE pending_responses
            SET status = ?, output_text = ?, error = ?, error_code = ?,
                completed_at = ?, webhook_event_id = ?
            WHERE response_id = ? AND status = 'pending'
            """,
            (status.value, output_text, error, error_code, _now(), event_id, response_id),
        )
        await db.commit()
        return cursor.rowcount > 0

    async def fail_orphaned(self, older_than_seconds: int) -> int:
        """Fail pending rows created more than `older_than_seconds` ago."""
        db = await get_db()
        threshold = (datetime.now(timezone.utc) - timedelta(seconds=older_than_seconds)).isoformat()
        hours = older_than_seconds / 3600
        cursor = await db.execute(
            """
            UPDATE pending_responses
            SET status = 'failed', error = ?, completed_at = ?
            WHERE status = 'pending' AND created_at < ?
            """,
            (f"Orphaned request cleaned up after {hours:g} hours", _now(), threshold),
        )
        await db.commit()
        return cursor.rowcount

    async def purge_terminal(self, older_than_days: int) -> int:
        """Delete terminal rows completed more than `older_than_days` ago."""
        db = await get_db()
        threshold = (datetime.now(timezone.utc) - timedelta(days=older_than_days)).isoformat()
        cursor = await db.execute(
            """
            DELETE FROM pending_responses
            WHERE completed_at < ?
              AND status IN ('completed', 'failed', 'cancelled', 'incomplete')
            """,
            (threshold,),
        )
        await db.commit()
        return cursor.rowcount


# Global store instance
pending_store = PendingResponseStore()
