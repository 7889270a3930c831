"""TraceStore - storage for execution traces, spans, artefacts and rate limits.

Status transitions are written as conditional UPDATEs so the database, not the
caller, decides whether a transition is still allowed. Callers inspect the
returned row counts.
"""

import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

import aiosqlite

from app.db.database import get_db
from app.models import (
    ArtefactType,
    ErrorEvidence,
    ExecutionArtefact,
    ExecutionSpan,
    ExecutionTrace,
    ExecutionType,
    SpanStatus,
    SpanType,
    TraceStatus,
    UsageTokens,
)


def _generate_id() -> str:
    """Generate a unique ID."""
    return str(uuid.uuid4())


def _now() -> str:
    """Get current timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat()


def cutoff(seconds: float) -> str:
    """ISO timestamp for `seconds` ago."""
    return (datetime.now(timezone.utc) - timedelta(seconds=seconds)).isoformat()


def _row_to_trace(row: aiosqlite.Row) -> ExecutionTrace:
    data = dict(row)
    data["prompt_ids_at_start"] = json.loads(data.pop("prompt_ids_at_start_json") or "[]")
    data["context_snapshot"] = json.loads(data.pop("context_snapshot_json") or "{}")
    return ExecutionTrace(**data)


def _row_to_span(row: aiosqlite.Row) -> ExecutionSpan:
    data = dict(row)
    evidence = data.pop("error_evidence_json")
    usage = data.pop("usage_tokens_json")
    data["error_evidence"] = ErrorEvidence(**json.loads(evidence)) if evidence else None
    data["usage_tokens"] = UsageTokens(**json.loads(usage)) if usage else None
    return ExecutionSpan(**data)


_OPEN_SPAN_STATUSES = (SpanStatus.PENDING.value, SpanStatus.RUNNING.value)


class TraceStore:
    """Storage for execution tracking."""

    # ==================== Traces ====================

    async def insert_running_trace(
        self,
        root_prompt_row_id: str,
        entry_prompt_row_id: str,
        execution_type: ExecutionType,
        owner_id: str,
        thread_row_id: str | None,
        family_version: int,
        prompt_ids: list[str],
        context_snapshot: dict[str, str],
    ) -> ExecutionTrace:
        """Insert a running trace.

        Raises:
            aiosqlite.IntegrityError: If a running trace already exists for the
                entry prompt and owner.
        """
        db = await get_db()
        trace_id = _generate_id()
        started_at = _now()

        try:
            await db.execute(
                """
                INSERT INTO execution_traces (
                    trace_id, root_prompt_row_id, entry_prompt_row_id, execution_type, owner_id,
                    thread_row_id, family_version_at_start, prompt_ids_at_start_json,
                    context_snapshot_json, status, started_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'running', ?)
                """,
                (
                    trace_id,
                    root_prompt_row_id,
                    entry_prompt_row_id,
                    execution_type.value,
                    owner_id,
                    thread_row_id,
                    family_version,
                    json.dumps(prompt_ids),
                    json.dumps(context_snapshot),
                    started_at,
                ),
            )
            await db.commit()
        except aiosqlite.IntegrityError:
            await db.rollback()
            raise

        return ExecutionTrace(
            trace_id=trace_id,
            root_prompt_row_id=root_prompt_row_id,
            entry_prompt_row_id=entry_prompt_row_id,
            execution_type=execution_type,
            owner_id=owner_id,
            thread_row_id=thread_row_id,
            family_version_at_start=family_version,
            prompt_ids_at_start=prompt_ids,
            context_snapshot=context_snapshot,
            status=TraceStatus.RUNNING,
            started_at=started_at,
        )

    async def get_trace(self, trace_id: str, owner_id: str | None = None) -> ExecutionTrace | None:
        """Get a trace, optionally scoped to an owner."""
        db = await get_db()
        query = "SELECT * FROM execution_traces WHERE trace_id = ?"
        params: list[Any] = [trace_id]
        if owner_id is not None:
            query += " AND owner_id = ?"
            params.append(owner_id)
        cursor = await db.execute(query, params)
        row = await cursor.fetchone()
        return _row_to_trace(row) if row else None

    async def find_running_trace(self, entry_prompt_row_id: str, owner_id: str) -> ExecutionTrace | None:
        """Get the running trace holding the mutex for an entry prompt, if any."""
        db = await get_db()
        cursor = await db.execute(
            """
            SELECT * FROM execution_traces
            WHERE entry_prompt_row_id = ? AND owner_id = ? AND status = 'running'
            LIMIT 1
            """,
            (entry_prompt_row_id, owner_id),
        )
        row = await cursor.fetchone()
        return _row_to_trace(row) if row else None

    async def fail_running_traces(
        self,
        reason: str,
        started_before: str,
        owner_id: str | None = None,
        entry_prompt_row_id: str | None = None,
    ) -> list[str]:
        """Fail running traces started before a timestamp. Returns the failed ids."""
        db = await get_db()

        conditions = ["status = 'running'", "started_at < ?"]
        params: list[Any] = [started_before]
        if owner_id is not None:
            conditions.append("owner_id = ?")
            params.append(owner_id)
        if entry_prompt_row_id is not None:
            conditions.append("entry_prompt_row_id = ?")
            params.append(entry_prompt_row_id)
        where_clause = " AND ".join(conditions)

        cursor = await db.execute(
            f"SELECT trace_id FROM execution_traces WHERE {where_clause}", params
        )
        trace_ids = [row["trace_id"] for row in await cursor.fetchall()]
        if not trace_ids:
            return []

        placeholders = ", ".join("?" for _ in trace_ids)
        await db.execute(
            f"""
            UPDATE execution_traces
            SET status = 'failed', error_summary = ?, completed_at = ?
            WHERE trace_id IN ({placeholders}) AND status = 'running'
            """,
            [reason, _now(), *trace_ids],
        )
        await db.commit()
        return trace_ids

    async def find_previous_terminal_trace(
        self,
        entry_prompt_row_id: str,
        execution_type: ExecutionType,
        owner_id: str,
        exclude_trace_id: str,
    ) -> ExecutionTrace | None:
        """Most recent completed or failed trace for the same entry point."""
        db = await get_db()
        cursor = await db.execute(
            """
            SELECT * FROM execution_traces
            WHERE entry_prompt_row_id = ? AND execution_type = ? AND owner_id = ?
              AND status IN ('completed', 'failed') AND trace_id != ?
            ORDER BY started_at DESC
            LIMIT 1
            """,
            (entry_prompt_row_id, execution_type.value, owner_id, exclude_trace_id),
        )
        row = await cursor.fetchone()
        return _row_to_trace(row) if row else None

    async def mark_replaced(self, trace_id: str) -> bool:
        """Mark a completed or failed trace as replaced."""
        db = await get_db()
        cursor = await db.execute(
            """
            UPDATE execution_traces SET status = 'replaced'
            WHERE trace_id = ? AND status IN ('completed', 'failed')
            """,
            (trace_id,),
        )
        await db.commit()
        return cursor.rowcount > 0

    async def finish_trace(
        self,
        trace_id: str,
        status: TraceStatus,
        error_summary: str | None = None,
        owner_id: str | None = None,
    ) -> bool:
        """Set a terminal status on a trace that is not already replaced.

        Re-applying a terminal status is allowed; `replaced` traces never change.
        """
        db = await get_db()
        query = """
            UPDATE execution_traces
            SET status = ?, error_summary = ?, completed_at = ?
            WHERE trace_id = ? AND status != 'replaced'
        """
        params: list[Any] = [status.value, error_summary, _now(), trace_id]
        if owner_id is not None:
            query += " AND owner_id = ?"
            params.append(owner_id)
        cursor = await db.execute(query, params)
        await db.commit()
        return cursor.rowcount > 0

    async def merge_context_snapshot(self, trace_id: str, prompt_row_id: str, output: str) -> None:
        """Set one prompt's output in a trace's context snapshot."""
        db = await get_db()
        await db.execute(
            """
            UPDATE execution_traces
            SET context_snapshot_json = json_set(context_snapshot_json, ?, ?)
            WHERE trace_id = ?
            """,
            (f'$."{prompt_row_id}"', output, trace_id),
        )
        await db.commit()

    async def list_trace_response_ids(self, trace_id: str) -> list[str]:
        """Provider response ids recorded on a trace's spans."""
        db = await get_db()
        cursor = await db.execute(
            """
            SELECT DISTINCT openai_response_id FROM execution_spans
            WHERE trace_id = ? AND openai_response_id IS NOT NULL
            """,
            (trace_id,),
        )
        return [row["openai_response_id"] for row in await cursor.fetchall()]

    # ==================== Spans ====================

    async def insert_span(
        self,
        trace_id: str,
        span_type: SpanType,
        prompt_row_id: str | None = None,
        attempt_number: int = 1,
        previous_attempt_span_id: str | None = None,
    ) -> ExecutionSpan:
        """Insert a running span with the next sequence number for its trace."""
        db = await get_db()
        span_id = _generate_id()

        # Sequence is computed inside the INSERT so it is read and written atomically
        await db.execute(
            """
            INSERT INTO execution_spans (
                span_id, trace_id, prompt_row_id, span_type, sequence_order,
                attempt_number, previous_attempt_span_id, status, created_at
            )
            SELECT ?, ?, ?, ?, COALESCE(MAX(sequence_order), 0) + 1, ?, ?, 'running', ?
            FROM execution_spans WHERE trace_id = ?
            """,
            (
                span_id,
                trace_id,
                prompt_row_id,
                span_type.value,
                attempt_number,
                previous_attempt_span_id,
                _now(),
                trace_id,
            ),
        )
        await db.commit()

        span = await self.get_span(span_id)
        if span is None:
            raise RuntimeError(f"Span {span_id} missing after insert")
        return span

    async def get_span(self, span_id: str) -> ExecutionSpan | None:
        """Get a span by id."""
        db = await get_db()
        cursor = await db.execute("SELECT * FROM execution_spans WHERE span_id = ?", (span_id,))
        row = await cursor.fetchone()
        return _row_to_span(row) if row else None

    async def list_spans(self, trace_id: str) -> list[ExecutionSpan]:
        """List a trace's spans in sequence order."""
        db = await get_db()
        cursor = await db.execute(
            "SELECT * FROM execution_spans WHERE trace_id = ? ORDER BY sequence_order",
            (trace_id,),
        )
        return [_row_to_span(row) for row in await cursor.fetchall()]

    async def list_attempt_chain(self, span_id: str) -> list[ExecutionSpan]:
        """Follow previous_attempt_span_id links back from a span, oldest first."""
        db = await get_db()
        cursor = await db.execute(
            """
            WITH RECURSIVE chain(span_id, depth) AS (
                SELECT span_id, 0 FROM execution_spans WHERE span_id = ?
                UNION ALL
                SELECT s.previous_attempt_span_id, chain.depth + 1
                FROM execution_spans s JOIN chain ON s.span_id = chain.span_id
                WHERE s.previous_attempt_span_id IS NOT NULL AND chain.depth < 100
            )
            SELECT s.* FROM chain JOIN execution_spans s ON s.span_id = chain.span_id
            ORDER BY chain.depth DESC
            """,
            (span_id,),
        )
        return [_row_to_span(row) for row in await cursor.fetchall()]

    async def complete_span(
        self,
        span_id: str,
        status: SpanStatus,
        openai_response_id: str | None,
        output_preview: str | None,
        output_artefact_id: str | None,
        latency_ms: int | None,
        usage_tokens: UsageTokens | None,
    ) -> bool:
        """Finish an open span. Returns False if it was already terminal."""
        db = await get_db()
        cursor = await db.execute(
            f"""
            UPDATE execution_spans
            SET status = ?, openai_response_id = ?, output_preview = ?, output_artefact_id = ?,
                latency_ms = ?, usage_tokens_json = ?, completed_at = ?
            WHERE span_id = ? AND status IN ({", ".join("?" for _ in _OPEN_SPAN_STATUSES)})
            """,
            (
                status.value,
                openai_response_id,
                output_preview,
                output_artefact_id,
                latency_ms,
                usage_tokens.model_dump_json() if usage_tokens else None,
                _now(),
                span_id,
                *_OPEN_SPAN_STATUSES,
            ),
        )
        await db.commit()
        return cursor.rowcount > 0

    async def fail_span(self, span_id: str, evidence: ErrorEvidence) -> bool:
        """Write error evidence on an open span. Existing evidence is never replaced."""
        db = await get_db()
        cursor = await db.execute(
            f"""
            UPDATE execution_spans
            SET status = 'failed', error_evidence_json = ?, completed_at = ?
            WHERE span_id = ? AND error_evidence_json IS NULL
              AND status IN ({", ".join("?" for _ in _OPEN_SPAN_STATUSES)})
            """,
            (evidence.model_dump_json(), _now(), span_id, *_OPEN_SPAN_STATUSES),
        )
        await db.commit()
        return cursor.rowcount > 0

    # ==================== Artefacts ====================

    async def insert_artefact(
        self,
        span_id: str,
        trace_id: str,
        artefact_type: ArtefactType,
        content_hash: str,
        content: str,
    ) -> ExecutionArtefact:
        """Store a span artefact."""
        db = await get_db()
        artefact = ExecutionArtefact(
            artefact_id=_generate_id(),
            span_id=span_id,
            trace_id=trace_id,
            artefact_type=artefact_type,
            content_hash=content_hash,
            content=content,
            created_at=_now(),
        )
        await db.execute(
            """
            INSERT INTO execution_artefacts
                (artefact_id, span_id, trace_id, artefact_type, content_hash, content, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                artefact.artefact_id,
                artefact.span_id,
                artefact.trace_id,
                artefact.artefact_type.value,
                artefact.content_hash,
                artefact.content,
                artefact.created_at,
            ),
        )
        await db.commit()
        return artefact

    async def get_artefact(self, artefact_id: str) -> ExecutionArtefact | None:
        """Get an artefact by id."""
        db = await get_db()
        cursor = await db.execute(
            "SELECT * FROM execution_artefacts WHERE artefact_id = ?", (artefact_id,)
        )
        row = await cursor.fetchone()
        return ExecutionArtefact(**dict(row)) if row else None

    # ==================== Rate Limits ====================

    async def increment_rate_counter(self, user_id: str, endpoint: str, window_start: str) -> int:
        """Atomically count one request in a window and return the new count."""
        db = await get_db()
        cursor = await db.execute(
            """
            INSERT INTO rate_limits (user_id, endpoint, window_start, request_count)
            VALUES (?, ?, ?, 1)
            ON CONFLICT(user_id, endpoint, window_start) DO UPDATE SET
                request_count = request_count + 1
            RETURNING request_count
            """,
            (user_id, endpoint, window_start),
        )
        row = await cursor.fetchone()
        await cursor.close()
        await db.commit()
        return row["request_count"] if row else 1

    async def purge_rate_windows(self, older_than: str) -> int:
        """Delete rate limit windows that started before a timestamp."""
        db = await get_db()
        cursor = await db.execute("DELETE FROM rate_limits WHERE window_start < ?", (older_than,))
        await db.commit()
        return cursor.rowcount


# Global store instance
trace_store = TraceStore()
