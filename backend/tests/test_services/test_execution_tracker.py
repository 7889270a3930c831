"""Tests for the execution tracker."""

import asyncio

import pytest

from app.config import TracePolicy
from app.db import prompt_store, trace_store
from app.db.database import get_db
from app.db.trace_store import cutoff
from app.errors import ConflictError, ErrorCode, InvalidStateError, NotFoundError, ValidationFailed
from app.models import ErrorEvidence, ExecutionType, SpanStatus, SpanType, TraceStatus, UsageTokens
from app.services.cleanup_queue import ResponseCleanupQueue
from app.services.execution_tracker import (
    CONFLICT_REASON,
    PREVIEW_LENGTH,
    STALE_REASON,
    ExecutionTracker,
    content_hash,
)

OWNER = "user-1"
OTHER = "user-2"


@pytest.fixture
def queue() -> ResponseCleanupQueue:
    return ResponseCleanupQueue(retry_delay=0)


@pytest.fixture
def tracker(queue) -> ExecutionTracker:
    return ExecutionTracker(policy=TracePolicy(), cleanup_queue=queue)


async def age_trace(trace_id: str, seconds: float) -> None:
    """Pretend a trace started `seconds` ago."""
    db = await get_db()
    await db.execute(
        "UPDATE execution_traces SET started_at = ? WHERE trace_id = ?",
        (cutoff(seconds), trace_id),
    )
    await db.commit()


class TestStartTrace:
    """Tests for starting traces and the per-prompt mutex."""

    async def test_returns_snapshot_of_family_outputs(self, tracker, make_prompt):
        root = await make_prompt("Root")
        child = await make_prompt("Child", parent_row_id=root.row_id)
        await prompt_store.update_prompt_output(root.row_id, "root output")

        result = await tracker.start_trace(OWNER, child.row_id, ExecutionType.SINGLE)

        assert result.context_snapshot == {root.row_id: "root output"}
        assert result.family_version == await prompt_store.get_family_version(root.row_id)
        assert result.previous_trace_id is None

        trace = await trace_store.get_trace(result.trace_id, OWNER)
        assert trace.status == TraceStatus.RUNNING
        assert trace.root_prompt_row_id == root.row_id
        assert set(trace.prompt_ids_at_start) == {root.row_id, child.row_id}

    async def test_unknown_prompt(self, tracker):
        with pytest.raises(NotFoundError):
            await tracker.start_trace(OWNER, "00000000-0000-0000-0000-000000000000", ExecutionType.SINGLE)

    async def test_prompt_of_another_owner(self, tracker, make_prompt):
        prompt = await make_prompt("Theirs", owner_id=OTHER)

        with pytest.raises(NotFoundError):
            await tracker.start_trace(OWNER, prompt.row_id, ExecutionType.SINGLE)

    async def test_concurrent_start_conflicts(self, tracker, make_prompt):
        prompt = await make_prompt()
        first = await tracker.start_trace(OWNER, prompt.row_id, ExecutionType.SINGLE)

        with pytest.raises(ConflictError) as exc_info:
            await tracker.start_trace(OWNER, prompt.row_id, ExecutionType.SINGLE)

        assert exc_info.value.code == ErrorCode.RETRYABLE_CONFLICT
        assert exc_info.value.recoverable is True
        assert exc_info.value.details == {"trace_id": first.trace_id}

        trace = await trace_store.get_trace(first.trace_id)
        assert trace.status == TraceStatus.RUNNING

    async def test_simultaneous_starts_admit_one(self, tracker, make_prompt):
        prompt = await make_prompt()

        results = await asyncio.gather(
            *(tracker.start_trace(OWNER, prompt.row_id, ExecutionType.SINGLE) for _ in range(5)),
            return_exceptions=True,
        )

        started = [result for result in results if not isinstance(result, BaseException)]
        conflicts = [result for result in results if isinstance(result, ConflictError)]
        assert len(started) == 1
        assert len(conflicts) == 4

        db = await get_db()
        cursor = await db.execute(
            "SELECT trace_id FROM execution_traces WHERE entry_prompt_row_id = ? AND status = 'running'",
            (prompt.row_id,),
        )
        rows = await cursor.fetchall()
        assert [row["trace_id"] for row in rows] == [started[0].trace_id]

    async def test_other_owner_does_not_conflict(self, tracker, make_prompt):
        prompt = await make_prompt()
        await tracker.start_trace(OWNER, prompt.row_id, ExecutionType.SINGLE)

        # The mutex is per (entry prompt, owner)
        db = await get_db()
        await db.execute("UPDATE prompts SET owner_id = ? WHERE row_id = ?", (OTHER, prompt.row_id))
        await db.commit()

        result = await tracker.start_trace(OTHER, prompt.row_id, ExecutionType.SINGLE)
        assert result.trace_id

    async def test_force_cleans_old_conflicting_trace(self, tracker, make_prompt):
        prompt = await make_prompt()
        first = await tracker.start_trace(OWNER, prompt.row_id, ExecutionType.SINGLE)
        await age_trace(first.trace_id, 60)

        second = await tracker.start_trace(OWNER, prompt.row_id, ExecutionType.SINGLE)

        old = await trace_store.get_trace(first.trace_id)
        assert old.error_summary == CONFLICT_REASON
        # The force-failed trace is then superseded by the new one
        assert old.status == TraceStatus.REPLACED
        assert second.previous_trace_id == first.trace_id

    async def test_stale_trace_cleaned_before_start(self, tracker, make_prompt):
        prompt = await make_prompt()
        first = await tracker.start_trace(OWNER, prompt.row_id, ExecutionType.SINGLE)
        await age_trace(first.trace_id, 200)

        second = await tracker.start_trace(OWNER, prompt.row_id, ExecutionType.SINGLE)

        old = await trace_store.get_trace(first.trace_id)
        assert old.error_summary == STALE_REASON
        assert old.completed_at is not None
        new = await trace_store.get_trace(second.trace_id)
        assert new.status == TraceStatus.RUNNING

    async def test_previous_terminal_trace_replaced(self, tracker, make_prompt):
        prompt = await make_prompt()
        first = await tracker.start_trace(OWNER, prompt.row_id, ExecutionType.SINGLE)
        await tracker.complete_trace(OWNER, first.trace_id, TraceStatus.COMPLETED)

        second = await tracker.start_trace(OWNER, prompt.row_id, ExecutionType.SINGLE)

        assert second.previous_trace_id == first.trace_id
        old = await trace_store.get_trace(first.trace_id)
        assert old.status == TraceStatus.REPLACED

        with pytest.raises(InvalidStateError):
            await tracker.complete_trace(OWNER, first.trace_id, TraceStatus.FAILED)

    async def test_other_execution_type_not_replaced(self, tracker, make_prompt):
        prompt = await make_prompt()
        first = await tracker.start_trace(OWNER, prompt.row_id, ExecutionType.SINGLE)
        await tracker.complete_trace(OWNER, first.trace_id, TraceStatus.COMPLETED)

        second = await tracker.start_trace(OWNER, prompt.row_id, ExecutionType.CASCADE_TOP)

        assert second.previous_trace_id is None
        old = await trace_store.get_trace(first.trace_id)
        assert old.status == TraceStatus.COMPLETED

    async def test_replacement_queues_response_cleanup(self, tracker, queue, make_prompt):
        prompt = await make_prompt()
        first = await tracker.start_trace(OWNER, prompt.row_id, ExecutionType.SINGLE)
        span = await tracker.create_span(OWNER, first.trace_id, SpanType.GENERATION, prompt.row_id)
        await tracker.complete_span(OWNER, span.span_id, SpanStatus.SUCCESS, openai_response_id="resp_old")
        await tracker.complete_trace(OWNER, first.trace_id, TraceStatus.COMPLETED)

        await tracker.start_trace(OWNER, prompt.row_id, ExecutionType.SINGLE)

        assert queue.pending == 1

    async def test_replacement_without_responses_queues_nothing(self, tracker, queue, make_prompt):
        prompt = await make_prompt()
        first = await tracker.start_trace(OWNER, prompt.row_id, ExecutionType.SINGLE)
        await tracker.complete_trace(OWNER, first.trace_id, TraceStatus.FAILED, "boom")

        await tracker.start_trace(OWNER, prompt.row_id, ExecutionType.SINGLE)

        assert queue.pending == 0


class TestCompleteTrace:
    """Tests for terminal trace transitions."""

    async def test_complete_sets_status_and_summary(self, tracker, make_prompt):
        prompt = await make_prompt()
        started = await tracker.start_trace(OWNER, prompt.row_id, ExecutionType.SINGLE)

        await tracker.complete_trace(OWNER, started.trace_id, TraceStatus.FAILED, "Model error")

        trace = await trace_store.get_trace(started.trace_id)
        assert trace.status == TraceStatus.FAILED
        assert trace.error_summary == "Model error"
        assert trace.completed_at is not None

    async def test_non_terminal_status_rejected(self, tracker, make_prompt):
        prompt = await make_prompt()
        started = await tracker.start_trace(OWNER, prompt.row_id, ExecutionType.SINGLE)

        with pytest.raises(InvalidStateError):
            await tracker.complete_trace(OWNER, started.trace_id, TraceStatus.RUNNING)

    async def test_other_owner_cannot_complete(self, tracker, make_prompt):
        prompt = await make_prompt()
        started = await tracker.start_trace(OWNER, prompt.row_id, ExecutionType.SINGLE)

        with pytest.raises(NotFoundError):
            await tracker.complete_trace(OTHER, started.trace_id, TraceStatus.COMPLETED)


class TestSpans:
    """Tests for span creation and completion."""

    async def test_sequence_order_is_gapless(self, tracker, make_prompt):
        prompt = await make_prompt()
        started = await tracker.start_trace(OWNER, prompt.row_id, ExecutionType.SINGLE)

        orders = []
        for _ in range(3):
            span = await tracker.create_span(OWNER, started.trace_id, SpanType.GENERATION, prompt.row_id)
            orders.append(span.sequence_order)

        assert orders == [1, 2, 3]
        listed = await tracker.get_trace_with_spans(OWNER, started.trace_id)
        assert [span.sequence_order for span in listed.spans] == [1, 2, 3]

    async def test_span_on_finished_trace_rejected(self, tracker, make_prompt):
        prompt = await make_prompt()
        started = await tracker.start_trace(OWNER, prompt.row_id, ExecutionType.SINGLE)
        await tracker.complete_trace(OWNER, started.trace_id, TraceStatus.COMPLETED)

        with pytest.raises(InvalidStateError) as exc_info:
            await tracker.create_span(OWNER, started.trace_id, SpanType.GENERATION)

        assert exc_info.value.details == {"status": "completed"}

    async def test_long_output_stored_as_artefact(self, tracker, make_prompt):
        prompt = await make_prompt()
        started = await tracker.start_trace(OWNER, prompt.row_id, ExecutionType.SINGLE)
        span = await tracker.create_span(OWNER, started.trace_id, SpanType.GENERATION, prompt.row_id)
        output = "x" * 600

        completed = await tracker.complete_span(
            OWNER,
            span.span_id,
            SpanStatus.SUCCESS,
            output=output,
            latency_ms=1200,
            usage_tokens=UsageTokens(input=10, output=20, total=30),
        )

        assert completed.status == SpanStatus.SUCCESS
        assert len(completed.output_preview) == PREVIEW_LENGTH
        assert completed.output_artefact_id is not None
        assert completed.usage_tokens.total == 30

        artefact = await tracker.get_artefact(OWNER, completed.output_artefact_id)
        assert artefact.content == output
        assert artefact.content_hash == content_hash(output)

        with pytest.raises(NotFoundError):
            await tracker.get_artefact(OTHER, completed.output_artefact_id)

    async def test_short_output_kept_inline(self, tracker, make_prompt):
        prompt = await make_prompt()
        started = await tracker.start_trace(OWNER, prompt.row_id, ExecutionType.SINGLE)
        span = await tracker.create_span(OWNER, started.trace_id, SpanType.GENERATION, prompt.row_id)

        completed = await tracker.complete_span(OWNER, span.span_id, SpanStatus.SUCCESS, output="short")

        assert completed.output_preview == "short"
        assert completed.output_artefact_id is None

    async def test_successful_output_merged_into_snapshot(self, tracker, make_prompt):
        prompt = await make_prompt()
        started = await tracker.start_trace(OWNER, prompt.row_id, ExecutionType.SINGLE)
        span = await tracker.create_span(OWNER, started.trace_id, SpanType.GENERATION, prompt.row_id)

        await tracker.complete_span(OWNER, span.span_id, SpanStatus.SUCCESS, output="answer")

        listed = await tracker.get_trace_with_spans(OWNER, started.trace_id)
        assert listed.trace.context_snapshot[prompt.row_id] == "answer"

    async def test_complete_twice_rejected(self, tracker, make_prompt):
        prompt = await make_prompt()
        started = await tracker.start_trace(OWNER, prompt.row_id, ExecutionType.SINGLE)
        span = await tracker.create_span(OWNER, started.trace_id, SpanType.GENERATION)
        await tracker.complete_span(OWNER, span.span_id, SpanStatus.SKIPPED)

        with pytest.raises(InvalidStateError):
            await tracker.complete_span(OWNER, span.span_id, SpanStatus.SUCCESS, output="late")

    async def test_vanished_span_raises_runtime_error(self, tracker, make_prompt, monkeypatch):
        prompt = await make_prompt()
        started = await tracker.start_trace(OWNER, prompt.row_id, ExecutionType.SINGLE)
        span = await tracker.create_span(OWNER, started.trace_id, SpanType.GENERATION)
        lookups = iter([span, None])

        async def get_span(span_id):
            return next(lookups)

        monkeypatch.setattr(tracker.traces, "get_span", get_span)

        with pytest.raises(RuntimeError, match="missing after completion"):
            await tracker.complete_span(OWNER, span.span_id, SpanStatus.SUCCESS)

    async def test_other_owner_cannot_complete_span(self, tracker, make_prompt):
        prompt = await make_prompt()
        started = await tracker.start_trace(OWNER, prompt.row_id, ExecutionType.SINGLE)
        span = await tracker.create_span(OWNER, started.trace_id, SpanType.GENERATION)

        with pytest.raises(NotFoundError):
            await tracker.complete_span(OTHER, span.span_id, SpanStatus.SUCCESS)


class TestFailSpan:
    """Tests for error evidence and retry chains."""

    async def test_evidence_is_write_once(self, tracker, make_prompt):
        prompt = await make_prompt()
        started = await tracker.start_trace(OWNER, prompt.row_id, ExecutionType.SINGLE)
        span = await tracker.create_span(OWNER, started.trace_id, SpanType.GENERATION)
        first = ErrorEvidence(error_type="RateLimit", error_message="429", retry_recommended=True)

        failed = await tracker.fail_span(OWNER, span.span_id, first)
        assert failed.status == SpanStatus.FAILED
        assert failed.error_evidence == first

        with pytest.raises(InvalidStateError):
            await tracker.fail_span(
                OWNER, span.span_id, ErrorEvidence(error_type="Other", error_message="overwrite")
            )

        stored = await trace_store.get_span(span.span_id)
        assert stored.error_evidence == first

    async def test_fail_completed_span_rejected(self, tracker, make_prompt):
        prompt = await make_prompt()
        started = await tracker.start_trace(OWNER, prompt.row_id, ExecutionType.SINGLE)
        span = await tracker.create_span(OWNER, started.trace_id, SpanType.GENERATION)
        await tracker.complete_span(OWNER, span.span_id, SpanStatus.SUCCESS, output="done")

        with pytest.raises(InvalidStateError):
            await tracker.fail_span(OWNER, span.span_id, ErrorEvidence(error_type="X", error_message="late"))

        stored = await trace_store.get_span(span.span_id)
        assert stored.status == SpanStatus.SUCCESS
        assert stored.error_evidence is None

    async def test_retry_chain(self, tracker, make_prompt):
        prompt = await make_prompt()
        started = await tracker.start_trace(OWNER, prompt.row_id, ExecutionType.SINGLE)
        first = await tracker.create_span(OWNER, started.trace_id, SpanType.GENERATION, prompt.row_id)
        await tracker.fail_span(OWNER, first.span_id, ErrorEvidence(error_type="Timeout", error_message="slow"))

        retry = await tracker.create_span(
            OWNER,
            started.trace_id,
            SpanType.RETRY,
            prompt.row_id,
            attempt_number=2,
            previous_attempt_span_id=first.span_id,
        )

        chain = await tracker.get_attempt_chain(OWNER, retry.span_id)
        assert [span.span_id for span in chain] == [first.span_id, retry.span_id]
        assert [span.attempt_number for span in chain] == [1, 2]

    async def test_previous_attempt_from_other_trace_rejected(self, tracker, make_prompt):
        one = await make_prompt("One")
        two = await make_prompt("Two")
        trace_one = await tracker.start_trace(OWNER, one.row_id, ExecutionType.SINGLE)
        trace_two = await tracker.start_trace(OWNER, two.row_id, ExecutionType.SINGLE)
        span = await tracker.create_span(OWNER, trace_one.trace_id, SpanType.GENERATION)

        with pytest.raises(ValidationFailed):
            await tracker.create_span(
                OWNER,
                trace_two.trace_id,
                SpanType.RETRY,
                attempt_number=2,
                previous_attempt_span_id=span.span_id,
            )


class TestOrphanCleanup:
    """Tests for the orphan sweeps."""

    async def test_cleanup_orphaned_scoped_to_owner(self, tracker, make_prompt):
        mine = await make_prompt("Mine")
        theirs = await make_prompt("Theirs", owner_id=OTHER)
        my_trace = await tracker.start_trace(OWNER, mine.row_id, ExecutionType.SINGLE)
        their_trace = await tracker.start_trace(OTHER, theirs.row_id, ExecutionType.SINGLE)
        await age_trace(my_trace.trace_id, 2000)
        await age_trace(their_trace.trace_id, 2000)

        assert await tracker.cleanup_orphaned(OWNER) == 1

        trace = await trace_store.get_trace(my_trace.trace_id)
        assert trace.status == TraceStatus.FAILED
        assert trace.error_summary == "Orphaned trace - marked as failed after 30 minutes"
        other = await trace_store.get_trace(their_trace.trace_id)
        assert other.status == TraceStatus.RUNNING

        assert await tracker.sweep_all_orphans() == 1

    async def test_young_traces_left_alone(self, tracker, make_prompt):
        prompt = await make_prompt()
        await tracker.start_trace(OWNER, prompt.row_id, ExecutionType.SINGLE)

        assert await tracker.cleanup_orphaned(OWNER) == 0
