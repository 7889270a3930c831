"""ExecutionTracker - lifecycle of execution traces and their spans.

A trace is one user-triggered run of an entry prompt. At most one trace per
(entry prompt, owner) may be running; the partial unique index on
execution_traces enforces this, and start_trace turns index violations into
either a force-clean and retry or a RETRYABLE_CONFLICT error.

Trace transitions:
    running -> completed | failed | cancelled
    completed | failed -> replaced   (a newer trace for the same entry point)

Span transitions:
    running -> success | failed | skipped

Failed spans never change again; a retry is a new span pointing back through
previous_attempt_span_id.
"""

import hashlib
import logging

import aiosqlite

from app.config import TracePolicy, get_settings
from app.db import PromptStore, TraceStore, prompt_store, trace_store
from app.db.trace_store import cutoff
from app.errors import ConflictError, InvalidStateError, NotFoundError, ValidationFailed
from app.models import (
    ArtefactType,
    CleanupOrphanedAction,
    CleanupResult,
    CompleteSpanAction,
    CompleteTraceAction,
    CreateSpanAction,
    CreateSpanResult,
    ErrorEvidence,
    ExecutionArtefact,
    ExecutionSpan,
    ExecutionTrace,
    ExecutionType,
    FailSpanAction,
    SpanStatus,
    SpanType,
    StartTraceAction,
    StartTraceResult,
    SuccessResult,
    TraceStatus,
    TraceWithSpans,
    UsageTokens,
)
from app.services.cleanup_queue import ResponseCleanupQueue, get_cleanup_queue

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 500

STALE_REASON = "Stale trace - auto-cleaned before new execution"
CONFLICT_REASON = "Force-cleaned due to conflict during new execution"
ORPHAN_REASON = "Orphaned trace - marked as failed after {minutes:g} minutes"

_TERMINAL_SPAN_STATUSES = {SpanStatus.SUCCESS, SpanStatus.FAILED, SpanStatus.SKIPPED}


def content_hash(content: str) -> str:
    """SHA-256 hex digest of UTF-8 content."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class ExecutionTracker:
    """Trace and span state machine."""

    def __init__(
        self,
        policy: TracePolicy | None = None,
        traces: TraceStore | None = None,
        prompts: PromptStore | None = None,
        cleanup_queue: ResponseCleanupQueue | None = None,
    ) -> None:
        self.policy = policy or get_settings().trace_policy
        self.traces = traces or trace_store
        self.prompts = prompts or prompt_store
        self._cleanup_queue = cleanup_queue

    @property
    def cleanup_queue(self) -> ResponseCleanupQueue:
        return self._cleanup_queue or get_cleanup_queue()

    # ==================== Dispatch ====================

    async def execute(
        self,
        action: StartTraceAction
        | CreateSpanAction
        | CompleteSpanAction
        | FailSpanAction
        | CompleteTraceAction
        | CleanupOrphanedAction,
        owner_id: str,
    ) -> StartTraceResult | CreateSpanResult | SuccessResult | CleanupResult:
        """Run one trace API action for a caller."""
        if isinstance(action, StartTraceAction):
            return await self.start_trace(
                owner_id, action.entry_prompt_row_id, action.execution_type, action.thread_row_id
            )
        if isinstance(action, CreateSpanAction):
            span = await self.create_span(
                owner_id,
                action.trace_id,
                action.span_type,
                prompt_row_id=action.prompt_row_id,
                attempt_number=action.attempt_number,
                previous_attempt_span_id=action.previous_attempt_span_id,
            )
            return CreateSpanResult(span_id=span.span_id, sequence_order=span.sequence_order)
        if isinstance(action, CompleteSpanAction):
            await self.complete_span(
                owner_id,
                action.span_id,
                SpanStatus(action.status),
                openai_response_id=action.openai_response_id,
                output=action.output,
                latency_ms=action.latency_ms,
                usage_tokens=action.usage_tokens,
            )
            return SuccessResult()
        if isinstance(action, FailSpanAction):
            await self.fail_span(owner_id, action.span_id, action.error_evidence)
            return SuccessResult()
        if isinstance(action, CompleteTraceAction):
            await self.complete_trace(
                owner_id, action.trace_id, TraceStatus(action.status), action.error_summary
            )
            return SuccessResult()
        if isinstance(action, CleanupOrphanedAction):
            return CleanupResult(cleaned_up=await self.cleanup_orphaned(owner_id))
        raise ValidationFailed(f"Unknown action: {getattr(action, 'action', None)}")

    # ==================== Traces ====================

    async def start_trace(
        self,
        owner_id: str,
        entry_prompt_row_id: str,
        execution_type: ExecutionType,
        thread_row_id: str | None = None,
    ) -> StartTraceResult:
        """Start a running trace for an entry prompt.

        Raises:
            NotFoundError: The prompt does not exist, is deleted or is not owned
            ConflictError: Another young trace holds the mutex
        """
        entry = await self.prompts.get_prompt(entry_prompt_row_id, owner_id)
        if entry is None:
            raise NotFoundError("Prompt not found or access denied")

        root_id = entry.effective_root_id
        family_version = await self.prompts.get_family_version(root_id)

        stale = await self.traces.fail_running_traces(
            STALE_REASON,
            cutoff(self.policy.stale_seconds),
            owner_id=owner_id,
            entry_prompt_row_id=entry_prompt_row_id,
        )
        if stale:
            logger.info(f"Cleaned {len(stale)} stale trace(s) for prompt {entry_prompt_row_id}: {stale}")

        family = await self.prompts.list_family_prompts(root_id)
        prompt_ids = [prompt.row_id for prompt in family]
        snapshot = {
            prompt.row_id: prompt.output_response for prompt in family if prompt.output_response
        }

        trace = await self._insert_with_conflict_resolution(
            root_id,
            entry_prompt_row_id,
            execution_type,
            owner_id,
            thread_row_id,
            family_version,
            prompt_ids,
            snapshot,
        )

        previous = await self.traces.find_previous_terminal_trace(
            entry_prompt_row_id, execution_type, owner_id, exclude_trace_id=trace.trace_id
        )
        previous_trace_id = None
        if previous is not None and await self.traces.mark_replaced(previous.trace_id):
            previous_trace_id = previous.trace_id
            logger.info(f"Trace {previous.trace_id} replaced by {trace.trace_id}")
            await self._queue_cleanup(owner_id, previous.trace_id)

        return StartTraceResult(
            trace_id=trace.trace_id,
            context_snapshot=snapshot,
            family_version=family_version,
            previous_trace_id=previous_trace_id,
        )

    async def _insert_with_conflict_resolution(
        self,
        root_id: str,
        entry_prompt_row_id: str,
        execution_type: ExecutionType,
        owner_id: str,
        thread_row_id: str | None,
        family_version: int,
        prompt_ids: list[str],
        snapshot: dict[str, str],
    ) -> ExecutionTrace:
        async def insert() -> ExecutionTrace:
            return await self.traces.insert_running_trace(
                root_id,
                entry_prompt_row_id,
                execution_type,
                owner_id,
                thread_row_id,
                family_version,
                prompt_ids,
                snapshot,
            )

        try:
            return await insert()
        except aiosqlite.IntegrityError:
            pass

        conflicting = await self.traces.find_running_trace(entry_prompt_row_id, owner_id)
        if conflicting is not None:
            if conflicting.started_at >= cutoff(self.policy.conflict_seconds):
                raise ConflictError(
                    "Another execution is already running for this prompt",
                    details={"trace_id": conflicting.trace_id},
                )
            cleaned = await self.traces.fail_running_traces(
                CONFLICT_REASON,
                cutoff(self.policy.conflict_seconds),
                owner_id=owner_id,
                entry_prompt_row_id=entry_prompt_row_id,
            )
            logger.warning(f"Force-cleaned conflicting trace(s) {cleaned} for prompt {entry_prompt_row_id}")

        try:
            return await insert()
        except aiosqlite.IntegrityError as e:
            raise ConflictError("Another execution is already running for this prompt") from e

    async def _queue_cleanup(self, owner_id: str, trace_id: str) -> None:
        # Cleanup of a replaced trace never fails the new one
        try:
            await self.cleanup_queue.enqueue_trace(owner_id, trace_id)
        except Exception as e:
            logger.exception(f"Failed to queue response cleanup for trace {trace_id}: {e}")

    async def complete_trace(
        self,
        owner_id: str,
        trace_id: str,
        status: TraceStatus,
        error_summary: str | None = None,
    ) -> None:
        """Move a trace to a terminal status. Re-applying a status is harmless.

        Raises:
            NotFoundError: Trace missing or not owned
            InvalidStateError: The trace has been replaced, or status is not terminal
        """
        if status not in (TraceStatus.COMPLETED, TraceStatus.FAILED, TraceStatus.CANCELLED):
            raise InvalidStateError(f"Cannot complete a trace with status {status.value}")

        trace = await self.traces.get_trace(trace_id, owner_id)
        if trace is None:
            raise NotFoundError("Trace not found or access denied")

        if not await self.traces.finish_trace(trace_id, status, error_summary, owner_id=owner_id):
            raise InvalidStateError("Trace has been replaced")

    async def cleanup_orphaned(self, owner_id: str) -> int:
        """Fail the caller's running traces older than the orphan threshold."""
        reason = ORPHAN_REASON.format(minutes=self.policy.orphan_seconds / 60)
        cleaned = await self.traces.fail_running_traces(
            reason, cutoff(self.policy.orphan_seconds), owner_id=owner_id
        )
        if cleaned:
            logger.info(f"Cleaned {len(cleaned)} orphaned trace(s) for {owner_id}: {cleaned}")
        return len(cleaned)

    async def sweep_all_orphans(self) -> int:
        """Fail every owner's orphaned running traces."""
        reason = ORPHAN_REASON.format(minutes=self.policy.orphan_seconds / 60)
        cleaned = await self.traces.fail_running_traces(reason, cutoff(self.policy.orphan_seconds))
        if cleaned:
            logger.info(f"Maintenance sweep failed {len(cleaned)} orphaned trace(s)")
        return len(cleaned)

    async def get_trace_with_spans(self, owner_id: str, trace_id: str) -> TraceWithSpans:
        """Get an owned trace and its spans in sequence order."""
        trace = await self.traces.get_trace(trace_id, owner_id)
        if trace is None:
            raise NotFoundError("Trace not found or access denied")
        return TraceWithSpans(trace=trace, spans=await self.traces.list_spans(trace_id))

    # ==================== Spans ====================

    async def create_span(
        self,
        owner_id: str,
        trace_id: str,
        span_type: SpanType,
        prompt_row_id: str | None = None,
        attempt_number: int = 1,
        previous_attempt_span_id: str | None = None,
    ) -> ExecutionSpan:
        """Append a running span to a running trace.

        Raises:
            NotFoundError: Trace missing or not owned
            InvalidStateError: The trace is not running
            ValidationFailed: previous_attempt_span_id is not a span of this trace
        """
        trace = await self.traces.get_trace(trace_id, owner_id)
        if trace is None:
            raise NotFoundError("Trace not found or access denied")
        if trace.status != TraceStatus.RUNNING:
            raise InvalidStateError("Trace is not running", details={"status": trace.status.value})

        if previous_attempt_span_id:
            previous = await self.traces.get_span(previous_attempt_span_id)
            if previous is None or previous.trace_id != trace_id:
                raise ValidationFailed("previous_attempt_span_id does not belong to this trace")

        return await self.traces.insert_span(
            trace_id,
            span_type,
            prompt_row_id=prompt_row_id,
            attempt_number=attempt_number,
            previous_attempt_span_id=previous_attempt_span_id,
        )

    async def _get_owned_span(self, owner_id: str, span_id: str) -> tuple[ExecutionSpan, ExecutionTrace]:
        span = await self.traces.get_span(span_id)
        if span is None:
            raise NotFoundError("Span not found")
        trace = await self.traces.get_trace(span.trace_id, owner_id)
        if trace is None:
            raise NotFoundError("Span not found or access denied")
        return span, trace

    async def complete_span(
        self,
        owner_id: str,
        span_id: str,
        status: SpanStatus,
        openai_response_id: str | None = None,
        output: str | None = None,
        latency_ms: int | None = None,
        usage_tokens: UsageTokens | None = None,
    ) -> ExecutionSpan:
        """Finish a running span.

        Outputs longer than PREVIEW_LENGTH are stored whole as an artefact and
        only their first PREVIEW_LENGTH characters are kept inline. Successful
        or skipped outputs are merged into the trace's context snapshot.

        Raises:
            NotFoundError: Span missing or not owned
            InvalidStateError: The span is already terminal
        """
        if status not in _TERMINAL_SPAN_STATUSES:
            raise InvalidStateError(f"Cannot complete a span with status {status.value}")

        span, trace = await self._get_owned_span(owner_id, span_id)
        if span.status in _TERMINAL_SPAN_STATUSES:
            raise InvalidStateError("Span is already complete", details={"status": span.status.value})

        preview = output
        artefact_id = None
        if output is not None and len(output) > PREVIEW_LENGTH:
            artefact = await self.traces.insert_artefact(
                span_id, trace.trace_id, ArtefactType.OUTPUT, content_hash(output), output
            )
            artefact_id = artefact.artefact_id
            preview = output[:PREVIEW_LENGTH]

        updated = await self.traces.complete_span(
            span_id, status, openai_response_id, preview, artefact_id, latency_ms, usage_tokens
        )
        if not updated:
            raise InvalidStateError("Span is already complete")

        if status in (SpanStatus.SUCCESS, SpanStatus.SKIPPED) and output and span.prompt_row_id:
            await self.traces.merge_context_snapshot(trace.trace_id, span.prompt_row_id, output)

        completed = await self.traces.get_span(span_id)
        if completed is None:
            raise RuntimeError(f"Span {span_id} missing after completion")
        return completed

    async def fail_span(self, owner_id: str, span_id: str, evidence: ErrorEvidence) -> ExecutionSpan:
        """Record error evidence on a running span. Evidence is written once.

        Raises:
            NotFoundError: Span missing or not owned
            InvalidStateError: The span already has evidence or is terminal
        """
        span, _ = await self._get_owned_span(owner_id, span_id)
        if span.error_evidence is not None:
            raise InvalidStateError("Span already has error evidence")

        if not await self.traces.fail_span(span_id, evidence):
            raise InvalidStateError("Span is not running", details={"status": span.status.value})

        logger.info(f"Span {span_id} failed: {evidence.error_type}: {evidence.error_message}")
        failed = await self.traces.get_span(span_id)
        if failed is None:
            raise RuntimeError(f"Span {span_id} missing after failure")
        return failed

    async def get_attempt_chain(self, owner_id: str, span_id: str) -> list[ExecutionSpan]:
        """Retry chain ending at a span, oldest attempt first."""
        await self._get_owned_span(owner_id, span_id)
        return await self.traces.list_attempt_chain(span_id)

    # ==================== Artefacts ====================

    async def get_artefact(self, owner_id: str, artefact_id: str) -> ExecutionArtefact:
        """Get an artefact whose trace the caller owns."""
        artefact = await self.traces.get_artefact(artefact_id)
        if artefact is None or await self.traces.get_trace(artefact.trace_id, owner_id) is None:
            raise NotFoundError("Artefact not found or access denied")
        return artefact


# Global tracker instance (lazy initialization)
_tracker: ExecutionTracker | None = None


def get_tracker() -> ExecutionTracker:
    """Get or create the global tracker."""
    global _tracker
    if _tracker is None:
        _tracker = ExecutionTracker()
    return _tracker
