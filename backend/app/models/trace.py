"""Pydantic models for execution traces, spans and artefacts.

A trace is one user-triggered run of an entry prompt. Spans are the individual
model calls, retries and tool calls inside it. Large span outputs are stored
as content-hashed artefacts.
"""

from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Discriminator, Tag
from pydantic import Field as PydanticField

UUID_PATTERN = r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"

# =============================================================================
# Enums
# =============================================================================


class ExecutionType(str, Enum):
    """How a trace was started."""

    SINGLE = "single"
    CASCADE_TOP = "cascade_top"
    CASCADE_CHILD = "cascade_child"


class TraceStatus(str, Enum):
    """Lifecycle of a trace."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REPLACED = "replaced"  # Superseded by a newer trace for the same entry prompt


class SpanType(str, Enum):
    """Kind of work a span records."""

    GENERATION = "generation"
    RETRY = "retry"
    TOOL_CALL = "tool_call"
    ACTION = "action"
    ERROR = "error"


class SpanStatus(str, Enum):
    """Lifecycle of a span."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class ArtefactType(str, Enum):
    """Kinds of stored artefacts."""

    OUTPUT = "output"
    ERROR_TRACE = "error_trace"
    TOOL_RESULT = "tool_result"
    CONTEXT = "context"


TERMINAL_TRACE_STATUSES = {
    TraceStatus.COMPLETED,
    TraceStatus.FAILED,
    TraceStatus.CANCELLED,
    TraceStatus.REPLACED,
}

# =============================================================================
# Records
# =============================================================================


class UsageTokens(BaseModel):
    """Token usage for one model call."""

    input: int = 0
    output: int = 0
    total: int = 0


class ErrorEvidence(BaseModel):
    """Audit record written when a span fails."""

    error_type: str
    error_message: str
    error_code: str | None = None
    stack_trace: str | None = None
    retry_recommended: bool = False


class ExecutionTrace(BaseModel):
    """One user-triggered run."""

    trace_id: str
    root_prompt_row_id: str
    entry_prompt_row_id: str
    execution_type: ExecutionType
    owner_id: str
    thread_row_id: str | None = None
    family_version_at_start: int = 1
    prompt_ids_at_start: list[str] = PydanticField(default_factory=list)
    context_snapshot: dict[str, str] = PydanticField(default_factory=dict)
    status: TraceStatus
    started_at: str
    completed_at: str | None = None
    error_summary: str | None = None


class ExecutionSpan(BaseModel):
    """One model call or attempt within a trace."""

    span_id: str
    trace_id: str
    prompt_row_id: str | None = None
    span_type: SpanType
    sequence_order: int
    attempt_number: int = 1
    previous_attempt_span_id: str | None = None
    status: SpanStatus
    openai_response_id: str | None = None
    output_preview: str | None = None
    output_artefact_id: str | None = None
    error_evidence: ErrorEvidence | None = None
    usage_tokens: UsageTokens | None = None
    latency_ms: int | None = None
    created_at: str
    completed_at: str | None = None


class ExecutionArtefact(BaseModel):
    """Full content of a large span output."""

    artefact_id: str
    span_id: str
    trace_id: str
    artefact_type: ArtefactType
    content_hash: str
    content: str
    created_at: str


class TraceWithSpans(BaseModel):
    """A trace and its spans in sequence order."""

    trace: ExecutionTrace
    spans: list[ExecutionSpan]


# =============================================================================
# Trace API actions
# =============================================================================


class StartTraceAction(BaseModel):
    action: Literal["start_trace"] = "start_trace"
    entry_prompt_row_id: str = PydanticField(pattern=UUID_PATTERN)
    execution_type: ExecutionType
    thread_row_id: str | None = None


class CreateSpanAction(BaseModel):
    action: Literal["create_span"] = "create_span"
    trace_id: str = PydanticField(pattern=UUID_PATTERN)
    span_type: SpanType
    prompt_row_id: str | None = None
    attempt_number: int = PydanticField(default=1, ge=1)
    previous_attempt_span_id: str | None = None


class CompleteSpanAction(BaseModel):
    action: Literal["complete_span"] = "complete_span"
    span_id: str = PydanticField(pattern=UUID_PATTERN)
    status: Literal["success", "failed", "skipped"]
    openai_response_id: str | None = None
    output: str | None = None
    latency_ms: int | None = PydanticField(default=None, ge=0)
    usage_tokens: UsageTokens | None = None


class FailSpanAction(BaseModel):
    action: Literal["fail_span"] = "fail_span"
    span_id: str = PydanticField(pattern=UUID_PATTERN)
    error_evidence: ErrorEvidence


class CompleteTraceAction(BaseModel):
    action: Literal["complete_trace"] = "complete_trace"
    trace_id: str = PydanticField(pattern=UUID_PATTERN)
    status: Literal["completed", "failed", "cancelled"]
    error_summary: str | None = None


class CleanupOrphanedAction(BaseModel):
    action: Literal["cleanup_orphaned"] = "cleanup_orphaned"


def _get_action_discriminator(v: Any) -> str | None:
    """Discriminator function for TraceAction union."""
    if isinstance(v, dict):
        return v.get("action")
    return getattr(v, "action", None)


TraceAction = Annotated[
    Annotated[StartTraceAction, Tag("start_trace")]
    | Annotated[CreateSpanAction, Tag("create_span")]
    | Annotated[CompleteSpanAction, Tag("complete_span")]
    | Annotated[FailSpanAction, Tag("fail_span")]
    | Annotated[CompleteTraceAction, Tag("complete_trace")]
    | Annotated[CleanupOrphanedAction, Tag("cleanup_orphaned")],
    Discriminator(_get_action_discriminator),
]


# =============================================================================
# Action results
# =============================================================================


class StartTraceResult(BaseModel):
    trace_id: str
    context_snapshot: dict[str, str]
    family_version: int
    previous_trace_id: str | None = None


class CreateSpanResult(BaseModel):
    span_id: str
    sequence_order: int


class SuccessResult(BaseModel):
    success: bool = True


class CleanupResult(BaseModel):
    success: bool = True
    cleaned_up: int
