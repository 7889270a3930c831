"""Pydantic models for the prompt workbench."""

from app.models.pending import (
    CancelResult,
    PendingResponse,
    PendingResponseCreate,
    PendingStatus,
    PollResult,
    ResponseIdRequest,
)
from app.models.prompt import (
    Assistant,
    CredentialWrite,
    ModelConfig,
    NodeType,
    PromptCreate,
    PromptNode,
    PromptVariable,
    Provider,
)
from app.models.run import (
    ChatMessage,
    CurrentUser,
    ProviderRequest,
    ProviderResult,
    RunRequest,
    Usage,
)
from app.models.thread import FamilyThread, ThreadMessage, ThreadResolution
from app.models.trace import (
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
    TraceAction,
    TraceStatus,
    TraceWithSpans,
    UsageTokens,
)

__all__ = [
    # Prompt tree
    "PromptNode",
    "PromptCreate",
    "NodeType",
    "Assistant",
    "PromptVariable",
    "ModelConfig",
    "Provider",
    "CredentialWrite",
    # Threads
    "FamilyThread",
    "ThreadMessage",
    "ThreadResolution",
    # Traces
    "ExecutionTrace",
    "ExecutionSpan",
    "ExecutionArtefact",
    "TraceWithSpans",
    "ExecutionType",
    "TraceStatus",
    "SpanType",
    "SpanStatus",
    "ArtefactType",
    "ErrorEvidence",
    "UsageTokens",
    # Trace actions
    "TraceAction",
    "StartTraceAction",
    "CreateSpanAction",
    "CompleteSpanAction",
    "FailSpanAction",
    "CompleteTraceAction",
    "CleanupOrphanedAction",
    "StartTraceResult",
    "CreateSpanResult",
    "SuccessResult",
    "CleanupResult",
    # Pending responses
    "PendingResponse",
    "PendingResponseCreate",
    "PendingStatus",
    "ResponseIdRequest",
    "PollResult",
    "CancelResult",
    # Runs
    "RunRequest",
    "CurrentUser",
    "ChatMessage",
    "ProviderRequest",
    "ProviderResult",
    "Usage",
]
