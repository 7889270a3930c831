"""Async completion reconciler.

Background provider calls finish out of band. Two paths drive the matching
PendingResponse to a terminal status: the provider's webhook and a
client-driven poll. Both may run concurrently for the same response; every
terminal write is guarded by `status = 'pending'`, so exactly one of them
applies the transition and only the winner cascades it to the thread, the
prompt and the trace. Cascade failures are logged and never fail the caller.
"""

import logging
from typing import Any

from app.config import get_settings
from app.db import (
    PendingResponseStore,
    PromptStore,
    ThreadStore,
    TraceStore,
    pending_store,
    prompt_store,
    thread_store,
    trace_store,
)
from app.errors import ErrorCode, NotFoundError, ProviderError, ValidationFailed, WorkbenchError
from app.llm import (
    TERMINAL_RESPONSE_STATUSES,
    OpenAIResponsesClient,
    extract_output_text,
    extract_reasoning_text,
    get_openai_client,
)
from app.models import CancelResult, PendingResponse, PendingStatus, PollResult, TraceStatus
from app.services.credentials import get_credential

logger = logging.getLogger(__name__)

RESPONSE_EVENT_PREFIX = "response."
POLL_EVENT_PREFIX = "poll_fallback_"
CANCEL_EVENT_PREFIX = "cancel_"

_ALREADY_FINISHED_MARKERS = ("already completed", "cannot be cancelled")


class ResponseReconciler:
    """Applies terminal provider states to locally tracked records."""

    def __init__(
        self,
        pending: PendingResponseStore | None = None,
        prompts: PromptStore | None = None,
        threads: ThreadStore | None = None,
        traces: TraceStore | None = None,
        client: OpenAIResponsesClient | None = None,
    ) -> None:
        self.pending = pending or pending_store
        self.prompts = prompts or prompt_store
        self.threads = threads or thread_store
        self.traces = traces or trace_store
        self._client = client

    @property
    def client(self) -> OpenAIResponsesClient:
        return self._client or get_openai_client()

    # ==================== Webhook ====================

    async def handle_webhook_event(self, event: dict[str, Any]) -> dict[str, Any]:
        """Apply one verified webhook event.

        Returns a small acknowledgement body. Unknown responses, duplicate
        deliveries and unknown event types are acknowledged without changes.
        """
        event_type = event.get("type") or ""
        event_id = event.get("id") or ""
        data = event.get("data") or {}
        response_id = data.get("id")

        if not response_id:
            logger.warning(f"Webhook {event_id} ({event_type}) has no response id")
            return {"received": True}

        logger.info(f"Webhook event {event_type} for {response_id} ({event_id})")
        await self.cleanup_orphaned_pending()

        pending = await self.pending.get_by_response_id(response_id)
        if pending is None:
            logger.info(f"No pending response for {response_id}")
            return {"received": True}

        if pending.webhook_event_id == event_id:
            logger.info(f"Webhook event {event_id} already processed")
            return {"received": True, "duplicate": True}

        if event_type == "response.completed":
            output_text = extract_output_text(data)
            applied = await self.pending.complete_if_pending(
                response_id, PendingStatus.COMPLETED, event_id, output_text=output_text
            )
            if applied:
                await self._cascade_completed(pending, output_text)
                logger.info(f"Response {response_id} completed, output length {len(output_text)}")
        elif event_type in ("response.failed", "response.cancelled", "response.incomplete"):
            status = PendingStatus(event_type.removeprefix(RESPONSE_EVENT_PREFIX))
            error = data.get("error") or {}
            message = error.get("message") or f"Response {status.value}"
            applied = await self.pending.complete_if_pending(
                response_id, status, event_id, error=message, error_code=error.get("code")
            )
            if applied:
                await self._cascade_failed(pending, message)
                logger.info(f"Response {response_id} {status.value}: {message}")
        else:
            logger.warning(f"Unknown webhook event type: {event_type}")
            return {"received": True}

        if not applied:
            logger.info(f"Response {response_id} was already terminal; webhook {event_id} ignored")
        return {"received": True, "applied": applied}

    # ==================== Poll ====================

    async def poll(self, owner_id: str, response_id: str) -> PollResult:
        """Check a background response, finishing it locally if the provider has.

        Raises:
            NotFoundError: Unknown response id, or owned by someone else
            WorkbenchError: OPENAI_NOT_CONFIGURED without a key
            ProviderError: OPENAI_API_ERROR when the provider lookup fails
        """
        if not response_id:
            raise ValidationFailed("response_id is required", code=ErrorCode.MISSING_FIELD)

        pending = await self.pending.get_by_response_id(response_id)
        if pending is None or pending.owner_id != owner_id:
            raise NotFoundError("Pending response not found")

        if pending.is_terminal:
            return PollResult(status=pending.status.value, output_text=pending.output_text or None)

        api_key = await get_credential(owner_id, "openai")
        if not api_key:
            raise WorkbenchError("OpenAI API key is not configured", code=ErrorCode.OPENAI_NOT_CONFIGURED)

        data = await self.client.retrieve_response(api_key, response_id)
        status = data.get("status") or "in_progress"
        output_text = extract_output_text(data) or None
        reasoning_text = extract_reasoning_text(data) or None

        if status in TERMINAL_RESPONSE_STATUSES:
            await self._apply_poll_result(pending, PendingStatus(status), output_text, data)

        return PollResult(status=status, reasoning_text=reasoning_text, output_text=output_text)

    async def _apply_poll_result(
        self,
        pending: PendingResponse,
        status: PendingStatus,
        output_text: str | None,
        data: dict[str, Any],
    ) -> None:
        error = data.get("error") or {}
        message = None
        if status != PendingStatus.COMPLETED:
            message = error.get("message") or f"Response {status.value}"

        applied = await self.pending.complete_if_pending(
            pending.response_id,
            status,
            f"{POLL_EVENT_PREFIX}{pending.response_id}",
            output_text=output_text,
            error=message,
            error_code=error.get("code"),
        )
        if not applied:
            logger.info(f"Response {pending.response_id} finished by another path before poll")
            return

        logger.info(f"Poll finished response {pending.response_id} as {status.value}")
        if status == PendingStatus.COMPLETED:
            await self._cascade_completed(pending, output_text or "")
        else:
            await self._cascade_failed(pending, message or "")

    # ==================== Cancel ====================

    async def cancel(self, owner_id: str, response_id: str) -> CancelResult:
        """Cancel a background response at the provider.

        A provider answer that the response already finished counts as success.

        Raises:
            ValidationFailed: Malformed response id
            NotFoundError: The provider does not know the response
            WorkbenchError: NOT_CANCELLABLE, RATE_LIMITED or CANCEL_FAILED
        """
        if not response_id.startswith("resp_"):
            raise ValidationFailed("Invalid response_id format")

        pending = await self.pending.get_by_response_id(response_id)
        if pending is not None and pending.owner_id != owner_id:
            raise NotFoundError("Pending response not found")

        api_key = await get_credential(owner_id, "openai")
        if not api_key:
            raise WorkbenchError("OpenAI API key is not configured", code=ErrorCode.OPENAI_NOT_CONFIGURED)

        response = await self.client.cancel_response(api_key, response_id)

        if response.is_success:
            data = response.json()
            await self._mark_cancelled(pending)
            return CancelResult(
                status=data.get("status") or "cancelled",
                response_id=data.get("id") or response_id,
            )

        message = "Failed to cancel response"
        try:
            body = response.json()
            error = body.get("error") if isinstance(body, dict) else None
            if isinstance(error, dict) and error.get("message"):
                message = error["message"]
        except ValueError:
            message = response.text or message

        if response.status_code == 400 and any(marker in message for marker in _ALREADY_FINISHED_MARKERS):
            logger.info(f"Response {response_id} already finished, cancel treated as success")
            return CancelResult(status="completed", response_id=response_id)

        logger.warning(f"Cancel of {response_id} failed ({response.status_code}): {message}")
        if response.status_code == 404:
            raise NotFoundError("Response not found or already expired")
        if response.status_code == 429:
            raise ProviderError(message, status_code=429, code=ErrorCode.RATE_LIMITED)
        if response.status_code >= 500:
            raise ProviderError(message, status_code=response.status_code, code=ErrorCode.CANCEL_FAILED)
        raise ProviderError(message, status_code=response.status_code, code=ErrorCode.NOT_CANCELLABLE)

    async def _mark_cancelled(self, pending: PendingResponse | None) -> None:
        if pending is None or pending.is_terminal:
            return
        applied = await self.pending.complete_if_pending(
            pending.response_id,
            PendingStatus.CANCELLED,
            f"{CANCEL_EVENT_PREFIX}{pending.response_id}",
            error="Response cancelled",
        )
        if applied and pending.trace_id:
            await self._cascade_trace(pending, TraceStatus.CANCELLED, "Response cancelled")

    # ==================== Cascades ====================

    async def _cascade_completed(self, pending: PendingResponse, output_text: str) -> None:
        if pending.thread_row_id:
            try:
                await self.threads.update_last_response(pending.thread_row_id, pending.response_id)
            except Exception as e:
                logger.warning(f"Failed to update thread {pending.thread_row_id}: {e}")

        if pending.prompt_row_id:
            try:
                await self.prompts.update_prompt_output(
                    pending.prompt_row_id, output_text, set_user_prompt_result=True
                )
            except Exception as e:
                logger.warning(f"Failed to update prompt {pending.prompt_row_id}: {e}")

        await self._cascade_trace(pending, TraceStatus.COMPLETED, None)

    async def _cascade_failed(self, pending: PendingResponse, message: str) -> None:
        await self._cascade_trace(pending, TraceStatus.FAILED, message)

    async def _cascade_trace(
        self, pending: PendingResponse, status: TraceStatus, error_summary: str | None
    ) -> None:
        if not pending.trace_id:
            return
        try:
            await self.traces.finish_trace(pending.trace_id, status, error_summary)
        except Exception as e:
            logger.warning(f"Failed to update trace {pending.trace_id}: {e}")

    # ==================== Maintenance ====================

    async def cleanup_orphaned_pending(self) -> int:
        """Fail pending responses nobody finished in time. Never raises."""
        settings = get_settings()
        try:
            cleaned = await self.pending.fail_orphaned(settings.pending_orphan_seconds)
        except Exception as e:
            logger.warning(f"Pending response cleanup failed: {e}")
            return 0
        if cleaned:
            logger.info(f"Failed {cleaned} orphaned pending response(s)")
        return cleaned

    async def purge_old_pending(self) -> int:
        """Delete terminal pending responses past the retention period."""
        purged = await self.pending.purge_terminal(get_settings().pending_retention_days)
        if purged:
            logger.info(f"Purged {purged} old pending response(s)")
        return purged


# Global reconciler instance (lazy initialization)
_reconciler: ResponseReconciler | None = None


def get_reconciler() -> ResponseReconciler:
    """Get or create the global reconciler."""
    global _reconciler
    if _reconciler is None:
        _reconciler = ResponseReconciler()
    return _reconciler
