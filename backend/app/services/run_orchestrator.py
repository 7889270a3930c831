"""Run orchestrator - executes one prompt and streams progress.

A run resolves the prompt's assistant, family thread, model and variables,
renders the message and system prompt, calls the provider and persists the
result. Progress is reported as events:

    started -> progress(prompt_loaded, loading_context, context_ready, calling_api)
            -> complete | interrupt | error

`stream()` wraps a run as server-sent events with periodic heartbeats and a
final `[DONE]` marker.
"""

import asyncio
import json
import logging
import time
from collections.abc import AsyncGenerator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from app.config import get_settings
from app.db import PendingResponseStore, PromptStore, ThreadStore, pending_store, prompt_store, thread_store
from app.errors import ConfigError, ErrorCode, NotFoundError, ProviderError, WorkbenchError
from app.llm import DEFAULT_ACTION_SYSTEM_PROMPT, TERMINAL_RESPONSE_STATUSES, format_schema_for_prompt, parse_retry_after
from app.models import (
    Assistant,
    ChatMessage,
    CurrentUser,
    ModelConfig,
    NodeType,
    PendingResponseCreate,
    PromptNode,
    Provider,
    ProviderRequest,
    RunRequest,
)
from app.services.credentials import get_credential
from app.services.family_threads import FamilyThreadResolver, family_threads
from app.services.model_resolver import ModelResolver, model_resolver
from app.services.provider_adapter import ProviderAdapter, provider_adapter
from app.services.template_engine import TemplateEngine, apply_template, template_engine

logger = logging.getLogger(__name__)

MAX_ASSISTANT_DEPTH = 10

EMPTY_PROMPT_FALLBACK = "Execute this prompt"
EMPTY_PROMPT_FALLBACK_SETTING = "cascade_empty_prompt_fallback"
ACTION_PROMPT_SETTING = "default_action_system_prompt"

PROVIDER_LABELS = {Provider.OPENAI: "OpenAI", Provider.ANTHROPIC: "Anthropic"}

EventSink = Callable[[dict[str, Any]], Awaitable[None]]


@dataclass
class LoadedContext:
    """Attached reference material injected ahead of the first message."""

    file_context: str = ""
    pages_context: str = ""
    files_count: int = 0
    pages_count: int = 0


ContextLoader = Callable[[PromptNode, Assistant, CurrentUser], Awaitable[LoadedContext]]


async def empty_context_loader(
    prompt: PromptNode, assistant: Assistant, user: CurrentUser
) -> LoadedContext:
    """Default loader: no attached files or pages."""
    return LoadedContext()


def build_run_options(prompt: PromptNode, assistant: Assistant, model: ModelConfig) -> dict[str, Any]:
    """Select call options from the prompt's toggles and the assistant's overrides.

    Prompt settings win over assistant overrides. Options the model cannot
    take are dropped.
    """
    temperature = prompt.temperature if prompt.temperature_on else None
    top_p = prompt.top_p if prompt.top_p_on else None
    max_tokens = prompt.max_tokens if prompt.max_tokens_on else None

    if temperature is None:
        temperature = assistant.temperature_override
    if top_p is None:
        top_p = assistant.top_p_override
    if max_tokens is None:
        max_tokens = assistant.max_tokens_override

    options: dict[str, Any] = {}
    if model.supports_temperature:
        if temperature is not None:
            options["temperature"] = temperature
        if top_p is not None:
            options["top_p"] = top_p
    if max_tokens is not None:
        options["max_output_tokens"] = max_tokens
    if prompt.frequency_penalty_on and prompt.frequency_penalty is not None:
        options["frequency_penalty"] = prompt.frequency_penalty
    if prompt.presence_penalty_on and prompt.presence_penalty is not None:
        options["presence_penalty"] = prompt.presence_penalty
    if prompt.seed_on and prompt.seed is not None:
        options["seed"] = prompt.seed
    if (
        prompt.reasoning_effort_on
        and prompt.reasoning_effort
        and prompt.reasoning_effort in model.reasoning_effort_levels
    ):
        options["reasoning_effort"] = prompt.reasoning_effort
    return options


def format_sse(event: dict[str, Any]) -> str:
    return f"data: {json.dumps(event)}\n\n"


def error_event(error: WorkbenchError) -> dict[str, Any]:
    """Terminal error frame for a failed run."""
    event: dict[str, Any] = {
        "type": "error",
        "error": error.message,
        "error_code": error.code.value,
    }
    if error.retry_after:
        event["retry_after_s"] = error.retry_after
    if isinstance(error.details, dict):
        event.update(error.details)
    return event


class RunOrchestrator:
    """Drives one prompt execution end to end."""

    def __init__(
        self,
        prompts: PromptStore | None = None,
        threads: ThreadStore | None = None,
        pending: PendingResponseStore | None = None,
        families: FamilyThreadResolver | None = None,
        templates: TemplateEngine | None = None,
        models: ModelResolver | None = None,
        adapter: ProviderAdapter | None = None,
        context_loader: ContextLoader | None = None,
        heartbeat_seconds: float | None = None,
    ) -> None:
        self.prompts = prompts or prompt_store
        self.threads = threads or thread_store
        self.pending = pending or pending_store
        self.families = families or family_threads
        self.templates = templates or template_engine
        self.models = models or model_resolver
        self.adapter = adapter or provider_adapter
        self.context_loader = context_loader or empty_context_loader
        self.heartbeat_seconds = heartbeat_seconds or get_settings().heartbeat_seconds

    # ==================== Streaming ====================

    async def stream(self, request: RunRequest, user: CurrentUser) -> AsyncGenerator[str, None]:
        """Run a prompt, yielding SSE frames until the run finishes."""
        queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        started = time.monotonic()

        async def emit(event: dict[str, Any]) -> None:
            await queue.put(event)

        async def produce() -> None:
            try:
                await queue.put(await self.run(request, user, emit, started))
            except WorkbenchError as e:
                logger.warning(f"Run of {request.child_prompt_row_id} failed ({e.code.value}): {e.message}")
                await queue.put(error_event(e))
            except Exception as e:
                logger.exception(f"Run of {request.child_prompt_row_id} crashed: {e}")
                await queue.put(
                    {
                        "type": "error",
                        "error": str(e) or "Internal server error",
                        "error_code": ErrorCode.INTERNAL_ERROR.value,
                    }
                )
            finally:
                await queue.put(None)

        task = asyncio.create_task(produce())
        try:
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=self.heartbeat_seconds)
                except TimeoutError:
                    yield format_sse({"type": "heartbeat", "elapsed_ms": _elapsed_ms(started)})
                    continue
                if event is None:
                    break
                yield format_sse(event)
        finally:
            if not task.done():
                task.cancel()

        yield "data: [DONE]\n\n"

    # ==================== Run ====================

    async def run(
        self,
        request: RunRequest,
        user: CurrentUser,
        emit: EventSink,
        started: float | None = None,
    ) -> dict[str, Any]:
        """Execute a prompt and return the terminal event.

        Raises:
            WorkbenchError: Any failure, carrying the error code for the client
        """
        started = started or time.monotonic()
        prompt_id = request.child_prompt_row_id

        await emit({"type": "started", "prompt_row_id": prompt_id})

        prompt = await self.prompts.get_prompt(prompt_id, user.id)
        if prompt is None:
            raise NotFoundError("Prompt not found")
        details = {"prompt_name": prompt.prompt_name}

        await emit(
            {
                "type": "progress",
                "stage": "prompt_loaded",
                "prompt_name": prompt.prompt_name,
                "elapsed_ms": _elapsed_ms(started),
            }
        )

        assistant = await self.resolve_assistant(prompt, user.id)
        model = await self.models.resolve(
            request.model_override or prompt.model or assistant.model_override
        )

        api_key = await get_credential(user.id, model.provider.value)
        if not api_key:
            raise ConfigError(
                f"{PROVIDER_LABELS[model.provider]} API key not configured", details=details
            )

        root_id = await self.families.resolve_root_prompt_id(prompt.row_id)
        thread = await self.families.get_or_create_family_thread(
            root_id, user.id, prompt.prompt_name, model.provider
        )
        previous_response_id = thread.last_response_id
        inherited = not thread.created and bool(previous_response_id)
        follow_up = bool(previous_response_id) and request.thread_row_id == thread.row_id

        logger.info(
            f"Run {prompt_id}: root={root_id} thread={thread.row_id} "
            f"created={thread.created} inherited={inherited} follow_up={follow_up}"
        )

        context = LoadedContext()
        if follow_up:
            await emit(
                {
                    "type": "progress",
                    "stage": "context_ready",
                    "files_count": 0,
                    "pages_count": 0,
                    "cached": True,
                    "elapsed_ms": _elapsed_ms(started),
                }
            )
        else:
            await emit(
                {
                    "type": "progress",
                    "stage": "loading_context",
                    "message": "Loading files and pages...",
                    "inherited_context": inherited,
                    "elapsed_ms": _elapsed_ms(started),
                }
            )
            context = await self.context_loader(prompt, assistant, user)
            await emit(
                {
                    "type": "progress",
                    "stage": "context_ready",
                    "files_count": context.files_count,
                    "pages_count": context.pages_count,
                    "inherited_context": inherited,
                    "elapsed_ms": _elapsed_ms(started),
                }
            )

        variables = await self.templates.build_variables(
            prompt,
            user,
            request.template_variables,
            scan_texts=(request.user_message, assistant.instructions),
        )

        message = await self.build_message(prompt, request.user_message, variables, context)
        if not message.strip():
            raise WorkbenchError(
                f'No message to send for prompt "{prompt.prompt_name}". '
                "Add content to the user prompt or admin prompt field.",
                code=ErrorCode.NO_MESSAGE_CONTENT,
                details=details,
            )

        instructions = self.build_system_prompt(prompt, assistant, variables)
        json_schema = None
        if prompt.node_type == NodeType.ACTION and prompt.json_schema:
            json_schema = prompt.json_schema
            instructions = await self.with_action_prompt(instructions, json_schema)

        background = model.provider == Provider.OPENAI and (
            request.background if request.background is not None else model.background_mode
        )

        history: list[ChatMessage] = []
        if model.provider == Provider.ANTHROPIC:
            history = [
                ChatMessage(role=turn.role, content=turn.content)
                for turn in await self.threads.list_messages(thread.row_id)
            ]

        provider_request = ProviderRequest(
            input=message,
            instructions=instructions or None,
            previous_response_id=previous_response_id if model.provider == Provider.OPENAI else None,
            history=history,
            options=build_run_options(prompt, assistant, model),
            json_schema=json_schema,
            background=background,
        )

        await emit(
            {
                "type": "progress",
                "stage": "calling_api",
                "model": model.model_id,
                "prompt_name": prompt.prompt_name,
                "elapsed_ms": _elapsed_ms(started),
            }
        )

        result = await self.adapter.call(model, api_key, provider_request)

        if not result.success:
            error_text = result.error or "Provider call failed"
            code = ErrorCode(result.error_code) if result.error_code else ErrorCode.API_CALL_FAILED
            retry_after = result.retry_after_s
            if retry_after is None and code == ErrorCode.RATE_LIMITED:
                retry_after = parse_retry_after(error_text)
            raise ProviderError(error_text, code=code, retry_after=retry_after, details=details)

        if result.response_id and result.status not in TERMINAL_RESPONSE_STATUSES:
            await self.pending.create(
                PendingResponseCreate(
                    response_id=result.response_id,
                    owner_id=user.id,
                    prompt_row_id=prompt.row_id,
                    thread_row_id=thread.row_id,
                    trace_id=request.trace_id,
                    model=model.model_id,
                    reasoning_effort=provider_request.options.get("reasoning_effort"),
                    request_metadata=result.request_params,
                )
            )
            logger.info(f"Run {prompt_id} continues in background as {result.response_id}")
            return {
                "type": "interrupt",
                "interrupt_type": "long_running",
                "response_id": result.response_id,
                "thread_row_id": thread.row_id,
                "prompt_name": prompt.prompt_name,
                "elapsed_ms": _elapsed_ms(started),
            }

        response_text = result.response_text or ""
        await self.prompts.update_prompt_output(
            prompt.row_id,
            response_text,
            last_ai_call_metadata={
                "latency_ms": _elapsed_ms(started),
                "model": model.model_id,
                "tokens_input": result.usage.prompt_tokens,
                "tokens_output": result.usage.completion_tokens,
                "tokens_total": result.usage.total_tokens,
                "response_id": result.response_id,
            },
        )

        if result.response_id:
            await self.families.update_family_thread_response(thread.row_id, result.response_id)
        if model.provider == Provider.ANTHROPIC:
            await self.threads.add_message(thread.row_id, "user", message)
            await self.threads.add_message(
                thread.row_id, "assistant", response_text, response_id=result.response_id
            )

        return {
            "type": "complete",
            "success": True,
            "response": response_text,
            "usage": result.usage.model_dump(),
            "model": model.model_id,
            "child_prompt_name": prompt.prompt_name,
            "thread_row_id": thread.row_id,
            "response_id": result.response_id,
            "elapsed_ms": _elapsed_ms(started),
            "request_params": result.request_params,
        }

    # ==================== Building blocks ====================

    async def resolve_assistant(self, prompt: PromptNode, owner_id: str) -> Assistant:
        """Nearest assistant on the prompt or its ancestors, created if none exists."""
        assistant = await self.prompts.get_assistant(prompt.row_id)
        if assistant is not None:
            return assistant

        current_id = prompt.parent_row_id
        depth = 0
        while current_id and depth < MAX_ASSISTANT_DEPTH:
            depth += 1
            assistant = await self.prompts.get_assistant(current_id)
            if assistant is not None:
                return assistant
            parent = await self.prompts.get_prompt(current_id, include_deleted=True)
            current_id = parent.parent_row_id if parent else None

        logger.info(f"Auto-creating assistant for prompt {prompt.row_id}")
        return await self.prompts.create_assistant(
            prompt.row_id,
            owner_id,
            prompt.prompt_name or "Auto-created Assistant",
            instructions="",
        )

    async def build_message(
        self,
        prompt: PromptNode,
        user_message: str | None,
        variables: dict[str, str],
        context: LoadedContext,
    ) -> str:
        """Render the user message, falling back to the prompt's own text."""
        if user_message:
            message = apply_template(user_message, variables)
        else:
            fallback = await self.prompts.get_setting(EMPTY_PROMPT_FALLBACK_SETTING)
            source = prompt.input_user_prompt or prompt.input_admin_prompt or fallback or EMPTY_PROMPT_FALLBACK
            message = apply_template(source, variables)

        if context.file_context:
            message = context.file_context + message
        if context.pages_context:
            message = context.pages_context + message
        return message

    @staticmethod
    def build_system_prompt(prompt: PromptNode, assistant: Assistant, variables: dict[str, str]) -> str:
        """Assistant instructions followed by the prompt's admin text."""
        system_prompt = apply_template(assistant.instructions, variables)
        admin_prompt = apply_template(prompt.input_admin_prompt, variables).strip()
        if admin_prompt:
            system_prompt = f"{system_prompt}\n\n{admin_prompt}" if system_prompt else admin_prompt
        return system_prompt.strip()

    async def with_action_prompt(self, system_prompt: str, schema: dict[str, Any]) -> str:
        """Prefix the JSON-only action prompt describing the schema."""
        template = await self.prompts.get_setting(ACTION_PROMPT_SETTING) or DEFAULT_ACTION_SYSTEM_PROMPT
        action_prompt = template.replace("{{schema_description}}", format_schema_for_prompt(schema))
        return f"{action_prompt}\n\n---\n\n{system_prompt}" if system_prompt else action_prompt


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


# Global orchestrator instance (lazy initialization)
_orchestrator: RunOrchestrator | None = None


def get_orchestrator() -> RunOrchestrator:
    """Get or create the global run orchestrator."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = RunOrchestrator()
    return _orchestrator
