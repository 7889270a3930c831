"""Tests for the run orchestrator."""

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import respx
from httpx import Response

from app.db import credential_store, pending_store, prompt_store, thread_store
from app.models import Assistant, ModelConfig, NodeType, PendingStatus, Provider, RunRequest
from app.services.run_orchestrator import LoadedContext, RunOrchestrator, build_run_options

OPENAI = "https://api.openai.com/v1"
OWNER = "user-1"


def openai_reply(text: str = "Summary", response_id: str = "resp_1", status: str = "completed") -> dict:
    return {
        "id": response_id,
        "object": "response",
        "status": status,
        "output": [{"type": "message", "content": [{"type": "output_text", "text": text}]}],
        "usage": {"input_tokens": 12, "output_tokens": 5, "total_tokens": 17},
    }


async def collect(orchestrator: RunOrchestrator, request: RunRequest, user) -> list[dict]:
    """Run to completion and decode the SSE frames."""
    frames = [frame async for frame in orchestrator.stream(request, user)]
    assert frames[-1] == "data: [DONE]\n\n"
    events = []
    for frame in frames[:-1]:
        assert frame.startswith("data: ") and frame.endswith("\n\n")
        events.append(json.loads(frame[len("data: "):]))
    return events


def stages(events: list[dict]) -> list[str]:
    return [event.get("stage", event["type"]) for event in events if event["type"] != "heartbeat"]


@pytest.fixture
async def openai_key():
    await credential_store.set_credential(OWNER, "openai", "api_key", "sk-test")


@pytest.fixture
def orchestrator() -> RunOrchestrator:
    return RunOrchestrator(heartbeat_seconds=5)


class TestBuildRunOptions:
    """Tests for option selection."""

    def _assistant(self, **overrides) -> Assistant:
        return Assistant(
            row_id="a1",
            prompt_row_id="p1",
            owner_id=OWNER,
            name="Helper",
            created_at="now",
            updated_at="now",
            **overrides,
        )

    async def test_toggles_select_options(self, make_prompt):
        prompt = await make_prompt(
            temperature=0.2,
            temperature_on=True,
            top_p=0.9,
            top_p_on=False,
            seed=7,
            seed_on=True,
            max_tokens=300,
            max_tokens_on=True,
        )
        model = ModelConfig(model_id="gpt-4o", api_model_id="gpt-4o")

        options = build_run_options(prompt, self._assistant(), model)

        assert options == {"temperature": 0.2, "max_output_tokens": 300, "seed": 7}

    async def test_assistant_overrides_fill_gaps(self, make_prompt):
        prompt = await make_prompt()
        model = ModelConfig(model_id="gpt-4o", api_model_id="gpt-4o")
        assistant = self._assistant(temperature_override=0.5, max_tokens_override=100)

        options = build_run_options(prompt, assistant, model)

        assert options == {"temperature": 0.5, "max_output_tokens": 100}

    async def test_unsupported_options_dropped(self, make_prompt):
        prompt = await make_prompt(
            temperature=0.2,
            temperature_on=True,
            reasoning_effort="extreme",
            reasoning_effort_on=True,
        )
        model = ModelConfig(
            model_id="o3",
            api_model_id="o3",
            supports_temperature=False,
            supports_reasoning_effort=True,
            reasoning_effort_levels=["low", "medium", "high"],
        )

        assert build_run_options(prompt, self._assistant(), model) == {}

    async def test_supported_reasoning_effort_kept(self, make_prompt):
        prompt = await make_prompt(reasoning_effort="high", reasoning_effort_on=True)
        model = ModelConfig(model_id="o3", api_model_id="o3", reasoning_effort_levels=["low", "high"])

        assert build_run_options(prompt, self._assistant(), model) == {"reasoning_effort": "high"}


class TestOpenAIRun:
    """Tests for runs against the Responses API."""

    async def test_happy_path(self, orchestrator, make_prompt, user, openai_key):
        prompt = await make_prompt(
            "Summarizer", input_user_prompt="Summarize {{topic}}", input_admin_prompt="Be brief"
        )
        captured = {}

        def handler(request):
            captured["body"] = json.loads(request.content)
            return Response(200, json=openai_reply())

        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(f"{OPENAI}/responses").mock(side_effect=handler)
            events = await collect(
                orchestrator,
                RunRequest(child_prompt_row_id=prompt.row_id, template_variables={"topic": "tides"}),
                user,
            )

        assert stages(events) == [
            "started",
            "prompt_loaded",
            "loading_context",
            "context_ready",
            "calling_api",
            "complete",
        ]
        assert events[0] == {"type": "started", "prompt_row_id": prompt.row_id}

        body = captured["body"]
        assert body["model"] == "gpt-4o"
        assert body["input"] == "Summarize tides"
        assert body["instructions"] == "Be brief"
        assert body["store"] is True
        assert "previous_response_id" not in body

        complete = events[-1]
        assert complete["success"] is True
        assert complete["response"] == "Summary"
        assert complete["response_id"] == "resp_1"
        assert complete["child_prompt_name"] == "Summarizer"
        assert complete["usage"] == {"prompt_tokens": 12, "completion_tokens": 5, "total_tokens": 17}

        stored = await prompt_store.get_prompt(prompt.row_id)
        assert stored.output_response == "Summary"
        assert stored.last_ai_call_metadata["response_id"] == "resp_1"
        assert stored.last_ai_call_metadata["tokens_total"] == 17

        thread = await thread_store.get_thread(complete["thread_row_id"])
        assert thread.last_response_id == "resp_1"
        assert await prompt_store.get_assistant(prompt.row_id) is not None

    async def test_family_runs_chain_responses(self, orchestrator, make_prompt, user, openai_key):
        root = await make_prompt("Root", input_user_prompt="First")
        child = await make_prompt("Child", parent_row_id=root.row_id, input_user_prompt="Second")
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return Response(200, json=openai_reply(response_id=f"resp_{len(bodies)}"))

        with respx.mock() as respx_mock:
            respx_mock.post(f"{OPENAI}/responses").mock(side_effect=handler)
            first = await collect(orchestrator, RunRequest(child_prompt_row_id=root.row_id), user)
            second = await collect(orchestrator, RunRequest(child_prompt_row_id=child.row_id), user)

        assert "previous_response_id" not in bodies[0]
        assert bodies[1]["previous_response_id"] == "resp_1"
        assert first[-1]["thread_row_id"] == second[-1]["thread_row_id"]

        loading = next(event for event in second if event.get("stage") == "loading_context")
        assert loading["inherited_context"] is True

    async def test_follow_up_skips_context(self, orchestrator, make_prompt, user, openai_key):
        prompt = await make_prompt(input_user_prompt="Hello")

        with respx.mock() as respx_mock:
            respx_mock.post(f"{OPENAI}/responses").mock(return_value=Response(200, json=openai_reply()))
            first = await collect(orchestrator, RunRequest(child_prompt_row_id=prompt.row_id), user)
            follow_up = await collect(
                orchestrator,
                RunRequest(
                    child_prompt_row_id=prompt.row_id,
                    user_message="And then?",
                    thread_row_id=first[-1]["thread_row_id"],
                ),
                user,
            )

        assert "loading_context" not in stages(follow_up)
        ready = next(event for event in follow_up if event.get("stage") == "context_ready")
        assert ready["cached"] is True

    async def test_user_message_wins_over_prompt_text(self, orchestrator, make_prompt, user, openai_key):
        prompt = await make_prompt(input_user_prompt="Stored text")
        captured = {}

        def handler(request):
            captured["body"] = json.loads(request.content)
            return Response(200, json=openai_reply())

        with respx.mock() as respx_mock:
            respx_mock.post(f"{OPENAI}/responses").mock(side_effect=handler)
            await collect(
                orchestrator,
                RunRequest(child_prompt_row_id=prompt.row_id, user_message="Hi {{q.user.name}}"),
                user,
            )

        assert captured["body"]["input"] == "Hi Ada"

    async def test_empty_prompt_uses_fallback(self, orchestrator, make_prompt, user, openai_key):
        prompt = await make_prompt()
        await prompt_store.set_setting("cascade_empty_prompt_fallback", "Go")
        captured = {}

        def handler(request):
            captured["body"] = json.loads(request.content)
            return Response(200, json=openai_reply())

        with respx.mock() as respx_mock:
            respx_mock.post(f"{OPENAI}/responses").mock(side_effect=handler)
            await collect(orchestrator, RunRequest(child_prompt_row_id=prompt.row_id), user)

        assert captured["body"]["input"] == "Go"

    async def test_inherits_ancestor_assistant(self, orchestrator, make_prompt, user, openai_key):
        root = await make_prompt("Root")
        await prompt_store.create_assistant(root.row_id, OWNER, "Root helper", instructions="Parent rules")
        child = await make_prompt(
            "Child", parent_row_id=root.row_id, input_user_prompt="Go", input_admin_prompt="Be brief"
        )
        captured = {}

        def handler(request):
            captured["body"] = json.loads(request.content)
            return Response(200, json=openai_reply())

        with respx.mock() as respx_mock:
            respx_mock.post(f"{OPENAI}/responses").mock(side_effect=handler)
            await collect(orchestrator, RunRequest(child_prompt_row_id=child.row_id), user)

        assert captured["body"]["instructions"] == "Parent rules\n\nBe brief"
        assert await prompt_store.get_assistant(child.row_id) is None

    async def test_action_node_sends_strict_schema(self, orchestrator, make_prompt, user, openai_key):
        schema = {"type": "object", "properties": {"items": {"type": "array", "items": {"type": "string"}}}}
        prompt = await make_prompt(
            "Extractor",
            node_type=NodeType.ACTION,
            input_user_prompt="List things",
            json_schema=schema,
        )
        captured = {}

        def handler(request):
            captured["body"] = json.loads(request.content)
            return Response(200, json=openai_reply('{"items": []}'))

        with respx.mock() as respx_mock:
            respx_mock.post(f"{OPENAI}/responses").mock(side_effect=handler)
            await collect(orchestrator, RunRequest(child_prompt_row_id=prompt.row_id), user)

        text_format = captured["body"]["text"]["format"]
        assert text_format["type"] == "json_schema"
        assert text_format["name"] == "action_response"
        assert text_format["strict"] is True
        assert text_format["schema"]["additionalProperties"] is False
        assert text_format["schema"]["required"] == ["items"]
        assert captured["body"]["instructions"].startswith("You are an AI assistant that responds ONLY")
        assert '"items": Array<string>' in captured["body"]["instructions"]

    async def test_context_loader_prepends_material(self, make_prompt, user, openai_key):
        async def loader(prompt, assistant, current_user):
            return LoadedContext(
                file_context="[files]\n", pages_context="[pages]\n", files_count=2, pages_count=1
            )

        orchestrator = RunOrchestrator(context_loader=loader, heartbeat_seconds=5)
        prompt = await make_prompt(input_user_prompt="Question")
        captured = {}

        def handler(request):
            captured["body"] = json.loads(request.content)
            return Response(200, json=openai_reply())

        with respx.mock() as respx_mock:
            respx_mock.post(f"{OPENAI}/responses").mock(side_effect=handler)
            events = await collect(orchestrator, RunRequest(child_prompt_row_id=prompt.row_id), user)

        assert captured["body"]["input"] == "[pages]\n[files]\nQuestion"
        ready = next(event for event in events if event.get("stage") == "context_ready")
        assert ready["files_count"] == 2
        assert ready["pages_count"] == 1

    async def test_background_response_interrupts(self, orchestrator, make_prompt, user, openai_key):
        await prompt_store.upsert_model(
            ModelConfig(model_id="o3-pro", api_model_id="o3-pro", background_mode=True)
        )
        prompt = await make_prompt(input_user_prompt="Deep research", model="o3-pro")
        captured = {}

        def handler(request):
            captured["body"] = json.loads(request.content)
            return Response(200, json=openai_reply("", response_id="resp_bg", status="queued"))

        with respx.mock() as respx_mock:
            respx_mock.post(f"{OPENAI}/responses").mock(side_effect=handler)
            events = await collect(
                orchestrator,
                RunRequest(child_prompt_row_id=prompt.row_id, trace_id="trace-1"),
                user,
            )

        assert captured["body"]["background"] is True
        interrupt = events[-1]
        assert interrupt["type"] == "interrupt"
        assert interrupt["interrupt_type"] == "long_running"
        assert interrupt["response_id"] == "resp_bg"

        pending = await pending_store.get_by_response_id("resp_bg")
        assert pending.status == PendingStatus.PENDING
        assert pending.trace_id == "trace-1"
        assert pending.prompt_row_id == prompt.row_id
        assert pending.thread_row_id == interrupt["thread_row_id"]


class TestRunErrors:
    """Tests for failed runs."""

    async def test_prompt_not_found(self, orchestrator, user):
        events = await collect(orchestrator, RunRequest(child_prompt_row_id="missing"), user)

        assert [event["type"] for event in events] == ["started", "error"]
        assert events[-1]["error_code"] == "NOT_FOUND"

    async def test_missing_key(self, orchestrator, make_prompt, user):
        prompt = await make_prompt("Keyless", input_user_prompt="Hi")

        events = await collect(orchestrator, RunRequest(child_prompt_row_id=prompt.row_id), user)

        error = events[-1]
        assert error["type"] == "error"
        assert error["error_code"] == "CONFIG_ERROR"
        assert error["error"] == "OpenAI API key not configured"
        assert error["prompt_name"] == "Keyless"

    async def test_blank_message(self, orchestrator, make_prompt, user, openai_key):
        prompt = await make_prompt("Blank", input_user_prompt="{{nothing}}")

        events = await collect(
            orchestrator,
            RunRequest(child_prompt_row_id=prompt.row_id, template_variables={"nothing": "  "}),
            user,
        )

        error = events[-1]
        assert error["error_code"] == "NO_MESSAGE_CONTENT"
        assert error["error"].startswith('No message to send for prompt "Blank"')

    async def test_rate_limited(self, orchestrator, make_prompt, user, openai_key):
        prompt = await make_prompt(input_user_prompt="Hi")

        with respx.mock() as respx_mock:
            respx_mock.post(f"{OPENAI}/responses").mock(
                return_value=Response(
                    429, json={"error": {"message": "Rate limit reached. Please try again in 20s."}}
                )
            )
            events = await collect(orchestrator, RunRequest(child_prompt_row_id=prompt.row_id), user)

        error = events[-1]
        assert error["error_code"] == "RATE_LIMITED"
        assert error["retry_after_s"] == 20
        stored = await prompt_store.get_prompt(prompt.row_id)
        assert stored.output_response is None

    async def test_provider_failure(self, orchestrator, make_prompt, user, openai_key):
        prompt = await make_prompt(input_user_prompt="Hi")

        with respx.mock() as respx_mock:
            respx_mock.post(f"{OPENAI}/responses").mock(
                return_value=Response(500, json={"error": {"message": "Server exploded"}})
            )
            events = await collect(orchestrator, RunRequest(child_prompt_row_id=prompt.row_id), user)

        assert events[-1]["error_code"] == "API_CALL_FAILED"
        assert events[-1]["error"] == "Server exploded"

    async def test_unexpected_exception(self, make_prompt, user, openai_key):
        async def loader(prompt, assistant, current_user):
            raise RuntimeError("loader broke")

        orchestrator = RunOrchestrator(context_loader=loader, heartbeat_seconds=5)
        prompt = await make_prompt(input_user_prompt="Hi")

        events = await collect(orchestrator, RunRequest(child_prompt_row_id=prompt.row_id), user)

        assert events[-1]["error_code"] == "INTERNAL_ERROR"
        assert events[-1]["error"] == "loader broke"


class TestHeartbeat:
    """Tests for keepalive frames."""

    async def test_heartbeats_while_waiting(self, make_prompt, user, openai_key):
        async def slow_loader(prompt, assistant, current_user):
            await asyncio.sleep(0.2)
            return LoadedContext()

        orchestrator = RunOrchestrator(context_loader=slow_loader, heartbeat_seconds=0.05)
        prompt = await make_prompt(input_user_prompt="Hi")

        with respx.mock() as respx_mock:
            respx_mock.post(f"{OPENAI}/responses").mock(return_value=Response(200, json=openai_reply()))
            events = await collect(orchestrator, RunRequest(child_prompt_row_id=prompt.row_id), user)

        heartbeats = [event for event in events if event["type"] == "heartbeat"]
        assert heartbeats
        assert all(isinstance(event["elapsed_ms"], int) for event in heartbeats)
        assert events[-1]["type"] == "complete"


class TestAnthropicRun:
    """Tests for runs against the Messages API."""

    def _client(self, text: str = "Hello from Claude") -> MagicMock:
        client = MagicMock()
        client.create_message = AsyncMock(
            return_value=SimpleNamespace(
                id="msg_1",
                content=[SimpleNamespace(type="text", text=text)],
                usage=SimpleNamespace(input_tokens=3, output_tokens=4),
            )
        )
        return client

    async def test_history_replayed(self, orchestrator, make_prompt, user):
        await credential_store.set_credential(OWNER, "anthropic", "api_key", "sk-ant-test")
        prompt = await make_prompt(input_user_prompt="Hi", model="claude-sonnet-4-5")
        client = self._client()

        with patch("app.services.provider_adapter.get_client", return_value=client):
            first = await collect(orchestrator, RunRequest(child_prompt_row_id=prompt.row_id), user)
            await collect(
                orchestrator,
                RunRequest(child_prompt_row_id=prompt.row_id, user_message="Again"),
                user,
            )

        assert first[-1]["response"] == "Hello from Claude"
        assert first[-1]["usage"]["total_tokens"] == 7

        messages = await thread_store.list_messages(first[-1]["thread_row_id"])
        assert [(m.role, m.content) for m in messages] == [
            ("user", "Hi"),
            ("assistant", "Hello from Claude"),
            ("user", "Again"),
            ("assistant", "Hello from Claude"),
        ]

        second_call = client.create_message.call_args_list[1].kwargs
        assert second_call["model"] == "claude-sonnet-4-5"
        assert second_call["messages"] == [
            {"role": "user", "content": "Hi"},
            {"role": "assistant", "content": "Hello from Claude"},
            {"role": "user", "content": "Again"},
        ]

    async def test_missing_anthropic_key(self, orchestrator, make_prompt, user):
        prompt = await make_prompt(input_user_prompt="Hi", model="claude-sonnet-4-5")

        events = await collect(orchestrator, RunRequest(child_prompt_row_id=prompt.row_id), user)

        assert events[-1]["error"] == "Anthropic API key not configured"

    async def test_provider_model_catalogue(self, make_prompt):
        await prompt_store.upsert_model(
            ModelConfig(model_id="house-model", provider=Provider.ANTHROPIC, api_model_id="claude-x")
        )

        model = await RunOrchestrator().models.resolve("house-model")

        assert model.provider == Provider.ANTHROPIC
        assert model.api_model_id == "claude-x"
