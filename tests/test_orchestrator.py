"""Tests for the streaming chat orchestrator."""

import asyncio
from types import SimpleNamespace

import httpx
import openai
import pytest

from federated_chat.errors import ProviderError
from federated_chat.federation import FederationManager
from federated_chat.orchestrator import (
    ChatStreamOrchestrator,
    ChatSuggestion,
    ChatSuggestions,
    ChatSummary,
    StreamOutcome,
)
from federated_chat.providers import StreamRequestType
from federated_chat.tool_registry import ToolRegistry
from tests.fakes import (
    FakeStream,
    client_factory,
    completed,
    delta,
    fake_model,
    function_call,
    sse,
    stdio,
)


def message(text):
    return SimpleNamespace(type="message", role="assistant", text=text)


def status_error(status, **kwargs):
    request = httpx.Request("POST", "https://api.example.com/v1/responses")
    response = httpx.Response(status, request=request, **kwargs)
    body = kwargs.get("json")
    return openai.APIStatusError(f"status {status}", response=response, body=body)


class Recorder:
    """Partial observer that records events in arrival order."""

    def __init__(self):
        self.events = []

    async def __call__(self, event):
        self.events.append(event)

    def types(self):
        return [e["type"] if isinstance(e, dict) else e.type for e in self.events]


def builtin_registry():
    def echo(text: str) -> str:
        """Echo text back."""
        return f"echo:{text}"

    registry = ToolRegistry()
    registry.register_callable(echo)
    return registry


@pytest.fixture
def federation(fake_clients):
    return FederationManager(
        config_loader=lambda: [stdio("files"), sse("web-search")],
        client_factory=client_factory(fake_clients),
    )


class TestStreamCompletion:
    @pytest.mark.asyncio
    async def test_partials_arrive_in_order(self):
        final = completed(output=[message("AB")])
        resolver = fake_model([FakeStream([delta("A"), delta("B"), final])])
        recorder = Recorder()
        orchestrator = ChatStreamOrchestrator(model_resolver=resolver, on_partial=recorder)

        result = await orchestrator.stream([{"role": "user", "content": "hi"}])

        assert recorder.events[:2] == [
            SimpleNamespace(type="response.output_text.delta", delta="A"),
            SimpleNamespace(type="response.output_text.delta", delta="B"),
        ]
        assert recorder.events[2] is final
        assert result.type is StreamOutcome.COMPLETED
        assert result.text == "AB"
        assert result.payload == [final.response.output[0]]
        assert result.usage == {"input_tokens": 1, "output_tokens": 1, "total_tokens": 2}
        assert not orchestrator.is_streaming

    @pytest.mark.asyncio
    async def test_system_preamble(self):
        resolver = fake_model([FakeStream([completed()])])
        orchestrator = ChatStreamOrchestrator(model_resolver=resolver)

        await orchestrator.stream([{"role": "user", "content": "hi"}])

        sent = resolver.responses.calls[0]["input"]
        assert sent[0]["role"] == "system"
        assert sent[1] == {"role": "user", "content": "hi"}

    @pytest.mark.asyncio
    async def test_skip_preamble(self):
        resolver = fake_model([FakeStream([completed()])])
        orchestrator = ChatStreamOrchestrator(model_resolver=resolver)

        await orchestrator.stream([{"role": "user", "content": "hi"}], skip_preamble=True)

        assert resolver.responses.calls[0]["input"] == [{"role": "user", "content": "hi"}]

    @pytest.mark.asyncio
    async def test_request_arguments(self):
        resolver = fake_model([FakeStream([completed()])])
        orchestrator = ChatStreamOrchestrator(
            builtin_tools=builtin_registry(), model_resolver=resolver, max_tokens=1234
        )

        await orchestrator.stream([])

        kwargs = resolver.responses.calls[0]
        assert kwargs["model"] == "test-model"
        assert kwargs["stream"] is True
        assert kwargs["store"] is False
        assert kwargs["max_output_tokens"] == 1234
        assert kwargs["tool_choice"] == "auto"
        assert [t["name"] for t in kwargs["tools"]] == ["echo"]

    @pytest.mark.asyncio
    async def test_no_tools_no_tool_arguments(self):
        resolver = fake_model([FakeStream([completed()])])
        orchestrator = ChatStreamOrchestrator(model_resolver=resolver)

        await orchestrator.stream([])

        assert "tools" not in resolver.responses.calls[0]

    @pytest.mark.asyncio
    async def test_request_type_reaches_the_resolver(self):
        seen = []
        resolver = fake_model([FakeStream([completed()])])

        def recording_resolver(provider, model, request_type):
            seen.append((provider, model, request_type))
            return resolver(provider, model, request_type)

        orchestrator = ChatStreamOrchestrator(
            model_resolver=recording_resolver, provider="proxy", model="m"
        )
        await orchestrator.stream([], StreamRequestType.SUMMARY)

        assert seen == [("proxy", "m", StreamRequestType.SUMMARY)]

    @pytest.mark.asyncio
    async def test_per_call_observer_overrides_instance_observer(self):
        instance, per_call = Recorder(), Recorder()
        resolver = fake_model([FakeStream([delta("x"), completed()])])
        orchestrator = ChatStreamOrchestrator(model_resolver=resolver, on_partial=instance)

        await orchestrator.stream([], on_partial=per_call)

        assert instance.events == []
        assert per_call.types() == ["response.output_text.delta", "response.completed"]


class TestToolRoundTrips:
    @pytest.mark.asyncio
    async def test_federated_tool_round_trip(self, federation, fake_clients):
        call_event = function_call("web_2dsearch-search", '{"query": "mcp"}')
        first = completed(output=[call_event.item], input_tokens=3, output_tokens=2)
        second = completed(output=[message("found it")], input_tokens=5, output_tokens=4)
        resolver = fake_model(
            [FakeStream([call_event, first]), FakeStream([delta("found it"), second])]
        )
        recorder = Recorder()
        orchestrator = ChatStreamOrchestrator(
            manager=federation, model_resolver=resolver, on_partial=recorder
        )

        result = await orchestrator.stream([{"role": "user", "content": "search"}])

        assert recorder.types() == [
            "response.output_item.done",
            "tool_result",
            "response.completed",
            "response.output_text.delta",
            "response.completed",
        ]
        tool_result = recorder.events[1]
        assert tool_result["tool_name"] == "web_2dsearch-search"
        assert tool_result["call_id"] == "call_1"
        assert "search:mcp" in tool_result["output"]
        assert fake_clients["web-search"].calls == [("search", {"query": "mcp"})]

        assert result.type is StreamOutcome.COMPLETED
        assert result.text == "found it"
        assert result.usage == {"input_tokens": 8, "output_tokens": 6, "total_tokens": 14}
        assert result.payload[0] is call_event.item
        assert result.payload[1]["type"] == "function_call_output"
        assert result.payload[2] is second.response.output[0]
        assert len(resolver.responses.calls) == 2

    @pytest.mark.asyncio
    async def test_builtin_and_federated_tools_are_offered(self, federation):
        resolver = fake_model([FakeStream([completed()])])
        orchestrator = ChatStreamOrchestrator(
            manager=federation, builtin_tools=builtin_registry(), model_resolver=resolver
        )

        await orchestrator.stream([])

        names = sorted(t["name"] for t in resolver.responses.calls[0]["tools"])
        assert names == ["echo", "files-read", "files-write", "web_2dsearch-search"]

    @pytest.mark.asyncio
    async def test_federated_tool_wins_name_collision(self, federation, fake_clients):
        builtin_calls = []
        registry = ToolRegistry()
        registry.register_callable(lambda query: builtin_calls.append(query), name="files-read")
        call_event = function_call("files-read", '{"query": "q"}')
        resolver = fake_model(
            [FakeStream([call_event, completed(output=[call_event.item])]), FakeStream([completed()])]
        )
        orchestrator = ChatStreamOrchestrator(
            manager=federation, builtin_tools=registry, model_resolver=resolver
        )

        await orchestrator.stream([])

        assert builtin_calls == []
        assert fake_clients["files"].calls == [("read", {"query": "q"})]

    @pytest.mark.asyncio
    async def test_lost_server_error_is_fed_back_to_the_model(self, federation, fake_clients):
        call_event = function_call("files-read", '{"query": "q"}')
        resolver = fake_model(
            [FakeStream([call_event, completed(output=[call_event.item])]), FakeStream([completed()])]
        )
        recorder = Recorder()

        async def lose_server_on_call(event):
            await recorder(event)
            if getattr(event, "type", None) == "response.output_item.done":
                fake_clients["files"].on_lost(RuntimeError("pipe closed"))

        orchestrator = ChatStreamOrchestrator(
            manager=federation, model_resolver=resolver, on_partial=lose_server_on_call
        )

        result = await orchestrator.stream([])

        assert result.type is StreamOutcome.COMPLETED
        tool_result = recorder.events[1]
        assert tool_result["output"] == "Error: No client found for server: files"
        second_input = resolver.responses.calls[1]["input"]
        assert second_input[-1]["output"] == "Error: No client found for server: files"

    @pytest.mark.asyncio
    async def test_federation_failure_leaves_builtin_tools(self):
        class BrokenManager:
            async def get_tool_set(self):
                raise RuntimeError("servers unavailable")

        resolver = fake_model([FakeStream([completed()])])
        orchestrator = ChatStreamOrchestrator(
            manager=BrokenManager(), builtin_tools=builtin_registry(), model_resolver=resolver
        )

        result = await orchestrator.stream([])

        assert result.type is StreamOutcome.COMPLETED
        assert [t["name"] for t in resolver.responses.calls[0]["tools"]] == ["echo"]

    @pytest.mark.asyncio
    async def test_step_limit(self):
        def looping_stream(call_id):
            event = function_call("echo", '{"text": "again"}', call_id=call_id)
            return FakeStream([event, completed(output=[event.item])])

        resolver = fake_model([looping_stream("c1"), looping_stream("c2"), looping_stream("c3")])
        orchestrator = ChatStreamOrchestrator(
            builtin_tools=builtin_registry(), model_resolver=resolver, max_steps=2
        )

        result = await orchestrator.stream([])

        assert result.type is StreamOutcome.COMPLETED
        assert len(resolver.responses.calls) == 2
        outputs = [item["output"] for item in result.payload if isinstance(item, dict)]
        assert outputs == ["echo:again", "echo:again"]


class TestStreamFailures:
    @pytest.mark.asyncio
    async def test_quota_status_with_json_body_is_rate_limited(self):
        quota = {"limit": 100, "used": 100, "resets_at": "2026-01-01T00:00:00Z"}
        resolver = fake_model(error=status_error(403, json=quota))
        orchestrator = ChatStreamOrchestrator(model_resolver=resolver)

        result = await orchestrator.stream([])

        assert result.type is StreamOutcome.RATE_LIMITED
        assert result.rate_limit_result == quota
        assert result.to_dict() == {"type": "rate-limited", "rate_limit_result": quota}

    @pytest.mark.asyncio
    async def test_quota_status_without_json_is_an_error(self):
        resolver = fake_model(error=status_error(403, text="Forbidden"))
        orchestrator = ChatStreamOrchestrator(model_resolver=resolver)

        result = await orchestrator.stream([])

        assert result.type is StreamOutcome.ERRORED
        assert result.message == "Forbidden"

    @pytest.mark.asyncio
    async def test_other_status_errors_carry_the_body(self):
        resolver = fake_model(error=status_error(500, text="upstream exploded"))
        orchestrator = ChatStreamOrchestrator(model_resolver=resolver)

        result = await orchestrator.stream([])

        assert result.type is StreamOutcome.ERRORED
        assert result.message == "upstream exploded"
        assert result.to_dict() == {"type": "error", "message": "upstream exploded"}

    @pytest.mark.asyncio
    async def test_configurable_quota_status(self):
        quota = {"limit": 1}
        resolver = fake_model(error=status_error(429, json=quota))
        orchestrator = ChatStreamOrchestrator(model_resolver=resolver, quota_status=429)

        result = await orchestrator.stream([])

        assert result.type is StreamOutcome.RATE_LIMITED

    @pytest.mark.asyncio
    async def test_generic_exception(self):
        resolver = fake_model(error=RuntimeError("network down"))
        orchestrator = ChatStreamOrchestrator(model_resolver=resolver)

        result = await orchestrator.stream([])

        assert result.type is StreamOutcome.ERRORED
        assert result.message == "network down"

    @pytest.mark.asyncio
    async def test_provider_resolution_failure(self):
        def resolver(provider, model, request_type):
            raise ProviderError("No auth tokens found")

        orchestrator = ChatStreamOrchestrator(model_resolver=resolver)

        result = await orchestrator.stream([])

        assert result.type is StreamOutcome.ERRORED
        assert result.message == "No auth tokens found"

    @pytest.mark.asyncio
    async def test_failed_event_in_stream(self):
        failed = SimpleNamespace(
            type="response.failed",
            response=SimpleNamespace(error=SimpleNamespace(message="model overloaded")),
        )
        resolver = fake_model([FakeStream([delta("partial"), failed])])
        orchestrator = ChatStreamOrchestrator(model_resolver=resolver)

        result = await orchestrator.stream([])

        assert result.type is StreamOutcome.ERRORED
        assert result.message == "model overloaded"


class TestAbort:
    @pytest.mark.asyncio
    async def test_abort_mid_stream(self):
        stream = FakeStream([delta("A")], hang=True)
        resolver = fake_model([stream])
        first_event = asyncio.Event()
        recorder = Recorder()

        async def observer(event):
            await recorder(event)
            first_event.set()

        orchestrator = ChatStreamOrchestrator(model_resolver=resolver, on_partial=observer)
        task = asyncio.create_task(orchestrator.stream([]))
        await asyncio.wait_for(first_event.wait(), timeout=1)

        assert orchestrator.is_streaming
        assert orchestrator.abort_stream() is True
        result = await asyncio.wait_for(task, timeout=1)

        assert result.type is StreamOutcome.ABORTED
        assert result.to_dict() == {"type": "aborted", "message": "Stream aborted"}
        assert stream.closed
        assert recorder.types() == ["response.output_text.delta"]
        assert not orchestrator.is_streaming

    @pytest.mark.asyncio
    async def test_external_cancellation_token(self):
        token = asyncio.Event()
        token.set()
        resolver = fake_model([FakeStream([delta("never")])])
        recorder = Recorder()
        orchestrator = ChatStreamOrchestrator(model_resolver=resolver, on_partial=recorder)

        result = await orchestrator.stream([], cancellation_token=token)

        assert result.type is StreamOutcome.ABORTED
        assert recorder.events == []

    def test_abort_without_stream(self):
        assert ChatStreamOrchestrator().abort_stream() is False


class TestSuggestions:
    @pytest.mark.asyncio
    async def test_returns_parsed_suggestions(self):
        parsed = ChatSuggestions(
            suggestions=[ChatSuggestion(title="Add tests", prompt="Write tests for the parser")]
        )
        seen = []
        resolver = fake_model(parsed=parsed)

        def recording_resolver(provider, model, request_type):
            seen.append(request_type)
            return resolver(provider, model, request_type)

        orchestrator = ChatStreamOrchestrator(model_resolver=recording_resolver)
        history = [{"role": "user", "content": "build a parser"}]

        suggestions = await orchestrator.generate_suggestions(history)

        assert suggestions == parsed.suggestions
        assert seen == [StreamRequestType.SUGGESTIONS]
        kwargs = resolver.responses.parse_calls[0]
        assert kwargs["text_format"] is ChatSuggestions
        assert kwargs["input"][0]["role"] == "system"
        assert kwargs["input"][1:] == history

    @pytest.mark.asyncio
    async def test_failure_returns_empty_list(self):
        orchestrator = ChatStreamOrchestrator(model_resolver=fake_model(error=RuntimeError("down")))
        assert await orchestrator.generate_suggestions([]) == []

    @pytest.mark.asyncio
    async def test_missing_structured_output(self):
        orchestrator = ChatStreamOrchestrator(model_resolver=fake_model(parsed=None))
        assert await orchestrator.generate_suggestions([]) == []


class TestChatSummary:
    @pytest.mark.asyncio
    async def test_renders_sections_from_historical_messages(self):
        parsed = ChatSummary(
            files_discussed=["src/app.py", "README.md"],
            project_context="A chat server",
            implementation_details="Added a route",
            user_preferences="Short answers",
            current_status="Done",
        )
        resolver = fake_model(parsed=parsed)
        orchestrator = ChatStreamOrchestrator(model_resolver=resolver)
        history = [
            {"role": "user", "content": "add a route"},
            {"type": "function_call", "name": "files-read", "arguments": "{}", "call_id": "c"},
            {"type": "function_call_output", "call_id": "c", "output": "..."},
            {"role": "tool", "content": "tool output"},
            {"role": "assistant", "content": "done"},
        ]

        summary = await orchestrator.generate_chat_summary(history)

        assert summary == (
            "# Files Discussed\nsrc/app.py\nREADME.md\n\n"
            "# Project Context\nA chat server\n\n"
            "# Implementation Details\nAdded a route\n\n"
            "# User Preferences\nShort answers\n\n"
            "# Current Status\nDone"
        )
        kwargs = resolver.responses.parse_calls[0]
        assert kwargs["text_format"] is ChatSummary
        assert kwargs["input"][0]["role"] == "system"
        assert kwargs["input"][1:] == [
            {"role": "user", "content": "[HISTORICAL CONTENT] add a route"},
            {"role": "assistant", "content": "[HISTORICAL CONTENT] done"},
        ]

    @pytest.mark.asyncio
    async def test_history_is_not_modified(self):
        history = [{"role": "user", "content": "hi"}]
        orchestrator = ChatStreamOrchestrator(model_resolver=fake_model(parsed=None))

        await orchestrator.generate_chat_summary(history)

        assert history == [{"role": "user", "content": "hi"}]

    @pytest.mark.asyncio
    async def test_failure_returns_none(self):
        orchestrator = ChatStreamOrchestrator(model_resolver=fake_model(error=RuntimeError("down")))
        assert await orchestrator.generate_chat_summary([]) is None

    @pytest.mark.asyncio
    async def test_missing_structured_output_returns_none(self):
        orchestrator = ChatStreamOrchestrator(model_resolver=fake_model(parsed=None))
        assert await orchestrator.generate_chat_summary([]) is None
