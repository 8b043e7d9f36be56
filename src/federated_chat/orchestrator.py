"""
Streaming chat orchestration.

One ``stream()`` call drives the model through up to ``max_steps`` tool-call
round trips, forwarding every stream event to the display observer in arrival
order, and always resolves to a ``StreamResult`` instead of raising.
"""

import asyncio
import json
import logging
import sys
import uuid
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Type

import openai
from pydantic import BaseModel, Field

from .errors import ModelStreamError, StreamAborted
from .federation import FederationManager
from .prompts import SUGGESTIONS_PROMPT, SUMMARY_PROMPT, get_system_prompt
from .providers import ModelClient, StreamRequestType, resolve_model_client
from .settings import Settings
from .tool_registry import ToolRegistry, ToolSet, execute_function_call, merge_tool_sets

logger = logging.getLogger(__name__)

PartialObserver = Callable[[Any], Awaitable[None]]
ModelResolver = Callable[[str, str, StreamRequestType], ModelClient]


class SessionLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that injects the stream session id into structured logs."""

    def __init__(self, logger, session_id):
        self.session_id = session_id
        super().__init__(logger, {})

    def process(self, msg, kwargs):
        if "extra" in kwargs and "structured" in kwargs["extra"]:
            kwargs["extra"]["structured"]["session_id"] = self.session_id
        return msg, kwargs


class StreamOutcome(str, Enum):
    COMPLETED = "completed"
    RATE_LIMITED = "rate-limited"
    ERRORED = "error"
    ABORTED = "aborted"


@dataclass
class StreamResult:
    """Terminal envelope of one ``stream()`` call."""

    type: StreamOutcome
    payload: List[Any] = field(default_factory=list)
    usage: Dict[str, int] = field(default_factory=dict)
    text: str = ""
    rate_limit_result: Optional[Dict[str, Any]] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"type": self.type.value}
        if self.type is StreamOutcome.COMPLETED:
            data.update(
                payload=[to_jsonable(item) for item in self.payload],
                usage=self.usage,
                text=self.text,
            )
        if self.rate_limit_result is not None:
            data["rate_limit_result"] = self.rate_limit_result
        if self.message is not None:
            data["message"] = self.message
        return data


class ChatSuggestion(BaseModel):
    title: str = Field(description="A few words naming the follow-up")
    prompt: str = Field(description="The full request the user would send")


class ChatSuggestions(BaseModel):
    suggestions: List[ChatSuggestion]


class ChatSummary(BaseModel):
    files_discussed: List[str]
    project_context: str
    implementation_details: str
    user_preferences: str
    current_status: str

    def render(self) -> str:
        files = "\n".join(self.files_discussed)
        return (
            f"# Files Discussed\n{files}\n\n"
            f"# Project Context\n{self.project_context}\n\n"
            f"# Implementation Details\n{self.implementation_details}\n\n"
            f"# User Preferences\n{self.user_preferences}\n\n"
            f"# Current Status\n{self.current_status}"
        )


HISTORICAL_PREFIX = "[HISTORICAL CONTENT] "


def to_historical(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Drop tool traffic and mark the remaining messages as past conversation."""
    historical = []
    for message in messages:
        if not isinstance(message, dict) or "role" not in message:
            continue
        if message["role"] == "tool":
            continue
        content = message.get("content")
        if isinstance(content, str):
            message = {**message, "content": HISTORICAL_PREFIX + content}
        historical.append(message)
    return historical


def to_jsonable(value: Any) -> Any:
    """Convert SDK models (pydantic) to plain JSON-compatible data."""
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json", exclude_none=True)
    return value


def get_error_message(error: BaseException) -> str:
    message = str(error)
    if message:
        return message
    return getattr(error, "message", None) or "An unknown error occurred"


async def _noop_observer(event: Any) -> None:
    return None


class ChatStreamOrchestrator:
    """Drives one streaming model call at a time over built-in and federated tools."""

    def __init__(
        self,
        manager: Optional[FederationManager] = None,
        builtin_tools: Optional[ToolRegistry] = None,
        model_resolver: Optional[ModelResolver] = None,
        on_partial: Optional[PartialObserver] = None,
        provider: str = "openai",
        model: str = "gpt-5",
        max_steps: int = 10,
        max_tokens: int = 64000,
        quota_status: int = 403,
    ):
        self.manager = manager
        self.builtin_tools = builtin_tools or ToolRegistry()
        self.model_resolver = model_resolver or resolve_model_client
        self.on_partial = on_partial or _noop_observer
        self.provider = provider
        self.model = model
        self.max_steps = max_steps
        self.max_tokens = max_tokens
        self.quota_status = quota_status
        self._cancellation_token: Optional[asyncio.Event] = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        manager: Optional[FederationManager] = None,
        builtin_tools: Optional[ToolRegistry] = None,
        on_partial: Optional[PartialObserver] = None,
    ) -> "ChatStreamOrchestrator":
        return cls(
            manager=manager,
            builtin_tools=builtin_tools,
            model_resolver=partial(resolve_model_client, settings=settings),
            on_partial=on_partial,
            provider=settings.provider,
            model=settings.model,
            max_steps=settings.max_steps,
            max_tokens=settings.max_tokens,
            quota_status=settings.quota_status,
        )

    @property
    def is_streaming(self) -> bool:
        return self._cancellation_token is not None

    def abort_stream(self) -> bool:
        """Cancel the in-flight stream. Returns whether one was active."""
        if self._cancellation_token is None:
            return False
        self._cancellation_token.set()
        return True

    async def stream(
        self,
        messages: List[Dict[str, Any]],
        request_type: StreamRequestType = StreamRequestType.CHAT,
        cancellation_token: Optional[asyncio.Event] = None,
        skip_preamble: bool = False,
        on_partial: Optional[PartialObserver] = None,
    ) -> StreamResult:
        """Stream one model response, running tool calls as they arrive.

        Parameters
        ----------
        messages : list
            Conversation history as Responses API input items
        request_type : StreamRequestType
            Forwarded to providers that meter usage per request type
        cancellation_token : asyncio.Event, optional
            Set it (or call ``abort_stream()``) to stop the stream
        skip_preamble : bool
            When ``True`` no system instruction is prepended
        on_partial : callable, optional
            Observer for this call only; defaults to the instance observer

        Returns
        -------
        StreamResult
            Never raises for provider, tool or cancellation failures.
        """
        token = cancellation_token or asyncio.Event()
        self._cancellation_token = token
        emit = on_partial or self.on_partial
        log = SessionLoggerAdapter(logger, uuid.uuid4().hex[:8])

        try:
            context = list(messages)
            if not skip_preamble:
                context.insert(0, {"role": "system", "content": get_system_prompt(sys.platform)})

            model_client = self.model_resolver(self.provider, self.model, request_type)
            tools = await self._collect_tools(log)
            return await self._run(model_client, context, tools, token, emit, log)
        except Exception as error:
            return self._classify(error, token, log)
        finally:
            if self._cancellation_token is token:
                self._cancellation_token = None

    async def _parse(
        self, request_type: StreamRequestType, context: List[Any], text_format: Type[BaseModel]
    ) -> Any:
        model_client = self.model_resolver(self.provider, self.model, request_type)
        parse_args = {
            "model": model_client.model,
            "input": context,
            "text_format": text_format,
            "store": False,
            "max_output_tokens": self.max_tokens,
        }
        if model_client.headers:
            parse_args["extra_headers"] = model_client.headers
        response = await model_client.client.responses.parse(**parse_args)
        return response.output_parsed

    async def generate_suggestions(self, messages: List[Dict[str, Any]]) -> List[ChatSuggestion]:
        """Suggest follow-up prompts for the conversation; ``[]`` on any failure."""
        context = [{"role": "system", "content": SUGGESTIONS_PROMPT}, *messages]
        try:
            parsed = await self._parse(StreamRequestType.SUGGESTIONS, context, ChatSuggestions)
        except Exception as e:
            logger.error(f"Error generating suggestions: {e}")
            return []
        return list(parsed.suggestions) if parsed is not None else []

    async def generate_chat_summary(self, messages: List[Dict[str, Any]]) -> Optional[str]:
        """Summarize the conversation as markdown sections; ``None`` on any failure.

        Tool traffic is left out and every message is marked as historical so
        the model does not act on requests made earlier in the conversation.
        """
        context = [{"role": "system", "content": SUMMARY_PROMPT}, *to_historical(messages)]
        try:
            parsed = await self._parse(StreamRequestType.SUMMARY, context, ChatSummary)
        except Exception as e:
            logger.error(f"Error generating summary: {e}")
            return None
        if parsed is None:
            logger.error("Error generating summary: no structured output returned")
            return None
        return parsed.render()

    async def _collect_tools(self, log: logging.LoggerAdapter) -> ToolSet:
        federated: ToolSet = {}
        if self.manager is not None:
            try:
                federated = await self.manager.get_tool_set()
            except Exception as e:
                log.error(f"Failed to get MCP tools: {e}")
        return merge_tool_sets(self.builtin_tools.get_tool_set(), federated)

    async def _run(
        self,
        model_client: ModelClient,
        context: List[Any],
        tools: ToolSet,
        token: asyncio.Event,
        emit: PartialObserver,
        log: logging.LoggerAdapter,
    ) -> StreamResult:
        payload: List[Any] = []
        usage = {"input_tokens": 0, "output_tokens": 0, "total_tokens": 0}
        text_parts: List[str] = []
        tool_schemas = [tool.schema() for tool in tools.values()]

        for step in range(self.max_steps):
            create_args = {
                "model": model_client.model,
                "input": context,
                "stream": True,
                "store": False,
                "max_output_tokens": self.max_tokens,
            }
            if tool_schemas:
                create_args["tools"] = tool_schemas
                create_args["tool_choice"] = "auto"
            if model_client.headers:
                create_args["extra_headers"] = model_client.headers

            stream = await model_client.client.responses.create(**create_args)

            tool_results = []
            async with aclosing(self._read(stream, token)) as events:
                async for event in events:
                    await emit(event)
                    event_type = getattr(event, "type", None)

                    if event_type == "response.output_text.delta":
                        text_parts.append(event.delta)
                    elif event_type == "response.output_item.done" and event.item.type == "function_call":
                        item = event.item
                        log.info(
                            "Tool call received",
                            extra={
                                "structured": {
                                    "log_type": "tool_call",
                                    "tool_name": item.name,
                                    "arguments": item.arguments,
                                    "call_id": item.call_id,
                                }
                            },
                        )
                        result = await execute_function_call(tools, item)
                        tool_results.append(result)
                        await emit({"type": "tool_result", "tool_name": item.name, **result})
                    elif event_type == "response.completed":
                        response = event.response
                        context.extend(response.output)
                        payload.extend(response.output)
                        self._add_usage(usage, getattr(response, "usage", None))
                    elif event_type in ("response.failed", "error"):
                        raise ModelStreamError(self._stream_error_message(event))

            if not tool_results:
                break
            context.extend(tool_results)
            payload.extend(tool_results)
            log.info(
                f"Step {step + 1} ran {len(tool_results)} tool call(s)",
                extra={"structured": {"log_type": "tool_step", "step": step + 1}},
            )
        else:
            log.warning(f"Reached max steps ({self.max_steps})")

        return StreamResult(
            type=StreamOutcome.COMPLETED,
            payload=payload,
            usage=usage,
            text="".join(text_parts),
        )

    async def _read(self, stream: Any, token: asyncio.Event) -> AsyncIterator[Any]:
        """Yield stream events until exhausted, racing each read against ``token``."""
        iterator = stream.__aiter__()
        try:
            while True:
                if token.is_set():
                    raise StreamAborted("Stream aborted")

                next_task = asyncio.ensure_future(iterator.__anext__())
                abort_task = asyncio.ensure_future(token.wait())
                done, pending = await asyncio.wait(
                    [next_task, abort_task], return_when=asyncio.FIRST_COMPLETED
                )

                for task in pending:
                    task.cancel()
                    try:
                        await task
                    except (asyncio.CancelledError, StopAsyncIteration):
                        pass

                if next_task not in done:
                    raise StreamAborted("Stream aborted")
                try:
                    event = next_task.result()
                except StopAsyncIteration:
                    return
                yield event
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                try:
                    await close()
                except Exception as e:
                    logger.debug(f"Error closing model stream: {e}")

    @staticmethod
    def _add_usage(total: Dict[str, int], usage: Any) -> None:
        if usage is None:
            return
        for key in total:
            total[key] += getattr(usage, key, 0) or 0

    @staticmethod
    def _stream_error_message(event: Any) -> str:
        error = getattr(event, "error", None)
        if error is None and getattr(event, "response", None) is not None:
            error = getattr(event.response, "error", None)
        if error is None:
            return getattr(event, "message", None) or "Model stream failed"
        return getattr(error, "message", None) or str(error)

    @staticmethod
    def _error_body(error: openai.APIStatusError) -> Optional[str]:
        try:
            text = error.response.text
        except Exception:
            text = None
        if text:
            return text
        if error.body is not None:
            return json.dumps(error.body, ensure_ascii=False, default=str)
        return None

    def _classify(
        self, error: Exception, token: asyncio.Event, log: logging.LoggerAdapter
    ) -> StreamResult:
        if token.is_set() or isinstance(error, StreamAborted):
            log.info("Stream aborted")
            return StreamResult(type=StreamOutcome.ABORTED, message="Stream aborted")

        log.error(f"Stream error: {error}")

        if isinstance(error, openai.APIStatusError):
            body = self._error_body(error)
            if error.status_code == self.quota_status and body:
                try:
                    quota = json.loads(body)
                except ValueError:
                    quota = None
                if isinstance(quota, dict):
                    return StreamResult(type=StreamOutcome.RATE_LIMITED, rate_limit_result=quota)
            if body:
                return StreamResult(type=StreamOutcome.ERRORED, message=body)

        return StreamResult(type=StreamOutcome.ERRORED, message=get_error_message(error))
