"""
Request orchestration for the frontend endpoints.

Each exchange moves through these states:

    Received -> BackendCalled -> Streaming -> Completed
                              |            -> ClientDisconnected
                              -> BackendCallFailed

Whatever the terminal state, one ExchangeRecord is written once the backend
stream has been drained.
"""

import asyncio
import json
import logging
import time
import uuid
from collections.abc import AsyncGenerator, AsyncIterator, Coroutine
from dataclasses import dataclass, field
from typing import Any, TypeVar

from fastapi import Response
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import BaseModel, ValidationError

from backend import Backend, BackendError, BackendMetadata, IncrementStream
from config import ProxyConfig
from exchange_log import ExchangeLog, ExchangeRecord
from models import (
    ChatRequest,
    GenerateRequest,
    Message,
    ModelInfo,
    ShowRequest,
)

logger = logging.getLogger(__name__)

STATE_COMPLETED = "Completed"
STATE_CLIENT_DISCONNECTED = "ClientDisconnected"
STATE_BACKEND_CALL_FAILED = "BackendCallFailed"

RequestT = TypeVar("RequestT", bound=BaseModel)


class InvalidRequest(ValueError):
    """The client body could not be decoded into the expected request shape."""


def decode_request(body: bytes, request_type: type[RequestT]) -> RequestT:
    try:
        return request_type.model_validate_json(body)
    except ValidationError as e:
        raise InvalidRequest(str(e)) from e


# =============================================================================
# Pre-backend transforms
# =============================================================================


def apply_text_injection(messages: list[Message], text: str, mode: str) -> list[Message]:
    """
    Append ``text`` to the first or last user message.

    Returns a new list; the input messages are not modified. Messages that
    already contain ``text`` are left as they are, so applying the injection
    twice gives the same result as applying it once.
    """
    if not text:
        return messages

    user_indexes = [i for i, msg in enumerate(messages) if msg.role == "user"]
    if not user_indexes:
        return messages

    target = user_indexes[0] if mode == "first" else user_indexes[-1]
    if text in messages[target].content:
        return messages

    injected = list(messages)
    injected[target] = messages[target].model_copy(
        update={"content": f"{messages[target].content} {text}"}
    )
    return injected


def tool_name(tool: Any) -> str:
    """Name of a declared function tool, or "" when it cannot be determined."""
    if isinstance(tool, dict):
        function = tool.get("function")
        if isinstance(function, dict) and isinstance(function.get("name"), str):
            return function["name"]
    return ""


def filter_tools(tools: list[Any] | None, blacklist: list[str]) -> list[Any] | None:
    """Drop blacklisted tools; tools without a recognizable name are kept."""
    if not tools or not blacklist:
        return tools

    blocked = set(blacklist)
    kept = []
    for tool in tools:
        name = tool_name(tool)
        if name and name in blocked:
            logger.info(f"Filtering out blacklisted tool: {name}")
            continue
        kept.append(tool)
    return kept


def last_user_message(messages: list[Message]) -> str:
    for msg in reversed(messages):
        if msg.role == "user" and msg.content:
            return msg.content
    return "unknown"


def format_prompt(messages: list[Message]) -> str:
    return "".join(f"{msg.role}: {msg.content}\n" for msg in messages)


# =============================================================================
# Exchange handling
# =============================================================================


@dataclass
class Exchange:
    """Per-exchange capture state."""

    endpoint: str
    model: str
    stream: bool
    frontend_request: str
    prompt: str
    last_message: str
    method: str = "POST"
    tag: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    started_at: float = field(default_factory=time.time)
    started_ns: int = field(default_factory=time.perf_counter_ns)
    sent_lines: list[str] = field(default_factory=list)
    full_response: list[str] = field(default_factory=list)
    latency_ms: int = 0
    state: str = ""
    error: str = ""

    def mark_latency(self) -> None:
        self.latency_ms = (time.perf_counter_ns() - self.started_ns) // 1_000_000


class ExchangeHandler:
    """Glue between the frontend endpoints, the backend and the exchange log."""

    def __init__(
        self,
        config: ProxyConfig,
        backend: Backend,
        exchange_log: ExchangeLog | None = None,
    ):
        self.config = config
        self.backend = backend
        self.exchange_log = exchange_log
        self._pending: set[asyncio.Task[None]] = set()

    # -------------------------------------------------------------------------
    # Endpoints
    # -------------------------------------------------------------------------

    async def generate(self, body: bytes) -> Response:
        """Handle /api/generate."""
        try:
            request = decode_request(body, GenerateRequest)
        except InvalidRequest:
            return PlainTextResponse("Invalid request body", status_code=400)

        self._log_request("Generate", request)
        if self.config.log_messages:
            logger.info(f"Generate request: model={request.model} prompt={request.prompt!r}")

        exchange = Exchange(
            endpoint="/api/generate",
            model=request.model,
            stream=request.stream,
            frontend_request=body.decode("utf-8", errors="replace"),
            prompt=request.prompt,
            last_message=request.prompt or "unknown",
        )

        try:
            stream, metadata = await self.backend.generate(request)
        except BackendError as e:
            return await self._backend_failed(exchange, e)

        return self._stream_response(exchange, stream, metadata)

    async def chat(self, body: bytes) -> Response:
        """Handle /api/chat."""
        try:
            request = decode_request(body, ChatRequest)
        except InvalidRequest:
            return PlainTextResponse("Invalid request body", status_code=400)

        self._log_request("Chat", request)

        # Captured before injection so the log shows what the user typed
        original_last_message = last_user_message(request.messages)

        updates: dict[str, Any] = {}
        if self.config.injection_enabled and self.config.injection_text:
            updates["messages"] = apply_text_injection(
                request.messages, self.config.injection_text, self.config.injection_mode
            )
        if self.config.tool_blacklist:
            updates["tools"] = filter_tools(request.tools, self.config.tool_blacklist)
        if updates:
            request = request.model_copy(update=updates)

        if self.config.log_messages:
            logger.info(f"Chat request: model={request.model}")
            for i, msg in enumerate(request.messages):
                logger.info(f"  [{i}] {msg.role}: {msg.content}")

        exchange = Exchange(
            endpoint="/api/chat",
            model=request.model,
            stream=request.stream,
            frontend_request=body.decode("utf-8", errors="replace"),
            prompt=format_prompt(request.messages),
            last_message=original_last_message,
        )

        try:
            stream, metadata = await self.backend.chat(request)
        except BackendError as e:
            return await self._backend_failed(exchange, e)

        return self._stream_response(exchange, stream, metadata)

    async def list_models(self) -> Response:
        """Handle /api/tags."""
        exchange = Exchange(
            endpoint="/api/tags",
            method="GET",
            model="",
            stream=False,
            frontend_request="",
            prompt="",
            last_message="",
        )
        try:
            models = await self.backend.list_models()
        except BackendError as e:
            logger.error(f"Failed to list models: {e}")
            return await self._backend_failed(exchange, e)

        payload = models.to_wire()
        exchange.sent_lines.append(json.dumps(payload))
        exchange.state = STATE_COMPLETED
        exchange.mark_latency()
        await self._record(exchange, status_code=200)
        return JSONResponse(payload)

    async def show(self, body: bytes) -> Response:
        """Handle /api/show with a minimal echo of the requested model."""
        try:
            request = decode_request(body, ShowRequest)
        except InvalidRequest:
            return PlainTextResponse("Invalid request body", status_code=400)

        name = request.name or request.model
        payload = ModelInfo(name=name).model_dump(include={"name", "size", "digest"})

        exchange = Exchange(
            endpoint="/api/show",
            model=name,
            stream=False,
            frontend_request=body.decode("utf-8", errors="replace"),
            prompt="",
            last_message="",
            sent_lines=[json.dumps(payload)],
            state=STATE_COMPLETED,
        )
        exchange.mark_latency()
        await self._record(exchange, status_code=200)
        return JSONResponse(payload)

    # -------------------------------------------------------------------------
    # Relay
    # -------------------------------------------------------------------------

    def _stream_response(
        self,
        exchange: Exchange,
        stream: IncrementStream[Any],
        metadata: BackendMetadata,
    ) -> StreamingResponse:
        media_type = "application/x-ndjson" if exchange.stream else "application/json"
        return StreamingResponse(
            self._relay(exchange, stream, metadata),
            media_type=media_type,
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    async def _relay(
        self,
        exchange: Exchange,
        stream: IncrementStream[Any],
        metadata: BackendMetadata,
    ) -> AsyncGenerator[str, None]:
        """
        Write each increment to the client as soon as it arrives.

        Relaying stops after the final increment, when the backend stream
        runs out, or when the request deadline passes. If the client goes
        away the generator is closed instead. In every case the stream is
        cancelled and the record is written in the background once the
        backend has drained.
        """
        completed = False
        cancelled = False
        increments = aiter(stream)
        try:
            while True:
                try:
                    increment = await self._next_increment(increments, exchange)
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError:
                    cancelled = True
                    exchange.error = (
                        f"request deadline of {self.config.request_timeout}s exceeded"
                    )
                    break

                line = increment.to_json()
                exchange.sent_lines.append(line)
                exchange.full_response.append(increment.content_delta)
                yield line + "\n"
                if increment.done:
                    completed = True
                    break
        except (GeneratorExit, asyncio.CancelledError):
            cancelled = True
            raise
        finally:
            stream.cancel()
            exchange.mark_latency()
            if cancelled:
                exchange.state = STATE_CLIENT_DISCONNECTED
            else:
                exchange.state = STATE_COMPLETED
                if not completed:
                    exchange.error = "backend stream ended without a final increment"
            self._spawn(self._finish(exchange, stream, metadata))

    async def _next_increment(self, increments: AsyncIterator[Any], exchange: Exchange) -> Any:
        """Next increment, bounded by the overall request deadline when one is set."""
        if self.config.request_timeout <= 0:
            return await anext(increments)
        elapsed = (time.perf_counter_ns() - exchange.started_ns) / 1e9
        remaining = self.config.request_timeout - elapsed
        if remaining <= 0:
            raise asyncio.TimeoutError
        return await asyncio.wait_for(anext(increments), remaining)

    async def _finish(
        self,
        exchange: Exchange,
        stream: IncrementStream[Any],
        metadata: BackendMetadata,
    ) -> None:
        await stream.wait_closed(timeout=self.config.backend_timeout)

        if exchange.state == STATE_CLIENT_DISCONNECTED:
            logger.warning(
                f"[{exchange.tag}] Stopped relaying {exchange.endpoint} after "
                f"{len(exchange.sent_lines)} increment(s): {exchange.error or 'client disconnected'}"
            )
        elif exchange.error:
            logger.warning(f"[{exchange.tag}] {exchange.endpoint}: {exchange.error}")

        if self.config.log_messages:
            logger.info(f"[{exchange.tag}] Full response: {''.join(exchange.full_response)}")

        if self.config.log_raw_responses and exchange.sent_lines:
            pretty = json.dumps([json.loads(line) for line in exchange.sent_lines], indent=2)
            logger.info(f"[{exchange.tag}] Raw {exchange.endpoint} responses:\n{pretty}")

        await self._record(exchange, status_code=200, metadata=metadata, error=exchange.error)

    async def _backend_failed(self, exchange: Exchange, error: BackendError) -> Response:
        logger.error(f"[{exchange.tag}] Backend error on {exchange.endpoint}: {error}")
        exchange.state = STATE_BACKEND_CALL_FAILED
        exchange.mark_latency()
        await self._record(
            exchange,
            status_code=500,
            metadata=error.metadata,
            error=str(error),
        )
        return PlainTextResponse(str(error), status_code=500)

    # -------------------------------------------------------------------------
    # Capture
    # -------------------------------------------------------------------------

    def _log_request(self, label: str, request: BaseModel) -> None:
        if self.config.log_raw_requests:
            logger.info(
                f"Raw {label} request:\n"
                f"{json.dumps(request.model_dump(mode='json', exclude_none=True), indent=2)}"
            )

    async def _record(
        self,
        exchange: Exchange,
        status_code: int,
        metadata: BackendMetadata | None = None,
        error: str = "",
    ) -> None:
        if self.exchange_log is None:
            return

        metadata = metadata or BackendMetadata()
        record = ExchangeRecord(
            timestamp=exchange.started_at,
            endpoint=exchange.endpoint,
            method=exchange.method,
            model=exchange.model,
            status_code=status_code,
            latency_ms=exchange.latency_ms,
            stream=exchange.stream,
            backend_type=self.backend.backend_type,
            state=exchange.state,
            prompt=exchange.prompt,
            response="".join(exchange.full_response),
            error=error,
            last_message=exchange.last_message,
            frontend_url=f"{self.config.frontend_base_url}{exchange.endpoint}",
            backend_url=metadata.url,
            frontend_request=exchange.frontend_request,
            frontend_response="\n".join(exchange.sent_lines),
            backend_request=metadata.raw_request,
            backend_response=metadata.raw_response,
        )
        try:
            await self.exchange_log.append(record)
        except Exception as e:
            logger.error(f"[{exchange.tag}] Failed to log {exchange.endpoint} exchange: {e}")

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for every in-flight exchange record to be written."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

