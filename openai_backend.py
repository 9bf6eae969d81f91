"""
Translating backend for OpenAI-compatible servers (llama.cpp, vLLM, ...).

Frontend requests are rewritten into ``/v1/completions`` and
``/v1/chat/completions`` requests, and the SSE replies are turned back into
frontend increments:

    data: {"choices":[{"text":"Hel"}]}          ->  {"response":"Hel","done":false}
    data: {"choices":[{"text":"lo"}]}           ->  {"response":"lo","done":false}
    data: {"choices":[{"finish_reason":"stop"}]} ->  {"done":true,"done_reason":"stop","eval_count":2,...}
    data: [DONE]

The backend stream is always read to the end, even after the final increment
has been delivered, so the captured raw transcript is complete.
"""

import logging
import time
from collections.abc import AsyncIterator
from typing import Any

import httpx
from pydantic import ValidationError

from backend import Backend, BackendError, BackendMetadata, IncrementStream
from models import (
    ChatRequest,
    ChatResponse,
    GenerateRequest,
    GenerateResponse,
    Message,
    ModelInfo,
    ModelsResponse,
    OpenAIChatRequest,
    OpenAICompletionRequest,
    OpenAIDelta,
    OpenAIModelList,
    OpenAIResponse,
    OpenAIUsage,
)
from tool_calls import (
    ToolCallAccumulator,
    convert_messages_to_openai,
    parse_tool_call,
    to_ollama_tool_call,
)

logger = logging.getLogger(__name__)

SSE_DATA_PREFIX = "data:"
SSE_DONE = "[DONE]"

# Frontend option name -> OpenAI request field
NUMERIC_OPTIONS = {
    "temperature": "temperature",
    "num_predict": "max_tokens",
    "top_p": "top_p",
    "frequency_penalty": "frequency_penalty",
    "presence_penalty": "presence_penalty",
}


def map_options(options: dict[str, Any] | None) -> dict[str, Any]:
    """Pick the tuning parameters the OpenAI dialect understands."""
    params: dict[str, Any] = {}
    if not options:
        return params

    for source, target in NUMERIC_OPTIONS.items():
        value = options.get(source)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            params[target] = value
    if "max_tokens" in params:
        params["max_tokens"] = int(params["max_tokens"])

    stop = options.get("stop")
    if isinstance(stop, (str, list)) and stop:
        params["stop"] = stop

    return params


def is_finish_reason(reason: str | None) -> bool:
    return bool(reason) and reason != "null"


def usage_counts(usage: OpenAIUsage | None) -> tuple[int, int]:
    """Prompt and completion token counts, never reported as zero."""
    if usage is None:
        return 1, 1
    return usage.prompt_tokens or 1, usage.completion_tokens or 1


def final_counters(start_ns: int, eval_count: int, prompt_eval_count: int = 1) -> dict[str, int]:
    """Duration and count fields for a final increment.

    The total is biased by 1ns so it never equals eval_duration; clients that
    compute rates from the difference would otherwise divide by zero.
    """
    elapsed = time.perf_counter_ns() - start_ns
    return {
        "total_duration": elapsed + 1,
        "load_duration": 1,
        "prompt_eval_count": prompt_eval_count,
        "prompt_eval_duration": 1,
        "eval_count": eval_count or 1,
        "eval_duration": elapsed,
    }


class OpenAIBackend(Backend):
    """Translates between the frontend dialect and an OpenAI-compatible server."""

    backend_type = "openai"

    def __init__(
        self,
        endpoint: str,
        timeout: float,
        force_prompt_cache: bool = False,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(endpoint, timeout, transport=transport)
        self.force_prompt_cache = force_prompt_cache

    # -------------------------------------------------------------------------
    # Request translation
    # -------------------------------------------------------------------------

    def build_completion_request(self, request: GenerateRequest) -> OpenAICompletionRequest:
        return OpenAICompletionRequest(
            model=request.model,
            prompt=request.prompt,
            stream=request.stream,
            cache_prompt=True if self.force_prompt_cache else None,
            **map_options(request.options),
        )

    def build_chat_request(self, request: ChatRequest) -> OpenAIChatRequest:
        return OpenAIChatRequest(
            model=request.model,
            messages=convert_messages_to_openai(request.messages),
            stream=request.stream,
            tools=request.tools or None,
            cache_prompt=True if self.force_prompt_cache else None,
            **map_options(request.options),
        )

    # -------------------------------------------------------------------------
    # Generate
    # -------------------------------------------------------------------------

    async def generate(
        self, request: GenerateRequest
    ) -> tuple[IncrementStream[GenerateResponse], BackendMetadata]:
        start_ns = time.perf_counter_ns()
        metadata = BackendMetadata()
        try:
            payload = self.build_completion_request(request).to_json()
        except (TypeError, ValueError) as e:
            raise BackendError(f"failed to marshal request: {e}", metadata) from e

        response = await self._post(f"{self.endpoint}/v1/completions", payload, metadata)

        stream: IncrementStream[GenerateResponse] = IncrementStream()
        if request.stream:
            stream.start(
                self._stream_completion(response, stream, request.model, start_ns, metadata)
            )
        else:
            result = await self._read_result(response, metadata)
            stream.start(
                _deliver(stream, self._completion_increment(result, request.model, start_ns))
            )
        return stream, metadata

    def _completion_increment(
        self, result: OpenAIResponse, model: str, start_ns: int
    ) -> GenerateResponse:
        choice = result.choices[0]
        prompt_tokens, completion_tokens = usage_counts(result.usage)
        return GenerateResponse(
            model=model,
            response=choice.text or "",
            done=True,
            done_reason=choice.finish_reason if is_finish_reason(choice.finish_reason) else "stop",
            **final_counters(start_ns, completion_tokens, prompt_tokens),
        )

    async def _stream_completion(
        self,
        response: httpx.Response,
        stream: IncrementStream[GenerateResponse],
        model: str,
        start_ns: int,
        metadata: BackendMetadata,
    ) -> None:
        """Translate a streamed completion, one increment per text fragment."""
        token_count = 0
        sent_final = False

        try:
            async for chunk in self._sse_chunks(response, metadata):
                if sent_final or not chunk.choices:
                    continue
                choice = chunk.choices[0]

                if is_finish_reason(choice.finish_reason):
                    await stream.send(
                        GenerateResponse(
                            model=model,
                            done=True,
                            done_reason=choice.finish_reason,
                            **final_counters(start_ns, token_count),
                        )
                    )
                    sent_final = True
                    continue

                if choice.text:
                    token_count += 1
                    await stream.send(GenerateResponse(model=model, response=choice.text))
        except httpx.HTTPError as e:
            logger.warning(f"Backend stream from {metadata.url} ended early: {e}")
        finally:
            await response.aclose()

        if not sent_final:
            await stream.send(
                GenerateResponse(
                    model=model,
                    done=True,
                    done_reason="stop",
                    **final_counters(start_ns, token_count),
                )
            )

    # -------------------------------------------------------------------------
    # Chat
    # -------------------------------------------------------------------------

    async def chat(
        self, request: ChatRequest
    ) -> tuple[IncrementStream[ChatResponse], BackendMetadata]:
        start_ns = time.perf_counter_ns()
        metadata = BackendMetadata()
        try:
            payload = self.build_chat_request(request).to_json()
        except (TypeError, ValueError) as e:
            raise BackendError(f"failed to marshal request: {e}", metadata) from e

        response = await self._post(
            f"{self.endpoint}/v1/chat/completions", payload, metadata
        )

        stream: IncrementStream[ChatResponse] = IncrementStream()
        if request.stream:
            stream.start(
                self._stream_chat(response, stream, request.model, start_ns, metadata)
            )
        else:
            result = await self._read_result(response, metadata)
            stream.start(
                _deliver(stream, self._chat_increment(result, request.model, start_ns))
            )
        return stream, metadata

    def _chat_increment(self, result: OpenAIResponse, model: str, start_ns: int) -> ChatResponse:
        choice = result.choices[0]
        body = choice.message or choice.delta or OpenAIDelta()
        prompt_tokens, completion_tokens = usage_counts(result.usage)

        tool_calls = None
        if body.tool_calls:
            tool_calls = [to_ollama_tool_call(parse_tool_call(tc)) for tc in body.tool_calls]

        return ChatResponse(
            model=model,
            message=Message(
                role=body.role or "assistant",
                content=body.content or "",
                thinking=body.reasoning_content or None,
                tool_calls=tool_calls,
            ),
            done=True,
            done_reason=choice.finish_reason if is_finish_reason(choice.finish_reason) else "stop",
            **final_counters(start_ns, completion_tokens, prompt_tokens),
        )

    async def _stream_chat(
        self,
        response: httpx.Response,
        stream: IncrementStream[ChatResponse],
        model: str,
        start_ns: int,
        metadata: BackendMetadata,
    ) -> None:
        """
        Translate a streamed chat completion.

        Content fragments are relayed as they arrive. Tool-call fragments are
        held back and delivered as one complete set right before the final
        increment.
        """
        token_count = 0
        sent_final = False
        tool_calls = ToolCallAccumulator()

        try:
            async for chunk in self._sse_chunks(response, metadata):
                if sent_final or not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = choice.delta or choice.message

                if is_finish_reason(choice.finish_reason):
                    if delta is not None and delta.tool_calls:
                        tool_calls.add_all(delta.tool_calls)
                    await self._finish_chat(
                        stream, model, choice.finish_reason, tool_calls, token_count, start_ns
                    )
                    sent_final = True
                    continue

                if delta is None:
                    continue

                if delta.tool_calls:
                    tool_calls.add_all(delta.tool_calls)
                    continue

                if delta.content or delta.reasoning_content:
                    token_count += 1
                    await stream.send(
                        ChatResponse(
                            model=model,
                            message=Message(
                                role=delta.role or "assistant",
                                content=delta.content or "",
                                thinking=delta.reasoning_content or None,
                            ),
                        )
                    )
        except httpx.HTTPError as e:
            logger.warning(f"Backend stream from {metadata.url} ended early: {e}")
        finally:
            await response.aclose()

        if not sent_final:
            await self._finish_chat(stream, model, "stop", tool_calls, token_count, start_ns)

    async def _finish_chat(
        self,
        stream: IncrementStream[ChatResponse],
        model: str,
        done_reason: str,
        tool_calls: ToolCallAccumulator,
        token_count: int,
        start_ns: int,
    ) -> None:
        if tool_calls:
            await stream.send(
                ChatResponse(
                    model=model,
                    message=Message(
                        role="assistant",
                        content="",
                        tool_calls=[to_ollama_tool_call(tc) for tc in tool_calls.build()],
                    ),
                )
            )

        await stream.send(
            ChatResponse(
                model=model,
                message=Message(role="assistant", content=""),
                done=True,
                done_reason=done_reason,
                **final_counters(start_ns, token_count),
            )
        )

    # -------------------------------------------------------------------------
    # Shared response handling
    # -------------------------------------------------------------------------

    async def _sse_chunks(
        self, response: httpx.Response, metadata: BackendMetadata
    ) -> AsyncIterator[OpenAIResponse]:
        """Yield parsed ``data:`` payloads, capturing every raw line as it is read.

        The ``[DONE]`` sentinel is skipped rather than treated as the end of
        the stream; reading stops only when the backend closes the connection.
        """
        async for line in response.aiter_lines():
            metadata.capture(line + "\n")
            if not line.startswith(SSE_DATA_PREFIX):
                continue

            data = line[len(SSE_DATA_PREFIX):].strip()
            if data == SSE_DONE:
                continue

            try:
                yield OpenAIResponse.model_validate_json(data)
            except ValidationError:
                logger.debug(f"Skipping unparseable SSE payload: {data[:200]}")

    async def _read_result(
        self, response: httpx.Response, metadata: BackendMetadata
    ) -> OpenAIResponse:
        """Read and parse a complete non-streaming response body."""
        try:
            body = await response.aread()
        except httpx.HTTPError as e:
            raise BackendError(f"failed to read response: {e}", metadata) from e
        finally:
            await response.aclose()

        metadata.capture(body.decode("utf-8", errors="replace"))
        try:
            result = OpenAIResponse.model_validate_json(body)
        except ValidationError as e:
            raise BackendError(f"failed to decode response: {e}", metadata) from e

        if not result.choices:
            raise BackendError("backend response contained no choices", metadata)
        return result

    # -------------------------------------------------------------------------
    # Models
    # -------------------------------------------------------------------------

    async def list_models(self) -> ModelsResponse:
        """List backend models; degrades to a single "default" model on failure."""
        try:
            response = await self.client.get(f"{self.endpoint}/v1/models")
        except httpx.HTTPError as e:
            logger.warning(f"Model listing failed, using default model: {e}")
            return default_models()

        if response.status_code != 200:
            logger.warning(
                f"Model listing returned {response.status_code}, using default model"
            )
            return default_models()

        try:
            listing = OpenAIModelList.model_validate_json(response.content)
        except ValidationError as e:
            logger.warning(f"Model listing unparseable, using default model: {e}")
            return default_models()

        return ModelsResponse(
            models=[ModelInfo(name=m.id, model=m.id) for m in listing.data]
        )


def default_models() -> ModelsResponse:
    return ModelsResponse(models=[ModelInfo(name="default", model="default")])


async def _deliver(stream: IncrementStream[Any], increment: Any) -> None:
    await stream.send(increment)
