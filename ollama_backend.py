"""
Pass-through backend for servers that already speak the frontend dialect.

Requests are forwarded as-is and the newline-delimited JSON reply is relayed
line by line, with two normalizations on chat increments.
"""

import logging
from collections.abc import Callable
from typing import TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from backend import Backend, BackendError, BackendMetadata, IncrementStream
from models import (
    ChatRequest,
    ChatResponse,
    GenerateRequest,
    GenerateResponse,
    ModelsResponse,
)

logger = logging.getLogger(__name__)

R = TypeVar("R", GenerateResponse, ChatResponse)


class OllamaBackend(Backend):
    """Forwards to an Ollama server."""

    backend_type = "ollama"

    async def generate(
        self, request: GenerateRequest
    ) -> tuple[IncrementStream[GenerateResponse], BackendMetadata]:
        return await self._forward("/api/generate", request, GenerateResponse)

    async def chat(
        self, request: ChatRequest
    ) -> tuple[IncrementStream[ChatResponse], BackendMetadata]:
        return await self._forward(
            "/api/chat", request, ChatResponse, normalize=_normalize_chat_increment
        )

    async def _forward(
        self,
        path: str,
        request: BaseModel,
        response_type: type[R],
        normalize: Callable[[R], None] | None = None,
    ) -> tuple[IncrementStream[R], BackendMetadata]:
        metadata = BackendMetadata()
        try:
            payload = request.model_dump_json(exclude_none=True)
        except (TypeError, ValueError) as e:
            raise BackendError(f"failed to marshal request: {e}", metadata) from e

        response = await self._post(f"{self.endpoint}{path}", payload, metadata)

        stream: IncrementStream[R] = IncrementStream()
        stream.start(
            self._relay_lines(response, stream, response_type, normalize, metadata)
        )
        return stream, metadata

    async def _relay_lines(
        self,
        response: httpx.Response,
        stream: IncrementStream[R],
        response_type: type[R],
        normalize: Callable[[R], None] | None,
        metadata: BackendMetadata,
    ) -> None:
        """Parse one JSON object per line until the final increment is sent."""
        try:
            async for line in response.aiter_lines():
                metadata.capture(line + "\n")
                if not line.strip():
                    continue

                try:
                    increment = response_type.model_validate_json(line)
                except ValidationError:
                    logger.debug(f"Skipping unparseable backend line: {line[:200]}")
                    continue

                if normalize is not None:
                    normalize(increment)

                if not await stream.send(increment):
                    logger.debug("Client stream cancelled, draining backend response")

                if increment.done:
                    break
        except httpx.HTTPError as e:
            logger.warning(f"Backend stream from {metadata.url} ended early: {e}")
        finally:
            await response.aclose()

    async def list_models(self) -> ModelsResponse:
        try:
            response = await self.client.get(f"{self.endpoint}/api/tags")
        except httpx.HTTPError as e:
            raise BackendError(f"request failed: {e}") from e

        if response.status_code != 200:
            raise BackendError(
                f"unexpected status code: {response.status_code}, body: {response.text}",
                status_code=response.status_code,
            )

        try:
            return ModelsResponse.model_validate_json(response.content)
        except ValidationError as e:
            raise BackendError(f"failed to decode response: {e}") from e


def _normalize_chat_increment(increment: ChatResponse) -> None:
    """Fill in fields Ollama leaves out of streamed chat increments."""
    if not increment.message.role:
        increment.message.role = "assistant"
    # Some clients treat a missing load_duration as "model not loaded" and re-query
    if increment.done and not increment.load_duration:
        increment.load_duration = 1
