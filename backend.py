"""
Backend interface shared by the pass-through and translating adapters.

A backend call returns an ``IncrementStream``: a bounded, ordered channel fed
by a producer task that reads the backend response. The consumer (the client
relay) may cancel the stream at any time; the producer then stops emitting
increments but keeps reading so the raw transcript stays complete.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

import httpx

from models import (
    ChatRequest,
    ChatResponse,
    GenerateRequest,
    GenerateResponse,
    ModelsResponse,
)

if TYPE_CHECKING:
    from config import ProxyConfig

logger = logging.getLogger(__name__)

STREAM_BUFFER_SIZE = 10

T = TypeVar("T")

_CLOSED = object()


@dataclass
class BackendMetadata:
    """Raw backend exchange captured for the exchange log."""

    url: str = ""
    raw_request: str = ""
    status_code: int | None = None
    raw_lines: list[str] = field(default_factory=list)  # appended as read

    @property
    def raw_response(self) -> str:
        return "".join(self.raw_lines)

    def capture(self, text: str) -> None:
        self.raw_lines.append(text)


class BackendError(Exception):
    """A backend call failed before any increment could be produced."""

    def __init__(
        self,
        message: str,
        metadata: BackendMetadata | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.metadata = metadata or BackendMetadata()
        self.status_code = status_code


class IncrementStream(Generic[T]):
    """
    Single-producer/single-consumer channel of response increments.

    The buffer is bounded so a slow client applies backpressure to the
    backend reader instead of growing memory.
    """

    def __init__(self, maxsize: int = STREAM_BUFFER_SIZE):
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=maxsize)
        self._cancelled = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def start(self, producer: Awaitable[None]) -> IncrementStream[T]:
        """Run ``producer`` as the background task feeding this stream."""
        self._task = asyncio.create_task(self._run(producer))
        return self

    async def _run(self, producer: Awaitable[None]) -> None:
        try:
            await producer
        except Exception as e:
            logger.error(f"Backend stream reader failed: {e}")
        finally:
            await self._send(_CLOSED)

    async def send(self, increment: T) -> bool:
        """
        Queue an increment for the consumer.

        Returns False without queueing once the stream has been cancelled.
        """
        return await self._send(increment)

    async def _send(self, item: object) -> bool:
        if self._cancelled.is_set():
            return False

        put = asyncio.ensure_future(self._queue.put(item))
        cancel = asyncio.ensure_future(self._cancelled.wait())
        done, pending = await asyncio.wait(
            {put, cancel}, return_when=asyncio.FIRST_COMPLETED
        )
        for task in pending:
            task.cancel()
        return put in done

    def cancel(self) -> None:
        """Stop delivering increments; the producer keeps draining the backend."""
        self._cancelled.set()

    async def wait_closed(self, timeout: float | None = None) -> None:
        """
        Wait for the producer to finish reading the backend response.

        On timeout the producer is cancelled, which closes the backend
        response; whatever was read so far stays on the metadata.
        """
        if self._task is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout)
        except asyncio.TimeoutError:
            logger.warning("Timed out waiting for backend stream to drain, closing it")
            self._task.cancel()
            await asyncio.wait({self._task})

    async def __aiter__(self) -> AsyncIterator[T]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item  # type: ignore[misc]


class Backend(ABC):
    """Uniform capability exposed by every backend adapter."""

    backend_type: str = ""

    def __init__(
        self,
        endpoint: str,
        timeout: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @abstractmethod
    async def generate(
        self, request: GenerateRequest
    ) -> tuple[IncrementStream[GenerateResponse], BackendMetadata]:
        """Submit a generation request; raises BackendError on failure."""

    @abstractmethod
    async def chat(
        self, request: ChatRequest
    ) -> tuple[IncrementStream[ChatResponse], BackendMetadata]:
        """Submit a chat request; raises BackendError on failure."""

    @abstractmethod
    async def list_models(self) -> ModelsResponse:
        """Return the backend's advertised models."""

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _post(self, url: str, payload: str, metadata: BackendMetadata) -> httpx.Response:
        """
        POST a JSON body and return the streaming response once status is 200.

        The raw body of a non-200 response is stored on ``metadata`` and
        included in the raised error.
        """
        metadata.url = url
        metadata.raw_request = payload

        request = self.client.build_request(
            "POST",
            url,
            content=payload.encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )
        try:
            response = await self.client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise BackendError(f"request failed: {e}", metadata) from e

        metadata.status_code = response.status_code
        if response.status_code != 200:
            try:
                body = (await response.aread()).decode("utf-8", errors="replace")
            except httpx.HTTPError as e:
                body = f"<failed to read body: {e}>"
            finally:
                await response.aclose()
            metadata.capture(body)
            raise BackendError(
                f"unexpected status code: {response.status_code}, body: {body}",
                metadata,
                status_code=response.status_code,
            )

        return response


def create_backend(
    config: ProxyConfig, transport: httpx.AsyncBaseTransport | None = None
) -> Backend:
    """Build the adapter selected by ``config.backend_type``."""
    if config.backend_type == "ollama":
        from ollama_backend import OllamaBackend

        return OllamaBackend(config.backend_url, config.backend_timeout, transport=transport)

    from openai_backend import OpenAIBackend

    return OpenAIBackend(
        config.backend_url,
        config.backend_timeout,
        force_prompt_cache=config.force_prompt_cache,
        transport=transport,
    )
