"""
Dialect models for the frontend (Ollama-style) API and the OpenAI-compatible
backend API.

Frontend shapes allow extra fields so the pass-through backend forwards
whatever the client sent. Optional fields default to None and are omitted
from the wire form.
"""

import json
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utc_timestamp() -> str:
    """Current time in the RFC 3339 form used for ``created_at``."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class WireModel(BaseModel):
    """Base for models that are serialized onto the wire."""

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)

    def to_json(self) -> str:
        return json.dumps(self.to_wire(), ensure_ascii=False)


# =============================================================================
# Frontend (Ollama) dialect
# =============================================================================


class Message(WireModel):
    """A chat message. ``tool_calls`` entries are opaque JSON values."""

    model_config = ConfigDict(extra="allow")

    role: str = ""
    content: str = ""
    thinking: str | None = None
    tool_calls: list[Any] | None = None


class GenerateRequest(WireModel):
    model_config = ConfigDict(extra="allow")

    model: str
    prompt: str = ""
    stream: bool = False
    options: dict[str, Any] | None = None
    context: list[int] | None = None
    format: Any = None
    system: str | None = None
    template: str | None = None
    raw: bool | None = None


class ChatRequest(WireModel):
    model_config = ConfigDict(extra="allow")

    model: str
    messages: list[Message] = Field(default_factory=list)
    stream: bool = False
    options: dict[str, Any] | None = None
    format: Any = None
    template: str | None = None
    tools: list[Any] | None = None


class GenerateResponse(WireModel):
    """One increment of a generate exchange."""

    model_config = ConfigDict(extra="allow")

    model: str = ""
    created_at: str = Field(default_factory=utc_timestamp)
    response: str = ""
    done: bool = False
    done_reason: str | None = None
    context: list[int] | None = None
    total_duration: int | None = None
    load_duration: int | None = None
    prompt_eval_count: int | None = None
    prompt_eval_duration: int | None = None
    eval_count: int | None = None
    eval_duration: int | None = None

    @property
    def content_delta(self) -> str:
        return self.response


class ChatResponse(WireModel):
    """One increment of a chat exchange."""

    model_config = ConfigDict(extra="allow")

    model: str = ""
    created_at: str = Field(default_factory=utc_timestamp)
    message: Message = Field(default_factory=Message)
    done: bool = False
    done_reason: str | None = None
    total_duration: int | None = None
    load_duration: int | None = None
    prompt_eval_count: int | None = None
    prompt_eval_duration: int | None = None
    eval_count: int | None = None
    eval_duration: int | None = None

    @property
    def content_delta(self) -> str:
        return self.message.content


class ModelDetails(WireModel):
    model_config = ConfigDict(extra="allow")

    format: str = ""
    family: str = ""
    families: list[str] | None = None
    parameter_size: str = ""
    quantization_level: str = ""


class ModelInfo(WireModel):
    model_config = ConfigDict(extra="allow")

    name: str
    model: str = ""
    modified_at: str = Field(default_factory=utc_timestamp)
    size: int = 0
    digest: str = ""
    details: ModelDetails | None = None


class ModelsResponse(WireModel):
    models: list[ModelInfo] = Field(default_factory=list)


class ShowRequest(BaseModel):
    name: str = ""
    model: str = ""


# =============================================================================
# Backend (OpenAI-compatible) dialect
# =============================================================================


class OpenAICompletionRequest(WireModel):
    model: str
    prompt: str | list[str]
    stream: bool = False
    max_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    stop: Any = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    cache_prompt: bool | None = None


class OpenAIChatRequest(WireModel):
    model: str
    messages: list[dict[str, Any]]
    stream: bool = False
    max_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    stop: Any = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    tools: list[Any] | None = None
    cache_prompt: bool | None = None


class OpenAIDelta(BaseModel):
    """Message body of a chat choice, either a streamed delta or a full message."""

    role: str | None = None
    content: str | None = None
    reasoning_content: str | None = None
    tool_calls: list[Any] | None = None


class OpenAIChoice(BaseModel):
    index: int = 0
    text: str | None = None
    delta: OpenAIDelta | None = None
    message: OpenAIDelta | None = None
    finish_reason: str | None = None


class OpenAIUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class OpenAIResponse(BaseModel):
    """A completion or chat completion body, or one streamed chunk of one."""

    id: str = ""
    object: str = ""
    created: int = 0
    model: str = ""
    choices: list[OpenAIChoice] = Field(default_factory=list)
    usage: OpenAIUsage | None = None


class OpenAIModel(BaseModel):
    id: str


class OpenAIModelList(BaseModel):
    data: list[OpenAIModel] = Field(default_factory=list)
