"""
Tool call representation and conversion between dialects.

The frontend dialect carries ``function.arguments`` as a JSON object, the
OpenAI dialect carries it as a JSON-encoded string. Tool calls are kept as
opaque values on the wire models and converted here, at the dialect
boundary:

    frontend value --parse_tool_call--> ToolCall --to_openai_tool_call--> backend value
    backend fragments --ToolCallAccumulator--> ToolCall --to_ollama_tool_call--> frontend value
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Union

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass(frozen=True)
class RawToolCall:
    """A tool call whose shape is not recognized; passed through untouched."""

    value: Any


@dataclass(frozen=True)
class ParsedToolCall:
    """A function tool call with a known name and arguments."""

    name: str | None
    arguments: Any = _MISSING  # str, structured value, or _MISSING
    id: str = ""
    extra: dict[str, Any] = field(default_factory=dict)  # other top-level fields


ToolCall = Union[RawToolCall, ParsedToolCall]


def parse_tool_call(value: Any) -> ToolCall:
    """Classify a wire tool call value from either dialect."""
    if not isinstance(value, dict) or not isinstance(value.get("function"), dict):
        return RawToolCall(value)

    function = value["function"]
    name = function.get("name")
    tool_id = value.get("id")
    return ParsedToolCall(
        name=name if isinstance(name, str) else None,
        arguments=function.get("arguments", _MISSING),
        id=tool_id if isinstance(tool_id, str) else "",
        extra={k: v for k, v in value.items() if k not in ("function", "type", "id")},
    )


def arguments_as_string(arguments: Any) -> str:
    """Encode arguments for a string-arguments dialect."""
    if arguments is _MISSING:
        return "{}"
    if isinstance(arguments, str):
        return arguments
    try:
        return json.dumps(arguments, ensure_ascii=False)
    except (TypeError, ValueError):
        return "{}"


def arguments_as_object(arguments: Any) -> Any:
    """Decode arguments for an object-arguments dialect.

    Falls back to the raw string when it is not valid JSON.
    """
    if arguments is _MISSING or arguments == "":
        return {}
    if not isinstance(arguments, str):
        return arguments
    try:
        return json.loads(arguments)
    except json.JSONDecodeError:
        return arguments


def to_openai_tool_call(tool_call: ToolCall) -> Any:
    """Render a tool call in OpenAI form: ``type: function``, string arguments."""
    if isinstance(tool_call, RawToolCall):
        value = tool_call.value
        if not isinstance(value, dict):
            return value
        converted = {"type": "function", "function": value.get("function")}
        converted.update({k: v for k, v in value.items() if k not in ("function", "type")})
        return converted

    function: dict[str, Any] = {}
    if tool_call.name is not None:
        function["name"] = tool_call.name
    function["arguments"] = arguments_as_string(tool_call.arguments)

    converted = {"type": "function", "function": function}
    if tool_call.id:
        converted["id"] = tool_call.id
    converted.update(tool_call.extra)
    return converted


def to_ollama_tool_call(tool_call: ToolCall) -> Any:
    """Render a tool call in frontend form: ``function`` with object arguments."""
    if isinstance(tool_call, RawToolCall):
        return tool_call.value

    converted: dict[str, Any] = {
        "function": {
            "name": tool_call.name or "",
            "arguments": arguments_as_object(tool_call.arguments),
        }
    }
    if tool_call.id:
        converted["id"] = tool_call.id
    return converted


def convert_messages_to_openai(messages: list[Any]) -> list[dict[str, Any]]:
    """Convert frontend messages to OpenAI chat messages.

    Only role, content and tool calls are carried over; tool calls get the
    ``type`` field and string-encoded arguments.
    """
    converted = []
    for msg in messages:
        item: dict[str, Any] = {"role": msg.role, "content": msg.content}
        if msg.tool_calls:
            item["tool_calls"] = [
                to_openai_tool_call(parse_tool_call(tc)) for tc in msg.tool_calls
            ]
        converted.append(item)
    return converted


@dataclass
class _PendingToolCall:
    id: str = ""
    name: str = ""
    arguments: str = ""


class ToolCallAccumulator:
    """
    Reassembles streamed OpenAI tool-call fragments.

    Fragments are keyed by the backend-assigned ``index``. The first non-empty
    id and name for an index win; argument fragments are concatenated in
    arrival order and only parsed once the whole set is built.
    """

    def __init__(self) -> None:
        self._calls: dict[int, _PendingToolCall] = {}

    def __len__(self) -> int:
        return len(self._calls)

    def add(self, fragment: Any) -> None:
        if not isinstance(fragment, dict):
            logger.debug(f"Ignoring non-object tool call fragment: {fragment!r}")
            return

        index = fragment.get("index", 0)
        if not isinstance(index, int) or isinstance(index, bool):
            index = 0

        pending = self._calls.setdefault(index, _PendingToolCall())

        tool_id = fragment.get("id")
        if isinstance(tool_id, str) and tool_id and not pending.id:
            pending.id = tool_id

        function = fragment.get("function")
        if isinstance(function, dict):
            name = function.get("name")
            if isinstance(name, str) and name and not pending.name:
                pending.name = name
            arguments = function.get("arguments")
            if isinstance(arguments, str):
                pending.arguments += arguments

    def add_all(self, fragments: list[Any]) -> None:
        for fragment in fragments:
            self.add(fragment)

    def build(self) -> list[ParsedToolCall]:
        """Return the accumulated calls ordered by index; gaps are skipped."""
        return [
            ParsedToolCall(
                name=self._calls[index].name,
                arguments=self._calls[index].arguments,
                id=self._calls[index].id,
            )
            for index in sorted(self._calls)
            if index >= 0
        ]
