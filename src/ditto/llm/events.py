"""Typed events and output items of the OpenAI Responses API.

Every provider frame maps onto exactly one `StreamEvent` variant. Frame types
that the orchestrator has no use for still get a variant (or `Unknown`) so
that they decode to a no-op instead of an error.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

from ditto.errors import DecodeError


@dataclass(frozen=True)
class ContentPart:
    type: str
    text: str


@dataclass(frozen=True)
class Reasoning:
    id: str


@dataclass(frozen=True)
class MessageItem:
    id: str
    content: tuple[ContentPart, ...] = ()

    @property
    def text(self) -> str:
        return "".join(part.text for part in self.content if part.type in ("output_text", "text"))


@dataclass(frozen=True)
class FunctionCall:
    id: str
    call_id: str
    name: str
    arguments: str


@dataclass(frozen=True)
class UnknownItem:
    type: str


OutputItem = Union[Reasoning, MessageItem, FunctionCall, UnknownItem]


@dataclass(frozen=True)
class Delta:
    item_id: str
    text: str


@dataclass(frozen=True)
class Completed:
    response_id: str
    output_items: tuple[OutputItem, ...] = ()

    @property
    def function_calls(self) -> list[FunctionCall]:
        return [item for item in self.output_items if isinstance(item, FunctionCall)]

    @property
    def message_text(self) -> str:
        return "".join(item.text for item in self.output_items if isinstance(item, MessageItem))


@dataclass(frozen=True)
class Created:
    pass


@dataclass(frozen=True)
class InProgress:
    pass


@dataclass(frozen=True)
class OutputItemAdded:
    pass


@dataclass(frozen=True)
class OutputItemDone:
    item: OutputItem


@dataclass(frozen=True)
class FunctionCallArgsDelta:
    pass


@dataclass(frozen=True)
class FunctionCallArgsDone:
    pass


@dataclass(frozen=True)
class Unknown:
    type: str


StreamEvent = Union[
    Delta,
    Completed,
    Created,
    InProgress,
    OutputItemAdded,
    OutputItemDone,
    FunctionCallArgsDelta,
    FunctionCallArgsDone,
    Unknown,
]


def _str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    return value if isinstance(value, str) else ""


def parse_output_item(payload: Any) -> OutputItem:
    if not isinstance(payload, dict):
        raise DecodeError(f"Output item must be an object, got {type(payload).__name__}")

    item_type = _str(payload, "type")
    if item_type == "reasoning":
        return Reasoning(id=_str(payload, "id"))
    if item_type == "message":
        parts = tuple(
            ContentPart(type=_str(part, "type"), text=_str(part, "text"))
            for part in payload.get("content") or []
            if isinstance(part, dict)
        )
        return MessageItem(id=_str(payload, "id"), content=parts)
    if item_type == "function_call":
        arguments = payload.get("arguments", "")
        if not isinstance(arguments, str):
            raise DecodeError("function_call arguments must be a JSON string")
        return FunctionCall(
            id=_str(payload, "id"),
            call_id=_str(payload, "call_id"),
            name=_str(payload, "name"),
            arguments=arguments,
        )
    return UnknownItem(type=item_type)


def parse_output(items: Any) -> tuple[OutputItem, ...]:
    if not isinstance(items, list):
        return ()
    return tuple(parse_output_item(item) for item in items)


def parse_stream_event(payload: Any) -> StreamEvent:
    if not isinstance(payload, dict):
        raise DecodeError(f"Stream frame must be an object, got {type(payload).__name__}")

    event_type = _str(payload, "type")
    if event_type == "response.output_text.delta":
        return Delta(item_id=_str(payload, "item_id"), text=_str(payload, "delta"))
    if event_type == "response.completed":
        response = payload.get("response") or {}
        if not isinstance(response, dict):
            raise DecodeError("response.completed frame carries no response object")
        return Completed(
            response_id=_str(response, "id"),
            output_items=parse_output(response.get("output")),
        )
    if event_type == "response.created":
        return Created()
    if event_type == "response.in_progress":
        return InProgress()
    if event_type == "response.output_item.added":
        return OutputItemAdded()
    if event_type == "response.output_item.done":
        return OutputItemDone(item=parse_output_item(payload.get("item")))
    if event_type == "response.function_call_arguments.delta":
        return FunctionCallArgsDelta()
    if event_type == "response.function_call_arguments.done":
        return FunctionCallArgsDone()
    return Unknown(type=event_type)


def function_call_input_item(call: FunctionCall) -> dict[str, Any]:
    return {
        "type": "function_call",
        "call_id": call.call_id,
        "name": call.name,
        "arguments": call.arguments,
    }
