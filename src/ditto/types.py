from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class ConversationTurn:
    role: Role
    content: str

    def to_input_item(self) -> dict[str, Any]:
        return {"role": self.role.value, "content": self.content}


@dataclass(frozen=True)
class ToolParameter:
    type: str
    description: str = ""


@dataclass(frozen=True)
class ToolDescriptor:
    host_id: str
    tool_name: str
    description: str = ""
    parameters: dict[str, ToolParameter] = field(default_factory=dict)
    required: frozenset[str] = frozenset()

    @property
    def unified_name(self) -> str:
        return f"{self.host_id}_{self.tool_name}"


@dataclass(frozen=True)
class ToolResult:
    call_id: str
    output_text: str

    def to_input_item(self) -> dict[str, Any]:
        return {
            "type": "function_call_output",
            "call_id": self.call_id,
            "output": self.output_text,
        }


@dataclass(frozen=True)
class MessageHandle:
    channel: str
    ts: str


@dataclass
class MessageEvent:
    """A Slack message event that may trigger a conversation turn."""

    channel: str
    ts: str
    text: str
    user: Optional[str] = None
    bot_id: Optional[str] = None
    thread_ts: Optional[str] = None
    subtype: Optional[str] = None

    @property
    def thread_ref(self) -> str:
        return self.thread_ts or self.ts

    @property
    def is_bot(self) -> bool:
        return self.bot_id is not None or self.subtype == "bot_message"

    @classmethod
    def from_slack(cls, payload: dict[str, Any]) -> MessageEvent:
        event = payload.get("event", payload)
        return cls(
            channel=str(event.get("channel", "")),
            ts=str(event.get("ts", "")),
            text=str(event.get("text") or ""),
            user=event.get("user"),
            bot_id=event.get("bot_id"),
            thread_ts=event.get("thread_ts"),
            subtype=event.get("subtype"),
        )
