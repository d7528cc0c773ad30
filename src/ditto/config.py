from __future__ import annotations

from dataclasses import dataclass, field
import os
from pathlib import Path
import re
from typing import Any, Optional

import yaml


@dataclass
class SlackSettings:
    bot_token: str
    bot_user_id: str
    base_url: str = "https://slack.com/api"
    timeout_seconds: float = 10.0


@dataclass
class OpenAISettings:
    api_key: str
    model: str = "gpt-4.1-mini"
    base_url: str = "https://api.openai.com/v1"
    stream: bool = True
    store: bool = True
    web_search: bool = False
    timeout_seconds: float = 10.0
    stream_idle_timeout_seconds: float = 120.0
    reasoning_model_prefixes: list[str] = field(
        default_factory=lambda: ["o1", "o3", "o4", "gpt-5"]
    )

    def is_reasoning_model(self) -> bool:
        return any(self.model.startswith(prefix) for prefix in self.reasoning_model_prefixes)


@dataclass
class GeminiSettings:
    api_key: str
    model: str = "gemini-2.0-flash"
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    stream: bool = True
    timeout_seconds: float = 10.0
    stream_idle_timeout_seconds: float = 120.0
    command: str = "gemini"
    label: str = "`Gemini`"


@dataclass
class ChatSettings:
    command: str = "gpt"
    label: str = "`ChatGPT`"
    max_rounds: int = 8


@dataclass
class ToolHostSettings:
    id: str
    url: str
    timeout_seconds: float = 10.0


@dataclass
class DittoSettings:
    slack: SlackSettings
    openai: OpenAISettings
    chat: ChatSettings
    tool_hosts: list[ToolHostSettings] = field(default_factory=list)
    gemini: Optional[GeminiSettings] = None


def load_settings(path: str | Path) -> DittoSettings:
    raw = yaml.safe_load(Path(path).read_text()) or {}
    expanded = _expand_env(raw)
    gemini = expanded.get("gemini")
    return DittoSettings(
        slack=SlackSettings(**expanded["slack"]),
        openai=OpenAISettings(**expanded["openai"]),
        chat=ChatSettings(**expanded.get("chat", {})),
        tool_hosts=[ToolHostSettings(**host) for host in expanded.get("tool_hosts") or []],
        gemini=GeminiSettings(**gemini) if gemini else None,
    )


_ENV_REF = re.compile(r"\$\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?::-(?P<default>[^}]*))?\}")


def _expand_env(value: Any) -> Any:
    """Substitute `${NAME}` and `${NAME:-default}` references in every string value."""
    if isinstance(value, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group("name"), m.group("default") or ""), value)
    if isinstance(value, list):
        return [_expand_env(item) for item in value]
    if isinstance(value, dict):
        return {key: _expand_env(item) for key, item in value.items()}
    return value
