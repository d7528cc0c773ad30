from __future__ import annotations

import math
import re
from dataclasses import dataclass

# Both providers accept temperatures in [0, 2].
MAX_TEMPERATURE = 2.0

_COMMAND_RE = re.compile(
    r"^\s*<@(?P<bot>[A-Za-z0-9]+)>\s+(?P<command>[a-z]+)(?P<option>\S*)(?:\s+(?P<args>.*))?$",
    re.IGNORECASE | re.DOTALL,
)


@dataclass(frozen=True)
class ParsedBotCommand:
    bot_user_id: str
    command: str
    option: str
    args: str

    @property
    def temperature(self) -> float:
        return parse_temperature(self.option)


def parse_bot_command(text: str) -> ParsedBotCommand | None:
    if not text:
        return None
    match = _COMMAND_RE.match(text)
    if not match:
        return None
    return ParsedBotCommand(
        bot_user_id=match.group("bot"),
        command=match.group("command").lower(),
        option=match.group("option") or "",
        args=(match.group("args") or "").strip(),
    )


def parse_temperature(value: str) -> float:
    try:
        temperature = float(value)
    except ValueError:
        return 0.0
    if not math.isfinite(temperature) or not 0.0 <= temperature <= MAX_TEMPERATURE:
        return 0.0
    return temperature


def is_command_for(parsed: ParsedBotCommand | None, bot_user_id: str, command: str) -> bool:
    return (
        parsed is not None
        and parsed.bot_user_id == bot_user_id
        and parsed.command == command.lower()
    )


def strip_command_prefix(text: str, bot_user_id: str, command: str) -> str:
    """Drop a leading `<@BOT> command<option>` prefix addressed to this bot."""
    parsed = parse_bot_command(text)
    if is_command_for(parsed, bot_user_id, command):
        return parsed.args
    return text
