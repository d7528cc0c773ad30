from __future__ import annotations

import logging
from typing import Any, Optional

from ditto.errors import DittoError
from ditto.slack.blocks import extract_answer
from ditto.slack.client import ChatPlatform
from ditto.types import ConversationTurn, MessageEvent, Role
from ditto.utils.commands import strip_command_prefix

LOGGER = logging.getLogger(__name__)


def is_bot_authored(message: dict[str, Any], bot_user_id: str) -> bool:
    return (
        message.get("bot_id") is not None
        or message.get("subtype") == "bot_message"
        or message.get("user") == bot_user_id
    )


def reply_to_turn(
    message: dict[str, Any],
    *,
    bot_user_id: str,
    command: str,
    label: str,
) -> Optional[ConversationTurn]:
    if is_bot_authored(message, bot_user_id):
        answer = extract_answer(message.get("blocks"), label)
        if answer is None:
            return None
        return ConversationTurn(role=Role.ASSISTANT, content=answer)

    text = message.get("text")
    if not isinstance(text, str) or not message.get("user"):
        return None
    return ConversationTurn(
        role=Role.USER,
        content=strip_command_prefix(text, bot_user_id, command),
    )


async def build_conversation(
    platform: ChatPlatform,
    event: MessageEvent,
    *,
    bot_user_id: str,
    command: str,
    label: str,
    fallback_text: str,
) -> list[ConversationTurn]:
    """Rebuild the thread as chronological turns, or a single fallback user turn."""
    try:
        replies = await platform.get_thread_replies(event.channel, event.thread_ref)
    except DittoError as exc:
        LOGGER.warning(
            "Fetching thread replies failed channel=%s thread=%s: %s",
            event.channel,
            event.thread_ref,
            exc,
        )
        replies = []

    turns: list[ConversationTurn] = []
    for message in sorted(replies, key=_reply_ts):
        turn = reply_to_turn(message, bot_user_id=bot_user_id, command=command, label=label)
        if turn is not None:
            turns.append(turn)

    if not turns:
        LOGGER.debug("No usable thread turns for thread=%s, using command text", event.thread_ref)
        return [ConversationTurn(role=Role.USER, content=fallback_text)]
    return turns


def _reply_ts(message: dict[str, Any]) -> float:
    try:
        return float(message.get("ts") or 0.0)
    except (TypeError, ValueError):
        return 0.0
