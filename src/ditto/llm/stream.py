from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterable, AsyncIterator

from ditto.errors import DecodeError, TransportError
from ditto.llm.events import Completed, StreamEvent, Unknown, parse_stream_event

LOGGER = logging.getLogger(__name__)

_FAILURE_TYPES = {"error", "response.failed", "response.incomplete"}


async def iter_sse_data(lines: AsyncIterable[str]) -> AsyncIterator[str]:
    """Yield the payload of every `data:` line until `[DONE]` or the source ends."""
    async for line in lines:
        stripped = line.strip()
        if not stripped.startswith("data:"):
            continue

        data = stripped[5:].strip()
        if data == "[DONE]":
            return
        yield data


def _failure_detail(payload: dict[str, Any]) -> str:
    error = payload.get("error")
    if error is None and isinstance(payload.get("response"), dict):
        response = payload["response"]
        error = response.get("error") or response.get("incomplete_details")
    if isinstance(error, dict):
        return str(error.get("message") or error.get("reason") or error.get("code") or error)
    return str(error or payload.get("message") or "no details")


async def iter_stream_events(lines: AsyncIterable[str]) -> AsyncIterator[StreamEvent]:
    """Decode server-sent-event lines into typed events, in arrival order.

    Stops after `Completed`, on `[DONE]`, or when the line source ends.
    A frame that cannot be decoded is logged and skipped. A failure frame
    from the provider raises `TransportError`.
    """
    async for data in iter_sse_data(lines):
        try:
            payload = json.loads(data)
            event = parse_stream_event(payload)
        except (json.JSONDecodeError, DecodeError) as exc:
            LOGGER.warning("Skipping malformed stream frame: %s (%.200s)", exc, data)
            continue

        if isinstance(event, Unknown) and event.type in _FAILURE_TYPES:
            LOGGER.warning("Provider reported %s: %.500s", event.type, data)
            raise TransportError(f"OpenAI stream reported {event.type}: {_failure_detail(payload)}")

        yield event
        if isinstance(event, Completed):
            return
