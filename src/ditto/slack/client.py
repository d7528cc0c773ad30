from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

import httpx

from ditto.config import SlackSettings
from ditto.errors import DecodeError, PlatformRejected, TransportError
from ditto.types import MessageHandle

LOGGER = logging.getLogger(__name__)


class ChatPlatform(Protocol):
    async def post_message(
        self,
        channel: str,
        *,
        blocks: Optional[list[dict[str, Any]]] = None,
        text: Optional[str] = None,
        thread_ts: Optional[str] = None,
        reply_broadcast: bool = False,
    ) -> MessageHandle: ...

    async def edit_message(
        self,
        handle: MessageHandle,
        *,
        blocks: Optional[list[dict[str, Any]]] = None,
        text: Optional[str] = None,
    ) -> None: ...

    async def get_thread_replies(self, channel: str, ts: str) -> list[dict[str, Any]]: ...


class SlackClient:
    def __init__(self, settings: SlackSettings):
        self._settings = settings

    async def post_message(
        self,
        channel: str,
        *,
        blocks: Optional[list[dict[str, Any]]] = None,
        text: Optional[str] = None,
        thread_ts: Optional[str] = None,
        reply_broadcast: bool = False,
    ) -> MessageHandle:
        payload: dict[str, Any] = {"channel": channel}
        if blocks is not None:
            payload["blocks"] = blocks
        if text is not None:
            payload["text"] = text
        if thread_ts is not None:
            payload["thread_ts"] = thread_ts
            payload["reply_broadcast"] = reply_broadcast

        body = await self._call("chat.postMessage", json=payload)
        ts = body.get("ts")
        if not isinstance(ts, str) or not ts:
            raise DecodeError("chat.postMessage response missing ts")
        return MessageHandle(channel=str(body.get("channel") or channel), ts=ts)

    async def edit_message(
        self,
        handle: MessageHandle,
        *,
        blocks: Optional[list[dict[str, Any]]] = None,
        text: Optional[str] = None,
    ) -> None:
        payload: dict[str, Any] = {"channel": handle.channel, "ts": handle.ts}
        if blocks is not None:
            payload["blocks"] = blocks
        if text is not None:
            payload["text"] = text
        await self._call("chat.update", json=payload)

    async def get_thread_replies(self, channel: str, ts: str) -> list[dict[str, Any]]:
        body = await self._call("conversations.replies", params={"channel": channel, "ts": ts})
        messages = body.get("messages") or []
        return [message for message in messages if isinstance(message, dict)]

    async def _call(
        self,
        method: str,
        *,
        json: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self._settings.bot_token}",
            "Content-Type": "application/json; charset=utf-8",
        }
        url = f"{self._settings.base_url}/{method}"

        async with httpx.AsyncClient(timeout=self._settings.timeout_seconds) as client:
            try:
                if json is not None:
                    response = await client.post(url, headers=headers, json=json)
                else:
                    response = await client.get(url, headers=headers, params=params)
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                raise TransportError(
                    f"Slack {method} failed: {exc}",
                    status_code=exc.response.status_code,
                ) from exc
            except httpx.HTTPError as exc:
                raise TransportError(f"Slack {method} failed: {exc}") from exc

        try:
            body = response.json()
        except ValueError as exc:
            raise DecodeError(f"Slack {method} returned invalid JSON") from exc
        if not isinstance(body, dict):
            raise DecodeError(f"Slack {method} returned a non-object body")

        if not body.get("ok"):
            error = str(body.get("error") or "unknown_error")
            LOGGER.warning("Slack %s rejected: %s", method, error)
            raise PlatformRejected(method, error)
        return body
