from __future__ import annotations

import asyncio
import logging
from typing import Optional

from ditto.errors import PlatformRejected, TransportError
from ditto.slack.blocks import answer_blocks, section
from ditto.slack.client import ChatPlatform
from ditto.types import MessageHandle

LOGGER = logging.getLogger(__name__)


class MessageSyncManager:
    """Mirror one growing answer into a single chat message.

    The first flush posts the message; every later flush edits it. Platform
    calls never overlap, so edits land in the order they were decided.
    """

    def __init__(
        self,
        platform: ChatPlatform,
        channel: str,
        *,
        label: str,
        thread_ts: Optional[str] = None,
        broadcast: bool = True,
    ):
        self._platform = platform
        self._channel = channel
        self._label = label
        self._thread_ts = thread_ts
        self._broadcast = broadcast
        self._handle: Optional[MessageHandle] = None
        self._last_text: Optional[str] = None
        self._in_flight = asyncio.Lock()

    @property
    def handle(self) -> Optional[MessageHandle]:
        return self._handle

    @property
    def last_text(self) -> Optional[str]:
        return self._last_text

    async def flush(self, text: str, transient_suffix: Optional[str] = None) -> MessageHandle:
        visible = text + transient_suffix if transient_suffix else text
        async with self._in_flight:
            if self._handle is None:
                self._handle = await self._post(answer_blocks(self._label, visible), visible)
            elif not await self._edit(answer_blocks(self._label, visible), visible):
                return self._handle
            self._last_text = visible
            return self._handle

    async def send_once(self, text: str) -> MessageHandle:
        """Post a finished answer in one call, without incremental edits."""
        return await self.flush(text)

    async def send_diagnostic(
        self, text: str, *, base_text: Optional[str] = None
    ) -> Optional[MessageHandle]:
        async with self._in_flight:
            if self._handle is None:
                self._handle = await self._post([section(text, markdown=False)], text)
                self._last_text = text
                return self._handle

            base = self._last_text if base_text is None else base_text
            visible = f"{base}\n{text}" if base else text
            # The answer block holds answer text only; the diagnostic follows it.
            blocks = answer_blocks(self._label, base) if base else []
            blocks.append(section(text, markdown=False))
            if await self._edit(blocks, visible):
                self._last_text = visible
            return self._handle

    async def _post(self, blocks: list[dict], text: str) -> MessageHandle:
        handle = await self._platform.post_message(
            self._channel,
            blocks=blocks,
            text=text,
            thread_ts=self._thread_ts,
            reply_broadcast=self._broadcast,
        )
        LOGGER.debug("Posted message channel=%s ts=%s", handle.channel, handle.ts)
        return handle

    async def _edit(self, blocks: list[dict], text: str) -> bool:
        assert self._handle is not None
        try:
            await self._platform.edit_message(self._handle, blocks=blocks, text=text)
            return True
        except (PlatformRejected, TransportError) as exc:
            LOGGER.error(
                "Edit message failed channel=%s ts=%s: %s",
                self._handle.channel,
                self._handle.ts,
                exc,
            )
            return False
