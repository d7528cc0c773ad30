from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from ditto.config import DittoSettings
from ditto.context import build_conversation
from ditto.llm.gemini import GeminiClient
from ditto.llm.responses import CompletionClient, ResponsesClient
from ditto.orchestrator import CompletionOrchestrator
from ditto.slack.client import ChatPlatform, SlackClient
from ditto.sync import MessageSyncManager
from ditto.tools.catalog import ToolCatalog
from ditto.tools.host import HttpToolHost
from ditto.types import MessageEvent
from ditto.utils.commands import ParsedBotCommand, is_command_for, parse_bot_command

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatRoute:
    """One bot command and the provider that answers it."""

    command: str
    label: str
    client: CompletionClient
    stream: bool


class DittoBot:
    """Turns triggering chat messages into independent orchestration tasks."""

    def __init__(
        self,
        settings: DittoSettings,
        platform: ChatPlatform,
        client: CompletionClient,
        catalog: ToolCatalog,
        gemini: Optional[CompletionClient] = None,
    ) -> None:
        self._settings = settings
        self._platform = platform
        self._catalog = catalog
        self._routes = [
            ChatRoute(settings.chat.command, settings.chat.label, client, settings.openai.stream)
        ]
        if gemini is not None and settings.gemini is not None:
            self._routes.append(
                ChatRoute(settings.gemini.command, settings.gemini.label, gemini, settings.gemini.stream)
            )
        self._tasks: set[asyncio.Task[None]] = set()
        self._stop_event = asyncio.Event()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    @property
    def commands(self) -> list[str]:
        return [route.command for route in self._routes]

    def parse_trigger(self, event: MessageEvent) -> Optional[tuple[ChatRoute, ParsedBotCommand]]:
        bot_user_id = self._settings.slack.bot_user_id
        if event.is_bot or event.user == bot_user_id:
            LOGGER.debug("Ignoring bot message ts=%s", event.ts)
            return None
        parsed = parse_bot_command(event.text)
        for route in self._routes:
            if is_command_for(parsed, bot_user_id, route.command):
                return route, parsed
        return None

    def handle_user_turn(
        self, event: MessageEvent, thread_ref: Optional[str] = None
    ) -> Optional[asyncio.Task[None]]:
        """Start answering `event` in the background; never raises."""
        if self._stop_event.is_set():
            LOGGER.warning("Shutting down, dropping message ts=%s", event.ts)
            return None
        trigger = self.parse_trigger(event)
        if trigger is None:
            return None
        if thread_ref is not None:
            event.thread_ts = thread_ref

        route, parsed = trigger
        task = asyncio.create_task(
            self._run_turn(event, route, parsed),
            name=f"ditto-{route.command}-{event.channel}-{event.ts}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_turn(self, event: MessageEvent, route: ChatRoute, parsed: ParsedBotCommand) -> None:
        LOGGER.info(
            "Answering command=%s channel=%s thread=%s temperature=%s",
            route.command,
            event.channel,
            event.thread_ref,
            parsed.temperature,
        )
        try:
            turns = await build_conversation(
                self._platform,
                event,
                bot_user_id=self._settings.slack.bot_user_id,
                command=route.command,
                label=route.label,
                fallback_text=parsed.args,
            )
            sync = MessageSyncManager(
                self._platform,
                event.channel,
                label=route.label,
                thread_ts=event.thread_ref,
            )
            orchestrator = CompletionOrchestrator(
                route.client,
                self._catalog,
                sync,
                max_rounds=self._settings.chat.max_rounds,
                stop_event=self._stop_event,
            )
            state = await orchestrator.run(turns, parsed.temperature, stream=route.stream)
            LOGGER.info(
                "Finished channel=%s thread=%s rounds=%s chars=%s",
                event.channel,
                event.thread_ref,
                state.round_index + 1,
                len(state.accumulated_text),
            )
        except Exception:
            LOGGER.exception("Conversation turn failed channel=%s ts=%s", event.channel, event.ts)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def shutdown(self, grace_seconds: float = 10.0) -> None:
        """Let in-flight turns post a final flush, then cancel what is left."""
        self._stop_event.set()
        pending = set(self._tasks)
        if not pending:
            return

        _, still_running = await asyncio.wait(pending, timeout=grace_seconds)
        for task in still_running:
            task.cancel()
        if still_running:
            LOGGER.warning("Cancelled %s turn(s) after %.1fs grace", len(still_running), grace_seconds)
            await asyncio.gather(*still_running, return_exceptions=True)


def build_bot(settings: DittoSettings) -> DittoBot:
    hosts = [HttpToolHost(host) for host in settings.tool_hosts]
    return DittoBot(
        settings,
        SlackClient(settings.slack),
        ResponsesClient(settings.openai),
        ToolCatalog(hosts),
        gemini=GeminiClient(settings.gemini) if settings.gemini is not None else None,
    )
