"""Completion orchestrator: streams an answer into chat and runs the tool loop.

One orchestrator instance owns one user turn. Each round sends a request to
the provider; a round that ends with function calls invokes the tools and
sends their results back in a new round, a round that ends with a message is
the final answer.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Optional, Sequence

from ditto.errors import (
    DecodeError,
    PlatformRejected,
    StreamEnded,
    ToolInvocationError,
    ToolNotFound,
    TransportError,
)
from ditto.llm.events import Completed, Delta, FunctionCall, StreamEvent, function_call_input_item
from ditto.llm.responses import CompletionClient
from ditto.sync import MessageSyncManager
from ditto.tools.catalog import ToolCatalog
from ditto.types import ConversationTurn, MessageHandle, ToolResult

LOGGER = logging.getLogger(__name__)

RECEIVING_SUFFIX = " `Receiving...`"
CONTINUE_SUFFIX = " `[continue]`"
DONE_MARKER = " `[DONE]`"
INTERRUPTED_MARKER = " `[interrupted]`"
FLUSH_BOUNDARIES = frozenset(",.?!\n")
DEFAULT_MAX_ROUNDS = 8

PROVIDER_FAILED_MESSAGE = "{provider} API call failed"
EMPTY_ANSWER_MESSAGE = "ditto_bot Error: empty response"
ROUND_LIMIT_MESSAGE = "Stopped after too many tool calls"


def should_flush(appended: str) -> bool:
    trimmed = appended.rstrip(" \t")
    return bool(trimmed) and trimmed[-1] in FLUSH_BOUNDARIES


@dataclass
class OrchestrationState:
    accumulated_text: str = ""
    pending_tool_outputs: list[ToolResult] = field(default_factory=list)
    previous_response_id: Optional[str] = None
    outbound_message_handle: Optional[MessageHandle] = None
    round_index: int = 0
    # Items replayed when responses are not stored server-side.
    replay_items: list[dict[str, Any]] = field(default_factory=list)
    closed: bool = False


class _DeliveryFailed(Exception):
    pass


class CompletionOrchestrator:
    def __init__(
        self,
        client: CompletionClient,
        catalog: ToolCatalog,
        sync: MessageSyncManager,
        *,
        max_rounds: int = DEFAULT_MAX_ROUNDS,
        stop_event: Optional[asyncio.Event] = None,
    ):
        self._client = client
        self._catalog = catalog
        self._sync = sync
        self._max_rounds = max(1, max_rounds)
        self._stop_event = stop_event

    async def run(
        self,
        turns: Sequence[ConversationTurn],
        temperature: float,
        *,
        stream: bool = True,
    ) -> OrchestrationState:
        state = OrchestrationState()
        tools = await self._catalog.declarations()
        try:
            if stream:
                await self._run_streaming(state, turns, tools, temperature)
            else:
                await self._run_blocking(state, turns, tools, temperature)
        except _DeliveryFailed as exc:
            LOGGER.error("Could not deliver answer, giving up on this turn: %s", exc.__cause__)
        except asyncio.CancelledError:
            await self._close_cancelled(state)
            raise
        state.outbound_message_handle = self._sync.handle
        return state

    def _stopping(self) -> bool:
        return self._stop_event is not None and self._stop_event.is_set()

    def _build_body(
        self,
        state: OrchestrationState,
        turns: Sequence[ConversationTurn],
        tools: list[dict[str, Any]],
        temperature: float,
        *,
        stream: bool,
    ) -> dict[str, Any]:
        if state.previous_response_id is not None and self._client.stores_responses:
            input_items = [result.to_input_item() for result in state.pending_tool_outputs]
            previous_response_id: Optional[str] = state.previous_response_id
        else:
            input_items = [turn.to_input_item() for turn in turns] + state.replay_items
            previous_response_id = None
        return self._client.build_request(
            input_items=input_items,
            tools=tools,
            temperature=temperature,
            stream=stream,
            previous_response_id=previous_response_id,
        )

    async def _run_streaming(
        self,
        state: OrchestrationState,
        turns: Sequence[ConversationTurn],
        tools: list[dict[str, Any]],
        temperature: float,
    ) -> None:
        for round_index in range(self._max_rounds):
            state.round_index = round_index
            if self._stopping():
                await self._finish(state, INTERRUPTED_MARKER)
                return

            body = self._build_body(state, turns, tools, temperature, stream=True)
            completed = await self._stream_round(state, body)
            if completed is None:
                return

            calls = completed.function_calls
            if not calls:
                if not state.accumulated_text:
                    await self._diagnose(state, EMPTY_ANSWER_MESSAGE)
                    return
                await self._finish(state, DONE_MARKER)
                return

            if not await self._resolve_tool_calls(state, completed, calls):
                return

        LOGGER.warning("Tool loop exceeded %s rounds", self._max_rounds)
        await self._diagnose(state, ROUND_LIMIT_MESSAGE)

    async def _stream_round(
        self, state: OrchestrationState, body: dict[str, Any]
    ) -> Optional[Completed]:
        """Consume one streamed round.

        Returns the round's `Completed` event, or None when the turn already
        ended (final flush or diagnostic done) inside the round.
        """
        received_delta = False
        last_event: Optional[StreamEvent] = None
        events_seen = 0

        try:
            async with self._client.stream(body) as events:
                async for event in events:
                    events_seen += 1
                    last_event = event
                    if isinstance(event, Delta):
                        await self._on_delta(state, event, first=not received_delta)
                        received_delta = True
                    elif isinstance(event, Completed):
                        if not received_delta and not event.function_calls:
                            state.accumulated_text += event.message_text
                        return event

                    if self._stopping():
                        await self._finish(state, INTERRUPTED_MARKER)
                        return None
        except StreamEnded as exc:
            if events_seen == 0:
                await self._provider_failed(state, last_event, exc, stream=True)
                return None
            LOGGER.info("Stream closed by provider after %s events: %s", events_seen, exc)
        except (TransportError, DecodeError) as exc:
            await self._provider_failed(state, last_event, exc, stream=True)
            return None

        if not state.accumulated_text:
            exc = StreamEnded(f"Stream ended without output after {events_seen} events")
            await self._provider_failed(state, last_event, exc, stream=True)
            return None

        LOGGER.debug("Stream ended without completion after %s events", events_seen)
        await self._finish(state, DONE_MARKER)
        return None

    async def _on_delta(self, state: OrchestrationState, event: Delta, *, first: bool) -> None:
        state.accumulated_text += event.text
        if first:
            await self._flush(state, RECEIVING_SUFFIX)
        elif should_flush(event.text):
            await self._flush(state, CONTINUE_SUFFIX)

    async def _run_blocking(
        self,
        state: OrchestrationState,
        turns: Sequence[ConversationTurn],
        tools: list[dict[str, Any]],
        temperature: float,
    ) -> None:
        for round_index in range(self._max_rounds):
            state.round_index = round_index
            body = self._build_body(state, turns, tools, temperature, stream=False)
            try:
                response = await self._client.create(body)
            except (TransportError, DecodeError) as exc:
                await self._provider_failed(state, None, exc, stream=False)
                return

            completed = Completed(response_id=response.id, output_items=response.output)
            calls = completed.function_calls
            if not calls:
                state.accumulated_text = completed.message_text.lstrip() or EMPTY_ANSWER_MESSAGE
                await self._deliver(self._sync.send_once(state.accumulated_text))
                return

            if not await self._resolve_tool_calls(state, completed, calls):
                return

        LOGGER.warning("Tool loop exceeded %s rounds", self._max_rounds)
        await self._diagnose(state, ROUND_LIMIT_MESSAGE)

    async def _resolve_tool_calls(
        self,
        state: OrchestrationState,
        completed: Completed,
        calls: list[FunctionCall],
    ) -> bool:
        try:
            state.pending_tool_outputs = await self._invoke_tools(calls)
        except (ToolNotFound, ToolInvocationError, DecodeError, TransportError) as exc:
            LOGGER.error(
                "Tool call failed response_id=%s calls=%s: %s",
                completed.response_id,
                [call.name for call in calls],
                exc,
            )
            await self._diagnose(state, f"Tool call failed: {exc}")
            return False

        state.previous_response_id = completed.response_id
        state.replay_items.extend(function_call_input_item(call) for call in calls)
        state.replay_items.extend(result.to_input_item() for result in state.pending_tool_outputs)
        return True

    async def _invoke_tools(self, calls: list[FunctionCall]) -> list[ToolResult]:
        outputs = await asyncio.gather(
            *(self._catalog.invoke(call.name, call.arguments) for call in calls),
            return_exceptions=True,
        )
        results: list[ToolResult] = []
        for call, output in zip(calls, outputs):
            if isinstance(output, BaseException):
                raise output
            results.append(ToolResult(call_id=call.call_id, output_text=output))
        return results

    async def _finish(self, state: OrchestrationState, marker: str) -> None:
        state.closed = True
        state.accumulated_text += marker
        await self._flush(state)

    async def _flush(self, state: OrchestrationState, suffix: Optional[str] = None) -> None:
        state.outbound_message_handle = await self._deliver(
            self._sync.flush(state.accumulated_text, suffix)
        )

    async def _deliver(self, call: Awaitable[MessageHandle]) -> MessageHandle:
        try:
            return await call
        except (PlatformRejected, TransportError, DecodeError) as exc:
            raise _DeliveryFailed() from exc

    async def _diagnose(self, state: OrchestrationState, text: str) -> None:
        state.closed = True
        try:
            await self._sync.send_diagnostic(text, base_text=state.accumulated_text)
        except (PlatformRejected, TransportError, DecodeError) as exc:
            raise _DeliveryFailed() from exc

    async def _close_cancelled(self, state: OrchestrationState) -> None:
        """Replace a transient suffix with the interrupted marker before the task dies."""
        if state.closed or self._sync.handle is None:
            return
        LOGGER.warning("Turn cancelled mid-answer round=%s", state.round_index)
        try:
            await asyncio.shield(self._finish(state, INTERRUPTED_MARKER))
        except (_DeliveryFailed, asyncio.CancelledError) as exc:
            LOGGER.error("Could not flush interrupted answer: %r", exc.__cause__ or exc)

    async def _provider_failed(
        self,
        state: OrchestrationState,
        last_event: Optional[StreamEvent],
        exc: Exception,
        *,
        stream: bool,
    ) -> None:
        LOGGER.error(
            "Provider round failed provider=%s model=%s round=%s stream=%s last_event=%r: %s",
            self._client.provider_name,
            self._client.model,
            state.round_index,
            stream,
            last_event,
            exc,
        )
        if self._sync.handle is None:
            await self._diagnose(state, PROVIDER_FAILED_MESSAGE.format(provider=self._client.provider_name))
