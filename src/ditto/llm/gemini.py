"""Gemini `generateContent` client speaking the same event types as the Responses API.

Requests are built from Responses-style input items so the orchestrator can
drive either provider. Gemini keeps no server-side conversation state, so
every round replays the whole transcript.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, Optional, Sequence

import httpx

from ditto.config import GeminiSettings
from ditto.errors import DecodeError, TransportError
from ditto.llm.events import (
    Completed,
    ContentPart,
    Delta,
    FunctionCall,
    MessageItem,
    OutputItem,
    StreamEvent,
)
from ditto.llm.responses import ResponseBody, guarded_events, status_error
from ditto.llm.stream import iter_sse_data
from ditto.types import Role

LOGGER = logging.getLogger(__name__)

PROVIDER = "Gemini"


@dataclass(frozen=True)
class GeminiChunk:
    response_id: str
    texts: tuple[str, ...]
    calls: tuple[tuple[str, str, dict[str, Any]], ...]
    finish_reason: Optional[str]


def parse_chunk(payload: Any) -> GeminiChunk:
    """Read one `GenerateContentResponse`; only the first candidate is used."""
    if not isinstance(payload, dict):
        raise DecodeError(f"Gemini frame must be an object, got {type(payload).__name__}")

    error = payload.get("error")
    if error:
        message = error.get("message") if isinstance(error, dict) else error
        raise TransportError(f"Gemini reported an error: {message}")

    feedback = payload.get("promptFeedback")
    if isinstance(feedback, dict) and feedback.get("blockReason"):
        raise TransportError(f"Gemini blocked the prompt: {feedback['blockReason']}")

    candidates = payload.get("candidates") or []
    if not isinstance(candidates, list):
        raise DecodeError("Gemini candidates must be a list")
    candidate = candidates[0] if candidates and isinstance(candidates[0], dict) else {}
    content = candidate.get("content") or {}
    parts = content.get("parts") if isinstance(content, dict) else None

    texts: list[str] = []
    calls: list[tuple[str, str, dict[str, Any]]] = []
    for part in parts or []:
        if not isinstance(part, dict):
            continue
        if isinstance(part.get("text"), str):
            texts.append(part["text"])
        call = part.get("functionCall")
        if isinstance(call, dict) and isinstance(call.get("name"), str):
            args = call.get("args") or {}
            if not isinstance(args, dict):
                raise DecodeError(f"Gemini functionCall {call['name']} args must be an object")
            calls.append((str(call.get("id") or ""), call["name"], args))

    finish_reason = candidate.get("finishReason")
    return GeminiChunk(
        response_id=str(payload.get("responseId") or ""),
        texts=tuple(texts),
        calls=tuple(calls),
        finish_reason=finish_reason if isinstance(finish_reason, str) else None,
    )


class _OutputCollector:
    """Accumulates chunks into Responses-style output items."""

    def __init__(self) -> None:
        self.response_id = ""
        self._texts: list[str] = []
        self._calls: list[FunctionCall] = []

    def add(self, chunk: GeminiChunk) -> None:
        self.response_id = chunk.response_id or self.response_id
        self._texts.extend(chunk.texts)
        for call_id, name, args in chunk.calls:
            call_id = call_id or f"call_{len(self._calls) + 1}"
            self._calls.append(
                FunctionCall(id=call_id, call_id=call_id, name=name, arguments=json.dumps(args))
            )

    def output(self) -> tuple[OutputItem, ...]:
        items: list[OutputItem] = []
        text = "".join(self._texts)
        if text:
            items.append(MessageItem(id=self.response_id, content=(ContentPart(type="text", text=text),)))
        items.extend(self._calls)
        return tuple(items)


async def iter_gemini_events(lines: AsyncIterable[str]) -> AsyncIterator[StreamEvent]:
    """Decode `streamGenerateContent?alt=sse` lines into deltas and one `Completed`.

    `Completed` is emitted when a candidate reports a finish reason or, if at
    least one frame decoded, when the line source ends.
    """
    collector = _OutputCollector()
    decoded = 0
    async for data in iter_sse_data(lines):
        try:
            chunk = parse_chunk(json.loads(data))
        except (json.JSONDecodeError, DecodeError) as exc:
            LOGGER.warning("Skipping malformed stream frame: %s (%.200s)", exc, data)
            continue

        decoded += 1
        collector.add(chunk)
        for text in chunk.texts:
            if text:
                yield Delta(item_id=collector.response_id, text=text)
        if chunk.finish_reason:
            break

    if decoded:
        yield Completed(response_id=collector.response_id, output_items=collector.output())


def _arguments(raw: str) -> dict[str, Any]:
    try:
        value = json.loads(raw) if raw.strip() else {}
    except json.JSONDecodeError:
        return {}
    return value if isinstance(value, dict) else {}


def to_contents(input_items: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
    """Convert Responses-style input items to Gemini `contents`.

    Consecutive items of the same role share one content entry, so parallel
    function calls and their responses each form a single turn.
    """
    contents: list[dict[str, Any]] = []
    call_names: dict[str, str] = {}
    for item in input_items:
        kind = item.get("type")
        if kind == "function_call":
            call_names[item["call_id"]] = item["name"]
            role = "model"
            part: dict[str, Any] = {
                "functionCall": {"name": item["name"], "args": _arguments(item["arguments"])}
            }
        elif kind == "function_call_output":
            role = "user"
            part = {
                "functionResponse": {
                    "name": call_names.get(item["call_id"], ""),
                    "response": {"content": item["output"]},
                }
            }
        else:
            role = "model" if item.get("role") == Role.ASSISTANT.value else "user"
            part = {"text": item.get("content") or ""}

        if contents and contents[-1]["role"] == role:
            contents[-1]["parts"].append(part)
        else:
            contents.append({"role": role, "parts": [part]})
    return contents


def to_gemini_tools(tools: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
    declarations = []
    for tool in tools:
        if tool.get("type") != "function":
            continue
        declaration = {"name": tool["name"], "description": tool.get("description") or ""}
        parameters = tool.get("parameters") or {}
        # Gemini rejects object schemas without properties.
        if parameters.get("properties"):
            declaration["parameters"] = parameters
        declarations.append(declaration)
    return [{"functionDeclarations": declarations}] if declarations else []


def build_gemini_request(
    *,
    input_items: Sequence[dict[str, Any]],
    tools: Sequence[dict[str, Any]],
    temperature: float,
) -> dict[str, Any]:
    body: dict[str, Any] = {
        "contents": to_contents(input_items),
        "generationConfig": {"temperature": temperature},
    }
    declared = to_gemini_tools(tools)
    if declared:
        body["tools"] = declared
    return body


class GeminiClient:
    provider_name = PROVIDER

    def __init__(self, settings: GeminiSettings):
        self._settings = settings

    @property
    def settings(self) -> GeminiSettings:
        return self._settings

    @property
    def model(self) -> str:
        return self._settings.model

    @property
    def stores_responses(self) -> bool:
        return False

    def build_request(
        self,
        *,
        input_items: Sequence[dict[str, Any]],
        tools: Sequence[dict[str, Any]],
        temperature: float,
        stream: bool,
        previous_response_id: Optional[str] = None,
    ) -> dict[str, Any]:
        return build_gemini_request(input_items=input_items, tools=tools, temperature=temperature)

    def _headers(self) -> dict[str, str]:
        return {
            "x-goog-api-key": self._settings.api_key,
            "Content-Type": "application/json",
        }

    def _url(self, method: str) -> str:
        return f"{self._settings.base_url}/models/{self._settings.model}:{method}"

    async def create(self, body: dict[str, Any]) -> ResponseBody:
        url = self._url("generateContent")
        LOGGER.debug("POST %s stream=false", url)
        async with httpx.AsyncClient(timeout=self._settings.stream_idle_timeout_seconds) as client:
            try:
                response = await client.post(url, headers=self._headers(), json=body)
            except httpx.HTTPError as exc:
                raise TransportError(f"Gemini request failed: {exc}") from exc

        if response.status_code >= 400:
            raise status_error(response.status_code, response.text, PROVIDER)

        try:
            payload = response.json()
        except ValueError as exc:
            raise DecodeError("Gemini response is not valid JSON") from exc

        collector = _OutputCollector()
        collector.add(parse_chunk(payload))
        return ResponseBody(id=collector.response_id, output=collector.output())

    @asynccontextmanager
    async def stream(self, body: dict[str, Any]) -> AsyncIterator[AsyncIterator[StreamEvent]]:
        url = self._url("streamGenerateContent")
        LOGGER.debug("POST %s stream=true", url)
        timeout = httpx.Timeout(
            self._settings.timeout_seconds,
            read=self._settings.stream_idle_timeout_seconds,
        )
        async with httpx.AsyncClient(timeout=timeout) as client:
            try:
                async with client.stream(
                    "POST",
                    url,
                    headers=self._headers(),
                    params={"alt": "sse"},
                    json=body,
                ) as response:
                    if response.status_code >= 400:
                        raw = await response.aread()
                        raise status_error(response.status_code, raw.decode(errors="replace"), PROVIDER)
                    yield guarded_events(iter_gemini_events(response.aiter_lines()), PROVIDER)
            except httpx.HTTPError as exc:
                raise TransportError(f"Gemini stream request failed: {exc}") from exc
