from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncContextManager, AsyncIterator, Optional, Protocol, Sequence

import httpx

from ditto.config import OpenAISettings
from ditto.errors import DecodeError, StreamEnded, TransportError
from ditto.llm.events import OutputItem, StreamEvent, parse_output
from ditto.llm.stream import iter_stream_events

LOGGER = logging.getLogger(__name__)

REASONING_TEMPERATURE = 1.0


@dataclass(frozen=True)
class ResponseBody:
    id: str
    output: tuple[OutputItem, ...]


class CompletionClient(Protocol):
    """What the orchestrator needs from an LLM provider."""

    provider_name: str

    @property
    def model(self) -> str: ...

    @property
    def stores_responses(self) -> bool: ...

    def build_request(
        self,
        *,
        input_items: Sequence[dict[str, Any]],
        tools: Sequence[dict[str, Any]],
        temperature: float,
        stream: bool,
        previous_response_id: Optional[str] = None,
    ) -> dict[str, Any]: ...

    async def create(self, body: dict[str, Any]) -> ResponseBody: ...

    def stream(self, body: dict[str, Any]) -> AsyncContextManager[AsyncIterator[StreamEvent]]: ...


def effective_temperature(settings: OpenAISettings, requested: float) -> float:
    if settings.is_reasoning_model():
        return REASONING_TEMPERATURE
    return requested


def build_request(
    settings: OpenAISettings,
    *,
    input_items: Sequence[dict[str, Any]],
    tools: Sequence[dict[str, Any]],
    temperature: float,
    stream: bool,
    previous_response_id: Optional[str] = None,
) -> dict[str, Any]:
    declared = list(tools)
    if settings.web_search:
        declared.append({"type": "web_search"})

    body: dict[str, Any] = {
        "model": settings.model,
        "input": list(input_items),
        "temperature": effective_temperature(settings, temperature),
        "store": settings.store,
        "stream": stream,
        "tools": declared,
    }
    if previous_response_id:
        body["previous_response_id"] = previous_response_id
    return body


def status_error(status_code: int, body_text: str, provider: str = "OpenAI") -> TransportError:
    if status_code in (401, 403):
        return TransportError(f"{provider} authentication failed", status_code=status_code)
    if status_code == 429:
        return TransportError(f"{provider} rate limit", status_code=status_code)
    if 500 <= status_code <= 599:
        return TransportError(f"{provider} server error", status_code=status_code)
    return TransportError(f"{provider} request rejected: {body_text}", status_code=status_code)


class ResponsesClient:
    provider_name = "OpenAI"

    def __init__(self, settings: OpenAISettings):
        self._settings = settings

    @property
    def settings(self) -> OpenAISettings:
        return self._settings

    @property
    def model(self) -> str:
        return self._settings.model

    @property
    def stores_responses(self) -> bool:
        return self._settings.store

    def build_request(self, **kwargs: Any) -> dict[str, Any]:
        return build_request(self._settings, **kwargs)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._settings.api_key}",
            "Content-Type": "application/json",
        }

    @property
    def _url(self) -> str:
        return f"{self._settings.base_url}/responses"

    async def create(self, body: dict[str, Any]) -> ResponseBody:
        LOGGER.debug("POST %s model=%s stream=false", self._url, body.get("model"))
        async with httpx.AsyncClient(timeout=self._settings.stream_idle_timeout_seconds) as client:
            try:
                response = await client.post(self._url, headers=self._headers(), json=body)
            except httpx.HTTPError as exc:
                raise TransportError(f"OpenAI request failed: {exc}") from exc

        if response.status_code >= 400:
            raise status_error(response.status_code, response.text)

        try:
            payload = response.json()
        except ValueError as exc:
            raise DecodeError("OpenAI response is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise DecodeError("OpenAI response is not an object")
        return ResponseBody(id=str(payload.get("id") or ""), output=parse_output(payload.get("output")))

    @asynccontextmanager
    async def stream(self, body: dict[str, Any]) -> AsyncIterator[AsyncIterator[StreamEvent]]:
        """Open a streaming request and yield its decoded event sequence.

        Transport failures while reading raise `TransportError`; a peer that
        hangs up mid-body raises `StreamEnded`.
        """
        LOGGER.debug("POST %s model=%s stream=true", self._url, body.get("model"))
        timeout = httpx.Timeout(
            self._settings.timeout_seconds,
            read=self._settings.stream_idle_timeout_seconds,
        )
        async with httpx.AsyncClient(timeout=timeout) as client:
            try:
                async with client.stream("POST", self._url, headers=self._headers(), json=body) as response:
                    if response.status_code >= 400:
                        raw = await response.aread()
                        raise status_error(response.status_code, raw.decode(errors="replace"))
                    yield guarded_events(iter_stream_events(response.aiter_lines()))
            except httpx.HTTPError as exc:
                raise TransportError(f"OpenAI stream request failed: {exc}") from exc


async def guarded_events(
    events: AsyncIterator[StreamEvent], provider: str = "OpenAI"
) -> AsyncIterator[StreamEvent]:
    try:
        async for event in events:
            yield event
    except httpx.RemoteProtocolError as exc:
        raise StreamEnded(f"{provider} stream closed by peer: {exc}") from exc
    except httpx.HTTPError as exc:
        raise TransportError(f"{provider} stream interrupted: {exc}") from exc
