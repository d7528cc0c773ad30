from __future__ import annotations

from unittest.mock import patch

import httpx
import pytest

from ditto.config import OpenAISettings
from ditto.errors import StreamEnded, TransportError
from ditto.llm.events import Completed, Delta, FunctionCall
from ditto.llm.responses import ResponsesClient, build_request

from fakes import (
    FakeResponse,
    FakeStreamContext,
    FakeStreamResponse,
    completed,
    delta,
    function_call_item,
    message_item,
    sse_lines,
)


def _settings(**overrides) -> OpenAISettings:
    return OpenAISettings(api_key="test-key", **overrides)


def test_build_request_shape() -> None:
    tools = [{"type": "function", "name": "clock_now", "description": "", "parameters": {}}]
    body = build_request(
        _settings(model="gpt-4.1-mini", web_search=True),
        input_items=[{"role": "user", "content": "hi"}],
        tools=tools,
        temperature=0.2,
        stream=True,
        previous_response_id="resp_1",
    )

    assert body == {
        "model": "gpt-4.1-mini",
        "input": [{"role": "user", "content": "hi"}],
        "temperature": 0.2,
        "store": True,
        "stream": True,
        "tools": tools + [{"type": "web_search"}],
        "previous_response_id": "resp_1",
    }


def test_reasoning_model_forces_neutral_temperature() -> None:
    body = build_request(
        _settings(model="o3-mini"),
        input_items=[],
        tools=[],
        temperature=0.2,
        stream=False,
    )

    assert body["temperature"] == 1.0
    assert "previous_response_id" not in body


@pytest.mark.asyncio
async def test_stream_yields_decoded_events() -> None:
    lines = sse_lines([delta("Hi"), delta("!"), completed("resp_1", [message_item("Hi!")])])
    captured: dict = {}

    def fake_stream(*args, **kwargs):
        captured.update(kwargs)
        return FakeStreamContext(FakeStreamResponse(lines))

    with patch("httpx.AsyncClient.stream", side_effect=fake_stream):
        client = ResponsesClient(_settings())
        async with client.stream({"model": "gpt-4.1-mini", "stream": True}) as events:
            received = [event async for event in events]

    assert received[:2] == [Delta(item_id="msg_1", text="Hi"), Delta(item_id="msg_1", text="!")]
    assert isinstance(received[2], Completed)
    assert captured["headers"]["Authorization"] == "Bearer test-key"
    assert captured["json"]["stream"] is True


@pytest.mark.asyncio
async def test_stream_error_status_raises_transport_error() -> None:
    def fake_stream(*args, **kwargs):
        return FakeStreamContext(FakeStreamResponse([], status_code=429, body_text="slow down"))

    with patch("httpx.AsyncClient.stream", side_effect=fake_stream):
        client = ResponsesClient(_settings())
        with pytest.raises(TransportError) as excinfo:
            async with client.stream({}) as events:
                [event async for event in events]

    assert excinfo.value.status_code == 429


@pytest.mark.asyncio
async def test_peer_close_mid_stream_raises_stream_ended() -> None:
    lines = sse_lines([delta("part")]) + [httpx.RemoteProtocolError("peer closed connection")]

    def fake_stream(*args, **kwargs):
        return FakeStreamContext(FakeStreamResponse(lines))

    received = []
    with patch("httpx.AsyncClient.stream", side_effect=fake_stream):
        client = ResponsesClient(_settings())
        with pytest.raises(StreamEnded):
            async with client.stream({}) as events:
                async for event in events:
                    received.append(event)

    assert received == [Delta(item_id="msg_1", text="part")]


@pytest.mark.asyncio
async def test_read_timeout_mid_stream_raises_transport_error() -> None:
    lines = sse_lines([delta("part")]) + [httpx.ReadTimeout("simulated timeout")]

    def fake_stream(*args, **kwargs):
        return FakeStreamContext(FakeStreamResponse(lines))

    with patch("httpx.AsyncClient.stream", side_effect=fake_stream):
        client = ResponsesClient(_settings())
        with pytest.raises(TransportError) as excinfo:
            async with client.stream({}) as events:
                [event async for event in events]

    assert not isinstance(excinfo.value, StreamEnded)


@pytest.mark.asyncio
async def test_create_parses_output_items() -> None:
    payload = {
        "id": "resp_5",
        "output": [
            {"type": "reasoning", "id": "rs_1"},
            function_call_item("clock_now", "{}", "call_1"),
        ],
    }

    with patch("httpx.AsyncClient.post", return_value=FakeResponse(200, payload)):
        response = await ResponsesClient(_settings()).create({"stream": False})

    assert response.id == "resp_5"
    assert response.output[1] == FunctionCall(id="fc_call_1", call_id="call_1", name="clock_now", arguments="{}")


@pytest.mark.asyncio
async def test_create_maps_http_failures() -> None:
    with patch("httpx.AsyncClient.post", return_value=FakeResponse(500, text="boom")):
        with pytest.raises(TransportError) as excinfo:
            await ResponsesClient(_settings()).create({})
    assert excinfo.value.status_code == 500

    with patch("httpx.AsyncClient.post", side_effect=httpx.ConnectError("refused")):
        with pytest.raises(TransportError):
            await ResponsesClient(_settings()).create({})

