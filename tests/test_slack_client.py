from __future__ import annotations

from unittest.mock import patch

import httpx
import pytest

from ditto.config import SlackSettings
from ditto.errors import PlatformRejected, TransportError
from ditto.slack.blocks import answer_blocks, extract_answer, section
from ditto.slack.client import SlackClient
from ditto.types import MessageHandle

from fakes import FakeResponse


def _client() -> SlackClient:
    return SlackClient(SlackSettings(bot_token="xoxb-test", bot_user_id="UBOT"))


@pytest.mark.asyncio
async def test_post_message_returns_handle() -> None:
    response = FakeResponse(200, {"ok": True, "channel": "C1", "ts": "1700000000.000100"})

    with patch("httpx.AsyncClient.post", return_value=response) as post:
        handle = await _client().post_message(
            "C1",
            blocks=answer_blocks("`ChatGPT`", "hello"),
            text="hello",
            thread_ts="1.0",
            reply_broadcast=True,
        )

    assert handle == MessageHandle(channel="C1", ts="1700000000.000100")
    url = post.call_args.args[0]
    payload = post.call_args.kwargs["json"]
    assert url == "https://slack.com/api/chat.postMessage"
    assert payload["thread_ts"] == "1.0"
    assert payload["reply_broadcast"] is True
    assert post.call_args.kwargs["headers"]["Authorization"] == "Bearer xoxb-test"


@pytest.mark.asyncio
async def test_ok_false_raises_platform_rejected() -> None:
    response = FakeResponse(200, {"ok": False, "error": "msg_too_long"})

    with patch("httpx.AsyncClient.post", return_value=response):
        with pytest.raises(PlatformRejected) as excinfo:
            await _client().edit_message(MessageHandle("C1", "1.0"), text="x")

    assert excinfo.value.error == "msg_too_long"
    assert excinfo.value.method == "chat.update"


@pytest.mark.asyncio
async def test_transport_failure_raises_transport_error() -> None:
    with patch("httpx.AsyncClient.post", side_effect=httpx.ConnectTimeout("timed out")):
        with pytest.raises(TransportError):
            await _client().post_message("C1", text="x")


@pytest.mark.asyncio
async def test_get_thread_replies() -> None:
    response = FakeResponse(200, {"ok": True, "messages": [{"user": "U1", "text": "hi", "ts": "1.0"}]})

    with patch("httpx.AsyncClient.get", return_value=response) as get:
        messages = await _client().get_thread_replies("C1", "1.0")

    assert messages == [{"user": "U1", "text": "hi", "ts": "1.0"}]
    assert get.call_args.kwargs["params"] == {"channel": "C1", "ts": "1.0"}


def test_extract_answer_requires_label_block() -> None:
    assert extract_answer(answer_blocks("`ChatGPT`", "answer"), "`ChatGPT`") == "answer"
    assert extract_answer([section("answer")], "`ChatGPT`") is None
    assert extract_answer(answer_blocks("`Gemini`", "answer"), "`ChatGPT`") is None
    assert extract_answer(None, "`ChatGPT`") is None
