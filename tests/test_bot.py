from __future__ import annotations

import asyncio
from typing import Optional
from unittest.mock import patch

import pytest

from ditto.bot import DittoBot
from ditto.config import ChatSettings, DittoSettings, GeminiSettings, OpenAISettings, SlackSettings
from ditto.llm.events import parse_output
from ditto.llm.gemini import GeminiClient
from ditto.llm.responses import ResponseBody
from ditto.orchestrator import DONE_MARKER, INTERRUPTED_MARKER
from ditto.tools.catalog import ToolCatalog
from ditto.types import MessageEvent

from fakes import (
    FakePlatform,
    FakeResponsesClient,
    FakeStreamContext,
    FakeStreamResponse,
    FakeToolHost,
    completed,
    delta,
    gemini_chunk,
    message_item,
    sse_lines,
)


def _settings(gemini: Optional[GeminiSettings] = None, **openai) -> DittoSettings:
    return DittoSettings(
        slack=SlackSettings(bot_token="xoxb-test", bot_user_id="UBOT"),
        openai=OpenAISettings(api_key="test-key", **openai),
        chat=ChatSettings(),
        gemini=gemini,
    )


def _trigger(text: str = "<@UBOT> gpt0.2 tell me a joke") -> MessageEvent:
    return MessageEvent.from_slack(
        {
            "type": "event_callback",
            "event": {
                "type": "message",
                "channel": "C1",
                "user": "U1",
                "text": text,
                "ts": "2.0",
                "thread_ts": "1.0",
            },
        }
    )


@pytest.mark.asyncio
async def test_end_to_end_streamed_answer() -> None:
    platform = FakePlatform(
        [
            {"user": "U1", "text": "hi", "ts": "1.0"},
            {"user": "U1", "text": "<@UBOT> gpt0.2 tell me a joke", "ts": "2.0", "thread_ts": "1.0"},
        ]
    )
    chunks = ["Why did the chicken", " cross the road?", " To get", " to the other side."]
    client = FakeResponsesClient(
        [[delta(c) for c in chunks] + [completed("resp_1", [message_item("".join(chunks))])]]
    )
    clock = FakeToolHost("clock", {"now": "12:00"})
    bot = DittoBot(_settings(), platform, client, ToolCatalog([clock]))

    task = bot.handle_user_turn(_trigger())
    assert task is not None
    await task

    body = client.bodies[0]
    assert body["input"] == [
        {"role": "user", "content": "hi"},
        {"role": "user", "content": "tell me a joke"},
    ]
    assert body["temperature"] == 0.2
    assert len(platform.posts) == 1
    assert platform.posts[0]["thread_ts"] == "1.0"
    assert platform.edits
    assert platform.edits[-1]["text"].endswith(DONE_MARKER)
    assert clock.calls == []
    assert bot.in_flight == 0


@pytest.mark.asyncio
async def test_ignores_bot_messages_and_other_commands() -> None:
    platform = FakePlatform()
    client = FakeResponsesClient()
    bot = DittoBot(_settings(), platform, client, ToolCatalog([]))

    own = MessageEvent(channel="C1", ts="3.0", user="UBOT", text="<@UBOT> gpt hi")
    integration = MessageEvent(channel="C1", ts="3.1", bot_id="B1", text="<@UBOT> gpt hi")

    assert bot.handle_user_turn(own) is None
    assert bot.handle_user_turn(integration) is None
    assert bot.handle_user_turn(_trigger("just talking")) is None
    assert bot.handle_user_turn(_trigger("<@UBOT> gemini hi")) is None
    assert bot.handle_user_turn(_trigger("<@UOTHER> gpt hi")) is None
    assert client.bodies == []


@pytest.mark.asyncio
async def test_top_level_message_threads_under_itself() -> None:
    platform = FakePlatform()
    client = FakeResponsesClient([[delta("Hi."), completed()]])
    bot = DittoBot(_settings(), platform, client, ToolCatalog([]))
    event = MessageEvent(channel="C1", ts="5.0", user="U1", text="<@UBOT> gpt hello")

    await bot.handle_user_turn(event)

    assert platform.reply_fetches == [("C1", "5.0")]
    assert platform.posts[0]["thread_ts"] == "5.0"
    assert client.bodies[0]["input"] == [{"role": "user", "content": "hello"}]


@pytest.mark.asyncio
async def test_unexpected_errors_are_logged_not_raised(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level("ERROR")
    platform = FakePlatform(post_error=ValueError("unexpected"))
    client = FakeResponsesClient([[delta("Hi."), completed()]])
    bot = DittoBot(_settings(), platform, client, ToolCatalog([]))

    task = bot.handle_user_turn(_trigger())
    await task

    assert task.exception() is None
    assert "Conversation turn failed" in caplog.text


@pytest.mark.asyncio
async def test_non_streaming_mode_from_settings() -> None:
    platform = FakePlatform()
    client = FakeResponsesClient(
        responses=[ResponseBody(id="resp_1", output=parse_output([message_item("A joke.")]))]
    )
    bot = DittoBot(_settings(stream=False), platform, client, ToolCatalog([]))

    await bot.handle_user_turn(_trigger())

    assert client.bodies[0]["stream"] is False
    assert platform.posts[0]["text"] == "A joke."
    assert platform.edits == []


@pytest.mark.asyncio
async def test_shutdown_lets_turns_flush_a_final_message() -> None:
    gate = asyncio.Event()
    platform = FakePlatform()
    client = FakeResponsesClient([[delta("Thinking"), gate, delta(" more"), completed()]])
    bot = DittoBot(_settings(), platform, client, ToolCatalog([]))

    task = bot.handle_user_turn(_trigger())
    while not platform.posts:
        await asyncio.sleep(0)

    shutdown = asyncio.create_task(bot.shutdown(grace_seconds=5.0))
    await asyncio.sleep(0)
    gate.set()
    await shutdown

    assert task.done() and not task.cancelled()
    assert platform.visible_texts[-1] == "Thinking more" + INTERRUPTED_MARKER
    assert bot.handle_user_turn(_trigger()) is None


@pytest.mark.asyncio
async def test_shutdown_cancels_turns_past_grace() -> None:
    gate = asyncio.Event()
    platform = FakePlatform()
    client = FakeResponsesClient([[delta("Stuck"), gate, completed()]])
    bot = DittoBot(_settings(), platform, client, ToolCatalog([]))

    task = bot.handle_user_turn(_trigger())
    while not platform.posts:
        await asyncio.sleep(0)

    await bot.shutdown(grace_seconds=0.05)

    assert task.cancelled()
    assert platform.visible_texts[-1] == "Stuck" + INTERRUPTED_MARKER
    assert len(platform.posts) == 1


@pytest.mark.asyncio
async def test_gemini_command_uses_its_own_provider_and_label() -> None:
    platform = FakePlatform(
        [
            {"user": "U1", "text": "<@UBOT> gemini0.4 name a colour", "ts": "1.0"},
            {
                "bot_id": "B1",
                "text": "Blue",
                "ts": "1.5",
                "blocks": [
                    {"type": "section", "text": {"type": "mrkdwn", "text": "`Gemini`"}},
                    {"type": "section", "text": {"type": "mrkdwn", "text": "Blue"}},
                ],
            },
            {
                "bot_id": "B1",
                "text": "Red",
                "ts": "1.6",
                "blocks": [
                    {"type": "section", "text": {"type": "mrkdwn", "text": "`ChatGPT`"}},
                    {"type": "section", "text": {"type": "mrkdwn", "text": "Red"}},
                ],
            },
            {"user": "U1", "text": "<@UBOT> gemini0.4 another", "ts": "2.0", "thread_ts": "1.0"},
        ]
    )
    openai = FakeResponsesClient()
    gemini_settings = GeminiSettings(api_key="gem-key")
    bot = DittoBot(
        _settings(gemini=gemini_settings),
        platform,
        openai,
        ToolCatalog([]),
        gemini=GeminiClient(gemini_settings),
    )
    captured: dict = {}

    def fake_stream(*args, **kwargs):
        captured["url"] = args[-1]
        captured.update(kwargs)
        lines = sse_lines([gemini_chunk("Green."), gemini_chunk("", finish="STOP")])
        return FakeStreamContext(FakeStreamResponse(lines))

    with patch("httpx.AsyncClient.stream", side_effect=fake_stream):
        await bot.handle_user_turn(_trigger("<@UBOT> gemini0.4 another"))

    assert openai.bodies == []
    assert captured["url"].endswith("/models/gemini-2.0-flash:streamGenerateContent")
    assert captured["json"]["contents"] == [
        {"role": "user", "parts": [{"text": "name a colour"}]},
        {"role": "model", "parts": [{"text": "Blue"}]},
        {"role": "user", "parts": [{"text": "another"}]},
    ]
    assert captured["json"]["generationConfig"] == {"temperature": 0.4}
    assert platform.posts[0]["blocks"][0]["text"]["text"] == "`Gemini`"
    assert platform.visible_texts[-1] == "Green." + DONE_MARKER


@pytest.mark.asyncio
async def test_gemini_command_ignored_when_not_configured() -> None:
    bot = DittoBot(_settings(), FakePlatform(), FakeResponsesClient(), ToolCatalog([]))

    assert bot.commands == ["gpt"]
    assert bot.handle_user_turn(_trigger("<@UBOT> gemini hi")) is None
