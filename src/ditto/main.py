from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys

from ditto.bot import DittoBot, build_bot
from ditto.config import load_settings
from ditto.types import MessageEvent

LOGGER = logging.getLogger(__name__)


async def _dispatch_lines(bot: DittoBot, reader: asyncio.StreamReader) -> None:
    while True:
        line = await reader.readline()
        if not line:
            return
        if not line.strip():
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError as exc:
            LOGGER.warning("Skipping malformed event line: %s", exc)
            continue
        if isinstance(payload, dict):
            bot.handle_user_turn(MessageEvent.from_slack(payload))


async def relay_stdin(config_path: str, grace_seconds: float) -> None:
    """Dispatch newline-delimited Slack message events read from stdin."""
    settings = load_settings(config_path)
    bot = build_bot(settings)
    LOGGER.info("Listening for commands %s", ", ".join(bot.commands))

    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)

    dispatcher = asyncio.create_task(_dispatch_lines(bot, reader), name="ditto-stdin")
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, dispatcher.cancel)
        except NotImplementedError:
            pass

    try:
        await dispatcher
        await bot.drain()
    except asyncio.CancelledError:
        LOGGER.info("Stop requested, finishing in-flight turns")
    finally:
        with contextlib.suppress(asyncio.CancelledError):
            await bot.shutdown(grace_seconds)


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    parser = argparse.ArgumentParser(description="Relay Slack message events from stdin to ditto")
    parser.add_argument("--config", default="config/example.yaml")
    parser.add_argument("--grace-seconds", type=float, default=10.0)
    args = parser.parse_args()
    asyncio.run(relay_stdin(args.config, args.grace_seconds))


if __name__ == "__main__":
    main()
