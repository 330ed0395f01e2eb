"""Node that echoes every echo request back to its sender."""

from __future__ import annotations

import argparse
import asyncio
import logging

from glomers.runtime import Message, Runtime


class EchoNode:
    """Replies to ``echo`` with the same body typed ``echo_ok``."""

    async def process(self, runtime: Runtime, message: Message) -> None:
        if message.type == "echo":
            runtime.reply(message, {**message.body, "type": "echo_ok"})
        else:
            runtime.not_supported(message)


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Echo node.")
    parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)
    asyncio.run(Runtime(EchoNode()).run())