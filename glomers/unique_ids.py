"""Node that generates cluster-wide unique identifiers."""

from __future__ import annotations

import argparse
import asyncio
import itertools
import logging
import threading
import time
import zlib

from glomers.runtime import Message, Runtime

_TIMESTAMP_MASK = 0x1FFFFFFFFFF  # 41 bits of milliseconds
_COUNTER_MASK = 0x7FF800
_U32_MASK = 0xFFFFFFFF


def hash_10_bits(node_id: str) -> int:
    """The low 10 bits of the CRC-32 of a node id."""
    return zlib.crc32(node_id.encode()) & 0x3FF


class Guid:
    """Builds ids from a millisecond timestamp, a counter and the node hash."""

    def __init__(self, node_id: str) -> None:
        self.hashed_id = hash_10_bits(node_id)
        self._counter = itertools.count()
        self._lock = threading.Lock()

    def next(self) -> str:
        timestamp = (time.time_ns() // 1_000_000) & _TIMESTAMP_MASK
        with self._lock:
            counter = next(self._counter) & _U32_MASK
        short_counter = counter & _COUNTER_MASK
        value = (timestamp << 23) | (short_counter << 11) | (self.hashed_id << 1)
        return str(value)


class UniqueIdNode:
    """Answers ``generate`` requests with a fresh id."""

    def __init__(self) -> None:
        self._guid: Guid | None = None

    async def process(self, runtime: Runtime, message: Message) -> None:
        if message.type != "generate":
            runtime.not_supported(message)
            return
        if self._guid is None:
            self._guid = Guid(runtime.node_id)
        runtime.reply(message, {**message.body, "type": "generate_ok", "id": self._guid.next()})


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Unique id generator node.")
    parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)
    asyncio.run(Runtime(UniqueIdNode()).run())