"""Grow-only counter node replicated by push and gossip."""

from __future__ import annotations

import argparse
import asyncio
import logging
import random

from glomers.runtime import Message, Runtime

log = logging.getLogger(__name__)


class Counter:
    """Per-node counts whose sum is the counter value."""

    def __init__(self) -> None:
        self._counts: dict[str, int] = {}

    def add(self, node_id: str, delta: int) -> None:
        self._counts[node_id] = self._counts.get(node_id, 0) + delta

    def replace_state(self, node_id: str, state: int) -> None:
        self._counts[node_id] = max(self._counts.get(node_id, 0), state)

    def read(self) -> int:
        return sum(self._counts.values())

    def local_state(self, node_id: str) -> int:
        return self._counts.get(node_id, 0)


def _int_field(message: Message, name: str) -> int:
    value = message.body[name]
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError(f"'{name}' is not an integer")
    return value


class CounterNode:
    """Handles add, read, replicate and full-state messages."""

    def __init__(self, gossip_period: float = 1.0) -> None:
        self.counter = Counter()
        self._period = gossip_period
        self._gossip_task: asyncio.Task | None = None

    async def process(self, runtime: Runtime, message: Message) -> None:
        match message.type:
            case "add":
                delta = _int_field(message, "delta")
                log.info("add delta=%s", delta)
                self.counter.add(runtime.node_id, delta)
                for neighbour in runtime.neighbours:
                    runtime.call_async(neighbour, {"type": "replicate", "delta": delta})
                runtime.reply_ok(message)
            case "read":
                runtime.reply(message, {"value": self.counter.read()})
            case "full":
                self.counter.replace_state(message.src, _int_field(message, "state"))
                runtime.reply_ok(message)
            case "replicate":
                self.counter.add(message.src, _int_field(message, "delta"))
                runtime.reply_ok(message)
            case "init":
                if self._gossip_task is None:
                    self._gossip_task = asyncio.create_task(self._gossip_loop(runtime))
                runtime.reply_ok(message)
            case _:
                runtime.not_supported(message)

    async def _gossip_loop(self, runtime: Runtime) -> None:
        while True:
            self.gossip(runtime)
            await asyncio.sleep(self._period)

    def gossip(self, runtime: Runtime) -> str | None:
        """Send this node's own count to a random neighbour; return its id."""
        neighbours = runtime.neighbours
        if not neighbours:
            return None
        partner = random.choice(neighbours)
        runtime.call_async(partner, {"type": "full", "state": self.counter.local_state(runtime.node_id)})
        return partner


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Grow-only counter node.")
    parser.add_argument("--gossip-period", type=float, default=1.0, help="seconds between gossip rounds")
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)
    asyncio.run(Runtime(CounterNode(args.gossip_period)).run())