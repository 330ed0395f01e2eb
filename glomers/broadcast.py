"""Broadcast node: stores values, forwards them along the topology and gossips state."""

from __future__ import annotations

import argparse
import asyncio
import logging
import random
from typing import Any

from glomers.runtime import Message, Runtime

log = logging.getLogger(__name__)


class BroadcastNode:
    """Keeps the set of seen values and spreads it to other nodes."""

    def __init__(self, gossip_interval: float = 0.1) -> None:
        self._interval = gossip_interval
        self._topology: dict[str, list[str]] = {}
        self._values: set[Any] = set()
        self._gossip_task: asyncio.Task | None = None

    async def process(self, runtime: Runtime, message: Message) -> None:
        match message.type:
            case "broadcast":
                self._broadcast(runtime, message)
            case "read":
                runtime.reply(message, {"type": "read_ok", "messages": sorted(self._values)})
            case "topology":
                self._update_topology(message.body.get("topology"))
                log.info("broadcast topology: %s", self._topology)
                runtime.reply_ok(message)
            case "gossip":
                state = message.body["state"]
                if not isinstance(state, list):
                    raise ValueError("gossip state must be a list")
                self._values.update(state)
                runtime.reply_ok(message)
            case "init":
                self._start_gossip(runtime)
            case _:
                runtime.not_supported(message)

    def _broadcast(self, runtime: Runtime, message: Message) -> None:
        value = message.body["message"]
        if value not in self._values:
            self._values.add(value)
            for dest in self._topology.get(runtime.node_id, []):
                runtime.call_async(dest, {"type": "broadcast", "message": value})
                log.info("forwarded message=%s to %s", value, dest)
        runtime.reply_ok(message)

    def _update_topology(self, topology: Any) -> None:
        if not isinstance(topology, dict):
            return
        for node_id, neighbours in topology.items():
            if isinstance(neighbours, list):
                self._topology[node_id] = [n for n in neighbours if isinstance(n, str)]

    def _start_gossip(self, runtime: Runtime) -> None:
        if not runtime.neighbours:
            log.info("no neighbours, gossip disabled")
            return
        if self._gossip_task is None:
            self._gossip_task = asyncio.create_task(self._gossip_loop(runtime))

    async def _gossip_loop(self, runtime: Runtime) -> None:
        while True:
            self.gossip(runtime)
            await asyncio.sleep(self._interval)

    def gossip(self, runtime: Runtime) -> str | None:
        """Send the full value set to one random neighbour; return its id."""
        neighbours = runtime.neighbours
        if not neighbours:
            return None
        dest = random.choice(neighbours)
        runtime.call_async(dest, {"type": "gossip", "state": sorted(self._values)})
        return dest


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Broadcast node.")
    parser.add_argument("--gossip-interval", type=float, default=0.1, help="seconds between gossip rounds")
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)
    asyncio.run(Runtime(BroadcastNode(args.gossip_interval)).run())