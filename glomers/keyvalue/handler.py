"""Key-value node: reads served locally, writes replicated through Raft."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from typing import Any

from glomers.keyvalue.common import Operation, has_write, parse_txn, parse_txn_ok, txn_ok_body
from glomers.keyvalue.raft import Cluster
from glomers.keyvalue.state import StateMachine
from glomers.runtime import TEMPORARILY_UNAVAILABLE, Message, RPCError, Runtime

log = logging.getLogger(__name__)

DEFAULT_META_DIR = "./DATA"


class KeyValueNode:
    """Serves ``txn`` requests and the cluster's own vote and append messages.

    Use as an async context manager so the cluster is stopped on exit.
    """

    def __init__(self, meta_dir: str | os.PathLike = DEFAULT_META_DIR) -> None:
        self._meta_dir = meta_dir
        self._state_machine = StateMachine()
        self._cluster: Cluster | None = None
        self._init_lock = asyncio.Lock()

    async def __aenter__(self) -> "KeyValueNode":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        if self._cluster is not None:
            await self._cluster.stop()
            self._cluster = None

    async def process(self, runtime: Runtime, message: Message) -> None:
        match message.type:
            case "init":
                await self._init(runtime)
                runtime.reply_ok(message)
            case "txn":
                await self._transact(runtime, message)
            case _:
                if self._cluster is not None:
                    runtime.reply(message, await self._cluster.handle_cluster(message.body))

    async def _init(self, runtime: Runtime) -> None:
        async with self._init_lock:
            if self._cluster is not None:
                return
            cluster = Cluster(runtime, self._meta_dir, self._state_machine)
            self._cluster = cluster
            try:
                await cluster.start()
            except BaseException:
                self._cluster = None
                await cluster.stop()
                raise

    async def _transact(self, runtime: Runtime, message: Message) -> None:
        ops = parse_txn(message.body)
        cluster = self._cluster
        if cluster is None:
            return
        if has_write(ops):
            is_leader, leader_id = cluster.is_leader()
            if is_leader:
                applied = await cluster.apply(ops)
            else:
                applied = await self._forward_to_leader(runtime, message, leader_id)
        else:
            applied = await self._state_machine.apply(ops)
        runtime.reply(message, txn_ok_body(applied))

    async def _forward_to_leader(self, runtime: Runtime, message: Message, leader_id: str) -> list[Operation]:
        if not leader_id:
            raise RPCError(TEMPORARILY_UNAVAILABLE, "no known leader")
        body: dict[str, Any] = {
            key: value for key, value in message.body.items() if key not in ("msg_id", "in_reply_to")
        }
        reply = await runtime.call(leader_id, body)
        return parse_txn_ok(reply.body)


async def _serve(meta_dir: str) -> None:
    async with KeyValueNode(meta_dir) as node:
        await Runtime(node).run()


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Replicated key-value node.")
    parser.add_argument("--meta-dir", default=DEFAULT_META_DIR, help="directory for durable Raft state")
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)
    asyncio.run(_serve(args.meta_dir))