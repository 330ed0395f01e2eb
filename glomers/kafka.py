"""Replicated log node: keyed append-only logs with committed offsets, kept in lin-kv."""

from __future__ import annotations

import argparse
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Protocol

from glomers.runtime import LinKV, Message, RPCError, Runtime

log = logging.getLogger(__name__)

_MASK64 = 0xFFFFFFFFFFFFFFFF


class Store(Protocol):
    async def get(self, key: str) -> Any: ...

    async def put(self, key: str, value: Any) -> None: ...


@dataclass(frozen=True)
class LogEntry:
    """One message of a log: its offset and value."""

    offset: int
    value: int

    def __str__(self) -> str:
        return f"o={self.offset}_v={self.value}"

    @classmethod
    def from_str(cls, text: str) -> "LogEntry":
        parts = text.split("_")
        if len(parts) < 2:
            raise ValueError(f"invalid log entry: {text!r}")
        try:
            offset = int(parts[0].replace("o=", ""))
        except ValueError as exc:
            raise ValueError(f"invalid offset in {text!r}") from exc
        if offset < 0:
            raise ValueError(f"invalid offset in {text!r}")
        try:
            value = int(parts[1].replace("v=", ""))
        except ValueError as exc:
            raise ValueError(f"invalid value in {text!r}") from exc
        return cls(offset, value)

    def as_pair(self) -> list[int]:
        return [self.offset, self.value]


def parse_entries(text: str) -> list[LogEntry]:
    """Decode a comma-separated list of entries; the empty string is an empty log."""
    if not text:
        return []
    return [LogEntry.from_str(part) for part in text.split(",")]


def format_entries(entries: Iterable[LogEntry]) -> str:
    return ",".join(str(entry) for entry in entries)


def entry_key(key: str) -> str:
    return f"entry_{key}"


def offset_key(key: str) -> str:
    return f"latestoffset_{key}"


def commit_key(key: str) -> str:
    return f"committed_{key}"


def _rotl(x: int, b: int) -> int:
    return ((x << b) | (x >> (64 - b))) & _MASK64


def _siphash13(data: bytes) -> int:
    """SipHash-1-3 with a zero key."""
    v0 = 0x736F6D6570736575
    v1 = 0x646F72616E646F6D
    v2 = 0x6C7967656E657261
    v3 = 0x7465646279746573

    def rounds(n: int) -> None:
        nonlocal v0, v1, v2, v3
        for _ in range(n):
            v0 = (v0 + v1) & _MASK64
            v1 = _rotl(v1, 13) ^ v0
            v0 = _rotl(v0, 32)
            v2 = (v2 + v3) & _MASK64
            v3 = _rotl(v3, 16) ^ v2
            v0 = (v0 + v3) & _MASK64
            v3 = _rotl(v3, 21) ^ v0
            v2 = (v2 + v1) & _MASK64
            v1 = _rotl(v1, 17) ^ v2
            v2 = _rotl(v2, 32)

    full = len(data) - len(data) % 8
    for start in range(0, full, 8):
        m = int.from_bytes(data[start:start + 8], "little")
        v3 ^= m
        rounds(1)
        v0 ^= m
    last = int.from_bytes(data[full:], "little") | ((len(data) & 0xFF) << 56)
    v3 ^= last
    rounds(1)
    v0 ^= last
    v2 ^= 0xFF
    rounds(3)
    return v0 ^ v1 ^ v2 ^ v3


def route_key(node_ids: list[str], key: str) -> str:
    """The node that owns a key's log, chosen by hashing the key."""
    if not node_ids:
        raise ValueError("no nodes to route to")
    digest = _siphash13(key.encode() + b"\xff")
    return node_ids[digest % len(node_ids)]


class Kafka:
    """Log operations on top of a key-value store."""

    def __init__(self, store: Store) -> None:
        self._store = store
        self._lock = asyncio.Lock()

    async def _get(self, key: str, default: Any) -> Any:
        try:
            return await self._store.get(key)
        except (KeyError, RPCError):
            return default

    async def send_local(self, key: str, value: int) -> int:
        """Append a value to the key's log and return its offset."""
        async with self._lock:
            latest = await self._get(offset_key(key), None)
            offset = 0 if latest is None else int(latest) + 1
            await self._store.put(offset_key(key), offset)
            log.info("put log key=%s value=%s offset=%s", key, value, offset)
            entries = parse_entries(await self._get(entry_key(key), ""))
            entries.append(LogEntry(offset, value))
            await self._store.put(entry_key(key), format_entries(entries))
            return offset

    async def poll(self, offsets: dict[str, int]) -> dict[str, list[list[int]]]:
        """Entries at or after each requested offset, per key."""
        async with self._lock:
            log.info("polling offsets=%s", offsets)
            msgs: dict[str, list[list[int]]] = {}
            for key, start in offsets.items():
                entries = parse_entries(await self._get(entry_key(key), ""))
                msgs[key] = [entry.as_pair() for entry in entries if entry.offset >= start]
            return msgs

    async def commit(self, offsets: dict[str, int]) -> None:
        """Record committed offsets, never moving one backwards."""
        async with self._lock:
            log.info("commit offsets=%s", offsets)
            for key, offset in offsets.items():
                committed = await self._get(commit_key(key), offset)
                if committed > offset:
                    log.info("key=%s offset=%s outdated, current=%s; skipping", key, offset, committed)
                    continue
                await self._store.put(commit_key(key), offset)

    async def list_offsets(self, keys: list[str]) -> dict[str, int]:
        """Committed offset for each key, 0 where none was committed."""
        async with self._lock:
            result = {key: await self._get(commit_key(key), 0) for key in keys}
            log.info("list offsets keys=%s offsets=%s", keys, result)
            return result


def _int_field(body: dict[str, Any], name: str) -> int:
    value = body[name]
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError(f"'{name}' is not an integer")
    return value


def _str_field(body: dict[str, Any], name: str) -> str:
    value = body[name]
    if not isinstance(value, str):
        raise ValueError(f"'{name}' is not a string")
    return value


def _offsets_field(body: dict[str, Any]) -> dict[str, int]:
    offsets = body["offsets"]
    if not isinstance(offsets, dict):
        raise ValueError("'offsets' is not a map")
    return {str(key): _int_field(offsets, key) for key in offsets}


def _keys_field(body: dict[str, Any]) -> list[str]:
    keys = body["keys"]
    if not isinstance(keys, list) or not all(isinstance(key, str) for key in keys):
        raise ValueError("'keys' is not a list of strings")
    return list(keys)


class KafkaNode:
    """Serves send, poll, commit_offsets and list_committed_offsets."""

    def __init__(self, store: Store | None = None) -> None:
        self._store = store
        self._kafka: Kafka | None = None

    def _backend(self, runtime: Runtime) -> Kafka:
        if self._kafka is None:
            self._kafka = Kafka(self._store if self._store is not None else LinKV(runtime))
        return self._kafka

    async def process(self, runtime: Runtime, message: Message) -> None:
        body = message.body
        match message.type:
            case "send":
                key = _str_field(body, "key")
                value = _int_field(body, "msg")
                target = route_key(sorted(runtime.nodes), key)
                if target == runtime.node_id:
                    offset = await self._backend(runtime).send_local(key, value)
                else:
                    offset = await self._forward(runtime, target, key, value)
                runtime.reply(message, {"type": "send_ok", "offset": offset})
            case "poll":
                msgs = await self._backend(runtime).poll(_offsets_field(body))
                runtime.reply(message, {"type": "poll_ok", "msgs": msgs})
            case "commit_offsets":
                await self._backend(runtime).commit(_offsets_field(body))
                runtime.reply(message, {"type": "commit_offsets_ok"})
            case "list_committed_offsets":
                offsets = await self._backend(runtime).list_offsets(_keys_field(body))
                runtime.reply(message, {"type": "list_committed_offsets_ok", "offsets": offsets})
            case _:
                runtime.not_supported(message)

    async def _forward(self, runtime: Runtime, target: str, key: str, value: int) -> int:
        log.info("forwarding send to %s for key=%s value=%s", target, key, value)
        reply = await runtime.call(target, {"type": "send", "key": key, "msg": value})
        if reply.type != "send_ok":
            raise ValueError(f"unexpected reply {reply.type!r} to forwarded send")
        return _int_field(reply.body, "offset")


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Replicated log node.")
    parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)
    asyncio.run(Runtime(KafkaNode()).run())