"""Asynchronous runtime for nodes that exchange JSON messages over stdin/stdout."""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import sys
from dataclasses import dataclass, field
from typing import Any, TextIO

log = logging.getLogger(__name__)

TIMEOUT = 0
NODE_NOT_FOUND = 1
NOT_SUPPORTED = 10
TEMPORARILY_UNAVAILABLE = 11
MALFORMED_REQUEST = 12
CRASH = 13
ABORT = 14
KEY_DOES_NOT_EXIST = 20
KEY_ALREADY_EXISTS = 21
PRECONDITION_FAILED = 22
TXN_CONFLICT = 30


class RPCError(Exception):
    """An error reply from another node or service."""

    def __init__(self, code: int, text: str = "") -> None:
        super().__init__(f"error {code}: {text}")
        self.code = code
        self.text = text

    @classmethod
    def _from_body(cls, body: dict[str, Any]) -> "RPCError":
        return cls(int(body.get("code", CRASH)), str(body.get("text", "")))


@dataclass
class Message:
    """A message envelope: source, destination and body."""

    src: str
    dest: str
    body: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> "Message":
        try:
            body = data.get("body") or {}
            return cls(str(data["src"]), str(data["dest"]), dict(body))
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"malformed message: {data!r}") from exc

    def to_dict(self) -> dict[str, Any]:
        return {"src": self.src, "dest": self.dest, "body": dict(self.body)}

    @property
    def type(self) -> str:
        return str(self.body.get("type", ""))


class Runtime:
    """Reads messages line by line, dispatches them and routes replies to callers."""

    def __init__(self, handler: Any, stdin: TextIO | None = None, stdout: TextIO | None = None) -> None:
        self._handler = handler
        self._stdin = stdin if stdin is not None else sys.stdin
        self._stdout = stdout if stdout is not None else sys.stdout
        self._node_id = ""
        self._nodes: list[str] = []
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future] = {}
        self._init_replied = False
        self._tasks: set[asyncio.Task] = set()

    @property
    def node_id(self) -> str:
        return self._node_id

    @property
    def nodes(self) -> list[str]:
        return list(self._nodes)

    @property
    def neighbours(self) -> list[str]:
        return [node for node in self._nodes if node != self._node_id]

    async def handle_line(self, line: str) -> None:
        """Process one input line: resolve a pending call or dispatch to the handler."""
        line = line.strip()
        if not line:
            return
        try:
            message = Message.from_dict(json.loads(line))
        except ValueError as exc:
            log.warning("dropping unreadable input: %s", exc)
            return

        in_reply_to = message.body.get("in_reply_to")
        if in_reply_to is not None:
            future = self._pending.pop(in_reply_to, None)
            if future is not None and not future.done():
                future.set_result(message)
            return
        await self._dispatch(message)

    async def _dispatch(self, message: Message) -> None:
        is_init = message.type == "init"
        if is_init:
            self._node_id = str(message.body.get("node_id", ""))
            self._nodes = [str(node) for node in message.body.get("node_ids", [])]
            self._init_replied = False
        try:
            await self._handler.process(self, message)
        except Exception as exc:
            log.exception("handler failed on %s", message.type)
            if "msg_id" in message.body:
                if isinstance(exc, RPCError):
                    code, text = exc.code, exc.text
                else:
                    code, text = CRASH, str(exc)
                self.reply(message, {"type": "error", "code": code, "text": text})
            return
        if is_init and not self._init_replied:
            self.reply_ok(message)

    async def run(self) -> None:
        """Serve input until end of file, then wait for in-flight handlers."""
        loop = asyncio.get_running_loop()
        while True:
            line = await loop.run_in_executor(None, self._stdin.readline)
            if not line:
                break
            task = asyncio.create_task(self.handle_line(line))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        for future in list(self._pending.values()):
            if not future.done():
                future.set_exception(RPCError(TIMEOUT, "input closed before reply"))
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def send(self, dest: str, body: dict[str, Any]) -> None:
        message = Message(self._node_id, dest, dict(body))
        self._stdout.write(json.dumps(message.to_dict()) + "\n")
        self._stdout.flush()

    def reply(self, request: Message, body: dict[str, Any]) -> None:
        out = dict(body)
        if not out.get("type"):
            out["type"] = f"{request.type}_ok"
        out["msg_id"] = next(self._ids)
        if "msg_id" in request.body:
            out["in_reply_to"] = request.body["msg_id"]
        else:
            out.pop("in_reply_to", None)
        if request.type == "init":
            self._init_replied = True
        self.send(request.src, out)

    def reply_ok(self, request: Message) -> None:
        self.reply(request, {"type": f"{request.type}_ok"})

    def not_supported(self, request: Message) -> None:
        """Answer a request this node does not handle; init is acknowledged elsewhere."""
        if request.type == "init" or "msg_id" not in request.body:
            return
        self.reply(
            request,
            {"type": "error", "code": NOT_SUPPORTED, "text": f"unsupported message type {request.type!r}"},
        )

    async def call(self, dest: str, body: dict[str, Any], timeout: float | None = None) -> Message:
        """Send a request and wait for its reply; error replies raise RPCError."""
        msg_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = future
        out = dict(body)
        out["msg_id"] = msg_id
        try:
            self.send(dest, out)
            reply = await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError as exc:
            raise RPCError(TIMEOUT, f"no reply from {dest} within {timeout}s") from exc
        finally:
            self._pending.pop(msg_id, None)
        if reply.type == "error":
            raise RPCError._from_body(reply.body)
        return reply

    def call_async(self, dest: str, body: dict[str, Any]) -> None:
        """Send a request whose reply is ignored."""
        out = dict(body)
        out["msg_id"] = next(self._ids)
        self.send(dest, out)


class LinKV:
    """Client of the linearizable key-value service."""

    SERVICE = "lin-kv"

    def __init__(self, runtime: Runtime) -> None:
        self._runtime = runtime

    async def get(self, key: str) -> Any:
        try:
            reply = await self._runtime.call(self.SERVICE, {"type": "read", "key": key})
        except RPCError as exc:
            if exc.code == KEY_DOES_NOT_EXIST:
                raise KeyError(key) from exc
            raise
        return reply.body.get("value")

    async def put(self, key: str, value: Any) -> None:
        await self._runtime.call(self.SERVICE, {"type": "write", "key": key, "value": value})