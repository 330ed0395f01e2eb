import asyncio
import io
import json

import pytest

from glomers.runtime import (
    CRASH,
    KEY_DOES_NOT_EXIST,
    NOT_SUPPORTED,
    TIMEOUT,
    LinKV,
    Message,
    RPCError,
    Runtime,
)


class Recorder:
    def __init__(self):
        self.seen = []

    async def process(self, runtime, message):
        self.seen.append(message)
        if message.type == "hello":
            runtime.reply(message, {})
        elif message.type == "boom":
            raise ValueError("boom happened")
        else:
            runtime.not_supported(message)


def make_runtime(stdin_text=""):
    out = io.StringIO()
    handler = Recorder()
    return Runtime(handler, stdin=io.StringIO(stdin_text), stdout=out), handler, out


def sent(out):
    return [json.loads(line) for line in out.getvalue().splitlines()]


def encode(src, dest, body):
    return json.dumps({"src": src, "dest": dest, "body": body})


INIT = encode("c1", "n1", {"type": "init", "msg_id": 1, "node_id": "n1", "node_ids": ["n1", "n2", "n3"]})


@pytest.mark.asyncio
async def test_init_sets_membership_and_replies():
    rt, handler, out = make_runtime()
    await rt.handle_line(INIT)
    assert rt.node_id == "n1"
    assert rt.nodes == ["n1", "n2", "n3"]
    assert rt.neighbours == ["n2", "n3"]
    reply = sent(out)[-1]
    assert reply["dest"] == "c1"
    assert reply["src"] == "n1"
    assert reply["body"]["type"] == "init_ok"
    assert reply["body"]["in_reply_to"] == 1


@pytest.mark.asyncio
async def test_reply_defaults_type_and_links_request():
    rt, handler, out = make_runtime()
    await rt.handle_line(INIT)
    await rt.handle_line(encode("c2", "n1", {"type": "hello", "msg_id": 42}))
    reply = sent(out)[-1]
    assert reply["body"]["type"] == "hello_ok"
    assert reply["body"]["in_reply_to"] == 42
    assert reply["dest"] == "c2"


@pytest.mark.asyncio
async def test_reply_message_ids_are_unique():
    rt, handler, out = make_runtime()
    await rt.handle_line(INIT)
    for i in range(5):
        await rt.handle_line(encode("c2", "n1", {"type": "hello", "msg_id": 100 + i}))
    ids = [m["body"]["msg_id"] for m in sent(out)]
    assert len(ids) == len(set(ids))


@pytest.mark.asyncio
async def test_unknown_type_gets_not_supported():
    rt, handler, out = make_runtime()
    await rt.handle_line(INIT)
    await rt.handle_line(encode("c2", "n1", {"type": "mystery", "msg_id": 7}))
    reply = sent(out)[-1]
    assert reply["body"]["type"] == "error"
    assert reply["body"]["code"] == NOT_SUPPORTED
    assert reply["body"]["in_reply_to"] == 7


@pytest.mark.asyncio
async def test_handler_exception_becomes_crash_error():
    rt, handler, out = make_runtime()
    await rt.handle_line(INIT)
    await rt.handle_line(encode("c2", "n1", {"type": "boom", "msg_id": 9}))
    body = sent(out)[-1]["body"]
    assert body["code"] == CRASH
    assert "boom happened" in body["text"]


@pytest.mark.asyncio
async def test_unreadable_input_is_dropped():
    rt, handler, out = make_runtime()
    await rt.handle_line("not json at all")
    await rt.handle_line("[1, 2, 3]")
    assert handler.seen == []
    assert out.getvalue() == ""


@pytest.mark.asyncio
async def test_call_resolves_with_reply():
    rt, handler, out = make_runtime()
    await rt.handle_line(INIT)
    task = asyncio.create_task(rt.call("n2", {"type": "ping"}))
    await asyncio.sleep(0)
    request = sent(out)[-1]
    assert request["dest"] == "n2"
    msg_id = request["body"]["msg_id"]
    await rt.handle_line(encode("n2", "n1", {"type": "pong", "in_reply_to": msg_id, "value": 5}))
    reply = await task
    assert reply.body["value"] == 5
    assert reply.src == "n2"
    assert handler.seen[-1].type == "init"


@pytest.mark.asyncio
async def test_call_raises_on_error_reply():
    rt, handler, out = make_runtime()
    await rt.handle_line(INIT)
    task = asyncio.create_task(rt.call("n2", {"type": "ping"}))
    await asyncio.sleep(0)
    request = sent(out)[-1]
    assert request["dest"] == "n2"
    assert request["body"]["type"] == "ping"
    msg_id = request["body"]["msg_id"]
    await rt.handle_line(
        encode("n2", "n1", {"type": "error", "in_reply_to": msg_id, "code": 14, "text": "nope"})
    )
    (error,) = await asyncio.gather(task, return_exceptions=True)
    assert isinstance(error, RPCError)
    assert error.code == 14
    assert error.text == "nope"


@pytest.mark.asyncio
async def test_call_timeout_and_late_reply_dropped():
    rt, handler, out = make_runtime()
    await rt.handle_line(INIT)
    with pytest.raises(RPCError) as info:
        await rt.call("n2", {"type": "ping"}, timeout=0.01)
    assert info.value.code == TIMEOUT
    msg_id = sent(out)[-1]["body"]["msg_id"]
    seen_before = len(handler.seen)
    await rt.handle_line(encode("n2", "n1", {"type": "pong", "in_reply_to": msg_id}))
    assert len(handler.seen) == seen_before


@pytest.mark.asyncio
async def test_call_async_reply_is_ignored():
    rt, handler, out = make_runtime()
    await rt.handle_line(INIT)
    rt.call_async("n3", {"type": "note"})
    msg_id = sent(out)[-1]["body"]["msg_id"]
    await rt.handle_line(encode("n3", "n1", {"type": "note_ok", "in_reply_to": msg_id}))
    assert [m.type for m in handler.seen] == ["init"]


@pytest.mark.asyncio
async def test_run_reads_until_eof():
    text = INIT + "\n" + encode("c2", "n1", {"type": "hello", "msg_id": 2}) + "\n"
    rt, handler, out = make_runtime(text)
    await rt.run()
    replies = sent(out)
    assert sorted(r["body"]["in_reply_to"] for r in replies) == [1, 2]
    assert rt.node_id == "n1"


def test_message_round_trip():
    data = {"src": "a", "dest": "b", "body": {"type": "x", "msg_id": 3}}
    message = Message.from_dict(data)
    assert message.type == "x"
    assert message.to_dict() == data
    assert Message.from_dict(message.to_dict()) == message


def test_message_from_dict_rejects_malformed():
    with pytest.raises(ValueError):
        Message.from_dict({"dest": "b"})
    with pytest.raises(ValueError):
        Message.from_dict("text")


@pytest.mark.asyncio
async def test_linkv_get_returns_value():
    rt, handler, out = make_runtime()
    await rt.handle_line(INIT)
    kv = LinKV(rt)
    task = asyncio.create_task(kv.get("k"))
    await asyncio.sleep(0)
    request = sent(out)[-1]
    assert request["dest"] == LinKV.SERVICE
    assert request["body"]["key"] == "k"
    await rt.handle_line(
        encode(LinKV.SERVICE, "n1", {"type": "read_ok", "in_reply_to": request["body"]["msg_id"], "value": 11})
    )
    assert await task == 11


@pytest.mark.asyncio
async def test_linkv_missing_key_raises_keyerror():
    rt, handler, out = make_runtime()
    await rt.handle_line(INIT)
    kv = LinKV(rt)
    task = asyncio.create_task(kv.get("absent"))
    await asyncio.sleep(0)
    request = sent(out)[-1]
    assert request["dest"] == LinKV.SERVICE
    assert request["body"]["key"] == "absent"
    msg_id = request["body"]["msg_id"]
    await rt.handle_line(
        encode(LinKV.SERVICE, "n1", {"type": "error", "in_reply_to": msg_id, "code": KEY_DOES_NOT_EXIST})
    )
    (error,) = await asyncio.gather(task, return_exceptions=True)
    assert isinstance(error, KeyError)


@pytest.mark.asyncio
async def test_linkv_put_sends_key_and_value():
    rt, handler, out = make_runtime()
    await rt.handle_line(INIT)
    kv = LinKV(rt)
    task = asyncio.create_task(kv.put("k", [1, 2]))
    await asyncio.sleep(0)
    request = sent(out)[-1]
    assert request["body"]["key"] == "k"
    assert request["body"]["value"] == [1, 2]
    await rt.handle_line(
        encode(LinKV.SERVICE, "n1", {"type": "write_ok", "in_reply_to": request["body"]["msg_id"]})
    )
    assert await task is None