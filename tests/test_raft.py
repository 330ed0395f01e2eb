import asyncio

import pytest

from glomers.keyvalue.common import Read, Write
from glomers.keyvalue.persistence import Persistence
from glomers.keyvalue.raft import Cluster
from glomers.runtime import CRASH, NODE_NOT_FOUND, TIMEOUT, Message, RPCError


class Router:
    def __init__(self):
        self.clusters = {}


class FakeRuntime:
    def __init__(self, node_id, nodes, router=None):
        self.node_id = node_id
        self.nodes = list(nodes)
        self._router = router

    async def call(self, dest, body, timeout=None):
        if self._router is None or dest not in self._router.clusters:
            raise RPCError(NODE_NOT_FOUND, f"unknown node {dest}")
        target = self._router.clusters[dest]
        try:
            reply = await asyncio.wait_for(target.handle_cluster(dict(body)), timeout)
        except asyncio.TimeoutError as exc:
            raise RPCError(TIMEOUT, "timeout") from exc
        except Exception as exc:
            raise RPCError(CRASH, str(exc)) from exc
        return Message(dest, self.node_id, reply)


class RecordingStateMachine:
    def __init__(self):
        self.applied = []

    async def apply(self, ops):
        self.applied.append(list(ops))
        return list(ops)


async def wait_until(predicate, timeout=10.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            return False
        await asyncio.sleep(0.01)
    return True


def single_node(tmp_path, sm=None):
    cluster = Cluster(FakeRuntime("n1", ["n1"]), tmp_path / "data", sm or RecordingStateMachine())
    cluster.heartbeat_interval = 0.01
    return cluster


@pytest.mark.asyncio
async def test_single_node_becomes_leader(tmp_path):
    cluster = single_node(tmp_path)
    try:
        await asyncio.wait_for(cluster.start(), 5)
        assert cluster.is_leader() == (True, "n1")
    finally:
        await cluster.stop()


@pytest.mark.asyncio
async def test_apply_on_non_leader_raises(tmp_path):
    cluster = single_node(tmp_path)
    with pytest.raises(RuntimeError, match="node is not leader"):
        await cluster.apply([Write(1, 2)])
    assert cluster.is_leader() == (False, "")


@pytest.mark.asyncio
async def test_apply_returns_operations_and_updates_state_machine(tmp_path):
    sm = RecordingStateMachine()
    cluster = single_node(tmp_path, sm)
    ops = [Write(1, 100), Read(1)]
    try:
        await asyncio.wait_for(cluster.start(), 5)
        result = await asyncio.wait_for(cluster.apply(ops), 5)
        assert result == ops
        assert sm.applied == [ops]
    finally:
        await cluster.stop()


@pytest.mark.asyncio
async def test_apply_failure_propagates(tmp_path):
    class FailingStateMachine:
        async def apply(self, ops):
            raise ValueError("boom")

    cluster = single_node(tmp_path, FailingStateMachine())
    try:
        await asyncio.wait_for(cluster.start(), 5)
        with pytest.raises(ValueError, match="boom"):
            await asyncio.wait_for(cluster.apply([Write(3, 4)]), 5)
    finally:
        await cluster.stop()


@pytest.mark.asyncio
async def test_restart_restores_log_and_reapplies(tmp_path):
    ops = [Write(7, 70)]
    first = single_node(tmp_path)
    try:
        await asyncio.wait_for(first.start(), 5)
        assert await asyncio.wait_for(first.apply(ops), 5) == ops
    finally:
        await first.stop()

    with Persistence.restore(tmp_path / "data") as restored:
        assert any(entry.operations == ops for entry in restored.log)
        assert restored.current_term >= 1

    sm = RecordingStateMachine()
    second = single_node(tmp_path, sm)
    try:
        await asyncio.wait_for(second.start(), 5)
        assert await wait_until(lambda: ops in sm.applied)
        assert second.is_leader() == (True, "n1")
    finally:
        await second.stop()


@pytest.mark.asyncio
async def test_unknown_request_type_raises(tmp_path):
    cluster = single_node(tmp_path)
    with pytest.raises(ValueError, match="Unknown cluster request type"):
        await cluster.handle_cluster({"type": "bogus"})


@pytest.mark.asyncio
async def test_vote_for_higher_term_makes_follower(tmp_path):
    cluster = single_node(tmp_path)
    try:
        await asyncio.wait_for(cluster.start(), 5)
        cluster.heartbeat_interval = 5.0
        reply = await cluster.handle_cluster(
            {
                "type": "ask_vote",
                "term": 50,
                "candidate_id": "n2",
                "last_log_index": 100,
                "last_log_term": 50,
            }
        )
        assert reply == {"type": "vote_ok", "granted": True, "term": 50}
        assert cluster.is_leader()[0] is False
    finally:
        await cluster.stop()


@pytest.mark.asyncio
async def test_stale_vote_request_is_rejected(tmp_path):
    cluster = single_node(tmp_path)
    try:
        await asyncio.wait_for(cluster.start(), 5)
        reply = await cluster.handle_cluster(
            {
                "type": "ask_vote",
                "term": 0,
                "candidate_id": "n2",
                "last_log_index": 100,
                "last_log_term": 100,
            }
        )
        assert reply["type"] == "vote_ok"
        assert reply["granted"] is False
        assert reply["term"] > 0
    finally:
        await cluster.stop()


@pytest.mark.asyncio
async def test_append_entries_from_new_leader(tmp_path):
    cluster = single_node(tmp_path)
    try:
        await asyncio.wait_for(cluster.start(), 5)
        cluster.heartbeat_interval = 5.0
        reply = await cluster.handle_cluster(
            {
                "type": "append_entries",
                "term": 40,
                "leader_id": "n9",
                "prev_log_index": 0,
                "prev_log_term": 0,
                "entries": [{"term": 40, "operations": [{"Write": {"key": 1, "value": 2}}]}],
                "leader_commit": 0,
            }
        )
        assert reply == {"type": "append_ok", "term": 40, "success": True}
        assert cluster.is_leader() == (False, "n9")

        stale = await cluster.handle_cluster(
            {
                "type": "append_entries",
                "term": 3,
                "leader_id": "n8",
                "prev_log_index": 0,
                "prev_log_term": 0,
                "entries": [],
                "leader_commit": 0,
            }
        )
        assert stale == {"type": "append_ok", "term": 3, "success": False}

        mismatched = await cluster.handle_cluster(
            {
                "type": "append_entries",
                "term": 40,
                "leader_id": "n9",
                "prev_log_index": 1000,
                "prev_log_term": 40,
                "entries": [],
                "leader_commit": 0,
            }
        )
        assert mismatched["success"] is False
    finally:
        await cluster.stop()