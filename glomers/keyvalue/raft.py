"""Raft replication of key-value transactions across the cluster members."""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import os
import random
from dataclasses import dataclass
from typing import Any, Iterable

from glomers.keyvalue.common import Operation
from glomers.keyvalue.messages import (
    AppendEntries,
    AppendOk,
    AskVote,
    ClusterRequest,
    ClusterResponse,
    VoteOk,
    request_from_body,
    response_from_body,
)
from glomers.keyvalue.persistence import NOT_YET, Entry, Persistence, Vote
from glomers.runtime import RPCError

log = logging.getLogger(__name__)


class _Role(enum.Enum):
    LEADER = "leader"
    FOLLOWER = "follower"
    CANDIDATE = "candidate"


@dataclass
class _Peer:
    next_index: int = 0
    match_index: int = 0


class Cluster:
    """One member of a Raft group that replicates transactions to a state machine.

    ``runtime`` supplies ``node_id``, ``nodes`` and an async ``call``;
    ``state_machine`` supplies an async ``apply(ops)`` that raises on failure.
    """

    def __init__(self, runtime: Any, meta_dir: str | os.PathLike, state_machine: Any) -> None:
        self._runtime = runtime
        self._meta_dir = meta_dir
        self._state_machine = state_machine
        self.node_id: str = runtime.node_id
        self.members: list[str] = list(runtime.nodes)
        self.heartbeat_interval = 0.3
        self.tick_interval = 0.01
        self.rpc_timeout: float | None = None

        self._votes: dict[str, Vote] = {member: NOT_YET for member in self.members}
        self._peers: dict[str, _Peer] = {member: _Peer() for member in self.members}
        self._role = _Role.CANDIDATE
        self._cur_term = 0
        self._commit_index = 0
        self._last_applied = 0
        self._log: list[Entry] = []
        self._stopped = True
        self._leader_id: str | None = None
        self._persist: Persistence | None = None
        self._election_deadline = 0.0
        self._heartbeat_deadline = 0.0
        self._lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self._leader_chosen: asyncio.Event | None = None

    # ------------------------------------------------------------------ lifecycle

    async def start(self) -> None:
        """Restore durable state, start the protocol and wait until a leader is known."""
        async with self._lock:
            self._role = _Role.CANDIDATE
            self._stopped = False
            persist = Persistence.restore(self._meta_dir)
            fresh = not persist.log
            if fresh:
                persist.log.append(Entry(0, []))
            self._log = persist.log
            self._cur_term = persist.current_term
            self._commit_index = persist.current_term
            self._last_applied = 0
            if persist.voted_for and persist.voted_for in self.members:
                self._votes[persist.voted_for] = Vote(persist.voted_for)
            self._persist = persist
            if fresh:
                persist.persist(True, 0, None)
            self._leader_chosen = asyncio.Event()
            self._task = asyncio.create_task(self._run())

        waiter = asyncio.create_task(self._leader_chosen.wait())
        done, _ = await asyncio.wait({waiter, self._task}, return_when=asyncio.FIRST_COMPLETED)
        if waiter not in done:
            waiter.cancel()
            self._task.result()
            raise RuntimeError("cluster stopped before a leader was chosen")
        log.info("Leader chosen, init completed")

    async def stop(self) -> None:
        """Stop the protocol, fail pending transactions and close the metadata file."""
        self._stopped = True
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        for entry in self._log:
            if entry.result is not None and not entry.result.done():
                entry.result.set_exception(RuntimeError("cluster stopped"))
            entry.result = None
        if self._persist is not None:
            self._persist.close()
            self._persist = None

    async def _run(self) -> None:
        async with self._lock:
            self._reset_election_timeout()
        notified = False
        while True:
            async with self._lock:
                if self._stopped:
                    return
                role = self._role
                if role is not _Role.CANDIDATE and not notified:
                    if self._leader_chosen is not None:
                        self._leader_chosen.set()
                    notified = True
                if role is _Role.LEADER:
                    await self._heartbeat()
                    await self._advance_commit_index()
                elif role is _Role.FOLLOWER:
                    await self._timeout()
                    await self._advance_commit_index()
                else:
                    await self._timeout()
                    self._become_leader()
            await asyncio.sleep(self.tick_interval)

    # ------------------------------------------------------------------ public API

    async def handle_cluster(self, body: dict[str, Any]) -> dict[str, Any]:
        """Answer a vote or append-entries request; return the reply body."""
        request = request_from_body(body)
        if self._persist is None:
            raise RuntimeError("cluster is not started")
        if isinstance(request, AskVote):
            response: ClusterResponse = await self._handle_vote(request)
        else:
            response = await self._handle_append_entries(request)
        return response.to_body()

    async def apply(self, ops: Iterable[Operation]) -> list[Operation]:
        """Replicate a transaction; return its operations once committed and applied."""
        ops = list(ops)
        async with self._lock:
            if self._role is not _Role.LEADER:
                raise RuntimeError("node is not leader")
            log.info("Replicating operations as log entry: %s", ops)
            future = asyncio.get_running_loop().create_future()
            self._log.append(Entry(self._cur_term, ops, result=future))
            try:
                self._save(True, 1)
            except BaseException:
                self._log.pop()
                raise
            await self._append_entries()
            log.info("Entry replicated, cur_term: %s", self._cur_term)
        return await future

    def is_leader(self) -> tuple[bool, str]:
        """Whether this node leads, and the id of the leader it knows of."""
        if self._role is _Role.LEADER:
            return True, self.node_id
        return False, self._leader_id or ""

    # ------------------------------------------------------------------ handlers

    async def _handle_append_entries(self, req: AppendEntries) -> AppendOk:
        async with self._lock:
            self._update_term(req.term, req.leader_id)
            if req.term == self._cur_term and self._role is _Role.CANDIDATE:
                self._role = _Role.FOLLOWER
            self._leader_id = req.leader_id

            if self._role is not _Role.FOLLOWER:
                log.debug("Non follower node_id: %s received append entries request", self.node_id)
                return AppendOk(req.term, False)
            if req.term < self._cur_term:
                log.debug("Term %s is stale, rejecting append entries request", req.term)
                return AppendOk(req.term, False)

            self._reset_election_timeout()

            if not self._is_log_index_valid(req.prev_log_index, req.prev_log_term):
                return AppendOk(req.term, False)

            added = self._add_to_log(req.prev_log_index, req.entries, req.leader_commit)
            self._save(added != 0, added)
            return AppendOk(req.term, True)

    async def _handle_vote(self, req: AskVote) -> VoteOk:
        async with self._lock:
            self._update_term(req.term, req.candidate_id)
            log.info("Received vote request from %s for term %s", req.candidate_id, req.term)
            cur_term = self._cur_term
            if req.term < cur_term:
                log.info("Term %s is stale, rejecting vote, current term is %s", req.term, cur_term)
                return VoteOk(False, cur_term)

            last_index = len(self._log) - 1
            last_term = self._log[-1].term if self._log else 0
            log_up_to_date = req.last_log_term > last_term or (
                req.last_log_term == last_term and req.last_log_index >= last_index
            )
            current_vote = self._votes.get(self.node_id, NOT_YET)
            can_vote = current_vote.is_self(req.candidate_id) or current_vote == NOT_YET
            grant = req.term == cur_term and log_up_to_date and can_vote

            if grant:
                log.debug("Granting vote to %s", req.candidate_id)
                self._votes[req.candidate_id] = Vote(req.candidate_id)
                self._reset_election_timeout()
                self._save(False, 0)
            else:
                log.debug("Not granting vote to %s, our vote: %s", req.candidate_id, current_vote)
            return VoteOk(grant, cur_term)

    # ------------------------------------------------------------------ protocol steps

    def _now(self) -> float:
        return asyncio.get_running_loop().time()

    def _reset_election_timeout(self) -> None:
        interval = random.uniform(2 * self.heartbeat_interval, 4 * self.heartbeat_interval)
        self._election_deadline = self._now() + interval

    def _save(self, write_log: bool, n_new_entries: int) -> None:
        if self._persist is None:
            raise RuntimeError("cluster is not started")
        self._persist.persist(write_log, n_new_entries, (self._cur_term, dict(self._votes)))

    def _is_log_index_valid(self, prev_log_index: int, prev_log_term: int) -> bool:
        valid = prev_log_index == 0 or (
            prev_log_index < len(self._log) and self._log[prev_log_index].term == prev_log_term
        )
        if not valid:
            log.debug(
                "Invalid log index or term, prev_log_index: %s, prev_log_term: %s, log_len: %s",
                prev_log_index, prev_log_term, len(self._log),
            )
        return valid

    def _add_to_log(self, prev_log_index: int, entries: list, leader_commit: int) -> int:
        start = prev_log_index + 1
        added = 0
        for index, entry in enumerate(entries, start):
            if index < len(self._log) and self._log[index].term != entry.term:
                del self._log[index:]
            if index >= len(self._log):
                self._log.append(Entry(entry.term, list(entry.operations)))
                added += 1
        if leader_commit > self._commit_index:
            self._commit_index = min(leader_commit, len(self._log) - 1)
        return added

    async def _heartbeat(self) -> None:
        if self._now() > self._heartbeat_deadline:
            self._heartbeat_deadline = self._now() + self.heartbeat_interval
            log.debug("Sending heartbeat")
            await self._append_entries()

    async def _advance_commit_index(self) -> None:
        if self._role is _Role.LEADER:
            quorum_size = len(self.members) // 2 + 1
            for index in range(self._commit_index + 1, len(self._log)):
                acks = sum(
                    1
                    for node_id, peer in self._peers.items()
                    if node_id == self.node_id or peer.match_index >= index
                )
                if acks >= quorum_size:
                    self._commit_index = index
                    log.debug("New commit index: %s", index)
                    break

        while self._last_applied <= self._commit_index and self._last_applied < len(self._log):
            entry = self._log[self._last_applied]
            if entry.operations:
                log.debug("Entry applied: %s", self._last_applied)
                future, entry.result = entry.result, None
                try:
                    await self._state_machine.apply(list(entry.operations))
                except Exception as exc:
                    log.debug("Failed to apply entry %s: %s", self._last_applied, exc)
                    if future is not None and not future.done():
                        future.set_exception(exc)
                else:
                    if future is not None and not future.done():
                        future.set_result(list(entry.operations))
            self._last_applied += 1

    async def _timeout(self) -> None:
        if self._now() <= self._election_deadline:
            return
        log.info("Timed out, starting election")
        self._role = _Role.CANDIDATE
        self._cur_term += 1
        for member in self.members:
            self._votes[member] = Vote(self.node_id) if member == self.node_id else NOT_YET
        self._reset_election_timeout()
        self._save(False, 0)
        await self._request_vote()

    def _become_leader(self) -> None:
        quorum_size = len(self.members) // 2 + 1
        votes = sum(1 for vote in self._votes.values() if vote.is_self(self.node_id))
        if votes < quorum_size:
            return
        log.info("Becoming leader, current term: %s, node_id: %s", self._cur_term, self.node_id)
        self._role = _Role.LEADER
        for peer in self._peers.values():
            peer.next_index = len(self._log) + 1
            peer.match_index = 0
        self._log.append(Entry(self._cur_term, []))
        self._save(True, 1)
        self._heartbeat_deadline = self._now()

    async def _append_entries(self) -> dict[str, ClusterResponse]:
        responses: dict[str, ClusterResponse] = {}
        for node_id in self.members:
            if node_id == self.node_id:
                continue
            peer = self._peers[node_id]
            prev_log_index = peer.next_index - 1
            prev_log_term = self._log[prev_log_index].term
            entries = self._log[peer.next_index:]
            request = AppendEntries(
                term=self._cur_term,
                leader_id=self.node_id,
                prev_log_index=prev_log_index,
                prev_log_term=prev_log_term,
                entries=entries,
                leader_commit=self._commit_index,
            )
            try:
                response = await self._send(node_id, request)
            except (RPCError, ValueError) as exc:
                log.info("failed to send append entries request to %s: %s", node_id, exc)
                continue

            if isinstance(response, AppendOk):
                if self._update_term(response.term, node_id):
                    continue
                if response.term < self._cur_term and self._role is not _Role.LEADER:
                    continue
                if response.success:
                    peer.next_index = max(prev_log_index + len(entries) + 1, peer.next_index)
                    peer.match_index = peer.next_index - 1
                else:
                    peer.next_index = max(peer.next_index - 1, 1)
                    log.debug("Reverting next_index to %s for %s", peer.next_index, node_id)
            else:
                log.info("received unexpected response from %s: %s", node_id, response)
            responses[node_id] = response
        return responses

    async def _request_vote(self) -> None:
        request = AskVote(
            term=self._cur_term,
            candidate_id=self.node_id,
            last_log_index=len(self._log) - 1,
            last_log_term=self._log[-1].term if self._log else 0,
        )
        responses = await self._multicast(request)
        for node_id, response in responses.items():
            if not isinstance(response, VoteOk):
                log.info("received unexpected response from %s: %s", node_id, response)
                continue
            if self._update_term(response.term, node_id):
                continue
            if response.term < self._cur_term:
                continue
            if response.granted:
                self._votes[node_id] = Vote(self.node_id)

    def _update_term(self, term: int, node_id: str) -> bool:
        if term <= self._cur_term:
            return False
        self._cur_term = term
        self._role = _Role.FOLLOWER
        self._votes[self.node_id] = NOT_YET
        log.info("New term %s from %s, transitioning to follower", term, node_id)
        self._reset_election_timeout()
        self._save(False, 0)
        return True

    # ------------------------------------------------------------------ transport

    async def _multicast(self, request: ClusterRequest) -> dict[str, ClusterResponse]:
        targets = [node_id for node_id in self.members if node_id != self.node_id]
        results = await asyncio.gather(
            *(self._send(node_id, request) for node_id in targets), return_exceptions=True
        )
        responses: dict[str, ClusterResponse] = {}
        for node_id, result in zip(targets, results):
            if isinstance(result, BaseException):
                log.info("failed to reach %s: %s", node_id, result)
            else:
                responses[node_id] = result
        return responses

    async def _send(self, node_id: str, request: ClusterRequest) -> ClusterResponse:
        timeout = self.rpc_timeout if self.rpc_timeout is not None else 2 * self.heartbeat_interval
        reply = await self._runtime.call(node_id, request.to_body(), timeout)
        return response_from_body(reply.body)