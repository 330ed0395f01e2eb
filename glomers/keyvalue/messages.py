"""Requests and replies exchanged between cluster members."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, NamedTuple, Union

from glomers.keyvalue.common import Operation, Read, Write

_U64_MAX = (1 << 64) - 1
_I64_MIN = -(1 << 63)
_I64_MAX = (1 << 63) - 1


class _WireEntry(NamedTuple):
    term: int
    operations: list


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _u64(body: dict[str, Any], name: str) -> int:
    value = body.get(name)
    if not _is_int(value) or not 0 <= value <= _U64_MAX:
        raise ValueError(f"missing '{name}' field or not a u64")
    return value


def _string(body: dict[str, Any], name: str) -> str:
    value = body.get(name)
    if not isinstance(value, str):
        raise ValueError(f"missing '{name}' field or not a string")
    return value


def _boolean(body: dict[str, Any], name: str) -> bool:
    value = body.get(name)
    if not isinstance(value, bool):
        raise ValueError(f"missing '{name}' field or not a bool")
    return value


def _op_to_json(op: Operation) -> dict[str, Any]:
    if isinstance(op, Read):
        return {"Read": {"key": op.key, "result": op.result}}
    if isinstance(op, Write):
        return {"Write": {"key": op.key, "value": op.value}}
    raise TypeError(f"not an operation: {op!r}")


def _i64(fields: dict[str, Any], name: str) -> int:
    value = fields.get(name)
    if not _is_int(value) or not _I64_MIN <= value <= _I64_MAX:
        raise ValueError(f"Failed to deserialize entry: field '{name}' is not an i64")
    return value


def _op_from_json(value: Any) -> Operation:
    if not isinstance(value, dict) or len(value) != 1:
        raise ValueError(f"Failed to deserialize entry: invalid operation {value!r}")
    (variant, fields), = value.items()
    if not isinstance(fields, dict):
        raise ValueError(f"Failed to deserialize entry: invalid operation {value!r}")
    if variant == "Read":
        result = fields.get("result")
        if result is not None:
            result = _i64(fields, "result")
        return Read(_i64(fields, "key"), result)
    if variant == "Write":
        return Write(_i64(fields, "key"), _i64(fields, "value"))
    raise ValueError(f"Failed to deserialize entry: unknown variant {variant!r}")


def _entry_to_json(entry: Any) -> dict[str, Any]:
    return {"term": entry.term, "operations": [_op_to_json(op) for op in entry.operations]}


def _entry_from_json(value: Any) -> _WireEntry:
    if not isinstance(value, dict):
        raise ValueError(f"Failed to deserialize entry: {value!r} is not an object")
    term = value.get("term")
    if not _is_int(term) or not 0 <= term <= _U64_MAX:
        raise ValueError("Failed to deserialize entry: 'term' is not a u64")
    operations = value.get("operations")
    if not isinstance(operations, list):
        raise ValueError("Failed to deserialize entry: 'operations' is not an array")
    return _WireEntry(term, [_op_from_json(op) for op in operations])


@dataclass(frozen=True)
class AskVote:
    """A candidate's request for a vote."""

    term: int
    candidate_id: str
    last_log_index: int
    last_log_term: int

    def to_body(self) -> dict[str, Any]:
        return {
            "type": "ask_vote",
            "term": self.term,
            "candidate_id": self.candidate_id,
            "last_log_index": self.last_log_index,
            "last_log_term": self.last_log_term,
        }


@dataclass
class AppendEntries:
    """A leader's request to append entries; empty entries make a heartbeat.

    Each entry is any object with ``term`` and ``operations`` attributes.
    """

    term: int
    leader_id: str
    prev_log_index: int
    prev_log_term: int
    entries: list = field(default_factory=list)
    leader_commit: int = 0

    def to_body(self) -> dict[str, Any]:
        return {
            "type": "append_entries",
            "term": self.term,
            "leader_id": self.leader_id,
            "prev_log_index": self.prev_log_index,
            "prev_log_term": self.prev_log_term,
            "entries": [_entry_to_json(entry) for entry in self.entries],
            "leader_commit": self.leader_commit,
        }


@dataclass(frozen=True)
class VoteOk:
    """Answer to :class:`AskVote`."""

    granted: bool
    term: int

    def to_body(self) -> dict[str, Any]:
        return {"type": "vote_ok", "granted": self.granted, "term": self.term}


@dataclass(frozen=True)
class AppendOk:
    """Answer to :class:`AppendEntries`."""

    term: int
    success: bool

    def to_body(self) -> dict[str, Any]:
        return {"type": "append_ok", "term": self.term, "success": self.success}


ClusterRequest = Union[AskVote, AppendEntries]
ClusterResponse = Union[VoteOk, AppendOk]


def request_from_body(body: dict[str, Any]) -> ClusterRequest:
    """Decode a cluster request; raises ValueError on unknown types or bad fields."""
    typ = body.get("type", "")
    if typ == "ask_vote":
        return AskVote(
            term=_u64(body, "term"),
            candidate_id=_string(body, "candidate_id"),
            last_log_index=_u64(body, "last_log_index"),
            last_log_term=_u64(body, "last_log_term"),
        )
    if typ == "append_entries":
        term = _u64(body, "term")
        leader_id = _string(body, "leader_id")
        prev_log_index = _u64(body, "prev_log_index")
        prev_log_term = _u64(body, "prev_log_term")
        raw_entries = body.get("entries")
        if not isinstance(raw_entries, list):
            raise ValueError("missing 'entries' field or not an array")
        entries = [_entry_from_json(entry) for entry in raw_entries]
        return AppendEntries(
            term=term,
            leader_id=leader_id,
            prev_log_index=prev_log_index,
            prev_log_term=prev_log_term,
            entries=entries,
            leader_commit=_u64(body, "leader_commit"),
        )
    raise ValueError(f"Unknown cluster request type: {typ}")


def response_from_body(body: dict[str, Any]) -> ClusterResponse:
    """Decode a cluster reply; raises ValueError on unknown types or bad fields."""
    typ = body.get("type", "")
    if typ == "vote_ok":
        return VoteOk(granted=_boolean(body, "granted"), term=_u64(body, "term"))
    if typ == "append_ok":
        return AppendOk(term=_u64(body, "term"), success=_boolean(body, "success"))
    raise ValueError(f"Unknown cluster response type: {typ}")