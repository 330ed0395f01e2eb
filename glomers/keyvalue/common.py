"""Transaction operations and their JSON and binary encodings."""

from __future__ import annotations

import io
import struct
from dataclasses import dataclass
from typing import Any, Iterable, Union

_I64_MIN = -(1 << 63)
_I64_MAX = (1 << 63) - 1

_READ_VARIANT = 0
_WRITE_VARIANT = 1


@dataclass(frozen=True)
class Read:
    """Read of a key; ``result`` holds the value once the read is applied."""

    key: int
    result: int | None = None


@dataclass(frozen=True)
class Write:
    """Write of a value to a key."""

    key: int
    value: int


Operation = Union[Read, Write]


def _as_i64(value: Any, what: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or not _I64_MIN <= value <= _I64_MAX:
        raise ValueError(f"{what} is not an i64: {value!r}")
    return value


def operation_to_list(op: Operation) -> list[Any]:
    """The wire form of an operation: ``["r", key, result]`` or ``["w", key, value]``."""
    if isinstance(op, Read):
        return ["r", op.key, op.result]
    if isinstance(op, Write):
        return ["w", op.key, op.value]
    raise TypeError(f"not an operation: {op!r}")


def operation_from_list(items: Any) -> Operation:
    """Build an operation from its wire form; a read's result is not carried over."""
    if not isinstance(items, list) or not items:
        raise ValueError(f"operation is not a non-empty array: {items!r}")
    op_type = items[0]
    if not isinstance(op_type, str):
        raise ValueError(f"operation type is not a string: {op_type!r}")
    try:
        if op_type == "r":
            return Read(_as_i64(items[1], "read key"))
        if op_type == "w":
            return Write(_as_i64(items[1], "write key"), _as_i64(items[2], "write value"))
    except IndexError as exc:
        raise ValueError(f"operation is missing arguments: {items!r}") from exc
    raise ValueError(f"Invalid operation type: {op_type}")


def encode_operations(ops: Iterable[Operation]) -> bytes:
    """Binary form of a list of operations: u64 count, then u32 variant and fields, little-endian."""
    ops = list(ops)
    parts = [struct.pack("<Q", len(ops))]
    try:
        for op in ops:
            if isinstance(op, Read):
                parts.append(struct.pack("<Iq", _READ_VARIANT, op.key))
                if op.result is None:
                    parts.append(b"\x00")
                else:
                    parts.append(struct.pack("<Bq", 1, op.result))
            elif isinstance(op, Write):
                parts.append(struct.pack("<Iqq", _WRITE_VARIANT, op.key, op.value))
            else:
                raise TypeError(f"not an operation: {op!r}")
    except struct.error as exc:
        raise ValueError(f"operation field out of range: {exc}") from exc
    return b"".join(parts)


def decode_operations(data: bytes) -> list[Operation]:
    """Inverse of :func:`encode_operations`; bytes after the last operation are ignored."""
    stream = io.BytesIO(bytes(data))

    def take(fmt: str) -> tuple[Any, ...]:
        size = struct.calcsize(fmt)
        chunk = stream.read(size)
        if len(chunk) != size:
            raise ValueError("operations data is truncated")
        return struct.unpack(fmt, chunk)

    (count,) = take("<Q")
    ops: list[Operation] = []
    for _ in range(count):
        (variant,) = take("<I")
        if variant == _READ_VARIANT:
            (key,) = take("<q")
            (tag,) = take("<B")
            if tag == 0:
                ops.append(Read(key))
            elif tag == 1:
                ops.append(Read(key, take("<q")[0]))
            else:
                raise ValueError(f"invalid option tag {tag}")
        elif variant == _WRITE_VARIANT:
            key, value = take("<qq")
            ops.append(Write(key, value))
        else:
            raise ValueError(f"invalid operation variant {variant}")
    return ops


def parse_txn(body: dict[str, Any]) -> list[Operation]:
    """Operations of a ``txn`` request body."""
    if "txn" not in body:
        raise ValueError("missing 'txn' params")
    txn = body["txn"]
    if not isinstance(txn, list):
        raise ValueError("'txn' is not an array")
    return [operation_from_list(op) for op in txn]


def txn_ok_body(ops: Iterable[Operation]) -> dict[str, Any]:
    """Reply body carrying the applied operations."""
    return {"type": "txn_ok", "txn": [operation_to_list(op) for op in ops]}


def parse_txn_ok(body: dict[str, Any]) -> list[Operation]:
    """Operations of a ``txn_ok`` reply body."""
    typ = body.get("type", "")
    if typ != "txn_ok":
        raise ValueError(f"Invalid response type: {typ}")
    txn = body.get("txn")
    if not isinstance(txn, list):
        raise ValueError("'txn' is not an array")
    return [operation_from_list(op) for op in txn]


def has_write(ops: Iterable[Operation]) -> bool:
    return any(isinstance(op, Write) for op in ops)