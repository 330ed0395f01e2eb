"""In-memory key-value store that applies transactions."""

from __future__ import annotations

import logging
from typing import Iterable

from glomers.keyvalue.common import Operation, Read, Write

log = logging.getLogger(__name__)


class StateMachine:
    """Integer keys mapped to integer values; transactions apply atomically."""

    def __init__(self) -> None:
        self._store: dict[int, int] = {}

    def __len__(self) -> int:
        return len(self._store)

    def _read(self, key: int) -> Read:
        if key in self._store:
            return Read(key, self._store[key])
        log.info("Read operation for key %s not found", key)
        return Read(key)

    async def apply(self, ops: Iterable[Operation]) -> list[Operation]:
        """Apply a transaction and return its operations with read results filled in."""
        ops = list(ops)
        if all(isinstance(op, Read) for op in ops):
            return await self.apply_read_only(ops)
        return await self.apply_mixed(ops)

    async def apply_read_only(self, ops: Iterable[Operation]) -> list[Operation]:
        """Apply reads only; a write in the transaction raises ValueError."""
        result: list[Operation] = []
        for op in ops:
            if isinstance(op, Write):
                raise ValueError("Write operation in read-only transaction")
            if not isinstance(op, Read):
                raise TypeError(f"not an operation: {op!r}")
            result.append(self._read(op.key))
        return result

    async def apply_mixed(self, ops: Iterable[Operation]) -> list[Operation]:
        """Apply reads and writes in order."""
        result: list[Operation] = []
        for op in ops:
            if isinstance(op, Read):
                result.append(self._read(op.key))
            elif isinstance(op, Write):
                self._store[op.key] = op.value
                result.append(Write(op.key, op.value))
            else:
                raise TypeError(f"not an operation: {op!r}")
        return result