"""Durable Raft state: current term, vote and log entries in a fixed-layout file."""

from __future__ import annotations

import logging
import os
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO, Mapping

from glomers.keyvalue.common import Operation, decode_operations, encode_operations

log = logging.getLogger(__name__)

PAGE_SIZE = 4096
ENTRY_HEADER = 16
ENTRY_SIZE = 128
MAX_VOTED_FOR = 64
_LOG_LENGTH_OFFSET = 80
METADATA_FILE = "metadata.dat"


@dataclass(frozen=True)
class Vote:
    """A vote for ``node_id``; a vote with no node id means none was cast yet."""

    node_id: str | None = None

    def is_self(self, us: str) -> bool:
        return self.node_id is not None and self.node_id == us


NOT_YET = Vote()


@dataclass
class Entry:
    """A log entry: the term it was created in and the operations it carries.

    ``result`` is an in-memory channel for the outcome of applying the entry;
    it is neither compared nor stored.
    """

    term: int
    operations: list[Operation] = field(default_factory=list)
    result: Any = field(default=None, compare=False, repr=False)

    def serialize(self) -> bytes:
        """Fixed-size record: term (u64), operations length (u64), operations."""
        encoded = encode_operations(self.operations)
        if len(encoded) > ENTRY_SIZE - ENTRY_HEADER:
            raise ValueError(
                f"Operations are too large ({len(encoded)}). "
                f"Must be at most {ENTRY_SIZE - ENTRY_HEADER} bytes."
            )
        record = struct.pack("<QQ", self.term, len(encoded)) + encoded
        return record.ljust(ENTRY_SIZE, b"\x00")

    @classmethod
    def deserialize(cls, data: bytes) -> "Entry":
        data = bytes(data)
        if len(data) != ENTRY_SIZE:
            raise ValueError(f"Invalid entry size: expected {ENTRY_SIZE}, got {len(data)}")
        term, length = struct.unpack_from("<QQ", data)
        if length > ENTRY_SIZE - ENTRY_HEADER:
            raise ValueError(f"Failed to deserialize operations: length {length} exceeds record")
        try:
            operations = decode_operations(data[ENTRY_HEADER:ENTRY_HEADER + length])
        except ValueError as exc:
            raise ValueError(f"Failed to deserialize operations: {exc}") from exc
        return cls(term, operations)


def metadata_path(meta_dir: str | os.PathLike) -> Path:
    """Absolute path of the metadata file inside ``meta_dir``."""
    return (Path(meta_dir) / METADATA_FILE).resolve()


def _open_metadata(meta_dir: str | os.PathLike) -> BinaryIO:
    directory = Path(meta_dir)
    if not directory.exists():
        directory.mkdir(parents=True)
    fd = os.open(directory / METADATA_FILE, os.O_RDWR | os.O_CREAT, 0o644)
    return os.fdopen(fd, "r+b")


class Persistence:
    """Owns the metadata file and the state last written to it.

    Layout: a header page holding the current term, the length and bytes
    (at most 64) of the id voted for, and the log length at byte 80; then
    one fixed-size record per log entry.
    """

    def __init__(self, fd: BinaryIO, current_term: int, log_entries: list[Entry], voted_for: str) -> None:
        self._fd = fd
        self.current_term = current_term
        self.log = log_entries
        self.voted_for = voted_for

    @classmethod
    def restore(cls, meta_dir: str | os.PathLike) -> "Persistence":
        """Open (creating if needed) the metadata file and load its state.

        A new, empty file gives an empty log; a stored log of length zero
        is restored as a single empty entry of term 0.
        """
        fd = _open_metadata(meta_dir)
        try:
            log.info("Metadata path: %s", metadata_path(meta_dir))
            fd.seek(0)
            page = fd.read(PAGE_SIZE)
            if not page:
                return cls(fd, 0, [], "")
            if len(page) != PAGE_SIZE:
                raise ValueError(f"Read incomplete page: expected {PAGE_SIZE}, got {len(page)}")

            current_term, voted_for_len = struct.unpack_from("<QQ", page)
            voted_bytes = page[16:16 + min(voted_for_len, MAX_VOTED_FOR)]
            voted_for = voted_bytes.decode("utf-8", errors="replace")
            (len_log,) = struct.unpack_from("<Q", page, _LOG_LENGTH_OFFSET)

            entries: list[Entry] = []
            if len_log:
                fd.seek(PAGE_SIZE)
                for _ in range(len_log):
                    record = fd.read(ENTRY_SIZE)
                    if len(record) != ENTRY_SIZE:
                        raise ValueError(
                            f"Read incomplete entry: expected {ENTRY_SIZE}, got {len(record)}"
                        )
                    try:
                        entries.append(Entry.deserialize(record))
                    except ValueError as exc:
                        raise ValueError(f"Failed to deserialize entry: {exc}") from exc

            log.info("Restored log with %d entries", len_log)
            if not entries:
                entries.append(Entry(0, []))
            return cls(fd, current_term, entries, voted_for)
        except BaseException:
            fd.close()
            raise

    def persist(
        self,
        write_log: bool,
        n_new_entries: int,
        cluster_state: tuple[int, Mapping[str, Vote]] | None,
    ) -> None:
        """Write the header and, if asked, the last ``n_new_entries`` log entries.

        With ``write_log`` and zero new entries the whole log is written.
        ``cluster_state`` is ``(current_term, votes)``; the stored vote is the
        node whose own entry in ``votes`` is a vote for itself.
        """
        if write_log and n_new_entries == 0:
            n_new_entries = len(self.log)

        if cluster_state is not None:
            term, votes = cluster_state
            self.current_term = term
            self.voted_for = next(
                (node_id for node_id, vote in votes.items() if vote.is_self(node_id)),
                "",
            )

        voted_bytes = self.voted_for.encode()
        page = bytearray(PAGE_SIZE)
        struct.pack_into("<QQ", page, 0, self.current_term, len(voted_bytes))
        truncated = voted_bytes[:MAX_VOTED_FOR]
        page[16:16 + len(truncated)] = truncated
        struct.pack_into("<Q", page, _LOG_LENGTH_OFFSET, len(self.log))

        self._fd.seek(0)
        self._fd.write(page)

        if write_log and n_new_entries > 0:
            start = max(len(self.log) - n_new_entries, 0)
            self._fd.seek(PAGE_SIZE + ENTRY_SIZE * start)
            self._fd.write(b"".join(entry.serialize() for entry in self.log[start:]))

        self._fd.flush()
        os.fsync(self._fd.fileno())

    def close(self) -> None:
        self._fd.close()

    def __enter__(self) -> "Persistence":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()