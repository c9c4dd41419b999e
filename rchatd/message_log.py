"""Append-only message log, partitioned by conversation target.

Each partition has its own sequence counter and its own lock: appends to one
partition are serialized, appends to different partitions run concurrently.
A message either gets a durable sequence number or does not exist at all.
"""

from __future__ import annotations

import logging
import os
import struct
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator

from .codec import decode, encode
from .constants import (
    CHAT_GROUP,
    CHAT_PRIVATE,
    CHAT_TYPES,
    M_CHAT_TYPE,
    M_CONTENT,
    M_ID,
    M_SENDER,
    M_SEQUENCE,
    M_TARGET,
    M_TS,
)
from .errors import StorageError

_FRAME = struct.Struct(">I")


@dataclass(frozen=True)
class PartitionKey:
    chat_type: str
    target_id: str

    def __post_init__(self) -> None:
        if self.chat_type not in CHAT_TYPES:
            raise ValueError(f"unknown chat type {self.chat_type!r}")
        if not self.target_id:
            raise ValueError("partition target must not be empty")

    @classmethod
    def private(cls, user_id: str) -> PartitionKey:
        return cls(CHAT_PRIVATE, user_id)

    @classmethod
    def group(cls, group_id: str) -> PartitionKey:
        return cls(CHAT_GROUP, group_id)

    def __str__(self) -> str:
        return f"{self.chat_type}:{self.target_id}"


@dataclass(frozen=True)
class Message:
    id: str
    sender_id: str
    chat_type: str
    target_id: str
    content: str
    sequence: int
    timestamp: int

    @property
    def partition(self) -> PartitionKey:
        return PartitionKey(self.chat_type, self.target_id)

    def to_record(self) -> dict[int, object]:
        return {
            M_ID: self.id,
            M_SENDER: self.sender_id,
            M_CHAT_TYPE: self.chat_type,
            M_TARGET: self.target_id,
            M_CONTENT: self.content,
            M_SEQUENCE: self.sequence,
            M_TS: self.timestamp,
        }

    @classmethod
    def from_record(cls, rec: dict) -> Message:
        if not isinstance(rec, dict):
            raise TypeError("message record must be a map")
        return cls(
            id=str(rec[M_ID]),
            sender_id=str(rec[M_SENDER]),
            chat_type=str(rec[M_CHAT_TYPE]),
            target_id=str(rec[M_TARGET]),
            content=str(rec[M_CONTENT]),
            sequence=int(rec[M_SEQUENCE]),
            timestamp=int(rec[M_TS]),
        )


class MemoryLogStore:
    """Volatile store, used for tests and ``--ephemeral`` hubs."""

    def __init__(self) -> None:
        self._messages: dict[PartitionKey, list[Message]] = {}

    def last_sequence(self, partition: PartitionKey) -> int:
        msgs = self._messages.get(partition)
        return msgs[-1].sequence if msgs else 0

    def write(self, partition: PartitionKey, message: Message) -> None:
        self._messages.setdefault(partition, []).append(message)

    def iter_from(self, partition: PartitionKey, after: int) -> Iterator[Message]:
        # Sequences are gapless and start at 1, so the list index is seq - 1.
        snapshot = list(self._messages.get(partition, ()))
        yield from snapshot[max(0, int(after)) :]

    def drop(self, partition: PartitionKey) -> None:
        self._messages.pop(partition, None)

    def partitions(self) -> list[PartitionKey]:
        return list(self._messages)


class FileLogStore:
    """
    One file per partition holding length-prefixed CBOR frames.

    Writes are flushed and fsynced before returning. A failed write is
    truncated back to the previous end of file, and a torn tail left by a crash
    is cut off the first time the partition is opened.
    """

    def __init__(self, root: str | os.PathLike) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.log = logging.getLogger("rchatd.log")
        self._last: dict[PartitionKey, int] = {}
        self._scan_lock = threading.Lock()

    def _path(self, partition: PartitionKey) -> Path:
        return self.root / f"{partition.chat_type}-{partition.target_id.encode('utf-8').hex()}.log"

    def _read_frames(self, fp) -> Iterator[tuple[int, Message]]:
        """Yield (end_offset, message) for each complete frame."""
        while True:
            head = fp.read(_FRAME.size)
            if len(head) < _FRAME.size:
                return
            (size,) = _FRAME.unpack(head)
            data = fp.read(size)
            if len(data) < size:
                return
            yield fp.tell(), Message.from_record(decode(data))

    def _scan(self, partition: PartitionKey) -> int:
        path = self._path(partition)
        if not path.exists():
            return 0

        last = 0
        good_end = 0
        with open(path, "rb") as fp:
            try:
                for end, msg in self._read_frames(fp):
                    last = msg.sequence
                    good_end = end
            except Exception as e:
                self.log.warning("Corrupt frame partition=%s offset=%s err=%s", partition, good_end, e)
            size = fp.seek(0, os.SEEK_END)

        if size != good_end:
            self.log.warning(
                "Truncating torn tail partition=%s from=%s to=%s", partition, size, good_end
            )
            with open(path, "r+b") as fp:
                fp.truncate(good_end)
        return last

    def last_sequence(self, partition: PartitionKey) -> int:
        last = self._last.get(partition)
        if last is not None:
            return last
        with self._scan_lock:
            if partition not in self._last:
                self._last[partition] = self._scan(partition)
            return self._last[partition]

    def write(self, partition: PartitionKey, message: Message) -> None:
        payload = encode(message.to_record())
        frame = _FRAME.pack(len(payload)) + payload
        with open(self._path(partition), "ab") as fp:
            start = fp.tell()
            try:
                fp.write(frame)
                fp.flush()
                os.fsync(fp.fileno())
            except OSError:
                try:
                    fp.truncate(start)
                except OSError:
                    self.log.exception("Could not roll back partial write partition=%s", partition)
                raise
        self._last[partition] = message.sequence

    def iter_from(self, partition: PartitionKey, after: int) -> Iterator[Message]:
        path = self._path(partition)
        if not path.exists():
            return
        with open(path, "rb") as fp:
            for _end, msg in self._read_frames(fp):
                if msg.sequence > after:
                    yield msg

    def drop(self, partition: PartitionKey) -> None:
        try:
            self._path(partition).unlink()
        except FileNotFoundError:
            pass
        self._last.pop(partition, None)

    def partitions(self) -> list[PartitionKey]:
        out: list[PartitionKey] = []
        for p in sorted(self.root.glob("*.log")):
            chat_type, _, hexname = p.stem.partition("-")
            try:
                out.append(PartitionKey(chat_type, bytes.fromhex(hexname).decode("utf-8")))
            except ValueError:
                self.log.warning("Ignoring unexpected file in message log dir: %s", p.name)
        return out


class MessageLog:
    def __init__(self, store=None, *, clock: Callable[[], float] = time.time) -> None:
        self.store = store if store is not None else MemoryLogStore()
        self.clock = clock
        self.log = logging.getLogger("rchatd.log")
        self._locks: dict[PartitionKey, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, partition: PartitionKey) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(partition)
            if lock is None:
                lock = threading.Lock()
                self._locks[partition] = lock
            return lock

    def append(
        self,
        partition: PartitionKey,
        sender_id: str,
        content: str,
        *,
        on_commit: Callable[[Message], None] | None = None,
    ) -> Message:
        """
        Assign the next sequence number and persist before returning.

        ``on_commit`` runs after the write, still inside the partition's
        critical section, so whatever it enqueues is ordered by sequence.
        """
        with self._lock_for(partition):
            try:
                seq = self.store.last_sequence(partition) + 1
                msg = Message(
                    id=uuid.uuid4().hex,
                    sender_id=sender_id,
                    chat_type=partition.chat_type,
                    target_id=partition.target_id,
                    content=content,
                    sequence=seq,
                    timestamp=int(self.clock() * 1000),
                )
                self.store.write(partition, msg)
            except OSError as e:
                self.log.error("Append failed partition=%s err=%s", partition, e)
                raise StorageError(f"append to {partition} failed: {e}") from e

            if self.log.isEnabledFor(logging.DEBUG):
                self.log.debug("Appended partition=%s seq=%s sender=%s", partition, seq, sender_id)

            if on_commit is not None:
                on_commit(msg)
        return msg

    def replay(self, partition: PartitionKey, after_sequence: int = 0) -> Iterator[Message]:
        """Messages with sequence > ``after_sequence``, ascending. Lazy and restartable."""
        try:
            yield from self.store.iter_from(partition, max(0, int(after_sequence)))
        except OSError as e:
            raise StorageError(f"replay of {partition} failed: {e}") from e

    def last_sequence(self, partition: PartitionKey) -> int:
        try:
            return self.store.last_sequence(partition)
        except OSError as e:
            raise StorageError(f"reading {partition} failed: {e}") from e

    def drop_partition(self, partition: PartitionKey) -> None:
        with self._lock_for(partition):
            try:
                self.store.drop(partition)
            except OSError as e:
                raise StorageError(f"dropping {partition} failed: {e}") from e
        self.log.info("Dropped partition=%s", partition)

    def partitions(self) -> list[PartitionKey]:
        return self.store.partitions()
