import os
import threading

import pytest

from rchatd.errors import StorageError
from rchatd.message_log import FileLogStore, MemoryLogStore, MessageLog, PartitionKey


def test_sequences_are_gapless_per_partition() -> None:
    log = MessageLog(MemoryLogStore())
    g = PartitionKey.group("g1")
    p = PartitionKey.private("bob")

    seqs = [log.append(g, "alice", f"m{i}").sequence for i in range(3)]
    other = log.append(p, "alice", "hi")

    assert seqs == [1, 2, 3]
    assert other.sequence == 1
    assert [m.sequence for m in log.replay(g, 0)] == [1, 2, 3]
    assert [m.content for m in log.replay(g, 1)] == ["m1", "m2"]
    assert list(log.replay(g, 3)) == []
    assert log.last_sequence(g) == 3


def test_concurrent_appends_stay_gapless() -> None:
    log = MessageLog(MemoryLogStore())
    g = PartitionKey.group("busy")
    committed: list[int] = []

    def writer(n: int) -> None:
        for i in range(50):
            log.append(g, f"u{n}", f"{n}-{i}", on_commit=lambda m: committed.append(m.sequence))

    threads = [threading.Thread(target=writer, args=(n,)) for n in range(6)]
    for th in threads:
        th.start()
    for th in threads:
        th.join()

    assert [m.sequence for m in log.replay(g)] == list(range(1, 301))
    # on_commit runs inside the partition lock, so it observes sequence order.
    assert committed == list(range(1, 301))


def test_file_store_survives_restart(tmp_path) -> None:
    g = PartitionKey.group("g1")
    log = MessageLog(FileLogStore(tmp_path))
    first = log.append(g, "alice", "one")
    log.append(g, "bob", "two")

    reopened = MessageLog(FileLogStore(tmp_path))
    msgs = list(reopened.replay(g, 0))

    assert [m.content for m in msgs] == ["one", "two"]
    assert msgs[0] == first
    assert reopened.append(g, "alice", "three").sequence == 3
    assert reopened.partitions() == [g]


def test_file_store_truncates_torn_tail(tmp_path) -> None:
    g = PartitionKey.group("g1")
    store = FileLogStore(tmp_path)
    log = MessageLog(store)
    log.append(g, "alice", "one")
    log.append(g, "alice", "two")

    path = store._path(g)
    size = os.path.getsize(path)
    with open(path, "ab") as f:
        f.write(b"\x00\x00\x01\x00partial")

    reopened = MessageLog(FileLogStore(tmp_path))
    assert reopened.last_sequence(g) == 2
    assert os.path.getsize(path) == size
    assert reopened.append(g, "bob", "three").sequence == 3
    assert [m.content for m in reopened.replay(g)] == ["one", "two", "three"]


class FailingStore(MemoryLogStore):
    def __init__(self) -> None:
        super().__init__()
        self.fail = False

    def write(self, partition, message) -> None:
        if self.fail:
            raise OSError("disk full")
        super().write(partition, message)


def test_failed_write_leaves_no_message() -> None:
    store = FailingStore()
    log = MessageLog(store)
    g = PartitionKey.group("g1")
    log.append(g, "alice", "one")

    store.fail = True
    committed = []
    with pytest.raises(StorageError):
        log.append(g, "alice", "two", on_commit=committed.append)
    assert committed == []

    store.fail = False
    assert log.append(g, "alice", "two").sequence == 2
    assert [m.sequence for m in log.replay(g)] == [1, 2]


def test_drop_partition(tmp_path) -> None:
    g = PartitionKey.group("g1")
    log = MessageLog(FileLogStore(tmp_path))
    log.append(g, "alice", "one")
    log.drop_partition(g)
    assert list(log.replay(g)) == []
    assert log.last_sequence(g) == 0
    assert log.append(g, "alice", "fresh").sequence == 1


def test_partition_key_validates() -> None:
    with pytest.raises(ValueError):
        PartitionKey("channel", "x")
    with pytest.raises(ValueError):
        PartitionKey.group("")
    assert str(PartitionKey.private("bob")) == "private:bob"
