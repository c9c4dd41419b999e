import threading

from rchatd.constants import STATUS_OFFLINE, STATUS_ONLINE
from rchatd.presence import PresenceRegistry


def test_first_and_last_session_transition() -> None:
    reg = PresenceRegistry()

    t1 = reg.add_session("alice", "c1")
    t2 = reg.add_session("alice", "c2")
    assert t1 is not None and t1.status == STATUS_ONLINE
    assert t2 is None
    assert reg.active_sessions_of("alice") == {"c1", "c2"}

    assert reg.remove_session("c1") is None
    assert reg.is_online("alice")
    t3 = reg.remove_session("c2")
    assert t3 is not None and t3.status == STATUS_OFFLINE
    assert not reg.is_online("alice")
    assert reg.active_sessions_of("alice") == frozenset()


def test_remove_unknown_session_is_noop() -> None:
    reg = PresenceRegistry()
    assert reg.remove_session("nope") is None
    reg.add_session("alice", "c1")
    assert reg.remove_session("c1") is not None
    assert reg.remove_session("c1") is None


def test_duplicate_add_is_idempotent() -> None:
    reg = PresenceRegistry()
    assert reg.add_session("alice", "c1") is not None
    assert reg.add_session("alice", "c1") is None
    assert reg.get_stats() == {"users_online": 1, "sessions": 1}


def test_concurrent_connect_disconnect_bursts() -> None:
    reg = PresenceRegistry()
    transitions = []
    lock = threading.Lock()
    start = threading.Barrier(8)

    def device(n: int) -> None:
        start.wait()
        for i in range(200):
            cid = f"d{n}-{i}"
            t = reg.add_session("alice", cid)
            if t is not None:
                with lock:
                    transitions.append(t.online)
            t = reg.remove_session(cid)
            if t is not None:
                with lock:
                    transitions.append(t.online)

    threads = [threading.Thread(target=device, args=(n,)) for n in range(8)]
    for th in threads:
        th.start()
    for th in threads:
        th.join()

    assert not reg.is_online("alice")
    assert reg.active_sessions_of("alice") == frozenset()
    # Every online transition is matched by exactly one offline transition.
    # Collection order is not registry order, so only the counts are checked.
    assert transitions.count(True) >= 1
    assert transitions.count(True) == transitions.count(False)
