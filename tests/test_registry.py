import threading

from rsacomm.common.messages import PeerInfo
from rsacomm.server.state import Registry


class FakeSession:
    def __init__(self, name, public_key=None):
        self.name = name
        self.public_key = public_key


def test_add_rejects_taken_name():
    reg = Registry()
    alice, impostor = FakeSession("alice"), FakeSession("alice")
    assert reg.add("alice", alice)
    assert not reg.add("alice", impostor)
    assert reg.get("alice") is alice
    assert len(reg) == 1


def test_remove_only_drops_the_bound_session():
    reg = Registry()
    alice = FakeSession("alice")
    reg.add("alice", alice)
    assert not reg.remove("alice", FakeSession("alice"))
    assert "alice" in reg
    assert reg.remove("alice", alice)
    assert "alice" not in reg
    assert not reg.remove("alice")


def test_snapshots_are_copies():
    reg = Registry()
    a, b = FakeSession("alice", "PEM-A"), FakeSession("bob")
    reg.add("alice", a)
    reg.add("bob", b)
    sessions = reg.sessions(exclude=a)
    assert sessions == [b]
    sessions.clear()
    assert len(reg) == 2
    assert reg.names() == ["alice", "bob"]
    assert reg.directory() == {"alice": PeerInfo("PEM-A"), "bob": PeerInfo()}
    assert reg.directory(exclude="alice") == {"bob": PeerInfo()}


def test_concurrent_logins_for_one_name_have_a_single_winner():
    reg = Registry()
    start = threading.Event()
    wins = []

    def attempt(i):
        start.wait()
        if reg.add("alice", FakeSession(f"alice-{i}")):
            wins.append(i)

    threads = [threading.Thread(target=attempt, args=(i,)) for i in range(16)]
    for t in threads:
        t.start()
    start.set()
    for t in threads:
        t.join()
    assert len(wins) == 1
