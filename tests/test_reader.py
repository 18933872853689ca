import socket
import threading

import pytest

from rsacomm.common import messages
from rsacomm.common.protocol import send_message
from rsacomm.common.reader import MessageReader

from conftest import wait_until


@pytest.fixture
def pair():
    a, b = socket.socketpair()
    yield a, b
    for s in (a, b):
        try:
            s.close()
        except OSError:
            pass


def test_dispatch_order_matches_arrival_order(pair):
    a, b = pair
    got = []
    reader = MessageReader(b)
    reader.subscribe(lambda kind, msg: got.append(msg.payload))
    reader.start_reading()
    for i in range(50):
        send_message(a, messages.plain("alice", "bob", str(i)))
    assert wait_until(lambda: len(got) == 50)
    assert got == [str(i) for i in range(50)]
    reader.close()


def test_slow_subscriber_does_not_stall_the_reader(pair):
    a, b = pair
    release = threading.Event()
    parsed = []
    delivered = []

    def slow(kind, msg):
        release.wait(5)
        delivered.append(msg.payload)

    reader = MessageReader(b, on_activity=lambda: parsed.append(1))
    reader.subscribe(slow)
    reader.start_reading()
    for i in range(20):
        send_message(a, messages.plain("alice", "bob", str(i)))
    # every message is read off the socket while the first delivery is still blocked
    assert wait_until(lambda: len(parsed) == 20)
    assert delivered == []
    assert reader.last_activity is not None
    release.set()
    assert wait_until(lambda: len(delivered) == 20)
    reader.close()


def test_subscribers_run_in_registration_order_and_survive_errors(pair):
    a, b = pair
    calls = []

    def broken(kind, msg):
        calls.append("broken")
        raise RuntimeError("boom")

    reader = MessageReader(b)
    reader.subscribe(lambda kind, msg: calls.append("first"))
    reader.subscribe(broken)
    reader.subscribe(lambda kind, msg: calls.append("last"))
    reader.start_reading()
    send_message(a, messages.plain("alice", "bob", "one"))
    send_message(a, messages.plain("alice", "bob", "two"))
    assert wait_until(lambda: len(calls) == 6)
    assert calls == ["first", "broken", "last"] * 2
    reader.close()


def test_close_drains_queued_messages(pair):
    a, b = pair
    release = threading.Event()
    parsed = []
    delivered = []

    def slow(kind, msg):
        release.wait(5)
        delivered.append(msg.payload)

    reader = MessageReader(b, on_activity=lambda: parsed.append(1))
    reader.subscribe(slow)
    reader.start_reading()
    for i in range(5):
        send_message(a, messages.plain("alice", "bob", str(i)))
    assert wait_until(lambda: len(parsed) == 5)
    reader.close()
    b.shutdown(socket.SHUT_RDWR)
    release.set()
    reader.join(3)
    assert delivered == [str(i) for i in range(5)]


def test_peer_hangup_reports_disconnect_once(pair):
    a, b = pair
    lost = []
    reader = MessageReader(b, on_disconnect=lambda: lost.append(1))
    reader.start_reading()
    a.close()
    assert wait_until(lambda: lost == [1])
    reader.join(3)
    assert reader.closing
    assert lost == [1]


def test_garbage_on_the_wire_is_fatal(pair):
    a, b = pair
    lost = []
    got = []
    reader = MessageReader(b, on_disconnect=lambda: lost.append(1))
    reader.subscribe(lambda kind, msg: got.append(msg))
    reader.start_reading()
    send_message(a, messages.plain("alice", "bob", "before"))
    a.sendall(b"{broken\n")
    assert wait_until(lambda: lost == [1])
    # the message that arrived before the bad frame is still delivered
    assert wait_until(lambda: len(got) == 1)
    assert got[0].payload == "before"


def test_close_while_blocked_in_read_is_not_a_disconnect(pair):
    a, b = pair
    lost = []
    reader = MessageReader(b, on_disconnect=lambda: lost.append(1))
    reader.start_reading()
    reader.close()
    b.shutdown(socket.SHUT_RDWR)
    b.close()
    reader.join(3)
    assert lost == []
