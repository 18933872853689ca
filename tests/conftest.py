import os
import socket
import sys
import threading
import time

# Add project root
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import pytest

from rsacomm.client.net import NetClient
from rsacomm.common.crypto import rsa_generate
from rsacomm.common.protocol import recv_message, send_message
from rsacomm.server.router import ChatServer

HOST = "127.0.0.1"


def wait_until(predicate, timeout=3.0, interval=0.02):
    ''' Poll predicate until it is true or the timeout expires; returns the last result '''
    deadline = time.monotonic() + timeout
    while True:
        result = predicate()
        if result or time.monotonic() >= deadline:
            return result
        time.sleep(interval)


class RawClient:
    """
    Speaks the wire protocol directly, so tests can forge whatever a
    misbehaving client would send.
    """

    def __init__(self, address):
        self.sock = socket.create_connection(address)

    def send(self, msg):
        send_message(self.sock, msg)

    def recv(self, timeout=3.0):
        self.sock.settimeout(timeout)
        return recv_message(self.sock)

    def recv_kind(self, kind, timeout=3.0):
        ''' Skip messages until one of the given kind arrives '''
        deadline = time.monotonic() + timeout
        while True:
            msg = self.recv(max(deadline - time.monotonic(), 0.01))
            if msg.kind == kind:
                return msg

    def expect_silence(self, timeout=0.3):
        self.sock.settimeout(timeout)
        try:
            msg = recv_message(self.sock)
        except socket.timeout:
            return True
        raise AssertionError(f"unexpected message: {msg}")

    def is_closed_by_peer(self, timeout=3.0):
        self.sock.settimeout(timeout)
        try:
            while True:
                recv_message(self.sock)
        except ConnectionError:
            return True
        except socket.timeout:
            return False

    def close(self):
        try:
            self.sock.close()
        except OSError:
            pass


class EventLog:
    ''' Listener recording every client event '''

    def __init__(self):
        self.events = []
        self._lock = threading.Lock()

    def __call__(self, event, value):
        with self._lock:
            self.events.append((event, value))

    def of(self, event):
        with self._lock:
            return [v for e, v in self.events if e == event]


@pytest.fixture(scope="session")
def rsa_keys():
    ''' A handful of RSA key pairs shared by the whole run (generation is slow) '''
    return [rsa_generate(2048) for _ in range(4)]


@pytest.fixture
def server():
    srv = ChatServer(HOST, 0, login_timeout=5, idle_timeout=30)
    srv.start()
    yield srv
    srv.shutdown()


@pytest.fixture
def raw_client(server):
    clients = []

    def factory():
        c = RawClient(server.address)
        clients.append(c)
        return c

    yield factory
    for c in clients:
        c.close()


@pytest.fixture
def make_client(server, rsa_keys):
    clients = []

    def factory(name, login=True):
        log = EventLog()
        net = NetClient(*server.address, private_key=rsa_keys[len(clients) % len(rsa_keys)], on_event=log)
        net.connect()
        clients.append(net)
        if login:
            net.login(name, timeout=3)
        return net, log

    yield factory
    for net in clients:
        net.close()
