import socket

import pytest

from rsacomm.common import messages
from rsacomm.common.errors import ProtocolError
from rsacomm.common.messages import BROADCAST, SERVER, Message, MessageKind, PeerInfo
from rsacomm.common.protocol import decode, encode, recv_json, recv_message, send_json, send_message


def test_destination_is_trimmed():
    msg = messages.plain("alice", "  bob \n", "hi")
    assert msg.destination == "bob"


def test_string_rendering():
    assert str(messages.plain("alice", BROADCAST, "hello")) == "alice -> BROADCAST: hello"


def test_kind_accepts_its_name():
    msg = Message("alice", SERVER, "LOGIN", "alice")
    assert msg.kind is MessageKind.LOGIN


def test_payload_shape_is_checked():
    with pytest.raises(TypeError):
        Message("alice", "bob", MessageKind.SYM_MSG, "not bytes")


def test_source_is_required():
    with pytest.raises(ValueError):
        Message(None, "bob", MessageKind.PLAIN_MSG, "hi")


def test_factories_fill_in_routing_fields():
    assert messages.login("alice") == Message("alice", SERVER, MessageKind.LOGIN, "alice")
    assert messages.public_key("alice", "PEM").destination == SERVER
    bye = messages.logout(SERVER, "alice", BROADCAST)
    assert (bye.source, bye.destination, bye.payload) == (SERVER, BROADCAST, "alice")


def test_envelope_carries_bytes_as_base64():
    env = encode(messages.key("alice", "bob", b"\x00\xffwrapped"))
    assert env["type"] == "KEY"
    assert env["sender"] == "alice" and env["to"] == "bob"
    assert isinstance(env["payload"], str)
    assert decode(env).payload == b"\x00\xffwrapped"


def test_user_list_envelope():
    users = {"alice": PeerInfo(public_key="PEM-A"), "bob": PeerInfo()}
    env = encode(messages.user_list("carol", users))
    assert env["payload"] == {"users": {"alice": {"pub": "PEM-A", "has_key": False},
                                        "bob": {"pub": None, "has_key": False}}}
    assert decode(env).payload == users


@pytest.mark.parametrize("env", [
    {"type": "FILE_CHUNK", "sender": "a", "to": "b", "payload": ""},
    {"type": "SYM_MSG", "sender": "a", "to": "b", "payload": "%%% not base64"},
    {"type": "PLAIN_MSG", "sender": "a", "to": None, "payload": "hi"},
    {"type": "USER_LIST", "sender": SERVER, "to": "b", "payload": {"nobody": 1}},
    {"type": "LOGIN", "sender": "a", "to": SERVER, "payload": 42},
])
def test_malformed_envelopes_are_protocol_errors(env):
    with pytest.raises(ProtocolError):
        decode(env)


def test_recv_json_splits_frames_arriving_together():
    a, b = socket.socketpair()
    try:
        a.sendall(b'{"n": 1}\n{"n": 2}\n{"n"')
        assert recv_json(b) == {"n": 1}
        assert recv_json(b) == {"n": 2}
        a.sendall(b': 3}\n')
        assert recv_json(b) == {"n": 3}
    finally:
        a.close()
        b.close()


def test_recv_json_raises_when_peer_closes():
    a, b = socket.socketpair()
    try:
        send_json(a, {"n": 1})
        a.close()
        assert recv_json(b) == {"n": 1}
        with pytest.raises(ConnectionError):
            recv_json(b)
    finally:
        b.close()


def test_recv_json_rejects_garbage_line():
    a, b = socket.socketpair()
    try:
        a.sendall(b"this is not json\n")
        with pytest.raises(ProtocolError):
            recv_json(b)
    finally:
        a.close()
        b.close()


def test_message_over_socket():
    a, b = socket.socketpair()
    try:
        send_message(a, messages.symmetric("alice", "bob", b"\x01\x02"))
        got = recv_message(b)
        assert got == messages.symmetric("alice", "bob", b"\x01\x02")
    finally:
        a.close()
        b.close()
