import datetime
import json
import socket
import threading
import weakref
from typing import Any, Dict

from .config import ENC
from .crypto import b64, b64d
from .errors import ProtocolError
from .messages import Message, MessageKind, PeerInfo

DELIM = b"\n"    # delimiter for JSON text
RECV_SIZE = 4096
MAX_FRAME = 1 << 20   # a line longer than this is treated as garbage

# buffers (key: socket, value: bytearray) keep residual data so we return one
# message per call even when several messages arrive in one recv().
_buffers: "weakref.WeakKeyDictionary[socket.socket, bytearray]" = weakref.WeakKeyDictionary()
_buffers_lock = threading.Lock()

_BYTES_KINDS = (MessageKind.KEY, MessageKind.SYM_MSG, MessageKind.RSA_MSG)


def iso_now() -> str:
    '''Return current UTC time in ISO format'''
    return datetime.datetime.now(datetime.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def send_json(sock: socket.socket, obj: dict) -> None:
    '''
    The function sends an object that can be converted to JSON over a socket.
    It adds a newline character \\n at the end of the message.
    Inputs:
        - sock: socket.socket - the socket to send the data through
        - obj: dict - the object to be sent
    Output: None
    '''
    data = (json.dumps(obj, ensure_ascii=False) + "\n").encode(ENC)
    sock.sendall(data)


def recv_json(sock: socket.socket) -> dict:
    '''
    The function receives a JSON object from a socket. It reads data until it encounters a
    newline character, which marks the end of one JSON message, then decodes it.
    Input:
        - sock: socket.socket - the socket to receive data from
    Output:
        - dict - the received JSON object
    Raises ConnectionError when the peer closed the stream and ProtocolError
    when the line is not a JSON object.
    '''
    with _buffers_lock:
        buf = _buffers.setdefault(sock, bytearray())

    while True:
        nl = buf.find(DELIM)
        if nl != -1:  # one full JSON message has arrived
            line_bytes = bytes(buf[:nl])
            del buf[:nl + 1]
            try:
                obj = json.loads(line_bytes.decode(ENC))
            except (UnicodeDecodeError, json.JSONDecodeError) as e:
                raise ProtocolError(f"malformed frame: {e}") from e
            if not isinstance(obj, dict):
                raise ProtocolError("frame is not a JSON object")
            return obj

        if len(buf) > MAX_FRAME:
            raise ProtocolError("frame exceeds maximum size")
        chunk = sock.recv(RECV_SIZE)
        if not chunk:
            raise ConnectionError("socket closed")
        buf.extend(chunk)


def forget(sock: socket.socket) -> None:
    ''' Drop the residual buffer kept for a socket. '''
    with _buffers_lock:
        _buffers.pop(sock, None)


def _encode_payload(msg: Message) -> Any:
    if msg.kind in _BYTES_KINDS:
        return b64(msg.payload)
    if msg.kind == MessageKind.USER_LIST:
        return {"users": {name: {"pub": info.public_key, "has_key": info.has_key}
                          for name, info in msg.payload.items()}}
    return msg.payload


def _decode_payload(kind: MessageKind, payload: Any) -> Any:
    if kind in _BYTES_KINDS:
        if not isinstance(payload, str):
            raise ProtocolError(f"{kind.value} payload must be base64 text")
        return b64d(payload)
    if kind == MessageKind.USER_LIST:
        users = payload.get("users") if isinstance(payload, dict) else None
        if not isinstance(users, dict):
            raise ProtocolError("USER_LIST payload must carry a users mapping")
        return {name: PeerInfo(public_key=entry.get("pub"), has_key=bool(entry.get("has_key")))
                for name, entry in users.items()}
    return payload


def encode(msg: Message) -> Dict[str, Any]:
    ''' Build the JSON envelope for a Message. '''
    return {"type": msg.kind.value, "sender": msg.source, "to": msg.destination,
            "ts": iso_now(), "payload": _encode_payload(msg)}


def decode(env: Dict[str, Any]) -> Message:
    ''' Rebuild a Message from a JSON envelope; anything malformed is a ProtocolError. '''
    try:
        kind = MessageKind(env.get("type"))
    except ValueError as e:
        raise ProtocolError(f"unknown message type: {env.get('type')!r}") from e
    sender, to = env.get("sender"), env.get("to")
    if not isinstance(sender, str) or not isinstance(to, str):
        raise ProtocolError("sender and to must be strings")
    try:
        return Message(sender, to, kind, _decode_payload(kind, env.get("payload")))
    except (TypeError, ValueError, AttributeError) as e:
        raise ProtocolError(f"bad {kind.value} payload: {e}") from e


def send_message(sock: socket.socket, msg: Message) -> None:
    send_json(sock, encode(msg))


def recv_message(sock: socket.socket) -> Message:
    return decode(recv_json(sock))
