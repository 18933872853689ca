from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class MessageKind(str, Enum):
    ''' Closed set of wire message kinds. Every consumer dispatches on all of them. '''
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    USER_LIST = "USER_LIST"
    PUB_KEY = "PUB_KEY"
    KEY = "KEY"
    PLAIN_MSG = "PLAIN_MSG"
    SYM_MSG = "SYM_MSG"
    RSA_MSG = "RSA_MSG"


class Destination(str, Enum):
    ''' Reserved identities. Neither can be used as a login name. '''
    SERVER = "SERVER"
    BROADCAST = "BROADCAST"


SERVER = Destination.SERVER.value
BROADCAST = Destination.BROADCAST.value
RESERVED = frozenset(d.value for d in Destination)


@dataclass(frozen=True)
class PeerInfo:
    ''' One directory entry of a USER_LIST snapshot. '''
    public_key: Optional[str] = None   # PEM text
    has_key: bool = False              # a symmetric key has been negotiated


# Payload type expected for each kind; used by the codec to validate frames.
PAYLOAD_TYPES: Dict[MessageKind, type] = {
    MessageKind.LOGIN: str,
    MessageKind.LOGOUT: str,
    MessageKind.USER_LIST: dict,
    MessageKind.PUB_KEY: str,
    MessageKind.KEY: bytes,
    MessageKind.PLAIN_MSG: str,
    MessageKind.SYM_MSG: bytes,
    MessageKind.RSA_MSG: bytes,
}


# Envelope fields stay in plaintext so the server can route without decrypting.
@dataclass(frozen=True)
class Message:
    source: str
    destination: str
    kind: MessageKind
    payload: Any

    def __post_init__(self):
        if self.source is None or self.destination is None or self.kind is None:
            raise ValueError("source, destination and kind are required")
        kind = MessageKind(self.kind)
        expected = PAYLOAD_TYPES[kind]
        if not isinstance(self.payload, expected):
            raise TypeError(f"{kind.value} payload must be {expected.__name__}, "
                            f"got {type(self.payload).__name__}")
        # frozen dataclass: assign through object.__setattr__
        object.__setattr__(self, "kind", kind)
        object.__setattr__(self, "destination", self.destination.strip())

    def __str__(self):
        return f"{self.source} -> {self.destination}: {self.payload}"


def login(name: str) -> Message:
    return Message(name, SERVER, MessageKind.LOGIN, name)


def logout(source: str, name: str, destination: str = SERVER) -> Message:
    '''
    A LOGOUT names the departing identity in its payload. Clients send it with
    source == name; the server sends it with source SERVER, either to the
    rejected requester itself or to BROADCAST as a departure announcement.
    '''
    return Message(source, destination, MessageKind.LOGOUT, name)


def user_list(destination: str, users: Dict[str, PeerInfo]) -> Message:
    return Message(SERVER, destination, MessageKind.USER_LIST, dict(users))


def public_key(source: str, pem: str) -> Message:
    return Message(source, SERVER, MessageKind.PUB_KEY, pem)


def key(source: str, destination: str, wrapped: bytes) -> Message:
    return Message(source, destination, MessageKind.KEY, wrapped)


def plain(source: str, destination: str, text: str) -> Message:
    return Message(source, destination, MessageKind.PLAIN_MSG, text)


def symmetric(source: str, destination: str, ciphertext: bytes) -> Message:
    return Message(source, destination, MessageKind.SYM_MSG, ciphertext)


def asymmetric(source: str, destination: str, ciphertext: bytes) -> Message:
    return Message(source, destination, MessageKind.RSA_MSG, ciphertext)
