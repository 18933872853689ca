import dataclasses
from dataclasses import dataclass
from threading import Lock
from typing import Dict, List, Optional, Tuple

from ..common.messages import PeerInfo


@dataclass
class Peer:   # what the client knows about one other user
    name: str
    public_key: Optional[str] = None   # PEM text advertised by the peer
    key: Optional[bytes] = None        # negotiated AES key, shared both ways
    offered: bool = False              # key was generated here and not yet confirmed by the peer
    retired: Optional[bytes] = None    # key replaced by a simultaneous offer; still decrypts

    def info(self) -> PeerInfo:
        return PeerInfo(public_key=self.public_key, has_key=self.key is not None)


class PeerDirectory:
    # The client's view of who is online; safe to use from the dispatch and UI threads
    def __init__(self):
        self._lock = Lock()
        self._peers: Dict[str, Peer] = {}

    def add(self, name: str) -> Peer:
        ''' Return the entry for name, creating an empty one if needed '''
        with self._lock:
            return dataclasses.replace(self._peers.setdefault(name, Peer(name)))

    def remove(self, name: str) -> Optional[Peer]:
        with self._lock:
            return self._peers.pop(name, None)

    def get(self, name: str) -> Optional[Peer]:
        with self._lock:
            peer = self._peers.get(name)
            return dataclasses.replace(peer) if peer else None

    def replace(self, users: Dict[str, PeerInfo]) -> None:
        '''
        Replace the directory with a USER_LIST snapshot. Symmetric keys already
        negotiated with users still present are kept, since the server never
        knows them.
        '''
        with self._lock:
            old = self._peers
            self._peers = {}
            for name, info in users.items():
                prev = old.get(name)
                if prev is None:
                    self._peers[name] = Peer(name, info.public_key)
                else:
                    self._peers[name] = dataclasses.replace(prev, public_key=info.public_key or prev.public_key)

    def set_public_key(self, name: str, pem: str) -> None:
        with self._lock:
            self._peers.setdefault(name, Peer(name)).public_key = pem

    def offer_key(self, name: str, key: bytes) -> Tuple[bytes, bool]:
        '''
        Store a locally generated key unless one is already known for the peer.
        Returns the key in use and whether it is the one just offered.
        '''
        with self._lock:
            peer = self._peers.setdefault(name, Peer(name))
            if peer.key is not None:
                return peer.key, False
            peer.key, peer.offered = key, True
            return key, True

    def accept_key(self, name: str, key: bytes, keep_offer: bool) -> bytes:
        '''
        Take a key sent by the peer. When both sides offered a key at the same
        time, keep_offer decides which one survives; the loser is retired and
        stays usable for decrypting what was already sent with it.
        Returns the key now in use.
        '''
        with self._lock:
            peer = self._peers.setdefault(name, Peer(name))
            if peer.offered and keep_offer:
                peer.retired = key
            else:
                peer.retired, peer.key = peer.key, key
            peer.offered = False
            return peer.key

    def confirm_key(self, name: str) -> None:
        ''' The peer has used our key, so it can no longer collide with an offer of theirs. '''
        with self._lock:
            peer = self._peers.get(name)
            if peer is not None:
                peer.offered = False

    def snapshot(self) -> Dict[str, PeerInfo]:
        with self._lock:
            return {name: p.info() for name, p in sorted(self._peers.items())}

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._peers)

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._peers

    def __len__(self) -> int:
        with self._lock:
            return len(self._peers)
