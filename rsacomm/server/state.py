from threading import Lock
from typing import TYPE_CHECKING, Dict, List, Optional

from ..common.messages import PeerInfo

if TYPE_CHECKING:
    from .session import Session


class Registry:
    # Authoritative name -> Session directory of the server; every operation is one atomic step
    def __init__(self):
        self._lock = Lock()  # guards the mapping below
        self._sessions: Dict[str, "Session"] = {}

    def add(self, name: str, session: "Session") -> bool:
        ''' Register a session under a name. Returns False if the name is already taken. '''
        with self._lock:
            if name in self._sessions:
                return False
            self._sessions[name] = session
            return True

    def remove(self, name: str, session: Optional["Session"] = None) -> bool:
        '''
        Remove a name from the registry. When a session is given, the entry is
        only removed if it is still bound to that session.
        '''
        with self._lock:
            current = self._sessions.get(name)
            if current is None or (session is not None and current is not session):
                return False
            del self._sessions[name]
            return True

    def get(self, name: str) -> Optional["Session"]:
        with self._lock:
            return self._sessions.get(name)

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._sessions)

    def sessions(self, exclude: Optional["Session"] = None) -> List["Session"]:
        ''' Snapshot of the registered sessions, optionally without one of them '''
        with self._lock:
            return [s for s in self._sessions.values() if s is not exclude]

    def directory(self, exclude: Optional[str] = None) -> Dict[str, PeerInfo]:
        ''' Snapshot for a USER_LIST: name -> advertised public key '''
        with self._lock:
            return {name: PeerInfo(public_key=s.public_key)
                    for name, s in sorted(self._sessions.items()) if name != exclude}

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
