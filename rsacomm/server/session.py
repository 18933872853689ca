import enum
import logging
import socket
import time
from threading import Lock, RLock
from typing import Callable, Optional, Tuple

from ..common.config import LOGIN_TIMEOUT, IDLE_TIMEOUT
from ..common.messages import Message, MessageKind
from ..common.protocol import send_message
from ..common.reader import MessageReader
from .reaper import Reaper, Scheduler
from .state import Registry

logger = logging.getLogger(__name__)

Handler = Callable[["Session", MessageKind, Message], None]


class SessionState(enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    CLOSED = "closed"


class Session:
    '''
    The server's view of one connected party.

    A session starts PENDING (no name), becomes ACTIVE once its login is
    accepted and ends CLOSED. It owns its socket, its MessageReader and its
    Reaper; close() releases all of them exactly once.
    '''

    def __init__(self, sock: socket.socket, addr: Tuple[str, int], registry: Registry,
                 scheduler: Scheduler,
                 on_expire: Callable[["Session"], None],
                 on_disconnect: Callable[["Session"], None],
                 login_timeout: float = LOGIN_TIMEOUT, idle_timeout: float = IDLE_TIMEOUT):
        self.sock = sock
        self.peer = f"{addr[0]}:{addr[1]}"
        self.registry = registry
        self.lock = RLock()          # guards name/connected/closed/reaper handle
        self._write_lock = Lock()    # one frame at a time on the socket
        self.name: Optional[str] = None
        self.public_key: Optional[str] = None
        self.connected = False
        self.closed = False
        self.last_activity = time.monotonic()
        self.reader = MessageReader(sock, name=self.peer,
                                    on_activity=self.touch,
                                    on_disconnect=lambda: on_disconnect(self))
        self.reaper = Reaper(self, scheduler, on_expire, login_timeout, idle_timeout)

    @property
    def state(self) -> SessionState:
        if self.closed:
            return SessionState.CLOSED
        return SessionState.ACTIVE if self.connected else SessionState.PENDING

    def start(self, handler: Handler) -> None:
        self.reader.subscribe(lambda kind, msg: handler(self, kind, msg))
        self.reader.start_reading()

    def touch(self) -> None:
        ''' Called by the reader for every parsed message. '''
        self.last_activity = time.monotonic()
        self.reaper.reset()

    def activate(self, name: str) -> bool:
        ''' PENDING -> ACTIVE. The name is bound once and never changes. '''
        with self.lock:
            if self.closed or self.connected:
                return False
            self.name = name.strip()
            self.connected = True
            self.reaper.activate()
            return True

    def send(self, msg: Message) -> bool:
        '''
        Write one message to the peer. Returns False when the session is already
        closed; raises OSError when the write itself fails.
        '''
        with self._write_lock:
            if self.closed:
                return False
            send_message(self.sock, msg)
            return True

    def close(self) -> bool:
        '''
        Release everything the session owns. Safe to call from any thread and
        more than once; only the first call returns True.
        '''
        with self.lock:
            if self.closed:
                return False
            self.closed = True
            self.connected = False
            if self.name is not None:
                self.registry.remove(self.name, self)
            self.reaper.cancel()
            self.reader.close()
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # already disconnected
        self.sock.close()
        logger.debug("[%s] session closed (%s)", self.peer, self.name)
        return True

    def __repr__(self):
        return f"<Session {self.name or '-'} {self.peer} {self.state.value}>"
