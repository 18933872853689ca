import logging
import socket
import threading
from typing import Optional, Tuple

from ..common import messages
from ..common.config import HOST, PORT, LOGIN_TIMEOUT, IDLE_TIMEOUT
from ..common.messages import Message, MessageKind, BROADCAST, SERVER, RESERVED
from .reaper import Scheduler
from .session import Session
from .state import Registry

logger = logging.getLogger(__name__)


class ChatServer:
    '''
    Accepts connections, authenticates sessions by name and routes their
    messages. The server never holds symmetric keys: KEY, SYM_MSG and RSA_MSG
    payloads pass through opaquely.
    '''

    def __init__(self, host: str = HOST, port: int = PORT,
                 login_timeout: float = LOGIN_TIMEOUT, idle_timeout: float = IDLE_TIMEOUT):
        self.host, self.port = host, port
        self.login_timeout = login_timeout
        self.idle_timeout = idle_timeout
        self.registry = Registry()
        self.scheduler = Scheduler()
        self._pending_lock = threading.Lock()
        self._sessions = set()   # every open session, logged in or not
        self._srv: Optional[socket.socket] = None
        self._accept_thread: Optional[threading.Thread] = None
        self._running = threading.Event()

    @property
    def address(self) -> Tuple[str, int]:
        if self._srv is None:
            return self.host, self.port
        return self._srv.getsockname()[:2]

    # lifecycle

    def start(self) -> None:
        ''' Bind the listening socket and run the accept loop on its own thread. '''
        self._srv = socket.create_server((self.host, self.port))
        self._running.set()
        self._accept_thread = threading.Thread(target=self._accept_loop, name="accept", daemon=True)
        self._accept_thread.start()
        logger.info("Server listening on %s:%s", *self.address)

    def serve_forever(self) -> None:
        if self._srv is None:
            self.start()
        try:
            while self._running.is_set():
                self._accept_thread.join(0.5)
                if not self._accept_thread.is_alive():
                    break
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        if not self._running.is_set() and self._srv is None:
            return
        self._running.clear()
        if self._srv is not None:
            try:
                self._srv.close()
            finally:
                self._srv = None
        with self._pending_lock:
            sessions = list(self._sessions)
        for s in sessions:
            s.close()
        self.scheduler.shutdown()
        logger.info("Server stopped")

    def _accept_loop(self) -> None:
        srv = self._srv
        while self._running.is_set():
            try:
                conn, addr = srv.accept()
            except OSError as e:
                if self._running.is_set():
                    logger.error("accept failed: %s", e)
                return
            conn.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            self._open_session(conn, addr)

    def _open_session(self, conn: socket.socket, addr) -> Session:
        session = Session(conn, addr, self.registry, self.scheduler,
                          on_expire=self.end_session,
                          on_disconnect=self.end_session,
                          login_timeout=self.login_timeout,
                          idle_timeout=self.idle_timeout)
        with self._pending_lock:
            self._sessions.add(session)
        logger.debug("[%s] connection accepted", session.peer)
        session.start(self.handle)
        return session

    def end_session(self, session: Session) -> None:
        '''
        Common exit for logout, eviction and transport failure. Only the call
        that actually closes an active session announces the departure.
        '''
        with session.lock:
            was_active = session.connected
            closed_now = session.close()
        with self._pending_lock:
            self._sessions.discard(session)
        if closed_now and was_active:
            logger.info("%s left", session.name)
            self.broadcast(messages.logout(SERVER, session.name, BROADCAST))

    # dispatch

    def handle(self, session: Session, kind: MessageKind, msg: Message) -> None:
        ''' Subscriber for every session's reader. '''
        if session.closed:
            return
        owner = session.name
        # a channel may only speak as the name it logged in with
        if not ((owner is None and kind == MessageKind.LOGIN) or (owner is not None and owner == msg.source)):
            logger.debug("[%s] dropped %s claiming to be %r (channel owner %r)",
                         session.peer, kind.value, msg.source, owner)
            return

        if kind == MessageKind.LOGIN:
            self.process_login(session, msg)
        elif kind == MessageKind.LOGOUT:
            self.process_logout(session, msg)
        elif kind == MessageKind.PUB_KEY:
            self.process_public_key(session, msg)
        elif kind in (MessageKind.KEY, MessageKind.PLAIN_MSG, MessageKind.SYM_MSG, MessageKind.RSA_MSG):
            self.relay(msg)
        elif kind == MessageKind.USER_LIST:
            logger.debug("[%s] ignoring USER_LIST from client", owner)
        else:
            raise AssertionError(f"unhandled message kind {kind}")

    def process_login(self, session: Session, msg: Message) -> None:
        if session.connected:
            logger.debug("[%s] already logged in, ignoring LOGIN", session.name)
            return
        name = msg.payload.strip()
        with session.lock:
            accepted = (not session.closed and bool(name) and name not in RESERVED
                        and self.registry.add(name, session))
            if accepted:
                session.activate(name)
        if not accepted:
            logger.info("[%s] login as %r rejected", session.peer, name)
            try:
                session.send(messages.logout(SERVER, name, name))
            except OSError as e:
                logger.warning("[%s] could not deliver rejection: %s", session.peer, e)
            self.end_session(session)
            return

        logger.info("[%s] logged in as %s", session.peer, name)
        self.broadcast(messages.login(name), exclude=session)
        self.deliver(session, messages.user_list(name, self.registry.directory(exclude=name)))

    def process_logout(self, session: Session, msg: Message) -> None:
        logger.info("%s logged out", session.name)
        self.end_session(session)

    def process_public_key(self, session: Session, msg: Message) -> None:
        with session.lock:
            session.public_key = msg.payload
        self.broadcast(msg)

    # routing

    def relay(self, msg: Message) -> None:
        ''' Unicast to the named session or fan out on BROADCAST; unknown targets are dropped. '''
        if msg.destination == BROADCAST:
            self.broadcast(msg)
            return
        if msg.destination == SERVER:
            logger.debug("dropped %s addressed to SERVER", msg.kind.value)
            return
        target = self.registry.get(msg.destination)
        if target is None:
            logger.debug("dropped %s for unknown user %r", msg.kind.value, msg.destination)
            return
        self.deliver(target, msg)

    def broadcast(self, msg: Message, exclude: Optional[Session] = None) -> None:
        for target in self.registry.sessions(exclude=exclude):
            self.deliver(target, msg)

    def deliver(self, target: Session, msg: Message) -> bool:
        try:
            return target.send(msg)
        except OSError as e:
            logger.warning("[%s] send failed: %s", target.name or target.peer, e)
            self.end_session(target)
            return False
