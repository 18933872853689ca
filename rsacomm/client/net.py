import enum
import logging
import socket
import threading
from typing import Any, Callable, List, Optional, Tuple

from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey

from ..common import messages
from ..common.config import CONNECT_HOST, PORT, ENC, RSA_BITS
from ..common.crypto import AESCipher, RSACipher, aes_key, fit_key, rsa_generate, rsa_public_pem
from ..common.errors import CryptoError, LoginRejectedError, UnknownPeerError
from ..common.messages import Message, MessageKind, BROADCAST, SERVER
from ..common.protocol import send_message
from ..common.reader import MessageReader
from .peers import PeerDirectory

logger = logging.getLogger(__name__)


class ClientEvent(str, enum.Enum):
    USER_UPDATE = "USER_UPDATE"   # value: directory snapshot
    NEW_MESSAGE = "NEW_MESSAGE"   # value: PLAIN_MSG Message carrying the decrypted text
    LOGOUT = "LOGOUT"             # value: the LOGOUT Message that ended the session
    ERROR = "ERROR"               # value: exception raised while decrypting an incoming message


Listener = Callable[[ClientEvent, Any], None]


class NetClient:
    '''
    Client side of the protocol: keeps the peer directory, negotiates
    per-peer AES keys over RSA, and turns incoming traffic into events.

    Events fired before any listener is attached are kept in a backlog and
    replayed to the first listener, so nothing is lost while a front end is
    still starting up.
    '''

    def __init__(self, host: str = CONNECT_HOST, port: int = PORT,
                 private_key: Optional[RSAPrivateKey] = None,
                 on_event: Optional[Listener] = None,
                 rsa_bits: int = RSA_BITS):
        self.host, self.port = host, port
        self.name: Optional[str] = None
        self.sock: Optional[socket.socket] = None
        self.reader: Optional[MessageReader] = None
        self.peers = PeerDirectory()
        self.private_key = private_key or rsa_generate(rsa_bits)
        self.public_pem = rsa_public_pem(self.private_key)
        self.rsa = RSACipher()
        self.aes = AESCipher()
        self.running = False
        self._write_lock = threading.Lock()
        self._events_lock = threading.Lock()
        self._listeners: List[Listener] = []
        self._backlog: List[Tuple[ClientEvent, Any]] = []
        self._answered = threading.Event()   # USER_LIST or a refusal arrived
        self._rejected = threading.Event()   # server refused our name
        if on_event:
            self.add_listener(on_event)

    # events

    def add_listener(self, cb: Listener) -> None:
        '''
        Register a listener. If events were fired before the first listener
        attached, replay them to it now.
        '''
        with self._events_lock:
            self._listeners.append(cb)
            pending, self._backlog = self._backlog, []
        for event, value in pending:
            self._call(cb, event, value)

    def remove_listener(self, cb: Listener) -> None:
        with self._events_lock:
            if cb in self._listeners:
                self._listeners.remove(cb)

    def _fire(self, event: ClientEvent, value: Any) -> None:
        with self._events_lock:
            listeners = list(self._listeners)
            if not listeners:
                self._backlog.append((event, value))
                return
        for cb in listeners:
            self._call(cb, event, value)

    @staticmethod
    def _call(cb: Listener, event: ClientEvent, value: Any) -> None:
        try:
            cb(event, value)
        except Exception:
            # a broken front end must not kill the dispatch thread
            logger.exception("listener failed on %s", event.value)

    # connection

    def connect(self) -> None:
        ''' Open the TCP connection and start the reader/dispatch threads. '''
        self.sock = socket.create_connection((self.host, self.port))
        self.sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)  # send small frames immediately
        self.running = True
        self.reader = MessageReader(self.sock, name="client", on_disconnect=self._on_disconnect)
        self.reader.subscribe(self.handle)
        self.reader.start_reading()

    def login(self, name: str, timeout: Optional[float] = None) -> None:
        '''
        Send LOGIN followed by our public key. With a timeout, block until the
        server answers: LoginRejectedError if the name was refused,
        TimeoutError if nothing arrived in time.
        '''
        self.name = name.strip()
        self._answered.clear()
        self._rejected.clear()
        self.send(messages.login(self.name))
        self.send_public_key()
        if timeout is None:
            return
        if not self._answered.wait(timeout):
            raise TimeoutError(f"no answer to login as {self.name!r}")
        if self._rejected.is_set():
            raise LoginRejectedError(f"name {self.name!r} is not available")

    def logout(self, notify_server: bool = True) -> None:
        msg = messages.logout(self.name or "", self.name or "")
        if notify_server and self.running:
            try:
                self.send(msg)
            except OSError as e:
                logger.warning("could not notify server of logout: %s", e)
        self.close()
        self._fire(ClientEvent.LOGOUT, msg)

    def close(self) -> None:
        self.running = False
        if self.reader:
            self.reader.close()
        if self.sock:
            try:
                self.sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            self.sock.close()

    def _on_disconnect(self) -> None:
        # Socket closed or error; notify the front end
        if not self.running:
            return
        self.running = False
        self.close()
        self._fire(ClientEvent.LOGOUT, messages.logout(SERVER, self.name or "", self.name or ""))

    # sending

    def send(self, msg: Message) -> None:
        if self.sock is None:
            raise ConnectionError("not connected")
        with self._write_lock:
            send_message(self.sock, msg)

    def send_public_key(self) -> None:
        self.send(messages.public_key(self.name, self.public_pem))

    def send_plain(self, to_user: str, text: str) -> Message:
        '''
        Send unencrypted text. A broadcast comes back from the server and is
        shown then; a unicast is shown right away.
        '''
        msg = messages.plain(self.name, to_user, text)
        self.send(msg)
        if msg.destination != BROADCAST:
            self._fire(ClientEvent.NEW_MESSAGE, msg)
        return msg

    def send_rsa(self, to_user: str, text: str) -> Message:
        ''' Encrypt one message directly with the recipient's public key. '''
        peer = self._require_public_key(to_user)
        cipher_text = self.rsa.encrypt(text.encode(ENC), peer.public_key)
        self.send(messages.asymmetric(self.name, peer.name, cipher_text))
        shown = messages.plain(self.name, peer.name, text)
        self._fire(ClientEvent.NEW_MESSAGE, shown)
        return shown

    def send_sym(self, to_user: str, text: str) -> Message:
        ''' Encrypt with the AES key shared with the peer, negotiating one first if needed. '''
        peer = self.peers.get(to_user.strip())
        if peer is None:
            raise UnknownPeerError(to_user)
        key = peer.key
        if key is None:
            key = self.share_key(peer.name)
        cipher_text = self.aes.encrypt(text.encode(ENC), key)
        self.send(messages.symmetric(self.name, peer.name, cipher_text))
        shown = messages.plain(self.name, peer.name, text)
        self._fire(ClientEvent.NEW_MESSAGE, shown)
        return shown

    def share_key(self, to_user: str) -> bytes:
        '''
        Generate a fresh AES key, store it for the peer and send it wrapped
        with the peer's public key. If the peer's own key arrived in the
        meantime, that one is used and nothing is sent.
        '''
        peer = self._require_public_key(to_user)
        new_key, offered = self.peers.offer_key(peer.name, aes_key())
        if not offered:
            return new_key
        wrapped = self.rsa.encrypt(new_key, peer.public_key)
        self.send(messages.key(self.name, peer.name, wrapped))
        self._fire(ClientEvent.USER_UPDATE, self.peers.snapshot())
        return new_key

    def _require_public_key(self, to_user: str):
        peer = self.peers.get(to_user.strip())
        if peer is None or peer.public_key is None:
            raise UnknownPeerError(to_user)
        return peer

    # receiving

    def handle(self, kind: MessageKind, msg: Message) -> None:
        ''' Subscriber for our own reader; runs on the dispatch thread. '''
        if kind == MessageKind.LOGIN:
            self.process_login(msg)
        elif kind == MessageKind.LOGOUT:
            self.process_logout(msg)
        elif kind == MessageKind.USER_LIST:
            self.process_user_list(msg)
        elif kind == MessageKind.PUB_KEY:
            self.process_public_key(msg)
        elif kind == MessageKind.KEY:
            self.process_key(msg)
        elif kind == MessageKind.PLAIN_MSG:
            self._fire(ClientEvent.NEW_MESSAGE, msg)
        elif kind == MessageKind.RSA_MSG:
            self.process_rsa(msg)
        elif kind == MessageKind.SYM_MSG:
            self.process_sym(msg)
        else:
            raise AssertionError(f"unhandled message kind {kind}")

    def process_login(self, msg: Message) -> None:
        if msg.payload == self.name:
            return
        self.peers.add(msg.payload)
        self._fire(ClientEvent.USER_UPDATE, self.peers.snapshot())

    def process_logout(self, msg: Message) -> None:
        if msg.payload == self.name:
            if msg.source == SERVER:
                # the server refused or dropped us
                self._rejected.set()
                self._answered.set()
                if self.running:
                    self.logout(notify_server=False)
            return
        self.peers.remove(msg.payload)
        self._fire(ClientEvent.USER_UPDATE, self.peers.snapshot())

    def process_user_list(self, msg: Message) -> None:
        users = {name: info for name, info in msg.payload.items() if name != self.name}
        self.peers.replace(users)
        self._answered.set()
        self._fire(ClientEvent.USER_UPDATE, self.peers.snapshot())

    def process_public_key(self, msg: Message) -> None:
        if msg.source == self.name:
            return
        self.peers.set_public_key(msg.source, msg.payload)
        self._fire(ClientEvent.USER_UPDATE, self.peers.snapshot())

    def process_key(self, msg: Message) -> None:
        try:
            key = fit_key(self.rsa.decrypt(msg.payload, self.private_key))
        except CryptoError as e:
            self._crypto_failure(msg, e)
            return
        # both sides offered at once: the key from the smaller name wins on both
        kept = self.peers.accept_key(msg.source, key, keep_offer=self.name < msg.source)
        if kept != key:
            logger.debug("keeping our key for %s over the one it offered", msg.source)
        self._fire(ClientEvent.USER_UPDATE, self.peers.snapshot())

    def process_rsa(self, msg: Message) -> None:
        try:
            text = self.rsa.decrypt(msg.payload, self.private_key).decode(ENC)
        except (CryptoError, UnicodeDecodeError) as e:
            self._crypto_failure(msg, e)
            return
        self._fire(ClientEvent.NEW_MESSAGE, messages.plain(msg.source, msg.destination, text))

    def process_sym(self, msg: Message) -> None:
        peer = self.peers.get(msg.source)
        try:
            if peer is None or peer.key is None:
                raise CryptoError(f"no key negotiated with {msg.source}")
            try:
                data = self.aes.decrypt(msg.payload, peer.key)
            except CryptoError:
                if peer.retired is None:
                    raise
                # sent before a simultaneous offer was settled
                data = self.aes.decrypt(msg.payload, peer.retired)
            else:
                if peer.offered:
                    self.peers.confirm_key(peer.name)
            text = data.decode(ENC)
        except (CryptoError, UnicodeDecodeError) as e:
            self._crypto_failure(msg, e)
            return
        self._fire(ClientEvent.NEW_MESSAGE, messages.plain(msg.source, msg.destination, text))

    def _crypto_failure(self, msg: Message, err: Exception) -> None:
        logger.warning("could not decrypt %s from %s: %s", msg.kind.value, msg.source, err)
        self._fire(ClientEvent.ERROR, err)
