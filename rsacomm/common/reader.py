import logging
import socket
import threading
import time
from queue import Queue
from typing import Callable, List, Optional

from .errors import ProtocolError
from .messages import Message, MessageKind
from .protocol import recv_message, forget

logger = logging.getLogger(__name__)

Subscriber = Callable[[MessageKind, Message], None]

_STOP = object()   # wakes the dispatcher once the reader is closed


class MessageReader:
    '''
    Reads messages off a socket on one thread and hands them to subscribers on
    another, so a slow subscriber never stalls the socket.

    The reader thread decodes one Message per iteration and puts it on an
    unbounded FIFO queue. The dispatch thread takes messages in arrival order
    and calls every subscriber with (kind, message), in registration order.
    '''

    def __init__(self, sock: socket.socket, name: str = "conn",
                 on_activity: Optional[Callable[[], None]] = None,
                 on_disconnect: Optional[Callable[[], None]] = None):
        self.sock = sock
        self.name = name
        self.on_activity = on_activity
        self.on_disconnect = on_disconnect
        self.last_activity: Optional[float] = None
        self._queue: "Queue[object]" = Queue()
        self._subscribers: List[Subscriber] = []
        self._closing = threading.Event()
        self._reader: Optional[threading.Thread] = None
        self._dispatcher: Optional[threading.Thread] = None

    @property
    def closing(self) -> bool:
        return self._closing.is_set()

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def start_reading(self) -> None:
        ''' Start the dispatch thread, then the reader thread. '''
        self.start_dispatch()
        self._reader = threading.Thread(target=self._read_loop, name=f"reader-{self.name}", daemon=True)
        self._reader.start()

    def start_dispatch(self) -> None:
        if self._dispatcher is not None:
            return
        self._dispatcher = threading.Thread(target=self._dispatch_loop, name=f"dispatch-{self.name}", daemon=True)
        self._dispatcher.start()

    def _read_loop(self) -> None:
        while not self._closing.is_set():
            try:
                msg = recv_message(self.sock)
            except (OSError, ProtocolError) as e:
                # ConnectionError is an OSError
                if self._closing.is_set():
                    logger.debug("[%s] reader stopped: %s", self.name, e)
                    return
                logger.warning("[%s] connection lost: %s", self.name, e)
                self.close()
                if self.on_disconnect:
                    self.on_disconnect()
                return
            self._queue.put(msg)
            self.last_activity = time.monotonic()
            if self.on_activity:
                self.on_activity()

    def _dispatch_loop(self) -> None:
        while True:
            item = self._queue.get()
            if item is not _STOP:
                self._deliver(item)
            # drain everything queued before exiting
            if self._closing.is_set() and self._queue.empty():
                return

    def _deliver(self, msg: Message) -> None:
        for cb in list(self._subscribers):
            try:
                cb(msg.kind, msg)
            except Exception:
                logger.exception("[%s] subscriber failed on %s", self.name, msg.kind.value)

    def close(self) -> None:
        '''
        Latch the reader closed. The reader exits on its next loop check (or when
        the socket is closed under it); the dispatcher drains what is queued first.
        '''
        if self._closing.is_set():
            return
        self._closing.set()
        self._queue.put(_STOP)
        forget(self.sock)

    def join(self, timeout: Optional[float] = None) -> None:
        for t in (self._reader, self._dispatcher):
            if t is not None and t is not threading.current_thread():
                t.join(timeout)
