import heapq
import itertools
import logging
import threading
import time
from typing import TYPE_CHECKING, Callable, List, Optional, Tuple

from ..common.config import LOGIN_TIMEOUT, IDLE_TIMEOUT

if TYPE_CHECKING:
    from .session import Session

logger = logging.getLogger(__name__)


class ScheduledTask:
    ''' Handle for one delayed call; cancel() is safe from any thread and idempotent. '''

    def __init__(self, deadline: float, fn: Callable[[], None], scheduler: Optional["Scheduler"] = None):
        self.deadline = deadline
        self.fn = fn
        self.cancelled = False
        self.done = False
        self._scheduler = scheduler

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        if self._scheduler is not None:
            self._scheduler._discard(self)

    @property
    def pending(self) -> bool:
        return not (self.cancelled or self.done)


class Scheduler:
    '''
    One timer thread shared by every reaper. Tasks sit in a heap ordered by
    deadline; the thread sleeps until the earliest one is due and runs it
    outside the scheduler lock.

    Cancelled entries stay in the heap until they reach the head, so the heap
    is rebuilt without them once they make up more than half of it.
    '''

    COMPACT_MIN = 32   # never rebuild a heap smaller than this

    def __init__(self, name: str = "reaper"):
        self._cond = threading.Condition()
        self._heap: List[Tuple[float, int, ScheduledTask]] = []
        self._seq = itertools.count()
        self._dead = 0   # cancelled entries still in the heap
        self._stopped = False
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()

    def __len__(self) -> int:
        ''' Entries held in the heap, cancelled ones included. '''
        with self._cond:
            return len(self._heap)

    def schedule(self, delay: float, fn: Callable[[], None]) -> ScheduledTask:
        task = ScheduledTask(time.monotonic() + delay, fn, self)
        with self._cond:
            if self._stopped:
                task.cancelled = True
                return task
            heapq.heappush(self._heap, (task.deadline, next(self._seq), task))
            self._cond.notify()
        return task

    def _discard(self, task: ScheduledTask) -> None:
        with self._cond:
            if task.done or self._stopped:
                return
            self._dead += 1
            if self._dead > self.COMPACT_MIN and self._dead * 2 > len(self._heap):
                self._heap = [entry for entry in self._heap if not entry[2].cancelled]
                heapq.heapify(self._heap)
                self._dead = 0
                self._cond.notify()

    def _run(self) -> None:
        while True:
            with self._cond:
                while not self._stopped:
                    # drop cancelled tasks sitting at the head
                    while self._heap and self._heap[0][2].cancelled:
                        heapq.heappop(self._heap)
                        self._dead = max(self._dead - 1, 0)
                    if not self._heap:
                        self._cond.wait()
                        continue
                    wait = self._heap[0][0] - time.monotonic()
                    if wait <= 0:
                        break
                    self._cond.wait(wait)
                if self._stopped:
                    return
                _, _, task = heapq.heappop(self._heap)
                if task.cancelled:
                    continue
                task.done = True
            try:
                task.fn()
            except Exception:
                logger.exception("scheduled task failed")

    def shutdown(self, wait: bool = True) -> None:
        with self._cond:
            self._stopped = True
            for _, _, task in self._heap:
                task.cancelled = True
            self._heap.clear()
            self._dead = 0
            self._cond.notify_all()
        if wait and self._thread is not threading.current_thread():
            self._thread.join()


class Reaper:
    '''
    Evicts a session that never logs in or goes silent.

    The login deadline starts when the connection is accepted. Once the session
    is active it is replaced by the inactivity deadline, which every parsed
    inbound message pushes back. At most one task is pending per session; it is
    swapped under the session lock, and a task that fires after being replaced
    does nothing.

    Login expiry runs on the timer thread: closing a session that never logged
    in sends nothing. Idle eviction runs on a thread of its own.
    '''

    def __init__(self, session: "Session", scheduler: Scheduler,
                 on_expire: Callable[["Session"], None],
                 login_timeout: float = LOGIN_TIMEOUT, idle_timeout: float = IDLE_TIMEOUT):
        self.session = session
        self.scheduler = scheduler
        self.on_expire = on_expire
        self.login_timeout = login_timeout
        self.idle_timeout = idle_timeout
        self._task: Optional[ScheduledTask] = None
        self._generation = 0
        with session.lock:
            self._task = scheduler.schedule(login_timeout, self._login_expired)

    def _login_expired(self) -> None:
        with self.session.lock:
            if self.session.connected or self.session.closed:
                return
            logger.info("[%s] no login within %ss, closing", self.session.peer, self.login_timeout)
            self.on_expire(self.session)

    def _idle_expired(self, generation: int) -> None:
        with self.session.lock:
            # a newer task replaced this one
            if generation != self._generation or self.session.closed:
                return
            self._task = None
        logger.info("[%s] idle for %ss, evicting", self.session.name, self.idle_timeout)
        # off the timer thread: the departure broadcast can block on a slow peer
        threading.Thread(target=self.on_expire, args=(self.session,),
                         name=f"evict-{self.session.name}", daemon=True).start()

    def _schedule_idle(self) -> None:
        # caller holds session.lock
        if self._task is not None:
            self._task.cancel()
        self._generation += 1
        generation = self._generation
        self._task = self.scheduler.schedule(self.idle_timeout, lambda: self._idle_expired(generation))

    def activate(self) -> None:
        ''' Replace the login deadline with the inactivity deadline. '''
        with self.session.lock:
            self._schedule_idle()

    def reset(self) -> None:
        ''' Push the inactivity deadline back; ignored until the session is active. '''
        with self.session.lock:
            if self.session.connected and not self.session.closed:
                self._schedule_idle()

    def cancel(self) -> None:
        with self.session.lock:
            self._generation += 1
            if self._task is not None:
                self._task.cancel()
                self._task = None

    @property
    def pending(self) -> Optional[ScheduledTask]:
        return self._task
