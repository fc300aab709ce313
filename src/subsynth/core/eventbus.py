"""In-process publish/subscribe bus.

Decouples discovery producers from consumers. Publishing only enqueues; a
single dispatcher task on the event loop delivers to subscribers, so a
publisher never waits on a subscriber.

Ordering: every topic has its own FIFO, so each subscriber sees a topic's
messages in publish order. Priority only decides which topic is served next
when several have messages waiting. Nothing is ever dropped.
"""

import asyncio
import inspect
import itertools
import logging
import threading
from collections import defaultdict, deque
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

from subsynth.util.types import Priority

logger = logging.getLogger(__name__)


# Topics shared by every service
NAME_RESOLVED_TOPIC = "name-resolved"
NEW_NAME_TOPIC = "new-name"
DNS_REQUEST_TOPIC = "dns-request"
SET_ACTIVE_TOPIC = "set-active"
LOG_TOPIC = "log"


Handler = Callable[..., Any]


class EventBus:
    """Topic based message router.

    Handlers can be plain callables (run inline by the dispatcher) or
    coroutine functions (scheduled as tasks, in publish order). A failing
    handler is logged and skipped - it never reaches the publisher or the
    other subscribers.
    """

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._pending: Dict[str, Deque[Tuple[Any, ...]]] = defaultdict(deque)
        self._ready: Optional[asyncio.PriorityQueue] = None
        self._seq = itertools.count()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._dispatcher: Optional[asyncio.Task] = None
        self._handler_tasks: Set[asyncio.Task] = set()
        self._subs_lock = threading.Lock()
        self._stats: Dict[str, int] = {
            'published': 0,
            'dispatched': 0,
            'handler_errors': 0,
        }

    def subscribe(self, topic: str, handler: Handler) -> None:
        """Register a handler for every future publish on topic."""
        with self._subs_lock:
            self._handlers[topic].append(handler)
        logger.debug("Handler %s subscribed to %s", getattr(handler, '__qualname__', handler), topic)

    def publish(self, topic: str, priority: Priority, *args: Any) -> None:
        """Queue a message for every current subscriber of topic.

        Must be called with a running event loop, or from another thread once
        the bus has been started on a loop.
        """
        loop = self._loop
        if loop is not None and not self._in_loop_thread(loop):
            loop.call_soon_threadsafe(self._enqueue, topic, priority, args)
            return
        self._enqueue(topic, priority, args)

    def _in_loop_thread(self, loop: asyncio.AbstractEventLoop) -> bool:
        try:
            return asyncio.get_running_loop() is loop
        except RuntimeError:
            return False

    def _enqueue(self, topic: str, priority: Priority, args: Tuple[Any, ...]) -> None:
        self._ensure_started()
        self._stats['published'] += 1
        self._pending[topic].append(args)
        # The token only says "topic has one more message"; the dispatcher
        # always takes the oldest message of that topic.
        self._ready.put_nowait((priority.value, next(self._seq), topic))

    def _ensure_started(self) -> None:
        if self._dispatcher is not None and not self._dispatcher.done():
            return
        self._loop = asyncio.get_running_loop()
        if self._ready is None:
            self._ready = asyncio.PriorityQueue()
        self._dispatcher = self._loop.create_task(self._dispatch_loop())

    def start(self) -> None:
        """Bind the bus to the running loop. Publishing does this lazily too."""
        self._ensure_started()

    async def _dispatch_loop(self) -> None:
        while True:
            _, _, topic = await self._ready.get()
            try:
                args = self._pending[topic].popleft()
                with self._subs_lock:
                    handlers = list(self._handlers.get(topic, ()))
                for handler in handlers:
                    self._deliver(topic, handler, args)
            finally:
                self._ready.task_done()

    def _deliver(self, topic: str, handler: Handler, args: Tuple[Any, ...]) -> None:
        try:
            if inspect.iscoroutinefunction(handler):
                task = asyncio.get_running_loop().create_task(handler(*args))
                self._handler_tasks.add(task)
                task.add_done_callback(self._handler_done)
            else:
                handler(*args)
            self._stats['dispatched'] += 1
        except Exception as e:
            self._stats['handler_errors'] += 1
            logger.error("Handler error on topic %s: %s", topic, e)

    def _handler_done(self, task: asyncio.Task) -> None:
        self._handler_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._stats['handler_errors'] += 1
            logger.error("Async handler error: %s", exc)

    async def drain(self) -> None:
        """Wait until every message published so far has been dispatched."""
        if self._ready is None:
            return
        while True:
            await self._ready.join()
            if not self._handler_tasks:
                return
            # Async handlers may publish again, so go around until quiet
            await asyncio.gather(*list(self._handler_tasks), return_exceptions=True)

    async def stop(self) -> None:
        """Stop dispatching. Undelivered messages are discarded."""
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None
        self._loop = None

    def stats(self) -> Dict[str, Any]:
        """Counters plus handler counts per topic."""
        with self._subs_lock:
            handler_counts = {t: len(h) for t, h in self._handlers.items() if h}
        return {
            **self._stats,
            'pending': sum(len(q) for q in self._pending.values()),
            'handler_counts': handler_counts,
        }
