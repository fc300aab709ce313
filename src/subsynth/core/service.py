"""Base discovery service.

Every data source and generator is a BaseService: it gets the same
lifecycle, its own rate limiter, and an unbounded request queue drained by
exactly one worker loop. Subclasses only provide on_request() (and
optionally on_start()/on_stop()).

Lifecycle:
    CREATED --start()--> RUNNING <--pause()/resume()--> PAUSED
    RUNNING/PAUSED --stop()--> STOPPED (terminal)
"""

import asyncio
import logging
from typing import Optional, Set

from subsynth.core.eventbus import EventBus, LOG_TOPIC, SET_ACTIVE_TOPIC
from subsynth.util.concurrency import RateLimiter
from subsynth.util.config import Config, ConfigurationError
from subsynth.util.types import Priority, Request, ServiceState

logger = logging.getLogger(__name__)


class ServiceConfigurationError(ConfigurationError):
    """A service cannot start with the configuration it was given."""


class BaseService:
    """Lifecycle, rate limiting and request queue shared by all services."""

    source_type = "none"

    def __init__(self, name: str, config: Config, bus: EventBus):
        self.name = name
        self.config = config
        self.bus = bus
        self.rate_limiter = RateLimiter()

        self._state = ServiceState.CREATED
        self._queue: asyncio.Queue = asyncio.Queue()
        self._quit = asyncio.Event()
        self._paused = asyncio.Event()
        self._resumed = asyncio.Event()
        self._resumed.set()
        self._worker: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    def __str__(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name} {self._state.value}>"

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def pending(self) -> int:
        """Requests waiting in the queue."""
        return self._queue.qsize()

    @property
    def busy(self) -> bool:
        """True while requests are queued or handlers are still running."""
        if self._state is ServiceState.STOPPED:
            return bool(self._tasks)
        return bool(self.pending or self._tasks)

    # ===== LIFECYCLE =====

    def start(self) -> None:
        """Run setup and launch the worker loop.

        Raises ServiceConfigurationError on unrecoverable misconfiguration;
        the service then stays CREATED. Starting twice is a no-op.
        """
        if self._state is not ServiceState.CREATED:
            logger.debug("%s: start ignored in state %s", self.name, self._state.value)
            return

        self.on_start()

        self._state = ServiceState.RUNNING
        self._worker = asyncio.get_running_loop().create_task(self._process_requests())
        logger.info("%s service started", self.name)

    def pause(self) -> None:
        if self._state is not ServiceState.RUNNING:
            return
        self._state = ServiceState.PAUSED
        self._resumed.clear()
        self._paused.set()
        logger.debug("%s paused (%d queued)", self.name, self.pending)

    def resume(self) -> None:
        if self._state is not ServiceState.PAUSED:
            return
        self._state = ServiceState.RUNNING
        self._paused.clear()
        self._resumed.set()
        logger.debug("%s resumed", self.name)

    def stop(self) -> None:
        """Stop the worker loop. Queued requests are not processed."""
        if self._state not in (ServiceState.RUNNING, ServiceState.PAUSED):
            return
        self._state = ServiceState.STOPPED
        self._quit.set()
        self.on_stop()
        logger.info("%s service stopped", self.name)

    async def join(self) -> None:
        """Wait for the worker loop to exit."""
        if self._worker is not None:
            await self._worker

    async def wait_idle(self) -> None:
        """Wait for in-flight request handlers to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def on_start(self) -> None:
        """Subclass hook: load config, set the rate limit, subscribe to topics."""

    def on_stop(self) -> None:
        """Subclass hook: release resources."""

    async def close(self) -> None:
        """Await whatever on_stop() could not wait for."""

    async def on_request(self, req: Request) -> None:
        raise NotImplementedError

    # ===== REQUESTS =====

    def send_request(self, req: Request) -> None:
        """Fire-and-forget enqueue. Requests sent after stop() are ignored."""
        if self._state is ServiceState.STOPPED:
            return
        self._queue.put_nowait(req)

    async def _process_requests(self) -> None:
        while not self._quit.is_set():
            if self._paused.is_set():
                await self._wait_any(self._resumed.wait(), self._quit.wait())
                continue

            getter = asyncio.ensure_future(self._queue.get())
            done = await self._wait_any(getter, self._quit.wait(), self._paused.wait())

            if self._quit.is_set():
                return
            if getter in done:
                self._dispatch(getter.result())

    async def _wait_any(self, *aws) -> Set[asyncio.Future]:
        futures = [asyncio.ensure_future(a) for a in aws]
        done, pending = await asyncio.wait(futures, return_when=asyncio.FIRST_COMPLETED)
        for f in pending:
            f.cancel()
        return done

    def _dispatch(self, req: Request) -> None:
        task = asyncio.get_running_loop().create_task(self._handle(req))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _handle(self, req: Request) -> None:
        try:
            await self.on_request(req)
        except Exception as e:
            logger.error("%s: error handling %s: %s", self.name, req.name, e, exc_info=True)
            self.log(f"{self.name}: {req.name}: {e}")

    # ===== HELPERS FOR SUBCLASSES =====

    def set_rate_limit(self, seconds: float) -> None:
        self.rate_limiter.set_interval(seconds)

    async def check_rate_limit(self) -> None:
        """Block until the minimum interval since the last outbound call has passed."""
        await self.rate_limiter.acquire()

    def set_active(self) -> None:
        """Heartbeat: tell the runner this service is still working."""
        self.bus.publish(SET_ACTIVE_TOPIC, Priority.CRITICAL, self.name)

    def log(self, message: str) -> None:
        """Publish a human-readable status line on the bus."""
        self.bus.publish(LOG_TOPIC, Priority.HIGH, message)
