"""Enumeration runner - wires the bus and services together for one run.

FLOW:
1. Start every service (each subscribes to the topics it cares about)
2. Ask source services about every target domain (dns-request)
3. Feed already-resolved names in as name-resolved events
4. Collect new-name discoveries until the services go quiet or time runs out
5. Stop everything and hand back what was found

Actual DNS resolution is not done here; the caller supplies names that are
known to resolve.
"""

import asyncio
import logging
import time
from typing import Dict, Iterable, List, Optional

import dns.rdatatype

from subsynth.core.eventbus import (
    EventBus,
    DNS_REQUEST_TOPIC,
    LOG_TOPIC,
    NAME_RESOLVED_TOPIC,
    NEW_NAME_TOPIC,
    SET_ACTIVE_TOPIC,
)
from subsynth.core.service import BaseService
from subsynth.services.markov import MarkovService
from subsynth.services.urlscan import URLScanService
from subsynth.util.config import Config
from subsynth.util.filter import StringFilter
from subsynth.util.log import BusLogForwarder
from subsynth.util.types import DNSAnswer, Priority, Request, Tag

logger = logging.getLogger(__name__)


def default_services(config: Config, bus: EventBus, use_urlscan: bool = True) -> List[BaseService]:
    services: List[BaseService] = [MarkovService(config, bus)]
    if use_urlscan:
        services.append(URLScanService(config, bus))
    return services


class Enumeration:
    """One discovery run over the configured target domains."""

    def __init__(self,
                 config: Config,
                 services: Optional[List[BaseService]] = None,
                 bus: Optional[EventBus] = None,
                 idle_seconds: float = 5.0):
        self.config = config
        self.bus = bus or EventBus()
        self.services = services if services is not None else default_services(config, self.bus)
        self.idle_seconds = idle_seconds

        self.discovered: Dict[str, Request] = {}
        self._out_filter = StringFilter()
        self._last_active = time.monotonic()
        self._active_counts: Dict[str, int] = {}

        self.bus.subscribe(NEW_NAME_TOPIC, self._on_new_name)
        self.bus.subscribe(SET_ACTIVE_TOPIC, self._on_set_active)
        self._log_forwarder = BusLogForwarder()
        self.bus.subscribe(LOG_TOPIC, self._log_forwarder)

    # ===== BUS HANDLERS =====

    def _on_new_name(self, req: Request) -> None:
        self._last_active = time.monotonic()
        name = req.name.lower().rstrip('.')
        if self._out_filter.duplicate(name) or not self.config.is_domain_in_scope(name):
            return
        self.discovered[name] = req
        logger.debug("New name %s from %s (%s)", name, req.source, req.tag.value)

    def _on_set_active(self, source: str) -> None:
        self._last_active = time.monotonic()
        self._active_counts[source] = self._active_counts.get(source, 0) + 1

    # ===== RUN =====

    def submit_resolved(self, name: str) -> None:
        """Publish a name that is known to resolve, as the resolver would."""
        name = name.strip().lower().rstrip('.')
        domain = self.config.which_domain(name)
        if not name or domain is None:
            logger.debug("Skipping out of scope input %s", name)
            return
        self.bus.publish(NAME_RESOLVED_TOPIC, Priority.NORMAL, Request(
            name=name,
            domain=domain,
            tag=Tag.RESOLVED,
            source="input",
            records=(DNSAnswer(name=name, type=dns.rdatatype.A),),
        ))

    async def run(self, resolved_names: Iterable[str] = (), timeout: float = 300.0) -> List[Request]:
        """Run until the services have been quiet for idle_seconds, or timeout."""
        start = time.monotonic()
        self.bus.start()

        started = []
        for service in self.services:
            try:
                service.start()
                started.append(service)
            except ValueError as e:
                # Misconfigured services sit this run out
                logger.error("%s failed to start: %s", service.name, e)

        logger.info("Started %d/%d services for %s",
                    len(started), len(self.services), ", ".join(self.config.domains))

        for domain in self.config.domains:
            self.bus.publish(DNS_REQUEST_TOPIC, Priority.HIGH, Request(name=domain, domain=domain))
        count = 0
        for name in resolved_names:
            self.submit_resolved(name)
            count += 1
        logger.info("Submitted %d resolved names for training", count)

        self._last_active = time.monotonic()
        try:
            await self._wait_quiet(start, timeout)
        finally:
            await self.shutdown()

        elapsed = time.monotonic() - start
        logger.info("Enumeration complete: %d names in %.1fs", len(self.discovered), elapsed)
        return list(self.discovered.values())

    async def _wait_quiet(self, start: float, timeout: float) -> None:
        while True:
            await asyncio.sleep(min(0.25, self.idle_seconds))
            await self.bus.drain()
            now = time.monotonic()
            if now - start >= timeout:
                logger.warning("Enumeration timed out after %.0fs", timeout)
                return
            if self._busy():
                self._last_active = now
                continue
            if now - self._last_active >= self.idle_seconds:
                return

    def _busy(self) -> bool:
        return any(service.busy for service in self.services)

    async def shutdown(self) -> None:
        for service in self.services:
            service.stop()
        for service in self.services:
            await service.join()
            await service.close()
        await self.bus.drain()
        await self.bus.stop()

    def stats(self) -> dict:
        return {
            'discovered': len(self.discovered),
            'heartbeats': dict(self._active_counts),
            'log_lines': self._log_forwarder.lines,
            'bus': self.bus.stats(),
        }
