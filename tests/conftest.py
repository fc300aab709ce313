import asyncio

import dns.rdatatype
import pytest

from subsynth.util.config import Config
from subsynth.util.types import DNSAnswer, Request, Tag


COMMON_LABELS = [
    'www', 'mail', 'webmail', 'smtp', 'pop', 'imap', 'email',
    'api', 'rest', 'graphql', 'gateway', 'service',
    'dev', 'test', 'staging', 'uat', 'qa', 'prod', 'production',
    'admin', 'portal', 'dashboard', 'panel', 'cpanel',
    'blog', 'forum', 'wiki', 'docs', 'help', 'support',
    'shop', 'store', 'cart', 'checkout', 'pay', 'payment',
    'cdn', 'static', 'assets', 'media', 'images', 'files',
    'vpn', 'remote', 'ssh', 'ftp', 'sftp',
    'ns1', 'ns2', 'dns', 'mobile', 'app', 'apps',
]


@pytest.fixture
def config():
    return Config(domains=["example.com"], num_names=200, rate_limits={"urlscan": 0})


def resolved(name: str, domain: str = "example.com", rtype=dns.rdatatype.A) -> Request:
    """A name as the resolution pipeline would publish it."""
    return Request(
        name=name,
        domain=domain,
        tag=Tag.RESOLVED,
        source="test",
        records=(DNSAnswer(name=name, type=rtype, data="192.0.2.1"),),
    )


async def settle(bus, *services, quiet_checks: int = 3, timeout: float = 10.0):
    """Wait until the bus is drained and no service has work left."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    quiet = 0
    while quiet < quiet_checks:
        if loop.time() > deadline:
            raise AssertionError("services did not settle in time")
        await bus.drain()
        for svc in services:
            if hasattr(svc, "wait_generation"):
                await svc.wait_generation()
        if any(svc.busy for svc in services):
            quiet = 0
        else:
            quiet += 1
        await asyncio.sleep(0.01)
    await bus.drain()
