"""Core data types and enums shared by the bus and every service.

A discovered name travels through the system as a Request. Once published
it is never mutated - whoever reads it off the bus owns it.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, Optional, Tuple

import dns.rdatatype


class Tag(Enum):
    """Provenance of a discovered name.

    Resolved: came back from the resolution pipeline with records
    Altered: synthesized from names we already know (e.g. Markov model)
    Brute: produced by brute-forcing a wordlist
    """
    RESOLVED = "resolved"
    ALTERED = "altered"
    BRUTE = "brute"
    API = "api"
    SCRAPE = "scrape"
    DNS = "dns"
    EXTERNAL = "external"


class Priority(Enum):
    """Dispatch priority for bus publishes. Lower value is served first."""
    CRITICAL = 0
    HIGH = 1
    NORMAL = 2


class ServiceState(Enum):
    """Lifecycle of a discovery service.

    CREATED -> RUNNING -> (PAUSED <-> RUNNING) -> STOPPED
    STOPPED is terminal.
    """
    CREATED = "created"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


# Record types that make a resolved name worth learning from
TRAINING_RECORD_TYPES = frozenset({
    dns.rdatatype.TXT,
    dns.rdatatype.A,
    dns.rdatatype.AAAA,
    dns.rdatatype.CNAME,
})


@dataclass(frozen=True)
class DNSAnswer:
    """A single resource record attached to a request."""
    name: str
    type: int  # RR type code, e.g. dns.rdatatype.A
    data: str = ""


@dataclass(frozen=True)
class Request:
    """A DNS name that was discovered or still needs processing.

    This is the unit of work on the bus. Frozen so it can be handed
    to any number of subscribers without copying.
    """
    name: str
    domain: str = ""
    tag: Tag = Tag.EXTERNAL
    source: str = ""
    records: Tuple[DNSAnswer, ...] = field(default_factory=tuple)

    def has_record_type(self, types) -> bool:
        """Check whether any attached record has one of the given types."""
        return any(int(r.type) in types for r in self.records)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for logging/output."""
        return {
            'name': self.name,
            'domain': self.domain,
            'tag': self.tag.value,
            'source': self.source,
            'records': [
                {'name': r.name, 'type': dns.rdatatype.to_text(r.type), 'data': r.data}
                for r in self.records
            ],
        }


@dataclass(frozen=True)
class Credentials:
    """API credentials for a data source. Everything is optional."""
    username: Optional[str] = None
    password: Optional[str] = None
    key: Optional[str] = None
    secret: Optional[str] = None

    def has_key(self) -> bool:
        return bool(self.key)
