"""Markov model name guessing.

Learns which characters tend to follow which in labels that actually
resolved, then makes up new labels with the same texture and tries them
under every suffix we have seen for the target.

TRAINING:
    "www.example.com" with n-gram width 3 and sentinel "`" teaches
        "```" -> "w", "``w" -> "w", "`ww" -> "w", "www" -> "."
    where "." terminates the label.

GENERATION:
    Every 50 trained labels, counts are normalized into frequencies and a
    burst of labels is drawn from the model in a worker thread. Each label
    is joined to every known suffix, checked against the outbound filter and
    scope, and published as a new name.

Only the model and the suffix registry are shared between tasks. Each is
guarded by its own lock, held for one increment, one draw, one recompute
pass or one registry access.
"""

import asyncio
import logging
import random
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional

from subsynth.core.eventbus import EventBus, NAME_RESOLVED_TOPIC, NEW_NAME_TOPIC
from subsynth.core.service import BaseService, ServiceConfigurationError
from subsynth.util.config import Config
from subsynth.util.filter import StringFilter
from subsynth.util.types import Priority, Request, Tag, TRAINING_RECORD_TYPES

logger = logging.getLogger(__name__)


SENTINEL = "`"
TERMINATOR = "."
RECOMPUTE_EVERY = 50
MAX_DNS_LABEL_LEN = 63


@dataclass
class CharStats:
    """Observation count and normalized frequency of one next-character."""
    count: float = 0.0
    freq: float = 0.0


class NgramModel:
    """Character n-gram counts with thread-safe accessors.

    Maps context -> {next char -> CharStats}. Counts only ever go up;
    frequencies are refreshed by update_frequencies().
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._ngrams: Dict[str, Dict[str, CharStats]] = {}
        self._total_labels = 0

    def update(self, ngram: str, char: str) -> None:
        with self._lock:
            chars = self._ngrams.setdefault(ngram, {})
            stats = chars.get(char)
            if stats is None:
                stats = chars[char] = CharStats()
            stats.count += 1

    def increment_total(self) -> int:
        """Count one more trained label and return the new total."""
        with self._lock:
            self._total_labels += 1
            return self._total_labels

    @property
    def total_labels(self) -> int:
        with self._lock:
            return self._total_labels

    def update_frequencies(self) -> None:
        """Normalize every context's counts so its frequencies sum to 1.0."""
        with self._lock:
            for chars in self._ngrams.values():
                total = sum(s.count for s in chars.values())
                if total <= 0:
                    continue
                for stats in chars.values():
                    stats.freq = stats.count / total

    def draw(self, ngram: str, r: float) -> Optional[str]:
        """Pick the first char whose cumulative frequency reaches r.

        Returns None when the context has no normalized observations yet.
        """
        with self._lock:
            chars = self._ngrams.get(ngram)
            if not chars:
                return None

            accum = 0.0
            last = None
            for char, stats in chars.items():
                if stats.freq <= 0:
                    continue
                accum += stats.freq
                last = char
                if r <= accum:
                    return char
            # Rounding can leave the sum a hair under 1.0
            return last

    def snapshot(self) -> Dict[str, Dict[str, CharStats]]:
        """Deep copy of the model, for inspection."""
        with self._lock:
            return {
                ngram: {c: CharStats(s.count, s.freq) for c, s in chars.items()}
                for ngram, chars in self._ngrams.items()
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._ngrams)


class SubdomainRegistry:
    """Suffixes seen during training, mapped to the request that introduced them."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subs: Dict[str, Request] = {}

    def add(self, suffix: str, domain: str) -> bool:
        """Register suffix once. Returns True if it was new."""
        with self._lock:
            if suffix in self._subs:
                return False
            self._subs[suffix] = Request(name=suffix, domain=domain)
            return True

    def snapshot(self) -> List[Request]:
        with self._lock:
            return list(self._subs.values())

    def __contains__(self, suffix: str) -> bool:
        with self._lock:
            return suffix in self._subs

    def __len__(self) -> int:
        with self._lock:
            return len(self._subs)


class MarkovService(BaseService):
    """Guesses DNS names with a character-level Markov chain."""

    source_type = "alt"

    def __init__(self,
                 config: Config,
                 bus: EventBus,
                 ngram_size: Optional[int] = None,
                 num_names: Optional[int] = None,
                 max_label_len: Optional[int] = None,
                 max_label_attempts: int = 100,
                 rng: Optional[random.Random] = None):
        super().__init__("Markov Model", config, bus)
        self.ngram_size = ngram_size if ngram_size is not None else config.ngram_size
        self.num_names = num_names if num_names is not None else config.num_names
        self.max_label_len = max_label_len if max_label_len is not None else config.max_label_len
        self.max_label_attempts = max_label_attempts
        self.rng = rng or random.Random()

        self.model = NgramModel()
        self.subs = SubdomainRegistry()
        self.in_filter = StringFilter()
        self.out_filter = StringFilter()

        self._bursts: List[asyncio.Future] = []

    def on_start(self) -> None:
        if self.ngram_size < 1:
            raise ServiceConfigurationError(f"{self.name}: n-gram size must be >= 1")
        if self.num_names < 1:
            raise ServiceConfigurationError(f"{self.name}: batch size must be >= 1")
        if not 0 < self.max_label_len <= MAX_DNS_LABEL_LEN:
            raise ServiceConfigurationError(
                f"{self.name}: max label length must be in 1..{MAX_DNS_LABEL_LEN}")

        if self.config.alterations:
            self.bus.subscribe(NAME_RESOLVED_TOPIC, self.send_request)
        else:
            logger.info("%s: alterations disabled, not subscribing to %s",
                        self.name, NAME_RESOLVED_TOPIC)

    async def on_request(self, req: Request) -> None:
        self.train_model(req)

    # ===== TRAINING =====

    def train_model(self, req: Request) -> bool:
        """Learn from one resolved name. Returns False if it was rejected.

        Every RECOMPUTE_EVERY trained labels this also refreshes the
        frequencies and kicks off a generation burst, which needs a running
        event loop.
        """
        # FQDNs from the resolver may carry a root dot or mixed case
        name = req.name.lower().rstrip(TERMINATOR)
        if (not name
                or not req.has_record_type(TRAINING_RECORD_TYPES)
                or self.in_filter.duplicate(name)
                or not self.config.is_domain_in_scope(name)):
            return False

        parts = name.split(TERMINATOR, 1)
        if len(parts) != 2 or not parts[1]:
            return False
        label, suffix = parts[0] + TERMINATOR, parts[1]

        # A name we already know is never proposed again
        self.out_filter.duplicate(name)

        k = self.ngram_size
        for i, char in enumerate(label):
            if i < k:
                ngram = SENTINEL * (k - i) + label[:i]
            else:
                ngram = label[i - k:i]
            self.model.update(ngram, char)

        domain = req.domain.lower().rstrip(TERMINATOR) or self.config.which_domain(name) or ""
        self.subs.add(suffix, domain)
        self._after_training()
        return True

    def _after_training(self) -> None:
        total = self.model.increment_total()
        if total % RECOMPUTE_EVERY != 0:
            return

        self.model.update_frequencies()
        logger.debug("%s: %d labels trained, generating %d names",
                     self.name, total, self.num_names)
        self.set_active()
        loop = asyncio.get_running_loop()
        burst = loop.run_in_executor(None, self.generate_names)
        self._bursts.append(burst)
        burst.add_done_callback(self._burst_done)

    def _burst_done(self, burst: asyncio.Future) -> None:
        if burst in self._bursts:
            self._bursts.remove(burst)
        if burst.cancelled():
            return
        exc = burst.exception()
        if exc is not None:
            logger.error("%s: generation burst failed: %s", self.name, exc)
            self.log(f"{self.name}: generation failed: {exc}")

    async def wait_generation(self) -> None:
        """Wait for generation bursts that are currently running."""
        while self._bursts:
            await asyncio.gather(*list(self._bursts), return_exceptions=True)

    @property
    def busy(self) -> bool:
        return super().busy or bool(self._bursts)

    async def close(self) -> None:
        await self.wait_generation()

    # ===== GENERATION =====

    def generate_names(self, num_names: Optional[int] = None) -> int:
        """Generate a batch of labels and try each under every known suffix.

        Returns how many names were published.
        """
        published = 0
        count = num_names if num_names is not None else self.num_names
        for _ in range(count):
            label = self.generate_label()
            if label is None:
                continue
            for sub in self.subs.snapshot():
                if self.send_generated_name(f"{label}.{sub.name}", sub.domain):
                    published += 1
        return published

    def generate_label(self) -> Optional[str]:
        """Draw one label from the model, retrying until its length is valid."""
        k = self.ngram_size
        limit = self.max_label_len + k

        for _ in range(self.max_label_attempts):
            result = SENTINEL * k
            for i in range(limit):
                char = self.generate_char(result[i:i + k])
                if char == TERMINATOR:
                    break
                result += char

            label = result.strip(SENTINEL)
            if 0 < len(label) <= self.max_label_len:
                return label
        return None

    def generate_char(self, ngram: str, r: Optional[float] = None) -> str:
        """Weighted random next character for ngram.

        Unknown contexts back off to shorter ones (dropping the oldest
        character) down to the empty context, then give up with the
        terminator.
        """
        if r is None:
            r = self.rng.random()

        for start in range(len(ngram) + 1):
            char = self.model.draw(ngram[start:], r)
            if char is not None:
                return char
        return TERMINATOR

    def send_generated_name(self, name: str, domain: str) -> bool:
        """Publish a generated name if it is new and in scope."""
        name = name.strip("-")
        if not name or self.out_filter.duplicate(name):
            return False

        regex = self.config.domain_regex(domain)
        if regex is None or not regex.match(name):
            return False

        self.bus.publish(NEW_NAME_TOPIC, Priority.NORMAL, Request(
            name=name,
            domain=domain,
            tag=Tag.ALTERED,
            source=self.name,
        ))
        return True
