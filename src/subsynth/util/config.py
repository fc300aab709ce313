"""Run configuration and scope matching.

Loads settings from .env (python-dotenv) and the process environment.
Scope is the set of target domains: a name is in scope when it is one of
those domains or a subdomain of one.
"""

import os
import re
from pathlib import Path
from typing import Dict, List, Optional, Pattern

from dotenv import load_dotenv

from .types import Credentials


class ConfigurationError(ValueError):
    """Missing or invalid configuration."""


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


class Config:
    """Configuration for a discovery run.

    Single source of truth for scope, Markov tuning and data source
    credentials. Construct directly in tests; use load_config() for runs.
    """

    def __init__(self,
                 domains: List[str],
                 alterations: bool = True,
                 ngram_size: int = 3,
                 num_names: int = 10000,
                 max_label_len: int = 63,
                 http_timeout: float = 15.0,
                 rate_limits: Optional[Dict[str, float]] = None,
                 credentials: Optional[Dict[str, Credentials]] = None):
        cleaned = [d.strip().lower().rstrip('.') for d in domains if d and d.strip()]
        if not cleaned:
            raise ConfigurationError("at least one target domain is required (DOMAINS=example.com)")
        if ngram_size < 1:
            raise ConfigurationError(f"n-gram size must be >= 1, got {ngram_size}")
        if num_names < 1:
            raise ConfigurationError(f"generation batch size must be >= 1, got {num_names}")
        if not 0 < max_label_len <= 63:
            raise ConfigurationError(f"max label length must be in 1..63, got {max_label_len}")

        self.domains = list(dict.fromkeys(cleaned))
        self.alterations = alterations
        self.ngram_size = ngram_size
        self.num_names = num_names
        self.max_label_len = max_label_len
        self.http_timeout = http_timeout
        self.rate_limits = {k.lower(): v for k, v in (rate_limits or {}).items()}
        self._credentials = {k.lower(): v for k, v in (credentials or {}).items()}

        # Compiled once, handed out to every service
        self._regexes: Dict[str, Pattern] = {
            d: re.compile(r'^(?:[a-z0-9_](?:[a-z0-9_-]{0,61}[a-z0-9_])?\.)*' + re.escape(d) + r'$')
            for d in self.domains
        }

    def domain_regex(self, domain: str) -> Optional[Pattern]:
        """Matcher for names under `domain`, or None if the domain is not a target."""
        return self._regexes.get(domain.lower().rstrip('.'))

    def which_domain(self, name: str) -> Optional[str]:
        """Return the target domain that `name` belongs to (longest match wins)."""
        name = name.lower().rstrip('.')
        best = None
        for d in self.domains:
            if name == d or name.endswith('.' + d):
                if best is None or len(d) > len(best):
                    best = d
        return best

    def is_domain_in_scope(self, name: str) -> bool:
        domain = self.which_domain(name)
        if domain is None:
            return False
        return bool(self._regexes[domain].match(name.lower().rstrip('.')))

    def credentials(self, source: str) -> Optional[Credentials]:
        return self._credentials.get(source.lower())

    def rate_limit(self, source: str, default: float) -> float:
        return self.rate_limits.get(source.lower(), default)

    def to_dict(self) -> dict:
        """Convert config to dict for logging. Credentials are never included."""
        return {
            'domains': self.domains,
            'alterations': self.alterations,
            'ngram_size': self.ngram_size,
            'num_names': self.num_names,
            'max_label_len': self.max_label_len,
            'http_timeout': self.http_timeout,
            'rate_limits': dict(self.rate_limits),
            'sources_with_credentials': sorted(self._credentials),
        }

    def __repr__(self) -> str:
        return (
            f"Config(\n"
            f"  domains={','.join(self.domains)}\n"
            f"  alterations={self.alterations}\n"
            f"  ngram_size={self.ngram_size} num_names={self.num_names}\n"
            f")"
        )


def load_config(env_file: Optional[Path] = None, domains: Optional[List[str]] = None) -> Config:
    """Load configuration from .env and the environment.

    Explicit `domains` (e.g. from the command line) take precedence over DOMAINS.
    Raises ConfigurationError if no domain is configured anywhere.
    """
    if env_file is None:
        env_file = Path.cwd() / ".env"
    env_file = Path(env_file)
    if env_file.exists():
        load_dotenv(env_file)

    if not domains:
        raw = os.getenv("DOMAINS") or os.getenv("DOMAIN") or ""
        domains = [d for d in raw.split(",") if d.strip()]
    if not domains:
        raise ConfigurationError("DOMAINS must be set in .env file (e.g., DOMAINS=example.com)")

    credentials = {}
    urlscan_key = os.getenv("URLSCAN_API_KEY")
    if urlscan_key:
        credentials["urlscan"] = Credentials(key=urlscan_key)

    return Config(
        domains=domains,
        alterations=_env_bool("ALTERATIONS", "true"),
        ngram_size=_env_int("MARKOV_NGRAM_SIZE", 3),
        num_names=_env_int("MARKOV_NUM_NAMES", 10000),
        max_label_len=_env_int("MAX_LABEL_LEN", 63),
        http_timeout=_env_float("HTTP_TIMEOUT", 15.0),
        rate_limits={"urlscan": _env_float("URLSCAN_RATE_LIMIT", 2.0)},
        credentials=credentials,
    )
