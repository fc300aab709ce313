"""URLScan data source.

Searches urlscan.io for existing scans of a domain and collects the link
domains those scans saw. With an API key and no existing scans, submits a
new public scan and polls for the result with bounded backoff.

All HTTP goes through aiohttp. Network failures are reported on the bus
"log" topic and abandon the current request; bad JSON is dropped quietly.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set
from urllib.parse import quote

import aiohttp

from subsynth.core.eventbus import EventBus, DNS_REQUEST_TOPIC, NEW_NAME_TOPIC
from subsynth.core.service import BaseService
from subsynth.util.concurrency import backoff_delays
from subsynth.util.config import Config
from subsynth.util.types import Credentials, Priority, Request, ServiceState, Tag

logger = logging.getLogger(__name__)


API_BASE = "https://urlscan.io/api/v1"
USER_AGENT = "subsynth/2.0"
SUBMISSION_OK = "Submission successful"


class HTTPStatusError(Exception):
    """Non-2xx response from the source."""

    def __init__(self, url: str, status: int):
        super().__init__(f"{url}: HTTP {status}")
        self.url = url
        self.status = status


def clean_name(name: str) -> str:
    """Lowercase, drop a wildcard prefix and the trailing root dot."""
    name = name.strip().lower().rstrip('.')
    while name.startswith('*.'):
        name = name[2:]
    return name


class URLScanService(BaseService):
    """The service that handles access to the URLScan data source."""

    source_type = "api"

    def __init__(self, config: Config, bus: EventBus,
                 poll_base: float = 2.0, poll_cap: float = 30.0, poll_attempts: int = 8):
        super().__init__("URLScan", config, bus)
        self.creds: Optional[Credentials] = None
        self.poll_base = poll_base
        self.poll_cap = poll_cap
        self.poll_attempts = poll_attempts
        self._session: Optional[aiohttp.ClientSession] = None

    def on_start(self) -> None:
        self.creds = self.config.credentials("urlscan")
        if self.creds is None or not self.creds.has_key():
            logger.info("%s: API key data was not provided", self.name)
            self.log(f"{self.name}: API key data was not provided")

        self.set_rate_limit(self.config.rate_limit("urlscan", 2.0))
        self.bus.subscribe(DNS_REQUEST_TOPIC, self.send_request)

    def on_stop(self) -> None:
        if self._session is not None and not self._session.closed:
            session, self._session = self._session, None
            asyncio.get_running_loop().create_task(session.close())

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    # ===== REQUEST HANDLING =====

    async def on_request(self, req: Request) -> None:
        regex = self.config.domain_regex(req.domain)
        if regex is None:
            return

        await self.check_rate_limit()
        self.set_active()
        self.log(f"Querying {self.name} for {req.domain} subdomains")

        url = self.search_url(req.domain)
        try:
            results = await self._get_json(url)
        except (aiohttp.ClientError, asyncio.TimeoutError, HTTPStatusError) as e:
            self.log(f"{self.name}: {url}: {e}")
            return
        except ValueError:
            logger.debug("%s: unparsable search response for %s", self.name, req.domain)
            return

        ids = self._result_ids(results)
        if not ids:
            scan_id = await self.attempt_submission(req.domain)
            if scan_id:
                ids = [scan_id]

        subs: Set[str] = set()
        for scan_id in ids:
            subs |= await self.get_subs_from_result(scan_id)

        for name in sorted(subs):
            if regex.match(name):
                self.bus.publish(NEW_NAME_TOPIC, Priority.HIGH, Request(
                    name=name,
                    domain=req.domain,
                    tag=Tag.API,
                    source=self.name,
                ))

    def _result_ids(self, results: Any) -> List[str]:
        if not isinstance(results, dict):
            return []
        try:
            total = int(results.get("total", 0) or 0)
        except (TypeError, ValueError):
            return []
        if total <= 0:
            return []
        ids = []
        for result in results.get("results") or []:
            if isinstance(result, dict) and result.get("_id"):
                ids.append(str(result["_id"]))
        return ids

    async def get_subs_from_result(self, scan_id: str) -> Set[str]:
        """Link domains seen by one scan."""
        subs: Set[str] = set()

        await self.check_rate_limit()
        self.set_active()

        url = self.result_url(scan_id)
        try:
            data = await self._get_json(url)
        except (aiohttp.ClientError, asyncio.TimeoutError, HTTPStatusError) as e:
            self.log(f"{self.name}: {url}: {e}")
            return subs
        except ValueError:
            return subs

        if not isinstance(data, dict):
            return subs
        lists = data.get("lists") or {}
        if not isinstance(lists, dict):
            return subs
        for name in lists.get("linkDomains") or []:
            if isinstance(name, str):
                cleaned = clean_name(name)
                if cleaned:
                    subs.add(cleaned)
        return subs

    async def attempt_submission(self, domain: str) -> Optional[str]:
        """Submit a public scan and wait for it to finish. Returns the scan id."""
        if self.creds is None or not self.creds.has_key():
            return None

        await self.check_rate_limit()
        self.set_active()

        url = f"{API_BASE}/scan/"
        headers = {
            "API-Key": self.creds.key,
        }
        body = {"url": domain, "public": "on", "customagent": USER_AGENT}
        try:
            result = await self._post_json(url, body, headers)
        except (aiohttp.ClientError, asyncio.TimeoutError, HTTPStatusError) as e:
            self.log(f"{self.name}: {url}: {e}")
            return None
        except ValueError:
            return None

        if not isinstance(result, dict) or result.get("message") != SUBMISSION_OK:
            return None
        scan_id, api_url = result.get("uuid"), result.get("api")
        if not scan_id or not api_url:
            return None

        # The result API answers 404 until the scan has finished
        for delay in backoff_delays(self.poll_base, 2.0, self.poll_cap, self.poll_attempts):
            try:
                await self._get_json(api_url)
                return scan_id
            except HTTPStatusError as e:
                if e.status != 404:
                    self.log(f"{self.name}: {api_url}: {e}")
                    return None
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                self.log(f"{self.name}: {api_url}: {e}")
                return None
            except ValueError:
                # Finished, just not JSON
                return scan_id

            await asyncio.sleep(delay)
            await self.check_rate_limit()
            self.set_active()

        self.log(f"{self.name}: gave up waiting for scan {scan_id} of {domain}")
        return None

    # ===== HTTP =====

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            # close() may already have run; a new session would never be closed
            if self.state is ServiceState.STOPPED:
                raise aiohttp.ClientConnectionError(f"{self.name} is stopped")
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.http_timeout),
                headers={"User-Agent": USER_AGENT},
            )
        return self._session

    async def _get_json(self, url: str) -> Any:
        async with self._get_session().get(url) as resp:
            if resp.status != 200:
                raise HTTPStatusError(url, resp.status)
            return await resp.json(content_type=None)

    async def _post_json(self, url: str, body: Dict[str, Any], headers: Dict[str, str]) -> Any:
        async with self._get_session().post(url, json=body, headers=headers) as resp:
            if resp.status != 200:
                raise HTTPStatusError(url, resp.status)
            return await resp.json(content_type=None)

    @staticmethod
    def search_url(domain: str) -> str:
        return f"{API_BASE}/search/?q=domain:{quote(domain)}"

    @staticmethod
    def result_url(scan_id: str) -> str:
        return f"{API_BASE}/result/{quote(scan_id)}/"
