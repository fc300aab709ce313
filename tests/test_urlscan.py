"""
Unit Tests for the URLScan data source

HTTP is replaced by canned responses keyed on URL, so nothing here touches
the network.
"""

import asyncio

import aiohttp
import pytest

from subsynth.core.eventbus import EventBus, DNS_REQUEST_TOPIC, LOG_TOPIC, NEW_NAME_TOPIC
from subsynth.services.urlscan import HTTPStatusError, URLScanService, clean_name
from subsynth.util.config import Config
from subsynth.util.types import Credentials, Priority, Request, Tag

from conftest import settle


SEARCH = URLScanService.search_url("example.com")


class FakeHTTP:
    """Serves canned responses; a list of responses is consumed in order."""

    def __init__(self, routes):
        self.routes = routes
        self.calls = []

    def _next(self, url):
        self.calls.append(url)
        if url not in self.routes:
            raise HTTPStatusError(url, 404)
        response = self.routes[url]
        if isinstance(response, list):
            response = response.pop(0) if len(response) > 1 else response[0]
        if isinstance(response, Exception):
            raise response
        return response

    async def get_json(self, url):
        return self._next(url)

    async def post_json(self, url, body, headers):
        self.calls.append(("POST", url, body, headers.get("API-Key")))
        return self._next(url)


def make_service(config, routes, **kwargs):
    bus = EventBus()
    svc = URLScanService(config, bus, **kwargs)
    http = FakeHTTP(routes)
    svc._get_json = http.get_json
    svc._post_json = http.post_json
    return bus, svc, http


def run_request(bus, svc, domain="example.com"):
    """Start the service, ask it about domain and collect what it publishes."""
    async def scenario():
        names, logs = [], []
        bus.subscribe(NEW_NAME_TOPIC, names.append)
        bus.subscribe(LOG_TOPIC, logs.append)
        svc.start()
        bus.publish(DNS_REQUEST_TOPIC, Priority.HIGH, Request(name=domain, domain=domain))
        await settle(bus, svc)
        svc.stop()
        await svc.join()
        await svc.close()
        return names, logs

    return asyncio.run(scenario())


@pytest.fixture
def keyed_config():
    return Config(
        domains=["example.com"],
        rate_limits={"urlscan": 0},
        credentials={"urlscan": Credentials(key="test-api-key")},
    )


def test_clean_name():
    """Test clean name"""
    assert clean_name(" *.WWW.Example.com. ") == "www.example.com"
    assert clean_name("*.*.api.example.com") == "api.example.com"
    assert clean_name("") == ""


class TestSearch:

    def test_link_domains_from_existing_scans(self, config):
        """Test link domains from existing scans"""
        routes = {
            SEARCH: {"total": 2, "results": [{"_id": "scan-1"}, {"_id": "scan-2"}]},
            URLScanService.result_url("scan-1"): {"lists": {"linkDomains": [
                "WWW.example.com", "cdn.example.com.", "tracker.other.net",
            ]}},
            URLScanService.result_url("scan-2"): {"lists": {"linkDomains": [
                "*.api.example.com", "www.example.com",
            ]}},
        }
        bus, svc, http = make_service(config, routes)
        names, logs = run_request(bus, svc)

        assert [r.name for r in names] == ["api.example.com", "cdn.example.com", "www.example.com"]
        assert all(r.tag == Tag.API for r in names)
        assert all(r.source == "URLScan" for r in names)
        assert all(r.domain == "example.com" for r in names)
        assert "Querying URLScan for example.com subdomains" in logs

    def test_http_error_is_logged_and_abandons_request(self, config):
        """Test http error is logged and abandons request"""
        bus, svc, http = make_service(config, {SEARCH: HTTPStatusError(SEARCH, 500)})
        names, logs = run_request(bus, svc)

        assert names == []
        assert any("HTTP 500" in line for line in logs)
        assert http.calls == [SEARCH]

    def test_malformed_json_is_dropped(self, config):
        """Test malformed json is dropped"""
        bus, svc, http = make_service(config, {SEARCH: ValueError("Expecting value")})
        names, logs = run_request(bus, svc)

        assert names == []
        assert not any("Expecting value" in line for line in logs)

    def test_no_results_without_key_does_not_submit(self, config):
        """Test no results without key does not submit"""
        bus, svc, http = make_service(config, {SEARCH: {"total": 0, "results": []}})
        names, logs = run_request(bus, svc)

        assert names == []
        assert http.calls == [SEARCH]
        assert any("API key data was not provided" in line for line in logs)

    def test_out_of_scope_domain_makes_no_calls(self, config):
        """Test out of scope domain makes no calls"""
        bus, svc, http = make_service(config, {})
        names, logs = run_request(bus, svc, domain="other.org")

        assert names == []
        assert http.calls == []

    def test_non_dict_lists_is_dropped_quietly(self, config):
        """Test a result whose lists field is not an object yields nothing and no error"""
        routes = {
            SEARCH: {"total": 1, "results": [{"_id": "scan-1"}]},
            URLScanService.result_url("scan-1"): {"lists": ["www.example.com"]},
        }
        bus, svc, http = make_service(config, routes)
        names, logs = run_request(bus, svc)

        assert names == []
        assert not any("example.com:" in line for line in logs)


class TestSubmission:

    SCAN_URL = "https://urlscan.io/api/v1/scan/"
    RESULT_API = "https://urlscan.io/api/v1/result/new-scan/"

    def submission_routes(self, poll_responses):
        return {
            SEARCH: {"total": 0, "results": []},
            self.SCAN_URL: {
                "message": "Submission successful",
                "uuid": "new-scan",
                "api": self.RESULT_API,
            },
            self.RESULT_API: poll_responses,
        }

    def test_submit_and_poll_until_finished(self, keyed_config):
        """Test submit and poll until finished"""
        finished = {"lists": {"linkDomains": ["mail.example.com", "example.net"]}}
        routes = self.submission_routes([
            HTTPStatusError(self.RESULT_API, 404),
            HTTPStatusError(self.RESULT_API, 404),
            finished,
        ])
        bus, svc, http = make_service(keyed_config, routes, poll_base=0, poll_cap=0)
        names, logs = run_request(bus, svc)

        assert [r.name for r in names] == ["mail.example.com"]
        post = [c for c in http.calls if isinstance(c, tuple)]
        assert post == [("POST", self.SCAN_URL,
                         {"url": "example.com", "public": "on", "customagent": "subsynth/2.0"},
                         "test-api-key")]
        assert http.calls.count(self.RESULT_API) == 4

    def test_gives_up_after_bounded_polling(self, keyed_config):
        """Test gives up after bounded polling"""
        routes = self.submission_routes([HTTPStatusError(self.RESULT_API, 404)])
        bus, svc, http = make_service(keyed_config, routes,
                                      poll_base=0, poll_cap=0, poll_attempts=3)
        names, logs = run_request(bus, svc)

        assert names == []
        assert http.calls.count(self.RESULT_API) == 3
        assert any("gave up waiting for scan new-scan" in line for line in logs)

    def test_other_poll_errors_stop_waiting(self, keyed_config):
        """Test other poll errors stop waiting"""
        routes = self.submission_routes([HTTPStatusError(self.RESULT_API, 500)])
        bus, svc, http = make_service(keyed_config, routes, poll_base=0, poll_cap=0)
        names, logs = run_request(bus, svc)

        assert names == []
        assert http.calls.count(self.RESULT_API) == 1
        assert any("HTTP 500" in line for line in logs)

    def test_rejected_submission(self, keyed_config):
        """Test rejected submission"""
        routes = {
            SEARCH: {"total": 0},
            self.SCAN_URL: {"message": "Rate limited"},
        }
        bus, svc, http = make_service(keyed_config, routes)
        names, logs = run_request(bus, svc)

        assert names == []
        assert self.RESULT_API not in http.calls


class FakeResponse:

    def __init__(self, payload, status=200):
        self.payload = payload
        self.status = status
        self.json_kwargs = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def json(self, **kwargs):
        self.json_kwargs = kwargs
        return self.payload


class FakeSession:

    def __init__(self, response):
        self.response = response
        self.posted = None
        self.closed = False

    def get(self, url):
        return self.response

    def post(self, url, **kwargs):
        self.posted = kwargs
        return self.response


class TestHTTP:
    """Session handling and JSON decoding"""

    def test_get_json_decodes_any_content_type(self, config):
        """Test JSON is decoded regardless of the declared content type"""
        svc = URLScanService(config, EventBus())
        response = FakeResponse({"total": 0})
        svc._session = FakeSession(response)

        assert asyncio.run(svc._get_json(SEARCH)) == {"total": 0}
        assert response.json_kwargs == {"content_type": None}

    def test_post_json_sends_json_body(self, keyed_config):
        """Test the submission body is sent as JSON"""
        svc = URLScanService(keyed_config, EventBus())
        session = FakeSession(FakeResponse({"message": "Submission successful"}))
        svc._session = session

        body = {"url": "example.com", "public": "on"}
        result = asyncio.run(svc._post_json("https://urlscan.io/api/v1/scan/", body, {"API-Key": "k"}))

        assert result == {"message": "Submission successful"}
        assert session.posted == {"json": body, "headers": {"API-Key": "k"}}

    def test_non_200_raises_status_error(self, config):
        """Test a non-200 response raises HTTPStatusError"""
        svc = URLScanService(config, EventBus())
        svc._session = FakeSession(FakeResponse(None, status=429))

        with pytest.raises(HTTPStatusError) as err:
            asyncio.run(svc._get_json(SEARCH))
        assert err.value.status == 429

    def test_no_new_session_after_stop(self, config):
        """Test a stopped service refuses to open a session close() would miss"""
        async def scenario():
            svc = URLScanService(config, EventBus())
            svc.start()
            svc.stop()
            await svc.join()
            await svc.close()
            with pytest.raises(aiohttp.ClientConnectionError):
                svc._get_session()
            return svc

        svc = asyncio.run(scenario())
        assert svc._session is None

    def test_in_flight_request_after_stop_is_abandoned(self, config):
        """Test a handler that reaches the network after stop logs and gives up"""
        async def scenario():
            bus = EventBus()
            logs = []
            bus.subscribe(LOG_TOPIC, logs.append)
            svc = URLScanService(config, bus)
            svc.start()
            svc.stop()
            await svc.on_request(Request(name="example.com", domain="example.com"))
            await bus.drain()
            await svc.close()
            return svc, logs

        svc, logs = asyncio.run(scenario())
        assert svc._session is None
        assert any("URLScan is stopped" in line for line in logs)
