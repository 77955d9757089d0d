import json
import re

import pytest

import pac_blocklist
from pac_blocklist import Config, JSONStore, ProxyBackend, ProxyController

T0 = 1_600_000_000_000


class FakeClock:
    """Settable epoch-millisecond clock."""

    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += int(seconds * 1000)


class FakeHTTPClient:
    """Stands in for HTTPClient; replays queued results in order."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    def queue(self, *results):
        self.results.extend(results)

    def get_json(self, url, etag=None):
        self.calls.append((url, etag))
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    def close(self):
        pass


class RecordingBackend(ProxyBackend):
    def __init__(self, reject=False):
        super().__init__()
        self.reject = reject
        self.applied = []
        self.cleared = 0

    def apply_pac(self, script, scope=pac_blocklist.PROXY_SCOPE, mandatory=False):
        if self.reject:
            self.report_error({'error': 'rejected', 'fatal': mandatory})
            raise pac_blocklist.ConfigSubmissionError("rejected")
        self.applied.append((script, scope, mandatory))

    def clear_pac(self, scope=pac_blocklist.PROXY_SCOPE):
        self.cleared += 1


def embedded_domains(script):
    match = re.search(r"var domains = (.*);", script)
    assert match, "no domain array in script"
    return json.loads(match.group(1))


def registry_ok(*domains, etag=None):
    return {'domains': list(domains)}, etag, True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    return JSONStore(str(tmp_path / "state.json"))


@pytest.fixture
def http():
    return FakeHTTPClient()


@pytest.fixture
def backend():
    return RecordingBackend()


@pytest.fixture
def config(tmp_path):
    return Config(
        registry_url="https://registry.test/domains",
        state_file=str(tmp_path / "state.json"),
        pac_file=str(tmp_path / "proxy.pac"),
        https_proxy="ssl.proxy.test:443",
        http_proxy="plain.proxy.test:80",
    )


@pytest.fixture
def controller(config, backend, store, http, clock):
    return ProxyController(config, backend, store=store, http_client=http, clock=clock)
