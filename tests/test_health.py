import json
import threading
import urllib.error
import urllib.request

import pytest

from mgnx.health import HealthCheck, HealthServer


class FakePool:
    def __init__(self, fail=False):
        self.fail = fail
        self.timeouts = []

    def ping(self, timeout):
        self.timeouts.append(timeout)
        if self.fail:
            raise ConnectionError("down")


class FakeCrawler:
    def __init__(self, count):
        self.count = count

    def node_count(self):
        return self.count


def test_check_all_healthy():
    pool = FakePool()
    server = HealthServer(0, pool, FakeCrawler(5))
    assert server.check() == HealthCheck(ok=True, reasons=[])
    assert pool.timeouts == [2.0]


def test_check_nothing_initialized():
    result = HealthServer(0).check()
    assert result.ok is False
    assert result.reasons == ["db not initialized", "crawler not initialized"]


def test_check_ping_failure_and_empty_routing_table():
    result = HealthServer(0, FakePool(fail=True), FakeCrawler(0)).check()
    assert result.ok is False
    assert result.reasons == ["db ping failed", "routing table node count is 0"]


def test_set_crawler_makes_ready():
    server = HealthServer(0, FakePool())
    assert not server.check().ok
    server.set_crawler(FakeCrawler(3))
    assert server.check().ok


@pytest.fixture
def serving():
    server = HealthServer(0, FakePool(), FakeCrawler(1))
    port = server.bind()
    stop = threading.Event()
    thread = threading.Thread(target=server.serve, args=(stop,), daemon=True)
    thread.start()
    yield server, port, stop, thread
    stop.set()
    thread.join(5)


def _fetch(port, path):
    """Return (status, headers, body) for a GET, whatever the status."""
    url = f"http://127.0.0.1:{port}{path}"
    try:
        with urllib.request.urlopen(url, timeout=5) as response:
            return response.status, response.headers, response.read()
    except urllib.error.HTTPError as error:
        return error.code, error.headers, error.read()


def test_liveness_ok(serving):
    _, port, _, _ = serving
    status, _, body = _fetch(port, "/liveness")
    assert status == 200
    assert body == b""


def test_readiness_ok(serving):
    _, port, _, _ = serving
    status, headers, body = _fetch(port, "/readiness")
    assert status == 200
    assert headers["Content-Type"] == "application/json"
    assert json.loads(body) == {"ok": True}


def test_readiness_unavailable(serving):
    server, port, _, _ = serving
    server.set_crawler(FakeCrawler(0))
    status, _, body = _fetch(port, "/readiness")
    assert status == 503
    assert json.loads(body) == {"ok": False, "reasons": ["routing table node count is 0"]}


def test_unknown_path(serving):
    _, port, _, _ = serving
    status, _, _ = _fetch(port, "/nope")
    assert status == 404


def test_stop_ends_serving(serving):
    _, _, stop, thread = serving
    stop.set()
    thread.join(5)
    assert not thread.is_alive()


def test_bind_conflict(serving):
    _, port, _, _ = serving
    with pytest.raises(OSError) as info:
        HealthServer(port).bind()
    assert "health server: bind" in str(info.value)