import socket
import struct
import threading

import pytest

from mgnx.scrape_client import (
    CONNECT_MAGIC,
    MAX_PER_BATCH,
    ScrapeClient,
    ScrapeError,
    ScrapeResult,
    parse_udp_addr,
)


class FakeTracker:
    def __init__(self, seeders, leechers=0, completed=0):
        self.seeders = seeders
        self.leechers = leechers
        self.completed = completed
        self.connect_requests = []
        self.scrape_batches = []
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.settimeout(0.05)
        self.stop = threading.Event()
        self.thread = threading.Thread(target=self._loop, daemon=True)

    @property
    def url(self):
        return f"udp://127.0.0.1:{self.sock.getsockname()[1]}/announce"

    def __enter__(self):
        self.thread.start()
        return self

    def __exit__(self, *exc):
        self.stop.set()
        self.thread.join(2)
        self.sock.close()

    def _loop(self):
        while not self.stop.is_set():
            try:
                data, peer = self.sock.recvfrom(4096)
            except socket.timeout:
                continue
            except OSError:
                return
            action, tx = struct.unpack(">ii", data[8:16])
            if action == 0:
                self.connect_requests.append(data)
                self.sock.sendto(struct.pack(">iiq", 0, tx, 1234), peer)
            elif action == 2:
                hashes = [data[i:i + 20] for i in range(16, len(data), 20)]
                self.scrape_batches.append(hashes)
                body = b"".join(
                    struct.pack(">iii", self.seeders, self.completed, self.leechers) for _ in hashes
                )
                self.sock.sendto(struct.pack(">ii", 2, tx) + body, peer)


def _hashes(n):
    return [bytes([i % 256]) .hex() * 20 for i in range(n)]


def test_parse_udp_addr_returns_host_and_port():
    assert parse_udp_addr("udp://tracker.example.com:6969/announce") == "tracker.example.com:6969"


def test_parse_udp_addr_rejects_other_schemes():
    with pytest.raises(ScrapeError):
        parse_udp_addr("http://tracker.example.com/announce")


def test_client_requires_a_valid_tracker():
    with pytest.raises(ScrapeError):
        ScrapeClient(1.0, 1.0, "http://tracker.example.com/announce")


def test_client_skips_invalid_urls():
    client = ScrapeClient(1.0, 1.0, "http://tracker.example.com/announce",
                          "udp://tracker.example.com:6969/announce")
    assert client.addresses == ("tracker.example.com:6969",)


def test_scrape_reads_counts_and_sends_magic():
    hashes = _hashes(3)
    with FakeTracker(seeders=7, leechers=2, completed=40) as tracker:
        client = ScrapeClient(1.0, 1.0, tracker.url)
        results = client.scrape(hashes)
    assert results == [ScrapeResult(h, seeders=7, leechers=2, complete=40) for h in hashes]
    assert tracker.connect_requests[0][:8] == struct.pack(">q", CONNECT_MAGIC)
    assert tracker.scrape_batches[0] == [bytes.fromhex(h) for h in hashes]


def test_scrape_splits_into_batches():
    hashes = _hashes(MAX_PER_BATCH + 6)
    with FakeTracker(seeders=1) as tracker:
        results = ScrapeClient(1.0, 1.0, tracker.url).scrape(hashes)
    assert [r.infohash for r in results] == hashes
    assert [len(b) for b in tracker.scrape_batches] == [MAX_PER_BATCH, 6]


def test_scrape_prefers_tracker_with_seeders():
    hashes = _hashes(2)
    with FakeTracker(seeders=0) as empty, FakeTracker(seeders=7) as busy:
        client = ScrapeClient(1.0, 1.0, empty.url, busy.url)
        for _ in range(5):
            results = client.scrape(hashes)
            assert all(r.seeders == 7 for r in results)


def test_scrape_returns_last_results_without_seeders():
    hashes = _hashes(2)
    with FakeTracker(seeders=0) as first, FakeTracker(seeders=0) as second:
        results = ScrapeClient(1.0, 1.0, first.url, second.url).scrape(hashes)
    assert [r.infohash for r in results] == hashes
    assert all(r.seeders == 0 for r in results)


def test_scrape_raises_when_all_unreachable():
    client = ScrapeClient(0.3, 0.3, "udp://127.0.0.1:1/announce")
    with pytest.raises(ScrapeError, match="all trackers unreachable"):
        client.scrape(_hashes(1))


def test_scrape_with_invalid_infohash_fails():
    with FakeTracker(seeders=3) as tracker:
        client = ScrapeClient(1.0, 1.0, tracker.url)
        with pytest.raises(ScrapeError):
            client.scrape(["zz"])