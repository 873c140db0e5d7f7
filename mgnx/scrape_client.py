"""UDP tracker scrape client."""

from __future__ import annotations

import binascii
import random
import socket
import struct
from dataclasses import dataclass
from typing import Sequence
from urllib.parse import urlsplit

CONNECT_MAGIC = 0x41727101980
ACTION_CONNECT = 0
ACTION_SCRAPE = 2
MAX_PER_BATCH = 74  # keeps a request within a typical 1500-byte MTU


class ScrapeError(Exception):
    """Raised when trackers cannot be scraped."""


@dataclass(frozen=True)
class ScrapeResult:
    """Per-torrent data returned by a tracker scrape."""

    infohash: str
    seeders: int = 0
    leechers: int = 0
    complete: int = 0  # all-time download count


def parse_udp_addr(tracker_url: str) -> str:
    """Return the ``host:port`` part of a ``udp://`` tracker URL."""
    try:
        parts = urlsplit(tracker_url)
    except ValueError as exc:
        raise ScrapeError(f"parse tracker URL {tracker_url!r}: {exc}") from exc
    if parts.scheme != "udp":
        raise ScrapeError(f"tracker {tracker_url!r} is not a UDP tracker")
    return parts.netloc.rpartition("@")[2]


def _split_host_port(addr: str) -> tuple[str, int]:
    if addr.startswith("["):
        close = addr.find("]")
        if close < 0 or addr[close + 1:close + 2] != ":":
            raise ScrapeError(f"invalid address {addr!r}")
        host, port = addr[1:close], addr[close + 2:]
    else:
        host, sep, port = addr.rpartition(":")
        if not sep or ":" in host:
            raise ScrapeError(f"invalid address {addr!r}")
    if not port.isdigit() or int(port) > 65535:
        raise ScrapeError(f"invalid port in address {addr!r}")
    return host, int(port)


def _new_transaction_id() -> int:
    return random.randrange(0, 1 << 31)


class ScrapeClient:
    """Scrapes UDP trackers in random order, preferring the first that reports seeders."""

    def __init__(self, dial_timeout: float, read_timeout: float, *tracker_urls: str) -> None:
        addrs = []
        for url in tracker_urls:
            try:
                addrs.append(parse_udp_addr(url))
            except ScrapeError:
                continue
        if not addrs:
            raise ScrapeError("no valid UDP tracker URLs provided")
        self._addrs = tuple(addrs)
        self._dial_timeout = dial_timeout
        self._read_timeout = read_timeout

    @property
    def addresses(self) -> tuple[str, ...]:
        return self._addrs

    def scrape(self, infohashes: Sequence[str]) -> list[ScrapeResult]:
        """Return results from the first tracker with seeders, else from the last reachable one."""
        last_results: list[ScrapeResult] = []
        reachable = 0
        addrs = list(self._addrs)
        random.shuffle(addrs)
        for addr in addrs:
            try:
                results = self._scrape_tracker(addr, infohashes)
            except (OSError, ScrapeError):
                continue
            reachable += 1
            if any(r.seeders > 0 for r in results):
                return results
            last_results = results
        if reachable == 0:
            raise ScrapeError("all trackers unreachable")
        return last_results

    def _dial(self, addr: str) -> socket.socket:
        host, port = _split_host_port(addr)
        family, kind, proto, _, sockaddr = socket.getaddrinfo(host, port, 0, socket.SOCK_DGRAM)[0]
        sock = socket.socket(family, kind, proto)
        try:
            sock.settimeout(self._dial_timeout or None)
            sock.connect(sockaddr)
        except BaseException:
            sock.close()
            raise
        return sock

    def _scrape_tracker(self, addr: str, infohashes: Sequence[str]) -> list[ScrapeResult]:
        try:
            sock = self._dial(addr)
        except OSError as exc:
            raise ScrapeError(f"dial {addr}: {exc}") from exc
        with sock:
            try:
                connection_id = self._connect(sock)
            except OSError as exc:
                raise ScrapeError(f"connect {addr}: {exc}") from exc
            results: list[ScrapeResult] = []
            for start in range(0, len(infohashes), MAX_PER_BATCH):
                batch = infohashes[start:start + MAX_PER_BATCH]
                try:
                    results.extend(self._scrape_batch(sock, connection_id, batch))
                except (OSError, ScrapeError) as exc:
                    raise ScrapeError(f"scrape batch: {exc}") from exc
            return results

    def _exchange(self, sock: socket.socket, request: bytes, size: int) -> bytes:
        sock.settimeout(self._read_timeout)
        sock.send(request)
        return sock.recv(size)

    def _connect(self, sock: socket.socket) -> int:
        tx_id = _new_transaction_id()
        request = struct.pack(">qii", CONNECT_MAGIC, ACTION_CONNECT, tx_id)
        response = self._exchange(sock, request, 16)
        if len(response) < 16:
            raise ScrapeError(f"connect response too short: {len(response)} bytes")
        action, got_tx, connection_id = struct.unpack(">iiq", response[:16])
        if action != ACTION_CONNECT:
            raise ScrapeError(f"unexpected action in connect response: {action & 0xFFFFFFFF}")
        if got_tx != tx_id:
            raise ScrapeError("transaction ID mismatch in connect response")
        return connection_id

    def _scrape_batch(
        self, sock: socket.socket, connection_id: int, infohashes: Sequence[str]
    ) -> list[ScrapeResult]:
        tx_id = _new_transaction_id()
        parts = [struct.pack(">qii", connection_id, ACTION_SCRAPE, tx_id)]
        for infohash in infohashes:
            try:
                raw = binascii.unhexlify(infohash)
            except (binascii.Error, ValueError) as exc:
                raise ScrapeError(f"invalid infohash {infohash!r}: {exc}") from exc
            parts.append(raw[:20].ljust(20, b"\x00"))

        response = self._exchange(sock, b"".join(parts), 8 + 12 * len(infohashes))
        if len(response) < 8:
            raise ScrapeError(f"scrape response too short: {len(response)} bytes")
        action, got_tx = struct.unpack(">ii", response[:8])
        if action != ACTION_SCRAPE:
            raise ScrapeError(f"unexpected action in scrape response: {action & 0xFFFFFFFF}")
        if got_tx != tx_id:
            raise ScrapeError("transaction ID mismatch in scrape response")

        count = (len(response) - 8) // 12
        results = []
        for infohash, offset in zip(infohashes, range(8, 8 + 12 * count, 12)):
            seeders, complete, leechers = struct.unpack(">iii", response[offset:offset + 12])
            results.append(ScrapeResult(infohash, seeders, leechers, complete))
        return results