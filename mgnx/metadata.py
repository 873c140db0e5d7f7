"""Fetching torrent metadata from a peer over the extension protocol."""

from __future__ import annotations

import contextlib
import hashlib
import os
import socket
import struct
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol

from .bencode import BencodeError, decode, decode_prefix, encode
from .recorder import Recorder

PROTOCOL = b"BitTorrent protocol"
HANDSHAKE_LENGTH = 68
EXTENDED_MESSAGE = 20
METADATA_PIECE_SIZE = 16384
DEFAULT_TIMEOUT = 6.0

Address = tuple[str, int]
Dialer = Callable[[Address, Optional[float]], socket.socket]


class MetadataError(Exception):
    """Raised when metadata cannot be fetched or decoded."""


@dataclass(frozen=True)
class FileInfo:
    path: str
    size: int


@dataclass
class TorrentInfo:
    name: str
    files: list[FileInfo] = field(default_factory=list)
    total_size: int = 0


class _Readable(Protocol):
    def read(self, n: int) -> bytes: ...


class _Writable(Protocol):
    def write(self, data: bytes) -> Any: ...


def _read_exact(stream: _Readable, n: int) -> bytes:
    chunks = []
    remaining = n
    while remaining > 0:
        chunk = stream.read(remaining)
        if not chunk:
            raise MetadataError("unexpected EOF")
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def send_handshake(stream: _Writable, infohash: bytes, peer_id: bytes) -> None:
    """Write a handshake that advertises the extension protocol."""
    reserved = bytearray(8)
    reserved[5] |= 0x10
    stream.write(bytes([len(PROTOCOL)]) + PROTOCOL + bytes(reserved)
                 + bytes(infohash)[:20] + bytes(peer_id)[:20])


def read_handshake(stream: _Readable) -> tuple[bytes, bytes]:
    """Read a handshake and return its reserved bytes and infohash."""
    buf = _read_exact(stream, HANDSHAKE_LENGTH)
    if buf[0] != len(PROTOCOL):
        raise MetadataError("invalid pstrlen")
    if buf[1:20] != PROTOCOL:
        raise MetadataError("invalid pstr")
    return buf[20:28], buf[28:48]


def send_message(stream: _Writable, msg_type: int, ext_id: int, payload: bytes = b"") -> None:
    """Write a length-prefixed message with a type byte and an extension id byte."""
    payload = bytes(payload)
    stream.write(struct.pack(">I", 2 + len(payload)) + bytes([msg_type, ext_id]) + payload)
    flush = getattr(stream, "flush", None)
    if flush is not None:
        flush()


def _as_str(value: Any, what: str) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", "replace")
    raise MetadataError(f"{what} is not a string")


def _as_int(value: Any, what: str) -> int:
    if isinstance(value, int):
        return value
    raise MetadataError(f"{what} is not an integer")


def decode_info(data: bytes) -> TorrentInfo:
    """Decode a bencoded info dictionary into a TorrentInfo."""
    try:
        raw = decode(data)
    except BencodeError as exc:
        raise MetadataError(f"decode info: {exc}") from exc
    if not isinstance(raw, dict):
        raise MetadataError("info is not a dictionary")

    name = _as_str(raw.get("name", b""), "name")
    length = _as_int(raw.get("length", 0), "length")
    _as_int(raw.get("piece length", 0), "piece length")
    raw_files = raw.get("files", [])
    if not isinstance(raw_files, list):
        raise MetadataError("files is not a list")

    if not raw_files:
        return TorrentInfo(name=name, files=[FileInfo(name, length)], total_size=length)

    info = TorrentInfo(name=name)
    for entry in raw_files:
        if not isinstance(entry, dict):
            raise MetadataError("file entry is not a dictionary")
        parts = entry.get("path", [])
        if not isinstance(parts, list):
            raise MetadataError("file path is not a list")
        path = "/".join(_as_str(p, "path element") for p in parts)
        size = _as_int(entry.get("length", 0), "file length")
        info.total_size += size
        info.files.append(FileInfo(path, size))
    return info


class _DeadlineStream:
    """Socket reads and writes that all end at one absolute deadline."""

    def __init__(self, sock: socket.socket, deadline: float) -> None:
        self._sock = sock
        self._deadline = deadline

    def _arm(self) -> None:
        remaining = self._deadline - time.monotonic()
        if remaining <= 0:
            raise TimeoutError("deadline exceeded")
        self._sock.settimeout(remaining)

    def read(self, n: int) -> bytes:
        self._arm()
        return self._sock.recv(n)

    def write(self, data: bytes) -> None:
        self._arm()
        self._sock.sendall(data)


def _default_dialer(address: Address, timeout: float | None) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.settimeout(timeout)
        sock.connect(address)
        with contextlib.suppress(OSError, AttributeError):
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
    except BaseException:
        sock.close()
        raise
    return sock


class MetadataClient:
    """Fetches an info dictionary from a peer and checks it against the infohash."""

    def __init__(
        self,
        max_msg_size: int,
        max_metadata_size: int,
        recorder: Recorder | None = None,
        dialer: Dialer | None = None,
        dial_timeout: float | None = None,
    ) -> None:
        self._max_msg_size = max_msg_size
        self._max_metadata_size = max_metadata_size
        self._rec = recorder
        self._dial = dialer or _default_dialer
        self._dial_timeout = dial_timeout

    def _failed(self, reason: str, message: str) -> MetadataError:
        if self._rec is not None:
            self._rec.inc_metadata_fetch_failed_total(reason)
        return MetadataError(message)

    def _read_message(self, stream: _Readable) -> tuple[int, bytes]:
        length = struct.unpack(">I", _read_exact(stream, 4))[0]
        if length == 0:
            return 0, b""
        if length > self._max_msg_size:
            raise MetadataError(f"message too large: {length} bytes")
        body = _read_exact(stream, length)
        return body[0], body[1:]

    def fetch(self, infohash: bytes, address: Address, timeout: float | None = None) -> TorrentInfo:
        """Download and verify the metadata for ``infohash`` from the peer at ``address``."""
        infohash = bytes(infohash)
        if len(infohash) != 20:
            raise ValueError("infohash must be 20 bytes")
        if self._rec is not None:
            self._rec.inc_metadata_fetch_attempts_total()
        start = time.monotonic()
        try:
            return self._fetch(infohash, address, timeout)
        finally:
            if self._rec is not None:
                self._rec.observe_metadata_fetch_duration_seconds(time.monotonic() - start)

    def _fetch(self, infohash: bytes, address: Address, timeout: float | None) -> TorrentInfo:
        deadline = time.monotonic() + (DEFAULT_TIMEOUT if timeout is None else timeout)
        dial_timeout = max(0.0, deadline - time.monotonic())
        if self._dial_timeout is not None:
            dial_timeout = min(dial_timeout, self._dial_timeout)

        try:
            sock = self._dial(address, dial_timeout)
        except OSError as exc:
            raise self._failed("connect", f"connect {address[0]}:{address[1]}: {exc}") from exc

        with contextlib.closing(sock):
            stream = _DeadlineStream(sock, deadline)
            try:
                send_handshake(stream, infohash, os.urandom(20))
                reserved, peer_infohash = read_handshake(stream)
            except (OSError, MetadataError) as exc:
                raise self._failed("protocol", str(exc)) from exc

            if not reserved[5] & 0x10:
                raise self._failed("protocol", "peer does not support extension protocol")
            if peer_infohash != infohash:
                raise MetadataError("infohash mismatch")

            try:
                send_message(stream, EXTENDED_MESSAGE, 0,
                             encode({"m": {"ut_metadata": 1}, "reqq": 250}))
            except OSError as exc:
                raise MetadataError(str(exc)) from exc

            peer_ut_metadata, total_size = self._read_extension_handshake(stream)
            if peer_ut_metadata == 0:
                raise self._failed("protocol", "peer does not support ut_metadata")
            if total_size <= 0 or total_size > self._max_metadata_size:
                raise self._failed("protocol", f"invalid metadata size: {total_size}")

            assembled = bytearray()
            num_pieces = -(-total_size // METADATA_PIECE_SIZE)
            for piece in range(num_pieces):
                assembled += self._request_piece(stream, peer_ut_metadata & 0xFF, piece)

        if hashlib.sha1(assembled).digest() != infohash:
            raise self._failed("protocol", "metadata sha1 mismatch")
        if self._rec is not None:
            self._rec.inc_metadata_fetch_success_total()
        return decode_info(bytes(assembled))

    def _read_extension_handshake(self, stream: _Readable) -> tuple[int, int]:
        while True:
            try:
                msg_type, payload = self._read_message(stream)
            except (OSError, MetadataError) as exc:
                raise self._failed("protocol", str(exc)) from exc
            if msg_type != EXTENDED_MESSAGE or not payload or payload[0] != 0:
                continue
            try:
                msg = decode(payload[1:])
            except BencodeError:
                continue
            if not isinstance(msg, dict):
                continue
            supported = msg.get("m", {})
            size = msg.get("metadata_size", 0)
            if not isinstance(supported, dict) or not isinstance(size, int):
                continue
            if not all(isinstance(v, int) for v in supported.values()):
                continue
            return supported.get("ut_metadata", 0), size

    def _request_piece(self, stream: _DeadlineStream, ext_id: int, piece: int) -> bytes:
        try:
            send_message(stream, EXTENDED_MESSAGE, ext_id, encode({"msg_type": 0, "piece": piece}))
        except OSError as exc:
            raise self._failed("protocol", str(exc)) from exc

        while True:
            try:
                msg_type, payload = self._read_message(stream)
            except (OSError, MetadataError) as exc:
                raise self._failed("timeout", str(exc)) from exc
            if msg_type != EXTENDED_MESSAGE or not payload or payload[0] == 0:
                continue
            body = payload[1:]
            try:
                header, consumed = decode_prefix(body)
            except BencodeError:
                continue
            if not isinstance(header, dict):
                continue
            fields = [header.get(k, 0) for k in ("msg_type", "piece", "total_size")]
            if not all(isinstance(v, int) for v in fields):
                continue
            if fields[0] != 1 or fields[1] != piece:
                continue
            return body[consumed:]