"""Client for the public IP endpoint of a VPN gateway container."""

from __future__ import annotations

import ipaddress
import json
import urllib.error
import urllib.request
from dataclasses import dataclass, fields
from typing import Any, Callable, Optional

Opener = Callable[[urllib.request.Request, Optional[float]], Any]


class GluetunError(Exception):
    """Raised when the public IP cannot be fetched or decoded."""


@dataclass(frozen=True)
class PublicIPResponse:
    """The public IP details reported by the gateway."""

    public_ip: str = ""
    region: str = ""
    country: str = ""
    city: str = ""
    location: str = ""
    organization: str = ""
    postal_code: str = ""
    timezone: str = ""

    @property
    def ip(self) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
        """The public IP parsed as an address, or None if it is not one."""
        try:
            return ipaddress.ip_address(self.public_ip)
        except ValueError:
            return None


def _parse_response(payload: object) -> PublicIPResponse:
    if not isinstance(payload, dict):
        raise GluetunError("gluetun: decode response: expected a JSON object")
    values = {}
    for field in fields(PublicIPResponse):
        value = payload.get(field.name)
        if value is None:
            continue
        if not isinstance(value, str):
            raise GluetunError(
                f"gluetun: decode response: field {field.name!r} is not a string"
            )
        values[field.name] = value
    return PublicIPResponse(**values)


def _default_opener(request: urllib.request.Request, timeout: float | None) -> Any:
    if timeout is None:
        return urllib.request.urlopen(request)
    return urllib.request.urlopen(request, timeout=timeout)


class GluetunClient:
    """Fetches public IP information from a gateway endpoint."""

    def __init__(self, endpoint: str, opener: Opener | None = None) -> None:
        self._endpoint = endpoint
        self._open = opener or _default_opener

    def fetch_public_ip(self, timeout: float | None = None) -> PublicIPResponse:
        """Call the endpoint and return the parsed response."""
        try:
            request = urllib.request.Request(self._endpoint, method="GET")
        except ValueError as exc:
            raise GluetunError(f"gluetun: build request: {exc}") from exc

        try:
            response = self._open(request, timeout)
        except urllib.error.HTTPError as exc:
            exc.close()
            raise GluetunError(f"gluetun: unexpected status {exc.code}") from exc
        except OSError as exc:
            raise GluetunError(f"gluetun: request failed: {exc}") from exc

        with response:
            status = getattr(response, "status", 200)
            if status != 200:
                raise GluetunError(f"gluetun: unexpected status {status}")
            try:
                payload = json.load(response)
            except (ValueError, UnicodeDecodeError) as exc:
                raise GluetunError(f"gluetun: decode response: {exc}") from exc
        return _parse_response(payload)