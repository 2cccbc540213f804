"""Outbound HTTP fetches guarded against server-side request forgery.

Every hop of a request, including each redirect target, is resolved and
checked before a connection is made. A hostname is refused when any address
it resolves to is loopback, private, link-local, multicast, reserved or
unspecified.

Usage::

    async with await fetch_with_ssrf_guard(url, timeout_seconds=15) as fetched:
        body = await read_body(fetched)

The returned ``GuardedResponse`` owns the HTTP client; leaving the ``async
with`` block (or calling ``release()``) closes it exactly once.
"""

from __future__ import annotations

import asyncio
import ipaddress
import socket
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import httpx

from claw_market.config import NetworkConfig
from claw_market.exceptions import (
    BlockedAddressError,
    DnsResolutionError,
    FetchTimeoutError,
    NetworkError,
    SecurityPolicyError,
)
from claw_market.logging import get_logger, log_security_event

log = get_logger(__name__)

Resolver = Callable[[str, int], Awaitable[list[str]]]
ClientFactory = Callable[[float], httpx.AsyncClient]

USER_AGENT = "Claw Market/0.1.0 (Installer)"
DEFAULT_MAX_REDIRECTS = 3

_BLOCKED_HOSTNAMES = frozenset({"localhost", "metadata.google.internal", "metadata"})
_BLOCKED_SUFFIXES = (".localhost", ".internal", ".local")
_CARRIER_GRADE_NAT = ipaddress.ip_network("100.64.0.0/10")
_SENSITIVE_HEADERS = frozenset({"authorization", "cookie", "proxy-authorization"})


@dataclass(frozen=True)
class SsrfPolicy:
    allow_private_network: bool = False
    allowed_hostnames: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def from_config(cls, network: NetworkConfig) -> "SsrfPolicy":
        return cls(
            allow_private_network=network.allow_private_network,
            allowed_hostnames=frozenset(h.strip().lower() for h in network.allowed_hostnames if h.strip()),
        )


async def default_resolver(host: str, port: int) -> list[str]:
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    except socket.gaierror as exc:
        raise DnsResolutionError(host, f"Unable to resolve hostname {host}: {exc}") from exc
    return sorted({str(info[4][0]) for info in infos})


def _default_client_factory(timeout_seconds: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=timeout_seconds,
        follow_redirects=False,
        headers={"User-Agent": USER_AGENT},
    )


def blocked_address_reason(address: str) -> str | None:
    """Why an IP address may not be contacted, or None if it is public."""
    try:
        ip = ipaddress.ip_address(address.split("%", 1)[0])
    except ValueError:
        return f"unparseable address {address}"
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    if ip.is_loopback:
        return "loopback address"
    if ip.is_link_local:
        return "link-local address"
    if ip.is_unspecified:
        return "unspecified address"
    if isinstance(ip, ipaddress.IPv4Address) and (ip.packed[0] == 0 or ip in _CARRIER_GRADE_NAT):
        return "non-routable address"
    if ip.is_private:
        return "private address"
    if ip.is_multicast:
        return "multicast address"
    if ip.is_reserved:
        return "reserved address"
    return None


def is_blocked_hostname(hostname: str) -> bool:
    host = hostname.strip().lower().rstrip(".")
    return host in _BLOCKED_HOSTNAMES or host.endswith(_BLOCKED_SUFFIXES)


def _default_port(scheme: str) -> int:
    return 443 if scheme == "https" else 80


async def assert_url_allowed(
    url: str,
    resolver: Resolver | None = None,
    policy: SsrfPolicy | None = None,
) -> list[str]:
    """Resolve ``url``'s host and raise if policy forbids contacting it.

    Returns the resolved addresses.
    """
    policy = policy or SsrfPolicy()
    parsed = urlparse(url)
    scheme = (parsed.scheme or "").lower()
    if scheme not in {"http", "https"}:
        raise BlockedAddressError(url, f"unsupported URL scheme {scheme or '(none)'!r}")
    hostname = (parsed.hostname or "").lower()
    if not hostname:
        raise BlockedAddressError(url, "URL has no hostname")
    if hostname in policy.allowed_hostnames:
        return []
    if policy.allow_private_network:
        return []
    if is_blocked_hostname(hostname):
        raise BlockedAddressError(url, f"hostname {hostname} is not allowed")

    try:
        port = parsed.port or _default_port(scheme)
    except ValueError as exc:
        raise BlockedAddressError(url, "invalid port") from exc

    try:
        ipaddress.ip_address(hostname.strip("[]"))
        addresses = [hostname.strip("[]")]
    except ValueError:
        addresses = await (resolver or default_resolver)(hostname, port)
    if not addresses:
        raise DnsResolutionError(hostname)

    for address in addresses:
        reason = blocked_address_reason(address)
        if reason:
            raise BlockedAddressError(url, f"{hostname} resolves to {reason} {address}", address)
    return addresses


class GuardedResponse:
    """Response plus the client that produced it.

    ``release()`` closes both and is safe to call more than once.
    """

    def __init__(
        self,
        response: httpx.Response,
        final_url: str,
        client: httpx.AsyncClient,
        deadline: float | None = None,
        timeout_seconds: float | None = None,
    ):
        self.response = response
        self.final_url = final_url
        self.deadline = deadline
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._released = False

    def remaining_seconds(self) -> float | None:
        """Time left before the fetch deadline, or None when unbounded."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - asyncio.get_running_loop().time())

    @property
    def released(self) -> bool:
        return self._released

    @property
    def ok(self) -> bool:
        return self.response.is_success

    @property
    def status_line(self) -> str:
        return f"{self.response.status_code} {self.response.reason_phrase}".strip()

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            await self.response.aclose()
        finally:
            await self._client.aclose()

    async def __aenter__(self) -> "GuardedResponse":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.release()


def _origin(url: str) -> tuple[str, str, int | None]:
    parsed = urlparse(url)
    return (parsed.scheme.lower(), (parsed.hostname or "").lower(), parsed.port)


async def _send_following_redirects(
    client: httpx.AsyncClient,
    url: str,
    method: str,
    headers: dict[str, str],
    max_redirects: int,
    resolver: Resolver | None,
    policy: SsrfPolicy,
) -> tuple[httpx.Response, str]:
    current_url = url
    current_method = method.upper()
    for hop in range(max_redirects + 1):
        await assert_url_allowed(current_url, resolver=resolver, policy=policy)
        request = client.build_request(current_method, current_url, headers=headers)
        response = await client.send(request, stream=True, follow_redirects=False)
        if not response.is_redirect:
            return response, str(response.url)

        location = response.headers["location"]
        status = response.status_code
        await response.aclose()
        if hop >= max_redirects:
            raise NetworkError(f"Too many redirects fetching {url} (max {max_redirects})")

        next_url = str(response.url.join(location))
        if status == 303 or (status in (301, 302) and current_method not in {"GET", "HEAD"}):
            current_method = "GET"
        if _origin(next_url) != _origin(current_url):
            headers = {k: v for k, v in headers.items() if k.lower() not in _SENSITIVE_HEADERS}
        log.debug("Following redirect", from_url=current_url, to_url=next_url, status=status)
        current_url = next_url
    raise NetworkError(f"Too many redirects fetching {url} (max {max_redirects})")


async def fetch_with_ssrf_guard(
    url: str,
    *,
    method: str = "GET",
    headers: Mapping[str, str] | None = None,
    timeout_seconds: float = 30.0,
    max_redirects: int = DEFAULT_MAX_REDIRECTS,
    resolver: Resolver | None = None,
    client_factory: ClientFactory | None = None,
    policy: SsrfPolicy | None = None,
) -> GuardedResponse:
    """Fetch ``url`` with SSRF checks on every hop under one hard timeout.

    Raises:
        BlockedAddressError: a hop targets a forbidden address.
        DnsResolutionError: a hop's hostname did not resolve.
        FetchTimeoutError: the whole chain exceeded ``timeout_seconds``.
        NetworkError: any other transport failure or redirect overflow.
    """
    policy = policy or SsrfPolicy()
    deadline = asyncio.get_running_loop().time() + timeout_seconds
    client = (client_factory or _default_client_factory)(timeout_seconds)
    try:
        try:
            response, final_url = await asyncio.wait_for(
                _send_following_redirects(
                    client,
                    url,
                    method,
                    dict(headers or {}),
                    max_redirects,
                    resolver,
                    policy,
                ),
                timeout=timeout_seconds,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise FetchTimeoutError(url, timeout_seconds) from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"Request to {url} failed: {exc}") from exc
    except BaseException as exc:
        await client.aclose()
        if isinstance(exc, SecurityPolicyError):
            log_security_event(log, "SSRF policy blocked request", url=url, error=str(exc))
        elif isinstance(exc, NetworkError):
            log.warning("Guarded fetch failed", url=url, error=str(exc))
        raise
    return GuardedResponse(response, final_url, client, deadline=deadline, timeout_seconds=timeout_seconds)


async def _before_deadline(fetched: GuardedResponse, reading: Awaitable[Any]) -> Any:
    """Await a body read within whatever is left of the fetch deadline."""
    try:
        return await asyncio.wait_for(reading, timeout=fetched.remaining_seconds())
    except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
        log.warning("Guarded fetch body timed out", url=fetched.final_url)
        raise FetchTimeoutError(fetched.final_url, fetched.timeout_seconds or 0) from exc
    except httpx.HTTPError as exc:
        raise NetworkError(f"Reading response from {fetched.final_url} failed: {exc}") from exc


async def _collect_body(fetched: GuardedResponse, max_bytes: int | None) -> bytes:
    chunks: list[bytes] = []
    total = 0
    async for chunk in fetched.response.aiter_bytes():
        total += len(chunk)
        if max_bytes is not None and total > max_bytes:
            raise NetworkError(f"Response from {fetched.final_url} exceeds {max_bytes} bytes")
        chunks.append(chunk)
    return b"".join(chunks)


async def read_body(fetched: GuardedResponse, max_bytes: int | None = None) -> bytes:
    """Read the full body, refusing anything larger than ``max_bytes``.

    The read shares the deadline of the fetch that produced ``fetched``.
    """
    return await _before_deadline(fetched, _collect_body(fetched, max_bytes))


async def _stream_to_file(fetched: GuardedResponse, destination: Path, max_bytes: int | None) -> int:
    total = 0
    destination.parent.mkdir(parents=True, exist_ok=True)
    with destination.open("wb") as out_file:
        async for chunk in fetched.response.aiter_bytes():
            total += len(chunk)
            if max_bytes is not None and total > max_bytes:
                raise NetworkError(f"Download from {fetched.final_url} exceeds {max_bytes} bytes")
            out_file.write(chunk)
    return total


async def download_to_file(
    fetched: GuardedResponse,
    destination: Path,
    max_bytes: int | None = None,
) -> int:
    """Stream the body into ``destination``; returns bytes written.

    Raises FetchTimeoutError when the body is still arriving at the fetch
    deadline.
    """
    return await _before_deadline(fetched, _stream_to_file(fetched, destination, max_bytes))
