"""HTTP(S) retrieval of ICS feeds with SSRF protection.

Every hop (the initial URL and each redirect target) is validated before any
connection is made. Host names are resolved once, every returned address
must be public, and the connection is then pinned to a validated address so
that a second DNS answer can never redirect the request to a private target.
"""

from __future__ import annotations

import ipaddress
import logging
import socket
import threading
import time
from dataclasses import dataclass
from typing import Callable
from urllib.parse import urljoin, urlsplit, urlunsplit

import requests
from requests.adapters import HTTPAdapter
from urllib3.connectionpool import HTTPConnectionPool

from calfeed.models import FetcherConfig, FetchResult


logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = {"http", "https"}
REDIRECT_STATUS_CODES = {301, 302, 303, 307, 308}
DEFAULT_PORTS = {"http": 80, "https": 443}
CHUNK_SIZE = 64 * 1024

BLOCKED_NETWORKS = tuple(
    ipaddress.ip_network(cidr)
    for cidr in (
        "0.0.0.0/8",
        "127.0.0.0/8",
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "169.254.0.0/16",
        "::/128",
        "::1/128",
        "fc00::/7",
        "fe80::/10",
    )
)

Resolver = Callable[[str, int], list[str]]


class FetchError(Exception):
    """Fetch failure whose message is safe to store and show to the user."""


@dataclass
class FetchTarget:
    url: str
    scheme: str
    hostname: str
    port: int
    addresses: list[str]

    @property
    def pinned_url(self) -> str:
        parts = urlsplit(self.url)
        address = self.addresses[0]
        host = f"[{address}]" if ":" in address else address
        return urlunsplit((parts.scheme, f"{host}:{self.port}", parts.path or "/", parts.query, ""))

    @property
    def host_header(self) -> str:
        host = f"[{self.hostname}]" if ":" in self.hostname else self.hostname
        if self.port == DEFAULT_PORTS[self.scheme]:
            return host
        return f"{host}:{self.port}"


def redact_url(url: str) -> str:
    try:
        parts = urlsplit(url)
        host = parts.hostname
        port = parts.port
    except ValueError:
        return "invalid-url"
    if not parts.scheme or not host:
        return "invalid-url"
    netloc = f"[{host}]" if ":" in host else host
    if port:
        netloc = f"{netloc}:{port}"
    return f"{parts.scheme}://{netloc}"


def is_blocked_address(address: str) -> bool:
    try:
        ip = ipaddress.ip_address(address.split("%", 1)[0])
    except ValueError:
        return False
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return any(ip.version == network.version and ip in network for network in BLOCKED_NETWORKS)


def resolve_host(hostname: str, port: int) -> list[str]:
    infos = socket.getaddrinfo(hostname, port, type=socket.SOCK_STREAM)
    addresses: list[str] = []
    for _family, _type, _proto, _canon, sockaddr in infos:
        address = str(sockaddr[0])
        if address not in addresses:
            addresses.append(address)
    return addresses


def _literal_address(hostname: str) -> str | None:
    try:
        return str(ipaddress.ip_address(hostname))
    except ValueError:
        return None


def validate_url(url: str, resolver: Resolver = resolve_host) -> FetchTarget:
    try:
        parts = urlsplit(str(url).strip())
        hostname = (parts.hostname or "").lower()
        port = parts.port
    except ValueError as exc:
        raise FetchError("Invalid URL.") from exc

    scheme = parts.scheme.lower()
    if scheme not in ALLOWED_SCHEMES:
        raise FetchError("Unsupported URL protocol.")
    if not hostname:
        raise FetchError("Invalid URL host.")
    if hostname == "localhost" or hostname.endswith(".localhost"):
        raise FetchError("URL host is blocked.")

    port = port or DEFAULT_PORTS[scheme]
    literal = _literal_address(hostname)
    if literal is not None:
        if is_blocked_address(literal):
            raise FetchError("URL host is blocked.")
        addresses = [literal]
    else:
        try:
            addresses = resolver(hostname, port)
        except (OSError, UnicodeError) as exc:
            raise FetchError(f"Could not resolve host for {redact_url(url)}.") from exc
        if not addresses:
            raise FetchError(f"Could not resolve host for {redact_url(url)}.")
        if any(is_blocked_address(address) for address in addresses):
            raise FetchError("URL host is blocked.")

    return FetchTarget(url=urlunsplit(parts._replace(scheme=scheme, fragment="")), scheme=scheme,
                       hostname=hostname, port=port, addresses=addresses)


class RequestDeadline:
    """Wall-clock limit for one request.

    Sockets opened for the request register here. When the limit passes they
    are shut down, which wakes any read still blocked on them.
    """

    def __init__(self, seconds: float) -> None:
        self.expired = False
        self._sockets: list[socket.socket] = []
        self._lock = threading.Lock()
        self._timer = threading.Timer(max(0.0, seconds), self._expire)
        self._timer.daemon = True

    def start(self) -> None:
        self._timer.start()

    def cancel(self) -> None:
        self._timer.cancel()

    def watch(self, sock: socket.socket) -> None:
        with self._lock:
            if not self.expired:
                self._sockets.append(sock)
                return
        _shutdown_socket(sock)

    def _expire(self) -> None:
        with self._lock:
            self.expired = True
            sockets, self._sockets = self._sockets, []
        for sock in sockets:
            _shutdown_socket(sock)


def _shutdown_socket(sock: socket.socket) -> None:
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError as exc:
        logger.debug("Socket already closed at deadline: %s", exc)


def _watched_pool_class(pool_cls: type[HTTPConnectionPool], deadline: RequestDeadline) -> type[HTTPConnectionPool]:
    class WatchedConnection(pool_cls.ConnectionCls):
        def connect(self):
            super().connect()
            deadline.watch(self.sock)

    class WatchedPool(pool_cls):
        ConnectionCls = WatchedConnection

    return WatchedPool


class PinnedHostAdapter(HTTPAdapter):
    """Keeps TLS SNI and certificate checks on the real host name while the
    socket connects to an already validated IP address.

    With a ``deadline`` every connection the adapter opens is put under it.
    """

    def __init__(self, hostname: str | None = None, deadline: RequestDeadline | None = None, **kwargs) -> None:
        self._hostname = hostname
        self._deadline = deadline
        super().__init__(**kwargs)

    def init_poolmanager(self, connections, maxsize, block=False, **pool_kwargs):
        if self._hostname:
            pool_kwargs["server_hostname"] = self._hostname
            pool_kwargs["assert_hostname"] = self._hostname
        super().init_poolmanager(connections, maxsize, block=block, **pool_kwargs)
        if self._deadline is not None:
            self.poolmanager.pool_classes_by_scheme = {
                scheme: _watched_pool_class(pool_cls, self._deadline)
                for scheme, pool_cls in self.poolmanager.pool_classes_by_scheme.items()
            }


class IcsFetcher:
    def __init__(self, config: FetcherConfig | None = None, resolver: Resolver | None = None) -> None:
        self.config = config or FetcherConfig()
        self.resolver = resolver or resolve_host

    def _headers(self, target: FetchTarget, etag: str | None, last_modified: str | None) -> dict[str, str]:
        headers = {
            "Host": target.host_header,
            "Accept": "text/calendar, text/plain, */*",
            "User-Agent": self.config.user_agent,
        }
        if etag:
            headers["If-None-Match"] = etag
        if last_modified:
            headers["If-Modified-Since"] = last_modified
        return headers

    def _open_session(self, target: FetchTarget, deadline: RequestDeadline | None = None) -> requests.Session:
        session = requests.Session()
        session.trust_env = False
        hostname = target.hostname if target.scheme == "https" else None
        session.mount(f"{target.scheme}://", PinnedHostAdapter(hostname, deadline))
        return session

    def fetch(
        self,
        url: str,
        *,
        etag: str | None = None,
        last_modified: str | None = None,
        timeout_seconds: float | None = None,
        max_redirects: int | None = None,
        max_bytes: int | None = None,
    ) -> FetchResult:
        if not url:
            return FetchResult(success=False, error="URL is required.")
        timeout = float(timeout_seconds or self.config.timeout_seconds)
        redirect_cap = self.config.max_redirects if max_redirects is None else max(0, int(max_redirects))
        byte_cap = int(max_bytes or self.config.max_bytes)
        deadline = time.monotonic() + timeout

        try:
            target = validate_url(url, self.resolver)
        except FetchError as exc:
            logger.warning("Rejected calendar feed URL %s: %s", redact_url(url), exc)
            return FetchResult(success=False, error=str(exc))

        redirects = 0
        while True:
            try:
                outcome = self._fetch_once(target, etag, last_modified, deadline, byte_cap)
            except FetchError as exc:
                return FetchResult(success=False, error=str(exc))
            if isinstance(outcome, FetchResult):
                return outcome

            status_code, location, response_etag, response_last_modified = outcome
            if redirects >= redirect_cap:
                return FetchResult(
                    success=False,
                    status_code=status_code,
                    etag=response_etag,
                    last_modified=response_last_modified,
                    error="Too many redirects.",
                )
            next_url = urljoin(target.url, location)
            try:
                target = validate_url(next_url, self.resolver)
            except FetchError as exc:
                logger.warning(
                    "Rejected redirect from %s to %s: %s", redact_url(url), redact_url(next_url), exc
                )
                return FetchResult(
                    success=False,
                    status_code=status_code,
                    etag=response_etag,
                    last_modified=response_last_modified,
                    error=str(exc),
                )
            redirects += 1

    def _fetch_once(
        self,
        target: FetchTarget,
        etag: str | None,
        last_modified: str | None,
        deadline: float,
        byte_cap: int,
    ) -> FetchResult | tuple[int, str, str | None, str | None]:
        """Run one request; a tuple result means "follow this redirect"."""
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise FetchError("Request timed out.")

        request_deadline = RequestDeadline(remaining)
        session = self._open_session(target, request_deadline)
        response = None
        request_deadline.start()
        try:
            response = session.get(
                target.pinned_url,
                headers=self._headers(target, etag, last_modified),
                timeout=(remaining, remaining),
                stream=True,
                allow_redirects=False,
            )
            status_code = int(response.status_code)
            response_etag = response.headers.get("ETag")
            response_last_modified = response.headers.get("Last-Modified")

            location = response.headers.get("Location")
            if status_code in REDIRECT_STATUS_CODES and location:
                return status_code, location, response_etag, response_last_modified

            if status_code == 304:
                return FetchResult(
                    success=True,
                    status_code=304,
                    etag=response_etag or etag,
                    last_modified=response_last_modified or last_modified,
                )

            if status_code < 200 or status_code >= 300:
                return FetchResult(
                    success=False,
                    status_code=status_code,
                    etag=response_etag,
                    last_modified=response_last_modified,
                    error=f"Request failed with status {status_code} for {redact_url(target.url)}.",
                )

            received = bytearray()
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                if request_deadline.expired or time.monotonic() > deadline:
                    raise FetchError("Request timed out.")
                if not chunk:
                    continue
                received.extend(chunk)
                if len(received) > byte_cap:
                    raise FetchError("Response exceeds maximum size.")
            if request_deadline.expired:
                raise FetchError("Request timed out.")

            return FetchResult(
                success=True,
                status_code=status_code,
                body=bytes(received).decode("utf-8", errors="replace"),
                etag=response_etag,
                last_modified=response_last_modified,
            )
        except requests.Timeout as exc:
            raise FetchError("Request timed out.") from exc
        except requests.RequestException as exc:
            if request_deadline.expired:
                raise FetchError("Request timed out.") from exc
            logger.info("Calendar feed request to %s failed: %s", redact_url(target.url), type(exc).__name__)
            raise FetchError(f"Request failed for {redact_url(target.url)}.") from exc
        finally:
            request_deadline.cancel()
            if response is not None:
                response.close()
            session.close()
