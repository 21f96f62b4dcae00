from __future__ import annotations

import logging
import re
import socket
from ipaddress import IPv4Address, ip_address
from urllib.parse import urlsplit

from .config import settings
from .errors import UnsafeUrlError
from .ip_ranges import blocked_network_for
from .logging_metrics import blocked_urls_total


ALLOWED_SCHEMES = ("http", "https")

_SCHEME_RE = re.compile(r"^([A-Za-z][A-Za-z0-9+.-]*):")
_HTTP_PREFIX_RE = re.compile(r"^https?://", re.IGNORECASE)

logger = logging.getLogger(__name__)


def resolve_host(host: str) -> list[str]:
    """Resolve ``host`` to the list of IP addresses it currently points at.

    Returns [] when DNS resolution fails. Results are never cached.
    """
    try:
        infos = socket.getaddrinfo(host, None, socket.AF_UNSPEC, socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError, OSError):
        return []
    out: list[str] = []
    for _family, _type, _proto, _canon, sockaddr in infos:
        ip = str(sockaddr[0])
        if ip not in out:
            out.append(ip)
    return out


def _reject(reason: str, detail: str) -> UnsafeUrlError:
    blocked_urls_total.labels(reason=reason).inc()
    logger.warning(f"Outbound URL rejected: reason={reason} detail={detail}")
    return UnsafeUrlError(reason, detail)


def _host_addresses(host: str) -> list[str]:
    if host.startswith("[") and host.endswith("]"):
        literal = host[1:-1]
        try:
            ip_address(literal)
        except ValueError:
            raise _reject("invalid_url", f"invalid IPv6 address: {literal}")
        return [literal]
    try:
        return [str(IPv4Address(host))]
    except ValueError:
        pass
    addresses = resolve_host(host)
    if not addresses:
        raise _reject("unresolvable_host", f"could not resolve hostname: {host}")
    return addresses


def validate_outbound_url(url: str, *, max_length: int | None = None) -> None:
    """Raise UnsafeUrlError unless ``url`` is safe to request (SSRF guard).

    Order of checks: length, scheme (on the raw string, before parsing), host,
    DNS resolution, blocked IP ranges. Every address the host resolves to must be
    public; a hostname is re-resolved on every call.
    """
    limit = int(max_length or settings.max_url_length)
    if not url:
        raise _reject("empty_url", "URL is empty")
    if len(url) > limit:
        raise _reject("url_too_long", f"URL too long (max {limit} characters)")

    m = _SCHEME_RE.match(url)
    if m and m.group(1).lower() not in ALLOWED_SCHEMES:
        raise _reject("disallowed_scheme", f"scheme must be http/https: {m.group(1).lower()}")
    if not _HTTP_PREFIX_RE.match(url):
        raise _reject("invalid_url", "could not parse URL")

    try:
        p = urlsplit(url)
        # .hostname strips brackets, netloc keeps them; keep them for IPv6 detection
        netloc_host = p.netloc.rpartition("@")[2]
        hostname = p.hostname or ""
    except ValueError:
        raise _reject("invalid_url", "could not parse URL")
    if not hostname:
        raise _reject("invalid_url", "URL has no host")
    host = f"[{hostname}]" if netloc_host.startswith("[") else hostname

    for ip in _host_addresses(host):
        try:
            net = blocked_network_for(ip)
        except ValueError:
            raise _reject("unresolvable_host", f"not an IP address: {ip}")
        if net is not None:
            raise _reject("blocked_ip", f"private IP address blocked: {ip} ({net})")


def is_url_safe(url: str) -> bool:
    try:
        validate_outbound_url(url)
    except UnsafeUrlError:
        return False
    return True
