"""Receiver URL validation — HTTPS only, no localhost or private networks (SSRF guard)."""

import ipaddress
import socket
from typing import Optional, Union
from urllib.parse import urlsplit

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

LOCAL_SUFFIXES = (".local", ".localhost", ".internal", ".localdomain", ".home.arpa")


class UnsafeURLError(ValueError):
    """Receiver URL rejected by the safety rule."""


def is_local_hostname(host: str) -> bool:
    host = host.strip().lower().rstrip(".")
    return host == "localhost" or host.endswith(LOCAL_SUFFIXES)


def normalize_ip(host: str) -> Optional[IPAddress]:
    """Parse dotted, bracketed IPv6 or decimal-integer hosts; None for names."""
    host = host.strip()
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        pass
    # Decimal form, e.g. 2130706433 == 127.0.0.1
    if host.isdigit():
        value = int(host)
        if 0 <= value <= 0xFFFFFFFF:
            return ipaddress.IPv4Address(value)
    return None


def is_private_address(ip: IPAddress) -> bool:
    mapped = getattr(ip, "ipv4_mapped", None)
    if mapped is not None:
        ip = mapped
    return (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_reserved
        or ip.is_multicast
        or ip.is_unspecified
    )


def resolve_host(host: str) -> list[str]:
    """All A/AAAA addresses for a host; empty when resolution fails."""
    try:
        infos = socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP)
    except (socket.gaierror, socket.herror, UnicodeError, OSError):
        return []
    return sorted({info[4][0] for info in infos})


def validate_webhook_url(url: str, resolve: bool = True) -> str:
    """Return ``url`` unchanged if it is safe to deliver to, else raise UnsafeURLError."""
    try:
        parts = urlsplit(url.strip())
    except ValueError as exc:
        raise UnsafeURLError(f"Invalid URL: {exc}") from exc

    if parts.scheme != "https":
        raise UnsafeURLError("Webhook URL must use HTTPS")
    host = parts.hostname
    if not host:
        raise UnsafeURLError("Webhook URL must contain a valid hostname")
    if is_local_hostname(host):
        raise UnsafeURLError("Webhook URL cannot point to localhost or local domains")

    ip = normalize_ip(host)
    if ip is not None:
        if is_private_address(ip):
            raise UnsafeURLError("Webhook URL cannot point to localhost or private networks")
        return url

    if resolve:
        for addr in resolve_host(host):
            resolved = normalize_ip(addr.split("%")[0])
            if resolved is not None and is_private_address(resolved):
                raise UnsafeURLError("Webhook URL resolves to a private or local address")
    return url
