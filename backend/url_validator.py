"""
SSRF protection for user-supplied Xtream server addresses.

The login endpoint accepts a free-form "DNS" value from the browser and the
proxy later issues authenticated requests to it. validate_dns_url() makes
sure that value names a public http(s) origin: both the literal hostname
and every address it resolves to must be outside the private, loopback,
link-local, multicast and reserved ranges.
"""
import asyncio
import ipaddress
import logging
import re
import socket
from urllib.parse import urlsplit

from errors import InvalidRequest, InvalidUrl, PrivateAddress, UnsupportedScheme

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = ("http", "https")
DEFAULT_PORTS = {"http": 80, "https": 443}

PRIVATE_NETWORKS = [
    ipaddress.ip_network("127.0.0.0/8"),     # Loopback
    ipaddress.ip_network("10.0.0.0/8"),      # Class A private
    ipaddress.ip_network("172.16.0.0/12"),   # Class B private
    ipaddress.ip_network("192.168.0.0/16"),  # Class C private
    ipaddress.ip_network("169.254.0.0/16"),  # Link-local
    ipaddress.ip_network("0.0.0.0/8"),       # Current network
    ipaddress.ip_network("224.0.0.0/4"),     # Multicast
    ipaddress.ip_network("240.0.0.0/4"),     # Reserved, includes broadcast
    ipaddress.ip_network("::1/128"),         # IPv6 loopback
    ipaddress.ip_network("::/128"),          # IPv6 unspecified
    ipaddress.ip_network("fc00::/7"),        # IPv6 unique local
    ipaddress.ip_network("fe80::/10"),       # IPv6 link-local
    ipaddress.ip_network("ff00::/8"),        # IPv6 multicast
]

PRIVATE_HOSTNAMES = {"localhost"}

_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)
_STREAM_ID_RE = re.compile(r"[0-9]+")
_UNSAFE_CHARS_RE = re.compile(r"[<>'\"]")


def is_private_ip(host: str) -> bool:
    """Check if a hostname literal or IP address is private/internal."""
    host = host.strip().strip("[]").lower()
    if host in PRIVATE_HOSTNAMES:
        return True

    try:
        ip = ipaddress.ip_address(host.split("%", 1)[0])
    except ValueError:
        # Not an IP literal
        return False

    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped

    return any(ip in network for network in PRIVATE_NETWORKS if network.version == ip.version)


async def _resolve_host(hostname: str) -> list[str]:
    """Resolve a hostname to its A and AAAA addresses without blocking the loop."""
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(hostname, None, type=socket.SOCK_STREAM)
    return list({info[4][0] for info in infos})


def _build_origin(scheme: str, hostname: str, port: int | None) -> str:
    host = f"[{hostname}]" if ":" in hostname else hostname
    if port is None or port == DEFAULT_PORTS[scheme]:
        return f"{scheme}://{host}"
    return f"{scheme}://{host}:{port}"


async def validate_dns_url(raw_url: str) -> str:
    """
    Validate and normalize an Xtream server address.

    Returns the origin (scheme://host[:port], no trailing slash) or raises
    InvalidUrl, UnsupportedScheme or PrivateAddress. DNS lookup failures
    are not fatal: an unresolvable host is let through and the outbound
    connection fails later.
    """
    if not isinstance(raw_url, str):
        raise InvalidUrl()

    url_str = raw_url.strip()
    if not _SCHEME_RE.match(url_str):
        url_str = "http://" + url_str

    try:
        parsed = urlsplit(url_str)
        hostname = parsed.hostname
        port = parsed.port
    except ValueError:
        raise InvalidUrl()

    scheme = parsed.scheme.lower()
    if scheme not in ALLOWED_SCHEMES:
        raise UnsupportedScheme()

    if not hostname or any(c.isspace() for c in hostname):
        raise InvalidUrl()

    if is_private_ip(hostname):
        raise PrivateAddress()

    try:
        addresses = await _resolve_host(hostname)
    except (OSError, UnicodeError) as e:
        logger.debug("[SECURITY] DNS resolution failed for %s: %s", hostname, e)
        addresses = []

    for address in addresses:
        if is_private_ip(address):
            logger.warning("[SECURITY] Rejected %s: resolves to private address %s", hostname, address)
            raise PrivateAddress()

    return _build_origin(scheme, hostname, port)


def sanitize_input(value, max_length: int = 255) -> str:
    """Trim, truncate and strip characters usable for markup injection."""
    if not isinstance(value, str):
        return ""
    return _UNSAFE_CHARS_RE.sub("", value.strip()[:max_length])


def validate_stream_id(stream_id) -> str:
    """Stream ids must be plain decimal numbers."""
    value = str(stream_id).strip()
    if not _STREAM_ID_RE.fullmatch(value):
        raise InvalidRequest("Invalid stream ID")
    return value
