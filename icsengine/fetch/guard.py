"""SSRF guard: decide whether a URL may be handed to the fetch sidecar.

Rules are evaluated in order and the first match wins:

1. scheme must be http or https
2. localhost names
3. private, link-local and loopback dotted-quad IPv4
4. cloud metadata hosts
5. internal-service ports
"""

import ipaddress
import logging
import re
from urllib.parse import urlsplit

from icsengine.core.errors import FetchBlocked, ValidationError

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = frozenset({"http", "https"})

LOCALHOST_NAMES = frozenset({"localhost", "127.0.0.1", "::1", "0.0.0.0"})

PRIVATE_NETWORKS = tuple(
    ipaddress.ip_network(cidr)
    for cidr in (
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "169.254.0.0/16",
        "127.0.0.0/8",
    )
)

METADATA_HOSTS = (
    "169.254.169.254",
    "metadata.google.internal",
    "metadata.azure.com",
    "metadata.packet.net",
)

BLOCKED_PORTS = frozenset({
    22, 23, 25, 53, 135, 139, 445, 993, 995, 1433, 1521,
    3306, 3389, 5432, 5984, 6379, 9200, 9300, 11211, 27017,
})

_DOTTED_QUAD_RE = re.compile(r"^\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}$")


def validate_url(url: str) -> None:
    """Raise ``FetchBlocked`` (policy) or ``ValidationError`` (malformed)."""
    try:
        parts = urlsplit(url.strip())
    except ValueError as exc:
        raise ValidationError(f"invalid URL format: {exc}") from exc

    # 1. Scheme
    if parts.scheme.lower() not in ALLOWED_SCHEMES:
        raise FetchBlocked("invalid protocol")

    hostname = (parts.hostname or "").lower()
    if not hostname:
        raise ValidationError("invalid URL format: missing host")

    # 2. Localhost
    if hostname in LOCALHOST_NAMES:
        raise FetchBlocked("localhost blocked")

    # 3. Private IPv4 ranges
    if _DOTTED_QUAD_RE.match(hostname):
        try:
            address = ipaddress.IPv4Address(hostname)
        except ipaddress.AddressValueError as exc:
            raise ValidationError(f"invalid URL format: {exc}") from exc
        if any(address in net for net in PRIVATE_NETWORKS):
            raise FetchBlocked("private range blocked")

    # 4. Metadata endpoints (substring match)
    if any(host in hostname for host in METADATA_HOSTS):
        raise FetchBlocked("metadata endpoint blocked")

    # 5. Ports
    try:
        port = parts.port
    except ValueError as exc:
        raise ValidationError(f"invalid URL format: {exc}") from exc
    if port is not None and port in BLOCKED_PORTS:
        raise FetchBlocked("port blocked")


def is_allowed(url: str) -> bool:
    try:
        validate_url(url)
    except (FetchBlocked, ValidationError):
        return False
    return True
