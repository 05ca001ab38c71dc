"""Privacy-preserving visitor and session identifiers.

Identifiers are keyed one-way hashes of the raw IP and user-agent, so no
cookie is needed and the inputs cannot be recovered from what is stored.
The visitor ID is stable across days; the session ID also mixes in the
UTC calendar date and therefore rotates daily.
"""

import hashlib
import hmac
import ipaddress
from datetime import date, datetime, timezone

# Stands in for a missing IP or user-agent inside the hash input
UNKNOWN_TOKEN = "unknown"


def hash_value(value: str, secret: str) -> str:
    """HMAC-SHA-256 of ``value`` keyed with ``secret``, as a hex digest."""
    return hmac.new(secret.encode("utf-8"), value.encode("utf-8"), hashlib.sha256).hexdigest()


def _identity_input(ip: str | None, user_agent: str | None) -> str:
    return f"{ip or UNKNOWN_TOKEN}-{user_agent or UNKNOWN_TOKEN}"


def generate_visitor_id(ip: str | None, user_agent: str | None, secret: str) -> str:
    return hash_value(_identity_input(ip, user_agent), secret)


def generate_session_id(
    ip: str | None,
    user_agent: str | None,
    secret: str,
    day: date | None = None,
) -> str:
    """Session identifier for ``(ip, user_agent)`` on the given UTC day (default today)."""
    if day is None:
        day = datetime.now(timezone.utc).date()
    return hash_value(f"{_identity_input(ip, user_agent)}-{day.isoformat()}", secret)


def anonymize_ip(ip: str | None) -> str:
    """Truncate an IP for storage/logging.

    IPv4 keeps three octets (``a.b.c.0``), IPv6 keeps the first four groups.
    Anything unparseable becomes ``"unknown"``.
    """
    if not ip:
        return UNKNOWN_TOKEN
    try:
        addr = ipaddress.ip_address(ip.strip())
    except ValueError:
        return UNKNOWN_TOKEN

    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        addr = addr.ipv4_mapped

    if isinstance(addr, ipaddress.IPv4Address):
        octets = str(addr).split(".")
        return ".".join(octets[:3] + ["0"])

    groups = addr.exploded.split(":")
    return ":".join(g.lstrip("0") or "0" for g in groups[:4]) + "::"
