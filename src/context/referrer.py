"""Referrer classification relative to the host that received the beacon."""

from enum import Enum
from urllib.parse import urlsplit


class ReferrerType(str, Enum):
    EXTERNAL = "external"
    INTERNAL = "internal"
    NONE = "none"  # present but not a parseable URL
    DIRECT = "direct"


def _hostname(host: str | None) -> str:
    if not host:
        return ""
    # Host headers may carry a port
    try:
        return urlsplit(f"//{host.strip()}").hostname or ""
    except ValueError:
        return ""


def classify_referrer(referrer: str | None, current_host: str | None) -> ReferrerType:
    """Classify a referrer as direct, internal, external or none.

    A referrer whose host equals ``current_host`` or is one of its
    subdomains counts as internal.
    """
    if not referrer:
        return ReferrerType.DIRECT

    try:
        parts = urlsplit(referrer.strip())
        ref_host = parts.hostname
    except ValueError:
        return ReferrerType.NONE
    if not parts.scheme or not ref_host:
        return ReferrerType.NONE

    site_host = _hostname(current_host)
    if site_host and (ref_host == site_host or ref_host.endswith(f".{site_host}")):
        return ReferrerType.INTERNAL
    return ReferrerType.EXTERNAL
