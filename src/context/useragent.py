"""Best-effort user-agent classification.

Rough rule-based matching: the device class is reliable enough for
dashboards, browser and OS strings are free text ("Chrome 120.0", "iOS 17.1").
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)

UNKNOWN_NAME = "Unknown"


class Device(str, Enum):
    DESKTOP = "desktop"
    MOBILE = "mobile"
    TABLET = "tablet"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class UserAgentInfo:
    device: Device
    browser: str
    os: str

    @classmethod
    def unknown(cls) -> "UserAgentInfo":
        return cls(Device.UNKNOWN, UNKNOWN_NAME, UNKNOWN_NAME)


# Order matters: Chromium derivatives also advertise "Chrome/" and "Safari/"
_BROWSER_PATTERNS = [
    ("Edge", re.compile(r"(?:Edge?|EdgA|EdgiOS)/([\d.]+)")),
    ("Opera", re.compile(r"(?:OPR|Opera)/([\d.]+)")),
    ("Samsung Internet", re.compile(r"SamsungBrowser/([\d.]+)")),
    ("Firefox", re.compile(r"(?:Firefox|FxiOS)/([\d.]+)")),
    ("Chrome", re.compile(r"(?:Chrome|CriOS)/([\d.]+)")),
    ("Safari", re.compile(r"Version/([\d.]+).*Safari/")),
    ("IE", re.compile(r"(?:MSIE |Trident/.*rv:)([\d.]+)")),
]

_WINDOWS_VERSIONS = {
    "10.0": "10",
    "6.3": "8.1",
    "6.2": "8",
    "6.1": "7",
    "6.0": "Vista",
    "5.1": "XP",
}

_OS_PATTERNS = [
    ("Windows Phone", re.compile(r"Windows Phone(?: OS)? ([\d.]+)")),
    ("Windows", re.compile(r"Windows NT ([\d.]+)")),
    ("iOS", re.compile(r"(?:iPhone|iPad|iPod)(?:.*?) OS ([\d_]+)")),
    ("Mac OS", re.compile(r"Mac OS X ([\d_.]+)")),
    ("Android", re.compile(r"Android ([\d.]+)")),
    ("Chrome OS", re.compile(r"CrOS \S+ ([\d.]+)")),
    ("Linux", re.compile(r"Linux()")),
]

_TABLET_RE = re.compile(r"iPad|Tablet|PlayBook|Kindle|Silk/", re.I)
_MOBILE_RE = re.compile(r"Mobi|iPhone|iPod|Windows Phone|BlackBerry|Opera Mini", re.I)


def _match_name(ua: str, patterns) -> str:
    for name, pattern in patterns:
        match = pattern.search(ua)
        if match:
            version = match.group(1).replace("_", ".")
            if name == "Windows":
                version = _WINDOWS_VERSIONS.get(version, version)
            return f"{name} {version}".strip()
    return UNKNOWN_NAME


def _classify_device(ua: str) -> Device:
    if _TABLET_RE.search(ua):
        return Device.TABLET
    if "Android" in ua:
        # Android tablets omit the "Mobile" token
        return Device.MOBILE if "Mobile" in ua else Device.TABLET
    if _MOBILE_RE.search(ua):
        return Device.MOBILE
    return Device.DESKTOP


def parse_user_agent(user_agent: str | None) -> UserAgentInfo:
    """Classify device, browser and OS.

    An empty user-agent yields the all-unknown triple; a non-empty one
    with no recognizable signals is reported as a desktop.
    """
    if not user_agent or not user_agent.strip():
        return UserAgentInfo.unknown()
    try:
        return UserAgentInfo(
            device=_classify_device(user_agent),
            browser=_match_name(user_agent, _BROWSER_PATTERNS),
            os=_match_name(user_agent, _OS_PATTERNS),
        )
    except (re.error, TypeError, AttributeError) as exc:
        logger.debug("User agent parsing failed: %s", exc)
        return UserAgentInfo.unknown()
