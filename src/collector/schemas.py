"""Beacon payload and event record definitions for the tracking collector.

``TrackPayload`` validates and sanitizes the raw JSON body sent by the
client snippet. ``Event`` is the immutable record written to the warehouse
once identity and context have been derived server-side.
"""

import json
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from urllib.parse import urlsplit
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)

from src.context.geo import UNKNOWN_COUNTRY, UNKNOWN_REGION
from src.context.referrer import ReferrerType
from src.context.useragent import UNKNOWN_NAME, Device

SITE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{3,50}$")

MAX_PAGE_LENGTH = 500
MAX_TITLE_LENGTH = 200
MAX_REFERRER_LENGTH = 500
MAX_LANGUAGE_LENGTH = 10
MAX_SITE_ID_LENGTH = 50
MAX_SCREEN_DIMENSION = 100_000
DEFAULT_LANGUAGE = "en-US"

_LEADING_INT = re.compile(r"^\s*[+-]?\d+")


class EventType(str, Enum):
    PAGEVIEW = "pageview"
    CLICK = "click"
    CUSTOM = "custom"
    SESSION_START = "session_start"
    SESSION_END = "session_end"


def clean_page_path(page: str | None) -> str:
    """Reduce a page URL or path to a path beginning with ``/``."""
    if not page or not page.strip():
        return "/"
    page = page.strip()
    if page.startswith(("http://", "https://")):
        try:
            return urlsplit(page).path or "/"
        except ValueError:
            return "/"
    return page if page.startswith("/") else f"/{page}"


def _coerce_dimension(value: Any) -> int:
    """Parse a screen dimension leniently.

    Junk, negatives, NaN and infinities become 0; oversized values are capped
    at ``MAX_SCREEN_DIMENSION`` so they always fit the INTEGER column.
    """
    if isinstance(value, bool) or value is None:
        return 0
    try:
        if isinstance(value, (int, float)):
            number = int(value)
        else:
            match = _LEADING_INT.match(str(value))
            number = int(match.group()) if match else 0
    except (OverflowError, ValueError):
        return 0
    return min(max(number, 0), MAX_SCREEN_DIMENSION)


def _clamp_text(value: Any, limit: int, default: str = "") -> str:
    if value is None:
        return default
    return str(value)[:limit]


class TrackPayload(BaseModel):
    """Body of ``POST /track``.

    Required: ``eventType``, ``page``, ``siteId``. Everything else is
    optional and clamped rather than rejected.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    event_type: EventType = Field(alias="eventType")
    page: str
    site_id: str = Field(alias="siteId")
    title: str = ""
    referrer: str = ""
    language: str = DEFAULT_LANGUAGE
    screen_width: int = Field(default=0, alias="screenWidth")
    screen_height: int = Field(default=0, alias="screenHeight")
    custom_data: dict[str, Any] | None = Field(default=None, alias="customData")

    @model_validator(mode="before")
    @classmethod
    def required_fields_present(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            raise ValueError("Request body must be a JSON object")
        if not all(data.get(key) for key in ("eventType", "page", "siteId")):
            raise ValueError("Missing required fields: eventType, page, and siteId are required")
        return data

    @field_validator("event_type", mode="before")
    @classmethod
    def event_type_known(cls, v: Any) -> Any:
        if not isinstance(v, str) or v not in {t.value for t in EventType}:
            allowed = ", ".join(t.value for t in EventType)
            raise ValueError(f"Invalid eventType. Must be one of: {allowed}")
        return v

    @field_validator("site_id", mode="before")
    @classmethod
    def site_id_format(cls, v: Any) -> str:
        if not isinstance(v, str) or not SITE_ID_PATTERN.match(v):
            raise ValueError("Invalid siteId format. Must be 3-50 alphanumeric characters")
        return v[:MAX_SITE_ID_LENGTH]

    @field_validator("page", mode="before")
    @classmethod
    def page_is_short_path(cls, v: Any) -> str:
        if not isinstance(v, str) or len(v) > MAX_PAGE_LENGTH:
            raise ValueError(
                f"Invalid page path. Must be a string under {MAX_PAGE_LENGTH} characters"
            )
        return clean_page_path(v)

    @field_validator("title", mode="before")
    @classmethod
    def clamp_title(cls, v: Any) -> str:
        return _clamp_text(v, MAX_TITLE_LENGTH)

    @field_validator("referrer", mode="before")
    @classmethod
    def clamp_referrer(cls, v: Any) -> str:
        return _clamp_text(v, MAX_REFERRER_LENGTH)

    @field_validator("language", mode="before")
    @classmethod
    def clamp_language(cls, v: Any) -> str:
        return _clamp_text(v or None, MAX_LANGUAGE_LENGTH, DEFAULT_LANGUAGE)

    @field_validator("screen_width", "screen_height", mode="before")
    @classmethod
    def coerce_dimension(cls, v: Any) -> int:
        return _coerce_dimension(v)

    @field_validator("custom_data", mode="before")
    @classmethod
    def custom_data_bounded(cls, v: Any, info: ValidationInfo) -> Any:
        if v is None:
            return None
        if not isinstance(v, dict):
            raise ValueError("customData must be a JSON object")
        limit = (info.context or {}).get("custom_data_max_bytes")
        if limit is not None:
            try:
                size = len(json.dumps(v, separators=(",", ":")).encode("utf-8"))
            except (TypeError, ValueError):
                raise ValueError("customData must be JSON-serializable")
            if size > limit:
                raise ValueError(f"customData exceeds {limit} bytes")
        return v

    @model_validator(mode="after")
    def custom_data_only_for_custom_events(self) -> "TrackPayload":
        if self.event_type != EventType.CUSTOM:
            self.custom_data = None
        return self


class Event(BaseModel):
    """Immutable tracking event as stored in the warehouse."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: uuid4().hex)
    site_id: str
    event_type: EventType
    page: str
    title: str = ""
    referrer: str = ""
    referrer_type: ReferrerType = ReferrerType.DIRECT
    session_id: str
    visitor_id: str
    device: Device = Device.UNKNOWN
    browser: str = UNKNOWN_NAME
    os: str = UNKNOWN_NAME
    screen_width: int = 0
    screen_height: int = 0
    language: str = DEFAULT_LANGUAGE
    country: str = UNKNOWN_COUNTRY
    region: str = UNKNOWN_REGION
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    custom_data: dict[str, Any] | None = None

    @field_validator("session_id", "visitor_id")
    @classmethod
    def identifier_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("identifiers must not be empty")
        return v

    @field_validator("timestamp")
    @classmethod
    def timestamp_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)


class TrackResponse(BaseModel):
    """Response returned after a beacon is accepted."""

    success: bool = True
    message: str = "Event tracked successfully"
