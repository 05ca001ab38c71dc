"""Ingestion pipeline: turn one beacon into a stored event and a stitched session.

Steps, in order: validate and sanitize the payload, derive pseudonymous
identifiers from the raw IP/user-agent, classify request context, append
the event, then advance its session. The event write always happens before
the session update; if the session update fails the event stays stored.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import duckdb
from pydantic import ValidationError as PydanticValidationError

from src.collector.schemas import Event, TrackPayload
from src.config import Settings
from src.context.geo import GeoResolver
from src.context.referrer import classify_referrer
from src.context.useragent import parse_user_agent
from src.errors import ValidationError
from src.identity.hashing import anonymize_ip, generate_session_id, generate_visitor_id
from src.sessions.stitcher import stitch_event
from src.warehouse.db import insert_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClientContext:
    """Request metadata the beacon body cannot be trusted to carry."""

    ip: str | None
    user_agent: str | None
    host: str | None


def _first_error_message(exc: PydanticValidationError) -> str:
    error = exc.errors()[0]
    message = error["msg"]
    return message.removeprefix("Value error, ")


def validate_payload(raw: Any, custom_data_max_bytes: int | None = None) -> TrackPayload:
    """Validate a raw beacon body, raising ``ValidationError`` with a readable message."""
    try:
        return TrackPayload.model_validate(
            raw, context={"custom_data_max_bytes": custom_data_max_bytes}
        )
    except PydanticValidationError as exc:
        raise ValidationError(_first_error_message(exc)) from exc


def build_event(
    payload: TrackPayload,
    client: ClientContext,
    secret: str,
    geo: GeoResolver,
    now: datetime | None = None,
) -> Event:
    """Combine a validated payload with server-derived identity and context."""
    now = now or datetime.now(timezone.utc)
    ua = parse_user_agent(client.user_agent)
    location = geo.lookup(client.ip)

    return Event(
        site_id=payload.site_id,
        event_type=payload.event_type,
        page=payload.page,
        title=payload.title,
        referrer=payload.referrer,
        referrer_type=classify_referrer(payload.referrer, client.host),
        session_id=generate_session_id(
            client.ip, client.user_agent, secret, now.astimezone(timezone.utc).date()
        ),
        visitor_id=generate_visitor_id(client.ip, client.user_agent, secret),
        device=ua.device,
        browser=ua.browser,
        os=ua.os,
        screen_width=payload.screen_width,
        screen_height=payload.screen_height,
        language=payload.language,
        country=location.country,
        region=location.region,
        timestamp=now,
        custom_data=payload.custom_data,
    )


def record_event(
    conn: duckdb.DuckDBPyConnection,
    raw: Any,
    client: ClientContext,
    settings: Settings,
    geo: GeoResolver,
    now: datetime | None = None,
) -> Event:
    """Validate, persist and stitch one beacon.

    Raises:
        ValidationError: the payload is malformed.
        StorageError: the event or session could not be written.
    """
    payload = validate_payload(raw, settings.custom_data_max_bytes)
    event = build_event(
        payload, client, settings.api_secret.get_secret_value(), geo, now=now
    )

    insert_event(conn, event)
    stitch_event(conn, event)

    logger.debug(
        "Tracked %s on %s%s from %s",
        event.event_type.value,
        event.site_id,
        event.page,
        anonymize_ip(client.ip),
    )
    return event
