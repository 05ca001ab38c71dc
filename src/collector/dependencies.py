"""FastAPI dependencies shared by the ingestion and analytics routes."""

from collections.abc import Iterator

import duckdb
from fastapi import Request

from src.config import Settings
from src.context.geo import GeoResolver


def get_db(request: Request) -> Iterator[duckdb.DuckDBPyConnection]:
    """A per-request cursor on the shared warehouse connection."""
    cursor = request.app.state.db.cursor()
    try:
        yield cursor
    finally:
        cursor.close()


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_geo(request: Request) -> GeoResolver:
    return request.app.state.geo


def client_ip(request: Request) -> str | None:
    """Best guess at the client address, honoring common proxy headers.

    Checks ``x-forwarded-for`` (first hop), ``x-real-ip``,
    ``cf-connecting-ip`` and finally the socket peer.
    """
    headers = request.headers
    forwarded = headers.get("x-forwarded-for", "").split(",")[0].strip()
    ip = (
        forwarded
        or headers.get("x-real-ip")
        or headers.get("cf-connecting-ip")
        or (request.client.host if request.client else None)
    )
    if not ip:
        return None
    return ip.strip().removeprefix("::ffff:")
