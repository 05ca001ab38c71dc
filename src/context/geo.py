"""IP to country/region resolution backed by a local MaxMind database.

Lookups never raise: a missing database, a private or malformed address,
or an address absent from the database all resolve to ``GeoLocation.unknown()``.
"""

import ipaddress
import logging
import os
from dataclasses import dataclass

import geoip2.database
import geoip2.errors
import maxminddb

logger = logging.getLogger(__name__)

UNKNOWN_COUNTRY = "Unknown"
UNKNOWN_REGION = "Unknown"


@dataclass(frozen=True)
class GeoLocation:
    country: str
    region: str

    @classmethod
    def unknown(cls) -> "GeoLocation":
        return cls(UNKNOWN_COUNTRY, UNKNOWN_REGION)

    @property
    def is_unknown(self) -> bool:
        return self.country == UNKNOWN_COUNTRY


class GeoResolver:
    """Resolves IPs against a GeoLite2/GeoIP2 City or Country database.

    Args:
        db_path: Path to the .mmdb file. ``None`` or a missing file disables
            resolution (every lookup is unknown).
        reader: Pre-built reader, mainly for tests. Takes precedence over ``db_path``.
    """

    def __init__(self, db_path: str | None = None, reader=None):
        self._reader = reader
        if self._reader is None and db_path:
            if os.path.exists(db_path):
                self._reader = geoip2.database.Reader(db_path)
                logger.info("GeoIP database loaded from %s", db_path)
            else:
                logger.warning("GeoIP database not found at %s; geo lookups disabled", db_path)
        self._has_city = self._reader is not None and "City" in self._database_type()

    def _database_type(self) -> str:
        try:
            return self._reader.metadata().database_type
        except AttributeError:
            return ""

    @property
    def enabled(self) -> bool:
        return self._reader is not None

    def lookup(self, ip: str | None) -> GeoLocation:
        if self._reader is None or not ip or ip == "unknown":
            return GeoLocation.unknown()

        try:
            addr = ipaddress.ip_address(ip)
        except ValueError:
            return GeoLocation.unknown()
        if addr.is_private or addr.is_loopback:
            return GeoLocation.unknown()

        try:
            if self._has_city:
                resp = self._reader.city(ip)
                region = resp.subdivisions.most_specific.iso_code
            else:
                resp = self._reader.country(ip)
                region = None
        except (geoip2.errors.GeoIP2Error, maxminddb.InvalidDatabaseError, ValueError, TypeError) as exc:
            logger.debug("GeoIP lookup failed: %s", exc)
            return GeoLocation.unknown()

        country = resp.country.iso_code or resp.registered_country.iso_code
        return GeoLocation(country or UNKNOWN_COUNTRY, region or UNKNOWN_REGION)

    def close(self) -> None:
        if self._reader is not None:
            self._reader.close()
            self._reader = None
