from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from typing import Optional

import geoip2.database
from geoip2.errors import AddressNotFoundError
from maxminddb import InvalidDatabaseError

from authflow.logging import get_logger

logger = get_logger(__name__)

UNKNOWN = "unknown"


@dataclass(frozen=True)
class GeoLocation:
    country: str = UNKNOWN
    city: str = UNKNOWN


def is_public_address(ip: Optional[str]) -> bool:
    """False for private, loopback, link-local and malformed addresses."""
    try:
        address = ipaddress.ip_address((ip or "").strip())
    except ValueError:
        return False
    return not (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_unspecified
        or address.is_reserved
        or address.is_multicast
    )


class GeoLocator:
    """Best-effort country and city lookup against a local GeoLite2 City database.

    Without a database every lookup resolves to unknown; login history is
    still written.
    """

    def __init__(self, database_path: Optional[str] = None, *, reader=None) -> None:
        self._reader = reader
        if self._reader is None and database_path:
            try:
                self._reader = geoip2.database.Reader(database_path)
            except (OSError, InvalidDatabaseError) as exc:
                logger.warning(
                    "geoip_database_unavailable", path=database_path, error=str(exc)
                )

    @property
    def enabled(self) -> bool:
        return self._reader is not None

    def lookup(self, ip: Optional[str]) -> GeoLocation:
        if self._reader is None or not is_public_address(ip):
            return GeoLocation()
        try:
            response = self._reader.city(ip.strip())
        except AddressNotFoundError:
            logger.debug("geoip_address_not_found")
            return GeoLocation()
        except (ValueError, InvalidDatabaseError) as exc:
            logger.warning("geoip_lookup_failed", error=str(exc))
            return GeoLocation()
        return GeoLocation(
            country=response.country.iso_code or UNKNOWN,
            city=response.city.name or UNKNOWN,
        )

    def close(self) -> None:
        if self._reader is not None:
            self._reader.close()
            self._reader = None
