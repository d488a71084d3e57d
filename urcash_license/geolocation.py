"""
Location hints attached to activation requests.

A location is optional: any failure here means "no location", never a
failed activation.
"""

import asyncio
from typing import Optional, Protocol

import httpx
from pydantic import ValidationError

from urcash_license.logging_config import get_logger
from urcash_license.models import LocationData, utcnow

logger = get_logger(__name__)


class LocationProvider(Protocol):
    async def get_location(self) -> Optional[LocationData]:
        ...


class NullLocationProvider:
    """Provider used when location hints are disabled."""

    async def get_location(self) -> Optional[LocationData]:
        return None


class IPLocationProvider:
    """
    Approximate location from an IP geolocation service that answers with
    ``lat``/``lon`` (or ``latitude``/``longitude``) fields.
    """

    def __init__(self, url: str, timeout: float = 5.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def get_location(self) -> Optional[LocationData]:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.get(self.url)
            response.raise_for_status()
            data = response.json()

        latitude = data.get("latitude", data.get("lat"))
        longitude = data.get("longitude", data.get("lon"))
        if latitude is None or longitude is None:
            return None

        return LocationData(
            latitude=latitude,
            longitude=longitude,
            accuracy=data.get("accuracy"),
            timestamp=utcnow(),
            source="ip_based",
        )


async def resolve_location(provider: Optional[LocationProvider], timeout: float) -> Optional[LocationData]:
    """
    Ask the provider for a location, giving up after ``timeout`` seconds.
    """
    if provider is None:
        return None

    try:
        return await asyncio.wait_for(provider.get_location(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.info("location_unavailable", reason="timeout")
    except (httpx.HTTPError, ValidationError, ValueError) as e:
        logger.info("location_unavailable", reason=str(e))
    except Exception as e:
        logger.warning("location_provider_failed", error=str(e))
    return None
