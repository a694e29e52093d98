"""Address to coordinates via the Google Geocoding API.

The oracle is rate limited and sometimes down. Every failure path returns
None; callers route on zipcode/city/service areas when coordinates are missing.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

import requests
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import load_config

logger = logging.getLogger(__name__)

GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"


def format_address(
    address: Optional[str] = None,
    city: Optional[str] = None,
    state: Optional[str] = None,
    zipcode: Optional[str] = None,
) -> str:
    parts = [part.strip() for part in (address, city) if part and part.strip()]
    tail = " ".join(part.strip() for part in (state, zipcode) if part and part.strip())
    if tail:
        parts.append(tail)
    return ", ".join(parts)


class GeocodingClient:
    def __init__(self, api_key: str, timeout: float = 5) -> None:
        self.api_key = api_key
        self.timeout = timeout
        self.session = requests.Session()

    def return_none_on_error(retry_state):
        return None

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=2),
        retry=retry_if_exception_type(requests.RequestException),
        retry_error_callback=return_none_on_error,
    )
    def geocode(self, address: str) -> Optional[tuple[float, float]]:
        resp = self.session.get(
            GEOCODE_URL,
            params={"address": address, "key": self.api_key},
            timeout=self.timeout,
        )
        if resp.status_code == 429 or resp.status_code >= 500:
            resp.raise_for_status()
        if resp.status_code != 200:
            logger.warning("Geocoding API error %d: %s", resp.status_code, resp.text[:200])
            return None

        data: dict[str, Any] = resp.json()
        results = data.get("results") or []
        if data.get("status") != "OK" or not results:
            logger.info("No geocoding result for %r (status %s)", address, data.get("status"))
            return None

        location = results[0].get("geometry", {}).get("location", {})
        try:
            return float(location["lat"]), float(location["lng"])
        except (KeyError, TypeError, ValueError):
            logger.warning("Malformed geocoding result for %r", address)
            return None


def geocode(address: Optional[str]) -> Optional[tuple[float, float]]:
    if not address or not address.strip():
        return None
    config = load_config()
    if not config.google_maps_api_key:
        logger.debug("GOOGLE_MAPS_API_KEY not set; skipping geocoding")
        return None
    return GeocodingClient(config.google_maps_api_key, timeout=config.geocode_timeout).geocode(address.strip())
