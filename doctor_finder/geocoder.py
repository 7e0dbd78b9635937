"""Geocoding wrapper: pluggable providers behind one address-in, coordinates-out contract.

Providers, in default priority order:
  toronto  City of Toronto suggest + findAddressCandidates pair (free, municipal)
  google   Google Geocoding API (API key required)
  mapsco   geocode.maps.co community geocoder (API key optional)
"""

import logging
import random
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

import requests

from .config import Config
from .errors import (
    DirectoryError,
    MalformedResponseError,
    RateLimitedError,
    classify_status,
    from_request_exception,
)
from .models import GeocodedAddress
from .rate_limiter import SUCCESS, AdaptiveRateLimiter

logger = logging.getLogger(__name__)

_JSON_HEADERS = {"Accept": "application/json, text/javascript, */*; q=0.01"}


class Geocoder(ABC):
    @abstractmethod
    def geocode(self, address: str) -> Optional[GeocodedAddress]:
        """Geocode an address string to lat/lng. None when unresolved."""
        ...


class HttpGeocoder(Geocoder):
    """Shared request pacing and retry for HTTP geocoding providers."""

    source = "http"

    def __init__(self, config: Optional[Config] = None,
                 limiter: Optional[AdaptiveRateLimiter] = None,
                 session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config or Config()
        self.limiter = limiter or AdaptiveRateLimiter(self.config.geocode_pacing, name=f"geocoder:{self.source}")
        self.session = session or requests.Session()
        self.max_attempts = max(1, self.config.geocode_max_attempts)
        self.timeout = self.config.geocode_timeout
        self._sleep = sleep

    @abstractmethod
    def _lookup(self, address: str) -> Optional[GeocodedAddress]:
        """One provider round trip. Raises DirectoryError, returns None on no match."""
        ...

    def _get_json(self, url: str, params: dict):
        self.limiter.wait()
        try:
            t0 = time.time()
            resp = self.session.get(url, params=params, headers=_JSON_HEADERS, timeout=self.timeout)
            elapsed_ms = int((time.time() - t0) * 1000)
            classify_status(resp.status_code, context=f"{self.source}: ")
            data = resp.json()
        except ValueError as e:
            # requests raises a ValueError subclass for undecodable JSON
            raise MalformedResponseError(f"{self.source}: response is not JSON") from e
        except requests.RequestException as e:
            raise from_request_exception(e, context=f"{self.source}: ") from e
        logger.debug(f"{self.source} geocoder: GET {url} ({elapsed_ms}ms)")
        return data

    def geocode(self, address: str) -> Optional[GeocodedAddress]:
        if not address or not address.strip():
            return None
        attempt = 0
        while True:
            attempt += 1
            try:
                result = self._lookup(address)
            except DirectoryError as e:
                self.limiter.record(e.outcome)
                if e.retryable and attempt < self.max_attempts:
                    delay = self.limiter.retry_delay(attempt)
                    delay += random.random() * 0.3 * delay  # up to 30% jitter
                    logger.info(f"{self.source} geocoder: {e}; retrying '{address}' in "
                                f"{delay:.1f}s (attempt {attempt}/{self.max_attempts})")
                    self._sleep(delay)
                    continue
                logger.warning(f"{self.source} geocoder failed for '{address}' after "
                               f"{attempt} attempt(s): {e}")
                return None
            self.limiter.record(SUCCESS)
            if result is None:
                logger.debug(f"{self.source} geocoder: no match for '{address}'")
            return result


class TorontoGeocoder(HttpGeocoder):
    """City of Toronto address geocoder: suggest a key string, then resolve it."""

    source = "toronto"
    SUGGEST_URL = "https://map.toronto.ca/cotgeocoder/rest/geocoder/suggest"
    CANDIDATES_URL = "https://map.toronto.ca/cotgeocoder/rest/geocoder/findAddressCandidates"

    def suggest(self, search_string: str, limit: int = 5) -> List[Dict[str, str]]:
        params = {"f": "json", "addressOnly": 0, "retRowLimit": limit, "searchString": search_string}
        data = self._get_json(self.SUGGEST_URL, params)
        rows = (data.get("result") or {}).get("rows") or [] if isinstance(data, dict) else []
        return [
            {"keyString": row.get("KEYSTRING", ""), "address": row.get("ADDRESS", "")}
            for row in rows if isinstance(row, dict) and row.get("KEYSTRING")
        ]

    def candidates(self, key_string: str, limit: int = 10) -> List[dict]:
        params = {"f": "json", "keyString": key_string, "retRowLimit": limit}
        data = self._get_json(self.CANDIDATES_URL, params)
        rows = (data.get("result") or {}).get("rows") or [] if isinstance(data, dict) else []
        return [
            {
                "address": row.get("ADDRESS_FULL", ""),
                "location": {"x": row.get("LONGITUDE"), "y": row.get("LATITUDE")},
                "score": row.get("SCORE"),
            }
            for row in rows if isinstance(row, dict)
        ]

    def _lookup(self, address: str) -> Optional[GeocodedAddress]:
        suggestions = self.suggest(address, limit=1)
        if not suggestions:
            return None
        candidates = self.candidates(suggestions[0]["keyString"], limit=1)
        if not candidates:
            return None
        best = candidates[0]
        try:
            lat = float(best["location"]["y"])
            lng = float(best["location"]["x"])
        except (TypeError, ValueError) as e:
            raise MalformedResponseError(f"toronto: bad coordinates {best['location']!r}") from e
        score = best.get("score")
        return GeocodedAddress(
            lat=lat, lng=lng, source=self.source,
            formatted_address=best.get("address") or suggestions[0]["address"],
            confidence=float(score) / 100 if isinstance(score, (int, float)) else 0.90,
        )


class GoogleGeocoder(HttpGeocoder):
    """Google Maps geocoder. Requires GOOGLE_API_KEY."""

    source = "google"
    BASE_URL = "https://maps.googleapis.com/maps/api/geocode/json"

    def __init__(self, api_key: str, **kwargs):
        if not api_key:
            raise ValueError("Google geocoder requires an API key")
        self.api_key = api_key
        super().__init__(**kwargs)

    def _lookup(self, address: str) -> Optional[GeocodedAddress]:
        data = self._get_json(self.BASE_URL, {"address": address, "region": "ca", "key": self.api_key})
        if not isinstance(data, dict):
            raise MalformedResponseError("google: response is not an object")

        status = data.get("status", "")
        if status == "ZERO_RESULTS":
            return None
        if status == "OVER_QUERY_LIMIT":
            raise RateLimitedError("google: OVER_QUERY_LIMIT")
        if status != "OK" or not data.get("results"):
            raise DirectoryError(f"google: status {status or 'missing'}")

        best = data["results"][0]
        geometry = best.get("geometry", {})
        loc = geometry.get("location", {})
        confidence_map = {
            "ROOFTOP": 0.98,
            "RANGE_INTERPOLATED": 0.90,
            "GEOMETRIC_CENTER": 0.80,
            "APPROXIMATE": 0.60,
        }
        try:
            return GeocodedAddress(
                lat=float(loc["lat"]),
                lng=float(loc["lng"]),
                source=self.source,
                formatted_address=best.get("formatted_address", address),
                confidence=confidence_map.get(geometry.get("location_type", ""), 0.70),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedResponseError(f"google: bad location {loc!r}") from e


class MapsCoGeocoder(HttpGeocoder):
    """geocode.maps.co (Nominatim-backed community geocoder)."""

    source = "mapsco"
    BASE_URL = "https://geocode.maps.co/search"

    def __init__(self, api_key: str = "", **kwargs):
        self.api_key = api_key
        super().__init__(**kwargs)

    def _lookup(self, address: str) -> Optional[GeocodedAddress]:
        params = {"q": address}
        if self.api_key:
            params["api_key"] = self.api_key
        data = self._get_json(self.BASE_URL, params)
        if not isinstance(data, list):
            raise MalformedResponseError("mapsco: response is not a list")
        if not data:
            return None
        best = data[0]
        try:
            return GeocodedAddress(
                lat=float(best["lat"]),
                lng=float(best["lon"]),
                source=self.source,
                formatted_address=best.get("display_name", address),
                confidence=0.70,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedResponseError(f"mapsco: bad result {best!r}") from e


class ChainedGeocoder(Geocoder):
    """Tries each provider in priority order until one resolves the address."""

    def __init__(self, providers: List[Geocoder]):
        if not providers:
            raise ValueError("ChainedGeocoder needs at least one provider")
        self.providers = providers
        self.hits: Dict[str, int] = {self._name(p): 0 for p in providers}
        self.total_misses = 0
        self._lock = threading.Lock()

    @staticmethod
    def _name(provider: Geocoder) -> str:
        return getattr(provider, "source", type(provider).__name__)

    def geocode(self, address: str) -> Optional[GeocodedAddress]:
        for provider in self.providers:
            result = provider.geocode(address)
            if result is not None:
                with self._lock:
                    self.hits[self._name(provider)] += 1
                return result
        with self._lock:
            self.total_misses += 1
        return None

    def suggest(self, search_string: str, limit: int = 5) -> List[Dict[str, str]]:
        for provider in self.providers:
            if hasattr(provider, "suggest"):
                return provider.suggest(search_string, limit=limit)
        return []

    @property
    def stats(self) -> dict:
        with self._lock:
            hits = dict(self.hits)
            misses = self.total_misses
        total = sum(hits.values()) + misses
        return {
            "total": total,
            "hits": hits,
            "total_misses": misses,
            "hit_rate": f"{(total - misses) / total * 100:.1f}%" if total else "N/A",
        }


def create_geocoder(config: Config, session: Optional[requests.Session] = None) -> ChainedGeocoder:
    """Build the provider chain from ``config.geocoder_order``.

    Providers that need a key are skipped when the key is missing.
    """
    session = session or requests.Session()
    providers: List[Geocoder] = []
    for name in config.geocoder_order:
        name = name.strip().lower()
        if name == "toronto":
            providers.append(TorontoGeocoder(config=config, session=session))
        elif name == "google":
            if config.google_api_key:
                providers.append(GoogleGeocoder(config.google_api_key, config=config, session=session))
            else:
                logger.info("Google geocoder disabled (no GOOGLE_API_KEY)")
        elif name == "mapsco":
            providers.append(MapsCoGeocoder(config.mapsco_api_key, config=config, session=session))
        else:
            logger.warning(f"Unknown geocoder '{name}' in geocoder_order, skipping")
    if not providers:
        providers.append(MapsCoGeocoder(config.mapsco_api_key, config=config, session=session))
    return ChainedGeocoder(providers)
