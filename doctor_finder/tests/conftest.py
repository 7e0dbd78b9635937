"""Shared fakes: no test touches the network."""

import json
from typing import Callable, Dict, List, Optional

import pytest

from doctor_finder.config import Config, PacingConfig
from doctor_finder.engine import DirectoryEngine
from doctor_finder.geo_filter import GeoContainmentFilter
from doctor_finder.geocoder import Geocoder
from doctor_finder.models import (
    EnrichmentResult,
    GeocodedAddress,
    PhysicianRecord,
    PostalCodePoint,
    RegistryResponse,
)
from doctor_finder.postal_codes import normalize_code

TORONTO = (43.6532, -79.3832)


class FakeResponse:
    def __init__(self, status_code: int = 200, json_data=None, text: Optional[str] = None):
        self.status_code = status_code
        self._json = json_data
        if text is None:
            text = json.dumps(json_data) if json_data is not None else ""
        self.text = text

    def json(self):
        if self._json is None:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        return self._json


class FakeSession:
    """Records calls; ``handler(method, url, kwargs)`` returns a FakeResponse or raises."""

    def __init__(self, handler: Callable):
        self.handler = handler
        self.calls: List[dict] = []

    def _call(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        return self.handler(method, url, kwargs)

    def get(self, url, **kwargs):
        return self._call("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self._call("POST", url, **kwargs)


def physician(number: Optional[str], name: Optional[str] = None, address: str = "100 King St W, Toronto, ON, M5H 2N2",
              **fields) -> PhysicianRecord:
    return PhysicianRecord(
        name=name or f"Dr. {number}",
        address=address,
        registration_number=number,
        postal_code=fields.pop("postal_code", "M5H 2N2"),
        postal_prefix=fields.pop("postal_prefix", "M5H"),
        **fields,
    )


class FakeRegistry:
    """Registry client double.

    ``overflow`` is a set of normalized codes that return the sentinel;
    ``records`` maps normalized codes to their records; ``errors`` maps a
    normalized code to a list of exceptions raised on successive calls.
    """

    def __init__(self, overflow=None, records=None, errors=None):
        self.overflow = {normalize_code(c) for c in (overflow or [])}
        self.records: Dict[str, List[PhysicianRecord]] = {
            normalize_code(k): v for k, v in (records or {}).items()
        }
        self.errors: Dict[str, list] = {normalize_code(k): list(v) for k, v in (errors or {}).items()}
        self.calls: List[str] = []

    def search(self, code, filters=None):
        key = normalize_code(code)
        self.calls.append(key)
        pending = self.errors.get(key)
        if pending:
            raise pending.pop(0)
        if key in self.overflow:
            return RegistryResponse(code=code, total_count=-1, overflow=True)
        records = list(self.records.get(key, []))
        return RegistryResponse(code=code, total_count=len(records), records=records)


class FakeGeocoder(Geocoder):
    def __init__(self, known: Optional[Dict[str, tuple]] = None):
        self.known = known or {}
        self.calls: List[str] = []

    def geocode(self, address):
        self.calls.append(address)
        coords = self.known.get(address)
        if coords is None:
            return None
        return GeocodedAddress(lat=coords[0], lng=coords[1], source="fake")


@pytest.fixture
def config(tmp_path):
    """Config pointed at a temp directory, with all pacing delays zeroed."""
    fast = PacingConfig(min_delay=0.0, initial_delay=0.0, max_delay=1.0,
                        base_retry_delay=0.0, max_retry_delay=0.0)
    return Config(
        db_path=tmp_path / "doctors.db",
        fsa_boundaries_file=tmp_path / "missing-boundaries.json",
        postal_codes_file=tmp_path / "missing-postal-codes.json",
        legacy_geocode_cache=tmp_path / "geocode-cache.json",
        registry_pacing=fast,
        geocode_pacing=fast,
        enrichment_pacing=fast,
        fanout_batch_delay=0.0,
        fanout_retry_delay=0.0,
    )


@pytest.fixture
def point_filter():
    """Point-radius containment around downtown Toronto (no polygons)."""
    return GeoContainmentFilter([
        PostalCodePoint(code="M5H 2", lat=43.6500, lng=-79.3832, fsa="M5H"),
        PostalCodePoint(code="M5J 1", lat=43.6450, lng=-79.3800, fsa="M5J"),
        PostalCodePoint(code="M4W 3", lat=43.6800, lng=-79.3900, fsa="M4W"),
    ])


NEAR = "1 Near St, Toronto, ON, M5H 2A1"
FAR = "2 Far St, Toronto, ON, M5H 2B1"
UNLOCATED = "3 Unknown St, Toronto, ON, M5J 1A1"


class FakeFetcher:
    def __init__(self, value="Female"):
        self.value = value
        self.calls = []

    def fetch_many(self, numbers, concurrency=None):
        numbers = list(numbers)
        self.calls.append(numbers)
        return [EnrichmentResult(n, "found", value=self.value) for n in numbers]


def make_registry():
    """Two postal codes near downtown: one near, one past 2 km, one never geocodes."""
    return FakeRegistry(records={
        "M5H 2": [physician("1", name="Dr. Near", address=NEAR),
                  physician("2", name="Dr. Far", address=FAR)],
        "M5J 1": [physician("3", name="Dr. Unlocated", address=UNLOCATED,
                            postal_code="M5J 1A1", postal_prefix="M5J")],
    })


@pytest.fixture
def make_engine(config, point_filter):
    engines = []
    lat, lng = TORONTO

    def factory(registry=None, geocoder=None, fetcher=None, background=False):
        engine = DirectoryEngine(
            config,
            geo_filter=point_filter,
            registry=registry or make_registry(),
            geocoder=geocoder or FakeGeocoder({
                NEAR: (lat + 1.5 / 111, lng),
                FAR: (lat + 2.3 / 111, lng),
            }),
            fetcher=fetcher or FakeFetcher(),
            sleep=lambda s: None,
            background_enrichment=background,
        )
        engine.start()
        engines.append(engine)
        return engine

    yield factory
    for engine in engines:
        engine.shutdown()
