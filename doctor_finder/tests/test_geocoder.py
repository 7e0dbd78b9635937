"""Geocoder providers and the priority chain."""

import concurrent.futures

import requests

from doctor_finder.geocoder import (
    ChainedGeocoder,
    GoogleGeocoder,
    MapsCoGeocoder,
    TorontoGeocoder,
    create_geocoder,
)

from .conftest import FakeGeocoder, FakeResponse, FakeSession


def toronto_handler(method, url, kwargs):
    if url.endswith("/suggest"):
        return FakeResponse(json_data={"result": {"rows": [
            {"KEYSTRING": "KEY123", "ADDRESS": "100 KING ST W"},
        ]}})
    return FakeResponse(json_data={"result": {"rows": [
        {"ADDRESS_FULL": "100 King St W, Toronto", "LATITUDE": "43.6487", "LONGITUDE": "-79.3817", "SCORE": 100},
    ]}})


def test_toronto_suggest_then_resolve(config):
    session = FakeSession(toronto_handler)
    geocoder = TorontoGeocoder(config=config, session=session, sleep=lambda s: None)

    geo = geocoder.geocode("100 King St W")

    assert (geo.lat, geo.lng) == (43.6487, -79.3817)
    assert geo.source == "toronto"
    assert geo.confidence == 1.0
    assert session.calls[1]["params"]["keyString"] == "KEY123"


def test_toronto_suggest_passthrough(config):
    geocoder = TorontoGeocoder(config=config, session=FakeSession(toronto_handler))
    assert geocoder.suggest("100 King") == [{"keyString": "KEY123", "address": "100 KING ST W"}]


def test_google_statuses(config):
    replies = iter([
        FakeResponse(json_data={"status": "OVER_QUERY_LIMIT"}),
        FakeResponse(json_data={"status": "OK", "results": [{
            "formatted_address": "100 King St W, Toronto, ON",
            "geometry": {"location": {"lat": 43.6487, "lng": -79.3817}, "location_type": "ROOFTOP"},
        }]}),
        FakeResponse(json_data={"status": "ZERO_RESULTS", "results": []}),
    ])
    session = FakeSession(lambda m, u, k: next(replies))
    slept = []
    geocoder = GoogleGeocoder("key", config=config, session=session, sleep=slept.append)

    geo = geocoder.geocode("100 King St W")
    assert geo.confidence == 0.98
    assert session.calls[0]["params"]["region"] == "ca"
    assert len(slept) == 1
    assert geocoder.limiter.total_errors == 1

    assert geocoder.geocode("Nowhere") is None


def test_retries_exhausted_returns_none(config):
    session = FakeSession(lambda m, u, k: (_ for _ in ()).throw(requests.ConnectionError("reset")))
    config.geocode_max_attempts = 3
    geocoder = MapsCoGeocoder(config=config, session=session, sleep=lambda s: None)
    assert geocoder.geocode("100 King St W") is None
    assert len(session.calls) == 3


def test_malformed_reply_is_not_retried(config):
    session = FakeSession(lambda m, u, k: FakeResponse(json_data={"unexpected": True}))
    geocoder = MapsCoGeocoder(config=config, session=session, sleep=lambda s: None)
    assert geocoder.geocode("100 King St W") is None
    assert len(session.calls) == 1


def test_chain_falls_through_and_counts_hits():
    first = FakeGeocoder({"A": (1.0, 1.0)})
    first.source = "first"
    second = FakeGeocoder({"B": (2.0, 2.0)})
    second.source = "second"
    chain = ChainedGeocoder([first, second])

    assert chain.geocode("A").lat == 1.0
    assert chain.geocode("B").lat == 2.0
    assert chain.geocode("C") is None
    assert second.calls == ["B", "C"]
    assert chain.stats["hits"] == {"first": 1, "second": 1}
    assert chain.stats["total_misses"] == 1


def test_chain_counts_are_exact_under_concurrency():
    provider = FakeGeocoder({"A": (1.0, 1.0)})
    provider.source = "only"
    chain = ChainedGeocoder([provider])

    with concurrent.futures.ThreadPoolExecutor(max_workers=20) as executor:
        list(executor.map(chain.geocode, ["A", "Z"] * 500))

    assert chain.stats["hits"] == {"only": 500}
    assert chain.stats["total_misses"] == 500
    assert chain.stats["total"] == 1000


def test_create_geocoder_skips_google_without_key(config):
    chain = create_geocoder(config, session=FakeSession(toronto_handler))
    assert [p.source for p in chain.providers] == ["toronto", "mapsco"]

    config.google_api_key = "abc"
    chain = create_geocoder(config, session=FakeSession(toronto_handler))
    assert [p.source for p in chain.providers] == ["toronto", "google", "mapsco"]
