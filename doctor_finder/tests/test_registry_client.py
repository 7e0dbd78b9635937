"""Registry transport: request shape, overflow detection, fallible parsing."""

import pytest
import requests

from doctor_finder.errors import (
    BlockedError,
    MalformedResponseError,
    RateLimitedError,
    ServerError,
    TransientNetworkError,
)
from doctor_finder.models import SearchFilters
from doctor_finder.registry_client import RegistryClient, build_address, parse_entry

from .conftest import FakeResponse, FakeSession

ENTRY = {
    "name": "Smith, Jane",
    "specialties": "Family Medicine",
    "street1": "100 King St W",
    "street2": "Suite 200",
    "city": "Toronto",
    "province": "ON",
    "postalcode": "m5h 2n2",
    "phonenumber": "416-555-0100",
    "languages": ["English", "French"],
    "registrationstatus": "Active",
    "cpsonumber": 123456,
}


def client_for(response_or_exc, config):
    def handler(method, url, kwargs):
        if isinstance(response_or_exc, Exception):
            raise response_or_exc
        return response_or_exc
    session = FakeSession(handler)
    return RegistryClient(config, session=session), session


def test_build_address_joins_components():
    assert build_address(ENTRY) == "100 King St W, Suite 200, Toronto, ON, m5h 2n2"


def test_parse_entry():
    record = parse_entry(ENTRY, "M5H 2")
    assert record.name == "Smith, Jane"
    assert record.registration_number == "123456"
    assert record.postal_code == "M5H 2N2"
    assert record.postal_prefix == "M5H"
    assert record.languages == "English, French"
    assert record.status == "Active"


def test_parse_entry_rejects_unusable():
    assert parse_entry({"name": "No Address"}) is None
    assert parse_entry("not a dict") is None


def test_search_sends_filters(config):
    client, session = client_for(FakeResponse(json_data={"totalcount": 1, "results": [ENTRY]}), config)
    filters = SearchFilters(doctor_type="Specialist", specialist_type="Cardiology",
                            language="FRENCH", include_inactive=True)
    response = client.search("m5h2", filters)

    call = session.calls[0]
    assert call["method"] == "POST"
    assert call["data"]["postalCode"] == "M5H 2"
    assert call["data"]["doctorType"] == "Specialist"
    assert call["data"]["SpecialistType"] == "Cardiology"
    assert call["data"]["LanguagesSelected"] == "FRENCH"
    assert call["data"]["cbx-includeinactive"] == "on"
    assert not response.overflow
    assert [r.registration_number for r in response.records] == ["123456"]
    assert client.limiter.consecutive_successes == 1


def test_overflow_sentinel(config):
    client, _ = client_for(FakeResponse(json_data={"totalcount": -1}), config)
    response = client.search("M5H")
    assert response.overflow
    assert response.records == []


def test_truncated_list_past_limit_is_overflow(config):
    payload = {"totalcount": 250, "results": [ENTRY] * 100}
    client, _ = client_for(FakeResponse(json_data=payload), config)
    assert client.search("M5H").overflow


def test_zero_results(config):
    client, _ = client_for(FakeResponse(json_data={"totalcount": 0, "results": None}), config)
    response = client.search("M5H")
    assert not response.overflow
    assert response.records == []


@pytest.mark.parametrize("payload", [
    {"results": []},
    {"totalcount": "lots"},
    {"totalcount": 2, "results": {"not": "a list"}},
    ["not", "an", "object"],
])
def test_unrecognized_shapes_are_malformed(config, payload):
    client, _ = client_for(FakeResponse(json_data=payload), config)
    with pytest.raises(MalformedResponseError):
        client.search("M5H")


def test_challenge_page_is_blocked(config):
    client, _ = client_for(FakeResponse(text="<html>Please complete the CAPTCHA</html>"), config)
    with pytest.raises(BlockedError):
        client.search("M5H")
    assert client.limiter.consecutive_errors == 1


@pytest.mark.parametrize("status, error", [
    (429, RateLimitedError),
    (503, ServerError),
    (403, BlockedError),
])
def test_http_errors_are_classified(config, status, error):
    client, _ = client_for(FakeResponse(status_code=status, text="nope"), config)
    with pytest.raises(error):
        client.search("M5H")


def test_timeout_is_transient(config):
    client, _ = client_for(requests.Timeout("read timed out"), config)
    with pytest.raises(TransientNetworkError) as info:
        client.search("M5H")
    assert info.value.retryable
