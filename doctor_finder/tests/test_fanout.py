"""Batched concurrent fan-out with per-query retry."""

import threading

from doctor_finder.errors import BlockedError, MalformedResponseError, TransientNetworkError
from doctor_finder.fanout import ParallelFanoutClient, attempt_delays
from doctor_finder.postal_codes import LDU_LETTERS

from .conftest import FakeRegistry, physician


def make_client(registry, concurrency=5, max_attempts=3, retry_delay=1.0, batch_delay=0.2):
    slept = []
    client = ParallelFanoutClient(registry, concurrency=concurrency, batch_delay=batch_delay,
                                  max_attempts=max_attempts, retry_delay=retry_delay,
                                  sleep=slept.append)
    return client, slept


def test_attempt_delays_grow_linearly():
    assert attempt_delays(3, 1.0) == [1.0, 2.0]
    assert attempt_delays(1, 1.0) == []


def test_overflow_becomes_next_pass():
    records = {f"M5H {d}": [physician(f"{d}")] for d in range(10)}
    registry = FakeRegistry(overflow={"M5H"}, records=records)
    client, _ = make_client(registry, batch_delay=0.0)

    result = client.run(["M5H"])

    assert result.passes == 2
    assert result.queries_issued == 11
    assert sorted(r.registration_number for r in result.records) == [str(d) for d in range(10)]


def test_matches_sequential_expansion():
    records = {f"M5H 2{letter}": [physician(f"2{letter}"), physician("SHARED")] for letter in LDU_LETTERS}
    registry = FakeRegistry(overflow={"M5H 2"}, records=records)
    client, _ = make_client(registry, concurrency=7, batch_delay=0.0)

    result = client.run(["M5H 2"])

    assert len(result.records) == len(LDU_LETTERS) + 1
    assert result.duplicates_skipped == len(LDU_LETTERS) - 1
    assert result.queries_issued == 1 + len(LDU_LETTERS)


def test_retryable_error_is_retried_with_increasing_delay():
    registry = FakeRegistry(
        records={"M5H": [physician("1")]},
        errors={"M5H": [TransientNetworkError("timeout"), TransientNetworkError("timeout")]},
    )
    client, slept = make_client(registry, batch_delay=0.0)

    result = client.run(["M5H"])

    assert registry.calls == ["M5H", "M5H", "M5H"]
    assert slept == [1.0, 2.0]
    assert result.failures == []
    assert [r.registration_number for r in result.records] == ["1"]


def test_exhausted_retries_land_in_failure_list():
    registry = FakeRegistry(
        records={"M5J": [physician("2")]},
        errors={"M5H": [BlockedError("captcha")] * 5},
    )
    client, _ = make_client(registry, batch_delay=0.0)

    result = client.run(["M5H", "M5J"])

    assert registry.calls.count("M5H") == 3
    assert len(result.failures) == 1
    failure = result.failures[0]
    assert failure.code == "M5H"
    assert failure.outcome == "blocked"
    assert failure.attempts == 3
    assert [r.registration_number for r in result.records] == ["2"]


def test_non_retryable_error_fails_immediately():
    registry = FakeRegistry(errors={"M5H": [MalformedResponseError("not json")]})
    client, slept = make_client(registry, batch_delay=0.0)

    result = client.run(["M5H"])

    assert registry.calls == ["M5H"]
    assert slept == []
    assert result.failures[0].outcome == "malformed"


def test_batches_are_sequential_with_delay_between():
    seeds = [f"M{d}A" for d in range(10)] + ["M0B", "M1B"]
    registry = FakeRegistry()
    client, slept = make_client(registry, concurrency=5, batch_delay=0.2)

    result = client.run(seeds)

    # 12 codes in batches of 5, 5, 2: two pauses, none after the last batch
    assert slept == [0.2, 0.2]
    assert result.queries_issued == 12
    assert result.passes == 1


def test_concurrency_is_bounded():
    in_flight = []
    peak = []
    lock = threading.Lock()
    release = threading.Event()

    class SlowRegistry(FakeRegistry):
        def search(self, code, filters=None):
            with lock:
                in_flight.append(code)
                peak.append(len(in_flight))
            release.wait(0.05)
            with lock:
                in_flight.remove(code)
            return super().search(code, filters)

    seeds = [f"M{d}{letter}" for d in range(4) for letter in "ABCE"]
    client, _ = make_client(SlowRegistry(), concurrency=3, batch_delay=0.0)
    result = client.run(seeds)

    assert max(peak) <= 3
    assert result.queries_issued == 16
