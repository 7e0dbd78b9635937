from pathlib import Path

from doctor_finder.config import Config


def test_defaults():
    config = Config()
    assert config.overflow_sentinel == -1
    assert config.max_enumerable_results == 100
    assert config.fanout_concurrency == 5
    assert config.fanout_max_attempts == 3
    assert config.enrichment_pacing.success_threshold == 5
    assert config.enrichment_pacing.severity_factors["blocked"] == 5.0
    assert config.geocoder_order == ["toronto", "google", "mapsco"]


def test_environment_overrides():
    config = Config.from_env({
        "DOCTOR_FINDER_DB": "/tmp/other.db",
        "GOOGLE_API_KEY": "g-key",
        "FANOUT_CONCURRENCY": "12",
    })
    assert config.db_path == Path("/tmp/other.db")
    assert config.google_api_key == "g-key"
    assert config.mapsco_api_key == ""
    assert config.fanout_concurrency == 12


def test_pacing_blocks_are_independent():
    config = Config()
    config.geocode_pacing.max_delay = 99
    assert Config().geocode_pacing.max_delay != 99
    assert config.registry_pacing.max_delay != 99
