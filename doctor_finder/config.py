"""Configuration for the physician directory engine."""

import os
from dataclasses import dataclass, field
from pathlib import Path


_ROOT = Path(__file__).parent.parent


@dataclass
class PacingConfig:
    """Baseline spacing policy for one external-call client (seconds)."""

    min_delay: float = 0.1
    initial_delay: float = 0.1
    max_delay: float = 5.0
    success_threshold: int = 5
    speedup_factor: float = 0.8
    # Slow-down multipliers, ordered by severity
    severity_factors: dict = field(default_factory=lambda: {
        "blocked": 5.0,
        "rate_limited": 3.0,
        "server_error": 2.0,
        "other_error": 1.5,
    })

    # Per-request retry backoff (one logical request, before giving up)
    base_retry_delay: float = 2.0
    backoff_multiplier: float = 2.0
    max_retry_delay: float = 30.0


@dataclass
class Config:
    # Data files
    db_path: Path = _ROOT / "data" / "doctors.db"
    fsa_boundaries_file: Path = _ROOT / "data" / "toronto-fsa-boundaries.json"
    postal_codes_file: Path = _ROOT / "data" / "gta-postal-codes.json"
    legacy_geocode_cache: Path = _ROOT / "data" / "geocode-cache.json"

    # Registry search
    registry_url: str = "https://register.cpso.on.ca/Get-Search-Results/"
    registry_timeout: float = 10.0
    overflow_sentinel: int = -1  # observed "more than 100", not a documented contract
    max_enumerable_results: int = 100
    registry_ttl_days: int = 7
    registry_pacing: PacingConfig = field(default_factory=lambda: PacingConfig(
        min_delay=0.0, initial_delay=0.0, max_delay=10.0,
        base_retry_delay=1.0,
    ))

    # Fan-out
    fanout_concurrency: int = 5
    fanout_batch_delay: float = 0.2
    fanout_max_attempts: int = 3
    fanout_retry_delay: float = 1.0  # multiplied by attempt number

    # Geocoding
    geocoder_order: list = field(default_factory=lambda: ["toronto", "google", "mapsco"])
    google_api_key: str = ""
    mapsco_api_key: str = ""
    geocode_timeout: float = 10.0
    geocode_concurrency: int = 20
    geocode_max_attempts: int = 5
    geocode_pacing: PacingConfig = field(default_factory=lambda: PacingConfig(
        min_delay=0.0, initial_delay=0.0, max_delay=5.0,
        base_retry_delay=1.0, max_retry_delay=32.0,
    ))

    # Enrichment (demographic field fetched per registration number)
    enrichment_url: str = "https://register.cpso.on.ca/physician-info/"
    enrichment_timeout: float = 15.0
    enrichment_concurrency: int = 2
    enrichment_max_attempts: int = 3
    enrichment_batch_limit: int = 50
    enrichment_pacing: PacingConfig = field(default_factory=PacingConfig)

    # Spatial
    target_crs: str = "EPSG:4326"

    @classmethod
    def from_env(cls, environ=None) -> "Config":
        """Defaults with the deployment overrides read from the environment."""
        env = os.environ if environ is None else environ
        config = cls()
        if env.get("DOCTOR_FINDER_DB"):
            config.db_path = Path(env["DOCTOR_FINDER_DB"])
        config.google_api_key = env.get("GOOGLE_API_KEY", config.google_api_key)
        config.mapsco_api_key = env.get("MAPSCO_API_KEY", config.mapsco_api_key)
        if env.get("FANOUT_CONCURRENCY"):
            config.fanout_concurrency = max(1, int(env["FANOUT_CONCURRENCY"]))
        return config
