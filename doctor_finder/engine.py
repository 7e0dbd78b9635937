"""DirectoryEngine: orchestrates containment, registry fan-out, reconciliation and geocoding."""

import logging
import sqlite3
import threading
import time
from collections import OrderedDict
from typing import Callable, Dict, Iterable, List, Optional, Set

import requests

from .cache import ReconciliationCache
from .config import Config
from .enricher import BackgroundEnricher
from .enrichment import EnrichmentFetcher
from .errors import DirectoryError
from .fanout import ParallelFanoutClient
from .geo_filter import GeoContainmentFilter, distance_km
from .geocoder import Geocoder, create_geocoder
from .models import (
    DirectoryStats,
    EnrichmentResult,
    ExpansionResult,
    GeocodedAddress,
    PhysicianRecord,
    SearchFilters,
    SearchResult,
)
from .postal_codes import display_code, is_valid_prefix, normalize_code
from .query_expander import RecordMerger
from .registry_client import RegistryClient

logger = logging.getLogger(__name__)

# Registration numbers tracked for in-place enrichment of returned records
_PROJECTION_LIMIT = 10000


class DirectoryEngine:
    """
    Physician directory service.

    Takes a centre point and radius, finds the postal codes the circle
    touches, resolves them against the registry (subdividing overflowing
    codes), reconciles the results into the local store, geocodes the
    addresses and returns the physicians inside the circle, nearest first.
    Demographic enrichment runs afterwards on a background thread.

    Owns every network client and the database handle; call ``shutdown()``
    when done.
    """

    def __init__(self, config: Optional[Config] = None,
                 geo_filter: Optional[GeoContainmentFilter] = None,
                 registry: Optional[RegistryClient] = None,
                 geocoder: Optional[Geocoder] = None,
                 fetcher: Optional[EnrichmentFetcher] = None,
                 session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 background_enrichment: bool = True):
        self.config = config or Config()
        self.background_enrichment = background_enrichment

        logger.info("Initializing DirectoryEngine...")
        t0 = time.time()

        session = session or requests.Session()

        # Containment: polygons when available, else point-radius
        self.geo = geo_filter or GeoContainmentFilter.from_files(
            self.config.postal_codes_file, self.config.fsa_boundaries_file, self.config.target_crs,
        )

        # Registry search + fan-out
        self.registry = registry or RegistryClient(self.config, session=session)
        self.fanout = ParallelFanoutClient(self.registry, self.config, sleep=sleep)

        # Geocoder chain behind the read-through cache
        self.geocoder = geocoder or create_geocoder(self.config, session=session)
        self.cache = ReconciliationCache(
            self.config.db_path, geocoder=self.geocoder,
            geocode_concurrency=self.config.geocode_concurrency,
        )
        self.cache.import_legacy_geocodes(self.config.legacy_geocode_cache)

        # Enrichment
        self.fetcher = fetcher or EnrichmentFetcher(self.config, session=session, sleep=sleep)
        self.enricher = BackgroundEnricher(self.cache, self.fetcher, self.config,
                                           on_update=self._apply_to_projection)

        # Records handed out by recent searches, keyed by registration number
        self._projection: "OrderedDict[str, List[PhysicianRecord]]" = OrderedDict()
        self._projection_lock = threading.Lock()

        elapsed = time.time() - t0
        logger.info(
            f"DirectoryEngine ready in {elapsed:.1f}s: "
            f"postal_codes={len(self.geo.points)}, areas={len(self.geo.polygons)}, "
            f"physicians={self.cache.size}"
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self):
        if self.background_enrichment:
            self.enricher.start()

    def shutdown(self):
        self.enricher.shutdown()
        self.cache.close()
        logger.info("DirectoryEngine shut down")

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *exc):
        self.shutdown()

    # ------------------------------------------------------------------
    # Searches
    # ------------------------------------------------------------------
    def radius_search(self, lat: float, lng: float, radius_km: float,
                      doctor_type: str = "Any", specialist_type: Optional[str] = None,
                      language: str = "ENGLISH", include_inactive: bool = False,
                      use_cache: bool = True) -> SearchResult:
        """
        Physicians within ``radius_km`` of (lat, lng).

        1. Postal codes whose area touches the circle
        2. Skip codes fully listed recently (default filters only)
        3. Fan out registry queries for the rest
        4. Reconcile into the store
        5. Geocode, measure, keep what falls inside the circle
        6. Schedule background enrichment
        """
        if not -90 <= lat <= 90 or not -180 <= lng <= 180:
            raise ValueError(f"Invalid coordinates: ({lat}, {lng})")
        if radius_km <= 0:
            raise ValueError(f"Radius must be positive, got {radius_km}")

        t0 = time.time()
        filters = SearchFilters(doctor_type=doctor_type, specialist_type=specialist_type,
                                language=language, include_inactive=include_inactive)
        hits = self.geo.postal_codes_in_radius(lat, lng, radius_km)
        result = SearchResult(lat=lat, lng=lng, radius_km=radius_km, postal_codes=hits,
                              polygon_mode=self.geo.polygon_mode)
        if not hits:
            logger.info(f"No postal codes within {radius_km}km of ({lat}, {lng})")
            result.search_time_ms = int((time.time() - t0) * 1000)
            return result

        seeds: List[str] = []
        for hit in hits:
            code = normalize_code(hit.code)
            if code not in seeds:
                seeds.append(code)

        fresh: Set[str] = set()
        if use_cache and filters.is_default:
            fresh = self.cache.fresh_codes(seeds, self.config.registry_ttl_days)
        query_seeds = [c for c in seeds if c not in fresh]
        logger.info(f"Radius search ({lat}, {lng}) r={radius_km}km: {len(seeds)} postal codes, "
                    f"{len(query_seeds)} to query, {len(fresh)} served from store")

        expansion = self._expand(query_seeds, filters, result)
        if filters.is_default and result.storage_error is None:
            self.cache.mark_refreshed(self._complete_seeds(query_seeds, expansion))

        merger = RecordMerger()
        merger.add(expansion.records)
        if fresh:
            merger.add(self.cache.physicians_for_codes(fresh, filters))
            result.served_from_store = sorted(display_code(c) for c in fresh)

        inside = self._locate(merger.records, lat, lng, radius_km, result)
        inside.sort(key=lambda r: (r.distance_km is None, r.distance_km or 0.0, r.name))
        result.physicians = inside
        self._remember(inside)

        self._schedule_enrichment(inside)
        result.search_time_ms = int((time.time() - t0) * 1000)
        logger.info(f"Radius search complete: {len(inside)} physicians, "
                    f"{len(result.failures)} failed queries ({result.search_time_ms}ms)")
        return result

    def search_postal_code(self, code: str, doctor_type: str = "Any",
                           specialist_type: Optional[str] = None, language: str = "ENGLISH",
                           include_inactive: bool = False) -> SearchResult:
        """All physicians registered under one postal prefix, expanding on overflow."""
        if not is_valid_prefix(code):
            raise ValueError(f"Invalid postal prefix: {code!r}")
        t0 = time.time()
        filters = SearchFilters(doctor_type=doctor_type, specialist_type=specialist_type,
                                language=language, include_inactive=include_inactive)
        result = SearchResult(lat=None, lng=None, radius_km=0.0, polygon_mode=self.geo.polygon_mode)
        expansion = self._expand([normalize_code(code)], filters, result)

        records = expansion.records
        geocodes = self.cache.resolve_addresses(r.address for r in records)
        for record in records:
            self._place(record, geocodes.get(record.address))
            if record.lat is None:
                result.geocode_misses += 1
        records.sort(key=lambda r: r.name)
        result.physicians = records
        self._remember(records)

        self._schedule_enrichment(records)
        result.search_time_ms = int((time.time() - t0) * 1000)
        logger.info(f"Postal search {display_code(code)}: {len(records)} physicians "
                    f"({result.search_time_ms}ms)")
        return result

    def _expand(self, seeds: List[str], filters: SearchFilters, result: SearchResult) -> ExpansionResult:
        """Fan out, reconcile, and copy the ledger onto the result."""
        expansion = self.fanout.run(seeds, filters) if seeds else ExpansionResult()
        result.failures = expansion.failures
        result.partial_coverage = expansion.partial_coverage
        result.queries_issued = expansion.queries_issued
        if expansion.partial_coverage:
            logger.warning(f"Partial coverage: {len(expansion.partial_coverage)} postal codes still "
                           f"overflow at full specificity: {', '.join(expansion.partial_coverage[:10])}")

        if expansion.records:
            try:
                result.upsert = self.cache.upsert_physicians(expansion.records)
            except sqlite3.Error as e:
                result.storage_error = str(e)

            known = self.cache.enrichment_values(
                r.registration_number for r in expansion.records if r.registration_number
            )
            for record in expansion.records:
                if not record.gender and record.registration_number in known:
                    record.gender = known[record.registration_number]
        return expansion

    @staticmethod
    def _complete_seeds(seeds: List[str], expansion: ExpansionResult) -> List[str]:
        """Seeds with no failed query and no partial coverage anywhere beneath them."""
        incomplete = [normalize_code(f.code) for f in expansion.failures]
        incomplete += [normalize_code(c) for c in expansion.partial_coverage]
        return [s for s in seeds if not any(code.startswith(s) for code in incomplete)]

    def _locate(self, records: List[PhysicianRecord], lat: float, lng: float,
                radius_km: float, result: SearchResult) -> List[PhysicianRecord]:
        """Attach coordinates and distance; drop located records outside the circle."""
        missing = {r.address for r in records if r.lat is None}
        geocodes = self.cache.resolve_addresses(missing) if missing else {}

        inside = []
        for record in records:
            if record.lat is None:
                self._place(record, geocodes.get(record.address))
            if record.lat is None:
                # Unlocated records stay in the result, unranked
                result.geocode_misses += 1
                inside.append(record)
                continue
            record.distance_km = distance_km(lat, lng, record.lat, record.lng)
            if record.distance_km <= radius_km:
                inside.append(record)
        return inside

    @staticmethod
    def _place(record: PhysicianRecord, geo: Optional[GeocodedAddress]):
        if geo is not None:
            record.lat = geo.lat
            record.lng = geo.lng

    # ------------------------------------------------------------------
    # Enrichment
    # ------------------------------------------------------------------
    def _schedule_enrichment(self, records: Iterable[PhysicianRecord]):
        if not self.background_enrichment:
            return
        numbers = [r.registration_number for r in records if r.registration_number and not r.gender]
        if numbers:
            self.enricher.schedule(numbers)

    def fetch_enrichment(self, registration_numbers: Iterable[str]) -> List[EnrichmentResult]:
        """Fetch the demographic field now, store it, and return every outcome."""
        results = self.fetcher.fetch_many(registration_numbers)
        self.cache.apply_enrichment(results)
        self._apply_to_projection(results)
        return results

    def _remember(self, records: Iterable[PhysicianRecord]):
        """Track handed-out records still waiting on enrichment, across overlapping searches."""
        with self._projection_lock:
            for record in records:
                number = record.registration_number
                if not number or record.gender:
                    continue
                self._projection.setdefault(number, []).append(record)
                self._projection.move_to_end(number)
            while len(self._projection) > _PROJECTION_LIMIT:
                self._projection.popitem(last=False)

    def _apply_to_projection(self, results: Iterable[EnrichmentResult]):
        with self._projection_lock:
            for result in results:
                if result.status != "found" or not result.value:
                    continue
                for record in self._projection.pop(result.registration_number, []):
                    record.gender = result.value

    # ------------------------------------------------------------------
    # Geocoding passthroughs
    # ------------------------------------------------------------------
    def geocode_addresses(self, addresses: Iterable[str]) -> Dict[str, Optional[GeocodedAddress]]:
        return self.cache.resolve_addresses(a.strip() for a in addresses if a and a.strip())

    def suggest_addresses(self, text: str, limit: int = 5) -> List[Dict[str, str]]:
        """Address completions from the municipal geocoder; empty on failure."""
        if not text or len(text.strip()) < 3:
            return []
        suggest = getattr(self.geocoder, "suggest", None)
        if suggest is None:
            return []
        try:
            return suggest(text.strip(), limit=limit)
        except DirectoryError as e:
            logger.warning(f"Address suggest failed for '{text}': {e}")
            return []

    # ------------------------------------------------------------------
    def stats(self) -> DirectoryStats:
        stats = self.cache.stats()
        clients = [self.registry, self.fetcher] + list(getattr(self.geocoder, "providers", []))
        limiters = [c.limiter for c in clients if getattr(c, "limiter", None) is not None]
        stats.extra = {
            "geocoder": getattr(self.geocoder, "stats", {}),
            "geocoder_calls": self.cache.geocoder_calls,
            "rate_limiters": [limiter.snapshot for limiter in limiters],
            "enrichment": self.enricher.stats,
            "polygon_mode": self.geo.polygon_mode,
            "postal_codes_loaded": len(self.geo.points),
        }
        return stats
