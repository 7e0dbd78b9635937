"""Data models for the physician directory engine."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple


@dataclass
class GeocodedAddress:
    lat: float
    lng: float
    source: str = ""
    formatted_address: str = ""
    confidence: float = 0.0


@dataclass
class PhysicianRecord:
    name: str
    address: str
    specialty: str = ""
    phone: str = ""
    languages: str = ""
    status: str = ""
    registration_number: Optional[str] = None
    postal_code: str = ""
    postal_prefix: str = ""
    gender: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    # Filled in on the way out of a radius search
    lat: Optional[float] = None
    lng: Optional[float] = None
    distance_km: Optional[float] = None

    @property
    def identity(self) -> Tuple[str, ...]:
        """Registration number when present, else (name, address)."""
        if self.registration_number:
            return ("reg", self.registration_number)
        return ("name_address", self.name, self.address)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "specialty": self.specialty,
            "address": self.address,
            "phone": self.phone,
            "languages": self.languages,
            "status": self.status,
            "registration_number": self.registration_number,
            "postal_code": self.postal_code,
            "postal_prefix": self.postal_prefix,
            "gender": self.gender,
            "coordinates": {"lat": self.lat, "lng": self.lng} if self.lat is not None else None,
            "distance_km": self.distance_km,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class PostalAreaPolygon:
    code: str
    geometry: object  # shapely Polygon / MultiPolygon in WGS84 (x=lng, y=lat)
    bbox: Tuple[float, float, float, float]  # (min_lng, min_lat, max_lng, max_lat)


@dataclass(frozen=True)
class PostalCodePoint:
    code: str
    lat: float
    lng: float
    fsa: str


@dataclass
class PostalCodeHit:
    code: str
    lat: float
    lng: float
    fsa: str
    distance_km: float

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "lat": self.lat,
            "lng": self.lng,
            "fsa": self.fsa,
            "distance_km": self.distance_km,
        }


@dataclass(frozen=True)
class SearchFrontierNode:
    code: str
    depth: int = 0


@dataclass
class SearchFilters:
    doctor_type: str = "Any"
    specialist_type: Optional[str] = None
    language: str = "ENGLISH"
    include_inactive: bool = False

    @property
    def is_default(self) -> bool:
        return (
            self.doctor_type == "Any"
            and not self.specialist_type
            and self.language.upper() == "ENGLISH"
            and not self.include_inactive
        )


@dataclass
class RegistryResponse:
    code: str
    total_count: int
    overflow: bool = False
    records: List[PhysicianRecord] = field(default_factory=list)


@dataclass
class QueryFailure:
    code: str
    error: str
    outcome: str
    attempts: int

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "error": self.error,
            "outcome": self.outcome,
            "attempts": self.attempts,
        }


@dataclass
class ExpansionResult:
    records: List[PhysicianRecord] = field(default_factory=list)
    leaves: List[str] = field(default_factory=list)
    partial_coverage: List[str] = field(default_factory=list)
    failures: List[QueryFailure] = field(default_factory=list)
    queries_issued: int = 0
    passes: int = 0
    duplicates_skipped: int = 0


@dataclass
class UpsertStats:
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    elapsed_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "inserted": self.inserted,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "elapsed_ms": self.elapsed_ms,
        }


@dataclass
class EnrichmentResult:
    registration_number: str
    status: str  # found | not_available | not_found | blocked | failed
    value: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ("found", "not_available", "not_found")

    def to_dict(self) -> dict:
        return {
            "registration_number": self.registration_number,
            "status": self.status,
            "value": self.value,
            "error": self.error,
        }


@dataclass
class SearchResult:
    lat: Optional[float]
    lng: Optional[float]
    radius_km: float
    physicians: List[PhysicianRecord] = field(default_factory=list)
    postal_codes: List[PostalCodeHit] = field(default_factory=list)
    failures: List[QueryFailure] = field(default_factory=list)
    partial_coverage: List[str] = field(default_factory=list)
    served_from_store: List[str] = field(default_factory=list)
    upsert: Optional[UpsertStats] = None
    queries_issued: int = 0
    geocode_misses: int = 0
    storage_error: Optional[str] = None
    polygon_mode: bool = True
    search_time_ms: int = 0
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).replace(tzinfo=None).isoformat())

    def to_dict(self) -> dict:
        """Serialize to dict for JSON output."""
        return {
            "center": {"lat": self.lat, "lng": self.lng},
            "radius_km": self.radius_km,
            "physicians": [p.to_dict() for p in self.physicians],
            "postal_codes": [pc.to_dict() for pc in self.postal_codes],
            "counts": {
                "physicians": len(self.physicians),
                "postal_codes": len(self.postal_codes),
                "queries_issued": self.queries_issued,
                "failed_queries": len(self.failures),
                "partial_coverage": len(self.partial_coverage),
                "geocode_misses": self.geocode_misses,
            },
            "no_matches": not self.physicians,
            "some_lookups_failed": bool(self.failures) or self.storage_error is not None,
            "failures": [f.to_dict() for f in self.failures],
            "partial_coverage": self.partial_coverage,
            "served_from_store": self.served_from_store,
            "upsert": self.upsert.to_dict() if self.upsert else None,
            "storage_error": self.storage_error,
            "polygon_mode": self.polygon_mode,
            "search_time_ms": self.search_time_ms,
            "timestamp": self.timestamp,
        }


@dataclass
class DirectoryStats:
    physicians: int = 0
    geocoded_addresses: int = 0
    enriched: int = 0
    pending_enrichment: int = 0
    extra: Dict[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = {
            "physicians": self.physicians,
            "geocoded_addresses": self.geocoded_addresses,
            "enriched": self.enriched,
            "pending_enrichment": self.pending_enrichment,
        }
        data.update(self.extra)
        return data
