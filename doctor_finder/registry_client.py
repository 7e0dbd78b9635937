"""Regulatory registry search transport.

POSTs one postal prefix (plus doctor-type / specialty / language filters)
to the registry's search endpoint and parses the JSON reply into either an
overflow signal or a list of ``PhysicianRecord``.

Reply shape:
    {"totalcount": -1}                         # more than the registry enumerates
    {"totalcount": 12, "results": [{...}, ...]}
"""

import logging
import time
from typing import List, Optional

import requests

from .config import Config
from .errors import (
    BlockedError,
    DirectoryError,
    MalformedResponseError,
    classify_status,
    from_request_exception,
)
from .models import PhysicianRecord, RegistryResponse, SearchFilters
from .postal_codes import display_code, extract_postal_code, fsa_of
from .rate_limiter import SUCCESS, AdaptiveRateLimiter

logger = logging.getLogger(__name__)

_HEADERS = {
    "accept": "*/*",
    "content-type": "application/x-www-form-urlencoded; charset=UTF-8",
    "x-requested-with": "XMLHttpRequest",
    "user-agent": "Mozilla/5.0 (compatible; DoctorFinder/1.0)",
}

_CHALLENGE_MARKERS = ("captcha", "access denied", "blocked")

_ADDRESS_FIELDS = ("street1", "street2", "street3", "street4", "city", "province", "postalcode")


def _clean(value) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v).strip() for v in value if v is not None and str(v).strip())
    return str(value).strip()


def build_address(entry: dict) -> str:
    """Join the registry's address components: 'street1, ..., city, province, postal'."""
    parts = [_clean(entry.get(f)) for f in _ADDRESS_FIELDS]
    return ", ".join(p for p in parts if p)


def parse_entry(entry: dict, search_code: str = "") -> Optional[PhysicianRecord]:
    """Convert one registry entry into a PhysicianRecord, or None if unusable."""
    if not isinstance(entry, dict):
        return None
    name = _clean(entry.get("name") or entry.get("fullname"))
    address = build_address(entry) or _clean(entry.get("address"))
    if not name or not address:
        return None

    postal_code = _clean(entry.get("postalcode")).upper() or extract_postal_code(address) or ""
    registration_number = _clean(entry.get("cpsonumber") or entry.get("registrationnumber")) or None

    return PhysicianRecord(
        name=name,
        address=address,
        specialty=_clean(entry.get("specialties") or entry.get("specialty")),
        phone=_clean(entry.get("phonenumber") or entry.get("phone")),
        languages=_clean(entry.get("languages")),
        status=_clean(entry.get("registrationstatus") or entry.get("status")),
        registration_number=registration_number,
        postal_code=postal_code,
        postal_prefix=fsa_of(postal_code) if postal_code else fsa_of(search_code),
    )


class RegistryClient:
    """Registry search endpoint. One instance per process; thread-safe."""

    def __init__(self, config: Config, limiter: Optional[AdaptiveRateLimiter] = None,
                 session: Optional[requests.Session] = None):
        self.config = config
        self.limiter = limiter or AdaptiveRateLimiter(config.registry_pacing, name="registry")
        self.session = session or requests.Session()

    def search(self, code: str, filters: Optional[SearchFilters] = None) -> RegistryResponse:
        """Issue one registry query. Raises a DirectoryError subclass on failure."""
        filters = filters or SearchFilters()
        query_code = display_code(code)
        data = {
            "postalCode": query_code,
            "doctorType": filters.doctor_type,
            "LanguagesSelected": filters.language,
        }
        if filters.specialist_type:
            data["SpecialistType"] = filters.specialist_type
        if filters.include_inactive:
            data["cbx-includeinactive"] = "on"

        self.limiter.wait()
        try:
            t0 = time.time()
            resp = self.session.post(
                self.config.registry_url, data=data, headers=_HEADERS,
                timeout=self.config.registry_timeout,
            )
            elapsed_ms = int((time.time() - t0) * 1000)
            classify_status(resp.status_code, context=f"Registry {query_code}: ")
            result = self.parse_response(query_code, resp)
        except requests.RequestException as e:
            err = from_request_exception(e, context=f"Registry {query_code}: ")
            self.limiter.record(err.outcome)
            raise err from e
        except DirectoryError as e:
            self.limiter.record(e.outcome)
            raise

        self.limiter.record(SUCCESS)
        logger.debug(f"Registry {query_code}: total={result.total_count} "
                     f"records={len(result.records)} ({elapsed_ms}ms)")
        return result

    def parse_response(self, query_code: str, resp) -> RegistryResponse:
        try:
            payload = resp.json()
        except ValueError:
            text = (getattr(resp, "text", "") or "").lower()
            if any(marker in text for marker in _CHALLENGE_MARKERS):
                raise BlockedError(f"Registry {query_code}: challenge page returned")
            raise MalformedResponseError(f"Registry {query_code}: response is not JSON")
        return self.parse_payload(query_code, payload)

    def parse_payload(self, query_code: str, payload) -> RegistryResponse:
        if not isinstance(payload, dict) or "totalcount" not in payload:
            raise MalformedResponseError(f"Registry {query_code}: missing totalcount")
        try:
            total = int(payload["totalcount"])
        except (TypeError, ValueError):
            raise MalformedResponseError(
                f"Registry {query_code}: totalcount={payload['totalcount']!r}"
            )

        if total == self.config.overflow_sentinel:
            return RegistryResponse(code=query_code, total_count=total, overflow=True)

        raw = payload.get("results") or []
        if not isinstance(raw, list):
            raise MalformedResponseError(f"Registry {query_code}: results is not a list")

        # A count past the enumerable limit with a truncated list is an overflow too
        limit = self.config.max_enumerable_results
        if limit and total > limit and len(raw) < total:
            return RegistryResponse(code=query_code, total_count=total, overflow=True)

        records: List[PhysicianRecord] = []
        skipped = 0
        for entry in raw:
            record = parse_entry(entry, query_code)
            if record is None:
                skipped += 1
                continue
            records.append(record)
        if skipped:
            logger.warning(f"Registry {query_code}: skipped {skipped} unrecognized entries")
        return RegistryResponse(code=query_code, total_count=total, records=records)
