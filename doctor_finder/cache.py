"""SQLite-backed reconciliation cache: physicians and geocoded addresses.

Physicians are reconciled in diffed batches: one bulk read of the rows the
batch could match, then grouped INSERT / UPDATE statements in a single
transaction. Geocodes are read-through: durable store, then the in-memory
mirror, and only then the external geocoder. Failed resolutions are never
cached, so the next pass tries again.
"""

import concurrent.futures
import json
import logging
import re
import sqlite3
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .models import (
    DirectoryStats,
    EnrichmentResult,
    GeocodedAddress,
    PhysicianRecord,
    SearchFilters,
    UpsertStats,
)
from .postal_codes import normalize_code

logger = logging.getLogger(__name__)

# SQLite's default host-parameter ceiling is 999 on older builds
_CHUNK = 500

# Fields that always take the latest source value
CORE_FIELDS = ("name", "address", "specialty", "phone", "languages", "status",
               "postal_code", "postal_prefix")

_PHYSICIAN_COLUMNS = """
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        registration_number TEXT,
        name TEXT NOT NULL,
        specialty TEXT,
        address TEXT NOT NULL,
        address_key TEXT,
        phone TEXT,
        languages TEXT,
        status TEXT,
        postal_code TEXT,
        postal_prefix TEXT,
        gender TEXT DEFAULT NULL,
        gender_status TEXT DEFAULT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        last_seen_at TEXT
"""

_SCHEMA = f"""
    CREATE TABLE IF NOT EXISTS physicians ({_PHYSICIAN_COLUMNS});
    CREATE TABLE IF NOT EXISTS geocoded_addresses (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        address_key TEXT NOT NULL UNIQUE,
        address TEXT NOT NULL,
        latitude REAL NOT NULL,
        longitude REAL NOT NULL,
        source TEXT,
        geocoded_at TEXT NOT NULL
    );
    CREATE TABLE IF NOT EXISTS refreshed_codes (
        code TEXT PRIMARY KEY,
        refreshed_at TEXT NOT NULL
    );
"""

_INDEXES = """
    CREATE INDEX IF NOT EXISTS idx_physicians_address ON physicians(address_key);
    CREATE INDEX IF NOT EXISTS idx_physicians_postal_prefix ON physicians(postal_prefix);
    CREATE INDEX IF NOT EXISTS idx_physicians_registration ON physicians(registration_number);
    CREATE INDEX IF NOT EXISTS idx_physicians_name_address ON physicians(name, address);
    CREATE INDEX IF NOT EXISTS idx_physicians_gender ON physicians(gender);
"""

# Columns added after the first schema; older databases are migrated on open
_MIGRATED_COLUMNS = {
    "address_key": "TEXT",
    "languages": "TEXT",
    "gender": "TEXT DEFAULT NULL",
    "gender_status": "TEXT DEFAULT NULL",
    "last_seen_at": "TEXT",
}


def normalize_address_key(address: str) -> str:
    """Normalize address string for cache key (lowercase, collapse whitespace, standard abbrevs)."""
    if not address:
        return ""
    key = address.lower().strip()
    key = re.sub(r"[.#]", "", key)
    key = re.sub(r"\s*,\s*", ", ", key)
    key = re.sub(r"\s+", " ", key)
    for full, abbr in [("street", "st"), ("avenue", "ave"), ("boulevard", "blvd"),
                       ("drive", "dr"), ("road", "rd"), ("lane", "ln"),
                       ("court", "ct"), ("place", "pl"), ("crescent", "cres"),
                       ("suite", "ste"), ("unit", "unit"), ("north", "n"),
                       ("south", "s"), ("east", "e"), ("west", "w"),
                       ("ontario", "on")]:
        key = re.sub(rf"\b{full}\b", abbr, key)
    return key


def _now() -> str:
    return datetime.now(timezone.utc).replace(tzinfo=None).isoformat(timespec="seconds")


def _chunks(items: List, size: int = _CHUNK):
    for i in range(0, len(items), size):
        yield items[i:i + size]


def _text(value) -> str:
    return "" if value is None else str(value)


class ReconciliationCache:
    """Durable physician + geocode store with diffed batch upserts."""

    def __init__(self, db_path: Path, geocoder=None, geocode_concurrency: int = 20):
        self.db_path = Path(db_path)
        self.geocoder = geocoder
        self.geocode_concurrency = max(1, geocode_concurrency)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        # Shared across concurrent geocode completions; same key always maps
        # to the same coordinates, so last writer wins.
        self._geocode_mirror: Dict[str, GeocodedAddress] = {}
        self.geocoder_calls = 0
        self._init_db()

    def _init_db(self):
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._lock, self._conn:
            self._conn.executescript(_SCHEMA)
            self._migrate()
            self._conn.executescript(_INDEXES)
        logger.info(f"Connected to SQLite database: {self.db_path}")

    def _migrate(self):
        existing = {row["name"] for row in self._conn.execute("PRAGMA table_info(physicians)")}
        for column, decl in _MIGRATED_COLUMNS.items():
            if column not in existing:
                logger.info(f"Migrating physicians table: adding {column}")
                self._conn.execute(f"ALTER TABLE physicians ADD COLUMN {column} {decl}")
        missing_keys = self._conn.execute(
            "SELECT id, address FROM physicians WHERE address_key IS NULL"
        ).fetchall()
        if missing_keys:
            self._conn.executemany(
                "UPDATE physicians SET address_key = ? WHERE id = ?",
                [(normalize_address_key(r["address"]), r["id"]) for r in missing_keys],
            )
        if self._has_unique_address():
            self._rebuild_physicians()

    def _has_unique_address(self) -> bool:
        """True when an old schema made the address alone unique (clinics hold many physicians)."""
        for index in self._conn.execute("PRAGMA index_list(physicians)").fetchall():
            if not index["unique"]:
                continue
            columns = [row["name"] for row in self._conn.execute(f'PRAGMA index_info("{index["name"]}")')]
            if columns in (["address"], ["address_key"]):
                return True
        return False

    def _rebuild_physicians(self):
        """Copy every row into a fresh table without the address constraint, then swap it in."""
        logger.info("Migrating physicians table: dropping unique constraint on address")
        old_columns = [row["name"] for row in self._conn.execute("PRAGMA table_info(physicians)")]
        self._conn.execute("DROP TABLE IF EXISTS physicians_new")
        self._conn.execute(f"CREATE TABLE physicians_new ({_PHYSICIAN_COLUMNS})")
        new_columns = [row["name"] for row in self._conn.execute("PRAGMA table_info(physicians_new)")]

        now = _now()
        targets, selects, params = [], [], []
        for column in new_columns:
            if column in ("created_at", "updated_at"):
                targets.append(column)
                selects.append(f"COALESCE({column}, ?)" if column in old_columns else "?")
                params.append(now)
            elif column in old_columns:
                targets.append(column)
                selects.append(column)
        self._conn.execute(
            f"INSERT INTO physicians_new ({', '.join(targets)}) "
            f"SELECT {', '.join(selects)} FROM physicians",
            params,
        )
        copied = self._conn.execute("SELECT COUNT(*) FROM physicians_new").fetchone()[0]
        self._conn.execute("DROP TABLE physicians")
        self._conn.execute("ALTER TABLE physicians_new RENAME TO physicians")
        logger.info(f"Physicians table rebuilt: {copied} rows copied")

    def import_legacy_geocodes(self, cache_file: Path) -> int:
        """One-off import of a JSON {address: {lat, lng}} cache; the file is renamed after."""
        cache_file = Path(cache_file)
        if not cache_file.exists():
            return 0
        logger.info(f"Found legacy geocode cache {cache_file}, migrating to SQLite...")
        try:
            with open(cache_file) as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.warning(f"Failed to read legacy geocode cache: {e}")
            return 0

        entries = {}
        for address, coords in (data or {}).items():
            if not isinstance(coords, dict):
                continue
            try:
                entries[address] = GeocodedAddress(lat=float(coords["lat"]), lng=float(coords["lng"]),
                                                   source="migrated")
            except (KeyError, TypeError, ValueError):
                continue
        migrated = self.save_geocodes(entries)

        backup = cache_file.with_name(f"{cache_file.name}.backup.{int(time.time())}")
        cache_file.rename(backup)
        logger.info(f"Migration complete: {migrated} addresses migrated, "
                    f"{len(data or {}) - migrated} skipped; old cache moved to {backup}")
        return migrated

    # ------------------------------------------------------------------
    # Physicians
    # ------------------------------------------------------------------
    def _load_existing(self, records: List[PhysicianRecord]) -> Tuple[Dict[str, sqlite3.Row], Dict[Tuple[str, str], List[sqlite3.Row]]]:
        """Bulk-read every row an incoming record could match, in as few queries as possible."""
        numbers = sorted({r.registration_number for r in records if r.registration_number})
        addresses = sorted({r.address for r in records})

        by_number: Dict[str, sqlite3.Row] = {}
        for chunk in _chunks(numbers):
            placeholders = ",".join("?" * len(chunk))
            for row in self._conn.execute(
                f"SELECT * FROM physicians WHERE registration_number IN ({placeholders})", chunk
            ):
                by_number[row["registration_number"]] = row

        by_name_address: Dict[Tuple[str, str], List[sqlite3.Row]] = {}
        for chunk in _chunks(addresses):
            placeholders = ",".join("?" * len(chunk))
            for row in self._conn.execute(
                f"SELECT * FROM physicians WHERE address IN ({placeholders})", chunk
            ):
                by_name_address.setdefault((row["name"], row["address"]), []).append(row)
        return by_number, by_name_address

    @staticmethod
    def _match(record: PhysicianRecord, by_number, by_name_address) -> Optional[sqlite3.Row]:
        if record.registration_number:
            row = by_number.get(record.registration_number)
            if row is not None:
                return row
            # A row stored before its registration number was known
            for row in by_name_address.get((record.name, record.address), []):
                if not row["registration_number"]:
                    return row
            return None
        rows = by_name_address.get((record.name, record.address), [])
        return rows[0] if rows else None

    @staticmethod
    def _changed(record: PhysicianRecord, row: sqlite3.Row) -> bool:
        for field_name in CORE_FIELDS:
            if _text(getattr(record, field_name)) != _text(row[field_name]):
                return True
        if record.registration_number and record.registration_number != row["registration_number"]:
            return True
        # Enrichment only counts when it would actually write something new
        if record.gender and record.gender != row["gender"]:
            return True
        return False

    def upsert_physicians(self, records: Iterable[PhysicianRecord]) -> UpsertStats:
        """Reconcile a batch of records atomically. Raises sqlite3.Error after rolling back."""
        t0 = time.time()
        # Identical identities inside one batch collapse onto the last occurrence
        incoming: Dict[tuple, PhysicianRecord] = {}
        for record in records:
            incoming[record.identity] = record
        batch = list(incoming.values())
        stats = UpsertStats()
        if not batch:
            return stats

        now = _now()
        inserts, updates, touches = [], [], []
        with self._lock:
            try:
                with self._conn:
                    by_number, by_name_address = self._load_existing(batch)
                    for record in batch:
                        row = self._match(record, by_number, by_name_address)
                        if row is None:
                            inserts.append((
                                record.registration_number, record.name, record.specialty,
                                record.address, normalize_address_key(record.address),
                                record.phone, record.languages, record.status,
                                record.postal_code, record.postal_prefix,
                                record.gender or None, now, now, now,
                            ))
                        elif self._changed(record, row):
                            updates.append((
                                record.registration_number, record.name, record.specialty,
                                record.address, normalize_address_key(record.address),
                                record.phone, record.languages, record.status,
                                record.postal_code, record.postal_prefix,
                                record.gender or None, now, now, row["id"],
                            ))
                        else:
                            touches.append((now, row["id"]))

                    if inserts:
                        self._conn.executemany(
                            """INSERT INTO physicians
                               (registration_number, name, specialty, address, address_key,
                                phone, languages, status, postal_code, postal_prefix,
                                gender, created_at, updated_at, last_seen_at)
                               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                            inserts,
                        )
                    if updates:
                        # Enrichment never goes back to empty; registration number is never dropped
                        self._conn.executemany(
                            """UPDATE physicians SET
                                 registration_number = COALESCE(?, registration_number),
                                 name = ?, specialty = ?, address = ?, address_key = ?,
                                 phone = ?, languages = ?, status = ?, postal_code = ?,
                                 postal_prefix = ?,
                                 gender = COALESCE(NULLIF(?, ''), gender),
                                 updated_at = ?, last_seen_at = ?
                               WHERE id = ?""",
                            updates,
                        )
                    if touches:
                        self._conn.executemany(
                            "UPDATE physicians SET last_seen_at = ? WHERE id = ?", touches
                        )
            except sqlite3.Error as e:
                logger.error(f"Batch upsert of {len(batch)} physicians rolled back: {e}")
                raise

        stats.inserted = len(inserts)
        stats.updated = len(updates)
        stats.unchanged = len(touches)
        stats.elapsed_ms = int((time.time() - t0) * 1000)
        logger.info(f"Upsert: {stats.inserted} inserted, {stats.updated} updated, "
                    f"{stats.unchanged} unchanged ({stats.elapsed_ms}ms)")
        return stats

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> PhysicianRecord:
        keys = row.keys()
        record = PhysicianRecord(
            id=row["id"],
            name=row["name"],
            address=row["address"],
            specialty=row["specialty"] or "",
            phone=row["phone"] or "",
            languages=row["languages"] or "",
            status=row["status"] or "",
            registration_number=row["registration_number"],
            postal_code=row["postal_code"] or "",
            postal_prefix=row["postal_prefix"] or "",
            gender=row["gender"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
        if "latitude" in keys and row["latitude"] is not None:
            record.lat = row["latitude"]
            record.lng = row["longitude"]
        return record

    def get_physician(self, registration_number: str) -> Optional[PhysicianRecord]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM physicians WHERE registration_number = ?", (registration_number,)
            ).fetchone()
        return self._row_to_record(row) if row else None

    def physicians_for_prefixes(self, prefixes: Iterable[str],
                                filters: Optional[SearchFilters] = None) -> List[PhysicianRecord]:
        """Stored physicians in the given postal areas, joined with cached coordinates."""
        prefixes = sorted({p.upper() for p in prefixes if p})
        records: List[PhysicianRecord] = []
        where_extra, extra_params = "", []
        if filters and filters.specialist_type:
            where_extra += " AND d.specialty LIKE ?"
            extra_params.append(f"%{filters.specialist_type}%")
        if filters and filters.language and filters.language.upper() not in ("ENGLISH", "ANY"):
            where_extra += " AND d.languages LIKE ?"
            extra_params.append(f"%{filters.language}%")
        if filters and not filters.include_inactive:
            # Inactive registrants are stored by include_inactive searches only
            where_extra += " AND (d.status IS NULL OR d.status = '' OR UPPER(d.status) = 'ACTIVE')"

        with self._lock:
            for chunk in _chunks(prefixes):
                placeholders = ",".join("?" * len(chunk))
                rows = self._conn.execute(
                    f"""SELECT d.*, g.latitude, g.longitude
                        FROM physicians d
                        LEFT JOIN geocoded_addresses g ON d.address_key = g.address_key
                        WHERE d.postal_prefix IN ({placeholders}){where_extra}
                        ORDER BY d.name""",
                    list(chunk) + extra_params,
                ).fetchall()
                records.extend(self._row_to_record(r) for r in rows)
        return records

    def physicians_for_codes(self, codes: Iterable[str],
                             filters: Optional[SearchFilters] = None) -> List[PhysicianRecord]:
        """Stored physicians whose postal code starts with one of the given (normalized) codes."""
        codes = sorted({normalize_code(c) for c in codes if c})
        if not codes:
            return []
        records = self.physicians_for_prefixes({c[:3] for c in codes}, filters)
        return [r for r in records if normalize_code(r.postal_code).startswith(tuple(codes))]

    def mark_refreshed(self, codes: Iterable[str]) -> int:
        """Record that these codes were fully resolved against the registry just now."""
        now = _now()
        rows = [(code, now) for code in sorted({normalize_code(c) for c in codes if c})]
        if not rows:
            return 0
        with self._lock, self._conn:
            self._conn.executemany(
                "INSERT OR REPLACE INTO refreshed_codes (code, refreshed_at) VALUES (?, ?)", rows
            )
        return len(rows)

    def fresh_codes(self, codes: Iterable[str], max_age_days: int) -> Set[str]:
        """Codes whose complete, unfiltered registry listing was stored within the last max_age_days."""
        codes = sorted({normalize_code(c) for c in codes if c})
        if not codes or max_age_days <= 0:
            return set()
        cutoff = (datetime.now(timezone.utc).replace(tzinfo=None)
                  - timedelta(days=max_age_days)).isoformat(timespec="seconds")
        fresh = set()
        with self._lock:
            for chunk in _chunks(codes):
                placeholders = ",".join("?" * len(chunk))
                rows = self._conn.execute(
                    f"""SELECT code FROM refreshed_codes
                        WHERE code IN ({placeholders}) AND refreshed_at >= ?""",
                    list(chunk) + [cutoff],
                ).fetchall()
                fresh.update(r["code"] for r in rows)
        return fresh

    # ------------------------------------------------------------------
    # Enrichment
    # ------------------------------------------------------------------
    def pending_enrichment(self, limit: int = 50,
                           registration_numbers: Optional[Iterable[str]] = None) -> List[str]:
        """Registration numbers still lacking the demographic field and not known to be absent."""
        sql = """SELECT registration_number FROM physicians
                 WHERE registration_number IS NOT NULL AND registration_number != ''
                   AND (gender IS NULL OR gender = '') AND gender_status IS NULL"""
        params: list = []
        if registration_numbers is not None:
            numbers = sorted({str(n) for n in registration_numbers if n})
            if not numbers:
                return []
            numbers = numbers[:_CHUNK]
            sql += f" AND registration_number IN ({','.join('?' * len(numbers))})"
            params.extend(numbers)
        sql += " ORDER BY updated_at DESC LIMIT ?"
        params.append(limit)
        with self._lock:
            return [r["registration_number"] for r in self._conn.execute(sql, params)]

    def enrichment_values(self, registration_numbers: Iterable[str]) -> Dict[str, str]:
        """Stored demographic values for the given registration numbers (known values only)."""
        numbers = sorted({str(n) for n in registration_numbers if n})
        values: Dict[str, str] = {}
        with self._lock:
            for chunk in _chunks(numbers):
                placeholders = ",".join("?" * len(chunk))
                for row in self._conn.execute(
                    f"""SELECT registration_number, gender FROM physicians
                        WHERE registration_number IN ({placeholders})
                          AND gender IS NOT NULL AND gender != ''""",
                    chunk,
                ):
                    values[row["registration_number"]] = row["gender"]
        return values

    def apply_enrichment(self, results: Iterable[EnrichmentResult]) -> int:
        """Persist enrichment outcomes. Only genuine values are written to the field."""
        values, terminal = [], []
        now = _now()
        for result in results:
            if result.status == "found" and result.value and result.value.strip():
                values.append((result.value.strip(), now, result.registration_number))
            elif result.status in ("not_found", "not_available"):
                terminal.append((result.status, result.registration_number))
        if not values and not terminal:
            return 0
        with self._lock:
            if self._conn is None:
                logger.warning(f"Store closed; {len(values) + len(terminal)} enrichment outcomes not saved")
                return 0
            return self._write_enrichment(values, terminal)

    def _write_enrichment(self, values: list, terminal: list) -> int:
        with self._conn:
            if values:
                self._conn.executemany(
                    """UPDATE physicians SET gender = ?, gender_status = 'found', updated_at = ?
                       WHERE registration_number = ?""",
                    values,
                )
            if terminal:
                self._conn.executemany(
                    """UPDATE physicians SET gender_status = ?
                       WHERE registration_number = ? AND (gender IS NULL OR gender = '')""",
                    terminal,
                )
        return len(values)

    # ------------------------------------------------------------------
    # Geocodes
    # ------------------------------------------------------------------
    def get_geocode(self, address: str) -> Optional[GeocodedAddress]:
        """Cached coordinates for an address: durable store first, then the in-memory mirror."""
        key = normalize_address_key(address)
        if not key:
            return None
        with self._lock:
            row = self._conn.execute(
                "SELECT latitude, longitude, source, address FROM geocoded_addresses WHERE address_key = ?",
                (key,),
            ).fetchone()
        if row:
            return GeocodedAddress(lat=row["latitude"], lng=row["longitude"],
                                   source=row["source"] or "", formatted_address=row["address"])
        return self._geocode_mirror.get(key)

    def save_geocodes(self, entries: Dict[str, GeocodedAddress]) -> int:
        """Write successful resolutions to both layers. None values are skipped, never cached."""
        rows = []
        now = _now()
        for address, geo in entries.items():
            key = normalize_address_key(address)
            if not key or geo is None:
                continue
            self._geocode_mirror[key] = geo
            rows.append((key, address, geo.lat, geo.lng, geo.source, now))
        if not rows:
            return 0
        try:
            with self._lock, self._conn:
                self._conn.executemany(
                    """INSERT OR REPLACE INTO geocoded_addresses
                       (address_key, address, latitude, longitude, source, geocoded_at)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    rows,
                )
        except sqlite3.Error as e:
            # The mirror still holds them for this process
            logger.error(f"Saving {len(rows)} geocodes failed: {e}")
            return 0
        return len(rows)

    def _resolve_external(self, address: str) -> Optional[GeocodedAddress]:
        with self._lock:
            self.geocoder_calls += 1
        return self.geocoder.geocode(address)

    def resolve_address(self, address: str) -> Optional[GeocodedAddress]:
        """Read-through geocode for one address."""
        cached = self.get_geocode(address)
        if cached is not None or self.geocoder is None:
            return cached
        geo = self._resolve_external(address)
        if geo is not None:
            self.save_geocodes({address: geo})
        return geo

    def resolve_addresses(self, addresses: Iterable[str]) -> Dict[str, Optional[GeocodedAddress]]:
        """Read-through geocode for many addresses; misses resolved in concurrent batches."""
        results: Dict[str, Optional[GeocodedAddress]] = {}
        uncached: Dict[str, str] = {}  # key -> first address seen with that key
        for address in addresses:
            if not address or address in results:
                continue
            cached = self.get_geocode(address)
            results[address] = cached
            if cached is None:
                uncached.setdefault(normalize_address_key(address), address)

        if not uncached or self.geocoder is None:
            return results

        logger.info(f"Geocoding {len(uncached)} uncached addresses "
                    f"({len(results) - len(uncached)} found in cache)")
        todo = list(uncached.values())
        resolved: Dict[str, GeocodedAddress] = {}
        with concurrent.futures.ThreadPoolExecutor(max_workers=self.geocode_concurrency) as executor:
            for chunk in _chunks(todo, self.geocode_concurrency):
                for address, geo in zip(chunk, executor.map(self._resolve_external, chunk)):
                    if geo is not None:
                        resolved[address] = geo
        self.save_geocodes(resolved)

        for address in results:
            if results[address] is None:
                key = normalize_address_key(address)
                results[address] = resolved.get(uncached.get(key, ""))
        logger.info(f"Geocoding complete: {len(resolved)}/{len(todo)} resolved")
        return results

    # ------------------------------------------------------------------
    def stats(self) -> DirectoryStats:
        with self._lock:
            physicians = self._conn.execute("SELECT COUNT(*) FROM physicians").fetchone()[0]
            geocoded = self._conn.execute("SELECT COUNT(*) FROM geocoded_addresses").fetchone()[0]
            enriched = self._conn.execute(
                "SELECT COUNT(*) FROM physicians WHERE gender IS NOT NULL AND gender != ''"
            ).fetchone()[0]
            pending = self._conn.execute(
                """SELECT COUNT(*) FROM physicians
                   WHERE registration_number IS NOT NULL AND registration_number != ''
                     AND (gender IS NULL OR gender = '') AND gender_status IS NULL"""
            ).fetchone()[0]
        return DirectoryStats(physicians=physicians, geocoded_addresses=geocoded,
                              enriched=enriched, pending_enrichment=pending)

    @property
    def size(self) -> int:
        return self.stats().physicians

    def close(self):
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None
                logger.info("Database connection closed")
