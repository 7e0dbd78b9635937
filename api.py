"""
FastAPI server for the physician directory engine.

Loads postal-area boundaries and opens the store on startup, then serves
radius searches. Designed to run as a long-lived process.
"""

import logging
import os
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from doctor_finder.config import Config
from doctor_finder.engine import DirectoryEngine

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("api")

# ---------------------------------------------------------------------------
# Global engine (loaded once at startup)
# ---------------------------------------------------------------------------
engine: Optional[DirectoryEngine] = None


def load_env_file(env_path: Path):
    if env_path.exists():
        for line in env_path.read_text().splitlines():
            line = line.strip()
            if line and not line.startswith("#") and "=" in line:
                key, val = line.split("=", 1)
                os.environ.setdefault(key.strip(), val.strip())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load the engine on startup, clean up on shutdown."""
    global engine
    logger.info("Loading directory engine...")
    t0 = time.time()

    load_env_file(Path(__file__).parent / ".env")
    engine = DirectoryEngine(Config.from_env())
    engine.start()

    elapsed = time.time() - t0
    logger.info(f"Engine ready in {elapsed:.1f}s")

    yield

    if engine:
        engine.shutdown()
        engine = None
    logger.info("Shutdown complete.")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(
    title="Physician Directory API",
    description="Find registered physicians within a radius of any point in the region.",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------
class SearchRequest(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    radius_km: float = Field(5.0, gt=0, le=50)
    doctor_type: str = "Any"
    specialist_type: Optional[str] = None
    language: str = "ENGLISH"
    include_inactive: bool = False
    use_cache: bool = True


class EnrichmentRequest(BaseModel):
    registration_numbers: list[str] = Field(..., description="Registration numbers", max_length=50)


class GeocodeBatchRequest(BaseModel):
    addresses: list[str] = Field(..., description="Addresses to geocode", max_length=500)


class HealthResponse(BaseModel):
    status: str
    engine_loaded: bool
    uptime_seconds: float


_start_time = time.time()


def _require_engine() -> DirectoryEngine:
    if not engine:
        raise HTTPException(status_code=503, detail="Engine is still loading. Try again shortly.")
    return engine


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------
@app.get("/health", response_model=HealthResponse)
async def health():
    return HealthResponse(
        status="ok" if engine else "loading",
        engine_loaded=engine is not None,
        uptime_seconds=round(time.time() - _start_time, 1),
    )


@app.post("/search")
def search(req: SearchRequest):
    """
    Radius search.

    Partial results are normal: failed postal queries, partial coverage and
    storage errors are reported in the body, never as an HTTP error.
    """
    eng = _require_engine()
    try:
        result = eng.radius_search(
            req.lat, req.lng, req.radius_km,
            doctor_type=req.doctor_type, specialist_type=req.specialist_type,
            language=req.language, include_inactive=req.include_inactive,
            use_cache=req.use_cache,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return JSONResponse(content=result.to_dict())


@app.post("/enrichment")
def enrichment(req: EnrichmentRequest):
    """Fetch the demographic field for one or more registration numbers."""
    eng = _require_engine()
    if not req.registration_numbers:
        raise HTTPException(status_code=400, detail="No registration numbers provided.")
    t0 = time.time()
    results = eng.fetch_enrichment(req.registration_numbers)
    return JSONResponse(content={
        "results": [r.to_dict() for r in results],
        "total": len(results),
        "found": sum(1 for r in results if r.status == "found"),
        "lookup_time_ms": int((time.time() - t0) * 1000),
    })


@app.post("/geocode/batch")
def geocode_batch(req: GeocodeBatchRequest):
    """Resolve addresses through the cache; unresolved ones come back as null."""
    eng = _require_engine()
    if not req.addresses:
        raise HTTPException(status_code=400, detail="No addresses provided.")
    t0 = time.time()
    resolved = eng.geocode_addresses(req.addresses)
    results = {
        address: ({"lat": geo.lat, "lng": geo.lng, "source": geo.source} if geo else None)
        for address, geo in resolved.items()
    }
    return JSONResponse(content={
        "results": results,
        "total": len(results),
        "resolved": sum(1 for v in results.values() if v),
        "lookup_time_ms": int((time.time() - t0) * 1000),
    })


@app.get("/address-suggest")
def address_suggest(
    q: str = Query(..., description="Partial address", min_length=3),
    limit: int = Query(5, ge=1, le=20),
):
    eng = _require_engine()
    return JSONResponse(content={"suggestions": eng.suggest_addresses(q, limit=limit)})


@app.get("/stats")
def stats():
    eng = _require_engine()
    return JSONResponse(content=eng.stats().to_dict())
