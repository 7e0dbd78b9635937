"""Low-priority background pass that fills in the per-physician demographic field."""

import logging
import queue
import threading
from typing import Callable, Iterable, List, Optional

from .cache import ReconciliationCache
from .config import Config
from .enrichment import EnrichmentFetcher
from .models import EnrichmentResult

logger = logging.getLogger(__name__)

_SHUTDOWN = object()


class BackgroundEnricher:
    """
    Drains enrichment requests on one daemon thread so searches never wait on it.

    Each request names the registration numbers a search just returned (or
    None for "whatever is pending"); only those still missing the field
    and not already known to be absent are fetched.
    """

    def __init__(self, cache: ReconciliationCache, fetcher: EnrichmentFetcher,
                 config: Optional[Config] = None,
                 on_update: Optional[Callable[[List[EnrichmentResult]], None]] = None):
        self.cache = cache
        self.fetcher = fetcher
        self.config = config or Config()
        self.on_update = on_update
        self._requests: "queue.Queue[Optional[List[str]]]" = queue.Queue()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.passes = 0
        self.values_found = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="BackgroundEnricher", daemon=True)
        self._thread.start()

    def schedule(self, registration_numbers: Optional[Iterable[str]] = None):
        """Queue a pass; returns immediately."""
        numbers = None if registration_numbers is None else [n for n in registration_numbers if n]
        if numbers is not None and not numbers:
            return
        self.start()
        self._requests.put(numbers)

    def run_once(self, registration_numbers: Optional[Iterable[str]] = None) -> List[EnrichmentResult]:
        """One synchronous pass over pending records, bounded by the batch limit."""
        pending = self.cache.pending_enrichment(
            limit=self.config.enrichment_batch_limit,
            registration_numbers=registration_numbers,
        )
        if not pending:
            return []
        logger.info(f"Background enrichment: fetching {len(pending)} profiles")
        results = self.fetcher.fetch_many(pending, concurrency=self.config.enrichment_concurrency)
        found = self.cache.apply_enrichment(results)
        self.passes += 1
        self.values_found += found
        if self.on_update and results:
            self.on_update(results)
        return results

    def _loop(self):
        while not self._stop.is_set():
            try:
                numbers = self._requests.get(timeout=0.5)
            except queue.Empty:
                continue
            if numbers is _SHUTDOWN or self._stop.is_set():
                self._requests.task_done()
                break
            try:
                self.run_once(numbers)
            except Exception as e:
                # Enrichment is best-effort; the next search schedules another pass
                logger.error(f"Background enrichment pass failed: {e}")
            finally:
                self._requests.task_done()

    def wait_idle(self):
        """Block until every queued pass has finished."""
        self._requests.join()

    def shutdown(self, timeout: float = 5.0):
        self._stop.set()
        thread = self._thread
        if thread and thread.is_alive():
            self._requests.put(_SHUTDOWN)
            thread.join(timeout=timeout)
        self._thread = None

    @property
    def stats(self) -> dict:
        return {
            "running": self.running,
            "queued": self._requests.qsize(),
            "passes": self.passes,
            "values_found": self.values_found,
        }

