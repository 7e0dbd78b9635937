"""Bounded-concurrency fan-out of registry queries.

Each pass takes the current frontier, drops codes already queried, and
runs the rest in fixed-size batches on a thread pool. Batches run strictly
one after another with a pause in between, which keeps the aggregate call
rate predictable. Overflowing codes found during a pass become the next
pass's frontier; the loop ends when the frontier is empty.
"""

import concurrent.futures
import logging
import time
from typing import Callable, Iterable, List, Optional, Set, Tuple

from .config import Config
from .errors import DirectoryError
from .models import (
    ExpansionResult,
    QueryFailure,
    RegistryResponse,
    SearchFilters,
    SearchFrontierNode,
)
from .postal_codes import normalize_code
from .query_expander import RecordMerger, RegistryQueryExpander

logger = logging.getLogger(__name__)


def attempt_delays(max_attempts: int, base_delay: float) -> List[float]:
    """Pause before each retry: base * 1, base * 2, ... (one per retry, not per attempt)."""
    return [base_delay * attempt for attempt in range(1, max_attempts)]


class ParallelFanoutClient:
    """Runs an expansion frontier against the registry in concurrent batches."""

    def __init__(self, client, config: Optional[Config] = None,
                 concurrency: Optional[int] = None,
                 batch_delay: Optional[float] = None,
                 max_attempts: Optional[int] = None,
                 retry_delay: Optional[float] = None,
                 sleep: Callable[[float], None] = time.sleep):
        config = config or Config()
        self.client = client
        self.concurrency = max(1, concurrency or config.fanout_concurrency)
        self.batch_delay = config.fanout_batch_delay if batch_delay is None else batch_delay
        self.max_attempts = max(1, max_attempts or config.fanout_max_attempts)
        self.retry_delay = config.fanout_retry_delay if retry_delay is None else retry_delay
        self._sleep = sleep

    def query_with_retry(self, node: SearchFrontierNode, filters: SearchFilters
                         ) -> Tuple[SearchFrontierNode, Optional[RegistryResponse], Optional[QueryFailure]]:
        """Issue one query, reissuing it on retryable errors. Never raises DirectoryError."""
        delays = attempt_delays(self.max_attempts, self.retry_delay)
        attempt = 0
        while True:
            attempt += 1
            try:
                return node, self.client.search(node.code, filters), None
            except DirectoryError as e:
                if e.retryable and attempt < self.max_attempts:
                    wait = delays[attempt - 1]
                    logger.info(f"  {node.code}: {e} (attempt {attempt}/{self.max_attempts}), "
                                f"retrying in {wait:.1f}s")
                    self._sleep(wait)
                    continue
                logger.warning(f"  {node.code}: giving up after {attempt} attempt(s): {e}")
                return node, None, RegistryQueryExpander.failure(node, e, attempt)

    def run(self, seeds: Iterable[str], filters: Optional[SearchFilters] = None) -> ExpansionResult:
        """Resolve seed prefixes into deduplicated physician records."""
        filters = filters or SearchFilters()
        expander = RegistryQueryExpander(self.client, filters)
        result = ExpansionResult()
        merger = RecordMerger()
        seen: Set[str] = set()
        frontier = expander.seed_nodes(seeds)

        with concurrent.futures.ThreadPoolExecutor(max_workers=self.concurrency) as executor:
            while frontier:
                pending = []
                for node in frontier:
                    key = normalize_code(node.code)
                    if key in seen:
                        continue
                    seen.add(key)
                    pending.append(node)
                if not pending:
                    break

                result.passes += 1
                batches = [pending[i:i + self.concurrency]
                           for i in range(0, len(pending), self.concurrency)]
                logger.info(f"Pass {result.passes}: {len(pending)} postal codes in "
                            f"{len(batches)} batches (concurrency: {self.concurrency})")

                next_frontier: List[SearchFrontierNode] = []
                for i, batch in enumerate(batches):
                    logger.debug(f"  Batch {i + 1}/{len(batches)}: {', '.join(n.code for n in batch)}")
                    futures = [executor.submit(self.query_with_retry, node, filters) for node in batch]
                    for future in futures:
                        node, response, failure = future.result()
                        result.queries_issued += 1
                        if failure is not None:
                            result.failures.append(failure)
                            continue
                        next_frontier.extend(expander.absorb(node, response, merger, result))

                    if i < len(batches) - 1 and self.batch_delay > 0:
                        self._sleep(self.batch_delay)

                frontier = next_frontier

        result.records = merger.records
        result.duplicates_skipped = merger.duplicates_skipped
        logger.info(
            f"Fan-out complete: {len(result.records)} unique physicians, "
            f"{result.queries_issued} queries, {len(result.failures)} failed, "
            f"{len(result.partial_coverage)} partial"
        )
        return result
