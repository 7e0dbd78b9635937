"""Overflow-driven postal code expansion against the registry.

The registry refuses to enumerate more than ~100 physicians per query and
answers with an overflow sentinel instead. When that happens the query is
split into the ten or twenty children at the next postal specificity
level and each child is queried in turn, until every branch resolves or
reaches a full 6-character code (reported as partial coverage).
"""

import logging
from collections import deque
from typing import Iterable, List, Optional, Set

from .errors import DirectoryError, MalformedResponseError
from .models import (
    ExpansionResult,
    PhysicianRecord,
    QueryFailure,
    RegistryResponse,
    SearchFilters,
    SearchFrontierNode,
)
from .postal_codes import display_code, expand_postal_code, is_valid_prefix, normalize_code

logger = logging.getLogger(__name__)


class RecordMerger:
    """Accumulates records across leaves, deduplicated by registration number.

    Records without a registration number cannot be safely deduplicated and
    are always kept.
    """

    def __init__(self):
        self.records: List[PhysicianRecord] = []
        self._seen_numbers: Set[str] = set()
        self.duplicates_skipped = 0

    def add(self, records: Iterable[PhysicianRecord]) -> int:
        """Add records; returns how many were skipped as duplicates."""
        skipped = 0
        for record in records:
            number = record.registration_number
            if number:
                if number in self._seen_numbers:
                    skipped += 1
                    continue
                self._seen_numbers.add(number)
            self.records.append(record)
        self.duplicates_skipped += skipped
        return skipped


class RegistryQueryExpander:
    """Decides how an overflowing registry query is subdivided."""

    def __init__(self, client, filters: Optional[SearchFilters] = None):
        self.client = client
        self.filters = filters or SearchFilters()

    @staticmethod
    def seed_nodes(seeds: Iterable[str]) -> List[SearchFrontierNode]:
        nodes = []
        for seed in seeds:
            if not is_valid_prefix(seed):
                logger.warning(f"Ignoring invalid postal prefix: {seed!r}")
                continue
            nodes.append(SearchFrontierNode(code=display_code(seed), depth=0))
        return nodes

    @staticmethod
    def children(node: SearchFrontierNode) -> List[SearchFrontierNode]:
        return [
            SearchFrontierNode(code=child, depth=node.depth + 1)
            for child in expand_postal_code(node.code)
        ]

    def absorb(self, node: SearchFrontierNode, response: RegistryResponse,
               merger: RecordMerger, result: ExpansionResult) -> List[SearchFrontierNode]:
        """Fold one registry response into the result. Returns the children to query next."""
        if response.overflow:
            children = self.children(node)
            if children:
                logger.info(f"  {node.code}: too many results, expanding to {len(children)} codes")
                return children
            logger.warning(
                f"  {node.code}: more than the registry enumerates at maximum "
                f"specificity, coverage is partial"
            )
            result.partial_coverage.append(node.code)
            return []

        result.leaves.append(node.code)
        if response.records:
            skipped = merger.add(response.records)
            logger.info(f"  {node.code}: found {response.total_count} physicians"
                        + (f" ({skipped} duplicates skipped)" if skipped else ""))
        else:
            logger.debug(f"  {node.code}: no physicians found")
        return []

    @staticmethod
    def failure(node: SearchFrontierNode, error: DirectoryError, attempts: int) -> QueryFailure:
        outcome = "malformed" if isinstance(error, MalformedResponseError) else error.outcome
        return QueryFailure(code=node.code, error=str(error), outcome=outcome, attempts=attempts)

    def expand(self, seeds: Iterable[str]) -> ExpansionResult:
        """Resolve seeds one query at a time (no concurrency, no retry)."""
        result = ExpansionResult()
        merger = RecordMerger()
        seen: Set[str] = set()
        queue = deque(self.seed_nodes(seeds))

        while queue:
            node = queue.popleft()
            key = normalize_code(node.code)
            if key in seen:
                continue
            seen.add(key)

            result.queries_issued += 1
            try:
                response = self.client.search(node.code, self.filters)
            except DirectoryError as e:
                logger.warning(f"  {node.code}: query failed: {e}")
                result.failures.append(self.failure(node, e, attempts=1))
                continue
            queue.extend(self.absorb(node, response, merger, result))

        result.records = merger.records
        result.duplicates_skipped = merger.duplicates_skipped
        result.passes = 1
        logger.info(f"Expansion complete: {len(result.records)} unique physicians from "
                    f"{len(result.leaves)} leaf codes ({result.queries_issued} queries)")
        return result
