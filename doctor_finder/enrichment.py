"""Demographic enrichment fetched per registration number from the registry's profile page.

The page is HTML with no API contract, so the value is pulled out with
pattern matching against known markup. "No such physician", "field not
shown", and "we were served a challenge page" are kept distinct from a
genuine value so callers never store one of them as data.
"""

import concurrent.futures
import logging
import re
import time
from typing import Callable, Iterable, List, Optional

import requests

from .config import Config
from .errors import (
    BlockedError,
    DirectoryError,
    PermanentNotFoundError,
    classify_status,
    from_request_exception,
)
from .models import EnrichmentResult
from .rate_limiter import SUCCESS, AdaptiveRateLimiter

logger = logging.getLogger(__name__)

_HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; DoctorFinder/1.0)",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}

# Tried in order; first capture group is the value
VALUE_PATTERNS = (
    re.compile(r'<span class="scrp-gender-value">\s*([^<]+?)\s*<'),
    re.compile(r"Gender:[^<]*<span[^>]*>\s*([^<]+?)\s*<", re.IGNORECASE),
)
_CHALLENGE_MARKERS = ("captcha", "blocked", "access denied")
_NOT_FOUND_MARKERS = ("no physician found", "not found")


def parse_profile(html: str) -> Optional[str]:
    """Return the demographic value from a profile page.

    Raises BlockedError for a challenge page and PermanentNotFoundError when
    the page says the physician does not exist. Returns None when the page
    is a real profile that simply does not show the field.
    """
    for pattern in VALUE_PATTERNS:
        match = pattern.search(html)
        if match and match.group(1).strip():
            return match.group(1).strip()

    lowered = html.lower()
    if any(marker in lowered for marker in _CHALLENGE_MARKERS):
        raise BlockedError("Possible blocking/captcha detected")
    if any(marker in lowered for marker in _NOT_FOUND_MARKERS):
        raise PermanentNotFoundError("Physician not found")
    return None


class EnrichmentFetcher:
    """Fetches the demographic field one registration number at a time."""

    def __init__(self, config: Optional[Config] = None,
                 limiter: Optional[AdaptiveRateLimiter] = None,
                 session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config or Config()
        self.limiter = limiter or AdaptiveRateLimiter(self.config.enrichment_pacing, name="enrichment")
        self.session = session or requests.Session()
        self.max_attempts = max(1, self.config.enrichment_max_attempts)
        self._sleep = sleep

    def _fetch_page(self, registration_number: str) -> str:
        self.limiter.wait()
        try:
            resp = self.session.get(
                self.config.enrichment_url,
                params={"cpsonum": registration_number},
                headers=_HEADERS,
                timeout=self.config.enrichment_timeout,
            )
        except requests.RequestException as e:
            raise from_request_exception(e, context=f"#{registration_number}: ") from e
        classify_status(resp.status_code, context=f"#{registration_number}: ")
        return resp.text or ""

    def fetch(self, registration_number: str) -> EnrichmentResult:
        """Fetch and classify one profile. Never raises DirectoryError."""
        number = str(registration_number).strip()
        if not number:
            return EnrichmentResult(registration_number=number, status="not_found",
                                    error="empty registration number")
        attempt = 0
        while True:
            attempt += 1
            try:
                value = parse_profile(self._fetch_page(number))
            except PermanentNotFoundError as e:
                self.limiter.record(SUCCESS)  # the page was served normally
                logger.debug(f"Enrichment #{number}: not found")
                return EnrichmentResult(registration_number=number, status="not_found", error=str(e))
            except DirectoryError as e:
                self.limiter.record(e.outcome)
                if e.retryable and attempt < self.max_attempts:
                    delay = self.limiter.retry_delay(attempt)
                    logger.info(f"Enrichment #{number}: {e}; retrying in {delay:.1f}s "
                                f"(attempt {attempt}/{self.max_attempts})")
                    self._sleep(delay)
                    continue
                status = "blocked" if isinstance(e, BlockedError) else "failed"
                logger.warning(f"Enrichment #{number}: giving up after {attempt} attempt(s): {e}")
                return EnrichmentResult(registration_number=number, status=status, error=str(e))

            self.limiter.record(SUCCESS)
            if value is None:
                return EnrichmentResult(registration_number=number, status="not_available")
            return EnrichmentResult(registration_number=number, status="found", value=value)

    def fetch_many(self, registration_numbers: Iterable[str],
                   concurrency: Optional[int] = None) -> List[EnrichmentResult]:
        """Fetch several profiles in small sequential batches; results keep input order."""
        numbers = [str(n).strip() for n in registration_numbers if n and str(n).strip()]
        concurrency = max(1, concurrency or self.config.enrichment_concurrency)
        results: List[EnrichmentResult] = []
        with concurrent.futures.ThreadPoolExecutor(max_workers=concurrency) as executor:
            for i in range(0, len(numbers), concurrency):
                batch = numbers[i:i + concurrency]
                results.extend(executor.map(self.fetch, batch))
        found = sum(1 for r in results if r.status == "found")
        if numbers:
            logger.info(f"Enrichment: {found}/{len(numbers)} values found")
        return results
