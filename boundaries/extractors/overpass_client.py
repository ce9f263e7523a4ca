"""
Overpass API client with endpoint failover, backoff and smart wait.

This module provides resilient downloads with:
- Ranked endpoint list with per-endpoint retry budgets
- Backoff growing by 1.5x per attempt, capped
- Bounded concurrency slots shared by all workers
- Status page probe before the first request to an endpoint
- Response sanity checks (empty body, HTML error pages, error markers)
"""

import asyncio
import re
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, List, NamedTuple, Optional

import httpx

from boundaries.transformers.validator import validate
from core.exceptions import (
    DownloadError,
    MalformedResponseError,
    NetworkError,
    RateLimitError,
)
import logging

logger = logging.getLogger(__name__)

HTML_MARKERS = ("<html", "<body", "<head", "<!doctype")
RATE_LIMIT_MARKER = "ERROR 429"
ERROR_MARKERS = ("ERROR 504", "ERROR 400", "ERROR 500", "ERROR 503")

# Error pages are short; markers further into a large body are data
MARKER_SCAN_CHARS = 2048

SLOTS_AVAILABLE_RE = re.compile(r"(\d+)\s+slots?\s+available\s+now", re.IGNORECASE)
SLOT_WAIT_RE = re.compile(r"in\s+(-?\d+)\s+seconds", re.IGNORECASE)


class DownloadResult(NamedTuple):
    text: str
    document: Optional[Any]
    endpoint: str
    attempts: int


def backoff_delays(base_delay: float, attempts: int, max_delay: float) -> List[float]:
    """Delays slept between `attempts` consecutive attempts: d, 1.5d, 2.25d, ... capped"""
    delays = []
    delay = base_delay
    for _ in range(max(attempts - 1, 0)):
        delays.append(min(delay, max_delay))
        delay *= 1.5
    return delays


def parse_status_wait(status_text: str) -> float:
    """
    Seconds to wait according to an Overpass /status page.

    "N slots available now" means no wait; otherwise the shortest
    "in N seconds" announced for a busy slot.
    """
    match = SLOTS_AVAILABLE_RE.search(status_text)
    if match and int(match.group(1)) > 0:
        return 0.0

    waits = [int(value) for value in SLOT_WAIT_RE.findall(status_text)]
    waits = [w for w in waits if w > 0]
    if waits:
        return float(min(waits))
    return 0.0


def status_url(endpoint: str) -> str:
    """https://host/api/interpreter -> https://host/api/status"""
    if endpoint.rstrip("/").endswith("/interpreter"):
        return endpoint.rstrip("/")[: -len("interpreter")] + "status"
    return endpoint.rstrip("/") + "/status"


class DownloadSlots:
    """
    Bounded concurrency counter shared by every worker ("smart wait").

    Acquisition is retried a fixed number of times; a slot is released on
    every exit path of the guarded block.
    """

    def __init__(self, limit: int, attempts: int = 10, interval: float = 0.5):
        self.limit = limit
        self.attempts = attempts
        self.interval = interval
        self._semaphore = asyncio.Semaphore(limit)

    @asynccontextmanager
    async def acquire(self):
        for attempt in range(1, self.attempts + 1):
            try:
                await asyncio.wait_for(self._semaphore.acquire(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                logger.debug(f"Download slot busy (attempt {attempt}/{self.attempts})")
        else:
            raise RateLimitError(
                "No download slot became available",
                context={"slots": self.limit, "attempts": self.attempts}
            )

        try:
            yield
        finally:
            self._semaphore.release()


class OverpassClient:
    """
    Download Overpass query results from a ranked list of endpoints.

    Attributes:
        endpoints: Interpreter URLs, tried in order
        retries_per_endpoint: Attempts per endpoint before failing over
        base_delay: Delay after the first failed attempt
        max_delay: Cap for the growing delay
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        endpoints: List[str],
        slots: DownloadSlots,
        retries_per_endpoint: int = 7,
        base_delay: float = 20.0,
        max_delay: float = 300.0,
        rate_limit_extra_wait: float = 30.0,
        timeout: float = 600.0,
        user_agent: str = "OSM-Notes-Ingestion/1.0",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        if not endpoints:
            raise ValueError("At least one Overpass endpoint is required")
        self.http = http_client
        self.endpoints = list(endpoints)
        self.slots = slots
        self.retries_per_endpoint = retries_per_endpoint
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.rate_limit_extra_wait = rate_limit_extra_wait
        self.timeout = timeout
        self.user_agent = user_agent
        self._sleep = sleep

    @classmethod
    def from_settings(cls, http_client: httpx.AsyncClient, slots: DownloadSlots, settings, **kwargs):
        return cls(
            http_client=http_client,
            endpoints=settings.OVERPASS_ENDPOINTS,
            slots=slots,
            retries_per_endpoint=settings.OVERPASS_RETRIES_PER_ENDPOINT,
            base_delay=settings.OVERPASS_BACKOFF_SECONDS,
            max_delay=settings.OVERPASS_MAX_BACKOFF_SECONDS,
            rate_limit_extra_wait=settings.RATE_LIMIT_EXTRA_WAIT_SECONDS,
            timeout=settings.OVERPASS_TIMEOUT_SECONDS,
            user_agent=settings.DOWNLOAD_USER_AGENT,
            **kwargs
        )

    async def probe_status(self, endpoint: str) -> float:
        """
        Ask the endpoint how long until a slot frees up.

        An unreachable or unparseable status page counts as available.
        """
        url = status_url(endpoint)
        try:
            response = await self.http.get(
                url,
                headers={"User-Agent": self.user_agent},
                timeout=30.0
            )
        except httpx.HTTPError as e:
            logger.warning(f"Status probe failed for {url}, assuming available: {e}")
            return 0.0

        if response.status_code != 200:
            logger.warning(f"Status probe returned HTTP {response.status_code} for {url}, assuming available")
            return 0.0

        wait = parse_status_wait(response.text)
        if wait > 0:
            logger.info(f"Overpass {url} busy, next slot in {wait:.0f}s")
        return wait

    async def download(self, query: str, required_key: Optional[str] = None) -> DownloadResult:
        """
        Run a query with failover across all endpoints.

        Args:
            query: Overpass QL payload sent as the POST body
            required_key: Top-level JSON key the response must carry
                (None for CSV output)

        Returns:
            DownloadResult with the body and, for JSON, the parsed document

        Raises:
            DownloadError: Every endpoint exhausted its retry budget
            RateLimitError: No download slot could be acquired
        """
        total_attempts = 0
        last_error: Optional[Exception] = None

        async with self.slots.acquire():
            for endpoint in self.endpoints:
                wait = await self.probe_status(endpoint)
                if wait > 0:
                    await self._sleep(min(wait, self.max_delay))

                delays = backoff_delays(self.base_delay, self.retries_per_endpoint, self.max_delay)

                for attempt in range(1, self.retries_per_endpoint + 1):
                    total_attempts += 1
                    try:
                        logger.debug(f"Request attempt {attempt}/{self.retries_per_endpoint} to {endpoint}")
                        text = await self._post(endpoint, query)
                        document = self._check_body(endpoint, text, required_key)
                        logger.info(f"Download succeeded from {endpoint} on attempt {attempt}")
                        return DownloadResult(text, document, endpoint, total_attempts)

                    except (NetworkError, RateLimitError, MalformedResponseError) as e:
                        last_error = e
                        if attempt >= self.retries_per_endpoint:
                            logger.warning(f"Attempt {attempt}/{self.retries_per_endpoint} on {endpoint} failed: {e.message}")
                            break

                        delay = delays[attempt - 1]
                        if isinstance(e, RateLimitError):
                            delay += max(self.rate_limit_extra_wait, e.retry_after or 0)
                        logger.warning(
                            f"Attempt {attempt}/{self.retries_per_endpoint} on {endpoint} failed: "
                            f"{e.message}. Retrying in {delay:.1f}s"
                        )
                        await self._sleep(delay)

                logger.warning(f"Endpoint {endpoint} exhausted its retry budget, failing over")

        raise DownloadError(
            f"All {len(self.endpoints)} Overpass endpoints failed",
            context={
                "endpoints": self.endpoints,
                "attempts": total_attempts,
                "last_error": last_error.message if last_error else None
            },
            original_exception=last_error
        )

    async def _post(self, endpoint: str, query: str) -> str:
        try:
            response = await self.http.post(
                endpoint,
                data={"data": query},
                headers={"User-Agent": self.user_agent},
                timeout=self.timeout
            )
        except httpx.TimeoutException as e:
            raise NetworkError(
                f"Request timeout after {self.timeout}s",
                context={"api_url": endpoint},
                original_exception=e
            )
        except httpx.TransportError as e:
            raise NetworkError(
                "Network error",
                context={"api_url": endpoint},
                original_exception=e
            )

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(
                f"Rate limited by {endpoint}",
                context={"status_code": 429, "api_url": endpoint},
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None
            )

        if response.status_code >= 500:
            raise NetworkError(
                f"Server error {response.status_code}",
                context={
                    "status_code": response.status_code,
                    "api_url": endpoint,
                    "response_body": response.text[:500]
                }
            )

        if response.status_code != 200:
            raise MalformedResponseError(
                f"Unexpected HTTP {response.status_code}",
                context={
                    "status_code": response.status_code,
                    "api_url": endpoint,
                    "response_body": response.text[:500]
                }
            )

        return response.text

    def _check_body(self, endpoint: str, text: str, required_key: Optional[str]) -> Optional[Any]:
        """Reject bodies that are 200 on the wire but failures in content"""
        if not text or not text.strip():
            raise MalformedResponseError("Empty response body", context={"api_url": endpoint})

        head = text[:MARKER_SCAN_CHARS]
        lowered = head.lower()

        if RATE_LIMIT_MARKER in head:
            raise RateLimitError(
                "Rate limit marker in response body",
                context={"api_url": endpoint, "response_body": head[:500]}
            )

        for marker in ERROR_MARKERS:
            if marker in head:
                raise MalformedResponseError(
                    f"Error marker '{marker}' in response body",
                    context={"api_url": endpoint, "response_body": head[:500]}
                )

        for marker in HTML_MARKERS:
            if marker in lowered:
                raise MalformedResponseError(
                    "HTML page returned instead of data",
                    context={"api_url": endpoint, "marker": marker}
                )

        if required_key is None:
            return None

        result = validate(text, required_key)
        if not result.ok:
            raise MalformedResponseError(
                f"Invalid response: {result.reason}",
                context={"api_url": endpoint, "required_key": required_key}
            )
        return result.document
