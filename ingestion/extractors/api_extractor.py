"""
Paginated API source with retry, throttling, prefetch and cancellation.

This module provides robust API extraction with:
- Exponential backoff retry logic for 5xx responses and network failures
- Rate limiting support (HTTP 429 with Retry-After)
- Optional minimum interval between requests
- Prefetch of the next page while the current one is consumed
- Every request raced against the job's cancellation token
"""

import asyncio
import contextlib
import time
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple
import logging

import httpx

from core.config import settings
from core.exceptions import (
    APIExtractionError,
    NetworkError,
    RateLimitError,
    AuthenticationError,
    ResourceNotFoundError,
)
from ingestion.base import CancellationToken, RowSource
from models.base import SourceType
from schemas.etl import ApiSourceConfig

logger = logging.getLogger(__name__)

PageResult = Tuple[Any, Optional[str]]


def path_get(value: Any, path: Optional[str]) -> Any:
    """Follow a dot path through nested objects; missing keys give None."""
    if not path:
        return value
    for key in (part for part in path.split(".") if part):
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return None
    return value


def page_records(data: Any) -> List[Dict[str, Any]]:
    """Lists give one record per element, objects give themselves, scalars are wrapped."""
    if data is None:
        return []
    if isinstance(data, list):
        return [item if isinstance(item, dict) else {"value": item} for item in data]
    if isinstance(data, dict):
        return [data]
    return [{"value": data}]


class APIRowSource(RowSource):
    """
    Stream records from a paginated REST API.

    Resume state:
        ``{"next_url": u}`` once a page has been fully consumed,
        ``{"page_url": u, "skip_rows": k}`` while inside a page,
        ``{"exhausted": True}`` after the last page.

    Attributes:
        max_retries: Retries for 5xx / network failures (default: settings.MAX_RETRIES)
        retry_delay: Base backoff delay in seconds, doubled per retry
    """

    source_type = SourceType.API

    def __init__(
        self,
        config: ApiSourceConfig,
        resume_state: Optional[Dict[str, Any]] = None,
        cancel_token: Optional[CancellationToken] = None,
        on_resume_state: Optional[Callable[[Dict[str, Any]], None]] = None,
        client: Optional[httpx.AsyncClient] = None,
        max_retries: int = None,
        retry_delay: float = None,
    ):
        super().__init__(resume_state, cancel_token)
        self.config = config
        self.on_resume_state = on_resume_state
        self._client = client
        self.max_retries = settings.MAX_RETRIES if max_retries is None else max_retries
        self.retry_delay = settings.API_RETRY_BASE_DELAY if retry_delay is None else retry_delay
        self.timeout = config.timeout_ms / 1000
        self.pages_fetched = 0

        self._state: Dict[str, Any] = dict(self.initial_state)
        self._throttle_lock = asyncio.Lock()
        self._last_request: Optional[float] = None

    @property
    def resume_state(self) -> Dict[str, Any]:
        return dict(self._state)

    # ------------------------------------------------------------------
    # Pagination
    # ------------------------------------------------------------------

    def _resolve_next(self, current_url: str, token: Any) -> Optional[str]:
        if token is None or token == "" or isinstance(token, (dict, list, bool)):
            return None
        if self.config.next_page_param:
            return str(httpx.URL(self.config.url).copy_merge_params({self.config.next_page_param: str(token)}))
        if not isinstance(token, str):
            return None
        return str(httpx.URL(current_url).join(token))

    async def rows(self) -> AsyncIterator[Dict[str, Any]]:
        if self._state.get("exhausted"):
            return

        url: Optional[str] = self._state.get("page_url") or self._state.get("next_url") or self.config.url
        skip_in_page = int(self._state.get("skip_rows", 0) or 0) if self._state.get("page_url") else 0

        owns_client = self._client is None
        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        prefetch: Optional[asyncio.Task] = None
        pages = 0
        try:
            while url and pages < self.config.max_pages:
                self.check_cancelled()
                pages += 1

                if prefetch is not None:
                    payload, next_url = await prefetch
                    prefetch = None
                else:
                    payload, next_url = await self._fetch_page(client, url)

                if next_url and self.on_resume_state:
                    self.on_resume_state({"next_url": next_url})
                if next_url and self.config.parallel_pages > 1 and pages < self.config.max_pages:
                    prefetch = asyncio.create_task(self._fetch_page(client, next_url))

                records = page_records(path_get(payload, self.config.data_path))
                logger.debug(f"Page {pages} from {url}: {len(records)} records")

                for index, record in enumerate(records):
                    if index < skip_in_page:
                        continue
                    self._state = {"page_url": url, "skip_rows": index + 1}
                    yield record
                skip_in_page = 0

                last_page = not next_url or pages >= self.config.max_pages
                self._state = {"exhausted": True} if last_page else {"next_url": next_url}
                url = next_url

            logger.info(f"API source finished after {pages} pages ({self.config.url})")
        finally:
            self.pages_fetched += pages
            if prefetch is not None and not prefetch.done():
                prefetch.cancel()
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await prefetch
            if owns_client:
                await client.aclose()

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def _fetch_page(self, client: httpx.AsyncClient, url: str) -> PageResult:
        response = await self._request_with_retry(client, url)
        try:
            payload = response.json()
        except ValueError as e:
            raise APIExtractionError(
                "Failed to parse JSON response",
                context={"api_url": url, "response_body": response.text[:500]},
                original_exception=e
            )
        return payload, self._resolve_next(url, path_get(payload, self.config.next_page_path))

    async def _throttle(self) -> None:
        interval = self.config.min_request_interval_ms / 1000
        async with self._throttle_lock:
            if interval > 0 and self._last_request is not None:
                wait = interval - (time.monotonic() - self._last_request)
                if wait > 0:
                    await self._sleep(wait)
            self._last_request = time.monotonic()

    async def _sleep(self, delay: float) -> None:
        if self.cancel_token is not None:
            await self.cancel_token.sleep(delay)
        else:
            await asyncio.sleep(delay)

    async def _send(self, client: httpx.AsyncClient, url: str) -> httpx.Response:
        """Issue one request, aborting it if the job is cancelled meanwhile."""
        headers = {"content-type": "application/json", **self.config.headers}
        kwargs: Dict[str, Any] = {"headers": headers, "timeout": self.timeout}
        if self.config.body is not None:
            kwargs["json"] = self.config.body
        request = client.request(self.config.method, url, **kwargs)

        if self.cancel_token is None:
            return await request

        request_task = asyncio.ensure_future(request)
        cancel_task = asyncio.ensure_future(self.cancel_token.wait())
        try:
            done, _ = await asyncio.wait(
                {request_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            cancel_task.cancel()
        if request_task in done:
            return request_task.result()

        request_task.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await request_task
        self.cancel_token.raise_if_cancelled()
        raise APIExtractionError("Request aborted", context={"api_url": url})

    async def _request_with_retry(self, client: httpx.AsyncClient, url: str) -> httpx.Response:
        """
        Make an HTTP request with retry logic and exponential backoff.

        Returns:
            Successful HTTP response

        Raises:
            AuthenticationError: 401 / 403
            ResourceNotFoundError: 404
            RateLimitError: 429 after max retries
            NetworkError: 5xx or transport failure after max retries
            APIExtractionError: Any other non-success status
            JobCancelledError: Cancellation during the request or a backoff
        """
        attempt = 0
        while True:
            self.check_cancelled()
            await self._throttle()
            context = {"api_url": url, "retry_count": attempt}

            try:
                response = await self._send(client, url)
            except httpx.TransportError as e:
                if attempt >= self.max_retries:
                    raise NetworkError(
                        f"Network error after {self.max_retries} retries",
                        context=context,
                        original_exception=e
                    )
                attempt += 1
                delay = self.retry_delay * (2 ** (attempt - 1))
                logger.warning(f"Network error ({type(e).__name__}). Retrying in {delay}s (attempt {attempt}/{self.max_retries})")
                await self._sleep(delay)
                continue

            status = response.status_code
            context["status_code"] = status

            if response.is_success:
                return response

            if status in (401, 403):
                raise AuthenticationError(f"Authentication failed for {url}", context=context)

            if status == 404:
                raise ResourceNotFoundError(f"Resource not found: {url}", context=context)

            if status == 429:
                retry_after = _retry_after_seconds(response)
                if attempt >= self.max_retries:
                    raise RateLimitError(
                        f"Rate limit exceeded for {url}",
                        context=context,
                        retry_after=retry_after
                    )
                attempt += 1
                delay = retry_after if retry_after is not None else self.retry_delay * (2 ** (attempt - 1))
                logger.warning(f"Rate limited. Retrying after {delay}s")
                await self._sleep(delay)
                continue

            if status >= 500:
                if attempt >= self.max_retries:
                    context["response_body"] = response.text[:500]
                    raise NetworkError(
                        f"Server error {status} after {self.max_retries} retries",
                        context=context
                    )
                attempt += 1
                delay = self.retry_delay * (2 ** (attempt - 1))
                logger.warning(
                    f"Server error {status}. Retrying in {delay}s (attempt {attempt}/{self.max_retries})"
                )
                await self._sleep(delay)
                continue

            context["response_body"] = response.text[:500]
            raise APIExtractionError(f"API request failed with status {status}", context=context)


def _retry_after_seconds(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None
