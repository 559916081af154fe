# news_ingest/services/fetch_client.py
"""
Upstream content API client.

Every request has a hard timeout and runs inside a bounded retry loop with
jittered exponential backoff. Only transport failures (connect errors,
timeouts) and 5xx/429 answers are retried; any other 4xx fails immediately.

API shape:
    GET {base}?limit&offset&status&sort_by&sort_order&category&tag&search
        -> {"items": [...], "total": n, "page": p, "limit": l, "has_more": bool}
    GET {base}/{id} -> item | 404
"""

import logging
import time
from typing import Any

import httpx

from news_ingest.context import PipelineContext
from news_ingest.errors import (
    ApiError,
    FetchTimeoutError,
    InvalidResponseError,
    NetworkError,
    NewsIngestError,
)
from news_ingest.schemas.upstream import FetchFilters, FetchPage, IncomingArticle, parse_item, parse_page
from news_ingest.services.resilience import RetryPolicy, retry_call

logger = logging.getLogger(__name__)

USER_AGENT = "GoNext-NewsFetcher/1.0"


def is_retryable(exc: BaseException) -> bool:
    """Transport failures and server-side errors are worth another attempt."""
    if isinstance(exc, (NetworkError, FetchTimeoutError)):
        return True
    if isinstance(exc, ApiError):
        return exc.is_retryable
    return False


class NewsApiClient:
    """
    Synchronous client for the upstream news API.

    Usage:
        with NewsApiClient(base_url, api_key, ctx=ctx) as client:
            page = client.fetch_page(limit=50, offset=0)
    """

    DEFAULT_TIMEOUT = 30.0
    HEALTH_TIMEOUT = 5.0

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        retry_policy: RetryPolicy | None = None,
        ctx: PipelineContext | None = None,
        transport: httpx.BaseTransport | None = None,
        health_timeout: float = HEALTH_TIMEOUT,
    ):
        """
        Initialize the client.

        Args:
            base_url: Items endpoint, e.g. https://host/api/v1/news
            api_key: Sent as Bearer token and as api_key/key query params
            timeout: Hard per-request timeout in seconds
            retry_policy: Attempts and backoff (default: 3 attempts, 1s base, x2, +/-25%)
            ctx: Run context (logger, metrics, cancellation)
            transport: Optional httpx transport (tests use httpx.MockTransport)
            health_timeout: Timeout for check_health()
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.retry_policy = retry_policy or RetryPolicy()
        self.ctx = ctx or PipelineContext()
        self.health_timeout = health_timeout

        headers = {
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        }
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self.client = httpx.Client(
            timeout=timeout,
            headers=headers,
            transport=transport,
            follow_redirects=True,
        )

    @classmethod
    def from_settings(cls, settings, ctx: PipelineContext | None = None, **kwargs: Any) -> "NewsApiClient":
        return cls(
            base_url=settings.NEWS_API_URL,
            api_key=settings.NEWS_API_KEY,
            timeout=settings.NEWS_API_TIMEOUT_SECONDS,
            retry_policy=RetryPolicy.from_settings(settings),
            ctx=ctx,
            health_timeout=settings.NEWS_API_HEALTH_TIMEOUT_SECONDS,
            **kwargs,
        )

    def __enter__(self) -> "NewsApiClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        self.client.close()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def fetch_page(
        self,
        limit: int = 50,
        offset: int = 0,
        filters: FetchFilters | None = None,
    ) -> FetchPage:
        """
        Fetch and validate one page of items.

        Returns:
            FetchPage with valid items plus the rejected ones

        Raises:
            FetchTimeoutError, NetworkError, ApiError, InvalidResponseError
        """
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if filters:
            params.update(filters.as_params())

        start = time.time()
        with self.ctx.metrics.timer("fetch_page"):
            payload = self._get_json(self.base_url, params)
            page = parse_page(payload)

        self.ctx.logger.info(
            "fetch_page_complete",
            f"Fetched {len(page.items)} items ({len(page.rejected)} rejected) at offset {offset}",
            limit=limit,
            offset=offset,
            items_processed=len(page.items),
            items_failed=len(page.rejected),
            duration_ms=int((time.time() - start) * 1000),
        )
        return page

    def fetch_by_id(self, item_id: str) -> IncomingArticle | None:
        """
        Fetch a single item.

        Returns:
            The validated item, or None when the upstream answers 404

        Raises:
            ValidationError if required fields are missing, plus the fetch errors
        """
        with self.ctx.metrics.timer("fetch_by_id"):
            try:
                payload = self._get_json(f"{self.base_url}/{item_id}", {})
            except ApiError as e:
                if e.status == 404:
                    return None
                raise
        return parse_item(payload)

    def check_health(self) -> bool:
        """HEAD the base URL with a short timeout; any failure means unhealthy."""
        try:
            response = self.client.head(
                self.base_url,
                params=self._auth_params(),
                timeout=self.health_timeout,
            )
            return response.is_success
        except httpx.HTTPError as e:
            logger.warning(f"Upstream health check failed: {e}")
            return False

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _auth_params(self) -> dict[str, str]:
        if not self.api_key:
            return {}
        return {"api_key": self.api_key, "key": self.api_key}

    def _get_json(self, url: str, params: dict[str, Any]) -> Any:
        query = {**params, **self._auth_params()}

        def on_retry(attempt: int, exc: BaseException, wait_seconds: float) -> None:
            self.ctx.metrics.increment("fetch_retries")
            self.ctx.logger.warning(
                "fetch_retry",
                f"Upstream request failed ({exc}); retrying in {wait_seconds:.2f}s",
                attempt=attempt,
                wait_seconds=round(wait_seconds, 3),
                code=getattr(exc, "code", None),
            )

        try:
            return retry_call(
                self._request_once,
                url,
                query,
                policy=self.retry_policy,
                should_retry=is_retryable,
                cancel=self.ctx.cancel,
                on_retry=on_retry,
            )
        except NewsIngestError as e:
            logger.error(f"Upstream request to {url} failed: {e}")
            raise

    def _request_once(self, url: str, params: dict[str, Any]) -> Any:
        """One attempt, with httpx errors translated into the error taxonomy."""
        try:
            response = self.client.get(url, params=params)
        except httpx.TimeoutException as e:
            raise FetchTimeoutError("API request timeout", cause=e)
        except httpx.TransportError as e:
            raise NetworkError(f"Network error while fetching news: {e}", cause=e)

        if response.status_code >= 400:
            raise ApiError(
                f"API request failed: {response.status_code} {response.reason_phrase}",
                status=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise InvalidResponseError("API response is not valid JSON", cause=e)
