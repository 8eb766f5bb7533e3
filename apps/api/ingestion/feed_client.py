"""
twitterapi.io client for fetching follow lists, posts and profiles.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, TypeVar

import httpx

from config import require_twitter_api_key, settings
from ingestion.types import FeedPost, FeedUser, FollowingPage, PostPage

logger = logging.getLogger(__name__)

T = TypeVar("T")

USER_AGENT = "AskYourFeed/1.0"
RATE_LIMIT_STATUS = 429


class FeedApiError(RuntimeError):
    """Raised for transport failures and non-200 responses from the feed API."""

    def __init__(self, status_code: Optional[int], message: str):
        self.status_code = status_code
        prefix = f"API error: {status_code}" if status_code is not None else "API request failed"
        super().__init__(f"{prefix}, {message}")

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == RATE_LIMIT_STATUS


class FeedFetchError(RuntimeError):
    """Raised when a paginated fetch fails for good (permanent error or retries exhausted)."""

    def __init__(self, message: str, *, rate_limited: bool, retried: int, rate_limit_hits: int):
        self.rate_limited = rate_limited
        self.retried = retried
        self.rate_limit_hits = rate_limit_hits
        super().__init__(message)


@dataclass(frozen=True)
class RetryResult(Generic[T]):
    value: T
    retried: int = 0
    rate_limit_hits: int = 0


async def fetch_with_retry(
    call: Callable[..., Awaitable[T]],
    *args: Any,
    max_retries: Optional[int] = None,
    base_delay: Optional[float] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> RetryResult[T]:
    """
    Run a feed API call, retrying rate-limited attempts with exponential backoff.

    The delay doubles per attempt starting from ``base_delay`` seconds. Any
    other error, or the rate limit persisting past ``max_retries`` retries,
    raises ``FeedFetchError`` carrying the retry counters.
    """
    max_retries = settings.INGEST_MAX_RETRIES if max_retries is None else max(int(max_retries), 0)
    base_delay = settings.INGEST_BASE_BACKOFF_SECONDS if base_delay is None else float(base_delay)
    label = getattr(call, "__name__", "feed_call")
    retried = 0
    rate_limit_hits = 0

    for attempt in range(max_retries + 1):
        try:
            value = await call(*args)
            return RetryResult(value=value, retried=retried, rate_limit_hits=rate_limit_hits)
        except FeedApiError as exc:
            if not exc.is_rate_limited:
                raise FeedFetchError(
                    str(exc),
                    rate_limited=False,
                    retried=retried,
                    rate_limit_hits=rate_limit_hits,
                ) from exc
            rate_limit_hits += 1
            if attempt >= max_retries:
                raise FeedFetchError(
                    f"rate limit persisted after {retried} retries: {exc}",
                    rate_limited=True,
                    retried=retried,
                    rate_limit_hits=rate_limit_hits,
                ) from exc
            retried += 1
            delay = base_delay * (2 ** attempt)
            logger.warning(
                "Rate limited on %s args=%s, retry %s/%s in %.2fs",
                label,
                args,
                attempt + 1,
                max_retries,
                delay,
            )
            await sleep(delay)

    raise FeedFetchError(
        f"max retries exceeded for {label}",
        rate_limited=True,
        retried=retried,
        rate_limit_hits=rate_limit_hits,
    )


class FeedApiClient:
    """Async client for the twitterapi.io REST API."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the feed client.

        Args:
            api_key: twitterapi.io key, sent as ``x-api-key``
            base_url: API root, defaults to the configured endpoint
            timeout: per-request timeout in seconds
            transport: optional httpx transport (used by tests)
        """
        if not api_key:
            raise ValueError("api_key must be provided")
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.TWITTER_API_BASE_URL,
            timeout=timeout or settings.TWITTER_API_TIMEOUT_SECONDS,
            headers={"x-api-key": api_key, "User-Agent": USER_AGENT},
            transport=transport,
        )

    async def __aenter__(self) -> "FeedApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get(self, endpoint: str, params: Dict[str, str]) -> Dict[str, Any]:
        try:
            response = await self._client.get(endpoint, params=params)
        except httpx.HTTPError as exc:
            raise FeedApiError(None, f"{exc.__class__.__name__} on {endpoint}") from exc

        if response.status_code != 200:
            raise FeedApiError(response.status_code, f"body: {response.text[:500]}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise FeedApiError(response.status_code, f"invalid JSON from {endpoint}") from exc
        if not isinstance(payload, dict):
            raise FeedApiError(response.status_code, f"unexpected payload from {endpoint}")
        return payload

    @staticmethod
    def _params(handle: str, cursor: Optional[str] = None) -> Dict[str, str]:
        params = {"userName": handle}
        if cursor:
            params["cursor"] = cursor
        return params

    async def get_user_info(self, handle: str) -> FeedUser:
        """Fetch a single profile by handle."""
        payload = await self._get("/twitter/user/info", self._params(handle))
        if payload.get("status") != "success":
            raise FeedApiError(200, f"status={payload.get('status')!r} msg={payload.get('msg')!r}")
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        return FeedUser.from_payload(data)

    async def get_user_followings(self, handle: str, cursor: Optional[str] = None) -> FollowingPage:
        """Fetch one page of the accounts ``handle`` follows."""
        payload = await self._get("/twitter/user/followings", self._params(handle, cursor))
        users = [
            FeedUser.from_payload(row)
            for row in payload.get("followings") or []
            if isinstance(row, dict)
        ]
        return FollowingPage(
            users=users,
            has_next_page=bool(payload.get("has_next_page")),
            next_cursor=str(payload.get("next_cursor") or ""),
        )

    async def get_user_posts(self, handle: str, cursor: Optional[str] = None) -> PostPage:
        """Fetch one page of ``handle``'s most recent posts, newest first."""
        payload = await self._get("/twitter/user/last_tweets", self._params(handle, cursor))
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        posts = [
            FeedPost.from_payload(row)
            for row in data.get("tweets") or []
            if isinstance(row, dict)
        ]
        return PostPage(
            posts=posts,
            has_next_page=bool(payload.get("has_next_page")),
            next_cursor=str(payload.get("next_cursor") or ""),
        )


def create_feed_client() -> FeedApiClient:
    """Create a feed client from configured credentials."""
    return FeedApiClient(require_twitter_api_key())
