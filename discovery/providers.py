"""Content provider interface and the default news API client."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any, Optional, Protocol, TypedDict

import httpx
from aiolimiter import AsyncLimiter
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from discovery.constants import (
    CORE_PAGE_SIZE,
    PROVIDER_BASE_URL,
    PROVIDER_HTTP_CONNECT_TIMEOUT,
    PROVIDER_HTTP_POOL_TIMEOUT,
    PROVIDER_HTTP_READ_TIMEOUT,
    PROVIDER_HTTP_USER_AGENT,
    PROVIDER_HTTP_WRITE_TIMEOUT,
    PROVIDER_MAX_RETRIES,
    PROVIDER_RATE_LIMIT_PERIOD,
    PROVIDER_RATE_LIMIT_REQUESTS,
    PROVIDER_RETRY_BACKOFF_BASE,
    PROVIDER_RETRY_BACKOFF_MAX,
    PROVIDER_RETRYABLE_STATUS,
)
from discovery.errors import ProviderError
from discovery.logging_config import get_logger
from discovery.models import Article, Market

logger = get_logger(__name__)


class ArticlePayload(TypedDict, total=False):
    title: str
    excerpt: str
    summary: str
    link: str
    media: str
    clean_url: str
    published_date: str
    _score: float
    rank: int
    country: str
    language: str
    topic: str


@dataclass(frozen=True)
class HeadlinesQuery:
    market: Market
    page_size: int = CORE_PAGE_SIZE
    page: int = 1
    excluded_sources: tuple[str, ...] = ()
    trusted_sources: tuple[str, ...] = ()
    topic: Optional[str] = None
    max_age_days: Optional[int] = None


@dataclass(frozen=True)
class SearchQuery:
    query: str
    market: Market
    page_size: int = CORE_PAGE_SIZE
    page: int = 1
    excluded_sources: tuple[str, ...] = ()
    max_age_days: Optional[int] = None


@dataclass(frozen=True)
class SimilarSearchQuery:
    like: str
    market: Market
    page_size: int = CORE_PAGE_SIZE
    page: int = 1
    excluded_sources: tuple[str, ...] = ()
    max_age_days: Optional[int] = None


class NewsProvider(Protocol):
    async def headlines(self, query: HeadlinesQuery) -> list[Article]: ...

    async def search(self, query: SearchQuery) -> list[Article]: ...

    async def similar(self, query: SimilarSearchQuery) -> list[Article]: ...


class ProviderRetryableError(ProviderError):
    """Transient provider failure worth another attempt."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        cooldown: float | None = None,
    ) -> None:
        super().__init__(message, status_code)
        self.cooldown = cooldown


def _parse_retry_after(value: str) -> float | None:
    value = value.strip()
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if dt is None:
        return None
    return max(0.0, (dt - datetime.now(dt.tzinfo)).total_seconds())


_BACKOFF_WAIT = wait_random_exponential(
    min=PROVIDER_RETRY_BACKOFF_BASE, max=PROVIDER_RETRY_BACKOFF_MAX
)


def _retry_wait(retry_state: RetryCallState) -> float:
    outcome = retry_state.outcome
    exc = outcome.exception() if outcome is not None else None
    if isinstance(exc, ProviderRetryableError) and exc.cooldown is not None:
        return min(exc.cooldown, PROVIDER_RETRY_BACKOFF_MAX)
    return _BACKOFF_WAIT(retry_state)


def _parse_published(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.strip())
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def parse_article(raw: ArticlePayload) -> Optional[Article]:
    """Convert one provider payload entry, None if required fields are missing."""
    try:
        title = str(raw["title"])
        link = str(raw["link"])
        published = _parse_published(str(raw["published_date"]))
    except (KeyError, TypeError, ValueError):
        return None

    score = raw.get("_score")
    return Article(
        title=title,
        excerpt=str(raw.get("excerpt") or raw.get("summary") or ""),
        link=link,
        media=str(raw.get("media") or ""),
        source_domain=str(raw.get("clean_url") or ""),
        date_published=published,
        score=float(score) if isinstance(score, (int, float)) else None,
        rank=int(raw.get("rank") or 0),
        country=str(raw.get("country") or ""),
        language=str(raw.get("language") or ""),
        topic=str(raw.get("topic") or ""),
    )


def parse_articles(data: Any) -> list[Article]:
    if not isinstance(data, dict):
        raise ProviderError("Unexpected provider response: not a JSON object")
    raw_articles = data.get("articles") or []
    if not isinstance(raw_articles, list):
        raise ProviderError("Unexpected provider response: articles is not a list")

    articles: list[Article] = []
    for raw in raw_articles:
        article = parse_article(raw) if isinstance(raw, dict) else None
        if article is None:
            logger.debug("Skipping unparsable article payload")
            continue
        articles.append(article)
    return articles


def _common_params(
    market: Market,
    page_size: int,
    page: int,
    excluded_sources: tuple[str, ...],
    max_age_days: Optional[int],
) -> dict[str, str]:
    params = {
        "lang": market.lang_code,
        "countries": market.country_code,
        "page_size": str(page_size),
        "page": str(page),
    }
    if excluded_sources:
        params["not_sources"] = ",".join(excluded_sources)
    if max_age_days is not None:
        params["from"] = f"{max_age_days} days ago"
    return params


class NewsClient:
    """Async client for a newscatcher style news API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = PROVIDER_BASE_URL,
        max_retries: int = PROVIDER_MAX_RETRIES,
    ) -> None:
        self.max_retries = max_retries
        self.client: httpx.AsyncClient = httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "User-Agent": PROVIDER_HTTP_USER_AGENT,
            },
            timeout=httpx.Timeout(
                connect=PROVIDER_HTTP_CONNECT_TIMEOUT,
                read=PROVIDER_HTTP_READ_TIMEOUT,
                write=PROVIDER_HTTP_WRITE_TIMEOUT,
                pool=PROVIDER_HTTP_POOL_TIMEOUT,
            ),
        )
        self._limiter = AsyncLimiter(
            PROVIDER_RATE_LIMIT_REQUESTS, PROVIDER_RATE_LIMIT_PERIOD
        )

    async def headlines(self, query: HeadlinesQuery) -> list[Article]:
        params = _common_params(
            query.market,
            query.page_size,
            query.page,
            query.excluded_sources,
            None,
        )
        if query.trusted_sources:
            params["sources"] = ",".join(query.trusted_sources)
        if query.topic:
            params["topic"] = query.topic
        if query.max_age_days is not None:
            params["when"] = f"{query.max_age_days * 24}h"
        return await self._get("/latest_headlines", params)

    async def search(self, query: SearchQuery) -> list[Article]:
        params = _common_params(
            query.market,
            query.page_size,
            query.page,
            query.excluded_sources,
            query.max_age_days,
        )
        params["q"] = query.query
        params["sort_by"] = "relevancy"
        return await self._get("/search", params)

    async def similar(self, query: SimilarSearchQuery) -> list[Article]:
        params = _common_params(
            query.market,
            query.page_size,
            query.page,
            query.excluded_sources,
            query.max_age_days,
        )
        params["q"] = query.like
        return await self._get("/search_similar", params)

    async def _get(self, path: str, params: dict[str, str]) -> list[Article]:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            retry=retry_if_exception_type(ProviderRetryableError),
            wait=_retry_wait,
            reraise=True,
        ):
            with attempt:
                try:
                    async with self._limiter:
                        resp = await self.client.get(path, params=params)
                except httpx.TransportError as e:
                    raise ProviderRetryableError(f"Transport error on {path}: {e}") from e
                except httpx.HTTPError as e:
                    raise ProviderError(f"Request to {path} failed: {e}") from e

                if resp.status_code in PROVIDER_RETRYABLE_STATUS:
                    header = resp.headers.get("retry-after")
                    raise ProviderRetryableError(
                        f"Provider error {resp.status_code} on {path}",
                        status_code=resp.status_code,
                        cooldown=_parse_retry_after(header) if header else None,
                    )
                if resp.status_code != 200:
                    logger.error(
                        "Provider error %d on %s: %s",
                        resp.status_code,
                        path,
                        resp.text[:200],
                    )
                    raise ProviderError(
                        f"Provider error {resp.status_code} on {path}",
                        status_code=resp.status_code,
                    )
                try:
                    data = resp.json()
                except ValueError as e:
                    raise ProviderError(f"Invalid JSON from {path}: {e}") from e
                return parse_articles(data)
        raise ProviderError(f"No attempt made for {path}")

    async def close(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> NewsClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
