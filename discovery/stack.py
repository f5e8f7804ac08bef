"""Stacks: one content pipeline's ordered buffer of candidate documents."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, Optional

import numpy as np

from discovery.coi import UserInterests
from discovery.config import EndpointConfig, SemanticFilterConfig
from discovery.constants import (
    BETA_PRIOR_ALPHA,
    BETA_PRIOR_BETA,
    BREAKING_NEWS_STACK_ID,
    COI_TOO_SIMILAR_THRESHOLD,
    PERSONALIZED_NEWS_STACK_ID,
    TRUSTED_NEWS_STACK_ID,
)
from discovery.errors import (
    DiscoveryError,
    DocumentError,
    InvalidStackError,
    NotEnoughInteractionsError,
    StackOpError,
)
from discovery.filters import common_filter, source_weights
from discovery.logging_config import get_logger
from discovery.models import Article, Document, HistoricDocument, Market, UserReaction
from discovery.providers import HeadlinesQuery, NewsProvider, SearchQuery
from discovery.ranker import Ranker
from discovery.semantic import filter_semantically, filter_too_similar

logger = get_logger(__name__)


@dataclass
class StackData:
    """Persisted state of a stack: bandit pseudo-counts and its documents."""

    alpha: float = BETA_PRIOR_ALPHA
    beta: float = BETA_PRIOR_BETA
    documents: list[Document] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "alpha": self.alpha,
            "beta": self.beta,
            "documents": [doc.to_dict() for doc in self.documents],
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> StackData:
        alpha = float(d.get("alpha", BETA_PRIOR_ALPHA))
        beta = float(d.get("beta", BETA_PRIOR_BETA))
        if alpha <= 0 or beta <= 0:
            raise InvalidStackError(f"Invalid beta parameters ({alpha}, {beta})")
        return cls(
            alpha=alpha,
            beta=beta,
            documents=[Document.from_dict(doc) for doc in d.get("documents", [])],
        )


def _unique_by_id(documents: Iterable[Document]) -> list[Document]:
    seen: set[str] = set()
    out: list[Document] = []
    for doc in documents:
        if doc.id in seen:
            continue
        seen.add(doc.id)
        out.append(doc)
    return out


async def fetch_per_market(
    markets: Sequence[Market],
    fetch: Callable[[Market], Awaitable[list[Article]]],
    label: str,
) -> list[Article]:
    """Run one fetch per market, collecting results as they complete.

    Failed markets are logged and skipped as long as one market succeeds;
    if all of them fail the first failure is raised.
    """
    if not markets:
        return []

    articles: list[Article] = []
    errors: list[Exception] = []
    succeeded = 0
    for next_done in asyncio.as_completed([fetch(m) for m in markets]):
        try:
            articles.extend(await next_done)
            succeeded += 1
        except Exception as e:
            logger.warning("%s: market fetch failed: %s", label, e)
            errors.append(e)
    if succeeded == 0 and errors:
        raise errors[0]
    return articles


class Ops(ABC):
    """Operations of one content pipeline.

    `configure` must be called with the endpoint settings before the first
    fetch; the engine shares one EndpointConfig between all pipelines.
    """

    def __init__(
        self,
        provider: NewsProvider,
        semantic: Optional[SemanticFilterConfig] = None,
    ) -> None:
        self.provider = provider
        self.semantic = semantic or SemanticFilterConfig()
        self.endpoint: Optional[EndpointConfig] = None

    @property
    @abstractmethod
    def id(self) -> str: ...

    @property
    def needs_key_phrases(self) -> bool:
        return False

    def configure(self, endpoint: EndpointConfig) -> None:
        self.endpoint = endpoint

    def _endpoint(self) -> EndpointConfig:
        if self.endpoint is None:
            raise StackOpError(self.id, "pipeline is not configured")
        return self.endpoint

    @abstractmethod
    async def new_items(self, key_phrases: Sequence[str]) -> list[Article]: ...

    def filter_articles(
        self,
        history: Iterable[HistoricDocument],
        stack: Sequence[Document],
        articles: Sequence[Article],
    ) -> list[Article]:
        endpoint = self._endpoint()
        return common_filter(
            history,
            stack,
            articles,
            endpoint.excluded_sources,
            endpoint.max_age_days,
        )

    def filter_documents(
        self, documents: Sequence[Document], interests: UserInterests
    ) -> list[Document]:
        endpoint = self._endpoint()
        weights = source_weights(
            documents, endpoint.trusted_sources, endpoint.excluded_sources
        )
        return filter_semantically(documents, weights, self.semantic)

    def merge(self, stack: Sequence[Document], new: Sequence[Document]) -> list[Document]:
        return _unique_by_id([*stack, *new])

    async def _fetch_markets(
        self, fetch: Callable[[Market], Awaitable[list[Article]]]
    ) -> list[Article]:
        return await fetch_per_market(self._endpoint().markets, fetch, f"Stack {self.id}")


class BreakingNews(Ops):
    """Latest headlines of every market."""

    @property
    def id(self) -> str:
        return BREAKING_NEWS_STACK_ID

    async def new_items(self, key_phrases: Sequence[str]) -> list[Article]:
        endpoint = self._endpoint()

        async def fetch(market: Market) -> list[Article]:
            return await self.provider.headlines(
                HeadlinesQuery(
                    market=market,
                    page_size=endpoint.page_size,
                    excluded_sources=tuple(endpoint.excluded_sources),
                    max_age_days=endpoint.max_age_days,
                )
            )

        return await self._fetch_markets(fetch)


class TrustedNews(Ops):
    """Headlines restricted to the user's trusted sources."""

    @property
    def id(self) -> str:
        return TRUSTED_NEWS_STACK_ID

    async def new_items(self, key_phrases: Sequence[str]) -> list[Article]:
        endpoint = self._endpoint()
        if not endpoint.trusted_sources:
            return []

        async def fetch(market: Market) -> list[Article]:
            return await self.provider.headlines(
                HeadlinesQuery(
                    market=market,
                    page_size=endpoint.page_size,
                    trusted_sources=tuple(endpoint.trusted_sources),
                    max_age_days=endpoint.max_age_days,
                )
            )

        return await self._fetch_markets(fetch)


class PersonalizedNews(Ops):
    """Keyword search driven by the key phrases of the user's interests."""

    def __init__(
        self,
        provider: NewsProvider,
        semantic: Optional[SemanticFilterConfig] = None,
        too_similar_threshold: float = COI_TOO_SIMILAR_THRESHOLD,
    ) -> None:
        super().__init__(provider, semantic)
        self.too_similar_threshold = too_similar_threshold

    @property
    def id(self) -> str:
        return PERSONALIZED_NEWS_STACK_ID

    @property
    def needs_key_phrases(self) -> bool:
        return True

    async def new_items(self, key_phrases: Sequence[str]) -> list[Article]:
        if not key_phrases:
            return []
        endpoint = self._endpoint()
        query = " OR ".join(key_phrases)

        async def fetch(market: Market) -> list[Article]:
            return await self.provider.search(
                SearchQuery(
                    query=query,
                    market=market,
                    page_size=endpoint.page_size,
                    excluded_sources=tuple(endpoint.excluded_sources),
                    max_age_days=endpoint.max_age_days,
                )
            )

        return await self._fetch_markets(fetch)

    def filter_documents(
        self, documents: Sequence[Document], interests: UserInterests
    ) -> list[Document]:
        if interests.positive:
            points = np.vstack([coi.point for coi in interests.positive])
            documents = filter_too_similar(documents, points, self.too_similar_threshold)
        return super().filter_documents(documents, interests)

    def merge(self, stack: Sequence[Document], new: Sequence[Document]) -> list[Document]:
        merged = _unique_by_id([*stack, *new])
        merged.sort(key=lambda doc: doc.resource.date_published, reverse=True)
        return merged


class Stack:
    def __init__(self, data: StackData, ops: Ops) -> None:
        self.data = data
        self.ops = ops

    @property
    def id(self) -> str:
        return self.ops.id

    @property
    def documents(self) -> list[Document]:
        return self.data.documents

    @property
    def alpha(self) -> float:
        return self.data.alpha

    @property
    def beta(self) -> float:
        return self.data.beta

    def __len__(self) -> int:
        return len(self.data.documents)

    async def new_items(self, key_phrases: Sequence[str]) -> list[Article]:
        try:
            return await self.ops.new_items(key_phrases)
        except StackOpError:
            raise
        except Exception as e:
            raise StackOpError(self.id, f"fetch failed: {e}") from e

    def filter_articles(
        self, history: Iterable[HistoricDocument], articles: Sequence[Article]
    ) -> list[Article]:
        try:
            return self.ops.filter_articles(history, self.data.documents, articles)
        except StackOpError:
            raise
        except Exception as e:
            raise StackOpError(self.id, f"article filter failed: {e}") from e

    def filter_documents(
        self, documents: Sequence[Document], interests: UserInterests
    ) -> list[Document]:
        try:
            return self.ops.filter_documents(documents, interests)
        except StackOpError:
            raise
        except Exception as e:
            raise StackOpError(self.id, f"semantic filter failed: {e}") from e

    def update(self, new_documents: Sequence[Document], ranker: Ranker) -> None:
        """Merge new documents into the stack and rank it."""
        try:
            merged = self.ops.merge(self.data.documents, new_documents)
        except Exception as e:
            raise StackOpError(self.id, f"merge failed: {e}") from e
        self.data.documents = merged
        self.rank(ranker)

    def rank(self, ranker: Ranker) -> None:
        """Sort the documents by CoI score, best first.

        Without any positive interests there is nothing to score against and
        the current order is kept.
        """
        try:
            ranker.rank(self.data.documents)
        except NotEnoughInteractionsError:
            return
        except DiscoveryError as e:
            raise StackOpError(self.id, f"ranking failed: {e}") from e

    def retain_top(self, n: int) -> None:
        del self.data.documents[max(0, n) :]

    def update_relevance(self, reaction: UserReaction) -> None:
        if reaction is UserReaction.POSITIVE:
            self.data.alpha += 1.0
        elif reaction is UserReaction.NEGATIVE:
            self.data.beta += 1.0

    def pop_best(self) -> Document:
        if not self.data.documents:
            raise DocumentError(f"Stack {self.id} is empty")
        return self.data.documents.pop(0)

    def remove_documents(self, ids: Iterable[str]) -> int:
        """Remove documents by id, returning how many were removed."""
        drop = set(ids)
        before = len(self.data.documents)
        self.data.documents = [d for d in self.data.documents if d.id not in drop]
        return before - len(self.data.documents)

    def reset(self) -> None:
        self.data = StackData()
