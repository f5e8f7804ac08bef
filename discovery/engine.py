"""The discovery engine: stacks, user interests and feed composition."""

from __future__ import annotations

import asyncio
import base64
import json
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from datetime import UTC, datetime
from pathlib import Path
from types import MappingProxyType
from typing import Optional

from discovery.coi import UserInterests
from discovery.config import (
    AiConfig,
    EndpointConfig,
    InitConfig,
    ai_config_from_json,
    load_init_config,
)
from discovery.constants import SEARCH_STACK_ID
from discovery.embedding import Embedder, OnnxEmbedder
from discovery.errors import (
    AggregateError,
    DeserializationError,
    DiscoveryError,
    DocumentError,
    InvalidStackError,
    InvalidStackIdError,
    NoStackOpsError,
    NotEnoughInteractionsError,
    SerializationError,
    StackOpError,
)
from discovery.filters import common_filter, is_from_source, source_weights
from discovery.logging_config import get_logger
from discovery.mab import BetaSampler, Sampler, select
from discovery.models import (
    Article,
    Document,
    HistoricDocument,
    Market,
    NewsResource,
    TimeSpent,
    UserReacted,
    UserReaction,
    document_from_article,
)
from discovery.providers import (
    HeadlinesQuery,
    NewsClient,
    NewsProvider,
    SearchQuery,
    SimilarSearchQuery,
)
from discovery.ranker import Ranker
from discovery.semantic import filter_semantically
from discovery.stack import (
    BreakingNews,
    Ops,
    PersonalizedNews,
    Stack,
    StackData,
    TrustedNews,
    fetch_per_market,
)
from discovery.storage import atomic_write_bytes, load_state
from discovery.sync import RwLock
from discovery.url_utils import normalize_url

logger = get_logger(__name__)


def default_ops(provider: NewsProvider, config: AiConfig) -> list[Ops]:
    return [
        BreakingNews(provider, config.semantic),
        PersonalizedNews(provider, config.semantic, config.coi.too_similar_threshold),
        TrustedNews(provider, config.semantic),
    ]


def encode_state(stacks: Mapping[str, StackData], ranker_state: bytes) -> bytes:
    """Envelope of two independently encoded sections, stacks and interests."""
    try:
        engine_section = json.dumps(
            {stack_id: data.to_dict() for stack_id, data in stacks.items()}
        ).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Failed to serialize stacks: {e}") from e
    envelope = {
        "engine": base64.b64encode(engine_section).decode("ascii"),
        "ranker": base64.b64encode(ranker_state).decode("ascii"),
    }
    return json.dumps(envelope).encode("utf-8")


def decode_state(state: bytes) -> tuple[dict[str, StackData], UserInterests]:
    try:
        envelope = json.loads(state)
        engine_section = base64.b64decode(envelope["engine"], validate=True)
        ranker_section = base64.b64decode(envelope["ranker"], validate=True)
        raw_stacks = json.loads(engine_section)
        if not isinstance(raw_stacks, dict):
            raise DeserializationError("Stack section must be an object")
        stacks = {
            str(stack_id): StackData.from_dict(data)
            for stack_id, data in raw_stacks.items()
        }
    except DeserializationError:
        raise
    except (ValueError, KeyError, TypeError, InvalidStackError) as e:
        raise DeserializationError(f"Invalid engine state: {e}") from e
    return stacks, Ranker.interests_from_state(ranker_section)


def _document_from_event(event: UserReacted) -> Document:
    return Document(
        id=event.document_id,
        stack_id=event.stack_id,
        embedding=event.embedding,
        resource=NewsResource(
            title=event.title,
            snippet=event.snippet,
            url="",
            source_domain="",
            date_published=datetime.now(UTC),
        ),
    )


class Engine:
    """Coordinates the stacks and the user's centers of interest.

    Stacks and interests are guarded together by one read/write lock, so a
    ranking always sees a consistent snapshot of the interests. Every
    mutating operation takes the write side, which serializes all writers.
    """

    def __init__(
        self,
        config: AiConfig,
        endpoint: EndpointConfig,
        stacks: Sequence[Stack],
        ranker: Ranker,
        provider: NewsProvider,
        sampler: Sampler,
        history: Iterable[HistoricDocument] = (),
    ) -> None:
        if not stacks:
            raise NoStackOpsError()
        self.config = config
        self.endpoint = endpoint
        self._stacks: dict[str, Stack] = {}
        for stack in stacks:
            if stack.id in self._stacks:
                raise InvalidStackError(f"Duplicate stack id: {stack.id}")
            self._stacks[stack.id] = stack
        self._ranker = ranker
        self._provider = provider
        self._sampler = sampler
        self._history: list[HistoricDocument] = list(history)
        self._active: OrderedDict[str, Document] = OrderedDict()
        self._lock = RwLock()
        self._owns_provider = False

    @classmethod
    async def initialize(
        cls,
        config: InitConfig,
        state: Optional[bytes] = None,
        history: Iterable[HistoricDocument] = (),
        *,
        embedder: Optional[Embedder] = None,
        provider: Optional[NewsProvider] = None,
        sampler: Optional[Sampler] = None,
        ops: Optional[Sequence[Ops]] = None,
    ) -> Engine:
        """Build an engine, restore its state and run a first update.

        A failing first update is logged and the engine starts with whatever
        the stacks hold.
        """
        ai_config = ai_config_from_json(config.ai_config)
        endpoint = config.endpoint(ai_config.core)

        owns_provider = provider is None
        if provider is None:
            provider = NewsClient(config.api_key, config.api_base_url)
        if ops is None:
            ops = default_ops(provider, ai_config)
        if not ops:
            raise NoStackOpsError()

        stack_data: dict[str, StackData] = {}
        interests = UserInterests()
        if state:
            stack_data, interests = decode_state(state)

        stacks: list[Stack] = []
        for op in ops:
            op.configure(endpoint)
            stacks.append(Stack(stack_data.pop(op.id, None) or StackData(), op))
        if stack_data:
            logger.info("Dropping state of %d unknown stacks", len(stack_data))

        ranker = Ranker(embedder or OnnxEmbedder(config.model_dir), ai_config.coi, interests)
        engine = cls(
            ai_config,
            endpoint,
            stacks,
            ranker,
            provider,
            sampler or BetaSampler(),
            history,
        )
        engine._owns_provider = owns_provider

        async with engine._lock.write():
            try:
                await engine._update_stacks(list(engine._stacks.values()))
            except AggregateError as e:
                logger.warning("Initial stack update failed: %s", e)
        return engine

    @property
    def stacks(self) -> Mapping[str, Stack]:
        return MappingProxyType(self._stacks)

    @property
    def interests(self) -> UserInterests:
        return self._ranker.interests

    @property
    def history(self) -> tuple[HistoricDocument, ...]:
        return tuple(self._history)

    async def feed_next_batch(self, max_documents: Optional[int] = None) -> list[Document]:
        """Draw the next feed batch and replenish stacks that run low.

        If replenishing fails the drawn documents are still handed out on the
        `partial` attribute of the raised AggregateError.
        """
        if max_documents is None:
            max_documents = self.config.core.max_documents
        async with self._lock.write():
            documents = select(max_documents, list(self._stacks.values()), self._sampler)
            self._remember(documents)
            for doc in documents:
                self._history.append(HistoricDocument.from_document(doc))

            request_new = self.config.core.request_new
            low = [s for s in self._stacks.values() if len(s) <= request_new]
            try:
                await self._update_stacks(low)
            except AggregateError as e:
                raise AggregateError(e.errors, partial=documents) from e
            return documents

    async def time_spent(self, event: TimeSpent) -> None:
        async with self._lock.write():
            if event.reaction is not UserReaction.NEGATIVE:
                self._ranker.log_document_view_time(event.embedding, event.view_time)
            self._rank_stacks()

    async def user_reacted(self, event: UserReacted) -> Document:
        """Log a reaction and return the reacted document.

        The event carries everything the interests need, so documents served
        before a restart or evicted from the active set are rebuilt from it.
        """
        async with self._lock.write():
            stack = self._stacks.get(event.stack_id)
            if stack is None and event.stack_id != SEARCH_STACK_ID:
                raise InvalidStackIdError(event.stack_id)
            document = self._lookup_document(event.document_id)
            if document is None:
                document = _document_from_event(event)

            match event.reaction:
                case UserReaction.POSITIVE:
                    self._ranker.log_positive_user_reaction(
                        event.embedding, event.title, event.snippet, event.key_phrases
                    )
                case UserReaction.NEGATIVE:
                    self._ranker.log_negative_user_reaction(event.embedding)
            if stack is not None:
                stack.update_relevance(event.reaction)
            document.reaction = event.reaction

            self._rank_stacks()
            return document

    async def set_markets(self, markets: Sequence[Market]) -> None:
        async with self._lock.write():
            self.endpoint.markets = list(markets)
            for stack in self._stacks.values():
                stack.reset()
            await self._update_stacks(list(self._stacks.values()))

    async def set_sources(self, trusted: Sequence[str], excluded: Sequence[str]) -> None:
        async with self._lock.write():
            await self._apply_sources(trusted, excluded)

    async def add_trusted_source(self, source: str) -> None:
        async with self._lock.write():
            trusted = [*self.endpoint.trusted_sources]
            if source not in trusted:
                trusted.append(source)
            excluded = [s for s in self.endpoint.excluded_sources if s != source]
            await self._apply_sources(trusted, excluded)

    async def remove_trusted_source(self, source: str) -> None:
        async with self._lock.write():
            trusted = [s for s in self.endpoint.trusted_sources if s != source]
            await self._apply_sources(trusted, self.endpoint.excluded_sources)

    async def add_excluded_source(self, source: str) -> None:
        async with self._lock.write():
            excluded = [*self.endpoint.excluded_sources]
            if source not in excluded:
                excluded.append(source)
            trusted = [s for s in self.endpoint.trusted_sources if s != source]
            await self._apply_sources(trusted, excluded)

    async def remove_excluded_source(self, source: str) -> None:
        async with self._lock.write():
            excluded = [s for s in self.endpoint.excluded_sources if s != source]
            await self._apply_sources(self.endpoint.trusted_sources, excluded)

    async def search_by_query(
        self, query: str, page: int, page_size: Optional[int] = None
    ) -> list[Document]:
        query = query.strip()
        if not query:
            raise ValueError("Search query must not be empty")
        size = self._search_page_size(page, page_size)
        endpoint = self.endpoint

        async def fetch(market: Market) -> list[Article]:
            return await self._provider.search(
                SearchQuery(
                    query=query,
                    market=market,
                    page_size=size,
                    page=page,
                    excluded_sources=tuple(endpoint.excluded_sources),
                    max_age_days=endpoint.max_age_days,
                )
            )

        return await self._search(fetch)

    async def search_by_topic(
        self, topic: str, page: int, page_size: Optional[int] = None
    ) -> list[Document]:
        topic = topic.strip()
        if not topic:
            raise ValueError("Search topic must not be empty")
        size = self._search_page_size(page, page_size)
        endpoint = self.endpoint

        async def fetch(market: Market) -> list[Article]:
            return await self._provider.headlines(
                HeadlinesQuery(
                    market=market,
                    page_size=size,
                    page=page,
                    excluded_sources=tuple(endpoint.excluded_sources),
                    topic=topic,
                    max_age_days=endpoint.max_age_days,
                )
            )

        return await self._search(fetch)

    async def search_by_id(
        self, document_id: str, page: int, page_size: Optional[int] = None
    ) -> list[Document]:
        """Documents similar to a document the user already got."""
        size = self._search_page_size(page, page_size)
        async with self._lock.read():
            source = self._find_document(document_id)
        like = source.resource.title
        endpoint = self.endpoint

        async def fetch(market: Market) -> list[Article]:
            return await self._provider.similar(
                SimilarSearchQuery(
                    like=like,
                    market=market,
                    page_size=size,
                    page=page,
                    excluded_sources=tuple(endpoint.excluded_sources),
                    max_age_days=endpoint.max_age_days,
                )
            )

        source_url = normalize_url(source.resource.url)
        documents = await self._search(fetch)
        return [d for d in documents if normalize_url(d.resource.url) != source_url]

    async def reset_ai(self) -> None:
        """Forget all interests and stack data, then refill the stacks."""
        async with self._lock.write():
            self._ranker.reset_ai()
            self._active.clear()
            for stack in self._stacks.values():
                stack.reset()
            await self._update_stacks(list(self._stacks.values()))

    async def serialize(self) -> bytes:
        async with self._lock.read():
            return encode_state(
                {stack_id: stack.data for stack_id, stack in self._stacks.items()},
                self._ranker.serialize(),
            )

    async def close(self) -> None:
        if self._owns_provider and isinstance(self._provider, NewsClient):
            await self._provider.close()

    async def save(self, path: Path) -> None:
        """Write the serialized engine state to `path` atomically."""
        state = await self.serialize()
        await asyncio.to_thread(atomic_write_bytes, path, state)
        logger.info("Saved engine state to %s (%d bytes)", path, len(state))

    @classmethod
    async def from_saved(
        cls,
        path: Path,
        config: Optional[InitConfig] = None,
        history: Iterable[HistoricDocument] = (),
        **collaborators,
    ) -> Engine:
        """Initialize from the state saved at `path`, if any.

        Without `config` the init config is read from the user config file.
        """
        if config is None:
            config = load_init_config()
        state = load_state(path)
        if state is None:
            logger.info("No saved engine state at %s, starting fresh", path)
        return await cls.initialize(config, state, history, **collaborators)

    def _remember(self, documents: Iterable[Document]) -> None:
        """Register served documents, evicting the oldest beyond the cap."""
        for doc in documents:
            self._active[doc.id] = doc
            self._active.move_to_end(doc.id)
        while len(self._active) > self.config.core.max_active_documents:
            self._active.popitem(last=False)

    def _lookup_document(self, document_id: str) -> Optional[Document]:
        document = self._active.get(document_id)
        if document is not None:
            return document
        for stack in self._stacks.values():
            for doc in stack.documents:
                if doc.id == document_id:
                    return doc
        return None

    def _find_document(self, document_id: str) -> Document:
        document = self._lookup_document(document_id)
        if document is None:
            raise DocumentError(f"Unknown document: {document_id}")
        return document

    def _search_page_size(self, page: int, page_size: Optional[int]) -> int:
        if page < 1:
            raise ValueError(f"Page must be at least 1, got {page}")
        size = page_size if page_size is not None else self.config.core.search_page_size
        if size < 1:
            raise ValueError(f"Page size must be at least 1, got {size}")
        return size

    async def _search(
        self, fetch: Callable[[Market], Awaitable[list[Article]]]
    ) -> list[Document]:
        articles = await fetch_per_market(self.endpoint.markets, fetch, "Search")
        async with self._lock.write():
            articles = common_filter(
                (),
                (),
                articles,
                self.endpoint.excluded_sources,
                self.endpoint.max_age_days,
            )
            embeddings = await asyncio.to_thread(
                self._ranker.embed_batch, [a.title for a in articles]
            )
            documents = [
                document_from_article(a, SEARCH_STACK_ID, embedding)
                for a, embedding in zip(articles, embeddings)
            ]
            weights = source_weights(
                documents, self.endpoint.trusted_sources, self.endpoint.excluded_sources
            )
            documents = filter_semantically(documents, weights, self.config.semantic)
            try:
                self._ranker.rank(documents)
            except NotEnoughInteractionsError:
                pass
            self._remember(documents)
            logger.info("Search returned %d documents", len(documents))
            return documents

    async def _apply_sources(
        self, trusted: Sequence[str], excluded: Sequence[str]
    ) -> None:
        self.endpoint.trusted_sources = list(trusted)
        self.endpoint.excluded_sources = list(excluded)
        for stack in self._stacks.values():
            dropped = [d.id for d in stack.documents if is_from_source(d, excluded)]
            if dropped:
                stack.remove_documents(dropped)
                logger.info(
                    "Stack %s: dropped %d documents from excluded sources",
                    stack.id,
                    len(dropped),
                )
        await self._update_stacks(list(self._stacks.values()))

    def _rank_stacks(self) -> None:
        errors: list[DiscoveryError] = []
        for stack in self._stacks.values():
            try:
                stack.rank(self._ranker)
            except StackOpError as e:
                errors.append(e)
        if errors:
            raise AggregateError(errors)

    async def _update_stacks(self, stacks: Sequence[Stack]) -> None:
        """Fetch, filter, embed, merge and rank the given stacks.

        Stacks fail independently; all failures are raised together once
        every stack has been processed.
        """
        if not stacks:
            return
        key_phrases: list[str] = []
        if any(stack.ops.needs_key_phrases for stack in stacks):
            key_phrases = self._ranker.select_top_key_phrases(self.config.core.select_top)

        results = await asyncio.gather(
            *(
                stack.new_items(key_phrases if stack.ops.needs_key_phrases else [])
                for stack in stacks
            ),
            return_exceptions=True,
        )

        errors: list[DiscoveryError] = []
        for stack, result in zip(stacks, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                errors.append(
                    result
                    if isinstance(result, DiscoveryError)
                    else StackOpError(stack.id, str(result))
                )
                continue
            try:
                await self._update_stack(stack, result)
            except DiscoveryError as e:
                errors.append(e)

        if errors:
            for err in errors:
                logger.warning("Stack update failed: %s", err)
            raise AggregateError(errors)

    async def _update_stack(self, stack: Stack, articles: list[Article]) -> None:
        fetched = len(articles)
        articles = stack.filter_articles(self._history, articles)
        try:
            embeddings = await asyncio.to_thread(
                self._ranker.embed_batch, [a.title for a in articles]
            )
            documents = [
                document_from_article(a, stack.id, embedding)
                for a, embedding in zip(articles, embeddings)
            ]
        except DiscoveryError as e:
            raise StackOpError(stack.id, f"embedding failed: {e}") from e
        documents = stack.filter_documents(documents, self._ranker.interests)
        stack.update(documents, self._ranker)
        stack.retain_top(self.config.core.keep_top)
        logger.info(
            "Stack %s: %d fetched, %d new, %d kept",
            stack.id,
            fetched,
            len(documents),
            len(stack),
        )
