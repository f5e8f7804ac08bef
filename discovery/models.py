"""Typed data models for the discovery engine."""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Optional, TypedDict

import numpy as np
from numpy.typing import NDArray

from discovery.errors import DocumentError


class UserReaction(Enum):
    NEUTRAL = 0
    POSITIVE = 1
    NEGATIVE = 2


class NewsResourceDict(TypedDict):
    """Serialized NewsResource payload for persisted stack data."""

    title: str
    snippet: str
    url: str
    image: Optional[str]
    source_domain: str
    date_published: str
    score: Optional[float]
    rank: int
    country: str
    language: str
    topic: str


class DocumentDict(TypedDict):
    """Serialized Document payload for persisted stack data."""

    id: str
    stack_id: str
    embedding: list[float]
    resource: NewsResourceDict
    score: Optional[float]
    reaction: int


@dataclass(frozen=True)
class Market:
    """A news market, i.e. a country and a language."""

    country_code: str
    lang_code: str


@dataclass
class Article:
    """A raw article as delivered by a content provider."""

    title: str
    excerpt: str
    link: str
    media: str
    source_domain: str
    date_published: datetime
    score: Optional[float] = None
    rank: int = 0
    country: str = ""
    language: str = ""
    topic: str = ""


@dataclass
class NewsResource:
    """Article metadata kept on a document."""

    title: str
    snippet: str
    url: str
    source_domain: str
    date_published: datetime
    image: Optional[str] = None
    score: Optional[float] = None
    rank: int = 0
    country: str = ""
    language: str = ""
    topic: str = ""

    @classmethod
    def from_dict(cls, d: NewsResourceDict) -> NewsResource:
        return cls(
            title=str(d.get("title", "")),
            snippet=str(d.get("snippet", "")),
            url=str(d.get("url", "")),
            image=d.get("image"),
            source_domain=str(d.get("source_domain", "")),
            date_published=_parse_datetime(str(d.get("date_published", ""))),
            score=d.get("score"),
            rank=int(d.get("rank", 0)),
            country=str(d.get("country", "")),
            language=str(d.get("language", "")),
            topic=str(d.get("topic", "")),
        )

    def to_dict(self) -> NewsResourceDict:
        return {
            "title": self.title,
            "snippet": self.snippet,
            "url": self.url,
            "image": self.image,
            "source_domain": self.source_domain,
            "date_published": self.date_published.isoformat(),
            "score": self.score,
            "rank": self.rank,
            "country": self.country,
            "language": self.language,
            "topic": self.topic,
        }


@dataclass
class Document:
    """A candidate document owned by exactly one stack."""

    id: str
    stack_id: str
    embedding: NDArray[np.float32]
    resource: NewsResource
    score: Optional[float] = None  # Latest CoI score, None until ranked
    reaction: UserReaction = UserReaction.NEUTRAL

    @classmethod
    def from_dict(cls, d: DocumentDict) -> Document:
        """Create Document from dict (e.g., from persisted stack data)."""
        return cls(
            id=str(d["id"]),
            stack_id=str(d["stack_id"]),
            embedding=np.asarray(d["embedding"], dtype=np.float32),
            resource=NewsResource.from_dict(d["resource"]),
            score=d.get("score"),
            reaction=UserReaction(int(d.get("reaction", 0))),
        )

    def to_dict(self) -> DocumentDict:
        """Serialize to dict for persistence."""
        return {
            "id": self.id,
            "stack_id": self.stack_id,
            "embedding": [float(x) for x in self.embedding],
            "resource": self.resource.to_dict(),
            "score": self.score,
            "reaction": self.reaction.value,
        }


@dataclass(frozen=True)
class HistoricDocument:
    """Immutable projection of a document that was shown to the user."""

    id: str
    url: str
    title: str

    @classmethod
    def from_document(cls, document: Document) -> HistoricDocument:
        return cls(
            id=document.id,
            url=document.resource.url,
            title=document.resource.title,
        )


@dataclass
class TimeSpent:
    """The user spent some time viewing a document."""

    document_id: str
    stack_id: str
    embedding: NDArray[np.float32]
    view_time: timedelta
    reaction: UserReaction = UserReaction.NEUTRAL


@dataclass
class UserReacted:
    """The user liked or disliked a document."""

    document_id: str
    stack_id: str
    embedding: NDArray[np.float32]
    reaction: UserReaction
    title: str = ""
    snippet: str = ""
    key_phrases: list[str] = field(default_factory=list)


def document_from_article(
    article: Article, stack_id: str, embedding: NDArray[np.float32]
) -> Document:
    """Build a document from a filtered article and its embedding."""
    embedding = np.asarray(embedding, dtype=np.float32).reshape(-1)
    if embedding.size == 0:
        raise DocumentError(f"Empty embedding for article {article.link!r}")
    if not np.all(np.isfinite(embedding)):
        raise DocumentError(f"Non-finite embedding for article {article.link!r}")
    if article.score is not None and not math.isfinite(article.score):
        raise DocumentError(f"Non-finite score for article {article.link!r}")

    resource = NewsResource(
        title=article.title,
        snippet=article.excerpt,
        url=article.link,
        image=article.media or None,
        source_domain=article.source_domain,
        date_published=article.date_published,
        score=article.score,
        rank=article.rank,
        country=article.country,
        language=article.language,
        topic=article.topic,
    )
    return Document(
        id=str(uuid.uuid4()),
        stack_id=stack_id,
        embedding=embedding,
        resource=resource,
    )


def _parse_datetime(value: str) -> datetime:
    if not value:
        return datetime.fromtimestamp(0, UTC)
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed
