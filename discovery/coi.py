"""Centers of interest: decaying embedding centroids of what the user liked
or disliked, and scoring of documents against them."""

from __future__ import annotations

import math
import re
import uuid
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Optional, TypeAlias

import numpy as np
from numpy.typing import NDArray
from sklearn.metrics.pairwise import cosine_similarity

from discovery.config import CoiConfig
from discovery.constants import (
    COI_DAYS_SCALE,
    COI_WEIGHT_STEEPNESS,
    KEY_PHRASE_MIN_TOKEN_LENGTH,
    KEY_PHRASE_TITLE_TOKENS,
    SECONDS_PER_DAY,
)
from discovery.errors import CoiError, NotEnoughInteractionsError, RankerError

_KEY_PHRASE_STOPWORDS = {
    "a",
    "about",
    "after",
    "all",
    "an",
    "and",
    "are",
    "as",
    "at",
    "be",
    "but",
    "by",
    "can",
    "for",
    "from",
    "has",
    "have",
    "how",
    "in",
    "into",
    "is",
    "it",
    "its",
    "new",
    "not",
    "of",
    "on",
    "or",
    "over",
    "says",
    "that",
    "the",
    "their",
    "this",
    "to",
    "was",
    "what",
    "when",
    "who",
    "why",
    "will",
    "with",
    "you",
    "your",
}


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass
class CoiStats:
    view_count: int = 1
    view_time: timedelta = timedelta(0)
    last_view: datetime = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "view_count": self.view_count,
            "view_time": self.view_time.total_seconds(),
            "last_view": self.last_view.isoformat(),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> CoiStats:
        last_view = datetime.fromisoformat(str(d["last_view"]))
        if last_view.tzinfo is None:
            last_view = last_view.replace(tzinfo=UTC)
        return cls(
            view_count=int(d["view_count"]),
            view_time=timedelta(seconds=float(d["view_time"])),
            last_view=last_view,
        )


@dataclass
class PositiveCoi:
    id: str
    point: NDArray[np.float32]
    stats: CoiStats = field(default_factory=CoiStats)
    key_phrases: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "point": [float(x) for x in self.point],
            "stats": self.stats.to_dict(),
            "key_phrases": list(self.key_phrases),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> PositiveCoi:
        return cls(
            id=str(d["id"]),
            point=np.asarray(d["point"], dtype=np.float32),
            stats=CoiStats.from_dict(d["stats"]),
            key_phrases=[str(k) for k in d.get("key_phrases", [])],
        )


@dataclass
class NegativeCoi:
    id: str
    point: NDArray[np.float32]
    stats: CoiStats = field(default_factory=CoiStats)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "point": [float(x) for x in self.point],
            "stats": self.stats.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> NegativeCoi:
        return cls(
            id=str(d["id"]),
            point=np.asarray(d["point"], dtype=np.float32),
            stats=CoiStats.from_dict(d["stats"]),
        )


Coi: TypeAlias = PositiveCoi | NegativeCoi


@dataclass
class UserInterests:
    """The complete CoI state of a user."""

    positive: list[PositiveCoi] = field(default_factory=list)
    negative: list[NegativeCoi] = field(default_factory=list)

    @property
    def has_positive(self) -> bool:
        return bool(self.positive)

    def to_dict(self) -> dict[str, Any]:
        return {
            "positive": [coi.to_dict() for coi in self.positive],
            "negative": [coi.to_dict() for coi in self.negative],
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> UserInterests:
        return cls(
            positive=[PositiveCoi.from_dict(c) for c in d.get("positive", [])],
            negative=[NegativeCoi.from_dict(c) for c in d.get("negative", [])],
        )


def extract_key_phrases(
    title: str, snippet: str = "", limit: int = KEY_PHRASE_TITLE_TOKENS
) -> list[str]:
    """Most frequent informative tokens of a document, title tokens first."""
    counter: Counter[str] = Counter()
    first_seen: dict[str, int] = {}
    for weight, text in ((2, title), (1, snippet)):
        for token in re.findall(r"\w+", text):
            tl = token.lower()
            if (
                tl in _KEY_PHRASE_STOPWORDS
                or len(tl) < KEY_PHRASE_MIN_TOKEN_LENGTH
                or tl.isdigit()
            ):
                continue
            counter[tl] += weight
            first_seen.setdefault(tl, len(first_seen))

    if not counter:
        return []

    def _sort_key(item: tuple[str, int]) -> tuple[int, int]:
        token, freq = item
        return (-freq, first_seen[token])

    return [t for t, _ in sorted(counter.items(), key=_sort_key)[:limit]]


def _as_vector(embedding: NDArray[np.float32]) -> NDArray[np.float32]:
    vector = np.asarray(embedding, dtype=np.float32).reshape(-1)
    if vector.size == 0 or not np.all(np.isfinite(vector)):
        raise CoiError("Embedding must be a non-empty finite vector")
    return vector


def _closest(
    points: Sequence[Coi], embedding: NDArray[np.float32]
) -> Optional[tuple[int, float]]:
    if not points:
        return None
    matrix = np.vstack([coi.point for coi in points])
    if matrix.shape[1] != embedding.shape[0]:
        raise CoiError(
            f"Embedding has dimension {embedding.shape[0]}, "
            f"centers of interest have {matrix.shape[1]}"
        )
    sim = cosine_similarity(embedding.reshape(1, -1), matrix)[0]
    idx = int(np.argmax(sim))
    return idx, float(sim[idx])


def _merge_point(coi: Coi, embedding: NDArray[np.float32], now: datetime) -> None:
    count = coi.stats.view_count
    coi.point = ((coi.point * count + embedding) / (count + 1)).astype(np.float32)
    coi.stats.view_count = count + 1
    coi.stats.last_view = max(coi.stats.last_view, now)


def compute_coi_decay_factor(
    horizon: timedelta, now: datetime, last_view: datetime
) -> float:
    """Exponential decay of a point's relevance with the time since its last view.

    1 for a point viewed right now, 0 once the age reaches `horizon`.
    """
    horizon_days = horizon.total_seconds() / SECONDS_PER_DAY
    age_days = max(0.0, (now - last_view).total_seconds() / SECONDS_PER_DAY)
    max_decay = math.exp(COI_DAYS_SCALE * horizon_days)
    return max(
        0.0, (max_decay - math.exp(COI_DAYS_SCALE * age_days)) / (max_decay - 1.0)
    )


def compute_coi_relevances(
    points: Sequence[Coi], horizon: timedelta, now: datetime
) -> NDArray[np.float32]:
    if not points:
        return np.array([], dtype=np.float32)
    counts = np.array([coi.stats.view_count for coi in points], dtype=np.float64)
    times = np.array(
        [coi.stats.view_time.total_seconds() for coi in points], dtype=np.float64
    )
    count_share = counts / counts.sum() if counts.sum() > 0 else np.zeros_like(counts)
    time_share = times / times.sum() if times.sum() > 0 else np.zeros_like(times)
    decay = np.array(
        [compute_coi_decay_factor(horizon, now, coi.stats.last_view) for coi in points]
    )
    return ((count_share + time_share) * decay).astype(np.float32)


def compute_coi_weights(
    points: Sequence[Coi], horizon: timedelta, now: datetime
) -> NDArray[np.float32]:
    """Relevances mapped through 1 - exp(-3x) and normalized to sum to 1."""
    if not points:
        return np.array([], dtype=np.float32)
    relevances = compute_coi_relevances(points, horizon, now).astype(np.float64)
    weights = 1.0 - np.exp(-COI_WEIGHT_STEEPNESS * relevances)
    total = weights.sum()
    if not np.isfinite(total) or total <= 0:
        return np.full(len(points), 1.0 / len(points), dtype=np.float32)
    return (weights / total).astype(np.float32)


class CoiSystem:
    """Updates centers of interest on user feedback and scores documents."""

    def __init__(self, config: CoiConfig) -> None:
        self.config = config

    def log_positive_reaction(
        self,
        points: list[PositiveCoi],
        embedding: NDArray[np.float32],
        key_phrases: Sequence[str] = (),
        now: Optional[datetime] = None,
    ) -> PositiveCoi:
        now = now or _now()
        embedding = _as_vector(embedding)
        closest = _closest(points, embedding)
        if closest is not None and closest[1] >= self.config.threshold:
            coi = points[closest[0]]
            _merge_point(coi, embedding, now)
            merged = list(dict.fromkeys([*key_phrases, *coi.key_phrases]))
            coi.key_phrases = merged[: self.config.max_key_phrases]
            return coi

        coi = PositiveCoi(
            id=str(uuid.uuid4()),
            point=embedding.copy(),
            stats=CoiStats(last_view=now),
            key_phrases=list(dict.fromkeys(key_phrases))[: self.config.max_key_phrases],
        )
        points.append(coi)
        return coi

    def log_negative_reaction(
        self,
        points: list[NegativeCoi],
        embedding: NDArray[np.float32],
        now: Optional[datetime] = None,
    ) -> NegativeCoi:
        now = now or _now()
        embedding = _as_vector(embedding)
        closest = _closest(points, embedding)
        if closest is not None and closest[1] >= self.config.threshold:
            coi = points[closest[0]]
            _merge_point(coi, embedding, now)
            return coi

        coi = NegativeCoi(
            id=str(uuid.uuid4()), point=embedding.copy(), stats=CoiStats(last_view=now)
        )
        points.append(coi)
        return coi

    def log_view_time(
        self,
        points: Sequence[Coi],
        point_id: str,
        duration: timedelta,
        now: Optional[datetime] = None,
    ) -> None:
        if duration < timedelta(0):
            raise CoiError(f"Negative view time: {duration}")
        for coi in points:
            if coi.id == point_id:
                coi.stats.view_time += duration
                coi.stats.last_view = max(coi.stats.last_view, now or _now())
                return
        raise CoiError(f"Unknown center of interest: {point_id}")

    def log_document_view_time(
        self,
        points: list[PositiveCoi],
        embedding: NDArray[np.float32],
        duration: timedelta,
        now: Optional[datetime] = None,
    ) -> PositiveCoi:
        """Log view time on the positive point closest to the document.

        A new point is created if none is close enough.
        """
        if duration < timedelta(0):
            raise CoiError(f"Negative view time: {duration}")
        now = now or _now()
        embedding = _as_vector(embedding)
        closest = _closest(points, embedding)
        if closest is not None and closest[1] >= self.config.threshold:
            coi = points[closest[0]]
        else:
            coi = self.log_positive_reaction(points, embedding, now=now)
        self.log_view_time([coi], coi.id, duration, now)
        return coi

    def score(
        self,
        embeddings: NDArray[np.float32],
        interests: UserInterests,
        now: Optional[datetime] = None,
    ) -> NDArray[np.float32]:
        """Score documents against the user's centers of interest.

        Each score combines the similarity to the closest positive point
        (decayed by that point's age), the relevance-weighted similarity to all
        positive points and a penalty for the closest negative point.
        """
        if not interests.has_positive:
            raise NotEnoughInteractionsError()
        embeddings = np.asarray(embeddings, dtype=np.float32)
        if embeddings.size == 0:
            return np.array([], dtype=np.float32)
        embeddings = embeddings.reshape(len(embeddings), -1)

        now = now or _now()
        horizon = self.config.horizon
        rw = self.config.relevance_weight

        positive = np.vstack([coi.point for coi in interests.positive])
        if positive.shape[1] != embeddings.shape[1]:
            raise RankerError(
                f"Document embeddings have dimension {embeddings.shape[1]}, "
                f"centers of interest have {positive.shape[1]}"
            )
        rows = np.arange(len(embeddings))

        pos_sim = cosine_similarity(embeddings, positive)
        pos_decay = np.array(
            [
                compute_coi_decay_factor(horizon, now, coi.stats.last_view)
                for coi in interests.positive
            ]
        )
        closest_pos = np.argmax(pos_sim, axis=1)
        weights = compute_coi_weights(interests.positive, horizon, now)
        scores = (1.0 - rw) * pos_sim[rows, closest_pos] * pos_decay[
            closest_pos
        ] + rw * (pos_sim @ weights)

        if interests.negative:
            negative = np.vstack([coi.point for coi in interests.negative])
            neg_sim = cosine_similarity(embeddings, negative)
            neg_decay = np.array(
                [
                    compute_coi_decay_factor(horizon, now, coi.stats.last_view)
                    for coi in interests.negative
                ]
            )
            closest_neg = np.argmax(neg_sim, axis=1)
            scores = scores - self.config.negative_penalty * neg_sim[
                rows, closest_neg
            ] * neg_decay[closest_neg]

        return scores.astype(np.float32)

    def select_top_key_phrases(
        self,
        interests: UserInterests,
        top: int,
        now: Optional[datetime] = None,
    ) -> list[str]:
        """Key phrases of the most relevant positive points, at most `top`."""
        if top <= 0 or not interests.positive:
            return []
        relevances = compute_coi_relevances(
            interests.positive, self.config.horizon, now or _now()
        )
        order = sorted(range(len(relevances)), key=lambda i: -relevances[i])
        phrases: list[str] = []
        for idx in order:
            for phrase in interests.positive[idx].key_phrases:
                if phrase not in phrases:
                    phrases.append(phrase)
                if len(phrases) >= top:
                    return phrases
        return phrases
