from __future__ import annotations

import json
from collections.abc import Sequence
from datetime import timedelta
from typing import Optional

import numpy as np
from numpy.typing import NDArray

from discovery.coi import CoiSystem, UserInterests, extract_key_phrases
from discovery.config import CoiConfig
from discovery.embedding import Embedder
from discovery.errors import (
    DeserializationError,
    DiscoveryError,
    EmbeddingError,
    RankerError,
    SerializationError,
)
from discovery.logging_config import get_logger
from discovery.models import Document

logger = get_logger(__name__)


class Ranker:
    """Embeds texts and ranks documents by the user's centers of interest."""

    def __init__(
        self,
        embedder: Embedder,
        config: CoiConfig,
        interests: Optional[UserInterests] = None,
    ) -> None:
        self.embedder = embedder
        self.coi = CoiSystem(config)
        self.interests = interests or UserInterests()

    def embed(self, text: str) -> NDArray[np.float32]:
        try:
            embedding = self.embedder.embed(text)
        except DiscoveryError:
            raise
        except Exception as e:
            raise EmbeddingError(f"Failed to embed {text[:50]!r}: {e}") from e
        return np.asarray(embedding, dtype=np.float32).reshape(-1)

    def embed_batch(self, texts: Sequence[str]) -> list[NDArray[np.float32]]:
        """One embedding per text, in order. Blocking; run it off the event loop."""
        if not texts:
            return []
        try:
            embeddings = np.asarray(self.embedder.embed_batch(list(texts)), dtype=np.float32)
        except DiscoveryError:
            raise
        except Exception as e:
            raise EmbeddingError(f"Failed to embed {len(texts)} texts: {e}") from e
        if embeddings.ndim != 2 or len(embeddings) != len(texts):
            raise EmbeddingError(
                f"Expected {len(texts)} embeddings, got shape {embeddings.shape}"
            )
        return list(embeddings)

    def score(self, documents: Sequence[Document]) -> NDArray[np.float32]:
        if not documents:
            return np.array([], dtype=np.float32)
        dims = {doc.embedding.shape[0] for doc in documents}
        if len(dims) != 1:
            raise RankerError(f"Documents have mixed embedding dimensions: {sorted(dims)}")
        embeddings = np.vstack([doc.embedding for doc in documents])
        return self.coi.score(embeddings, self.interests)

    def rank(self, documents: list[Document]) -> None:
        """Score `documents` and sort them in place, best first.

        The sort is stable, so equal scores keep their relative order.
        Raises NotEnoughInteractionsError without touching the list when there
        are no positive centers of interest.
        """
        scores = self.score(documents)
        for doc, score in zip(documents, scores):
            doc.score = float(score)
        documents.sort(key=lambda doc: -(doc.score or 0.0))

    def log_positive_user_reaction(
        self,
        embedding: NDArray[np.float32],
        title: str = "",
        snippet: str = "",
        key_phrases: Sequence[str] = (),
    ) -> None:
        phrases = list(key_phrases) or extract_key_phrases(title, snippet)
        coi = self.coi.log_positive_reaction(self.interests.positive, embedding, phrases)
        logger.debug("Positive reaction logged on CoI %s", coi.id)

    def log_negative_user_reaction(self, embedding: NDArray[np.float32]) -> None:
        coi = self.coi.log_negative_reaction(self.interests.negative, embedding)
        logger.debug("Negative reaction logged on CoI %s", coi.id)

    def log_document_view_time(
        self, embedding: NDArray[np.float32], duration: timedelta
    ) -> None:
        self.coi.log_document_view_time(self.interests.positive, embedding, duration)

    def select_top_key_phrases(self, top: int) -> list[str]:
        return self.coi.select_top_key_phrases(self.interests, top)

    def reset_ai(self) -> None:
        self.interests = UserInterests()

    def serialize(self) -> bytes:
        try:
            return json.dumps(self.interests.to_dict()).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise SerializationError(f"Failed to serialize user interests: {e}") from e

    @staticmethod
    def interests_from_state(state: bytes) -> UserInterests:
        try:
            return UserInterests.from_dict(json.loads(state.decode("utf-8")))
        except (UnicodeDecodeError, ValueError, KeyError, TypeError) as e:
            raise DeserializationError(f"Invalid user interests state: {e}") from e
