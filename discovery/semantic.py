"""Semantic deduplication of candidate documents.

Documents are clustered by a combination of embedding similarity and
publication-date proximity, and one representative per cluster is kept.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import TypeAlias

import numpy as np
from numpy.typing import NDArray
from sklearn.cluster import AgglomerativeClustering
from sklearn.metrics.pairwise import cosine_similarity

from discovery.config import MaxClusters, MaxDissimilarity, SemanticFilterConfig
from discovery.constants import SEMANTIC_DAYS_SCALE
from discovery.models import Document

# (cluster1, cluster2, dissimilarity); the merged cluster gets id n + step index
Step: TypeAlias = tuple[int, int, float]


def condensed_cosine_similarity(embeddings: NDArray[np.float32]) -> NDArray[np.float32]:
    """Pairwise cosine similarities for all i < j, row major."""
    embeddings = np.asarray(embeddings, dtype=np.float32)
    n = len(embeddings)
    if n < 2:
        return np.array([], dtype=np.float32)
    sim = cosine_similarity(embeddings)
    rows, cols = np.triu_indices(n, k=1)
    return np.clip(sim[rows, cols], -1.0, 1.0).astype(np.float32)


def condensed_date_distance(dates: Sequence[datetime]) -> NDArray[np.float32]:
    """Pairwise distance between publication dates in whole days."""
    n = len(dates)
    return np.array(
        [abs(dates[i] - dates[j]).days for i in range(n) for j in range(i + 1, n)],
        dtype=np.float32,
    )


def condensed_decay_factor(
    distance: NDArray[np.float32], max_days: float, threshold: float
) -> NDArray[np.float32]:
    """Map date distances to a factor in [threshold, 1].

    Same-day pairs get 1, pairs at least `max_days` apart saturate at
    `threshold`.
    """
    distance = np.asarray(distance, dtype=np.float64)
    if max_days <= 0:
        return np.full(distance.shape, threshold, dtype=np.float32)
    max_decay = np.exp(SEMANTIC_DAYS_SCALE * max_days)
    decay = np.maximum(
        0.0, (max_decay - np.exp(SEMANTIC_DAYS_SCALE * distance)) / (max_decay - 1.0)
    )
    return (decay * (1.0 - threshold) + threshold).astype(np.float32)


def condensed_normalized_distance(
    similarity: NDArray[np.float32], factor: NDArray[np.float32]
) -> NDArray[np.float32]:
    """Combine similarity and date factor into a distance in [0, 1].

    0 means identical. If every combined value is equal the pairs are all
    treated as identical.
    """
    combined = np.asarray(similarity, dtype=np.float64) * np.asarray(
        factor, dtype=np.float64
    )
    if combined.size == 0:
        return np.array([], dtype=np.float32)
    lo, hi = combined.min(), combined.max()
    if hi == lo:
        return np.zeros(combined.shape, dtype=np.float32)
    return (1.0 - (combined - lo) / (hi - lo)).astype(np.float32)


def normalized_distance(
    documents: Sequence[Document], config: SemanticFilterConfig
) -> NDArray[np.float32]:
    embeddings = np.vstack([doc.embedding for doc in documents])
    similarity = condensed_cosine_similarity(embeddings)
    dates = [doc.resource.date_published for doc in documents]
    factor = condensed_decay_factor(
        condensed_date_distance(dates), config.max_days, config.threshold
    )
    return condensed_normalized_distance(similarity, factor)


def dendrogram_steps(distance: NDArray[np.float32], n: int) -> list[Step]:
    """Average linkage merge steps over a condensed distance vector."""
    if n < 2:
        return []
    square = np.zeros((n, n), dtype=np.float64)
    rows, cols = np.triu_indices(n, k=1)
    square[rows, cols] = distance
    square[cols, rows] = distance

    clustering = AgglomerativeClustering(
        n_clusters=1,
        metric="precomputed",
        linkage="average",
        compute_full_tree=True,
        compute_distances=True,
    )
    clustering.fit(square)
    return [
        (int(c1), int(c2), float(d))
        for (c1, c2), d in zip(clustering.children_, clustering.distances_)
    ]


def _labels(clusters: dict[int, list[int]], n: int) -> list[int]:
    labels = [0] * n
    for label, cluster_id in enumerate(sorted(clusters)):
        for idx in clusters[cluster_id]:
            labels[idx] = label
    return labels


def cut_tree(steps: Sequence[Step], n: int, max_dissimilarity: float) -> list[int]:
    """Apply merges until the first step at or above `max_dissimilarity`.

    A step exactly at the cutoff is not applied, so a cutoff equal to the
    largest dissimilarity leaves the last merge undone.
    """
    clusters = {i: [i] for i in range(n)}
    for offset, (c1, c2, dissimilarity) in enumerate(steps):
        if not dissimilarity < max_dissimilarity:
            break
        clusters[n + offset] = clusters.pop(c1) + clusters.pop(c2)
    return _labels(clusters, n)


def find_n_clusters(steps: Sequence[Step], n: int, n_clusters: int) -> list[int]:
    """Apply merges until at most `n_clusters` clusters remain (0 acts as 1)."""
    target = max(1, n_clusters)
    clusters = {i: [i] for i in range(n)}
    for offset, (c1, c2, _) in enumerate(steps):
        if len(clusters) <= target:
            break
        clusters[n + offset] = clusters.pop(c1) + clusters.pop(c2)
    return _labels(clusters, n)


def cluster_labels(
    documents: Sequence[Document], config: SemanticFilterConfig
) -> list[int]:
    n = len(documents)
    if n < 2:
        return [0] * n
    steps = dendrogram_steps(normalized_distance(documents, config), n)
    match config.criterion:
        case MaxDissimilarity(value):
            return cut_tree(steps, n, value)
        case MaxClusters(value):
            return find_n_clusters(steps, n, value)
    raise TypeError(f"Unknown clustering criterion: {config.criterion!r}")


def filter_semantically(
    documents: Sequence[Document],
    source_weights: Sequence[int],
    config: SemanticFilterConfig,
) -> list[Document]:
    """Keep one document per semantic cluster.

    The representative is the document with the highest source weight; ties
    go to the one that comes first in `documents`. The result is ordered by
    cluster label.
    """
    if len(documents) != len(source_weights):
        raise ValueError(
            f"Got {len(source_weights)} source weights for {len(documents)} documents"
        )
    if len(documents) < 2:
        return list(documents)

    labels = cluster_labels(documents, config)
    best: dict[int, int] = {}
    for idx, label in enumerate(labels):
        current = best.get(label)
        if current is None or source_weights[idx] > source_weights[current]:
            best[label] = idx
    return [documents[best[label]] for label in sorted(best)]


def max_cosine_similarity(
    documents: Sequence[Document], points: NDArray[np.float32]
) -> NDArray[np.float32]:
    """Highest similarity of each document to any of the given points."""
    if not documents:
        return np.array([], dtype=np.float32)
    points = np.asarray(points, dtype=np.float32)
    if points.size == 0:
        return np.full(len(documents), -1.0, dtype=np.float32)
    embeddings = np.vstack([doc.embedding for doc in documents])
    sim = cosine_similarity(embeddings, points.reshape(len(points), -1))
    return sim.max(axis=1).astype(np.float32)


def filter_too_similar(
    documents: Sequence[Document], points: NDArray[np.float32], threshold: float
) -> list[Document]:
    """Drop documents that are near copies of one of the given points."""
    similarity = max_cosine_similarity(documents, points)
    return [doc for doc, sim in zip(documents, similarity) if sim <= threshold]
