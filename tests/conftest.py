import threading
import zlib
from datetime import UTC, datetime, timedelta

import numpy as np
import pytest

from discovery.errors import ProviderError
from discovery.models import Article, Document, Market, NewsResource

DIM = 16


class FakeEmbedder:
    """Deterministic embeddings: fixed vectors for known texts, seeded noise otherwise."""

    def __init__(self, vectors=None):
        self.vectors = dict(vectors or {})
        self.calls = []
        self.batch_threads = []

    def embed(self, text):
        self.calls.append(text)
        if text in self.vectors:
            return np.asarray(self.vectors[text], dtype=np.float32)
        rng = np.random.default_rng(zlib.crc32(text.encode("utf-8")))
        vec = rng.normal(size=DIM).astype(np.float32)
        return vec / np.linalg.norm(vec)

    def embed_batch(self, texts):
        self.batch_threads.append(threading.get_ident())
        return np.vstack([self.embed(text) for text in texts])


class FakeProvider:
    """Records queries and returns canned articles."""

    def __init__(self, articles=None, search_articles=None, similar_articles=None):
        self.articles = list(articles or [])
        self.search_articles = list(search_articles or [])
        self.similar_articles = list(similar_articles or [])
        self.error = None
        self.failing_markets = set()
        self.calls = []

    def _respond(self, kind, query, articles):
        self.calls.append((kind, query))
        if self.error is not None:
            raise self.error
        if query.market.country_code in self.failing_markets:
            raise ProviderError(f"market {query.market.country_code} is down")
        return list(articles)

    async def headlines(self, query):
        return self._respond("headlines", query, self.articles)

    async def search(self, query):
        return self._respond("search", query, self.search_articles)

    async def similar(self, query):
        return self._respond("similar", query, self.similar_articles)


class FixedSampler:
    """Returns the mean of the Beta distribution, or a fixed value."""

    def __init__(self, value=None):
        self.value = value
        self.calls = []

    def sample(self, alpha, beta):
        self.calls.append((alpha, beta))
        if self.value is not None:
            return self.value
        return alpha / (alpha + beta)


def unit(index, dim=DIM):
    vec = np.zeros(dim, dtype=np.float32)
    vec[index] = 1.0
    return vec


def make_article(i, **overrides):
    fields = dict(
        title=f"Headline number {i}",
        excerpt=f"Excerpt of story {i}",
        link=f"https://news{i}.example.com/story/{i}",
        media=f"https://news{i}.example.com/img/{i}.jpg",
        source_domain=f"news{i}.example.com",
        date_published=datetime.now(UTC) - timedelta(hours=i),
    )
    fields.update(overrides)
    return Article(**fields)


def make_document(i, embedding=None, stack_id="stack", **resource):
    fields = dict(
        title=f"Document {i}",
        snippet=f"Snippet {i}",
        url=f"https://site{i}.example.com/doc/{i}",
        source_domain=f"site{i}.example.com",
        date_published=datetime(2024, 5, 1, tzinfo=UTC),
    )
    fields.update(resource)
    if embedding is None:
        embedding = unit(i % DIM)
    return Document(
        id=f"doc-{i}",
        stack_id=stack_id,
        embedding=np.asarray(embedding, dtype=np.float32),
        resource=NewsResource(**fields),
    )


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def sampler():
    return FixedSampler()


@pytest.fixture
def market():
    return Market("US", "en")


@pytest.fixture
def article_factory():
    return make_article


@pytest.fixture
def document_factory():
    return make_document
