"""Article filter chain. Every stage only ever removes articles."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import UTC, datetime, timedelta
from typing import Optional

from discovery.constants import (
    SOURCE_WEIGHT_DEFAULT,
    SOURCE_WEIGHT_EXCLUDED,
    SOURCE_WEIGHT_TRUSTED,
)
from discovery.models import Article, Document, HistoricDocument
from discovery.url_utils import is_valid_url, normalize_title, normalize_url


def _normalize_domain(domain: str) -> str:
    return domain.strip().lower().removeprefix("www.").rstrip(".")


def _domain_matches(domain: str, sources: Iterable[str]) -> bool:
    domain = _normalize_domain(domain)
    if not domain:
        return False
    for source in sources:
        source = _normalize_domain(source)
        if source and (domain == source or domain.endswith("." + source)):
            return True
    return False


def source_weight(
    domain: str, trusted: Sequence[str], excluded: Sequence[str]
) -> int:
    """1 for trusted sources, -1 for excluded ones, 0 otherwise."""
    if _domain_matches(domain, excluded):
        return SOURCE_WEIGHT_EXCLUDED
    if _domain_matches(domain, trusted):
        return SOURCE_WEIGHT_TRUSTED
    return SOURCE_WEIGHT_DEFAULT


def source_weights(
    documents: Sequence[Document], trusted: Sequence[str], excluded: Sequence[str]
) -> list[int]:
    return [
        source_weight(doc.resource.source_domain, trusted, excluded)
        for doc in documents
    ]


def is_from_source(document: Document, sources: Sequence[str]) -> bool:
    return _domain_matches(document.resource.source_domain, sources)


def filter_malformed(articles: Sequence[Article]) -> list[Article]:
    """Drop articles missing text fields or carrying invalid links."""
    return [
        a
        for a in articles
        if a.title.strip()
        and a.excerpt.strip()
        and a.source_domain.strip()
        and is_valid_url(a.link)
        and (not a.media or is_valid_url(a.media))
    ]


def filter_duplicates(
    history: Iterable[HistoricDocument],
    documents: Iterable[Document],
    articles: Sequence[Article],
) -> list[Article]:
    """Drop articles whose url or title was already shown or is already stacked.

    Within `articles` only the first of several duplicates is kept.
    """
    seen_urls: set[str] = set()
    seen_titles: set[str] = set()
    for h in history:
        seen_urls.add(normalize_url(h.url))
        seen_titles.add(normalize_title(h.title))
    for doc in documents:
        seen_urls.add(normalize_url(doc.resource.url))
        seen_titles.add(normalize_title(doc.resource.title))

    kept: list[Article] = []
    for a in articles:
        url = normalize_url(a.link)
        title = normalize_title(a.title)
        if url in seen_urls or title in seen_titles:
            continue
        seen_urls.add(url)
        seen_titles.add(title)
        kept.append(a)
    return kept


def filter_sources(articles: Sequence[Article], excluded: Sequence[str]) -> list[Article]:
    if not excluded:
        return list(articles)
    return [a for a in articles if not _domain_matches(a.source_domain, excluded)]


def filter_stale(
    articles: Sequence[Article], max_age_days: int, now: Optional[datetime] = None
) -> list[Article]:
    cutoff = (now or datetime.now(UTC)) - timedelta(days=max_age_days)
    return [a for a in articles if a.date_published >= cutoff]


def common_filter(
    history: Iterable[HistoricDocument],
    documents: Iterable[Document],
    articles: Sequence[Article],
    excluded: Sequence[str],
    max_age_days: int,
    now: Optional[datetime] = None,
) -> list[Article]:
    """Malformed, duplicate, source and stale filters, in that order."""
    articles = filter_malformed(articles)
    articles = filter_duplicates(history, documents, articles)
    articles = filter_sources(articles, excluded)
    return filter_stale(articles, max_age_days, now)
