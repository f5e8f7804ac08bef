from datetime import UTC, datetime, timedelta

from hypothesis import given, strategies as st

from conftest import make_article, make_document
from discovery.filters import (
    common_filter,
    filter_duplicates,
    filter_malformed,
    filter_sources,
    filter_stale,
    source_weight,
    source_weights,
)
from discovery.models import HistoricDocument


def test_malformed_articles_are_dropped():
    good = make_article(1)
    articles = [
        good,
        make_article(2, title="  "),
        make_article(3, excerpt=""),
        make_article(4, source_domain=""),
        make_article(5, link="not a url"),
        make_article(6, link="ftp://files.example.com/a"),
        make_article(7, media="nope"),
    ]
    assert filter_malformed(articles) == [good]


def test_missing_media_is_allowed():
    article = make_article(1, media="")
    assert filter_malformed([article]) == [article]


def test_duplicates_against_history_stack_and_batch():
    history = [HistoricDocument(id="h", url="https://www.seen.com/story/", title="Old")]
    stack = [make_document(9, title="Stacked Title")]
    articles = [
        make_article(1, link="https://seen.com/story?utm=x"),
        make_article(2, title="  stacked   title "),
        make_article(3),
        make_article(4, link=make_article(3).link),
        make_article(5, title=make_article(3).title.upper()),
        make_article(6),
    ]
    kept = filter_duplicates(history, stack, articles)
    assert [a.link for a in kept] == [make_article(3).link, make_article(6).link]


def test_duplicate_set_keeps_exactly_one():
    same = [make_article(i, title="Shared title") for i in range(5)]
    assert len(filter_duplicates([], [], same)) == 1


def test_sources_filter_matches_subdomains():
    articles = [
        make_article(1, source_domain="blocked.com"),
        make_article(2, source_domain="www.blocked.com"),
        make_article(3, source_domain="news.blocked.com"),
        make_article(4, source_domain="notblocked.com"),
    ]
    kept = filter_sources(articles, ["blocked.com"])
    assert [a.source_domain for a in kept] == ["notblocked.com"]
    assert filter_sources(articles, []) == articles


def test_stale_filter():
    now = datetime(2024, 5, 1, tzinfo=UTC)
    fresh = make_article(1, date_published=now - timedelta(days=2))
    stale = make_article(2, date_published=now - timedelta(days=40))
    assert filter_stale([fresh, stale], 30, now=now) == [fresh]


def test_source_weights():
    assert source_weight("trusted.com", ["trusted.com"], []) == 1
    assert source_weight("a.trusted.com", ["trusted.com"], []) == 1
    assert source_weight("bad.com", ["trusted.com"], ["bad.com"]) == -1
    assert source_weight("other.com", ["trusted.com"], ["bad.com"]) == 0
    # exclusion wins over trust
    assert source_weight("both.com", ["both.com"], ["both.com"]) == -1

    docs = [
        make_document(1, source_domain="trusted.com"),
        make_document(2, source_domain="other.com"),
    ]
    assert source_weights(docs, ["trusted.com"], []) == [1, 0]


article_strategy = st.builds(
    make_article,
    st.integers(0, 8),
    title=st.sampled_from(["A title", "Another title", " ", "A TITLE"]),
    source_domain=st.sampled_from(["a.com", "b.com", "excluded.com", ""]),
)


@given(st.lists(article_strategy, max_size=15))
def test_filter_chain_never_grows(articles):
    history = [HistoricDocument(id="h", url=make_article(0).link, title="Seen")]
    stages = [
        filter_malformed,
        lambda a: filter_duplicates(history, [], a),
        lambda a: filter_sources(a, ["excluded.com"]),
        lambda a: filter_stale(a, 30),
    ]
    current = articles
    for stage in stages:
        out = stage(current)
        assert len(out) <= len(current)
        assert all(a in current for a in out)
        current = out
    assert common_filter(history, [], articles, ["excluded.com"], 30) == current
