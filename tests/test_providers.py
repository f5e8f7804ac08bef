from datetime import UTC, datetime

import httpx
import pytest
import respx
from httpx import Response
from tenacity import wait_none

import discovery.providers as providers
from discovery.errors import ProviderError
from discovery.models import Market
from discovery.providers import (
    HeadlinesQuery,
    NewsClient,
    ProviderRetryableError,
    SearchQuery,
    SimilarSearchQuery,
    _parse_retry_after,
    parse_article,
    parse_articles,
)

BASE = "https://news.test/v2"
US = Market("US", "en")

PAYLOAD = {
    "title": "Rust 2.0 released",
    "excerpt": "The compiler got faster.",
    "link": "https://blog.rust.example/2-0",
    "media": "https://blog.rust.example/img.png",
    "clean_url": "blog.rust.example",
    "published_date": "2024-05-01 10:00:00",
    "_score": 12.5,
    "rank": 42,
    "country": "US",
    "language": "en",
    "topic": "tech",
}


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr(providers, "_BACKOFF_WAIT", wait_none())


def test_parse_article_maps_fields():
    article = parse_article(PAYLOAD)
    assert article.title == "Rust 2.0 released"
    assert article.source_domain == "blog.rust.example"
    assert article.date_published == datetime(2024, 5, 1, 10, tzinfo=UTC)
    assert article.score == 12.5
    assert article.rank == 42


def test_parse_article_falls_back_to_summary():
    raw = {k: v for k, v in PAYLOAD.items() if k != "excerpt"}
    raw["summary"] = "Summary text"
    assert parse_article(raw).excerpt == "Summary text"


@pytest.mark.parametrize("missing", ["title", "link", "published_date"])
def test_parse_article_requires_fields(missing):
    raw = {k: v for k, v in PAYLOAD.items() if k != missing}
    assert parse_article(raw) is None


def test_parse_articles_skips_broken_entries():
    data = {"articles": [PAYLOAD, {"title": "no link"}, "junk"]}
    assert [a.link for a in parse_articles(data)] == [PAYLOAD["link"]]
    assert parse_articles({"status": "No matches"}) == []


def test_parse_articles_rejects_unexpected_shapes():
    with pytest.raises(ProviderError):
        parse_articles([PAYLOAD])
    with pytest.raises(ProviderError):
        parse_articles({"articles": "nope"})


def test_parse_retry_after():
    assert _parse_retry_after("3") == 3.0
    assert _parse_retry_after("-2") == 0.0
    assert _parse_retry_after("") is None
    assert _parse_retry_after("soon") is None
    assert _parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0


@pytest.mark.asyncio
@respx.mock
async def test_headlines_request():
    route = respx.get(f"{BASE}/latest_headlines").mock(
        return_value=Response(200, json={"articles": [PAYLOAD]})
    )
    client = NewsClient("secret", BASE)
    articles = await client.headlines(
        HeadlinesQuery(
            market=US,
            page_size=50,
            trusted_sources=("a.com", "b.com"),
            topic="tech",
            max_age_days=2,
        )
    )
    await client.close()

    assert len(articles) == 1
    request = route.calls.last.request
    assert request.headers["Authorization"] == "Bearer secret"
    params = request.url.params
    assert params["countries"] == "US"
    assert params["lang"] == "en"
    assert params["page_size"] == "50"
    assert params["sources"] == "a.com,b.com"
    assert params["topic"] == "tech"
    assert params["when"] == "48h"


@pytest.mark.asyncio
@respx.mock
async def test_search_and_similar_requests():
    search = respx.get(f"{BASE}/search").mock(
        return_value=Response(200, json={"articles": []})
    )
    similar = respx.get(f"{BASE}/search_similar").mock(
        return_value=Response(200, json={"articles": []})
    )
    async with NewsClient("secret", BASE) as client:
        await client.search(
            SearchQuery(query="rust OR python", market=US, excluded_sources=("x.com",))
        )
        await client.similar(SimilarSearchQuery(like="Rust 2.0 released", market=US, page=3))

    search_params = search.calls.last.request.url.params
    assert search_params["q"] == "rust OR python"
    assert search_params["not_sources"] == "x.com"
    assert search_params["sort_by"] == "relevancy"
    similar_params = similar.calls.last.request.url.params
    assert similar_params["q"] == "Rust 2.0 released"
    assert similar_params["page"] == "3"


@pytest.mark.asyncio
@respx.mock
async def test_retryable_status_is_retried():
    route = respx.get(f"{BASE}/search").mock(
        side_effect=[
            Response(503, headers={"Retry-After": "0"}),
            Response(429),
            Response(200, json={"articles": [PAYLOAD]}),
        ]
    )
    async with NewsClient("secret", BASE, max_retries=3) as client:
        articles = await client.search(SearchQuery(query="rust", market=US))
    assert len(articles) == 1
    assert route.call_count == 3


@pytest.mark.asyncio
@respx.mock
async def test_retries_are_exhausted():
    route = respx.get(f"{BASE}/search").mock(return_value=Response(502))
    async with NewsClient("secret", BASE, max_retries=2) as client:
        with pytest.raises(ProviderRetryableError) as exc_info:
            await client.search(SearchQuery(query="rust", market=US))
    assert exc_info.value.status_code == 502
    assert route.call_count == 2


@pytest.mark.asyncio
@respx.mock
async def test_client_errors_are_not_retried():
    route = respx.get(f"{BASE}/latest_headlines").mock(return_value=Response(401))
    async with NewsClient("bad", BASE) as client:
        with pytest.raises(ProviderError) as exc_info:
            await client.headlines(HeadlinesQuery(market=US))
    assert exc_info.value.status_code == 401
    assert not isinstance(exc_info.value, ProviderRetryableError)
    assert route.call_count == 1


@pytest.mark.asyncio
@respx.mock
async def test_transport_errors_are_retried():
    route = respx.get(f"{BASE}/latest_headlines").mock(
        side_effect=[
            httpx.ConnectError("connection refused"),
            Response(200, json={"articles": [PAYLOAD]}),
        ]
    )
    async with NewsClient("secret", BASE) as client:
        articles = await client.headlines(HeadlinesQuery(market=US))
    assert len(articles) == 1
    assert route.call_count == 2


@pytest.mark.asyncio
@respx.mock
async def test_invalid_json_is_a_provider_error():
    respx.get(f"{BASE}/latest_headlines").mock(
        return_value=Response(200, text="<html>maintenance</html>")
    )
    async with NewsClient("secret", BASE) as client:
        with pytest.raises(ProviderError):
            await client.headlines(HeadlinesQuery(market=US))
