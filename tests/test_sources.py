"""
Tests for external sentiment sources.

Coverage:
- DuckDuckGo HTML parsing, redirect unwrapping and limits
- Reddit subreddit mapping, stickied filter, score ordering, top 15
- CryptoPanic requires an API key and maps votes
- Every source returns [] on transport/decode failures
"""

from unittest.mock import MagicMock

import pytest
import requests

from core.sources import CRYPTOPANIC_URL, SentimentSources
from tools.config_validator import SourcesConfig

DDG_HTML = """
<div class="result">
  <a rel="nofollow" class="result__a" href="//duckduckgo.com/l/?uddg=https%3A%2F%2Fexample.com%2Fbtc&amp;rut=x"><b>Bitcoin</b> outlook &amp; analysis</a>
  <a class="result__snippet" href="#">Analysts expect <b>volatility</b>.</a>
</div>
<div class="result">
  <a rel="nofollow" class="result__a" href="https://example.org/eth">ETH news</a>
  <a class="result__snippet" href="#">Staking inflows rise.</a>
</div>
"""


def _response(text="", payload=None, status=200):
    response = MagicMock(name="response")
    response.text = text
    response.json.return_value = payload
    if status >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status} error")
    return response


def _reddit_payload(*posts):
    return {"data": {"children": [{"data": p} for p in posts]}}


@pytest.fixture
def session():
    return MagicMock(name="session")


@pytest.fixture
def sources(session):
    client = SentimentSources(SourcesConfig(reddit_delay_seconds=0.5), session=session)
    client._sleep = MagicMock(name="sleep")
    return client


class TestWebSearch:
    def test_parses_results(self, sources, session):
        session.get.return_value = _response(DDG_HTML)

        results = sources.web_search("BTC crypto sentiment analysis today", limit=5)

        assert [r.title for r in results] == ["Bitcoin outlook & analysis", "ETH news"]
        assert results[0].url == "https://example.com/btc"
        assert results[0].snippet == "Analysts expect volatility."
        assert session.get.call_args.kwargs["timeout"] == 10.0
        assert session.get.call_args.kwargs["params"] == {"q": "BTC crypto sentiment analysis today"}

    def test_limit(self, sources, session):
        session.get.return_value = _response(DDG_HTML)
        assert len(sources.web_search("q", limit=1)) == 1

    def test_failure_returns_empty(self, sources, session):
        session.get.side_effect = requests.Timeout("slow")
        assert sources.web_search("q") == []

    def test_http_error_returns_empty(self, sources, session):
        session.get.return_value = _response(status=503)
        assert sources.web_search("q") == []


class TestReddit:
    def test_subreddits_for_coins(self, sources, session):
        session.get.return_value = _response(payload=_reddit_payload())

        sources.fetch_reddit_sentiment(["BTC/USD", "ETH", "PEPE"])

        urls = [c.args[0] for c in session.get.call_args_list]
        assert urls == [
            "https://www.reddit.com/r/bitcoin/hot.json",
            "https://www.reddit.com/r/CryptoMarkets/hot.json",
            "https://www.reddit.com/r/ethereum/hot.json",
            "https://www.reddit.com/r/CryptoCurrency/hot.json",
        ]
        assert sources._sleep.call_count == 3

    def test_shared_subreddit_fetched_once(self, sources, session):
        session.get.return_value = _response(payload=_reddit_payload())

        sources.fetch_reddit_sentiment(["SOL", "DOGE"])

        urls = [c.args[0] for c in session.get.call_args_list]
        assert urls == [
            "https://www.reddit.com/r/solana/hot.json",
            "https://www.reddit.com/r/CryptoMarkets/hot.json",
            "https://www.reddit.com/r/dogecoin/hot.json",
        ]

    def test_filters_and_orders(self, sources, session):
        session.get.return_value = _response(payload=_reddit_payload(
            {"title": "Pinned rules", "score": 9999, "stickied": True},
            {"title": "Low", "score": 5, "num_comments": 1, "subreddit": "bitcoin"},
            {"title": "High", "score": 500, "num_comments": 80, "selftext": "x" * 400},
        ))

        posts = sources.fetch_reddit_sentiment(["DOGE"])

        titles = [p.title for p in posts]
        assert "Pinned rules" not in titles
        assert titles[0] == "High"
        assert len(posts[0].selftext) == 300

    def test_top_fifteen(self, sources, session):
        many = [{"title": f"p{i}", "score": i} for i in range(10)]
        session.get.return_value = _response(payload=_reddit_payload(*many))
        assert len(sources.fetch_reddit_sentiment(["BTC"])) == 15

    def test_failed_subreddit_skipped(self, sources, session):
        session.get.side_effect = [
            requests.ConnectionError("reset"),
            _response(payload=_reddit_payload({"title": "ok", "score": 1})),
        ]
        posts = sources.fetch_reddit_sentiment(["BTC"])
        assert [p.title for p in posts] == ["ok"]


class TestCryptoPanic:
    def test_requires_api_key(self, sources, session, monkeypatch):
        monkeypatch.delenv("CRYPTOPANIC_API_KEY", raising=False)
        assert sources.fetch_crypto_news(["BTC"]) == []
        session.get.assert_not_called()

    def test_maps_items(self, sources, session, monkeypatch):
        monkeypatch.setenv("CRYPTOPANIC_API_KEY", "token")
        session.get.return_value = _response(payload={"results": [
            {
                "title": "ETF approved",
                "url": "https://cp/1",
                "source": {"title": "CoinDesk"},
                "published_at": "2026-03-01T10:00:00Z",
                "votes": {"positive": 7, "negative": 2, "important": 3},
            },
            {"title": "No source"},
        ]})

        news = sources.fetch_crypto_news(["ETH/USD", "BTC"])

        assert news[0].source == "CoinDesk"
        assert (news[0].votes_positive, news[0].votes_negative, news[0].votes_important) == (7, 2, 3)
        assert news[1].source == "Unknown"
        args, kwargs = session.get.call_args
        assert args[0] == CRYPTOPANIC_URL
        assert kwargs["params"]["currencies"] == "BTC,ETH"

    def test_bad_json(self, sources, session, monkeypatch):
        monkeypatch.setenv("CRYPTOPANIC_API_KEY", "token")
        response = _response()
        response.json.side_effect = ValueError("not json")
        session.get.return_value = response
        assert sources.fetch_crypto_news(["BTC"]) == []
