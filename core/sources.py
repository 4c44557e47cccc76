"""
crypto-sentinel Core: External Sentiment Sources

Web search (DuckDuckGo HTML), Reddit hot posts and CryptoPanic news.

Every fetch carries an explicit timeout and returns an empty list on any
failure; a dead source never aborts a Sentinel run.
"""

import html
import logging
import os
import re
import time
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional
from urllib.parse import unquote

import requests

from infra.alerting import OnceLogger
from tools.config_validator import SourcesConfig

logger = logging.getLogger(__name__)

DDG_URL = "https://html.duckduckgo.com/html/"
REDDIT_URL = "https://www.reddit.com/r/{subreddit}/hot.json"
CRYPTOPANIC_URL = "https://cryptopanic.com/api/v1/posts/"

COIN_SUBREDDITS: Dict[str, List[str]] = {
    "BTC": ["bitcoin", "CryptoMarkets"],
    "ETH": ["ethereum", "CryptoMarkets"],
    "SOL": ["solana", "CryptoMarkets"],
    "DOGE": ["dogecoin", "CryptoMarkets"],
    "XRP": ["Ripple", "CryptoMarkets"],
    "ADA": ["cardano", "CryptoMarkets"],
}
DEFAULT_SUBREDDITS = ["CryptoCurrency", "CryptoMarkets"]

_RESULT_RE = re.compile(
    r'<a[^>]*class="result__a"[^>]*href="([^"]*)"[^>]*>(.*?)</a>'
    r'[\s\S]*?<a[^>]*class="result__snippet"[^>]*>(.*?)</a>'
)
_TAG_RE = re.compile(r"<[^>]*>")
_UDDG_RE = re.compile(r"uddg=([^&]+)")


@dataclass
class WebSearchResult:
    title: str
    url: str
    snippet: str


@dataclass
class RedditPost:
    title: str
    score: int
    num_comments: int
    selftext: str
    created_utc: float
    subreddit: str
    permalink: str


@dataclass
class NewsItem:
    title: str
    url: str
    source: str
    published_at: str
    votes_positive: int = 0
    votes_negative: int = 0
    votes_important: int = 0

    def to_dict(self) -> Dict:
        return asdict(self)


def _strip_tags(fragment: str) -> str:
    return html.unescape(_TAG_RE.sub("", fragment)).strip()


class SentimentSources:
    """
    HTTP clients for the external sources.

    The requests session is injectable so tests never touch the network.
    """

    def __init__(self, config: Optional[SourcesConfig] = None, session: Optional[requests.Session] = None):
        self.config = config or SourcesConfig()
        self.session = session or requests.Session()
        self._once = OnceLogger(logger)
        self._sleep = time.sleep

    def web_search(self, query: str, limit: int = 5) -> List[WebSearchResult]:
        """Scrape DuckDuckGo's HTML endpoint (no API key)."""
        try:
            response = self.session.get(
                DDG_URL,
                params={"q": query},
                headers={"User-Agent": f"Mozilla/5.0 (compatible; {self.config.user_agent})"},
                timeout=self.config.timeout_seconds,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            self._once.warning(f"Web search failed: {e}")
            return []

        results = []
        for match in _RESULT_RE.finditer(response.text):
            if len(results) >= limit:
                break
            url = html.unescape(match.group(1))
            redirect = _UDDG_RE.search(url)
            if redirect:
                url = unquote(redirect.group(1))
            results.append(WebSearchResult(
                title=_strip_tags(match.group(2)),
                url=url,
                snippet=_strip_tags(match.group(3)),
            ))
        return results

    def fetch_reddit_sentiment(self, coins: List[str]) -> List[RedditPost]:
        """Top 15 non-stickied hot posts across the coins' subreddits."""
        subreddits: List[str] = []
        for coin in coins:
            base = coin.split("/")[0].upper()
            for sub in COIN_SUBREDDITS.get(base, DEFAULT_SUBREDDITS):
                if sub not in subreddits:
                    subreddits.append(sub)

        posts: List[RedditPost] = []
        for index, subreddit in enumerate(subreddits):
            try:
                response = self.session.get(
                    REDDIT_URL.format(subreddit=subreddit),
                    params={"limit": 10},
                    headers={"User-Agent": f"{self.config.user_agent} (crypto sentiment monitor)"},
                    timeout=self.config.timeout_seconds,
                )
                response.raise_for_status()
                children = (response.json().get("data") or {}).get("children") or []
            except (requests.RequestException, ValueError) as e:
                self._once.warning(f"Reddit r/{subreddit} failed: {e}")
                children = []

            for child in children:
                post = (child or {}).get("data") or {}
                if not post or post.get("stickied"):
                    continue
                posts.append(RedditPost(
                    title=post.get("title") or "",
                    score=int(post.get("score") or 0),
                    num_comments=int(post.get("num_comments") or 0),
                    selftext=(post.get("selftext") or "")[:300],
                    created_utc=float(post.get("created_utc") or 0),
                    subreddit=post.get("subreddit") or subreddit,
                    permalink=post.get("permalink") or "",
                ))

            if index < len(subreddits) - 1 and self.config.reddit_delay_seconds:
                self._sleep(self.config.reddit_delay_seconds)

        posts.sort(key=lambda p: p.score, reverse=True)
        return posts[:15]

    def fetch_crypto_news(self, coins: List[str]) -> List[NewsItem]:
        """CryptoPanic headlines for the coins; requires an API key."""
        api_key = os.getenv(self.config.cryptopanic_api_key_env, "")
        if not api_key:
            return []

        currencies = ",".join(sorted({c.split("/")[0].upper() for c in coins}))
        try:
            response = self.session.get(
                CRYPTOPANIC_URL,
                params={"auth_token": api_key, "currencies": currencies, "kind": "news", "public": "true"},
                timeout=self.config.timeout_seconds,
            )
            response.raise_for_status()
            items = response.json().get("results") or []
        except (requests.RequestException, ValueError) as e:
            self._once.warning(f"CryptoPanic failed: {e}")
            return []

        news = []
        for item in items[:10]:
            votes = item.get("votes") or {}
            news.append(NewsItem(
                title=item.get("title") or "",
                url=item.get("url") or "",
                source=(item.get("source") or {}).get("title") or "Unknown",
                published_at=item.get("published_at") or "",
                votes_positive=int(votes.get("positive") or 0),
                votes_negative=int(votes.get("negative") or 0),
                votes_important=int(votes.get("important") or 0),
            ))
        return news
