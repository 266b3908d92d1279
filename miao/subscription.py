"""
Subscription fetching.

Downloads a Clash-style node list (YAML with a `proxies:` list), keeps the
entries whose names match the acceptance filter and converts them to Nodes.
Failures are captured per subscription as FetchError so one broken source never
blocks composition from the others.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

import httpx
import yaml

from .errors import FetchError
from .nodes import Node, from_clash_proxy

logger = logging.getLogger(__name__)

NodeFilter = Callable[[Node], bool]


def keyword_filter(keywords: list[str]) -> NodeFilter:
    """Accept nodes whose tag contains any keyword. No keywords accepts everything."""
    keywords = [k for k in keywords if k]

    def accept(node: Node) -> bool:
        if not keywords:
            return True
        return any(k in node.tag for k in keywords)

    return accept


@dataclass
class SubscriptionResult:
    """Outcome of fetching one subscription."""

    url: str
    nodes: list[Node] = field(default_factory=list)
    error: Optional[FetchError] = None
    total: int = 0  # entries in the document before filtering
    skipped: list[str] = field(default_factory=list)  # tags with unsupported protocols
    fetched_at: datetime = field(default_factory=datetime.now)

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "status": "ok" if self.ok else "error",
            "success": self.ok,
            "node_count": len(self.nodes),
            "total": self.total,
            "skipped": self.skipped,
            "error": self.error.message if self.error else None,
            "fetched_at": self.fetched_at.isoformat(),
        }


def parse_clash(url: str, text: str, accept: NodeFilter) -> SubscriptionResult:
    """Parse a Clash subscription body into a SubscriptionResult."""
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise FetchError(url, f"malformed subscription document: {e}", e)

    if not isinstance(document, dict) or not isinstance(document.get("proxies"), list):
        raise FetchError(url, "subscription document has no 'proxies' list")

    result = SubscriptionResult(url=url, total=len(document["proxies"]))
    origin = f"subscription:{url}"
    for proxy in document["proxies"]:
        if not isinstance(proxy, dict):
            continue
        node = from_clash_proxy(proxy, origin)
        if node is None or not accept(node):
            continue
        if not node.supported:
            logger.debug(f"Skipping node {node.tag} ({node.protocol})")
            result.skipped.append(node.tag)
            continue
        result.nodes.append(node)
    return result


class SubscriptionFetcher:
    """Fetches subscriptions and remembers the last result for each URL."""

    def __init__(
        self,
        user_agent: str = "clash-meta",
        timeout: float = 30.0,
        accept: NodeFilter = None,
        transport: httpx.AsyncBaseTransport = None,
    ):
        self.user_agent = user_agent
        self.timeout = timeout
        self.accept = accept or keyword_filter([])
        self._transport = transport
        self._results: dict[str, SubscriptionResult] = {}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers={"User-Agent": self.user_agent},
            timeout=self.timeout,
            follow_redirects=True,
            transport=self._transport,
        )

    async def fetch(
        self,
        url: str,
        client: httpx.AsyncClient = None,
        accept: NodeFilter = None,
    ) -> SubscriptionResult:
        """Fetch one subscription. Never raises; failures are returned in result.error.

        accept overrides the fetcher's default filter for this call.
        """
        try:
            if client is None:
                async with self._client() as own_client:
                    text = await self._download(own_client, url)
            else:
                text = await self._download(client, url)
            result = parse_clash(url, text, accept or self.accept)
            logger.info(
                f"Fetched {result.total} proxies from {url}, "
                f"accepted {len(result.nodes)}, skipped {len(result.skipped)} unsupported"
            )
        except FetchError as e:
            logger.error(f"Subscription {url} failed: {e.message}")
            result = SubscriptionResult(url=url, error=e)

        self._results[url] = result
        return result

    async def _download(self, client: httpx.AsyncClient, url: str) -> str:
        try:
            response = await client.get(url)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise FetchError(url, f"HTTP {e.response.status_code}", e)
        except httpx.HTTPError as e:
            raise FetchError(url, f"{type(e).__name__}: {e}", e)
        return response.text

    async def fetch_all(self, urls: list[str], accept: NodeFilter = None) -> list[SubscriptionResult]:
        """Fetch all subscriptions concurrently. Results keep the order of urls."""
        if not urls:
            return []
        async with self._client() as client:
            return list(await asyncio.gather(*(self.fetch(url, client, accept) for url in urls)))

    def last_result(self, url: str) -> Optional[SubscriptionResult]:
        return self._results.get(url)

    def forget(self, url: str):
        self._results.pop(url, None)

    def statuses(self, urls: list[str]) -> list[dict]:
        """Last known status for each configured subscription, in configured order."""
        statuses = []
        for url in urls:
            result = self._results.get(url)
            if result is None:
                statuses.append({
                    "url": url,
                    "status": "pending",
                    "success": False,
                    "node_count": 0,
                    "error": None,
                    "fetched_at": None,
                })
            else:
                statuses.append(result.to_dict())
        return statuses
