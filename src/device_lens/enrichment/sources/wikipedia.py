"""
Wikipedia enrichment source.

Searches English Wikipedia with the MediaWiki API and returns the page summary
(extract, description, lead image and page URL) of the best match.
"""

from __future__ import annotations
import logging
from typing import Any, Optional
from urllib.parse import quote

import httpx

from ...errors import DeviceNotFoundError, FetchTimeout, NetworkError
from ...models import DeviceIdentity

logger = logging.getLogger(__name__)

WIKIPEDIA_API_URL = "https://en.wikipedia.org/w/api.php"
WIKIPEDIA_SUMMARY_URL = "https://en.wikipedia.org/api/rest_v1/page/summary/"

# Words that only add noise to a search query
_NOISE_WORDS = {"corp", "corp.", "corporation", "inc", "inc.", "co.", "ltd", "ltd."}


def make_search_query(identity: DeviceIdentity) -> str:
    """Search terms from the manufacturer and model, minus corporate suffixes."""
    words = []
    for part in (identity.manufacturer, identity.model):
        if part:
            words.extend(w for w in part.replace(",", " ").split() if w.lower() not in _NOISE_WORDS)
    return " ".join(words)


class WikipediaSource:
    """EnrichmentSource backed by the Wikipedia API."""

    def __init__(
        self,
        timeout: float = 30.0,
        user_agent: str = "device-lens",
        client: Optional[httpx.AsyncClient] = None,
        name: str = "wikipedia",
    ):
        self.name = name
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={"User-Agent": user_agent},
            follow_redirects=True,
        )

    def supports(self, identity: DeviceIdentity) -> bool:
        return bool(identity.model)

    async def _get_json(self, url: str, params: Optional[dict[str, str]] = None) -> Any:
        try:
            response = await self._client.get(url, params=params)
        except httpx.TimeoutException as e:
            raise FetchTimeout(f"Timed out querying {url}", source=self.name) from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Failed to query {url}: {e}", source=self.name) from e

        if response.status_code == 404:
            return None
        if not response.is_success:
            raise NetworkError(f"HTTP error: {response.status_code} for {url}", source=self.name)
        try:
            return response.json()
        except ValueError as e:
            raise NetworkError(f"Malformed response from {url}", source=self.name) from e

    async def search_page(self, query: str) -> Optional[str]:
        """Title of the best search hit, or None."""
        data = await self._get_json(
            WIKIPEDIA_API_URL,
            params={
                "action": "query",
                "list": "search",
                "srsearch": query,
                "srlimit": "5",
                "format": "json",
            },
        )
        results = ((data or {}).get("query") or {}).get("search") or []
        if not results:
            return None
        return results[0].get("title")

    async def fetch_summary(self, title: str) -> Optional[dict[str, Any]]:
        return await self._get_json(WIKIPEDIA_SUMMARY_URL + quote(title.replace(" ", "_"), safe=""))

    async def query(self, identity: DeviceIdentity) -> dict[str, Any]:
        search = make_search_query(identity)
        logger.debug(f"Wikipedia search query: {search}")

        title = await self.search_page(search)
        if not title:
            raise DeviceNotFoundError(f"No Wikipedia article found for {search!r}")

        summary = await self.fetch_summary(title)
        if not summary:
            raise DeviceNotFoundError(f"No summary available for Wikipedia article {title!r}")

        page_url = (
            ((summary.get("content_urls") or {}).get("desktop") or {}).get("page")
            or f"https://en.wikipedia.org/wiki/{quote(title.replace(' ', '_'))}"
        )
        payload: dict[str, Any] = {
            "title": summary.get("title", title),
            "description": summary.get("extract") or summary.get("description"),
            "product_page": page_url,
            "source_url": page_url,
        }
        image = summary.get("originalimage") or summary.get("thumbnail")
        if image and image.get("source"):
            payload["image_url"] = image["source"]
        return {k: v for k, v in payload.items() if v}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
