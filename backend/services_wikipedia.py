"""
Summary and image lookup.

Wikipedia is searched for the best matching article, whose intro extract,
thumbnail and page id become the node's summary, image and external ref.
Titles without an article image get one more attempt as a film title, then
a Google Books cover as a last resort.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

import httpx

from config import GOOGLE_BOOKS_API_URL, WIKIPEDIA_API_URL
from models_graph import Enrichment
from services_external_calls import request_json

logger = logging.getLogger("constellations")

THUMBNAIL_SIZE_PX = 300
SUMMARY_SENTENCES = 4
USER_AGENT = "constellations/0.1 (graph explorer)"


class WikipediaClient:
    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        api_url: str = WIKIPEDIA_API_URL,
        books_url: str = GOOGLE_BOOKS_API_URL,
    ):
        self._client = client or httpx.AsyncClient(
            timeout=10.0, follow_redirects=True, headers={"User-Agent": USER_AGENT}
        )
        self.api_url = api_url
        self.books_url = books_url

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _search_top_title(self, query: str) -> Optional[str]:
        data = await request_json(
            self._client,
            "GET",
            self.api_url,
            service="wikipedia",
            params={
                "action": "query",
                "format": "json",
                "list": "search",
                "srsearch": query,
                "srlimit": 1,
            },
        )
        hits = (data.get("query") or {}).get("search") or []
        return hits[0].get("title") if hits else None

    async def _page_details(self, title: str) -> Tuple[Optional[str], Optional[str], Optional[str]]:
        """(extract, thumbnail url, page id) for an article title."""
        data = await request_json(
            self._client,
            "GET",
            self.api_url,
            service="wikipedia",
            params={
                "action": "query",
                "format": "json",
                "prop": "extracts|pageimages",
                "exintro": 1,
                "explaintext": 1,
                "exsentences": SUMMARY_SENTENCES,
                "pithumbsize": THUMBNAIL_SIZE_PX,
                "titles": title,
                "redirects": 1,
            },
        )
        pages: Dict[str, Any] = (data.get("query") or {}).get("pages") or {}
        for page_id, page in pages.items():
            if str(page_id).startswith("-"):
                continue
            extract = (page.get("extract") or "").strip() or None
            thumbnail = (page.get("thumbnail") or {}).get("source")
            return extract, thumbnail, str(page.get("pageid") or page_id)
        return None, None, None

    async def _book_cover(self, query: str) -> Optional[str]:
        # intitle first: stricter match, good for book versions of films
        for q in (f"intitle:{query}", query):
            data = await request_json(
                self._client,
                "GET",
                self.books_url,
                service="google_books",
                params={"q": q, "maxResults": 1},
            )
            items = data.get("items") or []
            thumbnail = (((items[0] if items else {}).get("volumeInfo") or {}).get("imageLinks") or {}).get("thumbnail")
            if thumbnail:
                return thumbnail.replace("http://", "https://")
        return None

    async def lookup(self, title: str, context_hint: Optional[str] = None) -> Enrichment:
        """
        Summary, image and external ref for `title`.

        `context_hint` (e.g. the title of the node it was discovered from)
        only narrows the search; it is not part of the identity.
        """
        query = f"{title} {context_hint}".strip() if context_hint else title
        top = await self._search_top_title(query)
        if top is None and context_hint:
            top = await self._search_top_title(title)

        summary = image_url = external_ref = None
        if top:
            summary, image_url, external_ref = await self._page_details(top)

        if not image_url and "(" not in title:
            film = await self._search_top_title(f"{title} (film)")
            if film and film != top:
                _, image_url, _ = await self._page_details(film)

        if not image_url:
            image_url = await self._book_cover(title)

        logger.debug(f"[wikipedia] {title!r} -> article={top!r} image={'yes' if image_url else 'no'}")
        return Enrichment(summary=summary, image_url=image_url, external_ref=external_ref)
