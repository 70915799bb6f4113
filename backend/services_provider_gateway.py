"""
Provider gateway: the single seam through which the explorer reaches its
external providers.

Every call is bounded by a timeout and fails with a typed error
(ExternalCallTimeout / ExternalCallError), never with an empty list that
could be mistaken for "no neighbors".
"""
from __future__ import annotations

from typing import List, Optional, Protocol, Sequence

from config import ENRICHMENT_TIMEOUT_SECONDS, PROVIDER_TIMEOUT_SECONDS
from models_graph import Candidate, Enrichment, NodeType
from services_entity_provider import OpenAIEntityProvider
from services_external_calls import with_timeout
from services_wikipedia import WikipediaClient


class ProviderGateway(Protocol):
    async def classify(self, title: str) -> NodeType: ...

    async def fetch_neighbors(
        self,
        title: str,
        node_type: NodeType,
        context_titles: Sequence[str] = (),
        known_summary: Optional[str] = None,
        exclude_known: bool = False,
    ) -> List[Candidate]: ...

    async def fetch_summary_and_image(self, title: str, context_hint: Optional[str] = None) -> Enrichment: ...

    async def find_path(self, start_title: str, end_title: str) -> List[Candidate]: ...


class DefaultProviderGateway:
    """OpenAI for entities, Wikipedia (with book-cover fallback) for summaries and images."""

    def __init__(
        self,
        entities: Optional[OpenAIEntityProvider] = None,
        wikipedia: Optional[WikipediaClient] = None,
        provider_timeout_s: float = PROVIDER_TIMEOUT_SECONDS,
        enrichment_timeout_s: float = ENRICHMENT_TIMEOUT_SECONDS,
    ):
        self.entities = entities or OpenAIEntityProvider()
        self.wikipedia = wikipedia or WikipediaClient()
        self.provider_timeout_s = provider_timeout_s
        self.enrichment_timeout_s = enrichment_timeout_s

    async def classify(self, title: str) -> NodeType:
        return await with_timeout(self.entities.classify(title), self.provider_timeout_s, "classify")

    async def fetch_neighbors(
        self,
        title: str,
        node_type: NodeType,
        context_titles: Sequence[str] = (),
        known_summary: Optional[str] = None,
        exclude_known: bool = False,
    ) -> List[Candidate]:
        return await with_timeout(
            self.entities.fetch_neighbors(title, node_type, context_titles, known_summary, exclude_known),
            self.provider_timeout_s,
            "fetch_neighbors",
        )

    async def fetch_summary_and_image(self, title: str, context_hint: Optional[str] = None) -> Enrichment:
        return await with_timeout(
            self.wikipedia.lookup(title, context_hint),
            self.enrichment_timeout_s,
            "summary_and_image",
        )

    async def find_path(self, start_title: str, end_title: str) -> List[Candidate]:
        return await with_timeout(
            self.entities.find_path(start_title, end_title),
            self.provider_timeout_s,
            "find_path",
        )

    async def aclose(self) -> None:
        await self.wikipedia.aclose()
