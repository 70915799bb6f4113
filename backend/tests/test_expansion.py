"""
Tests for the expansion orchestrator: single-flight expansion, cache reuse,
failure handling, stale results and path discovery.
"""
import asyncio

import httpx
import pytest

from models_graph import Enrichment, GraphNode, NodeType
from services_cache_client import CacheStoreClient
from services_expansion import (
    MSG_FAILED,
    MSG_NO_RESULTS,
    MSG_TIMEOUT,
    ExpansionOrchestrator,
    ExpansionStatus,
)
from services_external_calls import ExternalCallError, ExternalCallTimeout
from services_graph_store import GraphStore
from tests.fakes import FakeProvider, person, thing

APOLLO_CREW = [person("Neil Armstrong", role="Commander"), person("Buzz Aldrin"), person("Michael Collins")]


def _offline_cache():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    http = httpx.AsyncClient(transport=httpx.MockTransport(refuse), base_url="http://cache")
    return CacheStoreClient(base_url="http://cache", client=http, max_attempts=1)


class _FlakyWrites:
    """Cache client whose expansion writes can be switched to fail."""

    def __init__(self, inner):
        self.inner = inner
        self.fail_writes = False

    def __getattr__(self, name):
        return getattr(self.inner, name)

    async def write_expansion(self, *args, **kwargs):
        if self.fail_writes:
            raise ExternalCallError("cache_store", "connection reset")
        return await self.inner.write_expansion(*args, **kwargs)


def _orchestrator(provider, cache=None, **kwargs):
    return ExpansionOrchestrator(GraphStore(), provider, cache, **kwargs)


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_expansions_make_one_round_trip(self, provider):
        provider.neighbors["Apollo 11"] = APOLLO_CREW
        orchestrator = _orchestrator(provider)
        orchestrator.store.add_node(GraphNode(id=1, title="Apollo 11"))

        first, second = await asyncio.gather(orchestrator.expand(1), orchestrator.expand(1))

        assert len(provider.neighbor_calls) == 1
        assert sorted([first.status, second.status]) == sorted([ExpansionStatus.EXPANDED, ExpansionStatus.SKIPPED])

    @pytest.mark.asyncio
    async def test_expanded_node_is_skipped(self, provider):
        orchestrator = _orchestrator(provider)
        orchestrator.store.add_node(GraphNode(id=1, title="Apollo 11", expanded=True))
        outcome = await orchestrator.expand(1)
        assert outcome.status is ExpansionStatus.SKIPPED
        assert provider.neighbor_calls == []


class TestSearchAndCache:
    @pytest.mark.asyncio
    async def test_thing_with_three_people(self, provider, cache_client):
        provider.neighbors["Apollo 11"] = APOLLO_CREW
        provider.enrichments["Neil Armstrong"] = Enrichment(
            summary="American astronaut.", image_url="https://img/armstrong.jpg", external_ref="21247"
        )
        orchestrator = _orchestrator(provider, cache_client)

        outcome = await orchestrator.start_search("Apollo 11")

        store = orchestrator.store
        assert outcome.status is ExpansionStatus.EXPANDED
        assert len(store) == 4
        assert len(store.links) == 3
        origin = store.get(orchestrator.origin_id)
        assert origin.expanded and not origin.is_loading
        new_nodes = [n for n in store.nodes if n.id != origin.id]
        assert all(n.is_committed and not n.expanded for n in new_nodes)
        assert all(n.type is NodeType.PERSON for n in new_nodes)

        armstrong = store.find_by_title("Neil Armstrong")
        assert armstrong.image_url == "https://img/armstrong.jpg"
        assert armstrong.external_ref == "21247"
        assert [l.label for l in store.links if l.touches(armstrong.id)] == ["Commander"]

    @pytest.mark.asyncio
    async def test_second_session_hits_cache(self, provider, cache_client):
        provider.neighbors["Apollo 11"] = APOLLO_CREW
        await _orchestrator(provider, cache_client).start_search("Apollo 11")

        replay = FakeProvider()
        orchestrator = _orchestrator(replay, cache_client)
        outcome = await orchestrator.start_search("Apollo 11")

        assert outcome.status is ExpansionStatus.CACHE_HIT
        assert outcome.cache_hit == "exact"
        assert replay.neighbor_calls == []
        assert len(orchestrator.store) == 4

    @pytest.mark.asyncio
    async def test_expand_more_bypasses_cache_and_excludes_known(self, provider, cache_client):
        provider.neighbors["Apollo 11"] = APOLLO_CREW
        orchestrator = _orchestrator(provider, cache_client)
        await orchestrator.start_search("Apollo 11")

        provider.neighbors["Apollo 11"] = [person("Buzz Aldrin"), person("Gene Kranz")]
        outcome = await orchestrator.expand_more(orchestrator.origin_id)

        call = provider.neighbor_calls[-1]
        assert call["exclude_known"] is True
        assert sorted(call["context"]) == ["Buzz Aldrin", "Michael Collins", "Neil Armstrong"]
        assert outcome.status is ExpansionStatus.EXPANDED
        assert len(outcome.added_ids) == 1
        assert orchestrator.store.find_by_title("Gene Kranz") is not None

    @pytest.mark.asyncio
    async def test_expand_leaves_expands_every_unexpanded_neighbor(self, provider, cache_client):
        provider.neighbors["Apollo 11"] = APOLLO_CREW
        provider.types["Neil Armstrong"] = NodeType.PERSON
        provider.neighbors["Neil Armstrong"] = [thing("Gemini 8", year=1966)]
        orchestrator = _orchestrator(provider, cache_client)
        await orchestrator.start_search("Apollo 11")

        outcomes = await orchestrator.expand_leaves(orchestrator.origin_id)

        assert len(outcomes) == 3
        assert {o.status for o in outcomes} == {ExpansionStatus.EXPANDED, ExpansionStatus.EMPTY}
        assert all(n.expanded for n in orchestrator.store.neighbors(orchestrator.origin_id))
        assert orchestrator.store.find_by_title("Gemini 8").year == 1966

    @pytest.mark.asyncio
    async def test_new_nodes_are_handed_on(self, provider, cache_client):
        provider.neighbors["Apollo 11"] = APOLLO_CREW
        seen = []
        orchestrator = _orchestrator(provider, cache_client, on_new_nodes=seen.extend)
        await orchestrator.start_search("Apollo 11")
        assert sorted(seen) == sorted(n.id for n in orchestrator.store.nodes if n.id != orchestrator.origin_id)


class TestFailures:
    @pytest.mark.asyncio
    async def test_timeout_is_not_an_empty_result(self, provider):
        provider.errors["Apollo 11"] = ExternalCallTimeout("openai", 45)
        orchestrator = _orchestrator(provider)
        orchestrator.store.add_node(GraphNode(id=1, title="Apollo 11"))

        outcome = await orchestrator.expand(1)

        node = orchestrator.store.get(1)
        assert outcome.status is ExpansionStatus.FAILED
        assert outcome.error == MSG_TIMEOUT
        assert not node.is_loading and not node.expanded

        # Retriable once the provider answers
        del provider.errors["Apollo 11"]
        provider.neighbors["Apollo 11"] = APOLLO_CREW
        assert (await orchestrator.expand(1)).status is ExpansionStatus.EXPANDED

    @pytest.mark.asyncio
    async def test_provider_error_message(self, provider):
        provider.errors["Apollo 11"] = ExternalCallError("openai", "HTTP 503")
        orchestrator = _orchestrator(provider)
        orchestrator.store.add_node(GraphNode(id=1, title="Apollo 11"))
        outcome = await orchestrator.expand(1)
        assert outcome.error == MSG_FAILED
        assert orchestrator.last_error == MSG_FAILED

    @pytest.mark.asyncio
    async def test_empty_result_is_terminal(self, provider):
        orchestrator = _orchestrator(provider)
        orchestrator.store.add_node(GraphNode(id=1, title="Obscure Thing"))

        outcome = await orchestrator.expand(1)

        assert outcome.status is ExpansionStatus.EMPTY
        assert orchestrator.store.get(1).expanded
        assert orchestrator.last_error is None

    @pytest.mark.asyncio
    async def test_initial_failure_clears_graph(self, provider, cache_client):
        orchestrator = _orchestrator(provider, cache_client)
        outcome = await orchestrator.start_search("Nothing Known")

        assert outcome.status is ExpansionStatus.FAILED
        assert len(orchestrator.store) == 0
        assert orchestrator.origin_id is None
        assert orchestrator.last_error == MSG_NO_RESULTS.format(title="Nothing Known")

    @pytest.mark.asyncio
    async def test_cache_outage_falls_back_to_placeholders(self, provider):
        provider.neighbors["Apollo 11"] = APOLLO_CREW
        orchestrator = _orchestrator(provider, _offline_cache())

        outcome = await orchestrator.start_search("Apollo 11")

        assert outcome.status is ExpansionStatus.EXPANDED
        assert len(orchestrator.store) == 4
        assert all(n.id < 0 for n in orchestrator.store.nodes)
        assert orchestrator.last_error is None

    @pytest.mark.asyncio
    async def test_placeholders_dedupe_by_title_and_type(self, provider):
        provider.neighbors["Apollo 11"] = APOLLO_CREW
        provider.types["Neil Armstrong"] = NodeType.PERSON
        provider.neighbors["Neil Armstrong"] = [thing("Gemini 8")]
        provider.neighbors["Gemini 8"] = [person("Neil Armstrong"), person("David Scott")]
        orchestrator = _orchestrator(provider)
        await orchestrator.start_search("Apollo 11")

        armstrong = orchestrator.store.find_by_title("Neil Armstrong")
        await orchestrator.expand(armstrong.id)
        gemini = orchestrator.store.find_by_title("Gemini 8")
        await orchestrator.expand(gemini.id)

        titles = [n.title for n in orchestrator.store.nodes]
        assert titles.count("Neil Armstrong") == 1
        assert orchestrator.store.has_link(gemini.id, armstrong.id)

    @pytest.mark.asyncio
    async def test_placeholder_is_committed_when_cache_recovers(self, provider, cache_client):
        provider.neighbors["Apollo 11"] = APOLLO_CREW
        provider.neighbors["Neil Armstrong"] = [thing("Gemini 8")]
        provider.neighbors["Buzz Aldrin"] = [thing("Gemini 8"), thing("Gemini 12")]
        cache = _FlakyWrites(cache_client)
        orchestrator = _orchestrator(provider, cache)
        await orchestrator.start_search("Apollo 11")
        store = orchestrator.store
        armstrong = store.find_by_title("Neil Armstrong")
        aldrin = store.find_by_title("Buzz Aldrin")

        cache.fail_writes = True
        await orchestrator.expand(armstrong.id)
        draft = store.find_by_title("Gemini 8")
        assert not draft.is_committed

        cache.fail_writes = False
        await orchestrator.expand(aldrin.id)

        geminis = [n for n in store.nodes if n.title == "Gemini 8"]
        assert len(geminis) == 1
        assert geminis[0] is draft and draft.is_committed
        assert store.has_link(armstrong.id, draft.id)
        assert store.has_link(aldrin.id, draft.id)
        assert all(n.is_committed for n in store.nodes)

    @pytest.mark.asyncio
    async def test_result_for_removed_node_is_discarded(self, provider):
        provider.neighbors["Apollo 11"] = APOLLO_CREW
        provider.gate = asyncio.Event()
        orchestrator = _orchestrator(provider)
        orchestrator.store.add_node(GraphNode(id=1, title="Apollo 11"))

        task = asyncio.create_task(orchestrator.expand(1))
        while not provider.neighbor_calls:
            await asyncio.sleep(0)
        orchestrator.store.remove_nodes([1])
        provider.gate.set()
        outcome = await task

        assert outcome.status is ExpansionStatus.DISCARDED
        assert len(orchestrator.store) == 0


class TestDiscoverPath:
    @pytest.mark.asyncio
    async def test_hops_are_attached_and_expanded_in_order(self, provider, cache_client):
        provider.types["Marie Curie"] = NodeType.PERSON
        provider.types["Albert Einstein"] = NodeType.PERSON
        provider.paths[("Marie Curie", "Albert Einstein")] = [
            thing("Marie Curie"),
            thing("Solvay Conference 1927", year=1927),
        ]
        provider.neighbors["Solvay Conference 1927"] = [person("Niels Bohr")]
        orchestrator = _orchestrator(provider, cache_client)

        outcome = await orchestrator.discover_path("Marie Curie", "Albert Einstein")

        store = orchestrator.store
        curie, solvay, einstein = (store.get(i) for i in outcome.chain_ids)
        assert outcome.status is ExpansionStatus.EXPANDED
        assert [curie.title, solvay.title, einstein.title] == ["Marie Curie", "Solvay Conference 1927", "Albert Einstein"]
        assert store.has_link(curie.id, solvay.id)
        assert store.has_link(solvay.id, einstein.id)
        assert orchestrator.origin_id == curie.id

        order = [c["title"] for c in provider.neighbor_calls]
        assert order[0] == "Solvay Conference 1927"
        assert set(order[1:]) == {"Marie Curie", "Albert Einstein"}
        assert all(n.expanded for n in (curie, solvay, einstein))

    @pytest.mark.asyncio
    async def test_no_path(self, provider):
        orchestrator = _orchestrator(provider)
        outcome = await orchestrator.discover_path("A", "B")
        assert outcome.status is ExpansionStatus.EMPTY
        assert outcome.chain_ids == []
        assert "No path found" in orchestrator.last_error
