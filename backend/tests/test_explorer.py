"""
Tests for the explorer session wiring: layout follows the graph, viewport
enrichment, delete/prune and document load.
"""
import pytest

from models_graph import Enrichment, LayoutMode
from services_explorer import GraphExplorer
from services_graph_documents import IncompatibleGraphDocumentError
from services_layout import Viewport
from tests.fakes import person, thing


def _explorer(provider, cache=None):
    return GraphExplorer(provider, cache, width=800, height=600, seed=11)


class TestExplorer:
    @pytest.mark.asyncio
    async def test_layout_tracks_graph(self, provider):
        provider.neighbors["Heat"] = [person("Al Pacino"), person("Robert De Niro")]
        explorer = _explorer(provider)

        await explorer.search("Heat")

        assert {n.id for n in explorer.layout.nodes} == {n.id for n in explorer.store.nodes}
        assert len(explorer.layout.links) == 2
        assert all(n.layout.has_position for n in explorer.store.nodes)
        assert explorer.selected_id == explorer.origin_id
        await explorer.aclose()

    @pytest.mark.asyncio
    async def test_new_nodes_in_view_are_enriched(self, provider):
        provider.neighbors["Heat"] = [person("Al Pacino")]
        provider.enrichments["Al Pacino"] = Enrichment(image_url="https://img/pacino.jpg")
        explorer = _explorer(provider)
        explorer.viewport_changed(Viewport(width=800, height=600))

        await explorer.search("Heat")
        await explorer.scheduler.drain()

        pacino = explorer.store.find_by_title("Al Pacino")
        assert pacino.image_url == "https://img/pacino.jpg"
        assert pacino.image_checked
        await explorer.aclose()

    @pytest.mark.asyncio
    async def test_prune_keeps_selected_and_origin(self, provider):
        provider.neighbors["Heat"] = [person("Al Pacino"), person("Robert De Niro")]
        explorer = _explorer(provider)
        await explorer.search("Heat")

        removed = explorer.prune()

        assert len(removed) == 2
        assert [n.id for n in explorer.store.nodes] == [explorer.origin_id]
        await explorer.aclose()

    @pytest.mark.asyncio
    async def test_delete_clears_origin_when_dropped(self, provider):
        provider.neighbors["Heat"] = [person("Al Pacino")]
        provider.neighbors["Al Pacino"] = [thing("Scarface"), thing("The Godfather")]
        explorer = _explorer(provider)
        await explorer.search("Heat")
        pacino = explorer.store.find_by_title("Al Pacino")
        await explorer.select(pacino.id)

        preview = explorer.preview_delete(pacino.id)
        assert len(explorer.store) == 4
        outcome = explorer.delete(pacino.id)

        assert outcome.dropped_ids == preview.dropped_ids
        assert len(explorer.store) == 1
        assert explorer.selected_id is None
        await explorer.aclose()

    @pytest.mark.asyncio
    async def test_mode_switch_reconfigures_layout(self, provider):
        explorer = _explorer(provider)
        explorer.set_layout_mode(LayoutMode.TIMELINE)
        explorer.set_compact(True)
        explorer.set_text_only(True)
        assert explorer.layout.mode is LayoutMode.TIMELINE
        assert explorer.compact and explorer.text_only
        assert explorer.scheduler.text_only
        await explorer.aclose()

    @pytest.mark.asyncio
    async def test_document_round_trip_and_refusal(self, provider):
        provider.neighbors["Heat"] = [person("Al Pacino")]
        explorer = _explorer(provider)
        await explorer.search("Heat")
        explorer.set_layout_mode(LayoutMode.TIMELINE)
        explorer.settle(50)
        document = explorer.to_document()

        other = _explorer(provider)
        other.load_document(document)
        assert {n.id for n in other.store.nodes} == {n.id for n in explorer.store.nodes}
        assert other.mode is LayoutMode.TIMELINE
        saved = {n["id"]: (n["x"], n["y"]) for n in document["nodes"]}
        assert all((n.layout.x, n.layout.y) == saved[n.id] for n in other.store.nodes)

        with pytest.raises(IncompatibleGraphDocumentError):
            other.load_document({"nodes": [{"id": "Heat", "title": "Heat"}], "links": []})
        assert len(other.store) == 2
        await explorer.aclose()
        await other.aclose()
