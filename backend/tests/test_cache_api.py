"""
Tests for the cache store HTTP surface (/node, /expansion, /admin/duplicates).
"""
from services_context_fingerprint import context_fingerprint


def _node(client, title, type_="Thing", **extra):
    response = client.post("/node", json={"title": title, "type": type_, **extra})
    assert response.status_code == 200
    return response.json()["id"]


class TestNodeEndpoints:
    """POST /node and GET /node/{id}"""

    def test_upsert_is_idempotent(self, client):
        first = _node(client, "Apollo 11")
        second = _node(client, "apollo 11")
        assert first == second

    def test_type_is_part_of_identity(self, client):
        assert _node(client, "Madonna", "Person") != _node(client, "Madonna", "Thing")

    def test_unknown_type_is_a_thing(self, client):
        node_id = _node(client, "The Moon Landing", "Event")
        assert client.get(f"/node/{node_id}").json()["type"] == "Thing"

    def test_get_node_is_camel_case(self, client):
        node_id = _node(client, "Inception", externalRef="12345", imageUrl="https://img/x.jpg", year=2010)
        data = client.get(f"/node/{node_id}").json()
        assert data["id"] == node_id
        assert data["externalRef"] == "12345"
        assert data["imageUrl"] == "https://img/x.jpg"
        assert data["year"] == 2010

    def test_optional_fields_are_not_blanked(self, client):
        node_id = _node(client, "Inception", summary="A heist film.")
        _node(client, "Inception")
        assert client.get(f"/node/{node_id}").json()["summary"] == "A heist film."

    def test_missing_node_is_404(self, client):
        response = client.get("/node/999")
        assert response.status_code == 404
        assert "999" in response.json()["detail"]


class TestExpansionEndpoints:
    """GET/POST /expansion"""

    def test_write_then_exact_lookup(self, client):
        source = _node(client, "Apollo 11")
        write = client.post(
            "/expansion",
            json={
                "sourceId": source,
                "context": [],
                "nodes": [
                    {"title": "Neil Armstrong", "type": "Person", "label": "Commander"},
                    {"title": "Buzz Aldrin", "type": "Person"},
                ],
            },
        )
        assert write.status_code == 200
        assert write.json()["ok"] is True
        assert len(write.json()["targetIds"]) == 2

        lookup = client.get("/expansion", params={"sourceId": source})
        data = lookup.json()
        assert data["hit"] == "exact"
        assert [n["title"] for n in data["nodes"]] == ["Neil Armstrong", "Buzz Aldrin"]
        assert data["nodes"][0]["label"] == "Commander"
        assert data["nodes"][0]["id"] == write.json()["targetIds"][0]

    def test_context_is_repeatable_and_may_contain_commas(self, client):
        source = _node(client, "Crosby, Stills & Nash", "Thing")
        context = ["Stephen Stills", "Crosby, David"]
        client.post(
            "/expansion",
            json={"sourceId": source, "context": context, "nodes": [{"title": "Woodstock"}]},
        )
        data = client.get("/expansion", params=[("sourceId", source)] + [("context", c) for c in context]).json()
        assert data["hit"] == "exact"
        assert sorted(data["matchedContext"]) == ["crosby, david", "stephen stills"]

    def test_context_hash_alone_is_enough(self, client):
        source = _node(client, "Apollo 11")
        client.post(
            "/expansion",
            json={"sourceId": source, "context": ["Apollo 12"], "nodes": [{"title": "Pete Conrad", "type": "Person"}]},
        )
        data = client.get(
            "/expansion",
            params={"sourceId": source, "contextHash": context_fingerprint(["apollo 12"])},
        ).json()
        assert data["hit"] == "exact"

    def test_partial_hit_above_threshold(self, client):
        source = _node(client, "Apollo 11")
        client.post(
            "/expansion",
            json={"sourceId": source, "context": ["a", "b", "c"], "nodes": [{"title": "X"}]},
        )
        params = [("sourceId", source), ("context", "a"), ("context", "b")]
        data = client.get("/expansion", params=params).json()
        assert data["hit"] == "partial"
        assert abs(data["score"] - 2 / 3) < 1e-9

        strict = client.get("/expansion", params=params + [("minSimilarity", 0.9)]).json()
        assert strict["hit"] == "miss"
        assert strict["nodes"] == []

    def test_unknown_source_is_404(self, client):
        response = client.post("/expansion", json={"sourceId": 4242, "context": [], "nodes": [{"title": "X"}]})
        assert response.status_code == 404

    def test_similarity_out_of_range_is_422(self, client):
        response = client.get("/expansion", params={"sourceId": 1, "minSimilarity": 1.5})
        assert response.status_code == 422


class TestDuplicateAdmin:
    """GET /admin/duplicates and POST /admin/duplicates/merge"""

    def test_dry_run_then_apply(self, client):
        keep = _node(client, "Star Wars", externalRef="ref-1")
        dup = _node(client, "star wars (1977 film)", externalRef="ref-1")
        assert keep != dup

        preview = client.get("/admin/duplicates").json()
        assert preview["dryRun"] is True
        assert preview["groups"][0]["keepId"] == keep
        assert preview["groups"][0]["mergeIds"] == [dup]

        dry = client.post("/admin/duplicates/merge").json()
        assert dry["mergedNodeCount"] == 0
        assert client.get(f"/node/{dup}").status_code == 200

        applied = client.post("/admin/duplicates/merge", params={"dryRun": "false"}).json()
        assert applied["mergedNodeCount"] == 1
        assert client.get(f"/node/{dup}").status_code == 404
        assert client.get("/admin/duplicates").json()["groups"] == []
