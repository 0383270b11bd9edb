"""Tests for the entity graph store: entities, observations, relations, similarity."""
import json

import pytest

from ragmem.errors import ValidationError
from ragmem.graph_store import AUTO_ENTITY_TYPE, entity_text


def _names(entities):
    return [e["name"] for e in entities]


class TestEntities:
    """createEntities / deleteEntities."""

    def test_create_and_read_back(self, graph):
        created = graph.create_entities([
            {"name": "Alice", "entityType": "PERSON", "observations": ["works at Acme"]},
            {"name": "Acme", "entityType": "ORG"},
        ])
        assert _names(created) == ["Alice", "Acme"]
        found = graph.get_entities(["Alice", "Acme"])
        assert found["Alice"]["observations"] == ["works at Acme"]
        assert found["Acme"]["observations"] == []
        assert found["Acme"]["entityType"] == "ORG"

    def test_existing_names_are_skipped(self, graph):
        graph.create_entities([{"name": "Alice", "entityType": "PERSON", "observations": ["first"]}])
        created = graph.create_entities([
            {"name": "Alice", "entityType": "ROBOT", "observations": ["second"]},
            {"name": "Bob", "entityType": "PERSON"},
        ])
        assert _names(created) == ["Bob"]
        alice = graph.get_entities(["Alice"])["Alice"]
        assert alice["entityType"] == "PERSON"
        assert alice["observations"] == ["first"]

    def test_first_occurrence_in_batch_wins(self, graph):
        created = graph.create_entities([
            {"name": "Dup", "entityType": "A"},
            {"name": "Dup", "entityType": "B"},
        ])
        assert len(created) == 1
        assert graph.get_entities(["Dup"])["Dup"]["entityType"] == "A"

    def test_observations_deduplicated_in_order(self, graph):
        graph.create_entities([{"name": "X", "entityType": "T", "observations": ["b", "a", "b"]}])
        assert graph.get_entities(["X"])["X"]["observations"] == ["b", "a"]

    @pytest.mark.parametrize("bad", [
        {"entityType": "T"},
        {"name": "", "entityType": "T"},
        {"name": "X"},
        {"name": "X", "entityType": "T", "observations": "not a list"},
    ])
    def test_invalid_entity_rejected(self, graph, bad):
        with pytest.raises(ValidationError):
            graph.create_entities([bad])

    def test_delete_cascades_relations(self, graph):
        graph.create_relations([
            {"from": "A", "to": "B", "relationType": "knows"},
            {"from": "B", "to": "C", "relationType": "knows"},
        ])
        result = graph.delete_entities(["B", "Ghost"])
        assert result == {"deleted": ["B"], "notFound": ["Ghost"]}
        dump = graph.read_graph()
        assert _names(dump["entities"]) == ["A", "C"]
        assert dump["relations"] == []


class TestObservations:
    """addObservations / deleteObservations."""

    def test_add_appends_only_new(self, graph):
        graph.create_entities([{"name": "X", "entityType": "T", "observations": ["one"]}])
        result = graph.add_observations([{"entityName": "X", "contents": ["one", "two", "two", "three"]}])
        assert result["errors"] == []
        assert result["results"] == [{"entityName": "X", "addedObservations": ["two", "three"]}]
        assert graph.get_entities(["X"])["X"]["observations"] == ["one", "two", "three"]

    def test_add_to_missing_entity_reports_error(self, graph):
        graph.create_entities([{"name": "X", "entityType": "T"}])
        result = graph.add_observations([
            {"entityName": "Nope", "contents": ["a"]},
            {"entityName": "X", "contents": ["b"]},
        ])
        assert [r["entityName"] for r in result["results"]] == ["X"]
        assert result["errors"][0]["entityName"] == "Nope"
        assert result["errors"][0]["error"]["code"] == "not_found"

    def test_embedding_refreshed_when_observations_change(self, graph, embedder):
        graph.create_entities([{"name": "X", "entityType": "T"}])
        embedder.batches.clear()
        graph.add_observations([{"entityName": "X", "contents": ["fresh fact"]}])
        assert [entity_text("X", ["fresh fact"])] in embedder.batches

    def test_no_reembed_when_nothing_changes(self, graph, embedder):
        graph.create_entities([{"name": "X", "entityType": "T", "observations": ["same"]}])
        embedder.batches.clear()
        graph.add_observations([{"entityName": "X", "contents": ["same"]}])
        assert embedder.batches == []

    def test_embedding_computed_outside_write_transaction(self, graph, embedder, monkeypatch):
        graph.create_entities([{"name": "X", "entityType": "T"}])
        depths = []
        original = embedder.embed_batch

        def recording(texts):
            depths.append(graph.backend._tx_depth)
            return original(texts)

        monkeypatch.setattr(embedder, "embed_batch", recording)
        graph.add_observations([{"entityName": "X", "contents": ["new fact"]}])
        assert depths == [0]

    def test_concurrent_change_is_retried(self, graph, embedder, monkeypatch):
        graph.create_entities([{"name": "X", "entityType": "T", "observations": ["a"]}])
        original = embedder.embed_batch
        interfered = []

        def racing(texts):
            if not interfered:
                interfered.append(texts)
                graph.backend.execute(
                    "UPDATE entities SET observations = ? WHERE name = ?", (json.dumps(["a", "other"]), "X")
                )
            return original(texts)

        monkeypatch.setattr(embedder, "embed_batch", racing)
        result = graph.add_observations([{"entityName": "X", "contents": ["b"]}])
        assert result["errors"] == []
        assert result["results"] == [{"entityName": "X", "addedObservations": ["b"]}]
        assert graph.get_entities(["X"])["X"]["observations"] == ["a", "other", "b"]

    def test_entity_deleted_mid_rewrite_reports_not_found(self, graph, embedder, monkeypatch):
        graph.create_entities([{"name": "X", "entityType": "T"}])
        original = embedder.embed_batch

        def deleting(texts):
            graph.backend.execute("DELETE FROM entities WHERE name = ?", ("X",))
            return original(texts)

        monkeypatch.setattr(embedder, "embed_batch", deleting)
        result = graph.add_observations([{"entityName": "X", "contents": ["late"]}])
        assert result["results"] == []
        assert result["errors"][0]["error"]["code"] == "not_found"

    def test_delete_observations(self, graph):
        graph.create_entities([{"name": "X", "entityType": "T", "observations": ["a", "b", "c"]}])
        result = graph.delete_observations([{"entityName": "X", "observations": ["b", "zzz"]}])
        assert result["results"] == [{"entityName": "X", "deletedObservations": ["b"]}]
        assert graph.get_entities(["X"])["X"]["observations"] == ["a", "c"]


class TestRelations:
    """createRelations / deleteRelations and graph dumps."""

    def test_missing_endpoints_auto_created(self, graph):
        result = graph.create_relations([{"from": "Alice", "to": "Acme", "relationType": "works_at"}])
        assert result["created"] == [{"from": "Alice", "to": "Acme", "relationType": "works_at"}]
        found = graph.get_entities(["Alice", "Acme"])
        assert {e["entityType"] for e in found.values()} == {AUTO_ENTITY_TYPE}
        assert all(e["observations"] == [] for e in found.values())

    def test_existing_endpoint_untouched(self, graph):
        graph.create_entities([{"name": "Alice", "entityType": "PERSON", "observations": ["hi"]}])
        graph.create_relations([{"from": "Alice", "to": "Acme", "relationType": "works_at"}])
        alice = graph.get_entities(["Alice"])["Alice"]
        assert alice["entityType"] == "PERSON"
        assert alice["observations"] == ["hi"]

    def test_duplicate_relation_is_noop(self, graph):
        rel = {"from": "A", "to": "B", "relationType": "r"}
        graph.create_relations([rel])
        result = graph.create_relations([rel])
        assert result["created"] == []
        assert result["existing"] == [rel]
        assert len(graph.read_graph()["relations"]) == 1

    def test_invalid_relation_reported_per_item(self, graph):
        result = graph.create_relations([
            {"from": "A", "to": "", "relationType": "r"},
            {"from": "A", "to": "B", "relationType": "r"},
        ])
        assert len(result["created"]) == 1
        assert result["errors"][0]["error"]["code"] == "validation"

    def test_delete_relations(self, graph):
        rel = {"from": "A", "to": "B", "relationType": "r"}
        graph.create_relations([rel])
        missing = {"from": "B", "to": "A", "relationType": "r"}
        result = graph.delete_relations([rel, missing])
        assert result == {"deleted": [rel], "notFound": [missing]}
        # Endpoints survive their relations.
        assert set(graph.get_entities(["A", "B"])) == {"A", "B"}

    def test_open_nodes_includes_edges_and_not_found(self, graph):
        graph.create_relations([
            {"from": "A", "to": "B", "relationType": "r"},
            {"from": "C", "to": "A", "relationType": "s"},
        ])
        dump = graph.open_nodes(["A", "Missing"])
        assert _names(dump["entities"]) == ["A"]
        assert dump["notFound"] == ["Missing"]
        a = dump["entities"][0]
        assert a["outgoing"] == [{"from": "A", "to": "B", "relationType": "r"}]
        assert a["incoming"] == [{"from": "C", "to": "A", "relationType": "s"}]
        assert len(dump["relations"]) == 2

    def test_neighbors_both_directions_capped(self, graph):
        graph.create_relations([
            {"from": "Hub", "to": f"N{i}", "relationType": "r"} for i in range(5)
        ] + [{"from": "In", "to": "Hub", "relationType": "r"}])
        neighbors = graph.neighbors("Hub", cap=3)
        assert [n for n, _ in neighbors] == ["In", "N0", "N1"]
        assert len(graph.neighbors("Hub", cap=100)) == 6


class TestSearchNodes:
    """searchNodes similarity ranking."""

    def test_most_similar_entity_first(self, graph):
        graph.create_entities([
            {"name": "Python", "entityType": "LANG", "observations": ["snake themed programming language"]},
            {"name": "Cooking", "entityType": "HOBBY", "observations": ["pasta and sauces"]},
        ])
        hits = graph.search_nodes("programming language", node_types=["entity"], limit=2)
        assert hits[0]["id"] == "Python"
        assert hits[0]["type"] == "entity"
        assert hits[0]["score"] >= hits[1]["score"]

    def test_limit_respected(self, graph):
        graph.create_entities([{"name": f"E{i}", "entityType": "T"} for i in range(5)])
        assert len(graph.search_nodes("E1", limit=3)) == 3

    def test_unknown_node_type_rejected(self, graph):
        with pytest.raises(ValidationError):
            graph.search_nodes("q", node_types=["planet"])

    def test_empty_graph_returns_nothing(self, graph):
        assert graph.search_nodes("anything") == []
