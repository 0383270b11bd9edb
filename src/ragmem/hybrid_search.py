"""
RagMem Hybrid Search -- vector similarity seeds expanded one hop through the graph.

1. Seed: the top ``2 * limit`` entities and/or chunks by cosine similarity.
2. Expand (``use_graph``): every seed entity contributes its one-hop
   neighbours (both directions, at most ``neighbor_cap`` each) with score
   ``parent * decay``, and every included entity contributes its linked
   chunks the same way. A node reached from several parents keeps its best
   propagated score; direct hits always keep their similarity score.
3. Rank by score descending, then id ascending, and cut to ``limit``.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from ragmem.config import DEFAULT_GRAPH_DECAY, DEFAULT_NEIGHBOR_CAP
from ragmem.document_store import DocumentStore
from ragmem.errors import ValidationError
from ragmem.graph_store import EntityGraphStore

logger = logging.getLogger("ragmem.hybrid_search")

KIND_ENTITY = "entity"
KIND_CHUNK = "chunk"

Key = Tuple[str, str]


def _rank_key(hit: Dict[str, Any]):
    return (-hit["score"], hit["id"], hit["kind"])


class HybridSearchEngine:
    """Ranks entities and chunks for a query using both embeddings and relations."""

    def __init__(
        self,
        graph: EntityGraphStore,
        documents: DocumentStore,
        decay: float = DEFAULT_GRAPH_DECAY,
        neighbor_cap: int = DEFAULT_NEIGHBOR_CAP,
    ):
        if not 0.0 < decay < 1.0:
            raise ValidationError(f"decay must be in (0, 1), got {decay}")
        if neighbor_cap < 1:
            raise ValidationError(f"neighbor_cap must be >= 1, got {neighbor_cap}")
        self.graph = graph
        self.documents = documents
        self.decay = decay
        self.neighbor_cap = neighbor_cap

    def hybrid_search(
        self,
        query: str,
        limit: int = 10,
        use_graph: bool = True,
        include_documents: bool = True,
        include_entities: bool = True,
    ) -> List[Dict[str, Any]]:
        if not isinstance(query, str) or not query.strip():
            raise ValidationError("'query' must be a non-empty string")
        if not isinstance(limit, int) or isinstance(limit, bool) or limit < 1:
            raise ValidationError(f"'limit' must be a positive integer, got {limit!r}")
        if not include_documents and not include_entities:
            return []

        vector = self.graph.embedder.embed(query)
        db = self.graph.backend
        seed_size = 2 * limit

        seeds: List[Dict[str, Any]] = []
        if include_entities:
            seeds.extend(
                {"kind": KIND_ENTITY, "id": name, "score": score, "source": "direct"}
                for name, score in self.graph.nearest_entities(vector, seed_size, db)
            )
        if include_documents:
            seeds.extend(
                {"kind": KIND_CHUNK, "id": chunk_id, "score": score, "source": "direct"}
                for chunk_id, score in self.documents.nearest_chunks(vector, seed_size, db)
            )
        seeds.sort(key=_rank_key)
        seeds = seeds[:seed_size]

        candidates: Dict[Key, Dict[str, Any]] = {(h["kind"], h["id"]): h for h in seeds}

        if use_graph:
            self._expand(db, seeds, candidates, include_entities, include_documents)

        ranked = sorted(candidates.values(), key=_rank_key)[:limit]
        self._attach_payloads(db, ranked)
        logger.debug(
            "hybridSearch %r: %d seeds, %d candidates, %d returned",
            query[:50],
            len(seeds),
            len(candidates),
            len(ranked),
        )
        return ranked

    def _offer(self, candidates: Dict[Key, Dict[str, Any]], hit: Dict[str, Any]) -> None:
        key = (hit["kind"], hit["id"])
        current = candidates.get(key)
        if current is None:
            candidates[key] = hit
        elif current["source"] == "graph" and hit["score"] > current["score"]:
            candidates[key] = hit

    def _expand(self, db, seeds, candidates, include_entities: bool, include_documents: bool) -> None:
        seed_entities = [(h["id"], h["score"]) for h in seeds if h["kind"] == KIND_ENTITY]
        # Entities whose linked chunks get pulled in, with the score they pass on.
        linking: Dict[str, float] = {}

        for name, score in seed_entities:
            linking[name] = max(linking.get(name, score), score)
            for neighbor, relation in self.graph.neighbors(name, self.neighbor_cap, db):
                propagated = score * self.decay
                if include_entities:
                    self._offer(candidates, {
                        "kind": KIND_ENTITY,
                        "id": neighbor,
                        "score": propagated,
                        "source": "graph",
                        "via": name,
                        "relation": relation,
                    })
                if (KIND_ENTITY, neighbor) not in candidates or candidates[(KIND_ENTITY, neighbor)]["source"] == "graph":
                    linking[neighbor] = max(linking.get(neighbor, propagated), propagated)

        if not include_documents or not linking:
            return
        for entity_name, chunk_id in self.documents.chunks_linked_to(sorted(linking), db):
            self._offer(candidates, {
                "kind": KIND_CHUNK,
                "id": chunk_id,
                "score": linking[entity_name] * self.decay,
                "source": "graph",
                "via": entity_name,
            })

    def _attach_payloads(self, db, ranked: List[Dict[str, Any]]) -> None:
        entities = self.graph.get_entities([h["id"] for h in ranked if h["kind"] == KIND_ENTITY], db)
        chunks = self.documents.get_chunks([h["id"] for h in ranked if h["kind"] == KIND_CHUNK], db)
        for hit in ranked:
            source = entities if hit["kind"] == KIND_ENTITY else chunks
            payload: Optional[Dict[str, Any]] = source.get(hit["id"])
            if payload is not None and hit["kind"] == KIND_ENTITY:
                payload = {k: payload[k] for k in ("name", "entityType", "observations")}
            hit["payload"] = payload

    def get_knowledge_graph_stats(self) -> Dict[str, Any]:
        """Read-only counts over the active database."""
        db = self.graph.backend

        def count(sql: str) -> int:
            return int(db.scalar(sql) or 0)

        by_type = {
            row[0]: int(row[1])
            for row in db.fetchall(
                "SELECT entity_type, COUNT(*) FROM entities GROUP BY entity_type ORDER BY entity_type"
            )
        }
        return {
            "database": db.database_name,
            "backend": db.dialect,
            "entities": count("SELECT COUNT(*) FROM entities"),
            "relations": count("SELECT COUNT(*) FROM relations"),
            "documents": count("SELECT COUNT(*) FROM documents"),
            "chunks": count("SELECT COUNT(*) FROM chunks"),
            "links": count("SELECT COUNT(*) FROM entity_chunk_links"),
            "embeddings": {
                "entities": count("SELECT COUNT(*) FROM entities WHERE embedding IS NOT NULL"),
                "chunks": count("SELECT COUNT(*) FROM chunks WHERE embedding IS NOT NULL"),
            },
            "entityTypes": by_type,
            "embeddingModel": self.graph.embedder.info(),
        }
