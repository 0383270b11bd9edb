"""
RagMem Entity Graph Store -- entities, observations and typed relations.

Entities are keyed by name. Each carries an ordered, duplicate-free list of
observations and an embedding of ``name + observations`` that is recomputed
whenever the observation set changes. Relations are directed ``(from, to,
type)`` edges; creating one auto-creates missing endpoints as ``CONCEPT``
entities with no observations. Deleting an entity cascades through the
foreign keys to its relations and document links.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from ragmem.backends.base import StoreBackend
from ragmem.embeddings import EmbeddingService
from ragmem.errors import BackendConnectionError, ConflictError, NotFoundError, RagMemError, ValidationError
from ragmem.vectors import nearest

logger = logging.getLogger("ragmem.graph_store")

AUTO_ENTITY_TYPE = "CONCEPT"
NODE_TYPE_ENTITY = "entity"
NODE_TYPE_CHUNK = "documentChunk"
NODE_TYPES = (NODE_TYPE_ENTITY, NODE_TYPE_CHUNK)

_REWRITE_ATTEMPTS = 3

_ENTITY_COLUMNS = "name, entity_type, observations, created_at, updated_at"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def entity_text(name: str, observations: Sequence[str]) -> str:
    """Text that an entity's embedding is computed from."""
    return "\n".join([name, *observations])


def _require_str(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"'{field}' must be a non-empty string")
    return value


def _require_str_list(value: Any, field: str) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
        raise ValidationError(f"'{field}' must be a list of strings")
    return list(value)


def _dedupe(values: Iterable[str]) -> List[str]:
    seen = set()
    out = []
    for v in values:
        if v not in seen:
            seen.add(v)
            out.append(v)
    return out


def _error_entry(exc: Exception) -> Dict[str, str]:
    if isinstance(exc, RagMemError):
        return {"code": exc.code, "message": exc.message}
    return {"code": "internal", "message": str(exc)}


def _row_to_entity(row: tuple) -> Dict[str, Any]:
    return {
        "name": row[0],
        "entityType": row[1],
        "observations": json.loads(row[2] or "[]"),
        "createdAt": row[3],
        "updatedAt": row[4],
    }


def _row_to_relation(row: tuple) -> Dict[str, str]:
    return {"from": row[0], "to": row[1], "relationType": row[2]}


def _placeholders(n: int) -> str:
    return ", ".join("?" for _ in range(n))


class EntityGraphStore:
    """CRUD over the entity graph of whichever database is currently active.

    ``backend_provider`` returns the active handle; every operation resolves
    it once so a single call never spans two databases.
    """

    def __init__(self, backend_provider: Callable[[], StoreBackend], embedder: EmbeddingService):
        self._backend_provider = backend_provider
        self.embedder = embedder

    @property
    def backend(self) -> StoreBackend:
        return self._backend_provider()

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    def create_entities(self, entities: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Insert entities whose names do not exist yet; existing names are skipped.

        Returns only the entities created by this call. Within one batch the
        first occurrence of a name wins.
        """
        candidates: Dict[str, Dict[str, Any]] = {}
        for raw in entities:
            if not isinstance(raw, dict):
                raise ValidationError("Each entity must be an object")
            name = _require_str(raw.get("name"), "name")
            entity_type = _require_str(raw.get("entityType"), "entityType")
            observations = _dedupe(_require_str_list(raw.get("observations"), "observations"))
            if name not in candidates:
                candidates[name] = {"name": name, "entityType": entity_type, "observations": observations}
        if not candidates:
            return []

        db = self.backend
        existing = self._existing_names(db, list(candidates))
        fresh = [c for name, c in candidates.items() if name not in existing]
        if not fresh:
            return []

        vectors = self.embedder.embed_batch([entity_text(c["name"], c["observations"]) for c in fresh])
        created: List[Dict[str, Any]] = []
        now = _now()
        with db.transaction():
            for candidate, vector in zip(fresh, vectors):
                inserted = db.execute(
                    "INSERT INTO entities (name, entity_type, observations, embedding, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?) ON CONFLICT (name) DO NOTHING",
                    (
                        candidate["name"],
                        candidate["entityType"],
                        json.dumps(candidate["observations"]),
                        db.vector_param(vector),
                        now,
                        now,
                    ),
                )
                if inserted:
                    created.append(candidate)
        logger.info("Created %d of %d entities in %s", len(created), len(candidates), db.database_name)
        return created

    def _existing_names(self, db: StoreBackend, names: Sequence[str]) -> set:
        if not names:
            return set()
        rows = db.fetchall(
            f"SELECT name FROM entities WHERE name IN ({_placeholders(len(names))})", tuple(names)
        )
        return {r[0] for r in rows}

    def get_entities(self, names: Sequence[str], db: Optional[StoreBackend] = None) -> Dict[str, Dict[str, Any]]:
        """Entities by name; missing names are absent from the result."""
        names = _dedupe(names)
        if not names:
            return {}
        db = db or self.backend
        rows = db.fetchall(
            f"SELECT {_ENTITY_COLUMNS} FROM entities WHERE name IN ({_placeholders(len(names))})",
            tuple(names),
        )
        return {r[0]: _row_to_entity(r) for r in rows}

    def delete_entities(self, names: Sequence[str]) -> Dict[str, List[str]]:
        names = _dedupe(_require_str_list(names, "entityNames"))
        db = self.backend
        deleted: List[str] = []
        with db.transaction():
            for name in names:
                if db.execute("DELETE FROM entities WHERE name = ?", (name,)):
                    deleted.append(name)
        not_found = [n for n in names if n not in deleted]
        logger.info("Deleted %d entities from %s", len(deleted), db.database_name)
        return {"deleted": deleted, "notFound": not_found}

    # ------------------------------------------------------------------
    # Observations
    # ------------------------------------------------------------------

    def _rewrite_observations(
        self,
        db: StoreBackend,
        entity_name: str,
        change: Callable[[List[str]], List[str]],
    ) -> Tuple[List[str], List[str]]:
        """Apply ``change`` to one entity's observations.

        Returns (before, after). The embedding is recomputed only when the
        observation list actually changed, and outside the write transaction;
        the UPDATE only lands if the stored list is still the one it was
        computed from, otherwise the read-change-embed cycle is retried.
        """
        for _ in range(_REWRITE_ATTEMPTS):
            row = db.fetchone("SELECT observations FROM entities WHERE name = ?", (entity_name,))
            if row is None:
                raise NotFoundError(f"Entity '{entity_name}' not found", missing=[entity_name])
            stored = row[0]
            before = json.loads(stored or "[]")
            after = change(before)
            if after == before:
                return before, after
            vector = self.embedder.embed(entity_text(entity_name, after))
            with db.transaction():
                updated = db.execute(
                    "UPDATE entities SET observations = ?, embedding = ?, updated_at = ? "
                    "WHERE name = ? AND observations = ?",
                    (json.dumps(after), db.vector_param(vector), _now(), entity_name, stored),
                )
            if updated:
                return before, after
            logger.debug("Observations of %r changed concurrently, retrying", entity_name)
        raise ConflictError(f"Entity '{entity_name}' kept changing while its observations were rewritten")

    def add_observations(self, items: Sequence[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
        """Append new observation strings per entity. Items fail independently."""
        db = self.backend
        results: List[Dict[str, Any]] = []
        errors: List[Dict[str, Any]] = []
        for item in items:
            entity_name = item.get("entityName") if isinstance(item, dict) else None
            try:
                entity_name = _require_str(entity_name, "entityName")
                contents = _require_str_list(item.get("contents"), "contents")
                before, after = self._rewrite_observations(
                    db, entity_name, lambda current: current + [c for c in _dedupe(contents) if c not in current]
                )
                results.append({"entityName": entity_name, "addedObservations": after[len(before):]})
            except BackendConnectionError:
                raise
            except Exception as e:
                logger.warning("addObservations failed for %r: %s", entity_name, e)
                errors.append({"entityName": entity_name, "error": _error_entry(e)})
        return {"results": results, "errors": errors}

    def delete_observations(self, deletions: Sequence[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
        """Remove exact observation strings per entity. Items fail independently."""
        db = self.backend
        results: List[Dict[str, Any]] = []
        errors: List[Dict[str, Any]] = []
        for item in deletions:
            entity_name = item.get("entityName") if isinstance(item, dict) else None
            try:
                entity_name = _require_str(entity_name, "entityName")
                doomed = set(_require_str_list(item.get("observations"), "observations"))
                before, after = self._rewrite_observations(
                    db, entity_name, lambda current: [o for o in current if o not in doomed]
                )
                removed = [o for o in before if o not in after]
                results.append({"entityName": entity_name, "deletedObservations": removed})
            except BackendConnectionError:
                raise
            except Exception as e:
                logger.warning("deleteObservations failed for %r: %s", entity_name, e)
                errors.append({"entityName": entity_name, "error": _error_entry(e)})
        return {"results": results, "errors": errors}

    # ------------------------------------------------------------------
    # Relations
    # ------------------------------------------------------------------

    def create_relations(self, relations: Sequence[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
        """Upsert edges, creating any missing endpoint first. Items fail independently."""
        db = self.backend
        created: List[Dict[str, str]] = []
        existing: List[Dict[str, str]] = []
        errors: List[Dict[str, Any]] = []
        for raw in relations:
            try:
                if not isinstance(raw, dict):
                    raise ValidationError("Each relation must be an object")
                relation = {
                    "from": _require_str(raw.get("from"), "from"),
                    "to": _require_str(raw.get("to"), "to"),
                    "relationType": _require_str(raw.get("relationType"), "relationType"),
                }
                if self._insert_relation(db, relation):
                    created.append(relation)
                else:
                    existing.append(relation)
            except BackendConnectionError:
                raise
            except Exception as e:
                logger.warning("createRelations failed for %r: %s", raw, e)
                errors.append({"relation": raw, "error": _error_entry(e)})
        logger.info("Created %d relations in %s", len(created), db.database_name)
        return {"created": created, "existing": existing, "errors": errors}

    def _insert_relation(self, db: StoreBackend, relation: Dict[str, str]) -> bool:
        endpoints = _dedupe([relation["from"], relation["to"]])
        present = self._existing_names(db, endpoints)
        missing = [n for n in endpoints if n not in present]
        vectors = self.embedder.embed_batch([entity_text(n, []) for n in missing])
        now = _now()
        with db.transaction():
            for name, vector in zip(missing, vectors):
                if db.execute(
                    "INSERT INTO entities (name, entity_type, observations, embedding, created_at, updated_at) "
                    "VALUES (?, ?, '[]', ?, ?, ?) ON CONFLICT (name) DO NOTHING",
                    (name, AUTO_ENTITY_TYPE, db.vector_param(vector), now, now),
                ):
                    logger.debug("Auto-created relation endpoint %r", name)
            inserted = db.execute(
                "INSERT INTO relations (source, target, relation_type, created_at) VALUES (?, ?, ?, ?) "
                "ON CONFLICT (source, target, relation_type) DO NOTHING",
                (relation["from"], relation["to"], relation["relationType"], now),
            )
        return bool(inserted)

    def delete_relations(self, relations: Sequence[Dict[str, Any]]) -> Dict[str, List[Dict[str, str]]]:
        db = self.backend
        deleted: List[Dict[str, str]] = []
        not_found: List[Dict[str, str]] = []
        with db.transaction():
            for raw in relations:
                if not isinstance(raw, dict):
                    raise ValidationError("Each relation must be an object")
                relation = {
                    "from": _require_str(raw.get("from"), "from"),
                    "to": _require_str(raw.get("to"), "to"),
                    "relationType": _require_str(raw.get("relationType"), "relationType"),
                }
                count = db.execute(
                    "DELETE FROM relations WHERE source = ? AND target = ? AND relation_type = ?",
                    (relation["from"], relation["to"], relation["relationType"]),
                )
                (deleted if count else not_found).append(relation)
        return {"deleted": deleted, "notFound": not_found}

    def relations_touching(self, names: Sequence[str], db: Optional[StoreBackend] = None) -> List[Dict[str, str]]:
        """Every edge with at least one endpoint in ``names``."""
        names = _dedupe(names)
        if not names:
            return []
        db = db or self.backend
        ph = _placeholders(len(names))
        rows = db.fetchall(
            f"SELECT source, target, relation_type FROM relations "
            f"WHERE source IN ({ph}) OR target IN ({ph}) "
            f"ORDER BY source, target, relation_type",
            tuple(names) * 2,
        )
        return [_row_to_relation(r) for r in rows]

    def neighbors(
        self, name: str, cap: int, db: Optional[StoreBackend] = None
    ) -> List[Tuple[str, Dict[str, str]]]:
        """One-hop neighbors of ``name`` in either direction, with the connecting edge.

        At most ``cap`` distinct neighbors, ordered by name for determinism.
        """
        db = db or self.backend
        rows = db.fetchall(
            "SELECT source, target, relation_type FROM relations WHERE source = ? OR target = ? "
            "ORDER BY source, target, relation_type",
            (name, name),
        )
        found: Dict[str, Dict[str, str]] = {}
        for row in rows:
            relation = _row_to_relation(row)
            other = relation["to"] if relation["from"] == name else relation["from"]
            if other != name and other not in found:
                found[other] = relation
        return sorted(found.items())[:cap]

    # ------------------------------------------------------------------
    # Graph dumps
    # ------------------------------------------------------------------

    def _dump(self, entities: List[Dict[str, Any]], relations: List[Dict[str, str]]) -> Dict[str, Any]:
        by_name = {e["name"]: dict(e, incoming=[], outgoing=[]) for e in entities}
        for rel in relations:
            if rel["from"] in by_name:
                by_name[rel["from"]]["outgoing"].append(rel)
            if rel["to"] in by_name:
                by_name[rel["to"]]["incoming"].append(rel)
        return {"entities": [by_name[e["name"]] for e in entities], "relations": relations}

    def read_graph(self) -> Dict[str, Any]:
        db = self.backend
        entities = [_row_to_entity(r) for r in db.fetchall(f"SELECT {_ENTITY_COLUMNS} FROM entities ORDER BY name")]
        relations = [
            _row_to_relation(r)
            for r in db.fetchall(
                "SELECT source, target, relation_type FROM relations ORDER BY source, target, relation_type"
            )
        ]
        return self._dump(entities, relations)

    def open_nodes(self, names: Sequence[str]) -> Dict[str, Any]:
        names = _dedupe(_require_str_list(names, "names"))
        db = self.backend
        found = self.get_entities(names, db)
        entities = [found[n] for n in names if n in found]
        dump = self._dump(entities, self.relations_touching(list(found), db))
        dump["notFound"] = [n for n in names if n not in found]
        return dump

    # ------------------------------------------------------------------
    # Similarity
    # ------------------------------------------------------------------

    def nearest_entities(
        self, vector: Sequence[float], k: int, db: Optional[StoreBackend] = None
    ) -> List[Tuple[str, float]]:
        return nearest(db or self.backend, "entities", "name", vector, k)

    def search_nodes(
        self,
        query: str,
        node_types: Optional[Sequence[str]] = None,
        limit: int = 10,
    ) -> List[Dict[str, Any]]:
        """Top ``limit`` entities and/or chunks by cosine similarity to ``query``.

        Sorted by similarity descending, ties broken by ascending id.
        """
        _require_str(query, "query")
        if not isinstance(limit, int) or isinstance(limit, bool) or limit < 1:
            raise ValidationError(f"'limit' must be a positive integer, got {limit!r}")
        types = _dedupe(node_types) if node_types else list(NODE_TYPES)
        unknown = [t for t in types if t not in NODE_TYPES]
        if unknown:
            raise ValidationError(f"Unknown node types {unknown}; expected any of {list(NODE_TYPES)}")

        vector = self.embedder.embed(query)
        db = self.backend
        hits: List[Dict[str, Any]] = []
        if NODE_TYPE_ENTITY in types:
            scored = nearest(db, "entities", "name", vector, limit)
            found = self.get_entities([n for n, _ in scored], db)
            for name, score in scored:
                entity = found.get(name)
                if entity is not None:
                    hits.append({
                        "type": NODE_TYPE_ENTITY,
                        "id": name,
                        "score": score,
                        "entityType": entity["entityType"],
                        "observations": entity["observations"],
                    })
        if NODE_TYPE_CHUNK in types:
            scored = nearest(db, "chunks", "chunk_id", vector, limit)
            if scored:
                ids = [c for c, _ in scored]
                rows = db.fetchall(
                    f"SELECT chunk_id, document_id, position, content FROM chunks "
                    f"WHERE chunk_id IN ({_placeholders(len(ids))})",
                    tuple(ids),
                )
                chunks = {r[0]: r for r in rows}
                for chunk_id, score in scored:
                    row = chunks.get(chunk_id)
                    if row is not None:
                        hits.append({
                            "type": NODE_TYPE_CHUNK,
                            "id": chunk_id,
                            "score": score,
                            "documentId": row[1],
                            "position": row[2],
                            "text": row[3],
                        })
        hits.sort(key=lambda h: (-h["score"], h["id"]))
        return hits[:limit]

    # ------------------------------------------------------------------
    # Re-embedding
    # ------------------------------------------------------------------

    def re_embed(self, batch_size: int = 32) -> int:
        """Recompute every entity embedding, committing once per batch."""
        db = self.backend
        names = [r[0] for r in db.fetchall("SELECT name FROM entities ORDER BY name")]
        updated = 0
        for i in range(0, len(names), batch_size):
            batch = self.get_entities(names[i : i + batch_size], db)
            ordered = [batch[n] for n in names[i : i + batch_size] if n in batch]
            vectors = self.embedder.embed_batch([entity_text(e["name"], e["observations"]) for e in ordered])
            with db.transaction():
                for entity, vector in zip(ordered, vectors):
                    updated += db.execute(
                        "UPDATE entities SET embedding = ? WHERE name = ?",
                        (db.vector_param(vector), entity["name"]),
                    )
        logger.info("Re-embedded %d entities in %s", updated, db.database_name)
        return updated
