"""
RagMem Document Store -- chunked, embedded documents and their entity links.

A document is split by a token-bounded sliding window: every chunk holds at
most ``max_tokens`` tokens and consecutive chunks share ``overlap`` tokens.
Chunk ids are ``<documentId>_chunk_<position>`` with positions contiguous
from 0. Re-storing an id replaces the document wholesale; its old chunks and
links go with it through the foreign-key cascade.
"""

import json
import logging
import re
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from ragmem.backends.base import StoreBackend
from ragmem.config import DEFAULT_MAX_TOKENS, DEFAULT_OVERLAP
from ragmem.embeddings import EmbeddingService
from ragmem.errors import NotFoundError, ValidationError
from ragmem.vectors import nearest

logger = logging.getLogger("ragmem.document_store")

DEFAULT_SURROUNDING = 2
DEFAULT_MIN_TERM_LENGTH = 3

# Capitalized multi-word runs: "Knowledge Graph", "New York City".
_CAPITALIZED_RUN_RE = re.compile(r"\b[A-Z][A-Za-z0-9]*(?:[ \t]+[A-Z][A-Za-z0-9]*)+\b")
# Acronyms (API, HTTP2) and camelCase / PascalCase identifiers (useEffect, GraphQL).
_ACRONYM_RE = re.compile(r"\b[A-Z]{2,}[0-9]*\b")
_CAMEL_RE = re.compile(r"\b[a-z]+(?:[A-Z][a-z0-9]*)+\b|\b[A-Z][a-z0-9]+(?:[A-Z][A-Za-z0-9]*)+\b")

_CHUNK_COLUMNS = "chunk_id, document_id, position, content, start_offset, end_offset, token_count"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def chunk_id_for(document_id: str, position: int) -> str:
    return f"{document_id}_chunk_{position}"


def chunk_windows(token_count: int, max_tokens: int, overlap: int) -> List[Tuple[int, int]]:
    """Token index windows ``[start, end)`` for a sliding window over ``token_count`` tokens.

    Yields ``ceil((T - O) / (M - O))`` windows, or exactly one when ``T <= M``.
    """
    if max_tokens < 1:
        raise ValidationError(f"maxTokens must be >= 1, got {max_tokens}")
    if overlap < 0:
        raise ValidationError(f"overlap must be >= 0, got {overlap}")
    if overlap >= max_tokens:
        raise ValidationError(f"overlap ({overlap}) must be smaller than maxTokens ({max_tokens})")
    if token_count <= 0:
        return []
    step = max_tokens - overlap
    windows = []
    start = 0
    while True:
        end = min(start + max_tokens, token_count)
        windows.append((start, end))
        if end >= token_count:
            break
        start += step
    return windows


def _int_param(value: Any, name: str, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)) or int(value) != value:
        raise ValidationError(f"'{name}' must be an integer, got {value!r}")
    return int(value)


def _row_to_chunk(row: tuple) -> Dict[str, Any]:
    return {
        "chunkId": row[0],
        "documentId": row[1],
        "position": row[2],
        "text": row[3],
        "startOffset": row[4],
        "endOffset": row[5],
        "tokenCount": row[6],
    }


def _placeholders(n: int) -> str:
    return ", ".join("?" for _ in range(n))


class DocumentStore:
    """Documents, chunks and entity links in whichever database is active."""

    def __init__(
        self,
        backend_provider: Callable[[], StoreBackend],
        embedder: EmbeddingService,
        default_max_tokens: int = DEFAULT_MAX_TOKENS,
        default_overlap: int = DEFAULT_OVERLAP,
        batch_size: int = 32,
    ):
        self._backend_provider = backend_provider
        self.embedder = embedder
        self.default_max_tokens = default_max_tokens
        self.default_overlap = default_overlap
        self.batch_size = batch_size

    @property
    def backend(self) -> StoreBackend:
        return self._backend_provider()

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    def store_document(
        self,
        document_id: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
        max_tokens: Optional[int] = None,
        overlap: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Chunk, embed and store ``content`` under ``document_id``, replacing any prior version.

        The document row is committed first, then chunks are embedded and
        committed batch by batch so a large document never holds the handle
        for the whole run.
        """
        if not isinstance(document_id, str) or not document_id.strip():
            raise ValidationError("'id' must be a non-empty string")
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("'content' must be a non-empty string")
        if metadata is None:
            metadata = {}
        if not isinstance(metadata, dict):
            raise ValidationError("'metadata' must be an object")
        max_tokens = _int_param(max_tokens, "maxTokens", self.default_max_tokens)
        overlap = _int_param(overlap, "overlap", self.default_overlap)
        try:
            metadata_json = json.dumps(metadata)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"'metadata' is not JSON serialisable: {e}")

        spans = self.embedder.tokenize(content)
        windows = chunk_windows(len(spans), max_tokens, overlap)
        if not windows:
            raise ValidationError("'content' contains no tokens")

        db = self.backend
        now = _now()
        with db.transaction():
            previous = db.fetchone("SELECT created_at FROM documents WHERE id = ?", (document_id,))
            if previous is not None:
                db.execute("DELETE FROM documents WHERE id = ?", (document_id,))
                logger.info("Replacing document %s in %s", document_id, db.database_name)
            db.execute(
                "INSERT INTO documents (id, content, metadata, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
                (document_id, content, metadata_json, previous[0] if previous else now, now),
            )

        chunk_ids: List[str] = []
        for batch_start in range(0, len(windows), self.batch_size):
            batch = []
            for position, (start, end) in enumerate(
                windows[batch_start : batch_start + self.batch_size], start=batch_start
            ):
                start_offset = spans[start][0]
                end_offset = spans[end - 1][1]
                batch.append((position, content[start_offset:end_offset], start_offset, end_offset, end - start))
            vectors = self.embedder.embed_batch([b[1] for b in batch])
            with db.transaction():
                for (position, text, start_offset, end_offset, tokens), vector in zip(batch, vectors):
                    chunk_id = chunk_id_for(document_id, position)
                    db.execute(
                        "INSERT INTO chunks (chunk_id, document_id, position, content, start_offset, "
                        "end_offset, token_count, embedding, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        (
                            chunk_id,
                            document_id,
                            position,
                            text,
                            start_offset,
                            end_offset,
                            tokens,
                            db.vector_param(vector),
                            now,
                        ),
                    )
                    chunk_ids.append(chunk_id)

        logger.info(
            "Stored document %s in %s: %d tokens, %d chunks",
            document_id,
            db.database_name,
            len(spans),
            len(chunk_ids),
        )
        return {"documentId": document_id, "chunkCount": len(chunk_ids), "chunkIds": chunk_ids}

    def get_document(self, document_id: str, db: Optional[StoreBackend] = None) -> Dict[str, Any]:
        db = db or self.backend
        row = db.fetchone(
            "SELECT id, content, metadata, created_at, updated_at FROM documents WHERE id = ?", (document_id,)
        )
        if row is None:
            raise NotFoundError(f"Document '{document_id}' not found", missing=[document_id])
        return {
            "id": row[0],
            "content": row[1],
            "metadata": json.loads(row[2] or "{}"),
            "createdAt": row[3],
            "updatedAt": row[4],
        }

    # ------------------------------------------------------------------
    # Term extraction
    # ------------------------------------------------------------------

    def extract_terms(
        self,
        document_id: str,
        min_length: int = DEFAULT_MIN_TERM_LENGTH,
        include_capitalized: bool = True,
        include_technical: bool = True,
        custom_patterns: Optional[Sequence[str]] = None,
    ) -> Dict[str, Any]:
        """Candidate entity terms from a stored document. Read-only.

        Terms come from lexical rules only and are returned most frequent
        first, then alphabetically.
        """
        min_length = _int_param(min_length, "minLength", DEFAULT_MIN_TERM_LENGTH)
        rules: List[Tuple[str, "re.Pattern[str]"]] = []
        if include_capitalized:
            rules.append(("capitalized", _CAPITALIZED_RUN_RE))
        if include_technical:
            rules.append(("acronym", _ACRONYM_RE))
            rules.append(("identifier", _CAMEL_RE))
        for pattern in custom_patterns or ():
            if not isinstance(pattern, str):
                raise ValidationError(f"Custom pattern must be a string, got {pattern!r}")
            try:
                rules.append(("custom", re.compile(pattern)))
            except re.error as e:
                raise ValidationError(f"Invalid custom pattern {pattern!r}: {e}")

        content = self.get_document(document_id)["content"]
        counts: Counter = Counter()
        kinds: Dict[str, List[str]] = {}
        for kind, regex in rules:
            for match in regex.finditer(content):
                term = " ".join(match.group(0).split())
                if len(term) < min_length:
                    continue
                counts[term] += 1
                seen = kinds.setdefault(term, [])
                if kind not in seen:
                    seen.append(kind)

        terms = [
            {"term": term, "frequency": freq, "kinds": kinds[term]}
            for term, freq in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
        ]
        return {"documentId": document_id, "terms": terms, "count": len(terms)}

    # ------------------------------------------------------------------
    # Entity links
    # ------------------------------------------------------------------

    def link_entities_to_document(self, document_id: str, entity_names: Sequence[str]) -> Dict[str, Any]:
        """Link every named entity to every chunk of the document.

        All-or-nothing: a missing document or any missing entity fails the
        whole call. Re-linking is a no-op.
        """
        if not isinstance(entity_names, (list, tuple)) or not entity_names:
            raise ValidationError("'entityNames' must be a non-empty list of strings")
        if not all(isinstance(n, str) for n in entity_names):
            raise ValidationError("'entityNames' must be a non-empty list of strings")
        names = list(dict.fromkeys(entity_names))

        db = self.backend
        now = _now()
        created = 0
        with db.transaction():
            if db.fetchone("SELECT 1 FROM documents WHERE id = ?", (document_id,)) is None:
                raise NotFoundError(f"Document '{document_id}' not found", missing=[document_id])
            present = {
                r[0]
                for r in db.fetchall(
                    f"SELECT name FROM entities WHERE name IN ({_placeholders(len(names))})", tuple(names)
                )
            }
            missing = [n for n in names if n not in present]
            if missing:
                raise NotFoundError(f"Entities not found: {', '.join(missing)}", missing=missing)
            chunk_count = int(db.scalar("SELECT COUNT(*) FROM chunks WHERE document_id = ?", (document_id,)) or 0)
            for name in names:
                created += db.execute(
                    "INSERT INTO entity_chunk_links (entity_name, chunk_id, created_at) "
                    "SELECT ?, chunk_id, ? FROM chunks WHERE document_id = ? "
                    "ON CONFLICT (entity_name, chunk_id) DO NOTHING",
                    (name, now, document_id),
                )
        logger.info("Linked %d entities to document %s (%d new links)", len(names), document_id, created)
        return {"documentId": document_id, "entityNames": names, "chunkCount": chunk_count, "linksCreated": created}

    def chunks_linked_to(self, entity_names: Sequence[str], db: Optional[StoreBackend] = None) -> List[Tuple[str, str]]:
        """(entity_name, chunk_id) pairs for the given entities."""
        names = list(dict.fromkeys(entity_names))
        if not names:
            return []
        db = db or self.backend
        rows = db.fetchall(
            f"SELECT entity_name, chunk_id FROM entity_chunk_links "
            f"WHERE entity_name IN ({_placeholders(len(names))}) ORDER BY entity_name, chunk_id",
            tuple(names),
        )
        return [(r[0], r[1]) for r in rows]

    # ------------------------------------------------------------------
    # Delete / list
    # ------------------------------------------------------------------

    def delete_documents(self, document_ids: Union[str, Sequence[str]]) -> Dict[str, List[str]]:
        if isinstance(document_ids, str):
            document_ids = [document_ids]
        if not isinstance(document_ids, (list, tuple)) or not all(isinstance(d, str) for d in document_ids):
            raise ValidationError("'documentIds' must be a list of strings")
        ids = list(dict.fromkeys(document_ids))
        db = self.backend
        deleted: List[str] = []
        with db.transaction():
            for document_id in ids:
                if db.execute("DELETE FROM documents WHERE id = ?", (document_id,)):
                    deleted.append(document_id)
        logger.info("Deleted %d documents from %s", len(deleted), db.database_name)
        return {"deleted": deleted, "notFound": [d for d in ids if d not in deleted]}

    def list_documents(self, include_metadata: bool = True) -> List[Dict[str, Any]]:
        rows = self.backend.fetchall(
            "SELECT d.id, d.metadata, d.created_at, d.updated_at, LENGTH(d.content), "
            "(SELECT COUNT(*) FROM chunks c WHERE c.document_id = d.id) "
            "FROM documents d ORDER BY d.id"
        )
        documents = []
        for row in rows:
            doc: Dict[str, Any] = {
                "id": row[0],
                "createdAt": row[2],
                "updatedAt": row[3],
                "contentLength": row[4],
                "chunkCount": row[5],
            }
            if include_metadata:
                doc["metadata"] = json.loads(row[1] or "{}")
            documents.append(doc)
        return documents

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def get_chunks(self, chunk_ids: Sequence[str], db: Optional[StoreBackend] = None) -> Dict[str, Dict[str, Any]]:
        ids = list(dict.fromkeys(chunk_ids))
        if not ids:
            return {}
        db = db or self.backend
        rows = db.fetchall(
            f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE chunk_id IN ({_placeholders(len(ids))})", tuple(ids)
        )
        return {r[0]: _row_to_chunk(r) for r in rows}

    def nearest_chunks(
        self, vector: Sequence[float], k: int, db: Optional[StoreBackend] = None
    ) -> List[Tuple[str, float]]:
        return nearest(db or self.backend, "chunks", "chunk_id", vector, k)

    def get_detailed_context(self, chunk_id: str, surrounding_chunks: int = DEFAULT_SURROUNDING) -> Dict[str, Any]:
        """The chunk plus up to ``surrounding_chunks`` neighbours on each side by position.

        Near a document boundary the short side simply has fewer chunks.
        """
        surrounding_chunks = _int_param(surrounding_chunks, "surroundingChunks", DEFAULT_SURROUNDING)
        if surrounding_chunks < 0:
            raise ValidationError(f"'surroundingChunks' must be >= 0, got {surrounding_chunks}")
        db = self.backend
        row = db.fetchone(f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE chunk_id = ?", (chunk_id,))
        if row is None:
            raise NotFoundError(f"Chunk '{chunk_id}' not found", missing=[chunk_id])
        target = _row_to_chunk(row)
        rows = db.fetchall(
            f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE document_id = ? AND position BETWEEN ? AND ? "
            f"ORDER BY position",
            (
                target["documentId"],
                target["position"] - surrounding_chunks,
                target["position"] + surrounding_chunks,
            ),
        )
        window = [_row_to_chunk(r) for r in rows]
        before = [c for c in window if c["position"] < target["position"]]
        after = [c for c in window if c["position"] > target["position"]]

        document = self.get_document(target["documentId"], db)
        start = window[0]["startOffset"]
        end = window[-1]["endOffset"]
        return {
            "chunk": target,
            "documentId": target["documentId"],
            "documentMetadata": document["metadata"],
            "before": before,
            "after": after,
            "beforeCount": len(before),
            "afterCount": len(after),
            "contextText": document["content"][start:end],
        }

    # ------------------------------------------------------------------
    # Re-embedding
    # ------------------------------------------------------------------

    def re_embed(self, batch_size: Optional[int] = None) -> int:
        """Recompute every chunk embedding, committing once per batch."""
        batch_size = batch_size or self.batch_size
        db = self.backend
        chunk_ids = [r[0] for r in db.fetchall("SELECT chunk_id FROM chunks ORDER BY document_id, position")]
        updated = 0
        for i in range(0, len(chunk_ids), batch_size):
            batch = self.get_chunks(chunk_ids[i : i + batch_size], db)
            ordered = [batch[c] for c in chunk_ids[i : i + batch_size] if c in batch]
            vectors = self.embedder.embed_batch([c["text"] for c in ordered])
            with db.transaction():
                for chunk, vector in zip(ordered, vectors):
                    updated += db.execute(
                        "UPDATE chunks SET embedding = ? WHERE chunk_id = ?",
                        (db.vector_param(vector), chunk["chunkId"]),
                    )
        logger.info("Re-embedded %d chunks in %s", updated, db.database_name)
        return updated
