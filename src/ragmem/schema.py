"""
RagMem Schema -- the registered migration list for each storage dialect.

Both dialects share the table layout; only the embedding column type
differs (float32 BLOB for sqlite-vec, ``vector(384)`` for pgvector).
Timestamps are ISO-8601 text and JSON payloads are text on both engines.
"""

from typing import List

from ragmem.embeddings import EMBEDDING_DIM
from ragmem.migrations import Migration

SCHEMA_VERSION = 4


def _embedding_type(dialect: str) -> str:
    if dialect == "postgresql":
        return f"vector({EMBEDDING_DIM})"
    return "BLOB"


def migrations_for(dialect: str) -> List[Migration]:
    emb = _embedding_type(dialect)

    graph_up = [
        f"""
        CREATE TABLE IF NOT EXISTS entities (
            name TEXT PRIMARY KEY,
            entity_type TEXT NOT NULL,
            observations TEXT NOT NULL DEFAULT '[]',
            embedding {emb},
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS relations (
            source TEXT NOT NULL REFERENCES entities(name) ON DELETE CASCADE,
            target TEXT NOT NULL REFERENCES entities(name) ON DELETE CASCADE,
            relation_type TEXT NOT NULL,
            created_at TEXT NOT NULL,
            PRIMARY KEY (source, target, relation_type)
        )
        """,
    ]
    if dialect == "postgresql":
        graph_up.insert(0, "CREATE EXTENSION IF NOT EXISTS vector")

    return [
        Migration(
            version=1,
            description="entities and relations",
            up=graph_up,
            down=["DROP TABLE IF EXISTS relations", "DROP TABLE IF EXISTS entities"],
        ),
        Migration(
            version=2,
            description="documents and chunks",
            up=[
                """
                CREATE TABLE IF NOT EXISTS documents (
                    id TEXT PRIMARY KEY,
                    content TEXT NOT NULL,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """,
                f"""
                CREATE TABLE IF NOT EXISTS chunks (
                    chunk_id TEXT PRIMARY KEY,
                    document_id TEXT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
                    position INTEGER NOT NULL,
                    content TEXT NOT NULL,
                    start_offset INTEGER NOT NULL,
                    end_offset INTEGER NOT NULL,
                    token_count INTEGER NOT NULL,
                    embedding {emb},
                    created_at TEXT NOT NULL,
                    UNIQUE (document_id, position)
                )
                """,
            ],
            down=["DROP TABLE IF EXISTS chunks", "DROP TABLE IF EXISTS documents"],
        ),
        Migration(
            version=3,
            description="entity to chunk links",
            up=[
                """
                CREATE TABLE IF NOT EXISTS entity_chunk_links (
                    entity_name TEXT NOT NULL REFERENCES entities(name) ON DELETE CASCADE,
                    chunk_id TEXT NOT NULL REFERENCES chunks(chunk_id) ON DELETE CASCADE,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (entity_name, chunk_id)
                )
                """,
            ],
            down=["DROP TABLE IF EXISTS entity_chunk_links"],
        ),
        Migration(
            version=4,
            description="secondary indexes",
            up=[
                "CREATE INDEX IF NOT EXISTS idx_relations_target ON relations(target)",
                "CREATE INDEX IF NOT EXISTS idx_entities_type ON entities(entity_type)",
                "CREATE INDEX IF NOT EXISTS idx_chunks_document ON chunks(document_id)",
                "CREATE INDEX IF NOT EXISTS idx_links_chunk ON entity_chunk_links(chunk_id)",
            ],
            down=[
                "DROP INDEX IF EXISTS idx_links_chunk",
                "DROP INDEX IF EXISTS idx_chunks_document",
                "DROP INDEX IF EXISTS idx_entities_type",
                "DROP INDEX IF EXISTS idx_relations_target",
            ],
        ),
    ]
