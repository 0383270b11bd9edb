"""RagMem -- knowledge graph and document memory with hybrid retrieval, served over MCP.

Direct Python API -- no MCP server required::

    from ragmem import ServiceContext
    with ServiceContext() as ctx:
        ctx.documents.store_document("doc1", "Long text ...")
        hits = ctx.search.hybrid_search("what does the text say?")

For the MCP server, install with: ``pip install ragmem-mcp`` and run ``ragmem serve``.
"""

__version__ = "0.3.0"

from ragmem.config import Config
from ragmem.context import ServiceContext
from ragmem.document_store import DocumentStore
from ragmem.embeddings import EmbeddingService
from ragmem.errors import RagMemError
from ragmem.graph_store import EntityGraphStore
from ragmem.hybrid_search import HybridSearchEngine
from ragmem.migrations import Migration, MigrationEngine
from ragmem.switching import ConnectionSwitchController

__all__ = [
    "Config",
    "ServiceContext",
    # Stores
    "EntityGraphStore",
    "DocumentStore",
    "HybridSearchEngine",
    # Infrastructure
    "EmbeddingService",
    "MigrationEngine",
    "Migration",
    "ConnectionSwitchController",
    "RagMemError",
    # Meta
    "__version__",
]
