"""
RagMem Service Context -- the single owned instance that wires everything together.

Startup has two phases. ``start()`` opens and migrates the configured
database (cheap, synchronous) and then kicks off the embedding model load
in the background. Commands that embed or tokenize pass through a readiness
gate: they wait for the load up to ``ready_timeout`` seconds and then fail
with NotReadyError. The wait happens on the default executor, so pending
gated commands never occupy the embedding workers. A failed load still
opens the gate; the service then runs on hash embeddings.
"""

import asyncio
import logging
from typing import Any, Callable, Optional

from ragmem.backends import Connector, create_connector
from ragmem.config import Config
from ragmem.document_store import DocumentStore
from ragmem.embeddings import EmbeddingService
from ragmem.graph_store import EntityGraphStore
from ragmem.hybrid_search import HybridSearchEngine
from ragmem.monitor import HealthMonitor
from ragmem.switching import ConnectionSwitchController

logger = logging.getLogger("ragmem.context")


class ServiceContext:
    """Owns config, embedder, the switch controller and the stores."""

    def __init__(
        self,
        config: Optional[Config] = None,
        embedder: Optional[EmbeddingService] = None,
        connector: Optional[Connector] = None,
    ):
        self.config = config or Config.from_env()
        self.embedder = embedder or EmbeddingService(
            skip_model=self.config.skip_embeddings or None,
            onnx_model_dir=self.config.onnx_model_dir,
        )
        self.monitor = HealthMonitor(self._probe, interval=self.config.health_interval)
        self.controller = ConnectionSwitchController(
            connector or create_connector(self.config),
            monitor=self.monitor,
        )
        self.graph = EntityGraphStore(lambda: self.controller.backend, self.embedder)
        self.documents = DocumentStore(
            lambda: self.controller.backend,
            self.embedder,
            default_max_tokens=self.config.chunk_max_tokens,
            default_overlap=self.config.chunk_overlap,
            batch_size=self.config.embed_batch_size,
        )
        self.search = HybridSearchEngine(
            self.graph,
            self.documents,
            decay=self.config.graph_decay,
            neighbor_cap=self.config.graph_neighbor_cap,
        )
        self.started = False

    def _probe(self) -> None:
        self.controller.backend.ping()

    def start(self, background_model_load: bool = True) -> "ServiceContext":
        """Open the initial database, start the monitor, begin loading the model."""
        if self.started:
            return self
        applied = self.controller.open_initial(self.config.database, create=True)
        if applied:
            logger.info("Initial database %s migrated to v%d", self.config.database, applied[-1])
        self.monitor.start()
        if background_model_load:
            self.embedder.start_background_load()
        else:
            self.embedder.preload()
        self.started = True
        return self

    async def call(self, fn: Callable[..., Any], *args: Any, needs_model: bool = True) -> Any:
        """Run a blocking store operation on the worker pool, behind the readiness gate."""
        if needs_model and not self.embedder.ready:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self.embedder.wait_ready, self.config.ready_timeout)
        return await self.embedder.run(fn, *args)

    def re_embed_everything(self) -> dict:
        batch = self.config.embed_batch_size
        entities = self.graph.re_embed(batch)
        chunks = self.documents.re_embed(batch)
        return {
            "entitiesReembedded": entities,
            "chunksReembedded": chunks,
            "embedding": self.embedder.info(),
        }

    def close(self) -> None:
        self.monitor.stop()
        self.controller.close()
        self.embedder.close()
        self.started = False

    def __enter__(self) -> "ServiceContext":
        return self.start()

    def __exit__(self, *exc) -> None:
        self.close()
