"""RagMem MCP Server tests -- schema registry, handler responses, error format."""
import asyncio
import dataclasses
import json
import threading
import time

import pytest

from ragmem.context import ServiceContext
from ragmem.errors import BackendConnectionError
from ragmem.server.handlers import HANDLERS, mcp_error
from ragmem.server.mcp_server import RateLimiter, ToolDispatcher
from ragmem.server.tool_schemas import TOOL_SCHEMAS

from conftest import KeywordEmbedder


def _payload(result):
    assert not result.get("isError"), result
    return json.loads(result["content"][0]["text"])


def _error_text(result):
    assert result.get("isError"), result
    return result["content"][0]["text"]


# ============================================================================
# Schema / Registry Tests
# ============================================================================

def test_all_tools_have_handlers():
    """Every tool in TOOL_SCHEMAS has a handler and vice versa."""
    assert {s["name"] for s in TOOL_SCHEMAS} == set(HANDLERS)
    assert len(TOOL_SCHEMAS) == 21


def test_tool_schemas_valid():
    for schema in TOOL_SCHEMAS:
        assert schema["description"]
        assert schema["inputSchema"]["type"] == "object"


def test_error_format_for_plain_exception():
    result = mcp_error("readGraph", ValueError("boom"))
    assert _error_text(result) == "Error: readGraph failed: [internal] boom"
    assert "fatal" not in result


# ============================================================================
# Handler round trips
# ============================================================================

class TestHandlers:

    @pytest.mark.asyncio
    async def test_create_entities_reports_skipped(self, ctx):
        args = {"entities": [{"name": "A", "entityType": "T"}]}
        first = _payload(await HANDLERS["createEntities"](ctx, args))
        assert first["createdCount"] == 1
        second = _payload(await HANDLERS["createEntities"](ctx, args))
        assert second == {"created": [], "createdCount": 0, "skipped": ["A"]}

    @pytest.mark.asyncio
    async def test_document_flow(self, ctx):
        stored = _payload(await HANDLERS["storeDocument"](ctx, {
            "id": "doc", "content": " ".join(f"t{i}" for i in range(30)), "maxTokens": 10, "overlap": 0,
        }))
        assert stored["chunkCount"] == 3

        await HANDLERS["createEntities"](ctx, {"entities": [{"name": "E", "entityType": "T"}]})
        linked = _payload(await HANDLERS["linkEntitiesToDocument"](ctx, {"documentId": "doc", "entityNames": ["E"]}))
        assert linked["linksCreated"] == 3

        context = _payload(await HANDLERS["getDetailedContext"](ctx, {"chunkId": "doc_chunk_1", "surroundingChunks": 1}))
        assert context["beforeCount"] == 1 and context["afterCount"] == 1

        listing = _payload(await HANDLERS["listDocuments"](ctx, {}))
        assert listing["count"] == 1

        deleted = _payload(await HANDLERS["deleteDocuments"](ctx, {"documentIds": ["doc"]}))
        assert deleted["deleted"] == ["doc"]

    @pytest.mark.asyncio
    async def test_search_and_graph_reads(self, ctx):
        await HANDLERS["createRelations"](ctx, {"relations": [{"from": "A", "to": "B", "relationType": "r"}]})
        graph = _payload(await HANDLERS["readGraph"](ctx, {}))
        assert [e["name"] for e in graph["entities"]] == ["A", "B"]

        found = _payload(await HANDLERS["searchNodes"](ctx, {"query": "A", "limit": 1}))
        assert found["count"] == 1

        hybrid = _payload(await HANDLERS["hybridSearch"](ctx, {"query": "A", "limit": 5}))
        assert {r["id"] for r in hybrid["results"]} == {"A", "B"}

        stats = _payload(await HANDLERS["getKnowledgeGraphStats"](ctx, {}))
        assert stats["entities"] == 2 and stats["relations"] == 1

    @pytest.mark.asyncio
    async def test_observation_handlers(self, ctx):
        await HANDLERS["createEntities"](ctx, {"entities": [{"name": "A", "entityType": "T"}]})
        added = _payload(await HANDLERS["addObservations"](ctx, {
            "observations": [{"entityName": "A", "contents": ["x", "y"]}],
        }))
        assert added["results"][0]["addedObservations"] == ["x", "y"]
        removed = _payload(await HANDLERS["deleteObservations"](ctx, {
            "deletions": [{"entityName": "A", "observations": ["x"]}],
        }))
        assert removed["results"][0]["deletedObservations"] == ["x"]
        opened = _payload(await HANDLERS["openNodes"](ctx, {"names": ["A"]}))
        assert opened["entities"][0]["observations"] == ["y"]

    @pytest.mark.asyncio
    async def test_database_handlers(self, ctx):
        listing = _payload(await HANDLERS["listDatabases"](ctx, {}))
        assert listing["current"] == ctx.config.database
        assert listing["dialect"] == "sqlite"
        current = _payload(await HANDLERS["getCurrentDatabase"](ctx, {}))
        assert current["currentDatabase"] == ctx.config.database

    @pytest.mark.asyncio
    async def test_re_embed_everything(self, ctx):
        await HANDLERS["createEntities"](ctx, {"entities": [{"name": "A", "entityType": "T"}]})
        await HANDLERS["storeDocument"](ctx, {"id": "d", "content": "one two three"})
        result = _payload(await HANDLERS["reEmbedEverything"](ctx, {}))
        assert result["entitiesReembedded"] == 1
        assert result["chunksReembedded"] == 1


# ============================================================================
# Error responses
# ============================================================================

class TestErrors:

    @pytest.mark.asyncio
    async def test_missing_argument(self, ctx):
        result = await HANDLERS["openNodes"](ctx, {})
        assert _error_text(result) == "Error: openNodes failed: [validation] 'names' is required"

    @pytest.mark.asyncio
    async def test_strict_link_not_found(self, ctx):
        await HANDLERS["storeDocument"](ctx, {"id": "doc", "content": "some words here"})
        result = await HANDLERS["linkEntitiesToDocument"](ctx, {"documentId": "doc", "entityNames": ["Ghost"]})
        assert _error_text(result).startswith("Error: linkEntitiesToDocument failed: [not_found]")

    @pytest.mark.asyncio
    async def test_non_boolean_flag_rejected(self, ctx):
        result = await HANDLERS["hybridSearch"](ctx, {"query": "q", "useGraph": "yes"})
        assert "[validation]" in _error_text(result)

    @pytest.mark.asyncio
    async def test_switch_failure_reported(self, ctx):
        result = await HANDLERS["switchDatabase"](ctx, {"databaseName": "nope"})
        assert "[switch_failed]" in _error_text(result)
        assert "fatal" not in result
        current = _payload(await HANDLERS["getCurrentDatabase"](ctx, {}))
        assert current["currentDatabase"] == ctx.config.database

    @pytest.mark.asyncio
    async def test_switch_fatal_flagged(self, ctx, monkeypatch):
        def refuse(name, create=False):
            raise BackendConnectionError("server gone")

        monkeypatch.setattr(ctx.controller.connector, "open", refuse)
        result = await HANDLERS["switchDatabase"](ctx, {"databaseName": "other"})
        assert "[switch_fatal]" in _error_text(result)
        assert result["fatal"] is True

        after = await HANDLERS["readGraph"](ctx, {})
        assert "[switch_fatal]" in _error_text(after)


# ============================================================================
# Switch requests through the handlers
# ============================================================================

class TestSwitchHandler:

    @pytest.mark.asyncio
    async def test_second_switch_rejected_while_first_waits_for_a_worker(self, ctx):
        ctx.controller.connector.create_database("slow")
        ctx.controller.connector.create_database("other")
        busy = threading.Event()
        try:
            blockers = [asyncio.ensure_future(ctx.embedder.run(busy.wait)) for _ in range(2)]
            await asyncio.sleep(0.05)
            first = asyncio.ensure_future(HANDLERS["switchDatabase"](ctx, {"databaseName": "slow"}))
            await asyncio.sleep(0.05)

            second = await HANDLERS["switchDatabase"](ctx, {"databaseName": "other"})
            assert "[already_switching]" in _error_text(second)
        finally:
            busy.set()
        await asyncio.gather(*blockers)

        assert _payload(await first)["current"] == "slow"
        assert ctx.controller.get_current_database() == "slow"
        assert ctx.controller.status()["switchingTo"] is None

    @pytest.mark.asyncio
    async def test_invalid_name_does_not_claim_the_slot(self, ctx):
        result = await HANDLERS["switchDatabase"](ctx, {"databaseName": "bad name!"})
        assert "[validation]" in _error_text(result)
        ctx.controller.connector.create_database("other")
        assert _payload(await HANDLERS["switchDatabase"](ctx, {"databaseName": "other"}))["switched"] is True

    @pytest.mark.asyncio
    async def test_cancelled_request_releases_the_slot(self, ctx):
        busy = threading.Event()
        try:
            blockers = [asyncio.ensure_future(ctx.embedder.run(busy.wait)) for _ in range(2)]
            await asyncio.sleep(0.05)
            queued = asyncio.ensure_future(HANDLERS["switchDatabase"](ctx, {"databaseName": "slow"}))
            await asyncio.sleep(0.05)
            assert ctx.controller.status()["switchingTo"] == "slow"
            queued.cancel()
            with pytest.raises(asyncio.CancelledError):
                await queued
            assert ctx.controller.status()["switchingTo"] is None
        finally:
            busy.set()
        await asyncio.gather(*blockers)


# ============================================================================
# Readiness gate
# ============================================================================

class _NeverReadyEmbedder(KeywordEmbedder):
    def start_background_load(self):
        pass


class TestReadiness:

    @pytest.fixture
    def loading_ctx(self, config):
        c = ServiceContext(dataclasses.replace(config, ready_timeout=0.05), embedder=_NeverReadyEmbedder())
        c.start(background_model_load=True)
        yield c
        c.close()

    @pytest.mark.asyncio
    async def test_model_commands_time_out(self, loading_ctx):
        result = await HANDLERS["searchNodes"](loading_ctx, {"query": "q"})
        assert "[not_ready]" in _error_text(result)

    @pytest.mark.asyncio
    async def test_store_only_commands_run_while_loading(self, loading_ctx):
        graph = _payload(await HANDLERS["readGraph"](loading_ctx, {}))
        assert graph["entities"] == []

    @pytest.mark.asyncio
    async def test_waiting_commands_leave_workers_free(self, config):
        c = ServiceContext(dataclasses.replace(config, ready_timeout=1.0), embedder=_NeverReadyEmbedder())
        c.start(background_model_load=True)
        try:
            waiting = [
                asyncio.ensure_future(HANDLERS["hybridSearch"](c, {"query": "q"})),
                asyncio.ensure_future(HANDLERS["searchNodes"](c, {"query": "q"})),
            ]
            await asyncio.sleep(0.05)

            started = time.monotonic()
            listing = _payload(await HANDLERS["listDatabases"](c, {}))
            assert time.monotonic() - started < 0.5
            assert listing["current"] == c.config.database

            for result in await asyncio.gather(*waiting):
                assert "[not_ready]" in _error_text(result)
        finally:
            c.close()

    @pytest.mark.asyncio
    async def test_commands_proceed_once_ready(self, loading_ctx):
        loading_ctx.embedder.mark_ready()
        result = _payload(await HANDLERS["searchNodes"](loading_ctx, {"query": "q"}))
        assert result["count"] == 0


# ============================================================================
# Dispatcher and rate limiting
# ============================================================================

class TestDispatcher:

    @pytest.mark.asyncio
    async def test_unknown_tool(self, ctx):
        result = await ToolDispatcher(ctx).dispatch("noSuchTool", {})
        assert _error_text(result) == "Error: Unknown tool: noSuchTool"

    @pytest.mark.asyncio
    async def test_routes_to_handler(self, ctx):
        result = await ToolDispatcher(ctx).dispatch("getCurrentDatabase", None)
        assert _payload(result)["currentDatabase"] == ctx.config.database

    @pytest.mark.asyncio
    async def test_rate_limited(self, ctx):
        dispatcher = ToolDispatcher(ctx, limiter=RateLimiter(global_limit=2, write_limit=1))
        await dispatcher.dispatch("readGraph", {})
        await dispatcher.dispatch("readGraph", {})
        result = await dispatcher.dispatch("readGraph", {})
        assert "[rate_limited]" in _error_text(result)


def test_write_limit_applies_only_to_writes():
    limiter = RateLimiter(global_limit=10, write_limit=1)
    assert limiter.check("createEntities") is None
    assert limiter.check("createEntities") is not None
    assert limiter.check("readGraph") is None
