"""
RagMem MCP Handlers -- Maps tool names to async handler functions.

Each handler takes the owning ServiceContext and the tool arguments, runs
the store operation on the worker pool and returns an MCP-compatible
response dict. Errors never escape: they come back as an ``isError``
response naming the command and the error code.
"""

import json
import logging
from typing import Any, Callable, Dict, List

from ragmem.context import ServiceContext
from ragmem.errors import RagMemError, SwitchFatal, ValidationError

logger = logging.getLogger("ragmem.server.handlers")


def _clamp_int(value, default: int, min_val: int = 1, max_val: int = 1000) -> int:
    """Clamp a numeric argument to safe bounds."""
    if value is None:
        return default
    try:
        v = int(value)
        return max(min_val, min(v, max_val))
    except (TypeError, ValueError):
        return default


def _flag(arguments: dict, key: str, default: bool) -> bool:
    value = arguments.get(key)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ValidationError(f"'{key}' must be a boolean")
    return value


def _required(arguments: dict, key: str) -> Any:
    value = arguments.get(key)
    if value is None:
        raise ValidationError(f"'{key}' is required")
    return value


def _required_list(arguments: dict, key: str) -> List[Any]:
    value = _required(arguments, key)
    if not isinstance(value, list):
        raise ValidationError(f"'{key}' must be an array")
    return value


# ============================================================================
# Response Helpers
# ============================================================================


def mcp_response(result: Any) -> dict:
    """Build a successful MCP response."""
    text = result if isinstance(result, str) else json.dumps(result, indent=2, default=str)
    return {"content": [{"type": "text", "text": text}]}


def mcp_error(command: str, error: Exception) -> dict:
    """Build an error MCP response: ``Error: <command> failed: [<code>] <message>``."""
    if isinstance(error, RagMemError):
        code, message = error.code, error.message
    else:
        code, message = "internal", str(error) or type(error).__name__
    response = {
        "content": [{"type": "text", "text": f"Error: {command} failed: [{code}] {message}"}],
        "isError": True,
    }
    if isinstance(error, SwitchFatal):
        response["fatal"] = True
    return response


async def _invoke(command: str, ctx: ServiceContext, op: Callable[[], Any], needs_model: bool = True) -> dict:
    try:
        result = await ctx.call(op, needs_model=needs_model)
    except SwitchFatal as e:
        logger.critical("%s failed with an unrecoverable error: %s", command, e)
        return mcp_error(command, e)
    except RagMemError as e:
        logger.error("%s failed: [%s] %s", command, e.code, e.message)
        return mcp_error(command, e)
    except Exception as e:
        logger.exception("%s failed", command)
        return mcp_error(command, e)
    return mcp_response(result)


# ============================================================================
# Databases
# ============================================================================


async def handle_list_databases(ctx: ServiceContext, arguments: dict) -> dict:
    def op():
        return {
            "databases": ctx.controller.list_available_databases(),
            "current": ctx.controller.get_current_database(),
            "dialect": ctx.controller.connector.dialect,
        }

    return await _invoke("listDatabases", ctx, op, needs_model=False)


async def handle_get_current_database(ctx: ServiceContext, arguments: dict) -> dict:
    def op():
        return ctx.controller.status()

    return await _invoke("getCurrentDatabase", ctx, op, needs_model=False)


async def handle_switch_database(ctx: ServiceContext, arguments: dict) -> dict:
    controller = ctx.controller
    # Claimed here on the event loop: a second switch must be rejected, never
    # left waiting in the worker queue behind the first.
    try:
        name = _required(arguments, "databaseName")
        claim = controller.begin_switch(name)
    except RagMemError as e:
        logger.error("switchDatabase failed: [%s] %s", e.code, e.message)
        return mcp_error("switchDatabase", e)

    def op():
        return controller.finish_switch(name, claim)

    try:
        return await _invoke("switchDatabase", ctx, op, needs_model=False)
    finally:
        controller.release_switch(claim)


# ============================================================================
# Documents
# ============================================================================


async def handle_store_document(ctx: ServiceContext, arguments: dict) -> dict:
    def op():
        return ctx.documents.store_document(
            _required(arguments, "id"),
            _required(arguments, "content"),
            metadata=arguments.get("metadata"),
            max_tokens=arguments.get("maxTokens"),
            overlap=arguments.get("overlap"),
        )

    return await _invoke("storeDocument", ctx, op)


async def handle_extract_terms(ctx: ServiceContext, arguments: dict) -> dict:
    def op():
        return ctx.documents.extract_terms(
            _required(arguments, "documentId"),
            min_length=arguments.get("minLength", 3),
            include_capitalized=_flag(arguments, "includeCapitalized", True),
            include_technical=_flag(arguments, "includeTechnical", True),
            custom_patterns=arguments.get("customPatterns"),
        )

    return await _invoke("extractTerms", ctx, op, needs_model=False)


async def handle_link_entities_to_document(ctx: ServiceContext, arguments: dict) -> dict:
    def op():
        return ctx.documents.link_entities_to_document(
            _required(arguments, "documentId"), _required_list(arguments, "entityNames")
        )

    return await _invoke("linkEntitiesToDocument", ctx, op, needs_model=False)


async def handle_delete_documents(ctx: ServiceContext, arguments: dict) -> dict:
    def op():
        return ctx.documents.delete_documents(_required(arguments, "documentIds"))

    return await _invoke("deleteDocuments", ctx, op, needs_model=False)


async def handle_list_documents(ctx: ServiceContext, arguments: dict) -> dict:
    def op():
        documents = ctx.documents.list_documents(include_metadata=_flag(arguments, "includeMetadata", True))
        return {"documents": documents, "count": len(documents)}

    return await _invoke("listDocuments", ctx, op, needs_model=False)


async def handle_re_embed_everything(ctx: ServiceContext, arguments: dict) -> dict:
    return await _invoke("reEmbedEverything", ctx, ctx.re_embed_everything)


# ============================================================================
# Knowledge graph
# ============================================================================


async def handle_create_entities(ctx: ServiceContext, arguments: dict) -> dict:
    def op():
        requested = _required_list(arguments, "entities")
        created = ctx.graph.create_entities(requested)
        created_names = {e["name"] for e in created}
        skipped = [
            e.get("name") for e in requested
            if isinstance(e, dict) and e.get("name") not in created_names
        ]
        return {"created": created, "createdCount": len(created), "skipped": list(dict.fromkeys(skipped))}

    return await _invoke("createEntities", ctx, op)


async def handle_create_relations(ctx: ServiceContext, arguments: dict) -> dict:
    def op():
        return ctx.graph.create_relations(_required_list(arguments, "relations"))

    return await _invoke("createRelations", ctx, op)


async def handle_add_observations(ctx: ServiceContext, arguments: dict) -> dict:
    def op():
        return ctx.graph.add_observations(_required_list(arguments, "observations"))

    return await _invoke("addObservations", ctx, op)


async def handle_delete_entities(ctx: ServiceContext, arguments: dict) -> dict:
    def op():
        return ctx.graph.delete_entities(_required_list(arguments, "entityNames"))

    return await _invoke("deleteEntities", ctx, op, needs_model=False)


async def handle_delete_relations(ctx: ServiceContext, arguments: dict) -> dict:
    def op():
        return ctx.graph.delete_relations(_required_list(arguments, "relations"))

    return await _invoke("deleteRelations", ctx, op, needs_model=False)


async def handle_delete_observations(ctx: ServiceContext, arguments: dict) -> dict:
    def op():
        return ctx.graph.delete_observations(_required_list(arguments, "deletions"))

    return await _invoke("deleteObservations", ctx, op)


# ============================================================================
# Retrieval
# ============================================================================


async def handle_search_nodes(ctx: ServiceContext, arguments: dict) -> dict:
    def op():
        results = ctx.graph.search_nodes(
            _required(arguments, "query"),
            node_types=arguments.get("nodeTypesToSearch"),
            limit=_clamp_int(arguments.get("limit"), default=10),
        )
        return {"results": results, "count": len(results)}

    return await _invoke("searchNodes", ctx, op)


async def handle_open_nodes(ctx: ServiceContext, arguments: dict) -> dict:
    def op():
        return ctx.graph.open_nodes(_required_list(arguments, "names"))

    return await _invoke("openNodes", ctx, op, needs_model=False)


async def handle_read_graph(ctx: ServiceContext, arguments: dict) -> dict:
    return await _invoke("readGraph", ctx, ctx.graph.read_graph, needs_model=False)


async def handle_hybrid_search(ctx: ServiceContext, arguments: dict) -> dict:
    def op():
        results = ctx.search.hybrid_search(
            _required(arguments, "query"),
            limit=_clamp_int(arguments.get("limit"), default=10),
            use_graph=_flag(arguments, "useGraph", True),
            include_documents=_flag(arguments, "includeDocuments", True),
            include_entities=_flag(arguments, "includeEntities", True),
        )
        return {"results": results, "count": len(results)}

    return await _invoke("hybridSearch", ctx, op)


async def handle_get_detailed_context(ctx: ServiceContext, arguments: dict) -> dict:
    def op():
        return ctx.documents.get_detailed_context(
            _required(arguments, "chunkId"),
            surrounding_chunks=arguments.get("surroundingChunks", 2),
        )

    return await _invoke("getDetailedContext", ctx, op, needs_model=False)


async def handle_get_knowledge_graph_stats(ctx: ServiceContext, arguments: dict) -> dict:
    return await _invoke("getKnowledgeGraphStats", ctx, ctx.search.get_knowledge_graph_stats, needs_model=False)


# ============================================================================
# Handler Registry
# ============================================================================

HANDLERS: Dict[str, Callable] = {
    "listDatabases": handle_list_databases,
    "getCurrentDatabase": handle_get_current_database,
    "switchDatabase": handle_switch_database,
    "storeDocument": handle_store_document,
    "extractTerms": handle_extract_terms,
    "linkEntitiesToDocument": handle_link_entities_to_document,
    "deleteDocuments": handle_delete_documents,
    "listDocuments": handle_list_documents,
    "reEmbedEverything": handle_re_embed_everything,
    "createEntities": handle_create_entities,
    "createRelations": handle_create_relations,
    "addObservations": handle_add_observations,
    "deleteEntities": handle_delete_entities,
    "deleteRelations": handle_delete_relations,
    "deleteObservations": handle_delete_observations,
    "searchNodes": handle_search_nodes,
    "openNodes": handle_open_nodes,
    "readGraph": handle_read_graph,
    "hybridSearch": handle_hybrid_search,
    "getDetailedContext": handle_get_detailed_context,
    "getKnowledgeGraphStats": handle_get_knowledge_graph_stats,
}
