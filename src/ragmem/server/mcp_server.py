"""RagMem MCP Server -- stdio-based MCP server over one owned ServiceContext."""

import asyncio
import collections
import logging
import os
import sys
import time
from typing import Optional

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from ragmem.config import Config
from ragmem.context import ServiceContext
from ragmem.server.handlers import HANDLERS
from ragmem.server.tool_schemas import TOOL_SCHEMAS

logger = logging.getLogger("ragmem.server")

SERVER_NAME = "ragmem"

# ---------------------------------------------------------------------------
# Rate limiting -- sliding-window counters
# ---------------------------------------------------------------------------
_RATE_WINDOW_S = 60.0

WRITE_TOOLS = frozenset({
    "switchDatabase",
    "storeDocument", "linkEntitiesToDocument", "deleteDocuments", "reEmbedEverything",
    "createEntities", "createRelations", "addObservations",
    "deleteEntities", "deleteRelations", "deleteObservations",
})


class RateLimiter:
    """Global and write-tier call budgets per sliding minute."""

    def __init__(self, global_limit: int = 300, write_limit: int = 60, window_s: float = _RATE_WINDOW_S):
        self.global_limit = global_limit
        self.write_limit = write_limit
        self.window_s = window_s
        self._global: collections.deque = collections.deque()
        self._write: collections.deque = collections.deque()

    def check(self, tool_name: str) -> Optional[str]:
        """Return an error message if rate limit exceeded, else None."""
        now = time.monotonic()
        cutoff = now - self.window_s

        while self._global and self._global[0] < cutoff:
            self._global.popleft()
        if len(self._global) >= self.global_limit:
            return f"Rate limit exceeded: {self.global_limit} calls/min globally. Try again shortly."
        self._global.append(now)

        if tool_name in WRITE_TOOLS:
            while self._write and self._write[0] < cutoff:
                self._write.popleft()
            if len(self._write) >= self.write_limit:
                return f"Rate limit exceeded: {self.write_limit} write calls/min. Try again shortly."
            self._write.append(now)

        return None


class ToolDispatcher:
    """Routes a tool call to its handler, applying rate limits and tracking activity."""

    def __init__(self, ctx: ServiceContext, limiter: Optional[RateLimiter] = None):
        self.ctx = ctx
        self.limiter = limiter or RateLimiter(ctx.config.rate_limit_global, ctx.config.rate_limit_write)
        self.last_activity = time.monotonic()

    async def dispatch(self, name: str, arguments: Optional[dict]) -> dict:
        self.last_activity = time.monotonic()

        rate_err = self.limiter.check(name)
        if rate_err:
            return {"content": [{"type": "text", "text": f"Error: {name} failed: [rate_limited] {rate_err}"}], "isError": True}

        handler = HANDLERS.get(name)
        if not handler:
            return {"content": [{"type": "text", "text": f"Error: Unknown tool: {name}"}], "isError": True}

        return await handler(self.ctx, arguments or {})


def _fatal_exit(ctx: ServiceContext) -> None:
    logger.critical("No reachable database after a failed switch; terminating.")
    try:
        ctx.close()
    finally:
        os._exit(1)


def create_server(dispatcher: ToolDispatcher) -> Server:
    """Build the MCP Server bound to one dispatcher (and so one ServiceContext)."""
    server = Server(SERVER_NAME)

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        """Return all RagMem tools."""
        return [
            Tool(
                name=schema["name"],
                description=schema["description"],
                inputSchema=schema["inputSchema"],
            )
            for schema in TOOL_SCHEMAS
        ]

    @server.call_tool()
    async def call_tool(name: str, arguments: dict) -> list[TextContent]:
        """Dispatch tool call to the appropriate handler."""
        result = await dispatcher.dispatch(name, arguments)
        content_list = result.get("content", [{}])
        text = content_list[0].get("text", str(result)) if content_list else str(result)
        if result.get("fatal"):
            # Let the error response reach the client before the process goes away.
            asyncio.get_running_loop().call_later(0.5, _fatal_exit, dispatcher.ctx)
        if result.get("isError"):
            # The SDK turns a raised exception into an isError result carrying its text.
            raise RuntimeError(text)
        return [TextContent(type="text", text=text)]

    return server


async def _idle_watchdog(dispatcher: ToolDispatcher, timeout: int) -> None:
    """Exit the process if no tool call has been received within the timeout."""
    while True:
        await asyncio.sleep(30)
        idle = time.monotonic() - dispatcher.last_activity
        if idle >= timeout:
            logger.warning("Idle for %.0fs (limit %ds), shutting down.", idle, timeout)
            dispatcher.ctx.close()
            os._exit(0)


async def main(config: Optional[Config] = None) -> None:
    """Entry point for the RagMem MCP server."""
    config = config or Config.from_env()
    logging.basicConfig(level=config.log_level, stream=sys.stderr)
    logger.info("Starting RagMem MCP server...")

    ctx = ServiceContext(config)
    # Phase one opens and migrates the database; the model loads in the background.
    ctx.start(background_model_load=True)
    dispatcher = ToolDispatcher(ctx)
    server = create_server(dispatcher)

    # IMPORTANT: Save reference -- unref'd tasks get silently GC'd by asyncio.
    watchdog_task = None
    if config.idle_timeout > 0:
        watchdog_task = asyncio.create_task(_idle_watchdog(dispatcher, config.idle_timeout))

    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options(),
            )
    finally:
        if watchdog_task is not None:
            watchdog_task.cancel()
        ctx.close()


if __name__ == "__main__":
    asyncio.run(main())
