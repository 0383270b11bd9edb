"""RagMem HTTP Server -- Streamable HTTP transport for the MCP server.

Wraps the same MCP Server used over stdio in a Starlette ASGI app using
the MCP SDK's StreamableHTTPSessionManager. Adds ``/health`` (including the
active database and model readiness) and a server card.
"""

import contextlib
import logging
import secrets
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Optional

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Mount, Route
from starlette.types import Receive, Scope, Send

from mcp.server.streamable_http_manager import StreamableHTTPSessionManager

from ragmem.config import Config
from ragmem.context import ServiceContext
from ragmem.server.mcp_server import SERVER_NAME, ToolDispatcher, create_server
from ragmem.server.tool_schemas import TOOL_SCHEMAS

logger = logging.getLogger("ragmem.server.http")


def api_key_path(config: Config) -> Path:
    return config.home / "api_key"


def get_or_create_api_key(config: Config) -> str:
    """Load API key from RAGMEM_HOME/api_key, or generate one."""
    path = api_key_path(config)
    if path.exists():
        return path.read_text().strip()
    key = secrets.token_urlsafe(32)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(key + "\n")
    path.chmod(0o600)
    return key


def create_http_app(dispatcher: ToolDispatcher, api_key: Optional[str] = None) -> Starlette:
    """Create a Starlette ASGI app wrapping the MCP server.

    Args:
        dispatcher: Tool dispatcher bound to the running ServiceContext.
        api_key: Optional API key for authentication. None disables auth.
    """
    ctx = dispatcher.ctx
    session_manager = StreamableHTTPSessionManager(
        app=create_server(dispatcher),
        json_response=True,
        stateless=True,
    )

    async def mcp_asgi_app(scope: Scope, receive: Receive, send: Send) -> None:
        """ASGI app for the /mcp endpoint -- delegates to StreamableHTTPSessionManager."""
        if api_key:
            request = Request(scope, receive)
            provided = request.headers.get("x-api-key") or request.query_params.get("api_key")
            if provided != api_key:
                response = JSONResponse({"error": "Unauthorized"}, status_code=401)
                await response(scope, receive, send)
                return
        await session_manager.handle_request(scope, receive, send)

    async def health(request: Request):
        status = ctx.controller.status()
        healthy = status["state"] != "fatal"
        return JSONResponse(
            {
                "status": "ok" if healthy else "fatal",
                "server": SERVER_NAME,
                "database": status["currentDatabase"],
                "dialect": status["dialect"],
                "modelReady": ctx.embedder.ready,
                "monitor": ctx.monitor.status(),
            },
            status_code=200 if healthy else 503,
        )

    async def server_card(request: Request):
        from ragmem import __version__

        return JSONResponse({
            "name": SERVER_NAME,
            "version": __version__,
            "description": "Knowledge graph and document memory with hybrid vector and graph retrieval",
            "transports": [
                {"type": "streamable-http", "url": "/mcp"},
                {"type": "stdio", "command": "ragmem serve"},
            ],
            "tools_count": len(TOOL_SCHEMAS),
        })

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        async with session_manager.run():
            yield

    app = Starlette(
        routes=[
            Mount("/mcp", app=mcp_asgi_app),
            Route("/health", endpoint=health),
            Route("/.well-known/mcp.json", endpoint=server_card),
            Route("/.well-known/mcp/server-card.json", endpoint=server_card),
        ],
        lifespan=lifespan,
    )
    return app


async def run_http(host: str, port: int, api_key: Optional[str], config: Optional[Config] = None) -> None:
    """Start the service context, create the HTTP app, run uvicorn."""
    import uvicorn

    ctx = ServiceContext(config or Config.from_env())
    ctx.start(background_model_load=True)
    try:
        app = create_http_app(ToolDispatcher(ctx), api_key=api_key)
        uv_config = uvicorn.Config(app, host=host, port=port, log_level="info")
        srv = uvicorn.Server(uv_config)
        await srv.serve()
    finally:
        ctx.close()
