"""RagMem CLI -- server management, database setup, migrations and status."""

import argparse
import json
import logging
import sys

from ragmem.config import Config
from ragmem.errors import RagMemError


def _load_config() -> Config:
    config = Config.from_env()
    logging.basicConfig(level=config.log_level, stream=sys.stderr)
    return config


def _print_kv(rows):
    width = max((len(k) for k, _ in rows), default=0)
    for key, value in rows:
        print(f"  {key:<{width}}  {value}")


def cmd_serve(args):
    """Run the RagMem MCP server (stdio mode)."""
    import asyncio

    from ragmem.server.mcp_server import main

    asyncio.run(main(_load_config()))


def cmd_serve_http(args):
    """Run the RagMem MCP server over Streamable HTTP."""
    import asyncio

    from ragmem.server.http_server import get_or_create_api_key, run_http

    config = _load_config()
    if args.no_auth:
        api_key = None
        if args.host not in ("127.0.0.1", "localhost", "::1"):
            print(f"Warning: serving without authentication on {args.host}", file=sys.stderr)
    else:
        api_key = args.api_key or get_or_create_api_key(config)
    print(f"RagMem HTTP server on http://{args.host}:{args.port}/mcp", file=sys.stderr)
    asyncio.run(run_http(args.host, args.port, api_key, config))


def cmd_status(args):
    """Show the configured backend, the active database's contents and the embedding model."""
    from ragmem.context import ServiceContext

    config = _load_config()
    ctx = ServiceContext(config)
    try:
        ctx.start(background_model_load=False)
        stats = ctx.search.get_knowledge_graph_stats()
        schema_version = ctx.controller.migration_engine().current_version()
        embedding = ctx.embedder.info()
    finally:
        ctx.close()

    if args.json:
        print(json.dumps({
            "home": str(config.home),
            "dbType": config.db_type,
            "schemaVersion": schema_version,
            "stats": stats,
            "embedding": embedding,
        }, indent=2))
        return

    print("RagMem Status")
    _print_kv([
        ("Home", str(config.home)),
        ("Backend", config.db_type),
        ("Database", stats["database"]),
        ("Schema version", str(schema_version)),
        ("Entities", str(stats["entities"])),
        ("Relations", str(stats["relations"])),
        ("Documents", str(stats["documents"])),
        ("Chunks", str(stats["chunks"])),
        ("Links", str(stats["links"])),
        ("Embedding", str(embedding.get("backend") or "not loaded")),
    ])


def cmd_databases(args):
    """List databases visible to the configured backend."""
    from ragmem.backends import create_connector

    config = _load_config()
    names = create_connector(config).list_databases()
    if args.json:
        print(json.dumps({"databases": names, "default": config.database}, indent=2))
        return
    if not names:
        print("No databases yet. Run 'ragmem init-db <name>' to create one.")
        return
    for name in names:
        marker = "*" if name == config.database else " "
        print(f"{marker} {name}")


def cmd_init_db(args):
    """Create a database (if missing) and bring it to the latest schema."""
    from ragmem.backends import create_connector, validate_database_name
    from ragmem.migrations import MigrationEngine
    from ragmem.schema import migrations_for

    config = _load_config()
    name = validate_database_name(args.name)
    connector = create_connector(config)
    created = connector.create_database(name)
    backend = connector.open(name)
    try:
        applied = MigrationEngine(backend, migrations_for(connector.dialect)).run_migrations()
    finally:
        backend.close()
    state = "Created" if created else "Found existing"
    print(f"{state} database {name}; applied migrations: {applied or 'none'}")


def cmd_migrate(args):
    """Apply pending migrations, or roll back to an earlier schema version."""
    from ragmem.backends import create_connector, validate_database_name
    from ragmem.migrations import MigrationEngine
    from ragmem.schema import migrations_for

    config = _load_config()
    name = validate_database_name(args.database or config.database)
    connector = create_connector(config)
    backend = connector.open(name, create=args.rollback_to is None)
    try:
        engine = MigrationEngine(backend, migrations_for(connector.dialect))
        before = engine.current_version()
        if args.rollback_to is not None:
            reverted = engine.rollback_migration(args.rollback_to)
            print(f"{name}: v{before} -> v{engine.current_version()} (reverted {reverted or 'nothing'})")
        else:
            applied = engine.run_migrations()
            print(f"{name}: v{before} -> v{engine.current_version()} (applied {applied or 'nothing'})")
    finally:
        backend.close()


def cmd_reembed(args):
    """Recompute every entity and chunk embedding in the configured database."""
    from ragmem.context import ServiceContext

    config = _load_config()
    with ServiceContext(config) as ctx:
        ctx.embedder.wait_ready(config.ready_timeout)
        result = ctx.re_embed_everything()
    print(
        f"Re-embedded {result['entitiesReembedded']} entities and "
        f"{result['chunksReembedded']} chunks with {result['embedding'].get('backend')}"
    )


def main():
    parser = argparse.ArgumentParser(
        prog="ragmem",
        description="RagMem -- knowledge graph and document memory MCP server",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("serve", help="Run the MCP server over stdio")

    http_parser = subparsers.add_parser("serve-http", help="Run the MCP server over Streamable HTTP")
    http_parser.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    http_parser.add_argument("--port", type=int, default=8090, help="HTTP port (default: 8090)")
    http_parser.add_argument("--api-key", help="API key clients must send (default: stored key)")
    http_parser.add_argument("--no-auth", action="store_true", help="Disable API key authentication")

    status_parser = subparsers.add_parser("status", help="Show database and model status")
    status_parser.add_argument("--json", action="store_true", help="Output as JSON")

    databases_parser = subparsers.add_parser("databases", help="List available databases")
    databases_parser.add_argument("--json", action="store_true", help="Output as JSON")

    init_parser = subparsers.add_parser("init-db", help="Create a database and apply the schema")
    init_parser.add_argument("name", help="Database name (letters, digits, '_' and '-')")

    migrate_parser = subparsers.add_parser("migrate", help="Apply or roll back schema migrations")
    migrate_parser.add_argument("--database", help="Database to migrate (default: RAGMEM_DATABASE)")
    migrate_parser.add_argument("--rollback-to", type=int, metavar="N", help="Roll back to schema version N")

    subparsers.add_parser("reembed", help="Recompute all embeddings with the current model")

    args = parser.parse_args()

    commands = {
        "serve": cmd_serve,
        "serve-http": cmd_serve_http,
        "status": cmd_status,
        "databases": cmd_databases,
        "init-db": cmd_init_db,
        "migrate": cmd_migrate,
        "reembed": cmd_reembed,
    }

    if args.command in commands:
        try:
            commands[args.command](args)
        except RagMemError as e:
            print(f"Error: [{e.code}] {e.message}", file=sys.stderr)
            sys.exit(1)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
