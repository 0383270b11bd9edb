"""Storage engines behind the StoreBackend contract."""

from ragmem.backends.base import Connector, StoreBackend, validate_database_name
from ragmem.config import Config


def create_connector(config: Config) -> Connector:
    """Build the connector for the configured engine."""
    if config.db_type == "postgresql":
        from ragmem.backends.postgres import PostgresConnector

        return PostgresConnector(config.postgres)

    from ragmem.backends.sqlite import SQLiteConnector

    return SQLiteConnector(
        config.sqlite_dir,
        busy_timeout_ms=config.sqlite_busy_timeout_ms,
        wal=config.sqlite_wal,
    )


__all__ = ["Connector", "StoreBackend", "create_connector", "validate_database_name"]
