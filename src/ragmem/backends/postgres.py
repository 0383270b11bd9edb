"""
RagMem PostgreSQL Backend -- networked multi-database engine with pgvector.

One server hosts many logical databases; a backend is a psycopg connection
to exactly one of them. Embeddings live in ``vector(384)`` columns and are
compared with pgvector's cosine distance operator ``<=>``.
"""

import logging
from contextlib import contextmanager
from typing import Any, Iterator, List, Sequence

import numpy as np
import psycopg
from pgvector.psycopg import register_vector
from psycopg import sql as pgsql

from ragmem.backends.base import Connector, StoreBackend, validate_database_name
from ragmem.config import PostgresSettings
from ragmem.errors import BackendConnectionError, ConnectionClosedError

logger = logging.getLogger("ragmem.backends.postgres")

_CONNECT_TIMEOUT_S = 10
_MAINTENANCE_DB = "postgres"


def translate_placeholders(statement: str) -> str:
    """Rewrite portable ``?`` placeholders to psycopg's ``%s``.

    Store SQL never contains literal '?' or '%' characters.
    """
    return statement.replace("?", "%s")


class PostgresBackend(StoreBackend):
    """Open handle on one PostgreSQL database."""

    dialect = "postgresql"

    def __init__(self, database_name: str, settings: PostgresSettings):
        super().__init__(database_name)
        self._conn = self._connect(settings)

    def _connect(self, settings: PostgresSettings) -> psycopg.Connection:
        try:
            conn = psycopg.connect(
                settings.conninfo(self.database_name),
                autocommit=True,
                connect_timeout=_CONNECT_TIMEOUT_S,
            )
        except psycopg.Error as e:
            raise BackendConnectionError(f"Cannot connect to database '{self.database_name}': {e}") from e
        try:
            # The adapter needs the vector type to exist before it can register.
            conn.execute("CREATE EXTENSION IF NOT EXISTS vector")
            register_vector(conn)
        except psycopg.Error as e:
            conn.close()
            raise BackendConnectionError(
                f"pgvector is not available in database '{self.database_name}': {e}"
            ) from e
        return conn

    def _run(self, statement: str, params: Sequence[Any]):
        with self._lock:
            self._check_open()
            try:
                return self._conn.execute(translate_placeholders(statement), tuple(params))
            except (psycopg.OperationalError, psycopg.InterfaceError) as e:
                if self._conn.closed:
                    raise ConnectionClosedError(
                        f"Connection to database '{self.database_name}' was lost: {e}"
                    ) from e
                raise BackendConnectionError(str(e)) from e

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        return self._run(sql, params).rowcount

    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[tuple]:
        cur = self._run(sql, params)
        return cur.fetchall() if cur.description is not None else []

    @contextmanager
    def _transaction_scope(self) -> Iterator[None]:
        with self._conn.transaction():
            yield

    def vector_param(self, vector: Sequence[float]) -> Any:
        return np.asarray(vector, dtype=np.float32)

    def similarity_sql(self, column: str) -> str:
        return f"(1 - ({column} <=> ?))"

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            try:
                self._conn.close()
            except psycopg.Error as e:
                logger.debug("Connection close failed: %s", e)


class PostgresConnector(Connector):
    """Logical databases are catalog databases on one PostgreSQL server."""

    dialect = "postgresql"

    def __init__(self, settings: PostgresSettings):
        self.settings = settings

    def open(self, database_name: str, create: bool = False) -> PostgresBackend:
        validate_database_name(database_name)
        if create:
            self.create_database(database_name)
        return PostgresBackend(database_name, self.settings)

    def _maintenance_connection(self) -> psycopg.Connection:
        try:
            return psycopg.connect(
                self.settings.conninfo(_MAINTENANCE_DB),
                autocommit=True,
                connect_timeout=_CONNECT_TIMEOUT_S,
            )
        except psycopg.Error as e:
            raise BackendConnectionError(f"Cannot reach PostgreSQL server: {e}") from e

    def list_databases(self) -> List[str]:
        with self._maintenance_connection() as conn:
            rows = conn.execute(
                "SELECT datname FROM pg_database "
                "WHERE datistemplate = false AND datname <> %s ORDER BY datname",
                (_MAINTENANCE_DB,),
            ).fetchall()
        return [r[0] for r in rows]

    def create_database(self, database_name: str) -> bool:
        validate_database_name(database_name)
        with self._maintenance_connection() as conn:
            exists = conn.execute(
                "SELECT 1 FROM pg_database WHERE datname = %s", (database_name,)
            ).fetchone()
            if exists:
                return False
            conn.execute(pgsql.SQL("CREATE DATABASE {}").format(pgsql.Identifier(database_name)))
        logger.info("Created PostgreSQL database %s", database_name)
        return True
