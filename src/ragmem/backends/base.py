"""
RagMem Backends -- the store contract shared by the SQLite and PostgreSQL engines.

Stores write portable SQL with ``?`` placeholders and go through this
interface only. The two engines differ in how vectors are bound and
compared, so those two concerns are the only dialect hooks:
``vector_param`` and ``similarity_sql``.
"""

import re
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, ContextManager, Iterator, List, Optional, Sequence

from ragmem.errors import ConnectionClosedError, ValidationError

_DB_NAME_RE = re.compile(r"^[A-Za-z0-9_\-]{1,63}$")


def validate_database_name(name: Any) -> str:
    """Logical database names double as file names and catalog names."""
    if not isinstance(name, str) or not _DB_NAME_RE.match(name):
        raise ValidationError(
            f"Invalid database name {name!r}: use 1-63 letters, digits, '_' or '-'"
        )
    return name


class StoreBackend(ABC):
    """One open handle against one logical database."""

    dialect: str = ""

    def __init__(self, database_name: str):
        self.database_name = database_name
        self._lock = threading.RLock()
        self._closed = False
        self._tx_depth = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_open(self) -> None:
        if self._closed:
            raise ConnectionClosedError(
                f"Connection to database '{self.database_name}' is closed"
            )

    # -- statements ------------------------------------------------------

    @abstractmethod
    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a statement; returns the affected row count."""

    @abstractmethod
    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[tuple]:
        """Run a query and return every row."""

    def fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[tuple]:
        rows = self.fetchall(sql, params)
        return rows[0] if rows else None

    def scalar(self, sql: str, params: Sequence[Any] = ()) -> Any:
        row = self.fetchone(sql, params)
        return row[0] if row else None

    @contextmanager
    def transaction(self) -> Iterator["StoreBackend"]:
        """Hold the handle exclusively and commit on success, roll back on error.

        Nested calls on the same thread join the outer transaction.
        """
        with self._lock:
            self._check_open()
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield self
                finally:
                    self._tx_depth -= 1
                return
            self._tx_depth = 1
            try:
                with self._transaction_scope():
                    yield self
            finally:
                self._tx_depth = 0

    @abstractmethod
    def _transaction_scope(self) -> ContextManager[Any]:
        """Engine-specific BEGIN/COMMIT/ROLLBACK around one transaction."""

    # -- vectors ---------------------------------------------------------

    @abstractmethod
    def vector_param(self, vector: Sequence[float]) -> Any:
        """Bind value for an embedding column."""

    @abstractmethod
    def similarity_sql(self, column: str) -> str:
        """SQL expression for cosine similarity between ``column`` and one bound vector."""

    # -- lifecycle -------------------------------------------------------

    def ping(self) -> None:
        """Raise if the handle can no longer reach its database."""
        self.fetchall("SELECT 1")

    @abstractmethod
    def close(self) -> None: ...


class Connector(ABC):
    """Opens backends by logical database name on one server (or data directory)."""

    dialect: str = ""

    @abstractmethod
    def open(self, database_name: str, create: bool = False) -> StoreBackend:
        """Open a handle; fails with BackendConnectionError if unreachable or missing."""

    @abstractmethod
    def list_databases(self) -> List[str]:
        """Catalog entries, excluding system and template databases."""

    @abstractmethod
    def create_database(self, database_name: str) -> bool:
        """Create an empty logical database. Returns False if it already existed."""
