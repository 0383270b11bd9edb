"""
RagMem SQLite Backend -- embedded single-file engine with sqlite-vec similarity.

Each logical database is one file, ``<data_dir>/<name>.db``. Embeddings are
stored as float32 BLOBs and compared with sqlite-vec's
``vec_distance_cosine`` scalar function.
"""

import logging
import sqlite3
import struct
import time as _time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, List, Sequence

from ragmem.backends.base import Connector, StoreBackend, validate_database_name
from ragmem.errors import BackendConnectionError, ConnectionClosedError

logger = logging.getLogger("ragmem.backends.sqlite")

# ---------------------------------------------------------------------------
# SQLite retry -- handles write contention from other processes sharing a file.
# WAL mode + busy_timeout handle most cases; this retries with exponential
# backoff before surfacing the error.
# ---------------------------------------------------------------------------
_DB_RETRY_ATTEMPTS = 3
_DB_RETRY_BASE_DELAY = 0.5  # seconds


def _retry_on_locked(fn, *args, **kwargs):
    """Call fn with retry on 'database is locked' OperationalError."""
    for attempt in range(_DB_RETRY_ATTEMPTS):
        try:
            return fn(*args, **kwargs)
        except sqlite3.OperationalError as e:
            if "database is locked" in str(e) and attempt < _DB_RETRY_ATTEMPTS - 1:
                delay = _DB_RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning("database is locked (attempt %d/%d), retrying in %.1fs",
                               attempt + 1, _DB_RETRY_ATTEMPTS, delay)
                _time.sleep(delay)
            else:
                raise


def serialize_f32(vector: Sequence[float]) -> bytes:
    """Serialize a float32 vector to bytes for sqlite-vec."""
    return struct.pack(f"{len(vector)}f", *vector)


def deserialize_f32(data: bytes) -> List[float]:
    """Deserialize bytes to a float32 vector."""
    return list(struct.unpack(f"{len(data) // 4}f", data))


class SQLiteBackend(StoreBackend):
    """Open handle on one SQLite database file."""

    dialect = "sqlite"

    def __init__(
        self,
        database_name: str,
        path: Path,
        create: bool = False,
        busy_timeout_ms: int = 5000,
        wal: bool = True,
    ):
        super().__init__(database_name)
        self.path = Path(path)
        self._conn = self._connect(create, busy_timeout_ms, wal)

    def _connect(self, create: bool, busy_timeout_ms: int, wal: bool) -> sqlite3.Connection:
        """Create a new SQLite connection with optimal settings."""
        if not create and not self.path.exists():
            raise BackendConnectionError(f"Database '{self.database_name}' does not exist")
        mode = "rwc" if create else "rw"
        try:
            conn = sqlite3.connect(
                f"{self.path.resolve().as_uri()}?mode={mode}",
                uri=True,
                timeout=busy_timeout_ms / 1000,
                check_same_thread=False,
                isolation_level=None,  # explicit BEGIN/COMMIT via transaction()
            )
        except sqlite3.Error as e:
            raise BackendConnectionError(f"Cannot open database '{self.database_name}': {e}") from e

        try:
            if wal:
                conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
            conn.execute("PRAGMA foreign_keys=ON")

            import sqlite_vec

            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)
        except Exception as e:
            conn.close()
            raise BackendConnectionError(
                f"Cannot initialise database '{self.database_name}': {e}"
            ) from e
        return conn

    def _guard(self, fn, *args):
        with self._lock:
            self._check_open()
            try:
                return _retry_on_locked(fn, *args)
            except sqlite3.ProgrammingError as e:
                if "closed" in str(e):
                    raise ConnectionClosedError(
                        f"Connection to database '{self.database_name}' is closed"
                    ) from e
                raise

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        return self._guard(self._conn.execute, sql, tuple(params)).rowcount

    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[tuple]:
        return self._guard(self._conn.execute, sql, tuple(params)).fetchall()

    @contextmanager
    def _transaction_scope(self) -> Iterator[None]:
        _retry_on_locked(self._conn.execute, "BEGIN IMMEDIATE")
        try:
            yield
        except BaseException:
            try:
                self._conn.execute("ROLLBACK")
            except sqlite3.Error as e:
                logger.debug("Rollback failed: %s", e)
            raise
        _retry_on_locked(self._conn.execute, "COMMIT")

    def vector_param(self, vector: Sequence[float]) -> bytes:
        return serialize_f32(vector)

    def similarity_sql(self, column: str) -> str:
        return f"(1.0 - vec_distance_cosine({column}, ?))"

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            try:
                # Flush WAL before closing -- helps other processes checkpoint
                self._conn.execute("PRAGMA wal_checkpoint(PASSIVE)")
            except sqlite3.Error:
                pass
            try:
                self._conn.close()
            except sqlite3.Error as e:
                logger.debug("Database close failed: %s", e)


class SQLiteConnector(Connector):
    """Logical databases are ``*.db`` files in one directory."""

    dialect = "sqlite"

    def __init__(self, data_dir: Path, busy_timeout_ms: int = 5000, wal: bool = True):
        self.data_dir = Path(data_dir)
        self.busy_timeout_ms = busy_timeout_ms
        self.wal = wal

    def path_for(self, database_name: str) -> Path:
        return self.data_dir / f"{validate_database_name(database_name)}.db"

    def open(self, database_name: str, create: bool = False) -> SQLiteBackend:
        path = self.path_for(database_name)
        if create:
            self.data_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        return SQLiteBackend(
            database_name,
            path,
            create=create,
            busy_timeout_ms=self.busy_timeout_ms,
            wal=self.wal,
        )

    def list_databases(self) -> List[str]:
        if not self.data_dir.exists():
            return []
        return sorted(p.stem for p in self.data_dir.glob("*.db") if p.is_file())

    def create_database(self, database_name: str) -> bool:
        existed = self.path_for(database_name).exists()
        if not existed:
            self.open(database_name, create=True).close()
            logger.info("Created SQLite database %s", database_name)
        return not existed
