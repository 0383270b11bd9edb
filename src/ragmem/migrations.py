"""
RagMem Migrations -- versioned, reversible schema changes for one logical database.

The applied state is the highest row in ``schema_migrations``. Each pending
migration runs in its own transaction together with its bookkeeping insert,
so a failure leaves the recorded version exactly where the last success put it.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from ragmem.backends.base import StoreBackend
from ragmem.errors import ConflictError, MigrationError, ValidationError

logger = logging.getLogger("ragmem.migrations")

_BOOKKEEPING_DDL = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version INTEGER PRIMARY KEY,
    description TEXT NOT NULL,
    applied_at TEXT NOT NULL
)
"""


@dataclass(frozen=True)
class Migration:
    """One schema step. ``down`` is None when the step cannot be reversed."""

    version: int
    description: str
    up: Sequence[str]
    down: Optional[Sequence[str]] = None

    @property
    def reversible(self) -> bool:
        return self.down is not None


class MigrationEngine:
    """Applies and rolls back registered migrations against one backend."""

    def __init__(self, backend: StoreBackend, migrations: Sequence[Migration] = ()):
        self.backend = backend
        self._migrations: Dict[int, Migration] = {}
        for migration in migrations:
            self.register(migration)

    def register(self, migration: Migration) -> None:
        if not isinstance(migration.version, int) or migration.version < 1:
            raise ValidationError(f"Migration version must be a positive integer, got {migration.version!r}")
        if migration.version in self._migrations:
            raise ConflictError(f"Migration version {migration.version} is already registered")
        self._migrations[migration.version] = migration

    @property
    def registered_versions(self) -> List[int]:
        return sorted(self._migrations)

    @property
    def latest_version(self) -> int:
        return max(self._migrations, default=0)

    def _ensure_bookkeeping(self) -> None:
        self.backend.execute(_BOOKKEEPING_DDL)

    def current_version(self) -> int:
        """Highest applied version, 0 on a fresh database."""
        self._ensure_bookkeeping()
        return int(self.backend.scalar("SELECT COALESCE(MAX(version), 0) FROM schema_migrations") or 0)

    def applied(self) -> List[Dict[str, object]]:
        self._ensure_bookkeeping()
        rows = self.backend.fetchall(
            "SELECT version, description, applied_at FROM schema_migrations ORDER BY version"
        )
        return [{"version": r[0], "description": r[1], "applied_at": r[2]} for r in rows]

    def pending(self) -> List[Migration]:
        current = self.current_version()
        return [self._migrations[v] for v in self.registered_versions if v > current]

    def run_migrations(self) -> List[int]:
        """Apply every pending migration in ascending order.

        Returns the versions applied by this call (empty when already current).
        Stops at the first failure and raises MigrationError.
        """
        applied: List[int] = []
        for migration in self.pending():
            try:
                with self.backend.transaction():
                    for statement in migration.up:
                        self.backend.execute(statement)
                    self.backend.execute(
                        "INSERT INTO schema_migrations (version, description, applied_at) VALUES (?, ?, ?)",
                        (migration.version, migration.description, datetime.now(timezone.utc).isoformat()),
                    )
            except Exception as e:
                logger.error(
                    "Migration %d (%s) failed on %s: %s",
                    migration.version,
                    migration.description,
                    self.backend.database_name,
                    e,
                )
                raise MigrationError(
                    f"Migration {migration.version} ({migration.description}) failed: {e}",
                    version=migration.version,
                ) from e
            applied.append(migration.version)
            logger.info(
                "Applied migration %d (%s) to %s",
                migration.version,
                migration.description,
                self.backend.database_name,
            )
        return applied

    def rollback_migration(self, target_version: int) -> List[int]:
        """Reverse applied migrations down to ``target_version`` (exclusive).

        Every version in the range must have a reverse script; this is checked
        before anything is rolled back. Returns the versions reverted, highest first.
        """
        if not isinstance(target_version, int) or target_version < 0:
            raise ValidationError(f"Target version must be a non-negative integer, got {target_version!r}")
        current = self.current_version()
        if target_version >= current:
            return []

        applied_versions = [
            r[0]
            for r in self.backend.fetchall(
                "SELECT version FROM schema_migrations WHERE version > ? ORDER BY version DESC",
                (target_version,),
            )
        ]
        for version in applied_versions:
            migration = self._migrations.get(version)
            if migration is None:
                raise MigrationError(f"Applied migration {version} is not registered", version=version)
            if not migration.reversible:
                raise MigrationError(f"Migration {version} has no reverse script", version=version)

        reverted: List[int] = []
        for version in applied_versions:
            migration = self._migrations[version]
            try:
                with self.backend.transaction():
                    for statement in migration.down or ():
                        self.backend.execute(statement)
                    self.backend.execute("DELETE FROM schema_migrations WHERE version = ?", (version,))
            except Exception as e:
                logger.error("Rollback of migration %d failed on %s: %s", version, self.backend.database_name, e)
                raise MigrationError(f"Rollback of migration {version} failed: {e}", version=version) from e
            reverted.append(version)
            logger.info("Rolled back migration %d (%s) on %s", version, migration.description, self.backend.database_name)
        return reverted
