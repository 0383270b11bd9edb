"""Tests for the migration engine and the registered schema."""
import pytest

from ragmem.backends.sqlite import SQLiteConnector
from ragmem.errors import ConflictError, MigrationError, ValidationError
from ragmem.migrations import Migration, MigrationEngine
from ragmem.schema import SCHEMA_VERSION, migrations_for


@pytest.fixture
def backend(tmp_path):
    b = SQLiteConnector(tmp_path / "dbs").open("mig", create=True)
    yield b
    b.close()


def _tables(backend):
    rows = backend.fetchall("SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name")
    return {r[0] for r in rows}


def _steps():
    return [
        Migration(1, "create a", ["CREATE TABLE a (id INTEGER)"], ["DROP TABLE a"]),
        Migration(2, "create b", ["CREATE TABLE b (id INTEGER)"], ["DROP TABLE b"]),
        Migration(3, "create c", ["CREATE TABLE c (id INTEGER)"], ["DROP TABLE c"]),
    ]


class TestRunMigrations:

    def test_fresh_database_is_version_zero(self, backend):
        engine = MigrationEngine(backend, _steps())
        assert engine.current_version() == 0
        assert [m.version for m in engine.pending()] == [1, 2, 3]

    def test_applies_in_order(self, backend):
        engine = MigrationEngine(backend, reversed(_steps()))
        assert engine.run_migrations() == [1, 2, 3]
        assert engine.current_version() == 3
        assert {"a", "b", "c"} <= _tables(backend)
        assert [row["version"] for row in engine.applied()] == [1, 2, 3]

    def test_rerun_is_noop(self, backend):
        engine = MigrationEngine(backend, _steps())
        engine.run_migrations()
        assert engine.run_migrations() == []
        assert engine.current_version() == 3

    def test_only_pending_applied(self, backend):
        MigrationEngine(backend, _steps()[:1]).run_migrations()
        assert MigrationEngine(backend, _steps()).run_migrations() == [2, 3]

    def test_failure_keeps_previous_version(self, backend):
        steps = _steps()[:1] + [
            Migration(2, "half broken", ["CREATE TABLE partial (id INTEGER)", "CREATE TABLEX nope"]),
            Migration(3, "never reached", ["CREATE TABLE c (id INTEGER)"]),
        ]
        engine = MigrationEngine(backend, steps)
        with pytest.raises(MigrationError) as exc_info:
            engine.run_migrations()
        assert exc_info.value.version == 2
        assert engine.current_version() == 1
        tables = _tables(backend)
        assert "partial" not in tables
        assert "c" not in tables


class TestRegistration:

    def test_duplicate_version_conflicts(self, backend):
        engine = MigrationEngine(backend, _steps())
        with pytest.raises(ConflictError):
            engine.register(Migration(2, "again", ["SELECT 1"]))

    @pytest.mark.parametrize("version", [0, -1])
    def test_non_positive_version_rejected(self, backend, version):
        with pytest.raises(ValidationError):
            MigrationEngine(backend, [Migration(version, "bad", ["SELECT 1"])])

    def test_latest_version(self, backend):
        assert MigrationEngine(backend, _steps()).latest_version == 3
        assert MigrationEngine(backend).latest_version == 0


class TestRollback:

    def test_rollback_to_target(self, backend):
        engine = MigrationEngine(backend, _steps())
        engine.run_migrations()
        assert engine.rollback_migration(1) == [3, 2]
        assert engine.current_version() == 1
        tables = _tables(backend)
        assert "a" in tables
        assert "b" not in tables and "c" not in tables

    def test_rollback_to_zero(self, backend):
        engine = MigrationEngine(backend, _steps())
        engine.run_migrations()
        engine.rollback_migration(0)
        assert engine.current_version() == 0
        assert not {"a", "b", "c"} & _tables(backend)

    def test_rollback_at_or_above_current_is_noop(self, backend):
        engine = MigrationEngine(backend, _steps())
        engine.run_migrations()
        assert engine.rollback_migration(3) == []
        assert engine.rollback_migration(7) == []

    def test_irreversible_step_blocks_whole_rollback(self, backend):
        steps = _steps()
        steps[1] = Migration(2, "one way", ["CREATE TABLE b (id INTEGER)"])
        engine = MigrationEngine(backend, steps)
        engine.run_migrations()
        with pytest.raises(MigrationError) as exc_info:
            engine.rollback_migration(0)
        assert exc_info.value.version == 2
        # Checked up front: nothing was reverted, not even version 3.
        assert engine.current_version() == 3
        assert "c" in _tables(backend)

    def test_unregistered_applied_version_blocks_rollback(self, backend):
        MigrationEngine(backend, _steps()).run_migrations()
        engine = MigrationEngine(backend, _steps()[:2])
        with pytest.raises(MigrationError):
            engine.rollback_migration(1)

    def test_negative_target_rejected(self, backend):
        with pytest.raises(ValidationError):
            MigrationEngine(backend, _steps()).rollback_migration(-1)

    def test_reapply_after_rollback(self, backend):
        engine = MigrationEngine(backend, _steps())
        engine.run_migrations()
        engine.rollback_migration(1)
        assert engine.run_migrations() == [2, 3]


class TestSchema:

    def test_schema_versions_contiguous(self):
        for dialect in ("sqlite", "postgresql"):
            versions = [m.version for m in migrations_for(dialect)]
            assert versions == list(range(1, SCHEMA_VERSION + 1))
            assert all(m.reversible for m in migrations_for(dialect))

    def test_postgres_uses_vector_column(self):
        ddl = " ".join(" ".join(m.up) for m in migrations_for("postgresql"))
        assert "vector(384)" in ddl
        assert "CREATE EXTENSION IF NOT EXISTS vector" in ddl

    def test_full_schema_round_trip(self, backend):
        engine = MigrationEngine(backend, migrations_for("sqlite"))
        assert engine.run_migrations() == list(range(1, SCHEMA_VERSION + 1))
        assert {"entities", "relations", "documents", "chunks", "entity_chunk_links"} <= _tables(backend)
        engine.rollback_migration(0)
        assert _tables(backend) == {"schema_migrations"}
