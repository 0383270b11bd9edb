"""
RagMem Connection Switch Controller -- owns the active backend handle.

A switch runs: pause monitor, close the current handle, open the target,
run its pending migrations, install it, resume the monitor. Any failure
after the old handle is closed reopens the previous database and raises
SwitchFailure; if that reopen fails too the controller goes FATAL and
raises SwitchFatal. Only one switch runs at a time; a concurrent request
is rejected with AlreadySwitchingError rather than queued.

Async callers claim the switch slot with ``begin_switch`` on the event loop
and hand the returned claim to ``finish_switch`` on a worker, so a request
that arrives while another switch is queued or running is rejected at once.

The active database name and handle are published together as one tuple,
so readers see either the old pair or the new pair.
"""

import logging
import threading
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ragmem.backends.base import Connector, StoreBackend, validate_database_name
from ragmem.errors import (
    AlreadySwitchingError,
    BackendConnectionError,
    SwitchFailure,
    SwitchFatal,
)
from ragmem.migrations import Migration, MigrationEngine
from ragmem.monitor import HealthMonitor
from ragmem.schema import migrations_for

logger = logging.getLogger("ragmem.switching")


class SwitchState(str, Enum):
    IDLE = "idle"
    SWITCHING = "switching"
    FATAL = "fatal"


class ConnectionSwitchController:
    """Holds exactly one open StoreBackend and swaps it on request."""

    def __init__(
        self,
        connector: Connector,
        migrations: Optional[Sequence[Migration]] = None,
        monitor: Optional[HealthMonitor] = None,
    ):
        self.connector = connector
        self._migrations = list(migrations) if migrations is not None else migrations_for(connector.dialect)
        self.monitor = monitor
        self._active: Tuple[Optional[str], Optional[StoreBackend]] = (None, None)
        self._switch_lock = threading.Lock()
        self._claim_lock = threading.Lock()
        self._claim: Optional[object] = None
        self._claim_started = False
        self.state = SwitchState.IDLE
        self.switching_to: Optional[str] = None

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def backend(self) -> StoreBackend:
        """The active handle. Store operations resolve this once per call."""
        if self.state is SwitchState.FATAL:
            raise SwitchFatal("No reachable database: a failed switch could not restore the previous one")
        backend = self._active[1]
        if backend is None:
            raise BackendConnectionError("No database is open")
        return backend

    def get_current_database(self) -> Optional[str]:
        """Name of the database installed by the last successful open or switch."""
        return self._active[0]

    def list_available_databases(self) -> List[str]:
        return self.connector.list_databases()

    def migration_engine(self, backend: Optional[StoreBackend] = None) -> MigrationEngine:
        return MigrationEngine(backend or self.backend, self._migrations)

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "currentDatabase": self.get_current_database(),
            "switchingTo": self.switching_to,
            "dialect": self.connector.dialect,
        }

    # ------------------------------------------------------------------
    # Open / switch
    # ------------------------------------------------------------------

    def _open_and_migrate(self, name: str, create: bool = False) -> Tuple[StoreBackend, List[int]]:
        backend = self.connector.open(name, create=create)
        try:
            applied = self.migration_engine(backend).run_migrations()
        except Exception:
            backend.close()
            raise
        return backend, applied

    def open_initial(self, name: str, create: bool = True) -> List[int]:
        """First phase of startup: open (creating if needed) and migrate ``name``."""
        validate_database_name(name)
        backend, applied = self._open_and_migrate(name, create=create)
        self._active = (name, backend)
        logger.info("Opened %s database %s (%d migrations applied)", self.connector.dialect, name, len(applied))
        return applied

    def begin_switch(self, name: str) -> object:
        """Claim the switch slot for ``name`` without blocking.

        Returns a claim token for ``finish_switch`` or ``release_switch``.
        """
        validate_database_name(name)
        if not self._switch_lock.acquire(blocking=False):
            raise AlreadySwitchingError(
                f"A switch to '{self.switching_to}' is already in progress"
            )
        claim = object()
        with self._claim_lock:
            self._claim = claim
            self._claim_started = False
        self.switching_to = name
        return claim

    def release_switch(self, claim: object) -> bool:
        """Give back a claim whose switch never started. Returns True if released."""
        with self._claim_lock:
            if self._claim is not claim or self._claim_started:
                return False
            self._release_claim()
        logger.info("Abandoned switch claim before it started")
        return True

    def _release_claim(self) -> None:
        self._claim = None
        self._claim_started = False
        self.switching_to = None
        self._switch_lock.release()

    def switch_database(self, name: str) -> Dict[str, Any]:
        return self.finish_switch(name, self.begin_switch(name))

    def finish_switch(self, name: str, claim: object) -> Dict[str, Any]:
        """Run the switch claimed by ``begin_switch``; the claim is always released."""
        with self._claim_lock:
            if self._claim is not claim or self._claim_started:
                raise AlreadySwitchingError(f"The switch claim for '{name}' is no longer held")
            self._claim_started = True
        try:
            if self.state is SwitchState.FATAL:
                raise SwitchFatal("Controller is in a fatal state; restart the server")
            previous, old_backend = self._active
            if name == previous:
                return {"previous": previous, "current": name, "switched": False, "migrationsApplied": []}

            self.state = SwitchState.SWITCHING
            logger.info("Switching database %s -> %s", previous, name)

            if self.monitor is not None:
                self.monitor.pause()
            if old_backend is not None:
                old_backend.close()

            try:
                new_backend, applied = self._open_and_migrate(name)
            except Exception as e:
                logger.error("Switch to %s failed: %s", name, e)
                raise self._restore(previous, name, e) from e

            self._active = (name, new_backend)
            if self.monitor is not None:
                self.monitor.resume()
            self.state = SwitchState.IDLE
            logger.info("Switched database %s -> %s (%d migrations applied)", previous, name, len(applied))
            return {"previous": previous, "current": name, "switched": True, "migrationsApplied": applied}
        finally:
            with self._claim_lock:
                self._release_claim()

    def _restore(self, previous: Optional[str], target: str, cause: Exception) -> Exception:
        """Reopen ``previous`` after a failed switch and return the error to raise."""
        if previous is None:
            self.state = SwitchState.FATAL
            self._active = (None, None)
            logger.critical("Switch to %s failed and there is no previous database to restore", target)
            return SwitchFatal(f"Switch to '{target}' failed and no previous database exists: {cause}")
        try:
            restored = self.connector.open(previous)
        except Exception as e:
            self.state = SwitchState.FATAL
            self._active = (previous, None)
            logger.critical("Switch to %s failed and %s could not be reopened: %s", target, previous, e)
            return SwitchFatal(
                f"Switch to '{target}' failed ({cause}) and restoring '{previous}' failed ({e})"
            )
        self._active = (previous, restored)
        if self.monitor is not None:
            self.monitor.resume()
        self.state = SwitchState.IDLE
        logger.warning("Restored database %s after failed switch to %s", previous, target)
        return SwitchFailure(f"Switch to '{target}' failed: {cause}", active_database=previous)

    def close(self) -> None:
        name, backend = self._active
        if backend is not None:
            backend.close()
            logger.info("Closed database %s", name)
