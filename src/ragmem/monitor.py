"""
RagMem Health Monitor -- background liveness probe of the active backend.

The switch controller pauses the probe before tearing the handle down and
resumes it once the new (or restored) handle is in place, so a probe never
runs against a half-switched database.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger("ragmem.monitor")


class HealthMonitor:
    """Runs ``probe()`` every ``interval`` seconds on a daemon thread while not paused."""

    def __init__(self, probe: Callable[[], None], interval: float = 30.0):
        self._probe = probe
        self.interval = interval
        self._stop = threading.Event()
        self._running = threading.Event()
        self._running.set()
        self._probe_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self.consecutive_failures = 0
        self.last_ok: Optional[float] = None
        self.last_error: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return self.interval > 0

    @property
    def paused(self) -> bool:
        return not self._running.is_set()

    def start(self) -> None:
        if not self.enabled or self._thread is not None:
            return
        self._thread = threading.Thread(target=self._loop, name="ragmem-health", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        self._running.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    def pause(self) -> None:
        """Stop probing; waits for an in-flight probe to finish."""
        self._running.clear()
        with self._probe_lock:
            pass

    def resume(self) -> None:
        self._running.set()

    def check(self) -> bool:
        """Run one probe now. Returns True when the backend answered."""
        with self._probe_lock:
            return self._run_probe()

    def _run_probe(self) -> bool:
        try:
            self._probe()
        except Exception as e:
            self.consecutive_failures += 1
            self.last_error = str(e)
            logger.warning("Health probe failed (%d in a row): %s", self.consecutive_failures, e)
            return False
        if self.consecutive_failures:
            logger.info("Health probe recovered after %d failures", self.consecutive_failures)
        self.consecutive_failures = 0
        self.last_ok = time.time()
        self.last_error = None
        return True

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            self._running.wait()
            if self._stop.is_set():
                break
            with self._probe_lock:
                # pause() may have landed between the wait and the lock.
                if self.paused:
                    continue
                self._run_probe()

    def status(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "paused": self.paused,
            "consecutiveFailures": self.consecutive_failures,
            "lastOk": self.last_ok,
            "lastError": self.last_error,
        }
