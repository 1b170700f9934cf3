"""Certificate file watcher.

Polls the certificate and key files and notifies a callback when an
external tool replaces them. Bursts of changes (write to a temp file, then
rename over the original) are collapsed into a single notification once the
files have been quiet for the debounce interval.
"""

import logging
import os
import threading
import time
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_DEBOUNCE = 2.0

ChangeCallback = Callable[[list], None]


def _file_state(path: Path) -> Optional[tuple]:
    """Identity of a file's current contents, or None if it doesn't exist."""
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.debug("Cannot stat %s: %s", path, e)
        return ("error", e.errno)
    return (st.st_ino, st.st_size, st.st_mtime_ns)


class CertificateWatcher:
    """Watches certificate files and signals changes."""

    def __init__(
        self,
        cert_path: Path,
        key_path: Path,
        on_change: ChangeCallback,
        interval: float = DEFAULT_POLL_INTERVAL,
        debounce: float = DEFAULT_DEBOUNCE,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.paths = (Path(cert_path), Path(key_path))
        self.on_change = on_change
        self.interval = interval
        self.debounce = debounce
        self.clock = clock
        self.notifications = 0

        self._states = {p: _file_state(p) for p in self.paths}
        self._pending: set = set()
        self._last_change: Optional[float] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def poll_once(self, now: Optional[float] = None) -> bool:
        """Run one polling step.

        Args:
            now: Current monotonic time (default: clock())

        Returns:
            True if the callback fired during this step
        """
        if now is None:
            now = self.clock()

        for path in self.paths:
            state = _file_state(path)
            if state != self._states[path]:
                logger.debug("Detected change on %s", path)
                self._states[path] = state
                self._pending.add(path)
                self._last_change = now

        if not self._pending or self._last_change is None:
            return False
        if now - self._last_change < self.debounce:
            return False

        changed = sorted(self._pending, key=self.paths.index)
        self._pending.clear()
        self._last_change = None
        self.notifications += 1
        logger.info("Certificate files changed: %s", ", ".join(str(p) for p in changed))
        try:
            self.on_change(changed)
        except Exception:
            logger.exception("Certificate change handler failed")
        return True

    def _run(self):
        while not self._stop.wait(self.interval):
            self.poll_once()

    def start(self) -> "CertificateWatcher":
        """Start polling in a background daemon thread."""
        if self.running:
            return self
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="cert-watcher", daemon=True
        )
        self._thread.start()
        logger.info("Watching certificate files: %s", ", ".join(str(p) for p in self.paths))
        return self

    def stop(self, timeout: float = 5.0):
        """Stop polling and wait for the thread to exit."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None


def start_watching(
    cert_path: Path,
    key_path: Path,
    on_change: ChangeCallback,
    interval: float = DEFAULT_POLL_INTERVAL,
    debounce: float = DEFAULT_DEBOUNCE,
) -> CertificateWatcher:
    """Create and start a watcher for the certificate/key pair."""
    watcher = CertificateWatcher(
        cert_path, key_path, on_change, interval=interval, debounce=debounce
    )
    return watcher.start()
