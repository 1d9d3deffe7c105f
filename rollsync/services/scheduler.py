"""Clock and per-session periodic timers."""
import logging
import threading
from datetime import datetime
from typing import Callable

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default engine clock."""
    return datetime.utcnow()


class PeriodicTask:
    """Run a callable every ``interval`` seconds on a daemon thread until cancelled."""

    def __init__(self, name: str, interval: float, func: Callable[[], object]):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = interval
        self.func = func
        self._stopped = threading.Event()
        self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stopped.is_set()

    def start(self) -> 'PeriodicTask':
        if self._thread is not None:
            return self
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logger.debug("Started periodic task %s every %ss", self.name, self.interval)
        return self

    def cancel(self, wait: bool = False) -> None:
        """Stop the task; pending runs are skipped."""
        self._stopped.set()
        thread = self._thread
        if wait and thread is not None and thread is not threading.current_thread():
            thread.join(self.interval)

    def _run(self) -> None:
        while not self._stopped.wait(self.interval):
            try:
                self.func()
            except Exception:
                logger.exception("Periodic task %s failed", self.name)
