from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from strongteams.config_manager import ConfigManager
from strongteams.models import BatchResult

logger = logging.getLogger(__name__)


class BatchScheduler:
    """Runs the batch at startup, then on an interval or a manual trigger.

    ``run_guarded`` holds a run-level lock so two batches never overlap.
    """

    def __init__(self, run_batch: Callable[[str], BatchResult], config_manager: ConfigManager) -> None:
        self.run_batch = run_batch
        self.config_manager = config_manager
        self.last_result: Optional[BatchResult] = None
        self._thread: Optional[threading.Thread] = None
        self._run_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="strongteams-batch-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def is_running(self) -> bool:
        return self._run_lock.locked()

    def run_guarded(self, trigger: str) -> Optional[BatchResult]:
        if not self._run_lock.acquire(blocking=False):
            logger.warning("Batch already running, skipping %s trigger", trigger)
            return None
        try:
            self.last_result = self.run_batch(trigger)
            return self.last_result
        except Exception:
            logger.exception("Batch run crashed (%s)", trigger)
            return None
        finally:
            self._run_lock.release()

    def _loop(self) -> None:
        self.run_guarded("startup")

        while not self._stop_event.is_set():
            interval_seconds = max(30, int(self.config_manager.load().calendar.interval_seconds))
            manual = self._manual_trigger_event.wait(timeout=interval_seconds)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            self.run_guarded("manual" if manual else "scheduled")
