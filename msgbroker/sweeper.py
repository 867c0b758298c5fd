"""
Background sweeper that returns timed-out in-flight envelopes to the work queue.
"""
import threading
import logging
from typing import Optional

from .work_queue import WorkQueue


logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Periodically requeues envelopes whose visibility timeout elapsed"""

    def __init__(self, work_queue: WorkQueue, interval: float = 1.0):
        if interval <= 0:
            raise ValueError(f"Sweeper interval must be positive, got {interval}")

        self.work_queue = work_queue
        self.interval = interval

        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        # tick() runs on the sweeper thread and from MessageBroker.sweep()
        self._stats_lock = threading.Lock()
        self._ticks = 0
        self._requeued = 0

    def start(self) -> None:
        """Start the sweeper thread"""
        with self._lock:
            if self._thread and self._thread.is_alive():
                return

            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._sweep_worker,
                daemon=True,
                name="ExpirySweeper"
            )
            self._thread.start()
            logger.info(f"Expiry sweeper started (interval {self.interval}s)")

    def stop(self) -> None:
        """Stop the sweeper thread and wait for it to exit"""
        with self._lock:
            self._stop_event.set()

            if self._thread and self._thread.is_alive():
                self._thread.join(timeout=max(self.interval * 2, 5))
            self._thread = None

            logger.info("Expiry sweeper stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def tick(self) -> int:
        """Run one sweep; returns the number of envelopes taken out of flight"""
        requeued = self.work_queue.requeue_expired()
        with self._stats_lock:
            self._ticks += 1
            self._requeued += requeued
        if requeued:
            logger.info(f"Sweeper recovered {requeued} timed-out envelopes")
        return requeued

    def _sweep_worker(self):
        while not self._stop_event.wait(self.interval):
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Error in expiry sweep: {e}")

    def get_stats(self):
        with self._stats_lock:
            return {
                'running': self.running,
                'interval': self.interval,
                'ticks': self._ticks,
                'requeued': self._requeued,
            }
