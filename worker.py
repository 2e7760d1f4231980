# worker.py
import logging
import threading

logger = logging.getLogger(__name__)


class Worker:
    """Drains the scheduler's queue, one job at a time, until stopped.

    When the queue runs dry the worker re-reads the store for jobs added by
    other processes, then idles for ``poll_interval`` seconds.
    """

    def __init__(self, scheduler, poll_interval=1.0, stop_event=None):
        self.scheduler = scheduler
        self.poll_interval = poll_interval
        self.stop_event = stop_event or threading.Event()
        self.processed = 0

    def run(self, max_jobs=None):
        while not self.stop_event.is_set():
            if max_jobs is not None and self.processed >= max_jobs:
                break
            if not self.scheduler.list_pending() and not self.scheduler.refresh():
                self.stop_event.wait(self.poll_interval)
                continue
            if self.scheduler.run_next() is not None:
                self.processed += 1
        logger.info("Worker stopped after %d job(s)", self.processed)
        return self.processed

    def stop(self):
        self.stop_event.set()
