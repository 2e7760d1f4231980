# jobqueue.py
import threading


class JobQueue:
    """Pending jobs in arrival order.

    Pops are read-modify-write on the underlying list, so every operation
    holds the lock.
    """

    def __init__(self, jobs=()):
        self._jobs = list(jobs)
        self._lock = threading.Lock()

    def __len__(self):
        with self._lock:
            return len(self._jobs)

    def __contains__(self, job_id):
        with self._lock:
            return any(job.id == job_id for job in self._jobs)

    def append(self, job):
        with self._lock:
            self._jobs.append(job)

    def pop_front(self):
        """Remove and return the head job, or None when empty."""
        with self._lock:
            if not self._jobs:
                return None
            return self._jobs.pop(0)

    def pop_by_id(self, job_id):
        """Remove and return the first job with ``job_id``, or None if absent."""
        with self._lock:
            for index, job in enumerate(self._jobs):
                if job.id == job_id:
                    return self._jobs.pop(index)
            return None

    def snapshot(self):
        with self._lock:
            return list(self._jobs)
