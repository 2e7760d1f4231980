# scheduler.py
import codecs
import logging
import sqlite3
import threading
import time
from queue import Empty, Queue

from jobqueue import JobQueue
from models import PENDING, RUNNING, COMPLETE, FAILED, TERMINAL
from runtime import ContainerRuntimeError, RuntimeUnavailableError
from storage import JobNotFoundError

logger = logging.getLogger(__name__)

SHELL = ("/bin/sh", "-c")

_STORE_ERRORS = (sqlite3.Error, JobNotFoundError)

_ITEM, _DONE, _ERROR = "item", "done", "error"


class JobTimeoutError(ContainerRuntimeError):
    pass


class Deadline:
    """Execution budget for one job. ``seconds`` of None or 0 means unbounded."""

    def __init__(self, seconds=None):
        self.seconds = seconds
        self.expires_at = time.monotonic() + seconds if seconds else None

    @property
    def expired(self):
        return self.expires_at is not None and time.monotonic() >= self.expires_at

    def remaining(self):
        """Seconds left, or None when unbounded. Raises once the budget is spent."""
        if self.expires_at is None:
            return None
        left = self.expires_at - time.monotonic()
        if left <= 0:
            raise JobTimeoutError(f"exceeded {self.seconds}s deadline")
        return left


def shell_command(command):
    return [*SHELL, command]


class Scheduler:
    """Owns the pending queue and runs one job at a time through a Runtime.

    Every status change is written to the store before the next runtime call.
    Execution failures end up on the job (status ``failed`` plus ``error``);
    they are never raised to the caller of ``run_next``/``run_by_id``.
    """

    def __init__(self, store, runtime, default_timeout=None):
        self.store = store
        self.runtime = runtime
        self.default_timeout = default_timeout
        # ids taken off the queue whose terminal status is not yet in the store;
        # refresh() must not re-offer them
        self._dispatched = set()
        self.queue = JobQueue(self._load_pending())

    def _load_pending(self):
        jobs = self.store.load_all()
        pending = [job for job in jobs if job.status == PENDING]
        logger.debug("Loaded %d pending job(s) of %d stored", len(pending), len(jobs))
        return pending

    def _log_transition(self, job_id, old_state, new_state, extra=""):
        logger.info("Job %s: %s -> %s %s", job_id, old_state, new_state, extra)

    def add_job(self, job):
        """Queue ``job`` and persist it. Returns False if the store write failed."""
        if job.status != PENDING:
            raise ValueError(f"job {job.id} is {job.status}, only pending jobs can be queued")
        self.queue.append(job)
        try:
            self.store.insert_job(job)
        except sqlite3.Error as e:
            logger.warning("Job %s queued in memory only, store insert failed: %s", job.id, e)
            return False
        logger.info("Job %s added (image=%s)", job.id, job.image)
        return True

    def list_pending(self):
        return self.queue.snapshot()

    def refresh(self):
        """Queue pending jobs written to the store since construction."""
        queued = {job.id for job in self.queue.snapshot()}
        added = 0
        for job in self.store.list_jobs(status=PENDING):
            if job.id in queued or job.id in self._dispatched:
                continue
            self.queue.append(job)
            added += 1
        if added:
            logger.debug("Picked up %d new pending job(s)", added)
        return added

    def run_next(self):
        """Run the head of the queue. Returns the finished job, or None if empty."""
        self._require_runtime()
        job = self.queue.pop_front()
        if job is None:
            logger.info("No jobs to run")
            return None
        return self._execute(job)

    def run_by_id(self, job_id):
        """Run one pending job out of order. Returns it, or None if not queued."""
        self._require_runtime()
        job = self.queue.pop_by_id(job_id)
        if job is None:
            logger.info("Job %s not found in queue", job_id)
            return None
        return self._execute(job)

    def _require_runtime(self):
        if self.runtime is None:
            raise RuntimeUnavailableError("no container runtime configured")

    def _persist(self, job, new_status, extra=""):
        old_status = job.transition(new_status)
        try:
            self.store.update_job(job)
        except _STORE_ERRORS as e:
            logger.error("Job %s: could not record %s: %s", job.id, new_status, e)
        else:
            if new_status in TERMINAL:
                self._dispatched.discard(job.id)
        self._log_transition(job.id, old_status, new_status, extra)

    def _execute(self, job):
        self._dispatched.add(job.id)
        self._persist(job, RUNNING, f"(image={job.image})")

        deadline = Deadline(job.timeout_seconds or self.default_timeout)
        handle = None
        try:
            self._pull(job, deadline)
            deadline.remaining()
            handle = self.runtime.create_container(
                job.image, shell_command(job.command), job.cpu, job.memory
            )
            deadline.remaining()
            self.runtime.start_container(handle)
            exit_code = self.runtime.wait_for_exit(handle, timeout=deadline.remaining())
            deadline.remaining()
            output = self._drain_logs(handle, deadline)
        except ContainerRuntimeError as e:
            self._fail(job, handle, deadline, e)
            return job
        except Exception as e:
            logger.exception("Job %s: unexpected error during execution", job.id)
            self._fail(job, handle, deadline, e)
            return job

        job.log = output
        job.exit_code = exit_code
        self._persist(job, COMPLETE, f"(exit_code={exit_code})")
        self._remove(job, handle)
        return job

    def _fail(self, job, handle, deadline, exc):
        if deadline.expired and not isinstance(exc, JobTimeoutError):
            job.error = f"exceeded {deadline.seconds}s deadline: {exc}"
        else:
            job.error = str(exc)
        self._persist(job, FAILED, f"(error={job.error})")
        if handle is not None:
            self._remove(job, handle, force=True)

    @staticmethod
    def _drain(stream, deadline):
        """Yield items of a runtime stream without blocking past ``deadline``.

        With a deadline the stream is consumed on a helper thread, so a stream
        that stops producing still fails the job on time. Once abandoned the
        helper stops at the next item and closes the stream.
        """
        if deadline.expires_at is None:
            yield from stream
            return

        items = Queue()
        abandoned = threading.Event()

        def pump():
            try:
                for item in stream:
                    if abandoned.is_set():
                        break
                    items.put((_ITEM, item))
                else:
                    items.put((_DONE, None))
            except Exception as e:
                items.put((_ERROR, e))
            finally:
                close = getattr(stream, "close", None)
                if close is not None:
                    close()

        threading.Thread(target=pump, name="mini-hpc-stream", daemon=True).start()
        try:
            while True:
                try:
                    kind, value = items.get(timeout=deadline.remaining())
                except Empty:
                    raise JobTimeoutError(f"exceeded {deadline.seconds}s deadline")
                if kind == _DONE:
                    return
                if kind == _ERROR:
                    raise value
                yield value
        finally:
            abandoned.set()

    def _pull(self, job, deadline):
        # the image is only usable once the progress stream is exhausted
        for event in self._drain(self.runtime.pull_image(job.image), deadline):
            if isinstance(event, dict) and event.get("status"):
                logger.debug("pull %s: %s %s", job.image, event.get("id", ""), event["status"])

    def _drain_logs(self, handle, deadline):
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        parts = []
        for chunk in self._drain(self.runtime.fetch_logs(handle), deadline):
            parts.append(decoder.decode(chunk) if isinstance(chunk, bytes) else chunk)
        parts.append(decoder.decode(b"", final=True))
        return "".join(parts)

    def _remove(self, job, handle, force=False):
        try:
            self.runtime.remove_container(handle, force=force)
        except ContainerRuntimeError as e:
            logger.warning("Job %s: container cleanup failed: %s", job.id, e)

    def reconcile_interrupted(self, reason="interrupted"):
        """Fail jobs left ``running`` by a process that died mid-execution.

        Only safe when no other process is executing jobs against the same store.
        """
        count = 0
        for job in self.store.list_jobs(status=RUNNING):
            job.error = reason
            self._persist(job, FAILED, f"(error={reason})")
            count += 1
        return count
