"""Pytest configuration and fixtures."""

import pytest

from models import new_job
from runtime import ContainerRuntimeError, Runtime
from storage import Storage


class FakeRuntime(Runtime):
    """Records every call; ``fail_on`` names the step that raises."""

    def __init__(self, logs=(b"hi\n",), exit_code=0, fail_on=None, pull_events=None):
        self.logs = logs
        self.exit_code = exit_code
        self.fail_on = fail_on
        self.pull_events = pull_events if pull_events is not None else [
            {"status": "Pulling from library/alpine", "id": "latest"},
            {"status": "Download complete", "id": "abc123"},
        ]
        self.calls = []
        self.wait_timeouts = []
        self._next = 0

    def _step(self, name, *args):
        self.calls.append((name, *args))
        if self.fail_on == name:
            raise ContainerRuntimeError(f"{name} failed")

    @property
    def steps(self):
        return [call[0] for call in self.calls]

    def pull_image(self, ref):
        self._step("pull", ref)
        return iter(self.pull_events)

    def create_container(self, image, command, cpu_limit, memory_limit):
        self._step("create", image, command, cpu_limit, memory_limit)
        self._next += 1
        return f"container-{self._next}"

    def start_container(self, handle):
        self._step("start", handle)

    def wait_for_exit(self, handle, timeout=None):
        self.wait_timeouts.append(timeout)
        self._step("wait", handle)
        return self.exit_code

    def fetch_logs(self, handle):
        self._step("logs", handle)
        return iter(self.logs)

    def remove_container(self, handle, force=False):
        self._step("remove", handle, force)


class RecordingStorage(Storage):
    """Storage that remembers every status it was asked to write."""

    def __init__(self, db_path):
        super().__init__(db_path)
        self.history = []

    def insert_job(self, job):
        super().insert_job(job)
        self.history.append((job.id, job.status))

    def update_job(self, job):
        super().update_job(job)
        self.history.append((job.id, job.status))

    def statuses(self, job_id):
        return [status for jid, status in self.history if jid == job_id]


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "mini-hpc-test.db")


@pytest.fixture
def storage(db_path):
    db = RecordingStorage(db_path)
    yield db
    db.close()


@pytest.fixture
def fake_runtime_cls():
    return FakeRuntime


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def make_job():
    def _make(image="alpine", command="echo hi", **kwargs):
        return new_job(image, command, **kwargs)
    return _make
