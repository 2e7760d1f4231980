# models.py
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Optional

PENDING = "pending"
RUNNING = "running"
COMPLETE = "complete"
FAILED = "failed"

STATUSES = (PENDING, RUNNING, COMPLETE, FAILED)
TERMINAL = frozenset({COMPLETE, FAILED})

# Allowed forward moves; nothing leaves a terminal state
TRANSITIONS = {
    PENDING: {RUNNING},
    RUNNING: {COMPLETE, FAILED},
    COMPLETE: set(),
    FAILED: set(),
}

DEFAULT_CPU = 1
DEFAULT_MEMORY = 1024 * 1024 * 1024


def utcnow():
    return datetime.now(timezone.utc).isoformat()


class InvalidTransition(ValueError):
    pass


@dataclass
class Job:
    id: str
    name: str
    command: str
    image: str
    status: str = PENDING   # pending | running | complete | failed
    cpu: int = DEFAULT_CPU
    memory: int = DEFAULT_MEMORY
    log: str = ""
    timeout_seconds: Optional[int] = None
    exit_code: Optional[int] = None
    error: Optional[str] = None
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    @property
    def is_terminal(self):
        return self.status in TERMINAL

    def transition(self, new_status):
        """Move to ``new_status``, stamping timestamps. Returns the old status."""
        if new_status not in TRANSITIONS.get(self.status, ()):
            raise InvalidTransition(f"job {self.id}: cannot go from {self.status} to {new_status}")
        old = self.status
        now = utcnow()
        self.status = new_status
        self.updated_at = now
        if new_status == RUNNING:
            self.started_at = now
        elif new_status in TERMINAL:
            self.finished_at = now
        return old

    def to_dict(self):
        return asdict(self)


def new_job(image, command, name=None, cpu=DEFAULT_CPU, memory=DEFAULT_MEMORY, timeout_seconds=None):
    """Build a pending Job with a fresh ID, validating the resource request."""
    if not image or not image.strip():
        raise ValueError("image must not be empty")
    if not command or not command.strip():
        raise ValueError("command must not be empty")
    if not isinstance(cpu, int) or isinstance(cpu, bool) or cpu <= 0:
        raise ValueError(f"cpu must be a positive integer, got {cpu!r}")
    if not isinstance(memory, int) or isinstance(memory, bool) or memory <= 0:
        raise ValueError(f"memory must be a positive integer, got {memory!r}")
    if timeout_seconds is not None and timeout_seconds <= 0:
        raise ValueError(f"timeout_seconds must be positive, got {timeout_seconds!r}")

    job_id = str(uuid.uuid4())
    return Job(
        id=job_id,
        name=name or f"job-{job_id[:8]}",
        command=command,
        image=image,
        cpu=cpu,
        memory=memory,
        timeout_seconds=timeout_seconds,
    )
