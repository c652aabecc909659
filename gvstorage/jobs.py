"""
Background execution of exports and imports.

Each job runs its orchestrator on a daemon thread and republishes progress on
its own ProgressChannel. Only one job of each kind may run at a time.
"""

import logging
import threading
import uuid
from typing import Any, Callable, Dict, Generator, Optional

from .conflicts import ConflictBroker
from .errors import Cancelled, JobConflict
from .progress import CancellationToken, ProgressChannel, drive

logger = logging.getLogger(__name__)

EXPORT = "export"
IMPORT = "import"


class Job:
    def __init__(self, kind: str):
        self.id = uuid.uuid4().hex
        self.kind = kind
        self.channel = ProgressChannel()
        self.cancel_token = CancellationToken()
        self.broker: Optional[ConflictBroker] = None
        self.thread: Optional[threading.Thread] = None

    @property
    def status(self) -> str:
        if not self.channel.closed:
            return "running"
        if self.channel.error is None:
            return "completed"
        if isinstance(self.channel.error, Cancelled):
            return "cancelled"
        return "failed"

    @property
    def result(self):
        return self.channel.result

    @property
    def error(self) -> Optional[BaseException]:
        return self.channel.error

    def cancel(self) -> None:
        self.cancel_token.cancel()
        # An import parked on a conflict would otherwise only notice at timeout.
        if self.broker is not None:
            self.broker.abandon()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self.channel.wait(timeout)

    def to_dict(self) -> Dict[str, Any]:
        last_event = self.channel.last_event
        return {
            "id": self.id,
            "kind": self.kind,
            "status": self.status,
            "last_event": last_event.model_dump(mode="json") if last_event else None,
            "result": self.result.model_dump(mode="json") if self.result is not None else None,
            "error": str(self.error) if self.error is not None else None,
        }


class JobManager:
    def __init__(self):
        self._lock = threading.Lock()
        self._jobs: Dict[str, Job] = {}
        self._active: Dict[str, Job] = {}

    def start(self, kind: str, operation_factory: Callable[[Job], Generator],
              on_finish: Optional[Callable[[], None]] = None) -> Job:
        """
        Creates a job, builds its operation with `operation_factory(job)` and runs
        it on a worker thread. Raises JobConflict if a job of the same kind is running.
        """
        with self._lock:
            active = self._active.get(kind)
            if active is not None and not active.channel.closed:
                raise JobConflict(f"An {kind} is already running (job {active.id})")
            job = Job(kind)
            self._jobs[job.id] = job
            self._active[kind] = job

        operation = operation_factory(job)
        job.thread = threading.Thread(
            target=self._run, args=(job, operation, on_finish), name=f"{kind}-{job.id[:8]}", daemon=True
        )
        job.thread.start()
        logger.info("Started %s job %s.", kind, job.id)
        return job

    def _run(self, job: Job, operation: Generator, on_finish: Optional[Callable[[], None]]) -> None:
        try:
            drive(operation, job.channel)
            logger.info("%s job %s completed.", job.kind.capitalize(), job.id)
        except Cancelled:
            logger.info("%s job %s was cancelled.", job.kind.capitalize(), job.id)
        except Exception as e:
            # The error is kept on the job's channel for the caller to report.
            logger.error("%s job %s failed: %s", job.kind.capitalize(), job.id, e)
        finally:
            if on_finish is not None:
                on_finish()

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)
