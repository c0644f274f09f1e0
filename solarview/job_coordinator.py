"""
Job Coordinator for long-running export and report jobs.

A job is a list of stages run in order by one asyncio task. Each stage is an
async callable that works on a shared context dict and returns a
StageOutcome; the coordinator records progress between stages, checks the
cancel flag at every stage boundary and takes the finished artifact from
``context["artifact"]`` after the last stage.

At most one job per (owner, kind) is running at any time. Terminal jobs are
kept for inspection, ``retain_per_kind`` per (owner, kind), oldest evicted
first.

The job table is guarded by a thread lock so snapshots can be read from
outside the loop that runs the jobs.
"""
import asyncio
import itertools
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from solarview.errors import ConflictError, InvalidStateError, NotFoundError, StageFailure
from solarview.models import Artifact, JobKind, JobStatus
from solarview.timezone_utils import format_utc_iso, now_utc

log = logging.getLogger(__name__)


@dataclass
class StageOutcome:
    progress: int
    message: str


@dataclass
class Stage:
    name: str
    run: Callable[[Dict[str, Any]], Awaitable[StageOutcome]]


@dataclass
class JobSnapshot:
    id: str
    owner_id: str
    kind: JobKind
    status: JobStatus
    progress: int
    stage: Optional[str]
    message: str
    created_at: datetime
    finished_at: Optional[datetime] = None
    error: Optional[Dict[str, Any]] = None
    filename: Optional[str] = None
    media_type: Optional[str] = None
    size: Optional[int] = None
    label: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "status": self.status.value,
            "progress": self.progress,
            "stage": self.stage,
            "message": self.message,
            "label": self.label,
            "created_at": format_utc_iso(self.created_at),
            "finished_at": format_utc_iso(self.finished_at) if self.finished_at else None,
            "error": self.error,
            "filename": self.filename,
            "media_type": self.media_type,
            "size": self.size,
        }


@dataclass
class _Job:
    id: str
    owner_id: str
    kind: JobKind
    seq: int
    created_at: datetime
    label: Optional[str] = None
    status: JobStatus = JobStatus.IDLE
    progress: int = 0
    stage: Optional[str] = None
    message: str = ""
    finished_at: Optional[datetime] = None
    error: Optional[Dict[str, Any]] = None
    artifact: Optional[Artifact] = None
    cancel_requested: bool = False
    context: Dict[str, Any] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    task: Optional[asyncio.Task] = None

    def snapshot(self) -> JobSnapshot:
        return JobSnapshot(
            id=self.id,
            owner_id=self.owner_id,
            kind=self.kind,
            status=self.status,
            progress=self.progress,
            stage=self.stage,
            message=self.message,
            created_at=self.created_at,
            finished_at=self.finished_at,
            error=self.error,
            filename=self.artifact.filename if self.artifact else None,
            media_type=self.artifact.media_type if self.artifact else None,
            size=self.artifact.size if self.artifact else None,
            label=self.label,
        )


class JobCoordinator:
    def __init__(self, retain_per_kind: int = 5, clock: Callable[[], datetime] = now_utc):
        self.retain_per_kind = retain_per_kind
        self.clock = clock
        self._jobs: Dict[str, _Job] = {}
        self._active: Dict[Tuple[str, JobKind], str] = {}
        self._seq = itertools.count()
        self._table_lock = threading.Lock()
        self.loop: Optional[asyncio.AbstractEventLoop] = None

    def _get(self, job_id: str, owner_id: str) -> _Job:
        with self._table_lock:
            job = self._jobs.get(job_id)
        if job is None or job.owner_id != owner_id:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    async def start(self, owner_id: str, kind: JobKind, stages: List[Stage],
                    context: Optional[Dict[str, Any]] = None, label: Optional[str] = None) -> JobSnapshot:
        """
        Start a job for ``owner_id``.

        Raises:
            ConflictError: a job of the same kind is already running for this owner.
        """
        kind = JobKind(kind)
        key = (owner_id, kind)
        if not stages:
            raise ValueError("A job needs at least one stage")

        job = _Job(
            id=uuid.uuid4().hex,
            owner_id=owner_id,
            kind=kind,
            seq=next(self._seq),
            created_at=self.clock(),
            label=label,
            status=JobStatus.RUNNING,
            stage=stages[0].name,
            message="Starting",
            context=dict(context or {}),
        )
        with self._table_lock:
            active_id = self._active.get(key)
            if active_id is not None and self._jobs[active_id].status == JobStatus.RUNNING:
                raise ConflictError(f"An {kind.value} job is already running ({active_id})")
            self._jobs[job.id] = job
            self._active[key] = job.id
        self.loop = asyncio.get_running_loop()
        job.task = asyncio.create_task(self._run(job, stages), name=f"{kind.value}-{job.id}")
        log.info(f"Started {kind.value} job {job.id} for owner {owner_id}")
        return job.snapshot()

    async def _run(self, job: _Job, stages: List[Stage]) -> None:
        try:
            for stage in stages:
                if job.cancel_requested:
                    await self._finish(job, JobStatus.CANCELLED, message="Cancelled")
                    return
                async with job.lock:
                    job.stage = stage.name
                try:
                    outcome = await stage.run(job.context)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    failure = StageFailure(stage.name, e)
                    log.error(f"{job.kind.value} job {job.id} failed in stage '{stage.name}': {e}")
                    await self._finish(job, JobStatus.FAILED, message=failure.message, error=failure.to_dict())
                    return
                async with job.lock:
                    # progress never goes backwards
                    job.progress = max(job.progress, min(100, int(outcome.progress)))
                    job.message = outcome.message

            if job.cancel_requested:
                await self._finish(job, JobStatus.CANCELLED, message="Cancelled")
                return
            artifact = job.context.get("artifact")
            if not isinstance(artifact, Artifact):
                failure = StageFailure(stages[-1].name, RuntimeError("pipeline produced no artifact"))
                await self._finish(job, JobStatus.FAILED, message=failure.message, error=failure.to_dict())
                return
            await self._finish(job, JobStatus.COMPLETED, message="Completed", artifact=artifact)
        except asyncio.CancelledError:
            job.status = JobStatus.CANCELLED
            job.message = "Cancelled (shutdown)"
            job.finished_at = self.clock()
            self._release(job)
            raise
        finally:
            job.context.clear()

    def _release(self, job: _Job) -> None:
        key = (job.owner_id, job.kind)
        with self._table_lock:
            if self._active.get(key) == job.id:
                del self._active[key]

    async def _finish(self, job: _Job, status: JobStatus, message: str,
                      error: Optional[Dict[str, Any]] = None, artifact: Optional[Artifact] = None) -> None:
        async with job.lock:
            job.status = status
            job.message = message
            job.error = error
            job.artifact = artifact if status == JobStatus.COMPLETED else None
            if status == JobStatus.COMPLETED:
                job.progress = 100
            job.finished_at = self.clock()
        self._release(job)
        log.info(f"{job.kind.value} job {job.id} {status.value}: {message}")
        self._evict(job.owner_id, job.kind)

    def _evict(self, owner_id: str, kind: JobKind) -> None:
        with self._table_lock:
            terminal = sorted(
                (j for j in self._jobs.values() if j.owner_id == owner_id and j.kind == kind and j.status.terminal),
                key=lambda j: j.seq,
            )
            excess = len(terminal) - self.retain_per_kind
            evicted = terminal[:max(0, excess)]
            for job in evicted:
                del self._jobs[job.id]
        for job in evicted:
            log.debug(f"Evicted {kind.value} job {job.id}")

    def status(self, job_id: str, owner_id: str) -> JobSnapshot:
        return self._get(job_id, owner_id).snapshot()

    async def cancel(self, job_id: str, owner_id: str) -> JobSnapshot:
        """
        Request cancellation. The job stops at its next stage boundary.

        Raises:
            InvalidStateError: the job already finished.
        """
        job = self._get(job_id, owner_id)
        async with job.lock:
            if job.status.terminal:
                raise InvalidStateError(f"Job {job_id} is already {job.status.value}")
            job.cancel_requested = True
            job.message = "Cancelling"
        log.info(f"Cancellation requested for {job.kind.value} job {job_id}")
        return job.snapshot()

    def artifact(self, job_id: str, owner_id: str) -> Artifact:
        job = self._get(job_id, owner_id)
        if job.status != JobStatus.COMPLETED or job.artifact is None:
            raise InvalidStateError(f"Job {job_id} is {job.status.value}; no artifact available")
        return job.artifact

    def list_jobs(self, owner_id: str, kind: Optional[JobKind] = None) -> List[JobSnapshot]:
        """Jobs for an owner, newest first."""
        with self._table_lock:
            table = list(self._jobs.values())
        jobs = [j for j in table
                if j.owner_id == owner_id and (kind is None or j.kind == JobKind(kind))]
        return [j.snapshot() for j in sorted(jobs, key=lambda j: j.seq, reverse=True)]

    async def wait(self, job_id: str, owner_id: str) -> JobSnapshot:
        """Wait for a job's task to end and return its final snapshot."""
        job = self._get(job_id, owner_id)
        if job.task is not None:
            await asyncio.gather(job.task, return_exceptions=True)
        return job.snapshot()

    async def shutdown(self) -> None:
        with self._table_lock:
            table = list(self._jobs.values())
        tasks = [j.task for j in table if j.task is not None and not j.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        log.info(f"Job coordinator stopped ({len(tasks)} running job(s) cancelled)")
