"""
Tests for the export/report job coordinator
"""

import asyncio
import threading

import pytest

from solarview.errors import ConflictError, InvalidStateError, NotFoundError
from solarview.job_coordinator import JobCoordinator, Stage, StageOutcome
from solarview.models import Artifact, JobKind, JobStatus


def artifact_stage(name="finalizing", progress=100):
    async def run(ctx):
        ctx["artifact"] = Artifact(content=b"data", media_type="text/plain", filename="out.txt")
        return StageOutcome(progress, "done")
    return Stage(name, run)


def progress_stage(name, progress):
    async def run(ctx):
        return StageOutcome(progress, name)
    return Stage(name, run)


def gated_stage(name, gate: asyncio.Event, entered: asyncio.Event = None, progress=25):
    async def run(ctx):
        if entered is not None:
            entered.set()
        await gate.wait()
        return StageOutcome(progress, name)
    return Stage(name, run)


class TestJobLifecycle:
    """Stage execution, progress and artifacts"""

    @pytest.mark.asyncio
    async def test_completes_with_artifact(self):
        jobs = JobCoordinator()
        snap = await jobs.start("alice", JobKind.EXPORT, [progress_stage("querying", 25), artifact_stage()])
        assert snap.status == JobStatus.RUNNING
        final = await jobs.wait(snap.id, "alice")
        assert final.status == JobStatus.COMPLETED
        assert final.progress == 100
        assert final.filename == "out.txt"
        assert jobs.artifact(snap.id, "alice").content == b"data"

    @pytest.mark.asyncio
    async def test_progress_never_decreases(self):
        jobs = JobCoordinator()
        gates = [asyncio.Event() for _ in range(3)]
        entered = [asyncio.Event() for _ in range(3)]
        stages = [
            gated_stage("a", gates[0], entered[0], progress=40),
            gated_stage("b", gates[1], entered[1], progress=20),
            gated_stage("c", gates[2], entered[2], progress=60),
            artifact_stage(progress=90),
        ]
        snap = await jobs.start("alice", JobKind.REPORT, stages)
        seen = []
        for gate, was_entered in zip(gates, entered):
            await was_entered.wait()
            seen.append(jobs.status(snap.id, "alice").progress)
            gate.set()
        final = await jobs.wait(snap.id, "alice")
        seen.append(final.progress)
        assert seen == sorted(seen)
        assert seen == [0, 40, 40, 100]

    @pytest.mark.asyncio
    async def test_second_job_of_same_kind_conflicts(self):
        jobs = JobCoordinator()
        gate, entered = asyncio.Event(), asyncio.Event()
        first = await jobs.start("alice", JobKind.REPORT, [gated_stage("collecting", gate, entered), artifact_stage()])
        await entered.wait()

        with pytest.raises(ConflictError):
            await jobs.start("alice", JobKind.REPORT, [artifact_stage()])

        running = jobs.status(first.id, "alice")
        assert running.status == JobStatus.RUNNING
        assert running.stage == "collecting"

        # other kinds and other owners are independent
        other_kind = await jobs.start("alice", JobKind.EXPORT, [artifact_stage()])
        other_owner = await jobs.start("bob", JobKind.REPORT, [artifact_stage()])
        assert (await jobs.wait(other_kind.id, "alice")).status == JobStatus.COMPLETED
        assert (await jobs.wait(other_owner.id, "bob")).status == JobStatus.COMPLETED

        gate.set()
        assert (await jobs.wait(first.id, "alice")).status == JobStatus.COMPLETED
        again = await jobs.start("alice", JobKind.REPORT, [artifact_stage()])
        assert (await jobs.wait(again.id, "alice")).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel_between_stages(self):
        jobs = JobCoordinator()
        gate, entered = asyncio.Event(), asyncio.Event()
        ran_last = []

        async def last(ctx):
            ran_last.append(True)
            ctx["artifact"] = Artifact(b"x", "text/plain", "x.txt")
            return StageOutcome(100, "done")

        snap = await jobs.start("alice", JobKind.EXPORT, [gated_stage("querying", gate, entered), Stage("finalizing", last)])
        await entered.wait()
        cancelling = await jobs.cancel(snap.id, "alice")
        assert cancelling.status == JobStatus.RUNNING
        gate.set()

        final = await jobs.wait(snap.id, "alice")
        assert final.status == JobStatus.CANCELLED
        assert ran_last == []
        with pytest.raises(InvalidStateError):
            jobs.artifact(snap.id, "alice")
        with pytest.raises(InvalidStateError):
            await jobs.cancel(snap.id, "alice")

    @pytest.mark.asyncio
    async def test_stage_failure_fails_job(self):
        jobs = JobCoordinator()

        async def broken(ctx):
            raise ValueError("disk full")

        snap = await jobs.start("alice", JobKind.REPORT, [progress_stage("collecting", 25), Stage("rendering-charts", broken),
                                                          artifact_stage()])
        final = await jobs.wait(snap.id, "alice")
        assert final.status == JobStatus.FAILED
        assert final.progress == 25
        assert final.error["error"] == "stage_failure"
        assert final.error["stage"] == "rendering-charts"
        assert final.error["cause"] == "ValueError"
        with pytest.raises(InvalidStateError):
            jobs.artifact(snap.id, "alice")

    @pytest.mark.asyncio
    async def test_missing_artifact_fails_job(self):
        jobs = JobCoordinator()
        snap = await jobs.start("alice", JobKind.EXPORT, [progress_stage("finalizing", 100)])
        final = await jobs.wait(snap.id, "alice")
        assert final.status == JobStatus.FAILED
        assert final.error["stage"] == "finalizing"

    @pytest.mark.asyncio
    async def test_artifact_before_completion(self):
        jobs = JobCoordinator()
        gate, entered = asyncio.Event(), asyncio.Event()
        snap = await jobs.start("alice", JobKind.EXPORT, [gated_stage("querying", gate, entered), artifact_stage()])
        await entered.wait()
        with pytest.raises(InvalidStateError):
            jobs.artifact(snap.id, "alice")
        gate.set()
        await jobs.wait(snap.id, "alice")


class TestJobRetention:
    """Ownership, eviction and listing"""

    @pytest.mark.asyncio
    async def test_other_owner_cannot_see_job(self):
        jobs = JobCoordinator()
        snap = await jobs.start("alice", JobKind.EXPORT, [artifact_stage()])
        await jobs.wait(snap.id, "alice")
        with pytest.raises(NotFoundError):
            jobs.status(snap.id, "bob")
        with pytest.raises(NotFoundError):
            jobs.artifact(snap.id, "bob")
        with pytest.raises(NotFoundError):
            await jobs.cancel(snap.id, "bob")

    @pytest.mark.asyncio
    async def test_oldest_terminal_jobs_evicted(self):
        jobs = JobCoordinator(retain_per_kind=5)
        ids = []
        for _ in range(7):
            snap = await jobs.start("alice", JobKind.EXPORT, [artifact_stage()])
            await jobs.wait(snap.id, "alice")
            ids.append(snap.id)

        listed = jobs.list_jobs("alice", JobKind.EXPORT)
        assert [j.id for j in listed] == list(reversed(ids[2:]))
        for evicted in ids[:2]:
            with pytest.raises(NotFoundError):
                jobs.artifact(evicted, "alice")

    @pytest.mark.asyncio
    async def test_eviction_is_per_kind(self):
        jobs = JobCoordinator(retain_per_kind=1)
        report = await jobs.start("alice", JobKind.REPORT, [artifact_stage()])
        await jobs.wait(report.id, "alice")
        for _ in range(2):
            snap = await jobs.start("alice", JobKind.EXPORT, [artifact_stage()])
            await jobs.wait(snap.id, "alice")
        assert jobs.status(report.id, "alice").status == JobStatus.COMPLETED
        assert len(jobs.list_jobs("alice")) == 2

    @pytest.mark.asyncio
    async def test_shutdown_cancels_running_jobs(self):
        jobs = JobCoordinator()
        gate, entered = asyncio.Event(), asyncio.Event()
        snap = await jobs.start("alice", JobKind.REPORT, [gated_stage("collecting", gate, entered), artifact_stage()])
        await entered.wait()
        await jobs.shutdown()
        assert jobs.status(snap.id, "alice").status == JobStatus.CANCELLED
        # the owner can start a new one afterwards
        again = await jobs.start("alice", JobKind.REPORT, [artifact_stage()])
        assert (await jobs.wait(again.id, "alice")).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_loop_is_recorded_on_start(self):
        jobs = JobCoordinator()
        assert jobs.loop is None
        snap = await jobs.start("alice", JobKind.EXPORT, [artifact_stage()])
        assert jobs.loop is asyncio.get_running_loop()
        await jobs.wait(snap.id, "alice")


class TestJobTableThreads:
    """Snapshots read from another thread while jobs start and get evicted"""

    @pytest.mark.asyncio
    async def test_list_jobs_from_worker_thread(self):
        jobs = JobCoordinator(retain_per_kind=1)
        stop = threading.Event()
        errors = []

        def reader():
            while not stop.is_set():
                try:
                    jobs.list_jobs("alice")
                    jobs.list_jobs("alice", JobKind.REPORT)
                except Exception as e:
                    errors.append(e)
                    return

        thread = threading.Thread(target=reader, daemon=True)
        thread.start()
        try:
            for _ in range(300):
                snap = await jobs.start("alice", JobKind.REPORT, [artifact_stage()])
                await jobs.wait(snap.id, "alice")
        finally:
            stop.set()
            thread.join(timeout=5)
        assert errors == []
        assert len(jobs.list_jobs("alice")) == 1
