"""In-process job queue with a bounded pool of asyncio workers.

Jobs live in memory for the lifetime of the process; the project and scene
rows in the database are the durable record. A job is claimed under a lock
(queued -> active) so that the same job id is never run by two workers.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from vidweave.config import settings
from vidweave.orchestrator.pipeline import JobPipeline
from vidweave.orchestrator.state import TERMINAL_STATES, check_transition
from vidweave.schemas.jobs import GenerationJob, JobRequest, JobResult, JobStatus

logger = logging.getLogger(__name__)


class JobQueue:
    """
    Enqueue / status surface over a pool of pipeline workers.

    Args:
        pipeline: JobPipeline each worker runs claimed jobs through
        concurrency: Number of worker tasks (default: pipeline.worker_concurrency)
    """

    def __init__(self, pipeline: JobPipeline, concurrency: Optional[int] = None):
        self.pipeline = pipeline
        self.concurrency = concurrency or settings.pipeline.worker_concurrency
        self._jobs: dict[str, GenerationJob] = {}
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._claim_lock = asyncio.Lock()
        self._workers: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def submit(self, request: JobRequest) -> str:
        """Register a job in state queued and return its id."""
        job = GenerationJob.from_request(request)
        self._jobs[job.id] = job
        self._queue.put_nowait(job.id)
        logger.info(f"Queued job {job.id} for project {job.project_id} ({job.duration}s)")
        return job.id

    def get_job(self, job_id: str) -> Optional[GenerationJob]:
        return self._jobs.get(job_id)

    def get_status(self, job_id: str) -> Optional[JobStatus]:
        job = self._jobs.get(job_id)
        if job is None:
            return None
        return JobStatus(
            job_id=job.id,
            status=job.status,
            progress=job.progress,
            message=job.message,
            result=job.result,
            error=job.error,
        )

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(f"worker-{i}"), name=f"vidweave-worker-{i}")
            for i in range(self.concurrency)
        ]
        logger.info(f"Started {self.concurrency} job workers")

    async def join(self) -> None:
        """Wait until every submitted job has been processed."""
        await self._queue.join()

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        await self.pipeline.close()
        logger.info("Job workers stopped")

    async def _claim(self, job_id: str) -> Optional[GenerationJob]:
        async with self._claim_lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != "queued":
                return None
            check_transition(job.status, "active")
            job.status = "active"
            job.started_at = datetime.utcnow()
            job.message = "Starting"
            return job

    @staticmethod
    def _update_progress(job: GenerationJob, progress: int, message: str) -> None:
        if job.status in TERMINAL_STATES:
            return
        job.progress = max(job.progress, min(progress, 100))
        job.message = message

    def _finish(
        self,
        job: GenerationJob,
        status: str,
        result: Optional[JobResult] = None,
        error: Optional[str] = None,
    ) -> None:
        check_transition(job.status, status)
        job.status = status
        job.result = result
        job.error = error
        job.finished_at = datetime.utcnow()
        if status == "completed":
            job.progress = 100
            job.message = "Completed"
        else:
            job.message = f"Failed: {error}"

    async def _process(self, job_id: str) -> None:
        job = await self._claim(job_id)
        if job is None:
            logger.warning(f"Job {job_id} is not queued, skipping")
            return

        try:
            result = await self.pipeline.run(
                job, lambda progress, message: self._update_progress(job, progress, message)
            )
        except asyncio.CancelledError:
            self._finish(job, "failed", error="Worker stopped before the job finished")
            raise
        except Exception as e:
            logger.error(f"Job {job.id} failed: {e}", exc_info=True)
            self._finish(job, "failed", error=str(e))
        else:
            self._finish(job, "completed", result=result)

    async def _worker(self, name: str) -> None:
        while True:
            job_id = await self._queue.get()
            try:
                logger.debug(f"{name} picked up job {job_id}")
                await self._process(job_id)
            finally:
                self._queue.task_done()


def build_job_queue() -> JobQueue:
    """Wire the production collaborators from settings."""
    from vidweave.db import async_session
    from vidweave.db.state_sink import SqlProjectStateSink
    from vidweave.services.generation_client import GenerationClient
    from vidweave.services.media_assembler import MediaAssembler
    from vidweave.services.media_store import LocalMediaStore
    from vidweave.services.provider import HttpProviderTransport

    store = LocalMediaStore()
    pipeline = JobPipeline(
        sink=SqlProjectStateSink(async_session),
        client=GenerationClient(HttpProviderTransport()),
        assembler=MediaAssembler(store),
        store=store,
    )
    return JobQueue(pipeline)
