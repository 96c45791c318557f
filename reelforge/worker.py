"""
Worker pool: executes queued jobs through the pipeline orchestrator.

Each of N worker coroutines loops:

    dequeue -> wait for a rate-limit slot -> task_started
        -> (create_from_url: extract and truncate source text)
        -> orchestrator.execute -> complete + task_completed
                                or fail + task_error{willRetry}

Pool size bounds concurrent runs; the rate limiter bounds how many runs
may start per rolling window.  Stage transitions inside a run are
forwarded to the user as task_started events carrying a ``stage`` field.

Usage:
    pool = WorkerPool(queue, orchestrator, notifier, concurrency=5)
    await pool.start()
    ...
    await pool.stop(timeout=30)

CLI:
    python -m reelforge worker
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Protocol

from reelforge.collaborators import ActivityLog
from reelforge.errors import (
    ConfigError,
    InvalidPayload,
    JobError,
    Unavailable,
    classify_error,
)
from reelforge.job_queue import JobQueue
from reelforge.models import ContentRequest, Job, JobStatus, JobType
from reelforge.orchestrator import PipelineOrchestrator
from reelforge.rate_limit import JobRateLimiter
from reelforge.realtime import EventType, RealtimeNotifier
from reelforge.utils import _truncate

logger = logging.getLogger("reelforge.worker")


class TextExtractor(Protocol):
    async def extract(self, url: str) -> str:
        ...


def is_retryable(exc: BaseException) -> bool:
    """Whether the queue should schedule another attempt of the job."""
    return classify_error(exc).retryable


class WorkerPool:
    """N asyncio workers draining one JobQueue."""

    def __init__(
        self,
        queue: JobQueue,
        orchestrator: PipelineOrchestrator,
        notifier: Optional[RealtimeNotifier] = None,
        rate_limiter: Optional[JobRateLimiter] = None,
        extractor: Optional[TextExtractor] = None,
        activity: Optional[ActivityLog] = None,
        concurrency: int = 5,
        ai_input_max_chars: int = 80_000,
        poll_interval: float = 1.0,
    ) -> None:
        self.queue = queue
        self.orchestrator = orchestrator
        self.notifier = notifier or RealtimeNotifier()
        self.rate_limiter = rate_limiter
        self.extractor = extractor
        self.activity = activity
        self.concurrency = max(1, int(concurrency))
        self.ai_input_max_chars = ai_input_max_chars
        self.poll_interval = poll_interval
        self._tasks: List[asyncio.Task] = []
        self._stopping = asyncio.Event()
        self._in_flight: Dict[str, Job] = {}
        self.processed = 0
        self.failed = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    async def start(self) -> None:
        if self.running:
            return
        recovered = self.queue.recover_interrupted()
        if recovered:
            logger.warning("Requeued %d job(s) interrupted by a previous shutdown", len(recovered))
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._loop(i), name=f"reelforge-worker-{i}")
            for i in range(self.concurrency)
        ]
        logger.info("Worker pool started: %d worker(s)", self.concurrency)

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Let in-flight jobs finish (up to *timeout*), then cancel the loops."""
        self._stopping.set()
        if not self._tasks:
            return
        done, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("Cancelled %d worker(s) with jobs still running", len(pending))
        self._tasks = []
        logger.info("Worker pool stopped (processed=%d failed=%d)", self.processed, self.failed)

    async def _loop(self, index: int) -> None:
        while not self._stopping.is_set():
            job = await self.queue.dequeue(timeout=self.poll_interval)
            if job is None:
                continue
            if self.rate_limiter is not None:
                await self.rate_limiter.acquire()
            try:
                await self.process_one(job)
            except Exception as exc:
                logger.exception("Worker %d crashed on job %s: %s", index, job.job_id[:8], exc)

    def stats(self) -> Dict[str, Any]:
        return {
            "concurrency": self.concurrency,
            "running": self.running,
            "in_flight": len(self._in_flight),
            "processed": self.processed,
            "failed": self.failed,
            "queue": self.queue.counts(),
            "rate_limit": self.rate_limiter.get_stats() if self.rate_limiter else None,
        }

    # ------------------------------------------------------------------
    # One job
    # ------------------------------------------------------------------

    async def process_one(self, job: Job) -> Job:
        """Run a dequeued (active) job to completion or failure."""
        self._in_flight[job.job_id] = job
        user_id = job.user_id
        await self.notifier.emit(
            user_id, EventType.TASK_STARTED,
            operationId=job.operation_id, jobId=job.job_id,
            attempt=job.attempts, maxAttempts=job.max_attempts,
        )
        self._audit("operation_started", "info", job)
        try:
            request, extracted = await self._prepare(job)

            async def progress(stage: str, status: str, detail: Dict[str, Any]) -> None:
                await self.notifier.emit(
                    user_id, EventType.TASK_STARTED,
                    operationId=job.operation_id, jobId=job.job_id,
                    stage=stage, status=status, **detail,
                )

            run = await self.orchestrator.execute(
                request, operation_id=job.operation_id,
                extracted_text=extracted, progress=progress,
                attempt=job.attempts,
            )
        except Exception as exc:
            return await self._on_failure(job, exc)
        finally:
            self._in_flight.pop(job.job_id, None)

        summary = run.summary()
        done = self.queue.complete(job.job_id, summary)
        self.processed += 1
        await self.notifier.emit(
            user_id, EventType.TASK_COMPLETED,
            operationId=job.operation_id, jobId=job.job_id, result=summary,
        )
        self._audit("operation_completed", "success", job, {
            "finalArtifactRef": run.final_artifact_ref,
            "published": sum(1 for r in run.receipts if r.get("success")),
        })
        return done

    async def _prepare(self, job: Job) -> tuple:
        try:
            kind = JobType(job.job_type)
        except ValueError:
            raise InvalidPayload(f"unknown job type '{job.job_type}'") from None
        payload = job.payload

        if kind == JobType.CREATE_FROM_TOPIC:
            try:
                request = ContentRequest(
                    topic=payload.get("topic"),
                    user_id=job.user_id,
                    client_params=payload.get("params") or {},
                    request_id=job.job_id,
                )
            except ValueError as exc:
                raise InvalidPayload(str(exc)) from None
            return request, None

        url = payload.get("url")
        if not url:
            raise InvalidPayload("create_from_url job has no url")
        if self.extractor is None:
            raise ConfigError("no text extractor configured for URL jobs")
        text = (await self.extractor.extract(url) or "").strip()
        if not text:
            raise Unavailable(f"no text could be extracted from {url}", adapter_id="web_extractor",
                              capability="extract")
        if len(text) > self.ai_input_max_chars:
            logger.info("Job %s: truncating %d extracted chars to %d",
                        job.job_id[:8], len(text), self.ai_input_max_chars)
            text = text[: self.ai_input_max_chars]
        request = ContentRequest(source_url=url, user_id=job.user_id, request_id=job.job_id)
        return request, text

    async def _on_failure(self, job: Job, exc: BaseException) -> Job:
        error = str(exc) or type(exc).__name__
        ctx = classify_error(exc, module="worker", operation=job.job_type)
        try:
            failed = self.queue.fail(job.job_id, error, retryable=ctx.retryable)
        except JobError as qexc:
            logger.error("Could not record failure for job %s: %s", job.job_id[:8], qexc)
            raise
        will_retry = failed.status == JobStatus.QUEUED.value
        if not will_retry:
            self.failed += 1
        await self.notifier.emit(
            job.user_id, EventType.TASK_ERROR,
            operationId=job.operation_id, jobId=job.job_id,
            error=_truncate(error, 500), errorType=type(exc).__name__,
            errorCode=ctx.code.name, recoveryHints=ctx.recovery_hints,
            attempt=failed.attempts, maxAttempts=failed.max_attempts, willRetry=will_retry,
        )
        self._audit("operation_failed", "failure", job, {
            "error": _truncate(error, 500),
            "errorCode": ctx.code.name,
            "errorCause": ctx.metadata.get("cause_code"),
            "recoveryHints": ctx.recovery_hints,
            "willRetry": will_retry,
        })
        return failed

    def _audit(self, action: str, status: str, job: Job, details: Optional[Dict[str, Any]] = None) -> None:
        if self.activity is None:
            return
        merged = {"jobId": job.job_id, "jobType": job.job_type, "attempt": job.attempts}
        merged.update(details or {})
        try:
            self.activity.log(action, status, user_id=job.user_id,
                              operation_id=job.operation_id, details=merged)
        except Exception as exc:
            logger.warning("Activity log write failed for %s: %s", action, exc)
