"""
Durable job queue backed by a JSON file.

Every operation takes jobs.json.lock, reloads jobs.json, mutates it and
writes it back atomically, so an API process can enqueue while a separate
worker process dequeues.  Waiting longer than *lock_timeout* for the lock
raises filelock.Timeout.

Delivery is at-least-once: a job left ``active`` by a crashed worker is put
back in the queue by recover_interrupted() when the next worker starts.

Lifecycle:
    queued --dequeue--> active --complete--> completed
                          |
                          +--fail--> queued   (attempts < max_attempts, after backoff)
                          +--fail--> failed   (attempts exhausted or not retryable)

Retention: completed jobs are kept 24 hours (newest 1000), failed jobs
7 days (newest 5000).

Usage:
    queue = JobQueue(settings.jobs_file)
    job = queue.enqueue(JobType.CREATE_FROM_TOPIC, {"topic": "space travel", "userId": "u1"})
    job = await queue.dequeue(timeout=5)
    queue.complete(job.job_id, {"final_artifact_ref": "..."})
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from filelock import FileLock

from reelforge.errors import InvalidPayload, JobNotFound
from reelforge.models import Job, JobStatus, JobType
from reelforge.retry import BackoffPolicy
from reelforge.utils import _load_json, _now_iso, _now_utc, _parse_iso, _save_json

logger = logging.getLogger("reelforge.job_queue")

COMPLETED_RETENTION = timedelta(hours=24)
COMPLETED_MAX_KEPT = 1000
FAILED_RETENTION = timedelta(days=7)
FAILED_MAX_KEPT = 5000

MAX_ERROR_HISTORY = 20


# ===================================================================
# PAYLOAD VALIDATION
# ===================================================================

def _check_user_id(payload: Dict[str, Any]) -> None:
    user_id = payload.get("userId")
    if user_id is not None and not isinstance(user_id, str):
        raise InvalidPayload("userId must be a string")


def validate_payload(job_type: str, payload: Any) -> Dict[str, Any]:
    """Return a clean copy of *payload* or raise InvalidPayload."""
    try:
        kind = JobType(job_type)
    except ValueError:
        raise InvalidPayload(f"unknown job type '{job_type}'") from None
    if not isinstance(payload, dict):
        raise InvalidPayload("payload must be an object")
    _check_user_id(payload)

    if kind == JobType.CREATE_FROM_TOPIC:
        topic = payload.get("topic")
        if not isinstance(topic, str) or not topic.strip():
            raise InvalidPayload("create_from_topic requires a non-empty 'topic'")
        params = payload.get("params")
        if params is not None and not isinstance(params, dict):
            raise InvalidPayload("'params' must be an object")
        clean: Dict[str, Any] = {"topic": topic.strip()}
        if params:
            clean["params"] = dict(params)
    else:
        url = payload.get("url")
        if not isinstance(url, str) or not url.strip():
            raise InvalidPayload("create_from_url requires a 'url'")
        parsed = urlparse(url.strip())
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise InvalidPayload(f"'{url}' is not an http(s) URL")
        clean = {"url": url.strip()}

    if payload.get("userId"):
        clean["userId"] = payload["userId"]
    return clean


# ===================================================================
# QUEUE
# ===================================================================

class JobQueue:
    """File-backed queue of create_from_topic / create_from_url jobs."""

    def __init__(
        self,
        path: Path,
        default_max_attempts: int = 3,
        default_backoff: Optional[BackoffPolicy] = None,
        poll_interval: float = 1.0,
        lock_timeout: float = 30.0,
    ) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self.default_max_attempts = max(1, int(default_max_attempts))
        self.default_backoff = default_backoff or BackoffPolicy()
        self.poll_interval = poll_interval
        # Held around every load-modify-save; shared by all processes using the file.
        self._lock = FileLock(str(self._path) + ".lock", timeout=lock_timeout)
        self._wakeup: Optional[asyncio.Event] = None

    # -- persistence --------------------------------------------------------

    def _load(self) -> Dict[str, Job]:
        raw = _load_json(self._path, default={})
        jobs: Dict[str, Job] = {}
        for job_id, data in (raw.items() if isinstance(raw, dict) else []):
            try:
                jobs[job_id] = Job.from_dict(data)
            except (TypeError, ValueError) as exc:
                logger.warning("Dropping unreadable job %s: %s", job_id, exc)
        return jobs

    def _save(self, jobs: Dict[str, Job]) -> None:
        self._trim(jobs)
        _save_json(self._path, {job_id: job.to_dict() for job_id, job in jobs.items()})

    def _trim(self, jobs: Dict[str, Job]) -> None:
        now = _now_utc()
        for status, retention, max_kept in (
            (JobStatus.COMPLETED.value, COMPLETED_RETENTION, COMPLETED_MAX_KEPT),
            (JobStatus.FAILED.value, FAILED_RETENTION, FAILED_MAX_KEPT),
        ):
            finished = [j for j in jobs.values() if j.status == status]
            finished.sort(key=lambda j: j.finished_at or j.updated_at, reverse=True)
            for index, job in enumerate(finished):
                done = _parse_iso(job.finished_at or job.updated_at)
                expired = done is not None and now - done > retention
                if expired or index >= max_kept:
                    del jobs[job.job_id]

    def _signal(self) -> None:
        if self._wakeup is not None:
            self._wakeup.set()

    # -- producer side ------------------------------------------------------

    def enqueue(
        self,
        job_type: str,
        payload: Dict[str, Any],
        operation_id: Optional[str] = None,
        max_attempts: Optional[int] = None,
        backoff: Optional[BackoffPolicy] = None,
    ) -> Job:
        """Validate and persist a new job.  Raises InvalidPayload."""
        clean = validate_payload(job_type, payload)
        job = Job(
            job_type=JobType(job_type).value,
            payload=clean,
            max_attempts=max(1, int(max_attempts or self.default_max_attempts)),
            backoff=backoff or BackoffPolicy.from_dict(self.default_backoff.to_dict()),
        )
        if operation_id:
            job.operation_id = operation_id
        with self._lock:
            jobs = self._load()
            jobs[job.job_id] = job
            self._save(jobs)
        logger.info("Enqueued %s job %s (op=%s, user=%s)",
                    job.job_type, job.job_id[:8], job.operation_id[:8], job.user_id or "-")
        self._signal()
        return job

    # -- consumer side ------------------------------------------------------

    def try_dequeue(self) -> Optional[Job]:
        """Claim the oldest ready job, or return None."""
        with self._lock:
            jobs = self._load()
            now = _now_utc()
            ready = [
                j for j in jobs.values()
                if j.status == JobStatus.QUEUED.value
                and (_parse_iso(j.available_at) or now) <= now
            ]
            if not ready:
                return None
            ready.sort(key=lambda j: (j.available_at, j.created_at))
            job = ready[0]
            job.status = JobStatus.ACTIVE.value
            job.attempts += 1
            job.started_at = _now_iso()
            job.updated_at = job.started_at
            self._save(jobs)
        logger.debug("Dequeued job %s (attempt %d/%d)", job.job_id[:8], job.attempts, job.max_attempts)
        return job

    def _seconds_until_next(self) -> Optional[float]:
        with self._lock:
            jobs = self._load()
        now = _now_utc()
        waits = [
            ((_parse_iso(j.available_at) or now) - now).total_seconds()
            for j in jobs.values() if j.status == JobStatus.QUEUED.value
        ]
        return max(0.0, min(waits)) if waits else None

    async def dequeue(self, timeout: Optional[float] = None) -> Optional[Job]:
        """Wait up to *timeout* seconds (forever when None) for a ready job."""
        if self._wakeup is None:
            self._wakeup = asyncio.Event()
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            self._wakeup.clear()
            job = self.try_dequeue()
            if job is not None:
                return job
            wait = self.poll_interval
            next_due = self._seconds_until_next()
            if next_due is not None:
                wait = min(wait, next_due) if next_due > 0 else wait
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                wait = min(wait, remaining)
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=max(wait, 0.01))
            except asyncio.TimeoutError:
                pass

    def complete(self, job_id: str, result: Optional[Dict[str, Any]] = None) -> Job:
        with self._lock:
            jobs = self._load()
            job = self._require(jobs, job_id)
            job.status = JobStatus.COMPLETED.value
            job.result = result
            job.last_error = None
            job.finished_at = _now_iso()
            job.updated_at = job.finished_at
            self._save(jobs)
        logger.info("Job %s completed after %d attempt(s)", job_id[:8], job.attempts)
        return job

    def fail(self, job_id: str, error: str, retryable: bool = True) -> Job:
        """Record a failed attempt; requeue with backoff or park as failed."""
        with self._lock:
            jobs = self._load()
            job = self._require(jobs, job_id)
            now = _now_utc()
            job.last_error = error
            job.error_history.append({"attempt": job.attempts, "error": error, "at": now.isoformat()})
            job.error_history = job.error_history[-MAX_ERROR_HISTORY:]
            job.updated_at = now.isoformat()
            if retryable and job.attempts < job.max_attempts:
                delay = job.backoff.delay_for(job.attempts)
                job.status = JobStatus.QUEUED.value
                job.available_at = (now + timedelta(seconds=delay)).isoformat()
                logger.warning("Job %s attempt %d/%d failed, retrying in %.1fs: %s",
                               job_id[:8], job.attempts, job.max_attempts, delay, error)
            else:
                job.status = JobStatus.FAILED.value
                job.finished_at = job.updated_at
                logger.error("Job %s failed permanently after %d attempt(s): %s",
                             job_id[:8], job.attempts, error)
            self._save(jobs)
        if job.status == JobStatus.QUEUED.value:
            self._signal()
        return job

    # -- recovery -----------------------------------------------------------

    def _requeue_active(self, older_than: Optional[float] = None) -> List[Job]:
        recovered: List[Job] = []
        with self._lock:
            jobs = self._load()
            now = _now_utc()
            for job in jobs.values():
                if job.status != JobStatus.ACTIVE.value:
                    continue
                if older_than is not None:
                    started = _parse_iso(job.started_at)
                    if started is not None and (now - started).total_seconds() < older_than:
                        continue
                job.updated_at = now.isoformat()
                job.error_history.append({"attempt": job.attempts, "error": "interrupted", "at": job.updated_at})
                if job.attempts >= job.max_attempts:
                    job.status = JobStatus.FAILED.value
                    job.last_error = "interrupted during final attempt"
                    job.finished_at = job.updated_at
                else:
                    job.status = JobStatus.QUEUED.value
                    job.available_at = job.updated_at
                recovered.append(job)
            if recovered:
                self._save(jobs)
        for job in recovered:
            logger.warning("Recovered interrupted job %s -> %s", job.job_id[:8], job.status)
        if recovered:
            self._signal()
        return recovered

    def recover_interrupted(self) -> List[Job]:
        """Requeue every active job.  Call once before any worker starts."""
        return self._requeue_active()

    def recover_stale(self, lease_seconds: float) -> List[Job]:
        """Requeue active jobs claimed more than *lease_seconds* ago."""
        return self._requeue_active(older_than=lease_seconds)

    # -- inspection ---------------------------------------------------------

    def _require(self, jobs: Dict[str, Job], job_id: str) -> Job:
        job = jobs.get(job_id)
        if job is None:
            raise JobNotFound(f"no job '{job_id}'")
        return job

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._load().get(job_id)

    def list_jobs(self, status: Optional[str] = None, user_id: Optional[str] = None,
                  limit: int = 50) -> List[Job]:
        with self._lock:
            jobs = list(self._load().values())
        if status:
            jobs = [j for j in jobs if j.status == status]
        if user_id:
            jobs = [j for j in jobs if j.user_id == user_id]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs[:limit]

    def retry_failed(self, job_id: str) -> Job:
        """Put a permanently failed job back in the queue with fresh attempts."""
        with self._lock:
            jobs = self._load()
            job = self._require(jobs, job_id)
            if job.status != JobStatus.FAILED.value:
                raise InvalidPayload(f"job {job_id[:8]} is {job.status}, not failed")
            job.status = JobStatus.QUEUED.value
            job.attempts = 0
            job.finished_at = None
            job.available_at = _now_iso()
            job.updated_at = job.available_at
            self._save(jobs)
        logger.info("Job %s manually requeued", job_id[:8])
        self._signal()
        return job

    def counts(self) -> Dict[str, int]:
        with self._lock:
            jobs = self._load()
        counts = {s.value: 0 for s in JobStatus}
        for job in jobs.values():
            counts[job.status] = counts.get(job.status, 0) + 1
        return counts
