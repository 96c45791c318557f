"""
Runtime wiring: builds every component once from Settings.

The API server, the CLI and the tests all go through build_runtime(), so
there is a single place that decides which store, registry and queue the
process uses.  Components are passed explicitly; nothing reaches for a
global registry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Type

from reelforge.adapter import Adapter, SessionFactory
from reelforge.auth import TokenAuth
from reelforge.browser import HttpTextExtractor, PlaywrightTextExtractor
from reelforge.collaborators import (
    DirectorySubscriptionChecker,
    JsonlActivityLog,
    JsonPreferenceStore,
    JsonUserDirectory,
    LocalArchive,
)
from reelforge.config import AdapterConfig, Settings, get_settings, load_adapter_configs
from reelforge.job_queue import JobQueue
from reelforge.models import JobType
from reelforge.orchestrator import PipelineOrchestrator, RunStore
from reelforge.providers import adapter_class_for
from reelforge.rate_limit import JobRateLimiter
from reelforge.realtime import EventType, RealtimeNotifier
from reelforge.registry import AdapterFactory, ServiceRegistry, build_registry
from reelforge.retry import BackoffPolicy
from reelforge.scheduler import AutomationScheduler
from reelforge.session_store import FileSessionStore, SessionLeases, SessionStore
from reelforge.worker import WorkerPool

logger = logging.getLogger("reelforge.runtime")


@dataclass
class Runtime:
    """Every long-lived component of one process."""

    settings: Settings
    session_store: SessionStore
    leases: SessionLeases
    registry: ServiceRegistry
    orchestrator: PipelineOrchestrator
    queue: JobQueue
    notifier: RealtimeNotifier
    workers: WorkerPool
    scheduler: AutomationScheduler
    activity: JsonlActivityLog
    token_auth: TokenAuth
    preferences: JsonPreferenceStore

    async def _trigger(self, job_type: JobType, payload: Dict[str, Any], user_id: Optional[str]) -> Dict[str, str]:
        if user_id:
            payload["userId"] = user_id
        job = self.queue.enqueue(job_type.value, payload)
        self.activity.log("operation_queued", "info", user_id=user_id, operation_id=job.operation_id,
                          details={"jobId": job.job_id, "jobType": job.job_type})
        await self.notifier.emit(user_id, EventType.TASK_QUEUED,
                                 operationId=job.operation_id, jobId=job.job_id, jobType=job.job_type)
        return {"operationId": job.operation_id, "jobId": job.job_id}

    async def trigger_topic(self, user_id: Optional[str], topic: str,
                            params: Optional[Dict[str, Any]] = None) -> Dict[str, str]:
        """Enqueue a create_from_topic job; returns immediately.  Raises InvalidPayload."""
        payload: Dict[str, Any] = {"topic": topic}
        if params:
            payload["params"] = params
        return await self._trigger(JobType.CREATE_FROM_TOPIC, payload, user_id)

    async def trigger_url(self, user_id: Optional[str], url: str) -> Dict[str, str]:
        """Enqueue a create_from_url job; returns immediately.  Raises InvalidPayload."""
        return await self._trigger(JobType.CREATE_FROM_URL, {"url": url}, user_id)


def adapter_factory_builder(
    settings: Settings,
    session_store: SessionStore,
    leases: SessionLeases,
    session_factory: Optional[SessionFactory] = None,
):
    """Return make_factory(config, cls) for build_registry()."""

    def make_factory(config: AdapterConfig, adapter_cls: Type[Adapter]) -> AdapterFactory:
        def factory() -> Adapter:
            return adapter_cls(
                config,
                session_store,
                leases,
                session_factory=session_factory,
                diagnostics_dir=settings.diagnostics_dir,
                downloads_dir=settings.downloads_dir,
                headless=settings.headless,
                save_failure_artifacts=settings.save_failure_artifacts,
            )
        return factory

    return make_factory


def build_extractor(settings: Settings) -> Any:
    """Source-page text extractor for URL jobs: "browser" (default) or "http"."""
    if settings.text_extractor == "http":
        return HttpTextExtractor(settings.extraction_timeout)
    if settings.text_extractor != "browser":
        logger.warning("Unknown text extractor %r; using the browser", settings.text_extractor)
    return PlaywrightTextExtractor(settings.headless, settings.extraction_timeout)


def build_runtime(
    settings: Optional[Settings] = None,
    registry: Optional[ServiceRegistry] = None,
    session_store: Optional[SessionStore] = None,
    session_factory: Optional[SessionFactory] = None,
    extractor: Any = None,
) -> Runtime:
    settings = settings or get_settings()
    session_store = session_store or FileSessionStore(settings.sessions_dir)
    leases = SessionLeases()
    preferences = JsonPreferenceStore(settings.preferences_file)

    if registry is None:
        configs = load_adapter_configs(settings.adapters_file)
        registry = build_registry(
            configs,
            adapter_factory_builder(settings, session_store, leases, session_factory),
            adapter_class_for,
            preferences=preferences,
        )

    orchestrator = PipelineOrchestrator(
        registry,
        LocalArchive(settings.archive_dir),
        platforms=settings.platforms,
        run_store=RunStore(settings.runs_file),
    )
    queue = JobQueue(
        settings.jobs_file,
        default_max_attempts=settings.job_default_attempts,
        default_backoff=BackoffPolicy(delay=settings.job_backoff_delay, max_delay=settings.job_max_backoff_delay),
    )
    notifier = RealtimeNotifier()
    activity = JsonlActivityLog(settings.activity_dir)
    workers = WorkerPool(
        queue,
        orchestrator,
        notifier=notifier,
        rate_limiter=JobRateLimiter(settings.rate_limit_max, settings.rate_limit_duration),
        extractor=extractor or build_extractor(settings),
        activity=activity,
        concurrency=settings.worker_concurrency,
        ai_input_max_chars=settings.ai_input_max_chars,
    )
    users = JsonUserDirectory(settings.users_file)
    scheduler = AutomationScheduler(
        users,
        DirectorySubscriptionChecker(users),
        queue,
        notifier=notifier,
        activity=activity,
        cron=settings.automation_cron,
    )
    runtime = Runtime(
        settings=settings,
        session_store=session_store,
        leases=leases,
        registry=registry,
        orchestrator=orchestrator,
        queue=queue,
        notifier=notifier,
        workers=workers,
        scheduler=scheduler,
        activity=activity,
        token_auth=TokenAuth(settings.tokens_file),
        preferences=preferences,
    )
    logger.info("Runtime ready: data=%s, %d capability key(s), %d platform(s)",
                settings.data_dir, len(registry.keys()), len(settings.platforms))
    return runtime


_runtime: Optional[Runtime] = None


def get_runtime() -> Runtime:
    global _runtime  # noqa: PLW0603
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime


def reset_runtime() -> None:
    global _runtime  # noqa: PLW0603
    _runtime = None
