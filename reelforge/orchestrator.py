"""
Pipeline Orchestrator: one ContentRequest through every stage.

Stage order is fixed:

    strategy -> script -> image -> audio -> video_clip -> compilation
        -> archive -> distribution:<platform> (one per platform)

Every core stage's adapter is resolved before anything is opened, so a
missing capability fails the run without touching a provider.  An adapter
serving several stages is opened once and closed right after the last
stage that needs it.  A failed core stage ends the run; distribution
sub-stages are attempted one by one and only recorded.

Usage:
    orchestrator = PipelineOrchestrator(registry, archive, platforms=["youtube"])
    run = await orchestrator.execute(ContentRequest(topic="space travel"))
    print(run.final_artifact_ref, run.receipts)
"""

from __future__ import annotations

import inspect
import logging
import random
import threading
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from reelforge.adapter import Adapter
from reelforge.collaborators import ArtifactArchive
from reelforge.errors import AdapterError, StageFailed, StageUnresolvable, to_adapter_error
from reelforge.models import (
    CORE_STAGES,
    Artifact,
    Capability,
    CompilationAssets,
    ContentRequest,
    DistributionReceipt,
    PipelineRun,
    PlatformPayload,
    RunStatus,
    StageResult,
    StageStatus,
    Strategy,
    capability_key,
)
from reelforge.prompts import pick_viral_elements
from reelforge.registry import ServiceRegistry
from reelforge.utils import _calc_duration, _load_json, _now_iso, _safe_name, _save_json, _truncate

logger = logging.getLogger("reelforge.orchestrator")

ARCHIVE_STAGE = "archive"
MAX_STORED_RUNS = 2000

ProgressCallback = Callable[[str, str, Dict[str, Any]], Union[None, Awaitable[None]]]


# ===================================================================
# RUN STORE
# ===================================================================

class RunStore:
    """Keeps the most recent PipelineRuns in runs.json.

    Entries are keyed ``<operation_id>#<attempt>`` so every retry of an
    operation keeps its own record; lookups by operation id return the
    latest attempt.
    """

    def __init__(self, path: Optional[Path] = None, max_runs: int = MAX_STORED_RUNS) -> None:
        self._path = Path(path) if path else None
        self._max_runs = max_runs
        self._runs: Dict[str, Dict[str, Any]] = {}
        self._loaded = False
        self._lock = threading.Lock()

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        raw = _load_json(self._path, default={}) if self._path else {}
        rows = raw.values() if isinstance(raw, dict) else []
        self._runs = {
            f"{d.get('operation_id')}#{d.get('attempt', 1)}": d
            for d in rows if isinstance(d, dict)
        }
        self._loaded = True

    def save_run(self, run: PipelineRun) -> None:
        with self._lock:
            self._ensure_loaded()
            self._runs[run.run_key] = run.to_dict()
            if len(self._runs) > self._max_runs:
                ordered = sorted(self._runs.items(), key=lambda kv: kv[1].get("created_at", ""))
                self._runs = dict(ordered[-self._max_runs:])
            if self._path:
                _save_json(self._path, self._runs)

    def list_attempts(self, operation_id: str) -> List[PipelineRun]:
        """Every stored attempt of *operation_id*, oldest first."""
        with self._lock:
            self._ensure_loaded()
            rows = [d for d in self._runs.values() if d.get("operation_id") == operation_id]
        rows.sort(key=lambda d: d.get("attempt", 1))
        return [PipelineRun.from_dict(d) for d in rows]

    def get_run(self, operation_id: str, attempt: Optional[int] = None) -> Optional[PipelineRun]:
        attempts = self.list_attempts(operation_id)
        if attempt is not None:
            attempts = [r for r in attempts if r.attempt == attempt]
        return attempts[-1] if attempts else None

    def list_runs(self, user_id: Optional[str] = None, status: Optional[str] = None,
                  limit: int = 50) -> List[PipelineRun]:
        with self._lock:
            self._ensure_loaded()
            rows = list(self._runs.values())
        results = [
            PipelineRun.from_dict(d) for d in rows
            if (not user_id or d.get("user_id") == user_id)
            and (not status or d.get("status") == status)
        ]
        results.sort(key=lambda r: r.created_at, reverse=True)
        return results[:limit]


# ===================================================================
# ORCHESTRATOR
# ===================================================================

class PipelineOrchestrator:
    """Executes the fixed stage sequence for one content request."""

    def __init__(
        self,
        registry: ServiceRegistry,
        archive: ArtifactArchive,
        platforms: Optional[List[str]] = None,
        run_store: Optional[RunStore] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.registry = registry
        self.archive = archive
        self.platforms = [p.strip().lower() for p in (platforms or []) if p.strip()]
        self.store = run_store or RunStore()
        self._rng = rng or random.Random()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def execute(
        self,
        request: ContentRequest,
        operation_id: Optional[str] = None,
        extracted_text: Optional[str] = None,
        progress: Optional[ProgressCallback] = None,
        attempt: int = 1,
    ) -> PipelineRun:
        """Run every stage for *request*.

        *attempt* numbers this try of *operation_id*; earlier attempts stay
        in the run store.

        Returns the completed PipelineRun.  Raises StageUnresolvable when a
        core capability has no adapter, StageFailed when a core stage fails;
        in both cases the failed run has already been stored.
        """
        run = PipelineRun(
            content_request_id=request.request_id,
            user_id=request.user_id,
            subject=request.subject,
            status=RunStatus.RUNNING.value,
            started_at=_now_iso(),
            attempt=max(1, int(attempt)),
        )
        if operation_id:
            run.operation_id = operation_id
        self.store.save_run(run)
        logger.info("Pipeline %s started for user=%s subject=%s",
                    run.operation_id[:8], request.user_id or "-", _truncate(run.subject, 60))

        try:
            core_plan = self._plan_core(request)
        except StageUnresolvable as exc:
            self._finish(run, RunStatus.FAILED, error=str(exc))
            logger.error("Pipeline %s unresolvable: %s", run.operation_id[:8], exc)
            raise
        dist_plan = self._plan_distribution(request)

        plan: List[Tuple[str, str]] = list(core_plan) + [
            (key, adapter_id) for key, adapter_id in dist_plan if adapter_id
        ]
        last_use: Dict[str, int] = {}
        for index, (_, adapter_id) in enumerate(plan):
            last_use[adapter_id] = index

        open_adapters: Dict[str, Adapter] = {}
        try:
            outputs = await self._run_core(run, request, core_plan, extracted_text, progress,
                                           open_adapters, last_use)
            await self._run_archive(run, outputs, progress)
            await self._run_distribution(run, outputs, dist_plan, len(core_plan), progress,
                                         open_adapters, last_use)
        except StageFailed as exc:
            self._finish(run, RunStatus.FAILED, error=str(exc))
            logger.error("Pipeline %s FAILED at stage %s: %s",
                         run.operation_id[:8], exc.capability_key, exc.cause)
            raise
        finally:
            for adapter in list(open_adapters.values()):
                await adapter.close()
            open_adapters.clear()

        self._finish(run, RunStatus.COMPLETED)
        ok = sum(1 for r in run.receipts if r.get("success"))
        logger.info("Pipeline %s COMPLETED in %.1fs (%d/%d platform(s) published)",
                    run.operation_id[:8], run.total_duration_seconds, ok, len(run.receipts))
        return run

    def get_run(self, operation_id: str, attempt: Optional[int] = None) -> Optional[PipelineRun]:
        return self.store.get_run(operation_id, attempt)

    def list_attempts(self, operation_id: str) -> List[PipelineRun]:
        return self.store.list_attempts(operation_id)

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def _plan_core(self, request: ContentRequest) -> List[Tuple[str, str]]:
        plan = []
        for capability in CORE_STAGES:
            key = capability_key(capability)
            descriptor = self.registry.resolve(key, request.user_id)
            plan.append((key, descriptor.adapter_id))
        return plan

    def _plan_distribution(self, request: ContentRequest) -> List[Tuple[str, Optional[str]]]:
        plan: List[Tuple[str, Optional[str]]] = []
        for platform in self.platforms:
            key = capability_key(Capability.DISTRIBUTION, platform)
            try:
                plan.append((key, self.registry.resolve(key, request.user_id).adapter_id))
            except StageUnresolvable:
                plan.append((key, None))
        return plan

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _run_core(
        self,
        run: PipelineRun,
        request: ContentRequest,
        plan: List[Tuple[str, str]],
        extracted_text: Optional[str],
        progress: Optional[ProgressCallback],
        open_adapters: Dict[str, Adapter],
        last_use: Dict[str, int],
    ) -> Dict[str, Any]:
        outputs: Dict[str, Any] = {}
        elements = pick_viral_elements(self._rng).to_dict()
        for index, (key, adapter_id) in enumerate(plan):
            args = self._stage_args(key, request, outputs, extracted_text, elements)
            result = StageResult(stage=key, adapter_id=adapter_id,
                                 status=StageStatus.RUNNING.value, started_at=_now_iso())
            run.set_stage_result(result)
            self.store.save_run(run)
            await self._notify(progress, key, StageStatus.RUNNING.value, {"adapterId": adapter_id})
            try:
                adapter = await self._acquire(adapter_id, open_adapters)
                value = await adapter.invoke(key, *args)
            except Exception as exc:
                err = to_adapter_error(exc, adapter_id, key)
                self._record_failure(run, result, err)
                await self._notify(progress, key, StageStatus.FAILED.value,
                                   {"adapterId": adapter_id, "error": str(err), "errorKind": err.kind})
                raise StageFailed(key, adapter_id, err) from err
            finally:
                if last_use.get(adapter_id) == index:
                    await self._release(adapter_id, open_adapters)
            outputs[key] = value
            if isinstance(value, Strategy):
                run.strategy = value.to_dict()
            self._record_success(run, result, value)
            await self._notify(progress, key, StageStatus.COMPLETED.value,
                               {"adapterId": adapter_id, "artifact": result.artifact})
        return outputs

    def _stage_args(
        self,
        key: str,
        request: ContentRequest,
        outputs: Dict[str, Any],
        extracted_text: Optional[str],
        elements: Dict[str, Any],
    ) -> tuple:
        strategy: Optional[Strategy] = outputs.get(Capability.STRATEGY.value)
        if key == Capability.STRATEGY.value:
            return (request.subject, extracted_text, elements)
        if key == Capability.SCRIPT.value:
            return (strategy,)
        if key == Capability.IMAGE.value:
            return (strategy.visual_prompt or strategy.title, request.client_params.get("aspectRatio"))
        if key == Capability.AUDIO.value:
            return (outputs[Capability.SCRIPT.value] or strategy.script_segment,)
        if key == Capability.VIDEO_CLIP.value:
            return (strategy,)
        if key == Capability.COMPILATION.value:
            return (CompilationAssets(
                image=outputs[Capability.IMAGE.value],
                audio=outputs[Capability.AUDIO.value],
                video_clip=outputs[Capability.VIDEO_CLIP.value],
                script=outputs[Capability.SCRIPT.value],
                music_prompt=strategy.music_prompt,
                title=strategy.title,
                caption=strategy.caption,
            ),)
        raise ValueError(f"not a core stage: {key}")

    async def _run_archive(self, run: PipelineRun, outputs: Dict[str, Any],
                           progress: Optional[ProgressCallback]) -> None:
        final: Artifact = outputs[Capability.COMPILATION.value]
        title = (run.strategy or {}).get("title") or "video"
        name = f"{_safe_name(title, max_len=60)}-{run.operation_id}.mp4"
        result = StageResult(stage=ARCHIVE_STAGE, adapter_id=ARCHIVE_STAGE,
                             status=StageStatus.RUNNING.value, started_at=_now_iso())
        run.set_stage_result(result)
        await self._notify(progress, ARCHIVE_STAGE, StageStatus.RUNNING.value, {})
        try:
            ref = await self.archive.store(final, name)
        except Exception as exc:
            result.status = StageStatus.FAILED.value
            result.error = f"{type(exc).__name__}: {exc}"
            self._stamp(result)
            run.set_stage_result(result)
            await self._notify(progress, ARCHIVE_STAGE, StageStatus.FAILED.value, {"error": result.error})
            raise StageFailed(ARCHIVE_STAGE, ARCHIVE_STAGE, exc) from exc
        run.final_artifact_ref = ref
        result.status = StageStatus.COMPLETED.value
        result.artifact = {"kind": final.kind, "ref": ref}
        self._stamp(result)
        run.set_stage_result(result)
        self.store.save_run(run)
        await self._notify(progress, ARCHIVE_STAGE, StageStatus.COMPLETED.value, {"ref": ref})

    async def _run_distribution(
        self,
        run: PipelineRun,
        outputs: Dict[str, Any],
        plan: List[Tuple[str, Optional[str]]],
        offset: int,
        progress: Optional[ProgressCallback],
        open_adapters: Dict[str, Adapter],
        last_use: Dict[str, int],
    ) -> None:
        strategy = Strategy.from_dict(run.strategy)
        final: Artifact = outputs[Capability.COMPILATION.value]
        index = offset
        for key, adapter_id in plan:
            platform = key.partition(":")[2]
            result = StageResult(stage=key, adapter_id=adapter_id or "",
                                 status=StageStatus.RUNNING.value, started_at=_now_iso())
            if adapter_id is None:
                receipt = DistributionReceipt(platform=platform, success=False,
                                              error=str(StageUnresolvable(key)))
                result.status = StageStatus.SKIPPED.value
                result.error = receipt.error
                self._stamp(result)
                self._record_receipt(run, result, receipt)
                await self._notify(progress, key, StageStatus.SKIPPED.value, {"error": receipt.error})
                continue
            await self._notify(progress, key, StageStatus.RUNNING.value, {"adapterId": adapter_id})
            payload = PlatformPayload(
                platform=platform,
                video_path=final.path or final.ref,
                title=strategy.title,
                description=strategy.description,
                caption=strategy.caption,
                tags=list(strategy.hashtags),
            )
            try:
                adapter = await self._acquire(adapter_id, open_adapters)
                receipt = await adapter.invoke(key, payload)
                result.status = StageStatus.COMPLETED.value
                result.artifact = receipt.to_dict()
            except Exception as exc:
                err = to_adapter_error(exc, adapter_id, key)
                receipt = DistributionReceipt(platform=platform, adapter_id=adapter_id,
                                              success=False, error=str(err))
                result.status = StageStatus.FAILED.value
                result.error = str(err)
                result.error_kind = err.kind
                result.diagnostics = list(err.diagnostics)
                logger.warning("Pipeline %s | %s failed: %s", run.operation_id[:8], key, err)
            finally:
                if last_use.get(adapter_id) == index:
                    await self._release(adapter_id, open_adapters)
                index += 1
            self._stamp(result)
            self._record_receipt(run, result, receipt)
            await self._notify(progress, key, result.status,
                               {"adapterId": adapter_id, "postUrl": receipt.post_url, "error": receipt.error})

    # ------------------------------------------------------------------
    # Adapter lifetime
    # ------------------------------------------------------------------

    async def _acquire(self, adapter_id: str, open_adapters: Dict[str, Adapter]) -> Adapter:
        adapter = open_adapters.get(adapter_id)
        if adapter is None:
            adapter = self.registry.create(adapter_id)
            # One lease per session key: hand it over instead of waiting on ourselves.
            for other_id, other in list(open_adapters.items()):
                if other.session_key == adapter.session_key:
                    logger.debug("Closing %s to share session '%s' with %s",
                                 other_id, adapter.session_key, adapter_id)
                    await self._release(other_id, open_adapters)
            await adapter.open()
            open_adapters[adapter_id] = adapter
        return adapter

    async def _release(self, adapter_id: str, open_adapters: Dict[str, Adapter]) -> None:
        adapter = open_adapters.pop(adapter_id, None)
        if adapter is not None:
            await adapter.close()

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _stamp(self, result: StageResult) -> None:
        result.completed_at = _now_iso()
        result.duration_seconds = _calc_duration(result.started_at, result.completed_at)

    def _record_success(self, run: PipelineRun, result: StageResult, value: Any) -> None:
        result.status = StageStatus.COMPLETED.value
        if isinstance(value, Artifact):
            result.artifact = value.to_dict()
        elif isinstance(value, Strategy):
            result.artifact = {"kind": "strategy", "text": value.title}
        else:
            result.artifact = {"kind": "text", "text": str(value)}
        self._stamp(result)
        run.set_stage_result(result)
        self.store.save_run(run)

    def _record_failure(self, run: PipelineRun, result: StageResult, err: AdapterError) -> None:
        result.status = StageStatus.FAILED.value
        result.error = str(err)
        result.error_kind = err.kind
        result.diagnostics = list(err.diagnostics)
        self._stamp(result)
        run.set_stage_result(result)

    def _record_receipt(self, run: PipelineRun, result: StageResult, receipt: DistributionReceipt) -> None:
        run.set_stage_result(result)
        run.receipts.append(receipt.to_dict())
        self.store.save_run(run)

    def _finish(self, run: PipelineRun, status: RunStatus, error: Optional[str] = None) -> None:
        run.status = status.value
        run.error = error
        run.completed_at = _now_iso()
        run.total_duration_seconds = _calc_duration(run.started_at, run.completed_at)
        self.store.save_run(run)

    async def _notify(self, progress: Optional[ProgressCallback], key: str, status: str,
                      detail: Dict[str, Any]) -> None:
        if progress is None:
            return
        try:
            outcome = progress(key, status, detail)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:
            logger.warning("Progress callback failed for %s/%s: %s", key, status, exc)
