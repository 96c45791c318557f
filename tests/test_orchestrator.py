"""Tests for the pipeline orchestrator."""

import asyncio

import pytest

from reelforge.errors import AuthRequired, Malformed, StageFailed, StageUnresolvable, Unavailable
from reelforge.models import ContentRequest, RunStatus, StageStatus
from reelforge.orchestrator import ARCHIVE_STAGE, RunStore

from conftest import DEFAULT_SPECS

CORE_ORDER = ["strategy", "script", "image", "audio", "video_clip", "compilation"]


def _specs_without(*keys):
    specs = []
    for spec in DEFAULT_SPECS:
        caps = [c for c in spec["capabilities"] if c not in keys]
        if caps:
            specs.append({**spec, "capabilities": caps,
                          "default_for": [k for k in spec.get("default_for", []) if k in caps]})
    return specs


# ===================================================================
# Happy path
# ===================================================================

class TestFullRun:

    @pytest.mark.asyncio
    async def test_space_travel_end_to_end(self, orchestrator, calls):
        run = await orchestrator.execute(ContentRequest(topic="space travel", user_id="u1"))

        assert run.status == RunStatus.COMPLETED.value
        assert run.strategy["title"] == "Video about space travel"
        assert run.stage_order() == CORE_ORDER + [ARCHIVE_STAGE, "distribution:youtube", "distribution:tiktok"]
        assert [key for _, key, _ in calls] == CORE_ORDER + ["distribution:youtube", "distribution:tiktok"]
        assert run.final_artifact_ref.startswith("file://")
        assert run.operation_id in run.final_artifact_ref
        assert [r["platform"] for r in run.receipts] == ["youtube", "tiktok"]
        assert all(r["success"] for r in run.receipts)

    @pytest.mark.asyncio
    async def test_stage_inputs_flow_forward(self, orchestrator, calls):
        await orchestrator.execute(ContentRequest(topic="space travel",
                                                  client_params={"aspectRatio": "9:16"}))
        by_key = {key: args for _, key, args in calls}
        topic, extracted, elements = by_key["strategy"]
        assert topic == "space travel"
        assert extracted is None
        assert set(elements) == {"hook", "music", "emotional_triggers"}
        assert by_key["image"] == ("cinematic space travel", "9:16")
        assert by_key["audio"] == ("Script for Video about space travel",)
        assets = by_key["compilation"][0]
        assert assets.title == "Video about space travel"
        assert len(assets.files()) == 3
        payload = by_key["distribution:youtube"][0]
        assert payload.title == "Video about space travel"
        assert payload.video_path.endswith("-final.mp4")

    @pytest.mark.asyncio
    async def test_url_request_passes_extracted_text(self, orchestrator, calls):
        await orchestrator.execute(ContentRequest(source_url="https://example.com/a"),
                                   extracted_text="article body")
        topic, extracted, _ = next(args for _, key, args in calls if key == "strategy")
        assert topic == "https://example.com/a"
        assert extracted == "article body"

    @pytest.mark.asyncio
    async def test_run_is_stored(self, orchestrator):
        run = await orchestrator.execute(ContentRequest(topic="volcanoes"), operation_id="op-1")
        assert run.operation_id == "op-1"
        stored = orchestrator.get_run("op-1")
        assert stored.status == RunStatus.COMPLETED.value
        assert stored.get_stage_result("image").status == StageStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_user_preference_changes_adapter(self, registry_builder, orchestrator_builder,
                                                   preferences, calls):
        specs = DEFAULT_SPECS + [{"adapter_id": "artist2", "capabilities": ["image"]}]
        orchestrator = orchestrator_builder(registry_builder(specs))
        preferences.set("u1", "image", ["artist2"])
        await orchestrator.execute(ContentRequest(topic="cats", user_id="u1"))
        assert ("artist2", "image") in [(a, k) for a, k, _ in calls]
        assert ("artist", "image") not in [(a, k) for a, k, _ in calls]


# ===================================================================
# Adapter lifetime
# ===================================================================

class TestAdapterLifetime:

    @pytest.mark.asyncio
    async def test_shared_adapter_opened_once(self, orchestrator, session_factory):
        await orchestrator.execute(ContentRequest(topic="space travel"))
        assert len(session_factory.for_adapter("writer")) == 1
        assert len(session_factory.for_adapter("artist")) == 1
        assert len(session_factory.sessions) == 6

    @pytest.mark.asyncio
    async def test_every_session_closed_and_saved(self, orchestrator, session_factory, session_store, leases):
        await orchestrator.execute(ContentRequest(topic="space travel"))
        assert all(s.closed for s in session_factory.sessions)
        assert set(session_store.list_keys()) == {
            "writer_session", "artist_session", "voice_session", "editor_session", "yt_session", "tt_session",
        }
        assert not any(leases.is_leased(k) for k in session_store.list_keys())

    @pytest.mark.asyncio
    async def test_second_run_restores_session(self, orchestrator, session_factory):
        await orchestrator.execute(ContentRequest(topic="one"))
        await orchestrator.execute(ContentRequest(topic="two"))
        first, second = session_factory.for_adapter("voice")
        assert first.restored_state is None
        assert second.restored_state["cookies"][0]["value"] == "voice"

    @pytest.mark.asyncio
    async def test_adapters_sharing_a_session_key_take_turns(self, registry_builder, orchestrator_builder,
                                                             session_factory, leases):
        specs = [
            {"adapter_id": "writer", "capabilities": ["strategy", "image"], "default_for": ["strategy", "image"],
             "session_key": "google"},
            {"adapter_id": "scribe", "capabilities": ["script"], "default_for": ["script"],
             "session_key": "google"},
            {"adapter_id": "artist", "capabilities": ["video_clip"], "default_for": ["video_clip"]},
        ] + [s for s in DEFAULT_SPECS if s["adapter_id"] not in ("writer", "artist")]
        orchestrator = orchestrator_builder(registry_builder(specs))

        run = await asyncio.wait_for(orchestrator.execute(ContentRequest(topic="x")), timeout=5)

        assert run.status == RunStatus.COMPLETED.value
        assert len(session_factory.for_adapter("writer")) == 2
        assert len(session_factory.for_adapter("scribe")) == 1
        assert not leases.is_leased("google")

    @pytest.mark.asyncio
    async def test_sessions_closed_after_core_failure(self, registry_builder, orchestrator_builder,
                                                      session_factory):
        registry = registry_builder(fail={"artist": {"video_clip": Malformed("garbled")}})
        orchestrator = orchestrator_builder(registry)
        with pytest.raises(StageFailed):
            await orchestrator.execute(ContentRequest(topic="x"))
        assert session_factory.sessions
        assert all(s.closed for s in session_factory.sessions)


# ===================================================================
# Failures
# ===================================================================

class TestFailures:

    @pytest.mark.asyncio
    async def test_unresolvable_core_fails_before_any_open(self, registry_builder, orchestrator_builder,
                                                           session_factory, calls):
        orchestrator = orchestrator_builder(registry_builder(_specs_without("compilation")))
        with pytest.raises(StageUnresolvable) as info:
            await orchestrator.execute(ContentRequest(topic="x"), operation_id="op-u")
        assert info.value.capability_key == "compilation"
        assert session_factory.sessions == []
        assert calls == []
        stored = orchestrator.get_run("op-u")
        assert stored.status == RunStatus.FAILED.value
        assert "compilation" in stored.error

    @pytest.mark.asyncio
    async def test_core_failure_stops_the_run(self, registry_builder, orchestrator_builder, calls):
        registry = registry_builder(fail={"artist": {"image": Malformed("no image")}})
        orchestrator = orchestrator_builder(registry)
        with pytest.raises(StageFailed) as info:
            await orchestrator.execute(ContentRequest(topic="x"), operation_id="op-f")
        err = info.value
        assert err.capability_key == "image"
        assert err.adapter_id == "artist"
        assert isinstance(err.cause, Malformed)
        assert [key for _, key, _ in calls] == ["strategy", "script", "image"]

        stored = orchestrator.get_run("op-f")
        assert stored.status == RunStatus.FAILED.value
        result = stored.get_stage_result("image")
        assert result.status == StageStatus.FAILED.value
        assert result.error_kind == "Malformed"
        assert stored.get_stage_result("audio") is None

    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_unavailable(self, registry_builder, orchestrator_builder):
        registry = registry_builder(fail={"voice": {"audio": RuntimeError("boom")}})
        orchestrator = orchestrator_builder(registry)
        with pytest.raises(StageFailed) as info:
            await orchestrator.execute(ContentRequest(topic="x"))
        assert isinstance(info.value.cause, Unavailable)
        assert info.value.cause.adapter_id == "voice"

    @pytest.mark.asyncio
    async def test_text_stage_retried_once_on_unavailable(self, registry_builder, orchestrator_builder, calls):
        registry = registry_builder(fail={"writer": {"script": Unavailable("busy")}})
        orchestrator = orchestrator_builder(registry)
        with pytest.raises(StageFailed):
            await orchestrator.execute(ContentRequest(topic="x"))
        assert [key for _, key, _ in calls].count("script") == 2

    @pytest.mark.asyncio
    async def test_auth_required_not_retried(self, registry_builder, orchestrator_builder, calls):
        registry = registry_builder(fail={"writer": {"strategy": AuthRequired("logged out")}})
        orchestrator = orchestrator_builder(registry)
        with pytest.raises(StageFailed) as info:
            await orchestrator.execute(ContentRequest(topic="x"))
        assert isinstance(info.value.cause, AuthRequired)
        assert [key for _, key, _ in calls] == ["strategy"]


# ===================================================================
# Distribution
# ===================================================================

class TestDistribution:

    @pytest.mark.asyncio
    async def test_platform_failure_does_not_fail_run(self, registry_builder, orchestrator_builder):
        registry = registry_builder(fail={"yt": {"distribution:youtube": Unavailable("upload stuck")}})
        orchestrator = orchestrator_builder(registry)
        run = await orchestrator.execute(ContentRequest(topic="x"))

        assert run.status == RunStatus.COMPLETED.value
        receipts = {r["platform"]: r for r in run.receipts}
        assert receipts["youtube"]["success"] is False
        assert "upload stuck" in receipts["youtube"]["error"]
        assert receipts["tiktok"]["success"] is True
        assert run.get_stage_result("distribution:youtube").status == StageStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_unregistered_platform_is_skipped(self, registry, orchestrator_builder):
        orchestrator = orchestrator_builder(registry, platforms=["youtube", "instagram", "tiktok"])
        run = await orchestrator.execute(ContentRequest(topic="x"))

        assert run.status == RunStatus.COMPLETED.value
        assert [r["platform"] for r in run.receipts] == ["youtube", "instagram", "tiktok"]
        instagram = run.receipts[1]
        assert instagram["success"] is False
        assert "distribution:instagram" in instagram["error"]
        assert run.get_stage_result("distribution:instagram").status == StageStatus.SKIPPED.value

    @pytest.mark.asyncio
    async def test_no_platforms(self, registry, orchestrator_builder):
        run = await orchestrator_builder(registry, platforms=[]).execute(ContentRequest(topic="x"))
        assert run.status == RunStatus.COMPLETED.value
        assert run.receipts == []


# ===================================================================
# Archive
# ===================================================================

class TestArchive:

    @pytest.mark.asyncio
    async def test_archive_failure_is_a_stage_failure(self, orchestrator, calls):
        async def broken_store(artifact, name):
            raise OSError("disk full")

        orchestrator.archive.store = broken_store
        with pytest.raises(StageFailed) as info:
            await orchestrator.execute(ContentRequest(topic="x"))
        assert info.value.capability_key == ARCHIVE_STAGE
        assert not any(key.startswith("distribution") for _, key, _ in calls)

    @pytest.mark.asyncio
    async def test_archived_file_exists(self, orchestrator, settings):
        run = await orchestrator.execute(ContentRequest(topic="space travel"))
        archived = list(settings.archive_dir.iterdir())
        assert len(archived) == 1
        assert archived[0].name.startswith("Video_about_space_travel-")
        assert archived[0].read_bytes() == b"video from editor"
        assert run.final_artifact_ref == archived[0].resolve().as_uri()


# ===================================================================
# Progress
# ===================================================================

class TestProgress:

    @pytest.mark.asyncio
    async def test_progress_reports_each_stage(self, orchestrator):
        seen = []

        async def progress(stage, status, detail):
            seen.append((stage, status))

        await orchestrator.execute(ContentRequest(topic="x"), progress=progress)
        assert ("strategy", "running") in seen
        assert ("strategy", "completed") in seen
        assert (ARCHIVE_STAGE, "completed") in seen
        assert seen.index(("script", "running")) > seen.index(("strategy", "completed"))

    @pytest.mark.asyncio
    async def test_broken_progress_callback_is_ignored(self, orchestrator):
        def progress(stage, status, detail):
            raise RuntimeError("listener bug")

        run = await orchestrator.execute(ContentRequest(topic="x"), progress=progress)
        assert run.status == RunStatus.COMPLETED.value


# ===================================================================
# RunStore
# ===================================================================

class TestRunStore:

    @pytest.mark.asyncio
    async def test_runs_survive_reload(self, orchestrator, settings):
        run = await orchestrator.execute(ContentRequest(topic="x", user_id="u1"))
        fresh = RunStore(settings.runs_file)
        assert fresh.get_run(run.operation_id).status == RunStatus.COMPLETED.value
        assert [r.operation_id for r in fresh.list_runs(user_id="u1")] == [run.operation_id]
        assert fresh.list_runs(user_id="u2") == []

    @pytest.mark.unit
    def test_max_runs_trims_oldest(self, tmp_path):
        from reelforge.models import PipelineRun

        store = RunStore(tmp_path / "runs.json", max_runs=3)
        for i in range(5):
            store.save_run(PipelineRun(operation_id=f"op-{i}", created_at=f"2026-01-0{i + 1}T00:00:00+00:00"))
        assert store.get_run("op-0") is None
        assert store.get_run("op-4") is not None
        assert len(store.list_runs()) == 3

    @pytest.mark.asyncio
    async def test_attempts_stored_side_by_side(self, orchestrator, settings):
        request = ContentRequest(topic="x", user_id="u1")
        await orchestrator.execute(request, operation_id="op-a", attempt=1)
        await orchestrator.execute(request, operation_id="op-a", attempt=2)
        fresh = RunStore(settings.runs_file)
        assert [r.attempt for r in fresh.list_attempts("op-a")] == [1, 2]
        assert fresh.get_run("op-a").attempt == 2
        assert fresh.get_run("op-a", attempt=3) is None
