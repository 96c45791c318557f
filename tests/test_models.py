"""Tests for the shared data model."""

import pytest

from reelforge.errors import Malformed
from reelforge.models import (
    Capability,
    CapabilityClass,
    ContentRequest,
    Job,
    PipelineRun,
    StageResult,
    Strategy,
    capability_class,
    capability_key,
    parse_capability_key,
)


class TestCapabilityKeys:

    @pytest.mark.unit
    def test_core_key(self):
        assert capability_key(Capability.SCRIPT) == "script"

    @pytest.mark.unit
    def test_distribution_key_normalized(self):
        assert capability_key(Capability.DISTRIBUTION, " YouTube ") == "distribution:youtube"

    @pytest.mark.unit
    def test_distribution_needs_platform(self):
        with pytest.raises(ValueError):
            capability_key(Capability.DISTRIBUTION)
        with pytest.raises(ValueError):
            capability_key(Capability.IMAGE, "youtube")

    @pytest.mark.unit
    @pytest.mark.parametrize("key,expected", [
        ("image", (Capability.IMAGE, None)),
        ("distribution:tiktok", (Capability.DISTRIBUTION, "tiktok")),
    ])
    def test_parse(self, key, expected):
        assert parse_capability_key(key) == expected

    @pytest.mark.unit
    @pytest.mark.parametrize("key", ["painting", "distribution", "script:youtube"])
    def test_parse_rejects(self, key):
        with pytest.raises(ValueError):
            parse_capability_key(key)

    @pytest.mark.unit
    def test_classes(self):
        assert capability_class(Capability.STRATEGY) == CapabilityClass.TEXT
        assert capability_class(Capability.COMPILATION) == CapabilityClass.MEDIA
        assert capability_class("distribution") == CapabilityClass.DISTRIBUTION


class TestContentRequest:

    @pytest.mark.unit
    def test_exactly_one_subject(self):
        with pytest.raises(ValueError):
            ContentRequest()
        with pytest.raises(ValueError):
            ContentRequest(topic="a", source_url="https://x")
        with pytest.raises(ValueError):
            ContentRequest(topic="   ")

    @pytest.mark.unit
    def test_subject_and_params_frozen(self):
        req = ContentRequest(source_url=" https://example.com/a ", client_params={"aspectRatio": "1:1"})
        assert req.subject == "https://example.com/a"
        with pytest.raises(TypeError):
            req.client_params["aspectRatio"] = "16:9"
        assert req.to_dict()["client_params"] == {"aspectRatio": "1:1"}


class TestStrategy:

    @pytest.mark.unit
    def test_camel_case_aliases(self):
        strategy = Strategy.from_dict({"title": "T", "visualPrompt": "v", "viralMusicPrompt": "m",
                                       "hashtags": "#a, #b"})
        assert strategy.visual_prompt == "v"
        assert strategy.music_prompt == "m"
        assert strategy.hashtags == ["#a", "#b"]

    @pytest.mark.unit
    def test_title_required(self):
        with pytest.raises(Malformed):
            Strategy.from_dict({"description": "no title"})

    @pytest.mark.unit
    @pytest.mark.parametrize("text", ["no json here", "{not json}", "[1, 2]"])
    def test_from_text_rejects(self, text):
        with pytest.raises(Malformed):
            Strategy.from_text(text)


class TestRecords:

    @pytest.mark.unit
    def test_run_stage_results(self):
        run = PipelineRun(subject="x")
        run.set_stage_result(StageResult(stage="strategy", adapter_id="claude", status="completed"))
        run.set_stage_result(StageResult(stage="script", adapter_id="claude"))
        assert run.stage_order() == ["strategy", "script"]
        restored = PipelineRun.from_dict(run.to_dict())
        assert restored.get_stage_result("strategy").adapter_id == "claude"
        assert restored.get_stage_result("image") is None
        assert set(run.summary()) == {"operation_id", "attempt", "status", "strategy", "final_artifact_ref", "receipts"}

    @pytest.mark.unit
    def test_job_backoff_survives_persistence(self):
        job = Job(job_type="create_from_topic", payload={"topic": "x", "userId": "u9"})
        job.backoff.delay = 12.0
        restored = Job.from_dict(dict(job.to_dict(), unknown_field=1))
        assert restored.backoff.delay == 12.0
        assert restored.user_id == "u9"
