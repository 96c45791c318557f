"""Tests for settings and adapter configuration."""

import json
from pathlib import Path

import pytest

from reelforge import config as config_mod
from reelforge.config import (
    DEFAULT_TIMEOUTS,
    AdapterConfig,
    Settings,
    TimeoutPolicy,
    get_settings,
    load_adapter_configs,
    reset_settings,
)
from reelforge.errors import ConfigError
from reelforge.models import Capability, CapabilityClass


def _write(path, data):
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


# ===================================================================
# AdapterConfig
# ===================================================================

class TestAdapterConfig:

    @pytest.mark.unit
    def test_defaults(self):
        cfg = AdapterConfig.from_dict({"adapter_id": "runway", "capabilities": ["image", "video_clip"]})
        assert cfg.session_key == "runway_session"
        assert cfg.kind == "form_flow"
        assert cfg.timeout_for(Capability.IMAGE) == DEFAULT_TIMEOUTS[CapabilityClass.MEDIA]

    @pytest.mark.unit
    def test_timeout_override_keeps_other_defaults(self):
        cfg = AdapterConfig.from_dict({
            "adapter_id": "claude", "capabilities": ["script"],
            "timeouts": {"text": {"call": 90}},
        })
        policy = cfg.timeout_for(Capability.SCRIPT)
        assert policy.call == 90.0
        assert policy.navigation == DEFAULT_TIMEOUTS[CapabilityClass.TEXT].navigation

    @pytest.mark.unit
    @pytest.mark.parametrize("data,match", [
        ({"capabilities": ["script"]}, "adapter_id"),
        ({"adapter_id": "x"}, "no capabilities"),
        ({"adapter_id": "x", "capabilities": ["painting"]}, "Unknown capability"),
        ({"adapter_id": "x", "capabilities": ["distribution"]}, "platform"),
        ({"adapter_id": "x", "capabilities": ["script"], "default_for": ["image"]}, "undeclared"),
        ({"adapter_id": "x", "capabilities": ["script"], "timeouts": {"audio": {}}}, "capability class"),
        ({"adapter_id": "x", "capabilities": ["script"], "timeouts": {"text": {"call": -1}}}, "positive"),
        ({"adapter_id": "x", "capabilities": ["script"], "timeouts": {"text": {"call": "soon"}}}, "number"),
    ])
    def test_invalid(self, data, match):
        with pytest.raises(ConfigError, match=match):
            AdapterConfig.from_dict(data)

    @pytest.mark.unit
    def test_to_dict_round_trip(self):
        data = {"adapter_id": "yt", "capabilities": ["distribution:youtube"],
                "default_for": ["distribution:youtube"], "timeouts": {"distribution": {"call": 120}},
                "options": {"flows": {}}}
        cfg = AdapterConfig.from_dict(data)
        assert AdapterConfig.from_dict(cfg.to_dict()) == cfg

    @pytest.mark.unit
    def test_timeout_policy_base(self):
        base = TimeoutPolicy(call=10.0)
        assert TimeoutPolicy.from_dict({"navigation": 5}, base) == TimeoutPolicy(navigation=5.0, call=10.0)


class TestLoadAdapterConfigs:

    @pytest.mark.unit
    def test_missing_file(self, tmp_path):
        assert load_adapter_configs(tmp_path / "absent.json") == []

    @pytest.mark.unit
    def test_list_or_object(self, tmp_path):
        entry = {"adapter_id": "a", "capabilities": ["script"]}
        assert len(load_adapter_configs(_write(tmp_path / "l.json", [entry]))) == 1
        assert len(load_adapter_configs(_write(tmp_path / "o.json", {"adapters": [entry]}))) == 1

    @pytest.mark.unit
    def test_invalid_json(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{", encoding="utf-8")
        with pytest.raises(ConfigError, match="not valid JSON"):
            load_adapter_configs(path)

    @pytest.mark.unit
    def test_duplicates(self, tmp_path):
        entry = {"adapter_id": "a", "capabilities": ["script"]}
        with pytest.raises(ConfigError, match="duplicate"):
            load_adapter_configs(_write(tmp_path / "d.json", [entry, entry]))

    @pytest.mark.unit
    def test_not_a_list(self, tmp_path):
        with pytest.raises(ConfigError):
            load_adapter_configs(_write(tmp_path / "n.json", {"adapters": {"a": 1}}))


# ===================================================================
# Settings
# ===================================================================

class TestSettings:

    @pytest.mark.unit
    def test_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("REELFORGE_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("WORKER_CONCURRENCY", "2")
        monkeypatch.setenv("JOB_DEFAULT_BACKOFF_DELAY_MS", "1500")
        monkeypatch.setenv("WORKER_RATE_LIMIT_MAX", "not-a-number")
        monkeypatch.setenv("PLAYWRIGHT_HEADLESS", "false")
        monkeypatch.setenv("REELFORGE_PLATFORMS", "YouTube, tiktok,")
        settings = Settings.from_env()
        assert settings.data_dir == Path(tmp_path)
        assert settings.worker_concurrency == 2
        assert settings.job_backoff_delay == 1.5
        assert settings.rate_limit_max == 10
        assert settings.headless is False
        assert settings.platforms == ["youtube", "tiktok"]
        assert settings.jobs_file == Path(tmp_path) / "jobs" / "jobs.json"
        assert settings.tokens_file.name == "tokens.json"

    @pytest.mark.unit
    def test_defaults(self, monkeypatch):
        for name in ("REELFORGE_PLATFORMS", "AUTOMATION_CRON", "REELFORGE_API_PORT"):
            monkeypatch.delenv(name, raising=False)
        settings = Settings.from_env()
        assert settings.platforms == ["youtube", "tiktok", "instagram"]
        assert settings.automation_cron == "*/5 * * * *"
        assert settings.api_port == 8765

    @pytest.mark.unit
    def test_singleton(self, monkeypatch):
        monkeypatch.setattr(config_mod, "_settings", None)
        first = get_settings()
        assert get_settings() is first
        reset_settings()
        assert get_settings() is not first
