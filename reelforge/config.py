"""
Configuration for ReelForge.

Two layers:

    Settings       process-wide knobs read from environment variables
                   (worker concurrency, job attempts, backoff, rate limit,
                   data directories, headless mode, distribution platforms).
    AdapterConfig  per-provider configuration read once at startup from
                   configs/adapters.json and immutable afterwards.

Data layout under Settings.data_dir:
    sessions/       one JSON SessionRecord per session key
    jobs/jobs.json  durable job queue
    runs/runs.json  pipeline run history
    diagnostics/    failure screenshots and DOM dumps
    downloads/      generated media
    archive/        archived final artifacts
    activity/       daily JSONL activity log
    auth/tokens.json, preferences.json, users.json

Usage:
    from reelforge.config import get_settings, load_adapter_configs

    settings = get_settings()
    configs = load_adapter_configs(settings.adapters_file)
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from reelforge.errors import ConfigError
from reelforge.models import Capability, CapabilityClass, capability_class, parse_capability_key

logger = logging.getLogger("reelforge.config")

# ---------------------------------------------------------------------------
# Paths & Constants
# ---------------------------------------------------------------------------

BASE_DIR = Path(__file__).resolve().parent.parent
DEFAULT_DATA_DIR = BASE_DIR / "data"
DEFAULT_ADAPTERS_FILE = BASE_DIR / "configs" / "adapters.json"

DEFAULT_PLATFORMS = ("youtube", "tiktok", "instagram")
DEFAULT_AUTOMATION_CRON = "*/5 * * * *"
PREMIUM_PLAN = "PREMIUM_24_7"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("true", "1", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %d", name, raw, default)
        return default


# ===================================================================
# SETTINGS
# ===================================================================

@dataclass
class Settings:
    """Process-wide runtime settings."""

    data_dir: Path = DEFAULT_DATA_DIR
    adapters_file: Path = DEFAULT_ADAPTERS_FILE
    worker_concurrency: int = 5
    job_default_attempts: int = 3
    job_backoff_delay: float = 5.0
    job_max_backoff_delay: float = 300.0
    rate_limit_max: int = 10
    rate_limit_duration: float = 60.0
    ai_input_max_chars: int = 80_000
    extraction_timeout: float = 60.0
    text_extractor: str = "browser"
    headless: bool = True
    save_failure_artifacts: bool = True
    platforms: List[str] = field(default_factory=lambda: list(DEFAULT_PLATFORMS))
    automation_cron: str = DEFAULT_AUTOMATION_CRON
    api_port: int = 8765
    auth_disabled: bool = False

    @classmethod
    def from_env(cls) -> Settings:
        platforms = os.getenv("REELFORGE_PLATFORMS", ",".join(DEFAULT_PLATFORMS))
        return cls(
            data_dir=Path(os.getenv("REELFORGE_DATA_DIR", str(DEFAULT_DATA_DIR))),
            adapters_file=Path(os.getenv("REELFORGE_ADAPTERS_FILE", str(DEFAULT_ADAPTERS_FILE))),
            worker_concurrency=_env_int("WORKER_CONCURRENCY", 5),
            job_default_attempts=_env_int("JOB_DEFAULT_ATTEMPTS", 3),
            job_backoff_delay=_env_int("JOB_DEFAULT_BACKOFF_DELAY_MS", 5000) / 1000.0,
            job_max_backoff_delay=_env_int("JOB_MAX_BACKOFF_DELAY_MS", 300_000) / 1000.0,
            rate_limit_max=_env_int("WORKER_RATE_LIMIT_MAX", 10),
            rate_limit_duration=_env_int("WORKER_RATE_LIMIT_DURATION_MS", 60_000) / 1000.0,
            ai_input_max_chars=_env_int("AI_INPUT_MAX_CHARS", 80_000),
            extraction_timeout=_env_int("EXTRACTION_TIMEOUT_MS", 60_000) / 1000.0,
            text_extractor=os.getenv("REELFORGE_TEXT_EXTRACTOR", "browser").strip().lower(),
            headless=_env_bool("PLAYWRIGHT_HEADLESS", True),
            save_failure_artifacts=_env_bool("DEBUG_SAVE_PLAYWRIGHT_FAILURE_ARTIFACTS", True),
            platforms=[p.strip().lower() for p in platforms.split(",") if p.strip()],
            automation_cron=os.getenv("AUTOMATION_CRON", DEFAULT_AUTOMATION_CRON),
            api_port=_env_int("REELFORGE_API_PORT", 8765),
            auth_disabled=_env_bool("REELFORGE_AUTH_DISABLED", False),
        )

    # -- derived paths ------------------------------------------------------

    @property
    def sessions_dir(self) -> Path:
        return self.data_dir / "sessions"

    @property
    def jobs_file(self) -> Path:
        return self.data_dir / "jobs" / "jobs.json"

    @property
    def runs_file(self) -> Path:
        return self.data_dir / "runs" / "runs.json"

    @property
    def diagnostics_dir(self) -> Path:
        return self.data_dir / "diagnostics"

    @property
    def downloads_dir(self) -> Path:
        return self.data_dir / "downloads"

    @property
    def archive_dir(self) -> Path:
        return self.data_dir / "archive"

    @property
    def activity_dir(self) -> Path:
        return self.data_dir / "activity"

    @property
    def tokens_file(self) -> Path:
        return self.data_dir / "auth" / "tokens.json"

    @property
    def preferences_file(self) -> Path:
        return self.data_dir / "preferences.json"

    @property
    def users_file(self) -> Path:
        return self.data_dir / "users.json"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create the process-wide Settings from the environment."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reset_settings() -> None:
    global _settings
    _settings = None


# ===================================================================
# ADAPTER CONFIG
# ===================================================================

@dataclass(frozen=True)
class TimeoutPolicy:
    """Timeouts in seconds for one capability class of one adapter."""
    navigation: float = 60.0
    element_wait: float = 30.0
    download_wait: float = 60.0
    call: float = 180.0
    lease_wait: float = 300.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base: Optional[TimeoutPolicy] = None) -> TimeoutPolicy:
        base = base or cls()
        values = {}
        for name in ("navigation", "element_wait", "download_wait", "call", "lease_wait"):
            raw = data.get(name, getattr(base, name))
            try:
                value = float(raw)
            except (TypeError, ValueError):
                raise ConfigError(f"timeout '{name}' must be a number, got {raw!r}") from None
            if value <= 0:
                raise ConfigError(f"timeout '{name}' must be positive, got {value}")
            values[name] = value
        return cls(**values)

    def to_dict(self) -> Dict[str, float]:
        return {
            "navigation": self.navigation,
            "element_wait": self.element_wait,
            "download_wait": self.download_wait,
            "call": self.call,
            "lease_wait": self.lease_wait,
        }


# Media calls include video generation, which alone can run three minutes.
DEFAULT_TIMEOUTS: Dict[CapabilityClass, TimeoutPolicy] = {
    CapabilityClass.TEXT: TimeoutPolicy(navigation=60.0, element_wait=30.0, download_wait=60.0, call=180.0),
    CapabilityClass.MEDIA: TimeoutPolicy(navigation=60.0, element_wait=30.0, download_wait=60.0, call=300.0),
    CapabilityClass.DISTRIBUTION: TimeoutPolicy(navigation=60.0, element_wait=30.0, download_wait=60.0, call=300.0),
}


@dataclass(frozen=True)
class AdapterConfig:
    """Static configuration for one provider adapter."""

    adapter_id: str
    kind: str = "form_flow"
    base_url: str = ""
    session_key: str = ""
    capabilities: tuple = ()
    default_for: tuple = ()
    timeouts: Dict[str, TimeoutPolicy] = field(default_factory=dict, hash=False)
    options: Dict[str, Any] = field(default_factory=dict, hash=False)

    def timeout_for(self, capability: Capability) -> TimeoutPolicy:
        cls = capability_class(capability)
        return self.timeouts.get(cls.value, DEFAULT_TIMEOUTS[cls])

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> AdapterConfig:
        adapter_id = str(data.get("adapter_id") or "").strip()
        if not adapter_id:
            raise ConfigError("adapter config is missing 'adapter_id'")
        capabilities = tuple(data.get("capabilities") or ())
        if not capabilities:
            raise ConfigError(f"adapter '{adapter_id}' declares no capabilities")
        for key in capabilities:
            try:
                parse_capability_key(key)
            except ValueError as exc:
                raise ConfigError(f"adapter '{adapter_id}': {exc}") from None
        default_for = tuple(data.get("default_for") or ())
        unknown = set(default_for) - set(capabilities)
        if unknown:
            raise ConfigError(
                f"adapter '{adapter_id}' is default for undeclared keys: {sorted(unknown)}"
            )
        timeouts: Dict[str, TimeoutPolicy] = {}
        for cls_name, raw in (data.get("timeouts") or {}).items():
            try:
                cap_cls = CapabilityClass(cls_name)
            except ValueError:
                raise ConfigError(f"adapter '{adapter_id}': unknown capability class '{cls_name}'") from None
            timeouts[cap_cls.value] = TimeoutPolicy.from_dict(raw or {}, DEFAULT_TIMEOUTS[cap_cls])
        return cls(
            adapter_id=adapter_id,
            kind=str(data.get("kind") or "form_flow"),
            base_url=str(data.get("base_url") or ""),
            session_key=str(data.get("session_key") or f"{adapter_id}_session"),
            capabilities=capabilities,
            default_for=default_for,
            timeouts=timeouts,
            options=dict(data.get("options") or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "adapter_id": self.adapter_id,
            "kind": self.kind,
            "base_url": self.base_url,
            "session_key": self.session_key,
            "capabilities": list(self.capabilities),
            "default_for": list(self.default_for),
            "timeouts": {k: v.to_dict() for k, v in self.timeouts.items()},
            "options": dict(self.options),
        }


def load_adapter_configs(path: Optional[Path] = None) -> List[AdapterConfig]:
    """Read and validate the adapter configuration file.

    Accepts either a JSON list or an object with an "adapters" list.
    A missing file yields an empty list; a malformed one raises ConfigError.
    """
    path = Path(path or get_settings().adapters_file)
    if not path.exists():
        logger.warning("Adapter config %s not found; no adapters registered", path)
        return []
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigError(f"{path} is not valid JSON: {exc}") from exc
    entries = raw.get("adapters", []) if isinstance(raw, dict) else raw
    if not isinstance(entries, list):
        raise ConfigError(f"{path}: expected a list of adapter configs")
    configs = [AdapterConfig.from_dict(entry) for entry in entries]
    ids = [c.adapter_id for c in configs]
    dupes = {i for i in ids if ids.count(i) > 1}
    if dupes:
        raise ConfigError(f"{path}: duplicate adapter ids {sorted(dupes)}")
    logger.info("Loaded %d adapter config(s) from %s", len(configs), path)
    return configs
