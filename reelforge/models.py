"""
Data model shared by every ReelForge component.

Records are dataclasses with to_dict()/from_dict() for JSON persistence and
str-valued enums for status fields.  Capability keys are plain strings:
core stages use the capability value ("script"), distribution sub-stages
append the platform ("distribution:youtube").
"""

from __future__ import annotations

import json
import re
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from reelforge.errors import Malformed
from reelforge.retry import BackoffPolicy
from reelforge.utils import _now_iso


# ===================================================================
# CAPABILITIES
# ===================================================================

class Capability(str, Enum):
    """Kinds of work a provider can perform, in pipeline order."""
    STRATEGY = "strategy"
    SCRIPT = "script"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO_CLIP = "video_clip"
    COMPILATION = "compilation"
    DISTRIBUTION = "distribution"


# Core stages, executed strictly in this order before distribution.
CORE_STAGES: List[Capability] = [
    Capability.STRATEGY,
    Capability.SCRIPT,
    Capability.IMAGE,
    Capability.AUDIO,
    Capability.VIDEO_CLIP,
    Capability.COMPILATION,
]


class CapabilityClass(str, Enum):
    """Groups capabilities that share timeout and retry behaviour."""
    TEXT = "text"
    MEDIA = "media"
    DISTRIBUTION = "distribution"


_CAPABILITY_CLASSES: Dict[Capability, CapabilityClass] = {
    Capability.STRATEGY: CapabilityClass.TEXT,
    Capability.SCRIPT: CapabilityClass.TEXT,
    Capability.IMAGE: CapabilityClass.MEDIA,
    Capability.AUDIO: CapabilityClass.MEDIA,
    Capability.VIDEO_CLIP: CapabilityClass.MEDIA,
    Capability.COMPILATION: CapabilityClass.MEDIA,
    Capability.DISTRIBUTION: CapabilityClass.DISTRIBUTION,
}


def capability_class(capability: Capability) -> CapabilityClass:
    return _CAPABILITY_CLASSES[Capability(capability)]


def capability_key(capability: Capability, platform: Optional[str] = None) -> str:
    """Build the registry key for a capability.

    >>> capability_key(Capability.DISTRIBUTION, "youtube")
    'distribution:youtube'
    """
    capability = Capability(capability)
    if capability == Capability.DISTRIBUTION:
        if not platform:
            raise ValueError("distribution keys require a platform")
        return f"{capability.value}:{platform.strip().lower()}"
    if platform:
        raise ValueError(f"'{capability.value}' does not take a platform")
    return capability.value


def parse_capability_key(key: str) -> Tuple[Capability, Optional[str]]:
    """Split a capability key into (Capability, platform or None)."""
    head, _, platform = key.partition(":")
    try:
        capability = Capability(head)
    except ValueError:
        raise ValueError(f"Unknown capability key: {key!r}") from None
    if capability == Capability.DISTRIBUTION and not platform:
        raise ValueError(f"Distribution key needs a platform: {key!r}")
    if capability != Capability.DISTRIBUTION and platform:
        raise ValueError(f"Only distribution keys carry a platform: {key!r}")
    return capability, (platform or None)


# ===================================================================
# REQUESTS
# ===================================================================

@dataclass(frozen=True)
class ContentRequest:
    """One unit of work: a topic or a source URL, never both."""

    topic: Optional[str] = None
    source_url: Optional[str] = None
    user_id: Optional[str] = None
    client_params: Mapping[str, Any] = field(default_factory=dict, hash=False)
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self):
        topic = (self.topic or "").strip() or None
        url = (self.source_url or "").strip() or None
        if (topic is None) == (url is None):
            raise ValueError("ContentRequest needs exactly one of topic or source_url")
        object.__setattr__(self, "topic", topic)
        object.__setattr__(self, "source_url", url)
        object.__setattr__(self, "client_params", MappingProxyType(dict(self.client_params)))

    @property
    def subject(self) -> str:
        """The topic, or the URL when the request is URL-driven."""
        return self.topic or self.source_url or ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "topic": self.topic,
            "source_url": self.source_url,
            "user_id": self.user_id,
            "client_params": dict(self.client_params),
        }


# ===================================================================
# REGISTRY RECORDS
# ===================================================================

@dataclass(frozen=True)
class AdapterDescriptor:
    """Registration of one adapter for one capability key."""
    adapter_id: str
    capability_key: str
    is_default: bool = False
    session_key: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ServicePreference:
    """A user's ordered adapter choice for one capability key."""
    user_id: str
    capability_key: str
    ordered_adapter_ids: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "capability_key": self.capability_key,
            "ordered_adapter_ids": list(self.ordered_adapter_ids),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ServicePreference:
        return cls(
            user_id=str(data["user_id"]),
            capability_key=str(data["capability_key"]),
            ordered_adapter_ids=tuple(data.get("ordered_adapter_ids", ())),
        )


@dataclass
class SessionRecord:
    """Persisted authenticated browser state for a session key.

    *auth_state* is a Playwright storage_state document (cookies + origins).
    """
    session_key: str
    adapter_id: str = ""
    auth_state: Dict[str, Any] = field(default_factory=dict)
    saved_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> SessionRecord:
        known = {f.name for f in cls.__dataclass_fields__.values()}
        return cls(**{k: v for k, v in data.items() if k in known})


# ===================================================================
# STAGE OUTPUTS
# ===================================================================

@dataclass
class Strategy:
    """Content strategy produced by the strategy stage."""
    title: str
    description: str = ""
    hashtags: List[str] = field(default_factory=list)
    visual_prompt: str = ""
    music_prompt: str = ""
    script_segment: str = ""
    caption: str = ""
    audience: str = ""

    # Provider answers use camelCase; both spellings are accepted.
    _ALIASES = {
        "visualPrompt": "visual_prompt",
        "viralMusicPrompt": "music_prompt",
        "musicPrompt": "music_prompt",
        "scriptSegment": "script_segment",
    }

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Strategy:
        normalized: Dict[str, Any] = {}
        for key, value in data.items():
            normalized[cls._ALIASES.get(key, key)] = value
        title = str(normalized.get("title") or "").strip()
        if not title:
            raise Malformed("strategy is missing a title")
        hashtags = normalized.get("hashtags") or []
        if isinstance(hashtags, str):
            hashtags = [h for h in re.split(r"[\s,]+", hashtags) if h]
        return cls(
            title=title,
            description=str(normalized.get("description") or ""),
            hashtags=[str(h) for h in hashtags],
            visual_prompt=str(normalized.get("visual_prompt") or ""),
            music_prompt=str(normalized.get("music_prompt") or ""),
            script_segment=str(normalized.get("script_segment") or ""),
            caption=str(normalized.get("caption") or ""),
            audience=str(normalized.get("audience") or ""),
        )

    @classmethod
    def from_text(cls, text: str) -> Strategy:
        """Parse the first JSON object embedded in a provider's reply."""
        start = text.find("{")
        end = text.rfind("}")
        if start < 0 or end <= start:
            raise Malformed("no JSON object in strategy reply")
        try:
            data = json.loads(text[start:end + 1])
        except json.JSONDecodeError as exc:
            raise Malformed(f"strategy reply is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise Malformed("strategy reply is not a JSON object")
        return cls.from_dict(data)


@dataclass
class Artifact:
    """Reference to a produced asset: a local file, a URL, or inline text."""
    kind: str
    path: Optional[str] = None
    url: Optional[str] = None
    text: Optional[str] = None
    mime_type: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def ref(self) -> str:
        return self.path or self.url or ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Artifact:
        known = {f.name for f in cls.__dataclass_fields__.values()}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class CompilationAssets:
    """Everything the compilation stage stitches together."""
    image: Artifact
    audio: Artifact
    video_clip: Artifact
    script: str = ""
    music_prompt: str = ""
    title: str = ""
    caption: str = ""

    def files(self) -> List[str]:
        return [a.path for a in (self.video_clip, self.image, self.audio) if a.path]


@dataclass
class PlatformPayload:
    """What a distribution adapter posts to its platform."""
    platform: str
    video_path: str
    title: str
    description: str = ""
    caption: str = ""
    tags: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DistributionReceipt:
    """Outcome of one distribution sub-stage."""
    platform: str
    adapter_id: str = ""
    success: bool = False
    post_url: Optional[str] = None
    post_id: Optional[str] = None
    error: Optional[str] = None
    attempted_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> DistributionReceipt:
        known = {f.name for f in cls.__dataclass_fields__.values()}
        return cls(**{k: v for k, v in data.items() if k in known})


# ===================================================================
# RUNS
# ===================================================================

class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class StageResult:
    """Result of executing a single pipeline stage."""
    stage: str
    adapter_id: str = ""
    status: str = StageStatus.PENDING.value
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration_seconds: float = 0.0
    artifact: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    diagnostics: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> StageResult:
        known = {f.name for f in cls.__dataclass_fields__.values()}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class PipelineRun:
    """Complete state for one orchestrator execution.

    A retried job re-runs its operation; each try is stored as its own
    PipelineRun with the next *attempt* number.
    """
    operation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    attempt: int = 1
    content_request_id: str = ""
    user_id: Optional[str] = None
    subject: str = ""
    status: str = RunStatus.PENDING.value
    stage_results: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    strategy: Optional[Dict[str, Any]] = None
    final_artifact_ref: Optional[str] = None
    receipts: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None
    created_at: str = field(default_factory=_now_iso)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    total_duration_seconds: float = 0.0

    @property
    def run_key(self) -> str:
        return f"{self.operation_id}#{self.attempt}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> PipelineRun:
        known = {f.name for f in cls.__dataclass_fields__.values()}
        return cls(**{k: v for k, v in data.items() if k in known})

    def get_stage_result(self, key: str) -> Optional[StageResult]:
        data = self.stage_results.get(key)
        return StageResult.from_dict(data) if data else None

    def set_stage_result(self, result: StageResult) -> None:
        self.stage_results[result.stage] = result.to_dict()

    def stage_order(self) -> List[str]:
        """Stage keys in the order they were started."""
        return list(self.stage_results.keys())

    def summary(self) -> Dict[str, Any]:
        """Compact result handed back to the job caller."""
        return {
            "operation_id": self.operation_id,
            "attempt": self.attempt,
            "status": self.status,
            "strategy": self.strategy,
            "final_artifact_ref": self.final_artifact_ref,
            "receipts": list(self.receipts),
        }


# ===================================================================
# JOBS
# ===================================================================

class JobType(str, Enum):
    CREATE_FROM_TOPIC = "create_from_topic"
    CREATE_FROM_URL = "create_from_url"


class JobStatus(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Job:
    """A durable unit of queued work."""
    job_type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    operation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: str = JobStatus.QUEUED.value
    attempts: int = 0
    max_attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    available_at: str = field(default_factory=_now_iso)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    last_error: Optional[str] = None
    error_history: List[Dict[str, Any]] = field(default_factory=list)
    result: Optional[Dict[str, Any]] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.payload.get("userId")

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["backoff"] = self.backoff.to_dict()
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Job:
        known = {f.name for f in cls.__dataclass_fields__.values()}
        filtered = {k: v for k, v in data.items() if k in known}
        filtered["backoff"] = BackoffPolicy.from_dict(filtered.get("backoff"))
        return cls(**filtered)
