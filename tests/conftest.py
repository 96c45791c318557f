"""
Shared fixtures for the ReelForge test suite.

Provides a scripted in-memory browser session, a stub adapter whose
behaviour is driven from its AdapterConfig options, and a registry wired
the same way the runtime wires it, so all tests run WITHOUT a browser or
any external service.
"""

import asyncio
import json
import random
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from reelforge import retry
from reelforge.adapter import Adapter
from reelforge.collaborators import InMemoryPreferenceStore, LocalArchive
from reelforge.config import AdapterConfig, Settings
from reelforge.models import (
    Artifact,
    Capability,
    CompilationAssets,
    DistributionReceipt,
    PlatformPayload,
    Strategy,
)
from reelforge.orchestrator import PipelineOrchestrator, RunStore
from reelforge.registry import build_registry
from reelforge.runtime import adapter_factory_builder
from reelforge.session_store import MemorySessionStore, SessionLeases


# ---------------------------------------------------------------------------
# Fake browser session
# ---------------------------------------------------------------------------

class FakeSession:
    """Stands in for BrowserSession; records what the adapter did with it."""

    def __init__(self, adapter_id: str, timeouts=None, headless: bool = True) -> None:
        self.adapter_id = adapter_id
        self.timeouts = timeouts
        self.headless = headless
        self.started = False
        self.closed = False
        self.restored_state: Optional[Dict[str, Any]] = None
        self.visited: List[str] = []
        self.url = ""

    @property
    def is_started(self) -> bool:
        return self.started and not self.closed

    async def start(self, storage_state=None) -> None:
        self.started = True
        self.restored_state = storage_state

    async def goto(self, url: str, wait_until: str = "domcontentloaded") -> None:
        self.visited.append(url)
        self.url = url

    async def screenshot(self, path: Path) -> None:
        Path(path).write_bytes(b"\x89PNG fake")

    async def content(self) -> str:
        return f"<html><body>{self.adapter_id}</body></html>"

    async def storage_state(self) -> Dict[str, Any]:
        return {"cookies": [{"name": "sid", "value": self.adapter_id}], "origins": []}

    async def close(self) -> None:
        self.closed = True


class SessionFactory:
    """Callable session factory that keeps every session it built."""

    def __init__(self, session_cls=FakeSession) -> None:
        self.session_cls = session_cls
        self.sessions: List[Any] = []

    def __call__(self, adapter_id, timeouts, headless):
        session = self.session_cls(adapter_id, timeouts, headless)
        self.sessions.append(session)
        return session

    def for_adapter(self, adapter_id: str) -> List[Any]:
        return [s for s in self.sessions if s.adapter_id == adapter_id]


# ---------------------------------------------------------------------------
# Stub adapter
# ---------------------------------------------------------------------------

class StubAdapter(Adapter):
    """Implements every capability with canned results.

    ``config.options`` controls behaviour:
        calls   shared list; (adapter_id, capability key, args) appended per call
        fail    {capability key: exception} raised on every call
        delay   {capability key: seconds} slept before answering
    """

    capabilities = frozenset(Capability)

    async def _behave(self, key: str, *args: Any) -> None:
        options = self.config.options
        calls = options.get("calls")
        if calls is not None:
            calls.append((self.adapter_id, key, args))
        delay = (options.get("delay") or {}).get(key)
        if delay:
            await asyncio.sleep(delay)
        exc = (options.get("fail") or {}).get(key)
        if exc is not None:
            raise exc

    def _media(self, kind: str, ext: str) -> Artifact:
        self.downloads_dir.mkdir(parents=True, exist_ok=True)
        path = self.downloads_dir / f"{self.adapter_id}-{kind}{ext}"
        path.write_bytes(f"{kind} from {self.adapter_id}".encode())
        return Artifact(kind=kind, path=str(path), metadata={"adapter_id": self.adapter_id})

    async def generate_strategy(self, topic, extracted_text=None, elements=None) -> Strategy:
        await self._behave("strategy", topic, extracted_text, elements)
        return Strategy(
            title=f"Video about {topic}",
            description=f"A short look at {topic}.",
            hashtags=["#viral", "#shorts"],
            visual_prompt=f"cinematic {topic}",
            music_prompt="epic synth",
            script_segment=f"Ever wondered about {topic}?",
            caption=f"All about {topic}",
        )

    async def generate_script(self, strategy: Strategy) -> str:
        await self._behave("script", strategy)
        return f"Script for {strategy.title}"

    async def generate_image(self, prompt: str, aspect_ratio: Optional[str] = None) -> Artifact:
        await self._behave("image", prompt, aspect_ratio)
        return self._media("image", ".png")

    async def generate_audio(self, text_segment: str) -> Artifact:
        await self._behave("audio", text_segment)
        return self._media("audio", ".mp3")

    async def generate_video_clip(self, strategy: Strategy) -> Artifact:
        await self._behave("video_clip", strategy)
        return self._media("video", ".mp4")

    async def compile(self, assets: CompilationAssets) -> Artifact:
        await self._behave("compilation", assets)
        return self._media("video", "-final.mp4")

    async def publish(self, payload: PlatformPayload) -> DistributionReceipt:
        key = f"distribution:{payload.platform}"
        await self._behave(key, payload)
        return DistributionReceipt(
            platform=payload.platform,
            adapter_id=self.adapter_id,
            success=True,
            post_url=f"https://{payload.platform}.example/p/{self.adapter_id}",
        )


def stub_class_for(kind: str):
    return StubAdapter


# Every core capability plus two platforms, across five providers.
DEFAULT_SPECS: List[Dict[str, Any]] = [
    {"adapter_id": "writer", "capabilities": ["strategy", "script"], "default_for": ["strategy", "script"]},
    {"adapter_id": "artist", "capabilities": ["image", "video_clip"], "default_for": ["image", "video_clip"]},
    {"adapter_id": "voice", "capabilities": ["audio"], "default_for": ["audio"]},
    {"adapter_id": "editor", "capabilities": ["compilation"], "default_for": ["compilation"]},
    {"adapter_id": "yt", "capabilities": ["distribution:youtube"]},
    {"adapter_id": "tt", "capabilities": ["distribution:tiktok"]},
]


def make_configs(specs: List[Dict[str, Any]], calls: Optional[list] = None,
                 fail: Optional[Dict[str, Dict[str, BaseException]]] = None,
                 delay: Optional[Dict[str, Dict[str, float]]] = None) -> List[AdapterConfig]:
    """AdapterConfigs for StubAdapter; *fail*/*delay* are keyed by adapter id."""
    configs = []
    for spec in specs:
        data = dict(spec)
        options = dict(data.get("options") or {})
        options["calls"] = calls
        options["fail"] = (fail or {}).get(spec["adapter_id"], {})
        options["delay"] = (delay or {}).get(spec["adapter_id"], {})
        data["options"] = options
        configs.append(AdapterConfig.from_dict(data))
    return configs


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _fast_text_retries(monkeypatch):
    """Keep the text-class retry but without real backoff sleeps."""
    monkeypatch.setitem(
        retry.CAPABILITY_RETRY_POLICIES, "text",
        retry.RetryPolicy(max_retries=1, base_delay=0.0, jitter=False, name="text"),
    )


@pytest.fixture
def settings(tmp_path):
    return Settings(
        data_dir=tmp_path / "data",
        adapters_file=tmp_path / "adapters.json",
        platforms=["youtube", "tiktok"],
        job_backoff_delay=0.0,
    )


@pytest.fixture
def session_store():
    return MemorySessionStore()


@pytest.fixture
def leases():
    return SessionLeases()


@pytest.fixture
def session_factory():
    return SessionFactory()


@pytest.fixture
def preferences():
    return InMemoryPreferenceStore()


@pytest.fixture
def calls():
    return []


@pytest.fixture
def registry_builder(settings, session_store, leases, session_factory, preferences, calls):
    """build(specs=None, fail=None, delay=None) -> ServiceRegistry of StubAdapters."""

    def build(specs=None, fail=None, delay=None):
        configs = make_configs(specs or DEFAULT_SPECS, calls=calls, fail=fail, delay=delay)
        return build_registry(
            configs,
            adapter_factory_builder(settings, session_store, leases, session_factory),
            stub_class_for,
            preferences=preferences,
        )

    return build


@pytest.fixture
def registry(registry_builder):
    return registry_builder()


@pytest.fixture
def orchestrator_builder(settings):
    """build(registry, platforms=None) -> PipelineOrchestrator on temp storage."""

    def build(registry, platforms=None):
        return PipelineOrchestrator(
            registry,
            LocalArchive(settings.archive_dir),
            platforms=platforms if platforms is not None else settings.platforms,
            run_store=RunStore(settings.runs_file),
            rng=random.Random(7),
        )

    return build


@pytest.fixture
def orchestrator(orchestrator_builder, registry):
    return orchestrator_builder(registry)


# ---------------------------------------------------------------------------
# Websocket double
# ---------------------------------------------------------------------------

class FakeConnection:
    """Anything with ``async send_text``; optionally dead."""

    def __init__(self, dead: bool = False) -> None:
        self.dead = dead
        self.messages: List[str] = []

    async def send_text(self, message: str) -> None:
        if self.dead:
            raise ConnectionResetError("socket closed")
        self.messages.append(message)

    def events(self) -> List[Dict[str, Any]]:
        return [json.loads(m) for m in self.messages]

    def types(self) -> List[str]:
        return [e["type"] for e in self.events()]


@pytest.fixture
def connection():
    return FakeConnection()
