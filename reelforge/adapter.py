"""
Adapter: the uniform capability interface over one external provider.

An adapter class declares the capabilities it implements in its
``capabilities`` class attribute; the ServiceRegistry checks that the
matching methods are really overridden when the adapter is registered.

Lifecycle:
    open()   take the session-key lease, restore the SessionRecord, start a
             fresh browser context and land on the provider's base URL.
    invoke() run one capability under its call timeout and retry policy;
             every failure becomes Unavailable, AuthRequired or Malformed,
             with diagnostics captured before it propagates.
    close()  snapshot and persist the session, release the browser and the
             lease.  Runs on every path, including after errors.

Usage:
    adapter = registry.create("runway")
    async with adapter:
        image = await adapter.invoke("image", strategy.visual_prompt)
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, ClassVar, Dict, FrozenSet, Optional

from reelforge.browser import BrowserSession, capture_diagnostics
from reelforge.config import AdapterConfig, TimeoutPolicy
from reelforge.errors import AdapterError, Unavailable, to_adapter_error
from reelforge.models import (
    Artifact,
    Capability,
    CompilationAssets,
    DistributionReceipt,
    PlatformPayload,
    SessionRecord,
    Strategy,
    capability_class,
    parse_capability_key,
)
from reelforge.retry import policy_for
from reelforge.session_store import SessionLeases, SessionStore

logger = logging.getLogger("reelforge.adapter")

# Capability -> method name on Adapter
CAPABILITY_METHODS: Dict[Capability, str] = {
    Capability.STRATEGY: "generate_strategy",
    Capability.SCRIPT: "generate_script",
    Capability.IMAGE: "generate_image",
    Capability.AUDIO: "generate_audio",
    Capability.VIDEO_CLIP: "generate_video_clip",
    Capability.COMPILATION: "compile",
    Capability.DISTRIBUTION: "publish",
}

SessionFactory = Callable[[str, TimeoutPolicy, bool], Any]


def _default_session_factory(adapter_id: str, timeouts: TimeoutPolicy, headless: bool) -> BrowserSession:
    return BrowserSession(adapter_id, timeouts=timeouts, headless=headless)


class Adapter:
    """Base class for provider adapters."""

    capabilities: ClassVar[FrozenSet[Capability]] = frozenset()

    def __init__(
        self,
        config: AdapterConfig,
        session_store: SessionStore,
        leases: SessionLeases,
        session_factory: Optional[SessionFactory] = None,
        diagnostics_dir: Optional[Path] = None,
        downloads_dir: Optional[Path] = None,
        headless: bool = True,
        save_failure_artifacts: bool = True,
    ) -> None:
        self.config = config
        self._store = session_store
        self._leases = leases
        self._session_factory = session_factory or _default_session_factory
        self.diagnostics_dir = Path(diagnostics_dir or "diagnostics")
        self.downloads_dir = Path(downloads_dir or "downloads")
        self.headless = headless
        self.save_failure_artifacts = save_failure_artifacts
        self.session: Optional[Any] = None
        self._leased = False

    # -- identity -----------------------------------------------------------

    @property
    def adapter_id(self) -> str:
        return self.config.adapter_id

    @property
    def session_key(self) -> str:
        return self.config.session_key

    @property
    def is_open(self) -> bool:
        return self.session is not None

    @classmethod
    def implemented_capabilities(cls) -> FrozenSet[Capability]:
        """Capabilities whose method this class actually overrides."""
        found = set()
        for cap, name in CAPABILITY_METHODS.items():
            if getattr(cls, name, None) is not getattr(Adapter, name):
                found.add(cap)
        return frozenset(found)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.adapter_id!r}, open={self.is_open})"

    # -- lifecycle ----------------------------------------------------------

    async def open(self) -> None:
        """Restore the stored session into a fresh browser context.

        Waits at most ``lease_wait`` seconds for another holder of the same
        session key; running out of time raises Unavailable.
        """
        if self.is_open:
            return
        primary, _ = parse_capability_key(self.config.capabilities[0])
        timeouts = self.config.timeout_for(primary)
        try:
            await self._leases.acquire(self.session_key, holder=self.adapter_id, timeout=timeouts.lease_wait)
        except asyncio.TimeoutError:
            raise Unavailable(
                f"session '{self.session_key}' still held by "
                f"{self._leases.holder(self.session_key) or '?'} after {timeouts.lease_wait:g}s",
                adapter_id=self.adapter_id, capability="open",
            ) from None
        self._leased = True
        session = None
        record = None
        try:
            record = self._store.load(self.session_key)
            session = self._session_factory(self.adapter_id, timeouts, self.headless)
            await session.start(storage_state=record.auth_state if record else None)
            self.session = session
            if self.config.base_url:
                await session.goto(self.config.base_url)
            await self.on_open()
        except Exception as exc:
            err = to_adapter_error(exc, self.adapter_id, "open")
            if session is not None and self.save_failure_artifacts and not err.diagnostics:
                err.diagnostics = await capture_diagnostics(session, self.adapter_id, "open", self.diagnostics_dir)
            self.session = None
            if session is not None:
                await self._close_session(session)
            self._release()
            logger.error("[%s] open failed: %s", self.adapter_id, err)
            if err is exc:
                raise
            raise err from exc
        logger.info("[%s] Opened (session=%s, restored=%s)", self.adapter_id, self.session_key, record is not None)

    async def on_open(self) -> None:
        """Hook run after landing on base_url; raise AuthRequired if logged out."""

    async def close(self) -> None:
        """Persist the session and release resources.  Never raises."""
        session, self.session = self.session, None
        if session is not None:
            try:
                state = await session.storage_state()
                if state:
                    self._store.save(SessionRecord(
                        session_key=self.session_key,
                        adapter_id=self.adapter_id,
                        auth_state=state,
                    ))
            except Exception as exc:
                logger.error("[%s] Failed to save session '%s': %s", self.adapter_id, self.session_key, exc)
            await self._close_session(session)
        self._release()

    async def _close_session(self, session: Any) -> None:
        try:
            await session.close()
        except Exception as exc:
            logger.warning("[%s] Browser close failed: %s", self.adapter_id, exc)

    def _release(self) -> None:
        if self._leased:
            self._leased = False
            self._leases.release(self.session_key)

    async def __aenter__(self) -> Adapter:
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # -- invocation ---------------------------------------------------------

    def supports(self, key: str) -> bool:
        return key in self.config.capabilities

    async def invoke(self, key: str, *args: Any, **kwargs: Any) -> Any:
        """Run the capability behind *key* with timeout, retry and diagnostics."""
        capability, _platform = parse_capability_key(key)
        if not self.supports(key):
            raise Unavailable(f"adapter does not serve '{key}'", adapter_id=self.adapter_id, capability=key)
        if not self.is_open:
            raise Unavailable("adapter is not open", adapter_id=self.adapter_id, capability=key)
        method = getattr(self, CAPABILITY_METHODS[capability])
        policy = policy_for(capability_class(capability))
        return await policy.execute(self._invoke_once, key, capability, method, *args, **kwargs)

    async def _invoke_once(
        self,
        key: str,
        capability: Capability,
        method: Callable,
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        timeout = self.config.timeout_for(capability).call
        try:
            return await asyncio.wait_for(method(*args, **kwargs), timeout=timeout)
        except asyncio.TimeoutError as exc:
            err: AdapterError = Unavailable(
                f"timed out after {timeout:.0f}s", adapter_id=self.adapter_id, capability=key,
            )
            cause: BaseException = exc
        except Exception as exc:
            err = to_adapter_error(exc, self.adapter_id, key)
            cause = exc
        if self.save_failure_artifacts and not err.diagnostics:
            err.diagnostics = await capture_diagnostics(self.session, self.adapter_id, key, self.diagnostics_dir)
        logger.warning("[%s] %s failed (%s): %s", self.adapter_id, key, err.kind, err)
        if err is cause:
            raise err
        raise err from cause

    # -- capabilities -------------------------------------------------------

    async def generate_strategy(
        self,
        topic: str,
        extracted_text: Optional[str] = None,
        elements: Optional[Dict[str, Any]] = None,
    ) -> Strategy:
        raise NotImplementedError

    async def generate_script(self, strategy: Strategy) -> str:
        raise NotImplementedError

    async def generate_image(self, prompt: str, aspect_ratio: Optional[str] = None) -> Artifact:
        raise NotImplementedError

    async def generate_audio(self, text_segment: str) -> Artifact:
        raise NotImplementedError

    async def generate_video_clip(self, strategy: Strategy) -> Artifact:
        raise NotImplementedError

    async def compile(self, assets: CompilationAssets) -> Artifact:
        raise NotImplementedError

    async def publish(self, payload: PlatformPayload) -> DistributionReceipt:
        raise NotImplementedError

    async def fetch_usage(self) -> Dict[str, Any]:
        """Provider-reported usage/quota, when the provider exposes one."""
        return {"adapter_id": self.adapter_id, "supported": False}
