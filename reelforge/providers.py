"""
Config-driven provider adapters.

Most providers follow the same page choreography: open a page, type a
prompt, press a button, wait for the answer, then read text or fetch the
generated file.  FormFlowAdapter runs that choreography from selectors in
configs/adapters.json, so a provider's UI change is a config edit rather
than a code change.

Flow options per capability key (``options.flows[<key>]``):

    url          page to open first (optional; defaults to the current page)
    prompt       selector of the prompt input
    type         true to type keystroke by keystroke instead of fill()
    submit       selector of the button that starts generation
    ready        selector that appears when generation is done
                 (defaults to ``output``)
    output       selector of the result element (last match wins)
    output_attr  attribute holding the media URL (default "src")
    download     selector that triggers a browser download of the result
    upload       selector of a file input (compilation, distribution)
    fields       {"title"|"description"|"caption"|"tags": selector}
    result_link  selector whose href is the published post URL

Adapter-level options:

    logged_in    selector only present when authenticated; checked on open()
    usage        {"url": ..., "output": selector} for fetch_usage()
"""

from __future__ import annotations

import logging
import mimetypes
from typing import Any, Dict, List, Optional, Type
from urllib.parse import urljoin

from reelforge.adapter import Adapter
from reelforge.browser import download_file
from reelforge.errors import AuthRequired, ConfigError, Malformed
from reelforge.models import (
    Artifact,
    Capability,
    CompilationAssets,
    DistributionReceipt,
    PlatformPayload,
    Strategy,
    capability_key,
    parse_capability_key,
)
from reelforge.prompts import (
    compilation_prompt,
    platform_fields,
    script_prompt,
    strategy_prompt,
    video_prompt,
)
from reelforge.utils import _now_iso, _truncate

logger = logging.getLogger("reelforge.providers")

# Required selectors per capability
_REQUIRED: Dict[Capability, tuple] = {
    Capability.STRATEGY: ("prompt", "submit", "output"),
    Capability.SCRIPT: ("prompt", "submit", "output"),
    Capability.IMAGE: ("prompt", "submit"),
    Capability.AUDIO: ("prompt", "submit"),
    Capability.VIDEO_CLIP: ("prompt", "submit"),
    Capability.COMPILATION: ("upload", "submit"),
    Capability.DISTRIBUTION: ("upload", "submit"),
}

_MEDIA_KIND = {
    Capability.IMAGE: "image",
    Capability.AUDIO: "audio",
    Capability.VIDEO_CLIP: "video",
    Capability.COMPILATION: "video",
}


class FormFlowAdapter(Adapter):
    """Drives any provider whose UI is prompt -> button -> result."""

    capabilities = frozenset(Capability)

    def __init__(self, config, *args: Any, **kwargs: Any) -> None:
        super().__init__(config, *args, **kwargs)
        self._flows: Dict[str, Dict[str, Any]] = dict(config.options.get("flows", {}))
        for key in config.capabilities:
            capability, _ = parse_capability_key(key)
            flow = self._flows.get(key)
            if flow is None:
                raise ConfigError(f"adapter '{config.adapter_id}' has no flow for '{key}'")
            missing = [name for name in _REQUIRED[capability] if not flow.get(name)]
            if capability in _MEDIA_KIND and not (flow.get("download") or flow.get("output")):
                missing.append("download|output")
            if missing:
                raise ConfigError(
                    f"adapter '{config.adapter_id}' flow '{key}' is missing {', '.join(missing)}"
                )

    # -- lifecycle ----------------------------------------------------------

    async def on_open(self) -> None:
        selector = self.config.options.get("logged_in")
        if not selector:
            return
        if not await self.session.is_visible(selector):
            raise AuthRequired(
                f"session '{self.session_key}' is not logged in",
                adapter_id=self.adapter_id,
                capability="open",
            )

    # -- flow steps ---------------------------------------------------------

    async def _enter_prompt(self, flow: Dict[str, Any], prompt: str) -> None:
        await self.session.wait_for(flow["prompt"])
        if flow.get("type"):
            await self.session.type_text(flow["prompt"], prompt)
        else:
            await self.session.fill(flow["prompt"], prompt)

    async def _start(self, flow: Dict[str, Any], prompt: Optional[str] = None, files: Optional[List[str]] = None) -> None:
        if flow.get("url"):
            await self.session.goto(flow["url"])
        if files and flow.get("upload"):
            await self.session.upload(flow["upload"], files)
        if prompt and flow.get("prompt"):
            await self._enter_prompt(flow, prompt)
        await self.session.click(flow["submit"])

    async def _await_ready(self, flow: Dict[str, Any], capability: Capability) -> None:
        ready = flow.get("ready") or flow.get("output")
        if ready:
            await self.session.wait_for(ready, timeout=self.config.timeout_for(capability).call)

    async def _run_text_flow(self, capability: Capability, prompt: str) -> str:
        flow = self._flows[capability.value]
        await self._start(flow, prompt=prompt)
        await self._await_ready(flow, capability)
        text = (await self.session.text_of_last(flow["output"]) or "").strip()
        if not text:
            raise Malformed("provider returned an empty response", adapter_id=self.adapter_id,
                            capability=capability.value)
        logger.info("[%s] %s reply: %d chars", self.adapter_id, capability.value, len(text))
        return text

    async def _run_media_flow(
        self,
        capability: Capability,
        prompt: Optional[str] = None,
        files: Optional[List[str]] = None,
    ) -> Artifact:
        flow = self._flows[capability.value]
        timeouts = self.config.timeout_for(capability)
        await self._start(flow, prompt=prompt, files=files)
        await self._await_ready(flow, capability)
        source_url = None
        if flow.get("download"):
            path = await self.session.download_via_click(flow["download"], self.downloads_dir)
        else:
            src = await self.session.attribute_of_last(flow["output"], flow.get("output_attr", "src"))
            if not src or src.startswith("blob:"):
                raise Malformed(f"no downloadable media URL (got {src!r})", adapter_id=self.adapter_id,
                                capability=capability.value)
            source_url = urljoin(self.session.url, src)
            cookies = await self.session.cookies_for(source_url)
            path = await download_file(source_url, self.downloads_dir, timeout=timeouts.download_wait,
                                       cookies=cookies)
        return Artifact(
            kind=_MEDIA_KIND[capability],
            path=str(path),
            url=source_url,
            mime_type=mimetypes.guess_type(str(path))[0],
            metadata={"adapter_id": self.adapter_id, "prompt": _truncate(prompt or "", 200)},
        )

    # -- capabilities -------------------------------------------------------

    async def generate_strategy(
        self,
        topic: str,
        extracted_text: Optional[str] = None,
        elements: Optional[Dict[str, Any]] = None,
    ) -> Strategy:
        prompt = strategy_prompt(topic, elements=elements, extracted_text=extracted_text)
        text = await self._run_text_flow(Capability.STRATEGY, prompt)
        return Strategy.from_text(text)

    async def generate_script(self, strategy: Strategy) -> str:
        return await self._run_text_flow(Capability.SCRIPT, script_prompt(strategy))

    async def generate_image(self, prompt: str, aspect_ratio: Optional[str] = None) -> Artifact:
        if aspect_ratio:
            prompt = f"{prompt} --ar {aspect_ratio}"
        return await self._run_media_flow(Capability.IMAGE, prompt=prompt)

    async def generate_audio(self, text_segment: str) -> Artifact:
        return await self._run_media_flow(Capability.AUDIO, prompt=text_segment)

    async def generate_video_clip(self, strategy: Strategy) -> Artifact:
        return await self._run_media_flow(Capability.VIDEO_CLIP, prompt=video_prompt(strategy))

    async def compile(self, assets: CompilationAssets) -> Artifact:
        files = assets.files()
        if not files:
            raise Malformed("nothing to compile", adapter_id=self.adapter_id, capability="compilation")
        return await self._run_media_flow(Capability.COMPILATION, prompt=compilation_prompt(assets), files=files)

    async def publish(self, payload: PlatformPayload) -> DistributionReceipt:
        key = capability_key(Capability.DISTRIBUTION, payload.platform)
        flow = self._flows[key]
        if flow.get("url"):
            await self.session.goto(flow["url"])
        await self.session.upload(flow["upload"], [payload.video_path])
        values = platform_fields(payload)
        for name, selector in (flow.get("fields") or {}).items():
            if values.get(name):
                await self.session.fill(selector, values[name])
        await self.session.click(flow["submit"])
        await self._await_ready(flow, Capability.DISTRIBUTION)
        post_url = None
        if flow.get("result_link"):
            post_url = await self.session.attribute_of_last(flow["result_link"], "href")
        logger.info("[%s] Published to %s: %s", self.adapter_id, payload.platform, post_url or "(no link)")
        return DistributionReceipt(
            platform=payload.platform,
            adapter_id=self.adapter_id,
            success=True,
            post_url=post_url,
        )

    async def fetch_usage(self) -> Dict[str, Any]:
        usage = self.config.options.get("usage")
        if not usage or not self.is_open:
            return await super().fetch_usage()
        if usage.get("url"):
            await self.session.goto(usage["url"])
        await self.session.wait_for(usage["output"])
        text = (await self.session.text_of_last(usage["output"])).strip()
        return {
            "adapter_id": self.adapter_id,
            "supported": True,
            "usage_text": text,
            "fetched_at": _now_iso(),
        }


# ===================================================================
# KINDS
# ===================================================================

ADAPTER_KINDS: Dict[str, Type[Adapter]] = {
    "form_flow": FormFlowAdapter,
}


def adapter_class_for(kind: str) -> Type[Adapter]:
    try:
        return ADAPTER_KINDS[kind]
    except KeyError:
        raise ConfigError(f"unknown adapter kind '{kind}' (known: {sorted(ADAPTER_KINDS)})") from None
