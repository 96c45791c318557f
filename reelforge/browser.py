"""
Browser Session: Playwright-backed provider sessions for ReelForge.

Each adapter drives its provider through a BrowserSession: a fresh Chromium
context restored from the adapter's SessionRecord, with navigation and
element timeouts taken from the adapter's TimeoutPolicy and small human-like
pauses around every click and keystroke.

Also provides:
    - capture_diagnostics(): timestamped screenshot + DOM dump on failure;
      never raises.
    - download_file(): fetch a generated asset with aiohttp, reusing the
      browser context's cookies.
    - PlaywrightTextExtractor / HttpTextExtractor: pull the visible text of
      a source page for URL-driven jobs.

Diagnostics are written as:
    data/diagnostics/ERROR_<adapter>_<operation>_<timestamp>.png
    data/diagnostics/ERROR_<adapter>_<operation>_<timestamp>.html

Usage:
    session = BrowserSession("runway", timeouts=config.timeout_for(Capability.IMAGE))
    await session.start(storage_state=record.auth_state if record else None)
    await session.goto("https://app.runwayml.com")
    await session.fill("textarea", prompt)
    path = await session.download_via_click("button.download", downloads_dir)
    state = await session.storage_state()
    await session.close()
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import random
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import aiohttp
from playwright.async_api import async_playwright

from reelforge.config import TimeoutPolicy
from reelforge.errors import AuthRequired, Malformed, Unavailable
from reelforge.retry import with_retry
from reelforge.utils import _safe_name

logger = logging.getLogger("reelforge.browser")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

LAUNCH_ARGS = ["--disable-blink-features=AutomationControlled", "--no-sandbox"]

# Human-like pauses in seconds: (min, max)
DELAY_BEFORE_ACTION = (0.1, 0.3)
DELAY_AFTER_ACTION = (0.2, 0.5)
DELAY_PER_KEYSTROKE_MS = (50, 150)

DOWNLOAD_CHUNK_SIZE = 64 * 1024


def _ms(seconds: float) -> float:
    return seconds * 1000.0


# ===================================================================
# BROWSER SESSION
# ===================================================================

class BrowserSession:
    """One Chromium browser + context + page for a single adapter instance."""

    def __init__(
        self,
        adapter_id: str,
        timeouts: Optional[TimeoutPolicy] = None,
        headless: bool = True,
        human_delays: bool = True,
    ) -> None:
        self.adapter_id = adapter_id
        self.timeouts = timeouts or TimeoutPolicy()
        self.headless = headless
        self.human_delays = human_delays
        self._playwright = None
        self._browser = None
        self._context = None
        self.page = None

    @property
    def is_started(self) -> bool:
        return self.page is not None

    async def start(self, storage_state: Optional[Dict[str, Any]] = None) -> None:
        """Launch the browser and open a context restored from *storage_state*."""
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(headless=self.headless, args=LAUNCH_ARGS)
        context_options: Dict[str, Any] = {}
        if storage_state:
            context_options["storage_state"] = storage_state
        self._context = await self._browser.new_context(**context_options)
        self._context.set_default_navigation_timeout(_ms(self.timeouts.navigation))
        self._context.set_default_timeout(_ms(self.timeouts.element_wait))
        self.page = await self._context.new_page()
        logger.info(
            "[%s] Browser started (headless=%s, restored_session=%s)",
            self.adapter_id, self.headless, bool(storage_state),
        )

    def _require_page(self):
        if self.page is None:
            raise Unavailable("browser session is not started", adapter_id=self.adapter_id)
        return self.page

    async def _pause(self, bounds: tuple) -> None:
        if self.human_delays:
            await asyncio.sleep(random.uniform(*bounds))

    # -- navigation ---------------------------------------------------------

    async def goto(self, url: str, wait_until: str = "domcontentloaded") -> None:
        page = self._require_page()
        await page.goto(url, wait_until=wait_until, timeout=_ms(self.timeouts.navigation))

    @property
    def url(self) -> str:
        return self.page.url if self.page is not None else ""

    # -- interaction --------------------------------------------------------

    async def wait_for(self, selector: str, timeout: Optional[float] = None, state: str = "visible") -> None:
        page = self._require_page()
        await page.wait_for_selector(
            selector, state=state, timeout=_ms(timeout or self.timeouts.element_wait),
        )

    async def is_visible(self, selector: str, timeout: Optional[float] = None) -> bool:
        """True if *selector* becomes visible within *timeout*."""
        try:
            await self.wait_for(selector, timeout=timeout)
        except Exception:
            return False
        return True

    async def click(self, selector: str) -> None:
        page = self._require_page()
        await self._pause(DELAY_BEFORE_ACTION)
        await page.click(selector)
        await self._pause(DELAY_AFTER_ACTION)

    async def fill(self, selector: str, text: str) -> None:
        page = self._require_page()
        await self._pause(DELAY_BEFORE_ACTION)
        await page.fill(selector, text)
        await self._pause(DELAY_AFTER_ACTION)

    async def type_text(self, selector: str, text: str) -> None:
        """Type character by character, for inputs that ignore fill()."""
        page = self._require_page()
        await self._pause(DELAY_BEFORE_ACTION)
        delay = random.uniform(*DELAY_PER_KEYSTROKE_MS) if self.human_delays else 0
        await page.locator(selector).press_sequentially(text, delay=delay)
        await self._pause(DELAY_AFTER_ACTION)

    async def upload(self, selector: str, files: List[str]) -> None:
        page = self._require_page()
        await page.set_input_files(selector, files)
        await self._pause(DELAY_AFTER_ACTION)

    async def count(self, selector: str) -> int:
        return await self._require_page().locator(selector).count()

    async def text_of_last(self, selector: str) -> str:
        return await self._require_page().locator(selector).last.inner_text()

    async def attribute_of_last(self, selector: str, attribute: str) -> Optional[str]:
        return await self._require_page().locator(selector).last.get_attribute(attribute)

    async def body_text(self) -> str:
        return await self._require_page().inner_text("body")

    # -- downloads ----------------------------------------------------------

    async def download_via_click(self, selector: str, dest_dir: Path) -> Path:
        """Click *selector* and save the browser download it triggers."""
        page = self._require_page()
        dest_dir = Path(dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)
        async with page.expect_download(timeout=_ms(self.timeouts.download_wait)) as info:
            await page.click(selector)
        download = await info.value
        name = download.suggested_filename or f"{uuid.uuid4().hex}.bin"
        path = dest_dir / f"{uuid.uuid4().hex[:8]}_{_safe_name(name)}"
        await download.save_as(str(path))
        logger.info("[%s] Downloaded %s", self.adapter_id, path.name)
        return path

    async def cookies_for(self, url: str) -> Dict[str, str]:
        if self._context is None:
            return {}
        cookies = await self._context.cookies([url])
        return {c["name"]: c["value"] for c in cookies}

    # -- state & diagnostics ------------------------------------------------

    async def storage_state(self) -> Dict[str, Any]:
        """Snapshot the context's cookies and origin storage."""
        if self._context is None:
            return {}
        return await self._context.storage_state()

    async def screenshot(self, path: Path) -> None:
        await self._require_page().screenshot(path=str(path), full_page=True)

    async def content(self) -> str:
        return await self._require_page().content()

    async def close(self) -> None:
        """Release context, browser and driver.  Safe to call twice."""
        context, browser, pw = self._context, self._browser, self._playwright
        self._context = self._browser = self._playwright = None
        self.page = None
        for label, closer in (
            ("context", context.close if context else None),
            ("browser", browser.close if browser else None),
            ("driver", pw.stop if pw else None),
        ):
            if closer is None:
                continue
            try:
                await closer()
            except Exception as exc:
                logger.warning("[%s] Failed to close %s: %s", self.adapter_id, label, exc)
        logger.debug("[%s] Browser closed", self.adapter_id)


# ===================================================================
# DIAGNOSTICS
# ===================================================================

async def capture_diagnostics(
    session: Optional[Any],
    adapter_id: str,
    operation: str,
    directory: Path,
) -> List[str]:
    """Write a full-page screenshot and DOM dump for a failed operation.

    Returns the paths written.  Never raises: a failure here must not mask
    the error being diagnosed.
    """
    written: List[str] = []
    if session is None or not getattr(session, "is_started", False):
        logger.info("[%s] No page available, skipping diagnostics for %s", adapter_id, operation)
        return written
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
    stem = f"ERROR_{_safe_name(adapter_id)}_{_safe_name(operation)}_{stamp}"
    try:
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.error("[%s] Cannot create diagnostics dir %s: %s", adapter_id, directory, exc)
        return written

    shot = directory / f"{stem}.png"
    try:
        await session.screenshot(shot)
        written.append(str(shot))
    except Exception as exc:
        logger.error("[%s] Failed to take screenshot: %s", adapter_id, exc)

    dom = directory / f"{stem}.html"
    try:
        dom.write_text(await session.content(), encoding="utf-8")
        written.append(str(dom))
    except Exception as exc:
        logger.error("[%s] Failed to dump DOM: %s", adapter_id, exc)

    if written:
        logger.info("[%s] Diagnostics for %s: %s", adapter_id, operation, ", ".join(written))
    return written


# ===================================================================
# DOWNLOADS
# ===================================================================

def _filename_for(url: str, content_type: Optional[str]) -> str:
    name = Path(urlparse(url).path).name
    if name and "." in name:
        return f"{uuid.uuid4().hex[:8]}_{_safe_name(name)}"
    ext = mimetypes.guess_extension((content_type or "").split(";")[0].strip()) or ".bin"
    return f"{uuid.uuid4().hex}{ext}"


@with_retry(max_retries=1, base_delay=1.0)
async def download_file(
    url: str,
    dest_dir: Path,
    timeout: float = 60.0,
    cookies: Optional[Dict[str, str]] = None,
) -> Path:
    """Stream *url* into *dest_dir*; returns the written path."""
    dest_dir = Path(dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)
    timeout_cfg = aiohttp.ClientTimeout(total=timeout)
    path: Optional[Path] = None
    try:
        async with aiohttp.ClientSession(timeout=timeout_cfg, cookies=cookies or {}) as http:
            async with http.get(url) as resp:
                if resp.status in (401, 403):
                    raise AuthRequired(f"download refused with HTTP {resp.status}")
                if resp.status >= 400:
                    raise Unavailable(f"download failed with HTTP {resp.status}")
                path = dest_dir / _filename_for(url, resp.headers.get("Content-Type"))
                with open(path, "wb") as fh:
                    async for chunk in resp.content.iter_chunked(DOWNLOAD_CHUNK_SIZE):
                        fh.write(chunk)
    except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
        # No partial files left behind in downloads/.
        if path is not None:
            path.unlink(missing_ok=True)
        raise Unavailable(f"download of {url} failed: {exc}") from exc
    if path.stat().st_size == 0:
        path.unlink(missing_ok=True)
        raise Malformed(f"download of {url} was empty")
    logger.info("Downloaded %s (%d bytes)", path.name, path.stat().st_size)
    return path


# ===================================================================
# TEXT EXTRACTION
# ===================================================================

_TAG_RE = re.compile(r"<(script|style)[^>]*>.*?</\1>|<[^>]+>", re.S | re.I)
_WS_RE = re.compile(r"\s+")


class PlaywrightTextExtractor:
    """Visible text of a page, rendered in a throwaway browser."""

    def __init__(self, headless: bool = True, timeout: float = 60.0) -> None:
        self.headless = headless
        self.timeout = timeout

    async def extract(self, url: str) -> str:
        session = BrowserSession(
            "web_extractor",
            timeouts=TimeoutPolicy(navigation=self.timeout, element_wait=self.timeout),
            headless=self.headless,
            human_delays=False,
        )
        try:
            await session.start()
            await session.goto(url, wait_until="domcontentloaded")
            text = await session.body_text()
        except Exception as exc:
            raise Unavailable(f"could not extract {url}: {exc}", adapter_id="web_extractor") from exc
        finally:
            await session.close()
        return text.strip()


class HttpTextExtractor:
    """Plain HTTP fetch with tags stripped, for pages that need no JavaScript."""

    def __init__(self, timeout: float = 60.0) -> None:
        self.timeout = timeout

    async def extract(self, url: str) -> str:
        timeout_cfg = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout_cfg) as http:
                async with http.get(url) as resp:
                    if resp.status >= 400:
                        raise Unavailable(f"HTTP {resp.status} fetching {url}", adapter_id="web_extractor")
                    html = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise Unavailable(f"could not fetch {url}: {exc}", adapter_id="web_extractor") from exc
        return _WS_RE.sub(" ", _TAG_RE.sub(" ", html)).strip()
