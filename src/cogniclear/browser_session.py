# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Playwright browser session used by the CLI host.

Launches Chromium, opens one page, and loads a URL with a short DOM
settle so late-rendered buttons are present before extraction.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from contextlib import suppress
from dataclasses import dataclass

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright

from .errors import BrowserError

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)

_AUTO_INSTALL_TIMEOUT = 300  # seconds


@dataclass
class BrowserConfig:
    """Browser launch configuration."""

    headless: bool = True
    viewport_width: int = 1280
    viewport_height: int = 800
    user_agent: str = DEFAULT_USER_AGENT
    timeout_ms: int = 30000
    settle_quiet_ms: int = 300  # DOM mutation quiet period (ms)
    settle_max_ms: int = 3000


_DOM_SETTLE_JS = """([quietMs, maxMs]) => new Promise(resolve => {
  let mutations = 0;
  let quietTimer = null;
  const start = performance.now();
  const finish = (reason) => {
    observer.disconnect();
    clearTimeout(quietTimer);
    clearTimeout(maxTimer);
    resolve({waited_ms: Math.round(performance.now() - start), mutations, reason});
  };
  const resetQuiet = () => {
    clearTimeout(quietTimer);
    quietTimer = setTimeout(() => finish('quiet'), quietMs);
  };
  const observer = new MutationObserver((records) => {
    mutations += records.length;
    resetQuiet();
  });
  observer.observe(document.documentElement, {childList: true, subtree: true});
  const maxTimer = setTimeout(() => finish('timeout'), maxMs);
  resetQuiet();
})"""


async def _install_chromium() -> bool:
    """Run ``playwright install chromium``; True on success."""
    logger.info("Chromium not found, running 'playwright install chromium'")
    try:
        proc = await asyncio.create_subprocess_exec(
            sys.executable,
            "-m",
            "playwright",
            "install",
            "chromium",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        _stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=_AUTO_INSTALL_TIMEOUT)
    except TimeoutError:
        logger.warning("Chromium install timed out after %ds", _AUTO_INSTALL_TIMEOUT)
        return False
    if proc.returncode != 0:
        logger.warning("playwright install chromium failed (rc=%d): %s", proc.returncode, stderr.decode(errors="replace")[:500])
        return False
    return True


class BrowserSession:
    """One Chromium instance with a single page."""

    def __init__(self, config: BrowserConfig | None = None):
        self.config = config or BrowserConfig()
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._context: BrowserContext | None = None
        self._page: Page | None = None

    @property
    def page(self) -> Page:
        if self._page is None:
            raise RuntimeError("Browser session not started. Use async with or call start().")
        return self._page

    async def _launch(self) -> Browser:
        try:
            return await self._playwright.chromium.launch(headless=self.config.headless)
        except Exception as exc:
            if "executable doesn't exist" not in str(exc).lower():
                raise BrowserError(f"Could not launch Chromium: {exc}") from exc
            if not await _install_chromium():
                raise BrowserError(
                    "Chromium is not installed and auto-install failed. Please run: playwright install chromium"
                ) from exc
            return await self._playwright.chromium.launch(headless=self.config.headless)

    async def start(self) -> None:
        self._playwright = await async_playwright().start()
        self._browser = await self._launch()
        self._context = await self._browser.new_context(
            viewport={"width": self.config.viewport_width, "height": self.config.viewport_height},
            user_agent=self.config.user_agent,
            accept_downloads=False,
        )
        self._page = await self._context.new_page()
        logger.info("Browser session started (headless=%s)", self.config.headless)

    async def stop(self) -> None:
        """Close everything; safe on a crashed browser."""
        if self._context:
            with suppress(Exception):
                await self._context.close()
            self._context = None
        self._page = None
        if self._browser:
            with suppress(Exception):
                await self._browser.close()
            self._browser = None
        if self._playwright:
            with suppress(Exception):
                await self._playwright.stop()
            self._playwright = None
        logger.info("Browser session stopped")

    async def __aenter__(self) -> BrowserSession:
        await self.start()
        return self

    async def __aexit__(self, *args) -> None:
        await self.stop()

    async def navigate(self, url: str) -> int | None:
        """Load *url* and wait for the DOM to settle. Returns the HTTP status."""
        try:
            response = await self.page.goto(url, wait_until="load", timeout=self.config.timeout_ms)
        except Exception as exc:
            raise BrowserError(f"Navigation to {url} failed: {exc}") from exc
        await self.wait_for_dom_settle()
        return response.status if response else None

    async def wait_for_dom_settle(self) -> dict | None:
        try:
            result = await self.page.evaluate(_DOM_SETTLE_JS, [self.config.settle_quiet_ms, self.config.settle_max_ms])
        except Exception:
            logger.debug("DOM settle failed, continuing", exc_info=True)
            return None
        logger.debug(
            "DOM settle: %dms, %d mutations, reason=%s",
            result.get("waited_ms", 0),
            result.get("mutations", 0),
            result.get("reason", "unknown"),
        )
        return result
