# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for the browser session. Does not require a running browser."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from cogniclear.browser_session import DEFAULT_USER_AGENT, BrowserConfig, BrowserSession
from cogniclear.errors import BrowserError

# ── BrowserConfig Defaults ─────────────────────────────────────────


class TestBrowserConfig:
    def test_defaults(self):
        cfg = BrowserConfig()
        assert cfg.headless is True
        assert cfg.viewport_width == 1280
        assert cfg.viewport_height == 800
        assert cfg.timeout_ms == 30000

    def test_user_agent_looks_like_chrome(self):
        assert "Chrome" in DEFAULT_USER_AGENT


# ── Property Guards ────────────────────────────────────────────────


class TestPropertyGuards:
    def test_page_raises_before_start(self):
        with pytest.raises(RuntimeError, match="not started"):
            _ = BrowserSession().page


# ── Navigation ─────────────────────────────────────────────────────


def _session_with_page(page) -> BrowserSession:
    session = BrowserSession()
    session._page = page
    return session


class TestNavigate:
    async def test_returns_status_after_settle(self):
        page = MagicMock()
        page.goto = AsyncMock(return_value=MagicMock(status=200))
        page.evaluate = AsyncMock(return_value={"waited_ms": 300, "mutations": 2, "reason": "quiet"})
        session = _session_with_page(page)

        assert await session.navigate("https://example.com") == 200
        page.goto.assert_awaited_once_with("https://example.com", wait_until="load", timeout=30000)
        assert page.evaluate.await_args.args[1] == [300, 3000]

    async def test_goto_failure_wrapped(self):
        page = MagicMock()
        page.goto = AsyncMock(side_effect=Exception("net::ERR_NAME_NOT_RESOLVED"))
        session = _session_with_page(page)

        with pytest.raises(BrowserError, match="ERR_NAME_NOT_RESOLVED"):
            await session.navigate("https://nope.test")

    async def test_settle_failure_ignored(self):
        page = MagicMock()
        page.goto = AsyncMock(return_value=None)
        page.evaluate = AsyncMock(side_effect=Exception("context destroyed"))
        session = _session_with_page(page)

        assert await session.navigate("https://example.com") is None


# ── Launch ─────────────────────────────────────────────────────────


class TestLaunch:
    async def test_launch_error_wrapped(self):
        session = BrowserSession()
        session._playwright = MagicMock()
        session._playwright.chromium.launch = AsyncMock(side_effect=Exception("sandbox failure"))

        with pytest.raises(BrowserError, match="sandbox failure"):
            await session._launch()

    async def test_missing_executable_triggers_install(self):
        browser = MagicMock()
        session = BrowserSession()
        session._playwright = MagicMock()
        session._playwright.chromium.launch = AsyncMock(
            side_effect=[Exception("Executable doesn't exist at /ms-playwright/chromium"), browser]
        )

        with patch("cogniclear.browser_session._install_chromium", AsyncMock(return_value=True)) as install:
            assert await session._launch() is browser
        install.assert_awaited_once()

    async def test_failed_install_raises(self):
        session = BrowserSession()
        session._playwright = MagicMock()
        session._playwright.chromium.launch = AsyncMock(side_effect=Exception("Executable doesn't exist"))

        with patch("cogniclear.browser_session._install_chromium", AsyncMock(return_value=False)):
            with pytest.raises(BrowserError, match="playwright install chromium"):
                await session._launch()


class TestStop:
    async def test_stop_survives_crashed_browser(self):
        session = BrowserSession()
        session._context = MagicMock(close=AsyncMock(side_effect=Exception("Target closed")))
        session._browser = MagicMock(close=AsyncMock(side_effect=Exception("Target closed")))
        session._playwright = MagicMock(stop=AsyncMock())

        await session.stop()

        assert session._browser is None
        assert session._playwright is None
        with pytest.raises(RuntimeError):
            _ = session.page
