# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for the Original/Simplified state machine."""

from __future__ import annotations

import asyncio

import pytest

from cogniclear import ViewMode
from cogniclear.context import PageContext
from cogniclear.overlay import MODE_LABELS, PageOverlay, TextOverlay
from cogniclear.pipeline import ERROR_IN_PROGRESS, ProgressivePipeline
from cogniclear.presentation import ERROR_FAILED, PresentationStateMachine
from tests._fakes import FakeClassifier, FakePage, make_raw


def _machine(page, cache, classifier, overlay=None) -> PresentationStateMachine:
    return PresentationStateMachine(
        PageContext(page=page),
        ProgressivePipeline(classifier, cache),
        overlay if overlay is not None else TextOverlay(),
    )


# =========================================================================
# Toggle
# =========================================================================


class TestToggle:
    async def test_first_toggle_runs_pipeline(self, page, cache, classifier):
        overlay = TextOverlay()
        machine = _machine(page, cache, classifier, overlay)

        response = await machine.toggle()

        assert response == {"success": True, "state": "simplified"}
        assert machine.is_simplified
        assert not machine.is_processing
        assert machine.context.has_data
        assert [v.partial for v in overlay.views] == [True, False]
        assert overlay.views[-1].item_count == 12
        assert overlay.visible

    async def test_toggle_off_keeps_data_and_cache(self, page, cache, classifier):
        overlay = TextOverlay()
        machine = _machine(page, cache, classifier, overlay)
        await machine.toggle()

        response = await machine.toggle()

        assert response == {"success": True, "state": "original"}
        assert not machine.is_simplified
        assert not overlay.visible
        assert machine.context.has_data
        assert cache.size == 1

    async def test_toggle_on_again_renders_from_memory(self, page, cache, classifier):
        overlay = TextOverlay()
        machine = _machine(page, cache, classifier, overlay)
        await machine.toggle()
        await machine.toggle()
        calls = len(classifier.calls)

        response = await machine.toggle()

        assert response["state"] == "simplified"
        assert len(classifier.calls) == calls
        assert page.extraction_calls() == 1
        assert overlay.views[-1].item_count == 12

    async def test_new_context_within_ttl_served_from_cache(self, page, cache, classifier):
        first = _machine(page, cache, classifier)
        await first.toggle()
        await first.toggle()
        first.context.close()
        calls = len(classifier.calls)

        second = _machine(page, cache, classifier)
        response = await second.toggle()

        assert response["success"]
        assert len(classifier.calls) == calls
        assert second.last_result.cached
        assert second.last_result.processing_time_ms == 0

    async def test_toggle_rejected_while_processing(self, page, cache):
        classifier = FakeClassifier(delay=lambda batch: 0.05)
        machine = _machine(page, cache, classifier)

        running = asyncio.create_task(machine.toggle())
        await asyncio.sleep(0.01)
        assert machine.is_processing
        assert await machine.toggle() == {"success": False, "error": ERROR_IN_PROGRESS}

        assert (await running)["success"]
        assert not machine.is_processing

    async def test_failure_reports_and_stays_original(self, cache, classifier):
        overlay = TextOverlay()
        machine = _machine(FakePage(raw_elements=[]), cache, classifier, overlay)

        response = await machine.toggle()

        assert response == {"success": False, "error": ERROR_FAILED}
        assert not machine.is_simplified
        assert not machine.is_processing
        assert not overlay.visible
        assert not machine.context.has_data

    async def test_service_down_still_simplifies(self, page, cache):
        machine = _machine(page, cache, FakeClassifier(fail=True))
        response = await machine.toggle()
        assert response == {"success": True, "state": "simplified"}
        assert machine.last_result.degraded

    async def test_processing_flag_cleared_on_exception(self, page, cache, classifier):
        class _BrokenOverlay(TextOverlay):
            async def render(self, view):
                raise RuntimeError("page navigated away")

        machine = _machine(page, cache, classifier, _BrokenOverlay())
        with pytest.raises(RuntimeError):
            await machine.toggle()
        assert not machine.is_processing
        assert not machine.is_simplified


# =========================================================================
# State, mode, refresh
# =========================================================================


class TestGetState:
    async def test_snapshot_without_mutation(self, page, cache, classifier):
        machine = _machine(page, cache, classifier)
        assert machine.get_state() == {
            "isSimplified": False,
            "hasData": False,
            "isProcessing": False,
            "mode": "normal",
        }
        await machine.toggle()
        state = machine.get_state()
        assert state["isSimplified"] and state["hasData"]
        assert machine.get_state() == state


class TestSetMode:
    async def test_rerenders_when_simplified(self, page, cache, classifier):
        overlay = TextOverlay()
        machine = _machine(page, cache, classifier, overlay)
        await machine.toggle()
        views = len(overlay.views)

        await machine.set_mode(ViewMode.VARIANT_B)

        assert len(overlay.views) == views + 1
        assert overlay.views[-1].title == MODE_LABELS[ViewMode.VARIANT_B].title
        assert not overlay.views[-1].show_original
        assert len(classifier.calls) == 2

    async def test_same_mode_no_render(self, page, cache, classifier):
        overlay = TextOverlay()
        machine = _machine(page, cache, classifier, overlay)
        await machine.set_mode(ViewMode.NORMAL)
        assert overlay.views == []

    async def test_mode_while_original_applies_on_next_toggle(self, page, cache, classifier):
        overlay = TextOverlay()
        machine = _machine(page, cache, classifier, overlay)
        await machine.set_mode(ViewMode.VARIANT_A)
        assert overlay.views == []
        await machine.toggle()
        assert overlay.views[-1].title == MODE_LABELS[ViewMode.VARIANT_A].title


class TestRefresh:
    async def test_refresh_recomputes_for_new_url(self, page, cache, classifier):
        machine = _machine(page, cache, classifier)
        await machine.toggle()
        calls = len(classifier.calls)

        page.url = "https://example.com/other"
        page.raw_elements = [make_raw(i, text=f"Other {i}") for i in range(3)]
        response = await machine.refresh()

        assert response["success"]
        assert len(classifier.calls) == calls + 1
        assert [it.original_text for it in machine.context.simplified_data] == ["Other 0", "Other 1", "Other 2"]
        assert cache.size == 2

    async def test_refresh_rejected_while_processing(self, page, cache):
        machine = _machine(page, cache, FakeClassifier(delay=lambda batch: 0.05))
        running = asyncio.create_task(machine.toggle())
        await asyncio.sleep(0.01)
        assert (await machine.refresh())["error"] == ERROR_IN_PROGRESS
        await running

    async def test_refresh_that_raises_hides_overlay(self, page, cache, classifier):
        class _FlakyOverlay(TextOverlay):
            fail = False

            async def show_loading(self, mode):
                if self.fail:
                    raise RuntimeError("Execution context was destroyed")
                await super().show_loading(mode)

        overlay = _FlakyOverlay()
        machine = _machine(page, cache, classifier, overlay)
        await machine.toggle()
        assert overlay.visible

        overlay.fail = True
        with pytest.raises(RuntimeError):
            await machine.refresh()
        assert not overlay.visible
        assert machine.get_state() == {
            "isSimplified": False,
            "hasData": False,
            "isProcessing": False,
            "mode": ViewMode.NORMAL.value,
        }

        overlay.fail = False
        assert (await machine.toggle())["success"]
        assert overlay.visible


class TestOverlayClose:
    async def test_close_button_returns_to_original(self, page, cache, classifier):
        machine = _machine(page, cache, classifier)
        await machine.toggle()
        machine.on_overlay_closed()
        assert not machine.is_simplified
        response = await machine.toggle()
        assert response["state"] == "simplified"
        assert page.extraction_calls() == 1


class TestActivate:
    async def test_clicks_through_to_element(self, page, cache, classifier):
        machine = _machine(page, cache, classifier)
        await machine.toggle()
        assert await machine.activate("cogni-element-3") is True
        assert page.clicked == ["cogni-element-3"]

    async def test_unknown_item(self, page, cache, classifier):
        machine = _machine(page, cache, classifier)
        assert await machine.activate("cogni-element-3") is False
        await machine.toggle()
        assert await machine.activate("nope") is False
        assert page.clicked == []


class TestWithPageOverlay:
    async def test_renders_into_page(self, page, cache, classifier):
        machine = _machine(page, cache, classifier, PageOverlay(page))
        await machine.toggle()
        assert page.overlay_present
        # loading view, partial view, final view
        assert len(page.rendered) == 3
        assert page.rendered[0]["loading"] is True
        assert page.rendered[1]["partial"] is True
        assert page.rendered[2]["partial"] is False

        await machine.toggle()
        assert not page.overlay_present

    async def test_overlay_controls_never_classified(self, page, cache, classifier):
        machine = _machine(page, cache, classifier, PageOverlay(page))
        await machine.toggle()
        page.url = "https://example.com/next"
        await machine.refresh()

        texts = [it.original_text for it in machine.context.simplified_data]
        assert "Close" not in texts
        assert len(texts) == 12
        assert all("Close" not in d.text for call in classifier.calls for d in call)
        for url in ("https://example.com/", "https://example.com/next"):
            assert all(not it.id.endswith("overlay-close") for it in cache.get(url).data)
