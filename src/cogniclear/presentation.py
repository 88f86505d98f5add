# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Original/Simplified view state machine for one page context.

    Original --TOGGLE (no data)--> [processing] --success--> Simplified
    Original --TOGGLE (data)-----> Simplified           (no pipeline run)
    Simplified --TOGGLE----------> Original              (data and cache kept)

While processing, TOGGLE and refresh are rejected.  A failed run, or one
that raises, hides the overlay and leaves the view Original.
"""

from __future__ import annotations

import contextlib
import logging
from typing import Any

from . import ViewMode
from .context import PageContext
from .extractor import activate_element
from .overlay import Overlay, build_view
from .pipeline import ERROR_IN_PROGRESS, PipelineResult, ProgressivePipeline

logger = logging.getLogger(__name__)

STATE_ORIGINAL = "original"
STATE_SIMPLIFIED = "simplified"
ERROR_FAILED = "Failed to process page"


class PresentationStateMachine:
    def __init__(self, context: PageContext, pipeline: ProgressivePipeline, overlay: Overlay) -> None:
        self._ctx = context
        self._pipeline = pipeline
        self._overlay = overlay
        self.last_result: PipelineResult | None = None

    # -- Observers --

    @property
    def context(self) -> PageContext:
        return self._ctx

    @property
    def is_simplified(self) -> bool:
        return self._ctx.state.is_simplified

    @property
    def is_processing(self) -> bool:
        return self._ctx.state.is_processing

    @property
    def mode(self) -> ViewMode:
        return self._ctx.state.mode

    def get_state(self) -> dict[str, Any]:
        """Read-only snapshot for the popup/CLI."""
        st = self._ctx.state
        return {
            "isSimplified": st.is_simplified,
            "hasData": self._ctx.has_data,
            "isProcessing": st.is_processing,
            "mode": st.mode.value,
        }

    # -- Transitions --

    async def toggle(self) -> dict[str, Any]:
        st = self._ctx.state
        if st.is_processing:
            return {"success": False, "error": ERROR_IN_PROGRESS}

        if st.is_simplified:
            await self._overlay.hide()
            st.is_simplified = False
            logger.info("Simplified view hidden")
            return {"success": True, "state": STATE_ORIGINAL}

        if self._ctx.simplified_data is not None:
            await self._overlay.render(build_view(self._ctx.simplified_data, mode=st.mode))
            st.is_simplified = True
            logger.info("Simplified view restored from memory")
            return {"success": True, "state": STATE_SIMPLIFIED}

        return await self._process()

    async def refresh(self) -> dict[str, Any]:
        """Drop in-memory data and rebuild the view for the current page."""
        if self._ctx.state.is_processing:
            logger.info("Refresh skipped: processing in progress")
            return {"success": False, "error": ERROR_IN_PROGRESS}
        self._ctx.clear_data()
        self._pipeline.clear_result()
        return await self._process()

    async def set_mode(self, mode: ViewMode) -> None:
        st = self._ctx.state
        if st.mode == mode:
            return
        st.mode = mode
        if st.is_simplified and self._ctx.simplified_data is not None and not st.is_processing:
            await self._overlay.render(build_view(self._ctx.simplified_data, mode=mode))

    def on_overlay_closed(self) -> None:
        """The overlay's own Close button was used."""
        self._ctx.state.is_simplified = False

    async def activate(self, item_id: str) -> bool:
        """Click the live element behind a simplified item."""
        if not self._ctx.has_data or all(item.id != item_id for item in self._ctx.simplified_data):
            return False
        return await activate_element(self._ctx.page, item_id)

    # -- Internal --

    async def _process(self) -> dict[str, Any]:
        st = self._ctx.state
        st.is_processing = True
        try:
            await self._overlay.show_loading(st.mode)
            result = await self._pipeline.run(self._ctx.page, on_update=self._on_update)
        except Exception:
            st.is_simplified = False
            with contextlib.suppress(Exception):
                await self._overlay.hide()
            raise
        finally:
            st.is_processing = False
        self.last_result = result

        if result.rejected:
            return {"success": False, "error": ERROR_IN_PROGRESS}
        if not result.success:
            logger.warning("Page processing failed: %s", result.error)
            await self._overlay.hide()
            st.is_simplified = False
            return {"success": False, "error": ERROR_FAILED}

        self._ctx.simplified_data = result.items
        st.is_simplified = True
        return {"success": True, "state": STATE_SIMPLIFIED}

    async def _on_update(self, result: PipelineResult) -> None:
        if self._ctx.closed:
            return
        await self._overlay.render(build_view(result.items, mode=self._ctx.state.mode, partial=result.partial))
