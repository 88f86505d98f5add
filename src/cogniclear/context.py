# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""PageContext: per-page-load state, leaf module with minimal dependencies.

One PageContext is created per full page load and closed when the tab
navigates away.  It holds the presentation state and the in-memory
simplified result; the ResponseCache is shared across contexts and is
passed in, never owned.
"""

from __future__ import annotations

import dataclasses
import time
import uuid
from typing import TYPE_CHECKING, Any

from . import ClassifiedItem, PresentationState

if TYPE_CHECKING:
    from .extractor import Document


@dataclasses.dataclass(slots=True, kw_only=True)
class PageContext:
    """Mutable state of one page load."""

    page: Document = dataclasses.field(repr=False)
    context_id: str = dataclasses.field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: PresentationState = dataclasses.field(default_factory=PresentationState)
    simplified_data: tuple[ClassifiedItem, ...] | None = None
    created_at: float = dataclasses.field(default_factory=time.monotonic)
    closed: bool = False

    @property
    def has_data(self) -> bool:
        return self.simplified_data is not None

    @property
    def url(self) -> str:
        return str(getattr(self.page, "url", "") or "")

    async def title(self) -> str:
        getter: Any = getattr(self.page, "title", None)
        if getter is None:
            return ""
        try:
            return str(await getter() or "")
        except Exception:
            return ""

    def clear_data(self) -> None:
        self.simplified_data = None

    def close(self) -> None:
        """Tear down on full navigation away; state is not carried over."""
        self.simplified_data = None
        self.state = PresentationState()
        self.closed = True
