# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Simplified-view rendering: grouping, in-page overlay, text output.

Every update re-renders the full item list, so a partial result followed
by the final one never duplicates entries.  The in-page overlay is built
with textContent only; labels from the page or the model are never
injected as HTML.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Protocol

from . import CATEGORY_ORDER, Category, ClassifiedItem, ViewMode
from .extractor import OVERLAY_ID, TAG_ATTRIBUTE, Document

logger = logging.getLogger(__name__)

CLOSE_BINDING = "__cogniclearClose"


@dataclass(frozen=True, slots=True)
class ModeLabels:
    title: str
    show_original: bool  # show "(was: ...)" when the label changed


MODE_LABELS: dict[ViewMode, ModeLabels] = {
    ViewMode.NORMAL: ModeLabels(title="CogniClear - Simplified View", show_original=True),
    ViewMode.VARIANT_A: ModeLabels(title="CogniClear - Easy View", show_original=True),
    ViewMode.VARIANT_B: ModeLabels(title="CogniClear - Focus View", show_original=False),
}


@dataclass(frozen=True, slots=True)
class OverlaySection:
    category: Category
    items: tuple[ClassifiedItem, ...]


@dataclass(frozen=True, slots=True)
class OverlayView:
    title: str
    sections: tuple[OverlaySection, ...]
    partial: bool = False
    show_original: bool = True

    @property
    def item_count(self) -> int:
        return sum(len(s.items) for s in self.sections)

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "partial": self.partial,
            "sections": [
                {
                    "category": s.category.value,
                    "items": [
                        {
                            "id": it.id,
                            "text": it.simplified_text,
                            "original": (
                                it.original_text
                                if self.show_original and it.original_text and it.original_text != it.simplified_text
                                else ""
                            ),
                        }
                        for it in s.items
                    ],
                }
                for s in self.sections
            ],
        }


def group_by_category(items: Iterable[ClassifiedItem]) -> tuple[OverlaySection, ...]:
    """Essential items grouped in CATEGORY_ORDER, first occurrence of an id wins."""
    buckets: dict[Category, list[ClassifiedItem]] = {c: [] for c in CATEGORY_ORDER}
    seen: set[str] = set()
    for item in items:
        if item.id in seen or not item.is_essential:
            continue
        bucket = buckets.get(item.category)
        if bucket is None:
            continue
        seen.add(item.id)
        bucket.append(item)
    return tuple(OverlaySection(category=c, items=tuple(buckets[c])) for c in CATEGORY_ORDER if buckets[c])


def build_view(items: Iterable[ClassifiedItem], *, mode: ViewMode = ViewMode.NORMAL, partial: bool = False) -> OverlayView:
    labels = MODE_LABELS[mode]
    return OverlayView(
        title=labels.title,
        sections=group_by_category(items),
        partial=partial,
        show_original=labels.show_original,
    )


def render_text(view: OverlayView) -> str:
    """Plain-text rendering used by the CLI."""
    lines = [view.title, "=" * len(view.title)]
    data = view.to_dict()
    for section in data["sections"]:
        lines.append("")
        lines.append(f"{section['category']}:")
        for item in section["items"]:
            suffix = f' (was: "{item["original"]}")' if item["original"] else ""
            lines.append(f"  - {item['text']}{suffix}")
    if view.partial:
        lines.append("")
        lines.append("Loading more elements...")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Renderers
# ---------------------------------------------------------------------------


class Overlay(Protocol):
    async def show_loading(self, mode: ViewMode) -> None: ...

    async def render(self, view: OverlayView) -> None: ...

    async def hide(self) -> None: ...


_RENDER_JS = """\
([overlayId, attr, closeBinding, view]) => {
  const old = document.getElementById(overlayId);
  if (old) old.remove();

  const overlay = document.createElement("div");
  overlay.id = overlayId;
  overlay.className = "cogniclear-overlay";

  const header = document.createElement("div");
  header.className = "cogniclear-header";
  const h2 = document.createElement("h2");
  h2.textContent = view.title;
  const close = document.createElement("button");
  close.className = "cogniclear-close-btn";
  close.textContent = "Close";
  close.addEventListener("click", () => {
    overlay.remove();
    if (typeof window[closeBinding] === "function") window[closeBinding]();
  });
  header.append(h2, close);
  overlay.appendChild(header);

  if (view.loading) {
    const loading = document.createElement("div");
    loading.className = "cogniclear-loading";
    loading.textContent = "Processing first elements...";
    overlay.appendChild(loading);
  }
  if (view.partial) {
    const status = document.createElement("div");
    status.className = "cogniclear-status";
    status.textContent = "Loading more elements...";
    overlay.appendChild(status);
  }

  for (const section of (view.sections || [])) {
    const box = document.createElement("div");
    box.className = "cogniclear-category";
    box.setAttribute("data-category", section.category);
    const h3 = document.createElement("h3");
    h3.className = "cogniclear-category-title";
    h3.textContent = section.category;
    box.appendChild(h3);
    const list = document.createElement("div");
    list.className = "cogniclear-items";
    for (const item of section.items) {
      const btn = document.createElement("button");
      btn.className = "cogniclear-item";
      btn.setAttribute("data-item-id", item.id);
      const label = document.createElement("span");
      label.className = "cogniclear-item-text";
      label.textContent = item.text;
      btn.appendChild(label);
      if (item.original) {
        const was = document.createElement("span");
        was.className = "cogniclear-item-original";
        was.textContent = '(was: "' + item.original + '")';
        btn.appendChild(was);
      }
      btn.addEventListener("click", () => {
        const target = document.querySelector("[" + attr + '="' + CSS.escape(item.id) + '"]') ||
                       document.getElementById(item.id);
        if (target) target.click();
      });
      list.appendChild(btn);
    }
    box.appendChild(list);
    overlay.appendChild(box);
  }
  document.body.appendChild(overlay);
  return true;
}
"""

_HIDE_JS = """\
(overlayId) => {
  const el = document.getElementById(overlayId);
  if (el) { el.remove(); return true; }
  return false;
}
"""


class PageOverlay:
    """Overlay injected into the live page through ``page.evaluate``."""

    def __init__(self, page: Document) -> None:
        self._page = page
        self._close_installed = False

    async def install_close_handler(self, on_close: Callable[[], Any]) -> None:
        """Route the overlay's Close button back to Python (Playwright pages only)."""
        expose = getattr(self._page, "expose_binding", None)
        if expose is None or self._close_installed:
            return
        await expose(CLOSE_BINDING, lambda _source: on_close())
        self._close_installed = True

    async def show_loading(self, mode: ViewMode) -> None:
        labels = MODE_LABELS[mode]
        await self._page.evaluate(
            _RENDER_JS,
            [OVERLAY_ID, TAG_ATTRIBUTE, CLOSE_BINDING, {"title": labels.title, "loading": True, "sections": []}],
        )

    async def render(self, view: OverlayView) -> None:
        await self._page.evaluate(_RENDER_JS, [OVERLAY_ID, TAG_ATTRIBUTE, CLOSE_BINDING, view.to_dict()])
        logger.debug("Overlay rendered: %d items (partial=%s)", view.item_count, view.partial)

    async def hide(self) -> None:
        removed = await self._page.evaluate(_HIDE_JS, OVERLAY_ID)
        if removed:
            logger.debug("Overlay hidden")


class TextOverlay:
    """Overlay that writes plain text (CLI) and keeps the rendered views."""

    def __init__(self, write: Callable[[str], Any] | None = None) -> None:
        self._write = write
        self.views: list[OverlayView] = []
        self.visible = False

    async def show_loading(self, mode: ViewMode) -> None:
        self.visible = True
        if self._write:
            self._write(f"{MODE_LABELS[mode].title}: processing first elements...")

    async def render(self, view: OverlayView) -> None:
        self.visible = True
        self.views.append(view)
        if self._write:
            self._write(render_text(view))

    async def hide(self) -> None:
        self.visible = False
