"""Interactive element extraction from a live page.

One ``page.evaluate`` call collects raw candidate records in DOM order:
buttons, submit/button inputs, links with an href, ``role=button|link``,
and inline ``onclick`` handlers.  Nodes inside the CogniClear overlay are
never collected.  Hidden (display:none, visibility:hidden, opacity:0)
candidates are skipped in the page; zero-size candidates are dropped on
the Python side.

Elements without a native id are tagged with ``data-cogni-id`` so the
overlay can click through to the live node later.  Tagging is idempotent:
an element that already carries a tag keeps it, and no id is handed out
twice in one pass.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from . import MAX_PARENT_TEXT_LEN, MAX_TEXT_LEN, ElementDescriptor, Position
from .sanitizer import clean_label, direct_text

logger = logging.getLogger(__name__)

TAG_ATTRIBUTE = "data-cogni-id"
OVERLAY_ID = "cogniclear-overlay"
ID_PREFIX = "cogni-element-"

INTERACTIVE_SELECTORS: tuple[str, ...] = (
    "button",
    "a[href]",
    'input[type="submit"]',
    'input[type="button"]',
    '[role="button"]',
    '[role="link"]',
    "[onclick]",
)

_PARENT_WALK_DEPTH = 3


class Document(Protocol):
    """The slice of Playwright's ``Page`` the extractor needs."""

    async def evaluate(self, expression: str, arg: Any = None) -> Any: ...


# ── In-page collection ──────────────────────────────────────────────
# Returns raw records; all truncation and cleanup happens in Python.

_EXTRACT_JS = """\
([selectors, attr, prefix, depth, exclude]) => {
  const nodes = document.querySelectorAll(selectors.join(","));
  const used = new Set();
  const reserved = new Set(
    Array.from(document.querySelectorAll("[" + attr + "]")).map(e => e.getAttribute(attr))
  );
  const records = [];

  const claim = (el, index) => {
    if (el.id && !used.has(el.id)) {
      used.add(el.id);
      return el.id;
    }
    const tagged = el.getAttribute(attr);
    if (tagged && !used.has(tagged)) {
      used.add(tagged);
      return tagged;
    }
    let candidate = prefix + index;
    let bump = 1;
    while (used.has(candidate) || reserved.has(candidate) || document.getElementById(candidate)) {
      candidate = prefix + index + "-" + bump;
      bump += 1;
    }
    el.setAttribute(attr, candidate);
    used.add(candidate);
    return candidate;
  };

  nodes.forEach((el, index) => {
    if (exclude && el.closest(exclude)) return;
    const style = window.getComputedStyle(el);
    if (style.display === "none" || style.visibility === "hidden" || style.opacity === "0") {
      return;
    }
    const id = claim(el, index);

    const parentFragments = [];
    let parent = el.parentElement;
    for (let level = 0; parent && level < depth; level++) {
      const own = Array.from(parent.childNodes)
        .filter(n => n.nodeType === Node.TEXT_NODE)
        .map(n => n.textContent.trim())
        .filter(t => t.length > 0);
      if (own.length) {
        parentFragments.push(...own);
        break;
      }
      parent = parent.parentElement;
    }

    const rect = el.getBoundingClientRect();
    records.push({
      id: id,
      innerText: (el.innerText || "").trim(),
      textContent: (el.textContent || "").trim(),
      value: typeof el.value === "string" ? el.value : "",
      ariaLabel: el.getAttribute("aria-label") || "",
      ariaDescribedBy: el.getAttribute("aria-describedby") || "",
      parentFragments: parentFragments,
      tag: el.tagName.toLowerCase(),
      role: el.getAttribute("role") || "",
      href: el.href || "",
      rect: {top: rect.top, left: rect.left, width: rect.width, height: rect.height}
    });
  });
  return records;
}
"""

_ACTIVATE_JS = """\
([attr, id]) => {
  const el = document.querySelector("[" + attr + '="' + CSS.escape(id) + '"]') ||
             document.getElementById(id);
  if (!el) return false;
  el.click();
  return true;
}
"""


def _label_for(raw: dict) -> str:
    """Rendered text, then text content, then form value."""
    for key in ("innerText", "textContent", "value"):
        label = clean_label(raw.get(key), MAX_TEXT_LEN)
        if label:
            return label
    return ""


def _process_raw_elements(raw_elements: list[dict]) -> list[ElementDescriptor]:
    """Turn raw in-page records into ElementDescriptors.

    Pure function (no I/O).  Drops zero-size boxes and records whose id
    was already seen in this batch; keeps input order.
    """
    results: list[ElementDescriptor] = []
    seen: set[str] = set()

    for raw in raw_elements:
        element_id = str(raw.get("id") or "")
        if not element_id or element_id in seen:
            continue

        rect = raw.get("rect") or {}
        position = Position(
            top=float(rect.get("top", 0) or 0),
            left=float(rect.get("left", 0) or 0),
            width=float(rect.get("width", 0) or 0),
            height=float(rect.get("height", 0) or 0),
        )
        if position.width <= 0 or position.height <= 0:
            continue

        seen.add(element_id)
        results.append(
            ElementDescriptor(
                id=element_id,
                text=_label_for(raw),
                type=raw.get("role") or raw.get("tag") or "",
                aria_label=clean_label(raw.get("ariaLabel"), MAX_TEXT_LEN),
                aria_described_by=clean_label(raw.get("ariaDescribedBy"), MAX_TEXT_LEN),
                parent_text=direct_text(raw.get("parentFragments"), MAX_PARENT_TEXT_LEN),
                href=str(raw.get("href") or ""),
                position=position,
                is_visible=True,
            )
        )
    return results


async def extract(page: Document) -> list[ElementDescriptor]:
    """Extract interactive candidates from *page* in DOM order.

    Raises whatever ``page.evaluate`` raises (closed page, navigation race);
    the pipeline treats that as an extraction failure.
    """
    raw = await page.evaluate(
        _EXTRACT_JS,
        [list(INTERACTIVE_SELECTORS), TAG_ATTRIBUTE, ID_PREFIX, _PARENT_WALK_DEPTH, f"#{OVERLAY_ID}"],
    )
    if not isinstance(raw, list):
        logger.warning("Extractor: unexpected evaluate result %s", type(raw).__name__)
        return []

    elements = _process_raw_elements(raw)
    logger.info(
        "Extracted %d interactive elements (%d candidates, %d tagged)",
        len(elements),
        len(raw),
        sum(1 for r in raw if str(r.get("id", "")).startswith(ID_PREFIX)),
    )
    return elements


async def activate_element(page: Document, element_id: str) -> bool:
    """Click the live node behind *element_id*. Returns False if it is gone."""
    try:
        found = await page.evaluate(_ACTIVATE_JS, [TAG_ATTRIBUTE, element_id])
    except Exception:
        logger.debug("activate_element failed for id=%s", element_id, exc_info=True)
        return False
    if not found:
        logger.info("Element %s no longer present in the page", element_id)
    return bool(found)
