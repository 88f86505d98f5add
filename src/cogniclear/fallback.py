# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Rule-based classifier used when the classification service is unavailable.

Keyword precedence is fixed: navigation, then help, then action.  A label
matching several groups (``"back to help center"``) lands in the first
group that matches, so reordering the checks changes results.

Nothing is filtered out: every input element yields exactly one
``essential`` item, in input order.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from . import Category, ClassifiedItem, ElementDescriptor, Importance

logger = logging.getLogger(__name__)

NAVIGATION_KEYWORDS: tuple[str, ...] = ("menu", "nav", "home", "back", "next", "previous", "page")
ACTION_KEYWORDS: tuple[str, ...] = (
    "submit",
    "send",
    "save",
    "buy",
    "purchase",
    "download",
    "upload",
    "delete",
    "add",
    "create",
)
HELP_KEYWORDS: tuple[str, ...] = ("help", "support", "faq", "contact", "about", "info")

# (keywords, category) in precedence order
KEYWORD_RULES: tuple[tuple[tuple[str, ...], Category], ...] = (
    (NAVIGATION_KEYWORDS, Category.NAVIGATION),
    (HELP_KEYWORDS, Category.HELP),
    (ACTION_KEYWORDS, Category.ACTION),
)

DEFAULT_CATEGORY = Category.ACTION
DEFAULT_LABEL = "Click here"

# Case-insensitive exact-match relabels
LABEL_REWRITES: dict[str, str] = {
    "submit": "Submit Form",
    "click here": "Click to Continue",
}


def categorize(text: str, aria_label: str = "") -> Category:
    haystack = f"{text} {aria_label}".lower()
    for keywords, category in KEYWORD_RULES:
        if any(kw in haystack for kw in keywords):
            return category
    return DEFAULT_CATEGORY


def simplify_label(text: str, aria_label: str = "") -> str:
    label = text or aria_label or DEFAULT_LABEL
    return LABEL_REWRITES.get(label.lower(), label)


def classify_locally(batch: Sequence[ElementDescriptor]) -> list[ClassifiedItem]:
    """Classify *batch* with keyword rules. Never raises, never filters."""
    items = [
        ClassifiedItem(
            id=element.id,
            original_text=element.text,
            simplified_text=simplify_label(element.text, element.aria_label),
            category=categorize(element.text, element.aria_label),
            importance=Importance.ESSENTIAL,
        )
        for element in batch
    ]
    logger.info("Fallback classification: %d elements", len(items))
    return items
