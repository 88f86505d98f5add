# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""CogniClear: simplified, categorized views of interactive page elements.

Extracts buttons and links from a live page, classifies them through a
remote text-classification service (with a local rule-based fallback),
and presents them grouped by purpose:
- Navigation: menus, page links, home/back/next
- Action/Task: submit, buy, download, save, ...
- Help/Support: contact, FAQ, about, ...
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum

# Truncation limits for descriptor fields
MAX_TEXT_LEN = 200
MAX_PARENT_TEXT_LEN = 100
COMPACT_TEXT_LEN = 100
COMPACT_ARIA_LEN = 50
COMPACT_PARENT_LEN = 50


class Category(StrEnum):
    NAVIGATION = "Navigation"
    ACTION = "Action/Task"
    HELP = "Help/Support"


class Importance(StrEnum):
    ESSENTIAL = "essential"
    NOISE = "noise"


# Presentation order of categories in the overlay
CATEGORY_ORDER: tuple[Category, ...] = (Category.NAVIGATION, Category.ACTION, Category.HELP)


@dataclass(frozen=True, slots=True)
class Position:
    """Bounding box of an element in viewport coordinates."""

    top: float = 0.0
    left: float = 0.0
    width: float = 0.0
    height: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return {"top": self.top, "left": self.left, "width": self.width, "height": self.height}


@dataclass(frozen=True, slots=True)
class CompactDescriptor:
    """Token-bounded form of an ElementDescriptor sent to the classifier.

    Never carries href or position.
    """

    id: str
    text: str
    aria_label: str
    parent_text: str
    type: str

    def to_dict(self) -> dict[str, str]:
        return {
            "id": self.id,
            "text": self.text,
            "ariaLabel": self.aria_label,
            "parentText": self.parent_text,
            "type": self.type,
        }


@dataclass(frozen=True, slots=True)
class ElementDescriptor:
    """A single interactive candidate extracted from the page."""

    id: str  # native id or generated data-cogni-id
    text: str  # visible label, <= 200 chars
    type: str  # tag name or ARIA role
    aria_label: str = ""
    aria_described_by: str = ""
    parent_text: str = ""  # nearest ancestor's direct text, <= 100 chars
    href: str = ""
    position: Position = field(default_factory=Position)
    is_visible: bool = True

    def compact(self) -> CompactDescriptor:
        return CompactDescriptor(
            id=self.id,
            text=self.text[:COMPACT_TEXT_LEN],
            aria_label=self.aria_label[:COMPACT_ARIA_LEN],
            parent_text=self.parent_text[:COMPACT_PARENT_LEN],
            type=self.type,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "text": self.text,
            "ariaLabel": self.aria_label,
            "ariaDescribedBy": self.aria_described_by,
            "parentText": self.parent_text,
            "type": self.type,
            "href": self.href,
            "position": self.position.to_dict(),
            "isVisible": self.is_visible,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ElementDescriptor:
        pos = data.get("position") or {}
        return cls(
            id=str(data.get("id", "")),
            text=str(data.get("text", "") or "")[:MAX_TEXT_LEN],
            type=str(data.get("type", "") or ""),
            aria_label=str(data.get("ariaLabel", "") or ""),
            aria_described_by=str(data.get("ariaDescribedBy", "") or ""),
            parent_text=str(data.get("parentText", "") or "")[:MAX_PARENT_TEXT_LEN],
            href=str(data.get("href", "") or ""),
            position=Position(
                top=float(pos.get("top", 0) or 0),
                left=float(pos.get("left", 0) or 0),
                width=float(pos.get("width", 0) or 0),
                height=float(pos.get("height", 0) or 0),
            ),
            is_visible=bool(data.get("isVisible", True)),
        )


@dataclass(frozen=True, slots=True)
class ClassifiedItem:
    """A classified, relabelled element."""

    id: str  # references an ElementDescriptor.id
    original_text: str
    simplified_text: str
    category: Category
    importance: Importance = Importance.ESSENTIAL

    @property
    def is_essential(self) -> bool:
        return self.importance == Importance.ESSENTIAL

    def to_dict(self) -> dict[str, str]:
        return {
            "id": self.id,
            "originalText": self.original_text,
            "simplifiedText": self.simplified_text,
            "category": self.category.value,
            "importance": self.importance.value,
        }


class ViewMode(StrEnum):
    """Rendering variant of the simplified view (labels only, never data)."""

    NORMAL = "normal"
    VARIANT_A = "variant_a"
    VARIANT_B = "variant_b"


@dataclass
class PresentationState:
    """Process-wide view state for one page context."""

    is_simplified: bool = False
    is_processing: bool = False
    mode: ViewMode = ViewMode.NORMAL
