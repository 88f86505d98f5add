# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Label cleanup for text scraped from untrusted pages.

Element labels are shown to the user in the overlay and forwarded to the
classification model, so they are normalized once at extraction time:

1. clean_label(): strip control/bidi characters, collapse whitespace, truncate
2. direct_text(): join an ancestor's direct text nodes into one label
"""

from __future__ import annotations

import re

# Zero-width chars, bidi overrides, C0/C1 controls (tab/newline handled by whitespace collapse)
_CONTROL_CHAR_RE = re.compile(
    r"[\u200B-\u200F\u202A-\u202E\u2060-\u2069\uFEFF\uFFF9-\uFFFB"
    r"\u0000-\u0008\u000B\u000C\u000E-\u001F\u007F-\u009F]"
)

_WHITESPACE_RE = re.compile(r"\s+")


def clean_label(text: str | None, max_len: int) -> str:
    """Return a single-line, control-free label of at most ``max_len`` chars."""
    if not text:
        return ""
    text = _CONTROL_CHAR_RE.sub("", str(text))
    text = _WHITESPACE_RE.sub(" ", text).strip()
    return text[:max_len]


def direct_text(fragments: list[str] | None, max_len: int) -> str:
    """Join direct text-node fragments of an ancestor (empty ones dropped)."""
    if not fragments:
        return ""
    joined = " ".join(f.strip() for f in fragments if f and f.strip())
    return clean_label(joined, max_len)
