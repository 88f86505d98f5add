# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""CogniClear exception hierarchy.

All CogniClear-specific errors inherit from CogniClearError. Remote
classification errors (ServiceError and subclasses) are absorbed by the
pipeline and replaced with local fallback results; only extraction
problems reach the presentation layer.
"""

from __future__ import annotations


class CogniClearError(Exception):
    """Base exception for all CogniClear errors."""


class BrowserError(CogniClearError):
    """Browser launch or navigation failure (CLI host)."""


class ConfigError(CogniClearError):
    """Invalid configuration value or unreadable settings file."""


class ExtractionEmptyError(CogniClearError):
    """The page yielded no interactive candidates."""


class ServiceError(CogniClearError):
    """Classification service failure: transport, HTTP status, or payload."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MalformedResponseError(ServiceError):
    """Service replied 2xx but the body is not JSON or not an item array."""
