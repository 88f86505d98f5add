# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Shared test configuration and fixtures."""

try:
    import cogniclear  # noqa: F401
except ImportError:
    raise ImportError("cogniclear is not installed. Run: pip install -e '.[dev]'") from None

import pytest

from cogniclear.cache import ResponseCache
from cogniclear.config import PipelineConfig
from tests._fakes import FakeClassifier, FakePage, make_raw


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    """Keep tests away from the real settings file and COGNICLEAR_* variables."""
    monkeypatch.setenv("HOME", str(tmp_path))
    for name in ("COGNICLEAR_API_ENDPOINT", "COGNICLEAR_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config() -> PipelineConfig:
    return PipelineConfig()


@pytest.fixture
def cache() -> ResponseCache:
    return ResponseCache(ttl=1800)


@pytest.fixture
def classifier() -> FakeClassifier:
    return FakeClassifier()


@pytest.fixture
def page() -> FakePage:
    return FakePage(raw_elements=[make_raw(i) for i in range(12)])
