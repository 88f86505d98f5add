# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Runtime configuration: pipeline tunables and the endpoint override.

The only user-facing setting is the classification endpoint URL.  It is
persisted outside the process (``~/.cogniclear/settings.json``) and
resolved on every call, so a change takes effect without a restart:

    $COGNICLEAR_API_ENDPOINT  >  settings.json "apiEndpoint"  >  DEFAULT_API_ENDPOINT
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_API_ENDPOINT = "http://localhost:5000/api/simplify"
ENDPOINT_ENV = "COGNICLEAR_API_ENDPOINT"
SETTINGS_KEY = "apiEndpoint"


def _default_settings_path() -> Path:
    return Path(os.path.expanduser("~")) / ".cogniclear" / "settings.json"


# ---------------------------------------------------------------------------
# Pipeline tunables
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    """Immutable tunables shared by pipeline, cache and navigation watcher."""

    first_chunk_size: int = 5
    max_elements: int = 100  # per page; the rest is discarded
    max_batch_size: int = 50  # per classification call
    cache_ttl: float = 1800.0  # 30 minutes
    debounce_seconds: float = 1.0
    poll_interval: float = 0.5
    mutation_threshold: int = 10  # nodes added/removed in one batch
    request_timeout: float = 30.0

    def __post_init__(self) -> None:
        if self.first_chunk_size <= 0:
            raise ConfigError(f"first_chunk_size must be > 0, got {self.first_chunk_size}")
        if self.max_batch_size <= 0:
            raise ConfigError(f"max_batch_size must be > 0, got {self.max_batch_size}")
        if self.first_chunk_size > self.max_batch_size:
            raise ConfigError(
                f"first_chunk_size ({self.first_chunk_size}) exceeds max_batch_size ({self.max_batch_size})"
            )
        if self.max_elements < self.first_chunk_size:
            raise ConfigError(f"max_elements must be >= first_chunk_size, got {self.max_elements}")
        if self.cache_ttl <= 0:
            raise ConfigError(f"cache_ttl must be > 0, got {self.cache_ttl}")
        if self.debounce_seconds < 0:
            raise ConfigError(f"debounce_seconds must be >= 0, got {self.debounce_seconds}")
        if self.poll_interval <= 0:
            raise ConfigError(f"poll_interval must be > 0, got {self.poll_interval}")
        if self.request_timeout <= 0:
            raise ConfigError(f"request_timeout must be > 0, got {self.request_timeout}")

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> PipelineConfig:
        """Build a config from ``COGNICLEAR_*`` environment variables."""
        env = os.environ if environ is None else environ
        kwargs: dict = {}
        for name, caster in (
            ("first_chunk_size", int),
            ("max_elements", int),
            ("max_batch_size", int),
            ("cache_ttl", float),
            ("debounce_seconds", float),
            ("poll_interval", float),
            ("mutation_threshold", int),
            ("request_timeout", float),
        ):
            raw = env.get(f"COGNICLEAR_{name.upper()}", "").strip()
            if not raw:
                continue
            try:
                kwargs[name] = caster(raw)
            except ValueError as e:
                raise ConfigError(f"COGNICLEAR_{name.upper()}: invalid value {raw!r}") from e
        return cls(**kwargs)


# ---------------------------------------------------------------------------
# Endpoint override
# ---------------------------------------------------------------------------


@dataclass
class SettingsStore:
    """JSON-file persistence for the endpoint override."""

    path: Path = field(default_factory=_default_settings_path)

    def load(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Cannot read settings file {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Settings file {self.path} must contain a JSON object")
        return data

    def get_endpoint(self) -> str | None:
        value = self.load().get(SETTINGS_KEY)
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None

    def set_endpoint(self, url: str) -> None:
        url = url.strip()
        if not url.startswith(("http://", "https://")):
            raise ConfigError(f"Endpoint must be an http(s) URL, got {url!r}")
        data = self.load()
        data[SETTINGS_KEY] = url
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        logger.info("Endpoint override saved to %s", self.path)

    def clear_endpoint(self) -> None:
        data = self.load()
        if data.pop(SETTINGS_KEY, None) is not None:
            self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")


class EndpointResolver:
    """Callable returning the current endpoint; consulted on every request."""

    def __init__(self, store: SettingsStore | None = None, environ: dict[str, str] | None = None) -> None:
        self._store = store or SettingsStore()
        self._environ = environ

    def __call__(self) -> str:
        env = os.environ if self._environ is None else self._environ
        from_env = env.get(ENDPOINT_ENV, "").strip()
        if from_env:
            return from_env
        try:
            stored = self._store.get_endpoint()
        except ConfigError:
            logger.warning("Unreadable settings file, using default endpoint", exc_info=True)
            stored = None
        return stored or DEFAULT_API_ENDPOINT
