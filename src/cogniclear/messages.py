# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Typed request/response messages between the page side and the shared side.

Message kinds (discriminated on ``type``):

    TOGGLE_SIMPLIFIED             -> {success, state} | {success: false, error}
    GET_STATE                     -> {isSimplified, hasData}
    PROCESS_ELEMENTS              -> classification response
    PROCESS_ELEMENTS_PROGRESSIVE  -> classification response (+ isPartial, counts)
    CLEAR_CACHE                   -> {success}
    GET_CACHE_SIZE                -> {size}

A :class:`MessageChannel` validates each raw message, routes it to the
handler that owns its kind, and keeps a single in-flight guard for the
long-running kinds.  Short queries are always answered.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from typing import Annotated, Any, Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from . import ElementDescriptor
from .cache import ResponseCache
from .classifier_client import Classifier
from .config import PipelineConfig
from .fallback import classify_locally
from .pipeline import ERROR_IN_PROGRESS, classify_with_fallback
from .presentation import PresentationStateMachine

logger = logging.getLogger(__name__)

ERROR_SERVICE_UNAVAILABLE = "Classification service unavailable"


# ---------------------------------------------------------------------------
# Message models
# ---------------------------------------------------------------------------


class ProcessPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    elements: list[dict[str, Any]] = Field(min_length=1)
    page_url: str = Field(default="", alias="pageUrl")
    page_title: str = Field(default="", alias="pageTitle")
    chunk_size: int = Field(default=5, alias="chunkSize", ge=1)
    total_elements: int | None = Field(default=None, alias="totalElements", ge=0)

    def descriptors(self) -> list[ElementDescriptor]:
        return [ElementDescriptor.from_dict(raw) for raw in self.elements]


class ToggleSimplified(BaseModel):
    type: Literal["TOGGLE_SIMPLIFIED"] = "TOGGLE_SIMPLIFIED"


class GetState(BaseModel):
    type: Literal["GET_STATE"] = "GET_STATE"


class ProcessElements(BaseModel):
    type: Literal["PROCESS_ELEMENTS"] = "PROCESS_ELEMENTS"
    payload: ProcessPayload


class ProcessElementsProgressive(BaseModel):
    type: Literal["PROCESS_ELEMENTS_PROGRESSIVE"] = "PROCESS_ELEMENTS_PROGRESSIVE"
    payload: ProcessPayload


class ClearCache(BaseModel):
    type: Literal["CLEAR_CACHE"] = "CLEAR_CACHE"


class GetCacheSize(BaseModel):
    type: Literal["GET_CACHE_SIZE"] = "GET_CACHE_SIZE"


Message = Annotated[
    ToggleSimplified | GetState | ProcessElements | ProcessElementsProgressive | ClearCache | GetCacheSize,
    Field(discriminator="type"),
]

_MESSAGE_ADAPTER: TypeAdapter[Any] = TypeAdapter(Message)

# Kinds that may take seconds; at most one is served per channel at a time
LONG_RUNNING = frozenset({"TOGGLE_SIMPLIFIED", "PROCESS_ELEMENTS", "PROCESS_ELEMENTS_PROGRESSIVE"})


def parse_message(raw: Mapping[str, Any] | BaseModel) -> BaseModel:
    """Validate *raw* into one of the message models.

    Raises:
        pydantic.ValidationError: unknown ``type`` or malformed payload.
    """
    if isinstance(raw, BaseModel):
        return raw
    return _MESSAGE_ADAPTER.validate_python(raw)


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


class MessageHandler(Protocol):
    kinds: frozenset[str]

    async def handle(self, message: BaseModel) -> dict[str, Any]: ...


class ContentHandler:
    """Page-side handler: drives the presentation state machine."""

    kinds = frozenset({"TOGGLE_SIMPLIFIED", "GET_STATE"})

    def __init__(self, machine: PresentationStateMachine) -> None:
        self._machine = machine

    async def handle(self, message: BaseModel) -> dict[str, Any]:
        if isinstance(message, ToggleSimplified):
            return await self._machine.toggle()
        if isinstance(message, GetState):
            state = self._machine.get_state()
            return {"isSimplified": state["isSimplified"], "hasData": state["hasData"]}
        raise TypeError(f"ContentHandler cannot handle {type(message).__name__}")


class BackgroundCoordinator:
    """Shared-side handler: classification requests and cache maintenance.

    Progressive (first-chunk) requests read the page cache but never write
    it; only a PROCESS_ELEMENTS response is stored under the page key.
    """

    kinds = frozenset({"PROCESS_ELEMENTS", "PROCESS_ELEMENTS_PROGRESSIVE", "CLEAR_CACHE", "GET_CACHE_SIZE"})

    def __init__(self, cache: ResponseCache, client: Classifier, *, config: PipelineConfig | None = None) -> None:
        self._cache = cache
        self._client = client
        self._config = config or PipelineConfig()

    async def handle(self, message: BaseModel) -> dict[str, Any]:
        if isinstance(message, ProcessElementsProgressive):
            return await self.process(message.payload, progressive=True)
        if isinstance(message, ProcessElements):
            return await self.process(message.payload, progressive=False)
        if isinstance(message, ClearCache):
            self._cache.clear()
            logger.info("Cache cleared")
            return {"success": True}
        if isinstance(message, GetCacheSize):
            return {"size": self._cache.size}
        raise TypeError(f"BackgroundCoordinator cannot handle {type(message).__name__}")

    async def process(self, payload: ProcessPayload, *, progressive: bool) -> dict[str, Any]:
        elements = payload.descriptors()
        batch = elements[: payload.chunk_size] if progressive else elements
        async with self._cache.lock_for(payload.page_url):
            entry = self._cache.get(payload.page_url)
            if entry is not None:
                logger.debug("Using cached data for %s", payload.page_url)
                return self._response(entry.data, len(entry.data), cached=True, elapsed_ms=0, progressive=False)

            start = time.perf_counter()
            outcome = await classify_with_fallback(
                self._client,
                batch,
                page_title=payload.page_title,
                page_url=payload.page_url,
                max_batch_size=self._config.max_batch_size,
                chunk_size=payload.chunk_size if progressive else None,
                fallback=classify_locally,
            )
            elapsed_ms = int((time.perf_counter() - start) * 1000)

            if outcome.degraded:
                return {
                    "success": False,
                    "error": ERROR_SERVICE_UNAVAILABLE,
                    "simplified": [item.to_dict() for item in outcome.items],
                    "cached": False,
                    "processingTime": elapsed_ms,
                }
            if not progressive:
                self._cache.put(payload.page_url, outcome.items)

        response = self._response(outcome.items, len(elements), cached=False, elapsed_ms=elapsed_ms, progressive=progressive)
        if progressive:
            total = max(payload.total_elements or 0, len(elements))
            response["processedCount"] = len(batch)
            response["remainingCount"] = total - len(batch)
        return response

    @staticmethod
    def _response(items, total: int, *, cached: bool, elapsed_ms: int, progressive: bool) -> dict[str, Any]:
        return {
            "success": True,
            "simplified": [item.to_dict() for item in items],
            "cached": cached,
            "processingTime": elapsed_ms,
            "totalElements": total,
            "essentialElements": len(items),
            "isPartial": progressive,
        }


# ---------------------------------------------------------------------------
# Channel
# ---------------------------------------------------------------------------


class MessageChannel:
    """Async request/response endpoint over a set of handlers."""

    def __init__(self, *handlers: MessageHandler) -> None:
        self._routes: dict[str, MessageHandler] = {}
        for handler in handlers:
            for kind in handler.kinds:
                self._routes[kind] = handler
        self._in_flight: str | None = None

    @property
    def busy(self) -> bool:
        return self._in_flight is not None

    async def request(self, raw: Mapping[str, Any] | BaseModel) -> dict[str, Any]:
        try:
            message = parse_message(raw)
        except ValidationError as e:
            logger.warning("Rejected invalid message: %d error(s)", e.error_count())
            return {"success": False, "error": "Invalid message"}

        kind: str = message.type  # type: ignore[attr-defined]
        handler = self._routes.get(kind)
        if handler is None:
            return {"success": False, "error": f"Unsupported message type: {kind}"}

        if kind not in LONG_RUNNING:
            return await handler.handle(message)

        if self._in_flight is not None:
            logger.info("Message %s rejected: %s in flight", kind, self._in_flight)
            return {"success": False, "error": ERROR_IN_PROGRESS}
        self._in_flight = kind
        try:
            return await handler.handle(message)
        finally:
            self._in_flight = None
