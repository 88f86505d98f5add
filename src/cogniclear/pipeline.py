# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Two-phase progressive classification of a page's interactive elements.

Per invocation::

    IDLE -> LOADING_FIRST_CHUNK -> FIRST_CHUNK_READY -> LOADING_REMAINDER -> COMPLETE
                     \\________________________\\______________________> FAILED

1. Cache hit: complete immediately (processing_time_ms=0, cached=True).
2. Extract; nothing found -> FAILED ("no_elements").
3. Cap at max_elements (100); first chunk = first 5, remainder = the rest.
4. Classify the first chunk and hand a partial result to ``on_update``.
5. Classify the remainder in batches of at most 50, merge after the first
   chunk, cache the merged sequence, report the final result.

Service failures never fail the run: the affected batch is classified by
the keyword fallback instead and the result is flagged ``degraded``.
Degraded results are not cached, so a recovered service is used on the
next run.

A run started while another is loading is rejected, not queued.
"""

from __future__ import annotations

import inspect
import logging
import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import structlog

from . import ClassifiedItem, ElementDescriptor
from .cache import ResponseCache, normalize_page_key
from .classifier_client import Classifier
from .config import PipelineConfig
from .errors import ExtractionEmptyError, ServiceError
from .extractor import Document, extract
from .fallback import classify_locally
from .pipeline_timer import PipelineTimer

logger = logging.getLogger(__name__)

ERROR_NO_ELEMENTS = "no_elements"
ERROR_EXTRACTION_FAILED = "extraction_failed"
ERROR_IN_PROGRESS = "already in progress"

Extractor = Callable[[Document], Awaitable[list[ElementDescriptor]]]
LocalClassifier = Callable[[Sequence[ElementDescriptor]], list[ClassifiedItem]]
UpdateCallback = Callable[["PipelineResult"], Any]


class PipelineState(StrEnum):
    IDLE = "idle"
    LOADING_FIRST_CHUNK = "loading_first_chunk"
    FIRST_CHUNK_READY = "first_chunk_ready"
    LOADING_REMAINDER = "loading_remainder"
    COMPLETE = "complete"
    FAILED = "failed"


# States in which a new run may start
_ACCEPTING = frozenset({PipelineState.IDLE, PipelineState.COMPLETE, PipelineState.FAILED})


class ResultStatus(StrEnum):
    PARTIAL = "partial"
    COMPLETE = "complete"
    FAILED = "failed"
    REJECTED = "rejected"


@dataclass(frozen=True, slots=True)
class PipelineResult:
    """Snapshot reported to the caller (partial or final)."""

    status: ResultStatus
    items: tuple[ClassifiedItem, ...] = ()
    cached: bool = False
    degraded: bool = False  # some batch came from the keyword fallback
    processing_time_ms: int = 0
    total_elements: int = 0
    processed_count: int = 0
    remaining_count: int = 0
    discarded_count: int = 0  # extracted beyond max_elements
    error: str | None = None
    stage_ms: dict[str, int] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status in (ResultStatus.PARTIAL, ResultStatus.COMPLETE)

    @property
    def partial(self) -> bool:
        return self.status == ResultStatus.PARTIAL

    @property
    def rejected(self) -> bool:
        return self.status == ResultStatus.REJECTED

    @property
    def essential_elements(self) -> int:
        return len(self.items)

    def to_response(self) -> dict[str, Any]:
        """Wire form used by the PROCESS_ELEMENTS* message handlers."""
        if not self.success:
            return {"success": False, "error": self.error or "unknown", "processingTime": self.processing_time_ms}
        return {
            "success": True,
            "simplified": [item.to_dict() for item in self.items],
            "processingTime": self.processing_time_ms,
            "totalElements": self.total_elements,
            "essentialElements": self.essential_elements,
            "cached": self.cached,
            "isPartial": self.partial,
            "processedCount": self.processed_count,
            "remainingCount": self.remaining_count,
        }


# ---------------------------------------------------------------------------
# Batch classification with local recovery
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class BatchOutcome:
    items: tuple[ClassifiedItem, ...]
    degraded: bool


def _align(batch: Sequence[ElementDescriptor], items: Sequence[ClassifiedItem]) -> list[ClassifiedItem]:
    """Keep essential items that reference *batch*, one per id, in input order."""
    order = {element.id: i for i, element in enumerate(batch)}
    kept: dict[str, ClassifiedItem] = {}
    unknown = 0
    for item in items:
        if item.id not in order:
            unknown += 1
            continue
        if item.is_essential:
            kept.setdefault(item.id, item)
    if unknown:
        logger.warning("Dropped %d classified item(s) with unknown ids", unknown)
    return sorted(kept.values(), key=lambda it: order[it.id])


async def classify_with_fallback(
    client: Classifier,
    elements: Sequence[ElementDescriptor],
    *,
    page_title: str,
    page_url: str = "",
    max_batch_size: int = 50,
    chunk_size: int | None = None,
    fallback: LocalClassifier = classify_locally,
) -> BatchOutcome:
    """Classify *elements* in sequential batches; failed batches use *fallback*."""
    merged: list[ClassifiedItem] = []
    degraded = False
    for start in range(0, len(elements), max_batch_size):
        batch = elements[start : start + max_batch_size]
        try:
            items = await client.classify(
                [element.compact() for element in batch],
                page_title,
                page_url=page_url,
                chunk_size=chunk_size,
            )
        except ServiceError as e:
            logger.warning("Classifier unavailable (%s); fallback for %d element(s)", e, len(batch))
            items = fallback(batch)
            degraded = True
        merged.extend(_align(batch, items))
    return BatchOutcome(items=tuple(merged), degraded=degraded)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


async def _emit(callback: UpdateCallback | None, result: PipelineResult) -> None:
    if callback is None:
        return
    ret = callback(result)
    if inspect.isawaitable(ret):
        await ret


async def _page_title(page: Document) -> str:
    getter = getattr(page, "title", None)
    if getter is None:
        return ""
    try:
        return str(await getter() or "")
    except Exception:
        logger.debug("Could not read page title", exc_info=True)
        return ""


class ProgressivePipeline:
    """Orchestrates cache lookup, extraction and two-phase classification.

    One instance per page context.  The ResponseCache may be shared.
    """

    def __init__(
        self,
        client: Classifier,
        cache: ResponseCache,
        *,
        config: PipelineConfig | None = None,
        extractor: Extractor = extract,
        fallback: LocalClassifier = classify_locally,
    ) -> None:
        self._client = client
        self._cache = cache
        self._config = config or PipelineConfig()
        self._extract = extractor
        self._fallback = fallback
        self._state = PipelineState.IDLE
        self._result: PipelineResult | None = None

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state not in _ACCEPTING

    @property
    def result(self) -> PipelineResult | None:
        """Last successful final result held in memory."""
        return self._result

    @property
    def cache(self) -> ResponseCache:
        return self._cache

    def clear_result(self) -> None:
        """Forget the in-memory result; the cache entry is left alone."""
        self._result = None
        if not self.is_running:
            self._state = PipelineState.IDLE

    async def run(
        self,
        page: Document,
        *,
        page_url: str | None = None,
        page_title: str | None = None,
        on_update: UpdateCallback | None = None,
    ) -> PipelineResult:
        """Run the pipeline for *page* and return the final result.

        ``on_update`` receives the partial first-chunk result (when a
        remainder exists) and then the final one.
        """
        if self.is_running:
            logger.info("Processing already in progress (state=%s)", self._state.value)
            return PipelineResult(status=ResultStatus.REJECTED, error=ERROR_IN_PROGRESS)

        self._state = PipelineState.LOADING_FIRST_CHUNK
        url = page_url if page_url is not None else str(getattr(page, "url", "") or "")
        with structlog.contextvars.bound_contextvars(run_id=uuid.uuid4().hex[:8], page_key=normalize_page_key(url)):
            try:
                result = await self._run(page, url, page_title, on_update)
            except BaseException:
                self._state = PipelineState.FAILED
                raise

        self._result = result if result.success else None
        return result

    async def _run(
        self,
        page: Document,
        url: str,
        page_title: str | None,
        on_update: UpdateCallback | None,
    ) -> PipelineResult:
        cfg = self._config
        timer = PipelineTimer()
        timer.stage("cache_lookup")

        async with self._cache.lock_for(url):
            entry = self._cache.get(url)
            if entry is not None:
                timer.finalize()
                logger.info("Using cached data (%d items)", len(entry.data))
                result = PipelineResult(
                    status=ResultStatus.COMPLETE,
                    items=entry.data,
                    cached=True,
                    processing_time_ms=0,
                    total_elements=len(entry.data),
                    processed_count=len(entry.data),
                )
                self._state = PipelineState.COMPLETE
                await _emit(on_update, result)
                return result

            timer.stage("extraction")
            try:
                elements = await self._extract(page)
                if not elements:
                    raise ExtractionEmptyError("No interactive elements found")
            except ExtractionEmptyError as e:
                logger.warning("%s", e)
                return self._fail(timer, ERROR_NO_ELEMENTS)
            except Exception as e:
                logger.warning("Extraction failed: %s", e)
                return self._fail(timer, ERROR_EXTRACTION_FAILED)

            title = page_title if page_title is not None else await _page_title(page)
            capped = list(elements[: cfg.max_elements])
            discarded = len(elements) - len(capped)
            if discarded:
                logger.info("Discarding %d element(s) beyond the %d-element cap", discarded, cfg.max_elements)
            first_chunk = capped[: cfg.first_chunk_size]
            remainder = capped[cfg.first_chunk_size :]

            # Phase 1: first chunk
            timer.stage("first_chunk")
            first = await classify_with_fallback(
                self._client,
                first_chunk,
                page_title=title,
                page_url=url,
                max_batch_size=cfg.max_batch_size,
                chunk_size=cfg.first_chunk_size,
                fallback=self._fallback,
            )
            self._state = PipelineState.FIRST_CHUNK_READY
            logger.info(
                "First chunk ready: %d/%d essential in %dms%s",
                len(first.items),
                len(first_chunk),
                timer.total_ms,
                " (fallback)" if first.degraded else "",
            )

            if not remainder:
                return await self._complete(
                    url, first.items, first.degraded, timer, len(capped), discarded, on_update
                )

            await _emit(
                on_update,
                PipelineResult(
                    status=ResultStatus.PARTIAL,
                    items=first.items,
                    degraded=first.degraded,
                    processing_time_ms=timer.total_ms,
                    total_elements=len(capped),
                    processed_count=len(first_chunk),
                    remaining_count=len(remainder),
                    discarded_count=discarded,
                    stage_ms=timer.elapsed_per_stage(),
                ),
            )

            # Phase 2: remainder, dispatched only after the first chunk settled
            self._state = PipelineState.LOADING_REMAINDER
            timer.stage("remainder")
            rest = await classify_with_fallback(
                self._client,
                remainder,
                page_title=title,
                page_url=url,
                max_batch_size=cfg.max_batch_size,
                fallback=self._fallback,
            )
            return await self._complete(
                url,
                first.items + rest.items,
                first.degraded or rest.degraded,
                timer,
                len(capped),
                discarded,
                on_update,
            )

    async def _complete(
        self,
        url: str,
        items: tuple[ClassifiedItem, ...],
        degraded: bool,
        timer: PipelineTimer,
        total: int,
        discarded: int,
        on_update: UpdateCallback | None,
    ) -> PipelineResult:
        total_ms = timer.finalize()
        if degraded:
            logger.info("Result partly from fallback; not cached")
        else:
            self._cache.put(url, items)
        result = PipelineResult(
            status=ResultStatus.COMPLETE,
            items=items,
            degraded=degraded,
            processing_time_ms=total_ms,
            total_elements=total,
            processed_count=total,
            remaining_count=0,
            discarded_count=discarded,
            stage_ms=timer.elapsed_per_stage(),
        )
        self._state = PipelineState.COMPLETE
        logger.info("Pipeline complete: %d essential of %d in %dms", len(items), total, total_ms)
        await _emit(on_update, result)
        return result

    def _fail(self, timer: PipelineTimer, error: str) -> PipelineResult:
        total_ms = timer.finalize()
        self._state = PipelineState.FAILED
        return PipelineResult(
            status=ResultStatus.FAILED,
            error=error,
            processing_time_ms=total_ms,
            stage_ms=timer.elapsed_per_stage(),
        )
