# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for the two-phase progressive pipeline.

Covers: batching and capping, partial-then-final delivery, ordering under
latency, re-entrancy rejection, cache hits, fallback on service failure,
and failure states.
"""

from __future__ import annotations

import asyncio

import pytest
import structlog

from cogniclear import Category, ClassifiedItem, Importance
from cogniclear.cache import ResponseCache
from cogniclear.config import PipelineConfig
from cogniclear.errors import ServiceError
from cogniclear.pipeline import (
    ERROR_EXTRACTION_FAILED,
    ERROR_IN_PROGRESS,
    ERROR_NO_ELEMENTS,
    PipelineResult,
    PipelineState,
    ProgressivePipeline,
    ResultStatus,
    classify_with_fallback,
)
from tests._fakes import FakeClassifier, FakePage, make_element, make_raw


def _page(n: int, url: str = "https://shop.test/list") -> FakePage:
    return FakePage(url=url, title="Shop", raw_elements=[make_raw(i) for i in range(n)])


class _Recorder:
    def __init__(self) -> None:
        self.results: list[PipelineResult] = []

    def __call__(self, result: PipelineResult) -> None:
        self.results.append(result)


# =========================================================================
# Scenarios
# =========================================================================


class TestProgressiveRun:
    async def test_120_elements(self, cache, classifier):
        page = _page(120)
        updates = _Recorder()
        pipeline = ProgressivePipeline(classifier, cache)

        result = await pipeline.run(page, on_update=updates)

        assert [len(call) for call in classifier.calls] == [5, 50, 45]
        assert classifier.chunk_sizes == [5, None, None]

        partial, final = updates.results
        assert partial.status is ResultStatus.PARTIAL
        assert [it.id for it in partial.items] == [f"cogni-element-{i}" for i in range(5)]
        assert partial.processed_count == 5
        assert partial.remaining_count == 95
        assert partial.total_elements == 100

        assert final is result
        assert result.status is ResultStatus.COMPLETE
        assert [it.id for it in result.items] == [f"cogni-element-{i}" for i in range(100)]
        assert result.discarded_count == 20
        assert result.remaining_count == 0
        assert not result.cached

        entry = cache.get("https://shop.test/list")
        assert [it.id for it in entry.data] == [f"cogni-element-{i}" for i in range(100)]
        assert pipeline.state is PipelineState.COMPLETE
        assert pipeline.result is result

    async def test_small_page_single_call_no_partial(self, cache, classifier):
        updates = _Recorder()
        result = await ProgressivePipeline(classifier, cache).run(_page(3), on_update=updates)
        assert len(classifier.calls) == 1
        assert [r.status for r in updates.results] == [ResultStatus.COMPLETE]
        assert len(result.items) == 3

    async def test_service_503_uses_fallback(self, cache):
        classifier = FakeClassifier(fail=True)
        page = _page(3)
        page.raw_elements[0]["innerText"] = "Submit"
        result = await ProgressivePipeline(classifier, cache).run(page)

        assert result.success
        assert result.error is None
        assert result.degraded
        assert not result.cached
        assert len(result.items) == 3
        assert result.items[0].simplified_text == "Submit Form"
        assert all(it.is_essential for it in result.items)
        assert cache.size == 0

    async def test_first_chunk_precedes_remainder_under_latency(self, cache):
        # First chunk is slow, remainder is instant
        classifier = FakeClassifier(delay=lambda batch: 0.05 if len(batch) == 5 else 0.0)
        updates = _Recorder()
        await ProgressivePipeline(classifier, cache).run(_page(20), on_update=updates)

        assert [len(c) for c in classifier.calls] == [5, 15]
        assert classifier.started[1] - classifier.started[0] >= 0.04
        assert [r.status for r in updates.results] == [ResultStatus.PARTIAL, ResultStatus.COMPLETE]
        final_ids = [it.id for it in updates.results[-1].items]
        assert final_ids[:5] == [it.id for it in updates.results[0].items]

    async def test_async_update_callback_awaited(self, cache, classifier):
        seen = []

        async def on_update(result):
            await asyncio.sleep(0)
            seen.append(result.status)

        await ProgressivePipeline(classifier, cache).run(_page(8), on_update=on_update)
        assert seen == [ResultStatus.PARTIAL, ResultStatus.COMPLETE]

    async def test_run_context_bound(self, cache):
        bound = []

        class _Spy(FakeClassifier):
            async def classify(self, batch, page_title, page_url="", chunk_size=None):
                bound.append(structlog.contextvars.get_contextvars())
                return await super().classify(batch, page_title, page_url, chunk_size)

        await ProgressivePipeline(_Spy(), cache).run(_page(2))
        assert bound[0]["page_key"] == "https://shop.test/list"
        assert len(bound[0]["run_id"]) == 8
        assert "run_id" not in structlog.contextvars.get_contextvars()


class TestCache:
    async def test_second_run_served_from_cache(self, cache, classifier):
        pipeline = ProgressivePipeline(classifier, cache)
        first = await pipeline.run(_page(12))
        calls = len(classifier.calls)

        updates = _Recorder()
        second = await pipeline.run(_page(12), on_update=updates)

        assert second.cached
        assert second.processing_time_ms == 0
        assert len(classifier.calls) == calls
        assert second.items == first.items
        assert [r.cached for r in updates.results] == [True]

    async def test_cache_hit_skips_extraction(self, cache, classifier):
        page = _page(4)
        pipeline = ProgressivePipeline(classifier, cache)
        await pipeline.run(page)
        await pipeline.run(page)
        assert page.extraction_calls() == 1

    async def test_cache_shared_by_key_not_query(self, cache, classifier):
        await ProgressivePipeline(classifier, cache).run(_page(4, url="https://shop.test/s?q=a"))
        result = await ProgressivePipeline(classifier, cache).run(_page(4, url="https://shop.test/s?q=b"))
        assert result.cached

    async def test_expired_entry_recomputed(self, classifier):
        now = [0.0]
        cache = ResponseCache(ttl=1800, clock=lambda: now[0])
        pipeline = ProgressivePipeline(classifier, cache)
        await pipeline.run(_page(2))
        now[0] = 1800.0
        result = await pipeline.run(_page(2))
        assert not result.cached
        assert len(classifier.calls) == 2

    async def test_concurrent_contexts_same_page_single_computation(self, cache):
        classifier = FakeClassifier(delay=lambda batch: 0.02)
        a = ProgressivePipeline(classifier, cache)
        b = ProgressivePipeline(classifier, cache)
        ra, rb = await asyncio.gather(a.run(_page(3)), b.run(_page(3)))
        assert len(classifier.calls) == 1
        assert sorted([ra.cached, rb.cached]) == [False, True]
        assert cache.stats.writes == 1


class TestReentrancy:
    async def test_second_run_rejected_while_loading(self, cache):
        classifier = FakeClassifier(delay=lambda batch: 0.05)
        pipeline = ProgressivePipeline(classifier, cache)
        page = _page(8)

        first = asyncio.create_task(pipeline.run(page))
        await asyncio.sleep(0.01)
        assert pipeline.is_running

        rejected = await pipeline.run(page)
        assert rejected.status is ResultStatus.REJECTED
        assert rejected.rejected
        assert rejected.error == ERROR_IN_PROGRESS

        done = await first
        assert done.status is ResultStatus.COMPLETE
        assert len(classifier.calls) == 2  # first chunk + remainder, nothing from the rejected run

    async def test_new_run_accepted_after_failure(self, cache, classifier):
        pipeline = ProgressivePipeline(classifier, cache)
        failed = await pipeline.run(_page(0))
        assert pipeline.state is PipelineState.FAILED
        ok = await pipeline.run(_page(2, url="https://shop.test/other"))
        assert failed.status is ResultStatus.FAILED
        assert ok.success


class TestFailures:
    async def test_no_elements(self, cache, classifier):
        pipeline = ProgressivePipeline(classifier, cache)
        result = await pipeline.run(_page(0))
        assert result.status is ResultStatus.FAILED
        assert result.error == ERROR_NO_ELEMENTS
        assert classifier.calls == []
        assert pipeline.result is None

    async def test_extraction_exception(self, cache, classifier):
        page = _page(3)
        page.fail_extraction = RuntimeError("Execution context was destroyed")
        result = await ProgressivePipeline(classifier, cache).run(page)
        assert result.error == ERROR_EXTRACTION_FAILED
        assert not result.success

    async def test_callback_error_propagates_and_frees_pipeline(self, cache, classifier):
        def boom(result):
            raise RuntimeError("render failed")

        pipeline = ProgressivePipeline(classifier, cache)
        with pytest.raises(RuntimeError):
            await pipeline.run(_page(8), on_update=boom)
        assert pipeline.state is PipelineState.FAILED
        assert not pipeline.is_running

    async def test_unknown_and_noise_items_dropped(self, cache):
        class _Chatty(FakeClassifier):
            async def classify(self, batch, page_title, page_url="", chunk_size=None):
                items = await super().classify(batch, page_title, page_url, chunk_size)
                extra = ClassifiedItem(id="ghost", original_text="", simplified_text="Ghost", category=Category.HELP)
                return [extra, *reversed(items)]

        classifier = _Chatty(noise_ids=frozenset({"cogni-element-1"}))
        result = await ProgressivePipeline(classifier, cache).run(_page(3))
        assert [it.id for it in result.items] == ["cogni-element-0", "cogni-element-2"]


class TestClearResult:
    async def test_clear_result_keeps_cache(self, cache, classifier):
        pipeline = ProgressivePipeline(classifier, cache)
        await pipeline.run(_page(2))
        pipeline.clear_result()
        assert pipeline.result is None
        assert pipeline.state is PipelineState.IDLE
        assert cache.size == 1


# =========================================================================
# classify_with_fallback
# =========================================================================


class TestClassifyWithFallback:
    async def test_only_failing_batch_degrades(self):
        class _SecondBatchFails(FakeClassifier):
            async def classify(self, batch, page_title, page_url="", chunk_size=None):
                if len(self.calls) == 1:
                    self.calls.append(list(batch))
                    raise ServiceError("timeout")
                return await super().classify(batch, page_title, page_url, chunk_size)

        elements = [make_element(i) for i in range(7)]
        outcome = await classify_with_fallback(_SecondBatchFails(), elements, page_title="t", max_batch_size=3)
        assert outcome.degraded
        assert [it.id for it in outcome.items] == [e.id for e in elements]
        texts = [it.simplified_text for it in outcome.items]
        assert texts[0].startswith("Go: ")
        assert texts[3] == "Button 3"  # fallback keeps the label
        assert texts[6].startswith("Go: ")

    async def test_non_service_errors_propagate(self):
        class _Broken(FakeClassifier):
            async def classify(self, *args, **kwargs):
                raise KeyError("bug")

        with pytest.raises(KeyError):
            await classify_with_fallback(_Broken(), [make_element(0)], page_title="t")


# =========================================================================
# Wire form
# =========================================================================


class TestToResponse:
    def test_success_shape(self):
        item = ClassifiedItem(id="a", original_text="x", simplified_text="X", category=Category.ACTION)
        result = PipelineResult(
            status=ResultStatus.PARTIAL,
            items=(item,),
            processing_time_ms=40,
            total_elements=10,
            processed_count=5,
            remaining_count=5,
        )
        response = result.to_response()
        assert response["success"] is True
        assert response["isPartial"] is True
        assert response["essentialElements"] == 1
        assert response["processedCount"] == 5
        assert response["remainingCount"] == 5
        assert response["simplified"][0]["importance"] == Importance.ESSENTIAL.value

    def test_failure_shape(self):
        result = PipelineResult(status=ResultStatus.FAILED, error=ERROR_NO_ELEMENTS, processing_time_ms=3)
        assert result.to_response() == {"success": False, "error": "no_elements", "processingTime": 3}


class TestConfigPassthrough:
    async def test_custom_sizes(self, cache, classifier):
        config = PipelineConfig(first_chunk_size=2, max_elements=10, max_batch_size=4)
        await ProgressivePipeline(classifier, cache, config=config).run(_page(12))
        assert [len(c) for c in classifier.calls] == [2, 4, 4]
