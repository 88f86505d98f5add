# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Single-page-app navigation detection with a debounced refresh.

Two signals feed one debounce timer:

- URL polling every ``poll_interval`` (primary)
- large DOM mutation batches (> ``mutation_threshold`` nodes added or
  removed at once) from a :class:`ChangeNotifier` (backup)

Every signal restarts the timer, so a burst of changes, including the
small false positives an ordinary button click produces, collapses into
one check ``debounce_seconds`` after the last signal.  The check refreshes
the view only while it is Simplified.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from typing import Any, Protocol

from .config import PipelineConfig
from .pipeline import ERROR_IN_PROGRESS
from .presentation import PresentationStateMachine

logger = logging.getLogger(__name__)

MUTATION_BINDING = "__cogniclearMutations"

MutationCallback = Callable[[int], Any]


class ChangeNotifier(Protocol):
    """Host capability reporting DOM mutation batch sizes."""

    async def start(self, callback: MutationCallback) -> None: ...

    async def stop(self) -> None: ...


# ---------------------------------------------------------------------------
# Playwright-backed notifier
# ---------------------------------------------------------------------------

_OBSERVER_JS = """\
([binding, threshold]) => {
  if (window.__cogniclearObserver) window.__cogniclearObserver.disconnect();
  const observer = new MutationObserver((records) => {
    let changed = 0;
    for (const r of records) changed += r.addedNodes.length + r.removedNodes.length;
    if (changed > threshold && typeof window[binding] === "function") window[binding](changed);
  });
  observer.observe(document.body || document.documentElement, {childList: true, subtree: true});
  window.__cogniclearObserver = observer;
  return true;
}
"""

_DISCONNECT_JS = """\
() => {
  if (window.__cogniclearObserver) {
    window.__cogniclearObserver.disconnect();
    window.__cogniclearObserver = null;
  }
}
"""


class PlaywrightChangeNotifier:
    """Installs a MutationObserver that calls back into Python via expose_binding."""

    def __init__(self, page: Any, threshold: int = 10) -> None:
        self._page = page
        self._threshold = threshold
        self._bound = False

    async def start(self, callback: MutationCallback) -> None:
        if not self._bound:
            await self._page.expose_binding(MUTATION_BINDING, lambda _source, count: callback(int(count)))
            self._bound = True
        await self._page.evaluate(_OBSERVER_JS, [MUTATION_BINDING, self._threshold])

    async def stop(self) -> None:
        with contextlib.suppress(Exception):
            await self._page.evaluate(_DISCONNECT_JS)


# ---------------------------------------------------------------------------
# Watcher
# ---------------------------------------------------------------------------


class NavigationWatcher:
    """Watches one page and refreshes its simplified view on SPA navigation.

    Refreshes run in their own task.  A signal that arrives while a refresh
    is running is not dropped: the refresh re-checks when it finishes and
    runs again for the newer route.
    """

    def __init__(
        self,
        machine: PresentationStateMachine,
        *,
        config: PipelineConfig | None = None,
        notifier: ChangeNotifier | None = None,
        current_url: Callable[[], str] | None = None,
    ) -> None:
        self._machine = machine
        self._config = config or PipelineConfig()
        self._notifier = notifier
        self._current_url = current_url or (lambda: self._machine.context.url)
        self._last_url = ""
        self._url_changed = False
        self._mutation_seen = False
        self._deferred = False
        self._poll_task: asyncio.Task | None = None
        self._debounce_task: asyncio.Task | None = None
        self._refresh_task: asyncio.Task | None = None
        self.refresh_count = 0

    @property
    def machine(self) -> PresentationStateMachine:
        return self._machine

    @property
    def running(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    @property
    def refreshing(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._last_url = self._current_url()
        self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop())
        if self._notifier is not None:
            await self._notifier.start(self.on_mutations)
        logger.debug("Navigation watcher started at %s", self._last_url)

    async def stop(self) -> None:
        if self._notifier is not None:
            await self._notifier.stop()
        await self._cancel_pending()
        await _cancel(self._poll_task)
        self._poll_task = None

    async def reset(self, machine: PresentationStateMachine) -> None:
        """Follow a new document: drop pending work, watch *machine* from here on.

        The old document's MutationObserver died with it, so the notifier
        is installed again.
        """
        await self._cancel_pending()
        self._machine = machine
        self._last_url = self._current_url()
        self._url_changed = False
        self._mutation_seen = False
        self._deferred = False
        if self._notifier is not None and self.running:
            await self._notifier.start(self.on_mutations)
        logger.debug("Navigation watcher reset at %s", self._last_url)

    async def _cancel_pending(self) -> None:
        for task in (self._debounce_task, self._refresh_task):
            await _cancel(task)
        self._debounce_task = None
        self._refresh_task = None

    # -- Signals --

    def on_mutations(self, changed_nodes: int) -> None:
        """Mutation-batch callback; only large batches count as a signal."""
        if changed_nodes <= self._config.mutation_threshold:
            return
        self._mutation_seen = True
        self._signal("mutation")

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.poll_interval)
            url = self._current_url()
            if url != self._last_url:
                logger.debug("URL changed: %s -> %s", self._last_url, url)
                self._last_url = url
                self._url_changed = True
                self._signal("url")

    def _signal(self, reason: str) -> None:
        task = self._debounce_task
        if task is not None and not task.done():
            task.cancel()
        self._debounce_task = asyncio.get_running_loop().create_task(self._debounced(reason))

    @property
    def _pending(self) -> bool:
        return self._url_changed or self._mutation_seen

    async def _debounced(self, reason: str) -> None:
        await asyncio.sleep(self._config.debounce_seconds)
        url = self._current_url()
        if url != self._last_url:
            self._last_url = url
            self._url_changed = True
        if not self._pending:
            return
        if self.refreshing:
            # Picked up by the running refresh once it finishes
            self._deferred = True
            return
        if not self._machine.is_simplified:
            logger.debug("Navigation detected (%s) while not simplified; ignoring", reason)
            self._url_changed = False
            self._mutation_seen = False
            return
        self._refresh_task = asyncio.get_running_loop().create_task(self._refresh(reason))

    async def _refresh(self, reason: str) -> None:
        while True:
            self._url_changed = False
            self._mutation_seen = False
            self._deferred = False
            self.refresh_count += 1
            logger.info("Navigation detected (%s); refreshing simplified view for %s", reason, self._last_url)
            try:
                result = await self._machine.refresh()
            except Exception:
                logger.warning("Navigation refresh failed", exc_info=True)
                return
            if result.get("error") == ERROR_IN_PROGRESS:
                # A toggle owns the page right now; try again after another debounce
                logger.info("Navigation refresh postponed: processing in progress")
                self._url_changed = True
                self._signal("retry")
                return
            if not result.get("success"):
                logger.warning("Navigation refresh did not complete: %s", result.get("error"))
            if self._current_url() != self._last_url:
                self._last_url = self._current_url()
                self._url_changed = True
                self._deferred = True
            if not (self._deferred and self._pending and self._machine.is_simplified):
                return
            reason = "deferred"


async def _cancel(task: asyncio.Task | None) -> None:
    if task is None or task.done():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


# ---------------------------------------------------------------------------
# Full document loads
# ---------------------------------------------------------------------------


class DocumentLoadHandler:
    """Starts a fresh page context when the main frame loads a new document.

    Register on Playwright's ``load`` event.  The old context is closed and
    its state discarded; when *resimplify* is set and the old view was
    Simplified, the new page is simplified again in the same mode.
    """

    def __init__(
        self,
        watcher: NavigationWatcher,
        build_machine: Callable[[], PresentationStateMachine],
        *,
        resimplify: bool = True,
    ) -> None:
        self._watcher = watcher
        self._build_machine = build_machine
        self._resimplify = resimplify
        self.loads = 0

    async def __call__(self, *_args: Any) -> None:
        old = self._watcher.machine
        was_simplified = old.is_simplified
        mode = old.mode
        old.context.close()

        machine = self._build_machine()
        self.loads += 1
        try:
            await self._watcher.reset(machine)
            if self._resimplify and was_simplified:
                await machine.set_mode(mode)
                response = await machine.toggle()
                if not response.get("success"):
                    logger.warning("New document not simplified: %s", response.get("error"))
        except Exception:
            logger.warning("Handling new document load failed", exc_info=True)
