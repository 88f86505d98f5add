# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""CogniClear CLI: simplify, watch, set-endpoint, show-config commands.

Usage:
    python -m cogniclear.cli simplify --url URL [--mode MODE] [--format text|json] [--endpoint URL]
    python -m cogniclear.cli watch --url URL [--mode MODE] [--endpoint URL]
    python -m cogniclear.cli set-endpoint URL
    python -m cogniclear.cli set-endpoint --clear
    python -m cogniclear.cli show-config
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import os
import sys
from collections.abc import Callable

from . import ViewMode
from .config import ENDPOINT_ENV, EndpointResolver, PipelineConfig, SettingsStore
from .errors import CogniClearError


def _endpoint_source(endpoint: str | None) -> Callable[[], str]:
    """``--endpoint`` pins the URL for this run; otherwise resolve on every call."""
    if endpoint:
        return lambda: endpoint
    return EndpointResolver()


def cmd_simplify(args: argparse.Namespace) -> int:
    """Load a page, simplify it once, print the grouped view."""
    return asyncio.run(_simplify(args.url, ViewMode(args.mode), args.format, args.endpoint))


async def _simplify(url: str, mode: ViewMode, fmt: str, endpoint: str | None) -> int:
    from ._progress import print_step, status_spinner
    from .browser_session import BrowserSession
    from .cache import ResponseCache
    from .classifier_client import ClassifierClient
    from .context import PageContext
    from .overlay import TextOverlay
    from .pipeline import ProgressivePipeline
    from .presentation import PresentationStateMachine

    config = PipelineConfig.from_env()
    cache = ResponseCache(ttl=config.cache_ttl)
    overlay = TextOverlay(write=(lambda text: print(text + "\n")) if fmt == "text" else None)

    async with ClassifierClient(_endpoint_source(endpoint), timeout=config.request_timeout) as client:
        async with BrowserSession() as session:
            with status_spinner(f"Loading {url}..."):
                await session.navigate(url)
            machine = PresentationStateMachine(
                PageContext(page=session.page),
                ProgressivePipeline(client, cache, config=config),
                overlay,
            )
            await machine.set_mode(mode)
            response = await machine.toggle()

    if not response["success"]:
        print(f"Error: {response['error']}", file=sys.stderr)
        return 1

    result = machine.last_result
    if fmt == "json":
        print(json.dumps(result.to_response(), indent=2, ensure_ascii=False))
    print_step(f"Elements: {result.total_elements} ({result.discarded_count} over the cap)")
    print_step(f"Essential: {result.essential_elements}")
    print_step(f"Time: {result.processing_time_ms}ms{' (fallback)' if result.degraded else ''}")
    return 0


def cmd_watch(args: argparse.Namespace) -> int:
    """Open a visible browser with the in-page overlay and follow SPA navigation."""
    return asyncio.run(_watch(args.url, ViewMode(args.mode), args.endpoint))


async def _watch(url: str, mode: ViewMode, endpoint: str | None) -> int:
    from .browser_session import BrowserConfig, BrowserSession
    from .cache import ResponseCache
    from .classifier_client import ClassifierClient
    from .context import PageContext
    from .navigation import DocumentLoadHandler, NavigationWatcher, PlaywrightChangeNotifier
    from .overlay import PageOverlay
    from .pipeline import ProgressivePipeline
    from .presentation import PresentationStateMachine

    config = PipelineConfig.from_env()
    cache = ResponseCache(ttl=config.cache_ttl)
    cache.start_sweeper()
    try:
        async with ClassifierClient(_endpoint_source(endpoint), timeout=config.request_timeout) as client:
            async with BrowserSession(BrowserConfig(headless=False)) as session:
                await session.navigate(url)
                page = session.page
                overlay = PageOverlay(page)

                def build_machine() -> PresentationStateMachine:
                    return PresentationStateMachine(
                        PageContext(page=page),
                        ProgressivePipeline(client, cache, config=config),
                        overlay,
                    )

                machine = build_machine()
                await machine.set_mode(mode)
                response = await machine.toggle()
                if not response["success"]:
                    print(f"Error: {response['error']}", file=sys.stderr)
                    return 1

                watcher = NavigationWatcher(
                    machine,
                    config=config,
                    notifier=PlaywrightChangeNotifier(page, threshold=config.mutation_threshold),
                )
                await overlay.install_close_handler(lambda: watcher.machine.on_overlay_closed())
                await watcher.start()
                page.on("load", DocumentLoadHandler(watcher, build_machine))
                print("Watching for navigation; close the browser window to exit.", file=sys.stderr)
                try:
                    await page.wait_for_event("close", timeout=0)
                finally:
                    watcher.machine.context.close()
                    await watcher.stop()
    finally:
        await cache.shutdown()
    return 0


def cmd_set_endpoint(args: argparse.Namespace) -> int:
    store = SettingsStore()
    if args.clear:
        store.clear_endpoint()
        print("Endpoint override cleared.")
        return 0
    if not args.endpoint:
        print("Error: an endpoint URL or --clear is required.", file=sys.stderr)
        return 1
    store.set_endpoint(args.endpoint)
    print(f"Endpoint set to {args.endpoint}")
    return 0


def cmd_show_config(args: argparse.Namespace) -> int:
    store = SettingsStore()
    if os.environ.get(ENDPOINT_ENV, "").strip():
        source = "env"
    elif store.get_endpoint():
        source = "settings"
    else:
        source = "default"
    config = PipelineConfig.from_env()
    print(
        json.dumps(
            {
                "endpoint": EndpointResolver(store)(),
                "endpointSource": source,
                "settingsPath": str(store.path),
                "pipeline": dataclasses.asdict(config),
            },
            indent=2,
        )
    )
    return 0


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="CogniClear CLI", prog="python -m cogniclear.cli")
    parser.add_argument("-v", "--verbose", action="store_true")
    subparsers = parser.add_subparsers(dest="command", required=True)

    modes = [m.value for m in ViewMode]

    _simplify_epilog = """\
examples:
  %(prog)s --url https://example.com                 Grouped text view
  %(prog)s --url https://example.com --format json   Classification response as JSON
  %(prog)s --url https://example.com --mode variant_b
"""
    p_simplify = subparsers.add_parser(
        "simplify",
        help="Simplify a page and print the grouped view",
        epilog=_simplify_epilog,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p_simplify.add_argument("--url", type=str, required=True, metavar="URL", help="Page to simplify")
    p_simplify.add_argument("--mode", choices=modes, default=ViewMode.NORMAL.value, help="View variant")
    p_simplify.add_argument("--format", choices=["text", "json"], default="text", help="Output format (stdout)")
    p_simplify.add_argument("--endpoint", type=str, metavar="URL", help="Classification endpoint for this run")

    p_watch = subparsers.add_parser("watch", help="Open a browser with the simplified overlay and follow navigation")
    p_watch.add_argument("--url", type=str, required=True, metavar="URL")
    p_watch.add_argument("--mode", choices=modes, default=ViewMode.NORMAL.value)
    p_watch.add_argument("--endpoint", type=str, metavar="URL")

    p_set = subparsers.add_parser("set-endpoint", help="Persist the classification endpoint override")
    p_set.add_argument("endpoint", nargs="?", metavar="URL")
    p_set.add_argument("--clear", action="store_true", help="Remove the stored override")

    subparsers.add_parser("show-config", help="Show the resolved endpoint and pipeline settings")

    commands = {
        "simplify": cmd_simplify,
        "watch": cmd_watch,
        "set-endpoint": cmd_set_endpoint,
        "show-config": cmd_show_config,
    }

    args = parser.parse_args(argv)

    from .logging_config import configure

    configure(level="DEBUG" if args.verbose else os.environ.get("COGNICLEAR_LOG_LEVEL", "WARNING"))

    try:
        code = commands[args.command](args)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(130)
    except CogniClearError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
