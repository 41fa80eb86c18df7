"""Command-line access to the companion service and the sync job.

Usage:
    python -m docbridge health                  # one probe, print status
    python -m docbridge health --watch          # keep monitoring until Ctrl-C
    python -m docbridge open "Report" --revision "Rev.1" --type pdf
    python -m docbridge roots list
    python -m docbridge roots add "C:\\Docs"
    python -m docbridge sync                    # start a job and follow it

Settings come from ``DOCBRIDGE_*`` environment variables (see
:mod:`docbridge.config`).
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from docbridge.availability import CompanionAvailability
from docbridge.config import Settings, load_settings
from docbridge.exceptions import UserInputError
from docbridge.models import (
    DocumentRef,
    MonitoringConfig,
    RootsResult,
    ServiceHealthStatus,
    SyncProgress,
)
from docbridge.monitor import HealthMonitor
from docbridge.opener import OpenRequestClient
from docbridge.sync_client import SyncStreamClient


def _print_status(status: ServiceHealthStatus) -> None:
    print(json.dumps(status.to_dict(), indent=2))


def _print_roots(result: RootsResult) -> None:
    if result.roots is None:
        return
    for root in result.roots.roots:
        print(f"  {root}")
    company = result.roots.company
    if company is not None and company.name:
        print(f"Company: {company.name} ({company.code or '-'})")


# ── health ───────────────────────────────────────────────────────


def _build_monitor(
    opener: OpenRequestClient,
    settings: Settings,
    config: MonitoringConfig | None = None,
) -> HealthMonitor:
    return HealthMonitor(
        opener,
        availability=CompanionAvailability(
            opener, cache_ttl_ms=settings.availability_cache_ttl_ms
        ),
        config=config or MonitoringConfig.from_settings(settings),
    )


async def _health(args: argparse.Namespace, settings: Settings) -> bool:
    config = MonitoringConfig.from_settings(settings)
    if args.interval:
        config = config.merged(check_interval_ms=args.interval)

    async with OpenRequestClient(settings.companion_url, debug=settings.debug) as opener:
        monitor = _build_monitor(opener, settings, config)
        if not args.watch:
            status = await monitor.force_health_check()
            _print_status(status)
            return status.is_available

        monitor.add_status_listener(_print_status)
        monitor.start_monitoring()
        try:
            await asyncio.Event().wait()
        finally:
            await monitor.close()
    return True


def cmd_health(args: argparse.Namespace) -> None:
    """Probe the companion once, or keep monitoring with --watch."""
    settings = load_settings()
    try:
        ok = asyncio.run(_health(args, settings))
    except KeyboardInterrupt:
        ok = True
    if not ok:
        sys.exit(1)


# ── open ─────────────────────────────────────────────────────────


async def _open(args: argparse.Namespace, settings: Settings) -> bool:
    doc = DocumentRef(
        title=args.title,
        revision=args.revision,
        file_type=args.type,
        path=args.path,
    )
    async with OpenRequestClient(settings.companion_url, debug=settings.debug) as opener:
        monitor = _build_monitor(opener, settings)
        result = await monitor.open_document(doc, settings.open_timeout_ms)

    if result.ok:
        print(f"Opened {doc.title}" + (f": {result.message}" if result.message else ""))
        return True
    print(f"ERROR: {result.message} ({result.kind or 'error'})", file=sys.stderr)
    return False


def cmd_open(args: argparse.Namespace) -> None:
    """Ask the companion to open a document."""
    if not asyncio.run(_open(args, load_settings())):
        sys.exit(1)


# ── roots ────────────────────────────────────────────────────────


async def _roots(args: argparse.Namespace, settings: Settings) -> bool:
    async with OpenRequestClient(settings.companion_url, debug=settings.debug) as opener:
        if args.action == "add":
            result = await opener.add_root(args.path)
        elif args.action == "remove":
            result = await opener.remove_root(args.path)
        else:
            result = await opener.list_roots()

    if not result.ok:
        print(f"ERROR: {result.message}", file=sys.stderr)
        return False
    print("Watched roots:")
    _print_roots(result)
    return True


def cmd_roots(args: argparse.Namespace) -> None:
    """List, add or remove the companion's watched folders."""
    if args.action in ("add", "remove") and not args.path:
        print(f"ERROR: 'roots {args.action}' needs a path", file=sys.stderr)
        sys.exit(1)
    try:
        ok = asyncio.run(_roots(args, load_settings()))
    except UserInputError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)
    if not ok:
        sys.exit(1)


# ── sync ─────────────────────────────────────────────────────────


async def _sync(settings: Settings) -> bool:
    finished = asyncio.Event()
    outcome: dict[str, bool] = {}

    def on_progress(progress: SyncProgress) -> None:
        print(
            f"  {progress.processed}/{progress.total} "
            f"(batch {progress.current_batch}/{progress.total_batches})"
        )

    def on_completed(progress: SyncProgress) -> None:
        print(f"Sync completed: {progress.processed} processed, {progress.failed or 0} failed")
        outcome["ok"] = True
        finished.set()

    def on_error(message: str) -> None:
        print(f"ERROR: sync failed: {message}", file=sys.stderr)
        outcome["ok"] = False
        finished.set()

    headers = {"Cookie": settings.app_cookie} if settings.app_cookie else None
    client = SyncStreamClient(
        settings.app_url,
        headers=headers,
        on_progress=on_progress,
        on_completed=on_completed,
        on_error=on_error,
        close_grace_ms=settings.sync_close_grace_ms,
        error_grace_ms=settings.sync_error_grace_ms,
        reconnect_delay_ms=settings.sync_reconnect_delay_ms,
        max_reconnect_attempts=settings.sync_max_reconnect_attempts,
    )
    try:
        result = await client.start_sync()
        if not result.success:
            return False
        print(f"Sync running (id={result.sync_id or '-'})")
        await finished.wait()
        return outcome.get("ok", False)
    finally:
        await client.aclose()


def cmd_sync(args: argparse.Namespace) -> None:
    """Start a sync job and follow it until it completes or fails."""
    if not asyncio.run(_sync(load_settings())):
        sys.exit(1)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="docbridge",
        description="Companion service and document sync tooling",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    # health
    p_health = sub.add_parser("health", help="Probe the companion service")
    p_health.add_argument("--watch", action="store_true", help="Keep monitoring until Ctrl-C")
    p_health.add_argument("--interval", type=int, help="Probe interval in ms (with --watch)")
    p_health.set_defaults(func=cmd_health)

    # open
    p_open = sub.add_parser("open", help="Open a document through the companion")
    p_open.add_argument("title", help="Document title")
    p_open.add_argument("--revision", default="", help="Revision label")
    p_open.add_argument("--type", default="", help="File extension, e.g. pdf")
    p_open.add_argument("--path", default="", help="Logical path in the tracker")
    p_open.set_defaults(func=cmd_open)

    # roots
    p_roots = sub.add_parser("roots", help="Manage watched folders")
    p_roots.add_argument("action", choices=["list", "add", "remove"])
    p_roots.add_argument("path", nargs="?", help="Folder path for add/remove")
    p_roots.set_defaults(func=cmd_roots)

    # sync
    p_sync = sub.add_parser("sync", help="Start a sync job and follow its progress")
    p_sync.set_defaults(func=cmd_sync)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args.func(args)


if __name__ == "__main__":
    main()
