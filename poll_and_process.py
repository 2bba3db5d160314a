"""
poll_and_process.py
===================

Batch entry point: poll the events feed for closed tickets and push each
one through certificate processing.

    python poll_and_process.py

``LAST_POLL_TIMESTAMP`` (ISO-8601) sets the checkpoint; without it the
last 24 hours are scanned.  The next checkpoint is logged at the end so a
scheduler can feed it back in.

Exit code is 1 on configuration errors or if any ticket failed, else 0.
SIGINT / SIGTERM stop new tickets from starting; in-flight ones finish.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from datetime import datetime, timezone
from typing import Optional

from logging_setup import init_logging
from utils.services import build_services, run_poll_cycle
from utils.settings import ConfigError, load_settings

init_logging()
log = logging.getLogger("poll_and_process")


def read_checkpoint(raw: Optional[str]) -> Optional[datetime]:
    """Parse ``LAST_POLL_TIMESTAMP``; an invalid value is ignored with a warning."""
    if not raw:
        return None
    try:
        ts = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    except ValueError:
        log.warning("invalid_last_poll_timestamp", extra={"kv": {"provided": raw}})
        return None
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop.set))


async def run() -> int:
    try:
        settings = load_settings()
    except ConfigError as e:
        log.error("config_invalid", extra={"kv": {"error": str(e)}})
        return 1

    since = read_checkpoint(os.getenv("LAST_POLL_TIMESTAMP"))
    log.info("poll_run_started", extra={"kv": {
        "since": since.isoformat() if since else "last 24h",
        "limit": settings.poll_limit,
        "concurrency": settings.process_concurrency,
    }})

    stop = asyncio.Event()
    _install_signal_handlers(stop)

    services = build_services(settings)
    await services.startup()
    try:
        summary = await run_poll_cycle(
            services.poller,
            services.processor,
            since=since,
            limit=settings.poll_limit,
            concurrency=settings.process_concurrency,
            stop=stop,
        )
    except Exception as e:
        log.exception("poll_run_fatal", extra={"kv": {"error": str(e)}})
        return 1
    finally:
        await services.aclose()

    for ticket_id, error in summary.failures.items():
        log.error("poll_run_ticket_failed", extra={"kv": {"ticket_id": ticket_id, "error": error}})
    if summary.not_started:
        # interrupted: keep the old checkpoint so skipped tickets are seen again
        log.warning("last_poll_timestamp_unchanged", extra={"kv": {
            "timestamp": since.isoformat() if since else None,
            "not_started": summary.not_started,
        }})
    else:
        log.info("last_poll_timestamp_updated", extra={"kv": {
            "timestamp": summary.next_checkpoint,
            "note": "set LAST_POLL_TIMESTAMP for the next run",
        }})
    log.info("poll_run_complete", extra={"kv": {
        "found": summary.found,
        "processed": summary.processed,
        "already_processed": summary.already_processed,
        "needs_review": summary.needs_review,
        "failed": summary.failed,
        "not_started": summary.not_started,
    }})
    return 1 if summary.failed else 0


def main() -> None:
    sys.exit(asyncio.run(run()))


if __name__ == "__main__":
    main()
