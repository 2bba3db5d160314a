"""
utils/events_poller.py
----------------------
Discover tickets closed since a checkpoint by paging the system events feed.

The feed only takes one filter per request, so we filter by event type on
the server and by date here.  Events arrive newest first: the first event
older than the checkpoint ends the scan.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from utils.api_errors import NotFoundError
from utils.ticketing_client import TicketingClient

log = logging.getLogger("utils.events_poller")

TICKET_CLOSED_EVENT = "tickets.ticket.closed"
DEFAULT_LOOKBACK = timedelta(hours=24)


class EventsPoller:
    def __init__(self, client: TicketingClient) -> None:
        self._client = client

    async def poll_closed_tickets(
        self,
        since: Optional[datetime] = None,
        unprocessed_only: bool = False,
        limit: int = 100,
    ) -> List[str]:
        """Return ids of tickets closed after ``since`` (default: last 24h), deduplicated."""
        if since is None:
            since = datetime.now(timezone.utc) - DEFAULT_LOOKBACK
        elif since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)

        ticket_ids: List[str] = []
        after_id: Optional[str] = None
        pages = 0
        skipped = 0
        reached_checkpoint = False

        while not reached_checkpoint:
            try:
                page = await self._client.list_events(TICKET_CLOSED_EVENT, limit=limit, after_id=after_id)
            except NotFoundError:
                log.info("events_feed_not_found", extra={"kv": {"pages": pages}})
                break
            pages += 1

            for event in page.result:
                if event.occurred_at is not None and event.occurred_at < since:
                    reached_checkpoint = True
                    break
                if unprocessed_only and event.externally_processed:
                    skipped += 1
                    continue
                tid = event.ticket_id
                if tid:
                    ticket_ids.append(tid)

            if not page.result or not page.after_id:
                break
            after_id = page.after_id

        unique = list(dict.fromkeys(ticket_ids))
        log.info("events_poll_complete", extra={"kv": {
            "since": since.isoformat(),
            "pages": pages,
            "found": len(unique),
            "duplicates": len(ticket_ids) - len(unique),
            "skipped_processed": skipped,
        }})
        return unique
