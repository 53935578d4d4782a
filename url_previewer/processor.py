"""Timeline consumer that turns messages into preview replies.

Events are handled in arrival order and never wait on the network: each
accepted message or edit gets its own pipeline task, which fetches every URL
concurrently through the shared cache and then publishes through the edit
resolver, so only the newest edit of a message is ever shown.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Optional, Protocol

from .cache import PreviewCache
from .edit_resolver import EditRaceResolver, Publication
from .errors import RaceSuperseded
from .extract_urls import extract_urls
from .formatting import build_preview_content
from .models import (
    EditPreview,
    Metadata,
    OutboundAction,
    Preview,
    PreviewCandidate,
    Redaction,
    RetractPreview,
    RoomEvent,
    RoomInvite,
    SendPreview,
    Ticket,
    TimelineItem,
)

log = logging.getLogger(__name__)


class Messenger(Protocol):
    """Outbound side of the transport. Encryption happens behind this interface."""

    async def send(
        self, room_id: str, content: dict[str, Any], thread_id: Optional[str] = None
    ) -> Optional[str]:
        ...

    async def edit(
        self, room_id: str, prior_event_id: str, content: dict[str, Any]
    ) -> Optional[str]:
        ...

    async def redact(self, room_id: str, event_id: str) -> bool:
        ...


class TimelineEventProcessor:
    def __init__(
        self,
        cache: PreviewCache,
        resolver: EditRaceResolver,
        messenger: Messenger,
        *,
        own_user_id: str,
        ignored_users: Iterable[str] = (),
        max_previews_per_message: int = 3,
        max_text_chars: int = 300,
    ) -> None:
        self.cache = cache
        self.resolver = resolver
        self.messenger = messenger
        self.own_user_id = own_user_id
        self.ignored_users = frozenset(ignored_users)
        self.max_previews_per_message = max_previews_per_message
        self.max_text_chars = max_text_chars
        self._tasks: set[asyncio.Task] = set()

    # ── ingestion ────────────────────────────────────────────────────

    def handle(self, item: TimelineItem) -> Optional[asyncio.Task]:
        """Route one timeline item and schedule its pipeline run.

        Returns the scheduled task, whose result is the ``OutboundAction``
        performed (None when nothing was published), or None when the item
        needs no work at all.
        """
        if isinstance(item, RoomInvite):
            # Joining on invite would let anyone point the bot at any room.
            log.info("[%s] Ignoring invite from %s", item.room_id, item.sender)
            return None
        if item.sender == self.own_user_id or item.sender in self.ignored_users:
            return None

        if isinstance(item, Redaction):
            return self._spawn(self._retract(item))

        ticket = self.resolver.advance(item) if item.is_edit else self.resolver.open_chain(item)
        if ticket is None:
            return None
        candidates = [
            PreviewCandidate(url=url, ticket=ticket)
            for url in extract_urls(item.body, item.formatted_body)
        ]
        if candidates:
            log.info(
                "[%s] %s seq %d: %d URL(s)",
                item.room_id,
                ticket.chain.event_id,
                ticket.seq,
                len(candidates),
            )
        return self._spawn(self._run_pipeline(ticket, candidates))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("Preview pipeline failed", exc_info=exc)

    async def drain(self) -> None:
        """Wait until every scheduled pipeline run has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ── pipeline ─────────────────────────────────────────────────────

    async def _preview(self, candidate: PreviewCandidate) -> Optional[Preview]:
        outcome = await self.cache.get_or_fetch(candidate.url)
        if isinstance(outcome, Metadata):
            return Preview(url=candidate.url, metadata=outcome)
        return None

    async def _run_pipeline(
        self, ticket: Ticket, candidates: list[PreviewCandidate]
    ) -> Optional[OutboundAction]:
        results = await asyncio.gather(*(self._preview(c) for c in candidates))
        previews = [p for p in results if p is not None][: self.max_previews_per_message]
        try:
            async with self.resolver.publishing(ticket) as publication:
                action = self._decide(publication, previews)
                if action is None:
                    return None
                publication.reply_ref = await self._perform(action)
                return action
        except RaceSuperseded as exc:
            log.debug("[%s] Dropping superseded preview: %s", ticket.chain.room_id, exc)
            return None

    def _decide(
        self, publication: Publication, previews: list[Preview]
    ) -> Optional[OutboundAction]:
        chain = publication.ticket.chain
        if previews:
            content = build_preview_content(chain, previews, self.max_text_chars)
            if publication.reply_ref is None:
                return SendPreview(
                    room_id=chain.room_id, content=content, thread_id=publication.thread_id
                )
            return EditPreview(
                room_id=chain.room_id, reply_event_id=publication.reply_ref, content=content
            )
        if publication.reply_ref is not None:
            return RetractPreview(room_id=chain.room_id, reply_event_id=publication.reply_ref)
        return None

    async def _perform(self, action: OutboundAction) -> Optional[str]:
        """Carry out *action* and return the chain's reply reference afterwards."""
        if isinstance(action, SendPreview):
            event_id = await self.messenger.send(
                action.room_id, action.content, action.thread_id
            )
            if event_id:
                log.info("[%s] Posted preview %s", action.room_id, event_id)
            return event_id
        if isinstance(action, EditPreview):
            await self.messenger.edit(action.room_id, action.reply_event_id, action.content)
            return action.reply_event_id
        if await self.messenger.redact(action.room_id, action.reply_event_id):
            log.info("[%s] Retracted preview %s", action.room_id, action.reply_event_id)
            return None
        return action.reply_event_id

    async def _retract(self, redaction: Redaction) -> Optional[OutboundAction]:
        reply_ref = await self.resolver.close_chain(redaction.room_id, redaction.redacts)
        if reply_ref is None:
            return None
        action = RetractPreview(room_id=redaction.room_id, reply_event_id=reply_ref)
        await self._perform(action)
        return action
