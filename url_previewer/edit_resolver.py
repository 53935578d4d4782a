"""Per-message state machine that keeps previews in step with edits.

Every user-visible message is an edit chain keyed by its room and original
event id. A chain is either ``Pending(seq)``, while the preview for its
newest content is being computed, or ``Published(seq, reply_ref)`` once that
preview (or the decision that there is none) went out.

Each accepted edit bumps ``seq``. Pipeline work carries the ``Ticket`` it was
started for, and :meth:`EditRaceResolver.publishing` refuses any ticket that
is not the chain's current pending sequence number. A slow fetch for an older
edit therefore still fills the shared cache but is never shown.

Publishing is serialized per chain with an ``asyncio.Lock`` so that a new
reply is sent at most once even when two edits complete back to back.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional, Union

from .errors import RaceSuperseded
from .models import ChainKey, RoomEvent, Ticket
from .reply_store import ReplyStore

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Pending:
    seq: int


@dataclass(frozen=True)
class Published:
    seq: int
    reply_ref: Optional[str]


ChainState = Union[Pending, Published]


@dataclass
class Publication:
    """Handed to the publisher while it holds the chain; it sets ``reply_ref``."""

    ticket: Ticket
    reply_ref: Optional[str]
    thread_id: Optional[str]


@dataclass
class _Chain:
    key: ChainKey
    state: ChainState
    # (timestamp, arrival) of the newest accepted content, orders late edits
    latest: tuple[int, int]
    seen: set[str] = field(default_factory=set)
    reply_ref: Optional[str] = None
    thread_id: Optional[str] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class EditRaceResolver:
    def __init__(
        self, reply_store: Optional[ReplyStore] = None, max_chains: int = 10000
    ) -> None:
        self._reply_store = reply_store
        self._max_chains = max_chains
        self._chains: OrderedDict[ChainKey, _Chain] = OrderedDict()
        self._arrivals = itertools.count()

    def __len__(self) -> int:
        return len(self._chains)

    def state(self, key: ChainKey) -> Optional[ChainState]:
        chain = self._chains.get(key)
        return chain.state if chain else None

    # ── registration ─────────────────────────────────────────────────

    def open_chain(self, event: RoomEvent) -> Optional[Ticket]:
        """Start a chain for an original message. Redeliveries return None."""
        key = ChainKey(event.room_id, event.event_id)
        if key in self._chains:
            log.debug("[%s] Ignoring redelivered event %s", event.room_id, event.event_id)
            return None
        chain = _Chain(
            key=key,
            state=Pending(1),
            latest=(event.timestamp, next(self._arrivals)),
            seen={event.event_id},
            thread_id=event.thread_id,
        )
        self._remember(chain)
        return Ticket(key, 1)

    def advance(self, event: RoomEvent) -> Optional[Ticket]:
        """Move a chain to a new pending sequence number for an edit.

        Returns None for stale or duplicate edits and for edits of messages
        this bot has never seen. Edits with equal timestamps keep arrival order.
        """
        if event.replaces is None:
            raise ValueError(f"{event.event_id} is not an edit")
        key = ChainKey(event.room_id, event.replaces)
        chain = self._chains.get(key) or self._recover(key)
        if chain is None:
            log.debug(
                "[%s] Edit %s targets unknown event %s, ignoring",
                event.room_id,
                event.event_id,
                event.replaces,
            )
            return None

        order = (event.timestamp, next(self._arrivals))
        if event.event_id in chain.seen or order <= chain.latest:
            log.debug(
                "[%s] Ignoring out-of-order edit %s of %s",
                event.room_id,
                event.event_id,
                event.replaces,
            )
            return None

        chain.latest = order
        chain.seen.add(event.event_id)
        seq = chain.state.seq + 1
        chain.state = Pending(seq)
        self._remember(chain)
        return Ticket(key, seq)

    def _recover(self, key: ChainKey) -> Optional[_Chain]:
        # A reply posted before a restart is the only history we trust.
        if self._reply_store is None:
            return None
        reply_ref = self._reply_store.get(key.room_id, key.event_id)
        if reply_ref is None:
            return None
        log.info("[%s] Recovered preview %s for %s", key.room_id, reply_ref, key.event_id)
        chain = _Chain(
            key=key,
            state=Published(0, reply_ref),
            latest=(-1, -1),
            reply_ref=reply_ref,
        )
        self._remember(chain)
        return chain

    def _remember(self, chain: _Chain) -> None:
        self._chains[chain.key] = chain
        self._chains.move_to_end(chain.key)
        while len(self._chains) > self._max_chains:
            self._chains.popitem(last=False)

    # ── completion ───────────────────────────────────────────────────

    def is_current(self, ticket: Ticket) -> bool:
        chain = self._chains.get(ticket.chain)
        return chain is not None and chain.state == Pending(ticket.seq)

    @asynccontextmanager
    async def publishing(self, ticket: Ticket) -> AsyncIterator[Publication]:
        """Hold the chain while the caller publishes the result for *ticket*.

        Raises ``RaceSuperseded`` if the ticket is no longer the chain's
        pending sequence number, including when it was already published.
        """
        chain = self._chains.get(ticket.chain)
        if chain is None:
            raise RaceSuperseded(f"chain {ticket.chain} is gone")
        async with chain.lock:
            if chain.state != Pending(ticket.seq):
                raise RaceSuperseded(
                    f"{ticket.chain.event_id} seq {ticket.seq} superseded by {chain.state}"
                )
            publication = Publication(
                ticket=ticket, reply_ref=chain.reply_ref, thread_id=chain.thread_id
            )
            try:
                yield publication
            finally:
                await self._record(chain, publication)

    async def _record(self, chain: _Chain, publication: Publication) -> None:
        previous = chain.reply_ref
        chain.reply_ref = publication.reply_ref
        # A newer edit may have arrived while we were sending; it stays pending.
        if chain.state == Pending(publication.ticket.seq):
            chain.state = Published(publication.ticket.seq, publication.reply_ref)
        if self._reply_store is None or previous == publication.reply_ref:
            return
        room_id, event_id = chain.key.room_id, chain.key.event_id
        try:
            if publication.reply_ref is None:
                await self._reply_store.remove(room_id, event_id)
            else:
                await self._reply_store.put(room_id, event_id, publication.reply_ref)
        except OSError as exc:
            log.error("[%s] Failed to persist preview reply for %s: %s", room_id, event_id, exc)

    # ── deletion ─────────────────────────────────────────────────────

    async def close_chain(self, room_id: str, event_id: str) -> Optional[str]:
        """Forget a redacted message and return its preview reply, if any."""
        key = ChainKey(room_id, event_id)
        chain = self._chains.get(key)
        if chain is None:
            if self._reply_store is None:
                return None
            reply_ref = self._reply_store.get(room_id, event_id)
            if reply_ref is not None:
                await self._reply_store.remove(room_id, event_id)
            return reply_ref

        # Void outstanding work first, then wait out a publish in progress.
        chain.state = Pending(chain.state.seq + 1)
        async with chain.lock:
            if self._chains.get(key) is chain:
                del self._chains[key]
            if self._reply_store is not None and chain.reply_ref is not None:
                await self._reply_store.remove(room_id, event_id)
            return chain.reply_ref
