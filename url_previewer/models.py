"""Data shapes shared by the preview pipeline and the Matrix adapter.

Everything here is transport-agnostic: the adapter translates mautrix events
into these values and turns outbound actions back into Matrix requests.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Union


@dataclass(frozen=True)
class RoomEvent:
    """A decrypted ``m.text`` message, or an edit of one when ``replaces`` is set."""

    event_id: str
    room_id: str
    sender: str
    body: str
    timestamp: int
    replaces: Optional[str] = None
    formatted_body: Optional[str] = None
    thread_id: Optional[str] = None

    @property
    def is_edit(self) -> bool:
        return self.replaces is not None

    @property
    def original_event_id(self) -> str:
        return self.replaces or self.event_id


@dataclass(frozen=True)
class Redaction:
    event_id: str
    room_id: str
    sender: str
    redacts: str
    timestamp: int


@dataclass(frozen=True)
class RoomInvite:
    room_id: str
    sender: str


TimelineItem = Union[RoomEvent, Redaction, RoomInvite]


@dataclass(frozen=True)
class ChainKey:
    """Identity of one user-visible message: the room plus its original event id."""

    room_id: str
    event_id: str


@dataclass(frozen=True)
class Ticket:
    """Binds pipeline work to one edit-sequence number of a chain."""

    chain: ChainKey
    seq: int


@dataclass(frozen=True)
class PreviewCandidate:
    url: str
    ticket: Ticket


@dataclass(frozen=True)
class Metadata:
    title: Optional[str] = None
    description: Optional[str] = None
    canonical_url: Optional[str] = None
    image_url: Optional[str] = None
    site_name: Optional[str] = None


@dataclass(frozen=True)
class ExtractionHint:
    """CSS selectors tried before the standard ones, keyed by Metadata field."""

    selectors: Mapping[str, tuple[str, ...]] = field(default_factory=dict)

    def for_field(self, name: str) -> tuple[str, ...]:
        return tuple(self.selectors.get(name, ()))


STANDARD_EXTRACTION = ExtractionHint()


@dataclass(frozen=True)
class FetchSpec:
    target_url: str
    hint: ExtractionHint = STANDARD_EXTRACTION


@dataclass(frozen=True)
class FetchResult:
    url: str
    content: bytes
    content_type: str = ""
    charset: Optional[str] = None


@dataclass(frozen=True)
class Preview:
    """Successful metadata for one URL found in a message."""

    url: str
    metadata: Metadata


# ── Outbound actions ─────────────────────────────────────────────────


@dataclass(frozen=True)
class SendPreview:
    room_id: str
    content: dict[str, Any]
    thread_id: Optional[str] = None


@dataclass(frozen=True)
class EditPreview:
    room_id: str
    reply_event_id: str
    content: dict[str, Any]


@dataclass(frozen=True)
class RetractPreview:
    room_id: str
    reply_event_id: str


OutboundAction = Union[SendPreview, EditPreview, RetractPreview]
