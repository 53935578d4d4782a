"""Matrix side of the URL previewer, built on mautrix-python with E2EE.

The bot is a regular (trusted) room member, so it can preview links in
encrypted rooms where the homeserver's own preview API would leak them:
  - decrypts incoming events through OlmMachine, waiting briefly for late keys
  - translates messages, edits and redactions into pipeline items
  - sends, edits and redacts preview replies (auto-encrypted by the client)
  - never acts on invites
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, Optional

from dotenv import load_dotenv
from mautrix.client import Client
from mautrix.client.encryption_manager import DecryptionDispatcher
from mautrix.client.state_store.memory import MemoryStateStore
from mautrix.client.syncer import InternalEventType
from mautrix.crypto import OlmMachine
from mautrix.crypto.store.asyncpg import PgCryptoStore
from mautrix.types import EventID, EventType, Membership, RoomID, UserID
from mautrix.util.async_db import Database

from .cache import PreviewCache
from .config import PreviewerConfig
from .edit_resolver import EditRaceResolver
from .fetcher import Fetcher
from .models import Redaction, RoomEvent, RoomInvite
from .processor import TimelineEventProcessor
from .reply_store import ReplyStore
from .rewrite import RewriteEngine
from .utils import get_config

log = logging.getLogger(__name__)

HTML_FORMAT = "org.matrix.custom.html"


# ── Event translation ────────────────────────────────────────────────


def _serialize(content: Any) -> dict:
    if hasattr(content, "serialize"):
        try:
            raw = content.serialize()
        except Exception as exc:
            log.debug("Unserializable event content: %s", exc)
            return {}
        return raw if isinstance(raw, dict) else {}
    return content if isinstance(content, dict) else {}


def room_event_from_matrix(evt: Any) -> Optional[RoomEvent]:
    """Translate an ``m.room.message`` into a ``RoomEvent``.

    Edits (``m.replace``) carry their new text in ``m.new_content``. Only
    ``m.text`` messages are previewed; notices, emotes and attachments yield
    None.
    """
    raw = _serialize(evt.content)
    relates_to = raw.get("m.relates_to") or {}
    replaces: Optional[str] = None
    thread_id: Optional[str] = None
    if relates_to.get("rel_type") == "m.replace":
        replaces = relates_to.get("event_id") or None
        raw = raw.get("m.new_content") or {}
    elif relates_to.get("rel_type") == "m.thread":
        thread_id = relates_to.get("event_id") or None

    if raw.get("msgtype") != "m.text":
        return None
    body = raw.get("body")
    formatted_body = raw.get("formatted_body")
    if raw.get("format") != HTML_FORMAT or not isinstance(formatted_body, str):
        formatted_body = None

    return RoomEvent(
        event_id=str(evt.event_id),
        room_id=str(evt.room_id),
        sender=str(evt.sender),
        body=body if isinstance(body, str) else "",
        timestamp=int(getattr(evt, "timestamp", 0) or 0),
        replaces=str(replaces) if replaces else None,
        formatted_body=formatted_body,
        thread_id=str(thread_id) if thread_id else None,
    )


def redaction_from_matrix(evt: Any) -> Optional[Redaction]:
    # Room v11 moved ``redacts`` into the content.
    redacts = getattr(evt, "redacts", None) or getattr(evt.content, "redacts", None)
    if not redacts:
        return None
    return Redaction(
        event_id=str(evt.event_id),
        room_id=str(evt.room_id),
        sender=str(evt.sender),
        redacts=str(redacts),
        timestamp=int(getattr(evt, "timestamp", 0) or 0),
    )


# ── State store with crypto-side find_shared_rooms ───────────────────


class BotStateStore(MemoryStateStore):
    """``MemoryStateStore`` extended with ``find_shared_rooms`` for the
    crypto ``StateStore`` interface used by ``OlmMachine``."""

    async def find_shared_rooms(self, user_id: UserID) -> list[RoomID]:
        shared: list[RoomID] = []
        for room_id, members in self.members.items():
            member = members.get(user_id)
            if not member or member.membership != Membership.JOIN:
                continue
            if await self.is_encrypted(room_id):
                shared.append(room_id)
        return shared


# ── Custom decryption dispatcher ─────────────────────────────────────


class RetryingDecryptionDispatcher(DecryptionDispatcher):
    """Waits up to 5 s for a missing Megolm session before giving up, so
    key-shares arriving in the same or next sync can still decrypt the event."""

    async def handle(self, evt: Any) -> None:
        try:
            decrypted = await self.client.crypto.decrypt_megolm_event(evt)
        except Exception as first_err:
            session_id = getattr(getattr(evt, "content", None), "session_id", None)
            if not session_id:
                log.error("Unable to decrypt %s in %s: %s", evt.event_id, evt.room_id, first_err)
                return
            arrived = await self.client.crypto.wait_for_session(
                evt.room_id, session_id, timeout=5
            )
            if not arrived:
                log.error(
                    "Unable to decrypt %s in %s: session %s never arrived",
                    evt.event_id,
                    evt.room_id,
                    session_id,
                )
                return
            try:
                decrypted = await self.client.crypto.decrypt_megolm_event(evt)
            except Exception as retry_err:
                log.error(
                    "Unable to decrypt %s after session wait: %s", evt.event_id, retry_err
                )
                return
        self.client.dispatch_event(decrypted, evt.source)


# ── Bot ──────────────────────────────────────────────────────────────


def build_processor(
    config: PreviewerConfig, messenger: Any, own_user_id: str, store_path: str
) -> tuple[TimelineEventProcessor, Fetcher]:
    fetcher = Fetcher(config.crawler)
    cache = PreviewCache(
        fetcher,
        RewriteEngine(config.rewrite_rules),
        min_refetch_interval=config.min_refetch_interval,
        failure_ttl=config.failure_ttl,
        max_entries=config.cache_entries,
    )
    resolver = EditRaceResolver(
        ReplyStore(os.path.join(store_path, "replies")), max_chains=config.max_chains
    )
    processor = TimelineEventProcessor(
        cache,
        resolver,
        messenger,
        own_user_id=own_user_id,
        ignored_users=config.ignored_users,
        max_previews_per_message=config.max_previews_per_message,
        max_text_chars=config.max_text_chars,
    )
    return processor, fetcher


class MatrixPreviewBot:
    """Owns the mautrix client and feeds its timeline into the preview pipeline."""

    client: Client
    state_store: BotStateStore
    crypto_db: Database
    crypto_store: PgCryptoStore
    crypto_machine: OlmMachine
    processor: TimelineEventProcessor

    def __init__(self, config: Optional[PreviewerConfig] = None) -> None:
        self.homeserver: str = os.environ["MATRIX_HOMESERVER"]
        self.bot_mxid: str = os.environ["MATRIX_USER_ID"]
        self.access_token: str = os.environ.get("MATRIX_ACCESS_TOKEN", "")
        self.password: str = os.environ.get("MATRIX_PASSWORD", "")
        self.device_id: str = os.environ.get("MATRIX_DEVICE_ID", "")
        self.store_path: str = os.environ.get(
            "MATRIX_STORE_PATH", "./data/matrix_store/"
        )
        self.config = config or PreviewerConfig.from_dict(get_config())
        self._initial_sync_done = False

    # ── lifecycle ────────────────────────────────────────────────────

    async def run(self) -> None:
        """Log in, set up E2EE, skip the backlog, then preview until cancelled."""
        os.makedirs(self.store_path, exist_ok=True)
        self._load_session()

        self.processor, fetcher = build_processor(
            self.config, self, self.bot_mxid, self.store_path
        )
        self.state_store = BotStateStore()

        db_path = os.path.join(self.store_path, "crypto.db")
        self.crypto_db = Database.create(
            url=f"sqlite:{db_path}",
            upgrade_table=PgCryptoStore.upgrade_table,
        )
        await self.crypto_db.start()
        self.crypto_store = PgCryptoStore(
            account_id=self.bot_mxid,
            pickle_key="url_previewer_pickle_key",
            db=self.crypto_db,
        )

        # A fresh crypto store needs a fresh device, otherwise other clients
        # never learn our identity keys.
        if await self.crypto_store.get_account() is None and self.device_id:
            log.info(
                "Fresh crypto store: discarding stale device_id %s", self.device_id
            )
            self.device_id = ""
            self.access_token = ""

        self.client = Client(
            mxid=UserID(self.bot_mxid),
            device_id=self.device_id,
            base_url=self.homeserver,
            token=self.access_token,
            state_store=self.state_store,
            sync_store=self.crypto_store,
        )

        if not self.access_token:
            if not self.password:
                raise RuntimeError(
                    "Either MATRIX_ACCESS_TOKEN or MATRIX_PASSWORD must be set"
                )
            resp = await self.client.login(
                password=self.password, device_name="url-previewer"
            )
            self.access_token = resp.access_token
            self.device_id = resp.device_id
            self._save_session()
            log.info("Logged in as %s (device %s)", self.bot_mxid, self.device_id)

        await self._setup_e2ee()

        self.client.add_event_handler(EventType.ROOM_MESSAGE, self._on_message)
        self.client.add_event_handler(EventType.ROOM_REDACTION, self._on_redaction)
        self.client.add_event_handler(InternalEventType.INVITE, self._on_invite)

        # Key shares arrive during the initial sync, so it cannot be skipped;
        # room events from it are dropped instead.
        sync_ready = asyncio.Event()

        async def _on_first_sync(_data: Any) -> None:
            sync_ready.set()

        self.client.add_event_handler(InternalEventType.SYNC_SUCCESSFUL, _on_first_sync)
        self.client.start(filter_data=None)
        log.info("Skipping messages since last run, waiting for initial sync...")
        await sync_ready.wait()
        self._initial_sync_done = True
        self.client.remove_event_handler(InternalEventType.SYNC_SUCCESSFUL, _on_first_sync)
        log.info("Sync established -- previewing URLs")

        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            pass
        finally:
            self.client.stop()
            await self.processor.drain()
            fetcher.close()
            await self.crypto_db.stop()

    # ── session persistence ──────────────────────────────────────────

    _SESSION_FILE = "session.json"

    def _session_path(self) -> str:
        return os.path.join(self.store_path, self._SESSION_FILE)

    def _load_session(self) -> None:
        path = self._session_path()
        try:
            with open(path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return
        except (OSError, ValueError) as exc:
            log.warning("Failed to load session from %s: %s", path, exc)
            return
        if not self.access_token and data.get("access_token"):
            self.access_token = data["access_token"]
        if not self.device_id and data.get("device_id"):
            self.device_id = data["device_id"]
        log.info("Restored session from %s", path)

    def _save_session(self) -> None:
        path = self._session_path()
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8") as fh:
            json.dump(
                {
                    "access_token": self.access_token,
                    "device_id": self.device_id,
                    "user_id": self.bot_mxid,
                },
                fh,
            )

    # ── E2EE setup ───────────────────────────────────────────────────

    async def _setup_e2ee(self) -> None:
        self.crypto_machine = OlmMachine(
            client=self.client,
            crypto_store=self.crypto_store,
            state_store=self.state_store,
        )
        self.client.crypto = self.crypto_machine
        self.client.remove_dispatcher(DecryptionDispatcher)
        self.client.add_dispatcher(RetryingDecryptionDispatcher)

        await self.crypto_machine.load()
        await self.crypto_machine.share_keys()
        log.info("E2EE initialised (device %s)", self.device_id)

        recovery_key = os.environ.get("MATRIX_RECOVERY_KEY", "").strip()
        if not recovery_key:
            log.info("No MATRIX_RECOVERY_KEY set -- device will appear unverified")
            return
        try:
            await self.crypto_machine.verify_with_recovery_key(recovery_key)
            log.info("Device cross-signed via recovery key")
        except Exception as exc:
            log.warning("Cross-signing via recovery key failed: %s", exc)

    # ── event handlers ───────────────────────────────────────────────

    async def _on_invite(self, evt: Any) -> None:
        room_id = getattr(evt, "room_id", None)
        if room_id:
            self.processor.handle(RoomInvite(room_id=str(room_id), sender=str(evt.sender)))

    async def _on_message(self, evt: Any) -> None:
        if not self._initial_sync_done:
            return
        event = room_event_from_matrix(evt)
        if event is not None:
            self.processor.handle(event)

    async def _on_redaction(self, evt: Any) -> None:
        if not self._initial_sync_done:
            return
        redaction = redaction_from_matrix(evt)
        if redaction is not None:
            self.processor.handle(redaction)

    # ── Messenger ────────────────────────────────────────────────────

    async def send(
        self, room_id: str, content: dict[str, Any], thread_id: Optional[str] = None
    ) -> Optional[str]:
        """Send a preview, inside the thread when the source message was in one."""
        content = dict(content)
        if thread_id:
            content["m.relates_to"] = {
                "rel_type": "m.thread",
                "event_id": thread_id,
                "is_falling_back": True,
                "m.in_reply_to": {"event_id": thread_id},
            }
        try:
            return str(
                await self.client.send_message_event(
                    RoomID(room_id), EventType.ROOM_MESSAGE, content
                )
            )
        except Exception as exc:
            log.error("[%s] send failed: %s", room_id, exc)
            return None

    async def edit(
        self, room_id: str, prior_event_id: str, content: dict[str, Any]
    ) -> Optional[str]:
        """Replace a previous preview via ``m.replace``."""
        edit_content: dict[str, Any] = {
            "msgtype": content.get("msgtype", "m.notice"),
            "body": f"* {content.get('body', '')}",
            "m.new_content": dict(content),
            "m.mentions": {},
            "m.relates_to": {"rel_type": "m.replace", "event_id": prior_event_id},
        }
        if content.get("formatted_body"):
            edit_content["format"] = HTML_FORMAT
            edit_content["formatted_body"] = f"* {content['formatted_body']}"
        try:
            return str(
                await self.client.send_message_event(
                    RoomID(room_id), EventType.ROOM_MESSAGE, edit_content
                )
            )
        except Exception as exc:
            log.error("[%s] edit of %s failed: %s", room_id, prior_event_id, exc)
            return None

    async def redact(self, room_id: str, event_id: str) -> bool:
        try:
            await self.client.redact(RoomID(room_id), EventID(event_id))
            return True
        except Exception as exc:
            log.error("[%s] redact of %s failed: %s", room_id, event_id, exc)
            return False


# ── Entry point ──────────────────────────────────────────────────────


def run_bot() -> None:
    """Start the previewer (blocking)."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    load_dotenv()
    bot = MatrixPreviewBot()
    asyncio.run(bot.run())
