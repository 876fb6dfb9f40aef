"""
Message store for one protocol session.

``MessageHandler`` subscribes to the message events of a session's event
source and mirrors them into the ``messages`` table:

    messaging-history.set   -> set()             bulk history load
    messages.upsert         -> upsert()          insert or update by key
    messages.update         -> update()          merge a delta into a row
    messages.delete         -> delete()          drop one chat or some ids
    message-receipt.update  -> update_receipt()  per-user receipt snapshot
    messages.reaction       -> update_reaction() one live reaction per author

Every handler reports its result on the event sink. Errors are logged and
published as "error" outcomes; they never propagate back into the event
source, so a subscription survives any number of failed events.

Side effect of ``upsert``: for "notify" batches the handler emits
``chats.upsert`` on the session's event source when the chat is not stored
yet. That event is consumed by the chat store, not by this handler.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Iterable, List, Optional

from wa_store import storage
from wa_store.events import EventEmitter, EventSink, sink as default_sink
from wa_store.utils import (
    get_key_author,
    jid_normalized_user,
    message_to_wire,
    to_number,
    transform_message,
)

logger = logging.getLogger(__name__)


class MessageHandler:
    """Reconciles one session's message events with the messages table."""

    def __init__(
        self,
        session_id: str,
        events: EventEmitter,
        sink: Optional[EventSink] = None,
        session_factory=None,
    ) -> None:
        self.session_id = session_id
        self.events = events
        self.sink = sink or default_sink
        self._session_factory = session_factory or storage.SessionLocal
        self._listening = False
        self._subscriptions = (
            ("messaging-history.set", self.set),
            ("messages.upsert", self.upsert),
            ("messages.update", self.update),
            ("messages.delete", self.delete),
            ("message-receipt.update", self.update_receipt),
            ("messages.reaction", self.update_reaction),
        )

    @property
    def listening(self) -> bool:
        return self._listening

    def listen(self) -> None:
        if self._listening:
            return
        for event, handler in self._subscriptions:
            self.events.on(event, handler)
        self._listening = True
        logger.debug("Message handler listening", extra={"session_id": self.session_id})

    def unlisten(self) -> None:
        if not self._listening:
            return
        for event, handler in self._subscriptions:
            self.events.off(event, handler)
        self._listening = False
        logger.debug("Message handler stopped", extra={"session_id": self.session_id})

    @asynccontextmanager
    async def _reporting(self, event: str, operation: str):
        """Run one unit of work; turn any failure into an error outcome."""
        try:
            yield
        except Exception as e:
            message = f"An error occurred during {operation}: {e}"
            logger.error(message, exc_info=True, extra={"session_id": self.session_id})
            self.sink.emit(event, self.session_id, None, "error", message)

    def _row(self, data: Dict[str, Any], remote_jid: str, message_id: str) -> Dict[str, Any]:
        return {**data, "session_id": self.session_id, "remote_jid": remote_jid, "id": message_id}

    # =========================================================================
    # messaging-history.set
    # =========================================================================

    async def set(self, payload: Dict[str, Any]) -> None:
        """
        Load a history batch in one transaction.

        With ``isLatest`` the session's stored messages are replaced by the
        batch; a failing insert rolls the delete back as well.
        """
        async with self._reporting("messages.upsert", "messages set"):
            messages = payload.get("messages") or []
            rows = [
                self._row(transform_message(m), m["key"]["remoteJid"], m["key"]["id"])
                for m in messages
            ]
            async with self._session_factory() as db, db.begin():
                if payload.get("isLatest"):
                    await storage.delete_session_messages(db, self.session_id)
                await storage.create_messages(db, rows)

            self.sink.emit("messages.upsert", self.session_id, {"messages": rows})
            logger.info(f"Synced {len(rows)} messages", extra={"session_id": self.session_id})

    # =========================================================================
    # messages.upsert
    # =========================================================================

    async def upsert(self, payload: Dict[str, Any]) -> None:
        upsert_type = payload.get("type")
        if upsert_type not in ("append", "notify"):
            return

        for message in payload.get("messages") or []:
            async with self._reporting("messages.upsert", "messages upsert"):
                await self._upsert_one(message, notify=upsert_type == "notify")

    async def _upsert_one(self, message: Dict[str, Any], notify: bool) -> None:
        key = message["key"]
        jid = jid_normalized_user(key["remoteJid"])
        data = transform_message(message)

        async with self._session_factory() as db, db.begin():
            await storage.upsert_message(db, self._row(data, jid, key["id"]))

        if notify:
            await self._ensure_chat(jid, message)
        self.sink.emit("messages.upsert", self.session_id, {"messages": data})

    async def _ensure_chat(self, jid: str, message: Dict[str, Any]) -> None:
        # The message is already stored; a chat store failure does not change its outcome
        try:
            async with self._session_factory() as db:
                exists = await storage.chat_exists(db, self.session_id, jid)
            if not exists:
                await self.events.emit(
                    "chats.upsert",
                    [
                        {
                            "id": jid,
                            "conversationTimestamp": to_number(message.get("messageTimestamp")),
                            "unreadCount": 1,
                        }
                    ],
                )
        except Exception as e:
            logger.error(
                f"Failed to create chat {jid} for new message: {e}",
                exc_info=True,
                extra={"session_id": self.session_id},
            )

    # =========================================================================
    # messages.update
    # =========================================================================

    async def update(self, updates: Iterable[Dict[str, Any]]) -> None:
        for item in updates:
            async with self._reporting("messages.update", "messages update"):
                row = await self._update_one(item["update"], item["key"])
                if row is not None:
                    self.sink.emit("messages.update", self.session_id, {"messages": row})

    async def _update_one(self, delta: Dict[str, Any], key: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        async with self._session_factory() as db, db.begin():
            previous = await storage.get_message(db, self.session_id, key["remoteJid"], key["id"])
            if previous is None:
                logger.info(
                    f"Got update for non existent message {key.get('id')}",
                    extra={"session_id": self.session_id},
                )
                return None

            merged = {**message_to_wire(previous), **delta}
            merged_key = merged.get("key") or key
            # The stored key keeps the raw jid; the row stays under its canonical one
            remote_jid = previous.remote_jid
            if delta.get("key"):
                remote_jid = jid_normalized_user(merged_key["remoteJid"]) or merged_key["remoteJid"]
            row = self._row(transform_message(merged), remote_jid, merged_key["id"])
            await storage.replace_message(db, previous.pk_id, row)
        return row

    # =========================================================================
    # messages.delete
    # =========================================================================

    async def delete(self, item: Dict[str, Any]) -> None:
        async with self._reporting("messages.delete", "messages delete"):
            async with self._session_factory() as db, db.begin():
                if item.get("all"):
                    await storage.delete_chat_messages(db, self.session_id, item["jid"])
                else:
                    keys = item.get("keys") or []
                    if keys:
                        await storage.delete_messages(
                            db, self.session_id, keys[0]["remoteJid"], [k["id"] for k in keys]
                        )
            self.sink.emit("messages.delete", self.session_id, {"message": item})

    # =========================================================================
    # message-receipt.update
    # =========================================================================

    async def update_receipt(self, updates: Iterable[Dict[str, Any]]) -> None:
        for item in updates:
            async with self._reporting("message-receipt.update", "messages receipt update"):
                key, receipt = item["key"], item["receipt"]
                if await self._update_receipt_one(key, receipt):
                    self.sink.emit(
                        "message-receipt.update",
                        self.session_id,
                        {"message": {"key": key, "receipt": receipt}},
                    )

    async def _update_receipt_one(self, key: Dict[str, Any], receipt: Dict[str, Any]) -> bool:
        async with self._session_factory() as db, db.begin():
            message = await storage.get_message(db, self.session_id, key["remoteJid"], key["id"])
            if message is None:
                logger.debug(
                    f"Got receipt update for non existent message {key.get('id')}",
                    extra={"session_id": self.session_id},
                )
                return False

            # A receipt is the latest state for its user, not a log entry
            user_receipt: List[Dict[str, Any]] = [
                r for r in (message.user_receipt or []) if r.get("userJid") != receipt.get("userJid")
            ]
            user_receipt.append(receipt)

            data = transform_message({"userReceipt": user_receipt})
            await storage.update_message_fields(
                db, self.session_id, key["remoteJid"], key["id"], user_receipt=data["user_receipt"]
            )
        return True

    # =========================================================================
    # messages.reaction
    # =========================================================================

    async def update_reaction(self, reactions: Iterable[Dict[str, Any]]) -> None:
        for item in reactions:
            async with self._reporting("messages.reaction", "messages reaction update"):
                key, reaction = item["key"], item["reaction"]
                if await self._update_reaction_one(key, reaction):
                    self.sink.emit(
                        "messages.reaction",
                        self.session_id,
                        {"message": {"key": key, "reaction": reaction}},
                    )

    async def _update_reaction_one(self, key: Dict[str, Any], reaction: Dict[str, Any]) -> bool:
        async with self._session_factory() as db, db.begin():
            message = await storage.get_message(db, self.session_id, key["remoteJid"], key["id"])
            if message is None:
                logger.debug(
                    f"Got reaction update for non existent message {key.get('id')}",
                    extra={"session_id": self.session_id},
                )
                return False

            author = get_key_author(reaction.get("key"))
            current = [r for r in (message.reactions or []) if get_key_author(r.get("key")) != author]
            # Empty text retracts the author's reaction
            if reaction.get("text"):
                current.append(reaction)

            data = transform_message({"reactions": current})
            await storage.update_message_fields(
                db, self.session_id, key["remoteJid"], key["id"], reactions=data["reactions"]
            )
        return True
