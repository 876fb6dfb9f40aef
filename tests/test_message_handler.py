"""
Tests for the per-session message store.

Tests cover:
- History sync (plain and full resync, atomic failure)
- Upsert idempotency, jid normalization, chat creation side effect
- Delta updates, deletes, receipts and reactions
- Unknown targets are silent no-ops
- Listener registration and failure isolation
"""

import pytest

from wa_store import storage
from wa_store.message_handler import MessageHandler
from wa_store.models import Chat


JID = "6281234567890@s.whatsapp.net"
OTHER_JID = "6289999999999@s.whatsapp.net"


def make_message(message_id: str, remote_jid: str = JID, text: str = "hi", **fields) -> dict:
    """Wire-format WebMessageInfo."""
    message = {
        "key": {"remoteJid": remote_jid, "fromMe": False, "id": message_id},
        "message": {"conversation": text},
        "messageTimestamp": 1700000000,
        "pushName": "Alice",
    }
    message.update(fields)
    return message


def key_of(message_id: str, remote_jid: str = JID) -> dict:
    return {"remoteJid": remote_jid, "fromMe": False, "id": message_id}


def errors_in(outcomes):
    return [o for o in outcomes if o.status == "error"]


class TestHistorySet:
    """messaging-history.set"""

    @pytest.mark.asyncio
    async def test_set_inserts_batch(self, store, events, outcomes, fetch_rows):
        await events.emit("messaging-history.set", {
            "messages": [make_message("m1"), make_message("m2")],
            "isLatest": False,
        })

        rows = await fetch_rows()
        assert [r.id for r in rows] == ["m1", "m2"]
        assert rows[0].remote_jid == JID
        assert rows[0].message == {"conversation": "hi"}
        assert len(outcomes) == 1
        assert outcomes[0].event == "messages.upsert"
        assert outcomes[0].status == "success"
        assert len(outcomes[0].data["messages"]) == 2

    @pytest.mark.asyncio
    async def test_latest_replaces_previous_rows(self, store, outcomes, fetch_rows):
        await store.set({"messages": [make_message(f"old{i}") for i in range(3)], "isLatest": False})
        await store.set({"messages": [make_message("new1"), make_message("new2")], "isLatest": True})

        rows = await fetch_rows()
        assert [r.id for r in rows] == ["new1", "new2"]

    @pytest.mark.asyncio
    async def test_not_latest_keeps_previous_rows(self, store, fetch_rows):
        await store.set({"messages": [make_message("m1")], "isLatest": False})
        await store.set({"messages": [make_message("m2")], "isLatest": False})

        assert len(await fetch_rows()) == 2

    @pytest.mark.asyncio
    async def test_failed_insert_rolls_back_resync(self, store, outcomes, fetch_rows):
        await store.set({"messages": [make_message("m1"), make_message("m2")], "isLatest": False})
        outcomes.clear()

        # Duplicate composite key inside the batch
        await store.set({"messages": [make_message("x"), make_message("x")], "isLatest": True})

        rows = await fetch_rows()
        assert [r.id for r in rows] == ["m1", "m2"]
        assert len(outcomes) == 1
        assert outcomes[0].status == "error"
        assert outcomes[0].data is None
        assert outcomes[0].message.startswith("An error occurred during messages set")

    @pytest.mark.asyncio
    async def test_full_resync_is_scoped_to_session(self, events, sink, session_factory, store, fetch_rows):
        other = MessageHandler("s2", events, sink=sink, session_factory=session_factory)
        await other.set({"messages": [make_message("m1")], "isLatest": False})

        await store.set({"messages": [make_message("m2")], "isLatest": True})

        assert [r.id for r in await fetch_rows("s2")] == ["m1"]


class TestUpsert:
    """messages.upsert"""

    @pytest.mark.asyncio
    async def test_upsert_twice_keeps_one_row(self, store, events, fetch_rows):
        await events.emit("messages.upsert", {"messages": [make_message("m1", text="first")], "type": "append"})
        await events.emit("messages.upsert", {"messages": [make_message("m1", text="second")], "type": "append"})

        rows = await fetch_rows()
        assert len(rows) == 1
        assert rows[0].message == {"conversation": "second"}

    @pytest.mark.asyncio
    async def test_second_upsert_keeps_unset_fields(self, store, fetch_rows):
        await store.upsert({"messages": [make_message("m1", pushName="Alice")], "type": "append"})
        update = make_message("m1", text="edited")
        del update["pushName"]
        await store.upsert({"messages": [update], "type": "append"})

        rows = await fetch_rows()
        assert rows[0].push_name == "Alice"
        assert rows[0].message == {"conversation": "edited"}

    @pytest.mark.asyncio
    async def test_upsert_normalizes_jid(self, store, fetch_rows):
        await store.upsert({
            "messages": [make_message("m1", remote_jid="6281234567890:12@S.WhatsApp.Net")],
            "type": "append",
        })

        rows = await fetch_rows()
        assert rows[0].remote_jid == JID

    @pytest.mark.asyncio
    async def test_other_types_are_ignored(self, store, outcomes, fetch_rows):
        await store.upsert({"messages": [make_message("m1")], "type": "prepend"})

        assert await fetch_rows() == []
        assert outcomes == []

    @pytest.mark.asyncio
    async def test_one_outcome_per_message(self, store, outcomes):
        await store.upsert({"messages": [make_message("m1"), make_message("m2")], "type": "append"})

        assert [o.event for o in outcomes] == ["messages.upsert", "messages.upsert"]
        assert all(o.status == "success" for o in outcomes)
        assert outcomes[0].data["messages"]["key"]["id"] == "m1"

    @pytest.mark.asyncio
    async def test_malformed_message_does_not_drop_batch(self, store, outcomes, fetch_rows):
        broken = {"message": {"conversation": "no key"}}
        await store.upsert({
            "messages": [make_message("m1"), broken, make_message("m2")],
            "type": "append",
        })

        assert [r.id for r in await fetch_rows()] == ["m1", "m2"]
        errors = errors_in(outcomes)
        assert len(errors) == 1
        assert errors[0].message.startswith("An error occurred during messages upsert")

    @pytest.mark.asyncio
    async def test_notify_creates_missing_chat(self, store, events):
        chats = []
        events.on("chats.upsert", chats.append)

        await store.upsert({
            "messages": [make_message("m1", messageTimestamp={"low": 1700000000, "high": 0, "unsigned": True})],
            "type": "notify",
        })

        assert chats == [[{"id": JID, "conversationTimestamp": 1700000000, "unreadCount": 1}]]

    @pytest.mark.asyncio
    async def test_notify_skips_existing_chat(self, store, events, session_factory):
        async with session_factory() as db:
            db.add(Chat(session_id="s1", id=JID))
            await db.commit()
        chats = []
        events.on("chats.upsert", chats.append)

        await store.upsert({"messages": [make_message("m1")], "type": "notify"})

        assert chats == []

    @pytest.mark.asyncio
    async def test_chat_store_failure_keeps_single_outcome(self, store, events, outcomes, fetch_rows):
        def broken_chat_store(chats):
            raise RuntimeError("chat store down")

        events.on("chats.upsert", broken_chat_store)

        await store.upsert({"messages": [make_message("m1")], "type": "notify"})

        assert [r.id for r in await fetch_rows()] == ["m1"]
        assert [(o.event, o.status) for o in outcomes] == [("messages.upsert", "success")]

    @pytest.mark.asyncio
    async def test_append_never_creates_chat(self, store, events):
        chats = []
        events.on("chats.upsert", chats.append)

        await store.upsert({"messages": [make_message("m1")], "type": "append"})

        assert chats == []


class TestUpdate:
    """messages.update"""

    @pytest.mark.asyncio
    async def test_delta_merges_onto_row(self, store, events, outcomes, fetch_rows):
        await store.upsert({"messages": [make_message("m1", status=2)], "type": "append"})
        outcomes.clear()

        await events.emit("messages.update", [{"key": key_of("m1"), "update": {"status": 4}}])

        rows = await fetch_rows()
        assert len(rows) == 1
        assert rows[0].status == 4
        assert rows[0].message == {"conversation": "hi"}
        assert rows[0].push_name == "Alice"
        assert rows[0].message_timestamp == 1700000000
        assert outcomes[0].event == "messages.update"
        assert outcomes[0].data["messages"]["status"] == 4

    @pytest.mark.asyncio
    async def test_status_name_is_accepted(self, store, fetch_rows):
        await store.upsert({"messages": [make_message("m1")], "type": "append"})

        await store.update([{"key": key_of("m1"), "update": {"status": "READ"}}])

        assert (await fetch_rows())[0].status == 4

    @pytest.mark.asyncio
    async def test_delta_can_clear_field(self, store, fetch_rows):
        await store.upsert({"messages": [make_message("m1", starred=True)], "type": "append"})

        await store.update([{"key": key_of("m1"), "update": {"starred": None}}])

        assert (await fetch_rows())[0].starred is None

    @pytest.mark.asyncio
    async def test_update_keeps_canonical_jid(self, store, session_factory, fetch_rows):
        await store.upsert({
            "messages": [make_message("m1", remote_jid="6281234567890:12@S.WhatsApp.Net")],
            "type": "append",
        })

        await store.update([{"key": key_of("m1"), "update": {"status": 4}}])
        await store.update([{"key": key_of("m1"), "update": {"starred": True}}])

        async with session_factory() as db:
            row = await storage.get_message(db, "s1", JID, "m1")
        assert row is not None
        assert row.status == 4
        assert row.starred is True
        assert len(await fetch_rows()) == 1

    @pytest.mark.asyncio
    async def test_update_with_new_key_normalizes_jid(self, store, fetch_rows):
        await store.upsert({"messages": [make_message("m1")], "type": "append"})

        new_key = {"remoteJid": "6281234567890:3@s.whatsapp.net", "fromMe": False, "id": "m1"}
        await store.update([{"key": key_of("m1"), "update": {"key": new_key}}])

        rows = await fetch_rows()
        assert rows[0].remote_jid == JID
        assert rows[0].key == new_key

    @pytest.mark.asyncio
    async def test_unknown_message_is_noop(self, store, outcomes, fetch_rows):
        await store.update([{"key": key_of("missing"), "update": {"status": 4}}])

        assert await fetch_rows() == []
        assert outcomes == []

    @pytest.mark.asyncio
    async def test_failure_is_isolated_per_item(self, store, outcomes, fetch_rows):
        await store.upsert({"messages": [make_message("m1")], "type": "append"})
        outcomes.clear()

        await store.update([
            {"key": key_of("m1"), "update": {"messageTimestamp": "not-a-number"}},
            {"key": key_of("m1"), "update": {"status": 3}},
        ])

        rows = await fetch_rows()
        assert len(rows) == 1
        assert rows[0].status == 3
        assert rows[0].message_timestamp == 1700000000
        assert [o.status for o in outcomes] == ["error", "success"]


class TestDelete:
    """messages.delete"""

    @pytest.mark.asyncio
    async def test_delete_all_is_scoped_to_chat_and_session(
        self, store, events, sink, session_factory, outcomes, fetch_rows
    ):
        other = MessageHandler("s2", events, sink=sink, session_factory=session_factory)
        await store.set({
            "messages": [make_message("m1"), make_message("m2"), make_message("m3", remote_jid=OTHER_JID)],
            "isLatest": False,
        })
        await other.set({"messages": [make_message("m1")], "isLatest": False})
        outcomes.clear()

        request = {"all": True, "jid": JID}
        await events.emit("messages.delete", request)

        assert [(r.remote_jid, r.id) for r in await fetch_rows()] == [(OTHER_JID, "m3")]
        assert [r.id for r in await fetch_rows("s2")] == ["m1"]
        assert outcomes[0].event == "messages.delete"
        assert outcomes[0].data == {"message": request}

    @pytest.mark.asyncio
    async def test_delete_by_keys(self, store, fetch_rows):
        await store.set({
            "messages": [make_message("m1"), make_message("m2"), make_message("m3")],
            "isLatest": False,
        })

        await store.delete({"keys": [key_of("m1"), key_of("m3")]})

        assert [r.id for r in await fetch_rows()] == ["m2"]

    @pytest.mark.asyncio
    async def test_delete_by_keys_is_scoped_to_chat(self, store, fetch_rows):
        await store.set({
            "messages": [make_message("m1"), make_message("m1", remote_jid=OTHER_JID)],
            "isLatest": False,
        })

        await store.delete({"keys": [key_of("m1")]})

        assert [(r.remote_jid, r.id) for r in await fetch_rows()] == [(OTHER_JID, "m1")]


class TestReceipts:
    """message-receipt.update"""

    @pytest.mark.asyncio
    async def test_same_user_replaces_and_new_user_appends(self, store, events, outcomes, fetch_rows):
        await store.upsert({"messages": [make_message("m1")], "type": "append"})
        outcomes.clear()

        await events.emit("message-receipt.update", [
            {"key": key_of("m1"), "receipt": {"userJid": "a@s.whatsapp.net", "receiptTimestamp": 1}},
        ])
        await events.emit("message-receipt.update", [
            {"key": key_of("m1"), "receipt": {"userJid": "a@s.whatsapp.net", "readTimestamp": 2}},
        ])

        receipts = (await fetch_rows())[0].user_receipt
        assert receipts == [{"userJid": "a@s.whatsapp.net", "readTimestamp": 2}]

        await store.update_receipt([
            {"key": key_of("m1"), "receipt": {"userJid": "b@s.whatsapp.net", "receiptTimestamp": 3}},
        ])

        receipts = (await fetch_rows())[0].user_receipt
        assert [r["userJid"] for r in receipts] == ["a@s.whatsapp.net", "b@s.whatsapp.net"]
        assert [o.event for o in outcomes] == ["message-receipt.update"] * 3
        assert outcomes[0].data["message"]["key"]["id"] == "m1"

    @pytest.mark.asyncio
    async def test_receipt_timestamps_are_coerced(self, store, fetch_rows):
        await store.upsert({"messages": [make_message("m1")], "type": "append"})

        await store.update_receipt([{
            "key": key_of("m1"),
            "receipt": {"userJid": "a@s.whatsapp.net", "readTimestamp": {"low": 5, "high": 0, "unsigned": True}},
        }])

        assert (await fetch_rows())[0].user_receipt == [{"userJid": "a@s.whatsapp.net", "readTimestamp": 5}]

    @pytest.mark.asyncio
    async def test_unknown_message_is_noop(self, store, outcomes):
        await store.update_receipt([
            {"key": key_of("missing"), "receipt": {"userJid": "a@s.whatsapp.net"}},
        ])

        assert outcomes == []


class TestReactions:
    """messages.reaction"""

    @staticmethod
    def reaction(author: str, text: str) -> dict:
        return {"key": {"remoteJid": JID, "fromMe": False, "participant": author, "id": f"r-{author}"}, "text": text}

    @pytest.mark.asyncio
    async def test_empty_text_retracts_only_that_author(self, store, events, outcomes, fetch_rows):
        await store.upsert({"messages": [make_message("m1")], "type": "append"})
        outcomes.clear()

        await events.emit("messages.reaction", [{"key": key_of("m1"), "reaction": self.reaction("a@s.whatsapp.net", "👍")}])
        await events.emit("messages.reaction", [{"key": key_of("m1"), "reaction": self.reaction("b@s.whatsapp.net", "❤️")}])
        await events.emit("messages.reaction", [{"key": key_of("m1"), "reaction": self.reaction("a@s.whatsapp.net", "")}])

        reactions = (await fetch_rows())[0].reactions
        assert [r["text"] for r in reactions] == ["❤️"]
        assert reactions[0]["key"]["participant"] == "b@s.whatsapp.net"
        assert [o.event for o in outcomes] == ["messages.reaction"] * 3

    @pytest.mark.asyncio
    async def test_new_reaction_replaces_previous(self, store, fetch_rows):
        await store.upsert({"messages": [make_message("m1")], "type": "append"})

        await store.update_reaction([{"key": key_of("m1"), "reaction": self.reaction("a@s.whatsapp.net", "👍")}])
        await store.update_reaction([{"key": key_of("m1"), "reaction": self.reaction("a@s.whatsapp.net", "😂")}])

        assert [r["text"] for r in (await fetch_rows())[0].reactions] == ["😂"]

    @pytest.mark.asyncio
    async def test_own_reactions_share_author(self, store, fetch_rows):
        await store.upsert({"messages": [make_message("m1")], "type": "append"})
        mine = {"key": {"remoteJid": JID, "fromMe": True, "id": "r1"}, "text": "👍"}
        mine_again = {"key": {"remoteJid": JID, "fromMe": True, "id": "r2"}, "text": ""}

        await store.update_reaction([{"key": key_of("m1"), "reaction": mine}])
        await store.update_reaction([{"key": key_of("m1"), "reaction": mine_again}])

        assert (await fetch_rows())[0].reactions == []

    @pytest.mark.asyncio
    async def test_unknown_message_is_noop(self, store, outcomes):
        await store.update_reaction([{"key": key_of("missing"), "reaction": self.reaction("a@s.whatsapp.net", "👍")}])

        assert outcomes == []


class TestListen:
    """Subscription lifecycle and failure isolation."""

    EVENTS = (
        "messaging-history.set",
        "messages.upsert",
        "messages.update",
        "messages.delete",
        "message-receipt.update",
        "messages.reaction",
    )

    def test_listen_twice_subscribes_once(self, events, sink):
        handler = MessageHandler("s1", events, sink=sink)

        handler.listen()
        handler.listen()

        assert handler.listening
        assert all(events.listener_count(e) == 1 for e in self.EVENTS)

    def test_unlisten_removes_handlers(self, events, sink):
        handler = MessageHandler("s1", events, sink=sink)
        handler.listen()

        handler.unlisten()
        handler.unlisten()

        assert not handler.listening
        assert all(events.listener_count(e) == 0 for e in self.EVENTS)

    def test_unlisten_without_listen_is_safe(self, events, sink):
        handler = MessageHandler("s1", events, sink=sink)

        handler.unlisten()

        assert not handler.listening

    @pytest.mark.asyncio
    async def test_storage_failure_never_escapes(self, events, sink, outcomes):
        def broken_factory():
            raise RuntimeError("database is gone")

        handler = MessageHandler("s1", events, sink=sink, session_factory=broken_factory)
        handler.listen()

        await events.emit("messaging-history.set", {"messages": [make_message("m1")], "isLatest": True})
        await events.emit("messages.upsert", {"messages": [make_message("m1")], "type": "notify"})
        await events.emit("messages.update", [{"key": key_of("m1"), "update": {"status": 4}}])
        await events.emit("messages.delete", {"all": True, "jid": JID})
        await events.emit("message-receipt.update", [{"key": key_of("m1"), "receipt": {"userJid": "a"}}])
        await events.emit("messages.reaction", [{"key": key_of("m1"), "reaction": {"text": "x"}}])

        assert [o.event for o in outcomes] == [
            "messages.upsert",
            "messages.upsert",
            "messages.update",
            "messages.delete",
            "message-receipt.update",
            "messages.reaction",
        ]
        assert all(o.status == "error" for o in outcomes)
        assert all("database is gone" in o.message for o in outcomes)
        assert handler.listening
