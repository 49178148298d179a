"""
Tests for the ChatCore entry point.

Tests cover:
- send_message argument validation
- Message, conversation and user queries
- Draft messages
- Event subscription through on() / off()
- Idempotent init()
"""

import asyncio

import pytest

from chatcore import events
from chatcore.config import Settings
from chatcore.core import ChatCore
from chatcore.exceptions import StoreNotInitializedError
from chatcore.storage import LocalStore
from chatcore.transport import WebSocketConnection
from conftest import wait_until


class TestSendMessageValidation:
    """Test that missing or empty fields are rejected up front."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", ["", "   "])
    async def test_empty_content_rejected(self, core, content):
        with pytest.raises(ValueError):
            await core.send_message(1, 42, content)

        assert await core.get_messages(1) == []

    @pytest.mark.asyncio
    async def test_missing_ids_rejected(self, core):
        with pytest.raises(ValueError):
            await core.send_message(None, 42, "hi")
        with pytest.raises(ValueError):
            await core.send_message(1, None, "hi")

    @pytest.mark.asyncio
    async def test_before_init(self, settings, connection):
        core = ChatCore(LocalStore(settings.DATABASE_URL), connection, settings=settings)

        with pytest.raises(StoreNotInitializedError):
            await core.send_message(1, 42, "hi")

    @pytest.mark.asyncio
    async def test_offline_send_does_not_raise(self, settings, connection):
        """With no connection the message is stored and retried later."""
        core = ChatCore(LocalStore(settings.DATABASE_URL), connection, settings=settings)
        await core.init()
        try:
            message_id = await core.send_message(1, 42, "hi")

            request = await wait_until(
                lambda: _failed_request(core, message_id)
            )
            assert request.fail_count >= 1
            assert (await core.get_message(message_id)).status == "sending"
        finally:
            await core.close()


async def _failed_request(core, message_id):
    request = await core.store.get_send_request_by_message(message_id)
    return request if request is not None and request.status == "fail" else None


class TestQueries:
    """Test read operations."""

    @pytest.mark.asyncio
    async def test_get_messages_by_conversation(self, core):
        first = await core.send_message(1, 42, "one")
        await core.send_message(2, 42, "elsewhere")
        second = await core.send_message(1, 42, "two")

        messages = await core.get_messages(1)

        assert [m.id for m in messages] == [first, second]

    @pytest.mark.asyncio
    async def test_synced_records_visible(self, core, connection):
        await connection.receive("sync", {
            "users": [{"id": 7, "name": "Ada", "profile_photo_url": "https://example.com/ada.png"}],
            "conversations": [{"id": 10, "name": "General"}],
            "conversation_users": [{"conversation_id": 10, "user_id": 7}],
        })

        assert [c.name for c in await core.get_conversations()] == ["General"]
        assert (await core.get_user(7)).profile_photo_url == "https://example.com/ada.png"
        assert [m.user_id for m in await core.get_conversation_users(10)] == [7]

    @pytest.mark.asyncio
    async def test_missing_records(self, core):
        assert await core.get_user(1) is None
        assert await core.get_message(1) is None
        assert await core.get_conversations() == []


class TestDrafts:
    """Test draft messages, one per conversation."""

    @pytest.mark.asyncio
    async def test_save_replaces_draft(self, core):
        await core.save_draft_message(1, "hel")
        await core.save_draft_message(1, "hello")

        draft = await core.get_draft_message(1)

        assert draft.content == "hello"
        assert await core.get_draft_message(2) is None

    @pytest.mark.asyncio
    async def test_delete_draft(self, core):
        await core.save_draft_message(1, "hello")

        assert await core.delete_draft_message(1) is True
        assert await core.get_draft_message(1) is None
        assert await core.delete_draft_message(1) is False


class TestSubscriptions:
    """Test on() / off()."""

    @pytest.mark.asyncio
    async def test_on_and_off(self, core, connection):
        received = []
        core.on(events.INCOMING_MESSAGE, received.append)
        message = {
            "id": 1, "content": "hi", "status": "sent",
            "created_at": 1_700_000_000_000, "sender_id": 7, "conversation_id": 1,
        }

        await connection.receive("incoming_message", message)
        core.off(events.INCOMING_MESSAGE, received.append)
        await connection.receive("incoming_message", {**message, "id": 2})

        assert received == [1]


class TestLifecycle:
    """Test init() / close()."""

    @pytest.mark.asyncio
    async def test_init_twice_registers_once(self, core, connection):
        """A second init() does not double the wire handlers or the retry subscription."""
        acked = []
        core.on(events.MESSAGE_SENT, acked.append)

        await core.init()

        assert core.initialized is True
        assert len(connection.handlers["message_sent"]) == 1
        assert core.bus.handler_count(events.MESSAGE_FAILED) == 1
        assert core.bus.handler_count(events.SEND_MESSAGE) == 1

        message_id = await core.send_message(1, 42, "hi")
        await wait_until(lambda: connection.sent("sendMessage"))
        await asyncio.sleep(0.05)
        assert len(connection.sent("sendMessage")) == 1

        await connection.receive("message_sent", {"messageId": message_id})
        assert acked == [message_id]

    @pytest.mark.asyncio
    async def test_close_resets_initialized(self, settings, connection):
        core = ChatCore(LocalStore(settings.DATABASE_URL), connection, settings=settings)
        assert core.initialized is False

        await core.init()
        await core.close()

        assert core.initialized is False


class TestFromSettings:
    """Test building a ChatCore from settings."""

    def test_builds_sqlite_store_and_websocket(self, database_url):
        settings = Settings(DATABASE_URL=database_url, SERVER_URL="ws://localhost:9", RECONNECT_INTERVAL_SECONDS=1)

        core = ChatCore.from_settings(settings)

        assert isinstance(core.store, LocalStore)
        assert core.store.database_url == database_url
        assert isinstance(core.connection, WebSocketConnection)
        assert core.connection.reconnect_interval == 1
        assert core.scheduler.backoff_base == settings.RETRY_BACKOFF_BASE_SECONDS
