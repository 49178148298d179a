"""
Tests for the local store.

Tests cover:
- Precondition error before init()
- Upsert insert / merge by primary key and by secondary unique key
- Index lookups
- Transaction atomicity and read-your-writes
- Monotonic message status
- App metadata
"""

import pytest

from chatcore.exceptions import StoreNotInitializedError, UnknownKindError
from chatcore.storage import (
    CONVERSATION_USERS,
    DRAFT_MESSAGES,
    MESSAGES,
    SEND_MESSAGE_REQUESTS,
    USERS,
    LocalStore,
)


def message(**overrides) -> dict:
    data = {
        "content": "hello",
        "status": "sending",
        "created_at": 1_700_000_000_000,
        "sender_id": 42,
        "conversation_id": 1,
    }
    data.update(overrides)
    return data


class TestStoreLifecycle:
    """Test store setup preconditions."""

    @pytest.mark.asyncio
    async def test_operations_before_init_fail_fast(self, database_url):
        """Any operation before init() raises a precondition error."""
        store = LocalStore(database_url)

        with pytest.raises(StoreNotInitializedError):
            await store.get(MESSAGES, 1)
        with pytest.raises(StoreNotInitializedError):
            await store.run_transaction(lambda tx: tx.get(MESSAGES, 1))

    @pytest.mark.asyncio
    async def test_initialized_flag(self, database_url):
        store = LocalStore(database_url)
        assert store.initialized is False

        await store.init()
        assert store.initialized is True

        await store.close()
        assert store.initialized is False

    @pytest.mark.asyncio
    async def test_data_survives_reopen(self, database_url):
        """Records persist across store instances on the same database."""
        first = LocalStore(database_url)
        await first.init()
        stored = await first.upsert(MESSAGES, message())
        await first.close()

        second = LocalStore(database_url)
        await second.init()
        try:
            reloaded = await second.get(MESSAGES, stored.id)
            assert reloaded.content == "hello"
        finally:
            await second.close()

    @pytest.mark.asyncio
    async def test_unknown_kind(self, store):
        with pytest.raises(UnknownKindError):
            await store.get("attachments", 1)

    @pytest.mark.asyncio
    async def test_unknown_index(self, store):
        with pytest.raises(UnknownKindError):
            await store.get_all_by_index(MESSAGES, "by-sender", 42)


class TestUpsert:
    """Test insert-or-merge semantics."""

    @pytest.mark.asyncio
    async def test_insert_assigns_id(self, store):
        stored = await store.upsert(MESSAGES, message())

        assert stored.id is not None
        assert (await store.get(MESSAGES, stored.id)).content == "hello"

    @pytest.mark.asyncio
    async def test_insert_fills_created_at(self, store):
        data = message()
        del data["created_at"]

        stored = await store.upsert(MESSAGES, data)

        assert stored.created_at > 0

    @pytest.mark.asyncio
    async def test_merge_by_primary_key(self, store):
        await store.upsert(MESSAGES, message(id=5, content="first"))
        merged = await store.upsert(MESSAGES, message(id=5, content="edited"))

        assert merged.id == 5
        assert merged.content == "edited"
        assert len(await store.get_all(MESSAGES)) == 1

    @pytest.mark.asyncio
    async def test_merge_keeps_unspecified_fields(self, store):
        await store.upsert(USERS, {"id": 1, "name": "Ada", "profile_photo_url": "https://example.com/a.png"})
        merged = await store.upsert(USERS, {"id": 1, "name": "Ada L."})

        assert merged.name == "Ada L."
        assert merged.profile_photo_url == "https://example.com/a.png"

    @pytest.mark.asyncio
    async def test_send_request_matched_by_message_id(self, store):
        """A second request for the same message replaces the first."""
        first = await store.upsert(SEND_MESSAGE_REQUESTS, {
            "message_id": 7, "status": "fail", "last_sent_at": 1, "fail_count": 3,
        })
        second = await store.upsert(SEND_MESSAGE_REQUESTS, {
            "message_id": 7, "status": "pending", "last_sent_at": 2, "fail_count": 0,
        })

        assert second.id == first.id
        requests = await store.get_all_by_index(SEND_MESSAGE_REQUESTS, "by-message", 7)
        assert len(requests) == 1
        assert requests[0].status == "pending"
        assert requests[0].fail_count == 0

    @pytest.mark.asyncio
    async def test_draft_unique_per_conversation(self, store):
        await store.upsert(DRAFT_MESSAGES, {"conversation_id": 3, "content": "he"})
        await store.upsert(DRAFT_MESSAGES, {"conversation_id": 3, "content": "hello"})
        await store.upsert(DRAFT_MESSAGES, {"conversation_id": 4, "content": "other"})

        drafts = await store.get_all(DRAFT_MESSAGES)
        assert [(d.conversation_id, d.content) for d in drafts] == [(3, "hello"), (4, "other")]

    @pytest.mark.asyncio
    async def test_conversation_user_keyed_by_pair(self, store):
        await store.upsert(CONVERSATION_USERS, {"conversation_id": 1, "user_id": 10})
        await store.upsert(CONVERSATION_USERS, {"conversation_id": 1, "user_id": 10})
        await store.upsert(CONVERSATION_USERS, {"conversation_id": 1, "user_id": 11})
        await store.upsert(CONVERSATION_USERS, {"conversation_id": 2, "user_id": 10})

        members = await store.get_all_by_index(CONVERSATION_USERS, "by-conversation", 1)
        assert [m.user_id for m in members] == [10, 11]
        memberships = await store.get_all_by_index(CONVERSATION_USERS, "by-user", 10)
        assert [m.conversation_id for m in memberships] == [1, 2]
        assert await store.get(CONVERSATION_USERS, (1, 11)) is not None

    @pytest.mark.asyncio
    async def test_invalid_record_rejected(self, store):
        with pytest.raises(ValueError):
            await store.upsert(MESSAGES, {"content": "missing fields"})
        assert await store.get_all(MESSAGES) == []


class TestIndexAndDelete:
    """Test index lookups and deletes."""

    @pytest.mark.asyncio
    async def test_messages_by_conversation(self, store):
        await store.upsert(MESSAGES, message(id=1, conversation_id=1))
        await store.upsert(MESSAGES, message(id=2, conversation_id=2))
        await store.upsert(MESSAGES, message(id=3, conversation_id=1))

        found = await store.get_all_by_index(MESSAGES, "by-conversation", 1)

        assert [m.id for m in found] == [1, 3]

    @pytest.mark.asyncio
    async def test_delete(self, store):
        stored = await store.upsert(MESSAGES, message())

        assert await store.delete(MESSAGES, stored.id) is True
        assert await store.get(MESSAGES, stored.id) is None
        assert await store.delete(MESSAGES, stored.id) is False


class TestTransactions:
    """Test atomicity of run_transaction."""

    @pytest.mark.asyncio
    async def test_exception_leaves_no_partial_writes(self, store):
        async def failing(tx):
            await tx.upsert(MESSAGES, message(id=1))
            await tx.upsert(USERS, {"id": 1, "name": "Ada"})
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            await store.run_transaction(failing)

        assert await store.get(MESSAGES, 1) is None
        assert await store.get(USERS, 1) is None

    @pytest.mark.asyncio
    async def test_reads_see_own_writes(self, store):
        async def read_back(tx):
            await tx.upsert(SEND_MESSAGE_REQUESTS, {
                "message_id": 9, "status": "pending", "last_sent_at": 1,
            })
            request = await tx.get_send_request_by_message(9)
            await tx.update(SEND_MESSAGE_REQUESTS, request.id, {"fail_count": request.fail_count + 1})
            return await tx.get_send_request_by_message(9)

        request = await store.run_transaction(read_back)

        assert request.fail_count == 1

    @pytest.mark.asyncio
    async def test_commit_returns_result(self, store):
        result = await store.run_transaction(lambda tx: tx.upsert(USERS, {"id": 2, "name": "Grace"}))

        assert result.name == "Grace"
        assert (await store.get(USERS, 2)).name == "Grace"


class TestMessageStatus:
    """Test that message status never regresses."""

    @pytest.mark.asyncio
    async def test_status_advances(self, store):
        stored = await store.upsert(MESSAGES, message())

        updated = await store.set_message_status(stored.id, "sent")

        assert updated.status == "sent"

    @pytest.mark.asyncio
    async def test_status_does_not_regress(self, store):
        stored = await store.upsert(MESSAGES, message(status="delivered"))

        await store.set_message_status(stored.id, "sent")
        await store.upsert(MESSAGES, message(id=stored.id, status="sending"))

        assert (await store.get(MESSAGES, stored.id)).status == "delivered"

    @pytest.mark.asyncio
    async def test_failed_can_still_become_sent(self, store):
        stored = await store.upsert(MESSAGES, message(status="failed"))

        await store.set_message_status(stored.id, "sent")

        assert (await store.get(MESSAGES, stored.id)).status == "sent"

    @pytest.mark.asyncio
    async def test_status_of_missing_message(self, store):
        assert await store.set_message_status(404, "sent") is None


class TestMetadata:
    """Test app metadata key/value records."""

    @pytest.mark.asyncio
    async def test_default_when_absent(self, store):
        assert await store.get_metadata("lastSyncTimestamp", 0) == 0

    @pytest.mark.asyncio
    async def test_set_and_overwrite(self, store):
        await store.set_metadata("lastSyncTimestamp", 100)
        await store.set_metadata("lastSyncTimestamp", 250)

        assert await store.get_metadata("lastSyncTimestamp") == 250
