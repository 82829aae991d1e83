"""
Tests for the in-memory conversation store.
"""

import asyncio

import pytest

from nexcall.conversation_store import ConversationState, InMemoryConversationStore
from nexcall.models import TurnRole


class TestConversationState:

    def test_append_returns_position(self):
        state = ConversationState(call_sid="CA1")

        assert state.append(TurnRole.ASSISTANT, "Bonjour") == 0
        assert state.append(TurnRole.USER, "Salut") == 1
        assert state.count(TurnRole.USER) == 1
        assert state.count(TurnRole.ASSISTANT) == 1

    def test_rebuilt_state_continues_stored_sequence(self):
        state = ConversationState(call_sid="CA1", first_sequence=3)

        assert state.append(TurnRole.USER, "Et vos tarifs ?") == 3
        assert state.append(TurnRole.ASSISTANT, "Nos tarifs commencent à 20 euros.") == 4
        assert len(state.turns) == 2


class TestInMemoryConversationStore:

    def test_put_get_delete(self):
        store = InMemoryConversationStore()
        state = ConversationState(call_sid="CA1")

        store.put(state)
        assert store.get("CA1") is state
        assert len(store) == 1

        store.delete("CA1")
        assert store.get("CA1") is None
        assert len(store) == 0

    def test_delete_missing_is_noop(self):
        InMemoryConversationStore().delete("missing")

    def test_idle_states_are_evicted(self):
        store = InMemoryConversationStore(ttl_seconds=60)
        state = ConversationState(call_sid="CA1")
        store.put(state)

        evicted = store.evict_expired(now=state.updated_at + 61)

        assert evicted == ["CA1"]
        assert store.get("CA1") is None

    def test_active_states_are_kept(self):
        store = InMemoryConversationStore(ttl_seconds=60)
        state = ConversationState(call_sid="CA1")
        store.put(state)

        assert store.evict_expired(now=state.updated_at + 30) == []
        assert store.get("CA1") is state

    def test_zero_ttl_disables_eviction(self):
        store = InMemoryConversationStore(ttl_seconds=0)
        state = ConversationState(call_sid="CA1")
        store.put(state)

        assert store.evict_expired(now=state.updated_at + 10_000) == []


class TestPerKeyLock:

    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self):
        store = InMemoryConversationStore()
        order = []

        async def worker(name: str):
            async with store.lock("CA1"):
                order.append(f"{name}-start")
                await asyncio.sleep(0.01)
                order.append(f"{name}-end")

        await asyncio.gather(worker("a"), worker("b"), worker("c"))

        for i in range(0, len(order), 2):
            assert order[i].split("-")[0] == order[i + 1].split("-")[0]

    @pytest.mark.asyncio
    async def test_different_keys_do_not_block(self):
        store = InMemoryConversationStore()
        entered = asyncio.Event()

        async def holder():
            async with store.lock("CA1"):
                await asyncio.wait_for(entered.wait(), timeout=1)

        async def other():
            async with store.lock("CA2"):
                entered.set()

        await asyncio.gather(holder(), other())

    @pytest.mark.asyncio
    async def test_locks_are_released_after_use(self):
        store = InMemoryConversationStore()

        async with store.lock("CA1"):
            assert "CA1" in store._locks

        assert "CA1" not in store._locks
        assert "CA1" not in store._lock_users
