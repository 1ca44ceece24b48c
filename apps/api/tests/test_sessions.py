from __future__ import annotations

import asyncio
from uuid import uuid4

import pytest
from fastapi import HTTPException

from babyofficehours.schemas import Baby, InviteRole
from babyofficehours.sessions import SessionRegistry, parse_uuid
from babyofficehours.sync import BabyChange, SyncService

from store_helpers import FakeSupabase


def _registry() -> SessionRegistry:
    return SessionRegistry(SyncService(FakeSupabase(), poll_interval=0.01))


def test_parse_uuid() -> None:
    value = uuid4()
    assert parse_uuid(str(value), "user id") == value
    with pytest.raises(HTTPException) as missing:
        parse_uuid(None, "user id")
    assert missing.value.status_code == 400
    with pytest.raises(HTTPException):
        parse_uuid("nope", "user id")


def test_get_loads_once_per_user() -> None:
    registry = _registry()
    user_id = uuid4()

    async def scenario():
        first = await registry.get(user_id)
        second = await registry.get(user_id)
        return first, second

    first, second = asyncio.run(scenario())

    assert first is second
    assert first.user_id == user_id
    assert len(registry) == 1
    assert registry.close(user_id) is True
    assert registry.close(user_id) is False
    assert len(registry) == 0


def test_publish_reaches_members_only() -> None:
    registry = _registry()
    alice, bob, carol = uuid4(), uuid4(), uuid4()

    async def scenario():
        return [await registry.get(user_id) for user_id in (alice, bob, carol)]

    alice_state, bob_state, carol_state = asyncio.run(scenario())
    baby = alice_state.create_baby("Emma")
    bob_copy = baby.model_copy(deep=True)
    bob_state.join_baby(bob_copy, InviteRole.SUBSCRIBER, "Grandma")
    baby.add_subscriber(bob)

    baby.toggle_availability()
    delivered = registry.publish(BabyChange(baby_id=baby.id, baby=baby), source=alice)

    assert delivered == 1
    assert bob_state.baby(baby.id).is_available is True
    assert bob_state.baby(baby.id) is not baby
    assert carol_state.babies == {}

    registry.publish(BabyChange(baby_id=baby.id, baby=None), source=alice)
    assert bob_state.babies == {}
    assert alice_state.baby(baby.id) is baby


def test_close_all_drops_sessions() -> None:
    registry = _registry()

    async def scenario():
        await registry.get(uuid4())
        await registry.get(uuid4())

    asyncio.run(scenario())
    registry.close_all()

    assert len(registry) == 0
    assert registry.sync.listener_count == 0


class SlowUserStore(FakeSupabase):
    """Holds the user-document read for one user until ``release`` is set."""

    def __init__(self, slow_user_id) -> None:
        super().__init__()
        self.slow_user_id = slow_user_id
        self.release = None

    async def select(self, table, params):
        if table == "users" and params.get("id") == f"eq.{self.slow_user_id}":
            await self.release.wait()
        return await super().select(table, params)


def test_get_watches_babies_for_changes_written_elsewhere() -> None:
    fake = FakeSupabase()
    registry = SessionRegistry(SyncService(fake, poll_interval=0.01))
    alice = uuid4()
    baby = Baby(name="Emma", created_by=alice)
    fake.seed("babies", {"id": str(baby.id), **baby.to_document()})

    async def scenario():
        state = await registry.get(alice)
        assert state.watched_baby_ids == [baby.id]
        fake.tables["babies"][str(baby.id)]["isAvailable"] = True
        await asyncio.sleep(0.05)
        registry.close_all()
        return state

    state = asyncio.run(scenario())

    assert state.baby(baby.id).is_available is True
    assert state.watched_baby_ids == []
    assert registry.sync.listener_count == 0


def test_loading_one_user_does_not_block_another() -> None:
    alice, bob = uuid4(), uuid4()
    store = SlowUserStore(alice)
    registry = SessionRegistry(SyncService(store, poll_interval=0.01))

    async def scenario():
        store.release = asyncio.Event()
        slow = asyncio.create_task(registry.get(alice))
        await asyncio.sleep(0)
        bob_state = await asyncio.wait_for(registry.get(bob), timeout=1)
        assert not slow.done()
        store.release.set()
        return bob_state, await slow

    bob_state, alice_state = asyncio.run(scenario())

    assert bob_state.user_id == bob
    assert alice_state.user_id == alice
    assert len(registry) == 2


def test_idle_sessions_are_evicted_once_flushed() -> None:
    now = [0.0]
    fake = FakeSupabase()
    registry = SessionRegistry(SyncService(fake, poll_interval=0.01), idle_timeout=60, clock=lambda: now[0])
    alice, bob = uuid4(), uuid4()

    async def touch(user_id):
        return await registry.get(user_id)

    alice_state = asyncio.run(touch(alice))
    now[0] = 30.0
    asyncio.run(touch(bob))

    alice_state.set_display_name("Sam")
    now[0] = 100.0
    asyncio.run(touch(bob))
    assert len(registry) == 2

    asyncio.run(alice_state.flush())
    now[0] = 200.0
    asyncio.run(touch(bob))
    assert len(registry) == 1

    reloaded = asyncio.run(touch(alice))
    assert reloaded is not alice_state
    assert reloaded.current_user.name == "Sam"


def test_publish_redemption_marks_pending_copies() -> None:
    registry = _registry()
    alice, bob = uuid4(), uuid4()

    async def scenario():
        return await registry.get(alice), await registry.get(bob)

    alice_state, _ = asyncio.run(scenario())
    baby = alice_state.create_baby("Emma")
    invite = alice_state.create_co_parent_invite(baby)

    assert registry.publish_redemption(invite.id, bob) == 1
    assert alice_state.pending_invites_for(baby) == []
    assert invite.redeemed_by == bob
    assert registry.publish_redemption(invite.id, bob) == 0
