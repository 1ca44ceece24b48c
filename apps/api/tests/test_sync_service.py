from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from babyofficehours.schemas import Baby, Invite, InviteRole, User, utcnow
from babyofficehours.supabase import SupabaseError
from babyofficehours.sync import SyncService

from store_helpers import FakeSupabase


def _service(**kwargs) -> tuple:
    fake = FakeSupabase(**kwargs)
    return fake, SyncService(fake, poll_interval=0.01)


def test_create_baby_writes_document() -> None:
    fake, sync = _service()
    baby = Baby(name="Emma", created_by=uuid4())

    asyncio.run(sync.create_or_replace_baby(baby))

    row = fake.row("babies", baby.id)
    assert row["id"] == str(baby.id)
    assert row["name"] == "Emma"
    assert row["parents"] == [str(baby.created_by)]
    upserts = [call for call in fake.calls if call[0] == "upsert"]
    assert upserts[0][1] == "babies"


def test_update_availability_uses_server_timestamp() -> None:
    server_time = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
    fake, sync = _service(server_time=server_time)
    baby = Baby(name="Emma", created_by=uuid4())
    asyncio.run(sync.create_or_replace_baby(baby))

    updated = asyncio.run(sync.update_availability(baby.id, True))

    assert updated is not None
    assert updated.is_available is True
    assert updated.last_status_change == server_time
    assert updated is not baby
    assert baby.is_available is False
    rpc_calls = [call for call in fake.calls if call[0] == "rpc"]
    assert rpc_calls[0][1] == "set_baby_availability"


def test_fetch_babies_for_user_unions_and_dedupes() -> None:
    fake, sync = _service()
    user_id = uuid4()
    as_parent = Baby(name="Emma", created_by=user_id)
    as_subscriber = Baby(name="Noah", created_by=uuid4(), subscribers=[user_id])
    unrelated = Baby(name="Ava", created_by=uuid4())
    for baby in (as_parent, as_subscriber, unrelated):
        asyncio.run(sync.create_or_replace_baby(baby))
    # A row listing the user in both arrays must come back once.
    fake.tables["babies"][str(as_parent.id)]["subscribers"] = [str(user_id)]

    babies = asyncio.run(sync.fetch_babies_for_user(user_id))

    assert [baby.id for baby in babies] == [as_parent.id, as_subscriber.id]
    assert babies[0].subscribers == []


def test_fetch_babies_skips_malformed_rows() -> None:
    fake, sync = _service()
    user_id = uuid4()
    good = Baby(name="Emma", created_by=user_id)
    asyncio.run(sync.create_or_replace_baby(good))
    fake.seed("babies", {"id": "not-a-uuid", "name": "Broken", "createdBy": str(user_id), "parents": [str(user_id)]})
    fake.seed("babies", {"id": str(uuid4()), "createdBy": str(user_id), "parents": [str(user_id)]})

    babies = asyncio.run(sync.fetch_babies_for_user(user_id))

    assert [baby.id for baby in babies] == [good.id]


def test_invite_round_trip_omits_absent_fields() -> None:
    fake, sync = _service()
    invite = Invite(baby_id=uuid4(), role=InviteRole.SUBSCRIBER, created_by=uuid4())

    asyncio.run(sync.create_invite(invite))
    row = fake.row("invites", invite.id)
    assert "expiresAt" not in row
    assert "redeemedBy" not in row

    fetched = asyncio.run(sync.fetch_invite(invite.id))
    assert fetched is not None
    assert fetched is not invite
    assert fetched.id == invite.id
    assert fetched.role is InviteRole.SUBSCRIBER
    assert asyncio.run(sync.fetch_invite(uuid4())) is None


def test_redeem_invite_marks_invite_and_grants_membership() -> None:
    fake, sync = _service()
    creator_id, joiner_id = uuid4(), uuid4()
    baby = Baby(name="Emma", created_by=creator_id)
    invite = Invite(baby_id=baby.id, role=InviteRole.PARENT, created_by=creator_id)
    asyncio.run(sync.create_or_replace_baby(baby))
    asyncio.run(sync.create_invite(invite))

    updated = asyncio.run(sync.redeem_invite(invite, joiner_id))

    assert updated is not None and updated.is_parent(joiner_id)
    row = fake.row("invites", invite.id)
    assert row["isRedeemed"] is True
    assert row["redeemedBy"] == str(joiner_id)
    assert "redeemedAt" in row
    assert invite.is_redeemed is False

    again = asyncio.run(sync.redeem_invite(invite, joiner_id))
    assert again.parents.count(joiner_id) == 1


def test_rejected_redemption_leaves_store_untouched() -> None:
    fake, sync = _service()
    creator_id = uuid4()
    baby = Baby(name="Emma", created_by=creator_id)
    expired = Invite(
        baby_id=baby.id,
        role=InviteRole.SUBSCRIBER,
        created_by=creator_id,
        expires_at=utcnow() - timedelta(minutes=1),
    )
    asyncio.run(sync.create_or_replace_baby(baby))
    asyncio.run(sync.create_invite(expired))

    with pytest.raises(SupabaseError):
        asyncio.run(sync.redeem_invite(expired, uuid4()))

    assert fake.row("invites", expired.id)["isRedeemed"] is False
    assert fake.row("babies", baby.id)["subscribers"] == []


def test_store_failures_propagate() -> None:
    fake, sync = _service()
    fake.fail_on.add("upsert")

    with pytest.raises(SupabaseError) as exc:
        asyncio.run(sync.save_user(User()))

    assert exc.value.status_code == 503


def test_save_user_merges_and_clear_device_token_unsets() -> None:
    fake, sync = _service()
    user = User(name="Sam", device_token="token-1")
    asyncio.run(sync.save_user(user))

    user.name = None
    asyncio.run(sync.save_user(user))
    assert fake.row("users", user.id)["name"] == "Sam"

    asyncio.run(sync.clear_device_token(user.id))
    assert fake.row("users", user.id)["deviceToken"] is None

    fetched = asyncio.run(sync.fetch_user(user.id))
    assert fetched.name == "Sam"
    assert fetched.device_token is None
    assert asyncio.run(sync.fetch_user(uuid4())) is None


def test_subscription_emits_changes_and_removal() -> None:
    fake, sync = _service()
    baby = Baby(name="Emma", created_by=uuid4())
    events = []

    async def scenario() -> None:
        await sync.create_or_replace_baby(baby)
        subscription = sync.subscribe_to_baby(baby.id, events.append)
        await asyncio.sleep(0.05)
        fake.tables["babies"][str(baby.id)]["isAvailable"] = True
        await asyncio.sleep(0.05)
        await sync.delete_baby(baby.id)
        await asyncio.sleep(0.05)
        subscription.cancel()

    asyncio.run(scenario())

    assert [event.baby.is_available for event in events[:2]] == [False, True]
    assert events[2].baby is None and events[2].removed is True
    assert len(events) == 3
    assert sync.listener_count == 0


def test_subscription_reports_unreachable_store() -> None:
    fake, sync = _service()
    baby = Baby(name="Emma", created_by=uuid4())
    events = []

    async def scenario() -> None:
        await sync.create_or_replace_baby(baby)
        sync.subscribe_to_baby(baby.id, events.append)
        await asyncio.sleep(0.05)
        fake.fail_on.add("select")
        await asyncio.sleep(0.05)
        sync.remove_all_listeners()

    asyncio.run(scenario())

    assert events[-1].baby is None
    assert events[-1].removed is False
    assert isinstance(events[-1].error, SupabaseError)


def test_remove_all_listeners_stops_delivery() -> None:
    fake, sync = _service()
    baby = Baby(name="Emma", created_by=uuid4())
    events = []

    async def scenario() -> None:
        await sync.create_or_replace_baby(baby)
        sync.subscribe_to_baby(baby.id, events.append)
        sync.subscribe_to_baby(baby.id, events.append)
        await asyncio.sleep(0.05)
        assert sync.listener_count == 2
        sync.remove_all_listeners()
        delivered = len(events)
        fake.tables["babies"][str(baby.id)]["name"] = "Emma Rose"
        await asyncio.sleep(0.05)
        assert len(events) == delivered

    asyncio.run(scenario())

    assert sync.listener_count == 0
