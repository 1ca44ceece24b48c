"""Store adapter mirroring users, babies and invites to Supabase.

The adapter never mutates the coordinator's entities: every read returns fresh
instances rebuilt from store rows. Redemption and availability changes go
through server functions so they run in one transaction with a server clock.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from .config import CONFIG
from .schemas import Baby, Invite, StoreDocument, User
from .supabase import SupabaseClient, SupabaseError

logger = logging.getLogger(__name__)

BABIES = "babies"
INVITES = "invites"
USERS = "users"

_UNREACHABLE = object()


@dataclass(frozen=True)
class BabyChange:
    """One realtime update for a baby document.

    ``baby`` is None when the document was deleted, became unreadable, or the
    store could not be reached (``error`` is set in the last case).
    ``observed_at`` is the monotonic time the read started, when known.
    """

    baby_id: UUID
    baby: Optional[Baby]
    error: Optional[SupabaseError] = None
    observed_at: Optional[float] = None

    @property
    def removed(self) -> bool:
        return self.baby is None and self.error is None


BabyChangeHandler = Callable[[BabyChange], None]


class Subscription:
    """Handle for one realtime watch; ``cancel`` stops delivery immediately."""

    def __init__(self, baby_id: UUID, owner: "SyncService") -> None:
        self.baby_id = baby_id
        self._owner = owner
        self._task: Optional[asyncio.Task] = None
        self._cancelled = False

    @property
    def active(self) -> bool:
        return not self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._task is not None:
            self._task.cancel()
        self._owner._forget(self)


def _document(entity: StoreDocument) -> Dict[str, Any]:
    return {"id": str(entity.id), **entity.to_document()}


def _eq(value: Any) -> str:
    return f"eq.{value}"


class SyncService:
    def __init__(self, supabase: SupabaseClient, *, poll_interval: Optional[float] = None) -> None:
        self.supabase = supabase
        self.poll_interval = poll_interval if poll_interval is not None else CONFIG.realtime_poll_seconds
        self._subscriptions: List[Subscription] = []

    # Babies

    async def create_or_replace_baby(self, baby: Baby) -> None:
        await self.supabase.upsert(BABIES, _document(baby), on_conflict="id")

    async def delete_baby(self, baby_id: UUID) -> None:
        await self.supabase.delete(BABIES, params={"id": _eq(baby_id)})

    async def update_availability(self, baby_id: UUID, is_available: bool) -> Optional[Baby]:
        """Set availability; the store stamps ``lastStatusChange`` with its own clock."""
        rows = await self.supabase.rpc(
            "set_baby_availability",
            {"baby_id": str(baby_id), "is_available": is_available},
        )
        return self._first_baby(rows)

    async def fetch_baby(self, baby_id: UUID) -> Optional[Baby]:
        rows = await self.supabase.select(BABIES, params={"select": "*", "id": _eq(baby_id)})
        return self._first_baby(rows)

    async def fetch_babies_for_user(self, user_id: UUID) -> List[Baby]:
        """Babies where the user is a parent or a subscriber, deduplicated by id."""
        parent_rows = await self.supabase.select(
            BABIES, params={"select": "*", "parents": f"cs.{{{user_id}}}"}
        )
        subscriber_rows = await self.supabase.select(
            BABIES, params={"select": "*", "subscribers": f"cs.{{{user_id}}}"}
        )

        babies: List[Baby] = []
        seen_ids = set()
        for row in [*parent_rows, *subscriber_rows]:
            baby = self._baby_from_row(row)
            if baby is None or baby.id in seen_ids:
                continue
            seen_ids.add(baby.id)
            babies.append(baby)
        return babies

    # Realtime

    def subscribe_to_baby(self, baby_id: UUID, on_change: BabyChangeHandler) -> Subscription:
        """Watch one baby document. Must be called from a running event loop."""
        subscription = Subscription(baby_id, self)
        subscription._task = asyncio.get_running_loop().create_task(
            self._watch_baby(subscription, on_change)
        )
        self._subscriptions.append(subscription)
        return subscription

    def remove_all_listeners(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.cancel()
        self._subscriptions.clear()

    @property
    def listener_count(self) -> int:
        return len(self._subscriptions)

    def _forget(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    async def _watch_baby(self, subscription: Subscription, on_change: BabyChangeHandler) -> None:
        baby_id = subscription.baby_id
        last_seen: Any = None
        first = True
        while subscription.active:
            observed_at = time.monotonic()
            try:
                rows = await self.supabase.select(BABIES, params={"select": "*", "id": _eq(baby_id)})
            except SupabaseError as exc:
                snapshot: Any = _UNREACHABLE
                change = BabyChange(baby_id=baby_id, baby=None, error=exc, observed_at=observed_at)
            else:
                snapshot = rows[0] if rows else None
                baby = self._baby_from_row(snapshot) if snapshot is not None else None
                change = BabyChange(baby_id=baby_id, baby=baby, observed_at=observed_at)

            if subscription.active and (first or snapshot != last_seen):
                if snapshot is _UNREACHABLE:
                    logger.warning("Baby %s unreachable: %s", baby_id, change.error)
                try:
                    on_change(change)
                except Exception as exc:
                    logger.exception("Baby change handler failed for %s", baby_id, exc_info=exc)
            first = False
            last_seen = snapshot
            await asyncio.sleep(self.poll_interval)

    # Invites

    async def create_invite(self, invite: Invite) -> None:
        await self.supabase.upsert(INVITES, _document(invite), on_conflict="id")

    async def fetch_invite(self, invite_id: UUID) -> Optional[Invite]:
        rows = await self.supabase.select(INVITES, params={"select": "*", "id": _eq(invite_id)})
        if not rows:
            return None
        row = rows[0]
        return Invite.from_document(row, row.get("id"))

    async def delete_invite(self, invite_id: UUID) -> None:
        await self.supabase.delete(INVITES, params={"id": _eq(invite_id)})

    async def redeem_invite(self, invite: Invite, user_id: UUID) -> Optional[Baby]:
        """Mark the invite redeemed and grant membership in one server transaction.

        Repeating the call for the same user is a no-op that returns the baby.
        Rejections (unknown, expired, redeemed by someone else) raise SupabaseError.
        """
        rows = await self.supabase.rpc(
            "redeem_invite",
            {"invite_id": str(invite.id), "user_id": str(user_id)},
        )
        return self._first_baby(rows)

    # Users

    async def save_user(self, user: User) -> None:
        # Merge upsert: omitted optionals keep their stored value.
        await self.supabase.upsert(USERS, _document(user), on_conflict="id")

    async def clear_device_token(self, user_id: UUID) -> None:
        await self.supabase.update(USERS, {"deviceToken": None}, params={"id": _eq(user_id)})

    async def fetch_user(self, user_id: UUID) -> Optional[User]:
        rows = await self.supabase.select(USERS, params={"select": "*", "id": _eq(user_id)})
        if not rows:
            return None
        row = rows[0]
        return User.from_document(row, row.get("id"))

    # Rows

    @staticmethod
    def _baby_from_row(row: Any) -> Optional[Baby]:
        if not isinstance(row, dict):
            return None
        return Baby.from_document(row, row.get("id"))

    def _first_baby(self, rows: Any) -> Optional[Baby]:
        if isinstance(rows, list):
            return self._baby_from_row(rows[0]) if rows else None
        return self._baby_from_row(rows)
