"""Session coordinator: the current user, known babies and invites, and every
operation that mutates them.

Invariants:
    - Entities are stored by id; relationships between them are ids only.
    - Permission and rule violations return None/False; only store failures raise.
    - All mutations happen on the owning event loop. Realtime changes are
      marshalled back onto it before they touch local state.
    - With a SyncService attached, each mutation queues its remote writes;
      ``flush`` sends them in order and keeps whatever failed for a retry.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional
from uuid import UUID

from .config import CONFIG
from .schemas import Baby, Invite, InviteRole, User, utcnow
from .supabase import SupabaseError
from .sync import BabyChange, Subscription, SyncService

logger = logging.getLogger(__name__)

_DEFAULT_EXPIRY = object()


@dataclass
class PendingWrite:
    description: str
    send: Callable[[], Awaitable[Any]]


class AppState:
    def __init__(
        self,
        current_user: Optional[User] = None,
        *,
        sync: Optional[SyncService] = None,
        babies: Iterable[Baby] = (),
        pending_invites: Iterable[Invite] = (),
        known_users: Iterable[User] = (),
        has_completed_onboarding: bool = False,
        default_invite_ttl: Optional[timedelta] = None,
    ) -> None:
        self.current_user = current_user or User()
        self.sync = sync
        self.babies: Dict[UUID, Baby] = {baby.id: baby for baby in babies}
        self.pending_invites: Dict[UUID, Invite] = {invite.id: invite for invite in pending_invites}
        self.known_users: Dict[UUID, User] = {user.id: user for user in known_users}
        self.has_completed_onboarding = has_completed_onboarding
        self.pending_join_invite: Optional[Invite] = None
        self.default_invite_ttl = default_invite_ttl or timedelta(days=CONFIG.default_invite_ttl_days)
        self._outbox: List[PendingWrite] = []
        self._flush_lock = asyncio.Lock()
        self._subscriptions: Dict[UUID, Subscription] = {}
        self._local_edits: Dict[UUID, float] = {}

    # Lookups

    @property
    def user_id(self) -> UUID:
        return self.current_user.id

    def baby(self, baby_id: UUID) -> Optional[Baby]:
        return self.babies.get(baby_id)

    def _canonical(self, baby: Baby) -> Baby:
        return self.babies.get(baby.id, baby)

    def register_user(self, user: User) -> None:
        self.known_users[user.id] = user

    def user_for(self, user_id: UUID) -> Optional[User]:
        if user_id == self.user_id:
            return self.current_user
        return self.known_users.get(user_id)

    def display_name_for(self, user_id: UUID) -> str:
        if user_id == self.user_id:
            return "You"
        user = self.known_users.get(user_id)
        return user.display_name if user else "Unknown"

    def is_parent(self, baby: Baby) -> bool:
        return self._canonical(baby).is_parent(self.user_id)

    def is_subscriber(self, baby: Baby) -> bool:
        return self._canonical(baby).is_subscriber(self.user_id)

    def is_creator(self, baby: Baby) -> bool:
        return self._canonical(baby).is_creator(self.user_id)

    @property
    def parent_babies(self) -> List[Baby]:
        return [baby for baby in self.babies.values() if baby.is_parent(self.user_id)]

    @property
    def subscribed_babies(self) -> List[Baby]:
        return [baby for baby in self.babies.values() if baby.is_subscriber(self.user_id)]

    def pending_invites_for(self, baby: Baby) -> List[Invite]:
        return [
            invite
            for invite in self.pending_invites.values()
            if invite.baby_id == baby.id and invite.is_valid
        ]

    # Babies

    def create_baby(self, name: str) -> Baby:
        baby = Baby(name=name, created_by=self.user_id)
        self.babies[baby.id] = baby
        self.current_user.add_baby(baby.id)
        self.has_completed_onboarding = True
        self._queue_baby(baby)
        self._queue_user()
        return baby

    def rename_baby(self, baby: Baby, name: str) -> bool:
        baby = self._canonical(baby)
        name = name.strip()
        if not name or not baby.is_parent(self.user_id):
            return False
        baby.name = name
        self._queue_baby(baby)
        return True

    def toggle_availability(self, baby: Baby) -> bool:
        baby = self._canonical(baby)
        if not baby.is_parent(self.user_id):
            logger.info("Availability change denied", extra={"baby_id": str(baby.id)})
            return False
        baby.toggle_availability()
        self._queue_availability(baby)
        return True

    def set_availability(self, baby: Baby, available: bool) -> bool:
        baby = self._canonical(baby)
        if not baby.is_parent(self.user_id):
            logger.info("Availability change denied", extra={"baby_id": str(baby.id)})
            return False
        if baby.is_available != available:
            baby.set_availability(available)
            self._queue_availability(baby)
        return True

    def delete_baby(self, baby: Baby) -> bool:
        """Delete a baby profile. Only its creator may do this."""
        baby = self._canonical(baby)
        if not baby.is_creator(self.user_id):
            return False
        self._forget_baby(baby.id)
        if self.sync is not None:
            sync = self.sync
            self._queue(f"delete baby {baby.id}", lambda: sync.delete_baby(baby.id))
        self._queue_user()
        return True

    def leave_baby(self, baby: Baby) -> bool:
        """Drop the current user's own membership. The creator cannot leave."""
        baby = self._canonical(baby)
        if baby.is_creator(self.user_id):
            return False
        left = baby.remove_parent(self.user_id) or baby.remove_subscriber(self.user_id)
        if not left:
            return False
        self._queue_baby(baby)
        self._forget_baby(baby.id)
        self._queue_user()
        return True

    def _forget_baby(self, baby_id: UUID) -> None:
        self.babies.pop(baby_id, None)
        self.current_user.remove_baby(baby_id)
        for invite_id in [i.id for i in self.pending_invites.values() if i.baby_id == baby_id]:
            del self.pending_invites[invite_id]
        self.unwatch(baby_id)

    # Invites

    def create_co_parent_invite(self, baby: Baby, expires_in: Any = _DEFAULT_EXPIRY) -> Optional[Invite]:
        return self._create_invite(baby, InviteRole.PARENT, expires_in)

    def create_subscriber_invite(self, baby: Baby, expires_in: Any = _DEFAULT_EXPIRY) -> Optional[Invite]:
        return self._create_invite(baby, InviteRole.SUBSCRIBER, expires_in)

    def _create_invite(self, baby: Baby, role: InviteRole, expires_in: Any) -> Optional[Invite]:
        # expires_in: omitted -> default TTL, None -> never expires, timedelta -> custom.
        baby = self._canonical(baby)
        if not baby.is_parent(self.user_id):
            logger.info("Invite creation denied", extra={"baby_id": str(baby.id), "role": role.value})
            return None
        if expires_in is _DEFAULT_EXPIRY:
            expires_in = self.default_invite_ttl
        expires_at = utcnow() + expires_in if expires_in is not None else None
        invite = Invite(baby_id=baby.id, role=role, created_by=self.user_id, expires_at=expires_at)
        self.pending_invites[invite.id] = invite
        if self.sync is not None:
            sync = self.sync
            snapshot = invite.model_copy(deep=True)
            self._queue(f"create invite {invite.id}", lambda: sync.create_invite(snapshot))
        return invite

    def redeem_invite(self, invite: Invite) -> Optional[Baby]:
        """Redeem an invite for a baby already known locally."""
        if not invite.is_valid:
            return None
        baby = self.babies.get(invite.baby_id)
        if baby is None:
            return None

        invite.redeem(self.user_id)
        self._grant(baby, invite.role)
        self._local_edits[baby.id] = time.monotonic()
        self.current_user.add_baby(baby.id)
        if self.sync is not None:
            sync = self.sync
            user_id = self.user_id
            self._queue(f"redeem invite {invite.id}", lambda: sync.redeem_invite(invite, user_id))
        self._queue_user()
        return baby

    def cancel_invite(self, invite: Invite) -> bool:
        if self.pending_invites.pop(invite.id, None) is None:
            return False
        if self.sync is not None:
            sync = self.sync
            self._queue(f"delete invite {invite.id}", lambda: sync.delete_invite(invite.id))
        return True

    def mark_invite_redeemed(self, invite_id: UUID, user_id: UUID) -> bool:
        """Record a redemption that happened in another session. Queues nothing."""
        invite = self.pending_invites.get(invite_id)
        if invite is None:
            return False
        return invite.redeem(user_id)

    def _grant(self, baby: Baby, role: InviteRole) -> bool:
        if role is InviteRole.PARENT:
            return baby.add_parent(self.user_id)
        return baby.add_subscriber(self.user_id)

    # Membership

    def remove_co_parent(self, user_id: UUID, baby: Baby) -> bool:
        baby = self._canonical(baby)
        if not baby.is_parent(self.user_id):
            return False
        removed = baby.remove_parent(user_id)
        if removed:
            self._queue_baby(baby)
        return removed

    def remove_subscriber(self, user_id: UUID, baby: Baby) -> bool:
        baby = self._canonical(baby)
        if not baby.is_parent(self.user_id):
            return False
        removed = baby.remove_subscriber(user_id)
        if removed:
            self._queue_baby(baby)
        return removed

    def join_baby(self, baby: Baby, role: InviteRole, user_name: str) -> Baby:
        self.current_user.name = user_name
        baby = self.babies.setdefault(baby.id, baby)
        self._grant(baby, role)
        self.current_user.add_baby(baby.id)
        self.has_completed_onboarding = True
        self.pending_join_invite = None
        self._queue_baby(baby)
        self._queue_user()
        return baby

    # Profile

    def set_display_name(self, name: Optional[str]) -> None:
        self.current_user.name = name
        self._queue_user()

    def set_device_token(self, token: Optional[str]) -> None:
        self.current_user.device_token = token
        if token is None and self.sync is not None:
            sync = self.sync
            user_id = self.user_id
            self._queue(f"clear device token {user_id}", lambda: sync.clear_device_token(user_id))
            return
        self._queue_user()

    # Outbox

    @property
    def pending_write_count(self) -> int:
        return len(self._outbox)

    def _queue(self, description: str, send: Callable[[], Awaitable[Any]]) -> None:
        self._outbox.append(PendingWrite(description=description, send=send))

    def _queue_baby(self, baby: Baby) -> None:
        self._local_edits[baby.id] = time.monotonic()
        if self.sync is None:
            return
        sync = self.sync
        snapshot = baby.model_copy(deep=True)
        self._queue(f"save baby {baby.id}", lambda: sync.create_or_replace_baby(snapshot))

    def _queue_availability(self, baby: Baby) -> None:
        self._local_edits[baby.id] = time.monotonic()
        if self.sync is None:
            return
        sync = self.sync
        baby_id, available = baby.id, baby.is_available
        self._queue(
            f"availability {baby_id}={available}",
            lambda: sync.update_availability(baby_id, available),
        )

    def _queue_user(self) -> None:
        if self.sync is None:
            return
        sync = self.sync
        snapshot = self.current_user.model_copy(deep=True)
        self._queue(f"save user {snapshot.id}", lambda: sync.save_user(snapshot))

    async def flush(self) -> int:
        """Send queued writes in order; returns how many were sent.

        On failure the failing write stays at the head of the queue and the
        error propagates. Every queued write is safe to send again.
        """
        sent = 0
        async with self._flush_lock:
            while self._outbox:
                write = self._outbox[0]
                try:
                    await write.send()
                except Exception:
                    logger.warning(
                        "Remote write failed: %s (%d still queued)", write.description, len(self._outbox)
                    )
                    raise
                self._outbox.pop(0)
                sent += 1
        return sent

    # Remote flows

    def _require_sync(self) -> SyncService:
        if self.sync is None:
            raise RuntimeError("No SyncService attached to this session.")
        return self.sync

    async def load(self) -> List[Baby]:
        """Replace local state with the store's view of the current user."""
        sync = self._require_sync()
        stored = await sync.fetch_user(self.user_id)
        if stored is None:
            await sync.save_user(self.current_user)
        else:
            self.current_user = stored

        babies = await sync.fetch_babies_for_user(self.user_id)
        self.babies = {baby.id: baby for baby in babies}
        for baby_id in [bid for bid in self._subscriptions if bid not in self.babies]:
            self.unwatch(baby_id)
        for baby in babies:
            self.current_user.add_baby(baby.id)
        if babies:
            self.has_completed_onboarding = True
        return babies

    async def open_invite(self, invite_id: UUID) -> Optional[Invite]:
        """Fetch an invite opened from a link and hold it until it is accepted."""
        invite = await self._require_sync().fetch_invite(invite_id)
        if invite is None or not invite.is_valid:
            return None
        self.pending_join_invite = invite
        return invite

    async def accept_invite(self, invite_id: UUID, user_name: Optional[str] = None) -> Optional[Baby]:
        """Redeem an invite on the server first, then merge the result locally."""
        sync = self._require_sync()
        invite = await sync.fetch_invite(invite_id)
        if invite is None or not invite.is_valid:
            return None
        try:
            baby = await sync.redeem_invite(invite, self.user_id)
        except SupabaseError as exc:
            # Redeemed or expired by the server clock since it was fetched.
            if exc.status_code >= 500 or exc.status_code == 404:
                raise
            logger.info("Invite %s rejected by store: %s", invite_id, exc.detail)
            return None
        if baby is None:
            return None

        invite.redeem(self.user_id)
        if user_name:
            self.current_user.name = user_name
        self.babies[baby.id] = baby
        self.current_user.add_baby(baby.id)
        self.has_completed_onboarding = True
        self.pending_join_invite = None
        await sync.save_user(self.current_user)
        return baby

    async def refresh_members(self, baby: Baby) -> List[User]:
        """Fetch user documents for members not yet in the registry."""
        sync = self._require_sync()
        baby = self._canonical(baby)
        fetched: List[User] = []
        for member_id in [*baby.parents, *baby.subscribers]:
            if member_id == self.user_id or member_id in self.known_users:
                continue
            user = await sync.fetch_user(member_id)
            if user is not None:
                self.register_user(user)
                fetched.append(user)
        return fetched

    # Realtime

    def watch_baby(self, baby_id: UUID) -> Subscription:
        """Follow remote changes to one baby. Must be called on the owning loop."""
        sync = self._require_sync()
        loop = asyncio.get_running_loop()
        self.unwatch(baby_id)

        def deliver(change: BabyChange) -> None:
            loop.call_soon_threadsafe(self._apply_watched_change, change)

        subscription = sync.subscribe_to_baby(baby_id, deliver)
        self._subscriptions[baby_id] = subscription
        return subscription

    def watch_all(self) -> List[Subscription]:
        """Watch every known baby not already watched; returns the new subscriptions."""
        return [
            self.watch_baby(baby_id) for baby_id in list(self.babies) if baby_id not in self._subscriptions
        ]

    def unwatch(self, baby_id: UUID) -> bool:
        subscription = self._subscriptions.pop(baby_id, None)
        if subscription is None:
            return False
        subscription.cancel()
        return True

    @property
    def watched_baby_ids(self) -> List[UUID]:
        return list(self._subscriptions)

    def close(self) -> None:
        for baby_id in list(self._subscriptions):
            self.unwatch(baby_id)

    def _apply_watched_change(self, change: BabyChange) -> None:
        # Drop changes queued before the watch was cancelled, and reads that
        # started before the last local edit of the same baby.
        if change.baby_id not in self._subscriptions:
            return
        edited_at = self._local_edits.get(change.baby_id)
        if edited_at is not None and change.observed_at is not None and change.observed_at < edited_at:
            logger.debug("Ignoring stale read of baby %s", change.baby_id)
            return
        self.apply_baby_change(change)

    def apply_published_change(self, change: BabyChange) -> None:
        """Apply a change another session already wrote; older watched reads are then ignored."""
        self._local_edits[change.baby_id] = time.monotonic()
        self.apply_baby_change(change)

    def apply_baby_change(self, change: BabyChange) -> None:
        if change.error is not None:
            logger.warning("Keeping local copy of baby %s; store unreachable", change.baby_id)
            return
        baby = change.baby
        if baby is None:
            if change.baby_id in self.babies:
                logger.info("Baby %s removed remotely", change.baby_id)
            self._forget_baby(change.baby_id)
            return
        if not baby.is_member(self.user_id):
            logger.info("Current user no longer a member of baby %s", baby.id)
            self._forget_baby(baby.id)
            return
        self.babies[baby.id] = baby
        self.current_user.add_baby(baby.id)
