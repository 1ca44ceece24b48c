from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional
from uuid import UUID

from fastapi import Header, HTTPException, Request

from .app_state import AppState
from .config import CONFIG
from .schemas import User
from .sync import BabyChange, SyncService

logger = logging.getLogger(__name__)


class SessionRegistry:
    """One AppState per user, loaded from the store on first use.

    Loaded sessions watch their babies for changes written elsewhere. A session
    idle for longer than ``idle_timeout`` seconds, with nothing left to flush,
    is closed on a later ``get``.
    """

    def __init__(
        self,
        sync: SyncService,
        *,
        idle_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.sync = sync
        self.idle_timeout = idle_timeout if idle_timeout is not None else CONFIG.session_idle_seconds
        self._clock = clock
        self._sessions: Dict[UUID, AppState] = {}
        self._last_used: Dict[UUID, float] = {}
        self._locks: Dict[UUID, asyncio.Lock] = {}

    async def get(self, user_id: UUID) -> AppState:
        self._last_used[user_id] = self._clock()
        async with self._locks.setdefault(user_id, asyncio.Lock()):
            state = self._sessions.get(user_id)
            if state is None:
                state = AppState(User(id=user_id), sync=self.sync)
                await state.load()
                self._sessions[user_id] = state
                logger.info("session loaded", extra={"user_id": str(user_id), "babies": len(state.babies)})
            state.watch_all()
        self.evict_idle()
        return state

    def evict_idle(self) -> List[UUID]:
        now = self._clock()
        evicted = []
        for user_id, state in list(self._sessions.items()):
            if now - self._last_used.get(user_id, now) <= self.idle_timeout:
                continue
            lock = self._locks.get(user_id)
            if state.pending_write_count or (lock is not None and lock.locked()):
                continue
            self.close(user_id)
            evicted.append(user_id)
        if evicted:
            logger.info("evicted idle sessions", extra={"count": len(evicted)})
        return evicted

    def publish(self, change: BabyChange, *, source: Optional[UUID] = None) -> int:
        """Apply a baby change made through one session to the other loaded sessions."""
        delivered = 0
        for user_id, state in self._sessions.items():
            if user_id == source:
                continue
            baby = change.baby
            if change.baby_id not in state.babies and (baby is None or not baby.is_member(user_id)):
                continue
            state.apply_published_change(
                BabyChange(baby_id=change.baby_id, baby=baby.model_copy(deep=True) if baby else None)
            )
            delivered += 1
        return delivered

    def publish_redemption(self, invite_id: UUID, redeemed_by: UUID) -> int:
        """Mark an invite redeemed in every loaded session still holding it as pending."""
        return sum(
            1
            for user_id, state in self._sessions.items()
            if user_id != redeemed_by and state.mark_invite_redeemed(invite_id, redeemed_by)
        )

    def close(self, user_id: UUID) -> bool:
        state = self._sessions.pop(user_id, None)
        self._last_used.pop(user_id, None)
        lock = self._locks.get(user_id)
        if lock is not None and not lock.locked():
            del self._locks[user_id]
        if state is None:
            return False
        state.close()
        return True

    def close_all(self) -> None:
        for user_id in list(self._sessions):
            self.close(user_id)
        self.sync.remove_all_listeners()

    def __len__(self) -> int:
        return len(self._sessions)


def parse_uuid(value: Optional[str], label: str) -> UUID:
    if not value:
        raise HTTPException(status_code=400, detail=f"Missing {label}.")
    try:
        return UUID(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {label}.") from exc


def get_registry(request: Request) -> SessionRegistry:
    registry = getattr(request.app.state, "sessions", None)
    if registry is None:
        raise HTTPException(status_code=503, detail="Sessions are not configured.")
    return registry


async def get_app_state(
    request: Request,
    caller_id: Optional[str] = Header(None, alias="X-Office-Hours-User-Id"),
) -> AppState:
    resolved = parse_uuid(caller_id, "user id")
    return await get_registry(request).get(resolved)
