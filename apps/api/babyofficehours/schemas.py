"""Domain entities shared by the session coordinator and the store adapter.

Relationships between entities are expressed as ids only. Wire aliases match the
document keys stored in the ``babies``, ``invites`` and ``users`` tables.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Dict, Iterable, List, Optional, Type, TypeVar
from uuid import UUID, uuid4

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, ValidationError, model_validator

from .config import CONFIG

logger = logging.getLogger(__name__)

_DocumentT = TypeVar("_DocumentT", bound="StoreDocument")


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


def _dedupe(ids: Iterable[UUID]) -> List[UUID]:
    seen = set()
    unique: List[UUID] = []
    for item in ids:
        if item in seen:
            continue
        seen.add(item)
        unique.append(item)
    return unique


class InviteRole(str, Enum):
    PARENT = "parent"
    SUBSCRIBER = "subscriber"


class StoreDocument(BaseModel):
    """Base for entities persisted as one document keyed by ``id``."""

    model_config = ConfigDict(populate_by_name=True)

    id: UUID = Field(default_factory=uuid4, frozen=True)

    def to_document(self) -> Dict[str, Any]:
        """Return the wire payload (without ``id``); absent optionals are omitted."""
        return self.model_dump(mode="json", by_alias=True, exclude={"id"}, exclude_none=True)

    @classmethod
    def from_document(cls: Type[_DocumentT], data: Any, doc_id: Any) -> Optional[_DocumentT]:
        """Rebuild an entity from store data, or return None when the record is malformed."""
        if not isinstance(data, dict):
            logger.warning("Skipping %s document %s: payload is not an object", cls.__name__, doc_id)
            return None
        try:
            return cls.model_validate({**data, "id": doc_id})
        except ValidationError as exc:
            logger.warning(
                "Skipping malformed %s document %s (%d errors)",
                cls.__name__,
                doc_id,
                exc.error_count(),
            )
            return None


class User(StoreDocument):
    name: Optional[str] = None
    device_token: Optional[str] = Field(default=None, alias="deviceToken")
    babies: List[UUID] = Field(default_factory=list)

    @model_validator(mode="after")
    def _dedupe_babies(self) -> "User":
        self.babies = _dedupe(self.babies)
        return self

    @property
    def display_name(self) -> str:
        return self.name or "Unknown"

    def add_baby(self, baby_id: UUID) -> bool:
        if baby_id in self.babies:
            return False
        self.babies.append(baby_id)
        return True

    def remove_baby(self, baby_id: UUID) -> bool:
        if baby_id not in self.babies:
            return False
        self.babies.remove(baby_id)
        return True


class Baby(StoreDocument):
    """A baby profile broadcasting availability for video calls.

    Invariants:
        - ``created_by`` is always in ``parents`` and can never be removed.
        - ``parents`` and ``subscribers`` are duplicate-free and disjoint.
        - ``last_status_change`` moves forward whenever ``is_available`` changes.

    Membership methods return False instead of raising when a rule blocks them.
    Permission checks belong to the caller.
    """

    name: str
    created_by: UUID = Field(alias="createdBy", frozen=True)
    parents: List[UUID] = Field(default_factory=list)
    subscribers: List[UUID] = Field(default_factory=list)
    is_available: bool = Field(default=False, alias="isAvailable")
    last_status_change: UtcDatetime = Field(default_factory=utcnow, alias="lastStatusChange")

    @model_validator(mode="after")
    def _normalize_membership(self) -> "Baby":
        parents = _dedupe(self.parents)
        if self.created_by not in parents:
            parents.insert(0, self.created_by)
        parent_ids = set(parents)
        self.parents = parents
        self.subscribers = [uid for uid in _dedupe(self.subscribers) if uid not in parent_ids]
        return self

    # Availability

    def toggle_availability(self) -> None:
        self.is_available = not self.is_available
        self._stamp_status_change()

    def set_availability(self, available: bool) -> None:
        if self.is_available == available:
            return
        self.is_available = available
        self._stamp_status_change()

    def _stamp_status_change(self) -> None:
        now = utcnow()
        if now <= self.last_status_change:
            now = self.last_status_change + timedelta(microseconds=1)
        self.last_status_change = now

    # Parents

    def add_parent(self, user_id: UUID) -> bool:
        """Add a parent; a current subscriber is promoted out of ``subscribers``."""
        if user_id in self.parents:
            return False
        if user_id in self.subscribers:
            self.subscribers.remove(user_id)
        self.parents.append(user_id)
        return True

    def remove_parent(self, user_id: UUID) -> bool:
        if user_id == self.created_by:
            return False
        if user_id not in self.parents:
            return False
        self.parents.remove(user_id)
        return True

    def is_parent(self, user_id: UUID) -> bool:
        return user_id in self.parents

    def is_creator(self, user_id: UUID) -> bool:
        return user_id == self.created_by

    @property
    def co_parent_count(self) -> int:
        return len(self.parents) - 1

    # Subscribers

    def add_subscriber(self, user_id: UUID) -> bool:
        if user_id in self.parents:
            return False
        if user_id in self.subscribers:
            return False
        self.subscribers.append(user_id)
        return True

    def remove_subscriber(self, user_id: UUID) -> bool:
        if user_id not in self.subscribers:
            return False
        self.subscribers.remove(user_id)
        return True

    def is_subscriber(self, user_id: UUID) -> bool:
        return user_id in self.subscribers

    @property
    def subscriber_count(self) -> int:
        return len(self.subscribers)

    def is_member(self, user_id: UUID) -> bool:
        return self.is_parent(user_id) or self.is_subscriber(user_id)


_REDEMPTION_FIELDS = frozenset({"is_redeemed", "redeemed_by", "redeemed_at"})


class Invite(StoreDocument):
    """Single-use, optionally expiring grant of a role on one baby."""

    baby_id: UUID = Field(alias="babyId", frozen=True)
    role: InviteRole = Field(frozen=True)
    created_by: UUID = Field(alias="createdBy", frozen=True)
    created_at: UtcDatetime = Field(default_factory=utcnow, alias="createdAt", frozen=True)
    expires_at: Optional[UtcDatetime] = Field(default=None, alias="expiresAt", frozen=True)
    is_redeemed: bool = Field(default=False, alias="isRedeemed")
    redeemed_by: Optional[UUID] = Field(default=None, alias="redeemedBy")
    redeemed_at: Optional[UtcDatetime] = Field(default=None, alias="redeemedAt")

    @model_validator(mode="after")
    def _read_legacy_redemption(self) -> "Invite":
        # Older documents recorded the redeemer without flipping the flag.
        if self.redeemed_by is not None and not self.is_redeemed:
            self.is_redeemed = True
        return self

    def __setattr__(self, name: str, value: Any) -> None:
        if name in _REDEMPTION_FIELDS and self.is_redeemed:
            raise ValueError(f"Invite {self.id} is already redeemed")
        super().__setattr__(name, value)

    @property
    def is_expired(self) -> bool:
        if self.expires_at is None:
            return False
        return utcnow() > self.expires_at

    @property
    def is_valid(self) -> bool:
        return not self.is_redeemed and not self.is_expired

    @property
    def shareable_code(self) -> str:
        # Only the first 8 hex chars of the id; distinct invites may share a code.
        return f"{CONFIG.invite_scheme}://invite/{str(self.id)[:8].lower()}"

    def redeem(self, user_id: UUID) -> bool:
        if not self.is_valid:
            return False
        self.redeemed_by = user_id
        self.redeemed_at = utcnow()
        self.is_redeemed = True
        return True
