from datetime import timedelta
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ..app_state import AppState
from ..schemas import Invite, InviteRole
from ..sessions import SessionRegistry, get_app_state, get_registry
from ..sync import BabyChange

router = APIRouter(prefix="/api/v1", tags=["invites"])


class CreateInvitePayload(BaseModel):
    role: InviteRole
    expires_in_hours: Optional[float] = Field(default=None, gt=0)
    never_expires: bool = False


class AcceptInvitePayload(BaseModel):
    user_name: Optional[str] = None


def _invite_view(invite: Invite) -> dict:
    return {
        "id": str(invite.id),
        **invite.to_document(),
        "isValid": invite.is_valid,
        "shareableCode": invite.shareable_code,
    }


@router.post("/babies/{baby_id}/invites")
async def create_invite_endpoint(
    baby_id: UUID,
    payload: CreateInvitePayload,
    state: AppState = Depends(get_app_state),
) -> dict:
    baby = state.baby(baby_id)
    if baby is None:
        raise HTTPException(status_code=404, detail="Baby not found")

    kwargs = {}
    if payload.never_expires:
        kwargs["expires_in"] = None
    elif payload.expires_in_hours is not None:
        kwargs["expires_in"] = timedelta(hours=payload.expires_in_hours)

    if payload.role is InviteRole.PARENT:
        invite = state.create_co_parent_invite(baby, **kwargs)
    else:
        invite = state.create_subscriber_invite(baby, **kwargs)
    if invite is None:
        raise HTTPException(status_code=403, detail="Only parents can invite")
    await state.flush()
    return _invite_view(invite)


@router.get("/babies/{baby_id}/invites")
async def list_invites_endpoint(baby_id: UUID, state: AppState = Depends(get_app_state)) -> List[dict]:
    baby = state.baby(baby_id)
    if baby is None:
        raise HTTPException(status_code=404, detail="Baby not found")
    return [_invite_view(invite) for invite in state.pending_invites_for(baby)]


@router.get("/invites/{invite_id}")
async def open_invite_endpoint(invite_id: UUID, state: AppState = Depends(get_app_state)) -> dict:
    invite = await state.open_invite(invite_id)
    if invite is None:
        raise HTTPException(status_code=410, detail="Invite is no longer valid")
    return _invite_view(invite)


@router.delete("/invites/{invite_id}")
async def cancel_invite_endpoint(invite_id: UUID, state: AppState = Depends(get_app_state)) -> dict:
    invite = state.pending_invites.get(invite_id)
    if invite is None:
        raise HTTPException(status_code=404, detail="Invite not found")
    if invite.is_redeemed:
        raise HTTPException(status_code=409, detail="Invite already redeemed")
    state.cancel_invite(invite)
    await state.flush()
    return {"id": str(invite_id), "status": "cancelled"}


@router.post("/invites/{invite_id}/accept")
async def accept_invite_endpoint(
    invite_id: UUID,
    payload: AcceptInvitePayload,
    state: AppState = Depends(get_app_state),
    registry: SessionRegistry = Depends(get_registry),
) -> dict:
    user_name = (payload.user_name or "").strip() or None
    baby = await state.accept_invite(invite_id, user_name=user_name)
    if baby is None:
        raise HTTPException(status_code=410, detail="Invite is no longer valid")
    registry.publish(BabyChange(baby_id=baby.id, baby=baby), source=state.user_id)
    registry.publish_redemption(invite_id, state.user_id)
    return {
        "baby": baby.model_dump(mode="json", by_alias=True),
        "babies": [str(baby_id) for baby_id in state.current_user.babies],
    }
