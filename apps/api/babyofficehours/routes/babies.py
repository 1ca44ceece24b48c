from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..app_state import AppState
from ..schemas import Baby
from ..sessions import SessionRegistry, get_app_state, get_registry
from ..sync import BabyChange

router = APIRouter(prefix="/api/v1", tags=["babies"])


class CreateBabyPayload(BaseModel):
    name: str


class UpdateBabyPayload(BaseModel):
    name: str


class AvailabilityPayload(BaseModel):
    is_available: Optional[bool] = None


class BabyListResponse(BaseModel):
    parent: List[Baby]
    subscribed: List[Baby]


def _known_baby(state: AppState, baby_id: UUID) -> Baby:
    baby = state.baby(baby_id)
    if baby is None:
        raise HTTPException(status_code=404, detail="Baby not found")
    return baby


def _require_parent(state: AppState, baby: Baby) -> None:
    if not state.is_parent(baby):
        raise HTTPException(status_code=403, detail="Only parents can manage this baby")


async def _commit(state: AppState, registry: SessionRegistry, baby_id: UUID, baby: Optional[Baby]) -> None:
    await state.flush()
    registry.publish(BabyChange(baby_id=baby_id, baby=baby), source=state.user_id)


@router.get("/babies", response_model=BabyListResponse)
async def list_babies_endpoint(state: AppState = Depends(get_app_state)) -> BabyListResponse:
    return BabyListResponse(parent=state.parent_babies, subscribed=state.subscribed_babies)


@router.post("/babies", response_model=Baby)
async def create_baby_endpoint(
    payload: CreateBabyPayload,
    state: AppState = Depends(get_app_state),
) -> Baby:
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    baby = state.create_baby(name)
    await state.flush()
    return baby


@router.get("/babies/{baby_id}", response_model=Baby)
async def get_baby_endpoint(baby_id: UUID, state: AppState = Depends(get_app_state)) -> Baby:
    return _known_baby(state, baby_id)


@router.patch("/babies/{baby_id}", response_model=Baby)
async def rename_baby_endpoint(
    baby_id: UUID,
    payload: UpdateBabyPayload,
    state: AppState = Depends(get_app_state),
    registry: SessionRegistry = Depends(get_registry),
) -> Baby:
    baby = _known_baby(state, baby_id)
    _require_parent(state, baby)
    if not state.rename_baby(baby, payload.name):
        raise HTTPException(status_code=400, detail="name cannot be empty")
    await _commit(state, registry, baby_id, baby)
    return baby


@router.post("/babies/{baby_id}/availability", response_model=Baby)
async def availability_endpoint(
    baby_id: UUID,
    payload: AvailabilityPayload,
    state: AppState = Depends(get_app_state),
    registry: SessionRegistry = Depends(get_registry),
) -> Baby:
    baby = _known_baby(state, baby_id)
    if payload.is_available is None:
        changed = state.toggle_availability(baby)
    else:
        changed = state.set_availability(baby, payload.is_available)
    if not changed:
        raise HTTPException(status_code=403, detail="Only parents can change availability")
    await _commit(state, registry, baby_id, baby)
    return baby


@router.delete("/babies/{baby_id}")
async def delete_baby_endpoint(
    baby_id: UUID,
    state: AppState = Depends(get_app_state),
    registry: SessionRegistry = Depends(get_registry),
) -> dict:
    baby = _known_baby(state, baby_id)
    if state.is_creator(baby):
        state.delete_baby(baby)
        outcome, remaining = "deleted", None
    elif state.leave_baby(baby):
        outcome, remaining = "left", baby
    else:
        raise HTTPException(status_code=409, detail="Unable to leave this baby")
    await _commit(state, registry, baby_id, remaining)
    return {"id": str(baby_id), "status": outcome}


@router.delete("/babies/{baby_id}/parents/{member_id}", response_model=Baby)
async def remove_co_parent_endpoint(
    baby_id: UUID,
    member_id: UUID,
    state: AppState = Depends(get_app_state),
    registry: SessionRegistry = Depends(get_registry),
) -> Baby:
    baby = _known_baby(state, baby_id)
    _require_parent(state, baby)
    if not state.remove_co_parent(member_id, baby):
        raise HTTPException(status_code=409, detail="Co-parent cannot be removed")
    await _commit(state, registry, baby_id, baby)
    return baby


@router.delete("/babies/{baby_id}/subscribers/{member_id}", response_model=Baby)
async def remove_subscriber_endpoint(
    baby_id: UUID,
    member_id: UUID,
    state: AppState = Depends(get_app_state),
    registry: SessionRegistry = Depends(get_registry),
) -> Baby:
    baby = _known_baby(state, baby_id)
    _require_parent(state, baby)
    if not state.remove_subscriber(member_id, baby):
        raise HTTPException(status_code=404, detail="Subscriber not found")
    await _commit(state, registry, baby_id, baby)
    return baby
