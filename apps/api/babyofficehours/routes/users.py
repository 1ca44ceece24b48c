from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ..app_state import AppState
from ..schemas import User
from ..sessions import get_app_state

router = APIRouter(prefix="/api/v1", tags=["users"])


class UpdateProfilePayload(BaseModel):
    name: Optional[str] = None
    device_token: Optional[str] = None


@router.get("/me", response_model=User)
async def get_profile_endpoint(state: AppState = Depends(get_app_state)) -> User:
    return state.current_user


@router.patch("/me", response_model=User)
async def update_profile_endpoint(
    payload: UpdateProfilePayload,
    state: AppState = Depends(get_app_state),
) -> User:
    # Only fields present in the request change; an explicit null device_token clears it.
    if "name" in payload.model_fields_set:
        state.set_display_name((payload.name or "").strip() or None)
    if "device_token" in payload.model_fields_set:
        state.set_device_token(payload.device_token)
    await state.flush()
    return state.current_user
