from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status

from ...domain.models import ActionResponse, ConnectionStatus, ConnectResponse
from ...security.auth import User, get_current_user, get_optional_user
from ...security.rbac import OPERATOR, has_role
from ...services.gateway import Gateway, get_gateway

router = APIRouter(tags=["connection"])


def _connection_key(gateway: Gateway, user: Optional[User]) -> str:
    if gateway.settings.single_tenant:
        return gateway.settings.bot_key
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    return user.account_id


def _require_shared_bot_operator(gateway: Gateway, user: User) -> None:
    # the shared bot serves every account; only operators may tear it down
    if gateway.settings.single_tenant and not has_role(user, OPERATOR):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")


@router.get("/status", response_model=ConnectionStatus, response_model_by_alias=True)
def connection_status(
    user: Optional[User] = Depends(get_optional_user),
    gateway: Gateway = Depends(get_gateway),
) -> ConnectionStatus:
    return gateway.controller.status(_connection_key(gateway, user))


@router.post("/connect", response_model=ConnectResponse, response_model_by_alias=True)
async def connect(
    user: User = Depends(get_current_user),
    gateway: Gateway = Depends(get_gateway),
) -> ConnectResponse:
    return await gateway.connect(_connection_key(gateway, user))


@router.post("/disconnect", response_model=ActionResponse)
async def disconnect(
    user: User = Depends(get_current_user),
    gateway: Gateway = Depends(get_gateway),
) -> ActionResponse:
    _require_shared_bot_operator(gateway, user)
    ok = await gateway.controller.disconnect(_connection_key(gateway, user))
    if ok:
        return ActionResponse(success=True, message="Disconnected")
    return ActionResponse(success=False, message="No active connection to disconnect")


@router.post("/reconnect", response_model=ActionResponse)
async def reconnect(
    user: User = Depends(get_current_user),
    gateway: Gateway = Depends(get_gateway),
) -> ActionResponse:
    _require_shared_bot_operator(gateway, user)
    key = _connection_key(gateway, user)
    await gateway.controller.reconnect(key)
    current = await gateway.controller.wait_for_status(key, gateway.settings.reconnect_timeout_s)
    if current.status == "disconnected":
        return ActionResponse(success=False, message="Reconnect failed")
    return ActionResponse(success=True, message=f"Reconnect started ({current.status})")
