from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from ...domain.messages import normalize_identity
from ...domain.models import (
    ActionResponse,
    ActivateRequest,
    ActiveCodesResponse,
    ConnectionsResponse,
    GenerateCodeResponse,
)
from ...security.auth import User, get_current_user, require_relay_token
from ...security.rate_limit import ACTIVATE, GENERATE_CODE, ActionLimit, RateLimitExceeded, get_rate_limiter
from ...services.gateway import Gateway, get_gateway
from ...services.pairing import ACTIVATED, IDENTITY_BOUND, INVALID_CODE

router = APIRouter(tags=["pairing"])

_ACTIVATION_MESSAGES = {
    ACTIVATED: "Chat identity linked",
    INVALID_CODE: "Invalid or expired activation code",
    IDENTITY_BOUND: "This chat identity is already linked to an account",
}


def _limit(budget: tuple, *subjects: str) -> None:
    try:
        get_rate_limiter().hit(ActionLimit.from_env(*budget), *subjects)
    except RateLimitExceeded as exc:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests. Please try again later.",
            headers={"Retry-After": str(exc.retry_after_seconds)},
        ) from exc


@router.post("/generate-code", response_model=GenerateCodeResponse)
async def generate_code(
    user: User = Depends(get_current_user),
    gateway: Gateway = Depends(get_gateway),
) -> GenerateCodeResponse:
    _limit(GENERATE_CODE, f"account:{user.account_id}")
    code = await gateway.pairing.generate_code(user.account_id)
    return GenerateCodeResponse(code=code.code, expires_at=code.expires_at)


@router.post("/activate", response_model=ActionResponse, dependencies=[Depends(require_relay_token)])
async def activate(req: ActivateRequest, request: Request, gateway: Gateway = Depends(get_gateway)):
    client_host = request.client.host if request.client else "unknown"
    _limit(ACTIVATE, f"host:{client_host}", f"identity:{normalize_identity(req.external_identity)}")
    result = await gateway.pairing.activate(req.code, req.external_identity, req.display_name)
    message = _ACTIVATION_MESSAGES.get(result.reason, "Activation failed")
    if not result.ok:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"success": False, "message": message})
    return ActionResponse(success=True, message=message)


@router.get("/connections", response_model=ConnectionsResponse)
async def list_connections(
    user: User = Depends(get_current_user),
    gateway: Gateway = Depends(get_gateway),
) -> ConnectionsResponse:
    integrations = await gateway.store.list_integrations(user.account_id)
    return ConnectionsResponse(connections=[i for i in integrations if i.status == "active"])


@router.delete("/connections/{integration_id}", response_model=ActionResponse)
async def revoke_connection(
    integration_id: str,
    user: User = Depends(get_current_user),
    gateway: Gateway = Depends(get_gateway),
) -> ActionResponse:
    if not await gateway.store.revoke_integration(integration_id, user.account_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Connection not found")
    return ActionResponse(success=True, message="Connection revoked")


@router.get("/active-codes", response_model=ActiveCodesResponse, response_model_by_alias=True)
async def active_codes(
    user: User = Depends(get_current_user),
    gateway: Gateway = Depends(get_gateway),
) -> ActiveCodesResponse:
    return ActiveCodesResponse(active_codes=await gateway.pairing.list_active_codes(user.account_id))
