from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse

from ...domain.models import ActionResponse, NotificationLogEntry, RelayEvent, SendTestRequest, SweepReport
from ...security.auth import User, get_current_user, require_relay_token
from ...security.rbac import OPERATOR, require_role
from ...services.gateway import Gateway, get_gateway
from ...services.notifier import CATEGORY_TEST

router = APIRouter(tags=["operations"])


@router.post("/send-test", response_model=ActionResponse)
async def send_test(
    req: SendTestRequest,
    user: User = Depends(require_role(OPERATOR)),
    gateway: Gateway = Depends(get_gateway),
):
    key = gateway.key_for(user.account_id)
    ok = await gateway.notifier.send(
        key, req.external_identity, req.message, category=CATEGORY_TEST, account_id=user.account_id
    )
    if not ok:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "message": "Test message could not be delivered"},
        )
    return ActionResponse(success=True, message="Test message sent")


@router.post("/events", response_model=ActionResponse, dependencies=[Depends(require_relay_token)])
async def relay_event(evt: RelayEvent, gateway: Gateway = Depends(get_gateway)) -> ActionResponse:
    delivered = await gateway.controller.deliver_relay_event(evt.key, evt.event, evt.payload)
    return ActionResponse(success=delivered, message="delivered" if delivered else "no live client for key")


@router.post("/reminders/trigger", response_model=SweepReport, response_model_by_alias=True)
async def trigger_reminders(
    _user: User = Depends(require_role(OPERATOR)),
    gateway: Gateway = Depends(get_gateway),
) -> SweepReport:
    return await gateway.reminders.sweep()


@router.get("/notifications", response_model=List[NotificationLogEntry])
async def notifications(
    limit: int = Query(default=50, ge=1, le=500),
    user: User = Depends(get_current_user),
    gateway: Gateway = Depends(get_gateway),
) -> List[NotificationLogEntry]:
    return await gateway.store.list_notifications(user.account_id, limit=limit)
