from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from presence.audit import log_audit
from presence.db import get_db
from presence.errors import get_request_id
from presence.models import AuditActorType, User
from presence.schemas import (
    NotificationListResponse,
    NotificationRead,
    PushConfigResponse,
    PushSubscribeRequest,
    PushSubscribeResponse,
)
from presence.security import get_current_user
from presence.services.notifications import (
    get_push_public_config,
    list_notifications,
    mark_notification_read,
    upsert_push_subscription,
)

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


@router.get("/push/config", response_model=PushConfigResponse)
def push_config(user: User = Depends(get_current_user)) -> PushConfigResponse:
    return PushConfigResponse(**get_push_public_config())


@router.post("/subscribe", response_model=PushSubscribeResponse)
def subscribe(
    payload: PushSubscribeRequest,
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> PushSubscribeResponse:
    subscription = upsert_push_subscription(db, user_id=user.id, subscription=payload.subscription)
    log_audit(
        db,
        actor_type=AuditActorType.USER,
        actor_id=str(user.id),
        action="PUSH_SUBSCRIPTION_UPSERT",
        success=True,
        entity_type="push_subscription",
        entity_id=str(subscription.id),
        request_id=get_request_id(request),
    )
    return PushSubscribeResponse(ok=True, subscription_id=subscription.id)


@router.get("/me", response_model=NotificationListResponse)
def my_notifications(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> NotificationListResponse:
    rows = list_notifications(db, user_id=user.id)
    return NotificationListResponse(
        items=[NotificationRead.model_validate(row) for row in rows],
        unread=sum(1 for row in rows if not row.is_read),
    )


@router.post("/{notification_id}/read", response_model=NotificationRead)
def read_notification(
    notification_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> NotificationRead:
    row = mark_notification_read(db, user_id=user.id, notification_id=notification_id)
    return NotificationRead.model_validate(row)
