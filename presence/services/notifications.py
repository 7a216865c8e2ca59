from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.message import EmailMessage
import json
import logging
import os
import smtplib
from typing import Any

from pywebpush import WebPushException, webpush
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from presence.errors import ApiError, NotFoundError
from presence.models import Notification, PushSubscription, User, UserRole
from presence.settings import get_settings, is_push_enabled

logger = logging.getLogger("presence.notifications")

CHANNEL_IN_APP = "in_app"
CHANNEL_EMAIL = "email"
CHANNEL_WEBPUSH = "webpush"
ALL_CHANNELS = (CHANNEL_IN_APP, CHANNEL_EMAIL, CHANNEL_WEBPUSH)

STATUS_PENDING = "pending"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"

NOTIFICATION_LIST_LIMIT = 50


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class NotificationMessage:
    recipients: list[str]
    subject: str
    body: str


@dataclass(slots=True)
class NotificationResult:
    notification_id: int | None
    channels_used: list[str] = field(default_factory=list)
    channels_failed: list[str] = field(default_factory=list)

    @property
    def delivered(self) -> bool:
        return bool(self.channels_used)


class NotificationChannel:
    configured: bool = False

    def send(self, message: NotificationMessage) -> dict[str, Any]:
        raise NotImplementedError


class EmailChannel(NotificationChannel):
    def __init__(self) -> None:
        settings = get_settings()
        self.enabled = bool(settings.notification_email_enabled)
        self.smtp_host = (os.getenv("SMTP_HOST") or "").strip()
        self.smtp_port = int((os.getenv("SMTP_PORT") or "587").strip() or "587")
        self.smtp_user = (os.getenv("SMTP_USER") or "").strip()
        self.smtp_pass = os.getenv("SMTP_PASS") or ""
        self.smtp_from = (os.getenv("SMTP_FROM") or "").strip()
        self.smtp_use_tls = (os.getenv("SMTP_USE_TLS") or "true").strip().lower() not in {"0", "false", "no"}
        self.configured = bool(self.smtp_host and self.smtp_from)

    def send(self, message: NotificationMessage) -> dict[str, Any]:
        recipients = [item.strip() for item in message.recipients if item and item.strip()]
        if not self.enabled:
            logger.info(
                "email_channel_disabled",
                extra={"subject": message.subject, "recipient_count": len(recipients)},
            )
            return {"mode": "disabled", "sent": 0, "recipients": recipients}
        if not recipients:
            logger.info("email_channel_skip_no_recipients", extra={"subject": message.subject})
            return {"mode": "skipped_no_recipients", "sent": 0, "recipients": []}
        if not self.configured:
            logger.info(
                "email_channel_not_configured",
                extra={"subject": message.subject, "recipients": recipients},
            )
            return {"mode": "not_configured", "sent": 0, "recipients": recipients}

        email_message = EmailMessage()
        email_message["From"] = self.smtp_from
        email_message["To"] = ", ".join(recipients)
        email_message["Subject"] = message.subject
        email_message.set_content(message.body)

        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=15) as smtp_client:
            if self.smtp_use_tls:
                smtp_client.starttls()
            if self.smtp_user:
                smtp_client.login(self.smtp_user, self.smtp_pass)
            smtp_client.send_message(email_message)
        return {"mode": "sent", "sent": len(recipients), "recipients": recipients}

    def config_status(self) -> dict[str, Any]:
        missing_fields: list[str] = []
        if not self.smtp_host:
            missing_fields.append("SMTP_HOST")
        if not self.smtp_from:
            missing_fields.append("SMTP_FROM")
        return {
            "enabled": bool(self.enabled),
            "configured": self.configured,
            "smtp_use_tls": bool(self.smtp_use_tls),
            "missing_fields": missing_fields,
        }


class WebPushChannel:
    """Delivers to every active subscription of a user; gone endpoints are deactivated."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def _send_one(self, row: PushSubscription, payload: str) -> tuple[bool, str | None, int | None]:
        settings = get_settings()
        try:
            webpush(
                subscription_info={
                    "endpoint": row.endpoint,
                    "keys": {"p256dh": row.p256dh, "auth": row.auth},
                },
                data=payload,
                vapid_private_key=settings.push_vapid_private_key,
                vapid_claims={"sub": settings.push_vapid_subject},
                ttl=60,
            )
            return True, None, None
        except WebPushException as exc:
            status_code: int | None = None
            if exc.response is not None:
                status_code = exc.response.status_code
            return False, str(exc), status_code

    def send_to_user(
        self,
        user_id: int,
        *,
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if not is_push_enabled():
            return {"mode": "disabled", "sent": 0, "failed": 0, "deactivated": 0}

        subscriptions = list(
            self.session.scalars(
                select(PushSubscription)
                .where(PushSubscription.user_id == user_id, PushSubscription.is_active.is_(True))
                .order_by(PushSubscription.id.desc())
            ).all()
        )
        payload = json.dumps({"title": title, "body": body, "data": data or {}, "ts_utc": _utcnow().isoformat()})
        sent = 0
        failed = 0
        deactivated = 0
        now_utc = _utcnow()

        for row in subscriptions:
            ok, error_text, status_code = self._send_one(row, payload)
            row.last_seen_at = now_utc
            if ok:
                sent += 1
                row.last_error = None
                continue
            failed += 1
            row.last_error = error_text
            if status_code in {404, 410} and row.is_active:
                row.is_active = False
                deactivated += 1

        self.session.commit()
        return {"mode": "sent" if sent else "failed", "sent": sent, "failed": failed, "deactivated": deactivated}


class Notifier:
    def __init__(
        self,
        session: Session,
        *,
        email_channel: NotificationChannel | None = None,
        push_channel: WebPushChannel | None = None,
    ) -> None:
        self.session = session
        self.email_channel = email_channel if email_channel is not None else EmailChannel()
        self.push_channel = push_channel if push_channel is not None else WebPushChannel(session)

    def _persist(
        self,
        *,
        user_id: int,
        kind: str,
        title: str,
        message: str,
        channels: list[str],
        data: dict[str, Any],
    ) -> Notification | None:
        row = Notification(
            user_id=user_id,
            kind=kind,
            title=title,
            message=message,
            data=data,
            channels_requested=channels,
            channels_used=[],
            status=STATUS_PENDING,
        )
        self.session.add(row)
        try:
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception("notification_persist_failed", extra={"user_id": user_id, "kind": kind})
            return None
        return row

    def _deliver_email(self, user_id: int, title: str, message: str) -> bool:
        user = self.session.get(User, user_id)
        if user is None or not (user.email or "").strip():
            return False
        result = self.email_channel.send(NotificationMessage(recipients=[user.email], subject=title, body=message))
        return int(result.get("sent") or 0) > 0

    def _deliver_push(self, user_id: int, title: str, message: str, data: dict[str, Any]) -> bool:
        result = self.push_channel.send_to_user(user_id, title=title, body=message, data=data)
        return int(result.get("sent") or 0) > 0

    def notify(
        self,
        user_id: int,
        *,
        kind: str,
        title: str,
        message: str,
        channels: Iterable[str] = (CHANNEL_IN_APP,),
        data: dict[str, Any] | None = None,
    ) -> NotificationResult:
        requested = [channel for channel in ALL_CHANNELS if channel in set(channels)]
        payload = dict(data or {})
        payload.setdefault("kind", kind)

        row = self._persist(
            user_id=user_id,
            kind=kind,
            title=title,
            message=message,
            channels=requested,
            data=payload,
        )
        result = NotificationResult(notification_id=row.id if row is not None else None)
        if CHANNEL_IN_APP in requested:
            (result.channels_used if row is not None else result.channels_failed).append(CHANNEL_IN_APP)

        errors: list[str] = []
        for channel in requested:
            if channel == CHANNEL_IN_APP:
                continue
            try:
                if channel == CHANNEL_EMAIL:
                    delivered = self._deliver_email(user_id, title, message)
                else:
                    delivered = self._deliver_push(user_id, title, message, payload)
            except Exception as exc:
                # One broken channel must not block the others.
                self.session.rollback()
                logger.exception(
                    "notification_channel_failed",
                    extra={"user_id": user_id, "kind": kind, "channel": channel},
                )
                errors.append(f"{channel}: {str(exc)[:200]}")
                result.channels_failed.append(channel)
                continue
            if delivered:
                result.channels_used.append(channel)
            else:
                result.channels_failed.append(channel)

        if row is not None:
            row.channels_used = list(result.channels_used)
            row.status = STATUS_SENT if result.channels_used else STATUS_FAILED
            row.error = "; ".join(errors) or None
            try:
                self.session.commit()
            except SQLAlchemyError:
                self.session.rollback()
                logger.exception("notification_status_update_failed", extra={"notification_id": row.id})

        logger.info(
            "notification_dispatched",
            extra={
                "user_id": user_id,
                "kind": kind,
                "notification_id": result.notification_id,
                "channels_requested": requested,
                "channels_used": result.channels_used,
                "channels_failed": result.channels_failed,
            },
        )
        return result

    def notify_admins(
        self,
        *,
        kind: str,
        title: str,
        message: str,
        channels: Iterable[str] = (CHANNEL_IN_APP,),
        data: dict[str, Any] | None = None,
    ) -> list[NotificationResult]:
        channels = tuple(channels)
        admins = self.session.scalars(
            select(User).where(User.role == UserRole.ADMIN, User.is_active.is_(True)).order_by(User.id.asc())
        ).all()
        return [
            self.notify(admin.id, kind=kind, title=title, message=message, channels=channels, data=data)
            for admin in admins
        ]


def get_push_public_config() -> dict[str, Any]:
    settings = get_settings()
    enabled = is_push_enabled()
    return {
        "enabled": enabled,
        "vapid_public_key": settings.push_vapid_public_key if enabled else None,
    }


def _parse_subscription_payload(subscription: dict[str, Any]) -> tuple[str, str, str]:
    endpoint = str(subscription.get("endpoint") or "").strip()
    keys = subscription.get("keys")
    if not isinstance(keys, dict):
        raise ApiError(
            status_code=422,
            code="INVALID_PUSH_SUBSCRIPTION",
            message="Subscription keys are missing.",
        )

    p256dh = str(keys.get("p256dh") or "").strip()
    auth = str(keys.get("auth") or "").strip()
    if not endpoint or not p256dh or not auth:
        raise ApiError(
            status_code=422,
            code="INVALID_PUSH_SUBSCRIPTION",
            message="Subscription payload is incomplete.",
        )
    return endpoint, p256dh, auth


def upsert_push_subscription(db: Session, *, user_id: int, subscription: dict[str, Any]) -> PushSubscription:
    """Register a browser subscription for `user_id`.

    The endpoint is the identity of a subscription: a known endpoint is moved to
    the caller and reactivated instead of duplicated.
    """
    if not is_push_enabled():
        raise ApiError(
            status_code=503,
            code="PUSH_NOT_CONFIGURED",
            message="Push notification service is not configured.",
        )

    endpoint, p256dh, auth = _parse_subscription_payload(subscription)
    now_utc = _utcnow()

    row = db.scalar(select(PushSubscription).where(PushSubscription.endpoint == endpoint))
    if row is None:
        row = PushSubscription(
            user_id=user_id,
            endpoint=endpoint,
            p256dh=p256dh,
            auth=auth,
            is_active=True,
            last_error=None,
            last_seen_at=now_utc,
        )
        db.add(row)
    else:
        row.user_id = user_id
        row.p256dh = p256dh
        row.auth = auth
        row.is_active = True
        row.last_error = None
        row.last_seen_at = now_utc

    db.commit()
    db.refresh(row)
    return row


def list_notifications(db: Session, *, user_id: int, limit: int = NOTIFICATION_LIST_LIMIT) -> list[Notification]:
    stmt = (
        select(Notification)
        .where(Notification.user_id == user_id)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(max(1, min(limit, NOTIFICATION_LIST_LIMIT)))
    )
    return list(db.scalars(stmt).all())


def mark_notification_read(db: Session, *, user_id: int, notification_id: int) -> Notification:
    row = db.get(Notification, notification_id)
    # Another user's notification is reported as missing.
    if row is None or row.user_id != user_id:
        raise NotFoundError("Notification not found.", code="NOTIFICATION_NOT_FOUND")
    if not row.is_read:
        row.is_read = True
        db.commit()
        db.refresh(row)
    return row
