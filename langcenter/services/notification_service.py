from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Protocol

from aiogram import Bot, html
from aiogram.exceptions import TelegramAPIError
from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession

from langcenter.config import settings
from langcenter.services.email_service import EmailService
from langcenter.storage.models import Notification, User
from langcenter.utils.dates import now_local

log = logging.getLogger("notifications")

# kind -> (title, message template)
TEMPLATES: Dict[str, tuple[str, str]] = {
    "booking_request": (
        "New Booking Request",
        "{student_name} has requested a {language} lesson on {day} from {start_time} to {end_time}{series}",
    ),
    "booking_confirmed": (
        "Booking Confirmed",
        "Your booking for {language} lesson on {day} has been confirmed",
    ),
    "booking_rejected": (
        "Booking Rejected",
        "Your booking has been rejected. Reason: {reason}",
    ),
    "booking_cancelled": (
        "Booking Cancelled",
        "A booking has been cancelled. Reason: {reason}",
    ),
    "booking_completed": (
        "Lesson Completed",
        "Your lesson has been completed. Please rate your experience.",
    ),
    "booking_expired": (
        "Booking Expired",
        "{count} of your bookings expired without being completed",
    ),
    "review_received": (
        "New Review Received",
        "You received a {rating}-star review from {student_name}",
    ),
    "payment_received": (
        "Payment Received",
        "Payment of {amount} {currency} received for the lesson on {day}",
    ),
    "payment_failed": (
        "Payment Failed",
        "Payment {invoice_number} could not be verified: {reason}",
    ),
    "refund_request": (
        "Refund Request",
        "{student_name} requested a refund of {amount} {currency}",
    ),
    "refund_processed": (
        "Refund {outcome}",
        "{message}",
    ),
    "reminder": (
        "Lesson Reminder",
        "You have a {language} lesson tomorrow at {start_time} with {other_name}",
    ),
}

EMAIL_KINDS = frozenset(
    {
        "booking_request",
        "booking_confirmed",
        "booking_rejected",
        "booking_cancelled",
        "payment_received",
        "refund_request",
        "refund_processed",
        "reminder",
    }
)


class _Blank(dict):
    def __missing__(self, key: str) -> str:
        return ""


class NotificationSink(Protocol):
    def enqueue(self, recipient_id: int, kind: str, payload: Optional[Dict[str, Any]] = None) -> Notification:
        ...

    async def dispatch(self) -> int:
        ...


def render(kind: str, payload: Dict[str, Any]) -> tuple[str, str]:
    title, template = TEMPLATES.get(kind, ("Notification", "{message}"))
    values = _Blank({k: v for k, v in payload.items() if v is not None})
    return title.format_map(values), template.format_map(values)


class NotificationService:
    """In-app notification rows plus best-effort Telegram and email delivery."""

    def __init__(self, session: AsyncSession, bot: Optional[Bot] = None, email_sender=EmailService):
        self.session = session
        self.bot = bot
        self.email_sender = email_sender
        self._outbox: List[Notification] = []

    def enqueue(self, recipient_id: int, kind: str, payload: Optional[Dict[str, Any]] = None) -> Notification:
        payload = dict(payload or {})
        title, message = render(kind, payload)
        notification = Notification(
            recipient_id=recipient_id,
            sender_id=payload.pop("sender_id", None),
            kind=kind,
            title=title,
            message=message,
            priority=payload.pop("priority", "normal"),
            related_booking_id=payload.get("booking_id"),
            related_payment_id=payload.get("payment_id"),
            payload={k: str(v) for k, v in payload.items()},
            channel_email=kind in EMAIL_KINDS,
            channel_telegram=settings.telegram_notifications_enabled,
        )
        self.session.add(notification)
        self._outbox.append(notification)
        log.info("notifications.enqueue kind=%s recipient=%s", kind, recipient_id)
        return notification

    @property
    def pending(self) -> List[Notification]:
        return list(self._outbox)

    async def dispatch(self) -> int:
        """Deliver everything enqueued in this unit of work; call after commit."""
        outbox, self._outbox = self._outbox, []
        delivered = 0
        for n in outbox:
            recipient = await self.session.get(User, n.recipient_id)
            if recipient is None:
                continue
            if await self._send_telegram(n, recipient):
                delivered += 1
            self._send_email(n, recipient)
        if outbox:
            await self.session.commit()
        return delivered

    async def _send_telegram(self, n: Notification, recipient: User) -> bool:
        if not n.channel_telegram or self.bot is None or not recipient.tg_id:
            n.delivery_telegram = "skipped"
            return False
        reply_markup = None
        if n.kind == "booking_request" and n.related_booking_id:
            from langcenter.bot.keyboards.common import kb_teacher_decision

            reply_markup = kb_teacher_decision(n.related_booking_id)
        try:
            await self.bot.send_message(
                recipient.tg_id, f"<b>{html.quote(n.title)}</b>\n{html.quote(n.message)}", reply_markup=reply_markup
            )
            n.delivery_telegram = "sent"
            return True
        except TelegramAPIError as e:
            log.error(f"Failed to send notification {n.id} to {recipient.tg_id}: {e}")
            n.delivery_telegram = "failed"
            return False

    def _send_email(self, n: Notification, recipient: User) -> None:
        if not (n.channel_email and settings.smtp_enabled and self.email_sender.is_email(recipient.email)):
            n.delivery_email = "skipped"
            return
        body = self.email_sender.render(n.title, recipient.full_name, n.message)
        ok = self.email_sender.send(recipient.email, f"{n.title} - Language Teaching Center", body)
        n.delivery_email = "sent" if ok else "failed"

    async def mark_read(self, user_id: int, ids: Optional[Iterable[int]] = None, *, now: datetime | None = None) -> int:
        now = now or now_local()
        stmt = (
            update(Notification)
            .where(Notification.recipient_id == user_id, Notification.is_read.is_(False))
            .values(is_read=True, read_at=now)
        )
        if ids is not None:
            stmt = stmt.where(Notification.id.in_(list(ids)))
        res = await self.session.execute(stmt)
        await self.session.commit()
        return res.rowcount or 0

    async def cleanup_old(self, days: int | None = None, *, now: datetime | None = None) -> int:
        days = settings.notification_retention_days if days is None else days
        cutoff = (now or now_local()) - timedelta(days=days)
        res = await self.session.execute(
            delete(Notification).where(
                Notification.created_at < cutoff,
                Notification.is_read.is_(True),
            )
        )
        await self.session.commit()
        log.info("notifications.cleanup removed=%s cutoff=%s", res.rowcount, cutoff)
        return res.rowcount or 0
