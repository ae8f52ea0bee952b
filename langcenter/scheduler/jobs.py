from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from aiogram import Bot
from aiogram.exceptions import TelegramAPIError
from sqlalchemy import select

from langcenter.config import settings
from langcenter.services.booking_service import BookingService
from langcenter.services.notification_service import NotificationService
from langcenter.storage.models import Booking, BookingStatus, User
from langcenter.utils.dates import format_day, now_local

log = logging.getLogger("scheduler.jobs")
TZ = ZoneInfo(settings.tz)


async def expire_bookings(SessionLocal, bot: Optional[Bot] = None, now: Optional[datetime] = None) -> int:
    try:
        async with SessionLocal() as session:
            notifier = NotificationService(session, bot)
            count = await BookingService(session, notifier).expire_overdue(now or now_local())
        log.info("bookings.expire done: %s bookings", count)
        return count
    except Exception:
        log.exception("bookings.expire failed")
        return 0


async def send_reminders(SessionLocal, bot: Optional[Bot] = None, now: Optional[datetime] = None) -> int:
    """One reminder to each side of every confirmed lesson dated tomorrow."""
    tomorrow = (now or now_local()).date() + timedelta(days=1)
    try:
        async with SessionLocal() as session:
            res = await session.execute(
                select(Booking).where(
                    Booking.date == tomorrow,
                    Booking.status == BookingStatus.CONFIRMED.value,
                    # series parents are summaries, their children carry the lessons
                    ~(Booking.is_recurring.is_(True) & Booking.parent_id.is_(None)),
                )
            )
            bookings = list(res.scalars().all())

            notifier = NotificationService(session, bot)
            for b in bookings:
                student = await session.get(User, b.student_id)
                teacher = await session.get(User, b.teacher_id)
                common = {"language": b.language, "start_time": b.start_time, "booking_id": b.id}
                notifier.enqueue(
                    b.student_id, "reminder", {**common, "other_name": teacher.full_name if teacher else ""}
                )
                notifier.enqueue(
                    b.teacher_id, "reminder", {**common, "other_name": student.full_name if student else ""}
                )
            await session.commit()
            await notifier.dispatch()
        await _digest_to_operators(bot, tomorrow, len(bookings))
        log.info("bookings.remind done: %s bookings for %s", len(bookings), tomorrow)
        return len(bookings)
    except Exception:
        log.exception("bookings.remind failed")
        return 0


async def _digest_to_operators(bot: Optional[Bot], day, count: int) -> None:
    if bot is None or not count:
        return
    for chat_id in settings.admins:
        try:
            await bot.send_message(chat_id, f"Lessons on {format_day(day)}: {count}")
        except TelegramAPIError as e:
            log.error(f"Failed to send digest to operator {chat_id}: {e}")


async def cleanup_notifications(SessionLocal, now: Optional[datetime] = None) -> int:
    try:
        async with SessionLocal() as session:
            return await NotificationService(session).cleanup_old(now=now)
    except Exception:
        log.exception("notifications.cleanup failed")
        return 0


def setup_scheduler(scheduler, SessionLocal, bot) -> None:
    scheduler.add_job(
        expire_bookings,
        trigger="interval",
        minutes=settings.expiry_sweep_minutes,
        args=[SessionLocal, bot],
        id="bookings.expire",
        replace_existing=True,
        next_run_time=datetime.now(TZ) + timedelta(seconds=1),
    )
    scheduler.add_job(
        send_reminders,
        trigger="cron",
        hour=settings.reminder_hour,
        minute=0,
        args=[SessionLocal, bot],
        id="bookings.remind",
        replace_existing=True,
    )
    scheduler.add_job(
        cleanup_notifications,
        trigger="cron",
        hour=settings.cleanup_hour,
        minute=0,
        args=[SessionLocal],
        id="notifications.cleanup",
        replace_existing=True,
    )
    log.info(
        "scheduler jobs registered: expire every %s min, remind at %02d:00, cleanup at %02d:00",
        settings.expiry_sweep_minutes, settings.reminder_hour, settings.cleanup_hour,
    )
