from datetime import date, datetime

from sqlalchemy import select
from conftest import NOW, actor_of, booking_request

from langcenter.config import settings
from langcenter.scheduler import jobs
from langcenter.storage.models import Booking, BookingStatus, Notification


class RecordingScheduler:
    def __init__(self):
        self.jobs = {}

    def add_job(self, func, trigger, id, **kwargs):
        self.jobs[id] = {"func": func, "trigger": trigger, **kwargs}


def test_setup_registers_jobs(session_factory, bot):
    scheduler = RecordingScheduler()
    jobs.setup_scheduler(scheduler, session_factory, bot)

    assert set(scheduler.jobs) == {"bookings.expire", "bookings.remind", "notifications.cleanup"}
    assert scheduler.jobs["bookings.expire"]["trigger"] == "interval"
    assert scheduler.jobs["bookings.expire"]["func"] is jobs.expire_bookings
    assert scheduler.jobs["bookings.remind"]["hour"] == 9
    assert scheduler.jobs["notifications.cleanup"]["args"] == [session_factory]


async def test_reminders_for_tomorrow(session_factory, session, bookings, bot, student, teacher):
    (booking,) = await bookings.create_booking(actor_of(student), booking_request(teacher), now=NOW)
    await bookings.confirm_booking(actor_of(teacher), booking.id, now=NOW)
    (pending,) = await bookings.create_booking(
        actor_of(student), booking_request(teacher, start="14:00", end="15:00"), now=NOW
    )

    sent = await jobs.send_reminders(session_factory, bot, now=datetime(2030, 3, 9, 9, 0))
    assert sent == 1

    recipients = (await session.execute(
        select(Notification.recipient_id).where(Notification.kind == "reminder")
    )).scalars().all()
    assert sorted(recipients) == sorted([student.id, teacher.id])
    assert {m["chat_id"] for m in bot.sent if "Lesson Reminder" in m["text"]} == {student.tg_id, teacher.tg_id}


async def test_no_reminders_on_other_days(session_factory, bookings, bot, student, teacher):
    (booking,) = await bookings.create_booking(actor_of(student), booking_request(teacher), now=NOW)
    await bookings.confirm_booking(actor_of(teacher), booking.id, now=NOW)
    assert await jobs.send_reminders(session_factory, bot, now=datetime(2030, 3, 5, 9, 0)) == 0


async def test_expire_job_uses_own_session(session_factory, session, bookings, bot, student, teacher):
    (booking,) = await bookings.create_booking(
        actor_of(student), booking_request(teacher, day=date(2030, 3, 12)), now=NOW
    )
    assert await jobs.expire_bookings(session_factory, bot, now=datetime(2030, 4, 10)) == 1
    status = await session.scalar(select(Booking.status).where(Booking.id == booking.id))
    assert status == BookingStatus.EXPIRED.value


async def test_job_failures_are_logged_not_raised(caplog):
    def broken_factory():
        raise RuntimeError("database is gone")

    assert await jobs.expire_bookings(broken_factory) == 0
    assert await jobs.cleanup_notifications(broken_factory) == 0
    assert "bookings.expire failed" in caplog.text


async def test_operators_get_a_digest(session_factory, bookings, bot, student, teacher, monkeypatch):
    monkeypatch.setattr(settings, "admins_raw", "555,556")
    (booking,) = await bookings.create_booking(actor_of(student), booking_request(teacher), now=NOW)
    await bookings.confirm_booking(actor_of(teacher), booking.id, now=NOW)

    await jobs.send_reminders(session_factory, bot, now=datetime(2030, 3, 9, 9, 0))
    digests = [m for m in bot.sent if m["chat_id"] in (555, 556)]
    assert [m["text"] for m in digests] == ["Lessons on Sun 10 Mar 2030: 1"] * 2
