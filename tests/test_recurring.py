from datetime import date, datetime
from decimal import Decimal

import pydantic
import pytest
from sqlalchemy import func, select
from conftest import NOW, actor_of, booking_request

from langcenter.errors import InvalidTimeRange
from langcenter.schemas.booking import CreateBookingRequest, RejectBookingRequest
from langcenter.schemas.payment import CreatePaymentIntentRequest, PaymentMethod
from langcenter.storage.models import Booking, BookingStatus, Notification, RefundStatus, UserRole


def series_request(teacher, day=date(2030, 3, 4), start="10:00", end="11:00", hours=1.0):
    return booking_request(
        teacher,
        day=day,
        start=start,
        end=end,
        is_recurring=True,
        days_per_week=2,
        hours_per_day=hours,
        specific_days=["monday", "wednesday"],
    )


async def _status(session, booking_id: int) -> str:
    return await session.scalar(select(Booking.status).where(Booking.id == booking_id))


async def test_expands_to_month_end_and_skips_conflicts(bookings, session, student, teacher, make_user):
    other = await make_user(UserRole.STUDENT)
    await bookings.create_booking(
        actor_of(other), booking_request(teacher, day=date(2030, 3, 13), start="10:30", end="11:30"), now=NOW
    )

    parent, *children = await bookings.create_booking(actor_of(student), series_request(teacher), now=NOW)

    assert parent.is_series_parent
    assert [c.date.day for c in children] == [4, 6, 11, 18, 20, 25, 27]
    assert all(c.parent_id == parent.id and c.is_recurring for c in children)
    assert parent.expected_sessions == 7
    assert parent.total_hours_per_month == 7
    assert parent.total_cost == Decimal("350.00")
    assert parent.price == Decimal("50.00")

    requests = await session.scalar(
        select(func.count(Notification.id)).where(
            Notification.kind == "booking_request", Notification.recipient_id == teacher.id
        )
    )
    # one for the other student's lesson, one for the whole series
    assert requests == 2


async def test_lesson_length_must_match_hours_per_day(bookings, student, teacher):
    with pytest.raises(InvalidTimeRange):
        await bookings.create_booking(actor_of(student), series_request(teacher, end="12:00"), now=NOW)


def test_recurrence_fields_are_required(teacher):
    with pytest.raises(pydantic.ValidationError):
        CreateBookingRequest(
            teacher_id=teacher.id,
            date=date(2030, 3, 4),
            start_time="10:00",
            end_time="11:00",
            language="english",
            is_recurring=True,
        )


async def test_parent_confirms_only_at_full_quorum(bookings, session, student, teacher):
    parent, *children = await bookings.create_booking(actor_of(student), series_request(teacher), now=NOW)
    parent_id = parent.id

    for child in children[:-1]:
        await bookings.confirm_booking(actor_of(teacher), child.id, now=NOW)
    assert await _status(session, parent_id) == BookingStatus.PENDING.value

    await bookings.confirm_booking(actor_of(teacher), children[-1].id, now=NOW)
    assert await _status(session, parent_id) == BookingStatus.CONFIRMED.value


async def test_parent_completes_at_quorum(bookings, session, student, teacher):
    parent, *children = await bookings.create_booking(actor_of(student), series_request(teacher), now=NOW)
    for child in children:
        await bookings.confirm_booking(actor_of(teacher), child.id, now=NOW)
    after = datetime(2030, 4, 1)
    for child in children:
        await bookings.complete_booking(actor_of(teacher), child.id, now=after)
    assert await _status(session, parent.id) == BookingStatus.COMPLETED.value


async def test_parent_cancels_at_quorum(bookings, session, student, teacher):
    parent, *children = await bookings.create_booking(
        actor_of(student), series_request(teacher, day=date(2030, 3, 11)), now=NOW
    )
    assert len(children) == 6

    for child in children[:-1]:
        await bookings.cancel_booking(actor_of(student), child.id, now=NOW)
    assert await _status(session, parent.id) == BookingStatus.PENDING.value

    await bookings.cancel_booking(actor_of(student), children[-1].id, now=NOW)
    assert await _status(session, parent.id) == BookingStatus.CANCELLED.value


async def test_one_rejected_lesson_rejects_the_series(bookings, session, student, teacher):
    parent, *children = await bookings.create_booking(actor_of(student), series_request(teacher), now=NOW)

    await bookings.reject_booking(
        actor_of(teacher), children[2].id, RejectBookingRequest(reason="Conference that day"), now=NOW
    )

    assert await _status(session, parent.id) == BookingStatus.REJECTED.value
    assert await _status(session, children[0].id) == BookingStatus.PENDING.value


async def test_series_parent_does_not_block_its_first_lesson(bookings, student, teacher):
    parent, first, *_ = await bookings.create_booking(actor_of(student), series_request(teacher), now=NOW)
    assert first.date == parent.date
    assert first.start_time == parent.start_time


async def _parent_times(session, parent_id: int):
    return (await session.execute(
        select(Booking.confirmed_at, Booking.completed_at, Booking.cancelled_at, Booking.cancelled_by)
        .where(Booking.id == parent_id)
    )).one()


async def test_cascade_stamps_parent_timestamps(bookings, session, student, teacher):
    parent, *children = await bookings.create_booking(actor_of(student), series_request(teacher), now=NOW)
    parent_id = parent.id
    for child in children:
        await bookings.confirm_booking(actor_of(teacher), child.id, now=NOW)
    assert (await _parent_times(session, parent_id)).confirmed_at == NOW

    after = datetime(2030, 4, 1)
    for child in children:
        await bookings.complete_booking(actor_of(teacher), child.id, now=after)
    assert (await _parent_times(session, parent_id)).completed_at == after


async def test_cancelled_series_parent_can_be_refunded(bookings, payments, session, student, teacher):
    # the only Monday left in March 2030
    parent, child = await bookings.create_booking(
        actor_of(student),
        booking_request(
            teacher, day=date(2030, 3, 25), start="10:00", end="11:00",
            is_recurring=True, days_per_week=1, hours_per_day=1.0, specific_days=["monday"],
        ),
        now=NOW,
    )
    parent_id = parent.id
    intent = await payments.create_payment_intent(
        actor_of(student), CreatePaymentIntentRequest(booking_id=parent_id, payment_method=PaymentMethod.CASH)
    )
    payment = await payments.confirm_payment(intent.payment.id, now=NOW)

    await bookings.cancel_booking(actor_of(student), child.id, now=NOW)
    times = await _parent_times(session, parent_id)
    assert await _status(session, parent_id) == BookingStatus.CANCELLED.value
    assert times.cancelled_at == NOW
    assert times.cancelled_by == student.id

    refunded = await payments.request_refund(actor_of(student), payment.id, now=NOW)
    assert refunded.refund_status == RefundStatus.REQUESTED.value
    assert refunded.refund_amount == Decimal("55.00")


def test_days_per_week_must_match_specific_days(teacher):
    with pytest.raises(pydantic.ValidationError, match="days_per_week"):
        booking_request(
            teacher, day=date(2030, 3, 4), start="10:00", end="11:00",
            is_recurring=True, days_per_week=3, hours_per_day=1.0, specific_days=["monday", "wednesday"],
        )
