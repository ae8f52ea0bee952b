from __future__ import annotations

import logging
from collections import Counter
from contextlib import asynccontextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from langcenter.config import settings
from langcenter.errors import (
    AlreadyRated,
    BookingNotFoundOrAlreadyProcessed,
    Forbidden,
    InvalidState,
    InvalidTimeRange,
    LanguageNotTaught,
    NotFound,
    SchedulingConflict,
    TeacherNotFound,
    ValidationError,
    WithinCancellationWindow,
)
from langcenter.schemas.booking import (
    Actor,
    CancelBookingRequest,
    CompleteBookingRequest,
    ConfirmBookingRequest,
    CreateBookingRequest,
    RateBookingRequest,
    RejectBookingRequest,
)
from langcenter.services.availability_service import AvailabilityService
from langcenter.services.notification_service import NotificationSink
from langcenter.services.user_service import TeacherDirectory
from langcenter.storage.models import (
    ACTIVE_STATUSES,
    Booking,
    BookingStatus,
    TeacherProfile,
    User,
    UserRole,
)
from langcenter.utils.dates import (
    default_expires_at,
    duration_hours,
    format_day,
    is_within_cancellation_window,
    lesson_end_at,
    matching_days_until_month_end,
    now_local,
)
from langcenter.utils.money import to_money

log = logging.getLogger("booking")

S = BookingStatus

ALLOWED_TRANSITIONS: Dict[str, frozenset] = {
    S.PENDING.value: frozenset({S.CONFIRMED.value, S.REJECTED.value, S.CANCELLED.value, S.EXPIRED.value}),
    S.CONFIRMED.value: frozenset({S.COMPLETED.value, S.CANCELLED.value, S.EXPIRED.value}),
}


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


class BookingService:
    """
    Booking lifecycle: request, teacher decision, cancellation, completion,
    rating and the expiry sweep.

    Every public operation is one unit of work on ``session``: it commits on
    success, rolls back and re-raises on any error, and only then hands the
    queued notifications to ``notifier.dispatch()``.
    """

    def __init__(
        self,
        session: AsyncSession,
        notifier: NotificationSink,
        directory: Optional[TeacherDirectory] = None,
    ):
        self.session = session
        self.notifier = notifier
        self.directory = directory or TeacherDirectory(session)
        self.availability = AvailabilityService(session)

    @asynccontextmanager
    async def _unit_of_work(self):
        try:
            yield
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        await self.notifier.dispatch()

    def _transition(self, booking: Booking, target: BookingStatus) -> None:
        if not can_transition(booking.status, target.value):
            raise InvalidState(
                f"Booking cannot move from {booking.status} to {target.value}",
                details={"booking_id": booking.id, "status": booking.status},
            )
        booking.status = target.value

    async def _user(self, user_id: int) -> Optional[User]:
        return await self.session.get(User, user_id)

    # ---------- create ----------

    async def create_booking(
        self, actor: Actor, req: CreateBookingRequest, *, now: Optional[datetime] = None
    ) -> List[Booking]:
        now = now or now_local()
        async with self._unit_of_work():
            if actor.role != UserRole.STUDENT:
                raise Forbidden("Only students can book lessons")

            teacher = await self.directory.find_approved_teacher(req.teacher_id)
            if teacher is None or teacher.teacher_profile is None:
                raise TeacherNotFound("Teacher not found or not approved", details={"teacher_id": req.teacher_id})
            profile = teacher.teacher_profile

            taught = {lang.strip().lower() for lang in (profile.languages or [])}
            if req.language.strip().lower() not in taught:
                raise LanguageNotTaught(
                    "Teacher does not teach this language",
                    details={"language": req.language, "available": profile.languages or []},
                )
            if req.lesson_type not in settings.lesson_types:
                raise ValidationError(
                    f"Unknown lesson type: {req.lesson_type}", details={"allowed": settings.lesson_types}
                )

            duration = duration_hours(req.start_time, req.end_time)
            if duration <= 0:
                raise InvalidTimeRange("End time must be after start time")
            if req.is_recurring and duration != req.hours_per_day:
                raise InvalidTimeRange(
                    "Lesson length must match hours per day for recurring bookings",
                    details={"duration": duration, "hours_per_day": req.hours_per_day},
                )

            rate = profile.hourly_rate if profile.hourly_rate is not None else settings.default_hourly_rate
            price = to_money(Decimal(str(duration)) * Decimal(rate))
            expires_at = default_expires_at(now)

            if req.is_recurring:
                bookings = await self._create_series(actor, req, duration, price, expires_at)
            else:
                bookings = [await self._create_single(actor, req, duration, price, expires_at)]

            first = bookings[0]
            student = await self._user(actor.id)
            self.notifier.enqueue(
                teacher.id,
                "booking_request",
                {
                    "student_name": student.full_name if student else "",
                    "language": first.language,
                    "day": format_day(first.date),
                    "start_time": first.start_time,
                    "end_time": first.end_time,
                    "series": f" (recurring, {first.expected_sessions} sessions)" if first.is_recurring else "",
                    "booking_id": first.id,
                    "sender_id": actor.id,
                },
            )

        log.info(
            "booking.create id=%s student=%s teacher=%s recurring=%s count=%s",
            bookings[0].id, actor.id, req.teacher_id, req.is_recurring, len(bookings),
        )
        return bookings

    def _new_booking(self, actor: Actor, req: CreateBookingRequest, day: date, duration, price, expires_at) -> Booking:
        return Booking(
            student_id=actor.id,
            teacher_id=req.teacher_id,
            date=day,
            start_time=req.start_time,
            end_time=req.end_time,
            duration=duration,
            price=price,
            language=req.language,
            lesson_type=req.lesson_type,
            notes=req.notes,
            status=S.PENDING.value,
            expires_at=expires_at,
        )

    async def _create_single(self, actor, req, duration, price, expires_at) -> Booking:
        if not await self.availability.try_reserve_slot(req.teacher_id, req.date, req.start_time, req.end_time):
            raise SchedulingConflict(
                "Time slot is not available",
                details={"date": req.date.isoformat(), "start_time": req.start_time, "end_time": req.end_time},
            )
        booking = self._new_booking(actor, req, req.date, duration, price, expires_at)
        self.session.add(booking)
        await self.session.flush()
        return booking

    async def _create_series(self, actor, req, duration, price, expires_at) -> List[Booking]:
        parent = self._new_booking(actor, req, req.date, duration, price, expires_at)
        parent.is_recurring = True
        parent.days_per_week = req.days_per_week
        parent.hours_per_day = req.hours_per_day
        parent.specific_days = list(req.specific_days or [])
        self.session.add(parent)
        await self.session.flush()

        children: List[Booking] = []
        for day in matching_days_until_month_end(req.date, req.specific_days or []):
            if not await self.availability.try_reserve_slot(req.teacher_id, day, req.start_time, req.end_time):
                log.info("booking.series_skip parent=%s day=%s", parent.id, day)
                continue
            child = self._new_booking(actor, req, day, duration, price, expires_at)
            child.is_recurring = True
            child.parent_id = parent.id
            self.session.add(child)
            await self.session.flush()
            children.append(child)

        sessions = len(children)
        parent.expected_sessions = sessions
        parent.total_hours_per_month = sessions * req.hours_per_day
        parent.total_cost = to_money(price * sessions)
        await self.session.flush()
        return [parent, *children]

    # ---------- teacher decisions ----------

    async def _pending_for_teacher(self, actor: Actor, booking_id: int, status: BookingStatus) -> Booking:
        booking = await self.session.scalar(
            select(Booking).where(
                Booking.id == booking_id,
                Booking.teacher_id == actor.id,
                Booking.status == status.value,
            )
        )
        if booking is None:
            raise BookingNotFoundOrAlreadyProcessed(
                "Booking not found or already processed", details={"booking_id": booking_id}
            )
        return booking

    async def _cascade_quorum(self, child: Booking, target: BookingStatus, now: datetime) -> None:
        if child.parent_id is None:
            return
        parent = await self.session.get(Booking, child.parent_id)
        if parent is None or not can_transition(parent.status, target.value):
            return
        await self.session.flush()
        done = await self.session.scalar(
            select(func.count(Booking.id)).where(
                Booking.parent_id == parent.id, Booking.status == target.value
            )
        )
        if parent.expected_sessions and done == parent.expected_sessions:
            parent.status = target.value
            setattr(parent, f"{target.value}_at", now)
            if target == S.CANCELLED:
                parent.cancelled_by = child.cancelled_by
                parent.cancel_reason = child.cancel_reason
            log.info("booking.series_%s parent=%s sessions=%s", target.value, parent.id, done)

    async def confirm_booking(
        self,
        actor: Actor,
        booking_id: int,
        req: Optional[ConfirmBookingRequest] = None,
        *,
        now: Optional[datetime] = None,
    ) -> Booking:
        req = req or ConfirmBookingRequest()
        now = now or now_local()
        async with self._unit_of_work():
            booking = await self._pending_for_teacher(actor, booking_id, S.PENDING)
            self._transition(booking, S.CONFIRMED)
            booking.confirmed_at = now
            if req.meeting_link:
                booking.meeting_link = req.meeting_link
            if req.location:
                booking.location = req.location
            if req.notes:
                booking.notes = req.notes
            await self._cascade_quorum(booking, S.CONFIRMED, now)

            self.notifier.enqueue(
                booking.student_id,
                "booking_confirmed",
                {"language": booking.language, "day": format_day(booking.date),
                 "booking_id": booking.id, "sender_id": actor.id},
            )
        log.info("booking.confirm id=%s teacher=%s", booking.id, actor.id)
        return booking

    async def reject_booking(
        self,
        actor: Actor,
        booking_id: int,
        req: RejectBookingRequest,
        *,
        now: Optional[datetime] = None,
    ) -> Booking:
        now = now or now_local()
        async with self._unit_of_work():
            booking = await self._pending_for_teacher(actor, booking_id, S.PENDING)
            self._transition(booking, S.REJECTED)
            booking.rejected_at = now
            booking.rejection_reason = req.reason

            # one rejected lesson rejects the whole series
            if booking.parent_id is not None:
                parent = await self.session.get(Booking, booking.parent_id)
                if parent is not None and can_transition(parent.status, S.REJECTED.value):
                    parent.status = S.REJECTED.value
                    parent.rejected_at = now
                    parent.rejection_reason = req.reason
                    log.info("booking.series_rejected parent=%s child=%s", parent.id, booking.id)

            self.notifier.enqueue(
                booking.student_id,
                "booking_rejected",
                {"reason": req.reason, "booking_id": booking.id, "sender_id": actor.id},
            )
        log.info("booking.reject id=%s teacher=%s", booking.id, actor.id)
        return booking

    # ---------- cancel / complete ----------

    async def cancel_booking(
        self,
        actor: Actor,
        booking_id: int,
        req: Optional[CancelBookingRequest] = None,
        *,
        now: Optional[datetime] = None,
    ) -> Booking:
        req = req or CancelBookingRequest()
        now = now or now_local()
        async with self._unit_of_work():
            booking = await self.session.get(Booking, booking_id)
            if booking is None or not (
                actor.is_admin or actor.id in (booking.student_id, booking.teacher_id)
            ):
                raise NotFound("Booking not found", details={"booking_id": booking_id})
            if booking.status not in ACTIVE_STATUSES:
                raise InvalidState(
                    "Booking cannot be cancelled", details={"booking_id": booking.id, "status": booking.status}
                )
            if is_within_cancellation_window(lesson_end_at(booking.date, booking.end_time), now):
                raise WithinCancellationWindow(
                    f"Cannot cancel booking within {settings.cancellation_window_hours} hours of scheduled time",
                    details={"booking_id": booking.id},
                )

            self._transition(booking, S.CANCELLED)
            booking.cancelled_at = now
            booking.cancelled_by = actor.id
            booking.cancel_reason = req.reason
            await self._cascade_quorum(booking, S.CANCELLED, now)

            other = booking.teacher_id if actor.id == booking.student_id else booking.student_id
            self.notifier.enqueue(
                other,
                "booking_cancelled",
                {"reason": req.reason or "not given", "booking_id": booking.id, "sender_id": actor.id},
            )
            if actor.is_admin and other != booking.teacher_id:
                self.notifier.enqueue(
                    booking.teacher_id,
                    "booking_cancelled",
                    {"reason": req.reason or "not given", "booking_id": booking.id, "sender_id": actor.id},
                )
        log.info("booking.cancel id=%s by=%s", booking.id, actor.id)
        return booking

    async def complete_booking(
        self,
        actor: Actor,
        booking_id: int,
        req: Optional[CompleteBookingRequest] = None,
        *,
        now: Optional[datetime] = None,
    ) -> Booking:
        req = req or CompleteBookingRequest()
        now = now or now_local()
        async with self._unit_of_work():
            booking = await self._pending_for_teacher(actor, booking_id, S.CONFIRMED)
            if lesson_end_at(booking.date, booking.end_time) > now:
                raise InvalidState("Cannot complete future bookings", details={"booking_id": booking.id})
            self._transition(booking, S.COMPLETED)
            booking.completed_at = now
            booking.teacher_notes = req.notes
            await self._cascade_quorum(booking, S.COMPLETED, now)

            self.notifier.enqueue(
                booking.student_id,
                "booking_completed",
                {"booking_id": booking.id, "sender_id": actor.id},
            )
        log.info("booking.complete id=%s teacher=%s", booking.id, actor.id)
        return booking

    # ---------- rating ----------

    async def rate_booking(
        self,
        actor: Actor,
        booking_id: int,
        req: RateBookingRequest,
        *,
        now: Optional[datetime] = None,
    ) -> Booking:
        now = now or now_local()
        async with self._unit_of_work():
            booking = await self.session.scalar(
                select(Booking).where(
                    Booking.id == booking_id,
                    Booking.student_id == actor.id,
                    Booking.status == S.COMPLETED.value,
                )
            )
            if booking is None:
                raise NotFound("Booking not found or not completed", details={"booking_id": booking_id})
            if booking.rating is not None:
                raise AlreadyRated("Booking already rated", details={"booking_id": booking.id})

            booking.rating = req.rating
            booking.review = req.review
            booking.rated_at = now
            await self.session.flush()

            avg, count = (
                await self.session.execute(
                    select(func.avg(Booking.rating), func.count(Booking.id)).where(
                        Booking.teacher_id == booking.teacher_id,
                        Booking.rating.is_not(None),
                    )
                )
            ).one()
            profile = await self.session.scalar(
                select(TeacherProfile).where(TeacherProfile.user_id == booking.teacher_id)
            )
            if profile is not None:
                profile.total_rating = float(avg or 0)
                profile.total_reviews = count

            student = await self._user(actor.id)
            self.notifier.enqueue(
                booking.teacher_id,
                "review_received",
                {"rating": req.rating, "student_name": student.full_name if student else "",
                 "booking_id": booking.id, "sender_id": actor.id},
            )
        log.info("booking.rate id=%s rating=%s", booking.id, req.rating)
        return booking

    # ---------- sweep ----------

    async def expire_overdue(self, now: Optional[datetime] = None) -> int:
        now = now or now_local()
        async with self._unit_of_work():
            res = await self.session.execute(
                select(Booking).where(
                    Booking.status.in_(ACTIVE_STATUSES),
                    Booking.expires_at < now,
                )
            )
            overdue = list(res.scalars().all())
            per_student: Counter = Counter()
            for booking in overdue:
                self._transition(booking, S.EXPIRED)
                per_student[booking.student_id] += 1
            for student_id, count in per_student.items():
                self.notifier.enqueue(student_id, "booking_expired", {"count": count})
        if overdue:
            log.info("booking.expire count=%s students=%s", len(overdue), len(per_student))
        return len(overdue)

    # ---------- reads ----------

    async def get_booking(self, actor: Actor, booking_id: int) -> Booking:
        booking = await self.session.get(Booking, booking_id)
        if booking is None:
            raise NotFound("Booking not found", details={"booking_id": booking_id})
        if not (actor.is_admin or actor.id in (booking.student_id, booking.teacher_id)):
            raise Forbidden("Not authorized to view this booking")
        return booking

    def _owned_by(self, actor: Actor):
        if actor.role == UserRole.STUDENT:
            return Booking.student_id == actor.id
        if actor.role == UserRole.TEACHER:
            return Booking.teacher_id == actor.id
        return None

    async def list_for_user(
        self, actor: Actor, status: Optional[BookingStatus] = None, limit: int = 20
    ) -> List[Booking]:
        stmt = select(Booking).order_by(Booking.created_at.desc(), Booking.id.desc()).limit(limit)
        owned = self._owned_by(actor)
        if owned is not None:
            stmt = stmt.where(owned)
        if status is not None:
            stmt = stmt.where(Booking.status == BookingStatus(status).value)
        res = await self.session.execute(stmt)
        return list(res.scalars().all())

    async def get_teacher_schedule(
        self, actor: Actor, start: Optional[date] = None, end: Optional[date] = None
    ) -> List[Booking]:
        if actor.role != UserRole.TEACHER:
            raise Forbidden("Only teachers have a schedule")
        stmt = (
            select(Booking)
            .where(
                Booking.teacher_id == actor.id,
                Booking.status.in_((S.CONFIRMED.value, S.COMPLETED.value)),
                ~(Booking.is_recurring.is_(True) & Booking.parent_id.is_(None)),
            )
            .order_by(Booking.date, Booking.start_time)
        )
        if start is not None:
            stmt = stmt.where(Booking.date >= start)
        if end is not None:
            stmt = stmt.where(Booking.date <= end)
        res = await self.session.execute(stmt)
        return list(res.scalars().all())

    async def get_booking_stats(self, actor: Actor) -> Dict[str, object]:
        owned = self._owned_by(actor)
        stmt = select(Booking.status, func.count(Booking.id)).group_by(Booking.status)
        rating_stmt = select(func.avg(Booking.rating)).where(Booking.rating.is_not(None))
        if owned is not None:
            stmt = stmt.where(owned)
            rating_stmt = rating_stmt.where(owned)

        counts = {s.value: 0 for s in BookingStatus}
        for status, n in (await self.session.execute(stmt)).all():
            counts[status] = n
        avg = await self.session.scalar(rating_stmt)
        return {
            "total": sum(counts.values()),
            **counts,
            "average_rating": round(float(avg), 2) if avg is not None else None,
        }
