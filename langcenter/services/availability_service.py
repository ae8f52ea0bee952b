from __future__ import annotations

import logging
from datetime import date
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from langcenter.storage.models import ACTIVE_STATUSES, Booking, TeacherDay

log = logging.getLogger("availability")


def overlaps(a_start: str, a_end: str, b_start: str, b_end: str) -> bool:
    """Half-open [start, end) test on zero-padded "HH:MM" strings; touching edges are free."""
    return a_start < b_end and a_end > b_start


class AvailabilityService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_conflict(
        self,
        teacher_id: int,
        day: date,
        start: str,
        end: str,
        *,
        exclude_id: Optional[int] = None,
    ) -> Optional[Booking]:
        stmt = (
            select(Booking)
            .where(
                Booking.teacher_id == teacher_id,
                Booking.date == day,
                Booking.status.in_(ACTIVE_STATUSES),
                Booking.start_time < end,
                Booking.end_time > start,
                # series parents aggregate a month of lessons, they are not a calendar occurrence
                ~(Booking.is_recurring.is_(True) & Booking.parent_id.is_(None)),
            )
            .order_by(Booking.start_time)
            .limit(1)
        )
        if exclude_id is not None:
            stmt = stmt.where(Booking.id != exclude_id)
        return await self.session.scalar(stmt)

    async def is_available(self, teacher_id: int, day: date, start: str, end: str) -> bool:
        return await self.find_conflict(teacher_id, day, start, end) is None

    def _insert(self):
        if self.session.get_bind().dialect.name == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        else:
            from sqlalchemy.dialects.sqlite import insert
        return insert

    async def _day_version(self, teacher_id: int, day: date) -> int:
        stmt = select(TeacherDay.version).where(TeacherDay.teacher_id == teacher_id, TeacherDay.day == day)
        version = await self.session.scalar(stmt)
        if version is not None:
            return version
        insert = self._insert()
        # a concurrent writer may create the row first; the unique constraint keeps one
        await self.session.execute(
            insert(TeacherDay)
            .values(teacher_id=teacher_id, day=day, version=0)
            .on_conflict_do_nothing(index_elements=["teacher_id", "day"])
        )
        return await self.session.scalar(stmt)

    async def try_reserve_slot(self, teacher_id: int, day: date, start: str, end: str) -> bool:
        """
        Claim [start, end) on ``day`` for the caller's transaction.

        The overlap check is paired with a compare-and-swap on the teacher's
        day row, so two writers that both saw a free slot cannot both commit:
        the second one's version bump matches nothing and it is refused.
        The caller must insert its booking in the same transaction.
        """
        seen = await self._day_version(teacher_id, day)
        if await self.find_conflict(teacher_id, day, start, end) is not None:
            return False

        res = await self.session.execute(
            update(TeacherDay)
            .where(
                TeacherDay.teacher_id == teacher_id,
                TeacherDay.day == day,
                TeacherDay.version == seen,
            )
            .values(version=TeacherDay.version + 1)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            log.info("availability.cas_lost teacher=%s day=%s", teacher_id, day)
            return False
        return True
