from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from langcenter.errors import Forbidden, InvalidState, NotFound
from langcenter.schemas.booking import Actor
from langcenter.storage.models import ACTIVE_STATUSES, Booking, User, UserRole

log = logging.getLogger(__name__)


class TeacherDirectory:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_approved_teacher(self, teacher_id: int) -> Optional[User]:
        return await self.session.scalar(
            select(User)
            .options(selectinload(User.teacher_profile))
            .where(
                User.id == teacher_id,
                User.role == UserRole.TEACHER.value,
                User.is_approved.is_(True),
                User.is_active.is_(True),
            )
        )

    async def admins(self) -> List[User]:
        res = await self.session.execute(
            select(User).where(User.role == UserRole.ADMIN.value, User.is_active.is_(True))
        )
        return list(res.scalars().all())


class UserService:
    @staticmethod
    async def get_by_tg_id(session: AsyncSession, tg_id: int) -> Optional[User]:
        return await session.scalar(select(User).where(User.tg_id == tg_id))

    @staticmethod
    async def actor_for_telegram(session: AsyncSession, tg_id: int) -> Optional[Actor]:
        user = await UserService.get_by_tg_id(session, tg_id)
        if user is None or not user.is_active:
            return None
        return Actor(id=user.id, role=UserRole(user.role))

    @staticmethod
    async def active_booking_count(session: AsyncSession, user_id: int) -> int:
        return await session.scalar(
            select(func.count(Booking.id)).where(
                or_(Booking.student_id == user_id, Booking.teacher_id == user_id),
                Booking.status.in_(ACTIVE_STATUSES),
            )
        ) or 0

    @staticmethod
    async def delete_user(session: AsyncSession, actor: Actor, user_id: int) -> None:
        if not actor.is_admin:
            raise Forbidden("Only admins can delete users")
        user = await session.get(User, user_id)
        if user is None:
            raise NotFound("User not found")

        active = await UserService.active_booking_count(session, user_id)
        if active > 0:
            raise InvalidState(
                f"Cannot delete {user.role} with active bookings",
                details={"active_bookings": active},
            )

        await session.delete(user)
        await session.commit()
        log.info("users.delete id=%s role=%s by=%s", user_id, user.role, actor.id)
