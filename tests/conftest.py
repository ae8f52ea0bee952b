# tests/conftest.py
"""
Shared fixtures: a throwaway SQLite database per test, user factories and
doubles for the Telegram bot and the payment gateway.
"""

import os

# settings are read at import time
os.environ.setdefault("DB_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PAYMENT_ENV", "mock")
os.environ.setdefault("SMTP_ENABLED", "false")
os.environ.setdefault("TZ", "Africa/Addis_Ababa")

from datetime import date, datetime
from decimal import Decimal
from typing import Any, List, Optional

import pytest

from langcenter.integrations.chapa import MockGateway
from langcenter.schemas.booking import Actor, CreateBookingRequest
from langcenter.services.booking_service import BookingService
from langcenter.services.notification_service import NotificationService
from langcenter.services.payment_service import PaymentService
from langcenter.storage.db import create_all, make_engine, make_sessionmaker
from langcenter.storage.models import TeacherProfile, User, UserRole

# Monday
NOW = datetime(2030, 3, 4, 10, 0)
LESSON_DAY = date(2030, 3, 10)


class FakeBot:
    def __init__(self, fail_for: Optional[set] = None):
        self.sent: List[dict] = []
        self.fail_for = fail_for or set()

    async def send_message(self, chat_id: int, text: str, reply_markup: Any = None, **kwargs):
        if chat_id in self.fail_for:
            from aiogram.exceptions import TelegramBadRequest

            raise TelegramBadRequest(method=None, message="chat not found")
        self.sent.append({"chat_id": chat_id, "text": text, "reply_markup": reply_markup})


@pytest.fixture
async def engine(tmp_path):
    eng = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.sqlite3'}")
    await create_all(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_sessionmaker(engine)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


@pytest.fixture
def bot():
    return FakeBot()


@pytest.fixture
def notifier(session, bot):
    return NotificationService(session, bot)


@pytest.fixture
def gateway():
    return MockGateway()


@pytest.fixture
def bookings(session, notifier):
    return BookingService(session, notifier)


@pytest.fixture
def payments(session, gateway, notifier):
    return PaymentService(session, gateway, notifier)


@pytest.fixture
async def factory_session(session_factory):
    # own session, so a service rollback never expires fixture users
    async with session_factory() as s:
        yield s


@pytest.fixture
def make_user(factory_session):
    session = factory_session
    counter = {"n": 0}

    async def _make(role: UserRole = UserRole.STUDENT, **kwargs) -> User:
        counter["n"] += 1
        n = counter["n"]
        user = User(
            firstname=kwargs.pop("firstname", f"{role.value.title()}{n}"),
            lastname=kwargs.pop("lastname", "Test"),
            email=kwargs.pop("email", f"{role.value}{n}@example.com"),
            role=role.value,
            tg_id=kwargs.pop("tg_id", 1000 + n),
            **kwargs,
        )
        session.add(user)
        await session.commit()
        return user

    return _make


@pytest.fixture
def make_teacher(factory_session, make_user):
    session = factory_session
    async def _make(
        languages=("english", "french"),
        hourly_rate: Optional[Decimal] = Decimal("50"),
        **kwargs,
    ) -> User:
        teacher = await make_user(UserRole.TEACHER, **kwargs)
        session.add(
            TeacherProfile(user_id=teacher.id, languages=list(languages), hourly_rate=hourly_rate)
        )
        await session.commit()
        return teacher

    return _make


@pytest.fixture
async def student(make_user):
    return await make_user(UserRole.STUDENT)


@pytest.fixture
async def teacher(make_teacher):
    return await make_teacher()


@pytest.fixture
async def admin(make_user):
    return await make_user(UserRole.ADMIN)


def actor_of(user: User) -> Actor:
    return Actor(id=user.id, role=UserRole(user.role))


def booking_request(teacher: User, day: date = LESSON_DAY, start: str = "10:00", end: str = "12:00", **kw):
    return CreateBookingRequest(
        teacher_id=teacher.id,
        date=day,
        start_time=start,
        end_time=end,
        language=kw.pop("language", "english"),
        **kw,
    )
