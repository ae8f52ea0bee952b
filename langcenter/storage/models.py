from __future__ import annotations

import datetime as _dt
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from langcenter.storage.db import Base
from langcenter.utils.dates import now_local


class UserRole(str, Enum):
    STUDENT = "student"
    TEACHER = "teacher"
    ADMIN = "admin"


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    EXPIRED = "expired"


ACTIVE_STATUSES = (BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value)


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class RefundStatus(str, Enum):
    REQUESTED = "requested"
    COMPLETED = "completed"
    REJECTED = "rejected"
    FAILED = "failed"


class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tg_id: Mapped[int | None] = mapped_column(BigInteger, unique=True, index=True, nullable=True)
    firstname: Mapped[str] = mapped_column(String(64))
    lastname: Mapped[str] = mapped_column(String(64), default="")
    email: Mapped[str] = mapped_column(String(255), unique=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    role: Mapped[str] = mapped_column(String(16), default=UserRole.STUDENT.value, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_approved: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=now_local)

    teacher_profile: Mapped[Optional["TeacherProfile"]] = relationship(
        back_populates="user", uselist=False, cascade="all,delete-orphan"
    )

    @property
    def full_name(self) -> str:
        return f"{self.firstname} {self.lastname}".strip()


class TeacherProfile(Base):
    __tablename__ = "teacher_profiles"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), unique=True)
    title: Mapped[str] = mapped_column(String(100), default="")
    description: Mapped[str] = mapped_column(String(1000), default="")
    languages: Mapped[list[str]] = mapped_column(JSON, default=list)
    hourly_rate: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    total_rating: Mapped[float] = mapped_column(Float, default=0.0)
    total_reviews: Mapped[int] = mapped_column(Integer, default=0)
    total_students: Mapped[int] = mapped_column(Integer, default=0)

    user: Mapped["User"] = relationship(back_populates="teacher_profile")


class Booking(Base):
    __tablename__ = "bookings"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    student_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    teacher_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)

    # local calendar day + "HH:MM" wall-clock strings in settings.tz
    date: Mapped[_dt.date] = mapped_column(Date, index=True)
    start_time: Mapped[str] = mapped_column(String(5))
    end_time: Mapped[str] = mapped_column(String(5))
    duration: Mapped[float] = mapped_column(Float)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2))

    language: Mapped[str] = mapped_column(String(64))
    lesson_type: Mapped[str] = mapped_column(String(16), default="individual")
    status: Mapped[str] = mapped_column(String(16), default=BookingStatus.PENDING.value, index=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    meeting_link: Mapped[str | None] = mapped_column(String(512), nullable=True)
    location: Mapped[str | None] = mapped_column(String(255), nullable=True)
    teacher_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False)
    days_per_week: Mapped[int | None] = mapped_column(Integer, nullable=True)
    hours_per_day: Mapped[float | None] = mapped_column(Float, nullable=True)
    specific_days: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    total_hours_per_month: Mapped[float | None] = mapped_column(Float, nullable=True)
    total_cost: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    expected_sessions: Mapped[int | None] = mapped_column(Integer, nullable=True)
    parent_id: Mapped[int | None] = mapped_column(
        ForeignKey("bookings.id", ondelete="CASCADE"), nullable=True, index=True
    )

    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    cancelled_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    review: Mapped[str | None] = mapped_column(Text, nullable=True)
    rated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), index=True)

    payment_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payment_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    refund_status: Mapped[str | None] = mapped_column(String(16), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=now_local)
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=False), nullable=True, onupdate=now_local
    )

    student: Mapped["User"] = relationship(foreign_keys=[student_id])
    teacher: Mapped["User"] = relationship(foreign_keys=[teacher_id])
    parent: Mapped[Optional["Booking"]] = relationship(
        remote_side="Booking.id", back_populates="children"
    )
    children: Mapped[list["Booking"]] = relationship(back_populates="parent")

    __table_args__ = (
        Index("ix_bookings_teacher_date_status", "teacher_id", "date", "status"),
    )

    @property
    def is_series_parent(self) -> bool:
        return self.is_recurring and self.parent_id is None


class TeacherDay(Base):
    """One row per teacher per calendar day; ``version`` is bumped on every reservation."""

    __tablename__ = "teacher_days"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    teacher_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    day: Mapped[date] = mapped_column(Date)
    version: Mapped[int] = mapped_column(Integer, default=0)

    __table_args__ = (
        UniqueConstraint("teacher_id", "day", name="uq_teacher_day"),
    )


class Payment(Base):
    __tablename__ = "payments"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id", ondelete="CASCADE"), index=True)
    student_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    teacher_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)

    subtotal: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    tax: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    fees: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    discount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    currency: Mapped[str] = mapped_column(String(8))
    payment_method: Mapped[str] = mapped_column(String(32))
    payment_gateway: Mapped[str] = mapped_column(String(32), default="chapa")

    status: Mapped[str] = mapped_column(String(16), default=PaymentStatus.PENDING.value, index=True)
    tx_ref: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    checkout_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    invoice_number: Mapped[str] = mapped_column(String(64), unique=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    refund_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    refund_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    refund_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    refund_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    refund_processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    refund_processed_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    refund_rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    refund_rejected_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    refund_transaction_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=now_local)
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=False), nullable=True, onupdate=now_local
    )

    booking: Mapped["Booking"] = relationship()
    student: Mapped["User"] = relationship(foreign_keys=[student_id])
    teacher: Mapped["User"] = relationship(foreign_keys=[teacher_id])

    __table_args__ = (
        # at most one completed payment per booking
        Index(
            "uq_payments_completed_booking",
            "booking_id",
            unique=True,
            sqlite_where=text("status = 'completed'"),
            postgresql_where=text("status = 'completed'"),
        ),
    )


class Notification(Base):
    __tablename__ = "notifications"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    recipient_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    sender_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    kind: Mapped[str] = mapped_column(String(32), index=True)
    title: Mapped[str] = mapped_column(String(255))
    message: Mapped[str] = mapped_column(Text)
    priority: Mapped[str] = mapped_column(String(16), default="normal")

    related_booking_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    related_payment_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    channel_email: Mapped[bool] = mapped_column(Boolean, default=False)
    channel_telegram: Mapped[bool] = mapped_column(Boolean, default=True)
    delivery_email: Mapped[str] = mapped_column(String(16), default="pending")
    delivery_telegram: Mapped[str] = mapped_column(String(16), default="pending")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=now_local, index=True)

    recipient: Mapped["User"] = relationship()
