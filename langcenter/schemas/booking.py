"""
Typed request payloads for the booking lifecycle.
"""
from __future__ import annotations

import datetime as _dt
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from langcenter.storage.models import UserRole
from langcenter.utils.dates import WEEKDAYS, parse_hhmm


class Actor(BaseModel):
    id: int
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class CreateBookingRequest(BaseModel):
    teacher_id: int
    date: _dt.date
    start_time: str
    end_time: str
    language: str
    lesson_type: str = "individual"
    notes: Optional[str] = None

    is_recurring: bool = False
    days_per_week: Optional[int] = Field(default=None, ge=1, le=7)
    hours_per_day: Optional[float] = Field(default=None, ge=1)
    specific_days: Optional[List[str]] = None

    @field_validator("start_time", "end_time")
    @classmethod
    def _hhmm(cls, v: str) -> str:
        t = parse_hhmm(v)
        return f"{t.hour:02d}:{t.minute:02d}"

    @field_validator("specific_days")
    @classmethod
    def _weekdays(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is None:
            return v
        days = [d.strip().lower() for d in v]
        unknown = [d for d in days if d not in WEEKDAYS]
        if unknown:
            raise ValueError(f"unknown weekday(s): {', '.join(unknown)}")
        return days

    @model_validator(mode="after")
    def _recurrence_fields(self) -> "CreateBookingRequest":
        if not self.is_recurring:
            return self
        if self.days_per_week is None or self.hours_per_day is None or not self.specific_days:
            raise ValueError("recurring bookings need days_per_week, hours_per_day and specific_days")
        if self.days_per_week != len(set(self.specific_days)):
            raise ValueError("days_per_week must equal the number of distinct specific_days")
        return self


class ConfirmBookingRequest(BaseModel):
    meeting_link: Optional[str] = None
    location: Optional[str] = None
    notes: Optional[str] = None


class RejectBookingRequest(BaseModel):
    reason: str = Field(min_length=1)


class CancelBookingRequest(BaseModel):
    reason: Optional[str] = None


class CompleteBookingRequest(BaseModel):
    notes: Optional[str] = None


class RateBookingRequest(BaseModel):
    rating: int = Field(ge=1, le=5)
    review: Optional[str] = None
