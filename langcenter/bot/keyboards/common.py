from __future__ import annotations
from typing import Sequence

from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup
from aiogram.utils.keyboard import InlineKeyboardBuilder

from langcenter.storage.models import Booking, BookingStatus, UserRole

STATUS_MARK = {
    BookingStatus.PENDING.value: "⏳",
    BookingStatus.CONFIRMED.value: "✅",
    BookingStatus.REJECTED.value: "✖",
    BookingStatus.CANCELLED.value: "🚫",
    BookingStatus.COMPLETED.value: "🏁",
    BookingStatus.EXPIRED.value: "⌛",
}

def booking_line(b: Booking) -> str:
    mark = STATUS_MARK.get(b.status, "")
    series = " (series)" if b.is_series_parent else ""
    return f"{mark} {b.date:%d.%m} {b.start_time}-{b.end_time} • {b.language}{series}"

def kb_teacher_decision(booking_id: int) -> InlineKeyboardMarkup:
    kb = InlineKeyboardBuilder()
    kb.button(text="Confirm", callback_data=f"bk:confirm:{booking_id}")
    kb.button(text="Reject", callback_data=f"bk:reject:{booking_id}")
    kb.adjust(2)
    return kb.as_markup()

def kb_my_bookings(bookings: Sequence[Booking], role: UserRole) -> InlineKeyboardMarkup:
    b = InlineKeyboardBuilder()
    if not bookings:
        b.row(InlineKeyboardButton(text="No bookings", callback_data="noop"))
        return b.as_markup()

    for bk in bookings:
        b.row(InlineKeyboardButton(text=booking_line(bk), callback_data="noop"))
        actions: list[InlineKeyboardButton] = []
        if role == UserRole.TEACHER and bk.status == BookingStatus.PENDING.value:
            actions.append(InlineKeyboardButton(text="Confirm", callback_data=f"bk:confirm:{bk.id}"))
            actions.append(InlineKeyboardButton(text="Reject", callback_data=f"bk:reject:{bk.id}"))
        if role == UserRole.TEACHER and bk.status == BookingStatus.CONFIRMED.value:
            actions.append(InlineKeyboardButton(text="Complete", callback_data=f"bk:complete:{bk.id}"))
        if bk.status in (BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value):
            actions.append(InlineKeyboardButton(text="Cancel", callback_data=f"bk:cancel:{bk.id}"))
        if actions:
            b.row(*actions)
    return b.as_markup()
