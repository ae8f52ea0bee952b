from __future__ import annotations
from typing import cast

from aiogram import F, Router, html
from aiogram.filters import Command
from aiogram.fsm.context import FSMContext
from aiogram.fsm.state import State, StatesGroup
from aiogram.types import CallbackQuery, InlineKeyboardMarkup, Message
from aiogram.utils.keyboard import InlineKeyboardBuilder

from langcenter.bot.keyboards.common import kb_my_bookings
from langcenter.errors import DomainError
from langcenter.runtime import get_bot, get_payment_gateway
from langcenter.schemas.booking import Actor, RejectBookingRequest
from langcenter.schemas.payment import CreatePaymentIntentRequest, PaymentMethod
from langcenter.services.booking_service import BookingService
from langcenter.services.notification_service import NotificationService
from langcenter.services.payment_service import PaymentService
from langcenter.services.user_service import UserService
from langcenter.storage.db import SessionLocal
from langcenter.storage.models import UserRole

router = Router(name="bookings")

class RejectFSM(StatesGroup):
    waiting_reason = State()

def _callback_id(data: str) -> int:
    return int(data.split(":", 2)[2])

@router.callback_query(F.data == "noop")
async def noop(cb: CallbackQuery):
    await cb.answer()

async def _render_my(session, actor: Actor) -> InlineKeyboardMarkup:
    svc = BookingService(session, NotificationService(session, get_bot()))
    bookings = await svc.list_for_user(actor)
    return kb_my_bookings(bookings, actor.role)

@router.message(Command("my"))
async def my_bookings(message: Message):
    assert message.from_user is not None
    async with SessionLocal() as session:
        actor = await UserService.actor_for_telegram(session, message.from_user.id)
        if actor is None:
            await message.answer("Account not linked. Send /start for your id.")
            return
        markup = await _render_my(session, actor)
    await message.answer("Your bookings:", reply_markup=markup)

@router.callback_query(F.data.startswith("bk:confirm:"))
async def bk_confirm(cb: CallbackQuery):
    assert cb.data is not None and cb.from_user is not None
    booking_id = _callback_id(cb.data)
    async with SessionLocal() as session:
        actor = await UserService.actor_for_telegram(session, cb.from_user.id)
        if actor is None:
            await cb.answer("Account not linked", show_alert=True)
            return
        svc = BookingService(session, NotificationService(session, get_bot()))
        try:
            booking = await svc.confirm_booking(actor, booking_id)
        except DomainError as e:
            await cb.answer(e.message, show_alert=True)
            return
    await cb.answer(f"Booking #{booking.id} confirmed")

@router.callback_query(F.data.startswith("bk:reject:"))
async def bk_reject_start(cb: CallbackQuery, state: FSMContext):
    assert cb.message is not None and cb.data is not None
    msg = cast(Message, cb.message)
    await state.update_data(reject_booking_id=_callback_id(cb.data))
    await state.set_state(RejectFSM.waiting_reason)
    await msg.answer("Why are you rejecting this booking?")
    await cb.answer()

@router.message(RejectFSM.waiting_reason, F.text & ~F.text.startswith("/"))
async def bk_reject_reason(message: Message, state: FSMContext):
    assert message.from_user is not None
    reason = (message.text or "").strip()
    if not reason:
        await message.answer("The reason is empty. Please type a reason:")
        return
    data = await state.get_data()
    await state.clear()
    booking_id = int(data.get("reject_booking_id", 0))

    async with SessionLocal() as session:
        actor = await UserService.actor_for_telegram(session, message.from_user.id)
        if actor is None:
            await message.answer("Account not linked.")
            return
        svc = BookingService(session, NotificationService(session, get_bot()))
        try:
            await svc.reject_booking(actor, booking_id, RejectBookingRequest(reason=reason))
        except DomainError as e:
            await message.answer(html.quote(e.message))
            return
    await message.answer(f"Booking #{booking_id} rejected.")

@router.callback_query(F.data.startswith("bk:complete:"))
async def bk_complete(cb: CallbackQuery):
    assert cb.data is not None and cb.from_user is not None
    booking_id = _callback_id(cb.data)
    async with SessionLocal() as session:
        actor = await UserService.actor_for_telegram(session, cb.from_user.id)
        if actor is None:
            await cb.answer("Account not linked", show_alert=True)
            return
        svc = BookingService(session, NotificationService(session, get_bot()))
        try:
            await svc.complete_booking(actor, booking_id)
        except DomainError as e:
            await cb.answer(e.message, show_alert=True)
            return
    await cb.answer(f"Booking #{booking_id} completed")

@router.callback_query(F.data.startswith("bk:cancel:"))
async def bk_cancel(cb: CallbackQuery):
    assert cb.message is not None and cb.data is not None and cb.from_user is not None
    msg = cast(Message, cb.message)
    booking_id = _callback_id(cb.data)
    async with SessionLocal() as session:
        actor = await UserService.actor_for_telegram(session, cb.from_user.id)
        if actor is None:
            await cb.answer("Account not linked", show_alert=True)
            return
        svc = BookingService(session, NotificationService(session, get_bot()))
        try:
            await svc.cancel_booking(actor, booking_id)
        except DomainError as e:
            await cb.answer(e.message, show_alert=True)
            return
        markup = await _render_my(session, actor)
    await msg.answer(f"Booking #{booking_id} cancelled.", reply_markup=markup)
    await cb.answer()

@router.message(Command("pay"))
async def pay(message: Message):
    """/pay <booking id>: hosted checkout link for one of the student's bookings."""
    assert message.from_user is not None
    parts = (message.text or "").split()
    if len(parts) != 2 or not parts[1].isdigit():
        await message.answer(html.quote("Usage: /pay <booking id>"))
        return
    async with SessionLocal() as session:
        actor = await UserService.actor_for_telegram(session, message.from_user.id)
        if actor is None or actor.role != UserRole.STUDENT:
            await message.answer("Only linked student accounts can pay.")
            return
        svc = PaymentService(session, get_payment_gateway(), NotificationService(session, get_bot()))
        try:
            intent = await svc.create_payment_intent(
                actor,
                CreatePaymentIntentRequest(booking_id=int(parts[1]), payment_method=PaymentMethod.CHAPA_CARD),
            )
        except DomainError as e:
            await message.answer(html.quote(e.message))
            return

    p = intent.payment
    kb = InlineKeyboardBuilder()
    kb.button(text="Pay", url=intent.checkout_url)
    kb.button(text="I have paid", callback_data=f"pay:verify:{p.id}")
    kb.adjust(1)
    await message.answer(
        f"Invoice {html.quote(p.invoice_number)}\n"
        f"Subtotal: {p.subtotal} {p.currency}\nTax: {p.tax}\nFees: {p.fees}\n"
        f"<b>Total: {p.amount} {p.currency}</b>",
        reply_markup=kb.as_markup(),
    )

@router.callback_query(F.data.startswith("pay:verify:"))
async def pay_verify(cb: CallbackQuery):
    assert cb.data is not None and cb.from_user is not None
    payment_id = _callback_id(cb.data)
    async with SessionLocal() as session:
        actor = await UserService.actor_for_telegram(session, cb.from_user.id)
        if actor is None:
            await cb.answer("Account not linked", show_alert=True)
            return
        svc = PaymentService(session, get_payment_gateway(), NotificationService(session, get_bot()))
        try:
            payment = await svc.confirm_payment(payment_id, actor)
        except DomainError as e:
            await cb.answer(e.message, show_alert=True)
            return
    await cb.answer(f"Payment status: {payment.status}", show_alert=True)
