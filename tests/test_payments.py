from decimal import Decimal

import pytest
from sqlalchemy import select
from conftest import NOW, actor_of, booking_request

from langcenter.errors import Forbidden, GatewayError, InvalidState, NotFound, PaymentNotFound
from langcenter.integrations.chapa import MockGateway
from langcenter.schemas.payment import CreatePaymentIntentRequest, PaymentMethod
from langcenter.services.payment_service import PaymentService, new_invoice_number, price_breakdown
from langcenter.storage.models import Booking, Notification, PaymentStatus, UserRole


class UnreachableGateway(MockGateway):
    def verify(self, tx_ref):
        raise GatewayError("Payment gateway unreachable")


async def _booking(bookings, student, teacher) -> Booking:
    # 2 hours at 50/h
    (booking,) = await bookings.create_booking(actor_of(student), booking_request(teacher), now=NOW)
    return booking


def _intent(booking_id, method=PaymentMethod.CREDIT_CARD, **kw):
    return CreatePaymentIntentRequest(booking_id=booking_id, payment_method=method, **kw)


def test_price_breakdown_for_cards():
    amounts = price_breakdown(Decimal("100"), PaymentMethod.CREDIT_CARD)
    assert amounts == {
        "subtotal": Decimal("100.00"),
        "tax": Decimal("10.00"),
        "fees": Decimal("2.90"),
        "discount": Decimal("0.00"),
        "amount": Decimal("112.90"),
    }


def test_price_breakdown_without_card_fee_and_with_discount():
    amounts = price_breakdown(Decimal("100"), PaymentMethod.BANK_TRANSFER, Decimal("5"))
    assert amounts["fees"] == Decimal("0.00")
    assert amounts["amount"] == Decimal("105.00")


def test_invoice_numbers_are_unique():
    numbers = {new_invoice_number() for _ in range(50)}
    assert len(numbers) == 50
    assert all(n.startswith("INV-") for n in numbers)


async def test_create_intent(payments, bookings, student, teacher):
    booking = await _booking(bookings, student, teacher)
    intent = await payments.create_payment_intent(actor_of(student), _intent(booking.id))

    p = intent.payment
    assert p.status == PaymentStatus.PENDING.value
    assert p.amount == Decimal("112.90")
    assert p.currency == "ETB"
    assert p.tx_ref and intent.checkout_url == p.checkout_url
    assert p.invoice_number.startswith("INV-")


async def test_intent_requires_own_active_booking(payments, bookings, student, teacher, make_user):
    booking = await _booking(bookings, student, teacher)
    stranger = await make_user(UserRole.STUDENT)
    with pytest.raises(NotFound):
        await payments.create_payment_intent(actor_of(stranger), _intent(booking.id))


async def test_retry_reuses_payment_and_invoice(payments, bookings, student, teacher):
    booking = await _booking(bookings, student, teacher)
    first = (await payments.create_payment_intent(actor_of(student), _intent(booking.id))).payment
    invoice, first_ref = first.invoice_number, first.tx_ref

    second = (
        await payments.create_payment_intent(actor_of(student), _intent(booking.id, PaymentMethod.MOBILE_MONEY))
    ).payment
    assert second.id == first.id
    assert second.invoice_number == invoice
    assert second.tx_ref != first_ref
    assert second.amount == Decimal("110.00")


async def test_confirm_payment_marks_booking_paid(payments, bookings, session, student, teacher):
    booking = await _booking(bookings, student, teacher)
    intent = await payments.create_payment_intent(actor_of(student), _intent(booking.id))

    paid = await payments.confirm_payment(intent.payment.id, actor_of(student), now=NOW)
    assert paid.status == PaymentStatus.COMPLETED.value
    assert paid.paid_at == NOW
    assert paid.transaction_id

    booking = await session.get(Booking, booking.id)
    assert booking.payment_id == paid.id
    assert booking.payment_status == "paid"

    recipients = (await session.execute(
        select(Notification.recipient_id).where(Notification.kind == "payment_received")
    )).scalars().all()
    assert sorted(recipients) == sorted([student.id, teacher.id])


async def test_only_one_completed_payment_per_booking(payments, bookings, student, teacher):
    booking_id = (await _booking(bookings, student, teacher)).id
    intent = await payments.create_payment_intent(actor_of(student), _intent(booking_id))
    await payments.confirm_payment(intent.payment.id, actor_of(student), now=NOW)

    with pytest.raises(InvalidState):
        await payments.create_payment_intent(actor_of(student), _intent(booking_id))


async def test_paid_payment_cannot_be_confirmed_again(payments, bookings, student, teacher):
    booking = await _booking(bookings, student, teacher)
    payment_id = (await payments.create_payment_intent(actor_of(student), _intent(booking.id))).payment.id
    await payments.confirm_payment(payment_id, actor_of(student), now=NOW)
    with pytest.raises(InvalidState):
        await payments.confirm_payment(payment_id, actor_of(student), now=NOW)


async def test_failed_verification_marks_payment_failed(payments, bookings, gateway, student, teacher):
    booking = await _booking(bookings, student, teacher)
    intent = await payments.create_payment_intent(actor_of(student), _intent(booking.id))
    gateway.failed_refs.add(intent.payment.tx_ref)

    payment = await payments.confirm_payment(intent.payment.id, actor_of(student), now=NOW)
    assert payment.status == PaymentStatus.FAILED.value
    assert payment.failure_reason == "Payment verification failed"
    assert payment.paid_at is None


async def test_unreachable_gateway_marks_payment_failed(session, notifier, bookings, student, teacher):
    payments = PaymentService(session, UnreachableGateway(), notifier)
    booking = await _booking(bookings, student, teacher)
    intent = await payments.create_payment_intent(actor_of(student), _intent(booking.id))

    payment = await payments.confirm_payment(intent.payment.id, now=NOW)
    assert payment.status == PaymentStatus.FAILED.value
    assert payment.failure_reason.startswith("Verification unavailable")


async def test_gateway_callback_is_idempotent(payments, bookings, student, teacher):
    booking = await _booking(bookings, student, teacher)
    intent = await payments.create_payment_intent(actor_of(student), _intent(booking.id))

    first = await payments.handle_gateway_callback(intent.payment.tx_ref, now=NOW)
    again = await payments.handle_gateway_callback(intent.payment.tx_ref, now=NOW)
    assert first.status == again.status == PaymentStatus.COMPLETED.value

    with pytest.raises(PaymentNotFound):
        await payments.handle_gateway_callback("unknown-ref")


async def test_stranger_cannot_confirm(payments, bookings, student, teacher, make_user):
    booking = await _booking(bookings, student, teacher)
    intent = await payments.create_payment_intent(actor_of(student), _intent(booking.id))
    stranger = await make_user(UserRole.STUDENT)
    with pytest.raises(PaymentNotFound):
        await payments.confirm_payment(intent.payment.id, actor_of(stranger))


async def test_payment_stats(payments, bookings, student, teacher):
    booking = await _booking(bookings, student, teacher)
    intent = await payments.create_payment_intent(actor_of(student), _intent(booking.id))
    await payments.confirm_payment(intent.payment.id, now=NOW)

    stats = await payments.get_payment_stats(actor_of(teacher))
    assert stats["completed"] == 1
    assert stats["pending"] == 0
    assert stats["total_earnings"] == Decimal("112.90")
    assert stats["net_earnings"] == Decimal("112.90")


async def test_payment_reads(payments, bookings, student, teacher, admin, make_user):
    booking = await _booking(bookings, student, teacher)
    payment_id = (await payments.create_payment_intent(actor_of(student), _intent(booking.id))).payment.id

    assert (await payments.get_payment(actor_of(teacher), payment_id)).id == payment_id
    assert [p.id for p in await payments.list_payments(actor_of(student))] == [payment_id]
    assert [p.id for p in await payments.list_payments(actor_of(admin), PaymentStatus.PENDING)] == [payment_id]
    assert await payments.list_payments(actor_of(student), PaymentStatus.COMPLETED) == []

    stranger = await make_user(UserRole.STUDENT)
    with pytest.raises(Forbidden):
        await payments.get_payment(actor_of(stranger), payment_id)
    assert await payments.list_payments(actor_of(stranger)) == []
