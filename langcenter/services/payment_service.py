from __future__ import annotations

import asyncio
import logging
import secrets
import string
import time
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from langcenter.config import settings
from langcenter.errors import (
    Forbidden,
    GatewayError,
    InvalidState,
    NoRefundEligible,
    NotFound,
    PaymentNotFound,
)
from langcenter.integrations.chapa import PayerInfo, PaymentGateway
from langcenter.schemas.booking import Actor
from langcenter.schemas.payment import (
    CARD_METHODS,
    CreatePaymentIntentRequest,
    PaymentIntent,
    PaymentMethod,
    ProcessRefundRequest,
    RefundRequest,
)
from langcenter.services.notification_service import NotificationSink
from langcenter.services.user_service import TeacherDirectory
from langcenter.storage.models import (
    ACTIVE_STATUSES,
    Booking,
    BookingStatus,
    Payment,
    PaymentStatus,
    RefundStatus,
    User,
    UserRole,
)
from langcenter.utils.dates import format_day, hours_between, lesson_start_at, now_local, refund_percentage
from langcenter.utils.money import percent_of, to_money

log = logging.getLogger("payments")

_ALPHABET = string.ascii_lowercase + string.digits


def new_invoice_number() -> str:
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(9))
    return f"INV-{int(time.time() * 1000)}-{suffix}"


def price_breakdown(subtotal: Decimal, method: PaymentMethod, discount: Decimal = Decimal("0")) -> Dict[str, Decimal]:
    subtotal = to_money(subtotal)
    tax = to_money(subtotal * settings.tax_rate)
    fees = to_money(subtotal * settings.card_fee_rate) if PaymentMethod(method) in CARD_METHODS else to_money(0)
    discount = to_money(discount)
    return {
        "subtotal": subtotal,
        "tax": tax,
        "fees": fees,
        "discount": discount,
        "amount": to_money(subtotal - discount + tax + fees),
    }


class PaymentService:
    """
    Payment intents against the hosted checkout, gateway verification and
    the refund workflow. The gateway client is blocking and runs in a worker
    thread.
    """

    def __init__(
        self,
        session: AsyncSession,
        gateway: PaymentGateway,
        notifier: NotificationSink,
        directory: Optional[TeacherDirectory] = None,
    ):
        self.session = session
        self.gateway = gateway
        self.notifier = notifier
        self.directory = directory or TeacherDirectory(session)

    @asynccontextmanager
    async def _unit_of_work(self):
        try:
            yield
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        await self.notifier.dispatch()

    async def _completed_payment_for(self, booking_id: int, exclude_id: Optional[int] = None) -> Optional[Payment]:
        stmt = select(Payment).where(
            Payment.booking_id == booking_id, Payment.status == PaymentStatus.COMPLETED.value
        )
        if exclude_id is not None:
            stmt = stmt.where(Payment.id != exclude_id)
        return await self.session.scalar(stmt.limit(1))

    # ---------- intents ----------

    async def create_payment_intent(self, actor: Actor, req: CreatePaymentIntentRequest) -> PaymentIntent:
        async with self._unit_of_work():
            booking = await self.session.scalar(
                select(Booking).where(
                    Booking.id == req.booking_id,
                    Booking.student_id == actor.id,
                    Booking.status.in_(ACTIVE_STATUSES),
                )
            )
            if booking is None:
                raise NotFound("Booking not found or not payable", details={"booking_id": req.booking_id})
            if await self._completed_payment_for(booking.id) is not None:
                raise InvalidState("Payment already completed for this booking", details={"booking_id": booking.id})

            amounts = price_breakdown(booking.price, req.payment_method, req.discount)
            if amounts["amount"] <= 0:
                raise InvalidState("Discount exceeds the amount due", details=amounts)

            payment = await self.session.scalar(
                select(Payment)
                .where(Payment.booking_id == booking.id, Payment.status != PaymentStatus.COMPLETED.value)
                .order_by(Payment.id.desc())
                .limit(1)
            )
            if payment is None:
                payment = Payment(
                    booking_id=booking.id,
                    student_id=booking.student_id,
                    teacher_id=booking.teacher_id,
                    invoice_number=new_invoice_number(),
                    currency=settings.currency,
                )
                self.session.add(payment)
            for key, value in amounts.items():
                setattr(payment, key, value)
            payment.payment_method = PaymentMethod(req.payment_method).value
            payment.payment_gateway = self.gateway.name
            payment.status = PaymentStatus.PENDING.value
            payment.failure_reason = None

            student = await self.session.get(User, actor.id)
            payer = PayerInfo(
                email=student.email,
                first_name=student.firstname,
                last_name=student.lastname,
                phone=student.phone,
            )
            checkout = await asyncio.to_thread(
                self.gateway.initialize,
                payment.amount,
                payment.currency,
                payer,
                req.return_url,
                f"{booking.language} lesson on {format_day(booking.date)}",
            )
            payment.tx_ref = checkout.tx_ref
            payment.checkout_url = checkout.checkout_url
            await self.session.flush()

        log.info(
            "payment.intent id=%s booking=%s amount=%s %s tx_ref=%s",
            payment.id, booking.id, payment.amount, payment.currency, payment.tx_ref,
        )
        return PaymentIntent(payment=payment, checkout_url=checkout.checkout_url)

    # ---------- verification ----------

    async def confirm_payment(
        self, payment_id: int, actor: Optional[Actor] = None, *, now: Optional[datetime] = None
    ) -> Payment:
        payment = await self.session.get(Payment, payment_id)
        if payment is None or (actor is not None and not actor.is_admin and payment.student_id != actor.id):
            raise PaymentNotFound("Payment not found", details={"payment_id": payment_id})
        return await self._verify(payment, now=now)

    async def handle_gateway_callback(self, tx_ref: str, *, now: Optional[datetime] = None) -> Payment:
        payment = await self.session.scalar(select(Payment).where(Payment.tx_ref == tx_ref))
        if payment is None:
            raise PaymentNotFound("Payment not found", details={"tx_ref": tx_ref})
        if payment.status == PaymentStatus.COMPLETED.value:
            # gateways retry callbacks
            return payment
        return await self._verify(payment, now=now)

    async def _verify(self, payment: Payment, *, now: Optional[datetime] = None) -> Payment:
        now = now or now_local()
        async with self._unit_of_work():
            if payment.status == PaymentStatus.COMPLETED.value:
                raise InvalidState("Payment already completed", details={"payment_id": payment.id})
            if not payment.tx_ref:
                raise InvalidState("Payment has no checkout to verify", details={"payment_id": payment.id})

            try:
                result = await asyncio.to_thread(self.gateway.verify, payment.tx_ref)
            except GatewayError as e:
                self._fail(payment, f"Verification unavailable: {e.message}")
                return payment

            if result.status == "pending":
                log.info("payment.verify id=%s still pending", payment.id)
                return payment
            if not result.succeeded:
                self._fail(payment, "Payment verification failed")
                return payment

            if await self._completed_payment_for(payment.booking_id, exclude_id=payment.id) is not None:
                raise InvalidState(
                    "Payment already completed for this booking", details={"booking_id": payment.booking_id}
                )
            payment.status = PaymentStatus.COMPLETED.value
            payment.paid_at = now
            payment.transaction_id = result.reference or payment.tx_ref
            payment.failure_reason = None
            try:
                await self.session.flush()
            except IntegrityError:
                raise InvalidState(
                    "Payment already completed for this booking", details={"booking_id": payment.booking_id}
                ) from None

            booking = await self.session.get(Booking, payment.booking_id)
            booking.payment_id = payment.id
            booking.payment_status = "paid"

            student = await self.session.get(User, payment.student_id)
            payload = {
                "amount": payment.amount,
                "currency": payment.currency,
                "day": format_day(booking.date),
                "payment_id": payment.id,
                "booking_id": booking.id,
            }
            self.notifier.enqueue(payment.student_id, "payment_received", payload)
            self.notifier.enqueue(
                payment.teacher_id,
                "payment_received",
                {**payload, "student_name": student.full_name if student else ""},
            )
        log.info("payment.complete id=%s booking=%s amount=%s", payment.id, payment.booking_id, payment.amount)
        return payment

    def _fail(self, payment: Payment, reason: str) -> None:
        payment.status = PaymentStatus.FAILED.value
        payment.failure_reason = reason
        self.notifier.enqueue(
            payment.student_id,
            "payment_failed",
            {"invoice_number": payment.invoice_number, "reason": reason, "payment_id": payment.id},
        )
        log.warning("payment.failed id=%s reason=%s", payment.id, reason)

    # ---------- refunds ----------

    async def request_refund(
        self, actor: Actor, payment_id: int, req: Optional[RefundRequest] = None, *, now: Optional[datetime] = None
    ) -> Payment:
        req = req or RefundRequest()
        now = now or now_local()
        async with self._unit_of_work():
            payment = await self.session.scalar(
                select(Payment).where(
                    Payment.id == payment_id,
                    Payment.student_id == actor.id,
                    Payment.status == PaymentStatus.COMPLETED.value,
                )
            )
            if payment is None:
                raise PaymentNotFound(
                    "Payment not found or not eligible for refund", details={"payment_id": payment_id}
                )
            if payment.refund_status not in (None, RefundStatus.FAILED.value):
                raise InvalidState(
                    "Refund already requested or processed",
                    details={"payment_id": payment.id, "refund_status": payment.refund_status},
                )

            booking = await self.session.get(Booking, payment.booking_id)
            if booking is None or booking.status != BookingStatus.CANCELLED.value or booking.cancelled_at is None:
                raise InvalidState("Refunds are only available for cancelled bookings", details={"payment_id": payment.id})

            hours = hours_between(lesson_start_at(booking.date, booking.start_time), booking.cancelled_at)
            percentage = refund_percentage(hours)
            if percentage == 0:
                raise NoRefundEligible(
                    f"No refund available for cancellations within {settings.refund_partial_hours} hours",
                    details={"hours_before": round(hours, 2)},
                )

            payment.refund_status = RefundStatus.REQUESTED.value
            payment.refund_amount = percent_of(payment.amount, percentage)
            payment.refund_reason = req.reason
            payment.refund_requested_at = now
            booking.refund_status = RefundStatus.REQUESTED.value

            student = await self.session.get(User, actor.id)
            for admin in await self.directory.admins():
                self.notifier.enqueue(
                    admin.id,
                    "refund_request",
                    {
                        "student_name": student.full_name if student else "",
                        "amount": payment.refund_amount,
                        "currency": payment.currency,
                        "payment_id": payment.id,
                        "sender_id": actor.id,
                        "priority": "high",
                    },
                )
        log.info(
            "payment.refund_request id=%s percent=%s amount=%s", payment.id, percentage, payment.refund_amount
        )
        return payment

    async def process_refund(
        self, actor: Actor, payment_id: int, req: ProcessRefundRequest, *, now: Optional[datetime] = None
    ) -> Payment:
        now = now or now_local()
        if not actor.is_admin:
            raise Forbidden("Only admins can process refunds")
        async with self._unit_of_work():
            payment = await self.session.scalar(
                select(Payment).where(
                    Payment.id == payment_id, Payment.refund_status == RefundStatus.REQUESTED.value
                )
            )
            if payment is None:
                raise PaymentNotFound(
                    "Payment not found or refund not requested", details={"payment_id": payment_id}
                )
            booking = await self.session.get(Booking, payment.booking_id)
            payment.admin_notes = req.admin_notes

            if req.approved:
                # GatewayError propagates and the unit of work rolls back
                result = await asyncio.to_thread(
                    self.gateway.refund, payment.tx_ref, payment.refund_amount, payment.refund_reason
                )
                if result.succeeded:
                    payment.refund_status = RefundStatus.COMPLETED.value
                    payment.refund_transaction_id = result.refund_ref
                    payment.refund_processed_at = now
                    payment.refund_processed_by = actor.id
                    payment.status = PaymentStatus.REFUNDED.value
                    payment.refunded_at = now
                    booking.refund_status = "refunded"
                    outcome = "Completed"
                    message = f"Your refund of {payment.refund_amount} {payment.currency} has been processed"
                else:
                    payment.refund_status = RefundStatus.FAILED.value
                    booking.refund_status = RefundStatus.FAILED.value
                    outcome = "Failed"
                    message = f"Your refund could not be processed: {result.message or 'declined by the gateway'}"
            else:
                payment.refund_status = RefundStatus.REJECTED.value
                payment.refund_rejected_at = now
                payment.refund_rejected_by = actor.id
                booking.refund_status = RefundStatus.REJECTED.value
                outcome = "Rejected"
                message = f"Your refund request has been rejected. {req.admin_notes or ''}".strip()

            self.notifier.enqueue(
                payment.student_id,
                "refund_processed",
                {"outcome": outcome, "message": message, "payment_id": payment.id, "sender_id": actor.id},
            )
        log.info("payment.refund_%s id=%s by=%s", outcome.lower(), payment.id, actor.id)
        return payment

    # ---------- reads ----------

    def _owned_by(self, actor: Actor):
        if actor.role == UserRole.STUDENT:
            return Payment.student_id == actor.id
        if actor.role == UserRole.TEACHER:
            return Payment.teacher_id == actor.id
        return None

    async def get_payment(self, actor: Actor, payment_id: int) -> Payment:
        payment = await self.session.get(Payment, payment_id)
        if payment is None:
            raise PaymentNotFound("Payment not found", details={"payment_id": payment_id})
        if not (actor.is_admin or actor.id in (payment.student_id, payment.teacher_id)):
            raise Forbidden("Access denied")
        return payment

    async def list_payments(
        self, actor: Actor, status: Optional[PaymentStatus] = None, limit: int = 10
    ) -> List[Payment]:
        stmt = select(Payment).order_by(Payment.created_at.desc(), Payment.id.desc()).limit(limit)
        owned = self._owned_by(actor)
        if owned is not None:
            stmt = stmt.where(owned)
        if status is not None:
            stmt = stmt.where(Payment.status == PaymentStatus(status).value)
        res = await self.session.execute(stmt)
        return list(res.scalars().all())

    async def get_payment_stats(self, actor: Actor) -> Dict[str, object]:
        owned = self._owned_by(actor)

        def scoped(stmt):
            return stmt.where(owned) if owned is not None else stmt

        counts = {}
        for status in (PaymentStatus.PENDING, PaymentStatus.COMPLETED, PaymentStatus.REFUNDED, PaymentStatus.FAILED):
            counts[status.value] = await self.session.scalar(
                scoped(select(func.count(Payment.id)).where(Payment.status == status.value))
            ) or 0
        # earnings include payments that were later refunded
        collected = (PaymentStatus.COMPLETED.value, PaymentStatus.REFUNDED.value)
        earnings = await self.session.scalar(
            scoped(select(func.sum(Payment.amount)).where(Payment.status.in_(collected)))
        )
        refunds = await self.session.scalar(
            scoped(select(func.sum(Payment.refund_amount)).where(Payment.refund_status == RefundStatus.COMPLETED.value))
        )
        earnings = to_money(earnings or 0)
        refunds = to_money(refunds or 0)
        return {
            **counts,
            "total": sum(counts.values()),
            "total_earnings": earnings,
            "total_refunds": refunds,
            "net_earnings": to_money(earnings - refunds),
        }
