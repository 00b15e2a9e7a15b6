"""Payment ledger for approved invoices.

``paid_amount`` and ``payment_status`` are always re-derived from the stored
payment rows inside the same transaction that adds or removes a row, with the
invoice row locked so concurrent recordings cannot overpay it.
"""

from __future__ import annotations

import datetime
import logging
from decimal import Decimal, InvalidOperation

from django.db import transaction
from django.db.models import Sum
from django.utils import timezone
from rest_framework.exceptions import NotFound, ValidationError

from .events import emit
from .exceptions import StateConflict
from .models import ApprovalStatus, Invoice, InvoicePayment
from .permissions import ensure_can_perform

logger = logging.getLogger(__name__)


def derive_payment_status(paid_amount: int, amount: int) -> str:
    if paid_amount <= 0:
        return Invoice.PaymentStatus.UNPAID
    if paid_amount >= amount:
        return Invoice.PaymentStatus.PAID
    return Invoice.PaymentStatus.PARTIAL_PAID


def paid_total(invoice: Invoice) -> int:
    return invoice.payments.aggregate(total=Sum('amount'))['total'] or 0


def refresh_paid_amount(invoice: Invoice) -> Invoice:
    """Recompute the cached payment figures from the ledger rows."""
    paid = paid_total(invoice)
    payment_status = derive_payment_status(paid, invoice.amount)
    Invoice.objects.filter(pk=invoice.pk).update(
        paid_amount=paid, payment_status=payment_status, updated_at=timezone.now()
    )
    invoice.paid_amount = paid
    invoice.payment_status = payment_status
    return invoice


def _clean_amount(amount) -> int:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationError({'amount': 'Enter a whole amount.'}) from exc
    if not value.is_finite() or value != value.to_integral_value():
        raise ValidationError({'amount': 'Enter a whole amount.'})
    if value <= 0:
        raise ValidationError({'amount': 'Payment amount must be greater than zero.'})
    return int(value)


def record_payment(
    invoice: Invoice,
    *,
    amount,
    payment_date: datetime.date | None = None,
    payment_method: str = InvoicePayment.Method.TRANSFER,
    proof_url: str = '',
    notes: str = '',
    actor=None,
) -> InvoicePayment:
    ensure_can_perform(actor, 'invoice', 'record_payment')
    amount = _clean_amount(amount)
    if payment_method not in InvoicePayment.Method.values:
        raise ValidationError({'payment_method': 'Select a valid payment method.'})

    with transaction.atomic():
        locked = Invoice.objects.select_for_update().get(pk=invoice.pk)
        if locked.status != ApprovalStatus.APPROVED:
            raise StateConflict('Payments can only be recorded on approved invoices.')
        remaining = locked.amount - paid_total(locked)
        if amount > remaining:
            raise ValidationError(
                {'amount': f"Payment exceeds remaining balance (remaining = {max(remaining, 0)})."}
            )
        payment = InvoicePayment.objects.create(
            invoice=locked,
            amount=amount,
            payment_date=payment_date or timezone.localdate(),
            payment_method=payment_method,
            proof_url=(proof_url or '').strip(),
            notes=notes or '',
            recorded_by=actor if getattr(actor, 'is_authenticated', False) else None,
        )
        refresh_paid_amount(locked)
        emit('invoice.payment_recorded', locked, actor=actor, amount=amount)

    invoice.paid_amount = locked.paid_amount
    invoice.payment_status = locked.payment_status
    logger.info(
        "Recorded payment %s of %s on invoice %s (%s)", payment.pk, amount, invoice.pk, invoice.payment_status
    )
    return payment


def delete_payment(invoice: Invoice, payment_id, *, actor=None) -> Invoice:
    ensure_can_perform(actor, 'invoice', 'record_payment')
    with transaction.atomic():
        locked = Invoice.objects.select_for_update().get(pk=invoice.pk)
        payment = locked.payments.filter(pk=payment_id).first()
        if payment is None:
            raise NotFound('Payment not found on this invoice.')
        amount = payment.amount
        payment.delete()
        refresh_paid_amount(locked)
        emit('invoice.payment_deleted', locked, actor=actor, amount=amount)

    invoice.paid_amount = locked.paid_amount
    invoice.payment_status = locked.payment_status
    logger.info("Deleted payment %s of %s from invoice %s", payment_id, amount, invoice.pk)
    return invoice
