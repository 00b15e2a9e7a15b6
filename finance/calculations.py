from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

from rest_framework.exceptions import ValidationError

from .models import Invoice

HUNDRED = Decimal('100')


def round_currency(value: Decimal) -> int:
    return int(value.quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def clean_percentage(value, field: str, *, required: bool = True) -> Optional[Decimal]:
    if value is None or value == '':
        if required:
            return Decimal('0')
        return None
    try:
        pct = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationError({field: 'Enter a valid percentage.'}) from exc
    if not pct.is_finite() or pct < 0 or pct > HUNDRED:
        raise ValidationError({field: 'Percentage must be between 0 and 100.'})
    return pct


def compute_totals(subtotal: int, ppn_percentage=0, pph_percentage=0, dp_percentage=None) -> dict:
    """Derive tax add-on, withholding, grand total and the optional DP split.

    ``dp_amount`` and ``balance_due`` stay ``None`` when no DP percentage is
    given; a 0% DP still produces a (zero) split.
    """
    if subtotal < 0:
        raise ValidationError({'subtotal': 'Subtotal cannot be negative.'})
    ppn_pct = clean_percentage(ppn_percentage, 'ppn_percentage')
    pph_pct = clean_percentage(pph_percentage, 'pph_percentage')
    dp_pct = clean_percentage(dp_percentage, 'dp_percentage', required=False)

    base = Decimal(int(subtotal))
    ppn_amount = round_currency(base * ppn_pct / HUNDRED)
    pph_amount = round_currency(base * pph_pct / HUNDRED)
    if pph_amount > subtotal + ppn_amount:
        raise ValidationError({'pph_percentage': 'Withholding cannot exceed the taxed subtotal.'})
    amount = subtotal + ppn_amount - pph_amount

    totals = {
        'subtotal': subtotal,
        'ppn_amount': ppn_amount,
        'pph_amount': pph_amount,
        'amount': amount,
        'dp_amount': None,
        'balance_due': None,
    }
    if dp_pct is not None:
        dp_amount = round_currency(Decimal(amount) * dp_pct / HUNDRED)
        totals['dp_amount'] = dp_amount
        totals['balance_due'] = amount - dp_amount
    return totals


def check_dp_applicable(invoice_type: str, dp_percentage) -> None:
    if dp_percentage in (None, ''):
        return
    if invoice_type not in Invoice.DP_TYPES:
        raise ValidationError(
            {'dp_percentage': 'A DP percentage only applies to down-payment and final-payment invoices.'}
        )


def apply_totals(invoice: Invoice, totals: dict) -> Invoice:
    for field in ('subtotal', 'ppn_amount', 'pph_amount', 'amount', 'dp_amount', 'balance_due'):
        setattr(invoice, field, totals[field])
    return invoice


def totals_problems(invoice: Invoice) -> list[str]:
    """Compare an invoice's stored figures against the arithmetic rules."""
    problems = []
    if invoice.amount != invoice.subtotal + invoice.ppn_amount - invoice.pph_amount:
        problems.append(f"invoice {invoice.pk}: amount does not equal subtotal + PPN - PPh")
    if invoice.dp_percentage is None:
        if invoice.dp_amount is not None or invoice.balance_due is not None:
            problems.append(f"invoice {invoice.pk}: DP split stored without a DP percentage")
    elif invoice.dp_amount is None or invoice.balance_due is None:
        problems.append(f"invoice {invoice.pk}: DP percentage set but split missing")
    elif invoice.dp_amount + invoice.balance_due != invoice.amount:
        problems.append(f"invoice {invoice.pk}: DP + balance due does not equal amount")
    return problems
