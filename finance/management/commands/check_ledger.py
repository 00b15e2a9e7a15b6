from django.core.management.base import BaseCommand, CommandError
from django.db import transaction

from finance.calculations import totals_problems
from finance.items import leaf_subtotal, tree_problems
from finance.models import Invoice, InvoicePayment, Project
from finance.payments import derive_payment_status, paid_total, refresh_paid_amount


class Command(BaseCommand):
    help = "Verify item trees, invoice arithmetic and payment ledgers; optionally re-derive payment figures."

    def add_arguments(self, parser):
        parser.add_argument(
            '--fix-payments',
            action='store_true',
            help='Recompute cached paid_amount/payment_status from the payment rows.',
        )

    def handle(self, *args, **options):
        fix_payments = options['fix_payments']
        problems = []
        fixed = 0

        for project in Project.objects.prefetch_related('plan_items'):
            problems.extend(f"project {project.pk} plan: {p}" for p in tree_problems(project.plan_items.all()))

        invoices = Invoice.objects.prefetch_related('items')
        for invoice in invoices.iterator(chunk_size=200):
            items = list(invoice.items.all())
            problems.extend(f"invoice {invoice.pk}: {p}" for p in tree_problems(items))
            if leaf_subtotal(items) != invoice.subtotal:
                problems.append(f"invoice {invoice.pk}: subtotal does not match its items")
            problems.extend(totals_problems(invoice))

            paid = paid_total(invoice)
            ledger_ok = (
                invoice.paid_amount == paid
                and invoice.payment_status == derive_payment_status(paid, invoice.amount)
            )
            if paid > invoice.amount:
                problems.append(f"invoice {invoice.pk}: payments exceed the invoice amount")
            if invoice.status != Invoice.Status.APPROVED and paid:
                problems.append(f"invoice {invoice.pk}: payments recorded on a {invoice.status.lower()} invoice")
            if ledger_ok:
                continue
            if fix_payments:
                with transaction.atomic():
                    locked = Invoice.objects.select_for_update().get(pk=invoice.pk)
                    refresh_paid_amount(locked)
                fixed += 1
            else:
                problems.append(f"invoice {invoice.pk}: cached payment figures are stale")

        zero_payments = InvoicePayment.objects.filter(amount=0).count()
        if zero_payments:
            problems.append(f"{zero_payments} payment(s) with a zero amount")

        for problem in problems:
            self.stdout.write(self.style.ERROR(problem))
        if fixed:
            self.stdout.write(self.style.SUCCESS(f"Re-derived payment figures on {fixed} invoice(s)."))
        if problems:
            raise CommandError(f"Ledger check found {len(problems)} problem(s).")
        self.stdout.write(self.style.SUCCESS("Ledger check passed."))
