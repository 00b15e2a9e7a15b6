from decimal import Decimal
from io import StringIO
from unittest import mock

from django.contrib import admin
from django.contrib.auth import get_user_model
from django.core.management import CommandError, call_command
from django.db import OperationalError
from django.test import RequestFactory, TestCase, override_settings
from django.utils import timezone
from rest_framework.exceptions import NotFound, PermissionDenied, ValidationError

from .admin import (
    BudgetRequestAdmin,
    ExpenseAdmin,
    InvoiceAdmin,
    InvoicePaymentAdmin,
    ProjectAdmin,
    ProjectPlanItemInline,
)
from .approvals import approve, delete_document, reject, run_atomic
from .calculations import check_dp_applicable, compute_totals, totals_problems
from .documents import (
    create_invoice,
    delete_project,
    replace_plan,
    submit_budget_request,
    submit_expense,
    update_document,
    update_invoice,
)
from .exceptions import RetryLater, StateConflict
from .items import build_item_tree, group_totals, leaf_subtotal, line_subtotal, tree_problems
from .models import ActivityLog, ApprovalStatus, BudgetRequest, Expense, Invoice, InvoicePayment, Project
from .payments import delete_payment, derive_payment_status, record_payment

User = get_user_model()

PHASE_ONE = [
    {
        'description': 'Phase 1',
        'items': [
            {'description': 'Design', 'quantity': '2', 'unit': 'unit', 'unit_price': 500000},
            {'description': 'Build', 'quantity': '1', 'unit': 'unit', 'unit_price': 1000000},
        ],
    },
]
SURVEY = [{'description': 'Survey', 'quantity': '3', 'unit': 'pcs', 'unit_price': 100000}]


class FinanceTestMixin:
    def setUp(self):
        self.password = 'test-pass-123'
        self.finance = User.objects.create_user(username='finance', password=self.password, role=User.Roles.FINANCE)
        self.owner = User.objects.create_user(username='owner', password=self.password, role=User.Roles.OWNER)
        self.spv = User.objects.create_user(username='spv', password=self.password, role=User.Roles.SPV)
        self.project = Project.objects.create(name='Villa Renovation', total_budget=20_000_000, created_by=self.owner)

    def make_invoice(self, **fields):
        fields.setdefault('ppn_percentage', 11)
        fields.setdefault('pph_percentage', 2)
        return create_invoice(self.project, actor=self.finance, labels=PHASE_ONE, items=SURVEY, **fields)

    def approved_invoice(self, **fields):
        invoice = self.make_invoice(**fields)
        return approve(invoice, actor=self.owner)


class ItemTreeTests(TestCase):
    def test_groups_become_labels_followed_by_children(self):
        nodes = build_item_tree(PHASE_ONE, SURVEY)

        self.assertEqual(len(nodes), 4)
        self.assertTrue(nodes[0]['is_label'])
        self.assertEqual(nodes[0]['description'], 'Phase 1')
        self.assertEqual([n['parent_index'] for n in nodes[1:]], [0, 0, None])
        self.assertEqual([n['subtotal'] for n in nodes[1:]], [1_000_000, 1_000_000, 300_000])
        self.assertEqual(leaf_subtotal(nodes), 2_300_000)

    def test_empty_group_is_dropped(self):
        nodes = build_item_tree([{'description': 'Nothing here', 'items': []}], SURVEY)

        self.assertEqual(len(nodes), 1)
        self.assertFalse(nodes[0]['is_label'])

    def test_unnamed_group_contributes_standalone_items(self):
        nodes = build_item_tree([{'description': '  ', 'items': SURVEY}])

        self.assertEqual(len(nodes), 1)
        self.assertIsNone(nodes[0]['parent_index'])

    def test_document_without_items_is_rejected(self):
        with self.assertRaises(ValidationError) as ctx:
            build_item_tree([{'description': 'Empty', 'items': []}], [])
        self.assertIn('items', ctx.exception.detail)

    def test_incomplete_leaves_are_skipped(self):
        placeholder = [{'description': 'Phase 2', 'items': [
            {'description': '', 'quantity': '1', 'unit': 'pcs', 'unit_price': 0},
        ]}]

        nodes = build_item_tree(placeholder, SURVEY)

        self.assertEqual(len(nodes), 1)
        self.assertFalse(nodes[0]['is_label'])
        self.assertEqual(nodes[0]['description'], 'Survey')

    def test_group_keeps_only_its_valid_children(self):
        mixed = [{'description': 'Phase 1', 'items': [
            {'description': 'Design', 'quantity': '2', 'unit': 'unit', 'unit_price': 500000},
            {'description': 'Build', 'quantity': '0', 'unit': 'unit', 'unit_price': 1000000},
            {'description': 'Paint', 'quantity': '1', 'unit': '', 'unit_price': 250000},
            {'description': 'Tiles', 'quantity': '1', 'unit': 'm2', 'unit_price': '10.5'},
            {'description': 'Grout', 'quantity': None, 'unit': 'bag', 'unit_price': None},
        ]}]

        nodes = build_item_tree(mixed)

        self.assertEqual([n['description'] for n in nodes], ['Phase 1', 'Design'])
        self.assertEqual(nodes[1]['parent_index'], 0)
        self.assertEqual(leaf_subtotal(nodes), 1_000_000)

    def test_only_incomplete_leaves_is_rejected(self):
        bad = [{'description': 'Survey', 'quantity': '0', 'unit': 'pcs', 'unit_price': 100000}]
        with self.assertRaises(ValidationError) as ctx:
            build_item_tree([{'description': 'Phase 2', 'items': bad}], bad)
        self.assertIn('items', ctx.exception.detail)

    def test_line_subtotal_rounds_half_up(self):
        self.assertEqual(line_subtotal(Decimal('1.5'), 3), 5)
        self.assertEqual(line_subtotal(Decimal('0.25'), 2), 1)


class CalculationTests(TestCase):
    def test_taxes_and_total(self):
        totals = compute_totals(2_300_000, 11, 2)

        self.assertEqual(totals['ppn_amount'], 253_000)
        self.assertEqual(totals['pph_amount'], 46_000)
        self.assertEqual(totals['amount'], 2_507_000)
        self.assertIsNone(totals['dp_amount'])
        self.assertIsNone(totals['balance_due'])

    def test_down_payment_split(self):
        totals = compute_totals(2_300_000, 11, 2, dp_percentage=50)

        self.assertEqual(totals['dp_amount'], 1_253_500)
        self.assertEqual(totals['balance_due'], 1_253_500)

    def test_zero_down_payment_is_not_absent(self):
        totals = compute_totals(1_000, dp_percentage=0)

        self.assertEqual(totals['dp_amount'], 0)
        self.assertEqual(totals['balance_due'], 1_000)

    def test_percentage_out_of_range(self):
        with self.assertRaises(ValidationError):
            compute_totals(1_000, ppn_percentage=101)
        with self.assertRaises(ValidationError):
            compute_totals(1_000, pph_percentage=-1)

    def test_down_payment_only_for_dp_and_final_invoices(self):
        check_dp_applicable(Invoice.InvoiceType.FINAL_PAYMENT, 30)
        with self.assertRaises(ValidationError):
            check_dp_applicable(Invoice.InvoiceType.TERMIN_1, 30)


class InvoiceServiceTests(FinanceTestMixin, TestCase):
    def test_create_stores_tree_and_totals(self):
        invoice = self.make_invoice(dp_percentage=50)

        self.assertEqual(invoice.status, ApprovalStatus.PENDING)
        self.assertEqual(invoice.subtotal, 2_300_000)
        self.assertEqual(invoice.amount, 2_507_000)
        self.assertEqual(invoice.dp_amount, 1_253_500)
        self.assertEqual(invoice.balance_due, 1_253_500)
        self.assertEqual(invoice.invoice_number, f"INV/{self.project.pk}/1")

        items = list(invoice.items.all())
        self.assertEqual(len(items), 4)
        self.assertEqual(tree_problems(items), [])
        label = items[0]
        self.assertEqual(group_totals(items), {label.pk: 2_000_000})
        self.assertEqual(label.effective_total, 2_000_000)
        self.assertEqual(totals_problems(invoice), [])

    def test_invoice_numbers_increase_per_project(self):
        self.make_invoice()
        second = self.make_invoice()

        self.assertEqual(second.invoice_number, f"INV/{self.project.pk}/2")

    @override_settings(INVOICE_PREFIX='BILL')
    def test_invoice_prefix_from_settings(self):
        invoice = self.make_invoice()

        self.assertTrue(invoice.invoice_number.startswith('BILL/'))

    def test_invoice_numbering_locks_the_project(self):
        with mock.patch.object(
            Project.objects, 'select_for_update', wraps=Project.objects.select_for_update
        ) as locked:
            self.make_invoice()
        locked.assert_called_once_with()

    def test_duplicate_invoice_number_is_rejected(self):
        first = self.make_invoice()

        with self.assertRaises(ValidationError) as ctx:
            self.make_invoice(invoice_number=first.invoice_number)
        self.assertIn('invoice_number', ctx.exception.detail)
        self.assertEqual(Invoice.objects.count(), 1)

    def test_only_finance_creates_invoices(self):
        with self.assertRaises(PermissionDenied):
            create_invoice(self.project, actor=self.spv, items=SURVEY)

    def test_down_payment_rejected_for_installments(self):
        with self.assertRaises(ValidationError):
            self.make_invoice(invoice_type=Invoice.InvoiceType.TERMIN_2, dp_percentage=20)
        self.assertFalse(Invoice.objects.exists())

    def test_invoice_can_copy_project_plan(self):
        replace_plan(self.project, actor=self.owner, labels=PHASE_ONE, items=SURVEY)

        invoice = create_invoice(self.project, actor=self.finance, use_project_plan=True)

        self.assertEqual(invoice.subtotal, 2_300_000)
        self.assertEqual(invoice.items.filter(is_label=True).count(), 1)
        self.assertEqual(self.project.plan_total, 2_300_000)

    def test_plan_editing_is_limited(self):
        with self.assertRaises(PermissionDenied):
            replace_plan(self.project, actor=self.spv, items=SURVEY)

    def test_originator_edit_replaces_items(self):
        invoice = self.make_invoice()

        updated = update_invoice(invoice, actor=self.finance, items=SURVEY, ppn_percentage=0, pph_percentage=0)

        self.assertEqual(updated.items.count(), 1)
        self.assertEqual(updated.subtotal, 300_000)
        self.assertEqual(updated.amount, 300_000)

    def test_tax_edit_keeps_items(self):
        invoice = self.make_invoice()

        updated = update_invoice(invoice, actor=self.finance, ppn_percentage=0)

        self.assertEqual(updated.items.count(), 4)
        self.assertEqual(updated.amount, 2_300_000 - 46_000)

    def test_edit_rejected_for_non_originator_or_decided_invoice(self):
        other = User.objects.create_user(username='finance2', password=self.password, role=User.Roles.FINANCE)
        invoice = self.make_invoice()
        with self.assertRaises(StateConflict):
            update_invoice(invoice, actor=other, notes='changed')

        approve(invoice, actor=self.owner)
        with self.assertRaises(StateConflict):
            update_invoice(invoice, actor=self.finance, items=SURVEY)


class ApprovalTests(FinanceTestMixin, TestCase):
    def test_budget_request_approval_grows_budget_once(self):
        request = submit_budget_request(
            self.project, actor=self.spv, amount=5_000_000, reason='Extra works', proof_url='proofs/ba-1.pdf'
        )

        approve(request, actor=self.finance, proof='proofs/transfer-1.pdf')
        self.project.refresh_from_db()
        self.assertEqual(self.project.total_budget, 25_000_000)

        with self.assertRaises(StateConflict):
            approve(request, actor=self.owner, proof='proofs/transfer-1.pdf')
        self.project.refresh_from_db()
        self.assertEqual(self.project.total_budget, 25_000_000)

    def test_budget_request_requires_proof_to_submit(self):
        with self.assertRaises(ValidationError):
            submit_budget_request(self.project, actor=self.spv, amount=1_000, reason='More cement', proof_url='')

    def test_expense_approval_requires_proof(self):
        expense = submit_expense(self.project, actor=self.spv, description='Cement', amount=2_000_000)

        with self.assertRaises(ValidationError) as ctx:
            approve(expense, actor=self.finance)
        self.assertIn('proof_url', ctx.exception.detail)
        expense.refresh_from_db()
        self.assertEqual(expense.status, ApprovalStatus.PENDING)

        approve(expense, actor=self.finance, proof='proofs/receipt.jpg')
        self.project.refresh_from_db()
        self.assertEqual(self.project.spent_amount, 2_000_000)
        self.assertEqual(expense.decided_by, self.finance)
        self.assertEqual(expense.decision_proof_url, 'proofs/receipt.jpg')

        with self.assertRaises(StateConflict):
            approve(expense, actor=self.finance, proof='proofs/receipt.jpg')
        self.project.refresh_from_db()
        self.assertEqual(self.project.spent_amount, 2_000_000)

    def test_stale_copy_cannot_approve_twice(self):
        expense = submit_expense(self.project, actor=self.spv, description='Sand', amount=700_000)
        first = Expense.objects.get(pk=expense.pk)
        second = Expense.objects.get(pk=expense.pk)

        approve(first, actor=self.finance, proof='p1')
        with self.assertRaises(StateConflict):
            approve(second, actor=self.owner, proof='p2')

        self.project.refresh_from_db()
        self.assertEqual(self.project.spent_amount, 700_000)

    def test_approval_uses_the_stored_amount(self):
        expense = submit_expense(self.project, actor=self.spv, description='Steel', amount=100)
        stale = Expense.objects.get(pk=expense.pk)
        update_document(expense, actor=self.spv, amount=1_000_000)

        approve(stale, actor=self.finance, proof='proofs/steel.jpg')

        self.project.refresh_from_db()
        self.assertEqual(stale.amount, 1_000_000)
        self.assertEqual(stale.status, ApprovalStatus.APPROVED)
        self.assertEqual(self.project.spent_amount, 1_000_000)

    def test_budget_request_approval_uses_the_stored_amount(self):
        request = submit_budget_request(
            self.project, actor=self.spv, amount=1_000, reason='Scaffolding', proof_url='proofs/ba-2.pdf'
        )
        stale = type(request).objects.get(pk=request.pk)
        update_document(request, actor=self.spv, amount=3_000_000)

        approve(stale, actor=self.finance, proof='proofs/transfer-2.pdf')

        self.project.refresh_from_db()
        self.assertEqual(self.project.total_budget, 23_000_000)

    def test_approving_many_expenses_adds_their_sum(self):
        amounts = [150_000, 275_000, 1_000_000]
        for amount in amounts:
            expense = submit_expense(self.project, actor=self.spv, description='Material', amount=amount)
            approve(expense, actor=self.finance, proof='proof')
        rejected = submit_expense(self.project, actor=self.spv, description='Snacks', amount=50_000)
        reject(rejected, actor=self.finance, notes='Not a project cost', proof='proof')

        self.project.refresh_from_db()
        self.assertEqual(self.project.spent_amount, sum(amounts))
        self.assertEqual(self.project.remaining_budget, 20_000_000 - sum(amounts))

    def test_reject_needs_notes_and_proof(self):
        expense = submit_expense(self.project, actor=self.spv, description='Paint', amount=90_000)

        with self.assertRaises(ValidationError) as ctx:
            reject(expense, actor=self.finance, notes='no', proof='')
        self.assertIn('notes', ctx.exception.detail)
        self.assertIn('proof_url', ctx.exception.detail)

        reject(expense, actor=self.finance, notes='Duplicate claim', proof='proof')
        self.assertEqual(expense.status, ApprovalStatus.REJECTED)
        self.assertEqual(expense.decision_notes, 'Duplicate claim')
        with self.assertRaises(StateConflict):
            approve(expense, actor=self.finance, proof='proof')

    def test_invoice_approval_is_owner_only_and_needs_no_proof(self):
        invoice = self.make_invoice()

        with self.assertRaises(PermissionDenied):
            approve(invoice, actor=self.finance)

        approve(invoice, actor=self.owner)
        self.assertEqual(invoice.status, ApprovalStatus.APPROVED)
        self.project.refresh_from_db()
        self.assertEqual(self.project.total_budget, 20_000_000)
        self.assertEqual(self.project.spent_amount, 0)

    def test_invoice_rejection_keeps_notes(self):
        invoice = self.make_invoice()

        with self.assertRaises(ValidationError):
            reject(invoice, actor=self.owner, notes='bad')
        reject(invoice, actor=self.owner, notes='Wrong recipient')

        self.assertEqual(invoice.reject_notes, 'Wrong recipient')

    def test_supervisor_cannot_approve(self):
        expense = submit_expense(self.project, actor=self.spv, description='Nails', amount=10_000)

        with self.assertRaises(PermissionDenied):
            approve(expense, actor=self.spv, proof='proof')

    def test_delete_rules(self):
        mine = submit_expense(self.project, actor=self.spv, description='Tiles', amount=10_000)
        with self.assertRaises(StateConflict):
            delete_document(mine, actor=self.finance)
        delete_document(mine, actor=self.spv)
        self.assertFalse(Expense.objects.filter(pk=mine.pk).exists())

        other = submit_expense(self.project, actor=self.spv, description='Grout', amount=10_000)
        delete_document(other, actor=self.owner)
        self.assertFalse(Expense.objects.filter(pk=other.pk).exists())

        decided = submit_expense(self.project, actor=self.spv, description='Glue', amount=10_000)
        approve(decided, actor=self.finance, proof='proof')
        with self.assertRaises(StateConflict):
            delete_document(decided, actor=self.spv)

    def test_pending_document_edit(self):
        request = submit_budget_request(self.project, actor=self.spv, amount=1_000, reason='Tools', proof_url='p')

        updated = update_document(request, actor=self.spv, amount=2_000)
        self.assertEqual(updated.amount, 2_000)

        with self.assertRaises(ValidationError):
            update_document(request, actor=self.spv, project=self.project)

    def test_events_are_logged_after_commit(self):
        with self.captureOnCommitCallbacks(execute=True):
            expense = submit_expense(self.project, actor=self.spv, description='Rebar', amount=400_000)
        with self.captureOnCommitCallbacks(execute=True):
            approve(expense, actor=self.finance, proof='proof')

        actions = list(ActivityLog.objects.filter(entity_id=expense.pk).values_list('action', flat=True))
        self.assertIn('expense.created', actions)
        self.assertIn('expense.approved', actions)
        entry = ActivityLog.objects.get(action='expense.approved')
        self.assertEqual(entry.actor, self.finance)
        self.assertEqual(entry.entity_type, 'expense')


class RetryTests(TestCase):
    def test_serialization_failures_are_retried(self):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise OperationalError('database is locked')
            return 'done'

        self.assertEqual(run_atomic(flaky, attempts=3), 'done')
        self.assertEqual(len(calls), 3)

    def test_exhausted_retries_ask_caller_to_retry(self):
        def always_locked():
            raise OperationalError('database is locked')

        with self.assertRaises(RetryLater):
            run_atomic(always_locked, attempts=2)

    def test_other_operational_errors_propagate(self):
        def broken():
            raise OperationalError('no such table: finance_expense')

        with self.assertRaises(OperationalError):
            run_atomic(broken, attempts=3)


class PaymentLedgerTests(FinanceTestMixin, TestCase):
    def test_payments_settle_invoice(self):
        invoice = self.approved_invoice()

        record_payment(invoice, amount=1_000_000, payment_date=timezone.localdate(), actor=self.finance)
        self.assertEqual(invoice.paid_amount, 1_000_000)
        self.assertEqual(invoice.payment_status, Invoice.PaymentStatus.PARTIAL_PAID)

        record_payment(invoice, amount=1_507_000, payment_method=InvoicePayment.Method.CASH, actor=self.finance)
        invoice.refresh_from_db()
        self.assertEqual(invoice.paid_amount, 2_507_000)
        self.assertEqual(invoice.payment_status, Invoice.PaymentStatus.PAID)

        with self.assertRaises(ValidationError) as ctx:
            record_payment(invoice, amount=1, actor=self.finance)
        self.assertIn('exceeds remaining balance', str(ctx.exception.detail['amount']))
        self.assertIn('remaining = 0', str(ctx.exception.detail['amount']))
        self.assertEqual(invoice.payments.count(), 2)

    def test_payment_requires_approved_invoice(self):
        invoice = self.make_invoice()

        with self.assertRaises(StateConflict):
            record_payment(invoice, amount=1_000, actor=self.finance)

    def test_payment_amount_must_be_positive(self):
        invoice = self.approved_invoice()

        with self.assertRaises(ValidationError):
            record_payment(invoice, amount=0, actor=self.finance)
        with self.assertRaises(ValidationError):
            record_payment(invoice, amount='12.5', actor=self.finance)
        with self.assertRaises(ValidationError):
            record_payment(invoice, amount=10, payment_method='BARTER', actor=self.finance)

    def test_supervisor_cannot_record_payments(self):
        invoice = self.approved_invoice()

        with self.assertRaises(PermissionDenied):
            record_payment(invoice, amount=1_000, actor=self.spv)

    def test_deleting_payment_rederives_status(self):
        invoice = self.approved_invoice()
        first = record_payment(invoice, amount=2_000_000, actor=self.finance)
        record_payment(invoice, amount=507_000, actor=self.finance)
        self.assertEqual(invoice.payment_status, Invoice.PaymentStatus.PAID)

        delete_payment(invoice, first.pk, actor=self.finance)
        invoice.refresh_from_db()
        self.assertEqual(invoice.paid_amount, 507_000)
        self.assertEqual(invoice.payment_status, Invoice.PaymentStatus.PARTIAL_PAID)

    def test_deleting_unknown_or_foreign_payment(self):
        invoice = self.approved_invoice()
        other = self.approved_invoice()
        payment = record_payment(other, amount=1_000, actor=self.finance)

        with self.assertRaises(NotFound):
            delete_payment(invoice, payment.pk, actor=self.finance)
        with self.assertRaises(NotFound):
            delete_payment(invoice, 999_999, actor=self.finance)

    def test_payments_never_touch_project_budget(self):
        invoice = self.approved_invoice()
        record_payment(invoice, amount=1_000_000, actor=self.finance)

        self.project.refresh_from_db()
        self.assertEqual(self.project.total_budget, 20_000_000)
        self.assertEqual(self.project.spent_amount, 0)

    def test_payment_status_derivation(self):
        self.assertEqual(derive_payment_status(0, 100), Invoice.PaymentStatus.UNPAID)
        self.assertEqual(derive_payment_status(1, 100), Invoice.PaymentStatus.PARTIAL_PAID)
        self.assertEqual(derive_payment_status(100, 100), Invoice.PaymentStatus.PAID)


class CheckLedgerCommandTests(FinanceTestMixin, TestCase):
    def test_clean_ledger_passes(self):
        invoice = self.approved_invoice(dp_percentage=30)
        record_payment(invoice, amount=500_000, actor=self.finance)
        out = StringIO()

        call_command('check_ledger', stdout=out)

        self.assertIn('Ledger check passed.', out.getvalue())

    def test_stale_payment_cache_is_reported_and_fixed(self):
        invoice = self.approved_invoice()
        record_payment(invoice, amount=500_000, actor=self.finance)
        Invoice.objects.filter(pk=invoice.pk).update(paid_amount=0, payment_status=Invoice.PaymentStatus.UNPAID)

        with self.assertRaises(CommandError):
            call_command('check_ledger', stdout=StringIO())

        out = StringIO()
        call_command('check_ledger', '--fix-payments', stdout=out)
        invoice.refresh_from_db()
        self.assertEqual(invoice.paid_amount, 500_000)
        self.assertEqual(invoice.payment_status, Invoice.PaymentStatus.PARTIAL_PAID)
        self.assertIn('Ledger check passed.', out.getvalue())

    def test_broken_totals_are_reported(self):
        invoice = self.make_invoice()
        Invoice.objects.filter(pk=invoice.pk).update(amount=1)

        with self.assertRaises(CommandError):
            call_command('check_ledger', stdout=StringIO())


class ProjectDeletionTests(FinanceTestMixin, TestCase):
    def test_project_with_only_pending_documents_is_removed(self):
        submit_expense(self.project, actor=self.spv, description='Cement', amount=1_000)

        with self.captureOnCommitCallbacks(execute=True):
            delete_project(self.project, actor=self.owner)

        self.assertFalse(Project.objects.filter(pk=self.project.pk).exists())
        self.assertFalse(Expense.objects.exists())
        self.assertTrue(ActivityLog.objects.filter(action='project.deleted').exists())

    def test_project_with_decided_documents_is_kept(self):
        expense = submit_expense(self.project, actor=self.spv, description='Cement', amount=1_000)
        reject(expense, actor=self.finance, notes='Wrong project', proof='proofs/memo.pdf')

        with self.assertRaises(StateConflict):
            delete_project(self.project, actor=self.owner)

        self.assertTrue(Project.objects.filter(pk=self.project.pk).exists())
        self.assertTrue(Expense.objects.filter(pk=expense.pk).exists())


class AdminTests(FinanceTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.request = RequestFactory().get('/admin/')
        self.request.user = User.objects.create_superuser(
            username='root', email='root@example.com', password=self.password
        )

    def test_decided_expense_is_read_only(self):
        model_admin = ExpenseAdmin(Expense, admin.site)
        expense = submit_expense(self.project, actor=self.spv, description='Cement', amount=1_000)

        pending_fields = model_admin.get_readonly_fields(self.request, expense)
        self.assertIn('project', pending_fields)
        self.assertIn('status', pending_fields)
        self.assertNotIn('amount', pending_fields)
        self.assertTrue(model_admin.has_delete_permission(self.request, expense))

        approve(expense, actor=self.finance, proof='proofs/receipt.jpg')

        decided_fields = model_admin.get_readonly_fields(self.request, expense)
        self.assertIn('amount', decided_fields)
        self.assertIn('description', decided_fields)
        self.assertFalse(model_admin.has_delete_permission(self.request, expense))
        self.assertFalse(model_admin.has_add_permission(self.request))

    def test_budget_request_amount_locks_after_approval(self):
        model_admin = BudgetRequestAdmin(BudgetRequest, admin.site)
        request = submit_budget_request(
            self.project, actor=self.spv, amount=5_000, reason='Extra works', proof_url='proofs/ba-3.pdf'
        )
        approve(request, actor=self.finance, proof='proofs/transfer-3.pdf')

        readonly = model_admin.get_readonly_fields(self.request, request)
        self.assertIn('amount', readonly)
        self.assertIn('proof_url', readonly)

    def test_invoice_rates_are_engine_owned(self):
        model_admin = InvoiceAdmin(Invoice, admin.site)
        invoice = self.make_invoice()

        readonly = model_admin.get_readonly_fields(self.request, invoice)
        for field in ('ppn_percentage', 'pph_percentage', 'dp_percentage', 'invoice_type', 'amount'):
            self.assertIn(field, readonly)
        self.assertNotIn('recipient_name', readonly)

    def test_project_budget_is_locked_after_creation(self):
        model_admin = ProjectAdmin(Project, admin.site)

        self.assertNotIn('total_budget', model_admin.get_readonly_fields(self.request))
        self.assertIn('total_budget', model_admin.get_readonly_fields(self.request, self.project))
        self.assertTrue(model_admin.has_delete_permission(self.request, self.project))
        self.assertNotIn('delete_selected', model_admin.get_actions(self.request))

        approve(self.make_invoice(), actor=self.owner)
        self.assertFalse(model_admin.has_delete_permission(self.request, self.project))

    def test_payments_and_plan_items_cannot_be_edited_directly(self):
        payment_admin = InvoicePaymentAdmin(InvoicePayment, admin.site)
        plan_inline = ProjectPlanItemInline(Project, admin.site)

        self.assertFalse(payment_admin.has_delete_permission(self.request))
        self.assertFalse(plan_inline.has_add_permission(self.request, self.project))
        self.assertIn('unit_price', plan_inline.get_readonly_fields(self.request, self.project))
