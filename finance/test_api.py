import json

from django.contrib.auth import get_user_model
from django.test import TestCase
from django.urls import reverse

from .approvals import approve
from .documents import create_invoice, submit_expense
from .models import ActivityLog, Expense, Invoice, Project

User = get_user_model()

INVOICE_PAYLOAD = {
    'invoice_type': 'DP',
    'recipient_name': 'PT Sumber Makmur',
    'ppn_percentage': 11,
    'pph_percentage': 2,
    'dp_percentage': 50,
    'labels': [
        {
            'description': 'Phase 1',
            'items': [
                {'description': 'Design', 'quantity': '2', 'unit': 'unit', 'unit_price': 500000},
                {'description': 'Build', 'quantity': '1', 'unit': 'unit', 'unit_price': 1000000},
            ],
        },
    ],
    'items': [{'description': 'Survey', 'quantity': '3', 'unit': 'pcs', 'unit_price': 100000}],
}


class ApiTestCase(TestCase):
    def setUp(self):
        self.password = 'test-pass-123'
        self.finance = User.objects.create_user(username='finance', password=self.password, role=User.Roles.FINANCE)
        self.owner = User.objects.create_user(username='owner', password=self.password, role=User.Roles.OWNER)
        self.spv = User.objects.create_user(username='spv', password=self.password, role=User.Roles.SPV)
        self.project = Project.objects.create(name='Warehouse', total_budget=20_000_000, created_by=self.owner)

    def login(self, user):
        self.client.logout()
        self.client.login(username=user.username, password=self.password)

    def post(self, url, data=None):
        return self.client.post(url, data=json.dumps(data or {}), content_type='application/json')

    def put(self, url, data=None):
        return self.client.put(url, data=json.dumps(data or {}), content_type='application/json')

    def patch(self, url, data=None):
        return self.client.patch(url, data=json.dumps(data or {}), content_type='application/json')

    def create_invoice(self):
        return create_invoice(
            self.project,
            actor=self.finance,
            items=INVOICE_PAYLOAD['items'],
            ppn_percentage=11,
            pph_percentage=2,
        )


class InvoiceApiTests(ApiTestCase):
    def test_finance_creates_invoice_with_item_tree(self):
        self.login(self.finance)

        resp = self.post(reverse('invoice-list'), {'project': self.project.pk, **INVOICE_PAYLOAD})

        self.assertEqual(resp.status_code, 201, resp.content)
        body = resp.json()
        self.assertEqual(body['subtotal'], 2_300_000)
        self.assertEqual(body['ppn_amount'], 253_000)
        self.assertEqual(body['pph_amount'], 46_000)
        self.assertEqual(body['amount'], 2_507_000)
        self.assertEqual(body['dp_amount'], 1_253_500)
        self.assertEqual(body['balance_due'], 1_253_500)
        self.assertEqual(body['status'], 'PENDING')
        self.assertEqual(len(body['items']), 4)
        label = body['items'][0]
        self.assertTrue(label['is_label'])
        self.assertEqual(label['effective_total'], 2_000_000)
        self.assertEqual(body['items'][1]['parent'], label['id'])

    def test_empty_invoice_is_rejected(self):
        self.login(self.finance)

        resp = self.post(reverse('invoice-list'), {'project': self.project.pk, 'labels': [], 'items': []})

        self.assertEqual(resp.status_code, 400)
        self.assertFalse(Invoice.objects.exists())

    def test_blank_rows_are_skipped(self):
        self.login(self.finance)
        payload = {
            'project': self.project.pk,
            'labels': [{'description': 'Phase 2', 'items': [{'description': '', 'unit': '', 'unit_price': 0}]}],
            'items': INVOICE_PAYLOAD['items'],
        }

        resp = self.post(reverse('invoice-list'), payload)

        self.assertEqual(resp.status_code, 201, resp.content)
        invoice = Invoice.objects.get()
        self.assertEqual(invoice.items.count(), 1)
        self.assertEqual(invoice.subtotal, 300_000)

    def test_owner_cannot_create_invoice(self):
        self.login(self.owner)

        resp = self.post(reverse('invoice-list'), {'project': self.project.pk, **INVOICE_PAYLOAD})

        self.assertEqual(resp.status_code, 403)

    def test_supervisor_sees_no_invoices(self):
        invoice = self.create_invoice()
        self.login(self.spv)

        resp = self.client.get(reverse('invoice-list'))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()['count'], 0)

        resp = self.client.get(reverse('invoice-detail', args=[invoice.pk]))
        self.assertEqual(resp.status_code, 404)

    def test_approval_gates_and_conflicts(self):
        invoice = self.create_invoice()
        url = reverse('invoice-approve', args=[invoice.pk])

        self.login(self.finance)
        self.assertEqual(self.post(url).status_code, 403)

        self.login(self.owner)
        resp = self.post(url)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()['status'], 'APPROVED')

        resp = self.post(url)
        self.assertEqual(resp.status_code, 409)
        invoice.refresh_from_db()
        self.assertEqual(invoice.status, Invoice.Status.APPROVED)

    def test_reject_requires_meaningful_notes(self):
        invoice = self.create_invoice()
        url = reverse('invoice-reject', args=[invoice.pk])
        self.login(self.owner)

        self.assertEqual(self.post(url, {'notes': 'no'}).status_code, 400)

        resp = self.post(url, {'notes': 'Wrong client address'})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()['reject_notes'], 'Wrong client address')

    def test_payment_lifecycle(self):
        invoice = approve(self.create_invoice(), actor=self.owner)
        url = reverse('invoice-payments', args=[invoice.pk])
        self.login(self.finance)

        resp = self.post(url, {'amount': invoice.amount - 100, 'payment_method': 'TRANSFER'})
        self.assertEqual(resp.status_code, 201, resp.content)
        payment_id = resp.json()['id']

        resp = self.post(url, {'amount': 101})
        self.assertEqual(resp.status_code, 400)
        self.assertIn('exceeds remaining balance', str(resp.json()['amount']))

        resp = self.post(url, {'amount': 100, 'payment_method': 'CASH'})
        self.assertEqual(resp.status_code, 201)
        invoice.refresh_from_db()
        self.assertEqual(invoice.payment_status, Invoice.PaymentStatus.PAID)

        resp = self.client.get(url)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(len(resp.json()), 2)

        resp = self.client.delete(reverse('invoice-delete-payment', args=[invoice.pk, payment_id]))
        self.assertEqual(resp.status_code, 204)
        invoice.refresh_from_db()
        self.assertEqual(invoice.paid_amount, 100)
        self.assertEqual(invoice.payment_status, Invoice.PaymentStatus.PARTIAL_PAID)

        resp = self.client.delete(reverse('invoice-delete-payment', args=[invoice.pk, payment_id]))
        self.assertEqual(resp.status_code, 404)

    def test_payment_on_pending_invoice_conflicts(self):
        invoice = self.create_invoice()
        self.login(self.finance)

        resp = self.post(reverse('invoice-payments', args=[invoice.pk]), {'amount': 1000})

        self.assertEqual(resp.status_code, 409)

    def test_originator_can_edit_pending_invoice(self):
        invoice = self.create_invoice()
        self.login(self.finance)

        resp = self.patch(reverse('invoice-detail', args=[invoice.pk]), {'ppn_percentage': 0, 'pph_percentage': 0})

        self.assertEqual(resp.status_code, 200, resp.content)
        self.assertEqual(resp.json()['amount'], 300_000)

    def test_delete_only_pending(self):
        invoice = self.create_invoice()
        approve(invoice, actor=self.owner)
        self.login(self.finance)

        resp = self.client.delete(reverse('invoice-detail', args=[invoice.pk]))

        self.assertEqual(resp.status_code, 409)
        self.assertTrue(Invoice.objects.filter(pk=invoice.pk).exists())


class ExpenseApiTests(ApiTestCase):
    def test_expense_flow(self):
        self.login(self.spv)
        resp = self.post(
            reverse('expense-list'),
            {'project': self.project.pk, 'description': 'Cement', 'amount': 2_000_000, 'category': 'Material'},
        )
        self.assertEqual(resp.status_code, 201, resp.content)
        expense_id = resp.json()['id']
        self.assertEqual(resp.json()['created_by'], self.spv.pk)

        self.assertEqual(self.post(reverse('expense-approve', args=[expense_id])).status_code, 403)

        self.login(self.finance)
        url = reverse('expense-approve', args=[expense_id])
        resp = self.post(url)
        self.assertEqual(resp.status_code, 400)
        self.assertIn('proof_url', resp.json())

        resp = self.post(url, {'proof_url': 'uploads/transfer.jpg'})
        self.assertEqual(resp.status_code, 200)
        self.project.refresh_from_db()
        self.assertEqual(self.project.spent_amount, 2_000_000)

        self.assertEqual(self.post(url, {'proof_url': 'uploads/transfer.jpg'}).status_code, 409)
        self.project.refresh_from_db()
        self.assertEqual(self.project.spent_amount, 2_000_000)

    def test_supervisor_sees_only_own_expenses(self):
        other = User.objects.create_user(username='spv2', password=self.password, role=User.Roles.SPV)
        mine = submit_expense(self.project, actor=self.spv, description='Bricks', amount=10_000)
        submit_expense(self.project, actor=other, description='Sand', amount=20_000)
        self.login(self.spv)

        resp = self.client.get(reverse('expense-list'))

        self.assertEqual(resp.status_code, 200)
        self.assertEqual([row['id'] for row in resp.json()['results']], [mine.pk])

    def test_non_originator_delete_conflicts(self):
        expense = submit_expense(self.project, actor=self.spv, description='Bricks', amount=10_000)
        self.login(self.finance)

        resp = self.client.delete(reverse('expense-detail', args=[expense.pk]))

        self.assertEqual(resp.status_code, 409)
        self.assertTrue(Expense.objects.filter(pk=expense.pk).exists())

    def test_originator_delete(self):
        expense = submit_expense(self.project, actor=self.spv, description='Bricks', amount=10_000)
        self.login(self.spv)

        resp = self.client.delete(reverse('expense-detail', args=[expense.pk]))

        self.assertEqual(resp.status_code, 204)
        self.assertFalse(Expense.objects.filter(pk=expense.pk).exists())


class BudgetRequestApiTests(ApiTestCase):
    def test_budget_request_flow(self):
        self.login(self.spv)
        url = reverse('budget-request-list')
        resp = self.post(url, {'project': self.project.pk, 'amount': 5_000_000, 'reason': 'Scope'})
        self.assertEqual(resp.status_code, 400)

        resp = self.post(
            url,
            {'project': self.project.pk, 'amount': 5_000_000, 'reason': 'Scope', 'proof_url': 'uploads/ba.pdf'},
        )
        self.assertEqual(resp.status_code, 201, resp.content)
        request_id = resp.json()['id']

        self.login(self.owner)
        url = reverse('budget-request-reject', args=[request_id])
        self.assertEqual(self.post(url, {'notes': 'Out of scope'}).status_code, 400)
        resp = self.post(reverse('budget-request-approve', args=[request_id]), {'proof_url': 'uploads/ok.pdf'})
        self.assertEqual(resp.status_code, 200)
        self.project.refresh_from_db()
        self.assertEqual(self.project.total_budget, 25_000_000)

        resp = self.post(url, {'notes': 'Out of scope', 'proof_url': 'uploads/no.pdf'})
        self.assertEqual(resp.status_code, 409)


class ProjectApiTests(ApiTestCase):
    def test_supervisor_cannot_create_projects(self):
        self.login(self.spv)

        resp = self.post(reverse('project-list'), {'name': 'Office', 'total_budget': 1_000})

        self.assertEqual(resp.status_code, 403)

    def test_budget_is_read_only_after_creation(self):
        self.login(self.owner)
        resp = self.post(reverse('project-list'), {'name': 'Office', 'total_budget': 1_000})
        self.assertEqual(resp.status_code, 201, resp.content)
        project_id = resp.json()['id']

        resp = self.patch(reverse('project-detail', args=[project_id]), {'total_budget': 5_000})
        self.assertEqual(resp.status_code, 400)

        resp = self.patch(reverse('project-detail', args=[project_id]), {'name': 'Head Office'})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()['total_budget'], 1_000)

    def test_project_with_decided_documents_cannot_be_deleted(self):
        expense = submit_expense(self.project, actor=self.spv, description='Cement', amount=1_000)
        approve(expense, actor=self.finance, proof='proofs/receipt.jpg')
        self.login(self.owner)

        resp = self.client.delete(reverse('project-detail', args=[self.project.pk]))

        self.assertEqual(resp.status_code, 409)
        self.assertTrue(Project.objects.filter(pk=self.project.pk).exists())

        spare = Project.objects.create(name='Storage Yard', total_budget=1_000, created_by=self.owner)
        resp = self.client.delete(reverse('project-detail', args=[spare.pk]))
        self.assertEqual(resp.status_code, 204)

    def test_plan_replace_and_read(self):
        url = reverse('project-plan', args=[self.project.pk])
        payload = {'labels': INVOICE_PAYLOAD['labels'], 'items': INVOICE_PAYLOAD['items']}

        self.login(self.spv)
        self.assertEqual(self.put(url, payload).status_code, 403)
        self.assertEqual(self.client.get(url).status_code, 200)

        self.login(self.finance)
        resp = self.put(url, payload)
        self.assertEqual(resp.status_code, 200, resp.content)
        self.assertEqual(resp.json()['plan_total'], 2_300_000)
        self.assertEqual(len(resp.json()['items']), 4)

        resp = self.post(reverse('invoice-list'), {'project': self.project.pk, 'use_project_plan': True})
        self.assertEqual(resp.status_code, 201, resp.content)
        self.assertEqual(resp.json()['subtotal'], 2_300_000)


class ReportingApiTests(ApiTestCase):
    def test_dashboard_hides_invoices_from_supervisors(self):
        self.create_invoice()
        submit_expense(self.project, actor=self.spv, description='Bricks', amount=10_000)

        self.login(self.spv)
        body = self.client.get(reverse('dashboard')).json()
        self.assertFalse(body['show_invoices'])
        self.assertNotIn('total_billed', body)
        self.assertEqual(body['expenses']['PENDING'], {'count': 1, 'total': 10_000})

        self.login(self.finance)
        body = self.client.get(reverse('dashboard')).json()
        self.assertTrue(body['show_invoices'])
        self.assertEqual(body['invoice_count'], 1)
        self.assertEqual(body['remaining_budget'], 20_000_000)

    def test_activity_log_access(self):
        with self.captureOnCommitCallbacks(execute=True):
            submit_expense(self.project, actor=self.spv, description='Bricks', amount=10_000)
        self.assertTrue(ActivityLog.objects.filter(action='expense.created').exists())

        self.login(self.spv)
        self.assertEqual(self.client.get(reverse('activity-log-list')).status_code, 403)

        self.login(self.owner)
        resp = self.client.get(reverse('activity-log-list'))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()['results'][0]['action'], 'expense.created')

    def test_me_reports_role_permissions(self):
        self.login(self.spv)

        body = self.client.get(reverse('me')).json()

        self.assertEqual(body['user']['role'], 'SPV')
        self.assertTrue(body['permissions']['expense']['create'])
        self.assertFalse(body['permissions']['expense']['approve'])
        self.assertFalse(body['can_edit_plan'])

    def test_anonymous_requests_are_refused(self):
        resp = self.client.get(reverse('expense-list'))

        self.assertIn(resp.status_code, (401, 403))
