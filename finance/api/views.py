from __future__ import annotations

from django.db.models import Count, Sum
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView
from rest_framework_simplejwt.serializers import TokenObtainPairSerializer
from rest_framework_simplejwt.views import TokenObtainPairView, TokenRefreshView

from finance import approvals
from finance import payments as ledger
from finance.api.access import visible_documents_for_user, visible_invoices_for_user
from finance.api.permissions import RolePermission
from finance.api.serializers import (
    ActivityLogSerializer,
    BudgetRequestSerializer,
    DecisionSerializer,
    ExpenseSerializer,
    InvoicePaymentSerializer,
    InvoiceSerializer,
    InvoiceUpsertSerializer,
    ItemTreeInputSerializer,
    ProjectPlanSerializer,
    ProjectSerializer,
    UserSerializer,
)
from finance.documents import delete_project, replace_plan
from finance.models import ActivityLog, ApprovalStatus, BudgetRequest, Expense, Invoice, Project, User
from finance.permissions import ACTIONS, can_edit_plan, can_perform, can_view_all_documents, get_approval_policy

MANAGERS = (User.Roles.FINANCE, User.Roles.OWNER)


class CustomTokenObtainPairSerializer(TokenObtainPairSerializer):
    def validate(self, attrs):
        username = attrs.get(self.username_field)
        if username and '@' in username:
            user = User.objects.filter(email__iexact=username).first()
            if user:
                attrs[self.username_field] = user.get_username()
        return super().validate(attrs)


class CustomTokenObtainPairView(TokenObtainPairView):
    permission_classes = (AllowAny,)
    serializer_class = CustomTokenObtainPairSerializer


class CustomTokenRefreshView(TokenRefreshView):
    permission_classes = (AllowAny,)


class MeView(APIView):
    def get(self, request):
        user = request.user
        permissions = {
            document_type: {name: can_perform(user, document_type, name) for name in ACTIONS}
            for document_type in get_approval_policy()
        }
        return Response({
            'user': UserSerializer(user).data,
            'permissions': permissions,
            'can_edit_plan': can_edit_plan(user),
        })


def _status_summary(queryset) -> dict:
    rows = queryset.values('status').annotate(count=Count('id'), total=Sum('amount'))
    summary = {choice: {'count': 0, 'total': 0} for choice in ApprovalStatus.values}
    for row in rows:
        summary[row['status']] = {'count': row['count'], 'total': row['total'] or 0}
    return summary


class DashboardView(APIView):
    def get(self, request):
        user = request.user
        projects = Project.objects.all()
        budget = projects.aggregate(total_budget=Sum('total_budget'), spent=Sum('spent_amount'))
        total_budget = budget['total_budget'] or 0
        spent = budget['spent'] or 0

        response = {
            'total_projects': projects.count(),
            'active_projects': projects.filter(status=Project.Status.ACTIVE).count(),
            'total_budget': total_budget,
            'spent_amount': spent,
            'remaining_budget': total_budget - spent,
            'expenses': _status_summary(visible_documents_for_user(user, Expense.objects.all())),
            'budget_requests': _status_summary(visible_documents_for_user(user, BudgetRequest.objects.all())),
            'show_invoices': can_view_all_documents(user),
        }

        if response['show_invoices']:
            invoices = Invoice.objects.all()
            approved = invoices.filter(status=ApprovalStatus.APPROVED)
            billed = approved.aggregate(total=Sum('amount'), paid=Sum('paid_amount'))
            response.update({
                'invoice_count': invoices.count(),
                'pending_invoices': invoices.filter(status=ApprovalStatus.PENDING).count(),
                'total_billed': billed['total'] or 0,
                'total_paid': billed['paid'] or 0,
                'total_outstanding': (billed['total'] or 0) - (billed['paid'] or 0),
                'unpaid_invoices': approved.exclude(payment_status=Invoice.PaymentStatus.PAID).count(),
            })

        return Response(response)


class BaseModelViewSet(viewsets.ModelViewSet):
    permission_classes = (RolePermission,)
    role_map: dict[str, tuple[str, ...] | None] | None = None

    def get_permissions(self):
        if self.role_map:
            roles = self.role_map.get(self.action)
            self.allowed_roles = roles
        return super().get_permissions()


class ApprovalActionsMixin:
    """approve/reject endpoints; role and evidence rules live in finance.approvals."""

    def _decide(self, request, transition):
        document = self.get_object()
        serializer = DecisionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        transition(
            document,
            actor=request.user,
            proof=serializer.validated_data['proof_url'],
            notes=serializer.validated_data['notes'],
        )
        return Response(self.get_serializer(document).data)

    @action(detail=True, methods=['post'])
    def approve(self, request, pk=None):
        return self._decide(request, approvals.approve)

    @action(detail=True, methods=['post'])
    def reject(self, request, pk=None):
        return self._decide(request, approvals.reject)

    def perform_destroy(self, instance):
        approvals.delete_document(instance, actor=self.request.user)


class ProjectViewSet(BaseModelViewSet):
    queryset = Project.objects.select_related('created_by').prefetch_related('plan_items')
    serializer_class = ProjectSerializer
    search_fields = ('name', 'description')
    ordering_fields = ('name', 'created_at', 'total_budget', 'spent_amount')
    filterset_fields = ('status',)
    role_map = {
        'create': MANAGERS,
        'update': MANAGERS,
        'partial_update': MANAGERS,
        'destroy': (User.Roles.OWNER,),
    }

    def perform_create(self, serializer):
        serializer.save(created_by=self.request.user)

    def perform_destroy(self, instance):
        delete_project(instance, actor=self.request.user)

    @action(detail=True, methods=['get', 'put'])
    def plan(self, request, pk=None):
        project = self.get_object()
        if request.method == 'PUT':
            serializer = ItemTreeInputSerializer(data=request.data)
            serializer.is_valid(raise_exception=True)
            replace_plan(project, actor=request.user, **serializer.validated_data)
            project = self.get_queryset().get(pk=project.pk)
        return Response(ProjectPlanSerializer(project, context=self.get_serializer_context()).data)


class InvoiceViewSet(ApprovalActionsMixin, BaseModelViewSet):
    serializer_class = InvoiceSerializer
    search_fields = ('invoice_number', 'recipient_name', 'po_number')
    ordering_fields = ('invoice_date', 'due_date', 'amount', 'created_at')
    filterset_fields = ('status', 'payment_status', 'project', 'invoice_type')

    def get_queryset(self):
        qs = Invoice.objects.select_related('project', 'created_by', 'decided_by').prefetch_related('items')
        return visible_invoices_for_user(self.request.user, qs)

    def get_serializer_class(self):
        if self.action in ('create', 'update', 'partial_update'):
            return InvoiceUpsertSerializer
        return InvoiceSerializer

    @action(detail=True, methods=['get', 'post'])
    def payments(self, request, pk=None):
        invoice = self.get_object()
        if request.method == 'GET':
            payments = invoice.payments.select_related('recorded_by')
            return Response(InvoicePaymentSerializer(payments, many=True).data)
        serializer = InvoicePaymentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        payment = ledger.record_payment(invoice, actor=request.user, **serializer.validated_data)
        return Response(InvoicePaymentSerializer(payment).data, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=['delete'], url_path=r'payments/(?P<payment_id>\d+)')
    def delete_payment(self, request, pk=None, payment_id=None):
        invoice = self.get_object()
        ledger.delete_payment(invoice, int(payment_id), actor=request.user)
        return Response(status=status.HTTP_204_NO_CONTENT)


class ExpenseViewSet(ApprovalActionsMixin, BaseModelViewSet):
    serializer_class = ExpenseSerializer
    search_fields = ('description', 'category')
    ordering_fields = ('created_at', 'amount', 'status')
    filterset_fields = ('status', 'project', 'category')

    def get_queryset(self):
        qs = Expense.objects.select_related('project', 'created_by', 'decided_by')
        return visible_documents_for_user(self.request.user, qs)


class BudgetRequestViewSet(ApprovalActionsMixin, BaseModelViewSet):
    serializer_class = BudgetRequestSerializer
    search_fields = ('reason',)
    ordering_fields = ('created_at', 'amount', 'status')
    filterset_fields = ('status', 'project')

    def get_queryset(self):
        qs = BudgetRequest.objects.select_related('project', 'created_by', 'decided_by')
        return visible_documents_for_user(self.request.user, qs)


class ActivityLogViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = ActivityLog.objects.select_related('actor')
    serializer_class = ActivityLogSerializer
    permission_classes = (RolePermission,)
    allowed_roles = MANAGERS
    filterset_fields = ('entity_type', 'entity_id', 'actor', 'action')
