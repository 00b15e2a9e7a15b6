from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as DjangoUserAdmin

from .documents import has_decided_documents
from .models import (
    ActivityLog,
    BudgetRequest,
    Expense,
    Invoice,
    InvoiceItem,
    InvoicePayment,
    Project,
    ProjectPlanItem,
    User,
)

DECISION_FIELDS = ('status', 'decision_notes', 'decision_proof_url', 'decided_by', 'decided_at', 'created_by')
ITEM_FIELDS = ('position', 'is_label', 'parent', 'description', 'quantity', 'unit', 'unit_price', 'subtotal')


def without_bulk_delete(actions):
    actions.pop('delete_selected', None)
    return actions


@admin.register(User)
class UserAdmin(DjangoUserAdmin):
    fieldsets = DjangoUserAdmin.fieldsets + (('Role Info', {'fields': ('role', 'full_name')}),)
    list_display = ('username', 'email', 'full_name', 'role', 'is_staff')
    list_filter = ('role', 'is_staff')


class ReadOnlyItemInline(admin.TabularInline):
    """Item trees are replaced through the API so their subtotals stay derived."""

    extra = 0
    fields = ITEM_FIELDS
    readonly_fields = ITEM_FIELDS
    can_delete = False

    def has_add_permission(self, request, obj=None):
        return False


class ProjectPlanItemInline(ReadOnlyItemInline):
    model = ProjectPlanItem


@admin.register(Project)
class ProjectAdmin(admin.ModelAdmin):
    list_display = ('name', 'status', 'total_budget', 'spent_amount', 'created_at')
    search_fields = ('name', 'description')
    list_filter = ('status',)
    inlines = [ProjectPlanItemInline]

    def get_readonly_fields(self, request, obj=None):
        # After creation the budget figures only move through approvals.
        if obj is None:
            return ('spent_amount',)
        return ('total_budget', 'spent_amount', 'created_by')

    def get_actions(self, request):
        return without_bulk_delete(super().get_actions(request))

    def has_delete_permission(self, request, obj=None):
        if obj is not None and has_decided_documents(obj):
            return False
        return super().has_delete_permission(request, obj)


class DocumentAdmin(admin.ModelAdmin):
    """Pending documents keep their free-text fields editable; decided ones are history."""

    engine_fields = ()

    def get_readonly_fields(self, request, obj=None):
        if obj is not None and not obj.is_pending:
            return tuple(field.name for field in obj._meta.concrete_fields if not field.primary_key)
        return ('project',) + self.engine_fields + DECISION_FIELDS

    def has_add_permission(self, request):
        return False

    def get_actions(self, request):
        return without_bulk_delete(super().get_actions(request))

    def has_delete_permission(self, request, obj=None):
        if obj is not None and not obj.is_pending:
            return False
        return super().has_delete_permission(request, obj)


class InvoiceItemInline(ReadOnlyItemInline):
    model = InvoiceItem


class InvoicePaymentInline(admin.TabularInline):
    model = InvoicePayment
    extra = 0
    readonly_fields = ('amount', 'payment_date', 'payment_method', 'proof_url', 'recorded_by')
    can_delete = False

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Invoice)
class InvoiceAdmin(DocumentAdmin):
    list_display = ('invoice_number', 'project', 'invoice_type', 'amount', 'status', 'payment_status', 'invoice_date')
    list_filter = ('status', 'payment_status', 'invoice_type')
    search_fields = ('invoice_number', 'recipient_name', 'project__name')
    # Rates and type feed the stored totals, which only the invoice service recomputes.
    engine_fields = (
        'invoice_type',
        'ppn_percentage',
        'pph_percentage',
        'dp_percentage',
        'subtotal',
        'ppn_amount',
        'pph_amount',
        'amount',
        'dp_amount',
        'balance_due',
        'paid_amount',
        'payment_status',
    )
    inlines = [InvoiceItemInline, InvoicePaymentInline]


@admin.register(InvoicePayment)
class InvoicePaymentAdmin(admin.ModelAdmin):
    list_display = ('invoice', 'amount', 'payment_date', 'payment_method', 'recorded_by')
    list_filter = ('payment_method',)
    search_fields = ('invoice__invoice_number',)

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Expense)
class ExpenseAdmin(DocumentAdmin):
    list_display = ('description', 'project', 'amount', 'category', 'status', 'created_by', 'created_at')
    list_filter = ('status', 'category')
    search_fields = ('description', 'project__name')


@admin.register(BudgetRequest)
class BudgetRequestAdmin(DocumentAdmin):
    list_display = ('project', 'amount', 'status', 'created_by', 'created_at')
    list_filter = ('status',)
    search_fields = ('reason', 'project__name')


@admin.register(ActivityLog)
class ActivityLogAdmin(admin.ModelAdmin):
    list_display = ('created_at', 'actor', 'action', 'entity_type', 'entity_id', 'message')
    list_filter = ('action', 'entity_type')
    search_fields = ('message',)

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False
