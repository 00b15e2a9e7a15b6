import re

from django.conf import settings
from django.contrib.auth.models import AbstractUser
from django.core.exceptions import ValidationError
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.utils import timezone


class User(AbstractUser):
    class Roles(models.TextChoices):
        SPV = 'SPV', 'Supervisor'
        FINANCE = 'FINANCE', 'Finance'
        OWNER = 'OWNER', 'Owner'

    full_name = models.CharField(max_length=255, blank=True)
    role = models.CharField(max_length=16, choices=Roles.choices, default=Roles.SPV)

    def __str__(self) -> str:
        return f"{self.full_name or self.get_full_name() or self.username} ({self.get_role_display()})"

    def has_any_role(self, *roles: str) -> bool:
        return self.role in roles


class TimeStampedModel(models.Model):
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True


PERCENT_VALIDATORS = [MinValueValidator(0), MaxValueValidator(100)]


class ApprovalStatus(models.TextChoices):
    PENDING = 'PENDING', 'Pending'
    APPROVED = 'APPROVED', 'Approved'
    REJECTED = 'REJECTED', 'Rejected'


class Project(TimeStampedModel):
    class Status(models.TextChoices):
        ACTIVE = 'ACTIVE', 'Active'
        COMPLETED = 'COMPLETED', 'Completed'
        ARCHIVED = 'ARCHIVED', 'Archived'

    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.ACTIVE)
    # Only budget propagation moves these two after creation.
    total_budget = models.PositiveBigIntegerField(default=0)
    spent_amount = models.PositiveBigIntegerField(default=0)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name='projects_created'
    )

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['status'], name='project_status_idx'),
        ]

    def __str__(self) -> str:
        return self.name

    @property
    def remaining_budget(self) -> int:
        return self.total_budget - self.spent_amount

    @property
    def plan_total(self) -> int:
        prefetched = getattr(self, '_prefetched_objects_cache', {}) or {}
        if 'plan_items' in prefetched:
            return sum(item.subtotal or 0 for item in self.plan_items.all() if not item.is_label)
        return self.plan_items.filter(is_label=False).aggregate(total=models.Sum('subtotal'))['total'] or 0


class LineItem(models.Model):
    """A node of a two-level item tree: a label heading or a priced leaf.

    Leaves may hang under a label of the same document through ``parent``;
    labels never have a parent and carry no quantity or price of their own.
    """

    parent = models.ForeignKey('self', on_delete=models.CASCADE, null=True, blank=True, related_name='children')
    is_label = models.BooleanField(default=False)
    description = models.CharField(max_length=255)
    quantity = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    unit = models.CharField(max_length=32, blank=True)
    unit_price = models.PositiveBigIntegerField(null=True, blank=True)
    subtotal = models.PositiveBigIntegerField(null=True, blank=True)
    position = models.PositiveIntegerField(default=0)

    owner_field = ''

    class Meta:
        abstract = True
        ordering = ['position', 'id']

    def __str__(self) -> str:
        if self.is_label:
            return f"[{self.description}]"
        return f"{self.description} x {self.quantity}"

    def clean(self):
        super().clean()
        if self.is_label:
            if self.parent_id:
                raise ValidationError({'parent': 'A label cannot be nested under another node.'})
            if self.quantity is not None or self.unit_price is not None:
                raise ValidationError('A label carries no quantity or unit price.')
            return
        if not (self.description or '').strip():
            raise ValidationError({'description': 'Description is required.'})
        if not (self.unit or '').strip():
            raise ValidationError({'unit': 'Unit is required.'})
        if self.quantity is None or self.quantity <= 0:
            raise ValidationError({'quantity': 'Quantity must be greater than zero.'})
        if not self.unit_price or self.unit_price <= 0:
            raise ValidationError({'unit_price': 'Unit price must be greater than zero.'})
        if self.parent_id:
            parent = self.parent
            if self.pk and parent.pk == self.pk:
                raise ValidationError({'parent': 'An item cannot be its own parent.'})
            if not parent.is_label:
                raise ValidationError({'parent': 'Items can only be grouped under a label.'})
            owner_id = f"{self.owner_field}_id"
            if getattr(parent, owner_id) != getattr(self, owner_id):
                raise ValidationError({'parent': 'Label belongs to a different document.'})

    @property
    def effective_total(self) -> int:
        """Leaf subtotal, or for a label the sum of its children's subtotals."""
        if not self.is_label:
            return self.subtotal or 0
        return sum(child.subtotal or 0 for child in self.children.all())


class ApprovalDocument(TimeStampedModel):
    """Common shape of documents that move PENDING -> APPROVED | REJECTED once."""

    Status = ApprovalStatus

    document_type = ''

    status = models.CharField(max_length=16, choices=ApprovalStatus.choices, default=ApprovalStatus.PENDING)
    decision_notes = models.TextField(blank=True)
    decision_proof_url = models.CharField(max_length=500, blank=True)
    decided_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='%(class)s_decided',
    )
    decided_at = models.DateTimeField(null=True, blank=True)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='%(class)s_created',
    )

    class Meta:
        abstract = True

    @property
    def is_pending(self) -> bool:
        return self.status == ApprovalStatus.PENDING


class Invoice(ApprovalDocument):
    class InvoiceType(models.TextChoices):
        DP = 'DP', 'Down Payment'
        FINAL_PAYMENT = 'FINAL_PAYMENT', 'Final Payment'
        TERMIN_1 = 'TERMIN_1', 'Installment 1'
        TERMIN_2 = 'TERMIN_2', 'Installment 2'
        TERMIN_3 = 'TERMIN_3', 'Installment 3'
        MEALS = 'MEALS', 'Meals'
        ADDITIONAL = 'ADDITIONAL', 'Additional'

    class PaymentStatus(models.TextChoices):
        UNPAID = 'UNPAID', 'Unpaid'
        PARTIAL_PAID = 'PARTIAL_PAID', 'Partially Paid'
        PAID = 'PAID', 'Paid'

    DP_TYPES = (InvoiceType.DP, InvoiceType.FINAL_PAYMENT)

    document_type = 'invoice'

    project = models.ForeignKey(Project, on_delete=models.CASCADE, related_name='invoices')
    invoice_number = models.CharField(max_length=64, unique=True, blank=True)
    invoice_type = models.CharField(max_length=32, choices=InvoiceType.choices, default=InvoiceType.DP)
    recipient_name = models.CharField(max_length=255, blank=True)
    recipient_address = models.TextField(blank=True)
    attention = models.CharField(max_length=255, blank=True)
    po_number = models.CharField(max_length=100, blank=True)
    invoice_date = models.DateField(default=timezone.localdate)
    due_date = models.DateField(null=True, blank=True)
    dp_percentage = models.DecimalField(
        max_digits=5, decimal_places=2, null=True, blank=True, validators=PERCENT_VALIDATORS
    )
    ppn_percentage = models.DecimalField(max_digits=5, decimal_places=2, default=0, validators=PERCENT_VALIDATORS)
    pph_percentage = models.DecimalField(max_digits=5, decimal_places=2, default=0, validators=PERCENT_VALIDATORS)
    subtotal = models.PositiveBigIntegerField(default=0)
    ppn_amount = models.PositiveBigIntegerField(default=0)
    pph_amount = models.PositiveBigIntegerField(default=0)
    amount = models.PositiveBigIntegerField(default=0)
    dp_amount = models.PositiveBigIntegerField(null=True, blank=True)
    balance_due = models.PositiveBigIntegerField(null=True, blank=True)
    paid_amount = models.PositiveBigIntegerField(default=0)
    payment_status = models.CharField(max_length=16, choices=PaymentStatus.choices, default=PaymentStatus.UNPAID)
    notes = models.TextField(blank=True)

    class Meta:
        ordering = ['-invoice_date', '-created_at']
        indexes = [
            models.Index(fields=['project', 'status'], name='invoice_project_status_idx'),
            models.Index(fields=['status', 'payment_status'], name='invoice_payment_status_idx'),
            models.Index(fields=['invoice_date'], name='invoice_date_idx'),
        ]

    def __str__(self) -> str:
        return f"Invoice {self.invoice_number or self.pk}"

    def clean(self):
        super().clean()
        if self.invoice_date and self.due_date and self.due_date < self.invoice_date:
            raise ValidationError({'due_date': 'Due date cannot be earlier than the invoice date.'})

    def save(self, *args, **kwargs):
        if not self.invoice_number:
            self.invoice_number = self._generate_invoice_number()
        super().save(*args, **kwargs)

    def _generate_invoice_number(self) -> str:
        prefix = (getattr(settings, 'INVOICE_PREFIX', '') or 'INV').strip() or 'INV'
        project_part = str(self.project_id or 'GEN')
        pattern = re.compile(rf'^{re.escape(prefix)}/{re.escape(project_part)}/(\d+)$')
        max_seq = 0
        existing = Invoice.objects.filter(invoice_number__startswith=f"{prefix}/{project_part}/")
        for value in existing.values_list('invoice_number', flat=True):
            match = pattern.match(value or '')
            if match:
                max_seq = max(max_seq, int(match.group(1)))
        seq = max_seq + 1
        candidate = f"{prefix}/{project_part}/{seq}"
        while Invoice.objects.filter(invoice_number=candidate).exists():
            seq += 1
            candidate = f"{prefix}/{project_part}/{seq}"
        return candidate

    @property
    def reject_notes(self) -> str:
        if self.status == ApprovalStatus.REJECTED:
            return self.decision_notes
        return ''

    @property
    def remaining_balance(self) -> int:
        return max(self.amount - self.paid_amount, 0)


class InvoiceItem(LineItem):
    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name='items')

    owner_field = 'invoice'

    class Meta(LineItem.Meta):
        indexes = [
            models.Index(fields=['invoice', 'parent'], name='invoice_item_parent_idx'),
        ]


class ProjectPlanItem(LineItem):
    project = models.ForeignKey(Project, on_delete=models.CASCADE, related_name='plan_items')

    owner_field = 'project'

    class Meta(LineItem.Meta):
        indexes = [
            models.Index(fields=['project', 'parent'], name='plan_item_parent_idx'),
        ]


class InvoicePayment(TimeStampedModel):
    class Method(models.TextChoices):
        TRANSFER = 'TRANSFER', 'Bank Transfer'
        CASH = 'CASH', 'Cash'
        CHECK = 'CHECK', 'Cheque'
        GIRO = 'GIRO', 'Giro'
        OTHER = 'OTHER', 'Other'

    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name='payments')
    amount = models.PositiveBigIntegerField()
    payment_date = models.DateField()
    payment_method = models.CharField(max_length=16, choices=Method.choices, default=Method.TRANSFER)
    proof_url = models.CharField(max_length=500, blank=True)
    notes = models.TextField(blank=True)
    recorded_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='invoice_payments_recorded',
    )

    class Meta:
        ordering = ['-payment_date', '-created_at']
        indexes = [
            models.Index(fields=['invoice', 'payment_date'], name='payment_invoice_date_idx'),
        ]

    def __str__(self) -> str:
        return f"Payment {self.amount} on {self.payment_date}"


class Expense(ApprovalDocument):
    document_type = 'expense'

    project = models.ForeignKey(Project, on_delete=models.CASCADE, related_name='expenses')
    description = models.CharField(max_length=255)
    amount = models.PositiveBigIntegerField(validators=[MinValueValidator(1)])
    category = models.CharField(max_length=100, blank=True)
    receipt_url = models.CharField(max_length=500, blank=True)

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['project', 'status'], name='expense_project_status_idx'),
        ]

    def __str__(self) -> str:
        return f"{self.description} · {self.amount}"


class BudgetRequest(ApprovalDocument):
    document_type = 'budget_request'

    project = models.ForeignKey(Project, on_delete=models.CASCADE, related_name='budget_requests')
    amount = models.PositiveBigIntegerField(validators=[MinValueValidator(1)])
    reason = models.TextField()
    proof_url = models.CharField(max_length=500)

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['project', 'status'], name='budget_req_project_status_idx'),
        ]

    def __str__(self) -> str:
        return f"Budget request {self.amount} for {self.project}"

    def clean(self):
        super().clean()
        if not (self.proof_url or '').strip():
            raise ValidationError({'proof_url': 'A proof reference is required to submit a budget request.'})


class ActivityLog(TimeStampedModel):
    """Append-only audit trail fed by domain events."""

    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='activity',
    )
    action = models.CharField(max_length=64)
    entity_type = models.CharField(max_length=32)
    entity_id = models.PositiveBigIntegerField(null=True, blank=True)
    message = models.CharField(max_length=500)

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['created_at'], name='activity_created_idx'),
            models.Index(fields=['entity_type', 'entity_id'], name='activity_entity_idx'),
            models.Index(fields=['actor', 'created_at'], name='activity_actor_idx'),
        ]

    def __str__(self) -> str:
        actor = self.actor.username if self.actor else 'System'
        return f"{actor}: {self.message}"
