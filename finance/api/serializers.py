from __future__ import annotations

from typing import Any

from django.core.exceptions import ValidationError
from rest_framework import serializers

from finance.documents import (
    create_invoice,
    submit_budget_request,
    submit_expense,
    update_document,
    update_invoice,
)
from finance.items import group_totals
from finance.models import (
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


class CleanModelSerializer(serializers.ModelSerializer):
    """ModelSerializer that runs full_clean before saving."""

    def _perform_full_clean(self, instance):
        try:
            instance.full_clean()
        except ValidationError as exc:
            if hasattr(exc, 'message_dict'):
                raise serializers.ValidationError(exc.message_dict) from exc
            raise serializers.ValidationError({'detail': exc.messages}) from exc

    def create(self, validated_data, **kwargs):
        validated_data.update(kwargs)
        instance = self.Meta.model(**validated_data)
        self._perform_full_clean(instance)
        instance.save()
        return instance

    def update(self, instance, validated_data, **kwargs):
        validated_data.update(kwargs)
        for attr, value in validated_data.items():
            setattr(instance, attr, value)
        self._perform_full_clean(instance)
        instance.save()
        return instance


class UserSummarySerializer(serializers.ModelSerializer):
    full_name = serializers.SerializerMethodField()

    class Meta:
        model = User
        fields = ('id', 'username', 'full_name', 'role')

    def get_full_name(self, obj):
        return obj.full_name or obj.get_full_name() or obj.username


class UserSerializer(UserSummarySerializer):
    class Meta(UserSummarySerializer.Meta):
        fields = ('id', 'username', 'email', 'first_name', 'last_name', 'full_name', 'role', 'is_superuser')
        read_only_fields = fields


def _actor(serializer: serializers.Serializer):
    request = serializer.context.get('request')
    return getattr(request, 'user', None)


class ProjectSerializer(CleanModelSerializer):
    remaining_budget = serializers.IntegerField(read_only=True)
    plan_total = serializers.IntegerField(read_only=True)
    created_by_detail = UserSummarySerializer(source='created_by', read_only=True)

    class Meta:
        model = Project
        fields = (
            'id',
            'name',
            'description',
            'status',
            'total_budget',
            'spent_amount',
            'remaining_budget',
            'plan_total',
            'created_by',
            'created_by_detail',
            'created_at',
            'updated_at',
        )
        read_only_fields = ('spent_amount', 'created_by')

    def validate(self, attrs: dict[str, Any]) -> dict[str, Any]:
        # Once a project exists its budget only grows through approved budget requests.
        if self.instance is not None and 'total_budget' in attrs:
            if attrs['total_budget'] != self.instance.total_budget:
                raise serializers.ValidationError(
                    {'total_budget': 'The budget can only change through approved budget requests.'}
                )
            attrs.pop('total_budget')
        return attrs


class ProjectSummarySerializer(serializers.ModelSerializer):
    class Meta:
        model = Project
        fields = ('id', 'name', 'status')


class ItemInputSerializer(serializers.Serializer):
    # Incomplete rows pass through here and are skipped by the tree builder.
    description = serializers.CharField(max_length=255, allow_blank=True, required=False, default='')
    quantity = serializers.DecimalField(max_digits=12, decimal_places=2, required=False, allow_null=True)
    unit = serializers.CharField(max_length=32, allow_blank=True, required=False, default='')
    unit_price = serializers.DecimalField(max_digits=15, decimal_places=2, required=False, allow_null=True)


class LabelInputSerializer(serializers.Serializer):
    description = serializers.CharField(max_length=255, allow_blank=True, required=False, default='')
    items = ItemInputSerializer(many=True, required=False)


class ItemTreeInputSerializer(serializers.Serializer):
    labels = LabelInputSerializer(many=True, required=False)
    items = ItemInputSerializer(many=True, required=False)


class LineItemSerializer(serializers.ModelSerializer):
    effective_total = serializers.SerializerMethodField()

    class Meta:
        fields = (
            'id',
            'parent',
            'is_label',
            'description',
            'quantity',
            'unit',
            'unit_price',
            'subtotal',
            'effective_total',
            'position',
        )
        read_only_fields = fields

    def get_effective_total(self, obj) -> int:
        totals = self.context.get('group_totals')
        if obj.is_label and totals is not None:
            return totals.get(obj.pk, 0)
        return obj.effective_total


class InvoiceItemSerializer(LineItemSerializer):
    class Meta(LineItemSerializer.Meta):
        model = InvoiceItem


class ProjectPlanItemSerializer(LineItemSerializer):
    class Meta(LineItemSerializer.Meta):
        model = ProjectPlanItem


def serialize_item_tree(items, serializer_class, context) -> list:
    items = list(items)
    return serializer_class(items, many=True, context={**context, 'group_totals': group_totals(items)}).data


class ProjectPlanSerializer(serializers.ModelSerializer):
    items = serializers.SerializerMethodField()
    plan_total = serializers.IntegerField(read_only=True)

    class Meta:
        model = Project
        fields = ('id', 'name', 'plan_total', 'items')

    def get_items(self, obj):
        return serialize_item_tree(obj.plan_items.all(), ProjectPlanItemSerializer, self.context)


class InvoiceSerializer(serializers.ModelSerializer):
    project_detail = ProjectSummarySerializer(source='project', read_only=True)
    created_by_detail = UserSummarySerializer(source='created_by', read_only=True)
    decided_by_detail = UserSummarySerializer(source='decided_by', read_only=True)
    reject_notes = serializers.CharField(read_only=True)
    remaining_balance = serializers.IntegerField(read_only=True)
    items = serializers.SerializerMethodField()

    class Meta:
        model = Invoice
        fields = (
            'id',
            'project',
            'project_detail',
            'invoice_number',
            'invoice_type',
            'recipient_name',
            'recipient_address',
            'attention',
            'po_number',
            'invoice_date',
            'due_date',
            'dp_percentage',
            'ppn_percentage',
            'pph_percentage',
            'subtotal',
            'ppn_amount',
            'pph_amount',
            'amount',
            'dp_amount',
            'balance_due',
            'paid_amount',
            'remaining_balance',
            'status',
            'payment_status',
            'reject_notes',
            'decision_notes',
            'decision_proof_url',
            'decided_by',
            'decided_by_detail',
            'decided_at',
            'notes',
            'items',
            'created_by',
            'created_by_detail',
            'created_at',
            'updated_at',
        )
        read_only_fields = fields

    def get_items(self, obj):
        return serialize_item_tree(obj.items.all(), InvoiceItemSerializer, self.context)


class InvoiceUpsertSerializer(serializers.ModelSerializer):
    labels = LabelInputSerializer(many=True, required=False)
    items = ItemInputSerializer(many=True, required=False)
    use_project_plan = serializers.BooleanField(required=False, default=False, write_only=True)

    class Meta:
        model = Invoice
        fields = (
            'project',
            'invoice_number',
            'invoice_type',
            'recipient_name',
            'recipient_address',
            'attention',
            'po_number',
            'invoice_date',
            'due_date',
            'notes',
            'ppn_percentage',
            'pph_percentage',
            'dp_percentage',
            'labels',
            'items',
            'use_project_plan',
        )

    def validate(self, attrs: dict[str, Any]) -> dict[str, Any]:
        project = attrs.get('project')
        if self.instance is not None and project is not None and project.pk != self.instance.project_id:
            raise serializers.ValidationError({'project': 'An invoice cannot move to another project.'})
        return attrs

    def create(self, validated_data):
        project = validated_data.pop('project')
        return create_invoice(
            project,
            actor=_actor(self),
            labels=validated_data.pop('labels', None),
            items=validated_data.pop('items', None),
            use_project_plan=validated_data.pop('use_project_plan', False),
            **validated_data,
        )

    def update(self, instance, validated_data):
        validated_data.pop('project', None)
        validated_data.pop('use_project_plan', None)
        return update_invoice(
            instance,
            actor=_actor(self),
            labels=validated_data.pop('labels', None),
            items=validated_data.pop('items', None),
            **validated_data,
        )

    def to_representation(self, instance):
        return InvoiceSerializer(instance, context=self.context).data


class InvoicePaymentSerializer(serializers.ModelSerializer):
    recorded_by_detail = UserSummarySerializer(source='recorded_by', read_only=True)
    payment_date = serializers.DateField(required=False)

    class Meta:
        model = InvoicePayment
        fields = (
            'id',
            'invoice',
            'amount',
            'payment_date',
            'payment_method',
            'proof_url',
            'notes',
            'recorded_by',
            'recorded_by_detail',
            'created_at',
        )
        read_only_fields = ('invoice', 'recorded_by')


class DocumentSerializer(serializers.ModelSerializer):
    """Shared read/write shape of expenses and budget requests."""

    project_detail = ProjectSummarySerializer(source='project', read_only=True)
    created_by_detail = UserSummarySerializer(source='created_by', read_only=True)
    decided_by_detail = UserSummarySerializer(source='decided_by', read_only=True)

    decision_fields = (
        'status',
        'decision_notes',
        'decision_proof_url',
        'decided_by',
        'decided_by_detail',
        'decided_at',
        'created_by',
        'created_by_detail',
        'created_at',
        'updated_at',
    )

    def validate(self, attrs: dict[str, Any]) -> dict[str, Any]:
        project = attrs.get('project')
        if self.instance is not None and project is not None and project.pk != self.instance.project_id:
            raise serializers.ValidationError({'project': 'A document cannot move to another project.'})
        return attrs

    def update(self, instance, validated_data):
        validated_data.pop('project', None)
        return update_document(instance, actor=_actor(self), **validated_data)


class ExpenseSerializer(DocumentSerializer):
    class Meta:
        model = Expense
        fields = (
            'id',
            'project',
            'project_detail',
            'description',
            'amount',
            'category',
            'receipt_url',
            *DocumentSerializer.decision_fields,
        )
        read_only_fields = ('status', 'decision_notes', 'decision_proof_url', 'decided_by', 'decided_at', 'created_by')

    def create(self, validated_data):
        project = validated_data.pop('project')
        return submit_expense(project, actor=_actor(self), **validated_data)


class BudgetRequestSerializer(DocumentSerializer):
    class Meta:
        model = BudgetRequest
        fields = (
            'id',
            'project',
            'project_detail',
            'amount',
            'reason',
            'proof_url',
            *DocumentSerializer.decision_fields,
        )
        read_only_fields = ('status', 'decision_notes', 'decision_proof_url', 'decided_by', 'decided_at', 'created_by')

    def create(self, validated_data):
        project = validated_data.pop('project')
        return submit_budget_request(project, actor=_actor(self), **validated_data)


class DecisionSerializer(serializers.Serializer):
    proof_url = serializers.CharField(max_length=500, required=False, allow_blank=True, default='')
    notes = serializers.CharField(required=False, allow_blank=True, default='')


class ActivityLogSerializer(serializers.ModelSerializer):
    actor_detail = UserSummarySerializer(source='actor', read_only=True)

    class Meta:
        model = ActivityLog
        fields = ('id', 'actor', 'actor_detail', 'action', 'entity_type', 'entity_id', 'message', 'created_at')
