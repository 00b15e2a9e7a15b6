"""Item tree building for invoices and project plans.

A submission carries named groups (``labels``), each with child items, and
standalone ``items``. It is flattened into label nodes followed by their
children, plus parentless leaves. Only leaves carry a subtotal; a label's
total is always the sum of its children.
"""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, List, Optional

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction
from rest_framework.exceptions import ValidationError

logger = logging.getLogger(__name__)

EMPTY_DOCUMENT_MESSAGE = 'Document must contain at least one item.'


def line_subtotal(quantity, unit_price) -> int:
    value = Decimal(str(quantity)) * Decimal(int(unit_price))
    return int(value.quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def _clean_leaf(raw: dict[str, Any]) -> Optional[dict[str, Any]]:
    """Normalise one leaf, or return ``None`` when it is not a usable line.

    A usable line has a description, a unit, a positive quantity and a whole
    unit price above zero. Anything else (typically the blank row an editor
    keeps at the bottom of a group) is skipped.
    """
    description = str(raw.get('description') or '').strip()
    unit = str(raw.get('unit') or '').strip()
    if not description or not unit:
        return None
    try:
        quantity = Decimal(str(raw.get('quantity')))
        price = Decimal(str(raw.get('unit_price')))
    except (InvalidOperation, TypeError, ValueError):
        return None
    if not quantity.is_finite() or quantity <= 0:
        return None
    if not price.is_finite() or price <= 0 or price != price.to_integral_value():
        return None
    unit_price = int(price)
    return {
        'is_label': False,
        'description': description,
        'quantity': quantity,
        'unit': unit,
        'unit_price': unit_price,
        'subtotal': line_subtotal(quantity, unit_price),
        'parent_index': None,
    }


def _clean_leaves(raw_items: Optional[Iterable[dict]]) -> List[dict]:
    cleaned = [_clean_leaf(raw) for raw in raw_items or []]
    kept = [leaf for leaf in cleaned if leaf is not None]
    if len(kept) != len(cleaned):
        logger.debug("Skipped %s incomplete item(s)", len(cleaned) - len(kept))
    return kept


def build_item_tree(labels: Optional[Iterable[dict]] = None, items: Optional[Iterable[dict]] = None) -> List[dict]:
    """Flatten a submission into ordered node dicts.

    Children point at their label through ``parent_index`` (an index into the
    returned list). Incomplete leaves are skipped, groups left without
    children are dropped, and a group with a blank name contributes its
    children as standalone items. Raises a validation error when no leaf
    survives.
    """
    nodes: List[dict] = []
    standalone: List[dict] = []

    for group in labels or []:
        children = _clean_leaves(group.get('items'))
        if not children:
            continue
        name = str(group.get('description') or group.get('label') or '').strip()
        if not name:
            standalone.extend(children)
            continue
        label_index = len(nodes)
        nodes.append({
            'is_label': True,
            'description': name,
            'quantity': None,
            'unit': '',
            'unit_price': None,
            'subtotal': None,
            'parent_index': None,
        })
        for child in children:
            child['parent_index'] = label_index
            nodes.append(child)

    standalone.extend(_clean_leaves(items))
    nodes.extend(standalone)

    if not any(not node['is_label'] for node in nodes):
        raise ValidationError({'items': EMPTY_DOCUMENT_MESSAGE})
    return nodes


def leaf_subtotal(nodes: Iterable) -> int:
    """Sum of every leaf subtotal, grouped or standalone."""
    total = 0
    for node in nodes:
        is_label = node['is_label'] if isinstance(node, dict) else node.is_label
        if is_label:
            continue
        total += (node['subtotal'] if isinstance(node, dict) else node.subtotal) or 0
    return total


def group_totals(items: Iterable) -> dict[int, int]:
    """Map label id -> sum of its children's subtotals, derived on every call."""
    items = list(items)
    totals = {item.pk: 0 for item in items if item.is_label}
    for item in items:
        if item.parent_id in totals:
            totals[item.parent_id] += item.subtotal or 0
    return totals


def replace_items(owner, nodes: List[dict], item_model) -> list:
    """Swap the owner's whole item set for ``nodes`` in one transaction."""
    owner_field = item_model.owner_field
    created: list = []
    with transaction.atomic():
        item_model.objects.filter(**{owner_field: owner}).delete()
        for position, node in enumerate(nodes):
            parent_index = node.get('parent_index')
            item = item_model(
                parent=created[parent_index] if parent_index is not None else None,
                is_label=node['is_label'],
                description=node['description'],
                quantity=node['quantity'],
                unit=node['unit'],
                unit_price=node['unit_price'],
                subtotal=node['subtotal'],
                position=position,
                **{owner_field: owner},
            )
            try:
                item.full_clean()
            except DjangoValidationError as exc:
                raise ValidationError({'items': exc.messages}) from exc
            item.save()
            created.append(item)
    logger.info(
        "Stored %s item(s) for %s %s", len(created), owner._meta.model_name, owner.pk,
    )
    return created


def tree_problems(items: Iterable) -> List[str]:
    """Describe every broken parent link in a stored item set."""
    items = list(items)
    by_id = {item.pk: item for item in items}
    problems = []
    for item in items:
        if item.parent_id is None:
            continue
        parent = by_id.get(item.parent_id)
        if item.parent_id == item.pk:
            problems.append(f"item {item.pk} is its own parent")
        elif parent is None:
            problems.append(f"item {item.pk} points at label {item.parent_id} outside its document")
        elif not parent.is_label:
            problems.append(f"item {item.pk} is grouped under non-label {parent.pk}")
        elif parent.parent_id is not None:
            problems.append(f"label {parent.pk} is nested under {parent.parent_id}")
        if item.is_label:
            problems.append(f"label {item.pk} has a parent")
    return problems


def items_to_submission(items: Iterable) -> dict[str, list]:
    """Turn a stored item set back into ``labels``/``items`` submission form."""
    items = list(items)
    labels = []
    label_children: dict[int, list] = {}
    standalone = []
    for item in items:
        if item.is_label:
            children: list = []
            label_children[item.pk] = children
            labels.append({'description': item.description, 'items': children})
    for item in items:
        if item.is_label:
            continue
        payload = {
            'description': item.description,
            'quantity': item.quantity,
            'unit': item.unit,
            'unit_price': item.unit_price,
        }
        if item.parent_id in label_children:
            label_children[item.parent_id].append(payload)
        else:
            standalone.append(payload)
    return {'labels': labels, 'items': standalone}
