# Grouping - client-centric view of line items and order commit

import logging
from typing import Dict, List, Sequence

from .models import GroupedOrder, ItemStatus, OrderLineItem

logger = logging.getLogger(__name__)


def client_key(item: OrderLineItem) -> str:
    """Resolved client id when known, otherwise the lowercased written name"""
    if item.client_match is not None:
        return f"id:{item.client_match.id}"
    return f"name:{item.client_name.strip().lower()}"


def group_orders(items: Sequence[OrderLineItem]) -> List[GroupedOrder]:
    """Group items per client in first-seen order; group status is the worst item status"""
    groups: Dict[str, GroupedOrder] = {}
    for item in items:
        key = client_key(item)
        group = groups.get(key)
        if group is None:
            name = item.client_match.name if item.client_match else item.client_name
            group = GroupedOrder(client_key=key, client_name=name, client_match=item.client_match)
            groups[key] = group
        group.items.append(item)
    return list(groups.values())


def order_item_payload(item: OrderLineItem) -> Dict:
    """Row stored in orders.items"""
    return {
        'product_id': item.product_match.id if item.product_match else None,
        'product_name': item.product_match.name if item.product_match else item.product_name,
        'variant_id': item.variant_match.id if item.variant_match else None,
        'variant_name': item.variant_match.name if item.variant_match else item.variant_hint,
        'quantity': item.quantity,
    }


def commit_groups(catalog, groups: Sequence[GroupedOrder], include_warnings: bool = True) -> Dict:
    """
    Save one order per resolved client group.
    Groups without a client match or with error items are skipped.
    """
    report = {'saved': [], 'skipped': []}
    for group in groups:
        if group.client_match is None or group.status == ItemStatus.ERROR:
            report['skipped'].append({'client': group.client_name, 'status': group.status})
            continue
        if group.status == ItemStatus.WARNING and not include_warnings:
            report['skipped'].append({'client': group.client_name, 'status': group.status})
            continue

        order = catalog.save_order(group.client_match.id, [order_item_payload(i) for i in group.items])
        if order is None:
            report['skipped'].append({'client': group.client_name, 'status': 'save_failed'})
        else:
            report['saved'].append(order)

    logger.info(f"Committed {len(report['saved'])} order(s), skipped {len(report['skipped'])}")
    return report
