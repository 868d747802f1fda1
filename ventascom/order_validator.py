# Order Validator - resolves draft items against the catalog
# Pure and deterministic: same drafts + same reference data -> same items

import logging
from typing import List, Optional, Sequence

from .entity_matcher import (
    find_best_client,
    find_best_product,
    find_best_variant,
    find_products_with_variant,
    find_similar_clients,
    find_similar_products,
)
from .models import Client, DraftLineItem, ItemStatus, OrderLineItem, Product, Variant

logger = logging.getLogger(__name__)

MSG_CLIENT_NOT_FOUND = 'No se encontró el cliente "{}"'
MSG_PRODUCT_NOT_FOUND = 'No se encontró el producto "{}"'
MSG_PRODUCT_NOT_SPECIFIED = 'No se especificó producto'
MSG_PRODUCT_INFERRED = 'Producto inferido por la variante "{}": {}'
MSG_PRODUCT_AMBIGUOUS = 'Producto inferido por la variante "{}", varios productos posibles: {}'
MSG_NO_VARIANTS = 'El producto no tiene variantes disponibles'
MSG_VARIANT_NOT_SPECIFIED = 'No se especificó variante, seleccione una'
MSG_VARIANT_NOT_FOUND = 'No se encontró la variante "{}"'
MSG_QUANTITY_ASSUMED = 'No se especificó cantidad, se asume 1'


def downgrade(status: str, to: str) -> str:
    """Raise severity, never lower it"""
    return ItemStatus.worst([status, to])


def analyze_drafts(drafts: Sequence[DraftLineItem], clients: Sequence[Client],
                   products: Sequence[Product]) -> List[OrderLineItem]:
    """Attach ranked client/product suggestions to each draft for later review"""
    analyzed = []
    for draft in drafts:
        analyzed.append(OrderLineItem.from_draft(
            draft,
            client_suggestions=find_similar_clients(draft.client_name, clients),
            product_suggestions=(
                find_similar_products(draft.product_name, products)
                if not draft.product_inferred else []
            ),
        ))
    return analyzed


def resolve_variant(product: Product, hint: str, issues: List[str], status: str):
    """Variant rules shared with refinement; returns (variant, status)"""
    variants = list(product.variants or [])
    if not variants:
        issues.append(MSG_NO_VARIANTS)
        return None, downgrade(status, ItemStatus.WARNING)
    if not hint:
        issues.append(MSG_VARIANT_NOT_SPECIFIED)
        return None, downgrade(status, ItemStatus.WARNING)
    variant = find_best_variant(hint, variants)
    if variant is None:
        issues.append(MSG_VARIANT_NOT_FOUND.format(hint))
        return None, downgrade(status, ItemStatus.WARNING)
    return variant, status


def _infer_product(draft: DraftLineItem, products: Sequence[Product],
                   issues: List[str], status: str):
    candidates = find_products_with_variant(draft.variant_hint, products)
    if not candidates:
        if draft.variant_hint:
            issues.append(MSG_PRODUCT_NOT_FOUND.format(draft.variant_hint))
        else:
            issues.append(MSG_PRODUCT_NOT_SPECIFIED)
        return None, ItemStatus.ERROR

    product = candidates[0]
    if len(candidates) > 1:
        names = ', '.join(p.name for p in candidates)
        issues.append(MSG_PRODUCT_AMBIGUOUS.format(draft.variant_hint, names))
    else:
        issues.append(MSG_PRODUCT_INFERRED.format(draft.variant_hint, product.name))
    return product, downgrade(status, ItemStatus.WARNING)


def validate_item(draft: DraftLineItem, clients: Sequence[Client],
                  products: Sequence[Product]) -> OrderLineItem:
    issues: List[str] = []
    status = ItemStatus.VALID

    client_match = find_best_client(draft.client_name, clients)
    if client_match is None:
        issues.append(MSG_CLIENT_NOT_FOUND.format(draft.client_name))
        status = ItemStatus.ERROR

    if draft.product_inferred:
        product_match, status = _infer_product(draft, products, issues, status)
    else:
        product_match = find_best_product(draft.product_name, products)
        if product_match is None:
            issues.append(MSG_PRODUCT_NOT_FOUND.format(draft.product_name))
            status = ItemStatus.ERROR

    variant_match: Optional[Variant] = None
    if product_match is not None:
        variant_match, status = resolve_variant(product_match, draft.variant_hint, issues, status)

    if draft.quantity_assumed:
        issues.append(MSG_QUANTITY_ASSUMED)
        status = downgrade(status, ItemStatus.WARNING)

    item = OrderLineItem.from_draft(
        draft,
        client_match=client_match,
        product_match=product_match,
        variant_match=variant_match,
        status=status if issues else ItemStatus.VALID,
        issues=issues,
    )
    if isinstance(draft, OrderLineItem):
        item.client_suggestions = list(draft.client_suggestions)
        item.product_suggestions = list(draft.product_suggestions)
    return item


def validate_orders(drafts: Sequence[DraftLineItem], clients: Sequence[Client],
                    products: Sequence[Product]) -> List[OrderLineItem]:
    """Match every draft against clients/products and annotate status and issues"""
    items = [validate_item(draft, clients, products) for draft in drafts]
    errors = sum(1 for i in items if i.status == ItemStatus.ERROR)
    warnings = sum(1 for i in items if i.status == ItemStatus.WARNING)
    logger.debug("Validated %d item(s): %d error, %d warning", len(items), errors, warnings)
    return items
