# Entity matcher - fuzzy lookup of clients, products and variants by name
# Exact (normalized) name wins outright; otherwise best score above a threshold

import logging
from typing import Callable, Iterable, List, Optional, Sequence, Tuple, TypeVar

from .models import Client, Product, Variant
from .similarity import normalize, score

logger = logging.getLogger(__name__)

T = TypeVar('T')

CLIENT_THRESHOLD = 0.7
CLIENT_SUGGESTION_THRESHOLD = 0.6
PRODUCT_THRESHOLD = 0.7
PRODUCT_SUGGESTION_THRESHOLD = 0.65
VARIANT_THRESHOLD = 0.7


def _name_of(candidate) -> str:
    return getattr(candidate, 'name', None) or ''


def _scored(name: str, candidates: Iterable[T], key: Callable[[T], str]) -> List[Tuple[float, T]]:
    return [(score(name, key(c)), c) for c in candidates]


def find_exact(name: str, candidates: Sequence[T], key: Callable[[T], str] = _name_of) -> Optional[T]:
    """First candidate whose normalized name equals the search name."""
    wanted = normalize(name)
    if not wanted:
        return None
    for candidate in candidates:
        if normalize(key(candidate)) == wanted:
            return candidate
    return None


def find_best(name: str, candidates: Sequence[T], threshold: float,
              key: Callable[[T], str] = _name_of) -> Optional[T]:
    """
    Best match for name among candidates, or None.
    Ties keep the first candidate in input order.
    """
    if not normalize(name) or not candidates:
        return None

    exact = find_exact(name, candidates, key)
    if exact is not None:
        return exact

    best, best_score = None, threshold
    for candidate_score, candidate in _scored(name, candidates, key):
        if candidate_score > best_score:
            best, best_score = candidate, candidate_score

    if best is not None:
        logger.debug("Matched '%s' -> '%s' (%.2f)", name, key(best), best_score)
    return best


def find_similar(name: str, candidates: Sequence[T], threshold: float,
                 key: Callable[[T], str] = _name_of, limit: Optional[int] = None) -> List[T]:
    """Candidates scoring above threshold, best first (stable for equal scores)."""
    if not normalize(name) or not candidates:
        return []
    ranked = [(s, c) for s, c in _scored(name, candidates, key) if s > threshold]
    ranked.sort(key=lambda pair: pair[0], reverse=True)
    matches = [c for _, c in ranked]
    return matches[:limit] if limit is not None else matches


def find_best_client(name: str, clients: Sequence[Client]) -> Optional[Client]:
    return find_best(name, clients, CLIENT_THRESHOLD)


def find_similar_clients(name: str, clients: Sequence[Client], limit: int = 3) -> List[Client]:
    return find_similar(name, clients, CLIENT_SUGGESTION_THRESHOLD, limit=limit)


def find_best_product(name: str, products: Sequence[Product]) -> Optional[Product]:
    return find_best(name, products, PRODUCT_THRESHOLD)


def find_similar_products(name: str, products: Sequence[Product], limit: int = 3) -> List[Product]:
    return find_similar(name, products, PRODUCT_SUGGESTION_THRESHOLD, limit=limit)


def find_best_variant(hint: str, variants: Sequence[Variant]) -> Optional[Variant]:
    return find_best(hint, variants, VARIANT_THRESHOLD)


def find_products_with_variant(hint: str, products: Sequence[Product]) -> List[Product]:
    """Products that carry a variant matching hint, used when the product was left implicit."""
    if not normalize(hint):
        return []
    return [p for p in products if p.variants and find_best_variant(hint, p.variants) is not None]


def find_by_id(entity_id, candidates: Sequence[T]) -> Optional[T]:
    if entity_id in (None, ''):
        return None
    wanted = str(entity_id)
    for candidate in candidates:
        if str(getattr(candidate, 'id', '')) == wanted:
            return candidate
    return None
