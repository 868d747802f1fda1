# Tests for entity matching

from ventascom.entity_matcher import (
    find_best,
    find_best_client,
    find_best_product,
    find_best_variant,
    find_by_id,
    find_exact,
    find_products_with_variant,
    find_similar_clients,
)
from ventascom.models import Client, Product, Variant


CLIENTS = [
    Client(id='c1', name='Daniel'),
    Client(id='c2', name='Carlos'),
    Client(id='c3', name='Daniela'),
]

PRODUCTS = [
    Product(id='p1', name='Pañales', variants=(
        Variant(id='v1', name='P', price=9),
        Variant(id='v2', name='M', price=10),
        Variant(id='v3', name='G', price=11),
    )),
    Product(id='p2', name='Aceite', variants=(Variant(id='v4', name='1L', price=8000),)),
    Product(id='p3', name='Arroz'),
]


class TestFindBest:
    """Test best-match lookup"""

    def test_exact_match_ignores_threshold(self):
        clients = [Client(id='x', name='ana')]

        assert find_best("Ana", clients, threshold=1.0) is clients[0]

    def test_exact_beats_containing_candidate(self):
        assert find_best_client("daniel", CLIENTS).id == 'c1'

    def test_fuzzy_match(self):
        assert find_best_client("Danel", CLIENTS).id == 'c1'
        assert find_best_client("Karlos", CLIENTS).id == 'c2'

    def test_below_threshold(self):
        assert find_best_client("Zulema", CLIENTS) is None

    def test_empty_inputs(self):
        assert find_best_client("", CLIENTS) is None
        assert find_best_client("Daniel", []) is None

    def test_tie_keeps_first_candidate(self):
        clients = [Client(id='a', name='Ana Maria'), Client(id='b', name='Ana Marta')]

        assert find_best_client("Ana Mar", clients).id == 'a'
        assert find_best_client("Ana Mar", list(reversed(clients))).id == 'b'

    def test_product_accent_insensitive(self):
        assert find_best_product("panales", PRODUCTS).id == 'p1'

    def test_variant(self):
        variants = PRODUCTS[0].variants

        assert find_best_variant("m", variants).id == 'v2'
        assert find_best_variant("XL", variants) is None


class TestFindSimilar:
    """Test suggestion ranking"""

    def test_ranked_best_first(self):
        suggestions = find_similar_clients("Daniel", CLIENTS)

        assert [c.id for c in suggestions] == ['c1', 'c3']

    def test_limit(self):
        clients = [Client(id=str(i), name=f"Ana {i}") for i in range(6)]

        assert len(find_similar_clients("Ana", clients)) == 3


class TestLookups:
    """Test exact, id and variant-driven lookups"""

    def test_find_exact(self):
        assert find_exact("ACEITE", PRODUCTS).id == 'p2'
        assert find_exact("aceit", PRODUCTS) is None

    def test_find_by_id(self):
        assert find_by_id('c2', CLIENTS).name == 'Carlos'
        assert find_by_id(None, CLIENTS) is None
        assert find_by_id('zz', CLIENTS) is None

    def test_products_with_variant(self):
        assert [p.id for p in find_products_with_variant("M", PRODUCTS)] == ['p1']
        assert find_products_with_variant("1l", PRODUCTS)[0].id == 'p2'
        assert find_products_with_variant("", PRODUCTS) == []
