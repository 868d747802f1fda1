# Tests for client grouping, order commit and the catalog

import json
from unittest.mock import MagicMock

import requests

from ventascom.catalog_client import CatalogClient, StaticCatalog
from ventascom.grouping import client_key, commit_groups, group_orders, order_item_payload
from ventascom.models import Client, ItemStatus, OrderLineItem, Product, Variant


DANIEL = Client(id='c1', name='Daniel')
PANALES = Product(id='p1', name='Pañales', variants=(Variant(id='v1', name='M', price=10),))


def item(client_name, client=None, status=ItemStatus.VALID, quantity=1):
    return OrderLineItem(
        client_name=client_name, product_name='pañales', variant_hint='M', quantity=quantity,
        client_match=client, product_match=PANALES, variant_match=PANALES.variants[0],
        status=status,
    )


class TestGrouping:
    """Test client-centric grouping"""

    def test_groups_by_resolved_client(self):
        items = [item('Danel', DANIEL), item('Carlos'), item('daniel', DANIEL, ItemStatus.WARNING)]

        groups = group_orders(items)

        assert [g.client_name for g in groups] == ['Daniel', 'Carlos']
        assert len(groups[0].items) == 2
        assert groups[0].status == ItemStatus.WARNING

    def test_unresolved_names_grouped_case_insensitively(self):
        groups = group_orders([item('Carlos'), item('carlos ')])

        assert len(groups) == 1
        assert client_key(groups[0].items[0]) == 'name:carlos'

    def test_payload(self):
        payload = order_item_payload(item('Daniel', DANIEL, quantity=3))

        assert payload == {
            'product_id': 'p1',
            'product_name': 'Pañales',
            'variant_id': 'v1',
            'variant_name': 'M',
            'quantity': 3,
        }


class TestCommit:
    """Test saving grouped orders"""

    def test_commit_skips_unresolved_and_errors(self):
        catalog = StaticCatalog([DANIEL], [PANALES])
        maria = Client(id='c2', name='María')
        groups = group_orders([
            item('Daniel', DANIEL),
            item('Carlos', status=ItemStatus.ERROR),
            item('María', maria, ItemStatus.ERROR),
        ])

        report = commit_groups(catalog, groups)

        assert len(report['saved']) == 1
        assert catalog.orders[0]['client_id'] == 'c1'
        assert [s['client'] for s in report['skipped']] == ['Carlos', 'María']

    def test_commit_without_warnings(self):
        catalog = StaticCatalog([DANIEL], [PANALES])
        groups = group_orders([item('Daniel', DANIEL, ItemStatus.WARNING)])

        report = commit_groups(catalog, groups, include_warnings=False)

        assert report['saved'] == []
        assert catalog.orders == []


class TestStaticCatalog:
    """Test the file-backed catalog"""

    def test_from_file(self, tmp_path):
        path = tmp_path / 'catalog.json'
        path.write_text(json.dumps({
            'clients': [{'id': 'c1', 'name': 'Daniel', 'phone': '555'}],
            'products': [{'id': 'p1', 'name': 'Pañales', 'variants': [{'id': 'v1', 'name': 'M', 'price': '10'}]}],
        }), encoding='utf-8')

        catalog = StaticCatalog.from_file(path)

        assert catalog.list_clients() == [Client(id='c1', name='Daniel', phone='555')]
        assert catalog.list_products()[0].variants[0].price == 10.0

    def test_missing_file(self, tmp_path):
        catalog = StaticCatalog.from_file(tmp_path / 'nope.json')

        assert catalog.list_clients() == []

    def test_client_crud(self):
        catalog = StaticCatalog()

        client = catalog.create_client('Daniel')
        catalog.update_client(client.id, phone='555')

        assert catalog.list_clients()[0].phone == '555'
        assert catalog.delete_client(client.id) is True
        assert catalog.delete_client(client.id) is False

    def test_product_crud(self):
        catalog = StaticCatalog()

        product = catalog.create_product('Pañales')
        updated = catalog.update_product(product.id, variants=[Variant(id='v1', name='M')])

        assert updated.name == 'Pañales'
        assert updated.variants[0].name == 'M'
        assert catalog.delete_product(product.id) is True


class TestCatalogClient:
    """Test the REST catalog against a mocked session"""

    def setup_method(self):
        self.client = CatalogClient('https://example.supabase.co', api_key='key')
        self.client.session = MagicMock()

    def respond(self, status_code=200, payload=None):
        response = MagicMock()
        response.status_code = status_code
        response.content = b'x' if payload is not None else b''
        response.json.return_value = payload
        response.text = ''
        self.client.session.request.return_value = response

    def test_list_products_skips_malformed_rows(self):
        self.respond(payload=[
            {'id': 'p1', 'name': 'Pañales', 'variants': [{'id': 'v1', 'name': 'M', 'price': 10}]},
            {'name': 'sin id'},
        ])

        products = self.client.list_products()

        assert [p.id for p in products] == ['p1']
        method, url = self.client.session.request.call_args[0]
        assert method == 'GET'
        assert url == 'https://example.supabase.co/rest/v1/products'

    def test_save_order(self):
        self.respond(201, [{'id': 'o1', 'client_id': 'c1'}])

        order = self.client.save_order('c1', [{'product_id': 'p1', 'quantity': 2}])

        assert order['id'] == 'o1'
        assert self.client.session.request.call_args[1]['json']['client_id'] == 'c1'

    def test_http_error_returns_none(self):
        self.respond(500, None)

        assert self.client.create_client('Daniel') is None
        assert self.client.list_clients() == []

    def test_offline(self):
        self.client.session.request.side_effect = requests.exceptions.ConnectionError()

        assert self.client.delete_product('p1') is False
