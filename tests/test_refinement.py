# Tests for AI refinement

import json

import pytest
from ventascom.gemini_client import ConnectionStatus, StubTextClient
from ventascom.models import Client, DraftLineItem, ItemStatus, Product, Variant
from ventascom.order_validator import MSG_VARIANT_NOT_SPECIFIED, validate_orders
from ventascom.refinement import (
    MSG_LOW_CONFIDENCE,
    OrderRefiner,
    RefinementSchemaError,
    build_prompt,
    parse_response,
    strip_code_fences,
)


CLIENTS = [Client(id='c1', name='Daniel'), Client(id='c2', name='María')]

PRODUCTS = [
    Product(id='p1', name='Pañales', variants=(Variant(id='v1', name='M', price=10),)),
    Product(id='p2', name='Camiseta', variants=(
        Variant(id='v2', name='S', price=20),
        Variant(id='v3', name='L', price=22),
    )),
]


def reply(*pedidos):
    return json.dumps({'pedidos': list(pedidos)}, ensure_ascii=False)


def detected_items():
    drafts = [DraftLineItem(client_name='Daniel', product_name='', variant_hint='M',
                            quantity=3, product_inferred=True)]
    return validate_orders(drafts, CLIENTS, PRODUCTS)


class TestParseResponse:
    """Test schema validation of model replies"""

    def test_valid_reply(self):
        text = reply({
            'cliente': 'Daniel',
            'cliente_id': 'c1',
            'items': [{'producto': 'Pañales', 'cantidad': 3, 'variante': 'M', 'confianza': 'Alta'}],
        })

        response = parse_response(text)

        assert len(response.pedidos) == 1
        order = response.pedidos[0]
        assert order.cliente == 'Daniel'
        assert order.items[0].cantidad == 3
        assert order.items[0].confianza == 'alta'

    def test_code_fences_stripped(self):
        text = "```json\n" + reply() + "\n```"

        assert strip_code_fences(text) == reply()
        assert parse_response(text).pedidos == ()

    def test_numeric_string_quantity(self):
        text = reply({'cliente': 'Daniel', 'items': [{'producto': 'Pañales', 'cantidad': '2,5'}]})

        assert parse_response(text).pedidos[0].items[0].cantidad == 2.5

    @pytest.mark.parametrize("text", [
        "",
        "no es json",
        "[]",
        json.dumps({'orders': []}),
        reply({'items': []}),
        reply({'cliente': 'Daniel', 'items': 'Pañales'}),
        reply({'cliente': 'Daniel', 'items': [{'cantidad': 1}]}),
        reply({'cliente': 'Daniel', 'items': [{'producto': 'Pañales', 'cantidad': -1}]}),
        reply({'cliente': 'Daniel', 'items': [{'producto': 'Pañales', 'cantidad': True}]}),
        reply({'cliente': 'Daniel', 'items': [{'producto': 'Pañales', 'cantidad': 1, 'confianza': 'total'}]}),
        reply({'cliente': ['Daniel'], 'items': []}),
    ])
    def test_malformed_replies_rejected(self, text):
        with pytest.raises(RefinementSchemaError):
            parse_response(text)


class TestBuildPrompt:
    def test_includes_message_and_catalog(self):
        prompt = build_prompt("Daniel M 3", detected_items(), CLIENTS, PRODUCTS)

        assert '"Daniel M 3"' in prompt
        assert "Daniel (ID: c1)" in prompt
        assert "Pañales (ID: p1) - Variantes: M (ID: v1)" in prompt
        assert '"pedidos"' in prompt


class TestOrderRefiner:
    """Test refinement and fallback"""

    def test_refined_items_resolved_against_catalog(self):
        client = StubTextClient(responses=[reply({
            'cliente': 'Daniel',
            'cliente_id': 'c1',
            'items': [{'producto': 'Pañales', 'producto_id': 'p1', 'cantidad': 3,
                       'variante': 'M', 'variante_id': 'v1', 'confianza': 'alta'}],
        })])
        refiner = OrderRefiner(client)

        outcome = refiner.refine("Daniel M 3", detected_items(), CLIENTS, PRODUCTS)

        assert outcome.refined is True
        assert outcome.raw_response is not None
        assert len(outcome.items) == 1
        item = outcome.items[0]
        assert item.client_match.id == 'c1'
        assert item.product_match.id == 'p1'
        assert item.variant_match.id == 'v1'
        assert item.status == ItemStatus.VALID
        assert item.issues == []
        assert len(client.prompts) == 1

    def test_model_ids_not_trusted(self):
        """Test unknown ids fall back to name and fuzzy lookup"""
        client = StubTextClient(responses=[reply({
            'cliente': 'Danel',
            'cliente_id': 'nope',
            'items': [{'producto': 'camisa', 'producto_id': 'zzz', 'cantidad': 2, 'variante': 'L'}],
        })])

        outcome = OrderRefiner(client).refine("Danel 2 camisa L", detected_items(), CLIENTS, PRODUCTS)

        item = outcome.items[0]
        assert item.client_match.id == 'c1'
        assert item.product_match.id == 'p2'
        assert item.variant_match.id == 'v3'
        assert item.quantity == 2

    def test_low_confidence_is_warning(self):
        client = StubTextClient(responses=[reply({
            'cliente': 'María',
            'items': [{'producto': 'Camiseta', 'cantidad': 1, 'variante': 'S', 'confianza': 'baja'}],
        })])

        item = OrderRefiner(client).refine("María camiseta S", detected_items(), CLIENTS, PRODUCTS).items[0]

        assert item.status == ItemStatus.WARNING
        assert MSG_LOW_CONFIDENCE in item.issues

    def test_missing_variant_is_warning(self):
        client = StubTextClient(responses=[reply({
            'cliente': 'María',
            'items': [{'producto': 'Camiseta', 'cantidad': 1}],
        })])

        item = OrderRefiner(client).refine("María 1 camiseta", detected_items(), CLIENTS, PRODUCTS).items[0]

        assert item.status == ItemStatus.WARNING
        assert item.variant_match is None
        assert MSG_VARIANT_NOT_SPECIFIED in item.issues

    def test_unknown_client_is_error(self):
        client = StubTextClient(responses=[reply({
            'cliente': 'Zulema',
            'items': [{'producto': 'Pañales', 'cantidad': 1, 'variante': 'M'}],
        })])

        item = OrderRefiner(client).refine("Zulema M 1", detected_items(), CLIENTS, PRODUCTS).items[0]

        assert item.status == ItemStatus.ERROR
        assert item.client_match is None

    def test_service_error_keeps_input(self):
        items = detected_items()
        client = StubTextClient(error=RuntimeError("quota exceeded"))

        outcome = OrderRefiner(client).refine("Daniel M 3", items, CLIENTS, PRODUCTS)

        assert outcome.refined is False
        assert outcome.items is items
        assert "quota exceeded" in outcome.error

    def test_malformed_reply_keeps_input(self):
        items = detected_items()
        client = StubTextClient(responses=['{"pedidos": "nada"}'])

        outcome = OrderRefiner(client).refine("Daniel M 3", items, CLIENTS, PRODUCTS)

        assert outcome.items is items
        assert outcome.raw_response == '{"pedidos": "nada"}'
        assert outcome.error

    def test_empty_reply_keeps_input(self):
        items = detected_items()

        outcome = OrderRefiner(StubTextClient()).refine("Daniel M 3", items, CLIENTS, PRODUCTS)

        assert outcome.items is items
        assert outcome.refined is False

    def test_no_pedidos_keeps_input(self):
        items = detected_items()

        outcome = OrderRefiner(StubTextClient(responses=[reply()])).refine("Daniel M 3", items, CLIENTS, PRODUCTS)

        assert outcome.items is items

    def test_skipped_when_disconnected(self):
        client = StubTextClient(status=ConnectionStatus.DISCONNECTED)

        outcome = OrderRefiner(client).refine("Daniel M 3", detected_items(), CLIENTS, PRODUCTS)

        assert outcome.refined is False
        assert client.prompts == []

    def test_recovers_after_error(self):
        """Test a failed call does not disable refinement for good"""
        client = StubTextClient(
            responses=[reply({'cliente': 'María', 'items': [{'producto': 'Camiseta', 'cantidad': 1, 'variante': 'S'}]})],
            status=ConnectionStatus.ERROR,
            reachable=True,
        )

        outcome = OrderRefiner(client).refine("María camiseta S", detected_items(), CLIENTS, PRODUCTS)

        assert outcome.refined is True
        assert client.connection_checks == 1
        assert len(client.prompts) == 1

    def test_error_recheck_is_throttled(self):
        now = [100.0]
        client = StubTextClient(status=ConnectionStatus.ERROR, reachable=False)
        refiner = OrderRefiner(client, recheck_interval=30, clock=lambda: now[0])

        assert refiner.is_available() is False
        now[0] += 10
        assert refiner.is_available() is False
        assert client.connection_checks == 1

        now[0] += 25
        client.reachable = True
        assert refiner.is_available() is True
        assert client.connection_checks == 2

    def test_skipped_without_client_or_items(self):
        assert OrderRefiner(None).is_available() is False
        client = StubTextClient()

        outcome = OrderRefiner(client).refine("hola", [], CLIENTS, PRODUCTS)

        assert outcome.items == []
        assert client.prompts == []
