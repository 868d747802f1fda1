# Refinement - optional Gemini pass that regroups detected items per client
# Model output is validated and re-resolved against the catalog; any failure keeps the input

import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .entity_matcher import find_best_client, find_best_product, find_by_id, find_exact
from .gemini_client import ConnectionStatus
from .models import Client, ItemStatus, OrderLineItem, Product
from .order_validator import (
    MSG_CLIENT_NOT_FOUND,
    MSG_PRODUCT_NOT_FOUND,
    downgrade,
    resolve_variant,
)

logger = logging.getLogger(__name__)

CONFIDENCE_LEVELS = ('alta', 'media', 'baja')
MSG_LOW_CONFIDENCE = 'Confianza baja en la interpretación, revise el ítem'

REFINEMENT_TEMPERATURE = 0.2
REFINEMENT_MAX_TOKENS = 1000
# Minimum seconds between connection probes after a failed call
RECHECK_INTERVAL = 30.0


class RefinementSchemaError(ValueError):
    """Model reply does not follow the pedidos schema"""


@dataclass(frozen=True)
class RefinedItem:
    producto: str
    cantidad: float
    producto_id: Optional[str] = None
    variante: Optional[str] = None
    variante_id: Optional[str] = None
    confianza: Optional[str] = None


@dataclass(frozen=True)
class RefinedOrder:
    cliente: str
    cliente_id: Optional[str] = None
    items: tuple = ()


@dataclass(frozen=True)
class RefinementResponse:
    pedidos: tuple = ()


@dataclass
class RefinementOutcome:
    items: List[OrderLineItem]
    raw_response: Optional[str] = None
    refined: bool = False
    error: Optional[str] = None


def strip_code_fences(text: str) -> str:
    text = text.strip()
    text = re.sub(r"^```(?:json)?\s*", "", text, flags=re.IGNORECASE)
    text = re.sub(r"\s*```$", "", text)
    return text.strip()


def _optional_str(value, field_name: str) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise RefinementSchemaError(f"'{field_name}' must be a string")
    value = str(value).strip()
    return value or None


def _required_str(data: dict, field_name: str) -> str:
    value = _optional_str(data.get(field_name), field_name)
    if not value:
        raise RefinementSchemaError(f"'{field_name}' is required")
    return value


def _quantity(value) -> float:
    if isinstance(value, bool):
        raise RefinementSchemaError("'cantidad' must be a number")
    if isinstance(value, str):
        try:
            value = float(value.replace(',', '.'))
        except ValueError:
            raise RefinementSchemaError(f"'cantidad' is not numeric: {value!r}")
    if not isinstance(value, (int, float)) or value <= 0:
        raise RefinementSchemaError(f"'cantidad' must be a positive number, got {value!r}")
    return int(value) if float(value).is_integer() else float(value)


def _confidence(value) -> Optional[str]:
    value = _optional_str(value, 'confianza')
    if value is None:
        return None
    value = value.lower()
    if value not in CONFIDENCE_LEVELS:
        raise RefinementSchemaError(f"'confianza' must be one of {CONFIDENCE_LEVELS}, got {value!r}")
    return value


def _parse_item(data) -> RefinedItem:
    if not isinstance(data, dict):
        raise RefinementSchemaError("item is not an object")
    return RefinedItem(
        producto=_required_str(data, 'producto'),
        cantidad=_quantity(data.get('cantidad')),
        producto_id=_optional_str(data.get('producto_id'), 'producto_id'),
        variante=_optional_str(data.get('variante'), 'variante'),
        variante_id=_optional_str(data.get('variante_id'), 'variante_id'),
        confianza=_confidence(data.get('confianza')),
    )


def _parse_order(data) -> RefinedOrder:
    if not isinstance(data, dict):
        raise RefinementSchemaError("pedido is not an object")
    items = data.get('items') or []
    if not isinstance(items, list):
        raise RefinementSchemaError("'items' must be a list")
    return RefinedOrder(
        cliente=_required_str(data, 'cliente'),
        cliente_id=_optional_str(data.get('cliente_id'), 'cliente_id'),
        items=tuple(_parse_item(i) for i in items),
    )


def parse_response(text: str) -> RefinementResponse:
    """Decode and validate the model reply"""
    if not text or not text.strip():
        raise RefinementSchemaError("empty response")
    try:
        data = json.loads(strip_code_fences(text))
    except json.JSONDecodeError as exc:
        raise RefinementSchemaError(f"response is not valid JSON: {exc}") from exc

    if not isinstance(data, dict) or not isinstance(data.get('pedidos'), list):
        raise RefinementSchemaError("response must be an object with a 'pedidos' list")
    return RefinementResponse(pedidos=tuple(_parse_order(p) for p in data['pedidos']))


def _describe_item(item: OrderLineItem) -> str:
    client = item.client_match.name if item.client_match else item.client_name
    client_id = item.client_match.id if item.client_match else "no encontrado"
    product = item.product_match.name if item.product_match else (item.product_name or "no especificado")
    product_id = item.product_match.id if item.product_match else "no encontrado"
    variant = item.variant_match.name if item.variant_match else (item.variant_hint or "No especificada")
    variant_id = item.variant_match.id if item.variant_match else "no encontrada"
    return (
        f"- Cliente: {client} (ID: {client_id}), Producto: {product} (ID: {product_id}), "
        f"Cantidad: {item.quantity}, Variante: {variant} (ID: {variant_id})"
    )


def build_prompt(message: str, items: Sequence[OrderLineItem],
                 clients: Sequence[Client], products: Sequence[Product]) -> str:
    client_context = ", ".join(f"{c.name} (ID: {c.id})" for c in clients) or "ninguno"
    product_lines = []
    for product in products:
        variants = ", ".join(f"{v.name} (ID: {v.id})" for v in product.variants) or "ninguna"
        product_lines.append(f"{product.name} (ID: {product.id}) - Variantes: {variants}")
    product_context = "\n".join(product_lines) or "ninguno"
    detected = "\n".join(_describe_item(i) for i in items)

    return f"""Eres un asistente especializado en procesar pedidos de tiendas. Analiza este mensaje de WhatsApp y detecta TODOS los pedidos para DIFERENTES clientes:

"{message}"

CONTEXTO DE LA APLICACIÓN:
La aplicación tiene los siguientes clientes registrados:
{client_context}

Y los siguientes productos disponibles:
{product_context}

PEDIDOS YA DETECTADOS:
{detected}

INSTRUCCIONES:
1. Identifica TODOS los clientes diferentes mencionados en el mensaje
2. Agrupa múltiples productos pedidos por el mismo cliente
3. Corrige nombres de clientes mal escritos usando la lista de clientes disponibles
4. Identifica productos mencionados que coincidan con los productos disponibles
5. Detecta variantes de productos mencionadas o sugeridas en el contexto
6. Infiere cantidades precisas

FORMATO DE RESPUESTA (JSON con este esquema EXACTO):
{{
  "pedidos": [
    {{
      "cliente": "nombre_corregido",
      "cliente_id": "id_del_cliente",
      "items": [
        {{
          "producto": "nombre_del_producto",
          "producto_id": "id_del_producto",
          "cantidad": 1,
          "variante": "nombre_de_variante",
          "variante_id": "id_de_variante",
          "confianza": "alta|media|baja"
        }}
      ]
    }}
  ]
}}

Cada cliente debe tener su propio objeto en "pedidos". Responde SOLO con el JSON, sin texto adicional."""


class OrderRefiner:
    """Runs the Gemini pass and reconciles its answer with the catalog"""

    def __init__(self, text_client, temperature: float = REFINEMENT_TEMPERATURE,
                 max_output_tokens: int = REFINEMENT_MAX_TOKENS,
                 recheck_interval: float = RECHECK_INTERVAL,
                 clock=time.monotonic):
        self.text_client = text_client
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.recheck_interval = recheck_interval
        self.clock = clock
        self._last_probe: Optional[float] = None

    def is_available(self) -> bool:
        """Connected, or a connection probe succeeds (throttled after errors)"""
        if self.text_client is None:
            return False
        status = self.text_client.get_connection_status()
        if status == ConnectionStatus.CONNECTED:
            return True
        if status == ConnectionStatus.ERROR:
            now = self.clock()
            if self._last_probe is not None and now - self._last_probe < self.recheck_interval:
                return False
            self._last_probe = now
        elif status != ConnectionStatus.DISCONNECTED:
            return False
        return bool(self.text_client.check_connection())

    def refine(self, message: str, items: List[OrderLineItem], clients: Sequence[Client],
               products: Sequence[Product]) -> RefinementOutcome:
        """Refined items, or the input items unchanged when anything goes wrong"""
        if not items:
            logger.info("Skipping AI refinement: no items detected")
            return RefinementOutcome(items=items)

        raw = None
        try:
            if not self.is_available():
                logger.info("Skipping AI refinement: text service not connected")
                return RefinementOutcome(items=items)

            prompt = build_prompt(message, items, clients, products)
            raw = self.text_client.generate_content(
                prompt,
                temperature=self.temperature,
                max_output_tokens=self.max_output_tokens,
            )
            if not raw:
                logger.warning("AI refinement returned nothing, keeping detected items")
                return RefinementOutcome(items=items, error="empty response")

            response = parse_response(raw)
            refined = self.reconcile(response, clients, products)
        except Exception as e:
            logger.warning(f"AI refinement failed, keeping detected items: {e}")
            return RefinementOutcome(items=items, raw_response=raw, error=str(e))

        if not refined:
            logger.info("AI refinement produced no items, keeping detected items")
            return RefinementOutcome(items=items, raw_response=raw)

        logger.info(f"AI refinement produced {len(refined)} item(s) for {len(response.pedidos)} client(s)")
        return RefinementOutcome(items=refined, raw_response=raw, refined=True)

    def reconcile(self, response: RefinementResponse, clients: Sequence[Client],
                  products: Sequence[Product]) -> List[OrderLineItem]:
        """Never trust model ids or names: resolve everything against the catalog"""
        result = []
        for order in response.pedidos:
            client = (
                find_by_id(order.cliente_id, clients)
                or find_exact(order.cliente, clients)
                or find_best_client(order.cliente, clients)
            )
            for refined in order.items:
                result.append(self._reconcile_item(order, refined, client, products))
        return result

    def _reconcile_item(self, order: RefinedOrder, refined: RefinedItem,
                        client: Optional[Client], products: Sequence[Product]) -> OrderLineItem:
        issues: List[str] = []
        status = ItemStatus.VALID

        if client is None:
            issues.append(MSG_CLIENT_NOT_FOUND.format(order.cliente))
            status = ItemStatus.ERROR

        product = (
            find_by_id(refined.producto_id, products)
            or find_exact(refined.producto, products)
            or find_best_product(refined.producto, products)
        )
        variant = None
        if product is None:
            issues.append(MSG_PRODUCT_NOT_FOUND.format(refined.producto))
            status = ItemStatus.ERROR
        else:
            variant = find_by_id(refined.variante_id, product.variants)
            if variant is None:
                variant, status = resolve_variant(product, refined.variante or '', issues, status)

        if refined.confianza == 'baja':
            issues.append(MSG_LOW_CONFIDENCE)
            status = downgrade(status, ItemStatus.WARNING)

        return OrderLineItem(
            client_name=order.cliente,
            product_name=refined.producto,
            variant_hint=refined.variante or '',
            quantity=refined.cantidad,
            client_match=client,
            product_match=product,
            variant_match=variant,
            status=status if issues else ItemStatus.VALID,
            issues=issues,
        )
