# Catalog Client - clients, products and orders in the reference store
# Supabase PostgREST over requests; StaticCatalog serves a JSON file or in-memory lists

import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

import requests

from .models import Client, Product, Variant

logger = logging.getLogger(__name__)


class CatalogClient:
    """REST client for the clients/products/orders tables"""

    def __init__(self, base_url: str, api_key: str = None, timeout: int = 15):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = requests.Session()
        if api_key:
            self.session.headers.update({
                'apikey': api_key,
                'Authorization': f'Bearer {api_key}',
            })
        self.session.headers.update({
            'Content-Type': 'application/json',
            'Prefer': 'return=representation',
            'User-Agent': 'VentasCom-Order-Agent/1.0'
        })

    def _table(self, name: str) -> str:
        return f"{self.base_url}/rest/v1/{name}"

    def _request(self, method: str, table: str, params=None, payload=None):
        """Run a request; returns decoded JSON rows or None on failure"""
        try:
            response = self.session.request(
                method, self._table(table), params=params, json=payload, timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"{method} {table} failed: {e}")
            return None

        if response.status_code >= 400:
            logger.error(f"{method} {table} returned {response.status_code}: {response.text}")
            return None
        if not response.content:
            return []
        try:
            return response.json()
        except ValueError:
            logger.error(f"{method} {table} returned non-JSON body")
            return None

    @staticmethod
    def _first(rows):
        if isinstance(rows, list):
            return rows[0] if rows else None
        return rows

    def list_clients(self) -> List[Client]:
        rows = self._request('GET', 'clients', params={'select': '*', 'order': 'name'}) or []
        return [Client.from_dict(r) for r in rows]

    def create_client(self, name: str, phone: str = None) -> Optional[Client]:
        row = self._first(self._request('POST', 'clients', payload={'name': name, 'phone': phone}))
        return Client.from_dict(row) if row else None

    def update_client(self, client_id: str, **updates) -> Optional[Client]:
        row = self._first(self._request('PATCH', 'clients', params={'id': f'eq.{client_id}'}, payload=updates))
        return Client.from_dict(row) if row else None

    def delete_client(self, client_id: str) -> bool:
        return self._request('DELETE', 'clients', params={'id': f'eq.{client_id}'}) is not None

    def list_products(self) -> List[Product]:
        rows = self._request('GET', 'products', params={'select': '*', 'order': 'name'}) or []
        products = []
        for row in rows:
            try:
                products.append(Product.from_dict(row))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed product {row.get('id')}: {e}")
        return products

    def create_product(self, name: str, variants: List[Variant] = None) -> Optional[Product]:
        payload = {'name': name, 'variants': [v.to_dict() for v in variants or []]}
        row = self._first(self._request('POST', 'products', payload=payload))
        return Product.from_dict(row) if row else None

    def update_product(self, product_id: str, name: str = None,
                       variants: List[Variant] = None) -> Optional[Product]:
        updates = {'updated_at': datetime.now(timezone.utc).isoformat()}
        if name is not None:
            updates['name'] = name
        if variants is not None:
            updates['variants'] = [v.to_dict() for v in variants]
        row = self._first(self._request('PATCH', 'products', params={'id': f'eq.{product_id}'}, payload=updates))
        return Product.from_dict(row) if row else None

    def delete_product(self, product_id: str) -> bool:
        return self._request('DELETE', 'products', params={'id': f'eq.{product_id}'}) is not None

    def save_order(self, client_id: str, items: List[Dict]) -> Optional[Dict]:
        """Append an order; items are product/variant rows with quantity"""
        row = self._first(self._request('POST', 'orders', payload={'client_id': client_id, 'items': items}))
        if row:
            logger.info(f"Order saved for client {client_id} ({len(items)} item(s))")
        return row


class StaticCatalog:
    """In-memory catalog, optionally loaded from a JSON file"""

    def __init__(self, clients: List[Client] = None, products: List[Product] = None):
        self.clients: List[Client] = list(clients or [])
        self.products: List[Product] = list(products or [])
        self.orders: List[Dict] = []

    @classmethod
    def from_file(cls, path) -> 'StaticCatalog':
        """File shape: {"clients": [...], "products": [{"variants": [...]}]}"""
        path = Path(path)
        if not path.exists():
            logger.warning(f"Catalog file {path} not found, using empty catalog")
            return cls()
        with open(path, encoding='utf-8') as f:
            data = json.load(f)
        return cls(
            clients=[Client.from_dict(c) for c in data.get('clients', [])],
            products=[Product.from_dict(p) for p in data.get('products', [])],
        )

    def list_clients(self) -> List[Client]:
        return list(self.clients)

    def list_products(self) -> List[Product]:
        return list(self.products)

    def create_client(self, name: str, phone: str = None) -> Client:
        client = Client(id=str(uuid.uuid4()), name=name, phone=phone)
        self.clients.append(client)
        return client

    def update_client(self, client_id: str, **updates) -> Optional[Client]:
        for i, client in enumerate(self.clients):
            if client.id == client_id:
                data = client.to_dict()
                data.update(updates)
                self.clients[i] = Client.from_dict(data)
                return self.clients[i]
        return None

    def delete_client(self, client_id: str) -> bool:
        before = len(self.clients)
        self.clients = [c for c in self.clients if c.id != client_id]
        return len(self.clients) < before

    def create_product(self, name: str, variants: List[Variant] = None) -> Product:
        product = Product(id=str(uuid.uuid4()), name=name, variants=tuple(variants or ()))
        self.products.append(product)
        return product

    def update_product(self, product_id: str, name: str = None,
                       variants: List[Variant] = None) -> Optional[Product]:
        for i, product in enumerate(self.products):
            if product.id == product_id:
                self.products[i] = Product(
                    id=product.id,
                    name=product.name if name is None else name,
                    variants=product.variants if variants is None else tuple(variants),
                )
                return self.products[i]
        return None

    def delete_product(self, product_id: str) -> bool:
        before = len(self.products)
        self.products = [p for p in self.products if p.id != product_id]
        return len(self.products) < before

    def save_order(self, client_id: str, items: List[Dict]) -> Dict:
        now = datetime.now(timezone.utc).isoformat()
        order = {
            'id': str(uuid.uuid4()),
            'client_id': client_id,
            'items': list(items),
            'created_at': now,
            'updated_at': now,
        }
        self.orders.append(order)
        return order
