# Models - data types shared by the VentasCom order pipeline
# Reference entities, parsed drafts, validated line items and processing tasks

import copy
import time
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional


class ItemStatus:
    VALID = 'valid'
    WARNING = 'warning'
    ERROR = 'error'

    # Higher is more severe
    SEVERITY = {VALID: 0, WARNING: 1, ERROR: 2}

    @classmethod
    def worst(cls, statuses) -> str:
        worst = cls.VALID
        for status in statuses:
            if cls.SEVERITY[status] > cls.SEVERITY[worst]:
                worst = status
        return worst


class Stage:
    NOT_STARTED = 'not_started'
    PARSING = 'parsing'
    ANALYZING = 'analyzing'
    VALIDATING = 'validating'
    AI_PROCESSING = 'ai_processing'
    GROUPING = 'grouping'
    COMPLETED = 'completed'
    FAILED = 'failed'

    ORDER = [NOT_STARTED, PARSING, ANALYZING, VALIDATING, AI_PROCESSING, GROUPING, COMPLETED]
    TERMINAL = (COMPLETED, FAILED)

    # Progress checkpoint reached when a stage starts
    PROGRESS = {
        NOT_STARTED: 0,
        PARSING: 10,
        ANALYZING: 30,
        VALIDATING: 50,
        AI_PROCESSING: 70,
        GROUPING: 90,
        COMPLETED: 100,
        FAILED: 100,
    }

    @classmethod
    def is_terminal(cls, stage: str) -> bool:
        return stage in cls.TERMINAL

    @classmethod
    def can_advance(cls, current: str, new: str) -> bool:
        """Stages only move forward; failed is reachable from any non-terminal stage."""
        if cls.is_terminal(current):
            return False
        if new == cls.FAILED:
            return True
        return cls.ORDER.index(new) > cls.ORDER.index(current)


class TaskStatus:
    PENDING = 'pending'
    SUCCESS = 'success'
    ERROR = 'error'


@dataclass(frozen=True)
class Client:
    id: str
    name: str
    phone: Optional[str] = None

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> 'Client':
        return cls(id=str(data['id']), name=data.get('name') or '', phone=data.get('phone'))


@dataclass(frozen=True)
class Variant:
    id: str
    name: str
    price: float = 0.0

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> 'Variant':
        return cls(
            id=str(data['id']),
            name=data.get('name') or '',
            price=float(data.get('price') or 0),
        )


@dataclass(frozen=True)
class Product:
    id: str
    name: str
    variants: tuple = ()

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'name': self.name,
            'variants': [v.to_dict() for v in self.variants],
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'Product':
        variants = data.get('variants') or []
        return cls(
            id=str(data['id']),
            name=data.get('name') or '',
            variants=tuple(Variant.from_dict(v) for v in variants),
        )


@dataclass
class DraftLineItem:
    """A parsed order entry before any catalog lookup"""
    client_name: str
    product_name: str
    variant_hint: str = ''
    quantity: float = 0
    unit: Optional[str] = None
    product_inferred: bool = False
    quantity_assumed: bool = False

    def merge_key(self):
        return (
            self.client_name.strip().lower(),
            self.product_name.strip().lower(),
            self.variant_hint.strip().lower(),
        )


@dataclass
class OrderLineItem(DraftLineItem):
    """A draft resolved against the catalog, with review status"""
    client_match: Optional[Client] = None
    product_match: Optional[Product] = None
    variant_match: Optional[Variant] = None
    status: str = ItemStatus.VALID
    issues: List[str] = field(default_factory=list)
    client_suggestions: List[Client] = field(default_factory=list)
    product_suggestions: List[Product] = field(default_factory=list)

    @classmethod
    def from_draft(cls, draft: DraftLineItem, **kwargs) -> 'OrderLineItem':
        base = {
            'client_name': draft.client_name,
            'product_name': draft.product_name,
            'variant_hint': draft.variant_hint,
            'quantity': draft.quantity,
            'unit': draft.unit,
            'product_inferred': draft.product_inferred,
            'quantity_assumed': draft.quantity_assumed,
        }
        base.update(kwargs)
        return cls(**base)

    def to_dict(self) -> Dict:
        return {
            'client_name': self.client_name,
            'product_name': self.product_name,
            'variant_hint': self.variant_hint,
            'quantity': self.quantity,
            'unit': self.unit,
            'product_inferred': self.product_inferred,
            'quantity_assumed': self.quantity_assumed,
            'client_match': self.client_match.to_dict() if self.client_match else None,
            'product_match': self.product_match.to_dict() if self.product_match else None,
            'variant_match': self.variant_match.to_dict() if self.variant_match else None,
            'status': self.status,
            'issues': list(self.issues),
            'client_suggestions': [c.to_dict() for c in self.client_suggestions],
            'product_suggestions': [p.to_dict() for p in self.product_suggestions],
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'OrderLineItem':
        def _opt(factory, value):
            return factory(value) if value else None

        return cls(
            client_name=data.get('client_name') or '',
            product_name=data.get('product_name') or '',
            variant_hint=data.get('variant_hint') or '',
            quantity=data.get('quantity') or 0,
            unit=data.get('unit'),
            product_inferred=bool(data.get('product_inferred')),
            quantity_assumed=bool(data.get('quantity_assumed')),
            client_match=_opt(Client.from_dict, data.get('client_match')),
            product_match=_opt(Product.from_dict, data.get('product_match')),
            variant_match=_opt(Variant.from_dict, data.get('variant_match')),
            status=data.get('status') or ItemStatus.VALID,
            issues=list(data.get('issues') or []),
            client_suggestions=[Client.from_dict(c) for c in data.get('client_suggestions') or []],
            product_suggestions=[Product.from_dict(p) for p in data.get('product_suggestions') or []],
        )


@dataclass
class GroupedOrder:
    client_key: str
    client_name: str
    client_match: Optional[Client]
    items: List[OrderLineItem] = field(default_factory=list)

    @property
    def status(self) -> str:
        return ItemStatus.worst(item.status for item in self.items)


@dataclass
class ProcessingTask:
    """One run of the pipeline for a submitted message"""
    id: str
    message: str
    stage: str = Stage.NOT_STARTED
    status: str = TaskStatus.PENDING
    progress: int = 0
    error: Optional[str] = None
    result: Optional[List[OrderLineItem]] = None
    raw_response: Optional[Any] = None
    timestamp: float = field(default_factory=time.time)
    created_at: float = field(default_factory=time.time)
    synced: bool = False

    @property
    def is_terminal(self) -> bool:
        return Stage.is_terminal(self.stage)

    def copy(self) -> 'ProcessingTask':
        return copy.deepcopy(self)

    def to_snapshot(self) -> Dict:
        """Shape exposed to UI consumers"""
        snapshot = {
            'id': self.id,
            'message': self.message,
            'stage': self.stage,
            'status': self.status,
            'progress': int(self.progress),
            'timestamp': self.timestamp,
        }
        if self.error:
            snapshot['error'] = self.error
        if self.result is not None:
            snapshot['result'] = [item.to_dict() for item in self.result]
        return snapshot

    def to_dict(self) -> Dict:
        data = self.to_snapshot()
        data['result'] = [item.to_dict() for item in self.result] if self.result is not None else None
        data['error'] = self.error
        data['raw_response'] = self.raw_response
        data['created_at'] = self.created_at
        data['synced'] = self.synced
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'ProcessingTask':
        result = data.get('result')
        return cls(
            id=data['id'],
            message=data.get('message') or '',
            stage=data.get('stage') or Stage.NOT_STARTED,
            status=data.get('status') or TaskStatus.PENDING,
            progress=int(data.get('progress') or 0),
            error=data.get('error'),
            result=[OrderLineItem.from_dict(i) for i in result] if result is not None else None,
            raw_response=data.get('raw_response'),
            timestamp=float(data.get('timestamp') or time.time()),
            created_at=float(data.get('created_at') or data.get('timestamp') or time.time()),
            synced=bool(data.get('synced')),
        )
