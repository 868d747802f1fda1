# Message Parser - chat order text to draft line items
# Token state machine (client -> quantity -> product -> variant), no catalog knowledge

import re
import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .models import DraftLineItem

logger = logging.getLogger(__name__)

CLIENT = 'client'
QUANTITY = 'quantity'
PRODUCT = 'product'
VARIANT = 'variant'


@dataclass
class _Cursor:
    """Accumulated fields for the line item being built"""
    client: str = ''
    quantity: Optional[float] = None
    product: str = ''
    variant: str = ''
    unit: Optional[str] = None
    # Client name belongs to a previous item; the next word starts a new client
    carry: bool = False

    @property
    def pending(self) -> bool:
        return self.quantity is not None or bool(self.product) or bool(self.variant)

    def reset_item(self):
        self.quantity = None
        self.product = ''
        self.variant = ''
        self.unit = None


class MessageParser:
    """Parser for colloquial Spanish order messages"""

    # Commas between digits are decimal separators, not delimiters
    SEGMENT_SPLIT = re.compile(r'[\n;]+|(?<!\d),|,(?!\d)')

    STOP_WORDS = {'de', 'y', 'para', 'con', 'el', 'la', 'los', 'las'}

    UNIT_WORDS = {
        'kilo', 'kilos', 'kg', 'kgs', 'gr', 'grs', 'gramo', 'gramos',
        'litro', 'litros', 'lt', 'lts', 'ml',
        'unidad', 'unidades', 'uds', 'pieza', 'piezas',
        'pack', 'packs', 'caja', 'cajas', 'bolsa', 'bolsas',
        'docena', 'docenas', 'paquete', 'paquetes',
    }

    NUMBER_WORDS = {
        'un': 1, 'una': 1, 'uno': 1, 'dos': 2, 'tres': 3, 'cuatro': 4,
        'cinco': 5, 'seis': 6, 'siete': 7, 'ocho': 8, 'nueve': 9,
        'diez': 10, 'doce': 12, 'quince': 15, 'veinte': 20,
    }

    NUMBER_RE = re.compile(r'^\d+(?:[.,]\d+)?$')
    # "3x", "x3", "3u" style quantities
    LOOSE_NUMBER_RE = re.compile(r'^(?:x(\d+(?:[.,]\d+)?)|(\d+(?:[.,]\d+)?)(?:x|u|un|uds?))$')
    # "2kg", "500gr" glued number + unit
    GLUED_UNIT_RE = re.compile(r'^(\d+(?:[.,]\d+)?)([a-z]+)$')

    EDGE_PUNCTUATION = '.:!?¡¿()[]{}"\'-*_/'
    SHORT_TOKEN_LEN = 2
    PLACEHOLDER_PRODUCT = ''

    def __init__(self, tolerate_typos: bool = True, detect_partial_names: bool = True):
        self.tolerate_typos = tolerate_typos
        self.detect_partial_names = detect_partial_names

    def parse(self, message: str) -> List[DraftLineItem]:
        """Parse a message into merged draft line items"""
        if not message or not message.strip():
            return []

        items: List[DraftLineItem] = []
        carried_client = ''
        for segment in self._split_segments(message):
            tokens = self._tokenize(segment)
            if not tokens:
                continue
            inherited = carried_client if self.detect_partial_names else ''
            segment_items, last_client = self._parse_segment(tokens, inherited)
            items.extend(segment_items)
            carried_client = last_client

        merged = self._merge(items)
        logger.debug("Parsed %d draft item(s) (%d before merge)", len(merged), len(items))
        return merged

    def _split_segments(self, message: str) -> List[str]:
        segments = [s.strip() for s in self.SEGMENT_SPLIT.split(message)]
        segments = [s for s in segments if s]
        return segments or [message.strip()]

    def _tokenize(self, segment: str) -> List[str]:
        tokens = []
        for raw in segment.split():
            token = raw.strip(self.EDGE_PUNCTUATION)
            if not token or token.lower() in self.STOP_WORDS:
                continue
            if self.tolerate_typos:
                glued = self.GLUED_UNIT_RE.match(token.lower())
                if glued and glued.group(2) in self.UNIT_WORDS:
                    tokens.extend([glued.group(1), glued.group(2)])
                    continue
            tokens.append(token)
        return tokens

    def _number(self, token: Optional[str]) -> Optional[float]:
        if token is None:
            return None
        lowered = token.lower()
        if self.NUMBER_RE.match(lowered):
            return float(lowered.replace(',', '.'))
        if lowered in self.NUMBER_WORDS:
            return float(self.NUMBER_WORDS[lowered])
        if self.tolerate_typos:
            loose = self.LOOSE_NUMBER_RE.match(lowered)
            if loose:
                return float((loose.group(1) or loose.group(2)).replace(',', '.'))
        return None

    def _is_number(self, token: Optional[str]) -> bool:
        return self._number(token) is not None

    def _is_unit(self, token: Optional[str]) -> bool:
        return token is not None and token.lower() in self.UNIT_WORDS

    def _is_short(self, token: Optional[str]) -> bool:
        """Short tokens (sizes like M, XL, 2L codes) read as variant codes"""
        return (
            token is not None
            and len(token) <= self.SHORT_TOKEN_LEN
            and not self._is_number(token)
            and not self._is_unit(token)
        )

    def _parse_segment(self, tokens: List[str], inherited_client: str) -> Tuple[List[DraftLineItem], str]:
        items: List[DraftLineItem] = []
        cur = _Cursor(client=inherited_client, carry=bool(inherited_client))
        state = CLIENT

        for i, token in enumerate(tokens):
            nxt = tokens[i + 1] if i + 1 < len(tokens) else None
            nxt2 = tokens[i + 2] if i + 2 < len(tokens) else None
            number = self._number(token)

            if state == CLIENT:
                if number is not None:
                    cur.quantity = number
                    cur.carry = False
                    state = PRODUCT
                elif cur.client and self._is_short(token) and self._is_number(nxt):
                    cur.variant = token
                    cur.carry = False
                    state = QUANTITY
                else:
                    self._add_client_word(cur, token)
                    if self._is_number(nxt):
                        state = QUANTITY
                    elif self._is_short(nxt) and self._is_number(nxt2):
                        state = VARIANT

            elif state == VARIANT:
                if number is not None:
                    cur.quantity = number
                    state = PRODUCT
                else:
                    cur.variant = token
                    state = QUANTITY

            elif state == QUANTITY:
                if number is not None:
                    cur.quantity = number
                    if cur.variant and not cur.product:
                        # "Cliente M 3": product left implicit
                        self._emit(items, cur)
                        state = CLIENT
                    else:
                        state = PRODUCT
                elif cur.variant:
                    cur.product = token
                    state = PRODUCT
                else:
                    self._add_client_word(cur, token)
                    if not self._is_number(nxt):
                        state = CLIENT

            elif state == PRODUCT:
                if number is not None:
                    if cur.product or cur.variant:
                        self._emit(items, cur)
                    cur.quantity = number
                elif self._is_unit(token) and not cur.product and cur.unit is None:
                    cur.unit = token.lower()
                elif self._is_short(token):
                    cur.variant = token
                    if cur.product:
                        self._emit(items, cur)
                        state = CLIENT
                else:
                    cur.product = f"{cur.product} {token}".strip()

                if state == PRODUCT and (cur.product or cur.variant):
                    if nxt is None:
                        self._emit(items, cur)
                        state = CLIENT
                    elif self._is_number(nxt):
                        # Same client, next quantity
                        self._emit(items, cur)
                        state = QUANTITY

        if cur.pending:
            self._emit(items, cur)

        return items, cur.client

    def _add_client_word(self, cur: _Cursor, token: str):
        if cur.carry or not cur.client:
            cur.client = token
            cur.carry = False
        else:
            cur.client = f"{cur.client} {token}"

    def _emit(self, items: List[DraftLineItem], cur: _Cursor):
        """Close the item under construction; the client name is kept for what follows"""
        if not cur.client:
            logger.debug("Dropping item without client: qty=%s product='%s'", cur.quantity, cur.product)
            cur.reset_item()
            return

        quantity = cur.quantity
        quantity_assumed = quantity is None
        if quantity_assumed:
            quantity = 1.0

        items.append(DraftLineItem(
            client_name=cur.client.strip(),
            product_name=cur.product.strip() or self.PLACEHOLDER_PRODUCT,
            variant_hint=cur.variant.strip(),
            quantity=_as_quantity(quantity),
            unit=cur.unit,
            product_inferred=not cur.product.strip(),
            quantity_assumed=quantity_assumed,
        ))
        cur.reset_item()
        cur.carry = True

    def _merge(self, items: List[DraftLineItem]) -> List[DraftLineItem]:
        merged = {}
        for item in items:
            key = item.merge_key()
            existing = merged.get(key)
            if existing is None:
                merged[key] = DraftLineItem(**vars(item))
                continue
            existing.quantity = _as_quantity(existing.quantity + item.quantity)
            existing.product_inferred = existing.product_inferred or item.product_inferred
            existing.quantity_assumed = existing.quantity_assumed and item.quantity_assumed
            existing.unit = existing.unit or item.unit
        return list(merged.values())


def _as_quantity(value: float):
    return int(value) if float(value).is_integer() else value


def parse_message(message: str, tolerate_typos: bool = True,
                  detect_partial_names: bool = True) -> List[DraftLineItem]:
    return MessageParser(tolerate_typos, detect_partial_names).parse(message)
