"""
Cart Module
===========
Cart lines and the two cart stores.

Guests keep their cart in a JSON file per guest session. Signed-in
shoppers keep theirs in the cart_items table, keyed by user id and
read back with the joined product relations.
"""

import json
import uuid
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Any, Optional
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

from pricing import parse_price


logger = logging.getLogger(__name__)


class CartError(Exception):
    """Raised for cart lines that break the cart invariants."""
    pass


# ============================================================================
# PRODUCT REFERENCE
# ============================================================================

class ProductKind(Enum):
    """Backing entity of a cart line."""
    MENU_ITEM = "menu_item"
    DISH = "dish"
    LEGACY = "legacy"

    @property
    def table(self) -> str:
        return _KIND_TABLES[self]

    @classmethod
    def from_table(cls, table: str) -> Optional["ProductKind"]:
        for kind, name in _KIND_TABLES.items():
            if name == table:
                return kind
        return None


_KIND_TABLES = {
    ProductKind.MENU_ITEM: "menu_items",
    ProductKind.DISH: "dishes",
    ProductKind.LEGACY: "products",
}


@dataclass(frozen=True)
class ProductRef:
    """Tagged reference to one product row."""
    kind: ProductKind
    id: str

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.id}"


# ============================================================================
# CART LINE
# ============================================================================

@dataclass
class CartLine:
    """
    One product + quantity + variant entry pending purchase.

    resolved holds a product record already attached to the line (the
    joined relation on server rows); the resolver prefers it.
    """
    id: str
    owner_ref: str
    product_ref: ProductRef
    quantity: int = 1
    variant_ref: Optional[str] = None
    combination_ref: Optional[str] = None
    price_at_add: Optional[Decimal] = None
    embedded_snapshot: Optional[Dict[str, Any]] = None
    name: Optional[str] = None
    variant_display: Optional[str] = None
    resolved: Optional[Dict[str, Any]] = field(default=None, compare=False)

    def __post_init__(self):
        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int):
            raise CartError(f"Quantity must be an integer, got {self.quantity!r}")
        if self.quantity < 1:
            raise CartError(f"Quantity must be at least 1, got {self.quantity}")
        if self.variant_ref and self.combination_ref:
            raise CartError(
                "A cart line cannot carry both a variant and a variant combination"
            )

    @property
    def merge_key(self) -> tuple:
        """Lines with equal keys are the same purchase."""
        return (self.product_ref, self.variant_ref, self.combination_ref)

    @classmethod
    def from_row(cls, row: Dict[str, Any], owner_ref: str) -> "CartLine":
        """
        Build a line from a guest JSON row or a cart_items row.

        Raises:
            CartError: No product id or invalid quantity/variant pairing
        """
        kind, product_id = _infer_product_ref(row)
        if not product_id:
            raise CartError(f"Cart row {row.get('id')!r} has no product reference")

        joined = None
        for table in ("menu_items", "dishes", "products"):
            if isinstance(row.get(table), dict):
                joined = row[table]
                break

        embedded = row.get("product") if isinstance(row.get("product"), dict) else None

        price = row.get("price_at_add", row.get("price_at_purchase", row.get("price")))

        return cls(
            id=str(row.get("id") or uuid.uuid4()),
            owner_ref=str(row.get("user_id") or row.get("guest_session_id") or owner_ref),
            product_ref=ProductRef(kind=kind, id=str(product_id)),
            quantity=_coerce_quantity(row.get("quantity", 1)),
            variant_ref=row.get("variant_id") or None,
            combination_ref=row.get("combination_id") or None,
            price_at_add=parse_price(price) if price is not None else None,
            embedded_snapshot=embedded,
            name=row.get("name"),
            variant_display=row.get("variant_display"),
            resolved=joined
        )

    def to_guest_row(self) -> Dict[str, Any]:
        """Serialize into the guest JSON layout."""
        row = {
            "id": self.id,
            "guest_session_id": self.owner_ref,
            "product_kind": self.product_ref.kind.value,
            "quantity": self.quantity,
            "variant_id": self.variant_ref,
            "combination_id": self.combination_ref,
            "variant_display": self.variant_display,
            "name": self.name,
            "product": self.embedded_snapshot,
        }
        if self.product_ref.kind == ProductKind.MENU_ITEM:
            row["menu_item_id"] = self.product_ref.id
        else:
            row["product_id"] = self.product_ref.id
        if self.price_at_add is not None:
            row["price_at_add"] = str(self.price_at_add)
        return row


def _infer_product_ref(row: Dict[str, Any]):
    """Work out (kind, id) from whichever id columns the row carries."""
    explicit = row.get("product_kind")
    if explicit:
        kind = ProductKind(explicit)
        product_id = row.get("menu_item_id") if kind == ProductKind.MENU_ITEM else row.get("product_id")
        return kind, product_id

    if row.get("menu_item_id"):
        return ProductKind.MENU_ITEM, row["menu_item_id"]

    if isinstance(row.get("dishes"), dict):
        return ProductKind.DISH, row.get("product_id") or row["dishes"].get("id")

    if isinstance(row.get("products"), dict):
        return ProductKind.LEGACY, row.get("product_id") or row["products"].get("id")

    embedded = row.get("product")
    if isinstance(embedded, dict) and embedded.get("isMenuItem"):
        return ProductKind.MENU_ITEM, row.get("product_id") or embedded.get("id")

    if row.get("product_id"):
        return ProductKind.DISH, row["product_id"]

    if isinstance(embedded, dict) and embedded.get("id"):
        return ProductKind.LEGACY, embedded["id"]

    return ProductKind.LEGACY, None


def _coerce_quantity(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise CartError(f"Invalid quantity: {value!r}")


def new_guest_session_id() -> str:
    """Issue a fresh guest session token."""
    return str(uuid.uuid4())


# ============================================================================
# STORES
# ============================================================================

class CartStore(ABC):
    """Durable holding of cart lines for one owner."""

    owner_ref: str
    is_guest: bool = False

    @abstractmethod
    async def load(self) -> List[CartLine]:
        ...

    @abstractmethod
    async def add(
        self,
        product_ref: ProductRef,
        quantity: int = 1,
        variant_ref: Optional[str] = None,
        combination_ref: Optional[str] = None,
        snapshot: Optional[Dict[str, Any]] = None,
        price: Optional[Decimal] = None,
        name: Optional[str] = None
    ) -> CartLine:
        ...

    @abstractmethod
    async def update_quantity(self, line_id: str, quantity: int) -> Optional[CartLine]:
        """Set quantity; zero or less removes the line (returns None)."""
        ...

    @abstractmethod
    async def remove(self, line_id: str) -> bool:
        ...

    @abstractmethod
    async def clear(self):
        ...


class GuestCartStore(CartStore):
    """
    Guest cart persisted as one JSON file per guest session.

    Unreadable files are treated as an empty cart; unreadable rows are
    skipped with a warning.
    """

    is_guest = True

    def __init__(self, session_id: str, directory: Path):
        if not session_id:
            raise CartError("Guest session id required")
        self.owner_ref = session_id
        self.directory = Path(directory)
        self.path = self.directory / f"{session_id}.json"

    def _read(self) -> List[CartLine]:
        if not self.path.exists():
            return []

        try:
            rows = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable guest cart {self.path}: {str(e)}")
            return []

        lines = []
        for row in rows if isinstance(rows, list) else []:
            try:
                lines.append(CartLine.from_row(row, self.owner_ref))
            except (CartError, ValueError) as e:
                logger.warning(f"Skipping guest cart row: {str(e)}")
        return lines

    def _write(self, lines: List[CartLine]):
        self.directory.mkdir(parents=True, exist_ok=True)
        payload = [line.to_guest_row() for line in lines]
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        tmp.replace(self.path)

    async def load(self) -> List[CartLine]:
        return self._read()

    async def add(
        self,
        product_ref: ProductRef,
        quantity: int = 1,
        variant_ref: Optional[str] = None,
        combination_ref: Optional[str] = None,
        snapshot: Optional[Dict[str, Any]] = None,
        price: Optional[Decimal] = None,
        name: Optional[str] = None
    ) -> CartLine:
        candidate = CartLine(
            id=str(uuid.uuid4()),
            owner_ref=self.owner_ref,
            product_ref=product_ref,
            quantity=quantity,
            variant_ref=variant_ref,
            combination_ref=combination_ref,
            price_at_add=price,
            embedded_snapshot=snapshot,
            name=name or (snapshot or {}).get("name")
        )

        lines = self._read()
        for line in lines:
            if line.merge_key == candidate.merge_key:
                line.quantity += quantity
                self._write(lines)
                return line

        lines.append(candidate)
        self._write(lines)
        logger.debug(f"Guest cart add {product_ref} x{quantity}")
        return candidate

    async def update_quantity(self, line_id: str, quantity: int) -> Optional[CartLine]:
        if quantity <= 0:
            await self.remove(line_id)
            return None

        lines = self._read()
        for line in lines:
            if line.id == line_id:
                line.quantity = quantity
                self._write(lines)
                return line

        raise CartError(f"Unknown cart line: {line_id}")

    async def remove(self, line_id: str) -> bool:
        lines = self._read()
        kept = [line for line in lines if line.id != line_id]
        if len(kept) == len(lines):
            return False
        self._write(kept)
        return True

    async def clear(self):
        if self.path.exists():
            self.path.unlink()
        logger.info(f"Guest cart cleared for session {self.owner_ref}")


class ServerCartStore(CartStore):
    """Signed-in shopper's cart in the cart_items table."""

    def __init__(self, db, user_id: str):
        if not user_id:
            raise CartError("User id required")
        self.db = db
        self.owner_ref = user_id

    async def load(self) -> List[CartLine]:
        rows = await self.db.fetch_cart_rows(self.owner_ref)

        lines = []
        for row in rows:
            try:
                lines.append(CartLine.from_row(row, self.owner_ref))
            except CartError as e:
                logger.warning(f"Skipping cart row for {self.owner_ref}: {str(e)}")
        return lines

    async def add(
        self,
        product_ref: ProductRef,
        quantity: int = 1,
        variant_ref: Optional[str] = None,
        combination_ref: Optional[str] = None,
        snapshot: Optional[Dict[str, Any]] = None,
        price: Optional[Decimal] = None,
        name: Optional[str] = None
    ) -> CartLine:
        key = (product_ref, variant_ref, combination_ref)
        for line in await self.load():
            if line.merge_key == key:
                line.quantity += quantity
                await self.db.update_cart_quantity(line.id, self.owner_ref, line.quantity)
                return line

        row: Dict[str, Any] = {
            "user_id": self.owner_ref,
            "quantity": quantity,
            "variant_id": variant_ref,
            "combination_id": combination_ref,
        }
        if product_ref.kind == ProductKind.MENU_ITEM:
            row["menu_item_id"] = product_ref.id
        else:
            row["product_id"] = product_ref.id

        # Validate before touching the table
        CartLine(
            id="pending",
            owner_ref=self.owner_ref,
            product_ref=product_ref,
            quantity=quantity,
            variant_ref=variant_ref,
            combination_ref=combination_ref
        )

        stored = await self.db.insert_cart_row(row) or row
        line = CartLine.from_row({**row, **stored}, self.owner_ref)
        line.embedded_snapshot = snapshot
        line.name = name
        line.price_at_add = price
        return line

    async def update_quantity(self, line_id: str, quantity: int) -> Optional[CartLine]:
        if quantity <= 0:
            await self.remove(line_id)
            return None

        await self.db.update_cart_quantity(line_id, self.owner_ref, quantity)
        for line in await self.load():
            if line.id == line_id:
                return line
        return None

    async def remove(self, line_id: str) -> bool:
        await self.db.delete_cart_row(line_id, self.owner_ref)
        return True

    async def clear(self):
        await self.db.clear_cart(self.owner_ref)
        logger.info(f"Server cart cleared for user {self.owner_ref}")
