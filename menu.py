"""
Menu Module
===========
Product resolution for cart lines.

Split into data access (MenuRepository) and the resolution policy
(ProductResolver). The resolver walks an ordered list of strategies and
takes the first product it gets back:

    attached record → authoritative lookup → embedded snapshot → placeholder

The last strategy always answers, so every cart line resolves to
something and checkout keeps working when a product row is deleted or a
foreign key is broken.
"""

import logging
from typing import Dict, List, Any, Optional, Callable, Awaitable, Iterable, Tuple
from datetime import datetime, timedelta
from dataclasses import dataclass
from decimal import Decimal

from prometheus_client import Counter

from cart import CartLine, ProductKind, ProductRef
from pricing import parse_price


logger = logging.getLogger(__name__)


# ============================================================================
# CONFIGURATION
# ============================================================================

CACHE_TTL = 300  # 5 minutes
CACHE_MAX_SIZE = 500


# ============================================================================
# METRICS
# ============================================================================

menu_cache_hits = Counter('menu_cache_hits_total', 'Product cache hits')
menu_cache_misses = Counter('menu_cache_misses_total', 'Product cache misses')
product_resolutions = Counter(
    'product_resolutions_total',
    'Cart line resolutions by winning strategy',
    ['strategy']
)
product_resolver_errors = Counter(
    'product_resolver_errors_total',
    'Resolver strategy exceptions',
    ['strategy']
)


# ============================================================================
# RESOLVED PRODUCT
# ============================================================================

@dataclass(frozen=True)
class ResolvedProduct:
    """
    Authoritative-or-fallback product view used for display and pricing.

    Derived, never persisted.
    """
    id: str
    name: str
    current_price: Decimal
    available: bool
    source_kind: ProductKind
    stock: Optional[int] = None
    image_ref: Optional[str] = None
    is_placeholder: bool = False

    @classmethod
    def from_record(
        cls,
        record: Dict[str, Any],
        kind: ProductKind,
        fallback_id: Optional[str] = None
    ) -> "ResolvedProduct":
        """Normalize a menu_items / dishes / products row or a snapshot."""
        product_id = str(record.get("id") or fallback_id or "")

        stock = record.get("stock_quantity", record.get("stock"))
        try:
            stock = int(stock) if stock is not None else None
        except (TypeError, ValueError):
            stock = None

        available = record.get("is_available", record.get("available", True))
        if available is None:
            available = True
        if stock is not None and stock <= 0:
            available = False

        image = (
            record.get("image_url")
            or record.get("image")
            or _first(record.get("images"))
        )

        return cls(
            id=product_id,
            name=record.get("name") or f"Item {product_id}",
            current_price=parse_price(record.get("price")),
            available=bool(available),
            source_kind=kind,
            stock=stock,
            image_ref=image
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "current_price": str(self.current_price),
            "available": self.available,
            "stock": self.stock,
            "image_ref": self.image_ref,
            "source_kind": self.source_kind.value,
            "is_placeholder": self.is_placeholder,
        }


def _first(value: Any) -> Optional[str]:
    if isinstance(value, list) and value:
        return value[0]
    return None


# ============================================================================
# MENU REPOSITORY (Data Access)
# ============================================================================

class MenuRepository:
    """
    Data access for product-like tables with a TTL cache.

    Responsibilities:
    - Fetch one product row by ProductRef from the matching table
    - Cache rows (including misses) for CACHE_TTL
    - Drop cached rows when realtime reports a change

    Does NOT decide fallbacks; that is the resolver's job.
    """

    def __init__(self, db, ttl: int = CACHE_TTL, max_size: int = CACHE_MAX_SIZE):
        self.db = db
        self.ttl = ttl
        self.max_size = max_size
        self.cache: Dict[ProductRef, Tuple[Optional[Dict[str, Any]], datetime]] = {}

    async def get_product(self, ref: ProductRef) -> Optional[Dict[str, Any]]:
        """
        Get the authoritative row for a product reference.

        Returns:
            Row dict, or None when the row does not exist or the read failed
        """
        if ref in self.cache:
            record, cached_at = self.cache[ref]
            if datetime.utcnow() - cached_at < timedelta(seconds=self.ttl):
                menu_cache_hits.inc()
                return record
            del self.cache[ref]

        menu_cache_misses.inc()
        record = await self.db.fetch_product(ref.kind.table, ref.id)
        self._set_in_cache(ref, record)
        return record

    def invalidate(self, refs: Optional[Iterable[ProductRef]] = None):
        """Drop cached rows for refs, or everything when refs is None."""
        if refs is None:
            self.cache.clear()
            return
        for ref in refs:
            self.cache.pop(ref, None)

    def _set_in_cache(self, ref: ProductRef, record: Optional[Dict[str, Any]]):
        if len(self.cache) >= self.max_size:
            oldest = min(self.cache.items(), key=lambda kv: kv[1][1])[0]
            del self.cache[oldest]
        self.cache[ref] = (record, datetime.utcnow())


# ============================================================================
# RESOLUTION STRATEGIES
# ============================================================================

Strategy = Callable[[CartLine], Awaitable[Optional[ResolvedProduct]]]


def attached_strategy() -> Strategy:
    """(a) record already attached to the line."""
    async def resolve(line: CartLine) -> Optional[ResolvedProduct]:
        if not line.resolved:
            return None
        return ResolvedProduct.from_record(
            line.resolved,
            line.product_ref.kind,
            line.product_ref.id
        )
    resolve.__name__ = "attached"
    return resolve


def repository_strategy(repository: MenuRepository) -> Strategy:
    """(b) authoritative lookup against the table matching the ref kind."""
    async def resolve(line: CartLine) -> Optional[ResolvedProduct]:
        record = await repository.get_product(line.product_ref)
        if not record:
            return None
        return ResolvedProduct.from_record(
            record,
            line.product_ref.kind,
            line.product_ref.id
        )
    resolve.__name__ = "repository"
    return resolve


def snapshot_strategy() -> Strategy:
    """(c) denormalized copy captured at add-to-cart time."""
    async def resolve(line: CartLine) -> Optional[ResolvedProduct]:
        snapshot = line.embedded_snapshot
        if not snapshot:
            return None
        kind = line.product_ref.kind
        if snapshot.get("isMenuItem"):
            kind = ProductKind.MENU_ITEM
        return ResolvedProduct.from_record(snapshot, kind, line.product_ref.id)
    resolve.__name__ = "snapshot"
    return resolve


def placeholder_strategy() -> Strategy:
    """(d) synthetic product from the line's own fields; never absent."""
    async def resolve(line: CartLine) -> Optional[ResolvedProduct]:
        return build_placeholder(line)
    resolve.__name__ = "placeholder"
    return resolve


def build_placeholder(line: CartLine) -> ResolvedProduct:
    product_id = line.product_ref.id
    return ResolvedProduct(
        id=product_id,
        name=line.name or f"Item {product_id}",
        current_price=line.price_at_add if line.price_at_add is not None else Decimal("0"),
        available=True,
        source_kind=line.product_ref.kind,
        is_placeholder=True
    )


# ============================================================================
# PRODUCT RESOLVER
# ============================================================================

class ProductResolver:
    """
    Resolve cart lines to products.

    resolve() never raises and always returns one product per line, in
    line order. A strategy that raises is logged and treated as absent.
    """

    def __init__(
        self,
        repository: MenuRepository,
        strategies: Optional[List[Strategy]] = None
    ):
        self.repository = repository
        self.strategies: List[Strategy] = strategies or [
            attached_strategy(),
            repository_strategy(repository),
            snapshot_strategy(),
            placeholder_strategy(),
        ]

    async def resolve_line(self, line: CartLine) -> ResolvedProduct:
        for strategy in self.strategies:
            name = getattr(strategy, "__name__", "strategy")
            try:
                product = await strategy(line)
            except Exception as e:
                product_resolver_errors.labels(strategy=name).inc()
                logger.warning(
                    f"Resolver strategy {name} failed for {line.product_ref}: {str(e)}"
                )
                continue

            if product is not None:
                product_resolutions.labels(strategy=name).inc()
                if name != "attached":
                    logger.debug(f"Resolved {line.product_ref} via {name}")
                return product

        # Only reachable with a custom strategy list lacking the placeholder
        product_resolutions.labels(strategy="placeholder").inc()
        return build_placeholder(line)

    async def resolve(self, lines: List[CartLine]) -> List[ResolvedProduct]:
        """
        Resolve every line.

        Args:
            lines: Cart lines in display order

        Returns:
            Resolved products, same length and order as lines
        """
        return [await self.resolve_line(line) for line in lines]

    def invalidate(self, lines: List[CartLine], refs: Optional[Iterable[ProductRef]] = None):
        """
        Forget cached and attached data so the next resolve re-reads the
        authoritative rows.
        """
        targets = set(refs) if refs is not None else {line.product_ref for line in lines}
        self.repository.invalidate(targets)
        for line in lines:
            if line.product_ref in targets:
                line.resolved = None
