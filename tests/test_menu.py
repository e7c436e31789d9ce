from decimal import Decimal

from cart import CartLine, ProductKind, ProductRef
from menu import MenuRepository, ProductResolver, ResolvedProduct


def make_line(line_id, kind, product_id, **kwargs):
    return CartLine(
        id=line_id,
        owner_ref="user-1",
        product_ref=ProductRef(kind, product_id),
        **kwargs
    )


def make_resolver(db):
    return ProductResolver(MenuRepository(db))


async def test_resolve_returns_one_product_per_line(db):
    lines = [
        make_line("a", ProductKind.MENU_ITEM, "mi-1"),
        make_line("b", ProductKind.DISH, "gone", price_at_add=Decimal("120"), name="Samosa"),
        make_line("c", ProductKind.LEGACY, "p-4", embedded_snapshot={"name": "Lassi", "price": "90"}),
    ]

    products = await make_resolver(db).resolve(lines)

    assert len(products) == len(lines)
    assert [p.name for p in products] == ["Margherita Pizza", "Samosa", "Lassi"]
    assert products[0].current_price == Decimal("450")
    assert products[1].is_placeholder
    assert products[1].current_price == Decimal("120")
    assert products[2].current_price == Decimal("90")


async def test_attached_record_wins_over_lookup(db):
    line = make_line(
        "a", ProductKind.MENU_ITEM, "mi-1",
        resolved={"id": "mi-1", "name": "Attached Pizza", "price": "400"}
    )

    product = await make_resolver(db).resolve_line(line)

    assert product.name == "Attached Pizza"
    assert product.current_price == Decimal("400")


async def test_lookup_uses_table_of_product_kind(db):
    db.add_product("dishes", {"id": "mi-1", "name": "Dish With Same Id", "price": "10"})
    line = make_line("a", ProductKind.DISH, "mi-1")

    product = await make_resolver(db).resolve_line(line)

    assert product.name == "Dish With Same Id"
    assert product.source_kind == ProductKind.DISH


async def test_failing_lookup_falls_through_to_snapshot(db):
    db.fail_products = True
    line = make_line(
        "a", ProductKind.MENU_ITEM, "mi-1",
        embedded_snapshot={"id": "mi-1", "name": "Snapshot Pizza", "price": "430"}
    )

    product = await make_resolver(db).resolve_line(line)

    assert product.name == "Snapshot Pizza"
    assert not product.is_placeholder


async def test_placeholder_name_without_any_data(db):
    line = make_line("a", ProductKind.LEGACY, "p-404")

    product = await make_resolver(db).resolve_line(line)

    assert product.name == "Item p-404"
    assert product.current_price == Decimal("0")
    assert product.is_placeholder


async def test_repository_caches_misses(db):
    repo = MenuRepository(db)
    ref = ProductRef(ProductKind.DISH, "later")

    assert await repo.get_product(ref) is None
    db.add_product("dishes", {"id": "later", "name": "Late Dish", "price": "55"})
    assert await repo.get_product(ref) is None

    repo.invalidate([ref])
    assert (await repo.get_product(ref))["name"] == "Late Dish"


async def test_invalidate_drops_attached_and_cached_records(db):
    resolver = make_resolver(db)
    line = make_line(
        "a", ProductKind.MENU_ITEM, "mi-1",
        resolved={"id": "mi-1", "name": "Margherita Pizza", "price": "450"}
    )
    await resolver.resolve([line])

    db.add_product("menu_items", {"id": "mi-1", "name": "Margherita Pizza", "price": "480"})
    resolver.invalidate([line])

    assert line.resolved is None
    products = await resolver.resolve([line])
    assert products[0].current_price == Decimal("480")


def test_zero_stock_is_unavailable():
    product = ResolvedProduct.from_record(
        {"id": "d-1", "name": "Biryani", "price": "300", "stock_quantity": 0},
        ProductKind.DISH
    )

    assert product.available is False
    assert product.stock == 0
