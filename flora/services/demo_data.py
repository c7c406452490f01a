from __future__ import annotations

import random

from flora.config import BOUQUET_CATEGORY
from flora.db import ensure_schema, q, transaction, u, x
from flora.services.catalog import create_material, find_category, find_product_by_name
from flora.services.ledger import OperationContext, produce_bouquet, record_purchase, record_sale, sell_composite
from flora.services.templates import TemplateItem, create_template


DEFAULT_CATEGORIES = [
    ("Cut flowers", "Roses, tulips, seasonal stems"),
    ("Potted plants", "Orchids, succulents, green plants"),
    ("Decor", "Vases, candles, gift items"),
    (BOUQUET_CATEGORY, "Tied bouquets"),
]

# name, category, vat_rate, quantity, unit cost
DEMO_PURCHASES = [
    ("Red rose", "Cut flowers", 7, 60, 1.20),
    ("Tulip", "Cut flowers", 7, 80, 0.60),
    ("Eucalyptus", "Cut flowers", 7, 40, 0.80),
    ("Phalaenopsis orchid", "Potted plants", 7, 10, 9.50),
    ("Glass vase", "Decor", 19, 12, 6.00),
]

DEMO_MATERIALS = [
    ("Silk ribbon", 0.50),
    ("Kraft paper", 0.30),
]


def upsert_reference_data(conn) -> None:
    ensure_schema(conn)

    for name, desc in DEFAULT_CATEGORIES:
        x(conn, "INSERT OR IGNORE INTO categories(name, description) VALUES (?, ?)", (name, desc))


def wipe_all(conn) -> None:
    # Keep schema, delete data (order matters for FKs). The log is
    # append-only, so its guard triggers are dropped and recreated.
    with transaction(conn):
        u(conn, "DROP TRIGGER IF EXISTS trg_transactions_no_update;")
        u(conn, "DROP TRIGGER IF EXISTS trg_transactions_no_delete;")
        for t in [
            "transactions",
            "bouquet_template_items",
            "bouquet_templates",
            "inventory",
            "materials",
            "products",
            "categories",
        ]:
            u(conn, f"DELETE FROM {t};")
    ensure_schema(conn)


def load_demo_data(conn, *, seed: int = 7) -> None:
    random.seed(seed)
    upsert_reference_data(conn)
    ctx = OperationContext(user_id="demo")

    for name, cat_name, vat, qty, cost in DEMO_PURCHASES:
        cat = find_category(conn, cat_name)
        record_purchase(
            conn,
            ctx,
            new_product_name=name,
            quantity=qty,
            unit_price=cost,
            supplier_note="Demo wholesaler",
            category_id=cat.id if cat else None,
            vat_rate=vat,
        )

    for name, price in DEMO_MATERIALS:
        if not q(conn, "SELECT 1 FROM materials WHERE name = ? COLLATE NOCASE", (name,)):
            create_material(conn, name, price)

    if q(conn, "SELECT 1 FROM bouquet_templates WHERE name = ? COLLATE NOCASE", ("Classic red",)):
        return

    rose = find_product_by_name(conn, "Red rose", is_composite=False)
    euca = find_product_by_name(conn, "Eucalyptus", is_composite=False)
    tulip = find_product_by_name(conn, "Tulip", is_composite=False)
    ribbon = q(conn, "SELECT id FROM materials WHERE name = ? COLLATE NOCASE", ("Silk ribbon",))[0]["id"]

    classic = create_template(
        conn,
        name="Classic red",
        base_price=29.90,
        description="Seven red roses with eucalyptus",
        items=[
            TemplateItem(product_id=rose.id, quantity=7),
            TemplateItem(product_id=euca.id, quantity=3),
            TemplateItem(material_id=int(ribbon), quantity=1),
        ],
    )
    spring = create_template(
        conn,
        name="Spring mix",
        base_price=19.90,
        description="Tulips tied with ribbon",
        items=[
            TemplateItem(product_id=tulip.id, quantity=10),
            TemplateItem(material_id=int(ribbon), quantity=1),
        ],
    )

    produce_bouquet(conn, ctx, template_id=classic.id, multiplier=2)

    # A handful of register sales
    for _ in range(6):
        record_sale(
            conn,
            ctx,
            product_id=random.choice([rose.id, tulip.id]),
            quantity=random.randint(1, 5),
            unit_price=random.choice([2.50, 1.90]),
            payment_method=random.choice(["cash", "card"]),
        )
    record_sale(
        conn,
        ctx,
        quantity=1,
        unit_price=12.00,
        category="Potted plants",
        inventory_linked=False,
        description="Walk-in plant sale",
    )
    sell_composite(conn, ctx, template_id=spring.id, quantity=1, sale_price=19.90, payment_method="card")
