from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterable, Optional

from flora.config import LABOR_PERCENTAGE, QUICK_BOUQUET_MARKUP
from flora.db import q, transaction, u, x
from flora.errors import NotFoundError, ValidationError
from flora.services.catalog import get_material, get_product
from flora.utils import iso_now, money

logger = logging.getLogger("flora.templates")


@dataclass(frozen=True)
class TemplateItem:
    quantity: int
    product_id: Optional[int] = None
    material_id: Optional[int] = None
    name: Optional[str] = None

    @property
    def is_product(self) -> bool:
        return self.product_id is not None


@dataclass(frozen=True)
class BouquetTemplate:
    id: int
    name: str
    description: Optional[str]
    base_price: float
    items: tuple[TemplateItem, ...]


@dataclass(frozen=True)
class Costing:
    products_cost: float
    materials_cost: float
    subtotal: float
    labor_cost: float
    suggested_price: float


def validate_items(conn, items: Iterable[TemplateItem]) -> list[TemplateItem]:
    """
    Check an ingredient list and fill in display names.
    Product ingredients must be raw stock, not other bouquets.
    """
    out: list[TemplateItem] = []
    for i, it in enumerate(items):
        if (it.product_id is None) == (it.material_id is None):
            raise ValidationError(f"items[{i}]", "needs exactly one of product_id or material_id")
        if int(it.quantity) < 1:
            raise ValidationError(f"items[{i}].quantity", "must be >= 1")

        if it.product_id is not None:
            p = get_product(conn, int(it.product_id))
            if p.is_composite:
                raise ValidationError(f"items[{i}].product_id", f"'{p.name}' is a bouquet, not a raw ingredient")
            out.append(TemplateItem(quantity=int(it.quantity), product_id=p.id, name=p.name))
        else:
            m = get_material(conn, int(it.material_id))
            out.append(TemplateItem(quantity=int(it.quantity), material_id=m.id, name=m.name))

    if not out:
        raise ValidationError("items", "at least one ingredient is required")
    return out


def _check_base_price(base_price) -> float:
    try:
        bp = float(base_price)
    except (TypeError, ValueError):
        raise ValidationError("base_price", "must be a number")
    if bp < 0:
        raise ValidationError("base_price", "must be >= 0")
    return bp


def _insert_items(conn, template_id: int, items: list[TemplateItem]) -> None:
    for pos, it in enumerate(items):
        x(
            conn,
            """
            INSERT INTO bouquet_template_items (template_id, position, product_id, material_id, quantity)
            VALUES (?, ?, ?, ?, ?)
            """,
            (int(template_id), pos, it.product_id, it.material_id, int(it.quantity)),
        )


def get_template(conn, template_id: int) -> BouquetTemplate:
    rows = q(conn, "SELECT * FROM bouquet_templates WHERE id=?", (int(template_id),))
    if not rows:
        raise NotFoundError("template", template_id)
    t = rows[0]

    items = q(
        conn,
        """
        SELECT i.product_id, i.material_id, i.quantity, COALESCE(p.name, m.name) AS name
        FROM bouquet_template_items i
        LEFT JOIN products p ON p.id = i.product_id
        LEFT JOIN materials m ON m.id = i.material_id
        WHERE i.template_id=?
        ORDER BY i.position, i.id
        """,
        (int(template_id),),
    )
    return BouquetTemplate(
        id=int(t["id"]),
        name=str(t["name"]),
        description=t["description"],
        base_price=float(t["base_price"]),
        items=tuple(
            TemplateItem(
                quantity=int(r["quantity"]),
                product_id=int(r["product_id"]) if r["product_id"] is not None else None,
                material_id=int(r["material_id"]) if r["material_id"] is not None else None,
                name=r["name"],
            )
            for r in items
        ),
    )


def list_templates(conn):
    return q(
        conn,
        """
        SELECT t.id, t.name, t.description, ROUND(t.base_price, 2) AS base_price,
               COUNT(i.id) AS item_count
        FROM bouquet_templates t
        LEFT JOIN bouquet_template_items i ON i.template_id = t.id
        GROUP BY t.id
        ORDER BY t.name
        """,
    )


def create_template(
    conn,
    *,
    name: str,
    base_price: float,
    items: Iterable[TemplateItem],
    description: Optional[str] = None,
) -> BouquetTemplate:
    name = str(name or "").strip()
    if not name:
        raise ValidationError("name", "must not be empty")
    base_price = _check_base_price(base_price)

    with transaction(conn):
        checked = validate_items(conn, items)
        if q(conn, "SELECT 1 FROM bouquet_templates WHERE name = ? COLLATE NOCASE", (name,)):
            raise ValidationError("name", f"template '{name}' already exists")

        tid = x(
            conn,
            "INSERT INTO bouquet_templates (name, description, base_price, created_at) VALUES (?, ?, ?, ?)",
            (name, description, base_price, iso_now()),
        )
        _insert_items(conn, tid, checked)
    logger.info("Created bouquet template #%s '%s' with %d item(s)", tid, name, len(checked))
    return get_template(conn, tid)


def update_template(
    conn,
    template_id: int,
    *,
    name: Optional[str] = None,
    base_price: Optional[float] = None,
    description: Optional[str] = None,
    items: Optional[Iterable[TemplateItem]] = None,
) -> BouquetTemplate:
    """Edit a template; a new item list replaces the old one, all or nothing."""
    with transaction(conn):
        current = get_template(conn, template_id)
        new_name = str(name).strip() if name is not None else current.name
        if not new_name:
            raise ValidationError("name", "must not be empty")
        new_price = _check_base_price(base_price) if base_price is not None else current.base_price
        new_desc = description if description is not None else current.description
        checked = validate_items(conn, items) if items is not None else None

        u(
            conn,
            "UPDATE bouquet_templates SET name=?, description=?, base_price=? WHERE id=?",
            (new_name, new_desc, new_price, int(template_id)),
        )
        if checked is not None:
            u(conn, "DELETE FROM bouquet_template_items WHERE template_id=?", (int(template_id),))
            _insert_items(conn, template_id, checked)
    return get_template(conn, template_id)


def delete_template(conn, template_id: int) -> None:
    with transaction(conn):
        get_template(conn, template_id)
        u(conn, "DELETE FROM bouquet_templates WHERE id=?", (int(template_id),))


def _unit_cost(conn, it: TemplateItem) -> float:
    if it.product_id is not None:
        rows = q(conn, "SELECT unit_purchase_price FROM inventory WHERE product_id=?", (int(it.product_id),))
        return float(rows[0]["unit_purchase_price"]) if rows else 0.0
    return get_material(conn, int(it.material_id)).unit_price


def costing(conn, items: Iterable[TemplateItem]) -> Costing:
    """Ingredient cost at current prices plus the labour surcharge."""
    products_cost = 0.0
    materials_cost = 0.0
    for it in items:
        c = _unit_cost(conn, it) * int(it.quantity)
        if it.is_product:
            products_cost += c
        else:
            materials_cost += c

    subtotal = products_cost + materials_cost
    labor = subtotal * LABOR_PERCENTAGE
    return Costing(
        products_cost=money(products_cost),
        materials_cost=money(materials_cost),
        subtotal=money(subtotal),
        labor_cost=money(labor),
        suggested_price=money(subtotal + labor),
    )


def template_costing(conn, template_id: int) -> Costing:
    return costing(conn, get_template(conn, template_id).items)


def suggest_quick_price(conn, items: Iterable[TemplateItem]) -> float:
    # Florist rule of thumb for bouquets tied at the counter.
    return float(math.ceil(money(costing(conn, items).subtotal * QUICK_BOUQUET_MARKUP)))
