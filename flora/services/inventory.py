from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from flora.db import q, u, x
from flora.errors import InsufficientStockError, NotFoundError, ValidationError
from flora.utils import iso_now

logger = logging.getLogger("flora.inventory")


@dataclass(frozen=True)
class InventoryEntry:
    product_id: int
    quantity: int
    unit_purchase_price: float
    last_updated: str


def _entry_from_row(r) -> InventoryEntry:
    return InventoryEntry(
        product_id=int(r["product_id"]),
        quantity=int(r["quantity"]),
        unit_purchase_price=float(r["unit_purchase_price"]),
        last_updated=str(r["last_updated"]),
    )


def _product_name(conn, product_id: int) -> str:
    rows = q(conn, "SELECT name FROM products WHERE id=?", (int(product_id),))
    if not rows:
        raise NotFoundError("product", product_id)
    return str(rows[0]["name"])


def get_entry(conn, product_id: int) -> Optional[InventoryEntry]:
    rows = q(
        conn,
        "SELECT product_id, quantity, unit_purchase_price, last_updated FROM inventory WHERE product_id=?",
        (int(product_id),),
    )
    return _entry_from_row(rows[0]) if rows else None


def get_quantity(conn, product_id: int) -> int:
    entry = get_entry(conn, product_id)
    return entry.quantity if entry else 0


def ensure_entry(conn, product_id: int, unit_cost: float = 0.0) -> InventoryEntry:
    """Register a product in stock with quantity 0 (no-op if already stocked)."""
    _product_name(conn, product_id)
    x(
        conn,
        """
        INSERT INTO inventory (product_id, quantity, unit_purchase_price, last_updated)
        VALUES (?, 0, ?, ?)
        ON CONFLICT(product_id) DO NOTHING
        """,
        (int(product_id), float(unit_cost), iso_now()),
    )
    return get_entry(conn, product_id)


def adjust(conn, product_id: int, delta: int, *, new_unit_cost: Optional[float] = None) -> InventoryEntry:
    """
    Apply a signed stock movement.

    The non-negative check and the write are one conditional UPDATE, so two
    registers selling the last rose cannot both succeed.
    """
    delta = int(delta)
    if delta == 0:
        raise ValidationError("delta", "must not be zero")

    name = _product_name(conn, product_id)

    if delta > 0:
        ensure_entry(conn, product_id, new_unit_cost or 0.0)

    now = iso_now()
    if new_unit_cost is None:
        n = u(
            conn,
            """
            UPDATE inventory
            SET quantity = quantity + ?, last_updated = ?
            WHERE product_id = ? AND quantity + ? >= 0
            """,
            (delta, now, int(product_id), delta),
        )
    else:
        n = u(
            conn,
            """
            UPDATE inventory
            SET quantity = quantity + ?, unit_purchase_price = ?, last_updated = ?
            WHERE product_id = ? AND quantity + ? >= 0
            """,
            (delta, float(new_unit_cost), now, int(product_id), delta),
        )

    if n == 0:
        available = get_quantity(conn, product_id)
        raise InsufficientStockError(int(product_id), -delta, available, name=name)

    entry = get_entry(conn, product_id)
    logger.debug("Stock %s '%s' %+d -> %d", product_id, name, delta, entry.quantity)
    return entry


def list_inventory(conn, *, include_composite: bool = True, in_stock_only: bool = False):
    """Inventory rows joined with product/category names, low stock first."""
    where = ["1=1"]
    if not include_composite:
        where.append("p.is_composite = 0")
    if in_stock_only:
        where.append("i.quantity > 0")

    return q(
        conn,
        f"""
        SELECT
          i.product_id,
          p.name AS product,
          c.name AS category,
          p.is_composite,
          p.vat_rate,
          i.quantity,
          ROUND(i.unit_purchase_price, 2) AS unit_purchase_price,
          ROUND(i.quantity * i.unit_purchase_price, 2) AS stock_value,
          i.last_updated
        FROM inventory i
        JOIN products p ON p.id = i.product_id
        LEFT JOIN categories c ON c.id = p.category_id
        WHERE {' AND '.join(where)}
        ORDER BY i.quantity ASC, p.name ASC
        """,
    )


def stock_value(conn) -> float:
    r = q(conn, "SELECT COALESCE(SUM(quantity * unit_purchase_price), 0) AS v FROM inventory")[0]
    return round(float(r["v"]), 2)
