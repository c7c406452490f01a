from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from flora.config import DEFAULT_VAT_RATE, VAT_RATES
from flora.db import q, u, x
from flora.errors import NotFoundError, ValidationError
from flora.utils import iso_now

logger = logging.getLogger("flora.catalog")


@dataclass(frozen=True)
class Category:
    id: int
    name: str
    description: Optional[str] = None


@dataclass(frozen=True)
class Product:
    id: int
    name: str
    category_id: Optional[int]
    vat_rate: int
    is_composite: bool
    category_name: Optional[str] = None


@dataclass(frozen=True)
class Material:
    id: int
    name: str
    unit_price: float
    vat_rate: int


def _clean_name(name: Optional[str], field: str = "name") -> str:
    s = str(name or "").strip()
    if not s:
        raise ValidationError(field, "must not be empty")
    return s


def _check_vat_rate(vat_rate) -> int:
    try:
        rate = int(vat_rate)
    except (TypeError, ValueError):
        raise ValidationError("vat_rate", "must be a whole percent")
    if rate not in VAT_RATES:
        raise ValidationError("vat_rate", f"must be one of {', '.join(map(str, VAT_RATES))}")
    return rate


def _product_from_row(r) -> Product:
    return Product(
        id=int(r["id"]),
        name=str(r["name"]),
        category_id=int(r["category_id"]) if r["category_id"] is not None else None,
        vat_rate=int(r["vat_rate"]),
        is_composite=bool(r["is_composite"]),
        category_name=r["category_name"],
    )


_PRODUCT_SELECT = """
    SELECT p.id, p.name, p.category_id, p.vat_rate, p.is_composite, c.name AS category_name
    FROM products p
    LEFT JOIN categories c ON c.id = p.category_id
"""


# -------------------------
# Categories
# -------------------------

def list_categories(conn) -> list[Category]:
    rows = q(conn, "SELECT id, name, description FROM categories ORDER BY name")
    return [Category(id=int(r["id"]), name=str(r["name"]), description=r["description"]) for r in rows]


def find_category(conn, name: str) -> Optional[Category]:
    rows = q(conn, "SELECT id, name, description FROM categories WHERE name = ? COLLATE NOCASE", (str(name).strip(),))
    if not rows:
        return None
    r = rows[0]
    return Category(id=int(r["id"]), name=str(r["name"]), description=r["description"])


def get_category(conn, category_id: int) -> Category:
    rows = q(conn, "SELECT id, name, description FROM categories WHERE id=?", (int(category_id),))
    if not rows:
        raise NotFoundError("category", category_id)
    r = rows[0]
    return Category(id=int(r["id"]), name=str(r["name"]), description=r["description"])


def create_category(conn, name: str, description: Optional[str] = None) -> Category:
    name = _clean_name(name)
    if find_category(conn, name) is not None:
        raise ValidationError("name", f"category '{name}' already exists")
    cid = x(conn, "INSERT INTO categories (name, description) VALUES (?, ?)", (name, description))
    return Category(id=cid, name=name, description=description)


# -------------------------
# Products
# -------------------------

def get_product(conn, product_id: int) -> Product:
    rows = q(conn, _PRODUCT_SELECT + " WHERE p.id=?", (int(product_id),))
    if not rows:
        raise NotFoundError("product", product_id)
    return _product_from_row(rows[0])


def find_product_by_name(conn, name: str, *, is_composite: Optional[bool] = None) -> Optional[Product]:
    """Case-insensitive, whitespace-trimmed name lookup."""
    sql = _PRODUCT_SELECT + " WHERE lower(trim(p.name)) = lower(?)"
    params: list = [str(name).strip()]
    if is_composite is not None:
        sql += " AND p.is_composite = ?"
        params.append(1 if is_composite else 0)
    rows = q(conn, sql + " ORDER BY p.id LIMIT 1", params)
    return _product_from_row(rows[0]) if rows else None


def list_products(conn, *, is_composite: Optional[bool] = None) -> list[Product]:
    sql = _PRODUCT_SELECT
    params: tuple = ()
    if is_composite is not None:
        sql += " WHERE p.is_composite = ?"
        params = (1 if is_composite else 0,)
    return [_product_from_row(r) for r in q(conn, sql + " ORDER BY p.name", params)]


def create_product(
    conn,
    name: str,
    *,
    category_id: Optional[int] = None,
    vat_rate: int = DEFAULT_VAT_RATE,
    is_composite: bool = False,
) -> Product:
    name = _clean_name(name)
    vat_rate = _check_vat_rate(vat_rate)
    if category_id is not None:
        get_category(conn, int(category_id))

    pid = x(
        conn,
        """
        INSERT INTO products (name, category_id, vat_rate, is_composite, created_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (name, category_id, vat_rate, 1 if is_composite else 0, iso_now()),
    )
    logger.info("Created %s product #%s '%s'", "composite" if is_composite else "raw", pid, name)
    return get_product(conn, pid)


def resolve_or_create_product(
    conn,
    name: str,
    *,
    category_id: Optional[int] = None,
    vat_rate: int = DEFAULT_VAT_RATE,
    is_composite: bool = False,
) -> Product:
    """
    Reuse a product whose name matches case-insensitively (within the same
    raw/composite kind) before creating a new one.
    """
    name = _clean_name(name)
    existing = find_product_by_name(conn, name, is_composite=is_composite)
    if existing is not None:
        return existing
    return create_product(conn, name, category_id=category_id, vat_rate=vat_rate, is_composite=is_composite)


def update_product(
    conn,
    product_id: int,
    *,
    name: Optional[str] = None,
    category_id: Optional[int] = None,
    vat_rate: Optional[int] = None,
) -> Product:
    """Administrative edit. The composite flag never changes after creation."""
    current = get_product(conn, product_id)
    new_name = _clean_name(name) if name is not None else current.name
    new_vat = _check_vat_rate(vat_rate) if vat_rate is not None else current.vat_rate
    new_cat = current.category_id
    if category_id is not None:
        new_cat = get_category(conn, int(category_id)).id

    u(
        conn,
        "UPDATE products SET name=?, category_id=?, vat_rate=? WHERE id=?",
        (new_name, new_cat, new_vat, int(product_id)),
    )
    return get_product(conn, product_id)


# -------------------------
# Materials
# -------------------------

def _material_from_row(r) -> Material:
    return Material(id=int(r["id"]), name=str(r["name"]), unit_price=float(r["unit_price"]), vat_rate=int(r["vat_rate"]))


def get_material(conn, material_id: int) -> Material:
    rows = q(conn, "SELECT * FROM materials WHERE id=?", (int(material_id),))
    if not rows:
        raise NotFoundError("material", material_id)
    return _material_from_row(rows[0])


def list_materials(conn) -> list[Material]:
    return [_material_from_row(r) for r in q(conn, "SELECT * FROM materials ORDER BY name")]


def _check_unit_price(unit_price) -> float:
    try:
        p = float(unit_price)
    except (TypeError, ValueError):
        raise ValidationError("unit_price", "must be a number")
    if p < 0:
        raise ValidationError("unit_price", "must be >= 0")
    return p


def create_material(conn, name: str, unit_price: float, *, vat_rate: int = DEFAULT_VAT_RATE) -> Material:
    name = _clean_name(name)
    price = _check_unit_price(unit_price)
    vat_rate = _check_vat_rate(vat_rate)
    if q(conn, "SELECT 1 FROM materials WHERE name = ? COLLATE NOCASE", (name,)):
        raise ValidationError("name", f"material '{name}' already exists")
    mid = x(conn, "INSERT INTO materials (name, unit_price, vat_rate) VALUES (?, ?, ?)", (name, price, vat_rate))
    return get_material(conn, mid)


def update_material(
    conn,
    material_id: int,
    *,
    name: Optional[str] = None,
    unit_price: Optional[float] = None,
    vat_rate: Optional[int] = None,
) -> Material:
    current = get_material(conn, material_id)
    u(
        conn,
        "UPDATE materials SET name=?, unit_price=?, vat_rate=? WHERE id=?",
        (
            _clean_name(name) if name is not None else current.name,
            _check_unit_price(unit_price) if unit_price is not None else current.unit_price,
            _check_vat_rate(vat_rate) if vat_rate is not None else current.vat_rate,
            int(material_id),
        ),
    )
    return get_material(conn, material_id)


def delete_material(conn, material_id: int) -> None:
    get_material(conn, material_id)
    used = q(conn, "SELECT COUNT(1) AS n FROM bouquet_template_items WHERE material_id=?", (int(material_id),))
    if int(used[0]["n"]):
        raise ValidationError("material_id", "material is still used by a bouquet template")
    u(conn, "DELETE FROM materials WHERE id=?", (int(material_id),))
