import pytest

from flora.db import connect, ensure_schema
from flora.services.catalog import create_material, find_category, resolve_or_create_product
from flora.services.demo_data import upsert_reference_data
from flora.services.ledger import OperationContext, record_purchase


@pytest.fixture
def conn():
    """Fresh in-memory database with schema and reference categories."""
    c = connect(":memory:")
    ensure_schema(c)
    upsert_reference_data(c)
    yield c
    c.close()


@pytest.fixture
def ctx():
    return OperationContext(user_id="anna")


@pytest.fixture
def stock(conn, ctx):
    """
    Purchase helper: stock(name, qty, cost) books a goods receipt and
    returns the product id.
    """

    def _stock(name, quantity, unit_price, *, category="Cut flowers", vat_rate=7):
        cat = find_category(conn, category)
        res = record_purchase(
            conn,
            ctx,
            new_product_name=name,
            quantity=quantity,
            unit_price=unit_price,
            category_id=cat.id if cat else None,
            vat_rate=vat_rate,
        )
        return res.transaction.product_id

    return _stock


@pytest.fixture
def ribbon(conn):
    return create_material(conn, "Silk ribbon", 0.50).id


@pytest.fixture
def product(conn):
    """Catalog product without any stock."""

    def _product(name, **kw):
        return resolve_or_create_product(conn, name, **kw).id

    return _product
