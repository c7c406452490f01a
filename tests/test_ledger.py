"""
Ledger engine: purchase, sale, write-off, storno, idempotent replay and
all-or-nothing units.
"""

import random
import threading
import time

import pytest

from flora.db import connect, ensure_schema, q, transaction
from flora.errors import (
    AlreadyCancelledError,
    InsufficientStockError,
    NotFoundError,
    ValidationError,
)
from flora.services import transactions as log
from flora.services.catalog import get_product, resolve_or_create_product
from flora.services.inventory import adjust, get_entry, get_quantity
from flora.services.ledger import (
    OperationContext,
    record_purchase,
    record_sale,
    record_waste,
    storno,
)
from flora.services.transactions import TransactionType


def _count(conn, kind=None):
    if kind is None:
        return q(conn, "SELECT COUNT(*) AS n FROM transactions")[0]["n"]
    return q(conn, "SELECT COUNT(*) AS n FROM transactions WHERE type=?", (kind,))[0]["n"]


# ══════════════════════════════════════════════════════════════
# PURCHASE
# ══════════════════════════════════════════════════════════════


class TestPurchase:
    def test_creates_product_and_stock(self, conn, ctx):
        res = record_purchase(conn, ctx, new_product_name="Red rose", quantity=50, unit_price=1.20, supplier_note="Van Dijk")

        assert res.entry.quantity == 50
        assert res.entry.unit_purchase_price == pytest.approx(1.20)
        t = res.transaction
        assert t.type == TransactionType.PURCHASE
        assert t.total_price == pytest.approx(60.0)
        assert t.vat_amount == 0
        assert t.note == "Supplier: Van Dijk"
        assert t.user_id == "anna"

    def test_reuses_product_case_insensitively(self, conn, ctx):
        first = record_purchase(conn, ctx, new_product_name="Red Rose", quantity=10, unit_price=1.0)
        second = record_purchase(conn, ctx, new_product_name="  red rose ", quantity=5, unit_price=1.10)

        assert first.transaction.product_id == second.transaction.product_id
        assert second.entry.quantity == 15
        assert second.entry.unit_purchase_price == pytest.approx(1.10)

    def test_existing_product_by_id(self, conn, ctx, product):
        pid = product("Tulip")
        res = record_purchase(conn, ctx, product_id=pid, quantity=3, unit_price=0.5)
        assert res.transaction.product_id == pid

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"new_product_name": "Tulip", "quantity": 0, "unit_price": 1.0},
            {"new_product_name": "Tulip", "quantity": 2.5, "unit_price": 1.0},
            {"new_product_name": "Tulip", "quantity": 1, "unit_price": 0},
            {"new_product_name": "  ", "quantity": 1, "unit_price": 1.0},
        ],
    )
    def test_rejects_bad_input_without_writing(self, conn, ctx, kwargs):
        with pytest.raises(ValidationError):
            record_purchase(conn, ctx, **kwargs)
        assert _count(conn) == 0
        assert q(conn, "SELECT COUNT(*) AS n FROM inventory")[0]["n"] == 0

    def test_unknown_product(self, conn, ctx):
        with pytest.raises(NotFoundError):
            record_purchase(conn, ctx, product_id=404, quantity=1, unit_price=1.0)

    def test_bouquets_cannot_be_purchased(self, conn, ctx):
        pid = resolve_or_create_product(conn, "Classic red", is_composite=True).id
        with pytest.raises(ValidationError):
            record_purchase(conn, ctx, product_id=pid, quantity=1, unit_price=5.0)
        assert _count(conn) == 0


# ══════════════════════════════════════════════════════════════
# SALE AND STORNO
# ══════════════════════════════════════════════════════════════


class TestSale:
    def test_sell_then_storno(self, conn, ctx, stock):
        rose = stock("Red rose", 50, 1.20, vat_rate=19)

        sold = record_sale(conn, ctx, product_id=rose, quantity=3, unit_price=2.50)
        assert get_quantity(conn, rose) == 47
        t = sold.transaction
        assert t.total_price == pytest.approx(7.50)
        assert t.vat_rate == 19
        assert t.vat_amount == pytest.approx(1.198, abs=1e-3)
        assert t.net_amount == pytest.approx(6.302, abs=1e-3)
        assert t.category == "Cut flowers"
        assert t.stock_linked is True

        rev = storno(conn, ctx, transaction_id=t.id)
        assert get_quantity(conn, rose) == 50
        assert rev.transaction.type == TransactionType.STORNO
        assert rev.transaction.total_price == pytest.approx(-7.50)
        assert rev.transaction.reverses_id == t.id

        # original row untouched
        assert log.get(conn, t.id) == t

    def test_vat_rate_comes_from_product(self, conn, ctx, stock):
        tulip = stock("Tulip", 10, 0.5, vat_rate=7)
        t = record_sale(conn, ctx, product_id=tulip, quantity=1, unit_price=1.07, default_vat_rate=19).transaction
        assert t.vat_rate == 7
        assert t.vat_amount == pytest.approx(0.07)

    def test_insufficient_stock_changes_nothing(self, conn, ctx, stock):
        rose = stock("Red rose", 2, 1.20)
        before = _count(conn)

        with pytest.raises(InsufficientStockError) as exc:
            record_sale(conn, ctx, product_id=rose, quantity=3, unit_price=2.50)

        assert exc.value.available == 2
        assert exc.value.name == "Red rose"
        assert get_quantity(conn, rose) == 2
        assert _count(conn) == before

    def test_not_inventory_linked(self, conn, ctx, stock):
        rose = stock("Red rose", 5, 1.20)
        t = record_sale(conn, ctx, product_id=rose, quantity=10, unit_price=2.0, inventory_linked=False).transaction
        assert t.stock_linked is False
        assert get_quantity(conn, rose) == 5

        storno(conn, ctx, transaction_id=t.id)
        assert get_quantity(conn, rose) == 5

    def test_free_sale(self, conn, ctx):
        t = record_sale(
            conn, ctx, quantity=1, unit_price=12.0, category="decor", inventory_linked=False, payment_method="card"
        ).transaction
        assert t.product_id is None
        assert t.category == "Decor"
        assert t.vat_rate == 19
        assert t.payment_method == "card"

    def test_free_sale_default_rate(self, conn, ctx):
        t = record_sale(
            conn, ctx, quantity=1, unit_price=10.7, category="Cut flowers", inventory_linked=False, default_vat_rate=7
        ).transaction
        assert t.vat_rate == 7

    def test_free_sale_needs_known_category(self, conn, ctx):
        with pytest.raises(ValidationError) as exc:
            record_sale(conn, ctx, quantity=1, unit_price=5.0, inventory_linked=False)
        assert exc.value.field == "category"
        with pytest.raises(ValidationError):
            record_sale(conn, ctx, quantity=1, unit_price=5.0, category="Jewellery", inventory_linked=False)
        assert _count(conn) == 0

    def test_linked_sale_needs_product(self, conn, ctx):
        with pytest.raises(ValidationError):
            record_sale(conn, ctx, quantity=1, unit_price=5.0, category="Decor")

    def test_unknown_payment_method(self, conn, ctx, stock):
        rose = stock("Red rose", 5, 1.20)
        with pytest.raises(ValidationError):
            record_sale(conn, ctx, product_id=rose, quantity=1, unit_price=2.0, payment_method="voucher")
        assert get_quantity(conn, rose) == 5


class TestStorno:
    def test_double_storno_rejected(self, conn, ctx, stock):
        rose = stock("Red rose", 5, 1.20)
        sale = record_sale(conn, ctx, product_id=rose, quantity=1, unit_price=2.0).transaction
        first = storno(conn, ctx, transaction_id=sale.id)

        with pytest.raises(AlreadyCancelledError) as exc:
            storno(conn, ctx, transaction_id=sale.id)

        assert exc.value.storno_id == first.transaction.id
        assert get_quantity(conn, rose) == 5
        assert _count(conn, "storno") == 1

    def test_only_sales(self, conn, ctx, stock):
        rose = stock("Red rose", 5, 1.20)
        pid_txn = q(conn, "SELECT id FROM transactions WHERE type='purchase'")[0]["id"]
        with pytest.raises(ValidationError):
            storno(conn, ctx, transaction_id=pid_txn)
        assert get_quantity(conn, rose) == 5

    def test_storno_of_storno_rejected(self, conn, ctx, stock):
        rose = stock("Red rose", 5, 1.20)
        sale = record_sale(conn, ctx, product_id=rose, quantity=1, unit_price=2.0).transaction
        rev = storno(conn, ctx, transaction_id=sale.id).transaction
        with pytest.raises(ValidationError):
            storno(conn, ctx, transaction_id=rev.id)

    def test_unknown_transaction(self, conn, ctx):
        with pytest.raises(NotFoundError):
            storno(conn, ctx, transaction_id=77)

    def test_free_sale_storno(self, conn, ctx):
        sale = record_sale(conn, ctx, quantity=2, unit_price=4.0, category="Decor", inventory_linked=False).transaction
        rev = storno(conn, ctx, transaction_id=sale.id)
        assert rev.entry is None
        assert rev.transaction.category == "Decor"
        assert rev.transaction.total_price == pytest.approx(-8.0)


# ══════════════════════════════════════════════════════════════
# WRITE-OFFS
# ══════════════════════════════════════════════════════════════


class TestWaste:
    def test_valued_at_last_cost(self, conn, ctx, stock):
        tulip = stock("Tulip", 20, 0.60)
        res = record_waste(conn, ctx, product_id=tulip, quantity=4, note="wilted")

        assert res.entry.quantity == 16
        assert res.transaction.type == TransactionType.WASTE
        assert res.transaction.unit_price == pytest.approx(0.60)
        assert res.transaction.total_price == pytest.approx(2.40)
        assert res.transaction.note == "wilted"

    @pytest.mark.parametrize("kind", ["personal", "gift", "discount"])
    def test_other_kinds(self, conn, ctx, stock, kind):
        tulip = stock("Tulip", 20, 0.60)
        res = record_waste(conn, ctx, product_id=tulip, quantity=1, reason_kind=kind)
        assert res.transaction.type.value == kind

    def test_unknown_kind(self, conn, ctx, stock):
        tulip = stock("Tulip", 20, 0.60)
        with pytest.raises(ValidationError):
            record_waste(conn, ctx, product_id=tulip, quantity=1, reason_kind="sale")

    def test_insufficient(self, conn, ctx, stock):
        tulip = stock("Tulip", 2, 0.60)
        with pytest.raises(InsufficientStockError):
            record_waste(conn, ctx, product_id=tulip, quantity=3)
        assert get_quantity(conn, tulip) == 2
        assert _count(conn, "waste") == 0


# ══════════════════════════════════════════════════════════════
# IDEMPOTENCY AND ATOMICITY
# ══════════════════════════════════════════════════════════════


class TestReplayAndAtomicity:
    def test_retry_with_same_key_books_once(self, conn, stock):
        rose = stock("Red rose", 10, 1.20)
        keyed = OperationContext(user_id="anna", idempotency_key="till-1:42")

        first = record_sale(conn, keyed, product_id=rose, quantity=2, unit_price=2.5)
        again = record_sale(conn, keyed, product_id=rose, quantity=2, unit_price=2.5)

        assert again.replayed is True
        assert again.transaction.id == first.transaction.id
        assert get_quantity(conn, rose) == 8
        assert _count(conn, "sale") == 1

    def test_failed_append_rolls_back_stock(self, conn, ctx, stock, monkeypatch):
        rose = stock("Red rose", 10, 1.20)
        before = _count(conn)

        def boom(conn, txn):
            raise RuntimeError("disk full")

        monkeypatch.setattr(log, "append", boom)
        with pytest.raises(RuntimeError):
            record_sale(conn, ctx, product_id=rose, quantity=2, unit_price=2.5)
        monkeypatch.undo()

        assert get_quantity(conn, rose) == 10
        assert _count(conn) == before
        assert not conn.in_transaction

    def test_stock_replays_from_log(self, conn, ctx, stock):
        """Random operation sequence: stock never goes negative and always equals the net log movement."""
        rng = random.Random(42)
        pids = [stock(name, 5, 1.0) for name in ("Red rose", "Tulip", "Eucalyptus")]
        expected = {pid: 5 for pid in pids}
        sales = []

        for _ in range(200):
            pid = rng.choice(pids)
            op = rng.choice(["purchase", "sale", "sale", "waste", "storno"])
            n = rng.randint(1, 6)
            try:
                if op == "purchase":
                    record_purchase(conn, ctx, product_id=pid, quantity=n, unit_price=1.0)
                    expected[pid] += n
                elif op == "sale":
                    t = record_sale(conn, ctx, product_id=pid, quantity=n, unit_price=2.0).transaction
                    expected[pid] -= n
                    sales.append(t)
                elif op == "waste":
                    record_waste(conn, ctx, product_id=pid, quantity=n)
                    expected[pid] -= n
                elif sales:
                    t = sales.pop(rng.randrange(len(sales)))
                    storno(conn, ctx, transaction_id=t.id)
                    expected[t.product_id] += t.quantity
            except InsufficientStockError:
                pass

            for p in pids:
                assert get_quantity(conn, p) >= 0

        signs = {"purchase": 1, "storno": 1, "sale": -1, "waste": -1}
        for pid in pids:
            net = sum(
                signs[t.type.value] * t.quantity
                for t in log.query(conn, log.TransactionFilter(product_id=pid))
                if t.stock_linked
            )
            assert get_quantity(conn, pid) == expected[pid] == net
            assert get_entry(conn, pid).quantity == net

    def test_file_database_shared_by_two_registers(self, tmp_path):
        from flora.services.demo_data import upsert_reference_data

        path = tmp_path / "flora.db"
        a = connect(path)
        b = connect(path)
        ensure_schema(a)
        upsert_reference_data(a)
        ctx = OperationContext(user_id="till")

        res = record_purchase(a, ctx, new_product_name="Peony", quantity=1, unit_price=3.0)
        pid = res.transaction.product_id

        record_sale(a, ctx, product_id=pid, quantity=1, unit_price=6.0)
        with pytest.raises(InsufficientStockError):
            record_sale(b, ctx, product_id=pid, quantity=1, unit_price=6.0)

        assert get_quantity(b, pid) == 0
        assert get_product(b, pid).name == "Peony"
        a.close()
        b.close()


class TestKeyReuse:
    def test_key_of_another_operation_is_rejected(self, conn, stock):
        rose = stock("Red rose", 10, 1.20)
        keyed = OperationContext(user_id="anna", idempotency_key="K1")
        record_purchase(conn, keyed, product_id=rose, quantity=5, unit_price=1.20)

        with pytest.raises(ValidationError) as exc:
            record_sale(conn, keyed, product_id=rose, quantity=3, unit_price=2.5)

        assert exc.value.field == "idempotency_key"
        assert "purchase" in str(exc.value)
        assert get_quantity(conn, rose) == 15
        assert _count(conn, "sale") == 0

    def test_storno_key_cannot_replay_a_sale(self, conn, stock):
        rose = stock("Red rose", 10, 1.20)
        keyed = OperationContext(idempotency_key="K2")
        sale = record_sale(conn, keyed, product_id=rose, quantity=1, unit_price=2.5).transaction

        with pytest.raises(ValidationError):
            storno(conn, keyed, transaction_id=sale.id)
        assert _count(conn, "storno") == 0


# ══════════════════════════════════════════════════════════════
# ONE CONNECTION, SEVERAL REGISTERS
# ══════════════════════════════════════════════════════════════


class TestSharedConnection:
    """The Streamlit pages share one cached connection across sessions (threads)."""

    def test_other_thread_waits_for_open_unit(self, conn, ctx, stock):
        rose = stock("Red rose", 10, 1.20)
        opened = threading.Event()
        booked = {}

        def other_register():
            opened.wait()
            booked["sale"] = record_sale(conn, ctx, product_id=rose, quantity=3, unit_price=2.5).transaction

        t = threading.Thread(target=other_register)
        t.start()
        with pytest.raises(RuntimeError):
            with transaction(conn):
                adjust(conn, rose, -1)
                opened.set()
                time.sleep(0.2)
                raise RuntimeError("register aborted")
        t.join(timeout=5)

        assert not t.is_alive()
        assert get_quantity(conn, rose) == 7
        assert log.get(conn, booked["sale"].id).quantity == 3
        assert _count(conn, "sale") == 1

    def test_schema_refresh_does_not_commit_open_unit(self, conn, stock):
        rose = stock("Red rose", 10, 1.20)
        opened = threading.Event()

        def page_load():
            opened.wait()
            ensure_schema(conn)

        t = threading.Thread(target=page_load)
        t.start()
        with pytest.raises(RuntimeError):
            with transaction(conn):
                adjust(conn, rose, -4)
                opened.set()
                time.sleep(0.2)
                raise RuntimeError("register aborted")
        t.join(timeout=5)

        assert not t.is_alive()
        assert get_quantity(conn, rose) == 10

    def test_schema_refresh_refused_inside_unit(self, conn):
        with pytest.raises(RuntimeError):
            with transaction(conn):
                ensure_schema(conn)
        assert not conn.in_transaction
