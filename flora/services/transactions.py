from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import Iterable, Iterator, Optional, Union

from flora.config import VAT_RATES
from flora.db import q, stream, x
from flora.errors import NotFoundError, ValidationError
from flora.utils import iso_now, money, to_iso


class TransactionType(str, Enum):
    PURCHASE = "purchase"
    SALE = "sale"
    SALE_BOUQUET = "sale_bouquet"
    USAGE = "usage"
    PRODUCTION = "production"
    WASTE = "waste"
    PERSONAL = "personal"
    GIFT = "gift"
    DISCOUNT = "discount"
    STORNO = "storno"


SALE_TYPES = frozenset({TransactionType.SALE, TransactionType.SALE_BOUQUET})
WRITE_OFF_TYPES = frozenset(
    {TransactionType.WASTE, TransactionType.PERSONAL, TransactionType.GIFT, TransactionType.DISCOUNT}
)
REVENUE_TYPES = SALE_TYPES | {TransactionType.STORNO}

PAYMENT_METHODS = ("cash", "card")
PAYMENT_LABELS = {"cash": "Cash", "card": "Card", "invoice": "Invoice"}

_CENT = 0.005


def vat_amount(total_price: float, vat_rate: float) -> float:
    """VAT contained in a tax-inclusive price."""
    rate = float(vat_rate)
    if rate <= 0:
        return 0.0
    return float(total_price) * rate / (100.0 + rate)


def net_amount(total_price: float, vat_rate: float) -> float:
    return float(total_price) - vat_amount(total_price, vat_rate)


def normalize_payment_method(payment_method: Optional[str]) -> str:
    pm = str(payment_method or "cash").strip().lower()
    if pm not in PAYMENT_METHODS:
        raise ValidationError("payment_method", f"must be one of {', '.join(PAYMENT_METHODS)}")
    return pm


@dataclass(frozen=True)
class Transaction:
    """
    One row of the append-only log.

    Build rows through the per-kind factories below; __post_init__ rejects
    any combination of fields a kind does not allow.
    """

    type: TransactionType
    quantity: int
    unit_price: float
    total_price: float
    product_id: Optional[int] = None
    vat_rate: int = 0
    vat_amount: float = 0.0
    note: Optional[str] = None
    payment_method: Optional[str] = None
    category: Optional[str] = None
    stock_linked: bool = False
    user_id: Optional[str] = None
    reverses_id: Optional[int] = None
    idempotency_key: Optional[str] = None
    created_at: str = field(default_factory=iso_now)
    id: Optional[int] = None

    def __post_init__(self) -> None:
        t = TransactionType(self.type)
        object.__setattr__(self, "type", t)

        if int(self.quantity) <= 0:
            raise ValidationError("quantity", "must be > 0")

        if t == TransactionType.STORNO:
            if self.reverses_id is None:
                raise ValidationError("reverses_id", "storno must reference the cancelled transaction")
            if self.total_price > 0:
                raise ValidationError("total_price", "storno amounts are negated")
        elif abs(money(self.quantity * self.unit_price) - self.total_price) > _CENT:
            raise ValidationError("total_price", "must equal quantity x unit_price")

        if t == TransactionType.USAGE and (self.unit_price != 0 or self.total_price != 0):
            raise ValidationError("unit_price", "usage rows are priced at zero")

        if t in SALE_TYPES or t == TransactionType.STORNO:
            if int(self.vat_rate) not in VAT_RATES:
                raise ValidationError("vat_rate", f"must be one of {', '.join(map(str, VAT_RATES))}")
            if abs(vat_amount(self.total_price, self.vat_rate) - self.vat_amount) > _CENT:
                raise ValidationError("vat_amount", "does not match total_price and vat_rate")
        elif self.vat_amount != 0:
            raise ValidationError("vat_amount", f"no VAT is booked on {t.value}")

    @property
    def net_amount(self) -> float:
        return float(self.total_price) - float(self.vat_amount)

    # ---- factories ----

    @classmethod
    def purchase(cls, *, product_id: int, quantity: int, unit_price: float, note: Optional[str] = None, **kw) -> "Transaction":
        return cls(
            type=TransactionType.PURCHASE,
            product_id=int(product_id),
            quantity=int(quantity),
            unit_price=float(unit_price),
            total_price=money(int(quantity) * float(unit_price)),
            note=note,
            payment_method="invoice",
            stock_linked=True,
            **kw,
        )

    @classmethod
    def sale(
        cls,
        *,
        product_id: Optional[int],
        quantity: int,
        unit_price: float,
        vat_rate: int,
        stock_linked: bool,
        payment_method: str = "cash",
        **kw,
    ) -> "Transaction":
        total = money(int(quantity) * float(unit_price))
        return cls(
            type=TransactionType.SALE,
            product_id=int(product_id) if product_id is not None else None,
            quantity=int(quantity),
            unit_price=float(unit_price),
            total_price=total,
            vat_rate=int(vat_rate),
            vat_amount=vat_amount(total, vat_rate),
            payment_method=normalize_payment_method(payment_method),
            stock_linked=bool(stock_linked),
            **kw,
        )

    @classmethod
    def sale_bouquet(cls, *, quantity: int, unit_price: float, vat_rate: int, payment_method: str = "cash", **kw) -> "Transaction":
        total = money(int(quantity) * float(unit_price))
        return cls(
            type=TransactionType.SALE_BOUQUET,
            quantity=int(quantity),
            unit_price=float(unit_price),
            total_price=total,
            vat_rate=int(vat_rate),
            vat_amount=vat_amount(total, vat_rate),
            payment_method=normalize_payment_method(payment_method),
            **kw,
        )

    @classmethod
    def usage(cls, *, product_id: int, quantity: int, note: str, **kw) -> "Transaction":
        return cls(
            type=TransactionType.USAGE,
            product_id=int(product_id),
            quantity=int(quantity),
            unit_price=0.0,
            total_price=0.0,
            note=note,
            stock_linked=True,
            **kw,
        )

    @classmethod
    def production(cls, *, product_id: int, quantity: int, unit_price: float, note: str, **kw) -> "Transaction":
        return cls(
            type=TransactionType.PRODUCTION,
            product_id=int(product_id),
            quantity=int(quantity),
            unit_price=float(unit_price),
            total_price=money(int(quantity) * float(unit_price)),
            note=note,
            stock_linked=True,
            **kw,
        )

    @classmethod
    def write_off(cls, kind: Union[TransactionType, str], *, product_id: int, quantity: int, unit_cost: float, **kw) -> "Transaction":
        try:
            t = TransactionType(kind)
        except ValueError:
            t = None
        if t not in WRITE_OFF_TYPES:
            raise ValidationError("reason_kind", "must be one of waste, personal, gift, discount")
        return cls(
            type=t,
            product_id=int(product_id),
            quantity=int(quantity),
            unit_price=float(unit_cost),
            total_price=money(int(quantity) * float(unit_cost)),
            stock_linked=True,
            **kw,
        )

    @classmethod
    def reversal(cls, original: "Transaction", **kw) -> "Transaction":
        if original.type not in SALE_TYPES:
            raise ValidationError("transaction_id", f"only sales can be cancelled, not {original.type.value}")
        return cls(
            type=TransactionType.STORNO,
            product_id=original.product_id,
            quantity=original.quantity,
            unit_price=-float(original.unit_price),
            total_price=-float(original.total_price),
            vat_rate=original.vat_rate,
            vat_amount=-float(original.vat_amount),
            note=f"Storno of #{original.id}",
            payment_method=original.payment_method,
            category=original.category,
            stock_linked=original.stock_linked,
            reverses_id=original.id,
            **kw,
        )


@dataclass(frozen=True)
class TransactionFilter:
    types: Optional[Iterable[Union[TransactionType, str]]] = None
    start: Union[date, datetime, str, None] = None
    end: Union[date, datetime, str, None] = None  # exclusive
    product_id: Optional[int] = None


_COLUMNS = (
    "created_at", "type", "product_id", "quantity", "unit_price", "total_price",
    "vat_rate", "vat_amount", "note", "payment_method", "category", "stock_linked",
    "user_id", "reverses_id", "idempotency_key",
)


def _from_row(r) -> Transaction:
    return Transaction(
        id=int(r["id"]),
        created_at=str(r["created_at"]),
        type=TransactionType(r["type"]),
        product_id=int(r["product_id"]) if r["product_id"] is not None else None,
        quantity=int(r["quantity"]),
        unit_price=float(r["unit_price"]),
        total_price=float(r["total_price"]),
        vat_rate=int(r["vat_rate"]),
        vat_amount=float(r["vat_amount"]),
        note=r["note"],
        payment_method=r["payment_method"],
        category=r["category"],
        stock_linked=bool(r["stock_linked"]),
        user_id=r["user_id"],
        reverses_id=int(r["reverses_id"]) if r["reverses_id"] is not None else None,
        idempotency_key=r["idempotency_key"],
    )


def append(conn, txn: Transaction) -> Transaction:
    """Insert a row and return it with its id. Never updates prior rows."""
    values = []
    for col in _COLUMNS:
        v = getattr(txn, col)
        if col == "type":
            v = v.value
        elif col == "stock_linked":
            v = 1 if v else 0
        values.append(v)

    tid = x(
        conn,
        f"INSERT INTO transactions ({', '.join(_COLUMNS)}) VALUES ({', '.join('?' for _ in _COLUMNS)})",
        values,
    )
    return replace(txn, id=tid)


def get(conn, transaction_id: int) -> Transaction:
    rows = q(conn, "SELECT * FROM transactions WHERE id=?", (int(transaction_id),))
    if not rows:
        raise NotFoundError("transaction", transaction_id)
    return _from_row(rows[0])


def find_reversal(conn, transaction_id: int) -> Optional[Transaction]:
    rows = q(conn, "SELECT * FROM transactions WHERE reverses_id=?", (int(transaction_id),))
    return _from_row(rows[0]) if rows else None


def find_by_idempotency_key(conn, key: str) -> Optional[Transaction]:
    rows = q(conn, "SELECT * FROM transactions WHERE idempotency_key=?", (str(key),))
    return _from_row(rows[0]) if rows else None


def query(conn, flt: Optional[TransactionFilter] = None) -> Iterator[Transaction]:
    """Lazily stream matching rows in booking order. Read-only."""
    flt = flt or TransactionFilter()
    where = ["1=1"]
    params: list = []

    if flt.types is not None:
        types = [TransactionType(t).value for t in flt.types]
        if not types:
            return
        where.append(f"type IN ({', '.join('?' for _ in types)})")
        params.extend(types)
    if flt.start is not None:
        where.append("created_at >= ?")
        params.append(to_iso(flt.start))
    if flt.end is not None:
        where.append("created_at < ?")
        params.append(to_iso(flt.end))
    if flt.product_id is not None:
        where.append("product_id = ?")
        params.append(int(flt.product_id))

    rows = stream(
        conn,
        f"SELECT * FROM transactions WHERE {' AND '.join(where)} ORDER BY created_at, id",
        params,
    )
    for r in rows:
        yield _from_row(r)


def recent(conn, *, types: Optional[Iterable[Union[TransactionType, str]]] = None, limit: int = 50):
    """Latest rows with product names, for the register screens."""
    where = ""
    params: list = []
    if types is not None:
        vals = [TransactionType(t).value for t in types]
        where = f"WHERE t.type IN ({', '.join('?' for _ in vals)})"
        params.extend(vals)
    params.append(int(limit))
    return q(
        conn,
        f"""
        SELECT t.id, t.created_at, t.type, p.name AS product, t.quantity,
               t.unit_price, t.total_price, t.vat_rate, ROUND(t.vat_amount, 2) AS vat_amount,
               t.payment_method, t.category, t.note,
               (SELECT s.id FROM transactions s WHERE s.reverses_id = t.id) AS storno_id
        FROM transactions t
        LEFT JOIN products p ON p.id = t.product_id
        {where}
        ORDER BY t.id DESC
        LIMIT ?
        """,
        params,
    )


@dataclass(frozen=True)
class Receipt:
    store_name: str
    store_address: str
    created_at: str
    description: str
    quantity: int
    unit_price: float
    gross: float
    net: float
    vat_rate: int
    vat_amount: float
    payment_label: str


def receipt(txn: Transaction, *, store_name: str, store_address: str = "", description: Optional[str] = None) -> Receipt:
    if txn.type not in REVENUE_TYPES:
        raise ValidationError("transaction_id", "receipts are printed for sales only")
    gross = float(txn.total_price)
    vat = vat_amount(gross, txn.vat_rate)
    return Receipt(
        store_name=store_name,
        store_address=store_address,
        created_at=txn.created_at,
        description=description or txn.note or txn.category or "",
        quantity=int(txn.quantity),
        unit_price=float(txn.unit_price),
        gross=money(gross),
        net=money(gross - vat),
        vat_rate=int(txn.vat_rate),
        vat_amount=money(vat),
        payment_label=PAYMENT_LABELS.get(txn.payment_method or "cash", "Cash"),
    )
