"""
Ledger engine: the only code that moves stock.

Every public operation is one atomic unit (flora.db.transaction). Either the
inventory change and all of its log rows are committed together, or nothing
is. Callers pass an OperationContext explicitly; there is no session state.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Optional, Sequence

from flora.config import BOUQUET_CATEGORY, DEFAULT_VAT_RATE
from flora.db import in_unit, transaction
from flora.errors import AlreadyCancelledError, InsufficientStockError, LedgerError, ValidationError
from flora.services import inventory
from flora.services import transactions as log
from flora.services.catalog import find_category, get_product, resolve_or_create_product
from flora.services.inventory import InventoryEntry
from flora.services.templates import TemplateItem, get_template, validate_items
from flora.services.transactions import (
    SALE_TYPES,
    WRITE_OFF_TYPES,
    Transaction,
    TransactionType,
    normalize_payment_method,
)

logger = logging.getLogger("flora.ledger")


@dataclass(frozen=True)
class OperationContext:
    user_id: Optional[str] = None
    # Set to make a retried operation book at most once.
    idempotency_key: Optional[str] = None


@dataclass
class OperationResult:
    transaction: Transaction
    usage: list[Transaction] = field(default_factory=list)
    entry: Optional[InventoryEntry] = None
    replayed: bool = False


@dataclass(frozen=True)
class CartLine:
    quantity: int
    unit_price: float
    product_id: Optional[int] = None
    template_id: Optional[int] = None
    items: Optional[tuple[TemplateItem, ...]] = None
    name: Optional[str] = None
    category: Optional[str] = None
    inventory_linked: bool = True


# -------------------------
# Helpers
# -------------------------

def _positive_int(v, name: str) -> int:
    if isinstance(v, float) and not v.is_integer():
        raise ValidationError(name, "must be a whole number")
    try:
        n = int(v)
    except (TypeError, ValueError):
        raise ValidationError(name, "must be a whole number")
    if n <= 0:
        raise ValidationError(name, "must be > 0")
    return n


def _positive_price(v, name: str) -> float:
    try:
        p = float(v)
    except (TypeError, ValueError):
        raise ValidationError(name, "must be a number")
    if not p > 0:
        raise ValidationError(name, "must be > 0")
    return p


def _stamp(ctx: OperationContext) -> dict:
    """Fields for the operation's top-level row."""
    return {"user_id": ctx.user_id, "idempotency_key": ctx.idempotency_key}


@contextmanager
def _unit(conn, op: str) -> Iterator[None]:
    outermost = not in_unit(conn)
    try:
        with transaction(conn):
            yield
    except LedgerError as e:
        if outermost:
            logger.info("%s rejected: %s", op, e)
        raise


def _replay(conn, ctx: OperationContext, kinds: Iterable[TransactionType]) -> Optional[OperationResult]:
    if not ctx.idempotency_key:
        return None
    prior = log.find_by_idempotency_key(conn, ctx.idempotency_key)
    if prior is None:
        return None
    if prior.type not in set(kinds):
        raise ValidationError("idempotency_key", f"already used by a {prior.type.value} operation")
    logger.info("Replaying %s #%s for key %s", prior.type.value, prior.id, ctx.idempotency_key)
    entry = inventory.get_entry(conn, prior.product_id) if prior.product_id is not None else None
    return OperationResult(transaction=prior, entry=entry, replayed=True)


def _deduct_ingredients(
    conn,
    ctx: OperationContext,
    items: Iterable[TemplateItem],
    multiplier: int,
    note: str,
) -> list[Transaction]:
    """
    All-or-nothing: every product ingredient is checked before the first
    decrement. Materials are not stocked and pass through.
    """
    needs: "OrderedDict[int, int]" = OrderedDict()
    for it in items:
        if it.product_id is None:
            continue
        needs[int(it.product_id)] = needs.get(int(it.product_id), 0) + int(it.quantity) * int(multiplier)

    for pid, need in needs.items():
        available = inventory.get_quantity(conn, pid)
        if available < need:
            raise InsufficientStockError(pid, need, available, name=get_product(conn, pid).name)

    usage: list[Transaction] = []
    for pid, need in needs.items():
        inventory.adjust(conn, pid, -need)
        usage.append(
            log.append(conn, Transaction.usage(product_id=pid, quantity=need, note=note, user_id=ctx.user_id))
        )
    return usage


# -------------------------
# Operations
# -------------------------

def record_purchase(
    conn,
    ctx: OperationContext,
    *,
    quantity: int,
    unit_price: float,
    product_id: Optional[int] = None,
    new_product_name: Optional[str] = None,
    supplier_note: str = "",
    category_id: Optional[int] = None,
    vat_rate: int = DEFAULT_VAT_RATE,
) -> OperationResult:
    """Goods receipt. Purchase-side VAT is not booked."""
    qty = _positive_int(quantity, "quantity")
    price = _positive_price(unit_price, "unit_price")
    if product_id is None and not str(new_product_name or "").strip():
        raise ValidationError("product_id", "choose a product or enter a new product name")

    with _unit(conn, "purchase"):
        replayed = _replay(conn, ctx, [TransactionType.PURCHASE])
        if replayed:
            return replayed

        if product_id is not None:
            product = get_product(conn, int(product_id))
        else:
            product = resolve_or_create_product(
                conn, str(new_product_name), category_id=category_id, vat_rate=vat_rate, is_composite=False
            )
        if product.is_composite:
            raise ValidationError("product_id", f"'{product.name}' is a bouquet; bouquets are produced, not purchased")

        entry = inventory.adjust(conn, product.id, qty, new_unit_cost=price)
        supplier = str(supplier_note or "").strip()
        txn = log.append(
            conn,
            Transaction.purchase(
                product_id=product.id,
                quantity=qty,
                unit_price=price,
                note=f"Supplier: {supplier}" if supplier else None,
                category=product.category_name,
                **_stamp(ctx),
            ),
        )

    logger.info("Purchase #%s: %d x '%s' at %.2f", txn.id, qty, product.name, price)
    return OperationResult(transaction=txn, entry=entry)


def record_sale(
    conn,
    ctx: OperationContext,
    *,
    quantity: int,
    unit_price: float,
    product_id: Optional[int] = None,
    category: Optional[str] = None,
    inventory_linked: bool = True,
    payment_method: str = "cash",
    description: str = "",
    default_vat_rate: int = DEFAULT_VAT_RATE,
) -> OperationResult:
    """
    Sell a catalog product (stock-linked or not) or book a free sale.

    Free sales carry no product, never touch stock, and need a category.
    Stock is decremented before the row is appended; a short product fails
    the whole sale.
    """
    qty = _positive_int(quantity, "quantity")
    price = _positive_price(unit_price, "unit_price")
    pm = normalize_payment_method(payment_method)
    if product_id is None:
        if inventory_linked:
            raise ValidationError("product_id", "required for a stock-linked sale")
        if not str(category or "").strip():
            raise ValidationError("category", "required for a free sale")

    with _unit(conn, "sale"):
        replayed = _replay(conn, ctx, [TransactionType.SALE])
        if replayed:
            return replayed

        entry = None
        if product_id is not None:
            product = get_product(conn, int(product_id))
            vat_rate = product.vat_rate
            cat_name = product.category_name or (str(category).strip() if category else None)
            if inventory_linked:
                entry = inventory.adjust(conn, product.id, -qty)
        else:
            cat = find_category(conn, str(category))
            if cat is None:
                raise ValidationError("category", f"unknown category '{category}'")
            vat_rate = int(default_vat_rate)
            cat_name = cat.name

        txn = log.append(
            conn,
            Transaction.sale(
                product_id=product_id,
                quantity=qty,
                unit_price=price,
                vat_rate=vat_rate,
                stock_linked=bool(product_id is not None and inventory_linked),
                payment_method=pm,
                note=str(description or "").strip() or None,
                category=cat_name,
                **_stamp(ctx),
            ),
        )

    logger.info("Sale #%s: %d x %.2f = %.2f (%s)", txn.id, qty, price, txn.total_price, pm)
    return OperationResult(transaction=txn, entry=entry)


def produce_bouquet(conn, ctx: OperationContext, *, template_id: int, multiplier: int) -> OperationResult:
    """
    Tie `multiplier` bouquets from a template ahead of sale.

    Ingredients leave stock as zero-priced usage rows; the finished bouquet
    enters stock at unit cost 0, its cost lives only in the usage log.
    """
    mult = _positive_int(multiplier, "multiplier")

    with _unit(conn, "production"):
        replayed = _replay(conn, ctx, [TransactionType.PRODUCTION])
        if replayed:
            return replayed

        tpl = get_template(conn, int(template_id))
        usage = _deduct_ingredients(conn, ctx, tpl.items, mult, f"Used for production: {tpl.name} (x{mult})")

        cat = find_category(conn, BOUQUET_CATEGORY)
        product = resolve_or_create_product(
            conn, tpl.name, category_id=cat.id if cat else None, is_composite=True
        )
        entry = inventory.adjust(conn, product.id, mult, new_unit_cost=0.0)
        txn = log.append(
            conn,
            Transaction.production(
                product_id=product.id,
                quantity=mult,
                unit_price=tpl.base_price,
                note=f"Produced from template: {tpl.name}",
                category=product.category_name,
                **_stamp(ctx),
            ),
        )

    logger.info("Production #%s: %d x '%s' (%d ingredient row(s))", txn.id, mult, tpl.name, len(usage))
    return OperationResult(transaction=txn, usage=usage, entry=entry)


def sell_composite(
    conn,
    ctx: OperationContext,
    *,
    quantity: int,
    sale_price: float,
    product_id: Optional[int] = None,
    template_id: Optional[int] = None,
    items: Optional[Sequence[TemplateItem]] = None,
    name: Optional[str] = None,
    payment_method: str = "cash",
    default_vat_rate: int = DEFAULT_VAT_RATE,
) -> OperationResult:
    """
    Sell a bouquet.

    product_id: a produced, stocked bouquet; booked exactly like record_sale.
    template_id / items: tied at the counter; ingredients are deducted and a
    sale_bouquet row is booked, the bouquet itself is never stocked.
    """
    if sum(v is not None for v in (product_id, template_id, items)) != 1:
        raise ValidationError("product_id", "give exactly one of product_id, template_id or items")

    if product_id is not None:
        product = get_product(conn, int(product_id))
        if not product.is_composite:
            raise ValidationError("product_id", f"'{product.name}' is not a bouquet")
        return record_sale(
            conn,
            ctx,
            product_id=product.id,
            quantity=quantity,
            unit_price=sale_price,
            inventory_linked=True,
            payment_method=payment_method,
            description=name or "",
        )

    qty = _positive_int(quantity, "quantity")
    price = _positive_price(sale_price, "sale_price")
    pm = normalize_payment_method(payment_method)

    with _unit(conn, "bouquet sale"):
        replayed = _replay(conn, ctx, [TransactionType.SALE_BOUQUET])
        if replayed:
            return replayed

        if template_id is not None:
            tpl = get_template(conn, int(template_id))
            ingredients = list(tpl.items)
            label = str(name or "").strip() or tpl.name
        else:
            ingredients = validate_items(conn, items)
            label = str(name or "").strip() or "Custom bouquet"

        usage = _deduct_ingredients(conn, ctx, ingredients, qty, f"Used for bouquet sale: {label} (x{qty})")
        txn = log.append(
            conn,
            Transaction.sale_bouquet(
                quantity=qty,
                unit_price=price,
                vat_rate=int(default_vat_rate),
                payment_method=pm,
                note=label,
                category=BOUQUET_CATEGORY,
                **_stamp(ctx),
            ),
        )

    logger.info("Bouquet sale #%s: %d x '%s' = %.2f", txn.id, qty, label, txn.total_price)
    return OperationResult(transaction=txn, usage=usage)


def record_waste(
    conn,
    ctx: OperationContext,
    *,
    product_id: int,
    quantity: int,
    reason_kind: str = "waste",
    note: str = "",
) -> OperationResult:
    """Write stock off (spoiled, personal use, gift, discounted) valued at last cost."""
    qty = _positive_int(quantity, "quantity")
    try:
        kind = TransactionType(reason_kind)
    except ValueError:
        kind = None
    if kind not in WRITE_OFF_TYPES:
        raise ValidationError("reason_kind", "must be one of waste, personal, gift, discount")

    with _unit(conn, "write-off"):
        replayed = _replay(conn, ctx, [kind])
        if replayed:
            return replayed

        product = get_product(conn, int(product_id))
        entry = inventory.adjust(conn, product.id, -qty)
        txn = log.append(
            conn,
            Transaction.write_off(
                kind,
                product_id=product.id,
                quantity=qty,
                unit_cost=entry.unit_purchase_price,
                note=str(note or "").strip() or None,
                category=product.category_name,
                **_stamp(ctx),
            ),
        )

    logger.info("Write-off #%s (%s): %d x '%s'", txn.id, kind.value, qty, product.name)
    return OperationResult(transaction=txn, entry=entry)


def storno(conn, ctx: OperationContext, *, transaction_id: int) -> OperationResult:
    """
    Cancel a sale by booking its negation. The original row stays untouched.

    Stock of the sold product comes back; ingredient usage of a bouquet sale
    is not reversed.
    """
    with _unit(conn, "storno"):
        replayed = _replay(conn, ctx, [TransactionType.STORNO])
        if replayed:
            return replayed

        original = log.get(conn, int(transaction_id))
        if original.type not in SALE_TYPES:
            raise ValidationError("transaction_id", f"only sales can be cancelled, not {original.type.value}")
        prior = log.find_reversal(conn, original.id)
        if prior is not None:
            raise AlreadyCancelledError(original.id, prior.id)

        entry = None
        if original.stock_linked and original.product_id is not None:
            entry = inventory.adjust(conn, original.product_id, original.quantity)
        txn = log.append(conn, Transaction.reversal(original, **_stamp(ctx)))

    logger.info("Storno #%s of #%s: %.2f", txn.id, original.id, txn.total_price)
    return OperationResult(transaction=txn, entry=entry)


def checkout(
    conn,
    ctx: OperationContext,
    lines: Sequence[CartLine],
    *,
    payment_method: str = "cash",
    default_vat_rate: int = DEFAULT_VAT_RATE,
) -> list[OperationResult]:
    """Book a whole register cart as one unit: one short line voids the cart."""
    if not lines:
        raise ValidationError("lines", "cart is empty")
    pm = normalize_payment_method(payment_method)

    results: list[OperationResult] = []
    with _unit(conn, "checkout"):
        for i, line in enumerate(lines):
            line_ctx = OperationContext(
                user_id=ctx.user_id,
                idempotency_key=f"{ctx.idempotency_key}:{i}" if ctx.idempotency_key else None,
            )

            if line.items is not None or line.template_id is not None:
                res = sell_composite(
                    conn,
                    line_ctx,
                    template_id=line.template_id,
                    items=line.items,
                    name=line.name,
                    quantity=line.quantity,
                    sale_price=line.unit_price,
                    payment_method=pm,
                    default_vat_rate=default_vat_rate,
                )
            elif line.product_id is not None and get_product(conn, int(line.product_id)).is_composite:
                res = sell_composite(
                    conn,
                    line_ctx,
                    product_id=line.product_id,
                    quantity=line.quantity,
                    sale_price=line.unit_price,
                    payment_method=pm,
                )
            else:
                res = record_sale(
                    conn,
                    line_ctx,
                    product_id=line.product_id,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    category=line.category,
                    inventory_linked=line.inventory_linked if line.product_id is not None else False,
                    payment_method=pm,
                    description=line.name or "",
                    default_vat_rate=default_vat_rate,
                )
            results.append(res)

    logger.info("Checkout: %d line(s), %.2f total", len(results), sum(r.transaction.total_price for r in results))
    return results
