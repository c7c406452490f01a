from __future__ import annotations

from datetime import date, datetime
from typing import Optional, Union

import pandas as pd

from flora.config import BOUQUET_CATEGORY, FALLBACK_CATEGORY, VAT_RATES
from flora.db import q
from flora.services import transactions as log
from flora.services.transactions import (
    REVENUE_TYPES,
    WRITE_OFF_TYPES,
    Transaction,
    TransactionFilter,
    TransactionType,
)

Bound = Union[date, datetime, str, None]

REVENUE_COLUMNS = [
    "id", "created_at", "type", "product_id", "quantity", "total_price",
    "vat_rate", "vat_amount", "net", "payment_method", "category",
]


def _product_categories(conn) -> dict[int, str]:
    rows = q(
        conn,
        """
        SELECT p.id, c.name
        FROM products p
        JOIN categories c ON c.id = p.category_id
        """,
    )
    return {int(r["id"]): str(r["name"]) for r in rows}


def _category(t: Transaction, cats: dict[int, str]) -> str:
    # The category captured at booking wins; recategorising a product later
    # must not move past revenue.
    if t.category:
        return t.category
    if t.product_id is not None and t.product_id in cats:
        return cats[t.product_id]
    if t.type == TransactionType.SALE_BOUQUET:
        return BOUQUET_CATEGORY
    return FALLBACK_CATEGORY


def revenue_frame(conn, start: Bound = None, end: Bound = None) -> pd.DataFrame:
    """
    Revenue rows (sales, bouquet sales and their stornos) in [start, end).

    A storno counts on the day it was booked, so a sale cancelled today
    nets out today and the original day is left as it was.
    """
    cats = _product_categories(conn)
    rows = [
        {
            "id": t.id,
            "created_at": t.created_at,
            "type": t.type.value,
            "product_id": t.product_id,
            "quantity": t.quantity,
            "total_price": float(t.total_price),
            "vat_rate": int(t.vat_rate),
            "vat_amount": float(t.vat_amount),
            "net": float(t.total_price) - float(t.vat_amount),
            "payment_method": t.payment_method or "cash",
            "category": _category(t, cats),
        }
        for t in log.query(conn, TransactionFilter(types=REVENUE_TYPES, start=start, end=end))
    ]
    df = pd.DataFrame(rows, columns=REVENUE_COLUMNS)
    df["created_at"] = pd.to_datetime(df["created_at"], utc=True)
    return df


def _revenue_by_period(df: pd.DataFrame, fmt: str, label: str) -> pd.DataFrame:
    if df.empty:
        return pd.DataFrame(columns=[label, "revenue"])
    out = (
        df.groupby(df["created_at"].dt.strftime(fmt))["total_price"]
        .sum()
        .round(2)
        .reset_index()
    )
    out.columns = [label, "revenue"]
    return out.sort_values(label).reset_index(drop=True)


def revenue_by_day(df: pd.DataFrame) -> pd.DataFrame:
    return _revenue_by_period(df, "%Y-%m-%d", "day")


def revenue_by_month(df: pd.DataFrame) -> pd.DataFrame:
    return _revenue_by_period(df, "%Y-%m", "month")


def revenue_by_year(df: pd.DataFrame) -> pd.DataFrame:
    return _revenue_by_period(df, "%Y", "year")


def revenue_by_payment_method(df: pd.DataFrame) -> pd.DataFrame:
    # Cash and card always show, even on a day with no card sales.
    sums = df.groupby("payment_method")["total_price"].sum() if not df.empty else pd.Series(dtype=float)
    sums = sums.reindex(sorted(set(sums.index) | {"cash", "card"}), fill_value=0.0)
    out = sums.round(2).reset_index()
    out.columns = ["payment_method", "revenue"]
    return out


def revenue_by_category(df: pd.DataFrame) -> pd.DataFrame:
    if df.empty:
        return pd.DataFrame(columns=["category", "revenue"])
    out = df.groupby("category")["total_price"].sum().round(2).reset_index()
    out.columns = ["category", "revenue"]
    return out.sort_values("revenue", ascending=False).reset_index(drop=True)


def vat_summary(df: pd.DataFrame) -> pd.DataFrame:
    """Net, VAT and gross per rate bucket plus a grand total row."""
    rates = sorted(set(VAT_RATES) | (set(df["vat_rate"].astype(int)) if not df.empty else set()))
    if df.empty:
        grouped = pd.DataFrame(0.0, index=rates, columns=["net", "vat", "gross"])
    else:
        grouped = (
            df.groupby("vat_rate")
            .agg(net=("net", "sum"), vat=("vat_amount", "sum"), gross=("total_price", "sum"))
            .reindex(rates, fill_value=0.0)
        )

    out = grouped.reset_index()
    out.columns = ["vat_rate", "net", "vat", "gross"]
    out["vat_rate"] = out["vat_rate"].map(lambda r: f"{int(r)}%")
    total = pd.DataFrame(
        [{"vat_rate": "Total", "net": out["net"].sum(), "vat": out["vat"].sum(), "gross": out["gross"].sum()}]
    )
    out = pd.concat([out, total], ignore_index=True)
    out[["net", "vat", "gross"]] = out[["net", "vat", "gross"]].astype(float).round(2)
    return out


def summary(conn, start: Bound = None, end: Bound = None, *, frame: Optional[pd.DataFrame] = None) -> dict:
    """Headline figures for the dashboard."""
    df = revenue_frame(conn, start, end) if frame is None else frame
    write_off = sum(
        float(t.total_price)
        for t in log.query(conn, TransactionFilter(types=WRITE_OFF_TYPES, start=start, end=end))
    )
    purchases = sum(
        float(t.total_price)
        for t in log.query(conn, TransactionFilter(types=[TransactionType.PURCHASE], start=start, end=end))
    )
    sales = df[df["type"] != TransactionType.STORNO.value] if not df.empty else df
    return {
        "revenue": round(float(df["total_price"].sum()) if not df.empty else 0.0, 2),
        "vat": round(float(df["vat_amount"].sum()) if not df.empty else 0.0, 2),
        "sales_count": int(len(sales)),
        "storno_count": int(len(df) - len(sales)),
        "write_off_value": round(write_off, 2),
        "purchase_spend": round(purchases, 2),
    }
