from __future__ import annotations

from datetime import date

import streamlit as st

from flora.config import configure_logging, get_settings
from flora.db import get_conn, ensure_schema
from flora.services.demo_data import upsert_reference_data
from flora.services.inventory import stock_value
from flora.services.reporting import summary
from flora.utils import day_range


configure_logging()

st.set_page_config(page_title="Flora POS", page_icon="🌸", layout="wide")

st.title("🌸 Flora POS")
st.caption("Register, stock and bouquet production for a single flower shop. Every stock move is booked in the ledger.")

settings = get_settings()
conn = get_conn(settings.db_path, settings.busy_timeout_s)
ensure_schema(conn)
upsert_reference_data(conn)

with st.sidebar:
    st.subheader("Environment")
    st.write(f"**Data directory:** `{settings.data_dir}`")
    st.write(f"**Database:** `{settings.db_path.name}`")
    st.text_input("Operator (optional)", key="operator")

today = date.today()
start, end = day_range(today, today)
s = summary(conn, start, end)

c1, c2, c3, c4 = st.columns(4)
c1.metric("Revenue today", f"{s['revenue']:,.2f} {settings.currency}")
c2.metric("Sales today", f"{s['sales_count']}")
c3.metric("Cancelled today", f"{s['storno_count']}")
c4.metric("Stock value (cost)", f"{stock_value(conn):,.2f} {settings.currency}")

st.info(
    "Use the left sidebar. Start with **🧪 Data Management** to load demo data, then try **Purchase**, **Sales**, **Bouquets** and **Waste**.",
    icon="ℹ️",
)
