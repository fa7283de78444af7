"""
The Watchtower - Tlangau Admin Console
======================================
Streamlit admin console over the Tlangau ledger.

Features:
- Order and revenue statistics
- Orders table with stale PENDING highlighting and delete
- Access codes table with usage and expiry
- Per-user summaries
- Event log viewer (The Black Box)

Run: streamlit run admin/dashboard.py
"""

import os
import sys
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import streamlit as st
import pandas as pd

# Add backend to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "backend"))

from database import LedgerRepository
from schemas.ledger_models import AccessCode, Order, OrderStatus
from storage.postgres_store import Database, PostgresLedgerStore
from tasks.order_sweep import config as sweep_config


STATUS_EMOJI = {
    OrderStatus.PENDING.value: "⏳",
    OrderStatus.SUCCESS.value: "✅",
    OrderStatus.FAILED.value: "❌",
    OrderStatus.EXPIRED.value: "⌛",
}

SEVERITY_EMOJI = {
    "INFO": "ℹ️",
    "WARN": "⚠️",
    "ERROR": "❌",
    "CRITICAL": "🚨",
}

ORDER_COLUMNS = ["order_id", "email", "status", "amount", "services", "payment_id", "created_at", "paid_at"]
CODE_COLUMNS = ["code", "email", "order_id", "services", "used", "used_by_email", "created_at", "expires_at"]


# =============================================================================
# FRAME BUILDERS
# =============================================================================

def _fmt_time(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"


def orders_frame(orders: List[Order], now: datetime, stale_after: timedelta) -> pd.DataFrame:
    """Orders as a display frame; `stale` marks PENDING orders older than stale_after."""
    rows = []
    for order in orders:
        rows.append({
            "order_id": order.order_id,
            "email": order.email,
            "status": order.status.value,
            "amount": order.amount_major,
            "services": ", ".join(order.entitled_services),
            "payment_id": order.payment_id or "-",
            "created_at": _fmt_time(order.created_at),
            "paid_at": _fmt_time(order.paid_at),
            "stale": bool(
                order.status == OrderStatus.PENDING
                and order.created_at
                and now - order.created_at > stale_after
            ),
        })
    return pd.DataFrame(rows, columns=ORDER_COLUMNS + ["stale"])


def codes_frame(codes: List[AccessCode], now: datetime) -> pd.DataFrame:
    rows = []
    for code in codes:
        rows.append({
            "code": code.code,
            "email": code.email,
            "order_id": code.order_id or "-",
            "services": ", ".join(code.entitled_services),
            "used": code.used,
            "used_by_email": code.used_by_email or "-",
            "created_at": _fmt_time(code.created_at),
            "expires_at": _fmt_time(code.expires_at),
            "expired": code.is_expired(now),
        })
    return pd.DataFrame(rows, columns=CODE_COLUMNS + ["expired"])


def status_counts(orders: List[Order]) -> pd.DataFrame:
    counts = {status.value: 0 for status in OrderStatus}
    for order in orders:
        counts[order.status.value] += 1
    return pd.DataFrame(list(counts.items()), columns=["Status", "Count"])


# =============================================================================
# ASYNC HELPERS
# =============================================================================

@st.cache_resource
def get_event_loop() -> asyncio.AbstractEventLoop:
    """One loop for the session; the asyncpg pool is bound to it."""
    return asyncio.new_event_loop()


def run_async(coro):
    """Run async function in sync context for Streamlit."""
    return get_event_loop().run_until_complete(coro)


@st.cache_resource
def get_repository() -> LedgerRepository:
    run_async(Database.initialize())
    return LedgerRepository(PostgresLedgerStore())


# =============================================================================
# DATA FETCHING
# =============================================================================

@st.cache_data(ttl=30)
def fetch_statistics() -> Dict[str, Any]:
    try:
        return run_async(get_repository().get_statistics())
    except Exception as e:
        return {"error": str(e)}


@st.cache_data(ttl=15)
def fetch_orders() -> List[Order]:
    try:
        return run_async(get_repository().list_orders())
    except Exception:
        return []


@st.cache_data(ttl=15)
def fetch_codes() -> List[AccessCode]:
    try:
        return run_async(get_repository().list_access_codes())
    except Exception:
        return []


@st.cache_data(ttl=30)
def fetch_users() -> List[Dict[str, Any]]:
    try:
        return run_async(get_repository().get_user_summaries())
    except Exception:
        return []


def fetch_recent_events(limit: int, severity: str) -> List[Dict[str, Any]]:
    try:
        return run_async(get_repository().recent_events(limit=limit, severity=severity or None))
    except Exception:
        return []


def _refresh():
    st.cache_data.clear()
    st.rerun()


# =============================================================================
# SIDEBAR
# =============================================================================

def render_sidebar():
    """Render sidebar with navigation and quick stats."""
    st.sidebar.title("🗼 The Watchtower")
    st.sidebar.markdown("---")

    page = st.sidebar.radio(
        "Navigation",
        ["📊 Overview", "📦 Orders", "🔑 Access Codes", "👤 Users", "📜 Event Log"],
        label_visibility="collapsed"
    )

    st.sidebar.markdown("---")
    st.sidebar.subheader("Quick Stats")

    stats = fetch_statistics()
    if "error" not in stats:
        st.sidebar.metric("Pending Orders", stats.get("pendingOrders", 0))
        st.sidebar.metric("Unused Codes", stats.get("unusedCodes", 0))

    st.sidebar.markdown("---")

    if st.sidebar.button("🔄 Refresh Data"):
        _refresh()

    auto_refresh = st.sidebar.checkbox("Auto-refresh (30s)", value=False)
    if auto_refresh:
        st.sidebar.info("Page will refresh every 30 seconds")

    return page, auto_refresh


# =============================================================================
# OVERVIEW
# =============================================================================

def render_overview():
    st.title("📊 Overview")

    stats = fetch_statistics()
    if "error" in stats:
        st.error(f"Error fetching stats: {stats['error']}")
        return

    col1, col2, col3, col4 = st.columns(4)
    with col1:
        st.metric("💰 Revenue", f"₹{stats.get('totalRevenue', 0):,.2f}")
    with col2:
        st.metric("📦 Orders", stats.get("totalOrders", 0),
                  delta=f"{stats.get('successfulOrders', 0)} paid")
    with col3:
        st.metric("👤 Users", stats.get("uniqueUsers", 0))
    with col4:
        st.metric("🔑 Codes", stats.get("totalCodes", 0),
                  delta=f"{stats.get('usedCodes', 0)} redeemed")

    st.markdown("---")
    st.subheader("Orders by status")
    st.bar_chart(status_counts(fetch_orders()).set_index("Status"))


# =============================================================================
# ORDERS
# =============================================================================

def render_orders():
    st.title("📦 Orders")

    orders = fetch_orders()
    if not orders:
        st.info("No orders yet")
        return

    stale_after = timedelta(minutes=sweep_config.STALE_THRESHOLD)
    df = orders_frame(orders, datetime.now(timezone.utc), stale_after)

    status_filter = st.selectbox("Status", ["All"] + [s.value for s in OrderStatus])
    if status_filter != "All":
        df = df[df["status"] == status_filter]

    stale = int(df["stale"].sum())
    if stale:
        st.warning(f"⚠️ {stale} pending orders are past the sweep threshold")

    def highlight_stale(row):
        if row["stale"]:
            return ["background-color: #5f4a1e"] * len(row)
        return [""] * len(row)

    df = df.assign(status=df["status"].map(lambda s: f"{STATUS_EMOJI.get(s, '')} {s}"))
    st.dataframe(df.style.apply(highlight_stale, axis=1), use_container_width=True, hide_index=True)

    st.markdown("---")
    st.subheader("Delete order")
    order_id = st.text_input("Order ID")
    if st.button("🗑️ Delete order and its codes", disabled=not order_id):
        repository = get_repository()
        if run_async(repository.delete_order(order_id.strip())):
            run_async(repository.log_event(
                "ADMIN_ORDER_DELETED", {"source": "dashboard"}, entity_id=order_id.strip(), severity="WARN"
            ))
            st.success("Order deleted")
            _refresh()
        else:
            st.error("Order not found")


# =============================================================================
# ACCESS CODES
# =============================================================================

def render_access_codes():
    st.title("🔑 Access Codes")

    codes = fetch_codes()
    if not codes:
        st.info("No access codes yet")
        return

    df = codes_frame(codes, datetime.now(timezone.utc))
    col1, col2, col3 = st.columns(3)
    with col1:
        st.metric("Total", len(df))
    with col2:
        st.metric("Redeemed", int(df["used"].sum()))
    with col3:
        st.metric("Expired", int(df["expired"].sum()))

    query = st.text_input("Search by code or email")
    if query:
        needle = query.strip().lower()
        df = df[df["code"].str.lower().str.contains(needle) | df["email"].str.contains(needle)]

    st.dataframe(df, use_container_width=True, hide_index=True)


# =============================================================================
# USERS
# =============================================================================

def render_users():
    st.title("👤 Users")

    users = fetch_users()
    if not users:
        st.info("No users yet")
        return

    df = pd.DataFrame(users)
    df["totalSpent"] = df["totalSpent"].apply(lambda x: f"₹{x:,.2f}")
    st.dataframe(df, use_container_width=True, hide_index=True)


# =============================================================================
# EVENT LOG
# =============================================================================

def render_event_log():
    st.title("📜 Event Log")
    st.markdown("Operational events from The Black Box")

    col1, col2 = st.columns(2)
    with col1:
        severity = st.selectbox("Severity", ["All", "INFO", "WARN", "ERROR", "CRITICAL"])
    with col2:
        limit = st.slider("Show last", 10, 200, 50)

    events = fetch_recent_events(limit, "" if severity == "All" else severity)
    if not events:
        st.info("No events found")
        return

    for event in events:
        emoji = SEVERITY_EMOJI.get(event.get("severity", "INFO"), "📝")
        with st.container():
            col1, col2, col3 = st.columns([1, 2, 2])
            with col1:
                st.write(f"{emoji} {event.get('timestamp', 'Unknown')[:19]}")
            with col2:
                st.write(f"**{event.get('event_type', 'UNKNOWN')}**")
            with col3:
                if event.get("entity_id"):
                    st.write(f"Entity: {event['entity_id']}")

            payload = event.get("payload") or {}
            if payload:
                with st.expander("View Payload"):
                    st.json(payload)

            st.markdown("---")


# =============================================================================
# MAIN
# =============================================================================

PAGES = {
    "📊 Overview": render_overview,
    "📦 Orders": render_orders,
    "🔑 Access Codes": render_access_codes,
    "👤 Users": render_users,
    "📜 Event Log": render_event_log,
}


def main():
    """Main dashboard entry point."""
    st.set_page_config(
        page_title="Tlangau - The Watchtower",
        page_icon="🗼",
        layout="wide",
        initial_sidebar_state="expanded",
    )

    try:
        get_repository()
    except Exception as e:
        st.error(f"Database connection failed: {e}")
        st.info("Make sure PostgreSQL is running and DATABASE_URL is set")
        return

    page, auto_refresh = render_sidebar()
    PAGES[page]()

    if auto_refresh:
        import time
        time.sleep(30)
        st.rerun()


if __name__ == "__main__":
    main()
