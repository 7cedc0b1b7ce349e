import os
from typing import Optional

import pandas as pd
import plotly.graph_objects as go
import requests
import streamlit as st

DEFAULT_CANDIDATES = [
    "http://api:8000",
    "http://localhost:8000",
]
RANGE_LABELS = {"7 days": 7, "30 days": 30, "90 days": 90}
UNLOCK_CARDS = [
    ("Next 1 day", "unlockedNext1Day"),
    ("Next 2 days", "unlockedNext2Days"),
    ("Next 7 days", "unlockedNext7Days"),
    ("Next 15 days", "unlockedNext15Days"),
    ("Next 30 days", "unlockedNext30Days"),
]


def probe_api(base: str, timeout: float = 2.0) -> bool:
    try:
        r = requests.get(f"{base}/health", timeout=timeout)
        return r.ok and r.json().get("ok") is True
    except (requests.RequestException, ValueError):
        return False


def resolve_api_base() -> Optional[str]:
    """Resolve API base URL from environment or known candidates."""
    env_base = os.getenv("API_BASE", "").strip()
    if env_base and probe_api(env_base):
        return env_base
    for base in DEFAULT_CANDIDATES:
        if probe_api(base):
            return base
    return None


API_BASE = resolve_api_base()
CRON_SECRET = os.getenv("CRON_SECRET", "")

st.set_page_config(page_title="Stake Analytics", layout="wide")
st.title("Stake Analytics")

if not API_BASE:
    st.error("Could not connect to API backend. Please ensure the API is running and reachable.")
    st.stop()


@st.cache_data(ttl=300)
def fetch_chart(days: int) -> dict:
    try:
        r = requests.get(f"{API_BASE}/api/stats/chart", params={"days": days}, timeout=20)
        r.raise_for_status()
        return r.json()
    except requests.RequestException as e:
        st.error(f"Error fetching stats: {e}")
        return {}


def trigger_manual_ingest() -> tuple[bool, str]:
    """Call the trigger endpoint to run one ingestion cycle now."""
    try:
        resp = requests.get(
            f"{API_BASE}/api/cron/fetch-stake-data",
            headers={"Authorization": f"Bearer {CRON_SECRET}"},
            timeout=90,
        )
        payload = resp.json() if resp.headers.get("content-type", "").startswith("application/json") else {}
        if not resp.ok:
            return False, payload.get("details") or payload.get("error") or f"HTTP {resp.status_code}"
        data = payload.get("data", {})
        return True, f"Updated {data.get('today', '')}: new stake {data.get('newStake', 0):,.2f}"
    except requests.RequestException as exc:
        return False, str(exc)


controls = st.columns([1, 1, 1.4])
with controls[0]:
    if st.button("Refresh Data", use_container_width=True):
        fetch_chart.clear()
with controls[1]:
    if st.button("Manual Data Pull", use_container_width=True):
        with st.spinner("Running ingestion cycle…"):
            ok, msg = trigger_manual_ingest()
        if ok:
            fetch_chart.clear()
            st.success(msg)
        else:
            st.error(f"Manual ingest failed: {msg}")
with controls[2]:
    range_label = st.selectbox("Range", list(RANGE_LABELS), index=1)

data = fetch_chart(RANGE_LABELS[range_label])
if not data or not data.get("labels"):
    st.info("No snapshots yet. Run the worker or use Manual Data Pull.")
    st.stop()

top = st.columns(4)
top[0].metric("Cumulative stake", f"{data['cumulativeStake']:,.2f}")
top[1].metric("Active stake", f"{data['latestActiveStake']:,.2f}")
top[2].metric("Data points", data["dataPoints"])
top[3].metric("Active users", data["totalUsers"])

st.subheader("Unlocking soon")
unlock_cols = st.columns(len(UNLOCK_CARDS))
for col, (label, key) in zip(unlock_cols, UNLOCK_CARDS):
    col.metric(label, f"{data.get(key, 0):,.2f}")

fig = go.Figure()
fig.add_trace(go.Scatter(x=data["labels"], y=data["newStake"], name="New stake", mode="lines+markers"))
fig.add_trace(go.Scatter(x=data["labels"], y=data["newUnstake"], name="New unstake", mode="lines+markers"))
fig.add_trace(go.Scatter(x=data["labels"], y=data["activeStake"], name="Active stake", yaxis="y2"))
fig.update_layout(
    height=420,
    yaxis=dict(title="Daily flow"),
    yaxis2=dict(title="Active stake", overlaying="y", side="right"),
    legend=dict(orientation="h"),
    margin=dict(l=10, r=10, t=30, b=10),
)
st.plotly_chart(fig, use_container_width=True)

left, right = st.columns(2)
with left:
    st.subheader("Pools")
    pools = pd.DataFrame(data.get("pools", []))
    if not pools.empty:
        st.dataframe(pools, use_container_width=True, hide_index=True)
with right:
    st.subheader("Recent days")
    details = pd.DataFrame(data.get("details", []))
    if not details.empty:
        st.dataframe(details, use_container_width=True, hide_index=True)
