"""Streamlit dashboard for the Federal Lease Match Engine."""

from __future__ import annotations

import os
from typing import Any, Dict, Optional

import pandas as pd
import requests
import streamlit as st

# ==========================================
# Configuration & Constants
# ==========================================
API_BASE_URL = os.getenv("MATCH_API_URL", "http://127.0.0.1:8000")

st.set_page_config(
    page_title="Lease Match Dashboard",
    page_icon="🏛️",
    layout="wide",
)


# ==========================================
# API Helper Functions
# ==========================================
def _auth_headers() -> Dict[str, str]:
    token = st.session_state.get("access_token")
    return {"Authorization": f"Bearer {token}"} if token else {}


def login(admin_token: str) -> bool:
    try:
        response = requests.post(
            f"{API_BASE_URL}/login",
            json={"admin_token": admin_token},
            timeout=5,
        )
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        st.error(f"Login failed: {e}")
        return False
    st.session_state["access_token"] = response.json()["access_token"]
    return True


def fetch_analytics(analytics_type: str = "all") -> Optional[Dict[str, Any]]:
    try:
        response = requests.get(
            f"{API_BASE_URL}/api/analytics",
            params={"type": analytics_type},
            headers=_auth_headers(),
            timeout=10,
        )
        response.raise_for_status()
        return response.json().get("data")
    except requests.exceptions.RequestException as e:
        st.error(f"Analytics request failed: {e}")
        return None


def trigger_matching(min_score: int) -> Optional[Dict[str, Any]]:
    try:
        response = requests.post(
            f"{API_BASE_URL}/api/match-properties",
            json={"minScore": min_score},
            headers=_auth_headers(),
            timeout=300,
        )
    except requests.exceptions.RequestException as e:
        st.error(f"Matching run failed: {e}")
        return None
    if response.status_code == 500:
        st.error(f"Matching run failed: {response.json().get('error')}")
        return None
    if not response.ok:
        st.error(f"Matching run rejected: {response.text}")
        return None
    return response.json()


def fetch_neighborhood_score(lat: float, lng: float, radius: float) -> Optional[Dict[str, Any]]:
    try:
        response = requests.get(
            f"{API_BASE_URL}/api/federal/neighborhood-score",
            params={"lat": lat, "lng": lng, "radius": radius},
            timeout=10,
        )
        response.raise_for_status()
        return response.json()
    except requests.exceptions.RequestException as e:
        st.error(f"Density lookup failed: {e}")
        return None


# ==========================================
# UI Page Functions
# ==========================================
def render_overview_page() -> None:
    st.header("📊 Match Overview")

    data = fetch_analytics("all")
    if not data:
        return

    scores = data.get("match_scores", {})
    col1, col2, col3, col4 = st.columns(4)
    col1.metric("Stored Matches", scores.get("total_matches", 0))
    col2.metric("Mean Score", scores.get("mean_score", 0.0))
    col3.metric("Qualified", f"{scores.get('qualified_rate', 0.0) * 100:.1f}%")
    col4.metric("Competitive", f"{scores.get('competitive_rate', 0.0) * 100:.1f}%")

    left, right = st.columns(2)
    with left:
        st.write("### Grade Distribution")
        st.bar_chart(pd.Series(scores.get("grade_counts", {}), name="matches"))
    with right:
        st.write("### Factor Averages")
        st.bar_chart(pd.Series(scores.get("factor_means", {}), name="score"))

    prefilter = data.get("prefilter", {})
    st.write("### Prefilter Effectiveness")
    pcol1, pcol2, pcol3 = st.columns(3)
    pcol1.metric("Pairs Considered", prefilter.get("pairs_considered", 0))
    pcol2.metric("Skip Rate", f"{prefilter.get('skip_rate', 0.0) * 100:.1f}%")
    pcol3.metric("Timed-out Runs", prefilter.get("timed_out_runs", 0))
    reasons = prefilter.get("skip_reasons", {})
    if reasons:
        st.dataframe(
            pd.DataFrame(list(reasons.items()), columns=["reason", "count"]),
            use_container_width=True,
        )

    top = data.get("top_listings", [])
    if top:
        st.write("### Top Listings")
        st.dataframe(pd.DataFrame(top), use_container_width=True)


def render_matching_page() -> None:
    st.header("⚙️ Batch Matching")
    st.markdown("Score every active listing against every open opportunity.")

    min_score = st.slider("Minimum score to store", 0, 100, 40)
    if st.button("Run Matching", type="primary"):
        with st.spinner("Scoring listing and opportunity pairs..."):
            result = trigger_matching(min_score)
        if result:
            stats = result.get("stats", {})
            col1, col2, col3, col4 = st.columns(4)
            col1.metric("Processed", stats.get("processed", 0))
            col2.metric("Matched", stats.get("matched", 0))
            col3.metric("Skipped", stats.get("skipped", 0))
            col4.metric("Duration (ms)", stats.get("durationMs", 0))
            if stats.get("timedOut"):
                st.warning(f"Run hit its time budget; {stats.get('unevaluated', 0)} pairs unevaluated.")
            errors = result.get("errors") or []
            if errors:
                st.write("### Pair Errors")
                st.dataframe(pd.DataFrame({"error": errors}), use_container_width=True)


def render_density_page() -> None:
    st.header("🗺️ Federal Neighborhood Score")

    col1, col2, col3 = st.columns(3)
    with col1:
        lat = st.number_input("Latitude", min_value=-90.0, max_value=90.0, value=38.9072)
    with col2:
        lng = st.number_input("Longitude", min_value=-180.0, max_value=180.0, value=-77.0369)
    with col3:
        radius = st.number_input("Radius (miles)", min_value=0.5, max_value=100.0, value=5.0)

    if st.button("Score Location", type="primary"):
        result = fetch_neighborhood_score(lat, lng, radius)
        if result:
            mcol1, mcol2, mcol3 = st.columns(3)
            mcol1.metric("Score", result.get("score", 0))
            mcol2.metric("Percentile", result.get("percentile", 0))
            mcol3.metric("Federal Properties", result.get("total_properties", 0))


# ==========================================
# Main App Router
# ==========================================
def main() -> None:
    st.sidebar.title("Lease Match Engine")
    st.sidebar.markdown("---")

    with st.sidebar.form("login"):
        admin_token = st.text_input("Admin token", type="password")
        if st.form_submit_button("Login") and admin_token:
            if login(admin_token):
                st.sidebar.success("Logged in")

    page = st.sidebar.radio(
        "Navigation",
        ["Overview", "Batch Matching", "Neighborhood Score"],
    )

    st.sidebar.markdown("---")
    st.sidebar.caption(f"API: {API_BASE_URL}")

    if page == "Overview":
        render_overview_page()
    elif page == "Batch Matching":
        render_matching_page()
    else:
        render_density_page()


if __name__ == "__main__":
    main()
