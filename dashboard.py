"""
Blood Allocation Engine - Streamlit Dashboard
Interactive view of inventory, allocation cycles and shortages
"""

import os

import pandas as pd
import plotly.express as px
import plotly.graph_objects as go
import streamlit as st

from bloodalloc.compatibility import matrix
from bloodalloc.config import BLOOD_TYPE_DISTRIBUTION, DEMO_FACILITIES, SAMPLE_SNAPSHOT
from bloodalloc.data_sources import load_snapshot_file
from bloodalloc.engine import AllocationEngine
from bloodalloc.models import DonationType, utcnow
from bloodalloc.notifications import MemorySink, QueuedEmitter
from bloodalloc.sample import build_sample_snapshot


# Page config
st.set_page_config(
    page_title="Blood Allocation Engine",
    page_icon="🩸",
    layout="wide"
)

URGENCY_COLORS = {"Critical": "red", "High": "orange", "Medium": "gold", "Low": "green"}


def initialize_engine(seed: int, use_file: bool):
    """Build an engine over either the saved snapshot or a generated one"""
    if use_file and os.path.exists(SAMPLE_SNAPSHOT):
        snapshot = load_snapshot_file(SAMPLE_SNAPSHOT)
    else:
        snapshot = build_sample_snapshot(seed=seed)
    sink = MemorySink()
    engine = AllocationEngine(emitter=QueuedEmitter(sink))
    engine.load(snapshot.requests, snapshot.units)
    return engine, sink


def inventory_frame(engine: AllocationEngine) -> pd.DataFrame:
    rows = [
        {
            "facility": DEMO_FACILITIES.get(s.unit.facility_id, s.unit.facility_id),
            "blood_type": s.unit.blood_type.value,
            "donation_type": s.unit.donation_type.value,
            "remaining": s.remaining,
            "expires_at": s.unit.expires_at,
        }
        for s in engine.ledger.units()
    ]
    return pd.DataFrame(rows, columns=["facility", "blood_type", "donation_type", "remaining", "expires_at"])


def create_inventory_heatmap(inventory: pd.DataFrame) -> go.Figure:
    """Create a heatmap of units on hand by facility and blood type"""
    blood_types = list(BLOOD_TYPE_DISTRIBUTION.keys())
    pivot = (inventory.pivot_table(index="facility", columns="blood_type", values="remaining",
                                   aggfunc="sum", fill_value=0)
             .reindex(columns=blood_types, fill_value=0))

    fig = go.Figure(data=go.Heatmap(
        z=pivot.values,
        x=blood_types,
        y=list(pivot.index),
        colorscale=[
            [0, 'red'],
            [0.25, 'orange'],
            [0.5, 'yellow'],
            [1, 'green']
        ],
        colorbar=dict(title="Units"),
        text=pivot.values,
        texttemplate="%{text}",
        textfont={"size": 10}
    ))

    fig.update_layout(
        title="Units on Hand by Facility and Blood Type",
        xaxis_title="Blood Type",
        yaxis_title="Facility",
        height=400
    )

    return fig


def create_shortage_chart(shortages: pd.DataFrame) -> go.Figure:
    """Bar chart of unmet units per blood type, coloured by urgency"""
    fig = px.bar(
        shortages,
        x="blood_type",
        y="unmet_units",
        color="urgency",
        color_discrete_map=URGENCY_COLORS,
        barmode="stack",
        hover_data=["donation_type"],
    )
    fig.update_layout(
        title="Unmet Demand After Last Cycle",
        xaxis_title="Blood Type",
        yaxis_title="Units Unmet",
        height=400
    )
    return fig


def create_compatibility_grid(donation_type: DonationType) -> go.Figure:
    grid = pd.DataFrame(matrix(donation_type)).T.astype(int)
    fig = go.Figure(data=go.Heatmap(
        z=grid.values,
        x=list(grid.columns),
        y=list(grid.index),
        colorscale=[[0, 'lightgrey'], [1, 'crimson']],
        showscale=False,
    ))
    fig.update_layout(
        title=f"Compatibility ({donation_type.label})",
        xaxis_title="Donor",
        yaxis_title="Recipient",
        height=400
    )
    return fig


def main():
    st.title("🩸 Blood Allocation Engine")
    st.markdown("*Match requests to compatible inventory, soonest expiry first*")

    # Sidebar
    with st.sidebar:
        st.header("⚙️ Controls")

        use_file = st.checkbox("Use saved snapshot", value=os.path.exists(SAMPLE_SNAPSHOT))
        seed = st.number_input("Sample seed", min_value=0, value=7, step=1)

        if st.button("🔄 Reset Snapshot", type="primary") or "engine" not in st.session_state:
            st.session_state.engine, st.session_state.sink = initialize_engine(int(seed), use_file)
            st.session_state.report = None

        if st.button("▶️ Run Allocation Cycle"):
            st.session_state.report = st.session_state.engine.run_cycle()
            st.session_state.engine.emitter.flush()

        st.markdown("---")

        st.header("ℹ️ About")
        st.markdown("""
        Each cycle serves open requests by urgency, then age.
        Exact blood type matches are used before compatible substitutes,
        and within each tier the unit expiring soonest goes first.
        Unmet Critical demand raises an emergency broadcast.
        """)

    engine: AllocationEngine = st.session_state.engine
    report = st.session_state.report

    tab1, tab2, tab3, tab4 = st.tabs(["📈 Inventory", "📋 Allocations", "📉 Shortages", "🔬 Compatibility"])

    with tab1:
        st.header("Inventory Overview")
        summary = engine.ledger.summary(now=utcnow())

        cols = st.columns(len(summary["inventory_summary"]) + 1)
        cols[0].metric("Facilities", len(engine.ledger.facilities))
        for col, (donation_type, units) in zip(cols[1:], summary["inventory_summary"].items()):
            col.metric(donation_type.replace("_", " ").title(), units)

        inventory = inventory_frame(engine)
        if inventory.empty:
            st.info("No inventory loaded.")
        else:
            st.plotly_chart(create_inventory_heatmap(inventory), use_container_width=True)
            with st.expander("Units"):
                st.dataframe(inventory.sort_values("expires_at"), use_container_width=True)

    with tab2:
        st.header("Requests & Allocations")
        requests = pd.DataFrame([r.to_dict() for r in engine.requests()])
        if not requests.empty:
            col1, col2, col3 = st.columns(3)
            col1.metric("Open Requests", int((requests["status"].isin(["Pending", "In Progress"])).sum()))
            col2.metric("Fulfilled", int((requests["status"] == "Fulfilled").sum()))
            col3.metric("Units Allocated", int(requests["allocated_units"].sum()))
            st.dataframe(requests.sort_values("created_at"), use_container_width=True)

        draws = engine.history.frames()["allocations"]
        st.subheader("Audit Trail")
        if draws.empty:
            st.info("No allocations yet. Run a cycle from the sidebar.")
        else:
            st.dataframe(draws, use_container_width=True)

    with tab3:
        st.header("Shortages")
        if report is None:
            st.info("Run a cycle to see unmet demand.")
        elif not report.shortages:
            st.success("✅ Every open request was covered.")
        else:
            shortages = pd.DataFrame([s.to_dict() for s in report.shortages])
            st.plotly_chart(create_shortage_chart(shortages), use_container_width=True)

            for signal in report.escalations:
                st.error(f"🚨 {signal.message}")

        events = st.session_state.sink.events
        if events:
            st.subheader("Notification Events")
            st.dataframe(pd.DataFrame([e.to_dict() for e in events])[["date", "type"]],
                         use_container_width=True)

    with tab4:
        st.header("Compatibility Matrix")
        choice = st.selectbox("Donation type", [dt.value for dt in DonationType])
        st.plotly_chart(create_compatibility_grid(DonationType(choice)), use_container_width=True)

    st.markdown("---")
    st.caption(f"Last updated: {utcnow().strftime('%Y-%m-%d %H:%M:%S')} UTC")


if __name__ == "__main__":
    main()
