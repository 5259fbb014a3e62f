"""
Streamlit Frontend for Household Sync

A thin operator screen over the sync client: enter a month's income,
watch the optimistic value, and settle conflicts when two devices
edited the same month.

DESIGN PRINCIPLES:
1. What is on screen is always labelled (saved, pending, stale)
2. Conflicts are never settled without an explicit choice
3. Clear error messages in simple language
4. No hidden actions
"""

import asyncio
import threading
from datetime import date

import streamlit as st

from household_sync.config import get_settings, validate_all_settings
from household_sync.models import ConflictStrategy, EntityType, MonthlyIncome
from household_sync.orchestrator import SyncClient, create_sync_client
from household_sync.services.backend import BackendError
from household_sync.sync import (
    ConflictPendingError,
    ConflictResolutionError,
    MutationFailedError,
    MutationSupersededError,
    SyncError,
)


# Page configuration
st.set_page_config(
    page_title="Household Finance",
    page_icon="💰",
    layout="wide",
    initial_sidebar_state="expanded",
)


@st.cache_resource
def get_event_loop() -> asyncio.AbstractEventLoop:
    """
    One event loop for the whole session, running in a background thread.

    The sync client keeps locks, events and an HTTP connection pool that
    belong to the loop they were created on.
    """
    loop = asyncio.new_event_loop()
    threading.Thread(target=loop.run_forever, daemon=True).start()
    return loop


def run_async(coro):
    """Helper to run async functions in Streamlit."""
    return asyncio.run_coroutine_threadsafe(coro, get_event_loop()).result()


@st.cache_resource
def get_client() -> SyncClient:
    """Get or create the sync client (cached)."""

    async def build() -> SyncClient:
        return create_sync_client()

    return run_async(build())


def main():
    """Main application entry point."""
    client = get_client()

    st.sidebar.title("💰 Household Finance")
    st.sidebar.markdown("---")

    conflicts = client.pending_conflicts()
    conflict_label = f"⚠️ Conflicts ({len(conflicts)})" if conflicts else "⚠️ Conflicts"
    page = st.sidebar.radio(
        "Navigate to:",
        ["💵 Income", conflict_label, "⚙️ Settings"],
        index=0,
    )

    online = st.sidebar.toggle("Online", value=client.connectivity.is_online)
    if online != client.connectivity.is_online:
        run_async(_set_connectivity(client, online))

    if page.startswith("💵"):
        render_income_page(client)
    elif page.startswith("⚠️"):
        render_conflicts_page(client)
    else:
        render_settings_page()


async def _set_connectivity(client: SyncClient, online: bool) -> None:
    # Runs on the client's loop so a refetch can be scheduled
    if online:
        client.set_online()
    else:
        client.set_offline()


def render_income_page(client: SyncClient):
    """Render the monthly income form."""
    st.title("💵 Monthly Income")

    today = date.today()
    col1, col2 = st.columns(2)
    with col1:
        year = st.selectbox("Year", options=list(range(2020, 2031)), index=min(max(today.year - 2020, 0), 10))
    with col2:
        month = st.selectbox("Month", options=list(range(1, 13)), index=today.month - 1)

    key = client.key_for(EntityType.INCOME, year, month)
    result = run_async(client.load(key))
    current = result.value if isinstance(result.value, MonthlyIncome) else None

    if result.error:
        st.error(result.error.message)
        retry_col, dismiss_col = st.columns(2)
        with retry_col:
            if result.error.can_retry and st.button("🔄 Retry"):
                try:
                    run_async(client.retry(key))
                except (SyncError, BackendError, asyncio.TimeoutError) as e:
                    st.error(e.state.message if getattr(e, "state", None) else str(e))
                else:
                    st.rerun()
        with dismiss_col:
            if st.button("Dismiss"):
                client.dismiss_error(key)
                st.rerun()
    if result.is_stale:
        st.caption("Showing last known values; refreshing.")

    if current is not None:
        st.metric("Total income", f"{current.total_income:,} KRW")

    with st.form("income_form"):
        kyunghoon = st.number_input(
            "경훈 salary", min_value=0, max_value=100_000_000, step=100_000,
            value=current.kyunghoon_salary if current else 0,
        )
        sunhwa = st.number_input(
            "선화 salary", min_value=0, max_value=100_000_000, step=100_000,
            value=current.sunhwa_salary if current else 0,
        )
        other = st.number_input(
            "Other income", min_value=0, max_value=100_000_000, step=10_000,
            value=current.other_income if current else 0,
        )
        notes = st.text_area("Notes", value=(current.notes or "") if current else "", max_chars=500)
        submitted = st.form_submit_button("💾 Save", type="primary")

    if not submitted:
        return

    payload = {
        "경훈_월급": int(kyunghoon),
        "선화_월급": int(sunhwa),
        "other_income": int(other),
        "notes": notes or None,
    }
    with st.spinner("Saving..."):
        try:
            outcome = run_async(client.mutate(key, payload))
        except MutationFailedError as e:
            st.error(e.state.message if e.state else str(e))
            return
        except MutationSupersededError:
            st.info("A newer save replaced this one.")
            return
        except ConflictPendingError:
            st.warning("This month has an unresolved conflict. Resolve it on the Conflicts page first.")
            return

    if outcome.committed:
        st.success(f"Saved. Total income: {outcome.value.total_income:,} KRW")
    else:
        st.warning("This month was changed on another device. Choose which version to keep on the Conflicts page.")


def render_conflicts_page(client: SyncClient):
    """Render open conflicts and let the operator settle each one."""
    st.title("⚠️ Data Conflicts")

    conflicts = client.pending_conflicts()
    if not conflicts:
        st.info("No conflicts. Everything is in sync.")
        return

    for record in conflicts:
        view = client.describe_conflict(record)
        st.markdown(f"### {view.entity_label}")
        st.caption(view.summary)

        local_col, remote_col = st.columns(2)
        for column, version in ((local_col, view.local), (remote_col, view.remote)):
            with column:
                st.markdown(f"**{version.title}**")
                if version.modified_at:
                    st.caption(version.modified_at.strftime("%Y-%m-%d %H:%M"))
                for field in version.fields:
                    st.markdown(f"{field.label}: **{field.value}**")

        options = {option.label: option for option in view.options}
        choice = st.radio(
            "Choose how to resolve:",
            list(options),
            key=f"choice-{view.conflict_id}",
            captions=[option.description for option in view.options],
        )

        with st.expander("Before you choose"):
            for warning in view.warnings:
                st.markdown(f"- {warning}")

        if st.button("Resolve", key=f"resolve-{view.conflict_id}", type="primary"):
            strategy: ConflictStrategy = options[choice].strategy
            try:
                run_async(client.resolve_conflict(record, strategy))
            except ConflictResolutionError as e:
                st.error(e.state.message if e.state else str(e))
            else:
                st.success("Conflict resolved.")
                st.rerun()

        st.markdown("---")


def render_settings_page():
    """Render the settings page."""
    st.title("⚙️ Settings")

    st.markdown("### Configuration Status")
    status = validate_all_settings()
    for name in ("backend", "cache", "retry", "app"):
        if status.get(name, False):
            st.success(f"✅ {name}")
        else:
            st.error(f"❌ {name} - {status.get(f'{name}_error', 'invalid')}")

    settings = get_settings()
    st.markdown("### Backend")
    st.markdown(f"API: `{settings.backend.base_url}`")
    st.markdown(
        "To configure the application, set `SYNC_BACKEND_BASE_URL` and the other "
        "`SYNC_*` variables in a `.env` file."
    )


if __name__ == "__main__":
    main()
