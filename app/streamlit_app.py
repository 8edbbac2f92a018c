from dotenv import load_dotenv
load_dotenv()

import sys
from datetime import datetime
from pathlib import Path
from typing import List

import streamlit as st

# Ensure repo root is on sys.path for "medscan" imports
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from app.backend.process import validate_image_size
from medscan.export import MIME_TYPES, export_filename, render, to_dataframe
from medscan.extract.queue_runner import ImageUpload, QueueEntryNotRemovable
from medscan.ir import PatientRecord, QueueStatus
from medscan.llm import get_llm_client
from medscan.logger import get_logger
from medscan.pipeline import AppState, SyncNotConfigured, build_app_state
from medscan.sync import describe_url_problem

logger = get_logger(__name__)

STATUS_ICONS = {
    QueueStatus.PENDING: "⏳",
    QueueStatus.PROCESSING: "🔄",
    QueueStatus.COMPLETED: "✅",
    QueueStatus.ERROR: "❌",
}


# ============================================================================
# Helper Functions
# ============================================================================

@st.cache_resource
def get_state() -> AppState:
    """Process-wide application state; every browser session shares one ledger writer."""
    return build_app_state()


def render_stats(state: AppState) -> None:
    stats = state.ledger.stats()
    cols = st.columns(4)
    cols[0].metric("Total Scans", stats["total"])
    cols[1].metric("Today's Activity", stats["today"])
    cols[2].metric("Patient Labels", stats["labels"])
    cols[3].metric("Whiteboards", stats["whiteboards"])


def render_download(records: List[PatientRecord], fmt: str, label: str) -> None:
    disabled = fmt == "csv" and not records
    st.download_button(
        label=label,
        data=b"" if disabled else render(records, fmt).encode("utf-8"),
        file_name=export_filename(fmt),
        mime=MIME_TYPES[fmt],
        disabled=disabled,
        use_container_width=True,
    )


def render_queue(state: AppState) -> None:
    entries = state.queue.visible_entries() if state.queue is not None else []
    if not entries:
        return
    st.subheader(f"Queue ({len(entries)})")
    for entry in entries:
        col_name, col_action = st.columns([5, 1])
        with col_name:
            text = f"{STATUS_ICONS[entry.status]} {entry.filename}"
            if entry.error:
                text += f": {entry.error}"
            st.write(text)
        with col_action:
            removable = entry.status in (QueueStatus.PENDING, QueueStatus.ERROR)
            if removable and st.button("🗑️", key=f"remove_{entry.entry_id}", help="Remove from queue"):
                try:
                    state.queue.remove(entry.entry_id)
                except (KeyError, QueueEntryNotRemovable) as exc:
                    st.warning(str(exc))
                st.rerun()


def render_sync_settings(state: AppState) -> None:
    cfg = state.sync_config
    webhook_url = st.text_input("Deployment Web App URL", value=cfg.webhook_url, key="webhook_url_input")
    problem = describe_url_problem(webhook_url)
    if problem:
        st.error(problem)
    elif webhook_url:
        st.caption("Valid format")
    auto_sync = st.checkbox("Auto-sync new records", value=cfg.auto_sync)

    col_save, col_test = st.columns(2)
    with col_save:
        if st.button("Save settings", use_container_width=True, disabled=bool(problem)):
            state.update_sync_config(webhook_url=webhook_url, auto_sync=auto_sync)
            st.success("Sync settings saved")
    with col_test:
        if st.button("Send test row", use_container_width=True, disabled=not state.is_sync_configured()):
            outcome = state.test_sync_connection()
            if outcome.delivered:
                st.success(f"Test row {outcome.value}")
            else:
                st.error("Test row failed. Check the deployment URL and access settings.")


def render_records(state: AppState) -> None:
    st.subheader("Master Record Log")
    unsynced = len(state.ledger.unsynced())
    if unsynced:
        st.caption(f"☁️ {unsynced} records local-only")
    else:
        st.caption("✅ All records cloud-synced")

    search = st.text_input("Search by name, ID, UHID or doctor", key="search_term")
    records = state.search(search)

    col_json, col_csv, col_sync = st.columns(3)
    with col_json:
        render_download(records, "json", "Export JSON")
    with col_csv:
        render_download(records, "csv", "Export CSV")
    with col_sync:
        if st.button("Sync to Sheets", use_container_width=True, disabled=unsynced == 0):
            try:
                outcome = state.sync_records()
            except SyncNotConfigured:
                st.session_state.show_sync_settings = True
                st.warning("Configure the Google Sheets Web App URL first.")
            else:
                if outcome.delivered:
                    st.success(f"Sync {outcome.value}")
                else:
                    st.error("Sync failed. Records stay local; you can retry.")

    if not records:
        st.info("No records yet.")
        return

    st.dataframe(to_dataframe(records), use_container_width=True, hide_index=True)

    with st.expander("Delete a record"):
        options = {f"{r.patient_name or '-'} | {r.uhid or '-'} | {r.timestamp}": r.id for r in records}
        choice = st.selectbox("Record", list(options.keys()))
        confirmed = st.checkbox("I confirm this record should be deleted", key="confirm_delete")
        if st.button("Delete", type="primary", disabled=not confirmed):
            if state.delete_record(options[choice], confirm=confirmed):
                st.success("Record deleted")
                st.rerun()


# ============================================================================
# Page
# ============================================================================

st.set_page_config(page_title="MedScan", page_icon="🩺", layout="wide")
st.title("Patient Data OCR Assistant")

if "show_sync_settings" not in st.session_state:
    st.session_state.show_sync_settings = False

state = get_state()
render_stats(state)

with st.sidebar:
    st.header("New Document Scan")
    uploaded_files = st.file_uploader(
        "Upload patient labels or whiteboard photos",
        type=["png", "jpg", "jpeg", "webp"],
        accept_multiple_files=True,
        key="image_uploader",
    )
    if st.button("Process Records", type="primary", use_container_width=True, disabled=not uploaded_files):
        uploads = []
        for uploaded_file in uploaded_files or []:
            if not validate_image_size(uploaded_file.name, uploaded_file.size):
                st.error(f"❌ '{uploaded_file.name}' is too large.")
                continue
            uploads.append(
                ImageUpload(filename=uploaded_file.name, payload=uploaded_file.getvalue(), mime_type=uploaded_file.type)
            )
        if uploads:
            with st.spinner("Analyzing documents..."):
                report = state.scan(uploads)
            if report.completed:
                st.success(f"{report.completed} record(s) added")
            if report.warning:
                st.warning(report.warning)

    render_queue(state)

    with st.expander("Cloud Integration", expanded=st.session_state.show_sync_settings):
        render_sync_settings(state)

    if st.checkbox("Show debug info", key="show_debug"):
        last_call = get_llm_client().get_last_call_info()
        if last_call:
            start_ts = last_call.get("start_time")
            st.write(f"step: {last_call.get('step')}")
            st.write(f"status: {last_call.get('status')}")
            st.write(f"model: {last_call.get('model')}")
            st.write(f"retries: {last_call.get('retries')}")
            st.write(f"start: {datetime.fromtimestamp(start_ts).strftime('%H:%M:%S') if start_ts else '-'}")
            st.write(f"elapsed_ms: {last_call.get('elapsed_ms')}")
        st.write(get_llm_client().get_token_usage())

render_records(state)
