import os
import threading

import streamlit as st

from doc_pipeline.client import (
    MetadataOutcome,
    PipelineClient,
    PipelineClientError,
    StatusOutcome,
    download_offered,
)

API_BASE = os.getenv("DOC_PIPELINE_API_BASE", os.getenv("API_BASE", "http://localhost:8080")).rstrip("/")
POLL_INTERVAL = float(os.getenv("DOC_PIPELINE_UI_POLL_INTERVAL", "2.0"))

STATUS_LABELS = {
    StatusOutcome.DOWNLOAD_ENABLED: ("Conversion complete", "complete"),
    StatusOutcome.FAILED: ("File conversion failed", "error"),
    StatusOutcome.GAVE_UP: ("Still processing; stopped checking", "error"),
    StatusOutcome.CANCELLED: ("Stopped checking", "error"),
}


def _client() -> PipelineClient:
    return PipelineClient(API_BASE, interval=POLL_INTERVAL)


def _reset_state() -> None:
    cancel = st.session_state.get("cancel")
    if cancel is not None:
        cancel.set()
    for key in ["file_id", "status_poll", "metadata_poll", "download", "error", "cancel"]:
        if key in st.session_state:
            del st.session_state[key]
    # Bump the uploader key to clear any previously uploaded file widget state
    st.session_state["upload_key"] = st.session_state.get("upload_key", 0) + 1


def _track(client: PipelineClient, file_id: str) -> None:
    cancel = st.session_state.setdefault("cancel", threading.Event())
    with st.status("Converting and reading metadata...", expanded=True) as status_box:
        # status and metadata are polled concurrently on worker threads
        tracked = client.track(file_id, cancel=cancel)
        label, state = STATUS_LABELS[tracked.status.outcome]
        if tracked.status.last is not None:
            st.write(f"Status: {tracked.status.last.get('status', 'unknown')}")
        status_box.update(label=label, state=state)
    st.session_state["status_poll"] = tracked.status
    st.session_state["metadata_poll"] = tracked.metadata


def main() -> None:
    st.set_page_config(page_title="Document Pipeline", page_icon="📄", layout="centered")
    st.title("📄 Word to PDF")
    st.caption(f"API base: {API_BASE}")

    if st.button("Restart", type="secondary"):
        _reset_state()
        st.rerun()

    if "upload_key" not in st.session_state:
        st.session_state["upload_key"] = 0
    uploaded = st.file_uploader(
        "Upload a Word document (.docx)",
        type=["docx"],
        key=f"uploader-{st.session_state['upload_key']}",
    )

    client = _client()
    if uploaded and "file_id" not in st.session_state and st.button("Upload and convert", type="primary"):
        with st.spinner("Uploading..."):
            try:
                st.session_state["file_id"] = client.upload(uploaded.name, uploaded.getvalue())
            except (PipelineClientError, OSError) as e:
                st.session_state["error"] = str(e)
        if "file_id" in st.session_state:
            st.toast("File uploaded", icon="✅")

    file_id = st.session_state.get("file_id")
    if file_id and "status_poll" not in st.session_state:
        _track(client, file_id)

    status_poll = st.session_state.get("status_poll")
    metadata_poll = st.session_state.get("metadata_poll")
    if metadata_poll is not None:
        st.subheader("File metadata")
        if metadata_poll.outcome == MetadataOutcome.AVAILABLE:
            st.json(metadata_poll.metadata)
        else:
            st.caption("No metadata available.")

    if file_id and download_offered(status_poll, metadata_poll):
        if "download" not in st.session_state:
            try:
                st.session_state["download"] = client.download(file_id)
            except PipelineClientError as e:
                st.session_state["error"] = str(e)
        result = st.session_state.get("download")
        if result is not None:
            converted = status_poll is not None and status_poll.download_enabled
            st.download_button(
                label="Download converted PDF" if converted else "Download original file",
                data=result.data,
                file_name=result.filename,
                mime=result.content_type,
            )

    if err := st.session_state.get("error"):
        st.error(err)


if __name__ == "__main__":
    main()
