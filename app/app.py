from pathlib import Path
import json
import logging
import sys

import streamlit as st
from streamlit_flow import streamlit_flow
from streamlit_flow.elements import StreamlitFlowEdge, StreamlitFlowNode
from streamlit_flow.state import StreamlitFlowState

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.append(str(ROOT_DIR))

from src.diagram_stream.config import EngineSettings  # noqa: E402
from src.diagram_stream.coordinator import (  # noqa: E402
    StreamIncrement,
    StreamingCoordinator,
    UnitOutcome,
)
from src.diagram_stream.document import EMPTY_DOCUMENT, summarize_cells  # noqa: E402
from src.diagram_stream.errors import DiagramParseError  # noqa: E402
from src.diagram_stream.notices import build_commit_notice, build_rejection_notice  # noqa: E402
from src.diagram_stream.persistence import JsonFileSnapshotStore  # noqa: E402
from src.diagram_stream.scheduling import ManualScheduler  # noqa: E402
from src.diagram_stream.ui_mapper import document_to_flow_specs  # noqa: E402

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")

SESSION_ID = "playground"

SAMPLE_XML = (
    '<mxCell id="start" value="Start" vertex="1" parent="1">'
    '<mxGeometry x="40" y="40" width="120" height="60" as="geometry"/></mxCell>'
    '<mxCell id="check" value="Check stock" vertex="1" parent="1">'
    '<mxGeometry x="40" y="160" width="120" height="60" as="geometry"/></mxCell>'
    '<mxCell id="done" value="Ship & notify" vertex="1" parent="1">'
    '<mxGeometry x="40" y="280" width="120" height="60" as="geometry"/></mxCell>'
    '<mxCell id="e1" edge="1" source="start" target="check" parent="1">'
    '<mxGeometry relative="1" as="geometry"/></mxCell>'
    '<mxCell id="e2" value="in stock" edge="1" source="check" target="done" parent="1">'
    '<mxGeometry relative="1" as="geometry"/></mxCell>'
)

SAMPLE_OPERATIONS = [
    {
        "operation": "update",
        "cell_id": "check",
        "new_xml": '<mxCell id="check" value="Reserve stock" vertex="1" parent="1">'
        '<mxGeometry x="40" y="160" width="120" height="60" as="geometry"/></mxCell>',
    },
    {"operation": "delete", "cell_id": "e2"},
    {"operation": "delete", "cell_id": "missing"},
]


class SessionConsumer:
    def on_preview(self, document: str) -> None:
        st.session_state.preview_log.append(document)

    def on_committed(self, document: str, outcome: UnitOutcome) -> None:
        st.session_state.notices.append(build_commit_notice(outcome))
        st.session_state.impact = outcome.impact
        message_index = len(st.session_state.snapshot_indexes)
        get_snapshot_store().record_snapshot(SESSION_ID, message_index, document)
        st.session_state.snapshot_indexes.append(message_index)

    def on_rejected(self, correlation_id: str, issues: list) -> None:
        st.session_state.notices.append(build_rejection_notice(issues))


@st.cache_resource
def get_snapshot_store() -> JsonFileSnapshotStore:
    return JsonFileSnapshotStore(ROOT_DIR / ".diagram_data")


def ensure_state() -> None:
    if "scheduler" not in st.session_state:
        st.session_state.scheduler = ManualScheduler()
    if "preview_log" not in st.session_state:
        st.session_state.preview_log = []
    if "notices" not in st.session_state:
        st.session_state.notices = []
    if "impact" not in st.session_state:
        st.session_state.impact = {}
    if "snapshot_indexes" not in st.session_state:
        st.session_state.snapshot_indexes = []
    if "unit_counter" not in st.session_state:
        st.session_state.unit_counter = 0
    if "coordinator" not in st.session_state:
        store = get_snapshot_store()
        st.session_state.coordinator = StreamingCoordinator(
            consumer=SessionConsumer(),
            scheduler=st.session_state.scheduler,
            settings=EngineSettings.from_env(),
            document=store.load_document(SESSION_ID) or EMPTY_DOCUMENT,
            save=store.saver(SESSION_ID),
        )


def next_correlation_id() -> str:
    st.session_state.unit_counter += 1
    return f"unit-{st.session_state.unit_counter}"


def chunk_text(text: str, size: int) -> list:
    size = max(1, int(size))
    return [text[index : index + size] for index in range(0, len(text), size)] or [""]


def replay_stream(kind: str, payload_text: str, chunk_size: int, finish: bool) -> None:
    coordinator: StreamingCoordinator = st.session_state.coordinator
    scheduler: ManualScheduler = st.session_state.scheduler
    step = coordinator.settings.preview_interval_seconds / 3.0
    correlation_id = next_correlation_id()

    if kind == "operations":
        try:
            operations = json.loads(payload_text or "[]")
        except json.JSONDecodeError as exc:
            st.session_state.notices.append(
                {"level": "error", "title": "Invalid JSON", "message": str(exc), "guidance": ""}
            )
            return
        if not isinstance(operations, list):
            st.session_state.notices.append(
                {
                    "level": "error",
                    "title": "Invalid Operations",
                    "message": "Operations must be a JSON array.",
                    "guidance": "",
                }
            )
            return
        for index in range(1, len(operations) + 1):
            coordinator.receive(StreamIncrement(correlation_id, "operations", operations[:index]))
            scheduler.advance(step)
        if finish:
            coordinator.receive(StreamIncrement(correlation_id, "operations", operations, complete=True))
    else:
        received = ""
        for chunk in chunk_text(payload_text, chunk_size):
            received += chunk
            coordinator.receive(StreamIncrement(correlation_id, kind, received))
            scheduler.advance(step)
        if finish:
            coordinator.receive(StreamIncrement(correlation_id, kind, received, complete=True))
        else:
            coordinator.fail(correlation_id, TimeoutError("Stream stopped before completion."))

    # let the persistence debounce elapse
    scheduler.advance(coordinator.settings.persist_debounce_seconds)


def to_flow_state(xml: str) -> StreamlitFlowState:
    node_specs, edge_specs = document_to_flow_specs(xml)
    flow_nodes = [StreamlitFlowNode(**spec) for spec in node_specs]
    flow_edges = [StreamlitFlowEdge(**spec) for spec in edge_specs]
    return StreamlitFlowState(nodes=flow_nodes, edges=flow_edges)


def render_notice(notice: dict) -> None:
    level = notice.get("level", "info")
    body = f"**{notice.get('title', '')}**: {notice.get('message', '')}"
    if notice.get("guidance"):
        body += f"\n\n{notice['guidance']}"
    if level == "success":
        st.success(body)
    elif level == "warning":
        st.warning(body)
    elif level == "error":
        st.error(body)
    else:
        st.info(body)


def render_impact_summary(impact: dict) -> None:
    c1, c2, c3 = st.columns(3)
    c1.metric("Added Nodes", len(impact.get("added_node_ids", [])))
    c2.metric("Changed Nodes", len(impact.get("changed_node_ids", [])))
    c3.metric(
        "Added/Changed Edges",
        len(impact.get("added_edge_ids", [])) + len(impact.get("changed_edge_ids", [])),
    )


st.set_page_config(layout="wide")
st.title("Diagram Stream Playground")
ensure_state()
coordinator: StreamingCoordinator = st.session_state.coordinator

with st.sidebar:
    st.markdown("### Stream")
    kind = st.radio("Payload Kind", ["xml", "operations", "append"], horizontal=True)
    chunk_size = st.slider("Chunk Size", min_value=1, max_value=200, value=24)
    finish = st.checkbox("Finish the unit", value=True, help="Unchecked simulates a producer timeout.")
    st.caption(
        f"Preview interval: {coordinator.settings.preview_interval_seconds * 1000:.0f} ms, "
        f"persist debounce: {coordinator.settings.persist_debounce_seconds * 1000:.0f} ms"
    )

    st.markdown("### Snapshots")
    if st.session_state.snapshot_indexes:
        selected_index = st.selectbox("Committed Turn", st.session_state.snapshot_indexes)
        if st.button("Restore Snapshot", use_container_width=True):
            snapshot = get_snapshot_store().get_snapshot(SESSION_ID, selected_index)
            if snapshot is not None:
                try:
                    coordinator.load_document(snapshot)
                except DiagramParseError as exc:
                    st.session_state.notices.append(
                        {"level": "error", "title": "Restore Failed", "message": str(exc), "guidance": ""}
                    )
                else:
                    removed = get_snapshot_store().truncate_snapshots(SESSION_ID, selected_index + 1)
                    st.session_state.snapshot_indexes = [
                        index for index in st.session_state.snapshot_indexes if index <= selected_index
                    ]
                    st.caption(f"Dropped {removed} later snapshot(s).")
    else:
        st.caption("No committed turns yet.")

    if st.button("Reset Diagram", use_container_width=True):
        coordinator.reset()
        st.session_state.preview_log = []
        st.session_state.notices = []
        st.session_state.impact = {}
        st.session_state.snapshot_indexes = []
        get_snapshot_store().delete_session(SESSION_ID)

default_payload = json.dumps(SAMPLE_OPERATIONS, indent=2) if kind == "operations" else SAMPLE_XML
payload_text = st.text_area("Agent Output", value=default_payload, height=220, key=f"payload_{kind}")

if st.button("Replay Stream", type="primary"):
    st.session_state.preview_log = []
    replay_stream(kind, payload_text, chunk_size, finish)

for notice in st.session_state.notices[-3:]:
    render_notice(notice)

left, right = st.columns([3, 2])
with left:
    st.markdown("### Committed Diagram")
    if st.session_state.impact:
        render_impact_summary(st.session_state.impact)
    streamlit_flow(
        "committed_flow",
        to_flow_state(coordinator.current_document()),
        fit_view=True,
        height=520,
    )

with right:
    st.markdown(f"### Previews ({len(st.session_state.preview_log)})")
    if st.session_state.preview_log:
        preview_index = st.slider(
            "Preview Frame",
            min_value=1,
            max_value=len(st.session_state.preview_log),
            value=len(st.session_state.preview_log),
        )
        st.code(st.session_state.preview_log[preview_index - 1], language="xml")
    else:
        st.caption("No previews rendered in the last replay.")

    st.markdown("### Cells")
    st.dataframe(summarize_cells(coordinator.current_document()), use_container_width=True)
    with st.expander("Committed XML"):
        st.code(coordinator.current_document(), language="xml")
