import logging

import pytest

from src.diagram_stream.config import EngineSettings
from src.diagram_stream.coordinator import (
    STATE_COMMITTED,
    STATE_ERROR,
    STATE_RECEIVING,
    StreamIncrement,
    StreamingCoordinator,
)
from src.diagram_stream.document import EMPTY_DOCUMENT, cell_ids, summarize_cells
from src.diagram_stream.notices import build_commit_notice
from src.diagram_stream.scheduling import ManualScheduler

CELL_2 = '<mxCell id="2" value="A" vertex="1" parent="1"/>'
CELL_3 = '<mxCell id="3" value="B" vertex="1" parent="1"/>'


class RecordingConsumer:
    def __init__(self):
        self.previews = []
        self.commits = []
        self.rejections = []

    def on_preview(self, document):
        self.previews.append(document)

    def on_committed(self, document, outcome):
        self.commits.append((document, outcome))

    def on_rejected(self, correlation_id, issues):
        self.rejections.append((correlation_id, [item.rule_id for item in issues]))


def _make(settings=None, save=None, document=""):
    consumer = RecordingConsumer()
    scheduler = ManualScheduler()
    coordinator = StreamingCoordinator(
        consumer, scheduler, settings=settings or EngineSettings(), document=document, save=save
    )
    return coordinator, consumer, scheduler


def _xml(correlation_id, payload, complete=False):
    return StreamIncrement(correlation_id, "xml", payload, complete)


def test_previews_are_coalesced_to_latest_payload():
    coordinator, consumer, scheduler = _make()

    coordinator.receive(_xml("u1", CELL_2[:10]))
    coordinator.receive(_xml("u1", CELL_2))
    coordinator.receive(_xml("u1", CELL_2 + CELL_3))
    assert consumer.previews == []

    scheduler.advance(0.15)

    assert len(consumer.previews) == 1
    assert cell_ids(consumer.previews[0]) == ["0", "1", "2", "3"]
    assert coordinator.state == STATE_RECEIVING
    assert coordinator.current_document() == EMPTY_DOCUMENT


def test_preview_renders_only_complete_cells():
    coordinator, consumer, scheduler = _make()

    coordinator.receive(_xml("u1", CELL_2 + CELL_3[:12]))
    scheduler.advance(0.15)

    assert cell_ids(consumer.previews[-1]) == ["0", "1", "2"]
    assert coordinator.visible_document == consumer.previews[-1]


def test_repeated_payload_is_not_previewed_twice():
    coordinator, consumer, scheduler = _make()

    assert coordinator.receive(_xml("u1", CELL_2)) is True
    scheduler.advance(0.15)
    assert coordinator.receive(_xml("u1", CELL_2)) is False
    scheduler.advance(0.15)

    assert len(consumer.previews) == 1


def test_malformed_preview_is_skipped_silently():
    coordinator, consumer, scheduler = _make()

    coordinator.receive(_xml("u1", '<mxCell parent="1"/>'))
    scheduler.advance(0.15)

    assert consumer.previews == []
    assert consumer.rejections == []


def test_finalize_cancels_pending_preview():
    coordinator, consumer, scheduler = _make()

    coordinator.receive(_xml("u1", CELL_2[:20]))
    coordinator.receive(_xml("u1", CELL_2, complete=True))
    scheduler.advance(1.0)

    assert consumer.previews == []
    assert scheduler.pending == 0
    assert len(consumer.commits) == 1
    assert coordinator.state == STATE_COMMITTED


def test_unit_commits_at_most_once():
    coordinator, consumer, scheduler = _make()

    assert coordinator.receive(_xml("u1", CELL_2, complete=True)) is True
    assert coordinator.receive(_xml("u1", CELL_2 + CELL_3, complete=True)) is False
    assert coordinator.receive(_xml("u1", CELL_2 + CELL_3)) is False
    scheduler.advance(1.0)

    assert len(consumer.commits) == 1
    assert consumer.previews == []
    assert cell_ids(coordinator.current_document()) == ["0", "1", "2"]
    assert coordinator.is_finished("u1")


def test_commit_outcome_carries_impact():
    coordinator, consumer, _ = _make()

    coordinator.receive(_xml("u1", CELL_2 + CELL_3, complete=True))
    document, outcome = consumer.commits[0]

    assert document == coordinator.current_document()
    assert outcome.correlation_id == "u1"
    assert outcome.status == "pass"
    assert outcome.impact["added_node_ids"] == ["2", "3"]


def test_rejection_keeps_committed_document():
    coordinator, consumer, scheduler = _make()
    coordinator.receive(_xml("u1", CELL_2, complete=True))
    committed = coordinator.current_document()

    coordinator.receive(_xml("u2", CELL_3))
    scheduler.advance(0.15)
    assert cell_ids(coordinator.visible_document) == ["0", "1", "2", "3"]

    coordinator.receive(_xml("u2", '<mxCell id="3" parent="1"><b></mxCell>', complete=True))

    assert consumer.rejections == [("u2", ["parse_error"])]
    assert coordinator.current_document() == committed
    assert coordinator.visible_document == committed
    assert coordinator.state == STATE_ERROR


def test_invalid_result_is_rejected_when_repair_is_off():
    coordinator, consumer, _ = _make(settings=EngineSettings(repair_on_commit=False))

    coordinator.receive(_xml("u1", '<mxCell id="3" vertex="1" parent="missing"/>', complete=True))

    assert consumer.commits == []
    assert consumer.rejections == [("u1", ["dangling_parent"])]
    assert coordinator.current_document() == EMPTY_DOCUMENT


def test_repaired_result_commits_as_recovered():
    coordinator, consumer, _ = _make()

    coordinator.receive(_xml("u1", '<mxCell id="3" vertex="1" parent="missing"/>', complete=True))
    document, outcome = consumer.commits[0]

    assert outcome.status == "recovered"
    assert [item.rule_id for item in outcome.findings] == ["dangling_parent"]
    assert summarize_cells(document)[2]["parent"] == "1"


def test_operations_unit_previews_and_collects_errors():
    coordinator, consumer, scheduler = _make(document="")
    add = {"operation": "add", "cell_id": "2", "new_xml": CELL_2}
    half = {"operation": "update", "cell_id": "3"}

    coordinator.receive(StreamIncrement("ops", "operations", [add, half]))
    scheduler.advance(0.15)
    assert cell_ids(consumer.previews[-1]) == ["0", "1", "2"]

    coordinator.receive(
        StreamIncrement("ops", "operations", [add, {"operation": "delete", "cell_id": "9"}], complete=True)
    )
    _, outcome = consumer.commits[0]

    assert cell_ids(coordinator.current_document()) == ["0", "1", "2"]
    assert outcome.status == "pass"
    assert [(item.cell_id, item.reason) for item in outcome.operation_errors] == [("9", "not-found")]


def test_preview_base_is_the_committed_document():
    coordinator, consumer, scheduler = _make()
    coordinator.receive(_xml("u1", CELL_2, complete=True))

    coordinator.receive(_xml("u2", CELL_3))
    scheduler.advance(0.15)

    assert cell_ids(consumer.previews[-1]) == ["0", "1", "2", "3"]


def test_truncated_output_is_completed_by_append_unit():
    coordinator, consumer, _ = _make()

    coordinator.receive(_xml("u1", CELL_2 + '<mxCell id="3" value="B"', complete=True))
    assert consumer.rejections == [("u1", ["truncated_output"])]
    assert coordinator.continuation.active

    coordinator.receive(StreamIncrement("u2", "append", ' vertex="1" parent="1"/>', complete=True))

    assert cell_ids(coordinator.current_document()) == ["0", "1", "2", "3"]
    assert not coordinator.continuation.active


def test_continuation_gives_up_after_retry_limit():
    coordinator, consumer, _ = _make(settings=EngineSettings(max_continuation_retries=2))

    coordinator.receive(_xml("u1", '<mxCell id="3"', complete=True))
    coordinator.receive(StreamIncrement("u2", "append", ' value="B"', complete=True))
    coordinator.receive(StreamIncrement("u3", "append", ' vertex="1"', complete=True))

    assert [rules for _, rules in consumer.rejections] == [
        ["truncated_output"],
        ["truncated_output"],
        ["continuation_limit"],
    ]
    assert not coordinator.continuation.active
    assert coordinator.current_document() == EMPTY_DOCUMENT


def test_producer_failure_rejects_and_drops_preview():
    coordinator, consumer, scheduler = _make()

    coordinator.receive(_xml("u1", CELL_2))
    coordinator.fail("u1", TimeoutError())
    scheduler.advance(1.0)
    coordinator.receive(_xml("u2", CELL_2))
    coordinator.fail("u2", RuntimeError("stream closed"))

    assert consumer.previews == []
    assert consumer.rejections == [("u1", ["producer_timeout"]), ("u2", ["producer_failure"])]
    assert coordinator.fail("u1") is False


def test_failing_another_unit_leaves_active_preview_running():
    coordinator, consumer, scheduler = _make()

    coordinator.receive(_xml("u1", CELL_2))
    scheduler.advance(0.15)
    coordinator.fail("stale-unit", TimeoutError())

    assert coordinator.state == STATE_RECEIVING
    assert coordinator.visible_document == consumer.previews[0]
    assert consumer.rejections == [("stale-unit", ["producer_timeout"])]
    assert coordinator.is_finished("stale-unit")

    coordinator.receive(_xml("u1", CELL_2 + CELL_3))
    scheduler.advance(1.0)

    assert len(consumer.previews) == 2
    assert cell_ids(coordinator.visible_document) == ["0", "1", "2", "3"]


def test_empty_final_payload_is_rejected():
    coordinator, consumer, _ = _make()
    coordinator.receive(_xml("u1", CELL_2, complete=True))
    committed = coordinator.current_document()

    assert coordinator.receive(_xml("u2", "", complete=True)) is False
    assert coordinator.receive(_xml("u3", "  \n", complete=True)) is False
    assert coordinator.receive(StreamIncrement("u4", "operations", [], complete=True)) is False

    assert consumer.rejections == [
        ("u2", ["empty_output"]),
        ("u3", ["empty_output"]),
        ("u4", ["empty_output"]),
    ]
    assert len(consumer.commits) == 1
    assert coordinator.current_document() == committed
    assert coordinator.state == STATE_ERROR


def test_recovered_operations_unit_reports_skipped_edits():
    coordinator, consumer, _ = _make()
    orphan = {
        "operation": "add",
        "cell_id": "5",
        "new_xml": '<mxCell id="5" value="Orphan" vertex="1" parent="ghost"/>',
    }
    missing = {"operation": "delete", "cell_id": "nope"}

    coordinator.receive(StreamIncrement("ops", "operations", [orphan, missing], complete=True))
    _, outcome = consumer.commits[0]
    notice = build_commit_notice(outcome)

    assert outcome.status == "recovered"
    assert notice["title"] == "Diagram Repaired"
    assert "dangling_parent" in notice["message"]
    assert "nope (not-found)" in notice["message"]


def test_commits_are_saved_after_quiet_period():
    saved = []
    coordinator, _, scheduler = _make(save=saved.append)

    coordinator.receive(_xml("u1", CELL_2, complete=True))
    scheduler.advance(0.5)
    coordinator.receive(_xml("u2", CELL_3, complete=True))
    scheduler.advance(0.9)
    assert saved == []

    scheduler.advance(1.0)

    assert saved == [coordinator.current_document()]
    assert cell_ids(saved[0]) == ["0", "1", "2", "3"]


def test_save_failure_is_logged_and_retried(caplog):
    attempts = []

    def flaky_save(document):
        attempts.append(document)
        if len(attempts) == 1:
            raise OSError("disk full")

    coordinator, _, scheduler = _make(save=flaky_save)
    caplog.set_level(logging.ERROR)

    coordinator.receive(_xml("u1", CELL_2, complete=True))
    scheduler.advance(1.0)
    assert "Failed to save diagram" in caplog.text
    assert coordinator.persister.failures == 1
    assert cell_ids(coordinator.current_document()) == ["0", "1", "2"]

    coordinator.receive(_xml("u2", CELL_3, complete=True))
    scheduler.advance(1.0)

    assert len(attempts) == 2
    assert coordinator.persister.last_saved == coordinator.current_document()


def test_close_flushes_pending_save():
    saved = []
    coordinator, _, scheduler = _make(save=saved.append)

    coordinator.receive(_xml("u1", CELL_2, complete=True))
    coordinator.close()

    assert saved == [coordinator.current_document()]
    assert scheduler.pending == 0


def test_load_document_and_reset():
    coordinator, consumer, _ = _make()

    loaded = coordinator.load_document(
        '<mxGraphModel><root><mxCell id="0"/><mxCell id="1" parent="0"/>' + CELL_2 + "</root></mxGraphModel>"
    )
    assert loaded.startswith("<mxfile>")
    assert cell_ids(coordinator.current_document()) == ["0", "1", "2"]

    coordinator.reset()

    assert cell_ids(coordinator.current_document()) == ["0", "1"]
    assert consumer.commits == []


def test_load_document_forgets_finished_units():
    coordinator, consumer, _ = _make()
    coordinator.receive(_xml("u1", CELL_2, complete=True))
    assert coordinator.is_finished("u1")

    coordinator.load_document(EMPTY_DOCUMENT)

    assert not coordinator.is_finished("u1")
    assert coordinator.receive(_xml("u1", CELL_3, complete=True)) is True
    assert len(consumer.commits) == 2
    assert cell_ids(coordinator.current_document()) == ["0", "1", "3"]


def test_unknown_increment_kind_is_rejected():
    coordinator, _, _ = _make()

    with pytest.raises(ValueError):
        coordinator.receive(StreamIncrement("u1", "patch", "<a/>"))
