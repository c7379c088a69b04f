from types import SimpleNamespace

from src.diagram_stream.notices import build_commit_notice, build_rejection_notice
from src.diagram_stream.operations import OperationFailure
from src.diagram_stream.validation import ValidationFinding


def test_clean_commit_notice_includes_change_summary():
    outcome = SimpleNamespace(
        status="pass",
        operation_errors=[],
        findings=[],
        impact={"message": "nodes(+1, -0, ~0), edges(+0, -0, ~0)"},
    )

    notice = build_commit_notice(outcome)

    assert notice["level"] == "success"
    assert "nodes(+1" in notice["message"]


def test_recovered_commit_names_repaired_rules():
    outcome = SimpleNamespace(
        status="recovered",
        operation_errors=[],
        findings=[
            ValidationFinding("error", "dangling_parent", "Cell '3' references missing parent 'x'.", "3"),
            ValidationFinding("warning", "missing_envelope", "wrapped"),
        ],
        impact={},
    )

    notice = build_commit_notice(outcome)

    assert notice["level"] == "warning"
    assert notice["title"] == "Diagram Repaired"
    assert "dangling_parent" in notice["message"]
    assert "missing_envelope" not in notice["message"]


def test_commit_with_failed_edits_lists_them():
    outcome = SimpleNamespace(
        status="pass",
        operation_errors=[OperationFailure("9", "not-found", "Cell '9' does not exist.")],
        findings=[],
        impact={},
    )

    notice = build_commit_notice(outcome)

    assert notice["level"] == "warning"
    assert "9 (not-found)" in notice["message"]


def test_rejection_notice_names_failed_constraint():
    notice = build_rejection_notice(
        [ValidationFinding("error", "duplicate_id", "Cell id '2' appears 2 times.", target="2")]
    )

    assert notice["level"] == "error"
    assert notice["title"] == "Duplicate cell id"
    assert "duplicate_id (2)" in notice["message"]
    assert "previous diagram is kept" in notice["message"]


def test_rejection_notice_guidance_for_truncation():
    notice = build_rejection_notice([ValidationFinding("error", "continuation_limit", "still incomplete")])

    assert notice["title"] == "Continuation limit reached"
    assert "retry" in notice["guidance"]


def test_rejection_without_findings_uses_generic_text():
    notice = build_rejection_notice([])

    assert notice["title"] == "Diagram Update Rejected"


def test_recovered_commit_also_lists_skipped_edits():
    outcome = SimpleNamespace(
        status="recovered",
        operation_errors=[OperationFailure("nope", "not-found", "Cell 'nope' does not exist.")],
        findings=[ValidationFinding("error", "dangling_parent", "Cell '5' references missing parent 'ghost'.", "5")],
        impact={},
    )

    notice = build_commit_notice(outcome)

    assert notice["title"] == "Diagram Repaired"
    assert "dangling_parent" in notice["message"]
    assert "1 edit(s) failed: nope (not-found)." in notice["message"]
    assert "redo the skipped edits" in notice["guidance"]


def test_empty_output_rejection_asks_for_cells():
    notice = build_rejection_notice([ValidationFinding("error", "empty_output", "Diagram output contained no cells.")])

    assert notice["title"] == "No diagram content received"
    assert "empty_output" in notice["message"]
    assert notice["guidance"] == "Ask the agent to resend the diagram cells."
