from typing import Any, Dict, Iterable, List

RULE_TITLES = {
    "parse_error": "Malformed diagram XML",
    "missing_id": "Cell without id",
    "missing_sentinel": "Missing root or default layer",
    "duplicate_id": "Duplicate cell id",
    "dangling_parent": "Missing parent cell",
    "parent_cycle": "Cells contain each other",
    "dangling_source": "Edge source not found",
    "dangling_target": "Edge target not found",
    "truncated_output": "Output was truncated",
    "continuation_limit": "Continuation limit reached",
    "empty_output": "No diagram content received",
    "producer_timeout": "Agent stopped responding",
    "producer_failure": "Agent output failed",
}


def build_commit_notice(outcome: Any) -> Dict[str, str]:
    status = str(getattr(outcome, "status", "")).strip().lower()
    operation_errors = list(getattr(outcome, "operation_errors", []) or [])
    impact = getattr(outcome, "impact", {}) or {}
    summary = str(impact.get("message", "")).strip()
    skipped = _skipped_edits(operation_errors)

    if status == "pass" and not operation_errors:
        return {
            "level": "success",
            "title": "Diagram Updated",
            "message": "Diagram update committed." + (f" Changes: {summary}" if summary else ""),
            "guidance": "",
        }

    if status == "recovered":
        repaired = sorted({item.rule_id for item in getattr(outcome, "findings", []) if item.severity == "error"})
        guidance = "Review the highlighted cells; parents and edge endpoints may have been reset."
        if skipped:
            guidance += " Ask the agent to redo the skipped edits."
        return {
            "level": "warning",
            "title": "Diagram Repaired",
            "message": (
                "Diagram update committed after automatic repair."
                + (f" Repaired: {', '.join(repaired)}." if repaired else "")
                + (f" {skipped}" if skipped else "")
            ),
            "guidance": guidance,
        }

    if operation_errors:
        return {
            "level": "warning",
            "title": "Some Edits Skipped",
            "message": f"Diagram update committed, but {skipped}",
            "guidance": "Ask the agent to redo the skipped edits against the current diagram.",
        }

    return {
        "level": "info",
        "title": "Diagram Status",
        "message": f"Commit status: {status or 'unknown'}",
        "guidance": "",
    }


def _skipped_edits(operation_errors: List[Any]) -> str:
    if not operation_errors:
        return ""
    failed = ", ".join(f"{item.cell_id or '?'} ({item.reason})" for item in operation_errors[:5])
    return f"{len(operation_errors)} edit(s) failed: {failed}."


def build_rejection_notice(issues: Iterable[Any]) -> Dict[str, str]:
    findings: List[Any] = [item for item in issues or [] if getattr(item, "severity", "error") == "error"]
    if not findings:
        return {
            "level": "error",
            "title": "Diagram Update Rejected",
            "message": "The diagram update was rejected; the previous diagram is kept.",
            "guidance": "Retry the request.",
        }

    first = findings[0]
    rule_id = str(getattr(first, "rule_id", ""))
    title = RULE_TITLES.get(rule_id, "Diagram Update Rejected")
    constraints = []
    for item in findings[:3]:
        target = str(getattr(item, "target", "") or "")
        constraints.append(f"{item.rule_id}" + (f" ({target})" if target else ""))
    return {
        "level": "error",
        "title": title,
        "message": (
            f"Diagram update rejected: {getattr(first, 'message', '')} "
            f"Failed constraint(s): {', '.join(constraints)}. The previous diagram is kept."
        ),
        "guidance": _guidance_for(rule_id),
    }


def _guidance_for(rule_id: str) -> str:
    if rule_id in {"truncated_output", "continuation_limit"}:
        return "Ask for a simpler diagram or raise the output length limit, then retry."
    if rule_id in {"producer_timeout", "producer_failure"}:
        return "Check the connection and retry the request."
    if rule_id == "empty_output":
        return "Ask the agent to resend the diagram cells."
    if rule_id == "parse_error":
        return "Ask the agent to resend the diagram as well-formed XML."
    return "Ask the agent to fix the referenced cells, then retry."
