import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Set, Tuple

from .config import EngineSettings
from .continuation import ContinuationBuffer
from .document import ensure_document
from .errors import DiagramError, DiagramParseError, ProducerTimeoutError
from .fragment import extract_complete_cells, is_truncated
from .impact import compute_impact_range
from .legalizer import clean_edges, legalize_xml
from .merge import replace_nodes
from .operations import OperationFailure, apply_operations, complete_operations
from .persistence import DebouncedPersister
from .scheduling import Scheduler, TimerHandle
from .validation import DiagramValidator, ValidationFinding

logger = logging.getLogger(__name__)

STATE_IDLE = "idle"
STATE_RECEIVING = "receiving"
STATE_FINALIZING = "finalizing"
STATE_COMMITTED = "committed"
STATE_ERROR = "error"

INCREMENT_KINDS = ("xml", "operations", "append")


@dataclass(frozen=True)
class StreamIncrement:
    correlation_id: str
    kind: str
    payload: Any
    complete: bool = False


@dataclass
class UnitOutcome:
    correlation_id: str
    status: str
    document: str
    operation_errors: List[OperationFailure] = field(default_factory=list)
    findings: List[ValidationFinding] = field(default_factory=list)
    impact: Dict[str, Any] = field(default_factory=dict)


class DiagramConsumer(Protocol):
    def on_preview(self, document: str) -> None:
        ...

    def on_committed(self, document: str, outcome: UnitOutcome) -> None:
        ...

    def on_rejected(self, correlation_id: str, issues: List[ValidationFinding]) -> None:
        ...


class StreamingCoordinator:
    def __init__(
        self,
        consumer: DiagramConsumer,
        scheduler: Scheduler,
        settings: Optional[EngineSettings] = None,
        document: str = "",
        validator: Optional[DiagramValidator] = None,
        save: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.consumer = consumer
        self.scheduler = scheduler
        self.settings = settings or EngineSettings()
        self.validator = validator or DiagramValidator(repair=self.settings.repair_on_commit)
        self.continuation = ContinuationBuffer(self.settings.max_continuation_retries)
        self.persister: Optional[DebouncedPersister] = None
        if save is not None:
            self.persister = DebouncedPersister(
                scheduler,
                self.current_document,
                save,
                delay_seconds=self.settings.persist_debounce_seconds,
            )

        self.state = STATE_IDLE
        self.active_id: Optional[str] = None
        self._committed = ensure_document(document)
        self._visible = self._committed
        self._unit_base: Dict[str, str] = {}
        self._last_processed: Dict[str, Any] = {}
        self._finished: Set[str] = set()
        self._pending: Optional[StreamIncrement] = None
        self._timer: Optional[TimerHandle] = None
        self._last_preview_fragment = ""
        self.preview_count = 0

    def current_document(self) -> str:
        return self._committed

    @property
    def visible_document(self) -> str:
        return self._visible

    def is_finished(self, correlation_id: str) -> bool:
        return correlation_id in self._finished

    def receive(self, increment: StreamIncrement) -> bool:
        if increment.kind not in INCREMENT_KINDS:
            raise ValueError(f"Unknown increment kind: {increment.kind}")
        correlation_id = increment.correlation_id
        if correlation_id in self._finished:
            logger.debug("ignoring increment for finished unit %s", correlation_id)
            return False
        if correlation_id != self.active_id:
            self._begin_unit(correlation_id)
        if increment.complete:
            return self._finalize(increment)
        return self._queue_preview(increment)

    def fail(self, correlation_id: str, error: Optional[BaseException] = None) -> bool:
        if correlation_id in self._finished:
            return False
        if correlation_id == self.active_id:
            self._cancel_timer()
        if isinstance(error, (ProducerTimeoutError, TimeoutError)):
            finding = ValidationFinding(
                "error", "producer_timeout", str(error) or "Producer did not deliver in time."
            )
        else:
            finding = ValidationFinding(
                "error", "producer_failure", str(error or "") or "Producer reported a failure."
            )
        return self._reject(correlation_id, [finding])

    def load_document(self, document: str) -> str:
        loaded = ensure_document(document)
        self._clear_unit_state()
        self._finished.clear()
        self.continuation.clear()
        self._committed = loaded
        self._visible = loaded
        self.state = STATE_IDLE
        return loaded

    def reset(self) -> None:
        self._clear_unit_state()
        self._finished.clear()
        self.continuation.clear()
        self._committed = ensure_document("")
        self._visible = self._committed
        self.state = STATE_IDLE

    def close(self) -> None:
        self._cancel_timer()
        if self.persister is not None:
            self.persister.flush()

    def _begin_unit(self, correlation_id: str) -> None:
        if self.active_id is not None and self.state == STATE_RECEIVING:
            logger.warning("unit %s abandoned before completion", self.active_id)
            self._cancel_timer()
            self._forget(self.active_id)
        self.active_id = correlation_id
        self._unit_base[correlation_id] = self._committed
        self._last_preview_fragment = ""
        self._visible = self._committed
        self.state = STATE_RECEIVING

    def _queue_preview(self, increment: StreamIncrement) -> bool:
        key = _dedupe_key(increment)
        if key is None:
            return False
        if self._last_processed.get(increment.correlation_id) == key:
            return False
        self._pending = increment
        if self._timer is None:
            self._timer = self.scheduler.call_later(
                self.settings.preview_interval_seconds, self._flush_preview
            )
        return True

    def _flush_preview(self) -> None:
        self._timer = None
        increment = self._pending
        self._pending = None
        if increment is None or increment.correlation_id != self.active_id:
            return
        if self.state != STATE_RECEIVING:
            return
        self._last_processed[increment.correlation_id] = _dedupe_key(increment)
        try:
            document = self._render_preview(increment)
        except DiagramError as exc:
            logger.debug("preview skipped for %s: %s", increment.correlation_id, exc)
            return
        if document is None:
            return
        self._visible = document
        self.preview_count += 1
        self.consumer.on_preview(document)

    def _render_preview(self, increment: StreamIncrement) -> Optional[str]:
        base = self._unit_base.get(increment.correlation_id, self._committed)
        if increment.kind == "operations":
            operations = complete_operations(increment.payload)
            if not operations:
                return None
            return apply_operations(base, operations).result

        text = str(increment.payload or "")
        if increment.kind == "append" and self.continuation.active:
            text = self.continuation.combine(text)
        fragment = extract_complete_cells(clean_edges(text))
        if not fragment:
            return None
        legal = legalize_xml(fragment)
        if legal == self._last_preview_fragment:
            return None
        merged = replace_nodes(base, legal)
        self._last_preview_fragment = legal
        return merged

    def _finalize(self, increment: StreamIncrement) -> bool:
        self._cancel_timer()
        self.state = STATE_FINALIZING
        correlation_id = increment.correlation_id
        base = self._unit_base.get(correlation_id, self._committed)
        operation_errors: List[OperationFailure] = []

        try:
            if increment.kind == "operations":
                payload = increment.payload
                operations = list(payload) if isinstance(payload, (list, tuple)) else []
                if not operations:
                    return self._reject(correlation_id, [_empty_output("No operations were delivered.")])
                applied = apply_operations(base, operations)
                candidate = applied.result
                operation_errors = applied.errors
            else:
                text, issue = self._resolve_final_text(increment)
                if issue is not None:
                    return self._reject(correlation_id, [issue])
                candidate = replace_nodes(base, text)
        except DiagramParseError as exc:
            return self._reject(correlation_id, [ValidationFinding("error", "parse_error", str(exc))])

        validation = self.validator.validate(candidate, repair=self.settings.repair_on_commit)
        if not validation.valid:
            return self._reject(correlation_id, validation.issues)

        status = "recovered" if validation.errors else "pass"
        return self._commit(
            correlation_id,
            validation.fixed or candidate,
            status=status,
            operation_errors=operation_errors,
            findings=validation.issues,
        )

    def _resolve_final_text(self, increment: StreamIncrement) -> Tuple[str, Optional[ValidationFinding]]:
        text = str(increment.payload or "")
        continuing = increment.kind == "append" and self.continuation.active
        if continuing:
            text = self.continuation.combine(text)

        cleaned = clean_edges(text)
        if not cleaned.strip():
            return text, _empty_output("Diagram output contained no cells.")
        if not is_truncated(cleaned):
            if continuing:
                self.continuation.clear()
            return text, None

        if not continuing:
            self.continuation.start(text)
            return text, ValidationFinding(
                "error", "truncated_output", "Diagram output ended in the middle of an element."
            )
        if self.continuation.record_incomplete(text):
            return text, ValidationFinding(
                "error", "truncated_output", "Continued output is still incomplete."
            )
        return text, ValidationFinding(
            "error",
            "continuation_limit",
            f"Output stayed incomplete after {self.settings.max_continuation_retries} continuation(s).",
        )

    def _commit(
        self,
        correlation_id: str,
        document: str,
        status: str,
        operation_errors: List[OperationFailure],
        findings: List[ValidationFinding],
    ) -> bool:
        previous = self._committed
        self._committed = document
        self._visible = document
        self.state = STATE_COMMITTED
        self._finished.add(correlation_id)
        self._forget(correlation_id)

        outcome = UnitOutcome(
            correlation_id=correlation_id,
            status=status,
            document=document,
            operation_errors=list(operation_errors),
            findings=list(findings),
            impact=compute_impact_range(previous, document),
        )
        logger.info("committed unit %s (%s): %s", correlation_id, status, outcome.impact["message"])
        self.consumer.on_committed(document, outcome)
        if self.persister is not None:
            self.persister.notify()
        return True

    def _reject(self, correlation_id: str, issues: List[ValidationFinding]) -> bool:
        self._finished.add(correlation_id)
        self._forget(correlation_id)
        if correlation_id == self.active_id:
            self.state = STATE_ERROR
            self._visible = self._committed
        reasons = ", ".join(sorted({item.rule_id for item in issues})) or "unknown"
        logger.warning("rejected unit %s: %s", correlation_id, reasons)
        self.consumer.on_rejected(correlation_id, list(issues))
        return False

    def _forget(self, correlation_id: str) -> None:
        self._unit_base.pop(correlation_id, None)
        self._last_processed.pop(correlation_id, None)
        if self._pending is not None and self._pending.correlation_id == correlation_id:
            self._pending = None

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending = None

    def _clear_unit_state(self) -> None:
        self._cancel_timer()
        self._unit_base.clear()
        self._last_processed.clear()
        self._last_preview_fragment = ""
        self.active_id = None


def _empty_output(message: str) -> ValidationFinding:
    return ValidationFinding("error", "empty_output", message)


def _dedupe_key(increment: StreamIncrement) -> Any:
    if increment.kind == "operations":
        operations = complete_operations(increment.payload)
        if not operations:
            return None
        return tuple((item.kind, item.cell_id, getattr(item, "new_xml", None)) for item in operations)
    text = str(increment.payload or "")
    return text or None
