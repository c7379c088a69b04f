import json
import logging
from copy import deepcopy
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .config import DEFAULT_PERSIST_DEBOUNCE_SECONDS
from .scheduling import Scheduler, TimerHandle

logger = logging.getLogger(__name__)

SessionRecord = Dict[str, Any]


class DebouncedPersister:
    def __init__(
        self,
        scheduler: Scheduler,
        snapshot: Callable[[], str],
        save: Callable[[str], None],
        delay_seconds: float = DEFAULT_PERSIST_DEBOUNCE_SECONDS,
    ) -> None:
        self._scheduler = scheduler
        self._snapshot = snapshot
        self._save = save
        self.delay_seconds = delay_seconds
        self._handle: Optional[TimerHandle] = None
        self.last_saved: Optional[str] = None
        self.failures = 0

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def notify(self) -> None:
        self.cancel()
        self._handle = self._scheduler.call_later(self.delay_seconds, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def flush(self) -> bool:
        self.cancel()
        return self._save_now()

    def _fire(self) -> None:
        self._handle = None
        self._save_now()

    def _save_now(self) -> bool:
        try:
            document = self._snapshot()
            if document == self.last_saved:
                return True
            self._save(document)
        except Exception:
            self.failures += 1
            logger.exception("Failed to save diagram; will retry on the next save trigger")
            return False
        self.last_saved = document
        return True


class JsonFileSnapshotStore:
    def __init__(self, base_dir: Path) -> None:
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._session_file = self.base_dir / "sessions.json"
        if not self._session_file.exists():
            self._write_json(self._session_file, {})

    def save_document(self, session_id: str, diagram_xml: str) -> SessionRecord:
        sessions = self._read_sessions()
        record = sessions.setdefault(session_id, _new_record())
        record["diagram_xml"] = diagram_xml
        record["updated_at"] = _now_utc_iso()
        self._write_sessions(sessions)
        return deepcopy(record)

    def saver(self, session_id: str) -> Callable[[str], None]:
        def save(diagram_xml: str) -> None:
            self.save_document(session_id, diagram_xml)

        return save

    def load_document(self, session_id: str) -> Optional[str]:
        record = self._read_sessions().get(session_id)
        if not record:
            return None
        return str(record.get("diagram_xml", ""))

    def record_snapshot(self, session_id: str, message_index: int, diagram_xml: str) -> SessionRecord:
        sessions = self._read_sessions()
        record = sessions.setdefault(session_id, _new_record())
        record.setdefault("xml_snapshots", {})[str(int(message_index))] = diagram_xml
        record["updated_at"] = _now_utc_iso()
        self._write_sessions(sessions)
        return deepcopy(record)

    def get_snapshot(self, session_id: str, message_index: int) -> Optional[str]:
        record = self._read_sessions().get(session_id) or {}
        snapshots = record.get("xml_snapshots", {})
        value = snapshots.get(str(int(message_index)))
        return None if value is None else str(value)

    def truncate_snapshots(self, session_id: str, message_index: int) -> int:
        sessions = self._read_sessions()
        record = sessions.get(session_id)
        if not record:
            return 0
        snapshots = record.get("xml_snapshots", {})
        kept = {key: value for key, value in snapshots.items() if int(key) < int(message_index)}
        removed = len(snapshots) - len(kept)
        record["xml_snapshots"] = kept
        record["updated_at"] = _now_utc_iso()
        self._write_sessions(sessions)
        return removed

    def list_sessions(self) -> List[str]:
        sessions = self._read_sessions()
        return sorted(sessions, key=lambda key: sessions[key].get("updated_at", ""), reverse=True)

    def delete_session(self, session_id: str) -> bool:
        sessions = self._read_sessions()
        if session_id not in sessions:
            return False
        del sessions[session_id]
        self._write_sessions(sessions)
        return True

    def _read_sessions(self) -> Dict[str, SessionRecord]:
        data = self._read_json(self._session_file, {})
        return data if isinstance(data, dict) else {}

    def _write_sessions(self, sessions: Dict[str, SessionRecord]) -> None:
        self._write_json(self._session_file, sessions)

    def _read_json(self, path: Path, default: Any) -> Any:
        if not path.exists():
            return deepcopy(default)
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)

    def _write_json(self, path: Path, payload: Any) -> None:
        with path.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2)


def _new_record() -> SessionRecord:
    now = _now_utc_iso()
    return {"diagram_xml": "", "xml_snapshots": {}, "created_at": now, "updated_at": now}


def _now_utc_iso() -> str:
    return datetime.now(tz=timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")
