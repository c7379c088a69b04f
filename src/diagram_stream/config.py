import os
from dataclasses import dataclass

DEFAULT_PREVIEW_INTERVAL_SECONDS = 0.15
DEFAULT_PERSIST_DEBOUNCE_SECONDS = 1.0
DEFAULT_MAX_CONTINUATION_RETRIES = 2


@dataclass(frozen=True)
class EngineSettings:
    preview_interval_seconds: float = DEFAULT_PREVIEW_INTERVAL_SECONDS
    persist_debounce_seconds: float = DEFAULT_PERSIST_DEBOUNCE_SECONDS
    max_continuation_retries: int = DEFAULT_MAX_CONTINUATION_RETRIES
    repair_on_commit: bool = True

    @classmethod
    def from_env(cls) -> "EngineSettings":
        return cls(
            preview_interval_seconds=_read_millis(
                "DIAGRAM_STREAM_PREVIEW_INTERVAL_MS", DEFAULT_PREVIEW_INTERVAL_SECONDS
            ),
            persist_debounce_seconds=_read_millis(
                "DIAGRAM_STREAM_PERSIST_DEBOUNCE_MS", DEFAULT_PERSIST_DEBOUNCE_SECONDS
            ),
            max_continuation_retries=_read_int(
                "DIAGRAM_STREAM_MAX_CONTINUATION_RETRIES", DEFAULT_MAX_CONTINUATION_RETRIES
            ),
            repair_on_commit=_read_flag("DIAGRAM_STREAM_REPAIR", True),
        )


def _read_millis(name: str, default_seconds: float) -> float:
    raw = str(os.getenv(name, "")).strip()
    if not raw:
        return default_seconds
    try:
        value = float(raw)
    except ValueError:
        return default_seconds
    if value < 0:
        return default_seconds
    return value / 1000.0


def _read_int(name: str, default: int) -> int:
    raw = str(os.getenv(name, "")).strip()
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value >= 0 else default


def _read_flag(name: str, default: bool) -> bool:
    raw = str(os.getenv(name, "")).strip().lower()
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return default
