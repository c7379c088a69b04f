import logging

from .config import DEFAULT_MAX_CONTINUATION_RETRIES

logger = logging.getLogger(__name__)


class ContinuationBuffer:
    def __init__(self, max_retries: int = DEFAULT_MAX_CONTINUATION_RETRIES) -> None:
        self.max_retries = max_retries
        self.partial = ""
        self.retries = 0

    @property
    def active(self) -> bool:
        return bool(self.partial)

    def start(self, partial: str) -> None:
        self.partial = partial or ""
        self.retries = 0
        logger.info("output truncated after %d characters; awaiting continuation", len(self.partial))

    def combine(self, continuation: str) -> str:
        return self.partial + (continuation or "")

    def record_incomplete(self, combined: str) -> bool:
        self.retries += 1
        if self.retries >= self.max_retries:
            logger.warning("continuation limit of %d reached; dropping partial output", self.max_retries)
            self.clear()
            return False
        self.partial = combined
        return True

    def clear(self) -> None:
        self.partial = ""
        self.retries = 0
