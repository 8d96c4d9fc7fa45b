import asyncio
import logging
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

FACE_LOST = "face-lost"
TAB_SWITCH = "tab-switch"
KICKED_OUT = "kicked-out"
WEBCAM_ACCESS_FAILED = "webcam-access-failed"
VIDEO_STREAM_STARTED = "video-stream-started"


class ViolationTracker:
    """Per-agent violation counter with the obscure/blur cooldown.

    ``record`` returns True exactly once: on the violation that brings the
    count to the limit.
    """

    def __init__(
        self,
        limit: int = 3,
        cooldown: float = 3.0,
        on_obscure_change: Optional[Callable[[bool], None]] = None,
    ):
        self.limit = limit
        self.cooldown = cooldown
        self.on_obscure_change = on_obscure_change
        self.count = 0
        self.by_type: Dict[str, int] = {}
        self.obscured = False
        self.limit_reached = False
        self._clear_handle: Optional[asyncio.TimerHandle] = None

    def seed(self, count: int):
        """Start from a count carried over from the persisted event log"""
        self.count = count

    def record(self, kind: str) -> bool:
        self.count += 1
        self.by_type[kind] = self.by_type.get(kind, 0) + 1
        logger.info(f"Violation {kind} ({self.count}/{self.limit})")
        self._obscure()

        if self.count >= self.limit and not self.limit_reached:
            self.limit_reached = True
            return True
        return False

    def _set_obscured(self, value: bool):
        if self.obscured != value:
            self.obscured = value
            if self.on_obscure_change:
                self.on_obscure_change(value)

    def _obscure(self):
        if self._clear_handle is not None:
            self._clear_handle.cancel()
        self._set_obscured(True)
        self._clear_handle = asyncio.get_running_loop().call_later(self.cooldown, self._clear)

    def _clear(self):
        self._clear_handle = None
        self._set_obscured(False)

    def cancel(self):
        if self._clear_handle is not None:
            self._clear_handle.cancel()
            self._clear_handle = None
        self._set_obscured(False)
