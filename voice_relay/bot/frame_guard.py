"""
Admission control for inbound client frames.

Every frame a client sends passes through ``FrameGuard.check`` before it can reach
the upstream session. Oversized frames are rejected outright; the rest count
against a fixed per-identity window. Window state is process-local and is lost on
restart, so running several relay processes behind a load balancer multiplies the
effective quota.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Union

from voice_relay.config.constants import (
    LOGGER_NAME,
    MAX_FRAME_SIZE,
    RATE_LIMIT_MAX_FRAMES,
    RATE_LIMIT_WINDOW_SECONDS,
)
from voice_relay.errors import AdmissionError

logger = logging.getLogger(LOGGER_NAME)


@dataclass
class RateWindow:
    """Frame count for one identity within the current window."""
    count: int
    window_reset_at: float


def frame_size(raw: Union[str, bytes]) -> int:
    """Encoded byte length of a frame."""
    if isinstance(raw, bytes):
        return len(raw)
    return len(raw.encode("utf-8"))


class FrameGuard:
    """
    Size and rate guard shared by all connections in the process.
    """

    def __init__(
        self,
        max_frame_size: int = MAX_FRAME_SIZE,
        max_frames: int = RATE_LIMIT_MAX_FRAMES,
        window_seconds: float = RATE_LIMIT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_frame_size = max_frame_size
        self.max_frames = max_frames
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, RateWindow] = {}
        self._next_sweep_at = clock() + window_seconds
        self._lock = threading.Lock()

    @property
    def size_error_message(self) -> str:
        return f"Message too large. Maximum size is {self.max_frame_size // 1024}KB"

    @property
    def rate_error_message(self) -> str:
        return (
            f"Rate limit exceeded. Maximum {self.max_frames} messages "
            f"per {self.window_seconds:g} seconds"
        )

    def check(self, identity: str, raw: Union[str, bytes]) -> None:
        """
        Admit or reject one inbound frame.

        Args:
            identity: Subject of the sending connection
            raw: The frame exactly as received

        Raises:
            AdmissionError: If the frame is too large or the identity is over quota
        """
        size = frame_size(raw)
        if size > self.max_frame_size:
            logger.warning(f"Rejected {size} byte frame from {identity}")
            raise AdmissionError(self.size_error_message)

        if not self._admit(identity):
            logger.warning(f"Rate limit exceeded for {identity}")
            raise AdmissionError(self.rate_error_message)

    @property
    def tracked_identities(self) -> int:
        with self._lock:
            return len(self._windows)

    def _admit(self, identity: str) -> bool:
        now = self._clock()
        with self._lock:
            if now >= self._next_sweep_at:
                self._sweep(now)
            window = self._windows.get(identity)
            if window is None or now >= window.window_reset_at:
                self._windows[identity] = RateWindow(
                    count=1, window_reset_at=now + self.window_seconds
                )
                return True
            if window.count >= self.max_frames:
                return False
            window.count += 1
            return True

    def _sweep(self, now: float) -> None:
        # Caller holds the lock
        expired = [k for k, w in self._windows.items() if now >= w.window_reset_at]
        for identity in expired:
            del self._windows[identity]
        if expired:
            logger.debug(f"Dropped {len(expired)} expired rate windows")
        self._next_sweep_at = now + self.window_seconds

    def window_for(self, identity: str) -> Optional[RateWindow]:
        """Current window for ``identity``, if one has been opened."""
        with self._lock:
            return self._windows.get(identity)

    def reset(self, identity: Optional[str] = None) -> None:
        """Forget the window of one identity, or of all identities."""
        with self._lock:
            if identity is None:
                self._windows.clear()
            else:
                self._windows.pop(identity, None)
