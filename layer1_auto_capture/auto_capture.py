"""
Layer 1 - Auto-Capture Decision Engine
Decides *when* to capture while smart capture or auto crop is active.

Each detection payload is fed in as (item_count, cross_verified). A boundary
that the detector cross-verified across frames counts towards the threshold;
anything else starts the count over. In continuous scanning a cooldown after
each capture stops the same physical document from triggering twice while
the user swaps pages.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .modes import CaptureModeState
from .quality import monotonic_ms

logger = logging.getLogger(__name__)

DEFAULT_MIN_VERIFIED_FRAMES = 2
MAX_MIN_VERIFIED_FRAMES = 5
CONTINUOUS_SCAN_COOLDOWN_MS = 2000.0


def clamp_verified_frames(value) -> int:
    """Valid range is 1..5; anything else falls back to the default."""
    if not isinstance(value, int) or isinstance(value, bool):
        return DEFAULT_MIN_VERIFIED_FRAMES
    if value <= 0 or value > MAX_MIN_VERIFIED_FRAMES:
        return DEFAULT_MIN_VERIFIED_FRAMES
    return value


@dataclass
class VerificationState:
    cross_verified_count: int = 0
    last_capture_timestamp: Optional[float] = None

    def reset(self):
        self.cross_verified_count = 0


class AutoCaptureDecisionEngine:
    """
    Counts cross-verified detections and fires the capture trigger.

    The trigger is called synchronously and must only schedule the capture;
    the engine never waits on it.
    """

    def __init__(
        self,
        trigger: Callable[[], None],
        modes: Callable[[], CaptureModeState],
        verification: Optional[VerificationState] = None,
        required_verified_frames: int = DEFAULT_MIN_VERIFIED_FRAMES,
        continuous: bool = False,
        cooldown_ms: float = CONTINUOUS_SCAN_COOLDOWN_MS,
        clock: Callable[[], float] = monotonic_ms,
    ):
        """
        Args:
            trigger: Starts a capture
            modes: Returns the current capture modes
            verification: Shared counter state (a fresh one if not provided)
            required_verified_frames: Verified detections needed per capture (1-5)
            continuous: Apply the cooldown between captures
            cooldown_ms: Minimum gap between automatic captures in continuous mode
            clock: Millisecond clock
        """
        self._trigger = trigger
        self._modes = modes
        self.verification = verification if verification is not None else VerificationState()
        self.required_verified_frames = clamp_verified_frames(required_verified_frames)
        self.continuous = continuous
        self.cooldown_ms = cooldown_ms
        self._clock = clock

    def on_detection(self, item_count: int, cross_verified: bool) -> bool:
        """
        Feed one detection payload.

        Returns:
            bool: True if this detection triggered a capture
        """
        if not self._modes().auto_capture_active:
            return False

        state = self.verification

        if item_count <= 1:
            state.cross_verified_count = 0
            return False

        now = self._clock()
        if self.continuous and state.last_capture_timestamp is not None:
            if now - state.last_capture_timestamp < self.cooldown_ms:
                return False

        if cross_verified:
            state.cross_verified_count += 1
        else:
            state.cross_verified_count = 0

        if state.cross_verified_count >= self.required_verified_frames:
            state.cross_verified_count = 0
            state.last_capture_timestamp = now
            logger.info(f"[AutoCapture] {self.required_verified_frames} verified frame(s), triggering capture")
            self._trigger()
            return True

        return False
