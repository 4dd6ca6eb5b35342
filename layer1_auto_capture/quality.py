"""
Layer 1 - Frame Quality
Clarity scoring for incoming frames and the tracker that picks the clearest
stable frame out of the live stream.

The tracker refuses to commit to a transient sharp outlier: a new peak only
becomes the confirmed clearest frame after it has held for a stabilization
period while subsequent frames stopped improving.
"""
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Optional

import cv2
import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_SIZE = 50
DEFAULT_RESET_TIMEOUT_MS = 3000.0
DEFAULT_MIN_STABILIZATION_MS = 1000.0
DEFAULT_MIN_NON_IMPROVING_FRAMES = 2


def monotonic_ms() -> float:
    """Monotonic clock in milliseconds."""
    return time.monotonic() * 1000.0


class QualityAssessor:
    """
    Per-frame clarity metric.
    Laplacian variance on the grayscale frame: higher values are sharper.
    """

    def __init__(self, max_side: Optional[int] = 1000):
        """
        Args:
            max_side: Downscale frames whose longest side exceeds this before
                scoring (None scores at full resolution)
        """
        self.max_side = max_side

    def clarity(self, image: np.ndarray) -> float:
        if image is None or image.size == 0:
            return 0.0

        if len(image.shape) == 3:
            gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        else:
            gray = image

        h, w = gray.shape[:2]
        if self.max_side and max(h, w) > self.max_side:
            scale = self.max_side / float(max(h, w))
            gray = cv2.resize(gray, (int(w * scale), int(h * scale)), interpolation=cv2.INTER_AREA)

        laplacian = cv2.Laplacian(gray, cv2.CV_64F)
        return float(laplacian.var())


@dataclass(frozen=True)
class FrameSample:
    """A scored frame confirmed as the clearest of its window."""
    frame_id: int
    clarity_score: float
    captured_image: Optional[np.ndarray] = None


@dataclass
class ClarityWindow:
    """Mutable clarity bookkeeping for one capture session."""
    history_size: int = DEFAULT_HISTORY_SIZE
    history: Deque[float] = field(default_factory=deque)
    max_clarity: float = 0.0
    max_clarity_timestamp: float = 0.0
    max_clarity_frame_id: Optional[int] = None
    max_clarity_image: Optional[np.ndarray] = None
    non_improving_streak: int = 0
    confirmed: Optional[FrameSample] = None

    def __post_init__(self):
        self.history = deque(self.history, maxlen=self.history_size)

    def reset(self):
        self.history.clear()
        self.max_clarity = 0.0
        self.max_clarity_timestamp = 0.0
        self.max_clarity_frame_id = None
        self.max_clarity_image = None
        self.non_improving_streak = 0
        self.confirmed = None


class FrameQualityTracker:
    """
    Selects the clearest stable frame from a stream of clarity scores.

    observe() must be cheap: it runs synchronously once per analysed frame.
    """

    def __init__(
        self,
        window: Optional[ClarityWindow] = None,
        reset_timeout_ms: float = DEFAULT_RESET_TIMEOUT_MS,
        min_stabilization_ms: float = DEFAULT_MIN_STABILIZATION_MS,
        min_non_improving_frames: int = DEFAULT_MIN_NON_IMPROVING_FRAMES,
        clock: Callable[[], float] = monotonic_ms,
    ):
        self.window = window if window is not None else ClarityWindow()
        self.reset_timeout_ms = reset_timeout_ms
        self.min_stabilization_ms = min_stabilization_ms
        self.min_non_improving_frames = min_non_improving_frames
        self._clock = clock

    def observe(self, frame_id: int, clarity_score: Optional[float], image: Optional[np.ndarray]) -> None:
        # Frames the engine could not score carry no information
        if not clarity_score:
            return

        w = self.window
        now = self._clock()

        if now - w.max_clarity_timestamp > self.reset_timeout_ms:
            w.max_clarity = 0.0

        if clarity_score > w.max_clarity:
            w.max_clarity = clarity_score
            w.max_clarity_timestamp = now
            w.max_clarity_frame_id = frame_id
            w.max_clarity_image = image
            w.non_improving_streak = 0
        elif w.history and clarity_score <= w.history[-1]:
            # Compared against the previous frame, not the running peak
            w.non_improving_streak += 1
        else:
            w.non_improving_streak = 0

        if (
            w.max_clarity_frame_id is not None
            and (w.confirmed is None or w.confirmed.frame_id != w.max_clarity_frame_id)
            and now - w.max_clarity_timestamp >= self.min_stabilization_ms
            and w.non_improving_streak >= self.min_non_improving_frames
        ):
            w.confirmed = FrameSample(w.max_clarity_frame_id, w.max_clarity, w.max_clarity_image)
            logger.debug(
                f"[Quality] Frame {w.confirmed.frame_id} confirmed clearest "
                f"(clarity {w.max_clarity:.1f})"
            )

        w.history.append(clarity_score)

    @property
    def confirmed_frame_id(self) -> Optional[int]:
        confirmed = self.window.confirmed
        return confirmed.frame_id if confirmed else None

    def get_clearest_image(self) -> Optional[np.ndarray]:
        """Image of the confirmed clearest frame, or None if nothing confirmed yet."""
        confirmed = self.window.confirmed
        return confirmed.captured_image if confirmed else None

    def reset(self):
        self.window.reset()
