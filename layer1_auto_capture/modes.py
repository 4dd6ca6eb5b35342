"""
Layer 1 - Capture Modes
Three dependent capture modes and the cascade rules that keep them
consistent:

    auto_crop  =>  smart_capture  =>  bounds_detection

Disabling cascades differ depending on whether the correction stage is shown.
With the correction stage hidden, the smart-capture switch is not offered on
its own, so turning smart capture off is routed through auto crop instead.
"""
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class CaptureMethod(Enum):
    """How the image behind an outcome was obtained."""
    MANUAL = "manual"
    SMART_CAPTURE = "smartCapture"
    AUTO_CROP = "autoCrop"
    UPLOADED_IMAGE = "uploadedImage"
    STATIC_FILE = "staticFile"

    @property
    def needs_correction(self) -> bool:
        """Whether this method goes through the correction stage when both stages are shown."""
        return self in (CaptureMethod.SMART_CAPTURE, CaptureMethod.UPLOADED_IMAGE, CaptureMethod.MANUAL)


@dataclass(frozen=True)
class CaptureModeState:
    bounds_detection: bool = True
    smart_capture: bool = False
    auto_crop: bool = False

    @property
    def auto_capture_active(self) -> bool:
        return self.smart_capture or self.auto_crop

    def is_consistent(self) -> bool:
        return (not self.auto_crop or self.smart_capture) and (not self.smart_capture or self.bounds_detection)

    def to_dict(self) -> dict:
        return {
            'bounds_detection': self.bounds_detection,
            'smart_capture': self.smart_capture,
            'auto_crop': self.auto_crop,
        }


class CaptureModeController:
    """
    Owns the CaptureModeState; every change goes through set_* so the
    cascade rules are applied before the requested change.

    Each setter takes an explicit state, or None to flip the current one,
    and returns the resulting state.
    """

    def __init__(
        self,
        show_correction_stage: bool = True,
        state: Optional[CaptureModeState] = None,
        on_bounds_detection_changed: Optional[Callable[[bool], None]] = None,
        on_modes_changed: Optional[Callable[[CaptureModeState], None]] = None,
    ):
        self.show_correction_stage = show_correction_stage
        self._state = state or CaptureModeState()
        self._bounds_listeners: List[Callable[[bool], None]] = []
        self._change_listeners: List[Callable[[CaptureModeState], None]] = []
        if on_bounds_detection_changed:
            self._bounds_listeners.append(on_bounds_detection_changed)
        if on_modes_changed:
            self._change_listeners.append(on_modes_changed)

    @property
    def state(self) -> CaptureModeState:
        return self._state

    def add_bounds_detection_listener(self, listener: Callable[[bool], None]):
        self._bounds_listeners.append(listener)

    def add_change_listener(self, listener: Callable[[CaptureModeState], None]):
        self._change_listeners.append(listener)

    def set_bounds_detection(self, enabled: Optional[bool] = None) -> CaptureModeState:
        new_state = (not self._state.bounds_detection) if enabled is None else bool(enabled)

        if not new_state:
            self.set_smart_capture(False)
            if not self.show_correction_stage:
                self.set_auto_crop(False)

        previous = self._state.bounds_detection
        self._apply(bounds_detection=new_state)

        if previous != new_state:
            logger.debug(f"[Modes] Bounds detection {'enabled' if new_state else 'disabled'}")
            for listener in list(self._bounds_listeners):
                listener(new_state)
        return self._state

    def set_smart_capture(self, enabled: Optional[bool] = None) -> CaptureModeState:
        new_state = (not self._state.smart_capture) if enabled is None else bool(enabled)

        if new_state and not self._state.bounds_detection:
            self.set_bounds_detection(True)
        elif not new_state:
            if self.show_correction_stage:
                self.set_auto_crop(False)
            elif self._state.auto_crop:
                # Hidden smart-capture switch: auto crop drives this transition
                return self.set_auto_crop(False)

        self._apply(smart_capture=new_state)
        return self._state

    def set_auto_crop(self, enabled: Optional[bool] = None) -> CaptureModeState:
        new_state = (not self._state.auto_crop) if enabled is None else bool(enabled)

        if new_state and not (self._state.bounds_detection and self._state.smart_capture):
            self.set_bounds_detection(True)
            self.set_smart_capture(True)

        self._apply(auto_crop=new_state)

        if not new_state and not self.show_correction_stage:
            self.set_smart_capture(False)
        return self._state

    def apply_initial(self, initial: CaptureModeState) -> CaptureModeState:
        """Replay configured defaults through the cascade, lowest mode first."""
        self.set_bounds_detection(initial.bounds_detection)
        self.set_smart_capture(initial.smart_capture)
        self.set_auto_crop(initial.auto_crop)
        return self._state

    def flow_type(self) -> CaptureMethod:
        if self._state.auto_crop:
            return CaptureMethod.AUTO_CROP
        if self._state.smart_capture:
            return CaptureMethod.SMART_CAPTURE
        return CaptureMethod.MANUAL

    def _apply(self, **changes):
        self._state = replace(self._state, **changes)
        for listener in list(self._change_listeners):
            listener(self._state)
