"""
Scan session configuration.

Defaults live on the dataclass; ScannerConfig.from_env() overlays
environment variables so deployments can be tuned without code changes.
"""

import os
from dataclasses import dataclass, fields
from typing import Any, Awaitable, Callable, Optional, Union

from error_handlers import ConfigurationError
from layer1_auto_capture.auto_capture import (
    CONTINUOUS_SCAN_COOLDOWN_MS,
    DEFAULT_MIN_VERIFIED_FRAMES,
    clamp_verified_frames,
)
from layer1_auto_capture.modes import CaptureModeState
from layer1_auto_capture.quality import (
    DEFAULT_HISTORY_SIZE,
    DEFAULT_MIN_NON_IMPROVING_FRAMES,
    DEFAULT_MIN_STABILIZATION_MS,
    DEFAULT_RESET_TIMEOUT_MS,
)

# Callbacks may be plain functions or coroutines
Callback = Callable[..., Union[None, Awaitable[None]]]


def _parse_bool_env(key: str, default: bool) -> bool:
    """Parse boolean environment variable."""
    val = os.getenv(key, str(default)).lower()
    return val in ('true', '1', 'yes', 'on')


def _parse_optional_bool_env(key: str) -> Optional[bool]:
    """Tri-state flag: unset means "not configured"."""
    if os.getenv(key) is None:
        return None
    return _parse_bool_env(key, False)


# field name -> (env var, parser)
_ENV_FIELDS = {
    'enable_capture_stage': ('ENABLE_CAPTURE_STAGE', lambda k: _parse_bool_env(k, True)),
    'show_correction_stage': ('SHOW_CORRECTION_STAGE', lambda k: _parse_bool_env(k, True)),
    'show_result_stage': ('SHOW_RESULT_STAGE', lambda k: _parse_bool_env(k, True)),
    'enable_continuous_scanning': ('ENABLE_CONTINUOUS_SCANNING', lambda k: _parse_bool_env(k, False)),
    'continuous_scan_cooldown_ms': ('CONTINUOUS_SCAN_COOLDOWN_MS', lambda k: float(os.environ[k])),
    'enable_bounds_detection_mode': ('ENABLE_BOUNDS_DETECTION_MODE', _parse_optional_bool_env),
    'enable_smart_capture_mode': ('ENABLE_SMART_CAPTURE_MODE', _parse_optional_bool_env),
    'enable_auto_crop_mode': ('ENABLE_AUTO_CROP_MODE', _parse_optional_bool_env),
    'enable_frame_verification': ('ENABLE_FRAME_VERIFICATION', lambda k: _parse_bool_env(k, True)),
    'min_verified_frames_for_auto_capture': ('MIN_VERIFIED_FRAMES', lambda k: int(os.environ[k])),
    'frame_interval_ms': ('FRAME_INTERVAL_MS', lambda k: float(os.environ[k])),
    'camera_index': ('CAMERA_INDEX', lambda k: int(os.environ[k])),
    'camera_width': ('CAMERA_WIDTH', lambda k: int(os.environ[k])),
    'camera_height': ('CAMERA_HEIGHT', lambda k: int(os.environ[k])),
}


@dataclass
class ScannerConfig:
    """
    Settings for one DocumentScanner.
    """

    # Stage selection
    enable_capture_stage: bool = True
    show_correction_stage: bool = True
    show_result_stage: bool = True

    # Continuous loop
    enable_continuous_scanning: bool = False
    continuous_scan_cooldown_ms: float = CONTINUOUS_SCAN_COOLDOWN_MS

    # Initial capture modes (None = not configured)
    enable_bounds_detection_mode: Optional[bool] = None
    enable_smart_capture_mode: Optional[bool] = None
    enable_auto_crop_mode: Optional[bool] = None

    # Frame verification
    enable_frame_verification: bool = True
    min_verified_frames_for_auto_capture: int = DEFAULT_MIN_VERIFIED_FRAMES

    # Clarity tracker
    clarity_reset_timeout_ms: float = DEFAULT_RESET_TIMEOUT_MS
    min_stabilization_ms: float = DEFAULT_MIN_STABILIZATION_MS
    min_non_improving_frames: int = DEFAULT_MIN_NON_IMPROVING_FRAMES
    clarity_history_size: int = DEFAULT_HISTORY_SIZE

    # Pacing
    frame_interval_ms: float = 33.0
    viewport_debounce_ms: float = 500.0

    # Camera
    camera_index: int = 0
    camera_width: int = 2560
    camera_height: int = 1440

    # Callbacks
    on_cycle_completed: Optional[Callback] = None
    on_correction_finished: Optional[Callback] = None
    on_done: Optional[Callback] = None
    on_viewport_changed: Optional[Callback] = None

    @classmethod
    def from_env(cls, **overrides: Any) -> 'ScannerConfig':
        """Build a config from environment variables; keyword overrides win."""
        values = {}
        for name, (env_key, parse) in _ENV_FIELDS.items():
            if os.getenv(env_key) is None:
                continue
            try:
                values[name] = parse(env_key)
            except ValueError:
                raise ConfigurationError(f"invalid value for {env_key}: {os.getenv(env_key)!r}")
        values.update(overrides)
        return cls(**values)

    @property
    def required_verified_frames(self) -> int:
        return clamp_verified_frames(self.min_verified_frames_for_auto_capture)

    def initial_modes(self) -> CaptureModeState:
        """Derive the starting mode state from the tri-state flags."""
        bounds = self.enable_bounds_detection_mode
        if bounds is None:
            bounds = self.enable_smart_capture_mode
        if bounds is None:
            bounds = self.enable_auto_crop_mode
        if bounds is None:
            bounds = True

        auto_crop = bool(self.enable_auto_crop_mode)
        smart = bool(self.enable_smart_capture_mode) or auto_crop
        return CaptureModeState(bounds_detection=bool(bounds), smart_capture=smart, auto_crop=auto_crop)

    def validate(self):
        """Raise ConfigurationError for values no session can run with."""
        for name in ('continuous_scan_cooldown_ms', 'clarity_reset_timeout_ms', 'min_stabilization_ms',
                     'frame_interval_ms', 'viewport_debounce_ms'):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must not be negative")

        if self.clarity_history_size < 1:
            raise ConfigurationError("clarity_history_size must be at least 1")
        if self.min_non_improving_frames < 0:
            raise ConfigurationError("min_non_improving_frames must not be negative")
        if self.camera_index < 0:
            raise ConfigurationError("camera_index must not be negative")
        if self.camera_width <= 0 or self.camera_height <= 0:
            raise ConfigurationError("camera resolution must be positive")

    def to_dict(self) -> dict:
        """Plain settings (callbacks omitted)."""
        return {f.name: getattr(self, f.name) for f in fields(self) if not f.name.startswith('on_')}
