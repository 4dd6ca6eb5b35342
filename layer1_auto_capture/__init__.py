"""
Layer 1 - Auto-Capture
Camera control plus the decision logic that picks when and which frame to
capture: capture-mode cascade, clarity tracking and cross-frame verification.
"""
from .modes import CaptureMethod, CaptureModeController, CaptureModeState
from .quality import ClarityWindow, FrameQualityTracker, FrameSample, QualityAssessor, monotonic_ms
from .auto_capture import AutoCaptureDecisionEngine, VerificationState, clamp_verified_frames
from .camera import CameraHandler

__all__ = [
    'CaptureMethod',
    'CaptureModeController',
    'CaptureModeState',
    'ClarityWindow',
    'FrameQualityTracker',
    'FrameSample',
    'QualityAssessor',
    'monotonic_ms',
    'AutoCaptureDecisionEngine',
    'VerificationState',
    'clamp_verified_frames',
    'CameraHandler'
]
