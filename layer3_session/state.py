"""
Session data model: outcomes, stages and the state shared by all stages of
one DocumentScanner.
"""
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional

import numpy as np

from layer1_auto_capture.auto_capture import VerificationState
from layer1_auto_capture.modes import CaptureMethod, CaptureModeState
from layer2_readjustment.engine import Quadrilateral


class OutcomeStatus(Enum):
    SUCCESS = "success"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True, eq=False)
class ScanOutcome:
    """
    Result of one stage or one whole pass through the stages.

    Immutable: a new capture supersedes the outcome, it never edits it.
    """
    status: OutcomeStatus
    message: str = ""
    original_image: Optional[np.ndarray] = None
    corrected_image: Optional[np.ndarray] = None
    boundary: Optional[Quadrilateral] = None
    capture_method: Optional[CaptureMethod] = None

    @classmethod
    def success(cls, **kwargs) -> 'ScanOutcome':
        kwargs.setdefault('message', "Success")
        return cls(status=OutcomeStatus.SUCCESS, **kwargs)

    @classmethod
    def cancelled(cls, message: str = "Cancelled") -> 'ScanOutcome':
        return cls(status=OutcomeStatus.CANCELLED, message=message)

    @classmethod
    def failed(cls, message: str) -> 'ScanOutcome':
        return cls(status=OutcomeStatus.FAILED, message=message)

    @property
    def is_success(self) -> bool:
        return self.status is OutcomeStatus.SUCCESS

    def with_changes(self, **changes) -> 'ScanOutcome':
        return replace(self, **changes)

    def to_dict(self) -> dict:
        """JSON-safe summary; images are described by shape only."""
        def _shape(image):
            return list(image.shape) if image is not None else None

        return {
            'status': self.status.value,
            'message': self.message,
            'capture_method': self.capture_method.value if self.capture_method else None,
            'boundary': self.boundary.to_list() if self.boundary else None,
            'original_image_shape': _shape(self.original_image),
            'corrected_image_shape': _shape(self.corrected_image),
        }


class Stage(Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    CORRECTING = "correcting"
    REVIEWING = "reviewing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @classmethod
    def terminal_for(cls, outcome: ScanOutcome) -> 'Stage':
        return {
            OutcomeStatus.SUCCESS: cls.COMPLETED,
            OutcomeStatus.CANCELLED: cls.CANCELLED,
            OutcomeStatus.FAILED: cls.FAILED,
        }[outcome.status]


@dataclass
class SessionState:
    """What the orchestrator is doing right now."""
    stage: Stage = Stage.IDLE
    continuous_mode_enabled: bool = False
    completed_count: int = 0
    # StageChannel of the stage currently awaited, if any
    pending: Optional[object] = None
    in_flight: bool = False
    stop_requested: bool = False
    # Set by dispose(), checked between stages
    disposed: bool = False

    def to_dict(self) -> dict:
        return {
            'stage': self.stage.value,
            'continuous_mode_enabled': self.continuous_mode_enabled,
            'completed_count': self.completed_count,
            'in_flight': self.in_flight,
            'stop_requested': self.stop_requested,
        }


@dataclass
class SharedSessionState:
    """
    State visible to every stage of one scanner: the latest outcome, the
    session bookkeeping, the capture modes and the verification counter.
    """
    session: SessionState = field(default_factory=SessionState)
    modes: CaptureModeState = field(default_factory=CaptureModeState)
    verification: VerificationState = field(default_factory=VerificationState)
    result: Optional[ScanOutcome] = None

    def update_result(self, outcome: ScanOutcome):
        """Replace the retained outcome (only the latest one is kept)."""
        self.result = outcome
