"""
Layer 3 - Scan Session
Configuration, session state, the capture/correction/review stages and the
DocumentScanner that runs them.
"""
from .config import ScannerConfig
from .state import OutcomeStatus, ScanOutcome, SessionState, SharedSessionState, Stage
from .channel import StageChannel
from .stages import CaptureStage, CorrectionStage, ReviewStage, SessionContext
from .orchestrator import DocumentScanner

__all__ = [
    'ScannerConfig',
    'OutcomeStatus',
    'ScanOutcome',
    'SessionState',
    'SharedSessionState',
    'Stage',
    'StageChannel',
    'CaptureStage',
    'CorrectionStage',
    'ReviewStage',
    'SessionContext',
    'DocumentScanner'
]
