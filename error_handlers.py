"""
Error Handling System
Provides consistent error responses across capture, vision engine and session layers
"""
import logging

logger = logging.getLogger(__name__)


class ScannerError(Exception):
    """Base exception for document scanner errors"""
    def __init__(self, message, error_code, details=None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self):
        """Convert error to JSON-serializable dict"""
        return {
            "success": False,
            "error": self.message,
            "error_code": self.error_code,
            "details": self.details
        }


# Layer 1 Errors - Camera
class DeviceError(ScannerError):
    """Camera device errors raised by layer 1"""
    pass


class CameraNotFoundError(DeviceError):
    """No V4L2 node for the requested index"""
    def __init__(self, camera_index):
        super().__init__(
            message=f"Camera not found at /dev/video{camera_index}",
            error_code="CAMERA_NOT_FOUND",
            details={
                "camera_index": camera_index,
                "suggestion": "Check camera connection and device index"
            }
        )


class CameraBusyError(DeviceError):
    """Camera is held by another process"""
    def __init__(self, camera_index):
        super().__init__(
            message=(
                "Camera is already in use by another application. "
                "Please close other applications using the camera and try again."
            ),
            error_code="CAMERA_BUSY",
            details={
                "camera_index": camera_index,
                "recoverable": True
            }
        )


class CameraInitError(DeviceError):
    """Camera could not be opened for a reason other than being busy"""
    def __init__(self, camera_index, reason=None):
        super().__init__(
            message="Failed to open camera",
            error_code="CAMERA_INIT_FAILED",
            details={
                "camera_index": camera_index,
                "reason": reason,
                "suggestion": "Check camera permissions and connection"
            }
        )


class CameraNotInitializedError(DeviceError):
    """Frame requested from a camera that is not open"""
    def __init__(self):
        super().__init__(
            message="Camera not initialized. Please open the camera first.",
            error_code="CAMERA_NOT_INITIALIZED"
        )


class FrameCaptureError(DeviceError):
    """Camera is open but returned no frame"""
    def __init__(self):
        super().__init__(
            message="Failed to capture frame from camera",
            error_code="FRAME_CAPTURE_FAILED",
            details={
                "suggestion": "Check camera connection or restart the camera"
            }
        )


# Layer 2 Errors - Vision engine
class EngineError(ScannerError):
    """Vision engine call failed or returned malformed data"""
    def __init__(self, reason, operation=None):
        super().__init__(
            message=f"Vision engine failed: {reason}",
            error_code="ENGINE_FAILED",
            details={
                "operation": operation,
                "reason": str(reason)
            }
        )


class NormalizationError(EngineError):
    """Perspective normalization produced no image"""
    def __init__(self, reason="no corrected image produced"):
        super().__init__(reason, operation="normalize")
        self.error_code = "NORMALIZATION_FAILED"


# Layer 3 Errors - Session
class SessionError(ScannerError):
    """Session orchestration errors"""
    pass


class ConfigurationError(SessionError):
    """Session cannot start with the given configuration"""
    def __init__(self, reason):
        super().__init__(
            message=f"Invalid scanner configuration: {reason}",
            error_code="CONFIGURATION_ERROR",
            details={"reason": reason}
        )


class AlreadyInProgressError(SessionError):
    """A scan session is already running"""
    def __init__(self):
        super().__init__(
            message="Capture session already in progress",
            error_code="ALREADY_IN_PROGRESS",
            details={
                "suggestion": "Wait for the current session to finish or stop it first"
            }
        )


# Error response helpers
def handle_error(error, log_message=None):
    """
    Handle error consistently across the application

    Args:
        error: Exception that occurred
        log_message: Optional custom log message

    Returns:
        dict: Error response for JSON serialization
    """
    if log_message:
        logger.error(log_message)

    if isinstance(error, ScannerError):
        # Known scanner error
        logger.error(f"{error.error_code}: {error.message}")
        if error.details:
            logger.debug(f"Error details: {error.details}")
        return error.to_dict()
    else:
        # Unexpected error
        logger.error(f"Unexpected error: {error}")
        logger.exception("Full traceback:")
        return {
            "success": False,
            "error": "An unexpected error occurred",
            "error_code": "UNEXPECTED_ERROR",
            "details": {
                "error_type": type(error).__name__,
                "error_message": str(error)
            }
        }
