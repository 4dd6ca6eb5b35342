"""
Layer 1 - Camera Handler
Low-level camera control for the capture session: open/close, pause/resume,
current-frame fetch, device selection and resolution changes.
"""
import cv2
import logging
import os
import sys
from typing import Optional, Tuple
import numpy as np

from error_handlers import (
    CameraBusyError,
    CameraInitError,
    CameraNotFoundError,
    CameraNotInitializedError,
    FrameCaptureError,
)

logger = logging.getLogger(__name__)


class CameraHandler:
    """
    USB camera handler (V4L2 backend on Linux).

    While paused, fetch_current_frame() keeps returning the last frame read
    so a frame chosen for capture cannot change underneath normalization.
    """

    # Default camera configuration
    DEFAULT_CONFIG = {
        'width': 2560,
        'height': 1440,
        'fps': 30,
        'codec': 'MJPG',
        'buffer_size': 1,  # Minimal buffer for low latency
    }

    def __init__(
        self,
        camera_index: int = 0,
        config: Optional[dict] = None
    ):
        """
        Initialize camera handler.

        Args:
            camera_index: V4L2 device index (e.g., 2 for /dev/video2)
            config: Optional configuration override
        """
        self.camera_index = camera_index
        self.config = {**self.DEFAULT_CONFIG, **(config or {})}
        self.camera: Optional[cv2.VideoCapture] = None
        self._is_open = False
        self._is_paused = False
        self._last_frame: Optional[np.ndarray] = None

        # Actual resolution (may differ from requested)
        self.actual_width = 0
        self.actual_height = 0

        logger.info(f"CameraHandler created for camera index {camera_index}")

    @property
    def device_path(self) -> str:
        return f"/dev/video{self.camera_index}"

    def _check_device(self):
        """Raise if the V4L2 device node is missing or not accessible."""
        if not sys.platform.startswith('linux'):
            return
        if not os.path.exists(self.device_path):
            logger.error(f"Camera device not found: {self.device_path}")
            raise CameraNotFoundError(self.camera_index)
        if not os.access(self.device_path, os.R_OK | os.W_OK):
            raise CameraInitError(self.camera_index, reason="permission denied")

    def open(self):
        """
        Open and configure the camera. No-op if already open.

        Raises:
            CameraNotFoundError: If camera device doesn't exist
            CameraBusyError: If the device exists but cannot be opened
            CameraInitError: For any other initialization failure
        """
        if self._is_open and self.camera is not None:
            logger.debug("Camera already open")
            return

        self._check_device()

        logger.info(f"Opening camera {self.camera_index}")

        try:
            backend = cv2.CAP_V4L2 if sys.platform.startswith('linux') else cv2.CAP_ANY
            self.camera = cv2.VideoCapture(self.camera_index, backend)
        except cv2.error as e:
            raise CameraInitError(self.camera_index, reason=str(e))

        if not self.camera.isOpened():
            self.camera.release()
            self.camera = None
            # Device is present and accessible, so it is held elsewhere
            raise CameraBusyError(self.camera_index)

        self._configure_camera()
        self._is_open = True
        self._is_paused = False
        logger.info(f"Camera opened: {self.actual_width}x{self.actual_height}")

    def _configure_camera(self):
        """Apply camera configuration settings."""
        cfg = self.config

        fourcc = cv2.VideoWriter_fourcc(*cfg['codec'])
        self.camera.set(cv2.CAP_PROP_FOURCC, fourcc)
        self.camera.set(cv2.CAP_PROP_FPS, cfg['fps'])
        self.camera.set(cv2.CAP_PROP_BUFFERSIZE, cfg['buffer_size'])
        self._apply_resolution(cfg['width'], cfg['height'])

    def _apply_resolution(self, width: int, height: int):
        self.camera.set(cv2.CAP_PROP_FRAME_WIDTH, width)
        self.camera.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
        self.actual_width = int(self.camera.get(cv2.CAP_PROP_FRAME_WIDTH))
        self.actual_height = int(self.camera.get(cv2.CAP_PROP_FRAME_HEIGHT))
        if (self.actual_width, self.actual_height) != (width, height):
            logger.warning(
                f"Requested {width}x{height}, camera delivers {self.actual_width}x{self.actual_height}"
            )

    def fetch_current_frame(self) -> np.ndarray:
        """
        Return the current frame (the frozen one while paused).

        Raises:
            CameraNotInitializedError: If camera not open
            FrameCaptureError: If frame capture fails
        """
        if not self._is_open or self.camera is None:
            raise CameraNotInitializedError()

        if self._is_paused and self._last_frame is not None:
            return self._last_frame

        ret, frame = self.camera.read()
        if not ret or frame is None:
            raise FrameCaptureError()

        self._last_frame = frame
        return frame

    def pause(self):
        self._is_paused = True

    def resume(self):
        if not self._is_open:
            raise CameraNotInitializedError()
        self._is_paused = False

    def select_device(self, camera_index: int):
        """Switch to another camera, reopening if the current one is open."""
        if camera_index == self.camera_index:
            return
        was_open = self._is_open
        self.close()
        self.camera_index = camera_index
        logger.info(f"Selected camera {camera_index}")
        if was_open:
            self.open()

    def set_resolution(self, width: int, height: int):
        self.config['width'] = width
        self.config['height'] = height
        if self._is_open and self.camera is not None:
            self._apply_resolution(width, height)

    def get_resolution(self) -> Tuple[int, int]:
        """Get actual camera resolution."""
        return (self.actual_width, self.actual_height)

    def is_open(self) -> bool:
        return self._is_open and self.camera is not None

    def is_paused(self) -> bool:
        return self._is_paused

    def close(self):
        """Release camera resources."""
        if self.camera is not None:
            self.camera.release()
            self.camera = None
        if self._is_open:
            logger.info("Camera closed")
        self._is_open = False
        self._is_paused = False
        self._last_frame = None

    def __enter__(self):
        """Context manager entry."""
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
        return False
