"""
Layer 2 - Image Readjustment
Responsibility: Document boundary detection and perspective correction
Output: DetectionResult for live frames, flattened document image on normalize
"""
import asyncio
import functools
import cv2
import numpy as np
import logging
from typing import List, Optional, Sequence, Tuple

from error_handlers import EngineError
from layer1_auto_capture.quality import QualityAssessor
from .engine import (
    DetectionItem,
    DetectionResult,
    ItemKind,
    Point,
    Quadrilateral,
    VisionEngine,
)

logger = logging.getLogger(__name__)


class OpenCvVisionEngine(VisionEngine):
    """
    Contour-based document detector and perspective corrector.

    A detected quadrilateral is reported as cross-verified when every corner
    stayed within stability_tolerance pixels of the previous detection.
    """

    def __init__(self,
                 min_area_ratio=0.1,
                 max_area_ratio=0.98,
                 min_aspect_ratio=0.4,
                 max_aspect_ratio=2.5,
                 stability_tolerance=15.0,
                 detection_scale=0.5,
                 min_output_size=(64, 64),
                 quality_assessor: Optional[QualityAssessor] = None):
        """
        Initialize the engine

        Args:
            min_area_ratio: Minimum document area as a fraction of the frame
            max_area_ratio: Maximum document area as a fraction of the frame
            min_aspect_ratio: Lower bound of width/height for a valid document
            max_aspect_ratio: Upper bound of width/height for a valid document
            stability_tolerance: Max corner movement (px) between frames to count as verified
            detection_scale: Downscale factor used for detection (1.0 = full size)
            min_output_size: Smallest (width, height) produced by normalize
            quality_assessor: Clarity scorer attached to each detection
        """
        self.min_area_ratio = min_area_ratio
        self.max_area_ratio = max_area_ratio
        self.min_aspect_ratio = min_aspect_ratio
        self.max_aspect_ratio = max_aspect_ratio
        self.stability_tolerance = stability_tolerance
        self.detection_scale = detection_scale
        self.min_output_size = min_output_size
        self.quality_assessor = quality_assessor or QualityAssessor()

        self._prev_corners: Optional[List[Tuple[float, float]]] = None

        logger.info("OpenCvVisionEngine initialized")
        logger.debug(f"  Area ratio: {min_area_ratio}-{max_area_ratio}")
        logger.debug(f"  Stability tolerance: {stability_tolerance}px")

    async def detect_boundaries(self, image: np.ndarray) -> DetectionResult:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._detect_sync, image)

    async def normalize(self, image: np.ndarray, points: Sequence[Point]) -> Optional[np.ndarray]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, functools.partial(self._normalize_sync, image, points)
        )

    def reset(self):
        self._prev_corners = None

    def dispose(self):
        self._prev_corners = None
        logger.debug("OpenCvVisionEngine disposed")

    def _detect_sync(self, image: np.ndarray) -> DetectionResult:
        if image is None or not isinstance(image, np.ndarray) or image.size == 0:
            raise EngineError("empty or invalid image", operation="detect_boundaries")

        try:
            clarity = self.quality_assessor.clarity(image)
            corners = self._detect_document(image)
        except cv2.error as e:
            raise EngineError(str(e), operation="detect_boundaries")

        items = [DetectionItem(kind=ItemKind.ORIGINAL_IMAGE, image=image)]

        if corners is None:
            self._prev_corners = None
            return DetectionResult(items=items, clarity=clarity)

        verified = self._corners_stable(corners)
        self._prev_corners = corners
        items.append(DetectionItem(
            kind=ItemKind.DETECTED_QUAD,
            quad=Quadrilateral.from_points(corners),
            cross_verified=verified,
        ))
        return DetectionResult(items=items, clarity=clarity)

    def _detect_document(self, frame) -> Optional[List[Tuple[float, float]]]:
        """
        Detect document boundaries using edge detection and contour analysis

        Args:
            frame: Input image (full resolution)

        Returns:
            list: Ordered corners (tl, tr, br, bl) in full-resolution pixels, or None
        """
        height, width = frame.shape[:2]
        scale = self.detection_scale if 0 < self.detection_scale < 1 else 1.0
        small = cv2.resize(frame, (max(1, int(width * scale)), max(1, int(height * scale)))) if scale != 1.0 else frame

        if len(small.shape) == 3:
            gray = cv2.cvtColor(small, cv2.COLOR_BGR2GRAY)
        else:
            gray = small

        # Apply Gaussian blur to reduce noise
        blurred = cv2.GaussianBlur(gray, (5, 5), 0)

        # Edge detection
        edges = cv2.Canny(blurred, 50, 150)

        # Dilate edges to close gaps
        kernel = np.ones((3, 3), np.uint8)
        dilated = cv2.dilate(edges, kernel, iterations=1)

        contours, _ = cv2.findContours(dilated, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
        if not contours:
            return None

        # Sort contours by area (largest first)
        contours = sorted(contours, key=cv2.contourArea, reverse=True)

        frame_area = gray.shape[0] * gray.shape[1]
        min_area = self.min_area_ratio * frame_area
        max_area = self.max_area_ratio * frame_area

        for contour in contours[:10]:
            area = cv2.contourArea(contour)
            if not (min_area < area < max_area):
                continue

            peri = cv2.arcLength(contour, True)
            approx = cv2.approxPolyDP(contour, 0.02 * peri, True)

            if len(approx) == 4 and self._is_valid_quadrilateral(approx.reshape(4, 2)):
                ordered = self._order_points(approx.reshape(4, 2).astype("float32")) / scale
                logger.debug(f"Document detected with area: {area / (scale ** 2):.0f}")
                return [(float(x), float(y)) for x, y in ordered]

        return None

    def _is_valid_quadrilateral(self, pts) -> bool:
        """Reject concave shapes and aspect ratios no document has."""
        if not cv2.isContourConvex(pts.reshape(-1, 1, 2).astype(np.int32)):
            return False

        rect = self._order_points(pts.astype("float32"))
        (tl, tr, br, bl) = rect
        width = max(np.linalg.norm(tr - tl), np.linalg.norm(br - bl))
        height = max(np.linalg.norm(bl - tl), np.linalg.norm(br - tr))
        if height == 0:
            return False

        aspect = width / height
        return self.min_aspect_ratio <= aspect <= self.max_aspect_ratio

    def _corners_stable(self, current: List[Tuple[float, float]]) -> bool:
        """Check if corners are stable compared to previous frame."""
        if self._prev_corners is None:
            return False

        curr_arr = np.array(current)
        prev_arr = np.array(self._prev_corners)

        # Calculate maximum corner movement
        distances = np.linalg.norm(curr_arr - prev_arr, axis=1)
        return float(np.max(distances)) < self.stability_tolerance

    def _normalize_sync(self, image: np.ndarray, points: Sequence[Point]) -> Optional[np.ndarray]:
        if image is None or not isinstance(image, np.ndarray) or image.size == 0:
            raise EngineError("empty or invalid image", operation="normalize")

        pts = np.array(points, dtype="float32")
        if pts.shape != (4, 2):
            logger.warning(f"normalize called with {len(points)} points, expected 4")
            return None
        if Quadrilateral.from_points(pts.tolist()).area < 1.0:
            logger.warning("normalize called with a degenerate boundary")
            return None

        try:
            return self._correct_perspective(image, pts)
        except cv2.error as e:
            raise EngineError(str(e), operation="normalize")

    def _correct_perspective(self, frame, points):
        """
        Apply 4-point perspective transform to flatten the document

        Args:
            frame: Input image
            points: Document corners, any order

        Returns:
            numpy.ndarray: Perspective-corrected image
        """
        rect = self._order_points(points)
        (tl, tr, br, bl) = rect

        # Output size follows the longer of each pair of opposite edges
        max_width = int(max(np.linalg.norm(br - bl), np.linalg.norm(tr - tl)))
        max_height = int(max(np.linalg.norm(tr - br), np.linalg.norm(tl - bl)))

        min_w, min_h = self.min_output_size
        max_width = max(max_width, min_w)
        max_height = max(max_height, min_h)

        dst = np.array([
            [0, 0],
            [max_width - 1, 0],
            [max_width - 1, max_height - 1],
            [0, max_height - 1]
        ], dtype="float32")

        M = cv2.getPerspectiveTransform(rect, dst)
        warped = cv2.warpPerspective(frame, M, (max_width, max_height))

        logger.debug(f"Perspective corrected to {max_width}x{max_height}")
        return warped

    @staticmethod
    def _order_points(pts):
        """
        Order points in consistent order: top-left, top-right, bottom-right, bottom-left

        Args:
            pts: Array of 4 points

        Returns:
            numpy.ndarray: Ordered points
        """
        pts = np.asarray(pts, dtype="float32")
        rect = np.zeros((4, 2), dtype="float32")

        s = pts.sum(axis=1)
        diff = np.diff(pts, axis=1).ravel()

        rect[0] = pts[np.argmin(s)]      # Top-left (smallest sum)
        rect[2] = pts[np.argmax(s)]      # Bottom-right (largest sum)
        rect[1] = pts[np.argmin(diff)]   # Top-right (smallest difference)
        rect[3] = pts[np.argmax(diff)]   # Bottom-left (largest difference)

        return rect
