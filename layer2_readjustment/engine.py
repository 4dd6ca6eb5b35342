"""
Layer 2 - Vision Engine Contract
Request/response types exchanged with whatever performs boundary detection
and perspective correction, plus the abstract engine interface.

The session layer only ever talks to a VisionEngine; it never inspects pixels
itself beyond reading an image's width and height.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence, Tuple

import numpy as np

Point = Tuple[float, float]


@dataclass(frozen=True)
class Quadrilateral:
    """Four-point polygon delineating a document edge within a frame."""
    points: Tuple[Point, Point, Point, Point]

    def __post_init__(self):
        if len(self.points) != 4:
            raise ValueError(f"Quadrilateral needs 4 points, got {len(self.points)}")
        object.__setattr__(
            self, 'points', tuple((float(x), float(y)) for x, y in self.points)
        )

    @classmethod
    def from_points(cls, points: Sequence[Sequence[float]]) -> 'Quadrilateral':
        return cls(tuple(tuple(p) for p in points))

    @classmethod
    def full_frame(cls, width: int, height: int) -> 'Quadrilateral':
        """Boundary covering the whole image, used when nothing was detected."""
        return cls(((0, 0), (width, 0), (width, height), (0, height)))

    @property
    def area(self) -> float:
        """Shoelace area of the polygon."""
        pts = np.array(self.points)
        x, y = pts[:, 0], pts[:, 1]
        return float(abs(np.dot(x, np.roll(y, -1)) - np.dot(y, np.roll(x, -1))) / 2.0)

    def to_list(self) -> List[List[float]]:
        return [[x, y] for x, y in self.points]


class ItemKind(Enum):
    ORIGINAL_IMAGE = "original_image"
    DETECTED_QUAD = "detected_quad"


@dataclass
class DetectionItem:
    """One entry of a detection payload."""
    kind: ItemKind
    image: Optional[np.ndarray] = None
    quad: Optional[Quadrilateral] = None
    cross_verified: bool = False


@dataclass
class DetectionResult:
    """
    Result of detect_boundaries on a frame or still image.

    A payload with one item or fewer carries no usable boundary and means
    "use full-frame bounds".
    """
    items: List[DetectionItem] = field(default_factory=list)
    clarity: Optional[float] = None

    @property
    def item_count(self) -> int:
        return len(self.items)

    @property
    def original_image(self) -> Optional[np.ndarray]:
        for item in self.items:
            if item.kind is ItemKind.ORIGINAL_IMAGE:
                return item.image
        return None

    @property
    def quad(self) -> Optional[Quadrilateral]:
        for item in self.items:
            if item.kind is ItemKind.DETECTED_QUAD:
                return item.quad
        return None

    @property
    def cross_verified(self) -> bool:
        for item in self.items:
            if item.kind is ItemKind.DETECTED_QUAD:
                return item.cross_verified
        return False

    @property
    def has_boundary(self) -> bool:
        return self.item_count > 1 and self.quad is not None


def image_size(image: np.ndarray) -> Tuple[int, int]:
    """Return (width, height) of an image array."""
    height, width = image.shape[:2]
    return int(width), int(height)


class VisionEngine(ABC):
    """
    Boundary detection and perspective correction collaborator.

    Both calls are awaited by the session; implementations should push heavy
    work off the event loop.
    """

    @abstractmethod
    async def detect_boundaries(self, image: np.ndarray) -> DetectionResult:
        """Analyse one frame or still image."""

    @abstractmethod
    async def normalize(self, image: np.ndarray, points: Sequence[Point]) -> Optional[np.ndarray]:
        """Perspective-correct the region bounded by points, or return None."""

    def reset(self):
        """Forget any cross-frame history (called when a capture session opens)."""

    def dispose(self):
        """Release engine resources."""
