"""
Layer 2 - Image Readjustment
Boundary detection and perspective correction behind the VisionEngine contract.
"""
from .engine import (
    DetectionItem,
    DetectionResult,
    ItemKind,
    Point,
    Quadrilateral,
    VisionEngine,
    image_size,
)
from .processor import OpenCvVisionEngine

__all__ = [
    'DetectionItem',
    'DetectionResult',
    'ItemKind',
    'Point',
    'Quadrilateral',
    'VisionEngine',
    'image_size',
    'OpenCvVisionEngine'
]
