"""
Tests for the OpenCV vision engine on synthetic images.
"""
import numpy as np
import pytest

from error_handlers import EngineError
from layer2_readjustment import ItemKind, OpenCvVisionEngine, Quadrilateral

RECT = ((200, 120), (440, 120), (440, 360), (200, 360))


def _document_image():
    image = np.zeros((480, 640, 3), dtype=np.uint8)
    image[120:360, 200:440] = 255
    return image


@pytest.fixture
def vision():
    return OpenCvVisionEngine()


class TestDetectBoundaries:
    """Quadrilateral detection and cross-verification."""

    def test_detects_document_corners(self, vision, run):
        result = run(vision.detect_boundaries(_document_image()))
        assert result.item_count == 2
        assert result.items[0].kind is ItemKind.ORIGINAL_IMAGE
        assert result.quad is not None
        for (x, y), (ex, ey) in zip(result.quad.points, RECT):
            assert abs(x - ex) <= 10
            assert abs(y - ey) <= 10

    def test_cross_verified_on_repeated_frame(self, vision, run):
        image = _document_image()
        first = run(vision.detect_boundaries(image))
        second = run(vision.detect_boundaries(image))
        assert first.cross_verified is False
        assert second.cross_verified is True

    def test_reset_forgets_previous_corners(self, vision, run):
        image = _document_image()
        run(vision.detect_boundaries(image))
        vision.reset()
        assert run(vision.detect_boundaries(image)).cross_verified is False

    def test_blank_frame_has_no_boundary(self, vision, run):
        result = run(vision.detect_boundaries(np.zeros((480, 640, 3), dtype=np.uint8)))
        assert result.item_count == 1
        assert not result.has_boundary
        assert result.original_image is not None

    def test_clarity_is_reported(self, vision, run):
        result = run(vision.detect_boundaries(_document_image()))
        assert result.clarity > 0

    def test_invalid_image_raises(self, vision, run):
        with pytest.raises(EngineError):
            run(vision.detect_boundaries(np.zeros((0, 0, 3), dtype=np.uint8)))


class TestNormalize:
    """Perspective correction."""

    def test_crops_document(self, vision, run):
        corrected = run(vision.normalize(_document_image(), RECT))
        height, width = corrected.shape[:2]
        assert abs(width - 240) <= 2
        assert abs(height - 240) <= 2
        assert corrected.mean() > 200

    def test_point_order_does_not_matter(self, vision, run):
        shuffled = (RECT[2], RECT[0], RECT[3], RECT[1])
        corrected = run(vision.normalize(_document_image(), shuffled))
        assert corrected.mean() > 200

    def test_full_frame_boundary(self, vision, run):
        full = Quadrilateral.full_frame(640, 480)
        corrected = run(vision.normalize(_document_image(), full.points))
        assert corrected.shape[:2] == (480, 640)

    def test_degenerate_boundary_returns_none(self, vision, run):
        assert run(vision.normalize(_document_image(), [(10, 10)] * 4)) is None

    def test_wrong_point_count_returns_none(self, vision, run):
        assert run(vision.normalize(_document_image(), [(0, 0), (10, 0), (10, 10)])) is None

    def test_invalid_image_raises(self, vision, run):
        with pytest.raises(EngineError):
            run(vision.normalize(None, RECT))


class TestQuadrilateral:
    """Boundary value type."""

    def test_area(self):
        assert Quadrilateral(RECT).area == pytest.approx(240 * 240)

    def test_requires_four_points(self):
        with pytest.raises(ValueError):
            Quadrilateral(((0, 0), (1, 0), (1, 1)))

    def test_to_list(self):
        assert Quadrilateral.full_frame(4, 3).to_list() == [[0, 0], [4, 0], [4, 3], [0, 3]]
