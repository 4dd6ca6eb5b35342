"""
Pytest configuration and fixtures for the document scanner tests.
"""
import asyncio
import os
import sys

import numpy as np
import pytest

# Add the project root to the path
sys.path.insert(0, os.path.dirname(__file__))

from error_handlers import CameraNotInitializedError  # noqa: E402
from layer2_readjustment.engine import (  # noqa: E402
    DetectionItem,
    DetectionResult,
    ItemKind,
    Quadrilateral,
    VisionEngine,
)
from layer3_session import DocumentScanner, ScannerConfig  # noqa: E402

FRAME_WIDTH = 640
FRAME_HEIGHT = 480
DOC_QUAD = Quadrilateral(((100, 80), (540, 80), (540, 400), (100, 400)))


def make_frame(width=FRAME_WIDTH, height=FRAME_HEIGHT, value=128):
    return np.full((height, width, 3), value, dtype=np.uint8)


def make_detection(image=None, quad=None, verified=False, clarity=None):
    """Detection payload: original image, plus a boundary item when quad is given."""
    if image is None:
        image = make_frame()
    items = [DetectionItem(kind=ItemKind.ORIGINAL_IMAGE, image=image)]
    if quad is not None:
        items.append(DetectionItem(kind=ItemKind.DETECTED_QUAD, quad=quad, cross_verified=verified))
    return DetectionResult(items=items, clarity=clarity)


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, start=10_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


class FakeVisionEngine(VisionEngine):
    """
    Scripted engine: detect_boundaries() pops queued detections and then
    reports "no boundary"; normalize() returns a fixed crop.
    """

    def __init__(self):
        self.detections = []
        self.detect_calls = 0
        self.normalize_calls = []
        self.normalize_returns_none = False
        self.detect_error = None
        self.normalize_error = None
        self.normalize_gate = None
        self.reset_calls = 0
        self.disposed = False

    def queue(self, *detections):
        self.detections.extend(detections)

    async def detect_boundaries(self, image):
        self.detect_calls += 1
        if self.detect_error is not None:
            raise self.detect_error
        if self.detections:
            return self.detections.pop(0)
        return make_detection(image=image)

    async def normalize(self, image, points):
        self.normalize_calls.append((image, [tuple(p) for p in points]))
        if self.normalize_gate is not None:
            await self.normalize_gate.wait()
        if self.normalize_error is not None:
            raise self.normalize_error
        if self.normalize_returns_none:
            return None
        return np.zeros((50, 40, 3), dtype=np.uint8)

    def reset(self):
        self.reset_calls += 1

    def dispose(self):
        self.disposed = True


class FakeCamera:
    """In-memory camera honouring the device contract."""

    def __init__(self, frame=None):
        self.frame = frame if frame is not None else make_frame()
        self.open_error = None
        self.opened = False
        self.paused = False
        self.open_calls = 0
        self.close_calls = 0
        self.camera_index = 0
        self.resolution = None

    def open(self):
        self.open_calls += 1
        if self.open_error is not None:
            raise self.open_error
        self.opened = True
        self.paused = False

    def close(self):
        self.close_calls += 1
        self.opened = False
        self.paused = False

    def pause(self):
        self.paused = True

    def resume(self):
        self.paused = False

    def is_open(self):
        return self.opened

    def is_paused(self):
        return self.paused

    def fetch_current_frame(self):
        if not self.opened:
            raise CameraNotInitializedError()
        return self.frame

    def select_device(self, camera_index):
        self.camera_index = camera_index

    def set_resolution(self, width, height):
        self.resolution = (width, height)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine():
    return FakeVisionEngine()


@pytest.fixture
def camera():
    return FakeCamera()


@pytest.fixture
def make_scanner(engine, camera, clock):
    """Factory for a DocumentScanner wired to the fakes."""
    def _make(**overrides):
        overrides.setdefault('frame_interval_ms', 1)
        overrides.setdefault('viewport_debounce_ms', 10)
        return DocumentScanner(ScannerConfig(**overrides), engine=engine, camera=camera, clock=clock)
    return _make


@pytest.fixture
def run():
    """Run a coroutine on a fresh event loop with a safety timeout."""
    def _run(coro, timeout=5.0):
        return asyncio.run(asyncio.wait_for(coro, timeout))
    return _run


@pytest.fixture
def until():
    """Await until predicate() holds."""
    async def _until(predicate, timeout=2.0):
        async def _poll():
            while not predicate():
                await asyncio.sleep(0.001)
        await asyncio.wait_for(_poll(), timeout)
    return _until


@pytest.fixture
def app(make_scanner):
    """Flask test application backed by a scanner on fakes."""
    import app as app_module

    scanner = make_scanner(show_correction_stage=False, show_result_stage=False)
    session_runner = app_module.SessionRunner(scanner)
    app_module.runner = session_runner
    app_module.app.config['TESTING'] = True

    yield app_module.app

    session_runner.call(scanner.dispose)
    session_runner.shutdown()
    app_module.runner = None


@pytest.fixture
def client(app):
    """Create Flask test client."""
    return app.test_client()
