"""
Session stages: capture, correction and review.

Every stage run opens one StageChannel and finishes when exactly one
ScanOutcome is emitted onto it. Stages that re-enter another stage (retake,
correct) keep their own channel open while the inner stage runs, so the
outer stage still completes exactly once.
"""
import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

import numpy as np

from error_handlers import NormalizationError, ScannerError, SessionError
from layer1_auto_capture.auto_capture import AutoCaptureDecisionEngine
from layer1_auto_capture.modes import CaptureMethod, CaptureModeController
from layer1_auto_capture.quality import ClarityWindow, FrameQualityTracker, monotonic_ms
from layer2_readjustment.engine import DetectionResult, Quadrilateral, VisionEngine, image_size
from .channel import StageChannel
from .config import ScannerConfig
from .state import ScanOutcome, SharedSessionState, Stage

logger = logging.getLogger(__name__)


async def invoke_callback(callback: Optional[Callable], *args):
    """Call a user callback that may be sync or async."""
    if callback is None:
        return None
    result = callback(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


async def process_still_image(engine: VisionEngine, image: np.ndarray, method: CaptureMethod) -> ScanOutcome:
    """
    Detect and normalize a still image outside the live feed.

    Falls back to full-image bounds when the engine finds no boundary.

    Raises:
        NormalizationError: The engine produced no corrected image
    """
    detection = await engine.detect_boundaries(image)
    original = detection.original_image if detection.original_image is not None else image

    if detection.has_boundary:
        boundary = detection.quad
    else:
        boundary = Quadrilateral.full_frame(*image_size(original))

    corrected = await engine.normalize(original, boundary.points)
    if corrected is None:
        raise NormalizationError()
    return ScanOutcome.success(
        original_image=original,
        corrected_image=corrected,
        boundary=boundary,
        capture_method=method,
    )


@dataclass
class SessionContext:
    """Collaborators and shared state handed to every stage."""
    config: ScannerConfig
    engine: VisionEngine
    camera: Any
    shared: SharedSessionState
    modes: CaptureModeController
    clock: Callable[[], float] = monotonic_ms
    stack: List['BaseStage'] = field(default_factory=list)
    on_capture_settled: Optional[Callable[[], None]] = None
    capture: Optional['CaptureStage'] = None
    correction: Optional['CorrectionStage'] = None
    review: Optional['ReviewStage'] = None

    @property
    def top(self) -> Optional['BaseStage']:
        return self.stack[-1] if self.stack else None

    def push(self, stage: 'BaseStage'):
        self.stack.append(stage)
        self._sync_session()

    def pop(self, stage: 'BaseStage'):
        if stage in self.stack:
            self.stack.remove(stage)
        self._sync_session()

    def _sync_session(self):
        session = self.shared.session
        top = self.top
        if top is None:
            session.pending = None
            return
        session.stage = top.stage
        session.pending = top.channel


class BaseStage:
    name = "Stage"
    stage = Stage.IDLE

    def __init__(self, ctx: SessionContext):
        self.ctx = ctx
        self.channel: Optional[StageChannel] = None

    @property
    def active(self) -> bool:
        return self.channel is not None and not self.channel.closed

    def _enter(self):
        self.channel = StageChannel(self.name)
        self.ctx.push(self)
        logger.info(f"[{self.name}] Stage started")

    async def _wait(self) -> ScanOutcome:
        try:
            outcome = await self.channel.wait()
        finally:
            self.ctx.pop(self)
        logger.info(f"[{self.name}] Stage finished: {outcome.status.value} ({outcome.message})")
        return outcome

    def emit(self, outcome: ScanOutcome) -> bool:
        if self.channel is None:
            return False
        return self.channel.emit(outcome)

    def cancel(self, message: str = "Cancelled") -> bool:
        return self.emit(ScanOutcome.cancelled(message))


class CaptureStage(BaseStage):
    """
    Live camera stage.

    While bounds detection is on, a feed task pulls frames from the camera,
    awaits the engine's analysis and hands each result to handle_detection(),
    which must stay synchronous and cheap.
    """
    name = "Capture"
    stage = Stage.CAPTURING

    def __init__(self, ctx: SessionContext):
        super().__init__(ctx)
        cfg = ctx.config
        self.tracker = FrameQualityTracker(
            window=ClarityWindow(history_size=cfg.clarity_history_size),
            reset_timeout_ms=cfg.clarity_reset_timeout_ms,
            min_stabilization_ms=cfg.min_stabilization_ms,
            min_non_improving_frames=cfg.min_non_improving_frames,
            clock=ctx.clock,
        )
        self.decision = AutoCaptureDecisionEngine(
            trigger=self.request_capture,
            modes=lambda: ctx.modes.state,
            verification=ctx.shared.verification,
            required_verified_frames=cfg.required_verified_frames,
            continuous=cfg.enable_continuous_scanning,
            cooldown_ms=cfg.continuous_scan_cooldown_ms,
            clock=ctx.clock,
        )
        self.capturing = False
        self._closing = False
        self._frame_id = 0
        self._latest: Optional[DetectionResult] = None
        self._feed_task: Optional[asyncio.Task] = None
        self._feed_generation = 0
        self._capture_task: Optional[asyncio.Task] = None

        ctx.modes.add_bounds_detection_listener(self._on_bounds_detection_changed)

    @property
    def continuous(self) -> bool:
        return self.ctx.config.enable_continuous_scanning

    async def run(self) -> ScanOutcome:
        ctx = self.ctx
        self._enter()
        self._closing = False
        self._latest = None

        try:
            self._open_camera()
        except ScannerError as e:
            logger.error(f"[Capture] Failed to open camera: {e.message}")
            self._release_camera()
            self.emit(ScanOutcome.failed(e.message))
            return await self._wait()

        self._refresh_settings()
        self.tracker.reset()
        ctx.shared.verification.reset()
        ctx.engine.reset()

        if ctx.modes.state.bounds_detection:
            self.start_feed()

        try:
            return await self._wait()
        finally:
            self.stop_feed()

    def _refresh_settings(self):
        cfg = self.ctx.config
        tracker = self.tracker
        if tracker.window.history_size != cfg.clarity_history_size:
            tracker.window = ClarityWindow(history_size=cfg.clarity_history_size)
        tracker.reset_timeout_ms = cfg.clarity_reset_timeout_ms
        tracker.min_stabilization_ms = cfg.min_stabilization_ms
        tracker.min_non_improving_frames = cfg.min_non_improving_frames

        self.decision.required_verified_frames = cfg.required_verified_frames
        self.decision.continuous = self.continuous
        self.decision.cooldown_ms = cfg.continuous_scan_cooldown_ms

    def _open_camera(self):
        camera = self.ctx.camera
        cfg = self.ctx.config

        if camera.is_open():
            if camera.is_paused():
                self._resume_camera()
            return

        camera.open()
        try:
            camera.set_resolution(cfg.camera_width, cfg.camera_height)
        except ScannerError as e:
            logger.warning(f"[Capture] Could not apply {cfg.camera_width}x{cfg.camera_height}: {e.message}")

    def _release_camera(self):
        self.stop_feed()
        self.ctx.camera.close()

    def _pause_camera(self):
        try:
            self.ctx.camera.pause()
        except ScannerError as e:
            logger.warning(f"[Capture] Camera pause failed: {e.message}")

    def _resume_camera(self):
        try:
            self.ctx.camera.resume()
        except ScannerError as e:
            logger.warning(f"[Capture] Camera resume failed: {e.message}")

    # Frame feed

    def start_feed(self):
        if self._feed_task is not None and not self._feed_task.done():
            return
        self._feed_generation += 1
        self._feed_task = asyncio.get_running_loop().create_task(self._feed(self._feed_generation))
        logger.debug("[Capture] Frame feed started")

    def stop_feed(self):
        # A running feed notices the generation change after its current frame
        if self._feed_task is not None:
            logger.debug("[Capture] Frame feed stopped")
        self._feed_generation += 1
        self._feed_task = None

    def _feed_current(self, generation: int) -> bool:
        return generation == self._feed_generation and self.active

    async def _feed(self, generation: int):
        ctx = self.ctx
        interval = max(0.0, ctx.config.frame_interval_ms) / 1000.0

        while self._feed_current(generation):
            if self.capturing or ctx.camera.is_paused():
                await asyncio.sleep(interval)
                continue

            try:
                frame = ctx.camera.fetch_current_frame()
                result = await ctx.engine.detect_boundaries(frame)
            except ScannerError as e:
                if self._feed_current(generation):
                    logger.error(f"[Capture] Frame analysis failed: {e.message}")
                    self.emit(ScanOutcome.failed(e.message))
                return
            except Exception as e:
                if self._feed_current(generation):
                    logger.exception("[Capture] Frame analysis failed")
                    self.emit(ScanOutcome.failed(f"Vision engine failed: {e}"))
                return

            # Stage ended or feed restarted while the engine was busy
            if not self._feed_current(generation):
                return

            self.handle_detection(result)
            await asyncio.sleep(interval)

    def handle_detection(self, result: DetectionResult):
        """Process one frame analysis. Never awaits."""
        self._frame_id += 1
        self._latest = result

        if not self.ctx.modes.state.bounds_detection:
            return

        if self.ctx.config.enable_frame_verification:
            self.tracker.observe(self._frame_id, result.clarity, result.original_image)

        self.decision.on_detection(result.item_count, result.cross_verified)

    def _on_bounds_detection_changed(self, enabled: bool):
        if not self.active:
            return
        if enabled:
            self.start_feed()
        else:
            self.stop_feed()
            self._latest = None

    # Capture

    def request_capture(self) -> Optional[asyncio.Task]:
        """Schedule a capture; manual and automatic triggers both land here."""
        if not self.active:
            logger.warning("[Capture] Capture requested outside the capture stage")
            return None
        if self.capturing:
            logger.debug("[Capture] Capture already in progress")
            return self._capture_task
        self._capture_task = asyncio.get_running_loop().create_task(self.capture())
        return self._capture_task

    def _choose_frame(self):
        """Pick (image, boundary) for the capture about to happen."""
        ctx = self.ctx
        latest = self._latest
        use_latest_frame = (
            not ctx.modes.state.bounds_detection
            or latest is None
            or latest.item_count <= 1
            or latest.quad is None
        )

        if use_latest_frame:
            self._latest = None
            image = ctx.camera.fetch_current_frame()
            return image, Quadrilateral.full_frame(*image_size(image))

        image = None
        if ctx.config.enable_frame_verification:
            image = self.tracker.get_clearest_image()
        if image is None:
            image = latest.original_image
        if image is None:
            image = ctx.camera.fetch_current_frame()
        return image, latest.quad

    async def capture(self):
        if self.capturing or not self.active:
            return
        self.capturing = True
        ctx = self.ctx

        try:
            image, boundary = self._choose_frame()
            method = ctx.modes.flow_type()
            logger.info(f"[Capture] Capturing ({method.value})")

            if self.continuous:
                self._pause_camera()

            corrected = await ctx.engine.normalize(image, boundary.points)

            if self.continuous:
                self._resume_camera()
            else:
                ctx.modes.set_smart_capture(False)
                self._release_camera()

            if not self.active:
                logger.info("[Capture] Stage finished during normalization, discarding capture")
                return

            outcome = ScanOutcome.success(
                original_image=image,
                corrected_image=corrected,
                boundary=boundary,
                capture_method=method,
            )
            ctx.shared.update_result(outcome)
            self.emit(outcome)
        except Exception:
            logger.exception("[Capture] Error capturing image")
            if self.continuous:
                if ctx.camera.is_paused():
                    self._resume_camera()
            else:
                self._release_camera()
            self.emit(ScanOutcome.failed("Error capturing image"))
        finally:
            self.capturing = False
            if ctx.on_capture_settled:
                ctx.on_capture_settled()

    async def on_upload(self, image: np.ndarray):
        """Use a supplied image instead of the camera."""
        if not self.active:
            logger.warning("[Capture] Upload outside the capture stage")
            return
        if self.capturing:
            logger.warning("[Capture] Upload ignored while a capture is in progress")
            return

        self.capturing = True
        ctx = self.ctx
        try:
            self.stop_feed()
            if self.continuous:
                self._pause_camera()
            else:
                ctx.camera.close()

            outcome = await process_still_image(ctx.engine, image, CaptureMethod.UPLOADED_IMAGE)

            if not self.active:
                logger.info("[Capture] Stage finished while processing upload, discarding it")
                return

            ctx.shared.update_result(outcome)
            self.emit(outcome)
        except Exception:
            logger.exception("[Capture] Error processing uploaded image")
            self.emit(ScanOutcome.failed("Error processing uploaded image"))
        finally:
            self.capturing = False
            if ctx.on_capture_settled:
                ctx.on_capture_settled()

    # User actions

    def on_close(self) -> bool:
        if self.capturing:
            logger.warning("[Capture] Close ignored while a capture is in progress")
            return False
        if not self.active:
            return False

        self._closing = True
        self._release_camera()
        return self.cancel("Cancelled")

    def on_done(self) -> bool:
        """Stop button of continuous scanning."""
        if not self.continuous:
            logger.warning("[Capture] Done is only available in continuous scanning")
            return False
        if self.capturing or self._closing or not self.active:
            return False

        self._closing = True
        return self.cancel("Continuous scanning stopped by user")


class CorrectionStage(BaseStage):
    """Boundary adjustment on the retained outcome."""
    name = "Correction"
    stage = Stage.CORRECTING

    def __init__(self, ctx: SessionContext):
        super().__init__(ctx)
        self.boundary: Optional[Quadrilateral] = None
        self.accepting = False

    async def run(self) -> ScanOutcome:
        result = self.ctx.shared.result
        if result is None or result.corrected_image is None:
            logger.error("[Correction] No image available for correction")
            return ScanOutcome.failed("No image available for correction")

        self._enter()
        self._load(result)
        return await self._wait()

    def _load(self, result: ScanOutcome):
        if result.boundary is not None:
            self.boundary = result.boundary
        else:
            self.set_full_image_boundary()

    def _original_image(self) -> np.ndarray:
        result = self.ctx.shared.result
        if result is None or result.original_image is None:
            raise SessionError(
                message="Captured image is missing. Please capture an image first!",
                error_code="NO_CAPTURED_IMAGE",
            )
        return result.original_image

    def set_boundary(self, boundary: Quadrilateral) -> Quadrilateral:
        self.boundary = boundary
        return boundary

    def set_full_image_boundary(self) -> Quadrilateral:
        self.boundary = Quadrilateral.full_frame(*image_size(self._original_image()))
        return self.boundary

    async def detect_boundary_automatically(self) -> Quadrilateral:
        detection = await self.ctx.engine.detect_boundaries(self._original_image())
        if detection.quad is not None:
            self.boundary = detection.quad
            return self.boundary
        return self.set_full_image_boundary()

    async def on_accept(self, boundary: Optional[Quadrilateral] = None):
        if not self.active:
            return
        if self.accepting:
            logger.warning("[Correction] Accept already in progress, ignoring")
            return
        if boundary is not None:
            self.boundary = boundary

        ctx = self.ctx
        self.accepting = True
        try:
            corrected = await ctx.engine.normalize(self._original_image(), self.boundary.points)
            if not self.active:
                return

            if corrected is None:
                logger.warning("[Correction] Normalization produced no image, keeping previous result")
                self.emit(ctx.shared.result)
                return

            updated = ctx.shared.result.with_changes(corrected_image=corrected, boundary=self.boundary)
            ctx.shared.update_result(updated)
            await invoke_callback(ctx.config.on_correction_finished, updated)
            self.emit(updated)
        except Exception as e:
            logger.exception("[Correction] Error confirming correction")
            self.emit(ScanOutcome.failed(getattr(e, 'message', None) or str(e)))
        finally:
            self.accepting = False

    async def on_retake(self):
        if not self.active:
            return
        try:
            result = await self.ctx.capture.run()
            if not result.is_success:
                self.emit(result)
                return
            self._load(self.ctx.shared.result)
        except Exception as e:
            logger.exception("[Correction] Error in retake handler")
            self.emit(ScanOutcome.failed(getattr(e, 'message', None) or str(e)))


class ReviewStage(BaseStage):
    """Final look at the outcome before the pass completes."""
    name = "Review"
    stage = Stage.REVIEWING

    def __init__(self, ctx: SessionContext):
        super().__init__(ctx)
        self.finishing = False

    async def run(self) -> ScanOutcome:
        self._enter()
        return await self._wait()

    async def on_done(self):
        if not self.active or self.finishing:
            return
        ctx = self.ctx
        self.finishing = True
        try:
            await invoke_callback(ctx.config.on_done, ctx.shared.result)
            self.emit(ctx.shared.result)
        except Exception as e:
            logger.exception("[Review] Error in done handler")
            self.emit(ScanOutcome.failed(getattr(e, 'message', None) or str(e)))
        finally:
            self.finishing = False

    async def on_correct(self):
        if not self.active:
            return
        ctx = self.ctx
        if not ctx.config.show_correction_stage:
            logger.warning("[Review] Correction stage is not configured")
            return
        try:
            result = await ctx.correction.run()
            if result.corrected_image is not None:
                ctx.shared.update_result(ctx.shared.result.with_changes(corrected_image=result.corrected_image))
        except Exception as e:
            logger.exception("[Review] Error in correction handler")
            self.emit(ScanOutcome.failed(getattr(e, 'message', None) or str(e)))

    async def on_retake(self):
        if not self.active:
            return
        ctx = self.ctx
        try:
            result = await ctx.capture.run()
            if not result.is_success:
                self.emit(result)
                return

            if ctx.config.show_correction_stage:
                corrected = await ctx.correction.run()
                if not corrected.is_success:
                    self.emit(corrected)
        except Exception as e:
            logger.exception("[Review] Error in retake handler")
            self.emit(ScanOutcome.failed(getattr(e, 'message', None) or str(e)))
