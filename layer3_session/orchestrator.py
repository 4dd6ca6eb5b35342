"""
DocumentScanner - top-level scan session.

Drives capture -> (correction) -> (review) for one pass, or repeats passes in
continuous scanning until stopped, and maps the named surface actions onto
the active stage.

Usage:
    scanner = DocumentScanner(ScannerConfig.from_env())
    outcome = await scanner.start()
"""
import asyncio
import logging
from typing import Any, Optional, Set

import numpy as np

from error_handlers import AlreadyInProgressError, ConfigurationError
from layer1_auto_capture.camera import CameraHandler
from layer1_auto_capture.modes import CaptureMethod, CaptureModeController, CaptureModeState
from layer1_auto_capture.quality import monotonic_ms
from layer2_readjustment.engine import Quadrilateral, VisionEngine
from layer2_readjustment.processor import OpenCvVisionEngine
from .config import ScannerConfig
from .stages import (
    CaptureStage,
    CorrectionStage,
    ReviewStage,
    SessionContext,
    invoke_callback,
    process_still_image,
)
from .state import OutcomeStatus, ScanOutcome, SessionState, SharedSessionState, Stage

logger = logging.getLogger(__name__)


class DocumentScanner:
    """
    One scanner instance owns one camera and one vision engine and runs at
    most one session at a time.
    """

    def __init__(
        self,
        config: Optional[ScannerConfig] = None,
        engine: Optional[VisionEngine] = None,
        camera: Any = None,
        clock=monotonic_ms,
    ):
        """
        Args:
            config: Scanner settings (defaults if not provided)
            engine: Vision engine (OpenCvVisionEngine if not provided)
            camera: Camera device (CameraHandler on config.camera_index if not provided)
            clock: Millisecond clock shared by the tracker and decision engine
        """
        self.config = config or ScannerConfig()

        if engine is None:
            engine = OpenCvVisionEngine()
        if camera is None:
            camera = CameraHandler(
                camera_index=self.config.camera_index,
                config={'width': self.config.camera_width, 'height': self.config.camera_height},
            )

        self.engine = engine
        self.camera = camera
        self.shared = SharedSessionState()
        self.mode_controller = CaptureModeController(
            show_correction_stage=self.config.show_correction_stage,
            on_modes_changed=self._on_modes_changed,
        )

        self._ctx = SessionContext(
            config=self.config,
            engine=engine,
            camera=camera,
            shared=self.shared,
            modes=self.mode_controller,
            clock=clock,
            on_capture_settled=self._on_capture_settled,
        )
        self._ctx.capture = CaptureStage(self._ctx)
        self._ctx.correction = CorrectionStage(self._ctx)
        self._ctx.review = ReviewStage(self._ctx)

        self._task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._viewport_handle: Optional[asyncio.TimerHandle] = None
        self._viewport_deferred = False

        logger.info("[Session] DocumentScanner initialized")

    # Read-only views

    @property
    def result(self) -> Optional[ScanOutcome]:
        """Most recent outcome (survives the end of a session)."""
        return self.shared.result

    @property
    def state(self) -> SessionState:
        return self.shared.session

    @property
    def modes(self) -> CaptureModeState:
        return self.mode_controller.state

    @property
    def in_progress(self) -> bool:
        return self.shared.session.in_flight

    @property
    def capture_stage(self) -> CaptureStage:
        return self._ctx.capture

    @property
    def correction_stage(self) -> CorrectionStage:
        return self._ctx.correction

    @property
    def review_stage(self) -> ReviewStage:
        return self._ctx.review

    # Session lifecycle

    def begin(self, static_image: Optional[np.ndarray] = None) -> asyncio.Task:
        """
        Validate and start a session, returning the task that resolves to its
        ScanOutcome. Must be called from the event loop.

        Raises:
            AlreadyInProgressError: A session is already running
            ConfigurationError: The configuration cannot produce an outcome
        """
        loop = asyncio.get_running_loop()
        session = self.shared.session
        if session.in_flight:
            raise AlreadyInProgressError()

        cfg = self.config
        cfg.validate()
        if not cfg.enable_capture_stage:
            if static_image is None and self.shared.result is None:
                raise ConfigurationError("capture stage is required when no previous result exists")
            if cfg.enable_continuous_scanning:
                raise ConfigurationError("continuous scanning requires the capture stage")

        session.in_flight = True
        session.stop_requested = False
        session.disposed = False
        session.continuous_mode_enabled = cfg.enable_continuous_scanning
        session.completed_count = 0
        session.stage = Stage.IDLE

        self.mode_controller.show_correction_stage = cfg.show_correction_stage
        self.mode_controller.apply_initial(cfg.initial_modes())
        self.shared.verification.reset()
        self.shared.verification.last_capture_timestamp = None

        logger.info(
            f"[Session] Starting {'continuous' if cfg.enable_continuous_scanning else 'single'} scan "
            f"(modes: {self.modes.to_dict()})"
        )
        self._task = loop.create_task(self._run(static_image))
        return self._task

    async def start(self, static_image: Optional[np.ndarray] = None) -> ScanOutcome:
        return await self.begin(static_image)

    def stop(self):
        """End continuous scanning at the top of the next pass."""
        self.shared.session.stop_requested = True
        logger.info("[Session] Stop requested")

    def dispose(self):
        """Cancel any pending stage and release camera and engine."""
        self.shared.session.disposed = True
        for stage in reversed(list(self._ctx.stack)):
            stage.cancel("Cancelled")

        self._ctx.capture.stop_feed()
        self.camera.close()
        self.engine.dispose()
        self.shared.result = None
        self._cancel_viewport_timer()
        logger.info("[Session] Disposed")

    async def _run(self, static_image: Optional[np.ndarray]) -> ScanOutcome:
        session = self.shared.session
        try:
            if self.config.enable_continuous_scanning:
                return await self._run_continuous(static_image)

            outcome = await self._perform_single_scan(static_image)
            if outcome.is_success:
                await invoke_callback(self.config.on_cycle_completed, outcome)
            return self._finish(outcome)
        except Exception as e:
            logger.exception("[Session] Document capture flow failed")
            return self._finish(ScanOutcome.failed(f"Document capture flow failed. {e}"))
        finally:
            session.in_flight = False
            self._ctx.capture.stop_feed()
            self.camera.close()
            self._cancel_viewport_timer()

    async def _run_continuous(self, static_image: Optional[np.ndarray]) -> ScanOutcome:
        session = self.shared.session
        image = static_image

        while not session.stop_requested:
            if session.disposed:
                return self._finish(ScanOutcome.cancelled())
            outcome = await self._perform_single_scan(image)
            image = None

            if outcome.status is OutcomeStatus.CANCELLED:
                break
            if not outcome.is_success:
                return self._finish(outcome)

            session.completed_count += 1
            logger.info(f"[Session] Scan {session.completed_count} completed")
            await invoke_callback(self.config.on_cycle_completed, outcome)

        return self._finish(ScanOutcome.cancelled("Continuous scanning stopped"))

    def _finish(self, outcome: ScanOutcome) -> ScanOutcome:
        self.shared.session.stage = Stage.terminal_for(outcome)
        logger.info(f"[Session] Finished: {outcome.status.value} ({outcome.message})")
        return outcome

    async def _perform_single_scan(self, static_image: Optional[np.ndarray]) -> ScanOutcome:
        cfg = self.config
        ctx = self._ctx
        self.shared.session.stage = Stage.IDLE

        if static_image is not None:
            try:
                outcome = await process_still_image(self.engine, static_image, CaptureMethod.STATIC_FILE)
            except Exception as e:
                logger.exception("[Session] Failed to process static image")
                return ScanOutcome.failed(f"Failed to process image: {getattr(e, 'message', None) or e}")
            if self.shared.session.disposed:
                return ScanOutcome.cancelled()
            self.shared.update_result(outcome)

        if static_image is not None or not cfg.enable_capture_stage:
            if self.shared.result is None:
                raise ConfigurationError("capture stage is required when no previous result exists")
            return await self._route_existing_result()

        outcome = await self._run_stage(ctx.capture)
        if not outcome.is_success:
            return outcome

        correction, review = cfg.show_correction_stage, cfg.show_result_stage
        if correction and review:
            if outcome.capture_method is not None and outcome.capture_method.needs_correction:
                corrected = await self._run_stage(ctx.correction)
                if not corrected.is_success:
                    return corrected
            return await self._run_stage(ctx.review)
        if correction:
            return await self._run_stage(ctx.correction)
        if review:
            return await self._run_stage(ctx.review)
        return self.shared.result

    async def _run_stage(self, stage) -> ScanOutcome:
        if self.shared.session.disposed:
            logger.info(f"[Session] Disposed, not entering {stage.stage.value}")
            return ScanOutcome.cancelled()
        return await stage.run()

    async def _route_existing_result(self) -> ScanOutcome:
        correction, review = self.config.show_correction_stage, self.config.show_result_stage
        ctx = self._ctx

        if correction:
            corrected = await self._run_stage(ctx.correction)
            if not review or not corrected.is_success:
                return corrected
        if review:
            return await self._run_stage(ctx.review)
        return self.shared.result

    def _on_modes_changed(self, state: CaptureModeState):
        self.shared.modes = state
        self.shared.verification.reset()

    # Surface actions

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _stage_handler(self, action: str, *stage_types):
        """Bound handler of the innermost stage, if it is one of stage_types."""
        top = self._ctx.top
        if top is None or (stage_types and not isinstance(top, stage_types)):
            logger.warning(
                f"[Session] '{action}' ignored in stage {self.shared.session.stage.value}"
            )
            return None
        return getattr(top, action)

    def on_manual_capture(self) -> Optional[asyncio.Task]:
        handler = self._stage_handler('request_capture', CaptureStage)
        return handler() if handler else None

    def on_toggle_bounds_detection(self, enabled: Optional[bool] = None) -> CaptureModeState:
        return self.mode_controller.set_bounds_detection(enabled)

    def on_toggle_smart_capture(self, enabled: Optional[bool] = None) -> CaptureModeState:
        return self.mode_controller.set_smart_capture(enabled)

    def on_toggle_auto_crop(self, enabled: Optional[bool] = None) -> CaptureModeState:
        return self.mode_controller.set_auto_crop(enabled)

    def on_close(self) -> bool:
        handler = self._stage_handler('on_close', CaptureStage)
        return handler() if handler else False

    def on_retake(self) -> Optional[asyncio.Task]:
        handler = self._stage_handler('on_retake', CorrectionStage, ReviewStage)
        return self._spawn(handler()) if handler else None

    def on_accept(self, boundary: Optional[Quadrilateral] = None) -> Optional[asyncio.Task]:
        handler = self._stage_handler('on_accept', CorrectionStage)
        return self._spawn(handler(boundary)) if handler else None

    def on_done(self):
        top = self._ctx.top
        if isinstance(top, CaptureStage):
            return top.on_done()
        handler = self._stage_handler('on_done', ReviewStage)
        return self._spawn(handler()) if handler else None

    def on_correct(self) -> Optional[asyncio.Task]:
        handler = self._stage_handler('on_correct', ReviewStage)
        return self._spawn(handler()) if handler else None

    def on_upload(self, image: np.ndarray) -> Optional[asyncio.Task]:
        handler = self._stage_handler('on_upload', CaptureStage)
        return self._spawn(handler(image)) if handler else None

    def set_boundary(self, boundary: Quadrilateral) -> Optional[Quadrilateral]:
        handler = self._stage_handler('set_boundary', CorrectionStage)
        return handler(boundary) if handler else None

    def set_full_image_boundary(self) -> Optional[Quadrilateral]:
        handler = self._stage_handler('set_full_image_boundary', CorrectionStage)
        return handler() if handler else None

    def detect_boundary_automatically(self) -> Optional[asyncio.Task]:
        handler = self._stage_handler('detect_boundary_automatically', CorrectionStage)
        return self._spawn(handler()) if handler else None

    # Device controls

    def select_device(self, camera_index: int):
        self.camera.select_device(camera_index)
        self.config.camera_index = camera_index

    def set_resolution(self, width: int, height: int):
        self.camera.set_resolution(width, height)
        self.config.camera_width = width
        self.config.camera_height = height

    # Viewport

    def on_viewport_changed(self):
        """Debounced; the forwarded call waits for any capture in flight."""
        self._cancel_viewport_timer()
        delay = max(0.0, self.config.viewport_debounce_ms) / 1000.0
        self._viewport_handle = asyncio.get_running_loop().call_later(delay, self._flush_viewport)

    def _flush_viewport(self):
        self._viewport_handle = None
        if self._ctx.capture.capturing:
            self._viewport_deferred = True
            return
        self._viewport_deferred = False
        self._spawn(invoke_callback(self.config.on_viewport_changed))

    def _on_capture_settled(self):
        if self._viewport_deferred:
            self._flush_viewport()

    def _cancel_viewport_timer(self):
        if self._viewport_handle is not None:
            self._viewport_handle.cancel()
            self._viewport_handle = None
