"""
Document Scanner Web Service
Thin HTTP surface over the layered scan session.

Provides REST API for:
- Starting, stopping and disposing a scan session (camera or uploaded still image)
- Named surface actions (capture, mode toggles, close, retake, accept, done, ...)
- Reading back the latest outcome and its images
"""
from flask import Flask, Response, jsonify, request
from flask_cors import CORS
import asyncio
import cv2
import logging
import numpy as np
import os
import threading

# Import layers
from layer2_readjustment import Quadrilateral
from layer3_session import DocumentScanner, ScannerConfig

# Import error handling
from error_handlers import (
    AlreadyInProgressError,
    ConfigurationError,
    ScannerError,
    handle_error
)

# Setup logging
logging.basicConfig(
    level=getattr(logging, os.environ.get('LOG_LEVEL', 'INFO').upper(), logging.INFO),
    format='%(asctime)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)

app = Flask(__name__)

# Enable CORS for cross-origin requests from the scanner front end
CORS(app, origins=["*"])

CALL_TIMEOUT_S = float(os.environ.get('SESSION_CALL_TIMEOUT', 10))


class SessionRunner:
    """
    Runs one DocumentScanner on a dedicated asyncio loop thread.
    Flask handlers hand work to that loop and wait for the synchronous part
    of each call; long-running stages keep going in the background.
    """

    def __init__(self, scanner: DocumentScanner):
        self.scanner = scanner
        self.last_outcome = None
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop, name="scan-session-loop", daemon=True)
        self._thread.start()
        logger.info("SessionRunner started")

    def _run_loop(self):
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    def call(self, fn, *args, timeout=CALL_TIMEOUT_S):
        """Run fn(*args) on the session loop and return its result."""
        async def _invoke():
            return fn(*args)

        future = asyncio.run_coroutine_threadsafe(_invoke(), self.loop)
        return future.result(timeout)

    def start_session(self, static_image=None):
        def _begin():
            self.last_outcome = None
            task = self.scanner.begin(static_image)
            task.add_done_callback(self._on_session_done)
            return task

        self.call(_begin)

    def _on_session_done(self, task):
        if task.cancelled() or task.exception() is not None:
            return
        self.last_outcome = task.result()
        logger.info(f"Session finished: {self.last_outcome.status.value}")

    def snapshot(self):
        def _snapshot():
            scanner = self.scanner
            return {
                "session": scanner.state.to_dict(),
                "modes": scanner.modes.to_dict(),
                "result": scanner.result.to_dict() if scanner.result else None,
                "outcome": self.last_outcome.to_dict() if self.last_outcome else None,
            }

        return self.call(_snapshot)

    def shutdown(self):
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout=CALL_TIMEOUT_S)


runner = None


def get_runner() -> SessionRunner:
    global runner
    if runner is None:
        runner = SessionRunner(DocumentScanner(ScannerConfig.from_env()))
    return runner


def _error_response(error):
    """Map scanner errors onto HTTP status codes."""
    body = handle_error(error)
    if isinstance(error, AlreadyInProgressError):
        return jsonify(body), 409
    if isinstance(error, ConfigurationError):
        return jsonify(body), 400
    if isinstance(error, ScannerError):
        return jsonify(body), 422
    return jsonify(body), 500


def _read_image_field(field='image'):
    """
    Decode an uploaded image.

    Returns:
        tuple: (image or None, error response or None)
    """
    image_file = request.files.get(field)
    if image_file is None or image_file.filename == '':
        return None, (jsonify({
            "success": False,
            "error": "No image file provided",
            "error_code": "NO_IMAGE"
        }), 400)

    data = np.frombuffer(image_file.read(), dtype=np.uint8)
    image = cv2.imdecode(data, cv2.IMREAD_COLOR) if data.size else None
    if image is None:
        return None, (jsonify({
            "success": False,
            "error": "Could not read image file",
            "error_code": "INVALID_IMAGE"
        }), 400)
    return image, None


def _json_body():
    return request.get_json(silent=True) or {}


def _boundary_from_body(body):
    points = body.get('boundary')
    if points is None:
        return None
    return Quadrilateral.from_points(points)


# Surface actions: name -> callable(scanner, body); upload is handled separately
ACTIONS = {
    'capture': lambda s, body: s.on_manual_capture(),
    'toggle_bounds_detection': lambda s, body: s.on_toggle_bounds_detection(body.get('enabled')),
    'toggle_smart_capture': lambda s, body: s.on_toggle_smart_capture(body.get('enabled')),
    'toggle_auto_crop': lambda s, body: s.on_toggle_auto_crop(body.get('enabled')),
    'close': lambda s, body: s.on_close(),
    'retake': lambda s, body: s.on_retake(),
    'accept': lambda s, body: s.on_accept(_boundary_from_body(body)),
    'done': lambda s, body: s.on_done(),
    'correct': lambda s, body: s.on_correct(),
    'viewport_changed': lambda s, body: s.on_viewport_changed(),
    'set_boundary': lambda s, body: s.set_boundary(_boundary_from_body(body)),
    'full_image_boundary': lambda s, body: s.set_full_image_boundary(),
    'detect_boundary': lambda s, body: s.detect_boundary_automatically(),
    'select_device': lambda s, body: s.select_device(int(body['camera_index'])),
    'set_resolution': lambda s, body: s.set_resolution(int(body['width']), int(body['height'])),
}


# ============================================================================
# API Endpoints
# ============================================================================

@app.route("/health", methods=["GET"])
def health_check():
    """Health check endpoint for service discovery and load balancers"""
    return jsonify({
        "status": "healthy",
        "service": "document-scanner",
        "version": "1.0.0"
    })


@app.route("/api/status", methods=["GET"])
def api_status():
    """Session state, capture modes and the latest outcome"""
    try:
        return jsonify({"success": True, **get_runner().snapshot()})
    except Exception as e:
        return _error_response(e)


@app.route("/api/session/start", methods=["POST"])
def start_session():
    """
    Start a scan session.

    Request:
        - optional multipart/form-data 'image' field: use this still image
          instead of the camera for the first pass
    """
    logger.info("Start session request received")

    static_image = None
    if 'image' in request.files:
        static_image, error = _read_image_field()
        if error:
            return error

    try:
        session_runner = get_runner()
        session_runner.start_session(static_image)
        return jsonify({"success": True, **session_runner.snapshot()}), 202
    except Exception as e:
        return _error_response(e)


@app.route("/api/session/stop", methods=["POST"])
def stop_session():
    """Stop continuous scanning after the current pass"""
    session_runner = get_runner()
    session_runner.call(session_runner.scanner.stop)
    return jsonify({"success": True})


@app.route("/api/session/dispose", methods=["POST"])
def dispose_session():
    """Cancel the session and release camera and engine"""
    session_runner = get_runner()
    try:
        session_runner.call(session_runner.scanner.dispose)
        return jsonify({"success": True})
    except Exception as e:
        return _error_response(e)


@app.route("/api/session/actions/<action>", methods=["POST"])
def session_action(action):
    """Forward a named surface action to the active stage"""
    session_runner = get_runner()
    scanner = session_runner.scanner

    if action == 'upload':
        image, error = _read_image_field()
        if error:
            return error
        handler = lambda: scanner.on_upload(image)
    elif action in ACTIONS:
        body = _json_body()
        handler = lambda: ACTIONS[action](scanner, body)
    else:
        return jsonify({
            "success": False,
            "error": f"Unknown action: {action}",
            "error_code": "UNKNOWN_ACTION"
        }), 404

    logger.info(f"Action '{action}' received")
    try:
        session_runner.call(handler)
        return jsonify({"success": True, "action": action, **session_runner.snapshot()})
    except (KeyError, TypeError, ValueError) as e:
        return jsonify({
            "success": False,
            "error": f"Invalid request for '{action}': {e}",
            "error_code": "INVALID_REQUEST"
        }), 400
    except Exception as e:
        return _error_response(e)


@app.route("/api/session/result", methods=["GET"])
def session_result():
    """Latest retained outcome (and the final outcome of the last session)"""
    snapshot = get_runner().snapshot()
    if snapshot["result"] is None and snapshot["outcome"] is None:
        return jsonify({
            "success": False,
            "error": "No result available",
            "error_code": "NO_RESULT"
        }), 404
    return jsonify({"success": True, "result": snapshot["result"], "outcome": snapshot["outcome"]})


@app.route("/api/session/result/image", methods=["GET"])
def session_result_image():
    """
    JPEG of the latest outcome.

    Query:
        kind: 'corrected' (default) or 'original'
    """
    kind = request.args.get('kind', 'corrected')
    if kind not in ('corrected', 'original'):
        return jsonify({
            "success": False,
            "error": f"Unknown image kind: {kind}",
            "error_code": "INVALID_REQUEST"
        }), 400

    session_runner = get_runner()
    result = session_runner.call(lambda: session_runner.scanner.result)
    image = None
    if result is not None:
        image = result.corrected_image if kind == 'corrected' else result.original_image

    if image is None:
        return jsonify({
            "success": False,
            "error": "No image available",
            "error_code": "NO_IMAGE"
        }), 404

    ok, buffer = cv2.imencode('.jpg', image)
    if not ok:
        return jsonify({
            "success": False,
            "error": "Could not encode image",
            "error_code": "ENCODE_FAILED"
        }), 500
    return Response(buffer.tobytes(), mimetype='image/jpeg')


# ============================================================================
# Main Entry Point
# ============================================================================

if __name__ == '__main__':
    print("\n" + "=" * 60)
    print("DOCUMENT SCANNER SERVICE")
    print("=" * 60)
    print("\n📁 Project Structure:")
    print("  layer1_auto_capture/  - Camera, capture modes, clarity tracking, auto-capture")
    print("  layer2_readjustment/  - Vision engine: boundary detection + perspective correction")
    print("  layer3_session/       - Scan session: stages and orchestration")
    print("\n📡 API Endpoints:")
    print("  GET  /health                       - Health check")
    print("  GET  /api/status                   - Session status")
    print("  POST /api/session/start            - Start a scan session")
    print("  POST /api/session/stop             - Stop continuous scanning")
    print("  POST /api/session/dispose          - Release camera and engine")
    print("  POST /api/session/actions/<action> - Surface actions")
    print("  GET  /api/session/result           - Latest outcome")
    print("  GET  /api/session/result/image     - Latest outcome image (JPEG)")
    print("\n" + "=" * 60)
    print("Server starting... Press Ctrl+C to stop")
    print("=" * 60 + "\n")

    logger.info("Flask server starting")
    app.run(host='0.0.0.0', port=int(os.environ.get('PORT', 5000)), threaded=True)
