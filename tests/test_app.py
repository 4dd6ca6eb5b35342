"""
Tests for the Flask surface over the scan session.
"""
import io
import time

import cv2
import numpy as np


def _status(client):
    response = client.get('/api/status')
    assert response.status_code == 200
    return response.get_json()


def _wait_for(client, predicate, timeout=3.0):
    """Poll /api/status until predicate(status) holds."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        status = _status(client)
        if predicate(status):
            return status
        time.sleep(0.01)
    raise AssertionError(f"condition not reached, last status: {status}")


def _capturing(status):
    return status['session']['stage'] == 'capturing' and status['outcome'] is None


def _finished(status):
    return status['outcome'] is not None


def _jpeg_upload(width=320, height=240):
    image = np.full((height, width, 3), 200, dtype=np.uint8)
    ok, buffer = cv2.imencode('.jpg', image)
    assert ok
    return {'image': (io.BytesIO(buffer.tobytes()), 'document.jpg')}


class TestHealth:
    """Service discovery endpoints."""

    def test_health(self, client):
        response = client.get('/health')
        assert response.status_code == 200
        assert response.get_json()['status'] == 'healthy'

    def test_status_before_any_session(self, client):
        status = _status(client)
        assert status['success'] is True
        assert status['session']['in_flight'] is False
        assert status['result'] is None
        assert status['modes']['bounds_detection'] is True


class TestSessionLifecycle:
    """Start, act and read back the outcome."""

    def test_result_missing_before_first_session(self, client):
        response = client.get('/api/session/result')
        assert response.status_code == 404
        assert response.get_json()['error_code'] == 'NO_RESULT'

    def test_manual_capture_round_trip(self, client):
        response = client.post('/api/session/start')
        assert response.status_code == 202
        assert response.get_json()['session']['in_flight'] is True

        _wait_for(client, _capturing)
        response = client.post('/api/session/actions/capture')
        assert response.status_code == 200
        assert response.get_json()['action'] == 'capture'

        status = _wait_for(client, _finished)
        assert status['outcome']['status'] == 'success'
        assert status['outcome']['capture_method'] == 'manual'
        assert status['session']['stage'] == 'completed'

        response = client.get('/api/session/result')
        assert response.status_code == 200
        assert response.get_json()['result']['corrected_image_shape'] == [50, 40, 3]

        response = client.get('/api/session/result/image')
        assert response.status_code == 200
        assert response.mimetype == 'image/jpeg'
        assert response.data[:2] == b'\xff\xd8'

    def test_second_start_conflicts(self, client):
        assert client.post('/api/session/start').status_code == 202
        response = client.post('/api/session/start')
        assert response.status_code == 409
        assert response.get_json()['error_code'] == 'ALREADY_IN_PROGRESS'

        _wait_for(client, _capturing)
        client.post('/api/session/actions/close')
        status = _wait_for(client, _finished)
        assert status['outcome']['status'] == 'cancelled'

    def test_start_with_still_image(self, client):
        response = client.post('/api/session/start', data=_jpeg_upload(),
                               content_type='multipart/form-data')
        assert response.status_code == 202

        status = _wait_for(client, _finished)
        assert status['outcome']['capture_method'] == 'staticFile'
        assert status['result']['original_image_shape'] == [240, 320, 3]

    def test_dispose_cancels_session(self, client):
        client.post('/api/session/start')
        _wait_for(client, _capturing)
        assert client.post('/api/session/dispose').status_code == 200

        status = _wait_for(client, _finished)
        assert status['outcome']['status'] == 'cancelled'
        assert status['result'] is None


class TestActions:
    """Action routing and request validation."""

    def test_unknown_action(self, client):
        response = client.post('/api/session/actions/teleport')
        assert response.status_code == 404
        assert response.get_json()['error_code'] == 'UNKNOWN_ACTION'

    def test_upload_without_image(self, client):
        response = client.post('/api/session/actions/upload')
        assert response.status_code == 400
        assert response.get_json()['error_code'] == 'NO_IMAGE'

    def test_upload_with_unreadable_image(self, client):
        data = {'image': (io.BytesIO(b'not an image'), 'broken.jpg')}
        response = client.post('/api/session/actions/upload', data=data,
                               content_type='multipart/form-data')
        assert response.status_code == 400
        assert response.get_json()['error_code'] == 'INVALID_IMAGE'

    def test_upload_during_capture(self, client):
        client.post('/api/session/start')
        _wait_for(client, _capturing)
        response = client.post('/api/session/actions/upload', data=_jpeg_upload(),
                               content_type='multipart/form-data')
        assert response.status_code == 200

        status = _wait_for(client, _finished)
        assert status['outcome']['capture_method'] == 'uploadedImage'

    def test_toggle_returns_modes(self, client):
        response = client.post('/api/session/actions/toggle_auto_crop', json={'enabled': True})
        assert response.status_code == 200
        modes = response.get_json()['modes']
        assert modes == {'bounds_detection': True, 'smart_capture': True, 'auto_crop': True}

    def test_missing_parameter(self, client):
        response = client.post('/api/session/actions/select_device', json={})
        assert response.status_code == 400
        assert response.get_json()['error_code'] == 'INVALID_REQUEST'

    def test_image_kind_validated(self, client):
        response = client.get('/api/session/result/image?kind=thumbnail')
        assert response.status_code == 400
