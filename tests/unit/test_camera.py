"""Unit tests for facegate/video/camera.py.

``cv2.VideoCapture`` is patched so the tests never touch a real device.
"""

import threading
from unittest.mock import MagicMock, patch

import cv2
import numpy as np

from facegate.video.camera import OpenCVCameraSource


def _mock_capture(opened: bool = True, size: tuple[int, int] = (640, 480)) -> MagicMock:
    capture = MagicMock()
    capture.isOpened.return_value = opened
    props = {cv2.CAP_PROP_FRAME_WIDTH: size[0], cv2.CAP_PROP_FRAME_HEIGHT: size[1]}
    capture.get.side_effect = lambda prop: props.get(prop, 0)
    return capture


def test_capture_before_open_returns_none():
    assert OpenCVCameraSource().capture_frame() is None


def test_open_sets_requested_resolution():
    capture = _mock_capture()
    with patch("facegate.video.camera.cv2.VideoCapture", return_value=capture) as vc:
        source = OpenCVCameraSource(index=2, width=640, height=480)
        assert source.open() is True

    vc.assert_called_once_with(2)
    capture.set.assert_any_call(cv2.CAP_PROP_FRAME_WIDTH, 640)
    capture.set.assert_any_call(cv2.CAP_PROP_FRAME_HEIGHT, 480)
    assert source.resolution == (640, 480)


def test_resolution_reports_negotiated_size():
    capture = _mock_capture(size=(1280, 720))
    with patch("facegate.video.camera.cv2.VideoCapture", return_value=capture):
        source = OpenCVCameraSource(width=640, height=480)
        source.open()
    assert source.resolution == (1280, 720)


def test_open_failure_returns_false_and_releases():
    capture = _mock_capture(opened=False)
    with patch("facegate.video.camera.cv2.VideoCapture", return_value=capture):
        source = OpenCVCameraSource()
        assert source.open() is False
    capture.release.assert_called_once()
    assert source.resolution is None
    assert source.capture_frame() is None


def test_capture_frame_returns_read_frame():
    frame = np.zeros((480, 640, 3), dtype=np.uint8)
    capture = _mock_capture()
    capture.read.return_value = (True, frame)
    with patch("facegate.video.camera.cv2.VideoCapture", return_value=capture):
        source = OpenCVCameraSource()
        source.open()
    assert source.capture_frame() is frame


def test_failed_read_returns_none():
    capture = _mock_capture()
    capture.read.return_value = (False, None)
    with patch("facegate.video.camera.cv2.VideoCapture", return_value=capture):
        source = OpenCVCameraSource()
        source.open()
    assert source.capture_frame() is None


def test_close_releases_device():
    capture = _mock_capture()
    with patch("facegate.video.camera.cv2.VideoCapture", return_value=capture):
        source = OpenCVCameraSource()
        source.open()
        source.close()
    capture.release.assert_called_once()
    assert not source.is_open


def test_close_waits_for_in_flight_read():
    events = []
    entered = threading.Event()
    release = threading.Event()
    frame = np.zeros((480, 640, 3), dtype=np.uint8)

    def slow_read():
        events.append("read-start")
        entered.set()
        release.wait(timeout=5)
        events.append("read-end")
        return True, frame

    capture = _mock_capture()
    capture.read.side_effect = slow_read
    capture.release.side_effect = lambda: events.append("release")
    with patch("facegate.video.camera.cv2.VideoCapture", return_value=capture):
        source = OpenCVCameraSource()
        source.open()

    reader = threading.Thread(target=source.capture_frame)
    reader.start()
    assert entered.wait(timeout=5)
    closer = threading.Thread(target=source.close)
    closer.start()
    closer.join(timeout=0.05)
    assert closer.is_alive()

    release.set()
    reader.join(timeout=5)
    closer.join(timeout=5)
    assert events == ["read-start", "read-end", "release"]
    assert source.capture_frame() is None
