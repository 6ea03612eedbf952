"""Tests for JPEG frame encoding and the camera producer loop."""

import asyncio
import base64
import sys
from pathlib import Path

import cv2
import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from pose_session.camera import CameraCapture, encode_frame_jpeg_base64
from pose_session.frame_source import FrameSlot


class _FakeVideoCapture:
    def __init__(self, frames):
        self.frames = list(frames)
        self.released = False

    def isOpened(self):
        return True

    def read(self):
        if not self.frames:
            return False, None
        return True, self.frames.pop(0)

    def release(self):
        self.released = True


def _gradient_frame(width=64, height=48):
    frame = np.zeros((height, width, 3), dtype=np.uint8)
    frame[:, : width // 2] = (255, 255, 255)
    return frame


class TestEncode:
    def test_produces_decodable_jpeg(self):
        encoded = encode_frame_jpeg_base64(_gradient_frame(), quality=80)
        raw = base64.b64decode(encoded)
        assert raw[:2] == b"\xff\xd8"
        decoded = cv2.imdecode(np.frombuffer(raw, dtype=np.uint8), cv2.IMREAD_COLOR)
        assert decoded.shape == (48, 64, 3)

    def test_empty_frame_rejected(self):
        with pytest.raises(ValueError):
            encode_frame_jpeg_base64(np.zeros((0, 0, 3), dtype=np.uint8))
        with pytest.raises(ValueError):
            encode_frame_jpeg_base64(None)


class TestCameraCapture:
    def test_mirrors_frames(self):
        camera = CameraCapture(mirror=True)
        camera._cap = _FakeVideoCapture([_gradient_frame()])
        raw = base64.b64decode(camera.read_jpeg_base64())
        decoded = cv2.imdecode(np.frombuffer(raw, dtype=np.uint8), cv2.IMREAD_GRAYSCALE)
        # White half moves from the left edge to the right edge.
        assert decoded[:, :8].mean() < 64
        assert decoded[:, -8:].mean() > 192

    def test_failed_read_counts(self):
        camera = CameraCapture()
        camera._cap = _FakeVideoCapture([])
        assert camera.read_jpeg_base64() is None
        assert camera.failed_reads == 1

    def test_close_releases(self):
        camera = CameraCapture()
        fake = _FakeVideoCapture([])
        camera._cap = fake
        camera.close()
        assert fake.released
        camera.close()

    def test_unopenable_source(self):
        camera = CameraCapture(source="/nonexistent/pose-session-video.mp4")
        with pytest.raises(RuntimeError):
            camera.open()

    def test_producer_keeps_newest_frame(self):
        async def scenario():
            camera = CameraCapture()
            camera._cap = _FakeVideoCapture([_gradient_frame() for _ in range(5)])
            slot = FrameSlot()
            task = asyncio.ensure_future(camera.run_producer(slot, interval_sec=0.005))
            await asyncio.sleep(0.2)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            assert slot.produced == 5
            assert slot.overwritten == 4
            assert slot.take() is not None
            assert camera.failed_reads > 0

        asyncio.run(scenario())
