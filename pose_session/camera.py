from __future__ import annotations

import asyncio
import base64
import logging
import time
from typing import Optional, Union

import cv2
import numpy as np

from pose_session.frame_source import FrameSlot

logger = logging.getLogger(__name__)


def encode_frame_jpeg_base64(frame_bgr: np.ndarray, quality: int = 70) -> str:
    """Encode a BGR frame as the base64 JPEG string the pose server expects."""
    if frame_bgr is None or not isinstance(frame_bgr, np.ndarray) or frame_bgr.size == 0:
        raise ValueError("Cannot encode an empty frame")
    quality = max(1, min(100, int(quality)))
    ok, buffer = cv2.imencode(".jpg", frame_bgr, [int(cv2.IMWRITE_JPEG_QUALITY), quality])
    if not ok:
        raise ValueError("Failed to encode frame as JPEG")
    return base64.b64encode(buffer.tobytes()).decode("ascii")


class CameraCapture:
    def __init__(
        self,
        source: Union[int, str] = 0,
        jpeg_quality: int = 70,
        mirror: bool = True,
    ) -> None:
        self.source = source
        self.jpeg_quality = jpeg_quality
        self.mirror = mirror
        self._cap: Optional[cv2.VideoCapture] = None
        self.failed_reads = 0

    def open(self) -> None:
        if self._cap is not None and self._cap.isOpened():
            return
        cap = cv2.VideoCapture(self.source)
        if not cap.isOpened():
            cap.release()
            raise RuntimeError(f"Cannot open camera source: {self.source}")
        self._cap = cap
        logger.info("[Camera] Opened camera source %s", self.source)

    def read_jpeg_base64(self) -> Optional[str]:
        if self._cap is None:
            self.open()
        ok, frame = self._cap.read()
        if not ok or frame is None:
            self.failed_reads += 1
            return None
        if self.mirror:
            frame = cv2.flip(frame, 1)
        return encode_frame_jpeg_base64(frame, self.jpeg_quality)

    async def run_producer(self, slot: FrameSlot, interval_sec: float = 0.05) -> None:
        """Keep the slot filled with the newest camera frame until cancelled."""
        loop = asyncio.get_running_loop()
        last_warning_at = 0.0
        while True:
            started = time.monotonic()
            frame = await loop.run_in_executor(None, self.read_jpeg_base64)
            if frame is not None:
                slot.put(frame)
            elif (started - last_warning_at) >= 2.0:
                last_warning_at = started
                logger.warning("[Camera] Frame read failed (failed_reads=%d)", self.failed_reads)
            await asyncio.sleep(max(interval_sec - (time.monotonic() - started), 0.0))

    def close(self) -> None:
        if self._cap is not None:
            self._cap.release()
            self._cap = None
