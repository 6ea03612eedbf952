from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

CaptureFn = Callable[[], Any]
SendFn = Callable[[Any], Awaitable[bool]]


class FrameSlot(Generic[T]):
    """
    Single-slot hand-off between a capture producer and the frame consumer.

    put() overwrites whatever is waiting, so a slow consumer only ever sees the
    newest frame and nothing piles up behind it.
    """

    def __init__(self) -> None:
        self._value: Optional[T] = None
        self.produced = 0
        self.overwritten = 0

    def put(self, value: T) -> None:
        if self._value is not None:
            self.overwritten += 1
        self._value = value
        self.produced += 1

    def take(self) -> Optional[T]:
        value = self._value
        self._value = None
        return value

    def clear(self) -> None:
        self._value = None

    @property
    def has_value(self) -> bool:
        return self._value is not None


@dataclass
class FrameToken:
    in_flight: bool = False
    frame_count: int = 0

    def try_acquire(self) -> bool:
        if self.in_flight:
            return False
        self.in_flight = True
        self.frame_count += 1
        return True

    def release(self) -> None:
        self.in_flight = False

    def reset(self) -> None:
        self.in_flight = False


class FrameSource:
    """
    Throttled frame pump: at most one capture/send is outstanding, and ticks
    that land while one is in flight are dropped rather than queued.
    """

    def __init__(
        self,
        capture: CaptureFn,
        sender: SendFn,
        min_interval_sec: float = 0.2,
        idle_timeout_sec: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._capture = capture
        self._sender = sender
        self.min_interval_sec = max(0.0, min_interval_sec)
        self.idle_timeout_sec = idle_timeout_sec
        self._clock = clock

        self.token = FrameToken()
        self.frames_sent = 0
        self.frames_skipped = 0
        self.empty_captures = 0
        self.forced_captures = 0
        self._running = False
        self._last_capture_at: Optional[float] = None
        self._last_landmarks_at = clock()
        self._last_skip_log_at = 0.0
        self._tick_task: Optional[asyncio.Task] = None
        self._idle_task: Optional[asyncio.Task] = None
        self._inflight_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._last_landmarks_at = self._clock()
        self._last_capture_at = None
        self._tick_task = asyncio.ensure_future(self._tick_loop())
        self._idle_task = asyncio.ensure_future(self._idle_loop())
        logger.info(
            "[Frames] Capture started (min interval %.0f ms, idle recovery %.1fs)",
            self.min_interval_sec * 1000.0,
            self.idle_timeout_sec,
        )

    def stop(self) -> None:
        was_running = self._running
        self._running = False
        for task in (self._tick_task, self._idle_task, self._inflight_task):
            if task is not None and not task.done():
                task.cancel()
        self._tick_task = None
        self._idle_task = None
        self._inflight_task = None
        self.token.reset()
        if was_running:
            logger.info(
                "[Frames] Capture stopped (sent=%d, skipped=%d, forced=%d)",
                self.frames_sent,
                self.frames_skipped,
                self.forced_captures,
            )

    def pending_timers(self) -> int:
        return sum(
            1
            for task in (self._tick_task, self._idle_task, self._inflight_task)
            if task is not None and not task.done()
        )

    def note_landmarks(self) -> None:
        self._last_landmarks_at = self._clock()

    def tick(self) -> bool:
        """Schedule one capture unless throttled or a frame is in flight."""
        if not self._running:
            return False
        if self.token.in_flight:
            self._note_skip()
            return False
        now = self._clock()
        if self._last_capture_at is not None and (now - self._last_capture_at) < self.min_interval_sec:
            return False
        if not self.token.try_acquire():
            return False
        self._last_capture_at = now
        self._inflight_task = asyncio.ensure_future(self._run_capture())
        return True

    async def capture_and_send(self, force: bool = False) -> bool:
        """
        Capture one frame and push it through the sender.

        force bypasses the inter-frame throttle, never the in-flight guard.
        """
        now = self._clock()
        if (
            not force
            and self._last_capture_at is not None
            and (now - self._last_capture_at) < self.min_interval_sec
        ):
            return False
        if not self.token.try_acquire():
            self._note_skip()
            return False
        self._last_capture_at = now
        return await self._run_capture()

    async def _run_capture(self) -> bool:
        try:
            frame = self._capture()
            if inspect.isawaitable(frame):
                frame = await frame
            if frame is None:
                self.empty_captures += 1
                return False
            sent = await self._sender(frame)
            if sent:
                self.frames_sent += 1
            return bool(sent)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            logger.warning("[Frames] Capture/send failed: %s", error)
            return False
        finally:
            self.token.release()

    def _note_skip(self) -> None:
        self.frames_skipped += 1
        now = self._clock()
        if (now - self._last_skip_log_at) >= 2.0:
            self._last_skip_log_at = now
            logger.debug("[Frames] Dropping frames while busy. skipped=%d", self.frames_skipped)

    async def _tick_loop(self) -> None:
        interval = self.min_interval_sec if self.min_interval_sec > 0.0 else 0.05
        while self._running:
            self.tick()
            await asyncio.sleep(interval)

    async def _idle_loop(self) -> None:
        check_every = min(max(self.idle_timeout_sec / 4.0, 0.01), 1.0)
        while self._running:
            await asyncio.sleep(check_every)
            idle_sec = self._clock() - self._last_landmarks_at
            if idle_sec < self.idle_timeout_sec or self.token.in_flight:
                continue
            logger.info("[Frames] No landmarks for %.1fs. Forcing a capture.", idle_sec)
            self.forced_captures += 1
            # Restart the idle window so recovery fires once per period.
            self._last_landmarks_at = self._clock()
            await self.capture_and_send(force=True)
