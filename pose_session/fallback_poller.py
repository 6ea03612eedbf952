from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import time
from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional

import requests

from pose_session import diagnostics
from pose_session.frame_source import FrameToken
from pose_session.transport_channel import strip_bearer

logger = logging.getLogger(__name__)

ResultHandler = Callable[[Any], Optional[Awaitable[None]]]
ErrorHandler = Callable[[str], None]
FrameProvider = Callable[[], Any]


@dataclass
class PollConfig:
    base_url: str
    interval_sec: float = 0.2
    timeout_sec: float = 5.0
    detect_path: str = "/pose/detect"
    validate_path: str = "/pose/validate"


def _consume_result(future: asyncio.Future) -> None:
    # Retrieve the outcome of a request nobody awaits any more.
    if not future.cancelled():
        future.exception()


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class FallbackPoller:
    """
    Request/response path to the pose server, used when streaming is absent
    or unproductive. Every request failure is reported and swallowed.
    """

    def __init__(
        self,
        config: PollConfig,
        token: Optional[str] = None,
        http: Optional[requests.Session] = None,
    ) -> None:
        self.config = config
        self.token = strip_bearer(token)
        self.last_error: Optional[str] = None
        self.requests_sent = 0
        self.failures = 0
        self._http = http or requests.Session()
        self._error_handlers: List[ErrorHandler] = []
        self._task: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Future] = None

    def _url(self, path: str) -> str:
        return f"{self.config.base_url.rstrip('/')}{path}"

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def on_error(self, handler: ErrorHandler) -> Callable[[], None]:
        self._error_handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._error_handlers:
                self._error_handlers.remove(handler)

        return unsubscribe

    def _report(self, message: str) -> None:
        self.failures += 1
        self.last_error = message
        logger.warning("[Poll] %s", message)
        for handler in list(self._error_handlers):
            try:
                handler(message)
            except Exception:
                logger.exception("[Poll] Error handler %r failed", handler)

    def _post(self, path: str, body: Dict[str, Any]) -> Any:
        response = self._http.post(
            self._url(path),
            json=body,
            headers=self._headers(),
            timeout=self.config.timeout_sec,
        )
        response.raise_for_status()
        return response.json()

    async def _request(self, path: str, body: Dict[str, Any]) -> Optional[Any]:
        loop = asyncio.get_running_loop()
        self.requests_sent += 1
        future = loop.run_in_executor(None, partial(self._post, path, body))
        future.add_done_callback(_consume_result)
        self._inflight = future
        try:
            # Cancelling the caller leaves the worker thread running; aclose() waits for it.
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            raise
        except requests.RequestException as error:
            self._report(diagnostics.describe_http_error(error))
        except ValueError as error:
            self._report(f"Invalid response from pose server: {error}")
        except Exception as error:
            self._report(diagnostics.explain(str(error)))
        finally:
            if self._inflight is future and future.done():
                self._inflight = None
        return None

    async def poll(self, exercise_type: str, frame: Optional[str] = None) -> Optional[Any]:
        body: Dict[str, Any] = {
            "exercise_type": exercise_type,
            "timestamp": int(time.time() * 1000),
        }
        if frame:
            body["frame"] = frame
            body["format"] = "jpeg"
        else:
            # No frame available: ask the server to use its own camera feed.
            body["signal"] = "request_detection"
        return await self._request(self.config.detect_path, body)

    async def validate_form(self, exercise_type: str, landmarks: List[Dict[str, float]]) -> Optional[Any]:
        logger.debug("[Poll] Validating form for %s", exercise_type)
        return await self._request(
            self.config.validate_path,
            {"exercise_type": exercise_type, "landmarks": landmarks},
        )

    # ------------------------------------------------------------------
    # Fixed-interval timer
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(
        self,
        exercise_type: str,
        on_result: ResultHandler,
        frame_provider: Optional[FrameProvider] = None,
        token: Optional[FrameToken] = None,
    ) -> None:
        """
        Poll on a fixed interval. When ``token`` is given it is shared with the
        stream, and a round whose token is taken is skipped.
        """
        if self.is_running:
            return
        logger.info(
            "[Poll] Polling %s every %.0f ms",
            self._url(self.config.detect_path),
            self.config.interval_sec * 1000.0,
        )
        self._task = asyncio.ensure_future(self._run(exercise_type, on_result, frame_provider, token))

    async def _run(
        self,
        exercise_type: str,
        on_result: ResultHandler,
        frame_provider: Optional[FrameProvider],
        token: Optional[FrameToken],
    ) -> None:
        while True:
            started = time.monotonic()
            if token is None or token.try_acquire():
                try:
                    await self._poll_once(exercise_type, on_result, frame_provider)
                finally:
                    if token is not None:
                        token.release()
            elapsed = time.monotonic() - started
            await asyncio.sleep(max(self.config.interval_sec - elapsed, 0.0))

    async def _poll_once(
        self,
        exercise_type: str,
        on_result: ResultHandler,
        frame_provider: Optional[FrameProvider],
    ) -> None:
        frame = None
        if frame_provider is not None:
            try:
                frame = await _maybe_await(frame_provider())
            except asyncio.CancelledError:
                raise
            except Exception as error:
                logger.warning("[Poll] Frame capture failed: %s", error)
        result = await self.poll(exercise_type, frame)
        if result is not None:
            try:
                await _maybe_await(on_result(result))
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[Poll] Result handler failed")

    def stop(self) -> None:
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            logger.info("[Poll] Polling stopped")

    async def aclose(self) -> None:
        task = self._task
        self.stop()
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        inflight = self._inflight
        if inflight is not None and not inflight.done():
            logger.debug("[Poll] Waiting for the in-flight request before closing")
            await asyncio.wait({inflight}, timeout=self.config.timeout_sec + 1.0)
        self._inflight = None
        self._http.close()

    def pending_timers(self) -> int:
        return 1 if self.is_running else 0
