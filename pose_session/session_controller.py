from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

from pose_session import diagnostics, result_normalizer
from pose_session.fallback_poller import FallbackPoller
from pose_session.frame_source import CaptureFn, FrameSlot, FrameSource
from pose_session.models import (
    EMPTY_ASSESSMENT,
    EMPTY_LANDMARKS,
    LandmarkSet,
    PoseAssessment,
    PoseResult,
    Session,
    SessionHandle,
    SessionState,
    TransportMode,
    local_session_id,
)
from pose_session.transport_channel import TransportChannel, strip_bearer

logger = logging.getLogger(__name__)

ResultListener = Callable[[PoseResult], None]
ErrorListener = Callable[[str], None]

AUTH_FAILED_WARNING = "Limited functionality: the pose server did not accept your sign-in."
AUTH_ASSUMED_WARNING = "The pose server did not confirm your sign-in. Feedback may be limited."
UNREACHABLE_WARNING = "Can't reach the pose server right now. Feedback may be delayed."


@dataclass
class SessionSettings:
    mode: TransportMode = TransportMode.STREAMING
    session_event_timeout_sec: float = 3.0
    start_timeout_sec: float = 12.0
    frame_min_interval_sec: float = 0.2
    idle_recovery_sec: float = 3.0
    # Run the poller next to an unproductive stream (see DESIGN.md).
    fallback_poll_enabled: bool = True
    fallback_grace_sec: float = 5.0


class SessionController:
    """
    Owns the one active exercise session and wires
    FrameSource -> (TransportChannel | FallbackPoller) -> result normalizer.
    """

    def __init__(
        self,
        channel: TransportChannel,
        poller: FallbackPoller,
        settings: Optional[SessionSettings] = None,
        token: Optional[str] = None,
        capture: Optional[CaptureFn] = None,
    ) -> None:
        self.channel = channel
        self.poller = poller
        self.settings = settings or SessionSettings()
        self.mode = TransportMode(self.settings.mode)
        self.token = token

        self.state = SessionState.IDLE
        self.session: Optional[Session] = None
        self.landmarks: LandmarkSet = EMPTY_LANDMARKS
        self.assessment: PoseAssessment = EMPTY_ASSESSMENT
        self.warnings: List[str] = []
        self.last_error: Optional[str] = None
        self.transport_status: Optional[str] = None
        self.results_delivered = 0
        self.fallback_active = False

        self.frame_slot: FrameSlot = FrameSlot()
        self._capture: CaptureFn = capture or self.frame_slot.take
        self.frame_source = FrameSource(
            capture=self._capture,
            sender=self._send_frame,
            min_interval_sec=self.settings.frame_min_interval_sec,
            idle_timeout_sec=self.settings.idle_recovery_sec,
        )
        self._result_listeners: List[ResultListener] = []
        self._error_listeners: List[ErrorListener] = []
        self._grace_task: Optional[asyncio.Task] = None
        self._announce_task: Optional[asyncio.Task] = None
        self._announced = False
        self._generation = 0
        self._landmarks_seen = False
        self._require_auth = False

        self.channel.on_message(self._on_stream_message)
        self.channel.on_error(self._on_detection_error)
        self.channel.on_authenticated(self._on_channel_authenticated)
        self.poller.on_error(self._on_poll_error)

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def on_result(self, listener: ResultListener) -> Callable[[], None]:
        self._result_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._result_listeners:
                self._result_listeners.remove(listener)

        return unsubscribe

    def on_error(self, listener: ErrorListener) -> Callable[[], None]:
        self._error_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._error_listeners:
                self._error_listeners.remove(listener)

        return unsubscribe

    @property
    def warning(self) -> Optional[str]:
        return " ".join(self.warnings) if self.warnings else None

    @property
    def is_active(self) -> bool:
        return self.state == SessionState.ACTIVE and self.session is not None

    def push_frame(self, frame: Any) -> None:
        self.frame_slot.put(frame)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def start_session(self, exercise_type: str, user_id: Optional[str] = None) -> SessionHandle:
        if self.session is not None or self.state != SessionState.IDLE:
            logger.info("[Session] Ending the active session before starting a new one")
            await self.end_session()

        self._generation += 1
        generation = self._generation
        user_id = user_id or "anonymous"
        self.state = SessionState.STARTING
        self.warnings = []
        self.last_error = None
        self.transport_status = None
        self._require_auth = False
        self._announced = False
        self._clear_results()
        logger.info("[Session] Starting %s session for %s (%s)", exercise_type, user_id, self.mode.value)

        try:
            session_id = await asyncio.wait_for(
                self._prepare_transport(exercise_type, user_id),
                timeout=self.settings.start_timeout_sec,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "[Session] Transport not ready after %.1fs; continuing best-effort",
                self.settings.start_timeout_sec,
            )
            self._add_warning(UNREACHABLE_WARNING)
            session_id = local_session_id()

        handle = SessionHandle(
            session_id=session_id,
            exercise_type=exercise_type,
            user_id=user_id,
            mode=self.mode,
            warning=self.warning,
        )
        if generation != self._generation or self.state != SessionState.STARTING:
            logger.info("[Session] Session %s ended before it became active", session_id)
            return handle

        self.session = Session(
            id=session_id,
            exercise_type=exercise_type,
            user_id=user_id,
            state=SessionState.ACTIVE,
        )
        self.state = SessionState.ACTIVE
        self._activate_pipeline(self.session)
        logger.info("[Session] Session %s active%s", session_id, " (degraded)" if handle.degraded else "")
        return handle

    async def _prepare_transport(self, exercise_type: str, user_id: str) -> str:
        if self.mode == TransportMode.POLLING:
            return local_session_id()

        # The token goes on the channel first so a later reconnect joins with it.
        self.channel.set_token(self.token)
        self._require_auth = bool(strip_bearer(self.token))
        if not await self.channel.connect():
            self._add_warning(UNREACHABLE_WARNING)
            return local_session_id()

        authenticated = await self.channel.authenticate(self.token) if self.token else False
        if not authenticated:
            self._add_warning(AUTH_FAILED_WARNING)
        elif self.channel.auth_assumed:
            self._add_warning(AUTH_ASSUMED_WARNING)

        self._announced = True
        session_id = await self._request_session(exercise_type, user_id)
        if session_id is None:
            session_id = local_session_id()
            logger.info("[Session] Created local session ID (no server response): %s", session_id)
        return session_id

    async def _request_session(self, exercise_type: str, user_id: str) -> Optional[str]:
        reply = await self.channel.request(
            "start_exercise_session",
            {"exercise_type": exercise_type, "user_id": user_id},
            ("session_started",),
            timeout=self.settings.session_event_timeout_sec,
        )
        if reply is not None and isinstance(reply[1], Mapping):
            raw_id = reply[1].get("session_id")
            if raw_id not in (None, ""):
                return str(raw_id)
        return None

    def _on_channel_authenticated(self) -> None:
        session = self.session
        if session is None or self.state != SessionState.ACTIVE or self._announced:
            return
        # Started without a server; announce it now that the channel has joined.
        self._announced = True
        self._announce_task = asyncio.ensure_future(self._announce_session(session))

    async def _announce_session(self, session: Session) -> None:
        session_id = await self._request_session(session.exercise_type, session.user_id)
        if session_id is None or self.session is not session:
            return
        logger.info("[Session] Server assigned session %s (was %s)", session_id, session.id)
        session.id = session_id

    def _activate_pipeline(self, session: Session) -> None:
        if self.mode == TransportMode.POLLING:
            self.poller.start(
                session.exercise_type, self._on_poll_result, self._capture, token=self.frame_source.token
            )
            return
        self.frame_source.start()
        if self.settings.fallback_poll_enabled:
            self._grace_task = asyncio.ensure_future(self._fallback_after_grace(session))

    async def _fallback_after_grace(self, session: Session) -> None:
        await asyncio.sleep(self.settings.fallback_grace_sec)
        if self.session is not session or self.state != SessionState.ACTIVE or self._landmarks_seen:
            return
        logger.warning(
            "[Session] No landmarks from stream within %.1fs; starting polling fallback",
            self.settings.fallback_grace_sec,
        )
        self.fallback_active = True
        self.poller.start(
            session.exercise_type, self._on_poll_result, self._capture, token=self.frame_source.token
        )

    async def end_session(self) -> None:
        self._cancel_timers()
        self._clear_results()
        session = self.session
        if session is None and self.state == SessionState.IDLE:
            return

        self._generation += 1
        self.state = SessionState.ENDING
        if session is not None:
            session.state = SessionState.ENDING
        try:
            if session is not None and self.mode == TransportMode.STREAMING and self.channel.is_connected:
                reply = await self.channel.request(
                    "end_exercise_session",
                    {"session_id": session.id},
                    ("session_ended",),
                    timeout=self.settings.session_event_timeout_sec,
                )
                if reply is None:
                    logger.info("[Session] Ended session (no server response): %s", session.id)
                else:
                    logger.info("[Session] Session ended: %s", session.id)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            logger.warning("[Session] Error ending session on server: %s", error)
        finally:
            try:
                await self.channel.disconnect()
            except Exception as error:
                logger.warning("[Session] Error closing stream: %s", error)
            self._cancel_timers()
            self._clear_results()
            self.session = None
            self.state = SessionState.IDLE
            self.fallback_active = False

    async def switch_transport_mode(self, mode: TransportMode) -> None:
        mode = TransportMode(mode)
        if self.session is not None or self.state != SessionState.IDLE:
            await self.end_session()
        if mode != self.mode:
            logger.info("[Session] Transport mode %s -> %s", self.mode.value, mode.value)
        self.mode = mode
        if mode == TransportMode.STREAMING:
            await self.channel.connect()
        else:
            await self.channel.disconnect()

    def _cancel_timers(self) -> None:
        self.frame_source.stop()
        self.poller.stop()
        task = self._grace_task
        self._grace_task = None
        if task is not None and not task.done():
            task.cancel()
        announce = self._announce_task
        self._announce_task = None
        if announce is not None and not announce.done():
            announce.cancel()
        self.channel.cancel_reconnect()

    def pending_timers(self) -> int:
        tasks = (self._grace_task, self._announce_task)
        own = sum(1 for task in tasks if task is not None and not task.done())
        return (
            self.frame_source.pending_timers()
            + self.poller.pending_timers()
            + self.channel.pending_timers()
            + own
        )

    def _clear_results(self) -> None:
        self.landmarks = EMPTY_LANDMARKS
        self.assessment = EMPTY_ASSESSMENT
        self.frame_slot.clear()
        self.frame_source.token.reset()
        self._landmarks_seen = False

    def _add_warning(self, message: str) -> None:
        if message not in self.warnings:
            self.warnings.append(message)
            logger.warning("[Session] %s", message)

    # ------------------------------------------------------------------
    # Frames and results
    # ------------------------------------------------------------------

    async def _send_frame(self, frame: Any) -> bool:
        session = self.session
        if session is None or self.state != SessionState.ACTIVE:
            return False
        # With a token, hold frames until the (re)connected channel has joined.
        if self._require_auth and not self.channel.is_authenticated:
            return False
        timestamp = int(time.time() * 1000)
        if isinstance(frame, Mapping):
            payload: Dict[str, Any] = dict(frame)
            payload.setdefault("exercise_type", session.exercise_type)
            payload.setdefault("timestamp", timestamp)
            payload["session_id"] = session.id
        else:
            payload = {
                "frame": frame,
                "format": "jpeg",
                "exercise_type": session.exercise_type,
                "session_id": session.id,
                "timestamp": timestamp,
            }
        return await self.channel.emit("detect_pose", payload)

    def _on_stream_message(self, event: str, data: Any) -> None:
        self._accept_payload(data, source=event)

    def _on_poll_result(self, payload: Any) -> None:
        self._accept_payload(payload, source="poll")

    def _accept_payload(self, payload: Any, source: str) -> None:
        session = self.session
        if session is None or self.state != SessionState.ACTIVE:
            logger.debug("[Session] Dropping %s result outside an active session", source)
            return

        payload = result_normalizer.coerce_payload(payload)
        if payload is None:
            logger.warning("[Session] Received empty %s result", source)
            return
        landmarks = result_normalizer.normalize(payload)
        assessment = result_normalizer.extract_assessment(payload)
        error = result_normalizer.extract_error(payload)

        # Each payload replaces the previous state; nothing stale survives.
        self.landmarks = landmarks
        self.assessment = assessment
        if error is not None:
            self._on_detection_error(error)
            if not landmarks:
                return

        if landmarks:
            self._landmarks_seen = True
            self.frame_source.note_landmarks()
        else:
            logger.debug("[Session] No landmarks found in %s result", source)

        result = PoseResult(
            session_id=session.id,
            landmarks=landmarks,
            assessment=assessment,
            source=source,
        )
        self.results_delivered += 1
        for listener in list(self._result_listeners):
            try:
                listener(result)
            except Exception:
                logger.exception("[Session] Result listener failed")

    def _on_detection_error(self, message: str) -> None:
        if diagnostics.is_routine(message):
            logger.debug("[Session] Suppressed routine backend notice: %s", message)
            return
        explanation = diagnostics.explain(message)
        self.last_error = explanation
        for listener in list(self._error_listeners):
            try:
                listener(explanation)
            except Exception:
                logger.exception("[Session] Error listener failed")

    def _on_poll_error(self, message: str) -> None:
        self.transport_status = message

    def status(self) -> Dict[str, Any]:
        session = self.session
        return {
            "state": self.state.value,
            "mode": self.mode.value,
            "session_id": session.id if session is not None else None,
            "exercise_type": session.exercise_type if session is not None else None,
            "warning": self.warning,
            "last_error": self.last_error,
            "transport_status": self.transport_status,
            "fallback_active": self.fallback_active,
            "frames_sent": self.frame_source.frames_sent,
            "frames_skipped": self.frame_source.frames_skipped,
            "frames_overwritten": self.frame_slot.overwritten,
            "results_delivered": self.results_delivered,
            "landmark_count": len(self.landmarks),
            "channel": self.channel.server_info(),
        }
