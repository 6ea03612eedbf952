from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

import config
from pose_session.camera import CameraCapture
from pose_session.fallback_poller import FallbackPoller, PollConfig
from pose_session.models import PoseResult, TransportMode
from pose_session.session_controller import SessionController, SessionSettings
from pose_session.transport_channel import StreamConfig, TransportChannel

logger = logging.getLogger(__name__)


def build_controller(
    token: Optional[str] = None,
    connector=None,
    http=None,
) -> SessionController:
    token = token if token is not None else (config.POSE_AUTH_TOKEN or None)
    stream_config = StreamConfig(
        base_url=config.POSE_SERVER_URL,
        path=config.POSE_STREAM_PATH,
        auth_timeout_sec=config.AUTH_TIMEOUT_SEC,
        connect_timeout_sec=config.CONNECT_TIMEOUT_SEC,
        assume_auth_on_timeout=config.AUTH_POLICY == "lenient",
        max_attempts=config.RECONNECT_MAX_ATTEMPTS,
        base_delay_sec=config.RECONNECT_BASE_DELAY_SEC,
        max_delay_sec=config.RECONNECT_MAX_DELAY_SEC,
    )
    poll_config = PollConfig(
        base_url=config.POSE_SERVER_URL,
        interval_sec=config.POLL_INTERVAL_SEC,
        timeout_sec=config.POLL_HTTP_TIMEOUT_SEC,
    )
    settings = SessionSettings(
        mode=TransportMode(config.TRANSPORT_MODE),
        session_event_timeout_sec=config.SESSION_EVENT_TIMEOUT_SEC,
        start_timeout_sec=config.SESSION_START_TIMEOUT_SEC,
        frame_min_interval_sec=config.FRAME_MIN_INTERVAL_SEC,
        idle_recovery_sec=config.IDLE_RECOVERY_SEC,
        fallback_poll_enabled=config.FALLBACK_POLL_ENABLED,
        fallback_grace_sec=config.FALLBACK_GRACE_SEC,
    )
    return SessionController(
        channel=TransportChannel(stream_config, connector=connector),
        poller=FallbackPoller(poll_config, token=token, http=http),
        settings=settings,
        token=token,
    )


async def run_live_session(controller: SessionController, camera: CameraCapture) -> None:
    results_seen = 0
    last_error_logged: Optional[str] = None

    def on_result(result: PoseResult) -> None:
        nonlocal results_seen
        results_seen += 1
        if results_seen % config.LOG_EVERY_N_RESULTS != 0:
            return
        assessment = result.assessment
        verdict = "unknown" if assessment.is_correct is None else ("good" if assessment.is_correct else "fix")
        logger.info(
            "[Session] %s | %d landmarks | form=%s | incorrect=%s | %s",
            result.source,
            len(result.landmarks),
            verdict,
            sorted(assessment.incorrect_point_indices),
            assessment.feedback or "-",
        )

    def on_error(message: str) -> None:
        nonlocal last_error_logged
        if message != last_error_logged:
            last_error_logged = message
            logger.warning("[Session] %s", message)

    controller.on_result(on_result)
    controller.on_error(on_error)

    camera.open()
    producer_task = asyncio.create_task(
        camera.run_producer(controller.frame_slot, config.CAMERA_READ_INTERVAL_SEC)
    )
    try:
        handle = await controller.start_session(config.DEFAULT_EXERCISE, config.DEFAULT_USER_ID)
        logger.info(
            "[Session] Running %s as %s over %s (session %s)",
            handle.exercise_type,
            handle.user_id,
            handle.mode.value,
            handle.session_id,
        )
        if handle.warning:
            logger.warning("[Session] %s", handle.warning)

        started = time.monotonic()
        while True:
            done, _ = await asyncio.wait({producer_task}, timeout=1.0)
            if done:
                logger.warning("[Camera] Frame producer stopped; ending session")
                break
            if config.SESSION_DURATION_SEC > 0.0 and (time.monotonic() - started) >= config.SESSION_DURATION_SEC:
                logger.info("[Session] Duration of %.0fs reached", config.SESSION_DURATION_SEC)
                break
    finally:
        producer_task.cancel()
        try:
            await producer_task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("[Camera] Frame producer failed")
        try:
            await controller.end_session()
            await controller.poller.aclose()
        finally:
            camera.close()
        logger.info("[Session] Final status: %s", controller.status())


def main() -> None:
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    controller = build_controller()
    camera = CameraCapture(source=config.CAMERA_SOURCE, jpeg_quality=config.JPEG_QUALITY)
    try:
        asyncio.run(run_live_session(controller, camera))
    except KeyboardInterrupt:
        logger.info("[Session] Stopped by user")


if __name__ == "__main__":
    main()
