"""
Event channel to the pose server over a plain WebSocket.

Every text frame is a JSON envelope {"event": <name>, "data": <payload>}. This
is not the socket.io protocol: a server that only speaks socket.io needs a
WebSocket endpoint (or a gateway) that exchanges these envelopes.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

import websockets

from pose_session.models import ConnectionState

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], Optional[Awaitable[None]]]
MessageHandler = Callable[[str, Any], Optional[Awaitable[None]]]
ErrorHandler = Callable[[str], Optional[Awaitable[None]]]
Connector = Callable[..., Awaitable[Any]]

RESULT_EVENTS: Tuple[str, ...] = (
    "pose_result",
    "pose_detection_result",
    "landmarks",
    "pose_landmarks",
    "pose_feedback",
)
AUTH_EVENTS: Tuple[str, ...] = ("join_result", "room_joined")
ERROR_EVENT = "pose_detection_error"


@dataclass
class StreamConfig:
    base_url: str
    path: str = "/ws"
    auth_timeout_sec: float = 5.0
    connect_timeout_sec: float = 20.0
    # Lenient policy: a join without acknowledgment counts as authenticated.
    assume_auth_on_timeout: bool = True
    max_attempts: int = 5
    base_delay_sec: float = 1.0
    max_delay_sec: float = 5.0


@dataclass
class RetryPolicy:
    max_attempts: int = 5
    base_delay_sec: float = 1.0
    max_delay_sec: float = 5.0
    attempt: int = 0

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts

    def next_delay(self) -> float:
        self.attempt += 1
        return min(self.max_delay_sec, self.base_delay_sec * (2 ** (self.attempt - 1)))

    def reset(self) -> None:
        self.attempt = 0


def _normalize_ws_scheme(raw_scheme: str) -> str:
    scheme = raw_scheme.strip().lower()
    if scheme in {"http", "ws"}:
        return "ws"
    if scheme in {"https", "wss"}:
        return "wss"
    return "ws"


def _normalize_ws_path(raw_path: str) -> str:
    path = (raw_path or "/ws").strip()
    if not path:
        return "/ws"
    if not path.startswith("/"):
        return f"/{path}"
    return path


def build_stream_uri(base_url: str, path: str = "/ws") -> str:
    """Map the shared server address (usually http://) onto its WebSocket endpoint."""
    raw = (base_url or "").strip()
    if "://" not in raw:
        raw = f"ws://{raw}"
    parsed = urlparse(raw)
    scheme = _normalize_ws_scheme(parsed.scheme)
    host = parsed.hostname or "localhost"
    if ":" in host and not host.startswith("["):
        host = f"[{host}]"
    port = f":{parsed.port}" if parsed.port is not None else ""
    base_path = parsed.path.rstrip("/")
    return f"{scheme}://{host}{port}{base_path}{_normalize_ws_path(path)}"


def strip_bearer(token: Optional[str]) -> Optional[str]:
    if token is None:
        return None
    token = token.strip()
    if token == "Bearer" or token.startswith("Bearer "):
        token = token[len("Bearer"):].strip()
    return token or None


def encode_event(event: str, data: Any) -> str:
    return json.dumps({"event": event, "data": data}, separators=(",", ":"))


def decode_event(message: Any) -> Tuple[str, Any]:
    if isinstance(message, bytes):
        message = message.decode("utf-8")

    if not isinstance(message, str):
        raise ValueError("Incoming message must be text JSON")

    envelope = json.loads(message)
    if not isinstance(envelope, dict):
        raise ValueError("Incoming message must be a JSON object")
    event = envelope.get("event")
    if not isinstance(event, str) or not event:
        raise ValueError("Incoming message has no 'event' name")
    return event, envelope.get("data")


async def _dispatch(handler: Callable[..., Any], *args: Any) -> None:
    try:
        result = handler(*args)
        if inspect.isawaitable(result):
            await result
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.exception("[Socket] Event handler %r failed", handler)


class TransportChannel:
    """
    Persistent event channel to the pose server over a single WebSocket.

    Owns the ConnectionState and the RetryPolicy. Unexpected disconnects are
    retried with exponential backoff until the policy is exhausted; the channel
    is then dead and only an explicit connect() revives it.
    """

    def __init__(self, config: StreamConfig, connector: Optional[Connector] = None) -> None:
        self.config = config
        self.uri = build_stream_uri(config.base_url, config.path)
        self.state = ConnectionState.DISCONNECTED
        self.retry = RetryPolicy(
            max_attempts=config.max_attempts,
            base_delay_sec=config.base_delay_sec,
            max_delay_sec=config.max_delay_sec,
        )
        self.dead = False
        self.auth_assumed = False
        self.last_error: Optional[str] = None

        self._connector = connector or websockets.connect
        self._token: Optional[str] = None
        self._socket: Any = None
        self._reader_task: Optional[asyncio.Task] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._backoff_pending = False
        self._closing = False
        self._handlers: Dict[str, List[EventHandler]] = {}
        self._message_handler: Optional[MessageHandler] = None
        self._auth_handlers: List[Callable[[], Any]] = []
        self._waiters: List[Tuple[FrozenSet[str], asyncio.Future]] = []
        self._send_tasks: set = set()
        self._last_send_warning_at = 0.0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self.state in (ConnectionState.CONNECTED, ConnectionState.AUTHENTICATED)

    @property
    def is_authenticated(self) -> bool:
        return self.state == ConnectionState.AUTHENTICATED

    async def connect(self) -> bool:
        if self.is_connected:
            return True
        if self._connect_task is not None and not self._connect_task.done():
            return await self._await_open(self._connect_task)

        if self.dead:
            logger.info("[Socket] Reconnect requested for dead channel; resetting retry policy")
            self.dead = False
            self.retry.reset()
        self.cancel_reconnect()
        self._closing = False
        return await self._await_open(self._start_open())

    def _start_open(self) -> asyncio.Task:
        if self._connect_task is None or self._connect_task.done():
            self._connect_task = asyncio.ensure_future(self._open())
        return self._connect_task

    @staticmethod
    async def _await_open(task: asyncio.Task) -> bool:
        # A disconnect() cancels the shared attempt; waiters see a failed connect.
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                return False
            raise

    async def _open(self) -> bool:
        self.state = ConnectionState.CONNECTING
        logger.info("[Socket] Connecting to %s", self.uri)
        try:
            socket = await asyncio.wait_for(
                self._connector(
                    self.uri,
                    ping_interval=20,
                    ping_timeout=20,
                    max_queue=16,
                ),
                timeout=self.config.connect_timeout_sec,
            )
        except asyncio.CancelledError:
            self.state = ConnectionState.DISCONNECTED
            raise
        except Exception as error:
            self.state = ConnectionState.DISCONNECTED
            self.last_error = str(error) or type(error).__name__
            lowered = self.last_error.lower()
            if "https" in lowered or "invalid http" in lowered or "status" in lowered:
                logger.warning(
                    "[Socket] Connection rejected. The endpoint appears to be HTTP/HTTPS "
                    "instead of a WebSocket stream. Check POSE_STREAM_PATH."
                )
            logger.warning("[Socket] Connection error: %s", self.last_error)
            self._schedule_reconnect()
            return False

        self._socket = socket
        self.state = ConnectionState.CONNECTED
        self._reader_task = asyncio.ensure_future(self._read_loop(socket))
        logger.info("[Socket] Connected to %s", self.uri)
        return True

    async def _read_loop(self, socket: Any) -> None:
        lost = False
        try:
            async for raw_message in socket:
                try:
                    event, data = decode_event(raw_message)
                except ValueError as error:
                    logger.warning("[Socket] Ignoring invalid message: %s", error)
                    continue
                await self._route(event, data)
            lost = True
        except asyncio.CancelledError:
            raise
        except Exception as error:
            self.last_error = str(error) or type(error).__name__
            logger.warning("[Socket] Connection lost: %s", self.last_error)
            lost = True
        finally:
            if self._socket is socket:
                self._socket = None
                self.state = ConnectionState.DISCONNECTED

        if lost and not self._closing:
            logger.info("[Socket] Disconnected from server unexpectedly")
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._closing or self.dead or self._backoff_pending:
            return
        if self.retry.exhausted:
            self.dead = True
            self.state = ConnectionState.DISCONNECTED
            logger.error(
                "[Socket] Max reconnection attempts (%d) reached; channel stopped until "
                "a new connection is requested",
                self.retry.max_attempts,
            )
            return

        delay = self.retry.next_delay()
        logger.info(
            "[Socket] Reconnection attempt %d/%d in %.1fs",
            self.retry.attempt,
            self.retry.max_attempts,
            delay,
        )
        self._backoff_pending = True
        self._reconnect_task = asyncio.ensure_future(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
        finally:
            self._backoff_pending = False
        if self._closing or self.dead:
            return
        connected = await self._await_open(self._start_open())
        if connected and self._token:
            logger.info("[Socket] Re-authenticating after reconnection")
            await self._join(self._token)

    def cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        self._backoff_pending = False
        if task is not None and not task.done():
            task.cancel()

    def pending_timers(self) -> int:
        task = self._reconnect_task
        return 1 if task is not None and not task.done() else 0

    async def disconnect(self) -> None:
        self._closing = True
        try:
            self.cancel_reconnect()
            if self._connect_task is not None and not self._connect_task.done():
                self._connect_task.cancel()
            self._connect_task = None

            socket = self._socket
            self._socket = None
            reader = self._reader_task
            self._reader_task = None
            if reader is not None and not reader.done() and reader is not asyncio.current_task():
                reader.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await reader
            if socket is not None:
                try:
                    await socket.close()
                except Exception as error:
                    logger.debug("[Socket] Error while closing socket: %s", error)
            for task in list(self._send_tasks):
                task.cancel()
        finally:
            was_connected = self.state != ConnectionState.DISCONNECTED
            self.state = ConnectionState.DISCONNECTED
            self.auth_assumed = False
            self._closing = False
            if was_connected:
                logger.info("[Socket] Disconnected")

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def set_token(self, token: Optional[str]) -> None:
        """Remember the credentials that every (re)connection joins with."""
        self._token = strip_bearer(token)

    def on_authenticated(self, handler: Callable[[], Any]) -> Callable[[], None]:
        self._auth_handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._auth_handlers:
                self._auth_handlers.remove(handler)

        return unsubscribe

    async def authenticate(self, token: Optional[str]) -> bool:
        token = strip_bearer(token)
        if not token:
            logger.warning("[Socket] No auth token found for socket authentication")
            return False
        self._token = token
        if not await self.connect():
            return False
        return await self._join(token)

    async def _join(self, token: str) -> bool:
        self.auth_assumed = False
        entry = self._expect(AUTH_EVENTS)
        try:
            if not await self.emit("join", {"token": token}):
                return False
            try:
                event, data = await asyncio.wait_for(entry[1], timeout=self.config.auth_timeout_sec)
            except asyncio.TimeoutError:
                if not self.config.assume_auth_on_timeout:
                    logger.warning(
                        "[Socket] No authentication acknowledgment within %.1fs",
                        self.config.auth_timeout_sec,
                    )
                    self.last_error = "authentication timeout"
                    return False
                logger.warning("[Socket] Authentication timeout, assuming success")
                self.auth_assumed = True
                await self._mark_authenticated()
                return True
        finally:
            self._forget(entry)

        if event == "join_result" and not (isinstance(data, Mapping) and data.get("success")):
            message = data.get("message") if isinstance(data, Mapping) else None
            self.last_error = message or "Unknown reason"
            logger.warning("[Socket] Authentication failed: %s", self.last_error)
            return False

        logger.info("[Socket] Authenticated (%s)", event)
        await self._mark_authenticated()
        return True

    async def _mark_authenticated(self) -> None:
        if self._socket is not None:
            self.state = ConnectionState.AUTHENTICATED
        self.retry.reset()
        for handler in list(self._auth_handlers):
            await _dispatch(handler)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def emit(self, event: str, data: Any) -> bool:
        socket = self._socket
        if socket is None or not self.is_connected:
            now = time.monotonic()
            if (now - self._last_send_warning_at) >= 2.0:
                self._last_send_warning_at = now
                logger.warning("[Socket] Cannot send %s: socket not connected", event)
            return False
        try:
            await socket.send(encode_event(event, data))
            return True
        except asyncio.CancelledError:
            raise
        except Exception as error:
            logger.warning("[Socket] Error sending %s: %s", event, error)
            return False

    def send(self, event: str, data: Any) -> None:
        task = asyncio.ensure_future(self.emit(event, data))
        self._send_tasks.add(task)
        task.add_done_callback(self._send_tasks.discard)

    async def request(
        self,
        event: str,
        data: Any,
        reply_events: Iterable[str],
        timeout: float,
    ) -> Optional[Tuple[str, Any]]:
        """Emit an event and wait for the first matching reply, or None on timeout."""
        entry = self._expect(reply_events)
        try:
            if not await self.emit(event, data):
                return None
            try:
                return await asyncio.wait_for(entry[1], timeout=timeout)
            except asyncio.TimeoutError:
                return None
        finally:
            self._forget(entry)

    # ------------------------------------------------------------------
    # Receiving
    # ------------------------------------------------------------------

    def on(self, event: str, handler: EventHandler) -> Callable[[], None]:
        self._handlers.setdefault(event, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def off(self, event: str) -> None:
        self._handlers.pop(event, None)

    def on_message(self, handler: Optional[MessageHandler]) -> Callable[[], None]:
        self._message_handler = handler

        def unsubscribe() -> None:
            if self._message_handler is handler:
                self._message_handler = None

        return unsubscribe

    def on_error(self, handler: ErrorHandler) -> Callable[[], None]:
        async def relay(data: Any) -> None:
            message = data.get("message") if isinstance(data, Mapping) else data
            if not isinstance(message, str) or not message.strip():
                message = "Unknown pose detection error"
            logger.info("[Socket] Pose detection error: %s", message)
            await _dispatch(handler, message)

        return self.on(ERROR_EVENT, relay)

    async def wait_for(self, events: Iterable[str], timeout: float) -> Optional[Tuple[str, Any]]:
        entry = self._expect(events)
        try:
            return await asyncio.wait_for(entry[1], timeout=timeout)
        except asyncio.TimeoutError:
            return None
        finally:
            self._forget(entry)

    def _expect(self, events: Iterable[str]) -> Tuple[FrozenSet[str], asyncio.Future]:
        entry = (frozenset(events), asyncio.get_running_loop().create_future())
        self._waiters.append(entry)
        return entry

    def _forget(self, entry: Tuple[FrozenSet[str], asyncio.Future]) -> None:
        if entry in self._waiters:
            self._waiters.remove(entry)

    async def _route(self, event: str, data: Any) -> None:
        for events, future in list(self._waiters):
            if event in events and not future.done():
                future.set_result((event, data))
        if event in RESULT_EVENTS and self._message_handler is not None:
            await _dispatch(self._message_handler, event, data)
        for handler in list(self._handlers.get(event, ())):
            await _dispatch(handler, data)

    def server_info(self) -> Dict[str, Any]:
        return {
            "uri": self.uri,
            "state": self.state.value,
            "connected": self.is_connected,
            "authenticated": self.is_authenticated,
            "auth_assumed": self.auth_assumed,
            "reconnect_attempt": self.retry.attempt,
            "max_attempts": self.retry.max_attempts,
            "dead": self.dead,
            "last_error": self.last_error,
        }
