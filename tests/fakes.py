"""In-memory stand-ins for the WebSocket server and the HTTP session."""

import asyncio
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import requests

from pose_session.transport_channel import decode_event, encode_event

Reply = Tuple[str, Any]
Responder = Callable[[str, Any], Optional[Iterable[Reply]]]

_CLOSED = object()
_LOST = object()

JOIN_OK = {"success": True}


def make_responder(
    join: Optional[Any] = JOIN_OK,
    session_id: Optional[str] = "srv-session-1",
    end: bool = True,
) -> Responder:
    """Scripted server: None for any reply means the server stays silent."""

    def respond(event: str, data: Any) -> List[Reply]:
        if event == "join" and join is not None:
            return [("join_result", join)]
        if event == "start_exercise_session" and session_id is not None:
            return [("session_started", {"session_id": session_id})]
        if event == "end_exercise_session" and end:
            return [("session_ended", {"session_id": data.get("session_id")})]
        return []

    return respond


def silent_responder(event: str, data: Any) -> List[Reply]:
    return []


class InFlightTracker:
    """Counts overlapping frame deliveries across the stream and HTTP paths."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.active = 0
        self.max_active = 0
        self.total = 0

    def __enter__(self) -> "InFlightTracker":
        with self._lock:
            self.active += 1
            self.total += 1
            self.max_active = max(self.max_active, self.active)
        return self

    def __exit__(self, *exc_info: Any) -> None:
        with self._lock:
            self.active -= 1


class FakeSocket:
    def __init__(
        self,
        responder: Optional[Responder] = None,
        send_delay: float = 0.0,
        tracker: Optional["InFlightTracker"] = None,
    ) -> None:
        self.sent: List[Reply] = []
        self.closed = False
        self._responder = responder
        self._send_delay = send_delay
        self._tracker = tracker
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionError("socket is closed")
        event, data = decode_event(message)
        self.sent.append((event, data))
        if event == "detect_pose" and (self._send_delay or self._tracker is not None):
            with self._tracker or InFlightTracker():
                await asyncio.sleep(self._send_delay)
        if self._responder is not None:
            for reply_event, reply_data in self._responder(event, data) or ():
                self.push(reply_event, reply_data)

    def push(self, event: str, data: Any = None) -> None:
        self._incoming.put_nowait(encode_event(event, data))

    def push_raw(self, message: Any) -> None:
        self._incoming.put_nowait(message)

    def drop(self) -> None:
        """Simulate the server going away."""
        self._incoming.put_nowait(_LOST)

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(_CLOSED)

    def events(self, name: str) -> List[Any]:
        return [data for event, data in self.sent if event == name]

    def __aiter__(self) -> "FakeSocket":
        return self

    async def __anext__(self) -> Any:
        item = await self._incoming.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if item is _LOST:
            raise ConnectionResetError("connection reset by peer")
        return item


class FakeConnector:
    def __init__(
        self,
        responder: Optional[Responder] = None,
        fail_first: int = 0,
        always_fail: bool = False,
        send_delay: float = 0.0,
        tracker: Optional["InFlightTracker"] = None,
    ) -> None:
        self.responder = responder if responder is not None else make_responder()
        self.send_delay = send_delay
        self.tracker = tracker
        self.fail_first = fail_first
        self.always_fail = always_fail
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.sockets: List[FakeSocket] = []

    async def __call__(self, uri: str, **kwargs: Any) -> FakeSocket:
        self.calls.append((uri, kwargs))
        if self.always_fail or len(self.calls) <= self.fail_first:
            raise ConnectionRefusedError("[Errno 111] Connection refused")
        socket = FakeSocket(self.responder, self.send_delay, self.tracker)
        self.sockets.append(socket)
        return socket

    @property
    def last(self) -> FakeSocket:
        return self.sockets[-1]


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, invalid_json: bool = False) -> None:
        self.status_code = status_code
        self._payload = payload
        self._invalid_json = invalid_json

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)

    def json(self) -> Any:
        if self._invalid_json:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        return self._payload


class FakeHTTP:
    """Replays responses in order; the last one repeats."""

    def __init__(self, responses: Optional[List[FakeResponse]] = None, error: Optional[Exception] = None) -> None:
        self.responses = list(responses or [FakeResponse(payload={"landmarks": []})])
        self.error = error
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    def post(self, url: str, json: Any = None, headers: Any = None, timeout: Any = None) -> FakeResponse:
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if self.error is not None:
            raise self.error
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]

    def close(self) -> None:
        self.closed = True


class SlowHTTP(FakeHTTP):
    """Blocks inside post() like a real request; records a close() that lands mid-request."""

    def __init__(
        self,
        delay: float,
        tracker: Optional[InFlightTracker] = None,
        responses: Optional[List[FakeResponse]] = None,
    ) -> None:
        super().__init__(responses)
        self.delay = delay
        self.tracker = tracker
        self.busy = 0
        self.closed_while_busy = False

    def post(self, url: str, json: Any = None, headers: Any = None, timeout: Any = None) -> FakeResponse:
        self.busy += 1
        try:
            with self.tracker or InFlightTracker():
                time.sleep(self.delay)
            return super().post(url, json=json, headers=headers, timeout=timeout)
        finally:
            self.busy -= 1

    def close(self) -> None:
        if self.busy:
            self.closed_while_busy = True
        super().close()


def landmark_payload(count: int = 3, **extra: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "landmarks": [{"x": 0.1 * (i + 1), "y": 0.5, "score": 0.9} for i in range(count)],
    }
    payload.update(extra)
    return payload


async def settle(rounds: int = 5) -> None:
    """Let scheduled tasks (reader loops, dispatch) run."""
    for _ in range(rounds):
        await asyncio.sleep(0)
