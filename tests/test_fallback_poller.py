"""Tests for the HTTP polling path."""

import asyncio
import sys
from pathlib import Path

import requests

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from pose_session.fallback_poller import FallbackPoller, PollConfig
from pose_session.frame_source import FrameToken

from fakes import FakeHTTP, FakeResponse, SlowHTTP, landmark_payload


def _make_poller(http=None, token="Bearer tok-9", interval_sec=0.02):
    http = http or FakeHTTP([FakeResponse(payload=landmark_payload())])
    config = PollConfig(base_url="http://10.0.2.2:5000/", interval_sec=interval_sec, timeout_sec=1.0)
    return FallbackPoller(config, token=token, http=http), http


# ---------------------------------------------------------------------------
# 1. Single requests
# ---------------------------------------------------------------------------

class TestPoll:
    def test_frame_request_body(self):
        async def scenario():
            poller, http = _make_poller()
            result = await poller.poll("squat", "BASE64JPEG")
            assert result == landmark_payload()
            call = http.calls[0]
            assert call["url"] == "http://10.0.2.2:5000/pose/detect"
            assert call["json"]["frame"] == "BASE64JPEG"
            assert call["json"]["format"] == "jpeg"
            assert call["json"]["exercise_type"] == "squat"
            assert isinstance(call["json"]["timestamp"], int)
            assert "signal" not in call["json"]
            assert call["headers"]["Authorization"] == "Bearer tok-9"
            assert call["timeout"] == 1.0

        asyncio.run(scenario())

    def test_frameless_request_asks_server_to_detect(self):
        async def scenario():
            poller, http = _make_poller(token=None)
            await poller.poll("lunge")
            body = http.calls[0]["json"]
            assert body["signal"] == "request_detection"
            assert "frame" not in body
            assert "Authorization" not in http.calls[0]["headers"]

        asyncio.run(scenario())

    def test_validate_form(self):
        async def scenario():
            poller, http = _make_poller(FakeHTTP([FakeResponse(payload={"is_correct": True})]))
            result = await poller.validate_form("squat", [{"x": 0.1, "y": 0.2}])
            assert result == {"is_correct": True}
            assert http.calls[0]["url"].endswith("/pose/validate")
            assert http.calls[0]["json"]["landmarks"] == [{"x": 0.1, "y": 0.2}]

        asyncio.run(scenario())


class TestPollFailures:
    def _run_failure(self, http):
        async def scenario():
            poller, _ = _make_poller(http)
            reported = []
            poller.on_error(reported.append)
            result = await poller.poll("squat", "F")
            return poller, reported, result

        return asyncio.run(scenario())

    def test_unauthorized(self):
        poller, reported, result = self._run_failure(FakeHTTP([FakeResponse(status_code=401)]))
        assert result is None
        assert reported == ["Authentication failed. Please check your connection and login status."]
        assert poller.failures == 1
        assert poller.last_error == reported[0]

    def test_server_error_status(self):
        poller, reported, result = self._run_failure(
            FakeHTTP([FakeResponse(status_code=503, payload={"error": "Model loading"})])
        )
        assert result is None
        assert reported == ["Model loading (HTTP 503)"]

    def test_no_response(self):
        poller, reported, result = self._run_failure(FakeHTTP(error=requests.ConnectionError("refused")))
        assert result is None
        assert reported[0].startswith("No response from server")

    def test_invalid_json(self):
        poller, reported, result = self._run_failure(FakeHTTP([FakeResponse(invalid_json=True)]))
        assert result is None
        assert reported[0].startswith("Invalid response from pose server")


# ---------------------------------------------------------------------------
# 2. Fixed-interval timer
# ---------------------------------------------------------------------------

class TestPollingTimer:
    def test_start_delivers_results_until_stopped(self):
        async def scenario():
            poller, http = _make_poller()
            results = []
            frames = iter(["F1", "F2"])
            poller.start("squat", results.append, lambda: next(frames, None))
            assert poller.pending_timers() == 1
            await asyncio.sleep(0.15)
            poller.stop()
            assert poller.pending_timers() == 0
            assert len(results) >= 2
            sent_frames = [call["json"].get("frame") for call in http.calls]
            assert sent_frames[:2] == ["F1", "F2"]
            assert all(frame is None for frame in sent_frames[2:])
            count = len(http.calls)
            await asyncio.sleep(0.05)
            assert len(http.calls) <= count + 1

        asyncio.run(scenario())

    def test_start_is_idempotent(self):
        async def scenario():
            poller, _ = _make_poller(interval_sec=1.0)
            poller.start("squat", lambda result: None)
            first = poller._task
            poller.start("squat", lambda result: None)
            assert poller._task is first
            poller.stop()

        asyncio.run(scenario())

    def test_failures_do_not_stop_the_timer(self):
        async def scenario():
            poller, http = _make_poller(FakeHTTP(error=requests.Timeout("slow")))
            poller.start("squat", lambda result: None)
            await asyncio.sleep(0.1)
            assert poller.is_running
            assert poller.failures >= 2
            await poller.aclose()
            assert http.closed
            assert not poller.is_running

        asyncio.run(scenario())

    def test_async_result_handler(self):
        async def scenario():
            poller, _ = _make_poller()
            results = []

            async def on_result(payload):
                results.append(payload)

            poller.start("squat", on_result)
            await asyncio.sleep(0.05)
            poller.stop()
            assert results

        asyncio.run(scenario())

    def test_shared_token_skips_rounds_while_taken(self):
        async def scenario():
            poller, http = _make_poller()
            token = FrameToken()
            assert token.try_acquire()
            poller.start("squat", lambda result: None, lambda: "F1", token)
            await asyncio.sleep(0.08)
            assert http.calls == []
            token.release()
            await asyncio.sleep(0.08)
            assert http.calls
            await poller.aclose()
            assert not token.in_flight

        asyncio.run(scenario())

    def test_aclose_waits_for_the_request_in_flight(self):
        async def scenario():
            http = SlowHTTP(delay=0.1, responses=[FakeResponse(payload=landmark_payload())])
            poller, _ = _make_poller(http)
            poller.start("squat", lambda result: None)
            await asyncio.sleep(0.03)
            assert http.busy == 1
            await poller.aclose()
            assert http.closed
            assert not http.closed_while_busy
            assert http.busy == 0

        asyncio.run(scenario())
