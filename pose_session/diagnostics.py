"""
Human-readable explanations for pose backend and transport errors.
"""

from __future__ import annotations

from typing import Any, Optional, Tuple

import requests

UNKNOWN_ERROR_MESSAGE = "Unknown pose detection error"

# Routine notices the backend emits while the camera warms up; never shown to the user.
ROUTINE_PATTERNS: Tuple[str, ...] = (
    "no frame data",
    "no frame provided",
    "missing frame",
)

EXPLANATIONS: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (
        ("shape", "dimension", "broadcast", "reshape"),
        "We couldn't read your pose from this frame. Try different lighting or camera angle.",
    ),
    (
        ("no person", "no pose", "no landmarks", "no body", "not detected"),
        "Step back so your whole body is visible to the camera.",
    ),
    (
        ("decode", "jpeg", "invalid image", "base64", "corrupt"),
        "The camera frame could not be processed. Hold the phone steady and try again.",
    ),
    (
        ("timeout", "timed out"),
        "The pose server is taking too long to respond. Feedback may be delayed.",
    ),
    (
        ("401", "unauthorized", "invalid token", "token expired", "authentication"),
        "Your sign-in has expired. Log in again to restore full feedback.",
    ),
    (
        ("connection refused", "network", "unreachable", "connection reset"),
        "Can't reach the pose server. Check your network connection.",
    ),
)


def _as_text(raw_message: Any) -> str:
    if raw_message is None:
        return ""
    if isinstance(raw_message, bytes):
        return raw_message.decode("utf-8", errors="replace").strip()
    return str(raw_message).strip()


def is_routine(raw_message: Any) -> bool:
    lowered = _as_text(raw_message).lower()
    return any(pattern in lowered for pattern in ROUTINE_PATTERNS)


def explain(raw_message: Any) -> str:
    try:
        text = _as_text(raw_message)
    except Exception:
        return UNKNOWN_ERROR_MESSAGE
    if not text:
        return UNKNOWN_ERROR_MESSAGE

    lowered = text.lower()
    for patterns, explanation in EXPLANATIONS:
        if any(pattern in lowered for pattern in patterns):
            return explanation
    return text


def _response_message(response: Optional[requests.Response]) -> Optional[str]:
    if response is None:
        return None
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        message = body.get("message") or body.get("error")
        if isinstance(message, str) and message.strip():
            return message.strip()
    return None


def describe_http_error(error: BaseException) -> str:
    """
    Classify an HTTP failure: server answered with an error status, the request
    never got a response, or something else went wrong.
    """
    if isinstance(error, requests.HTTPError) and error.response is not None:
        status = error.response.status_code
        if status == 401:
            return "Authentication failed. Please check your connection and login status."
        message = _response_message(error.response) or "Server returned an error"
        return f"{message} (HTTP {status})"
    if isinstance(error, (requests.ConnectionError, requests.Timeout)):
        return "No response from server. Check your network connection."
    text = _as_text(error)
    return text or UNKNOWN_ERROR_MESSAGE
