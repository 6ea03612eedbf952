from __future__ import annotations

import json
import math
from typing import Any, Callable, List, Mapping, Optional, Sequence, Tuple

from pose_session.models import (
    EMPTY_ASSESSMENT,
    EMPTY_LANDMARKS,
    Landmark,
    LandmarkSet,
    PoseAssessment,
)

RawPoints = List[Any]
ShapeParser = Callable[[Any], Optional[RawPoints]]

ALTERNATIVE_POINT_FIELDS: Tuple[str, ...] = ("points", "positions", "coordinates")
SCORE_FIELDS: Tuple[str, ...] = ("score", "visibility", "confidence")


def coerce_payload(payload: Any) -> Any:
    """Decode text payloads; anything that is not JSON text is passed through."""
    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError:
            return None
    if isinstance(payload, str):
        try:
            return json.loads(payload)
        except ValueError:
            return None
    return payload


def _list_field(payload: Any, key: str) -> Optional[RawPoints]:
    if not isinstance(payload, Mapping):
        return None
    value = payload.get(key)
    if isinstance(value, list):
        return value
    return None


def _parse_landmarks_field(payload: Any) -> Optional[RawPoints]:
    return _list_field(payload, "landmarks")


def _parse_bare_array(payload: Any) -> Optional[RawPoints]:
    if isinstance(payload, list):
        return payload
    return None


def _parse_pose_keypoints(payload: Any) -> Optional[RawPoints]:
    if not isinstance(payload, Mapping):
        return None
    return _list_field(payload.get("pose"), "keypoints")


def _parse_keypoints_field(payload: Any) -> Optional[RawPoints]:
    return _list_field(payload, "keypoints")


def _parse_alternative_fields(payload: Any) -> Optional[RawPoints]:
    for key in ALTERNATIVE_POINT_FIELDS:
        points = _list_field(payload, key)
        if points is not None:
            return points
    return None


# Order is part of the contract: the first parser that recognizes a list wins.
PARSERS: Tuple[Tuple[str, ShapeParser], ...] = (
    ("landmarks", _parse_landmarks_field),
    ("bare_array", _parse_bare_array),
    ("pose.keypoints", _parse_pose_keypoints),
    ("keypoints", _parse_keypoints_field),
    ("alternative", _parse_alternative_fields),
)


def _as_coordinate(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"coordinate must be numeric, got {type(value).__name__}")
    coordinate = float(value)
    if not math.isfinite(coordinate):
        raise ValueError("coordinate must be finite")
    if coordinate < 0.0 or coordinate > 1.0:
        raise ValueError(f"coordinate {coordinate} outside [0, 1]")
    return coordinate


def _as_score(value: Any) -> float:
    if value is None:
        return 1.0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    score = float(value)
    if not math.isfinite(score):
        return 0.0
    return score


def _point_fields(raw_point: Any) -> Tuple[Any, Any, Any]:
    if isinstance(raw_point, Mapping):
        source: Mapping[str, Any] = raw_point
        position = raw_point.get("position")
        if "x" not in raw_point and isinstance(position, Mapping):
            source = position
        score = None
        for key in SCORE_FIELDS:
            if raw_point.get(key) is not None:
                score = raw_point.get(key)
                break
        return source.get("x"), source.get("y"), score

    if isinstance(raw_point, Sequence) and not isinstance(raw_point, (str, bytes)):
        if len(raw_point) < 2:
            raise ValueError("point array needs at least x and y")
        score = raw_point[2] if len(raw_point) > 2 else None
        return raw_point[0], raw_point[1], score

    raise ValueError(f"unsupported point type {type(raw_point).__name__}")


def _parse_point(raw_point: Any, index: int) -> Landmark:
    raw_x, raw_y, raw_score = _point_fields(raw_point)
    return Landmark(
        x=_as_coordinate(raw_x),
        y=_as_coordinate(raw_y),
        score=_as_score(raw_score),
        index=index,
    )


def _build_landmark_set(raw_points: RawPoints, shape: str) -> LandmarkSet:
    points: List[Landmark] = []
    for index, raw_point in enumerate(raw_points):
        try:
            points.append(_parse_point(raw_point, index))
        except ValueError:
            continue
    return LandmarkSet(points=tuple(points), shape=shape)


def match_shape(payload: Any) -> Optional[Tuple[str, RawPoints]]:
    payload = coerce_payload(payload)
    for tag, parser in PARSERS:
        raw_points = parser(payload)
        if raw_points is not None:
            return tag, raw_points
    return None


def normalize(payload: Any) -> LandmarkSet:
    """
    Map any known result shape onto a canonical LandmarkSet.

    Points with missing, non-numeric, non-finite or out-of-range coordinates
    are dropped. Unknown shapes give an empty set; this never raises.
    """
    try:
        matched = match_shape(payload)
        if matched is None:
            return EMPTY_LANDMARKS
        tag, raw_points = matched
        return _build_landmark_set(raw_points, tag)
    except Exception:
        return EMPTY_LANDMARKS


def _incorrect_indices(raw: Any) -> frozenset:
    if not isinstance(raw, (list, tuple, set, frozenset)):
        return frozenset()
    indices = set()
    for value in raw:
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            indices.add(value)
        elif isinstance(value, float) and value.is_integer():
            indices.add(int(value))
    return frozenset(indices)


def extract_assessment(payload: Any) -> PoseAssessment:
    """Read server-provided correctness only; nothing is inferred from coordinates."""
    payload = coerce_payload(payload)
    if not isinstance(payload, Mapping):
        return EMPTY_ASSESSMENT

    raw_correct = payload.get("is_correct")
    is_correct = raw_correct if isinstance(raw_correct, bool) else None
    raw_feedback = payload.get("feedback")
    feedback = raw_feedback.strip() if isinstance(raw_feedback, str) else ""
    return PoseAssessment(
        is_correct=is_correct,
        incorrect_point_indices=_incorrect_indices(payload.get("incorrect_points")),
        feedback=feedback,
    )


def extract_error(payload: Any) -> Optional[str]:
    payload = coerce_payload(payload)
    if not isinstance(payload, Mapping):
        return None
    error = payload.get("error")
    if isinstance(error, str) and error.strip():
        return error.strip()
    if isinstance(error, Mapping) and isinstance(error.get("message"), str):
        return error["message"].strip() or None
    if payload.get("success") is False and isinstance(payload.get("message"), str):
        return payload["message"].strip() or None
    return None
