from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Iterator, Optional, Tuple


class TransportMode(str, Enum):
    STREAMING = "streaming"
    POLLING = "polling"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"


class SessionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    ENDING = "ending"


@dataclass(frozen=True)
class Landmark:
    x: float
    y: float
    score: float = 1.0
    # Position of the point in the server array; incorrect_points refers to it.
    index: int = 0


@dataclass(frozen=True)
class LandmarkSet:
    points: Tuple[Landmark, ...] = ()
    shape: Optional[str] = field(default=None, compare=False)

    def __len__(self) -> int:
        return len(self.points)

    def __iter__(self) -> Iterator[Landmark]:
        return iter(self.points)

    def by_index(self, index: int) -> Optional[Landmark]:
        for point in self.points:
            if point.index == index:
                return point
        return None


EMPTY_LANDMARKS = LandmarkSet()


@dataclass(frozen=True)
class PoseAssessment:
    is_correct: Optional[bool] = None
    incorrect_point_indices: FrozenSet[int] = frozenset()
    feedback: str = ""


EMPTY_ASSESSMENT = PoseAssessment()


@dataclass
class Session:
    id: str
    exercise_type: str
    user_id: str
    state: SessionState = SessionState.STARTING
    started_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class SessionHandle:
    session_id: str
    exercise_type: str
    user_id: str
    mode: TransportMode
    warning: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return self.warning is not None


@dataclass(frozen=True)
class PoseResult:
    session_id: str
    landmarks: LandmarkSet
    assessment: PoseAssessment
    source: str
    received_at: float = field(default_factory=time.time)


def local_session_id(now: Optional[float] = None) -> str:
    stamp = time.time() if now is None else now
    return f"local_session_{int(stamp * 1000)}"
