"""Messages exchanged between the stages of one call session.

Every stage posts one of these records into the session inbox; the session
actor is the only consumer.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Literal, Union


class _Immediate(enum.Enum):
    IMMEDIATE = "immediate"

    def __repr__(self) -> str:
        return "IMMEDIATE"


# Fragment index that bypasses ordering (greetings).
IMMEDIATE = _Immediate.IMMEDIATE

FragmentIndex = Union[int, Literal[_Immediate.IMMEDIATE]]


@dataclass(frozen=True, slots=True)
class CallStarted:
    stream_sid: str
    call_sid: str
    caller: str | None
    callee: str | None


@dataclass(frozen=True, slots=True)
class AudioReceived:
    payload: str


@dataclass(frozen=True, slots=True)
class PlaybackCompleted:
    token: str


@dataclass(frozen=True, slots=True)
class StopRequested:
    reason: str = "stop"


@dataclass(frozen=True, slots=True)
class TransportFailed:
    error: BaseException


@dataclass(frozen=True, slots=True)
class InterimTranscript:
    text: str


@dataclass(frozen=True, slots=True)
class FinalTranscript:
    text: str


@dataclass(frozen=True, slots=True)
class FragmentReady:
    epoch: int
    index: FragmentIndex
    text: str


@dataclass(frozen=True, slots=True)
class FragmentAudio:
    epoch: int
    index: FragmentIndex
    audio: bytes
    degraded: bool = False


@dataclass(frozen=True, slots=True)
class GenerationFinished:
    epoch: int
    reply: str
    fragment_count: int


@dataclass(frozen=True, slots=True)
class GenerationFailed:
    epoch: int
    error: BaseException


@dataclass(frozen=True, slots=True)
class StallCheck:
    epoch: int
    expected_index: int


SessionEvent = Union[
    CallStarted,
    AudioReceived,
    PlaybackCompleted,
    StopRequested,
    TransportFailed,
    InterimTranscript,
    FinalTranscript,
    FragmentReady,
    FragmentAudio,
    GenerationFinished,
    GenerationFailed,
    StallCheck,
]
