"""Reordering of asynchronously synthesized reply fragments into playback order."""

from __future__ import annotations

import logging
import uuid
from typing import Protocol

from pipeline.events import IMMEDIATE, FragmentIndex

LOGGER = logging.getLogger(__name__)


class PlaybackSink(Protocol):
    """Outbound side of the telephony transport."""

    def send_audio(self, audio: bytes, mark: str) -> None:  # pragma: no cover - protocol stub
        ...

    def clear(self) -> None:  # pragma: no cover - protocol stub
        ...


class FragmentSequencer:
    """Sends fragments of the current epoch to the caller in strictly increasing index order.

    Fragments that arrive ahead of the cursor are buffered until every lower
    index has been sent. Each sent frame is paired with a fresh playback token
    that stays outstanding until the transport reports it played.
    """

    def __init__(self, sink: PlaybackSink, *, epoch: int = 0, max_buffered: int = 64) -> None:
        self._sink = sink
        self._epoch = epoch
        self._barge_in_epoch = epoch
        self._expected_index = 0
        self._buffer: dict[int, bytes] = {}
        self._outstanding: set[str] = set()
        self._reply_tokens: set[str] = set()
        self._skipped: set[int] = set()
        self._max_buffered = max_buffered

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def expected_index(self) -> int:
        return self._expected_index

    @property
    def buffered_indices(self) -> list[int]:
        return sorted(self._buffer)

    @property
    def outstanding(self) -> frozenset[str]:
        return frozenset(self._outstanding)

    def has_outstanding(self) -> bool:
        return bool(self._outstanding)

    def has_outstanding_reply(self) -> bool:
        """True when indexed frames of the current epoch are still unplayed."""

        return bool(self._reply_tokens)

    def is_stalled(self) -> bool:
        """True when fragments are waiting behind a missing index."""

        return bool(self._buffer)

    def submit(self, epoch: int, index: FragmentIndex, audio: bytes) -> list[str]:
        """Accept one synthesized fragment and return the tokens of every frame it released."""

        if index is IMMEDIATE:
            # Greetings survive ordinary turn changes, but not a barge-in.
            if epoch < self._barge_in_epoch:
                LOGGER.debug("Discarding immediate fragment from interrupted epoch %s", epoch)
                return []
            return [self._send(audio, reply=False)]

        if epoch != self._epoch:
            LOGGER.debug(
                "Discarding stale fragment epoch=%s index=%s (current epoch=%s)",
                epoch,
                index,
                self._epoch,
            )
            return []

        if index in self._skipped:
            LOGGER.info(
                "Discarding late fragment epoch=%s index=%s; it was skipped after a stall",
                epoch,
                index,
            )
            self._skipped.discard(index)
            return []

        if index < self._expected_index or index in self._buffer:
            LOGGER.warning(
                "Protocol violation: duplicate fragment epoch=%s index=%s (expected=%s)",
                epoch,
                index,
                self._expected_index,
            )
            return []

        if index > self._expected_index:
            self._buffer[index] = audio
            if len(self._buffer) > self._max_buffered:
                LOGGER.warning(
                    "Fragment buffer over capacity (%s > %s); skipping missing index %s",
                    len(self._buffer),
                    self._max_buffered,
                    self._expected_index,
                )
                return self.skip_gap()
            return []

        tokens = [self._send(audio)]
        self._expected_index += 1
        tokens.extend(self._drain())
        return tokens

    def skip_gap(self) -> list[str]:
        """Give up on the missing index and resume from the lowest buffered fragment."""

        if not self._buffer:
            return []
        lowest = min(self._buffer)
        LOGGER.warning(
            "Skipping fragments %s..%s of epoch %s",
            self._expected_index,
            lowest - 1,
            self._epoch,
        )
        self._skipped.update(range(self._expected_index, lowest))
        self._expected_index = lowest
        return self._drain()

    def complete(self, token: str) -> bool:
        """Mark a playback token as played. Returns False for unknown tokens."""

        try:
            self._outstanding.remove(token)
        except KeyError:
            return False
        self._reply_tokens.discard(token)
        return True

    def reset(self, new_epoch: int, *, barge_in: bool = False) -> None:
        dropped = len(self._buffer)
        self._buffer.clear()
        self._outstanding.clear()
        self._reply_tokens.clear()
        self._skipped.clear()
        self._expected_index = 0
        self._epoch = new_epoch
        if barge_in:
            self._barge_in_epoch = new_epoch
        LOGGER.debug("Sequencer reset to epoch %s (dropped %s buffered)", new_epoch, dropped)

    def _drain(self) -> list[str]:
        tokens: list[str] = []
        while self._expected_index in self._buffer:
            audio = self._buffer.pop(self._expected_index)
            tokens.append(self._send(audio))
            self._expected_index += 1
        return tokens

    def _send(self, audio: bytes, *, reply: bool = True) -> str:
        token = uuid.uuid4().hex
        self._sink.send_audio(audio, token)
        self._outstanding.add(token)
        if reply:
            self._reply_tokens.add(token)
        return token
