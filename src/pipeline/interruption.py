"""Barge-in detection."""

from __future__ import annotations

import logging

from pipeline.sequencer import FragmentSequencer, PlaybackSink

LOGGER = logging.getLogger(__name__)


class InterruptionMonitor:
    """Truncates the current reply when the caller talks over it.

    Speech only counts as a barge-in while the caller still has audio queued or
    playing, and once the interim transcript is longer than ``min_chars`` so
    that clicks and single-syllable noise are ignored.
    """

    def __init__(self, sequencer: FragmentSequencer, sink: PlaybackSink, *, min_chars: int = 3) -> None:
        self._sequencer = sequencer
        self._sink = sink
        self._min_chars = min_chars
        self.interruptions = 0

    def should_interrupt(self, interim_text: str) -> bool:
        if len(interim_text.strip()) <= self._min_chars:
            return False
        return self._sequencer.has_outstanding()

    def interrupt(self, new_epoch: int) -> None:
        pending = len(self._sequencer.outstanding)
        self._sink.clear()
        self._sequencer.reset(new_epoch, barge_in=True)
        self.interruptions += 1
        LOGGER.info("Barge-in: cleared %s pending frames, now at epoch %s", pending, new_epoch)
