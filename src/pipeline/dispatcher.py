"""Concurrent, unordered synthesis of reply fragments."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from pipeline.events import FragmentAudio, FragmentIndex, SessionEvent
from speech.tts import BaseSynthesizer

LOGGER = logging.getLogger(__name__)


class SynthesisDispatcher:
    """Runs one synthesis request per fragment and posts each result as it completes.

    A failed request is reported as a short silence at the same index, so the
    sequencer never waits for an index that will not arrive.
    """

    def __init__(
        self,
        synthesizer: BaseSynthesizer,
        publish: Callable[[SessionEvent], None],
        *,
        silence: bytes,
        break_marker: str = "•",
    ) -> None:
        self._synthesizer = synthesizer
        self._publish = publish
        self._silence = silence
        self._marker = break_marker
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def dispatch(self, epoch: int, index: FragmentIndex, text: str) -> asyncio.Task[None]:
        task = asyncio.create_task(
            self._synthesize(epoch, index, text),
            name=f"synthesis-{epoch}-{index}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def aclose(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    async def _synthesize(self, epoch: int, index: FragmentIndex, text: str) -> None:
        spoken = text.replace(self._marker, " ").strip()
        if not spoken:
            self._publish(FragmentAudio(epoch=epoch, index=index, audio=self._silence, degraded=True))
            return

        try:
            audio = await self._synthesizer.synthesize(spoken)
        except Exception as exc:
            LOGGER.error(
                "Synthesis failed for fragment epoch=%s index=%r; substituting silence: %s",
                epoch,
                index,
                exc,
            )
            self._publish(FragmentAudio(epoch=epoch, index=index, audio=self._silence, degraded=True))
            return

        self._publish(FragmentAudio(epoch=epoch, index=index, audio=audio))
