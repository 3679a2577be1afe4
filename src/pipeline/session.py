"""Per-call session actor tying recognition, generation, synthesis and playback together."""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from collections.abc import Awaitable, Callable
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any

from config.settings import Settings
from integrations.twilio_streaming import (
    InboundFrame,
    MarkFrame,
    MediaFrame,
    StartFrame,
    StopFrame,
    TwilioTransport,
)
from llm.base import BaseLLMClient
from pipeline.dispatcher import SynthesisDispatcher
from pipeline.errors import ConfigurationNotFoundError, GenerationFailedError
from pipeline.events import (
    IMMEDIATE,
    AudioReceived,
    CallStarted,
    FinalTranscript,
    FragmentAudio,
    FragmentReady,
    GenerationFailed,
    GenerationFinished,
    InterimTranscript,
    PlaybackCompleted,
    SessionEvent,
    StallCheck,
    StopRequested,
    TransportFailed,
)
from pipeline.generator import ResponseGenerator, build_system_prompt
from pipeline.interruption import InterruptionMonitor
from pipeline.schemas import CallProfile, SessionInfo, SessionState
from pipeline.sequencer import FragmentSequencer
from speech.transcriber import BaseTranscriber
from speech.tts import BaseSynthesizer
from telephony.g711 import ulaw_silence

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class SessionDependencies:
    """External collaborators a session is built from."""

    lookup_profile: Callable[[str], Awaitable[CallProfile]]
    llm_factory: Callable[[], BaseLLMClient]
    synthesizer_factory: Callable[[str], BaseSynthesizer]
    transcriber_factory: Callable[[], BaseTranscriber]
    settings: Settings


class CallSession:
    """One call, processed as a single actor.

    Inbound frames and the results of background work (recognition, generation,
    synthesis) are posted to the session inbox; ``run`` handles them one at a
    time, so sequencing state, the epoch counter and the outstanding-token set
    are only ever touched from one place. Nothing here is shared between calls.
    """

    def __init__(self, transport: TwilioTransport, deps: SessionDependencies) -> None:
        self.info = SessionInfo()
        self._transport = transport
        self._deps = deps
        self._settings = deps.settings
        self._inbox: asyncio.Queue[SessionEvent] = asyncio.Queue()

        self.profile: CallProfile | None = None
        self.generator: ResponseGenerator | None = None
        self.dispatcher: SynthesisDispatcher | None = None
        self.sequencer: FragmentSequencer | None = None
        self.monitor: InterruptionMonitor | None = None
        self._transcriber: BaseTranscriber | None = None

        self._generation_task: asyncio.Task[None] | None = None
        self._recognition_task: asyncio.Task[None] | None = None
        self._stall_task: asyncio.Task[None] | None = None
        self._audio_task: asyncio.Task[None] | None = None
        self._audio_queue: asyncio.Queue[bytes] = asyncio.Queue()
        self._stall_key: tuple[int, int] | None = None

        transport.on_error = lambda exc: self.post(TransportFailed(error=exc))

        self._handlers: dict[type, Callable[[Any], Awaitable[None]]] = {
            CallStarted: self._on_call_started,
            AudioReceived: self._on_audio,
            PlaybackCompleted: self._on_playback_completed,
            StopRequested: self._on_stop_requested,
            TransportFailed: self._on_transport_failed,
            InterimTranscript: self._on_interim_transcript,
            FinalTranscript: self._on_final_transcript,
            FragmentReady: self._on_fragment_ready,
            FragmentAudio: self._on_fragment_audio,
            GenerationFinished: self._on_generation_finished,
            GenerationFailed: self._on_generation_failed,
            StallCheck: self._on_stall_check,
        }

    @property
    def state(self) -> SessionState:
        return self.info.state

    # Inbox -----------------------------------------------------------------

    def post(self, event: SessionEvent) -> None:
        if self.info.state is SessionState.CLOSED:
            LOGGER.debug("Session %s closed; dropping %s", self.info.session_id, type(event).__name__)
            return
        self._inbox.put_nowait(event)

    def handle_frame(self, frame: InboundFrame) -> None:
        """Translate one inbound Media Streams frame into a session event."""

        if isinstance(frame, StartFrame):
            self.post(
                CallStarted(
                    stream_sid=frame.stream_sid,
                    call_sid=frame.start.call_sid,
                    caller=frame.caller,
                    callee=frame.callee,
                )
            )
        elif isinstance(frame, MediaFrame):
            if frame.media.track and frame.media.track != "inbound":
                return
            self.post(AudioReceived(payload=frame.media.payload))
        elif isinstance(frame, MarkFrame):
            self.post(PlaybackCompleted(token=frame.mark.name))
        elif isinstance(frame, StopFrame):
            self.post(StopRequested())
        else:
            LOGGER.debug("Ignoring %s frame", frame.event)

    async def run(self) -> None:
        """Process inbox events until the session is closed."""

        try:
            while self.info.state is not SessionState.CLOSED:
                event = await self._inbox.get()
                await self._handlers[type(event)](event)
        finally:
            if self.info.state is not SessionState.CLOSED:
                await self._teardown(close_code=1011, reason="internal error")

    # Lifecycle ---------------------------------------------------------------

    async def start(self, event: CallStarted) -> None:
        if self.info.state is not SessionState.INIT:
            LOGGER.warning("Session %s received a second start; ignoring", self.info.session_id)
            return

        self.info.stream_sid = event.stream_sid
        self.info.call_sid = event.call_sid
        self.info.caller = event.caller
        self.info.callee = event.callee
        self._transport.bind(event.stream_sid)
        self._transport.start()

        try:
            profile = await self._deps.lookup_profile(event.callee or "")
            if not profile.is_active:
                raise ConfigurationNotFoundError(f"Configuration for {event.callee} is inactive")
        except ConfigurationNotFoundError as exc:
            LOGGER.error("Rejecting call %s to %s: %s", event.call_sid, event.callee, exc.detail)
            await self._teardown(close_code=exc.close_code, reason=exc.detail)
            return

        settings = self._settings
        greeting = profile.greeting or settings.default_greeting
        self.profile = profile
        self.sequencer = FragmentSequencer(
            self._transport,
            epoch=self.info.epoch,
            max_buffered=settings.max_buffered_fragments,
        )
        self.monitor = InterruptionMonitor(
            self.sequencer,
            self._transport,
            min_chars=settings.barge_in_min_chars,
        )
        self.generator = ResponseGenerator(
            self._deps.llm_factory(),
            system_prompt=build_system_prompt(profile.prompt, settings.fragment_break_marker),
            greeting=greeting,
            break_marker=settings.fragment_break_marker,
            max_fragment_chars=settings.max_fragment_chars,
            temperature=settings.llm_temperature,
        )
        self.dispatcher = SynthesisDispatcher(
            self._deps.synthesizer_factory(profile.voice_model),
            self.post,
            silence=ulaw_silence(settings.silence_placeholder_ms),
            break_marker=settings.fragment_break_marker,
        )
        self.info.state = SessionState.ACTIVE
        LOGGER.info(
            "Call %s started (session=%s, caller=%s, callee=%s, config=%s)",
            event.call_sid,
            self.info.session_id,
            event.caller,
            event.callee,
            profile.configuration_id,
        )

        try:
            transcriber = self._deps.transcriber_factory()
            await transcriber.connect()
        except Exception as exc:
            LOGGER.critical("Speech recognizer unavailable for call %s: %s", event.call_sid, exc)
        else:
            self._transcriber = transcriber
            self._recognition_task = asyncio.create_task(self._pump_recognition(transcriber), name="recognition")
            self._audio_task = asyncio.create_task(self._feed_recognizer(transcriber), name="recognizer-feed")

        self.dispatcher.dispatch(self.info.epoch, IMMEDIATE, greeting)

    async def stop(self) -> None:
        if self.info.state is SessionState.CLOSED:
            return
        self.info.state = SessionState.CLOSING
        await self._teardown()

    def on_recognized_utterance(self, text: str) -> None:
        if self.info.state is not SessionState.ACTIVE or self.generator is None:
            LOGGER.info("Ignoring utterance in state %s: %s", self.info.state.value, text)
            return

        self.info.interaction_count += 1
        epoch = self._next_epoch()
        if self._generation_task and not self._generation_task.done():
            self._generation_task.cancel()
        LOGGER.info("Caller (interaction %s): %s", self.info.interaction_count, text)
        self._generation_task = asyncio.create_task(
            self._run_generation(self.generator, text, self.info.interaction_count, epoch),
            name=f"generation-{epoch}",
        )

    def on_playback_completed(self, token: str) -> None:
        if self.sequencer is None:
            return
        if not self.sequencer.complete(token):
            LOGGER.debug("Mark %s is not outstanding (already played or cleared)", token)

    async def on_transport_error(self, error: BaseException) -> None:
        LOGGER.error("Transport error on call %s: %s", self.info.call_sid, error)
        await self._teardown(close_code=1011, reason="transport error")

    # Handlers ----------------------------------------------------------------

    async def _on_call_started(self, event: CallStarted) -> None:
        await self.start(event)

    async def _on_audio(self, event: AudioReceived) -> None:
        if self.info.state is not SessionState.ACTIVE or self._transcriber is None:
            return
        try:
            audio = base64.b64decode(event.payload, validate=True)
        except (binascii.Error, ValueError):
            LOGGER.warning("Discarding media frame with invalid base64 payload")
            return
        self._audio_queue.put_nowait(audio)

    async def _on_playback_completed(self, event: PlaybackCompleted) -> None:
        self.on_playback_completed(event.token)

    async def _on_stop_requested(self, event: StopRequested) -> None:
        LOGGER.info("Call %s stop requested (%s)", self.info.call_sid, event.reason)
        await self.stop()

    async def _on_transport_failed(self, event: TransportFailed) -> None:
        await self.on_transport_error(event.error)

    async def _on_interim_transcript(self, event: InterimTranscript) -> None:
        if self.info.state is not SessionState.ACTIVE or self.monitor is None:
            return
        if self.monitor.should_interrupt(event.text):
            self.monitor.interrupt(self._next_epoch(reset_sequencer=False))
            self._cancel_stall_timer()

    async def _on_final_transcript(self, event: FinalTranscript) -> None:
        self.on_recognized_utterance(event.text)

    async def _on_fragment_ready(self, event: FragmentReady) -> None:
        if self.info.state is not SessionState.ACTIVE or self.dispatcher is None:
            return
        if event.epoch != self.info.epoch:
            LOGGER.debug("Not synthesizing fragment %s of superseded epoch %s", event.index, event.epoch)
            return
        self.dispatcher.dispatch(event.epoch, event.index, event.text)

    async def _on_fragment_audio(self, event: FragmentAudio) -> None:
        if self.info.state is not SessionState.ACTIVE or self.sequencer is None:
            return
        if event.degraded:
            LOGGER.warning("Fragment %r of epoch %s replaced by silence", event.index, event.epoch)
        self.sequencer.submit(event.epoch, event.index, event.audio)
        self._schedule_stall_check()

    async def _on_generation_finished(self, event: GenerationFinished) -> None:
        LOGGER.info("Assistant (epoch %s, %s fragments): %s", event.epoch, event.fragment_count, event.reply)

    async def _on_generation_failed(self, event: GenerationFailed) -> None:
        LOGGER.error("Abandoning interaction of epoch %s: %s", event.epoch, event.error)
        if event.epoch != self.info.epoch or self.sequencer is None:
            return
        # Only the failed reply is cut off; a greeting still playing is left alone.
        if self.sequencer.has_outstanding_reply():
            self._transport.clear()
        self._next_epoch()
        self._cancel_stall_timer()

    async def _on_stall_check(self, event: StallCheck) -> None:
        sequencer = self.sequencer
        if self.info.state is not SessionState.ACTIVE or sequencer is None:
            return
        self._stall_task = None
        self._stall_key = None
        if sequencer.epoch != event.epoch or sequencer.expected_index != event.expected_index:
            self._schedule_stall_check()
            return
        if sequencer.is_stalled():
            LOGGER.warning(
                "Fragment %s of epoch %s never arrived within %.1fs",
                event.expected_index,
                event.epoch,
                self._settings.fragment_stall_timeout_seconds,
            )
            sequencer.skip_gap()
        self._schedule_stall_check()

    # Internals ---------------------------------------------------------------

    def _next_epoch(self, *, reset_sequencer: bool = True) -> int:
        self.info.epoch += 1
        if reset_sequencer and self.sequencer is not None:
            self.sequencer.reset(self.info.epoch)
        return self.info.epoch

    async def _run_generation(
        self, generator: ResponseGenerator, text: str, interaction: int, epoch: int
    ) -> None:
        try:
            async with aclosing(generator.generate(text, interaction, epoch)) as fragments:
                async for fragment in fragments:
                    self.post(fragment)
        except GenerationFailedError as exc:
            self.post(GenerationFailed(epoch=epoch, error=exc))
            return
        self.post(GenerationFinished(epoch=epoch, reply=generator.last_reply or "", fragment_count=generator.cursor))

    async def _pump_recognition(self, transcriber: BaseTranscriber) -> None:
        try:
            async for result in transcriber.results():
                if result.is_final:
                    self.post(FinalTranscript(text=result.text))
                else:
                    self.post(InterimTranscript(text=result.text))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.critical("Speech recognition stream failed for call %s: %s", self.info.call_sid, exc)

    async def _feed_recognizer(self, transcriber: BaseTranscriber) -> None:
        while True:
            audio = await self._audio_queue.get()
            await transcriber.send(audio)

    def _schedule_stall_check(self) -> None:
        sequencer = self.sequencer
        if sequencer is None or not sequencer.is_stalled():
            self._cancel_stall_timer()
            return
        key = (sequencer.epoch, sequencer.expected_index)
        if key == self._stall_key:
            return
        self._cancel_stall_timer()
        self._stall_key = key
        self._stall_task = asyncio.create_task(self._stall_timer(*key), name="stall-timer")

    async def _stall_timer(self, epoch: int, expected_index: int) -> None:
        await asyncio.sleep(self._settings.fragment_stall_timeout_seconds)
        self.post(StallCheck(epoch=epoch, expected_index=expected_index))

    def _cancel_stall_timer(self) -> None:
        if self._stall_task is not None:
            self._stall_task.cancel()
        self._stall_task = None
        self._stall_key = None

    async def _teardown(self, *, close_code: int = 1000, reason: str = "") -> None:
        tasks = [
            task
            for task in (self._generation_task, self._recognition_task, self._audio_task, self._stall_task)
            if task is not None and not task.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self.dispatcher is not None:
            await self.dispatcher.aclose()

        if self._transcriber is not None:
            try:
                await self._transcriber.close()
            except Exception as exc:
                LOGGER.warning("Failed to close speech recognizer: %s", exc)

        await self._transport.close(code=close_code, reason=reason)

        self._generation_task = self._recognition_task = self._audio_task = self._stall_task = None
        self._stall_key = None
        self.generator = None
        self.dispatcher = None
        self.sequencer = None
        self.monitor = None
        self._transcriber = None
        self.info.state = SessionState.CLOSED
        LOGGER.info("Session %s closed (call=%s)", self.info.session_id, self.info.call_sid)
