"""
Turn-taking state machine.

    Idle -> Listening -> Finalizing -> AwaitingRemoteReply -> PlayingReply -> {Listening | Idle}
    Error is reachable from any active state and always routes through the
    continuation check.

TurnOrchestrator is the only writer of TurnState. Every transition happens
synchronously before the next suspension point, so signals that arrive late
(silence after Finalizing began, a reply after a manual stop) see the new
state and are dropped instead of acted on twice.
"""

from __future__ import annotations

import asyncio
import itertools
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Set

from logging_setup import get_logger, Component
from observability.events import Component as EventComponent, EventEmitter, Severity, pii_fields
from .bus import (
    AgentReplyReady,
    ConnectionFailed,
    ConversationClosed,
    ErrorRaised,
    EventBus,
    SilenceDetected,
    SilenceProgress,
    TranscriptPreview,
    TurnStateChanged,
)
from .capture import CaptureSession
from .channel import ConversationChannel
from .config import TurnConfig
from .conversation import ConversationState, EntryRole
from .errors import (
    ChannelConnectionError,
    ErrorCodes,
    InitializationError,
    ValidationError,
    classify_error,
    get_user_message,
)
from .playback import AudioPlayer
from .transcriber import StreamingTranscriber
from .vad import VoiceActivityMonitor

logger = get_logger(Component.ORCHESTRATOR)


class TurnState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    FINALIZING = "finalizing"
    AWAITING_REMOTE_REPLY = "awaiting_remote_reply"
    PLAYING_REPLY = "playing_reply"
    ERROR = "error"


ACTIVE_STATES = {
    TurnState.LISTENING,
    TurnState.FINALIZING,
    TurnState.AWAITING_REMOTE_REPLY,
    TurnState.PLAYING_REPLY,
}


class Synthesizer(Protocol):
    def synthesize(self, text: str) -> Awaitable[Dict[str, Any]]: ...


class TurnOrchestrator:
    """Drives capture, voice activity, transcription, channel and playback through turns."""

    def __init__(
        self,
        config: TurnConfig,
        *,
        capture: CaptureSession,
        monitor: VoiceActivityMonitor,
        transcriber: StreamingTranscriber,
        channel: ConversationChannel,
        conversation: ConversationState,
        synthesizer: Synthesizer,
        player: AudioPlayer,
        bus: EventBus,
        now: Callable[[], float] = time.time,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.config = config
        self._capture = capture
        self._monitor = monitor
        self._transcriber = transcriber
        self._channel = channel
        self._conversation = conversation
        self._synthesizer = synthesizer
        self._player = player
        self._bus = bus
        self._now = now
        self._sleep = sleep
        self._events = EventEmitter(EventComponent.ORCHESTRATOR)

        self.state = TurnState.IDLE
        self.turn_id: Optional[str] = None
        self.manual_stop = False
        self.auto_resume = config.auto_resume
        self.silence_fraction = 0.0
        self.last_error: Optional[str] = None

        self._turn_seq = itertools.count(1)
        self._submitted: Set[str] = set()
        self._starting = False
        self._conversation_closed = False
        self._interrupt_reply = False
        self._tasks: Set[asyncio.Task] = set()
        self._resume_task: Optional[asyncio.Task] = None
        self._log = logger
        self._turn_log = logger

        self._unsubscribe = [
            bus.subscribe(SilenceDetected, self._on_silence_detected),
            bus.subscribe(SilenceProgress, self._on_silence_progress),
            bus.subscribe(TranscriptPreview, self._on_preview),
            bus.subscribe(AgentReplyReady, self._on_agent_reply),
            bus.subscribe(ConnectionFailed, self._on_connection_failed),
            bus.subscribe(ConversationClosed, self._on_conversation_closed),
        ]

    # --- observable state ---

    @property
    def session_id(self) -> Optional[str]:
        return self._channel.session_id

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "turn_id": self.turn_id,
            "session_id": self.session_id,
            "silence_fraction": round(self.silence_fraction, 3),
            "connection_status": self._channel.status.value,
            "retry_count": self._channel.connection.retry_count,
            "manual_stop": self.manual_stop,
            "auto_resume": self.auto_resume,
            "last_error": self.last_error,
        }

    def _set_state(self, new: TurnState) -> None:
        previous = self.state
        if previous == new:
            return
        self.state = new
        self._turn_log.debug("Turn state changed", previous=previous.value, current=new.value)
        self._events.emit(
            "turn.state_changed",
            self.session_id,
            correlation_id=self.turn_id,
            previous=previous.value,
            current=new.value,
        )
        self._bus.publish(TurnStateChanged(previous=previous.value, current=new.value, turn_id=self.turn_id))

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._log.error("Turn task failed", error=str(exc), error_type=type(exc).__name__)

    # --- session ---

    async def initialize(self) -> str:
        """Create the remote session and open the push-event stream."""
        session_id = await self._channel.initialize()
        self._log = logger.with_session(session_id)
        self._turn_log = self._log
        self._transcriber.session_id = session_id
        self._conversation_closed = False
        return session_id

    async def reconnect(self) -> str:
        """
        Explicit re-initialization after a terminal connection failure.

        Re-subscribes the existing session; a missing or closed session is
        created anew.
        """
        if self._channel.session_id is None or self._conversation_closed:
            return await self.initialize()
        self._channel.reconnect()
        self._log.info("Push-event stream re-initialized")
        return self._channel.session_id

    # --- commands ---

    async def start_turn(self) -> bool:
        """
        Manually start listening. Clears a previous manual stop.

        Returns False when a turn is already in progress.
        """
        if self.state in ACTIVE_STATES or self._starting:
            self._log.debug("Start ignored: turn in progress", state=self.state.value)
            return False
        self.manual_stop = False
        return await self._begin_listening()

    def stop_turn(self) -> None:
        """Manual stop. Wins over any pending or later auto-resume."""
        self.manual_stop = True
        self._cancel_resume()
        self._log.info("Manual stop requested", state=self.state.value)
        if self.state is TurnState.LISTENING:
            self._begin_finalizing("manual")
        elif self.state is TurnState.AWAITING_REMOTE_REPLY:
            # Abandon the pending reply; a late one is dropped as out of turn
            self._set_state(TurnState.IDLE)
        elif self.state is TurnState.PLAYING_REPLY:
            self._interrupt_reply = True
            self._player.stop()

    async def shutdown(self) -> None:
        """Stop everything and release the microphone."""
        self.manual_stop = True
        self._cancel_resume()
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []
        self._monitor.cleanup()
        self._transcriber.stop()
        self._player.stop()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._capture.release()
        self._channel.close()
        self._set_state(TurnState.IDLE)

    # --- Idle -> Listening ---

    async def _begin_listening(self) -> bool:
        if self.state is TurnState.LISTENING or self._starting:
            return False
        self._starting = True
        try:
            if not self._channel.is_ready:
                raise InitializationError("Conversation channel is not initialized")
            if self._conversation_closed:
                raise InitializationError("Conversation has been closed")
            await self._capture.acquire()
            if self.manual_stop:
                # Stopped while the microphone was being acquired
                return False

            self.turn_id = f"turn_{next(self._turn_seq)}_{int(self._now() * 1000)}"
            self._turn_log = self._log.with_turn(self.turn_id)
            self.silence_fraction = 0.0
            self._interrupt_reply = False
            self._conversation.discard_preview()
            # Drop audio buffered between turns
            self._capture.flush()
            self._transcriber.session_id = self.session_id
            self._transcriber.turn_id = self.turn_id
            self._transcriber.start(self._capture)
            try:
                self._monitor.start()
            except Exception:
                self._transcriber.stop()
                raise
            self._set_state(TurnState.LISTENING)
        except Exception as e:
            self._fail_start(e)
            return False
        finally:
            self._starting = False

        self._events.emit("turn.started", self.session_id, correlation_id=self.turn_id)
        self._turn_log.info("Listening")
        return True

    def _fail_start(self, error: BaseException) -> None:
        err = classify_error(error)
        self._report_error(err, "start")
        self._set_state(TurnState.ERROR)
        # A turn that never started has nothing to resume
        self._set_state(TurnState.IDLE)

    # --- Listening -> Finalizing ---

    def _on_silence_detected(self, event: SilenceDetected) -> None:
        if self.state is not TurnState.LISTENING:
            self._log.debug("Stale silence signal ignored", state=self.state.value)
            return
        self._events.emit(
            "silence.detected",
            self.session_id,
            correlation_id=self.turn_id,
            smoothed_silence_s=round(event.seconds, 3),
        )
        self._begin_finalizing("silence")

    def _on_silence_progress(self, event: SilenceProgress) -> None:
        if self.state is TurnState.LISTENING:
            self.silence_fraction = event.fraction

    def _on_preview(self, event: TranscriptPreview) -> None:
        if self.state is TurnState.LISTENING:
            self._conversation.upsert_preview(event.text)

    def _begin_finalizing(self, reason: str) -> None:
        if self.state is not TurnState.LISTENING:
            return
        self._set_state(TurnState.FINALIZING)
        self._monitor.stop()
        # Partial chunk goes to the transcriber before it detaches
        self._capture.flush()
        self._transcriber.stop()
        self._conversation.resolve_preview()
        self.silence_fraction = 0.0
        self._turn_log.info("Finalizing turn", reason=reason)
        self._spawn(self._finalize_turn(self.turn_id))

    # --- Finalizing -> AwaitingRemoteReply ---

    async def _finalize_turn(self, turn_id: Optional[str]) -> None:
        try:
            text = await self._transcriber.finalize()
        except Exception as e:
            self._handle_failure(e, "finalizing")
            return

        if turn_id != self.turn_id or self.state is not TurnState.FINALIZING:
            return

        if not text.strip():
            self._events.emit("turn.skipped_empty", self.session_id, correlation_id=turn_id)
            self._log.with_turn(turn_id).info("Empty transcript; nothing submitted")
            self._continue()
            return

        if turn_id in self._submitted:
            self._log.with_turn(turn_id).warning("Duplicate submission suppressed")
            return
        self._submitted.add(turn_id)

        entry = self._conversation.add_message(text, EntryRole.USER)
        # Set before the send so a reply racing the acknowledgement is accepted
        self._set_state(TurnState.AWAITING_REMOTE_REPLY)
        try:
            sent = await self._channel.send_message(text)
        except Exception as e:
            if turn_id != self.turn_id or self.state is not TurnState.AWAITING_REMOTE_REPLY:
                # Turn already abandoned (manual stop or lost channel); report only
                self._report_error(classify_error(e), "awaiting_remote_reply")
                return
            self._handle_failure(e, "awaiting_remote_reply")
            return
        if entry.message_id is None and sent.message_id:
            self._conversation.claim_message_id(entry, sent.message_id)
        self._events.emit(
            "turn.submitted",
            self.session_id,
            correlation_id=turn_id,
            pii=pii_fields("text"),
            message_id=sent.message_id,
            text=text,
        )

    # --- AwaitingRemoteReply -> PlayingReply ---

    def _on_agent_reply(self, event: AgentReplyReady) -> None:
        if self.state is not TurnState.AWAITING_REMOTE_REPLY:
            self._log.debug("Agent reply outside a pending turn; not played", state=self.state.value)
            return
        self._set_state(TurnState.PLAYING_REPLY)
        self._spawn(self._play_reply(event.text, self.turn_id))

    async def _play_reply(self, text: str, turn_id: Optional[str]) -> None:
        start_ts = time.perf_counter()
        self._events.emit("tts.started", self.session_id, correlation_id=turn_id, text_length=len(text))
        completed = False
        try:
            result = await self._synthesizer.synthesize(text)
            audio = (result or {}).get("audioBase64") or (result or {}).get("audioContent")
            if not audio:
                raise ValidationError("Synthesis returned no audio")
            if not self._interrupt_reply:
                completed = await self._player.play(audio)
        except Exception as e:
            self._events.emit(
                "tts.stopped",
                self.session_id,
                severity=Severity.ERROR,
                correlation_id=turn_id,
                error_type=type(e).__name__,
                latency_ms=int((time.perf_counter() - start_ts) * 1000),
            )
            self._handle_failure(e, "playing_reply")
            return

        self._events.emit(
            "tts.stopped",
            self.session_id,
            correlation_id=turn_id,
            completed=completed,
            latency_ms=int((time.perf_counter() - start_ts) * 1000),
        )
        self._continue()

    # --- continuation ---

    def _continue(self) -> None:
        """Back to Listening after the resume delay, or Idle."""
        if (
            self.manual_stop
            or not self.auto_resume
            or self._conversation_closed
            or not self._channel.is_ready
            or self._player.is_playing
        ):
            self._set_state(TurnState.IDLE)
            return
        self._set_state(TurnState.IDLE)
        self._cancel_resume()
        self._resume_task = self._spawn(self._resume_after_delay())

    async def _resume_after_delay(self) -> None:
        await self._sleep(self.config.resume_delay_s)
        if self.manual_stop or self.state is not TurnState.IDLE:
            return
        await self._begin_listening()

    def _cancel_resume(self) -> None:
        task, self._resume_task = self._resume_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # --- errors ---

    def _handle_failure(self, error: BaseException, stage: str) -> None:
        err = classify_error(error)
        self._report_error(err, stage)
        self._set_state(TurnState.ERROR)
        self._continue()

    def _report_error(self, err, stage: str) -> None:
        self.last_error = err.code
        self._log.error(
            "Turn failed",
            stage=stage,
            error=err.message,
            error_type=type(err).__name__,
            code=err.code,
        )
        self._events.emit(
            "turn.error",
            self.session_id,
            severity=Severity.ERROR,
            correlation_id=self.turn_id,
            stage=stage,
            code=err.code,
        )
        self._conversation.add_message(err.user_message, EntryRole.SYSTEM)
        self._bus.publish(ErrorRaised(code=err.code, message=err.message, stage=stage))

    def _on_connection_failed(self, event: ConnectionFailed) -> None:
        self._cancel_resume()
        if self.state is TurnState.AWAITING_REMOTE_REPLY:
            # The reply can no longer arrive
            self._handle_failure(
                ChannelConnectionError("Push-event stream lost while awaiting reply", dict(event.details)),
                "awaiting_remote_reply",
            )
            return
        self.last_error = ErrorCodes.CONNECTION_FAILED
        self._conversation.add_message(get_user_message(ErrorCodes.CONNECTION_FAILED), EntryRole.SYSTEM)
        self._bus.publish(ErrorRaised(code=ErrorCodes.CONNECTION_FAILED, message=event.message, stage="channel"))

    def _on_conversation_closed(self, event: ConversationClosed) -> None:
        self._conversation_closed = True
        self._cancel_resume()
        if self.state is TurnState.LISTENING:
            self._begin_finalizing("closed")
        elif self.state is TurnState.AWAITING_REMOTE_REPLY:
            self._turn_log.warning("Conversation closed before the agent replied")
            self._set_state(TurnState.ERROR)
            self._continue()
