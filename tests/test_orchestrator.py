"""
Turn orchestrator tests.

Capture, voice activity, transcription, channel and playback are replaced by
fakes; the event bus and conversation ledger are real so signals flow the
way they do in the running loop.
"""
import asyncio
from types import SimpleNamespace

import pytest

from conftest import FakeClock, settle
from observability.event_store import event_store
from voice_loop.bus import (
    ConnectionFailed,
    ErrorRaised,
    EventBus,
    RemoteEvent,
    SilenceDetected,
    SilenceProgress,
    TranscriptPreview,
    TurnStateChanged,
)
from voice_loop.channel import ChannelConnection, ChannelStatus
from voice_loop.config import TurnConfig
from voice_loop.conversation import ConversationState, EntryRole
from voice_loop.errors import DeviceError, ErrorCodes, NetworkError
from voice_loop.orchestrator import TurnOrchestrator, TurnState
from voice_loop.remote import SentMessage


class FakeCapture:

    def __init__(self, error=None):
        self.error = error
        self.acquired = 0
        self.flushes = 0
        self.released = False

    async def acquire(self):
        if self.error is not None:
            raise self.error
        self.acquired += 1

    def flush(self):
        self.flushes += 1

    def release(self):
        self.released = True

    def add_reader(self, reader):
        return lambda: None


class FakeMonitor:

    def __init__(self):
        self.starts = 0
        self.stops = 0
        self.cleaned_up = False

    def start(self):
        self.starts += 1

    def stop(self):
        self.stops += 1

    def cleanup(self):
        self.cleaned_up = True


class FakeTranscriber:

    def __init__(self, *results):
        self.results = list(results)
        self.session_id = None
        self.turn_id = None
        self.starts = 0
        self.finalize_calls = 0

    def start(self, source):
        self.starts += 1

    def stop(self):
        pass

    async def finalize(self):
        self.finalize_calls += 1
        result = self.results.pop(0) if self.results else ""
        if isinstance(result, BaseException):
            raise result
        return result


class FakeChannel:

    def __init__(self, ready=True):
        self.session_id = "conv-1" if ready else None
        self.is_ready = ready
        self.connection = ChannelConnection(status=ChannelStatus.CONNECTED)
        self.sent = []
        self.send_error = None
        self.closed = False
        self.reconnects = 0

    @property
    def status(self):
        return self.connection.status

    async def initialize(self):
        self.session_id = "conv-1"
        self.is_ready = True
        return self.session_id

    async def send_message(self, text):
        self.sent.append(text)
        if self.send_error is not None:
            raise self.send_error
        return SentMessage(message_id=f"m-{len(self.sent)}", text=text)

    def close(self):
        self.closed = True

    def reconnect(self):
        self.reconnects += 1
        self.is_ready = True


class FakeSynthesizer:

    def __init__(self, result=None):
        self.result = {"audioBase64": "AAAA"} if result is None else result
        self.texts = []

    async def synthesize(self, text):
        self.texts.append(text)
        return self.result


class FakePlayer:

    def __init__(self, hold=False):
        self.hold = hold
        self.played = []
        self.stopped = 0
        self._release = asyncio.Event()
        self.is_playing = False

    async def play(self, audio_b64):
        self.played.append(audio_b64)
        if not self.hold:
            return True
        self.is_playing = True
        await self._release.wait()
        self.is_playing = False
        return False

    def stop(self):
        self.stopped += 1
        self._release.set()


def build(*transcripts, auto_resume=True, channel=None, capture=None, synthesizer=None, player=None):
    bus = EventBus()
    clock = FakeClock(start=1000.0)
    conversation = ConversationState(bus=bus, fade_s=0.0)
    bus.subscribe(RemoteEvent, conversation.handle_remote_event)
    loop = SimpleNamespace(
        bus=bus,
        clock=clock,
        conversation=conversation,
        capture=capture or FakeCapture(),
        monitor=FakeMonitor(),
        transcriber=FakeTranscriber(*transcripts),
        channel=channel or FakeChannel(),
        synthesizer=synthesizer or FakeSynthesizer(),
        player=player or FakePlayer(),
        states=[],
        errors=[],
    )
    loop.orchestrator = TurnOrchestrator(
        TurnConfig(auto_resume=auto_resume, resume_delay_s=0.5),
        capture=loop.capture,
        monitor=loop.monitor,
        transcriber=loop.transcriber,
        channel=loop.channel,
        conversation=conversation,
        synthesizer=loop.synthesizer,
        player=loop.player,
        bus=bus,
        now=clock.now,
        sleep=clock.sleep,
    )
    bus.subscribe(TurnStateChanged, lambda e: loop.states.append(e.current))
    bus.subscribe(ErrorRaised, loop.errors.append)
    return loop


def agent_says(loop, text, message_id="m-100"):
    loop.bus.publish(RemoteEvent(
        kind="message",
        session_id="conv-1",
        payload={"text": text, "role": "Agent", "messageId": message_id},
        timestamp="",
    ))


def texts(loop, role):
    return [e.text for e in loop.conversation.entries if e.role is role]


@pytest.mark.asyncio
async def test_full_turn_then_auto_resume():
    loop = build("hello")
    orch = loop.orchestrator

    assert await orch.start_turn() is True
    assert orch.state is TurnState.LISTENING
    assert orch.turn_id.startswith("turn_1_")
    assert loop.transcriber.turn_id == orch.turn_id

    loop.bus.publish(SilenceDetected(seconds=3.1))
    assert orch.state is TurnState.FINALIZING
    await settle()

    assert orch.state is TurnState.AWAITING_REMOTE_REPLY
    assert loop.channel.sent == ["hello"]
    assert texts(loop, EntryRole.USER) == ["hello"]
    assert loop.conversation.entries[0].message_id == "m-1"

    agent_says(loop, "Hi there")
    assert orch.state is TurnState.PLAYING_REPLY
    await settle()

    assert loop.synthesizer.texts == ["Hi there"]
    assert loop.player.played == ["AAAA"]
    assert loop.clock.sleeps == [0.5]
    assert orch.state is TurnState.LISTENING
    assert loop.monitor.starts == 2
    assert loop.states == ["listening", "finalizing", "awaiting_remote_reply", "playing_reply", "idle", "listening"]
    assert len(event_store.query(event_type="turn.submitted")) == 1


@pytest.mark.asyncio
async def test_remote_echo_of_user_message_not_duplicated():
    loop = build("hello")
    await loop.orchestrator.start_turn()
    loop.bus.publish(SilenceDetected(seconds=3.1))
    await settle()

    loop.bus.publish(RemoteEvent(
        kind="message",
        session_id="conv-1",
        payload={"text": "hello", "role": "EndUser", "messageId": "m-1"},
        timestamp="",
    ))

    assert texts(loop, EntryRole.USER) == ["hello"]
    assert loop.orchestrator.state is TurnState.AWAITING_REMOTE_REPLY


@pytest.mark.asyncio
async def test_start_while_listening_is_noop():
    loop = build()

    assert await loop.orchestrator.start_turn() is True
    assert await loop.orchestrator.start_turn() is False

    assert loop.monitor.starts == 1
    assert loop.transcriber.starts == 1
    assert loop.states == ["listening"]


@pytest.mark.asyncio
async def test_empty_transcript_sends_nothing():
    loop = build("   ")
    await loop.orchestrator.start_turn()

    loop.bus.publish(SilenceDetected(seconds=3.1))
    await settle()

    assert loop.channel.sent == []
    assert texts(loop, EntryRole.USER) == []
    assert len(event_store.query(event_type="turn.skipped_empty")) == 1
    # Straight back to listening for the next utterance
    assert loop.orchestrator.state is TurnState.LISTENING
    assert loop.monitor.starts == 2


@pytest.mark.asyncio
async def test_stale_silence_is_ignored():
    loop = build("hello")

    loop.bus.publish(SilenceDetected(seconds=3.1))
    assert loop.orchestrator.state is TurnState.IDLE

    await loop.orchestrator.start_turn()
    loop.bus.publish(SilenceDetected(seconds=3.1))
    loop.bus.publish(SilenceDetected(seconds=3.2))
    await settle()

    assert loop.transcriber.finalize_calls == 1
    assert loop.channel.sent == ["hello"]


@pytest.mark.asyncio
async def test_silence_progress_and_preview_only_while_listening():
    loop = build("hello world")
    orch = loop.orchestrator

    loop.bus.publish(SilenceProgress(seconds=1.5, fraction=0.5))
    loop.bus.publish(TranscriptPreview(text="ignored"))
    assert orch.silence_fraction == 0.0
    assert loop.conversation.open_preview is None

    await orch.start_turn()
    loop.bus.publish(SilenceProgress(seconds=1.5, fraction=0.5))
    loop.bus.publish(TranscriptPreview(text="hello wor"))

    assert orch.status()["silence_fraction"] == 0.5
    assert loop.conversation.open_preview.text == "hello wor"

    loop.bus.publish(SilenceDetected(seconds=3.1))
    await settle()

    assert loop.conversation.open_preview is None
    assert [e.role for e in loop.conversation.entries] == [EntryRole.USER]
    assert orch.silence_fraction == 0.0


@pytest.mark.asyncio
async def test_manual_stop_finalizes_and_never_resumes():
    loop = build("hello")
    orch = loop.orchestrator
    await orch.start_turn()

    orch.stop_turn()
    assert orch.state is TurnState.FINALIZING
    await settle()
    assert loop.channel.sent == ["hello"]

    agent_says(loop, "Sure")
    await settle()

    assert loop.player.played == ["AAAA"]
    assert orch.state is TurnState.IDLE
    assert loop.clock.sleeps == []
    assert loop.monitor.starts == 1


@pytest.mark.asyncio
async def test_manual_stop_interrupts_playback():
    loop = build("hello", player=FakePlayer(hold=True))
    orch = loop.orchestrator
    await orch.start_turn()
    loop.bus.publish(SilenceDetected(seconds=3.1))
    await settle()
    agent_says(loop, "A long answer")
    await settle()
    assert orch.state is TurnState.PLAYING_REPLY

    orch.stop_turn()
    await settle()

    assert loop.player.stopped == 1
    assert orch.state is TurnState.IDLE
    assert loop.monitor.starts == 1


@pytest.mark.asyncio
async def test_start_after_manual_stop_clears_it():
    loop = build("hello")
    orch = loop.orchestrator
    await orch.start_turn()
    orch.stop_turn()
    await settle()
    agent_says(loop, "Sure")
    await settle()
    assert orch.manual_stop

    assert await orch.start_turn() is True
    assert not orch.manual_stop


@pytest.mark.asyncio
async def test_stop_cancels_pending_resume():
    loop = build("hello")
    orch = loop.orchestrator

    async def never(_seconds):
        await asyncio.Event().wait()

    orch._sleep = never
    await orch.start_turn()
    loop.bus.publish(SilenceDetected(seconds=3.1))
    await settle()
    agent_says(loop, "Sure")
    await settle()
    assert orch.state is TurnState.IDLE

    orch.stop_turn()
    await settle()

    assert orch.state is TurnState.IDLE
    assert loop.monitor.starts == 1


@pytest.mark.asyncio
async def test_reply_outside_pending_turn_not_played():
    loop = build()
    await loop.orchestrator.start_turn()

    agent_says(loop, "Unprompted")
    await settle()

    assert loop.orchestrator.state is TurnState.LISTENING
    assert loop.synthesizer.texts == []
    assert texts(loop, EntryRole.AGENT) == ["Unprompted"]


@pytest.mark.asyncio
async def test_auto_resume_disabled_goes_idle():
    loop = build("hello", auto_resume=False)
    await loop.orchestrator.start_turn()
    loop.bus.publish(SilenceDetected(seconds=3.1))
    await settle()
    agent_says(loop, "Hi")
    await settle()

    assert loop.orchestrator.state is TurnState.IDLE
    assert loop.clock.sleeps == []


@pytest.mark.asyncio
async def test_transcription_failure_reports_and_continues():
    loop = build(NetworkError("Final transcription failed"))
    await loop.orchestrator.start_turn()

    loop.bus.publish(SilenceDetected(seconds=3.1))
    await settle()

    assert loop.channel.sent == []
    assert texts(loop, EntryRole.SYSTEM) == ["Network connection error occurred"]
    assert [(e.code, e.stage) for e in loop.errors] == [(ErrorCodes.NETWORK_ERROR, "finalizing")]
    assert loop.orchestrator.last_error == ErrorCodes.NETWORK_ERROR
    assert loop.states[-3:] == ["error", "idle", "listening"]
    assert len(event_store.query(event_type="turn.error")) == 1


@pytest.mark.asyncio
async def test_send_failure_keeps_user_entry():
    channel = FakeChannel()
    channel.send_error = NetworkError("send_message failed: 502")
    loop = build("hello", channel=channel, auto_resume=False)
    await loop.orchestrator.start_turn()

    loop.bus.publish(SilenceDetected(seconds=3.1))
    await settle()

    assert texts(loop, EntryRole.USER) == ["hello"]
    assert loop.errors[0].stage == "awaiting_remote_reply"
    assert loop.orchestrator.state is TurnState.IDLE


@pytest.mark.asyncio
async def test_synthesis_without_audio_is_an_error():
    loop = build("hello", synthesizer=FakeSynthesizer(result={}), auto_resume=False)
    await loop.orchestrator.start_turn()
    loop.bus.publish(SilenceDetected(seconds=3.1))
    await settle()

    agent_says(loop, "Hi")
    await settle()

    assert loop.player.played == []
    assert [(e.code, e.stage) for e in loop.errors] == [(ErrorCodes.VALIDATION_ERROR, "playing_reply")]
    assert loop.orchestrator.state is TurnState.IDLE


@pytest.mark.asyncio
async def test_start_without_session_fails():
    loop = build(channel=FakeChannel(ready=False))

    assert await loop.orchestrator.start_turn() is False

    assert loop.orchestrator.state is TurnState.IDLE
    assert loop.states == ["error", "idle"]
    assert loop.orchestrator.last_error == ErrorCodes.INITIALIZATION_ERROR
    assert loop.capture.acquired == 0


@pytest.mark.asyncio
async def test_microphone_failure_fails_start():
    loop = build(capture=FakeCapture(error=DeviceError("Failed to initialize audio device")))

    assert await loop.orchestrator.start_turn() is False

    assert loop.orchestrator.state is TurnState.IDLE
    assert loop.errors[0].code == ErrorCodes.DEVICE_ERROR
    assert texts(loop, EntryRole.SYSTEM) == ["Error accessing audio device"]
    assert loop.monitor.starts == 0


@pytest.mark.asyncio
async def test_connection_failure_surfaces_notice():
    loop = build()

    loop.bus.publish(ConnectionFailed(message="connection_failed", details={"attempts": 3}))

    assert loop.orchestrator.last_error == ErrorCodes.CONNECTION_FAILED
    assert len(texts(loop, EntryRole.SYSTEM)) == 1
    assert loop.errors[0].stage == "channel"


@pytest.mark.asyncio
async def test_connection_failure_while_awaiting_reply_ends_turn():
    loop = build("hello")
    orch = loop.orchestrator
    await orch.start_turn()
    loop.bus.publish(SilenceDetected(seconds=3.1))
    await settle()
    assert orch.state is TurnState.AWAITING_REMOTE_REPLY

    # The channel marks itself failed before publishing
    loop.channel.is_ready = False
    loop.bus.publish(ConnectionFailed(message="connection_failed", details={"attempts": 3}))

    assert orch.state is TurnState.IDLE
    assert loop.states[-2:] == ["error", "idle"]
    assert [(e.code, e.stage) for e in loop.errors] == [(ErrorCodes.CONNECTION_FAILED, "awaiting_remote_reply")]
    assert texts(loop, EntryRole.SYSTEM) == ["Failed to maintain connection to the conversation"]
    await settle()
    assert loop.clock.sleeps == []

    agent_says(loop, "Too late")
    await settle()
    assert loop.synthesizer.texts == []

    await orch.reconnect()
    assert loop.channel.reconnects == 1
    assert await orch.start_turn() is True


@pytest.mark.asyncio
async def test_conversation_closed_while_awaiting_reply_goes_idle():
    loop = build("hello")
    orch = loop.orchestrator
    await orch.start_turn()
    loop.bus.publish(SilenceDetected(seconds=3.1))
    await settle()

    loop.bus.publish(RemoteEvent(kind="close", session_id="conv-1", payload={"conversationId": "conv-1"}, timestamp=""))
    await settle()

    assert orch.state is TurnState.IDLE
    assert loop.states[-2:] == ["error", "idle"]
    assert loop.clock.sleeps == []
    assert loop.monitor.starts == 1

    # A closed conversation needs a fresh session
    await orch.reconnect()
    assert loop.channel.reconnects == 0
    assert await orch.start_turn() is True


@pytest.mark.asyncio
async def test_stop_while_awaiting_reply_allows_new_turn():
    loop = build("hello")
    orch = loop.orchestrator
    await orch.start_turn()
    loop.bus.publish(SilenceDetected(seconds=3.1))
    await settle()
    assert orch.state is TurnState.AWAITING_REMOTE_REPLY

    orch.stop_turn()
    assert orch.state is TurnState.IDLE

    agent_says(loop, "Late reply")
    await settle(100)
    assert loop.synthesizer.texts == []
    assert orch.state is TurnState.IDLE
    assert loop.clock.sleeps == []

    assert await orch.start_turn() is True
    assert orch.state is TurnState.LISTENING
    assert not orch.manual_stop


class SlowFailingChannel(FakeChannel):
    """Send stays in flight until released, then fails."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()

    async def send_message(self, text):
        self.sent.append(text)
        await self.gate.wait()
        raise NetworkError("send_message failed: 504")


@pytest.mark.asyncio
async def test_send_failure_of_abandoned_turn_leaves_new_turn_alone():
    channel = SlowFailingChannel()
    loop = build("hello", channel=channel)
    orch = loop.orchestrator
    await orch.start_turn()
    loop.bus.publish(SilenceDetected(seconds=3.1))
    await settle()
    orch.stop_turn()
    assert await orch.start_turn() is True

    channel.gate.set()
    await settle()

    assert orch.state is TurnState.LISTENING
    assert [(e.code, e.stage) for e in loop.errors] == [(ErrorCodes.NETWORK_ERROR, "awaiting_remote_reply")]
    assert loop.monitor.starts == 2


@pytest.mark.asyncio
async def test_closed_conversation_blocks_new_turns():
    loop = build()

    loop.bus.publish(RemoteEvent(kind="close", session_id="conv-1", payload={"conversationId": "conv-1"}, timestamp=""))

    assert loop.conversation.conversation_closed
    assert await loop.orchestrator.start_turn() is False
    assert loop.orchestrator.last_error == ErrorCodes.INITIALIZATION_ERROR


@pytest.mark.asyncio
async def test_initialize_binds_session():
    channel = FakeChannel(ready=False)
    loop = build(channel=channel)

    session_id = await loop.orchestrator.initialize()

    assert session_id == "conv-1"
    assert loop.transcriber.session_id == "conv-1"
    assert await loop.orchestrator.start_turn() is True


@pytest.mark.asyncio
async def test_status_snapshot():
    loop = build()
    await loop.orchestrator.start_turn()

    status = loop.orchestrator.status()

    assert status["state"] == "listening"
    assert status["session_id"] == "conv-1"
    assert status["connection_status"] == "connected"
    assert status["retry_count"] == 0
    assert status["manual_stop"] is False
    assert status["auto_resume"] is True


@pytest.mark.asyncio
async def test_shutdown_releases_resources():
    loop = build()
    await loop.orchestrator.start_turn()

    await loop.orchestrator.shutdown()

    assert loop.orchestrator.state is TurnState.IDLE
    assert loop.capture.released
    assert loop.channel.closed
    assert loop.monitor.cleaned_up
    loop.bus.publish(SilenceDetected(seconds=3.1))
    assert loop.transcriber.finalize_calls == 0
