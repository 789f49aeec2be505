"""Wiring of one complete voice loop."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from logging_setup import get_logger, Component
from .bus import EventBus, RemoteEvent
from .capture import CaptureSession, _default_device_query, _default_stream_factory
from .channel import ConversationChannel, CredentialProvider
from .config import VoiceLoopConfig
from .conversation import ConversationState
from .orchestrator import TurnOrchestrator
from .playback import AudioPlayer, _default_output_stream
from .remote import AgentApiClient, StaticCredentialProvider
from .transcriber import StreamingTranscriber
from .vad import VoiceActivityMonitor

logger = get_logger(Component.VOICE_LOOP)


@dataclass
class VoiceLoop:
    config: VoiceLoopConfig
    bus: EventBus
    client: AgentApiClient
    capture: CaptureSession
    monitor: VoiceActivityMonitor
    transcriber: StreamingTranscriber
    channel: ConversationChannel
    conversation: ConversationState
    player: AudioPlayer
    orchestrator: TurnOrchestrator

    async def start(self) -> str:
        """Open the remote session. Listening starts on the first start_turn()."""
        session_id = await self.orchestrator.initialize()
        logger.info("Voice loop ready", session_id=session_id)
        return session_id

    async def aclose(self) -> None:
        await self.orchestrator.shutdown()
        await self.bus.drain()
        await self.client.aclose()


def build_loop(
    config: VoiceLoopConfig,
    *,
    client: Optional[Any] = None,
    credential_provider: Optional[CredentialProvider] = None,
    on_credential_expired: Optional[CredentialProvider] = None,
    stream_factory: Callable[..., Any] = _default_stream_factory,
    device_query: Callable[[], List[dict]] = _default_device_query,
    output_factory: Callable[..., Any] = _default_output_stream,
    sleep: Callable[[float], Any] = asyncio.sleep,
) -> VoiceLoop:
    """Construct every component and connect them through one event bus."""
    bus = EventBus()
    client = client or AgentApiClient(
        config.api_url,
        events_url=config.events_url,
        timeout_s=config.http_timeout_s,
    )

    capture = CaptureSession(config.capture, stream_factory=stream_factory, device_query=device_query)
    monitor = VoiceActivityMonitor(config.silence, capture, bus=bus, sleep=sleep)
    transcriber = StreamingTranscriber(
        config.transcriber,
        client,
        sample_rate=config.capture.sample_rate,
        chunk_s=config.capture.chunk_s,
        bus=bus,
        sleep=sleep,
    )
    channel = ConversationChannel(
        config.channel,
        client,
        bus=bus,
        credential_provider=credential_provider or StaticCredentialProvider(config.api_token),
        on_credential_expired=on_credential_expired,
        sleep=sleep,
    )
    conversation = ConversationState(bus=bus, fade_s=config.turn.preview_fade_s, sleep=sleep)
    bus.subscribe(RemoteEvent, conversation.handle_remote_event)

    player = AudioPlayer(config.capture.sample_rate, output_factory=output_factory)
    orchestrator = TurnOrchestrator(
        config.turn,
        capture=capture,
        monitor=monitor,
        transcriber=transcriber,
        channel=channel,
        conversation=conversation,
        synthesizer=client,
        player=player,
        bus=bus,
        sleep=sleep,
    )
    return VoiceLoop(
        config=config,
        bus=bus,
        client=client,
        capture=capture,
        monitor=monitor,
        transcriber=transcriber,
        channel=channel,
        conversation=conversation,
        player=player,
        orchestrator=orchestrator,
    )
