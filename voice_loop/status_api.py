"""
Status API.

Exposes the loop's observable outputs (turn state, silence progress,
connection status, conversation entries, structured events) plus start/stop
commands for a presentation layer.
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, Field

from logging_setup import get_logger, Component
from observability.events import Component as ObsComponent, EventEmitter, Severity
from observability.event_store import event_store
from .errors import VoiceLoopError

if TYPE_CHECKING:
    from .app import VoiceLoop

router = APIRouter(prefix="/loop", tags=["loop"])
emitter = EventEmitter(ObsComponent.STATUS_API)
logger = get_logger(Component.STATUS_API)


class LoopStatus(BaseModel):
    state: str
    turn_id: Optional[str] = None
    session_id: Optional[str] = None
    silence_fraction: float = 0.0
    connection_status: str
    retry_count: int = 0
    manual_stop: bool = False
    auto_resume: bool = True
    last_error: Optional[str] = None


class EntryModel(BaseModel):
    id: int
    text: str
    role: str
    display_name: str
    created_at: str
    fade_in: bool = False
    fade_out: bool = False
    is_final: bool = True
    message_id: Optional[str] = None


class EntriesResponse(BaseModel):
    order: str
    count: int
    agent_typing: bool = False
    conversation_closed: bool = False
    entries: List[EntryModel] = Field(default_factory=list)


class CommandResponse(BaseModel):
    status: str
    state: str


class DeviceModel(BaseModel):
    device_id: str
    label: str
    channels: int
    default_sample_rate: float


class SelectDeviceRequest(BaseModel):
    device_id: Optional[str] = Field(None, description="Input device id; null selects the system default")


def get_loop(request: Request):
    loop = getattr(request.app.state, "voice_loop", None)
    if loop is None:
        raise HTTPException(status_code=503, detail="loop_not_ready")
    return loop


def _command(loop: "VoiceLoop", command: str, result: str) -> CommandResponse:
    emitter.emit(
        "control.command_applied",
        loop.orchestrator.session_id,
        severity=Severity.INFO,
        correlation_id=f"cmd_{int(time.time() * 1000)}",
        command=command,
        result=result,
    )
    return CommandResponse(status=result, state=loop.orchestrator.state.value)


@router.get("/status", response_model=LoopStatus)
async def loop_status(loop=Depends(get_loop)) -> LoopStatus:
    return LoopStatus(**loop.orchestrator.status())


@router.get("/entries", response_model=EntriesResponse)
async def list_entries(
    order: str = Query("arrival", description="arrival | recent"),
    loop=Depends(get_loop),
) -> EntriesResponse:
    """Conversation entries; `recent` is a most-recent-first view."""
    conversation = loop.conversation
    if order == "recent":
        entries = conversation.recent_first()
    elif order == "arrival":
        entries = conversation.entries
    else:
        raise HTTPException(status_code=400, detail=f"Invalid order: {order}")
    return EntriesResponse(
        order=order,
        count=len(entries),
        agent_typing=conversation.agent_typing,
        conversation_closed=conversation.conversation_closed,
        entries=[EntryModel(**e.to_dict()) for e in entries],
    )


@router.get("/events")
async def list_events(
    event_type: Optional[str] = Query(None, description="Filter by event_type"),
    component: Optional[str] = Query(None, description="Filter by component"),
    correlation_id: Optional[str] = Query(None, description="Filter by turn id"),
    since: Optional[str] = Query(None, description="ISO timestamp (inclusive)"),
    limit: Optional[int] = Query(None, ge=1, le=1000, description="Max events to return"),
    loop=Depends(get_loop),
) -> dict:
    since_dt: Optional[datetime] = None
    if since:
        try:
            # '+' may arrive decoded as a space
            since_dt = datetime.fromisoformat(since.replace(" ", "+").replace("Z", "+00:00"))
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid since timestamp: {since}")
        if since_dt.tzinfo is None:
            raise HTTPException(status_code=400, detail="since must carry a timezone")

    session_id = loop.orchestrator.session_id
    events = event_store.query(
        session_id=session_id,
        event_type=event_type,
        component=component,
        correlation_id=correlation_id,
        since=since_dt,
        limit=limit,
    )
    return {"session_id": session_id, "events": events, "count": len(events)}


@router.post("/start", response_model=CommandResponse)
async def start_turn(loop=Depends(get_loop)) -> CommandResponse:
    started = await loop.orchestrator.start_turn()
    return _command(loop, "turn.start", "started" if started else "ignored")


@router.post("/stop", response_model=CommandResponse)
async def stop_turn(loop=Depends(get_loop)) -> CommandResponse:
    loop.orchestrator.stop_turn()
    return _command(loop, "turn.stop", "stopped")


@router.post("/reconnect", response_model=CommandResponse)
async def reconnect(loop=Depends(get_loop)) -> CommandResponse:
    """Re-initialize the conversation channel after connection_failed."""
    try:
        await loop.orchestrator.reconnect()
    except VoiceLoopError as e:
        raise HTTPException(status_code=503, detail=e.code)
    return _command(loop, "channel.reconnect", "reconnected")


@router.post("/conversation/clear", response_model=CommandResponse)
async def clear_conversation(loop=Depends(get_loop)) -> CommandResponse:
    loop.conversation.clear()
    return _command(loop, "conversation.clear", "cleared")


@router.get("/devices", response_model=List[DeviceModel])
async def list_devices(loop=Depends(get_loop)) -> List[DeviceModel]:
    try:
        devices = loop.capture.list_devices()
    except VoiceLoopError as e:
        raise HTTPException(status_code=503, detail=e.code)
    return [
        DeviceModel(
            device_id=d.device_id,
            label=d.label,
            channels=d.channels,
            default_sample_rate=d.default_sample_rate,
        )
        for d in devices
    ]


@router.post("/devices/select", response_model=CommandResponse)
async def select_device(req: SelectDeviceRequest, loop=Depends(get_loop)) -> CommandResponse:
    try:
        await loop.capture.change_device(req.device_id)
    except VoiceLoopError as e:
        raise HTTPException(status_code=503, detail=e.code)
    return _command(loop, "device.select", "selected")


def create_app(voice_loop: "VoiceLoop", *, manage_lifecycle: bool = True) -> FastAPI:
    """
    HTTP app serving the status router.

    With manage_lifecycle the remote session is opened on startup and the
    loop shut down on exit.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            try:
                await voice_loop.start()
            except VoiceLoopError as e:
                # Keep serving so the failure is visible through /loop/status
                logger.error("Voice loop failed to start", error=e.message, code=e.code)
        try:
            yield
        finally:
            if manage_lifecycle:
                await voice_loop.aclose()

    app = FastAPI(title="Voice Loop", lifespan=lifespan)
    app.state.voice_loop = voice_loop
    app.include_router(router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "component": "voice_loop"}

    return app
