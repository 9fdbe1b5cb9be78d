"""Stream API Endpoints

Readers attach to a conversation's journal over SSE and may reconnect from
any index. Turns are started in the background; their events only ever
reach clients through the journal.
"""
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from streamline.providers.base import ConversationTurn, ProviderError, PromptTooLargeError, StreamOptions
from streamline.providers.cli_base import BaseCliProvider
from streamline.services.stream_service import StreamService
from streamline.storage.journal import EventJournal

router = APIRouter()
logger = structlog.get_logger(__name__)


class TurnMessage(BaseModel):
    role: str = Field(..., description="user or assistant")
    content: Any = Field(..., description="Plain text or a list of content blocks")


class StartTurnRequest(BaseModel):
    """Request model for starting a turn"""
    provider: str = Field(..., description="Registered provider name")
    messages: List[TurnMessage] = Field(..., min_length=1, description="Conversation so far, oldest first")
    model: Optional[str] = Field(None, description="Model override")
    system_prompt: Optional[str] = Field(None, description="System prompt")
    tools: List[Dict[str, Any]] = Field(default_factory=list, description="Tool definitions (name, description, input_schema)")
    allowed_tools: List[str] = Field(default_factory=list, description="Tool allowlist for CLI providers")
    thinking_budget: int = Field(0, ge=0, description="Extended thinking budget in tokens")
    reasoning_effort: Optional[str] = Field(None, description="Reasoning effort for Chat-Completions models")
    response_tokens: Optional[int] = Field(None, ge=1, description="Response token budget")
    interruption_reminder: Optional[str] = Field(None, description="Prepended to the turn when resuming after an abort")
    working_directory: Optional[str] = Field(None, description="Working directory for CLI providers")
    context_window_size: Optional[int] = Field(None, description="Model context window, used to enrich usage events")


class AbortRequest(BaseModel):
    skip_sync: bool = Field(False, description="Do not write the partial turn into the provider's native history")


class StreamStatusResponse(BaseModel):
    status: Optional[str]
    event_count: int
    metadata: Optional[Dict[str, Any]] = None


def get_journal() -> EventJournal:
    return EventJournal()


def get_stream_service(request: Request) -> StreamService:
    return request.app.state.stream_service


@router.post("/conversations/{conversation_id}/turns", status_code=202)
async def start_turn(
    conversation_id: str,
    body: StartTurnRequest,
    background_tasks: BackgroundTasks,
    service: StreamService = Depends(get_stream_service),
):
    """Start a turn; follow it through the stream endpoint"""
    if await service.journal.is_streaming(conversation_id):
        raise HTTPException(status_code=409, detail="A turn is already streaming for this conversation")

    try:
        provider = service.factory.get_provider(body.provider)
    except ProviderError as e:
        raise HTTPException(status_code=404, detail=str(e))

    options = StreamOptions(
        model=body.model,
        system_prompt=body.system_prompt,
        tools=body.tools,
        allowed_tools=body.allowed_tools,
        thinking_budget=body.thinking_budget,
        reasoning_effort=body.reasoning_effort,
        response_tokens=body.response_tokens,
        interruption_reminder=body.interruption_reminder,
        working_directory=Path(body.working_directory) if body.working_directory else None,
        context_window_size=body.context_window_size,
    )
    if isinstance(provider, BaseCliProvider):
        try:
            provider.validate_options(options, conversation_id)
        except PromptTooLargeError as e:
            raise HTTPException(status_code=413, detail=str(e))

    turns = [ConversationTurn(role=m.role, content=m.content) for m in body.messages]
    background_tasks.add_task(service.run_turn, conversation_id, body.provider, turns, options)
    logger.info("Turn accepted", conversation_id=conversation_id, provider=body.provider)
    return {"conversation_id": conversation_id, "status": "accepted"}


@router.get("/conversations/{conversation_id}/stream")
async def stream_events(
    conversation_id: str,
    from_index: int = Query(0, ge=0, description="First journal index to send"),
    journal: EventJournal = Depends(get_journal),
):
    """Replay journal entries from an index, then follow the live stream"""

    async def generate_stream():
        events = journal.read(conversation_id, from_index)
        try:
            async for entry in events:
                yield f"data: {json.dumps(entry)}\n\n"
        finally:
            await events.aclose()

    return StreamingResponse(
        generate_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.post("/conversations/{conversation_id}/abort")
async def abort_stream(
    conversation_id: str,
    body: Optional[AbortRequest] = None,
    journal: EventJournal = Depends(get_journal),
):
    """Ask the running turn to stop"""
    body = body or AbortRequest()
    if not await journal.is_streaming(conversation_id):
        raise HTTPException(status_code=404, detail="No active stream")
    await journal.set_abort(conversation_id, skip_sync=body.skip_sync)
    return {"success": True, "conversation_id": conversation_id, "skip_sync": body.skip_sync}


@router.get("/conversations/{conversation_id}/stream/status", response_model=StreamStatusResponse)
async def stream_status(conversation_id: str, journal: EventJournal = Depends(get_journal)):
    """Status, event count and metadata of the latest turn"""
    return StreamStatusResponse(
        status=await journal.get_status(conversation_id),
        event_count=await journal.event_count(conversation_id),
        metadata=await journal.get_metadata(conversation_id),
    )
