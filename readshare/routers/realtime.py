"""Realtime change stream (Server-Sent Events) and the reconciling snapshot."""
from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from readshare.config import get_settings
from readshare.db import get_db
from readshare.models.user import UserProfile
from readshare.schemas.realtime import SnapshotRead
from readshare.security import require_user
from readshare.services.changes import Subscription, get_change_feed
from readshare.services.realtime import COLLECTIONS, load_collection
from readshare.utils.time import utcnow

router = APIRouter(prefix="/realtime", tags=["realtime"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def format_sse_event(seq: int, event_type: str, payload: dict[str, Any]) -> str:
    return f"id: {seq}\nevent: {event_type}\ndata: {json.dumps(payload)}\n\n"


async def change_stream(
    subscription: Subscription,
    *,
    ping_seconds: float,
    is_disconnected: Callable[[], Awaitable[bool]],
) -> AsyncIterator[str]:
    """Render a subscription as SSE frames, pinging while idle."""

    seq = 0
    try:
        yield format_sse_event(seq, "ready", {"user_id": subscription.user_id, "collections": list(COLLECTIONS)})
        while True:
            if await is_disconnected():
                break
            try:
                change = await asyncio.wait_for(subscription.get(), timeout=ping_seconds)
            except asyncio.TimeoutError:
                yield ": ping\n\n"
                continue
            seq += 1
            yield format_sse_event(seq, change.op if change.op == "resync" else "change", change.as_dict())
    finally:
        subscription.close()


@router.get("/changes")
async def stream_changes(request: Request, user: UserProfile = Depends(require_user)) -> StreamingResponse:
    subscription = get_change_feed().subscribe(user.id)
    return StreamingResponse(
        change_stream(
            subscription,
            ping_seconds=get_settings().REALTIME_PING_SECONDS,
            is_disconnected=request.is_disconnected,
        ),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.get("/snapshot", response_model=SnapshotRead)
def snapshot(
    db: Session = Depends(get_db),
    user: UserProfile = Depends(require_user),
) -> dict[str, Any]:
    """All four collections at once, for the refetch after (re)connecting."""

    payload: dict[str, Any] = {name: load_collection(db, user.id, name) for name in COLLECTIONS}
    payload["generated_at"] = utcnow()
    return payload
