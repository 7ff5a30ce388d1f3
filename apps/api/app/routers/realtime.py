import asyncio
from typing import Literal

from fastapi import APIRouter, HTTPException, Query, WebSocket, WebSocketDisconnect, status

from app.auth.dependencies import ROLE_RIDER, auth_context_from_token
from app.integrations.realtime import connection_hub, rider_channel, user_channel
from app.observability import log_event, metrics_store

router = APIRouter(prefix="/api/v1/realtime", tags=["realtime"])

ChannelKind = Literal["user", "rider"]


async def _forward(websocket: WebSocket, queue: asyncio.Queue) -> None:
    while True:
        message = await queue.get()
        await websocket.send_json(message)


async def _wait_for_close(websocket: WebSocket) -> None:
    # Client frames are ignored; receiving is how a disconnect is noticed
    while True:
        await websocket.receive_text()


@router.websocket("/{kind}/{subject_id}")
async def realtime_endpoint(
    websocket: WebSocket,
    kind: ChannelKind,
    subject_id: str,
    token: str | None = Query(default=None),
) -> None:
    """Stream one ``user:<id>`` or ``rider:<id>`` channel to the connected client.

    Browsers cannot set headers on a WebSocket handshake, so the bearer token
    travels as the ``token`` query parameter.
    """
    try:
        auth = auth_context_from_token(token or "")
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    if not auth.is_backoffice:
        if auth.user_id != subject_id or (kind == "rider" and auth.role != ROLE_RIDER):
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

    channel = user_channel(subject_id) if kind == "user" else rider_channel(subject_id)
    await websocket.accept()
    subscriber = connection_hub.subscribe(channel)
    metrics_store.increment("realtime_connections_total")
    log_event(f"realtime_subscribed channel={channel}")

    tasks: list[asyncio.Task] = []
    try:
        await websocket.send_json({"channel": channel, "event": "subscribed", "payload": {}})
        tasks = [
            asyncio.create_task(_forward(websocket, subscriber.queue)),
            asyncio.create_task(_wait_for_close(websocket)),
        ]
        done, _pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                raise exc
    except WebSocketDisconnect:
        pass
    finally:
        for task in tasks:
            task.cancel()
        connection_hub.unsubscribe(channel, subscriber)
        log_event(f"realtime_unsubscribed channel={channel}")
