"""WebSocket change feed: streams change notices for one subscription scope"""
import asyncio
import logging

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect, status

from buddyup import database as db
from buddyup.api import auth
from buddyup.errors import TripServiceError
from buddyup.services import chat, trip_store
from buddyup.services.realtime import SCOPES, feed

log = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["realtime"])

# Scopes keyed by a trip id; the others are always the caller's own
TRIP_SCOPES = ("trip", "messages")


def resolve_scope(user_id: str, scope: str, target_id: str | None) -> str:
    """Check the caller may watch this scope and return the id it is keyed on."""
    if scope not in SCOPES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown scope '{scope}'")
    if scope not in TRIP_SCOPES:
        return user_id
    if not target_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Scope '{scope}' needs a trip id")
    with db.begin() as connection:
        trip_store.get_trip(connection, target_id)
        if scope == "messages" and user_id not in chat.chat_member_ids(connection, target_id):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only trip members can watch the chat")
    return target_id


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


@router.websocket("/realtime")
async def realtime(websocket: WebSocket, token: str, scope: str, trip_id: str | None = None):
    """Push a change notice for every insert/update/delete in the scope.

    Clients refetch the whole aggregate on each notice. The subscription is
    released when the socket closes, whichever side closes it.
    """
    try:
        user_id = auth.decode_token(token)
        key = await asyncio.to_thread(resolve_scope, user_id, scope, trip_id)
    except HTTPException as e:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=e.detail)
        return
    except TripServiceError as e:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=e.public_message)
        return

    await websocket.accept()
    filters = SCOPES[scope](key)

    async with feed.queue_subscription(filters) as queue:
        log.info(f"[Realtime] User {user_id} subscribed to {scope}:{key}")
        await websocket.send_json({"event": "SUBSCRIBED", "scope": scope, "id": key})

        disconnected = asyncio.create_task(_wait_for_disconnect(websocket))
        try:
            while True:
                next_event = asyncio.create_task(queue.get())
                done, _ = await asyncio.wait({next_event, disconnected}, return_when=asyncio.FIRST_COMPLETED)
                if disconnected in done:
                    next_event.cancel()
                    break
                await websocket.send_json(next_event.result().to_payload())
        except WebSocketDisconnect:
            pass
        finally:
            disconnected.cancel()
            log.info(f"[Realtime] User {user_id} unsubscribed from {scope}:{key}")
