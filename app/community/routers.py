import asyncio
import json
import logging

import jwt
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status

from app.core.dependencies import decode_token, get_change_feed, get_store
from app.core.store import ChangeFeed, RowStore
from app.utils.profiles import ProfileDirectory

from .session import CommunitySession, OperationResult

logger = logging.getLogger(__name__)
router = APIRouter()


async def dispatch(session: CommunitySession, command: dict) -> OperationResult:
    """Run one client command against the session."""
    action = command.get("action")

    if action == "send_message":
        return await session.send_message(command.get("content"))
    if action == "open_conversation":
        return await session.open_conversation(int(command["conversation_id"]))
    if action == "close_conversation":
        return await session.close_conversation()
    if action == "message_friend":
        return await session.message_friend(command["user_id"])
    if action == "create_conversation":
        return await session.create_conversation(
            command.get("name"), command.get("participant_ids", [])
        )
    if action == "send_friend_request":
        return await session.send_friend_request(command["user_id"])
    if action == "accept":
        return await session.accept(int(command["friendship_id"]))
    if action == "decline":
        return await session.decline(int(command["friendship_id"]))
    if action == "block":
        return await session.block(int(command["friendship_id"]))
    if action == "cancel_request":
        return await session.cancel_request(int(command["friendship_id"]))
    if action == "unfriend":
        return await session.unfriend(int(command["friendship_id"]))
    if action == "search_users":
        return await session.search_users(command.get("query", ""))
    if action == "set_draft":
        session.draft = command.get("content", "")
        return OperationResult.success()

    return OperationResult(ok=False, error_key="errorUnknownAction", detail=f"Unknown action {action!r}.")


@router.websocket("/ws")
async def community_socket(
    websocket: WebSocket,
    token: str,
    store: RowStore = Depends(get_store),
    feed: ChangeFeed = Depends(get_change_feed),
):
    """
    Live community session.

    The client authenticates with `?token=<jwt>`, then receives a `state`
    frame after every change (new message, conversation list refresh,
    friend updates) and a `result` frame for every command it sends,
    e.g. `{"action": "send_message", "content": "hi"}`.
    """
    try:
        user_id = decode_token(token).get("sub")
    except jwt.InvalidTokenError as e:
        logger.warning(f"ws_auth_failed error={e}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    if not user_id:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    send_lock = asyncio.Lock()

    async def push_state(session: CommunitySession):
        async with send_lock:
            await websocket.send_json({"type": "state", "state": session.snapshot()})

    session = CommunitySession(store, feed, ProfileDirectory(store), user_id, on_change=push_state)
    logger.info(f"ws_connected user={user_id}")

    try:
        await session.start()
        await push_state(session)

        while True:
            raw = await websocket.receive_text()
            command = None
            try:
                command = json.loads(raw)
                if not isinstance(command, dict):
                    raise TypeError("Command must be a JSON object.")
                result = await dispatch(session, command)
            except (KeyError, ValueError, TypeError) as e:
                # json.JSONDecodeError is a ValueError
                result = OperationResult(ok=False, error_key="errorBadCommand", detail=str(e))
            action = command.get("action") if isinstance(command, dict) else None
            async with send_lock:
                await websocket.send_json(
                    {"type": "result", "action": action, **result.model_dump(mode="json")}
                )
    except WebSocketDisconnect:
        logger.info(f"ws_disconnected user={user_id}")
    finally:
        await session.stop()
