from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from sqlalchemy.ext.asyncio import AsyncSession
import asyncio
import logging

from ....core.cache import cache, session_channel
from ....core.database import get_async_db
from ....core.security import verify_token
from ....api.views import is_session_student, owns_assessment
from ....services.session_service import SessionService
from ....services.user_service import UserService

logger = logging.getLogger(__name__)

router = APIRouter()


async def _relay(websocket: WebSocket, session_id: str):
    async for message in cache.asubscribe(session_channel(session_id)):
        await websocket.send_json(message)
        if message.get("kind") == "session" and message.get("deleted"):
            return


async def _drain(websocket: WebSocket):
    # clients only listen; reading keeps disconnects visible
    while True:
        await websocket.receive_text()


@router.websocket("/{session_id}/stream")
async def session_stream(
    websocket: WebSocket,
    session_id: str,
    token: str,
    db: AsyncSession = Depends(get_async_db)
):
    """Push channel for one session: state changes and signals as they are written.

    Messages have the same shapes the polling endpoints return. When Redis is
    unavailable the socket sends a single {"kind": "unavailable"} and closes so
    clients fall back to polling.
    """
    email = verify_token(token)
    user = await UserService(db).get_user_by_email(email) if email else None
    if user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    session = await SessionService(db).get_session_brief(session_id)
    if session is None:
        await websocket.close(code=4404)
        return
    if not (user.is_admin or is_session_student(user, session) or owns_assessment(user, session.assessment)):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    if not cache.enabled:
        await websocket.send_json({"kind": "unavailable", "session_id": session_id})
        await websocket.close()
        return

    relay = asyncio.create_task(_relay(websocket, session_id))
    drain = asyncio.create_task(_drain(websocket))
    try:
        done, pending = await asyncio.wait({relay, drain}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            error = task.exception()
            if error is None or isinstance(error, WebSocketDisconnect):
                continue
            logger.warning(f"Push channel for session {session_id} failed: {error}")
            await websocket.send_json({"kind": "unavailable", "session_id": session_id})
        if relay in done:
            await websocket.close()
    except WebSocketDisconnect:
        relay.cancel()
        drain.cancel()
