from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete, func
from typing import Any, Optional
import logging

from ..core.cache import cache, session_channel
from ..models.proctoring_session import ProctoringSession, SessionEvent, EventType
from ..utils.timezone import get_utc_now, utc_cutoff
from .session_service import SessionNotFoundError

logger = logging.getLogger(__name__)


SIGNAL_ROLES = ("offer", "answer", "student-ice", "instructor-ice")

# roles each side of the handshake is allowed to publish
INSTRUCTOR_ROLES = ("offer", "instructor-ice")
STUDENT_ROLES = ("answer", "student-ice")


def signal_event_type(role: str) -> str:
    if role not in SIGNAL_ROLES:
        raise ValueError(f"Unknown signal role: {role}")
    return f"{EventType.SIGNAL_PREFIX}{role}"


class SignalingService:
    """Store-and-forward mailbox for WebRTC handshake payloads, keyed by (session, role).

    Publishing appends a session event; polling returns the payload of the most
    recent event for the role. There is no delivery acknowledgement and no
    ordering beyond "most recent wins".
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _require_session(self, session_id: str) -> ProctoringSession:
        session = await self.db.get(ProctoringSession, session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def publish(self, session_id: str, role: str, signal: Any) -> SessionEvent:
        event_type = signal_event_type(role)
        await self._require_session(session_id)

        event = SessionEvent(
            session_id=session_id,
            type=event_type,
            timestamp=get_utc_now(),
            event_metadata={"signal": signal},
        )
        self.db.add(event)
        await self.db.commit()
        await self.db.refresh(event)

        await cache.apublish(session_channel(session_id), {
            "session_id": session_id,
            "kind": "signal",
            "type": role,
            "signal": signal,
        })
        return event

    async def poll(self, session_id: str, role: str) -> Optional[Any]:
        event_type = signal_event_type(role)
        await self._require_session(session_id)

        result = await self.db.execute(
            select(SessionEvent)
            .filter(SessionEvent.session_id == session_id, SessionEvent.type == event_type)
            .order_by(SessionEvent.timestamp.desc(), SessionEvent.id.desc())
            .limit(1)
        )
        latest = result.scalars().first()
        if latest is None or not latest.event_metadata:
            return None
        return latest.event_metadata.get("signal")

    async def prune(self, older_than_seconds: int) -> int:
        """Delete superseded signaling events older than the cutoff.

        The latest event of every (session, role) pair is always kept so a
        late poller still sees the current payload.
        """
        latest_ids = (
            select(func.max(SessionEvent.id))
            .filter(SessionEvent.type.like(f"{EventType.SIGNAL_PREFIX}%"))
            .group_by(SessionEvent.session_id, SessionEvent.type)
        )
        result = await self.db.execute(
            delete(SessionEvent)
            .where(
                SessionEvent.type.like(f"{EventType.SIGNAL_PREFIX}%"),
                SessionEvent.timestamp < utc_cutoff(older_than_seconds),
                SessionEvent.id.notin_(latest_ids),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        pruned = result.rowcount or 0
        if pruned:
            logger.info(f"Pruned {pruned} superseded signaling event(s)")
        return pruned
