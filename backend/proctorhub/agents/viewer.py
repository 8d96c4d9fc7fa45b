import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

import httpx
import numpy as np

from .api_client import ProctoringApiClient, ProctoringApiError, SessionGoneError
from .config import AgentSettings
from .rtc import PeerSession, consume_video
from .timers import IntervalTimer, PollBackoff

logger = logging.getLogger(__name__)


class ViewerState:
    LOADING = "loading"
    WATCHING = "watching"
    STOPPED = "stopped"
    ENDED = "ended"
    CONNECTION_LOST = "connection_lost"

    TERMINAL = (ENDED, CONNECTION_LOST)


class InstructorViewer:
    """Instructor-side agent observing one session.

    Opening the viewer activates the session unless it changed since it was
    observed. Once active, the viewer offers a receive-only video link and
    hands decoded frames to ``frame_sink``. A session that disappears is
    treated as ended elsewhere: after a short grace delay ``on_navigate`` is
    called instead of raising.
    """

    def __init__(
        self,
        api: ProctoringApiClient,
        session_id: str,
        settings: Optional[AgentSettings] = None,
        peer_factory: Optional[Callable[[], PeerSession]] = None,
        frame_sink: Optional[Callable[[np.ndarray], None]] = None,
        on_navigate: Optional[Callable[[], Any]] = None,
        on_state_change: Optional[Callable[[str], None]] = None,
        auto_activate: bool = True,
    ):
        self.api = api
        self.session_id = session_id
        self.settings = settings or AgentSettings()
        self.peer_factory = peer_factory or (lambda: PeerSession(self.settings.stun_servers))
        self.frame_sink = frame_sink
        self.on_navigate = on_navigate
        self.on_state_change = on_state_change
        self.auto_activate = auto_activate

        self.state = ViewerState.LOADING
        self.session: Optional[Dict[str, Any]] = None
        self.events: List[Dict[str, Any]] = []
        self.peer: Optional[PeerSession] = None
        self._auto_activation_attempted = False
        self._stopped_explicitly = False
        self._stale_answer: Optional[str] = None
        self._answer_applied = False
        self._frame_task: Optional[asyncio.Task] = None
        self._navigate_task: Optional[asyncio.Task] = None
        self._teardown_task: Optional[asyncio.Task] = None
        self._restart_task: Optional[asyncio.Task] = None
        self._torn_down = False
        self._closed = asyncio.Event()

        self.backoff = PollBackoff(
            factor=self.settings.backoff_factor,
            ceiling=self.settings.backoff_max_interval,
            max_failures=self.settings.max_consecutive_failures,
        )
        self.status_timer = IntervalTimer(self.settings.status_poll_interval, self._poll_status, "session-poll", self.backoff, run_immediately=False)
        self.answer_timer = IntervalTimer(self.settings.answer_poll_interval, self._poll_answer, "answer-poll", self.backoff)
        self.ice_timer = IntervalTimer(self.settings.ice_poll_interval, self._poll_ice, "student-ice-poll", self.backoff)

    def _set_state(self, state: str):
        if self.state != state:
            logger.info(f"Instructor viewer {self.session_id}: {self.state} -> {state}")
            self.state = state
            if self.on_state_change:
                self.on_state_change(state)

    async def start(self):
        await self._poll_status()
        if self.state not in ViewerState.TERMINAL:
            self.status_timer.start()

    async def wait_closed(self):
        await self._closed.wait()

    # session status

    def _update_session(self, session: Dict[str, Any]):
        self.session = session
        self.events = sorted(
            session.get("events", []),
            key=lambda event: (event["timestamp"], event["id"]),
            reverse=True,
        )

    async def _poll_status(self):
        try:
            session = await self.api.get_session(self.session_id)
        except SessionGoneError:
            await self._session_gone()
            return
        except (httpx.TransportError, ProctoringApiError) as e:
            self._record_failure(e)
            return
        self.backoff.record_success()
        self._update_session(session)
        if self.state == ViewerState.LOADING:
            self._set_state(ViewerState.WATCHING)

        if (
            not session["proctoring_active"]
            and self.auto_activate
            and not self._auto_activation_attempted
            and not self._stopped_explicitly
        ):
            self._auto_activation_attempted = True
            await self._auto_activate(session)

        if self.session["proctoring_active"] and self.peer is None and self.state == ViewerState.WATCHING:
            await self._start_handshake()

    async def _auto_activate(self, observed: Dict[str, Any]):
        try:
            session = await self.api.set_active(self.session_id, True, expected_version=observed["version"])
        except SessionGoneError:
            await self._session_gone()
            return
        except ProctoringApiError as e:
            if e.status_code == 409:
                logger.info(f"Session {self.session_id} changed since it was observed, not auto-activating")
                return
            logger.warning(f"Auto-activation of session {self.session_id} failed: {e}")
            return
        except httpx.TransportError as e:
            self._record_failure(e)
            return
        self._update_session(session)

    def _record_failure(self, error: Exception):
        logger.warning(f"Poll for session {self.session_id} failed ({self.backoff.failures + 1}): {error}")
        if self.backoff.record_failure() and self.state not in ViewerState.TERMINAL:
            self._set_state(ViewerState.CONNECTION_LOST)
            self._teardown_task = asyncio.create_task(self.teardown())

    async def _session_gone(self):
        if self.state in ViewerState.TERMINAL:
            return
        logger.info(f"Session {self.session_id} ended elsewhere")
        self._set_state(ViewerState.ENDED)
        await self.teardown()
        self._navigate_task = asyncio.create_task(self._navigate_after(self.settings.navigation_grace_delay))

    async def _navigate_after(self, delay: float):
        await asyncio.sleep(delay)
        if self.on_navigate:
            result = self.on_navigate()
            if asyncio.iscoroutine(result):
                await result

    # signaling

    async def _start_handshake(self):
        try:
            # an answer left over from an earlier offer must not be applied to this one
            previous = await self.api.poll_signal(self.session_id, "answer")
        except SessionGoneError:
            await self._session_gone()
            return
        except (httpx.TransportError, ProctoringApiError) as e:
            self._record_failure(e)
            return
        self._stale_answer = previous.get("sdp") if previous else None
        self._answer_applied = False

        peer = self.peer = self.peer_factory()
        peer.on_track(self._on_track)
        peer.on_connection_state(lambda state: self._on_peer_state(peer, state))
        offer = await peer.create_offer()
        if not await self._publish("offer", offer):
            await self._close_peer()
            return
        candidates = self.peer.local_candidates()
        if candidates:
            await self._publish("instructor-ice", candidates)
        self.answer_timer.start()
        self.ice_timer.start()

    async def _poll_answer(self):
        if self.peer is None or self._answer_applied:
            self.answer_timer.stop()
            return
        try:
            answer = await self.api.poll_signal(self.session_id, "answer")
        except SessionGoneError:
            await self._session_gone()
            return
        except (httpx.TransportError, ProctoringApiError) as e:
            self._record_failure(e)
            return
        self.backoff.record_success()
        if not answer or answer.get("sdp") == self._stale_answer:
            return
        await self.peer.accept_answer(answer)
        self._answer_applied = True
        self.answer_timer.stop()

    async def _poll_ice(self):
        if self.peer is None:
            return
        if self.peer.connected:
            self.ice_timer.stop()
            return
        try:
            payload = await self.api.poll_signal(self.session_id, "student-ice")
        except SessionGoneError:
            await self._session_gone()
            return
        except (httpx.TransportError, ProctoringApiError) as e:
            self._record_failure(e)
            return
        self.backoff.record_success()
        if payload:
            await self.peer.add_remote_candidates(payload)

    async def _publish(self, role: str, signal: Any) -> bool:
        try:
            await self.api.publish_signal(self.session_id, role, signal)
        except SessionGoneError:
            await self._session_gone()
            return False
        except (httpx.TransportError, ProctoringApiError) as e:
            logger.warning(f"Publishing {role} for session {self.session_id} failed: {e}")
            self._record_failure(e)
            return False
        return True

    def _on_peer_state(self, peer: PeerSession, state: str):
        if state not in ("failed", "closed") or peer is not self.peer:
            return
        if self.state != ViewerState.WATCHING:
            return
        # the next status poll offers again once the dead link is closed
        logger.info(f"Video link for session {self.session_id} is {state}, offering again")
        self._restart_task = asyncio.create_task(self._drop_peer(peer))

    async def _drop_peer(self, peer: PeerSession):
        if peer is self.peer:
            await self._close_peer()

    def _on_track(self, track):
        if track.kind == "video" and self.frame_sink is not None:
            self._frame_task = asyncio.create_task(consume_video(track, self.frame_sink))

    async def _close_peer(self):
        self.answer_timer.stop()
        self.ice_timer.stop()
        if self._frame_task is not None:
            self._frame_task.cancel()
            self._frame_task = None
        if self.peer is not None:
            peer, self.peer = self.peer, None
            try:
                await peer.close()
            except Exception as e:
                logger.warning(f"Error closing peer connection: {e}")

    # manual controls

    async def start_proctoring(self) -> Optional[Dict[str, Any]]:
        self._stopped_explicitly = False
        try:
            session = await self.api.set_active(self.session_id, True)
        except SessionGoneError:
            await self._session_gone()
            return None
        self._update_session(session)
        self._set_state(ViewerState.WATCHING)
        if self.peer is None:
            await self._start_handshake()
        return session

    async def stop_proctoring(self) -> Optional[Dict[str, Any]]:
        self._stopped_explicitly = True
        try:
            session = await self.api.set_active(self.session_id, False)
        except SessionGoneError:
            await self._session_gone()
            return None
        await self._close_peer()
        if session.get("deleted"):
            # stopping a submitted attempt closes it for good
            self._set_state(ViewerState.ENDED)
            await self.teardown()
            return session
        self._update_session(session)
        self._set_state(ViewerState.STOPPED)
        return session

    async def end_session(self):
        """Force-delete the session and leave the view immediately"""
        self.status_timer.stop()
        await self._close_peer()
        try:
            await self.api.end_session(self.session_id)
        except SessionGoneError:
            pass
        self._set_state(ViewerState.ENDED)
        await self.teardown()
        await self._navigate_after(0)

    async def teardown(self):
        if self._torn_down:
            return
        self._torn_down = True
        self.status_timer.stop()
        await self._close_peer()
        self._closed.set()
        logger.info(f"Instructor viewer for session {self.session_id} torn down")
