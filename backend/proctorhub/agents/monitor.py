import asyncio
import logging
from typing import Any, Callable, Dict, Optional

import httpx

from .api_client import ProctoringApiClient, ProctoringApiError, SessionGoneError
from .config import AgentSettings
from .media import Camera, CameraUnavailableError, HaarFaceDetector
from .rtc import CameraVideoTrack, PeerSession
from .timers import IntervalTimer, PollBackoff
from .violations import (
    ViolationTracker,
    FACE_LOST,
    TAB_SWITCH,
    KICKED_OUT,
    WEBCAM_ACCESS_FAILED,
    VIDEO_STREAM_STARTED,
)

logger = logging.getLogger(__name__)


class MonitorState:
    INITIALIZING = "initializing"
    WAITING = "waiting"
    MONITORING = "monitoring"
    UNPROCTORED = "unproctored"
    REMOVED = "removed"
    SUBMITTED = "submitted"
    STOPPED = "stopped"

    TERMINAL = (REMOVED, SUBMITTED, STOPPED)


class SubmissionRefusedError(Exception):
    pass


class StudentMonitor:
    """Student-side agent for one assessment attempt.

    Finds or creates the session, waits for the instructor to activate it,
    then runs face checks, reports tab switches, answers the instructor's
    WebRTC offer and removes the student after too many violations.
    ``teardown`` runs on every exit path and is safe to call more than once.
    """

    def __init__(
        self,
        api: ProctoringApiClient,
        assessment_id: str,
        settings: Optional[AgentSettings] = None,
        camera: Optional[Camera] = None,
        detector: Optional[HaarFaceDetector] = None,
        peer_factory: Optional[Callable[[], PeerSession]] = None,
        track_factory: Callable[[Camera], Any] = CameraVideoTrack,
        on_state_change: Optional[Callable[[str], None]] = None,
        on_obscure_change: Optional[Callable[[bool], None]] = None,
    ):
        self.api = api
        self.assessment_id = assessment_id
        self.settings = settings or AgentSettings()
        self.camera = camera or Camera(self.settings.camera_index, self.settings.frame_width, self.settings.frame_height)
        self.detector = detector or HaarFaceDetector()
        self.peer_factory = peer_factory or (lambda: PeerSession(self.settings.stun_servers))
        self.track_factory = track_factory
        self.on_state_change = on_state_change

        self.state = MonitorState.INITIALIZING
        self.session: Optional[Dict[str, Any]] = None
        self.session_id: Optional[str] = None
        self.peer: Optional[PeerSession] = None
        self.signaling_lost = False
        self._applied_offer: Optional[str] = None
        self._torn_down = False
        self._closed = asyncio.Event()

        self.tracker = ViolationTracker(
            limit=self.settings.violation_limit,
            cooldown=self.settings.blur_cooldown,
            on_obscure_change=on_obscure_change,
        )
        self.backoff = PollBackoff(
            factor=self.settings.backoff_factor,
            ceiling=self.settings.backoff_max_interval,
            max_failures=self.settings.max_consecutive_failures,
        )
        # the relay can fail on its own while status polls keep succeeding
        self.signaling_backoff = PollBackoff(
            factor=self.settings.backoff_factor,
            ceiling=self.settings.backoff_max_interval,
            max_failures=self.settings.max_consecutive_failures,
        )
        self.status_timer = IntervalTimer(self.settings.status_poll_interval, self._poll_status, "status-poll", self.backoff, run_immediately=False)
        self.face_timer = IntervalTimer(self.settings.face_check_interval, self._check_face, "face-check")
        self.offer_timer = IntervalTimer(self.settings.offer_poll_interval, self._poll_offer, "offer-poll", self.signaling_backoff)
        self.ice_timer = IntervalTimer(self.settings.ice_poll_interval, self._poll_ice, "instructor-ice-poll", self.signaling_backoff)

    @property
    def violation_count(self) -> int:
        return self.tracker.count

    @property
    def obscured(self) -> bool:
        return self.tracker.obscured

    def _set_state(self, state: str):
        if self.state != state:
            logger.info(f"Student monitor {self.session_id or '-'}: {self.state} -> {state}")
            self.state = state
            if self.on_state_change:
                self.on_state_change(state)

    async def start(self) -> str:
        """Find or create the session and begin waiting; returns the session id"""
        session = await self.api.find_open_session(self.assessment_id)
        if session is None:
            session = await self.api.create_session(self.assessment_id)
        self.session = session
        self.session_id = session["id"]

        if not session["requires_proctoring"]:
            self._set_state(MonitorState.UNPROCTORED)
            return self.session_id

        if self.settings.violation_counter_source == "event_log":
            if await self._restore_violations(session):
                return self.session_id

        self._set_state(MonitorState.WAITING)
        if session["proctoring_active"]:
            await self._activate()
        self.status_timer.start()
        return self.session_id

    async def _restore_violations(self, session: Dict[str, Any]) -> bool:
        """Seed the counter from the event log; True if the attempt is already over"""
        summary = await self.api.violation_summary(self.session_id)
        self.tracker.seed(summary["total_violations"])
        if any(event["type"] == KICKED_OUT for event in session.get("events", [])):
            self._set_state(MonitorState.REMOVED)
            await self.teardown()
            return True
        if self.tracker.count >= self.tracker.limit:
            self.tracker.limit_reached = True
            await self._remove()
            return True
        return False

    async def wait_closed(self):
        await self._closed.wait()

    # session status

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
        self.session = session

        if self.state == MonitorState.WAITING and session["proctoring_active"]:
            await self._activate()

    async def _session_gone(self):
        logger.info(f"Session {self.session_id} no longer exists, stopping monitor")
        if self.state not in MonitorState.TERMINAL:
            self._set_state(MonitorState.STOPPED)
        await self.teardown()

    def _record_failure(self, error: Exception, backoff: Optional[PollBackoff] = None):
        backoff = backoff or self.backoff
        logger.warning(f"Poll for session {self.session_id} failed ({backoff.failures + 1}): {error}")
        if backoff.record_failure() and not self.signaling_lost:
            # the assessment keeps running; only the video link is given up
            self.signaling_lost = True
            self.offer_timer.stop()
            self.ice_timer.stop()
            logger.warning(f"Signaling for session {self.session_id} abandoned after {backoff.failures} failures")

    # monitoring

    async def _activate(self):
        self._set_state(MonitorState.MONITORING)
        try:
            await self.camera.open()
        except CameraUnavailableError as e:
            logger.warning(f"Camera unavailable for session {self.session_id}: {e}")
            await self._log(WEBCAM_ACCESS_FAILED, {"error": str(e)})
        else:
            await self._log(VIDEO_STREAM_STARTED)

        if self._torn_down:
            # torn down while the camera was opening
            self.camera.release()
            return
        if self.camera.is_open:
            self.face_timer.start()
        if self.signaling_lost:
            logger.warning(f"Session {self.session_id} is monitored without video: signaling was abandoned")
        else:
            self.offer_timer.start()

    async def _check_face(self):
        if self.state != MonitorState.MONITORING:
            return
        frame = await self.camera.read()
        if frame is None:
            return
        faces = await asyncio.to_thread(self.detector.count_faces, frame)
        if faces == 0:
            await self.report_violation(FACE_LOST)

    async def on_visibility_change(self, hidden: bool):
        """Called by the host UI whenever the assessment page is hidden or shown"""
        if hidden:
            await self.report_violation(TAB_SWITCH)

    async def report_violation(self, kind: str, metadata: Optional[Dict[str, Any]] = None):
        if self.state != MonitorState.MONITORING or self.tracker.limit_reached:
            return
        # counted before the log call so a violation arriving meanwhile sees the limit
        limit_reached = self.tracker.record(kind)
        await self._log(kind, metadata)
        if limit_reached:
            await self._remove()

    async def _remove(self):
        if self.state in MonitorState.TERMINAL:
            return
        self._set_state(MonitorState.REMOVED)
        await self._log(KICKED_OUT, {"violations": self.tracker.count})
        await self.teardown()

    async def _log(self, event_type: str, metadata: Optional[Dict[str, Any]] = None):
        try:
            await self.api.log_event(self.session_id, event_type, metadata)
        except SessionGoneError:
            logger.info(f"Could not log {event_type}: session {self.session_id} is gone")
        except (httpx.TransportError, ProctoringApiError) as e:
            logger.warning(f"Could not log {event_type} for session {self.session_id}: {e}")

    # signaling

    async def _poll_offer(self):
        try:
            offer = await self.api.poll_signal(self.session_id, "offer")
        except SessionGoneError:
            await self._session_gone()
            return
        except (httpx.TransportError, ProctoringApiError) as e:
            self._record_failure(e, self.signaling_backoff)
            return
        self.signaling_backoff.record_success()

        if not offer or offer.get("sdp") == self._applied_offer or self.state != MonitorState.MONITORING:
            return

        if self.peer is not None:
            logger.info(f"New offer for session {self.session_id}, renegotiating")
            self.ice_timer.stop()
            await self.peer.close()

        self.peer = self.peer_factory()
        self._applied_offer = offer.get("sdp")
        track = self.track_factory(self.camera) if self.camera.is_open else None
        answer = await self.peer.accept_offer(offer, track)
        if not await self._publish("answer", answer):
            # answer again on the next offer poll
            self._applied_offer = None
            return
        candidates = self.peer.local_candidates()
        if candidates:
            await self._publish("student-ice", candidates)
        self.ice_timer.start()

    async def _poll_ice(self):
        if self.peer is None:
            return
        if self.peer.connected:
            self.ice_timer.stop()
            return
        try:
            payload = await self.api.poll_signal(self.session_id, "instructor-ice")
        except SessionGoneError:
            await self._session_gone()
            return
        except (httpx.TransportError, ProctoringApiError) as e:
            self._record_failure(e, self.signaling_backoff)
            return
        self.signaling_backoff.record_success()
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
            self._record_failure(e, self.signaling_backoff)
            return False
        return True

    # exits

    async def submit(self, answers: Dict[str, int]) -> Dict[str, Any]:
        """Submit the attempt; errors propagate so the caller can retry"""
        if self.state == MonitorState.REMOVED:
            raise SubmissionRefusedError("Removed from this attempt after repeated violations")
        if self.state in MonitorState.TERMINAL:
            raise SubmissionRefusedError(f"Attempt is already {self.state}")

        result = await self.api.submit_answers(self.session_id, answers)
        self._set_state(MonitorState.SUBMITTED)
        await self.teardown()
        return result

    async def stop(self):
        if self.state not in MonitorState.TERMINAL:
            self._set_state(MonitorState.STOPPED)
        await self.teardown()

    async def teardown(self):
        """Release the camera, peer connection and every timer"""
        if self._torn_down:
            return
        self._torn_down = True
        for timer in (self.status_timer, self.face_timer, self.offer_timer, self.ice_timer):
            timer.stop()
        self.tracker.cancel()
        if self.peer is not None:
            try:
                await self.peer.close()
            except Exception as e:
                logger.warning(f"Error closing peer connection: {e}")
        self.camera.release()
        self._closed.set()
        logger.info(f"Student monitor for session {self.session_id} torn down")
