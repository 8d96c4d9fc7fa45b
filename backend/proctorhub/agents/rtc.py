"""
WebRTC plumbing for the agents, on top of aiortc.

Payloads exchanged through the signaling relay use the browser shapes:
descriptions are ``{"type", "sdp"}`` and candidates are RTCIceCandidateInit
dicts ``{"candidate", "sdpMid", "sdpMLineIndex"}``. aiortc gathers candidates
before the local description is set, so an agent publishes its whole
candidate list as one payload; incoming payloads may be a single candidate or
a list.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import numpy as np
from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription, VideoStreamTrack
from aiortc.mediastreams import MediaStreamError
from aiortc.sdp import candidate_from_sdp
from av import VideoFrame

from .media import Camera

logger = logging.getLogger(__name__)


def description_to_dict(description: RTCSessionDescription) -> Dict[str, str]:
    return {"type": description.type, "sdp": description.sdp}


def description_from_dict(data: Dict[str, Any]) -> RTCSessionDescription:
    return RTCSessionDescription(sdp=data["sdp"], type=data["type"])


def candidate_from_dict(data: Dict[str, Any]):
    """RTCIceCandidate from an RTCIceCandidateInit dict; None for end-of-candidates"""
    sdp = data.get("candidate") or ""
    if sdp.startswith("candidate:"):
        sdp = sdp[len("candidate:"):]
    if not sdp:
        return None
    candidate = candidate_from_sdp(sdp)
    candidate.sdpMid = data.get("sdpMid")
    candidate.sdpMLineIndex = data.get("sdpMLineIndex")
    return candidate


def candidates_from_sdp(sdp: str) -> List[Dict[str, Any]]:
    """Candidate lines of a session description, as RTCIceCandidateInit dicts"""
    candidates = []
    mline_index = -1
    mid = None
    for line in sdp.splitlines():
        if line.startswith("m="):
            mline_index += 1
            mid = None
        elif line.startswith("a=mid:"):
            mid = line[len("a=mid:"):]
        elif line.startswith("a=candidate:") and mline_index >= 0:
            candidates.append({
                "candidate": line[len("a="):],
                "sdpMid": mid,
                "sdpMLineIndex": mline_index,
            })
    return candidates


def as_candidate_list(payload: Any) -> List[Dict[str, Any]]:
    if not payload:
        return []
    if isinstance(payload, list):
        return [item for item in payload if isinstance(item, dict)]
    if isinstance(payload, dict):
        return [payload]
    return []


class IceCandidateQueue:
    """Holds remote candidates until the remote description is applied.

    Candidates are deduplicated by their candidate line, since polling keeps
    returning the most recent payload.
    """

    def __init__(self, apply: Callable[[Dict[str, Any]], Awaitable[None]]):
        self._apply = apply
        self._seen = set()
        self._pending: List[Dict[str, Any]] = []
        self.ready = False

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def add(self, payload: Any):
        for candidate in as_candidate_list(payload):
            key = (candidate.get("candidate"), candidate.get("sdpMid"))
            if key in self._seen:
                continue
            self._seen.add(key)
            if self.ready:
                await self._apply(candidate)
            else:
                self._pending.append(candidate)

    async def mark_ready(self):
        self.ready = True
        pending, self._pending = self._pending, []
        for candidate in pending:
            await self._apply(candidate)


class CameraVideoTrack(VideoStreamTrack):
    """Outgoing video track fed from the shared camera"""

    def __init__(self, camera: Camera):
        super().__init__()
        self.camera = camera
        self._blank = np.zeros((camera.height, camera.width, 3), dtype=np.uint8)

    async def recv(self):
        pts, time_base = await self.next_timestamp()
        frame = await self.camera.read()
        video_frame = VideoFrame.from_ndarray(frame if frame is not None else self._blank, format="bgr24")
        video_frame.pts = pts
        video_frame.time_base = time_base
        return video_frame


class PeerSession:
    """One side of the proctoring video link"""

    def __init__(self, stun_servers: Optional[List[str]] = None):
        configuration = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in (stun_servers or [])])
        self.pc = RTCPeerConnection(configuration=configuration)
        self.candidates = IceCandidateQueue(self._add_remote_candidate)
        self._closed = False
        self._on_track: Optional[Callable[[Any], None]] = None
        self._on_state: Optional[Callable[[str], None]] = None

        @self.pc.on("connectionstatechange")
        async def on_connectionstatechange():
            state = self.pc.connectionState
            logger.info(f"Peer connection state: {state}")
            # our own close() is not reported
            if self._on_state and not self._closed:
                self._on_state(state)

        @self.pc.on("track")
        def on_track(track):
            logger.info(f"Remote {track.kind} track received")
            if self._on_track:
                self._on_track(track)

    @property
    def connected(self) -> bool:
        return self.pc.connectionState == "connected"

    def on_track(self, callback: Callable[[Any], None]):
        self._on_track = callback

    def on_connection_state(self, callback: Callable[[str], None]):
        """Called with every connection state change other than our own close"""
        self._on_state = callback

    def local_candidates(self) -> List[Dict[str, Any]]:
        if self.pc.localDescription is None:
            return []
        return candidates_from_sdp(self.pc.localDescription.sdp)

    async def create_offer(self) -> Dict[str, str]:
        """Receive-only video offer (instructor side)"""
        self.pc.addTransceiver("video", direction="recvonly")
        await self.pc.setLocalDescription(await self.pc.createOffer())
        return description_to_dict(self.pc.localDescription)

    async def accept_offer(self, offer: Dict[str, Any], track=None) -> Dict[str, str]:
        """Apply the remote offer and answer it, sending ``track`` if given (student side)"""
        await self.pc.setRemoteDescription(description_from_dict(offer))
        if track is not None:
            self.pc.addTrack(track)
        await self.pc.setLocalDescription(await self.pc.createAnswer())
        await self.candidates.mark_ready()
        return description_to_dict(self.pc.localDescription)

    async def accept_answer(self, answer: Dict[str, Any]):
        await self.pc.setRemoteDescription(description_from_dict(answer))
        await self.candidates.mark_ready()

    async def add_remote_candidates(self, payload: Any):
        await self.candidates.add(payload)

    async def _add_remote_candidate(self, data: Dict[str, Any]):
        candidate = candidate_from_dict(data)
        if candidate is None:
            return
        try:
            await self.pc.addIceCandidate(candidate)
        except Exception as e:
            logger.warning(f"Ignoring unusable ICE candidate: {e}")

    async def close(self):
        if self._closed:
            return
        self._closed = True
        await self.pc.close()


async def consume_video(track, sink: Callable[[np.ndarray], None]):
    """Hand every received frame to ``sink`` as a BGR array until the track ends"""
    while True:
        try:
            frame = await track.recv()
        except MediaStreamError:
            return
        sink(frame.to_ndarray(format="bgr24"))
