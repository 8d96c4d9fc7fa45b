import httpx
import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class SessionGoneError(Exception):
    """The session no longer exists: swept, ended by the other party, or never created"""


class ProctoringApiError(Exception):
    def __init__(self, status_code: int, detail: Any):
        super().__init__(f"{status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


class ProctoringApiClient:
    """Thin async wrapper over the v1 proctoring endpoints.

    Transport failures surface as ``httpx.TransportError``; callers decide
    whether to retry. A 404 on a session-scoped call raises
    ``SessionGoneError``, any other error status ``ProctoringApiError``.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def aclose(self):
        await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        response = await self._client.request(method, url, **kwargs)
        if response.status_code == 404:
            raise SessionGoneError(url)
        if response.status_code >= 400:
            try:
                detail = response.json().get("detail")
            except ValueError:
                detail = response.text
            raise ProctoringApiError(response.status_code, detail)
        return response.json()

    # sessions

    async def create_session(self, assessment_id: str) -> Dict[str, Any]:
        return await self._request("POST", "/sessions", json={"assessment_id": assessment_id})

    async def list_sessions(self, assessment_id: Optional[str] = None, state: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {}
        if assessment_id:
            params["assessment_id"] = assessment_id
        if state:
            params["state"] = state
        return await self._request("GET", "/sessions", params=params)

    async def find_open_session(self, assessment_id: str) -> Optional[Dict[str, Any]]:
        """Most recent non-ended session of the caller for the assessment, if any"""
        for session in await self.list_sessions(assessment_id=assessment_id):
            if not session["completed"] and session["ended_at"] is None:
                return session
        return None

    async def get_session(self, session_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/sessions/{session_id}")

    async def set_active(self, session_id: str, active: bool, expected_version: Optional[int] = None) -> Dict[str, Any]:
        payload = {"proctoring_active": active}
        if expected_version is not None:
            payload["expected_version"] = expected_version
        return await self._request("PATCH", f"/sessions/{session_id}", json=payload)

    async def end_session(self, session_id: str) -> Dict[str, Any]:
        return await self._request("DELETE", f"/sessions/{session_id}")

    async def log_event(self, session_id: str, event_type: str, metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self._request(
            "POST", f"/sessions/{session_id}/events",
            json={"type": event_type, "metadata": metadata},
        )

    async def violation_summary(self, session_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/sessions/{session_id}/violations")

    # signaling

    async def publish_signal(self, session_id: str, role: str, signal: Any) -> Dict[str, Any]:
        return await self._request(
            "POST", "/rtc",
            json={"session_id": session_id, "type": role, "signal": signal},
        )

    async def poll_signal(self, session_id: str, role: str) -> Optional[Any]:
        data = await self._request("GET", "/rtc", params={"session_id": session_id, "type": role})
        return data.get("signal")

    # submissions

    async def submit_answers(self, session_id: str, answers: Dict[str, int]) -> Dict[str, Any]:
        return await self._request(
            "POST", "/submissions",
            json={"session_id": session_id, "answers": answers},
        )
