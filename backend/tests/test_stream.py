"""
Tests for the per-session push channel
"""
import pytest
from starlette.websockets import WebSocketDisconnect

from proctorhub.core.cache import cache, session_channel
from proctorhub.core.security import create_access_token


def stream_url(session_id: str, email: str) -> str:
    token = create_access_token({"sub": email})
    return f"/api/v1/sessions/{session_id}/stream?token={token}"


@pytest.fixture
def session_id(client, seed, student_headers):
    response = client.post("/api/v1/sessions", headers=student_headers, json={"assessment_id": "exam-1"})
    return response.json()["id"]


class TestSessionStream:

    def test_without_redis_clients_are_told_to_poll(self, client, session_id):
        with client.websocket_connect(stream_url(session_id, "instructor@example.com")) as websocket:
            assert websocket.receive_json() == {"kind": "unavailable", "session_id": session_id}

    def test_rejects_bad_token(self, client, session_id):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect(f"/api/v1/sessions/{session_id}/stream?token=garbage"):
                pass

    def test_rejects_unrelated_user(self, client, session_id):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect(stream_url(session_id, "other@example.com")):
                pass

    def test_missing_session(self, client, seed):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(stream_url("gone", "instructor@example.com")):
                pass
        assert exc_info.value.code == 4404

    def test_relays_until_session_is_deleted(self, client, session_id, monkeypatch):
        channels = []
        published = [
            {"session_id": session_id, "kind": "session", "proctoring_active": True, "status": "active", "version": 1},
            {"session_id": session_id, "kind": "signal", "type": "offer", "signal": {"type": "offer", "sdp": "v=0"}},
            {"session_id": session_id, "kind": "session", "deleted": True},
        ]

        async def fake_subscribe(channel):
            channels.append(channel)
            for message in published:
                yield message

        monkeypatch.setattr(cache, "enabled", True)
        monkeypatch.setattr(cache, "asubscribe", fake_subscribe)

        with client.websocket_connect(stream_url(session_id, "student@example.com")) as websocket:
            received = [websocket.receive_json() for _ in published]
            with pytest.raises(WebSocketDisconnect):
                websocket.receive_json()

        assert received == published
        assert channels == [session_channel(session_id)]
