"""
Pytest configuration and fixtures for backend tests.

The app runs against a throwaway SQLite file; tables are recreated for every
test and Redis is disabled.
"""
import os
import tempfile

_DB_PATH = os.path.join(tempfile.mkdtemp(prefix="proctorhub-tests-"), "test.db")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_PATH}"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["CACHE_ENABLED"] = "false"
os.environ["BACKGROUND_SWEEP_ENABLED"] = "false"

import asyncio
from types import SimpleNamespace

import httpx
import numpy as np
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from proctorhub.agents.api_client import ProctoringApiClient
from proctorhub.agents.config import AgentSettings
from proctorhub.agents.media import CameraUnavailableError
from proctorhub.core.database import Base
from proctorhub.core.security import create_access_token
from proctorhub.main import app
from proctorhub.models import Assessment, Question, User, UserRole

sync_engine = create_engine(f"sqlite:///{_DB_PATH}")
SyncSession = sessionmaker(bind=sync_engine, expire_on_commit=False)


@pytest.fixture(autouse=True)
def reset_database():
    Base.metadata.drop_all(sync_engine)
    Base.metadata.create_all(sync_engine)
    yield


@pytest.fixture
def seed():
    """Two students, the owning instructor, an unrelated instructor, an admin and one exam"""
    with SyncSession() as db:
        student = User(full_name="Student One", email="student@example.com", role=UserRole.STUDENT)
        other_student = User(full_name="Student Two", email="student2@example.com", role=UserRole.STUDENT)
        instructor = User(full_name="Test Instructor", email="instructor@example.com", role=UserRole.INSTRUCTOR)
        other_instructor = User(full_name="Other Instructor", email="other@example.com", role=UserRole.INSTRUCTOR)
        admin = User(full_name="Admin", email="admin@example.com", role=UserRole.ADMIN)
        db.add_all([student, other_student, instructor, other_instructor, admin])
        db.commit()

        exam = Assessment(
            id="exam-1",
            kind="exam",
            title="Midterm",
            instructor_id=instructor.id,
            requires_proctoring=True,
        )
        exam.questions = [
            Question(id="q1", prompt="2 + 2 = ?", options=["3", "4"], correct_option=1, order_number=1),
            Question(id="q2", prompt="Capital of France?", options=["Rome", "Berlin", "Paris"], correct_option=2, order_number=2),
        ]
        quiz = Assessment(
            id="quiz-1",
            kind="quiz",
            title="Warm-up",
            instructor_id=instructor.id,
            requires_proctoring=False,
        )
        db.add_all([exam, quiz])
        db.commit()

        return SimpleNamespace(
            student_id=student.id,
            other_student_id=other_student.id,
            instructor_id=instructor.id,
            other_instructor_id=other_instructor.id,
            admin_id=admin.id,
            exam_id=exam.id,
            quiz_id=quiz.id,
            all_correct={"q1": 1, "q2": 2},
        )


def bearer(email: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': email})}"}


@pytest.fixture
def client():
    """FastAPI test client"""
    return TestClient(app)


@pytest.fixture
def student_headers():
    return bearer("student@example.com")


@pytest.fixture
def other_student_headers():
    return bearer("student2@example.com")


@pytest.fixture
def instructor_headers():
    return bearer("instructor@example.com")


@pytest.fixture
def other_instructor_headers():
    return bearer("other@example.com")


@pytest.fixture
def admin_headers():
    return bearer("admin@example.com")


# agent fixtures

@pytest.fixture
def agent_settings():
    return AgentSettings(
        status_poll_interval=0.02,
        offer_poll_interval=0.02,
        answer_poll_interval=0.02,
        ice_poll_interval=0.02,
        face_check_interval=60.0,
        blur_cooldown=0.05,
        navigation_grace_delay=0.01,
        backoff_max_interval=0.05,
        max_consecutive_failures=3,
    )


@pytest.fixture
def api_for():
    """Factory for agent API clients talking to the in-process app"""
    def make(email: str) -> ProctoringApiClient:
        token = create_access_token({"sub": email})
        return ProctoringApiClient(
            "http://testserver/api/v1",
            token,
            transport=httpx.ASGITransport(app=app),
        )
    return make


async def wait_for(predicate, timeout: float = 3.0, interval: float = 0.01):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


class FakeCamera:
    width = 640
    height = 480

    def __init__(self, available: bool = True):
        self.available = available
        self.is_open = False
        self.releases = 0

    async def open(self):
        if not self.available:
            raise CameraUnavailableError("Permission denied")
        self.is_open = True

    async def read(self):
        return np.zeros((self.height, self.width, 3), dtype=np.uint8) if self.is_open else None

    def release(self):
        self.releases += 1
        self.is_open = False


class FakeDetector:
    def __init__(self, faces: int = 1):
        self.faces = faces

    def count_faces(self, frame) -> int:
        return self.faces


class FakePeer:
    """Stands in for PeerSession; records what each side of the handshake applied"""

    def __init__(self, name: str):
        self.name = name
        self.connected = False
        self.closed = 0
        self.offer = None
        self.answer = None
        self.track = None
        self.remote_candidates = []
        self.track_callback = None
        self.state_callback = None

    def on_track(self, callback):
        self.track_callback = callback

    def on_connection_state(self, callback):
        self.state_callback = callback

    def report_state(self, state):
        if self.state_callback is not None:
            self.state_callback(state)

    def local_candidates(self):
        return [{"candidate": f"candidate:1 1 udp 2122260223 10.0.0.1 5000{len(self.name)} typ host", "sdpMid": "0", "sdpMLineIndex": 0}]

    async def create_offer(self):
        return {"type": "offer", "sdp": f"v=0 offer from {self.name}"}

    async def accept_offer(self, offer, track=None):
        self.offer = offer
        self.track = track
        return {"type": "answer", "sdp": f"v=0 answer from {self.name}"}

    async def accept_answer(self, answer):
        self.answer = answer

    async def add_remote_candidates(self, payload):
        if isinstance(payload, list):
            self.remote_candidates.extend(payload)
        else:
            self.remote_candidates.append(payload)

    async def close(self):
        self.closed += 1


@pytest.fixture
def fakes():
    return SimpleNamespace(Camera=FakeCamera, Detector=FakeDetector, Peer=FakePeer, wait_for=wait_for)
