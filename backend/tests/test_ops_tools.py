"""
Tests for the operator scripts: admin_tools and system_health
"""
import pytest

import admin_tools
import system_health
from proctorhub.core.database import AsyncSessionLocal
from proctorhub.core.security import verify_token
from proctorhub.models import UserRole
from proctorhub.services.session_service import SessionService
from proctorhub.services.signaling_service import SignalingService


async def create_session(seed, user_id=None):
    async with AsyncSessionLocal() as db:
        session = await SessionService(db).create_session(seed.exam_id, user_id or seed.student_id)
        return session.id


class TestAdminTools:

    @pytest.mark.asyncio
    async def test_create_user_and_issue_token(self, seed):
        user = await admin_tools.create_user("new@example.com", "New Instructor", UserRole.INSTRUCTOR)

        assert user.role == UserRole.INSTRUCTOR
        token = await admin_tools.issue_token("new@example.com")
        assert verify_token(token) == "new@example.com"

    @pytest.mark.asyncio
    async def test_duplicate_email(self, seed, capsys):
        assert await admin_tools.create_user("student@example.com", "Again") is None
        assert "Email already registered" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_unknown_user_gets_no_token(self, seed):
        assert await admin_tools.issue_token("nobody@example.com") is None

    @pytest.mark.asyncio
    async def test_list_users_by_role(self, seed):
        assert await admin_tools.list_users(UserRole.STUDENT) == 2
        assert await admin_tools.list_users() == 5

    @pytest.mark.asyncio
    async def test_sessions_and_logs(self, seed, capsys):
        session_id = await create_session(seed)
        async with AsyncSessionLocal() as db:
            await SessionService(db).log_event(session_id, "tab-switch", {"hidden": True})
            await SignalingService(db).publish(session_id, "offer", {"type": "offer", "sdp": "v=0"})

        assert await admin_tools.show_sessions(assessment_id=seed.exam_id) == 1
        assert await admin_tools.show_session_events(session_id) == 1

        output = capsys.readouterr().out
        assert session_id in output
        assert "tab-switch | hidden: True" in output
        assert "rtc-offer" not in output

    @pytest.mark.asyncio
    async def test_logs_for_missing_session(self, seed):
        assert await admin_tools.show_session_events("gone") == 0

    @pytest.mark.asyncio
    async def test_sweep(self, seed):
        session_id = await create_session(seed)
        async with AsyncSessionLocal() as db:
            await SessionService(db).submit_answers(session_id, seed.all_correct)

        assert await admin_tools.sweep_sessions() == 1
        assert await admin_tools.show_sessions(session_id=session_id) == 0

    @pytest.mark.asyncio
    async def test_stats(self, seed):
        await create_session(seed)

        stats = await admin_tools.database_stats()

        assert stats["users"] == {"admin": 1, "instructor": 2, "student": 2}
        assert stats["sessions"] == {"waiting": 1}
        assert stats["assessments"] == 2

    def test_parser(self):
        args = admin_tools.build_parser().parse_args(["create-user", "--email", "a@example.com", "--name", "A", "--role", "admin"])
        assert (args.command, args.email, args.role) == ("create-user", "a@example.com", "admin")

        with pytest.raises(SystemExit):
            admin_tools.build_parser().parse_args(["create-user", "--email", "a@example.com", "--name", "A", "--role", "root"])


class TestSystemHealth:

    @pytest.mark.asyncio
    async def test_database_health(self, seed):
        await create_session(seed)

        result = await system_health.check_database_health()

        assert result == {"status": "healthy", "open_sessions": 1}

    @pytest.mark.asyncio
    async def test_cache_disabled(self):
        assert await system_health.check_cache_health() == {"status": "disabled"}

    def test_overall_status(self):
        assert system_health.overall_status({"a": {"status": "healthy"}, "b": {"status": "disabled"}}) == "healthy"
        assert system_health.overall_status({"a": {"status": "healthy"}, "b": {"status": "warning"}}) == "warning"
        assert system_health.overall_status({"a": {"status": "error"}, "b": {"status": "warning"}}) == "critical"
