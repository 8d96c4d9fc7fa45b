#!/usr/bin/env python3
"""
Admin tools for the proctoring service.

Provisions accounts, issues bearer tokens for the agents and inspects
sessions from the command line:

    python admin_tools.py create-user --email teacher@example.com --name "Ada" --role instructor
    python admin_tools.py issue-token --email teacher@example.com
    python admin_tools.py sessions --assessment-id exam-1
"""

import os
import sys
import asyncio
import argparse
from datetime import timedelta
from typing import Optional

sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from dotenv import load_dotenv
dotenv_path = os.path.join(os.path.dirname(__file__), '.env')
if os.path.exists(dotenv_path):
    load_dotenv(dotenv_path)

from sqlalchemy import func, select

from proctorhub.core.database import AsyncSessionLocal, create_db_and_tables
from proctorhub.core.security import create_access_token
from proctorhub.models import Assessment, ProctoringSession, SessionEvent, User, UserRole
from proctorhub.services.session_service import SessionService
from proctorhub.services.user_service import UserService
from proctorhub.utils.timezone import format_display_time


async def create_user(email: str, full_name: str, role: str = UserRole.STUDENT) -> Optional[User]:
    """Create an account; returns None if it could not be created"""
    async with AsyncSessionLocal() as db:
        try:
            user = await UserService(db).create_user(email, full_name, role)
        except ValueError as e:
            print(f"❌ Could not create {email}: {e}")
            return None
        print("✅ User created")
        print(f"   Email: {user.email}")
        print(f"   Name: {user.full_name}")
        print(f"   Role: {user.role}")
        print(f"   ID: {user.id}")
        return user


async def issue_token(email: str, hours: int = 8) -> Optional[str]:
    """Bearer token for an existing account, for PROCTOR_AGENT_TOKEN"""
    async with AsyncSessionLocal() as db:
        user = await UserService(db).get_user_by_email(email)
    if user is None:
        print(f"❌ No user with email {email}")
        return None
    if not user.is_active:
        print(f"❌ User {email} is inactive")
        return None
    token = create_access_token({"sub": user.email}, expires_delta=timedelta(hours=hours))
    print(token)
    return token


async def list_users(role: Optional[str] = None) -> int:
    async with AsyncSessionLocal() as db:
        users = await UserService(db).list_users(role)

    if not users:
        print("📋 No users found")
        return 0
    print(f"📋 Users: {len(users)}")
    print("=" * 80)
    for user in users:
        state = "active" if user.is_active else "inactive"
        print(f"ID: {user.id} | {user.role} | {state}")
        print(f"   Name: {user.full_name}")
        print(f"   Email: {user.email}")
        print("-" * 80)
    return len(users)


async def show_sessions(assessment_id: Optional[str] = None, session_id: Optional[str] = None) -> int:
    """Print stored sessions without sweeping them"""
    async with AsyncSessionLocal() as db:
        query = select(ProctoringSession, User.email).join(User, ProctoringSession.user_id == User.id)
        if assessment_id:
            query = query.filter(ProctoringSession.assessment_id == assessment_id)
        if session_id:
            query = query.filter(ProctoringSession.id == session_id)
        rows = (await db.execute(query.order_by(ProctoringSession.started_at.desc()))).all()

    if not rows:
        print("📝 No sessions found")
        return 0
    print(f"📝 Sessions: {len(rows)}")
    print("=" * 100)
    for session, email in rows:
        print(f"ID: {session.id}")
        print(f"   Student: {email}")
        print(f"   Assessment: {session.assessment_id}")
        print(f"   Status: {session.status} (version {session.version})")
        print(f"   Proctoring active: {'yes' if session.proctoring_active else 'no'}")
        print(f"   Started: {format_display_time(session.started_at)}")
        print(f"   Ended: {format_display_time(session.ended_at) if session.ended_at else '-'}")
        if session.score is not None:
            print(f"   Score: {session.score:.1f}%")
        print("-" * 100)
    return len(rows)


async def show_session_events(session_id: str, event_type: Optional[str] = None) -> int:
    async with AsyncSessionLocal() as db:
        service = SessionService(db)
        session = await service.get_session(session_id)
        if session is None:
            print(f"📊 Session {session_id} not found")
            return 0
        summary = await service.violation_summary(session_id)

    events = [event for event in session.events if not event.is_signal]
    if event_type:
        events = [event for event in events if event.type == event_type]

    print(f"📊 Events for session {session_id}")
    print("=" * 80)
    print(f"Violations: {summary['total_violations']}")
    for kind, count in sorted(summary["by_type"].items()):
        print(f"   {kind}: {count}")
    if summary["needs_attention"]:
        print("🚨 Violation limit reached")

    print(f"\nLatest {min(20, len(events))} events:")
    print("-" * 80)
    for event in events[:20]:
        details = ""
        if event.event_metadata:
            details = " | " + " | ".join(f"{k}: {v}" for k, v in event.event_metadata.items())
        print(f"[{format_display_time(event.timestamp)}] {event.type}{details}")
    return len(events)


async def sweep_sessions() -> int:
    async with AsyncSessionLocal() as db:
        swept = await SessionService(db).sweep()
    print(f"🧹 Swept {swept} session(s)")
    return swept


async def database_stats() -> dict:
    async with AsyncSessionLocal() as db:
        users = (await db.execute(select(User.role, func.count(User.id)).group_by(User.role))).all()
        statuses = (await db.execute(
            select(ProctoringSession.status, func.count(ProctoringSession.id)).group_by(ProctoringSession.status)
        )).all()
        assessments = (await db.execute(select(func.count(Assessment.id)))).scalar()
        events = (await db.execute(select(func.count(SessionEvent.id)))).scalar()

    stats = {
        "users": dict(users),
        "sessions": dict(statuses),
        "assessments": assessments,
        "events": events,
    }
    print("📊 Database statistics")
    print("=" * 50)
    print(f"👥 Users: {sum(stats['users'].values())} ({', '.join(f'{k}: {v}' for k, v in sorted(stats['users'].items())) or '-'})")
    print(f"📝 Sessions: {sum(stats['sessions'].values())} ({', '.join(f'{k}: {v}' for k, v in sorted(stats['sessions'].items())) or '-'})")
    print(f"❓ Assessments: {assessments}")
    print(f"📋 Events: {events}")
    return stats


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Admin tools for the proctoring service")
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    create_user_parser = subparsers.add_parser('create-user', help='Create an account')
    create_user_parser.add_argument('--email', required=True, help='Email address')
    create_user_parser.add_argument('--name', required=True, help='Full name')
    create_user_parser.add_argument(
        '--role',
        default=UserRole.STUDENT,
        choices=[UserRole.STUDENT, UserRole.INSTRUCTOR, UserRole.ADMIN],
        help='Account role'
    )

    token_parser = subparsers.add_parser('issue-token', help='Issue a bearer token for an account')
    token_parser.add_argument('--email', required=True, help='Email address')
    token_parser.add_argument('--hours', type=int, default=8, help='Token lifetime in hours')

    list_users_parser = subparsers.add_parser('list-users', help='List accounts')
    list_users_parser.add_argument('--role', help='Only this role')

    sessions_parser = subparsers.add_parser('sessions', help='Show proctoring sessions')
    sessions_parser.add_argument('--assessment-id', help='Assessment id')
    sessions_parser.add_argument('--session-id', help='Session id')

    logs_parser = subparsers.add_parser('logs', help='Show the event log of a session')
    logs_parser.add_argument('--session-id', required=True, help='Session id')
    logs_parser.add_argument('--event-type', help='Only this event type')

    subparsers.add_parser('sweep', help='Retire completed, ended and stale sessions now')
    subparsers.add_parser('init-db', help='Create missing tables')
    subparsers.add_parser('stats', help='Show database statistics')
    return parser


async def run(args: argparse.Namespace):
    if args.command == 'create-user':
        await create_user(args.email, args.name, args.role)
    elif args.command == 'issue-token':
        await issue_token(args.email, args.hours)
    elif args.command == 'list-users':
        await list_users(args.role)
    elif args.command == 'sessions':
        await show_sessions(args.assessment_id, args.session_id)
    elif args.command == 'logs':
        await show_session_events(args.session_id, args.event_type)
    elif args.command == 'sweep':
        await sweep_sessions()
    elif args.command == 'init-db':
        await create_db_and_tables()
        print("✅ Tables created")
    elif args.command == 'stats':
        await database_stats()


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    asyncio.run(run(args))


if __name__ == "__main__":
    main()
