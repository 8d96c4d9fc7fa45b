from fastapi import APIRouter

from .endpoints import sessions, events, rtc, submissions, assessments, stream

api_router = APIRouter()

api_router.include_router(sessions.router, prefix="/sessions", tags=["sessions"])
api_router.include_router(events.router, prefix="/sessions", tags=["events"])
api_router.include_router(stream.router, prefix="/sessions", tags=["stream"])
api_router.include_router(rtc.router, prefix="/rtc", tags=["signaling"])
api_router.include_router(submissions.router, prefix="/submissions", tags=["submissions"])
api_router.include_router(assessments.router, prefix="/assessments", tags=["assessments"])


@api_router.get("/health")
async def health_check():
    return {"status": "ok", "message": "API is healthy"}
