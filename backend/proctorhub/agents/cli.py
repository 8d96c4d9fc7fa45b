"""
Run a proctoring agent from a terminal.

    python -m proctorhub.agents.cli student --assessment <id>
    python -m proctorhub.agents.cli instructor --session <id>

The API location and bearer token come from PROCTOR_AGENT_* settings unless
given on the command line.
"""
import argparse
import asyncio
import logging
import signal

from .api_client import ProctoringApiClient
from .config import AgentSettings
from .monitor import StudentMonitor
from .viewer import InstructorViewer

logger = logging.getLogger("proctorhub.agents")


class FrameCounter:
    def __init__(self, report_every: int = 150):
        self.frames = 0
        self.report_every = report_every

    def __call__(self, frame):
        self.frames += 1
        if self.frames % self.report_every == 0:
            height, width = frame.shape[:2]
            logger.info(f"Received {self.frames} frames ({width}x{height})")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="proctorhub-agent", description="Proctoring agents")
    parser.add_argument("--api", help="API base URL, e.g. http://localhost:8000/api/v1")
    parser.add_argument("--token", help="Bearer token of the acting user")
    parser.add_argument("-v", "--verbose", action="store_true")

    subparsers = parser.add_subparsers(dest="role", required=True)

    student = subparsers.add_parser("student", help="Monitor an assessment attempt")
    student.add_argument("--assessment", required=True, help="Assessment id")
    student.add_argument("--camera", type=int, help="Camera index")

    instructor = subparsers.add_parser("instructor", help="Watch a session")
    instructor.add_argument("--session", required=True, help="Session id")
    instructor.add_argument("--no-auto-activate", action="store_true", help="Do not start proctoring on open")
    return parser


async def run(args: argparse.Namespace):
    overrides = {}
    if args.api:
        overrides["api_base_url"] = args.api
    if args.token:
        overrides["token"] = args.token
    if getattr(args, "camera", None) is not None:
        overrides["camera_index"] = args.camera
    settings = AgentSettings(**overrides)

    async with ProctoringApiClient(settings.api_base_url, settings.token, timeout=settings.request_timeout) as api:
        if args.role == "student":
            agent = StudentMonitor(api, args.assessment, settings=settings)
        else:
            agent = InstructorViewer(
                api,
                args.session,
                settings=settings,
                frame_sink=FrameCounter(),
                auto_activate=not args.no_auto_activate,
            )

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(agent.teardown()))

        await agent.start()
        await agent.wait_closed()
        logger.info(f"Agent finished in state {agent.state}")


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    asyncio.run(run(args))


if __name__ == "__main__":
    main()
