"""
Main entry point for the realtime interview server.
"""

import argparse
import asyncio
import logging
import sys

from realtime_interview.cache.backends import RedisCacheBackend
from realtime_interview.cache.session_cache import SessionCache
from realtime_interview.config import get_settings
from realtime_interview.db.repository import (
    SqlDecisionSink,
    SqlKnowledgeRetriever,
    SqlTemplateStore,
    SqlTranscriptSink,
    create_session_factory,
)
from realtime_interview.jobs.post_process import RedisJobQueue
from realtime_interview.models.llm_client import LLMClient
from realtime_interview.orchestrator.interview_orchestrator import InterviewOrchestrator
from realtime_interview.transport.server import InterviewServer


def setup_logging() -> None:
    """Configure application logging."""
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="realtime_interview")
    subcommands = parser.add_subparsers(dest="command", required=True)

    serve = subcommands.add_parser("serve", help="Run the interview websocket server")
    serve.add_argument("--host", default=None, help="Bind address (defaults to WS_HOST)")
    serve.add_argument("--port", type=int, default=None, help="Bind port (defaults to WS_PORT)")
    return parser


async def run_server(host: str | None = None, port: int | None = None) -> None:
    """
    Wire the production collaborators and serve until cancelled.

    Args:
        host: Bind address override.
        port: Bind port override.
    """
    settings = get_settings()
    logger = logging.getLogger(__name__)

    logger.info("Initializing realtime interview server...")
    logger.debug(f"Decision model: {settings.controller_model}, response model: {settings.interviewer_model}")

    backend = RedisCacheBackend.from_url(settings.redis_url)
    cache = SessionCache(
        backend,
        ttl_seconds=settings.session_cache_ttl_seconds,
        window_size=settings.transcript_context_size,
    )
    session_factory = create_session_factory(settings.database_url, echo=settings.debug)
    llm_client = LLMClient()
    job_queue = RedisJobQueue.from_url(settings.redis_url)

    orchestrator = InterviewOrchestrator(
        cache=cache,
        templates=SqlTemplateStore(session_factory),
        retriever=SqlKnowledgeRetriever(session_factory),
        decision_sink=SqlDecisionSink(session_factory),
        transcript_sink=SqlTranscriptSink(session_factory),
        job_queue=job_queue,
        settings=settings,
        llm_client=llm_client,
    )
    server = InterviewServer(orchestrator, settings=settings)

    try:
        await server.serve(host, port)
    finally:
        await server.close()
        await llm_client.close()
        await job_queue.close()
        await backend.close()


def main() -> None:
    """Main entry point for the application."""
    setup_logging()
    args = build_parser().parse_args(sys.argv[1:])

    try:
        if args.command == "serve":
            asyncio.run(run_server(args.host, args.port))
    except KeyboardInterrupt:
        print("\nInterview server stopped.")
        sys.exit(0)
    except Exception as e:
        logging.error(f"Application error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
