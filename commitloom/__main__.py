import argparse
import asyncio
import json
import logging
import sys

from .core.db.db import get_database_manager, wait_for_db


def setup_logging(log_level: str = "INFO") -> None:
    """Configure application logging."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )
    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.ERROR)
    logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)
    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("psycopg2").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


def _build_engine(settings):
    from .core.jobs.engine import AnalysisEngine

    db_manager = get_database_manager()
    if not wait_for_db(db_manager):
        logger.error("Database unavailable, giving up")
        sys.exit(1)
    return db_manager, AnalysisEngine(db_manager, settings=settings)


def cmd_serve(args, settings) -> None:
    db_manager, engine = _build_engine(settings)

    from .api.app import create_app
    app = create_app(db_manager, engine, settings)

    import uvicorn

    port = args.port or settings.api.port
    logger.info(f"Starting FastAPI server on http://{settings.api.host}:{port}")
    try:
        uvicorn.run(app, host=settings.api.host, port=port, log_level=args.log_level.lower())
    finally:
        engine.shutdown()


def cmd_run(args, settings) -> None:
    """Run one analysis in the foreground, answering the confirmation gate."""
    from .core.jobs.models import AnalysisJob, RunStatus

    _, engine = _build_engine(settings)
    runner = engine.build_runner()
    options = {"exclude_repos": args.exclude} if args.exclude else None
    run = engine.start_analysis(args.org, args.user, args.year, options, submit=False)
    run_id = run["run_id"]

    status = asyncio.run(runner.run(AnalysisJob(run_id)))
    if status == RunStatus.AWAITING_AI_CONFIRMATION.value:
        estimate = engine.get_ai_estimate(run_id)
        logger.info(
            f"AI review estimate: {estimate['sample_count']} samples, "
            f"~${estimate['estimated_cost_usd']} ({estimate['model']})"
        )
        engine.confirm(run_id, skip_ai_review=args.skip_ai_review, submit=False)
        status = asyncio.run(runner.run(AnalysisJob(run_id)))

    print(json.dumps(engine.get_status(run_id), indent=2, default=str))
    if status != RunStatus.DONE.value:
        sys.exit(1)


def cmd_status(args, settings) -> None:
    _, engine = _build_engine(settings)
    print(json.dumps(engine.get_status(args.run_id), indent=2, default=str))


def main():
    """Main entry point for CommitLoom."""
    parser = argparse.ArgumentParser(description="CommitLoom - Annual developer commit analysis")
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the API server")
    serve.add_argument("--port", type=int, default=None, help="Port for the API server")

    run = subparsers.add_parser("run", help="Run an analysis in the foreground")
    run.add_argument("--org", required=True, help="Organization login")
    run.add_argument("--user", action="append", required=True, help="Target user (repeatable)")
    run.add_argument("--year", type=int, required=True, help="Year to analyze")
    run.add_argument("--exclude", action="append", default=[], help="Repository to skip (repeatable)")
    run.add_argument("--skip-ai-review", action="store_true", help="Finalize without AI review")

    status = subparsers.add_parser("status", help="Show a run's status")
    status.add_argument("run_id")

    args = parser.parse_args()
    setup_logging(args.log_level)

    from .setting import get_settings
    settings = get_settings()

    commands = {"serve": cmd_serve, "run": cmd_run, "status": cmd_status}
    commands[args.command](args, settings)


if __name__ == "__main__":
    main()
