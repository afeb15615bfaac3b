# ABOUTME: CLI entry point for content-pulse.
# ABOUTME: Supports 'serve', 'run', 'ingest' and 'reconcile' commands.

import argparse
import asyncio
import logging
import sys

import structlog
import uvicorn

from content_pulse.config import get_settings
from content_pulse.models import ContentType

log = structlog.get_logger()


def configure_logging(level: str) -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelNamesMapping().get(level.upper(), logging.INFO)
        )
    )


def cmd_serve(args: argparse.Namespace) -> None:
    """Start the operator API with the scheduler running in-process."""
    settings = get_settings()
    host = args.host or settings.host
    port = args.port or settings.port
    log.info("starting_server", host=host, port=port)
    uvicorn.run("content_pulse.web.app:app", host=host, port=port)


def cmd_run(_args: argparse.Namespace) -> None:
    """Run the scheduler in the foreground until interrupted."""
    try:
        asyncio.run(_run_scheduler())
    except KeyboardInterrupt:
        log.info("scheduler_interrupted")


async def _run_scheduler() -> None:
    from content_pulse.db.session import close_db, get_session_factory, init_db
    from content_pulse.services.engine import Engine
    from content_pulse.services.scheduler import Scheduler

    await init_db()
    scheduler = Scheduler(Engine(get_session_factory()))
    scheduler.start()
    try:
        await asyncio.Event().wait()
    finally:
        await scheduler.stop()
        await close_db()


def cmd_ingest(args: argparse.Namespace) -> None:
    """Run one ingestion pass now."""
    asyncio.run(_run_once("ingest", args.content_type))


def cmd_reconcile(args: argparse.Namespace) -> None:
    """Run retention reconciliation now."""
    asyncio.run(_run_once("reconcile", args.content_type))


async def _run_once(action: str, content_type: ContentType | None) -> None:
    from content_pulse.db.session import close_db, get_session_factory, init_db
    from content_pulse.services.engine import Engine

    await init_db()
    try:
        engine = Engine(get_session_factory())
        if action == "ingest":
            summaries = await engine.run_ingestion_pass(content_type, reason="cli")
            log.info("ingest_done", sources=len(summaries), created=sum(s.created for s in summaries))
        else:
            for ct in [content_type] if content_type else list(ContentType):
                result = await engine.run_reconciliation(ct)
                if result is not None:
                    log.info("reconcile_done", **result.model_dump(mode="json"))
        await engine.watcher.wait_idle()
    finally:
        await close_db()


def main() -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="content-pulse", description="Content ingestion and retention scheduler"
    )
    subparsers = parser.add_subparsers(dest="command")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start operator API and scheduler")
    serve_parser.add_argument("--host", type=str, default=None)
    serve_parser.add_argument("--port", type=int, default=None)

    # run
    subparsers.add_parser("run", help="Run the scheduler in the foreground")

    # ingest / reconcile
    for name, help_text in (("ingest", "Run one ingestion pass"), ("reconcile", "Reconcile retention")):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--content-type", type=ContentType, choices=list(ContentType), default=None)

    args = parser.parse_args()
    configure_logging(get_settings().log_level)

    commands = {"serve": cmd_serve, "run": cmd_run, "ingest": cmd_ingest, "reconcile": cmd_reconcile}
    command = commands.get(args.command)
    if command is None:
        parser.print_help()
        sys.exit(1)
    command(args)


if __name__ == "__main__":
    main()
