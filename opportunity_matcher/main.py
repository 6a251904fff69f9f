"""
Command line entry point.

    opportunity-matcher serve              run the scheduler until interrupted
    opportunity-matcher sync               reconcile the vector index once
    opportunity-matcher run-task NAME      run one scheduler task now
    opportunity-matcher status             print index statistics
    opportunity-matcher init-db            create the pgvector schema
"""

import argparse
import asyncio
import json
import signal
import sys
from typing import Any, List, Optional

from opportunity_matcher.core.exceptions import OpportunityMatcherError
from opportunity_matcher.engine import OpportunityEngine
from opportunity_matcher.libs.vector_store import build_vector_store
from opportunity_matcher.log.logging import logger


def _print(payload: Any) -> None:
    if hasattr(payload, "to_dict"):
        payload = payload.to_dict()
    print(json.dumps(payload, indent=2, default=str))


async def _serve() -> int:
    engine = await OpportunityEngine.from_settings()
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await engine.startup(start_scheduler=True)
    logger.info("Opportunity matcher running, waiting for shutdown signal")
    try:
        await stop_event.wait()
    finally:
        await engine.shutdown()
    return 0


async def _with_engine(action) -> int:
    engine = await OpportunityEngine.from_settings()
    try:
        await engine.startup(start_scheduler=False)
        result = await action(engine)
        _print(result)
        return 0 if getattr(result, "success", True) else 1
    finally:
        await engine.shutdown()


async def _status(engine: OpportunityEngine) -> dict:
    return {
        "index": await engine.maintenance.collect_stats(),
        "providers": engine.embedder.provider_status(),
        "config": engine.config.current.to_document(),
        "scheduler": engine.scheduler_status(),
    }


async def _init_db() -> int:
    store = build_vector_store()
    await store.ensure_schema()
    _print({"schema": "ready", "backend": type(store).__name__})
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="opportunity-matcher",
        description="Embedding sync and adaptive recommendation service",
    )
    subcommands = parser.add_subparsers(dest="command", required=True)
    subcommands.add_parser("serve", help="Run the scheduler until interrupted")
    subcommands.add_parser("sync", help="Reconcile the vector index with the catalog once")
    run_task = subcommands.add_parser("run-task", help="Run one scheduler task immediately")
    run_task.add_argument("name", help="Task name, e.g. embedding_sync or learning_loop")
    subcommands.add_parser("status", help="Print index statistics and the active config")
    subcommands.add_parser("init-db", help="Create the pgvector extension, tables and indexes")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "serve":
        coro = _serve()
    elif args.command == "sync":
        coro = _with_engine(lambda engine: engine.sync())
    elif args.command == "run-task":
        coro = _with_engine(lambda engine: engine.run_task_now(args.name))
    elif args.command == "status":
        coro = _with_engine(_status)
    else:
        coro = _init_db()

    try:
        return asyncio.run(coro)
    except OpportunityMatcherError as e:
        logger.error("Command failed", command=args.command, error=str(e), error_type=type(e).__name__)
        return 1


if __name__ == "__main__":
    sys.exit(main())
