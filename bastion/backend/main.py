from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
import time
from typing import NoReturn

import uvicorn

from . import pipeline
from .api.main import create_app, get_pipeline_stats, set_processor, set_repository
from .api.ws_manager import ws_manager
from .config import Settings, load_settings
from .errors import ConfigurationError
from .pipeline import init_queues
from .processor import EventProcessor, build_processor
from .storage import Database, VerdictRepository, apply_migrations

logger = logging.getLogger("bastion.main")


# ---------------------------------------------------------------------------
# Background tasks
# ---------------------------------------------------------------------------

async def housekeeping(
    processor: EventProcessor,
    shutdown_event: asyncio.Event,
    interval: float = 30.0,
) -> None:
    """Purge expired quarantine entries and idle correlation state."""
    while not shutdown_event.is_set():
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
        now = time.time()
        processor.quarantine_store.purge_expired(now)
        processor.aggregator.window.purge(now)


async def stats_broadcaster(shutdown_event: asyncio.Event, interval: float = 10.0) -> None:
    while not shutdown_event.is_set():
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
        snapshot = {"timestamp": time.time(), **get_pipeline_stats()}
        await ws_manager.broadcast("stats", snapshot)
        logger.info(
            "METRICS counters=%s processor=%s ws=%s",
            snapshot["counters"], snapshot.get("processor"), snapshot["ws"],
        )


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------

async def run(settings: Settings) -> None:
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    init_queues()

    def _signal_handler(_signum, _frame) -> None:
        logger.info("Shutdown signal received")
        loop.call_soon_threadsafe(shutdown_event.set)

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    # Storage (default Audit Sink)
    db = Database(settings.DB_PATH)
    db.init_schema()
    apply_migrations(db)
    repo = VerdictRepository(db)

    # Pipeline: rule / IOC load errors are fatal here
    processor = build_processor(settings, audit_sink=repo, alert_sink=repo.save_alert)
    processor.alerts.bind_loop(loop)

    set_repository(repo)
    set_processor(processor)

    app = create_app()
    uv_config = uvicorn.Config(
        app,
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_level="warning",
        loop="none",
    )
    uv_server = uvicorn.Server(uv_config)

    tasks = [
        asyncio.create_task(processor.refresher.run(shutdown_event), name="intel"),
        asyncio.create_task(
            ws_manager.pump("alerts", pipeline.alert_queue, shutdown_event), name="alerts_ws",
        ),
        asyncio.create_task(
            ws_manager.pump("verdicts", pipeline.verdict_queue, shutdown_event), name="verdicts_ws",
        ),
        asyncio.create_task(housekeeping(processor, shutdown_event),  name="housekeeping"),
        asyncio.create_task(stats_broadcaster(shutdown_event),        name="stats_ws"),
        asyncio.create_task(uv_server.serve(),                        name="api"),
    ]

    cfg = processor.config()
    logger.info(
        "Bastion started — API=http://%s:%d rules=v%d iocs=%d block>=%d trust>=%d deadline=%dms feed=%s",
        settings.API_HOST, settings.API_PORT,
        processor.rule_store.version, len(processor.ioc_cache),
        cfg.block_threshold, cfg.trust_threshold, cfg.per_event_deadline_ms,
        "on" if processor.refresher.enabled else "off",
    )

    await shutdown_event.wait()

    uv_server.should_exit = True
    for t in tasks[:-1]:
        t.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    await processor.refresher.client.aclose()
    processor.shutdown()
    db.close()
    logger.info("Final stats — %s", processor.stats)
    logger.info("Bastion stopped cleanly")


def _parse_args(settings: Settings) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Bastion security event pipeline")
    parser.add_argument("--host",  default=settings.API_HOST)
    parser.add_argument("--port",  type=int, default=settings.API_PORT)
    parser.add_argument("--db",    default=settings.DB_PATH)
    parser.add_argument("--rules", default=settings.RULES_PATH, help="JSON rule file")
    parser.add_argument("--iocs",  default=settings.IOC_PATH, help="JSON IOC seed file")
    parser.add_argument(
        "--log-level", default=settings.LOG_LEVEL.upper(),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    return parser.parse_args()


def main() -> NoReturn:
    try:
        settings = load_settings()
    except ConfigurationError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)

    args = _parse_args(settings)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    settings = settings.model_copy(update={
        "API_HOST": args.host,
        "API_PORT": args.port,
        "DB_PATH": args.db,
        "RULES_PATH": args.rules,
        "IOC_PATH": args.iocs,
    })

    try:
        asyncio.run(run(settings))
    except ConfigurationError as e:
        logger.error("Refusing to start: %s", e)
        sys.exit(1)
    sys.exit(0)


if __name__ == "__main__":
    main()
