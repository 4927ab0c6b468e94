import asyncio
import sys
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from dotenv import load_dotenv

from collector.adapters.http_queue import HttpQueueClient
from collector.adapters.static_sources import StaticSourceResolver
from collector.core.config import Config
from collector.core.interfaces import ContentSearcher, EntityStore, JobQueue, QueueProbe, SourceResolver
from collector.jobs.tick import CollectionTicker
from collector.ondemand.admission import AdmissionController
from collector.ondemand.ledger import RequestLedger
from collector.ondemand.reconciler import BacklogReconciler
from collector.ondemand.runner import EnrichmentRunner
from collector.scheduling.registry import SourceScheduleRegistry
from collector.settings import get_on_demand_settings, get_scheduling_settings
from collector.utils.logger import get_logger, setup_logging
from db.manager import DatabaseManager, init_db
from db.repository import SqlRequestStore, SqlScheduleStore

load_dotenv()
log = get_logger(__name__)


def build_ticker(
    db: DatabaseManager,
    resolver: SourceResolver,
    job_queue: JobQueue,
    probe: QueueProbe,
    searcher: Optional[ContentSearcher] = None,
    entities: Optional[EntityStore] = None,
) -> CollectionTicker:
    """Wires the ticker; on-demand replay is attached only when content collaborators are given."""
    registry = SourceScheduleRegistry(SqlScheduleStore(db.session_factory), get_scheduling_settings())

    reconciler = None
    if searcher is not None and entities is not None:
        settings = get_on_demand_settings()
        ledger = RequestLedger(SqlRequestStore(db.session_factory), settings)
        runner = EnrichmentRunner(ledger, resolver, searcher, entities, settings)
        controller = AdmissionController(ledger, probe, runner, settings)
        reconciler = BacklogReconciler(ledger, controller, settings)
    else:
        log.info("On-demand backlog replay disabled: no content searcher or entity store configured")

    return CollectionTicker(registry, resolver, job_queue, reconciler)


async def tick_job(ticker: CollectionTicker):
    """The recurring task executed by the scheduler."""
    try:
        await ticker.tick()
    except Exception as e:
        log.exception(f"Critical failure in tick_job: {e}")


async def prune_job(ledger: RequestLedger):
    """Drops requester rows past the retention window."""
    try:
        removed = await ledger.prune_requesters()
        log.info(f"Requester pruning completed ({removed} rows removed)")
    except Exception as e:
        log.exception(f"Critical failure in prune_job: {e}")


def create_scheduler(ticker: CollectionTicker, ledger: RequestLedger) -> AsyncIOScheduler:
    scheduling = get_scheduling_settings()
    cron = Config.get("scheduler", default={}) or {}

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        tick_job,
        IntervalTrigger(seconds=scheduling.tick_seconds),
        args=[ticker],
        name="collection_tick",
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        prune_job,
        CronTrigger(
            hour=int(cron.get("prune_hour", 3)),
            minute=int(cron.get("prune_minute", 30)),
            timezone=cron.get("timezone", "UTC"),
        ),
        args=[ledger],
        name="requester_prune",
    )
    return scheduler


async def main():
    # 1. Setup Logging
    setup_logging()
    log.info("=== Freshness Collector Scheduler Starting ===")

    # 2. Initialize Database
    db = init_db()
    if not await db.check_connection():
        log.critical("Could not connect to database. Scheduler exiting.")
        return
    await db.create_all()

    # 3. Wire components
    queue_client = HttpQueueClient()
    resolver = StaticSourceResolver()
    ticker = build_ticker(db, resolver, queue_client, queue_client)
    ledger = RequestLedger(SqlRequestStore(db.session_factory), get_on_demand_settings())

    # 4. Setup Scheduler
    scheduler = create_scheduler(ticker, ledger)
    scheduler.start()
    log.info(f"Scheduler started. Tick every {get_scheduling_settings().tick_seconds}s.")

    # Optional: Run immediately if flag is set
    if "--now" in sys.argv:
        log.info("Running tick immediately (--now flag detected)")
        await tick_job(ticker)

    # Keep the script running
    try:
        while True:
            await asyncio.sleep(100)
    except (KeyboardInterrupt, SystemExit, asyncio.CancelledError):
        log.info("Scheduler shutting down...")
    finally:
        scheduler.shutdown(wait=False)
        await queue_client.close()
        await db.close()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
