"""
tasks/maintenance_tasks.py
Periodic maintenance jobs.

reconcile_rating_aggregates rebuilds every resource's rating aggregate from
its visible reviews. Recomputation is idempotent, so running twice is harmless.
"""

import asyncio
import logging

from pybreaker import CircuitBreakerError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from config.settings import settings
from services.review.aggregator import reconcile_all_ratings
from shared.utils.resilience import circuit_breaker_manager
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


async def _reconcile() -> int:
    # Fresh engine per run: each asyncio.run() gets its own event loop
    engine = create_async_engine(settings.DATABASE_URL, poolclass=NullPool)
    session_factory = async_sessionmaker(engine, expire_on_commit=False, autoflush=False)
    try:
        async with session_factory() as db:
            return await reconcile_all_ratings(db)
    finally:
        await engine.dispose()


def run_reconcile() -> int:
    return asyncio.run(_reconcile())


@celery_app.task(bind=True, max_retries=3, default_retry_delay=600)
def reconcile_rating_aggregates(self):
    """Nightly: recompute average_rating / total_reviews for every reviewed resource."""
    breaker = circuit_breaker_manager.get_breaker("database")
    try:
        fixed = breaker.call(run_reconcile)
    except CircuitBreakerError:
        logger.error("Rating reconcile skipped: database circuit is open")
        raise self.retry()
    except Exception as exc:
        logger.error(f"Rating reconcile failed: {exc}")
        raise self.retry(exc=exc)

    logger.info(f"Rating reconcile complete: {fixed} resources recomputed")
    return {"resources": fixed}
