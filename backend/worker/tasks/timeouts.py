"""Celery task that sweeps expired step deadlines and execution due dates.

Runs every ``TIMEOUT_SWEEP_INTERVAL_SECONDS`` via Celery Beat. Several
workers may pick the task up at once; the scheduler's lease keeps each
execution to a single sweeper.
"""

import asyncio
import logging

from worker.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(
    name="worker.tasks.timeouts.sweep_timeouts",
    bind=True,
    max_retries=2,
    default_retry_delay=15,
    queue="timeouts",
)
def sweep_timeouts(self):
    """Fire every due timeout once."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        result = loop.run_until_complete(_sweep())
        if result["scanned"]:
            logger.info(f"[timeouts] Sweep done: {result}")
        return result
    except Exception as exc:
        logger.error(f"[timeouts] Sweep failed: {exc}", exc_info=True)
        raise self.retry(exc=exc)
    finally:
        loop.close()


async def _sweep() -> dict:
    from db.worker_session import worker_service

    async with worker_service() as service:
        report = await service.scheduler.sweep()
    return report.to_dict()
