"""Post-campaign maintenance tasks."""

import asyncio
import logging

from sendlists.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(bind=True)
def run_post_campaign_maintenance_task(
    self,
    campaign_schedule_id: str,
    list_id: str,
    campaign_name: str,
    round_number: int,
) -> dict:
    """Run maintenance for a completed round. Never retried automatically; the scheduler decides."""
    return asyncio.run(_run_maintenance(campaign_schedule_id, list_id, campaign_name, round_number))


async def _run_maintenance(campaign_schedule_id: str, list_id: str, campaign_name: str, round_number: int) -> dict:
    from sendlists.database import engine
    from sendlists.services.cache import CacheLayer
    from sendlists.services.errors import MaintenanceInProgressError
    from sendlists.services.maintenance import ListMaintenanceOrchestrator

    # asyncio.run closes the loop; pooled connections must not outlive it
    cache = CacheLayer()
    orchestrator = ListMaintenanceOrchestrator(cache=cache)
    try:
        result = await orchestrator.run_post_campaign_maintenance(
            campaign_schedule_id, list_id, campaign_name, round_number
        )
    except MaintenanceInProgressError as e:
        logger.warning(str(e))
        return {"success": False, "error": str(e)}
    finally:
        await cache.aclose()
        await engine.dispose()

    if result.success:
        logger.info(f"Maintenance for {campaign_name} round {round_number}: {result.summary}")
    else:
        logger.error(f"Maintenance for {campaign_name} round {round_number} failed: {result.error}")
    return result.model_dump()
