"""Maintenance API: trigger a post-campaign run and inspect its log."""

from fastapi import APIRouter, Depends, HTTPException

from sendlists.schemas import MaintenanceLogOut, MaintenanceRequest, MaintenanceResult
from sendlists.services.maintenance import ListMaintenanceOrchestrator

router = APIRouter(prefix="/maintenance", tags=["maintenance"])


def get_orchestrator() -> ListMaintenanceOrchestrator:
    return ListMaintenanceOrchestrator()


@router.post("/runs", response_model=MaintenanceResult)
async def run_maintenance(
    data: MaintenanceRequest,
    orchestrator: ListMaintenanceOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.run_post_campaign_maintenance(
        campaign_schedule_id=data.campaign_schedule_id,
        list_id=data.list_id,
        campaign_name=data.campaign_name,
        round_number=data.round_number,
    )


@router.post("/runs/enqueue", status_code=202)
async def enqueue_maintenance(data: MaintenanceRequest):
    from sendlists.tasks.maintenance_tasks import run_post_campaign_maintenance_task

    task = run_post_campaign_maintenance_task.delay(
        data.campaign_schedule_id, data.list_id, data.campaign_name, data.round_number
    )
    return {"task_id": task.id, "status": "queued"}


@router.get("/logs", response_model=list[MaintenanceLogOut])
async def list_logs(
    campaign_schedule_id: str | None = None,
    list_id: str | None = None,
    orchestrator: ListMaintenanceOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.get_maintenance_logs(campaign_schedule_id=campaign_schedule_id, list_id=list_id)


@router.get("/logs/{log_id}", response_model=MaintenanceLogOut)
async def get_log(log_id: str, orchestrator: ListMaintenanceOrchestrator = Depends(get_orchestrator)):
    log = await orchestrator.get_maintenance_log(log_id)
    if log is None:
        raise HTTPException(404, "Maintenance log not found")
    return log


@router.post("/logs/{log_id}/cancel")
async def cancel_run(log_id: str, orchestrator: ListMaintenanceOrchestrator = Depends(get_orchestrator)):
    if not orchestrator.cancel_run(log_id):
        raise HTTPException(404, "No running maintenance with this log id")
    return {"cancelled": True, "maintenance_log_id": log_id}
