from fastapi import APIRouter, Depends, HTTPException, status

from aurelia.api.dependencies import get_scheduler
from aurelia.background_workers.scheduler import JobScheduler
from aurelia.common.utils import success_response

jobs_admin_router = APIRouter()


@jobs_admin_router.post("/{job_name}/run")
async def run_job(job_name: str, scheduler: JobScheduler = Depends(get_scheduler)):
    if job_name not in scheduler.jobs:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown job {job_name}")
    result = await scheduler.run_now(job_name)
    return success_response({"job": job_name, "result": result})


@jobs_admin_router.get("")
async def list_jobs(scheduler: JobScheduler = Depends(get_scheduler)):
    jobs = [
        {"name": pj.name, "interval_seconds": pj.interval_seconds, "last_result": pj.last_result}
        for pj in scheduler.jobs.values()
    ]
    return success_response({"running": scheduler.running, "jobs": jobs})
