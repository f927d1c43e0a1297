from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request

from medcenter.api.deps import require_admin
from medcenter.api.schemas import envelope
from medcenter.core.errors import NotFound
from medcenter.models import User
from medcenter.services.jobs import BatchResult, JobRunner

router = APIRouter(prefix="/jobs", tags=["jobs"])


def _runner(request: Request) -> JobRunner:
    return request.app.state.job_runner


@router.get("")
async def jobs_status(
    admin: User = Depends(require_admin),
    runner: JobRunner = Depends(_runner),
) -> dict[str, Any]:
    return envelope(runner.status())


@router.post("/{name}/run")
async def run_job(
    name: str,
    admin: User = Depends(require_admin),
    runner: JobRunner = Depends(_runner),
) -> dict[str, Any]:
    if name not in runner.names:
        raise NotFound(f"Unknown job '{name}'")
    result = await runner.run_now(name)
    if isinstance(result, BatchResult):
        result = result.as_dict()
    return envelope({"job": name, "result": result}, f"Job {name} executed")
