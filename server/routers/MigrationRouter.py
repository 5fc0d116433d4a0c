from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request

from server.dependencies.auth import verify_api_key
from services.sparse_migration.MigrationService import MigrationAlreadyRunningError

router = APIRouter(prefix="/migration", tags=["migration"])


@router.post("/run")
async def run_migration(
    request: Request,
    background_tasks: BackgroundTasks,
    _: None = Depends(verify_api_key),
) -> dict:
    """Start a sparse vector migration over all active users in the background.

    The run is reserved before the response is sent, so a second request
    arriving before the background task has started is already rejected.
    The summary is available from GET /migration/status once the run finished.

    Raises:
        HTTPException: 409 if a run is already in progress.
    """
    migration_service = request.app.state.migration_service
    try:
        migration_service.reserve_run()
    except MigrationAlreadyRunningError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    background_tasks.add_task(migration_service.do_run, reserved=True)
    return {"status": "accepted"}


@router.get("/status")
async def migration_status(
    request: Request,
    _: None = Depends(verify_api_key),
) -> dict:
    """Whether a run is active, its current phase and the summary of the last finished run."""
    migration_service = request.app.state.migration_service
    last_summary = migration_service.last_summary
    return {
        "running": migration_service.is_running(),
        "phase": migration_service.phase.value,
        "last_summary": last_summary.model_dump(mode="json") if last_summary else None,
    }
