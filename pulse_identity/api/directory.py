"""Admin directory sync routes."""

import logging

from fastapi import APIRouter, Query

from ..core.dependencies import AdminDep, SessionDep
from ..models import SyncTrigger
from ..schemas import SyncOutcomeResponse, SyncRunListResponse, SyncRunResponse
from ..services.user_sync import latest_sync_runs, sync_organization_directory

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/directory", tags=["directory"])


@router.post("/sync", response_model=SyncOutcomeResponse)
async def trigger_sync(current_user: AdminDep, session: SessionDep):
    """Run a directory sync now.

    A failed fetch is still a 200: the outcome carries the structured error.
    """
    logger.info(
        f"Manual directory sync requested by {current_user.slack_user_id} "
        f"for org {current_user.organization.slug}"
    )
    outcome = await sync_organization_directory(
        session, current_user.organization, SyncTrigger.MANUAL
    )
    return SyncOutcomeResponse.model_validate(outcome.to_dict())


@router.get("/sync/runs", response_model=SyncRunListResponse)
async def list_sync_runs(
    current_user: AdminDep,
    session: SessionDep,
    limit: int = Query(default=10, ge=1, le=100),
):
    runs = await latest_sync_runs(session, current_user.organization_id, limit=limit)
    return SyncRunListResponse(runs=[SyncRunResponse.model_validate(run) for run in runs])
