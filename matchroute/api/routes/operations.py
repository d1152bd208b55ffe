from fastapi import APIRouter, Depends, HTTPException, status

from matchroute.core.auth import SCOPE_SLA_RUN
from matchroute.core.security import get_machine_principal
from matchroute.schemas.notifications import DispatchSummaryOut, SweepSummaryOut
from matchroute.services.repository import RepositoryUnavailableError
from matchroute.services.workflow import get_workflow

router = APIRouter()


@router.post("/sla/sweep", response_model=SweepSummaryOut)
async def run_sla_sweep(
    principal=Depends(get_machine_principal),
    workflow=Depends(get_workflow),
) -> SweepSummaryOut:
    try:
        principal.require_scopes({SCOPE_SLA_RUN})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        summary = await workflow.run_sla_sweep()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return SweepSummaryOut(**summary.as_dict())


@router.post("/notifications/dispatch", response_model=DispatchSummaryOut)
async def dispatch_notifications(
    principal=Depends(get_machine_principal),
    workflow=Depends(get_workflow),
) -> DispatchSummaryOut:
    try:
        principal.require_scopes({SCOPE_SLA_RUN})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        summary = await workflow.dispatch_notifications()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return DispatchSummaryOut(**summary.as_dict())
