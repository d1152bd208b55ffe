from fastapi import APIRouter, Depends, HTTPException, Query, status

from matchroute.core.auth import SCOPE_REQUESTS_READ, SCOPE_REQUESTS_WRITE
from matchroute.core.security import get_machine_principal
from matchroute.schemas.audit import AuditEntryOut
from matchroute.schemas.requests import MatchOut, RequestCreate, RequestCreatedOut, RequestStatusOut
from matchroute.services.counterparties import CounterpartyLookupError
from matchroute.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)
from matchroute.services.workflow import get_workflow

router = APIRouter()


@router.post("", response_model=RequestCreatedOut, status_code=status.HTTP_201_CREATED)
async def create_request(
    payload: RequestCreate,
    principal=Depends(get_machine_principal),
    workflow=Depends(get_workflow),
) -> RequestCreatedOut:
    try:
        principal.require_scopes({SCOPE_REQUESTS_WRITE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await workflow.create_request(payload, actor=principal.actor)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    return RequestCreatedOut(request_id=row["id"], status=row["status"])


@router.get("/{request_id}", response_model=RequestStatusOut)
async def get_request_status(
    request_id: str,
    principal=Depends(get_machine_principal),
    workflow=Depends(get_workflow),
) -> RequestStatusOut:
    try:
        principal.require_scopes({SCOPE_REQUESTS_READ})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        view = await workflow.get_request_status(request_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return RequestStatusOut(**view)


@router.get("/{request_id}/audit", response_model=list[AuditEntryOut])
async def get_audit_trail(
    request_id: str,
    principal=Depends(get_machine_principal),
    workflow=Depends(get_workflow),
    limit: int = Query(default=200, ge=1, le=1000),
) -> list[AuditEntryOut]:
    try:
        principal.require_scopes({SCOPE_REQUESTS_READ})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        rows = await workflow.get_audit_trail(request_id, limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return [AuditEntryOut(**row) for row in rows]


@router.post("/{request_id}/match", response_model=MatchOut)
async def trigger_match(
    request_id: str,
    principal=Depends(get_machine_principal),
    workflow=Depends(get_workflow),
) -> MatchOut:
    try:
        principal.require_scopes({SCOPE_REQUESTS_WRITE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        view = await workflow.trigger_match(request_id, actor=principal.actor)
    except (RepositoryUnavailableError, CounterpartyLookupError) as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return MatchOut(**view)
