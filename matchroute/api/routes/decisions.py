from fastapi import APIRouter, Depends, HTTPException, status

from matchroute.core.security import InvalidRoutingTokenError
from matchroute.schemas.decisions import DecisionOut, DecisionSubmit
from matchroute.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)
from matchroute.services.workflow import get_workflow

router = APIRouter()


@router.post("", response_model=DecisionOut)
async def submit_decision(payload: DecisionSubmit, workflow=Depends(get_workflow)) -> DecisionOut:
    try:
        row, created = await workflow.submit_decision(
            payload.token,
            decision=payload.decision,
            proposed_terms=payload.proposed_terms,
            message=payload.message,
            reason=payload.reason,
        )
    except InvalidRoutingTokenError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return DecisionOut(**row, created=created)
