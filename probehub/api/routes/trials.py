from __future__ import annotations

from fastapi import APIRouter, HTTPException, status

from probehub.api.deps import Engine
from probehub.core.errors import DuplicateTrialError, InvalidTrialError, NotFoundError
from probehub.schemas.sensors import TrialCreate, TrialRead, TrialSummaryRead
from probehub.services.trials import summarize_trial

router = APIRouter(prefix="/trials")


@router.get("", response_model=list[TrialRead])
def list_trials(engine: Engine) -> list[TrialRead]:
    return [TrialRead.model_validate(t) for t in engine.trials.get_all()]


@router.post("", response_model=TrialRead, status_code=status.HTTP_201_CREATED)
def record_trial(payload: TrialCreate, engine: Engine) -> TrialRead:
    try:
        trial = engine.record_trial(
            name=payload.name,
            location=payload.location,
            start=payload.start,
            end=payload.end,
            trial_id=payload.trial_id,
        )
    except DuplicateTrialError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except InvalidTrialError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    return TrialRead.model_validate(trial)


@router.get("/{trial_id}", response_model=TrialRead)
def get_trial(trial_id: str, engine: Engine) -> TrialRead:
    try:
        trial = engine.trials.get_by_id(trial_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    return TrialRead.model_validate(trial)


@router.get("/{trial_id}/summary", response_model=TrialSummaryRead)
def get_trial_summary(trial_id: str, engine: Engine) -> TrialSummaryRead:
    try:
        trial = engine.trials.get_by_id(trial_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    return TrialSummaryRead.model_validate(summarize_trial(trial))
