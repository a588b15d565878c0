from __future__ import annotations

from fastapi import APIRouter, HTTPException, status

from probehub.api.deps import Engine
from probehub.api.routes.devices import to_outcome_read
from probehub.core.errors import NotFoundError
from probehub.schemas.sensors import (
    FetchOutcomeRead,
    IntervalUpdate,
    PollingOverview,
    PollingStart,
    PollingState,
)

router = APIRouter(prefix="/polling")


def _overview(engine: Engine) -> PollingOverview:
    scheduler = engine.scheduler
    return PollingOverview(
        default_interval_seconds=scheduler.default_interval_seconds,
        active=[PollingState.model_validate(i.__dict__) for i in scheduler.polling_info()],
    )


@router.get("", response_model=PollingOverview)
def polling_overview(engine: Engine) -> PollingOverview:
    return _overview(engine)


@router.put("/interval", response_model=PollingOverview)
def set_default_interval(payload: IntervalUpdate, engine: Engine) -> PollingOverview:
    engine.scheduler.set_default_interval(payload.interval_seconds)
    return _overview(engine)


@router.post("/{device_id}/start", response_model=PollingOverview)
def start_polling(
    device_id: str, engine: Engine, payload: PollingStart | None = None
) -> PollingOverview:
    interval = payload.interval_seconds if payload is not None else None
    try:
        # The HTTP caller cannot consume the stream; its subscription is released.
        engine.scheduler.start_polling(device_id, interval).close()
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    return _overview(engine)


@router.post("/{device_id}/stop", response_model=PollingOverview)
def stop_polling(device_id: str, engine: Engine) -> PollingOverview:
    if not engine.scheduler.stop_polling(device_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Device '{device_id}' is not being polled",
        )
    return _overview(engine)


@router.post("/{device_id}/once", response_model=FetchOutcomeRead)
def poll_once(device_id: str, engine: Engine) -> FetchOutcomeRead:
    try:
        outcome = engine.scheduler.poll_once(device_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    return to_outcome_read(outcome)
