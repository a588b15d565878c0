from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, HTTPException, Query, status

from probehub.api.deps import Engine
from probehub.schemas.sensors import ReadingRead

router = APIRouter(prefix="/readings")


@router.get("", response_model=list[ReadingRead])
def list_readings(
    engine: Engine,
    device_id: Annotated[str | None, Query(min_length=1, max_length=128)] = None,
    limit: Annotated[int | None, Query(ge=1, le=100_000)] = None,
) -> list[ReadingRead]:
    readings = engine.history.snapshot()
    if device_id is not None:
        readings = [r for r in readings if r.device_id == device_id]
    if limit is not None:
        readings = readings[-limit:]
    return [ReadingRead.model_validate(r) for r in readings]


@router.get("/latest", response_model=ReadingRead)
def latest_reading(engine: Engine) -> ReadingRead:
    reading = engine.history.latest()
    if reading is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No readings yet")
    return ReadingRead.model_validate(reading)


@router.delete("", status_code=status.HTTP_204_NO_CONTENT)
def clear_readings(engine: Engine) -> None:
    engine.history.clear()
