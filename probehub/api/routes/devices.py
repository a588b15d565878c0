from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, status

from probehub.api.deps import Engine
from probehub.core.errors import (
    DuplicateDeviceError,
    InvalidDeviceError,
    NotFoundError,
    TransportError,
)
from probehub.models.sensor import FetchOutcome
from probehub.schemas.sensors import DeviceCreate, DeviceRead, FetchOutcomeRead, ReadingRead
from probehub.services.connectivity import ConnectivityTracker

router = APIRouter(prefix="/devices")


def to_outcome_read(outcome: FetchOutcome) -> FetchOutcomeRead:
    return FetchOutcomeRead(
        device_id=outcome.device_id,
        kind=outcome.kind,
        status=ConnectivityTracker.status_for(outcome),
        reading=ReadingRead.model_validate(outcome.reading) if outcome.reading else None,
        error=str(outcome.error) if outcome.error else None,
        received_at=outcome.received_at,
    )


@router.get("", response_model=list[DeviceRead])
def list_devices(engine: Engine) -> list[DeviceRead]:
    return [DeviceRead.model_validate(d) for d in engine.registry.list()]


@router.post("", response_model=DeviceRead, status_code=status.HTTP_201_CREATED)
def add_device(payload: DeviceCreate, engine: Engine) -> DeviceRead:
    try:
        device = engine.registry.add(payload.to_domain())
    except DuplicateDeviceError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except InvalidDeviceError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    return DeviceRead.model_validate(device)


@router.post("/fetch-all", response_model=dict[str, FetchOutcomeRead])
def fetch_all(engine: Engine) -> dict[str, FetchOutcomeRead]:
    results = engine.scheduler.fetch_all()
    return {device_id: to_outcome_read(o) for device_id, o in results.items()}


@router.get("/{device_id}", response_model=DeviceRead)
def get_device(device_id: str, engine: Engine) -> DeviceRead:
    try:
        device = engine.registry.get(device_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    return DeviceRead.model_validate(device)


@router.get("/{device_id}/info")
def get_device_info(device_id: str, engine: Engine) -> dict[str, Any]:
    try:
        device = engine.registry.get(device_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    get_info = getattr(engine.client, "get_info", None)
    if get_info is None:
        raise HTTPException(
            status_code=status.HTTP_501_NOT_IMPLEMENTED,
            detail="Device info is not supported by this client",
        )
    try:
        return get_info(device)
    except TransportError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Device {device_id} unreachable",
        ) from e
