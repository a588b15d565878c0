from fastapi import APIRouter

from probehub.api.routes import devices, polling, readings, trials

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(devices.router, tags=["devices"])
api_router.include_router(polling.router, tags=["polling"])
api_router.include_router(readings.router, tags=["readings"])
api_router.include_router(trials.router, tags=["trials"])
