from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from probehub.core.config import Settings
from probehub.services.engine import ProbeEngine


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_engine(request: Request) -> ProbeEngine:
    return request.app.state.engine


Engine = Annotated[ProbeEngine, Depends(get_engine)]
