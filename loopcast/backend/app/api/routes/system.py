"""
Loopcast API — System configuration routes.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends

from app.api.deps import get_store
from app.schemas.schemas import SystemConfigSchema, SystemConfigUpdate
from app.services.store.stream_store import StreamStore

router = APIRouter(prefix="/system-config", tags=["System"])


@router.get("", response_model=SystemConfigSchema)
async def get_system_config(store: StreamStore = Depends(get_store)):
    return await store.get_system_config()


@router.post("", response_model=SystemConfigSchema)
async def update_system_config(
    request: SystemConfigUpdate,
    store: StreamStore = Depends(get_store),
):
    """Ports take effect for streams started after the change."""
    return await store.create_or_update_system_config(request.model_dump(exclude_none=True))
