from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from studio_jobs.api.deps import get_current_user_id, get_registry
from studio_jobs.services.providers.registry import ProviderRegistry

router = APIRouter(prefix="/providers", tags=["providers"])


@router.get("")
async def list_providers(
    _user_id: str = Depends(get_current_user_id),
    registry: ProviderRegistry = Depends(get_registry),
) -> Dict[str, Any]:
    """Configured providers per job kind, in selection order, plus supported aspect ratios."""
    return registry.describe()
