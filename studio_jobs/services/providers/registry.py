from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

import httpx

from studio_jobs.domain.enums import JobKind, ProviderName
from studio_jobs.domain.errors import ValidationError
from studio_jobs.domain.media import ASPECT_RATIO_DIMENSIONS
from studio_jobs.services.providers.a2e import A2EClient
from studio_jobs.services.providers.base import ProviderClient
from studio_jobs.services.providers.fal_images import FalImageClient
from studio_jobs.services.providers.heygen import HeyGenVideoClient
from studio_jobs.services.providers.openai_images import OpenAIImageClient

logger = logging.getLogger("provider_registry")

# Fixed selection order when the request does not name a provider
DEFAULT_PRIORITY: Dict[JobKind, Tuple[str, ...]] = {
    JobKind.image: (ProviderName.openai.value, ProviderName.fal.value, ProviderName.a2e.value),
    JobKind.avatar: (ProviderName.a2e.value,),
    JobKind.video: (ProviderName.a2e.value, ProviderName.heygen.value),
}


def normalize_provider(p: Any) -> str:
    return str(getattr(p, "value", p) or "").strip().lower().replace("-", "_")


class ProviderRegistry:
    """Name -> client lookup plus the provider selection policy. Never touches the network."""

    def __init__(
        self,
        clients: Iterable[ProviderClient] = (),
        *,
        priority: Optional[Dict[JobKind, Tuple[str, ...]]] = None,
    ) -> None:
        self._clients: Dict[str, ProviderClient] = {}
        self.priority = dict(priority or DEFAULT_PRIORITY)
        for c in clients:
            self.register(c)

    def register(self, client: ProviderClient) -> None:
        self._clients[normalize_provider(client.name)] = client

    def get(self, name: str) -> ProviderClient:
        key = normalize_provider(name)
        client = self._clients.get(key)
        if client is None:
            raise ValidationError(f"unknown provider: {name}", details={"provider": name})
        return client

    def configured_for(self, kind: JobKind) -> List[str]:
        out: List[str] = []
        for name in self.priority.get(kind, ()):
            c = self._clients.get(name)
            if c is not None and c.configured and kind in c.kinds:
                out.append(name)
        return out

    def select(self, kind: JobKind, params: Dict[str, Any]) -> ProviderClient:
        explicit = normalize_provider(params.get("provider"))
        if explicit:
            client = self.get(explicit)
            if kind not in client.kinds:
                raise ValidationError(
                    f"provider {explicit} does not support {kind.value} jobs",
                    details={"provider": explicit, "kind": kind.value},
                )
            if not client.configured:
                raise ValidationError(f"provider {explicit} is not configured", details={"provider": explicit})
            if not client.accepts(kind, params):
                raise ValidationError(
                    f"provider {explicit} cannot serve these {kind.value} parameters",
                    details={"provider": explicit, "kind": kind.value},
                )
            return client

        for name in self.configured_for(kind):
            client = self._clients[name]
            if client.accepts(kind, params):
                return client

        raise ValidationError(
            f"no configured provider can serve this {kind.value} job",
            details={"kind": kind.value, "configured": self.configured_for(kind)},
        )

    def describe(self) -> Dict[str, Any]:
        return {
            "providers": {kind.value: self.configured_for(kind) for kind in JobKind},
            "aspect_ratios": {
                ratio: {"width": w, "height": h} for ratio, (w, h) in ASPECT_RATIO_DIMENSIONS.items()
            },
        }


def build_default_registry(transport: Optional[httpx.AsyncBaseTransport] = None) -> ProviderRegistry:
    registry = ProviderRegistry(
        [
            OpenAIImageClient(transport=transport),
            FalImageClient(transport=transport),
            A2EClient(transport=transport),
            HeyGenVideoClient(transport=transport),
        ]
    )
    logger.info(
        "provider_registry_ready",
        extra={kind.value: registry.configured_for(kind) for kind in JobKind},
    )
    return registry
