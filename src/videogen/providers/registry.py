from videogen.errors import UnknownProviderError
from videogen.providers.a2e import A2ETalkingPhoto
from videogen.providers.base import ProviderAdapter
from videogen.providers.did import DIDTalkingHead
from videogen.providers.runway import RunwayImageToVideo, RunwayTextToVideo

DEFAULT_PROVIDER_BY_KIND = {
    "text-based": "runway",
    "avatar-based": "a2e",
}


class ProviderRegistry:
    def __init__(self, adapters: list[ProviderAdapter] | None = None) -> None:
        self._adapters: dict[str, ProviderAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: ProviderAdapter) -> None:
        self._adapters[adapter.name] = adapter

    def get(self, name: str) -> ProviderAdapter:
        adapter = self._adapters.get(name)
        if adapter is None:
            raise UnknownProviderError(f"unknown provider: {name}")
        return adapter

    def names(self) -> list[str]:
        return sorted(self._adapters)

    def resolve(self, kind: str, name: str | None = None) -> ProviderAdapter:
        adapter = self.get(name or DEFAULT_PROVIDER_BY_KIND.get(kind, ""))
        if adapter.kinds and kind not in adapter.kinds:
            raise UnknownProviderError(f"provider {adapter.name} does not handle {kind} jobs")
        return adapter


def default_registry() -> ProviderRegistry:
    return ProviderRegistry([RunwayTextToVideo(), RunwayImageToVideo(), A2ETalkingPhoto(), DIDTalkingHead()])
