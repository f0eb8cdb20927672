"""Provider selection: fast-path routing by model name, with fallback to the default provider."""

from __future__ import annotations

import logging

from config import AppConfig
from logger import LOGGER_NAME
from models import CompletionRequest, ProviderRoute, RoutePlan

log = logging.getLogger(LOGGER_NAME)


class ProviderSelector:
    """Decide which upstream gets a request first.

    Pure function of the requested model and static configuration: models in
    the fast-path mapping go to the fast-path provider with the model renamed
    to that provider's naming; everything else goes straight to OpenRouter.
    """

    def __init__(self, config: AppConfig) -> None:
        self._config = config
        self.default_route = ProviderRoute(
            name="openrouter",
            url=f"{config.openrouter_base_url}/chat/completions",
        )
        self.fast_route = ProviderRoute(
            name="fast-path",
            url=config.fast_path_url,
            api_key=config.fast_path_api_key,
            fast_path=True,
        )

    def fast_path_model(self, model: str) -> str | None:
        """Fast-path model name for `model`, or None if it is not routed there."""
        if not self._config.fast_path_enabled:
            return None
        return self._config.fast_path_models.get(model)

    def select(self, request: CompletionRequest) -> RoutePlan:
        mapped = self.fast_path_model(request.model)
        if mapped is None:
            return self.fallback(request)
        log.info("Fast path for model=%s as %s via %s", request.model, mapped, self.fast_route.url)
        return RoutePlan(route=self.fast_route, body=request.with_model(mapped), model=mapped)

    def fallback(self, request: CompletionRequest) -> RoutePlan:
        """The default provider with the caller's original bytes."""
        return RoutePlan(route=self.default_route, body=request.raw, model=request.model)
