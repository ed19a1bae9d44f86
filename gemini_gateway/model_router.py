from __future__ import annotations

import logging

from gemini_gateway.config import ModelKind, ModelRouteConfig, RouteTable

logger = logging.getLogger("uvicorn.error")

ENDPOINT_BY_KIND: dict[ModelKind, str] = {
    ModelKind.TEXT: "/api/chat",
    ModelKind.IMAGE_PREDICT: "/api/generateImage",
    ModelKind.IMAGE_STREAM: "/api/nanobananaImage",
    ModelKind.AUDIO: "/api/generateAudio",
}


def normalize_model_id(model_id: str | None) -> str:
    return (model_id or "").strip().lower()


class ModelRouter:
    def __init__(self, table: RouteTable) -> None:
        self._routes = table.by_model_id()
        self.default_model = table.default_model
        if self.default_model not in self._routes:
            raise ValueError(f"Default model '{self.default_model}' has no route.")

    @property
    def default_route(self) -> ModelRouteConfig:
        return self._routes[self.default_model]

    def is_known(self, model_id: str | None) -> bool:
        return normalize_model_id(model_id) in self._routes

    def resolve(self, model_id: str | None) -> ModelRouteConfig:
        normalized = normalize_model_id(model_id)
        route = self._routes.get(normalized)
        if route is None:
            logger.warning(
                "model_route_unknown requested_model=%s default_model=%s",
                model_id,
                self.default_model,
            )
            return self.default_route
        return route

    def fallback_route(self, route: ModelRouteConfig) -> ModelRouteConfig:
        fallback_id = route.fallback_model_id or self.default_model
        return self._routes.get(fallback_id, self.default_route)

    def models_of_kind(self, kind: ModelKind) -> list[str]:
        return sorted(
            model_id for model_id, route in self._routes.items() if route.kind == kind
        )

    def endpoint_for(self, model_id: str | None) -> str | None:
        route = self._routes.get(normalize_model_id(model_id))
        if route is None:
            return None
        return ENDPOINT_BY_KIND[route.kind]

    def routes(self) -> list[ModelRouteConfig]:
        return [self._routes[model_id] for model_id in sorted(self._routes)]
