from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

GENERATIVE_LANGUAGE_SCOPE = "https://www.googleapis.com/auth/generative-language"
CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"

DEFAULT_TEXT_MODEL = "gemini-2.5-flash"

_TEXT_ENDPOINT = "/v1beta/models/{model}:generateContent"
_IMAGE_ENDPOINT = "/v1/models/{model}:generateImage"
_AUDIO_ENDPOINT = "/v1/models/{model}:generateContent"
_STREAM_IMAGE_ENDPOINT = (
    "/v1/projects/{project}/locations/{location}/publishers/google/models/"
    "{model}:streamGenerateContent"
)


class ModelKind(str, Enum):
    TEXT = "text"
    IMAGE_PREDICT = "image-predict"
    IMAGE_STREAM = "image-stream"
    AUDIO = "audio"


class ModelRouteConfig(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_id: str
    kind: ModelKind
    endpoint_path: str
    upstream_model: str
    fallback_model_id: str | None = None
    scope: str = GENERATIVE_LANGUAGE_SCOPE
    api: Literal["generative_language", "vertex"] = "generative_language"
    display_name: str | None = None

    @field_validator("model_id", mode="before")
    @classmethod
    def _normalize_model_id(cls, value: Any) -> str:
        normalized = str(value or "").strip().lower()
        if not normalized:
            raise ValueError("Route 'model_id' must be a non-empty string.")
        return normalized

    def build_path(self, *, project: str | None = None, location: str = "") -> str:
        return self.endpoint_path.format(
            model=self.upstream_model,
            project=project or "",
            location=location,
        )


class RouteTable(BaseModel):
    default_model: str = DEFAULT_TEXT_MODEL
    routes: list[ModelRouteConfig] = Field(default_factory=list)

    @field_validator("default_model", mode="before")
    @classmethod
    def _normalize_default_model(cls, value: Any) -> str:
        return str(value or DEFAULT_TEXT_MODEL).strip().lower()

    def by_model_id(self) -> dict[str, ModelRouteConfig]:
        return {route.model_id: route for route in self.routes}


def _text_route(
    model_id: str, *, fallback: str | None = DEFAULT_TEXT_MODEL
) -> ModelRouteConfig:
    return ModelRouteConfig(
        model_id=model_id,
        kind=ModelKind.TEXT,
        endpoint_path=_TEXT_ENDPOINT,
        upstream_model=model_id,
        fallback_model_id=fallback,
    )


def _image_route(model_id: str, upstream_model: str) -> ModelRouteConfig:
    return ModelRouteConfig(
        model_id=model_id,
        kind=ModelKind.IMAGE_PREDICT,
        endpoint_path=_IMAGE_ENDPOINT,
        upstream_model=upstream_model,
    )


def _audio_route(model_id: str) -> ModelRouteConfig:
    return ModelRouteConfig(
        model_id=model_id,
        kind=ModelKind.AUDIO,
        endpoint_path=_AUDIO_ENDPOINT,
        upstream_model=model_id,
    )


def default_route_table() -> RouteTable:
    return RouteTable(
        default_model=DEFAULT_TEXT_MODEL,
        routes=[
            _text_route(DEFAULT_TEXT_MODEL, fallback=DEFAULT_TEXT_MODEL),
            _text_route("gemini-2.5-pro"),
            _text_route("gemini-2.0-flash"),
            _text_route("gemini-1.5-pro"),
            _text_route("gemini-1.5-flash"),
            _image_route("imagen-3", "imagen-3.0-generate-002"),
            _image_route("imagen-3-fast", "imagen-3.0-fast-generate-001"),
            _image_route("imagen-3-ultra", "imagen-3-ultra"),
            _image_route("imagen-4", "imagen-4.0-generate-001"),
            _image_route("imagen-4-ultra", "imagen-4.0-ultra-generate-001"),
            _image_route("imagen-4-fast", "imagen-4.0-fast-generate-001"),
            _image_route("gemini-1.5-pro-image", "gemini-1.5-pro-image"),
            ModelRouteConfig(
                model_id="gemini-2.5-flash-image",
                kind=ModelKind.IMAGE_STREAM,
                endpoint_path=_STREAM_IMAGE_ENDPOINT,
                upstream_model="gemini-2.5-flash-image",
                scope=CLOUD_PLATFORM_SCOPE,
                api="vertex",
                display_name="Nanobanana",
            ),
            _audio_route("gemini-2.5-flash-audio"),
            _audio_route("gemini-1.5-flash-audio"),
        ],
    )


def load_route_table(config_path: str | None) -> RouteTable:
    table = default_route_table()
    if not config_path:
        return table

    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(
            f"Model routes file not found at '{config_path}'. "
            "Create it or unset MODEL_ROUTES_PATH."
        )

    with path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    if not isinstance(raw, dict):
        raise ValueError(f"Expected YAML object in '{config_path}'.")

    override = RouteTable.model_validate(
        {
            "default_model": raw.get("default_model", table.default_model),
            "routes": raw.get("routes") or [],
        }
    )
    merged = table.by_model_id()
    for route in override.routes:
        merged[route.model_id] = route

    if override.default_model not in merged:
        raise ValueError(
            f"Default model '{override.default_model}' has no route in '{config_path}'."
        )
    if merged[override.default_model].kind != ModelKind.TEXT:
        raise ValueError(
            f"Default model '{override.default_model}' must be a text route."
        )
    return RouteTable(
        default_model=override.default_model, routes=list(merged.values())
    )
