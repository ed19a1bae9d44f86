from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import pytest

from gemini_gateway.config import (
    CLOUD_PLATFORM_SCOPE,
    ModelKind,
    default_route_table,
    load_route_table,
)
from gemini_gateway.model_router import ModelRouter


def _router() -> ModelRouter:
    return ModelRouter(default_route_table())


def test_resolve_ignores_case_and_whitespace() -> None:
    router = _router()

    assert router.resolve("  GEMINI-2.5-FLASH ") == router.resolve("gemini-2.5-flash")
    assert router.resolve("Gemini-2.5-Flash").model_id == "gemini-2.5-flash"


def test_unknown_model_resolves_to_default_text_route(caplog: Any) -> None:
    router = _router()

    with caplog.at_level(logging.WARNING):
        route = router.resolve("nonexistent-model")

    assert route.model_id == "gemini-2.5-flash"
    assert route.kind == ModelKind.TEXT
    assert "model_route_unknown" in caplog.text
    assert router.resolve(None).model_id == "gemini-2.5-flash"


def test_logical_ids_map_to_upstream_models() -> None:
    router = _router()

    imagen = router.resolve("imagen-4")
    assert imagen.kind == ModelKind.IMAGE_PREDICT
    assert imagen.build_path() == "/v1/models/imagen-4.0-generate-001:generateImage"

    text = router.resolve("gemini-2.5-pro")
    assert text.build_path() == "/v1beta/models/gemini-2.5-pro:generateContent"

    stream = router.resolve("gemini-2.5-flash-image")
    assert stream.kind == ModelKind.IMAGE_STREAM
    assert stream.scope == CLOUD_PLATFORM_SCOPE
    assert stream.build_path(project="p1", location="us-central1") == (
        "/v1/projects/p1/locations/us-central1/publishers/google/models/"
        "gemini-2.5-flash-image:streamGenerateContent"
    )


def test_fallback_route_points_at_default_model() -> None:
    router = _router()

    assert router.fallback_route(router.resolve("gemini-1.5-pro")).model_id == (
        "gemini-2.5-flash"
    )
    assert router.fallback_route(router.default_route).model_id == "gemini-2.5-flash"


def test_endpoint_for_and_kind_listing() -> None:
    router = _router()

    assert router.endpoint_for("imagen-3") == "/api/generateImage"
    assert router.endpoint_for("gemini-2.5-flash-audio") == "/api/generateAudio"
    assert router.endpoint_for("gemini-2.5-flash-image") == "/api/nanobananaImage"
    assert router.endpoint_for("gemini-2.0-flash") == "/api/chat"
    assert router.endpoint_for("nope") is None
    assert router.models_of_kind(ModelKind.AUDIO) == [
        "gemini-1.5-flash-audio",
        "gemini-2.5-flash-audio",
    ]


def test_load_route_table_merges_yaml_overrides(tmp_path: Path) -> None:
    routes_path = tmp_path / "routes.yaml"
    routes_path.write_text(
        """
default_model: gemini-2.5-pro
routes:
  - model_id: Gemini-Experimental
    kind: text
    endpoint_path: /v1beta/models/{model}:generateContent
    upstream_model: gemini-exp-1206
  - model_id: imagen-4
    kind: image-predict
    endpoint_path: /v1/models/{model}:generateImage
    upstream_model: imagen-4.0-generate-preview
""",
        encoding="utf-8",
    )

    router = ModelRouter(load_route_table(str(routes_path)))

    assert router.default_model == "gemini-2.5-pro"
    assert router.resolve("gemini-experimental").upstream_model == "gemini-exp-1206"
    assert router.resolve("imagen-4").upstream_model == "imagen-4.0-generate-preview"
    assert router.is_known("imagen-3")


def test_load_route_table_without_path_returns_defaults() -> None:
    assert load_route_table(None).default_model == "gemini-2.5-flash"


def test_load_route_table_rejects_non_text_default(tmp_path: Path) -> None:
    routes_path = tmp_path / "routes.yaml"
    routes_path.write_text("default_model: imagen-4\n", encoding="utf-8")

    with pytest.raises(ValueError, match="must be a text route"):
        load_route_table(str(routes_path))


def test_load_route_table_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_route_table(str(tmp_path / "missing.yaml"))
