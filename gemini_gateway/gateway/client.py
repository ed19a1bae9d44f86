from __future__ import annotations

import logging
import time
from typing import Any, Callable

import httpx

from gemini_gateway.config import ModelKind, ModelRouteConfig
from gemini_gateway.errors import ConfigurationError, UpstreamAPIError
from gemini_gateway.extractors import (
    GenerationResult,
    extract_result,
    extract_stream_image,
)
from gemini_gateway.gateway.audit import AuditEvent, ModelFallbackEvent
from gemini_gateway.gateway.credentials import (
    ServiceAccountCredential,
    load_service_account,
)
from gemini_gateway.gateway.token_cache import AccessTokenCache
from gemini_gateway.model_router import ModelRouter
from gemini_gateway.payloads import GenerationRequest, build_payload
from gemini_gateway.settings import Settings

logger = logging.getLogger("uvicorn.error")


class GeminiGateway:
    def __init__(
        self,
        *,
        settings: Settings,
        router: ModelRouter,
        credential_loader: Callable[[], ServiceAccountCredential] | None = None,
        clock: Callable[[], float] = time.time,
        audit_hook: Callable[[AuditEvent], None] | None = None,
    ) -> None:
        self.settings = settings
        self.router = router
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                timeout=None,
                connect=max(0.1, settings.upstream_connect_timeout_seconds),
                read=max(0.1, settings.upstream_read_timeout_seconds),
                write=max(0.1, settings.upstream_write_timeout_seconds),
                pool=max(0.1, settings.upstream_pool_timeout_seconds),
            ),
            limits=httpx.Limits(max_connections=64, max_keepalive_connections=16),
        )
        self._credential_loader = credential_loader or (
            lambda: load_service_account(settings.google_service_account_json)
        )
        self._credential: ServiceAccountCredential | None = None
        self._clock = clock
        self._audit_hook = audit_hook
        self._token_caches: dict[str, AccessTokenCache] = {}

    async def close(self) -> None:
        await self.client.aclose()

    def credential(self) -> ServiceAccountCredential:
        if self._credential is None:
            self._credential = self._credential_loader()
        return self._credential

    def token_cache(self, scope: str) -> AccessTokenCache:
        cache = self._token_caches.get(scope)
        if cache is None:
            cache = AccessTokenCache(
                scope=scope,
                credential_loader=self.credential,
                client_getter=lambda: self.client,
                clock=self._clock,
            )
            self._token_caches[scope] = cache
        return cache

    def _audit(self, event: AuditEvent) -> None:
        if self._audit_hook is None:
            return
        try:
            self._audit_hook(event)
        except Exception as exc:
            logger.debug("audit_write_failed event=%s error=%s", event.name, exc)

    def build_url(self, route: ModelRouteConfig) -> str:
        if route.api == "vertex":
            project = self.settings.vertex_project_id or self.credential().project_id
            if not project:
                raise ConfigurationError(
                    "Missing VERTEX_PROJECT_ID and the service account has no project_id"
                )
            base_url = self.settings.vertex_base_url_for_location()
            path = route.build_path(
                project=project, location=self.settings.vertex_location
            )
        else:
            base_url = self.settings.generative_language_base_url
            path = route.build_path()
        return f"{base_url.rstrip('/')}{path}"

    async def _headers(self, route: ModelRouteConfig) -> dict[str, str]:
        token = await self.token_cache(route.scope).get_access_token()
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {token}",
        }

    async def _post_json(self, route: ModelRouteConfig, payload: dict[str, Any]) -> Any:
        url = self.build_url(route)
        headers = await self._headers(route)
        started = time.perf_counter()
        response = await self.client.post(url, json=payload, headers=headers)
        latency_ms = (time.perf_counter() - started) * 1000.0
        if not response.is_success:
            logger.warning(
                "upstream_error model=%s status=%d latency_ms=%.2f",
                route.model_id,
                response.status_code,
                latency_ms,
            )
            raise UpstreamAPIError(
                status=response.status_code,
                body=response.text,
                model=route.model_id,
            )
        logger.info(
            "upstream_response model=%s status=%d latency_ms=%.2f",
            route.model_id,
            response.status_code,
            latency_ms,
        )
        return response.json()

    async def _post_stream_image(
        self, route: ModelRouteConfig, payload: dict[str, Any]
    ) -> str:
        request = self.client.build_request(
            method="POST",
            url=self.build_url(route),
            json=payload,
            headers=await self._headers(route),
        )
        upstream = await self.client.send(request, stream=True)
        try:
            if not upstream.is_success:
                body = (await upstream.aread()).decode("utf-8", errors="replace")
                logger.warning(
                    "upstream_error model=%s status=%d stream=true",
                    route.model_id,
                    upstream.status_code,
                )
                raise UpstreamAPIError(
                    status=upstream.status_code,
                    body=body,
                    model=route.model_id,
                    label="Nanobanana",
                )
            return await extract_stream_image(upstream)
        finally:
            await upstream.aclose()

    async def generate_text(self, request: GenerationRequest) -> GenerationResult:
        route = self.router.resolve(request.model)
        payload = build_payload(ModelKind.TEXT, request)
        fallback = self.router.fallback_route(route)
        try:
            data = await self._post_json(route, payload)
            return extract_result(ModelKind.TEXT, data, model_used=route.model_id)
        except UpstreamAPIError as exc:
            if not exc.allows_model_fallback:
                raise
            logger.warning(
                "model_fallback requested_model=%s fallback_model=%s status=%d",
                route.model_id,
                fallback.model_id,
                exc.status,
            )
            self._audit(
                ModelFallbackEvent(
                    requested_model=route.model_id,
                    fallback_model=fallback.model_id,
                    status=exc.status,
                )
            )

        data = await self._post_json(fallback, payload)
        result = extract_result(ModelKind.TEXT, data, model_used=fallback.model_id)
        result.fallback_applied = True
        return result

    async def generate_image(self, request: GenerationRequest) -> GenerationResult:
        route = self.router.resolve(request.model)
        payload = build_payload(ModelKind.IMAGE_PREDICT, request)
        data = await self._post_json(route, payload)
        return extract_result(ModelKind.IMAGE_PREDICT, data, model_used=route.model_id)

    async def generate_audio(self, request: GenerationRequest) -> GenerationResult:
        route = self.router.resolve(request.model)
        payload = build_payload(ModelKind.AUDIO, request)
        data = await self._post_json(route, payload)
        return extract_result(ModelKind.AUDIO, data, model_used=route.model_id)

    async def generate_stream_image(
        self, request: GenerationRequest
    ) -> GenerationResult:
        route = self.router.resolve(request.model)
        payload = build_payload(ModelKind.IMAGE_STREAM, request)
        image = await self._post_stream_image(route, payload)
        return GenerationResult(model_used=route.model_id, image=image)
