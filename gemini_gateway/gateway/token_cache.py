from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

import httpx

from gemini_gateway.errors import TokenAcquisitionError
from gemini_gateway.gateway.credentials import (
    JWT_BEARER_GRANT_TYPE,
    ServiceAccountCredential,
    sign_assertion,
)

logger = logging.getLogger("uvicorn.error")

REFRESH_MARGIN_MILLIS = 60_000
DEFAULT_EXPIRES_IN_SECONDS = 3600


@dataclass(slots=True)
class CachedAccessToken:
    token: str
    expires_at_epoch_millis: int

    def is_fresh(self, now_millis: int) -> bool:
        return now_millis < self.expires_at_epoch_millis - REFRESH_MARGIN_MILLIS


class AccessTokenCache:
    """Single-slot OAuth2 access token cache for one service-account scope.

    Refreshes go through the JWT-bearer grant. Concurrent callers that all see
    a stale slot may each refresh; the last successful exchange wins the slot.
    """

    def __init__(
        self,
        *,
        scope: str,
        credential_loader: Callable[[], ServiceAccountCredential],
        client_getter: Callable[[], httpx.AsyncClient],
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.scope = scope
        self._credential_loader = credential_loader
        self._client_getter = client_getter
        self._clock = clock
        self._cached: CachedAccessToken | None = None

    @property
    def cached(self) -> CachedAccessToken | None:
        return self._cached

    def invalidate(self) -> None:
        self._cached = None

    def _now_millis(self) -> int:
        return int(self._clock() * 1000)

    async def get_access_token(self) -> str:
        now_millis = self._now_millis()
        cached = self._cached
        if cached is not None and cached.is_fresh(now_millis):
            return cached.token

        credential = self._credential_loader()
        assertion = sign_assertion(credential, self.scope, now=now_millis // 1000)
        logger.info(
            "token_refresh_start scope=%s token_uri=%s",
            self.scope,
            credential.token_uri,
        )
        try:
            response = await self._client_getter().post(
                credential.token_uri,
                data={"grant_type": JWT_BEARER_GRANT_TYPE, "assertion": assertion},
                headers={"Accept": "application/json"},
            )
        except httpx.RequestError as exc:
            logger.warning(
                "token_refresh_error scope=%s reason=request_error error=%s",
                self.scope,
                exc,
            )
            raise TokenAcquisitionError(f"Token request failed: {exc}") from exc

        if not response.is_success:
            body = response.text
            logger.warning(
                "token_refresh_error scope=%s status=%d",
                self.scope,
                response.status_code,
            )
            raise TokenAcquisitionError(
                f"Token request failed: {response.status_code} {body}",
                status=response.status_code,
                body=body,
            )

        try:
            token_data = response.json()
        except ValueError as exc:
            raise TokenAcquisitionError(
                "Token request failed: invalid JSON response",
                status=response.status_code,
                body=response.text,
            ) from exc

        access_token = _coerce_access_token(token_data)
        if not access_token:
            raise TokenAcquisitionError(
                "Token request failed: response has no access_token",
                status=response.status_code,
                body=response.text,
            )

        expires_in = _coerce_expires_in(token_data)
        self._cached = CachedAccessToken(
            token=access_token,
            expires_at_epoch_millis=now_millis + expires_in * 1000,
        )
        logger.info(
            "token_refresh_success scope=%s expires_in=%d", self.scope, expires_in
        )
        return access_token


def _coerce_access_token(token_data: Any) -> str:
    if not isinstance(token_data, dict):
        return ""
    raw = token_data.get("access_token")
    return str(raw).strip() if raw is not None else ""


def _coerce_expires_in(token_data: dict[str, Any]) -> int:
    raw = token_data.get("expires_in")
    if raw is None:
        return DEFAULT_EXPIRES_IN_SECONDS
    try:
        return int(float(raw))
    except (TypeError, ValueError):
        return DEFAULT_EXPIRES_IN_SECONDS
