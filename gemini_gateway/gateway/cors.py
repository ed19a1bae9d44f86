from __future__ import annotations

from collections.abc import Mapping
from urllib.parse import urlsplit

ALLOW_METHODS = "POST, OPTIONS"
ALLOW_HEADERS = "Content-Type"
MAX_AGE_SECONDS = 86400


def resolve_request_origin(headers: Mapping[str, str]) -> str | None:
    origin = (headers.get("origin") or "").strip()
    if origin:
        return origin

    referer = (headers.get("referer") or "").strip()
    if not referer:
        return None
    parsed = urlsplit(referer)
    if not parsed.scheme or not parsed.netloc:
        return None
    return f"{parsed.scheme}://{parsed.netloc}"


class CorsPolicy:
    def __init__(self, allowed_origins: list[str]) -> None:
        self.exact_origins: set[str] = set()
        self.wildcard_suffixes: list[str] = []
        for entry in allowed_origins:
            normalized = entry.strip()
            if not normalized:
                continue
            if "*." in normalized:
                _, _, suffix = normalized.partition("*.")
                if suffix:
                    self.wildcard_suffixes.append(suffix)
                continue
            self.exact_origins.add(normalized)

    def is_allowed(self, origin: str | None) -> bool:
        if not origin:
            return False
        if origin in self.exact_origins:
            return True
        # "https://*.vercel.app" matches any origin containing "vercel.app".
        return any(suffix in origin for suffix in self.wildcard_suffixes)

    def response_headers(
        self,
        request_headers: Mapping[str, str],
        allow_methods: str = ALLOW_METHODS,
    ) -> dict[str, str]:
        headers: dict[str, str] = {}
        origin = resolve_request_origin(request_headers)
        if origin is not None and self.is_allowed(origin):
            headers["Access-Control-Allow-Origin"] = origin
            headers["Vary"] = "Origin"
        headers["Access-Control-Allow-Methods"] = allow_methods
        headers["Access-Control-Allow-Headers"] = ALLOW_HEADERS
        headers["Access-Control-Max-Age"] = str(MAX_AGE_SECONDS)
        return headers
