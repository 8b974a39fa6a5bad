from __future__ import annotations

from collections.abc import Iterable

from aiohttp import web

ALLOW_METHODS = "GET, POST, OPTIONS"
ALLOW_HEADERS = "Content-Type, X-Request-ID"


class CorsPolicy:
    def __init__(self, origins: Iterable[str]) -> None:
        self._origins = {origin.strip() for origin in origins if origin.strip()}

    @property
    def allow_any(self) -> bool:
        return "*" in self._origins

    def allows(self, origin: str | None) -> bool:
        if not origin:
            return False
        return self.allow_any or origin in self._origins

    def headers_for(self, origin: str | None) -> dict[str, str]:
        if not self.allows(origin):
            return {}
        if self.allow_any:
            headers = {"Access-Control-Allow-Origin": "*"}
        else:
            headers = {"Access-Control-Allow-Origin": origin or "", "Vary": "Origin"}
        headers["Access-Control-Allow-Methods"] = ALLOW_METHODS
        headers["Access-Control-Allow-Headers"] = ALLOW_HEADERS
        return headers


def create_cors_middleware(origins: Iterable[str]) -> web.middleware:
    policy = CorsPolicy(origins)

    @web.middleware
    async def middleware(request: web.Request, handler):
        origin = request.headers.get("Origin")
        headers = policy.headers_for(origin)
        if request.method == "OPTIONS" and request.headers.get("Access-Control-Request-Method"):
            if not headers:
                return web.Response(status=403, text="origin not allowed")
            return web.Response(status=204, headers=headers)
        try:
            response = await handler(request)
        except web.HTTPException as http_exc:
            for key, value in headers.items():
                http_exc.headers.setdefault(key, value)
            raise
        for key, value in headers.items():
            response.headers.setdefault(key, value)
        return response

    return middleware
