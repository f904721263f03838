from __future__ import annotations

from dataclasses import dataclass, field


DEFAULT_ALLOWED_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS")
DEFAULT_ALLOWED_HEADERS = ("Authorization", "Content-Type", "X-Request-Id")


@dataclass(frozen=True)
class CorsPolicy:
    """Exact-match origin allow-list.

    Requests without an ``Origin`` header are not browser cross-origin calls and
    pass; any other origin outside the list is refused.
    """

    allowed_origins: frozenset[str]
    allow_credentials: bool = True
    max_age_s: int = 600
    allowed_methods: tuple[str, ...] = DEFAULT_ALLOWED_METHODS
    allowed_headers: tuple[str, ...] = DEFAULT_ALLOWED_HEADERS
    expose_headers: tuple[str, ...] = field(default=("X-New-Token", "Retry-After", "X-Request-Id"))

    @classmethod
    def from_origins(cls, origins: list[str], **kwargs) -> "CorsPolicy":
        return cls(allowed_origins=frozenset(origin.rstrip("/") for origin in origins), **kwargs)

    def is_allowed(self, origin: str | None) -> bool:
        if origin is None:
            return True
        return origin.rstrip("/") in self.allowed_origins

    def response_headers(self, origin: str) -> list[tuple[str, str]]:
        headers = [
            ("Access-Control-Allow-Origin", origin),
            ("Vary", "Origin"),
        ]
        if self.allow_credentials:
            headers.append(("Access-Control-Allow-Credentials", "true"))
        if self.expose_headers:
            headers.append(("Access-Control-Expose-Headers", ", ".join(self.expose_headers)))
        return headers

    def preflight_headers(self, origin: str) -> list[tuple[str, str]]:
        headers = self.response_headers(origin)
        headers.extend(
            [
                ("Access-Control-Allow-Methods", ", ".join(self.allowed_methods)),
                ("Access-Control-Allow-Headers", ", ".join(self.allowed_headers)),
                ("Access-Control-Max-Age", str(self.max_age_s)),
            ]
        )
        return headers
