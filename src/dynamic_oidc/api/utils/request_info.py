from __future__ import annotations

from typing import Optional

from fastapi import Request


def _first_header_value(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return value.split(",")[0].strip() or None


def is_secure_request(request: Request) -> bool:
    """True when the client reached us over HTTPS, directly or via a proxy."""
    forwarded_proto = _first_header_value(request.headers.get("x-forwarded-proto"))
    if forwarded_proto:
        return forwarded_proto.lower() == "https"
    return request.url.scheme == "https"


def get_base_url(request: Request, configured: Optional[str] = None) -> str:
    """External base URL of the application, without a trailing slash."""
    if configured:
        return configured.rstrip("/")
    proto = _first_header_value(request.headers.get("x-forwarded-proto"))
    host = _first_header_value(request.headers.get("x-forwarded-host"))
    scheme = proto or request.url.scheme
    netloc = host or request.headers.get("host") or request.url.netloc
    return f"{scheme}://{netloc}"
