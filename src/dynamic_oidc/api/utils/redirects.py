from __future__ import annotations

from typing import Optional
from urllib.parse import urlsplit

AUTH_PATHS = ("/signin", "/signup", "/reset-password")


def validate_return_url(url: Optional[str]) -> Optional[str]:
    """Return a same-origin path that is safe to redirect to, or None.

    Only absolute paths are accepted. Protocol-relative URLs (``//host``)
    and their backslash variants are rejected. Any path starting with an
    auth page prefix collapses to ``/`` so a successful login never lands
    back on the login form.
    """
    if not url or not isinstance(url, str):
        return None
    if not url.startswith("/"):
        return None
    if url.startswith("//") or url.startswith("/\\"):
        return None
    if any(ch < " " or ch == "\x7f" for ch in url):
        return None

    parts = urlsplit(url)
    if parts.scheme or parts.netloc:
        return None

    path = parts.path
    for auth_path in AUTH_PATHS:
        if path.startswith(auth_path):
            return "/"
    return url
