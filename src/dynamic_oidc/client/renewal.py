"""Client-side keepalive for OIDC sessions.

Periodically asks the server whether the session is still good and renews
it when the server reports that the access token needs a refresh, so a
long-lived client outlives individual access-token lifetimes.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Optional

import httpx

from dynamic_oidc.api.utils.logging import sanitize_for_log

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 30 * 60
DEFAULT_BASE_PATH = "/auth/dynamic-oidc"


class RenewalOutcome(str, Enum):
    AUTHENTICATED = "authenticated"
    RENEWED = "renewed"
    UNAUTHENTICATED = "unauthenticated"
    FAILED = "failed"

    @property
    def ok(self) -> bool:
        return self in (RenewalOutcome.AUTHENTICATED, RenewalOutcome.RENEWED)


class SessionRenewalLoop:
    def __init__(
        self,
        client: httpx.AsyncClient,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        base_path: str = DEFAULT_BASE_PATH,
    ) -> None:
        self._client = client
        self._interval = interval_seconds
        self._base_path = base_path.rstrip("/")
        self._stopped = asyncio.Event()
        self.user: Optional[dict[str, Any]] = None

    async def _get_session(self) -> Optional[dict[str, Any]]:
        response = await self._client.get(f"{self._base_path}/session")
        if not response.is_success:
            return None
        return response.json()

    async def check_and_renew(self) -> RenewalOutcome:
        try:
            data = await self._get_session()
            if data is None:
                return RenewalOutcome.FAILED

            if data.get("authenticated") and data.get("user"):
                self.user = data["user"]
                return RenewalOutcome.AUTHENTICATED

            if not data.get("needsRefresh"):
                logger.warning("OIDC session not authenticated")
                return RenewalOutcome.UNAUTHENTICATED

            logger.info("OIDC session needs refresh, attempting renewal")
            renew_response = await self._client.post(f"{self._base_path}/renew")
            if renew_response.is_success and renew_response.json().get("success"):
                second = await self._get_session()
                if second and second.get("authenticated") and second.get("user"):
                    self.user = second["user"]
                    logger.info(
                        "OIDC session refreshed for %s",
                        sanitize_for_log(self.user.get("email")),
                    )
                    return RenewalOutcome.RENEWED

            logger.warning("Failed to refresh OIDC session, re-authentication needed")
            return RenewalOutcome.FAILED
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Error checking OIDC session: %s", type(exc).__name__)
            return RenewalOutcome.FAILED

    async def _wait(self) -> bool:
        """Sleep one interval; True when stop() was called meanwhile."""
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=self._interval)
            return True
        except asyncio.TimeoutError:
            return False

    async def run(self) -> RenewalOutcome:
        outcome = await self.check_and_renew()
        if not outcome.ok:
            return outcome

        while not await self._wait():
            outcome = await self.check_and_renew()
            if outcome is RenewalOutcome.UNAUTHENTICATED:
                self.user = None
                break
            if outcome is RenewalOutcome.FAILED:
                # Transient failures keep the user; the cookie expires on its own.
                logger.warning("OIDC session renewal failed")
        return outcome

    def stop(self) -> None:
        self._stopped.set()
