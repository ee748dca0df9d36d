"""
Admin Credential Cache

Caches the privileged credential used for registry operations and refreshes
it before expiry. Concurrent callers that find the cache empty share a single
upstream fetch.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from idbridge.admin.providers import AdminCredentialProvider
from idbridge.exceptions import UpstreamAuthError, UpstreamError
from idbridge.models import AdminCredential, utcnow

logger = logging.getLogger(__name__)


class AdminCredentialCache:
    """Single-flight cache around an :class:`AdminCredentialProvider`.

    Args:
        provider: Source of fresh credentials.
        safety_margin_seconds: Refresh this long before ``expires_at``.
        timeout_seconds: Bound on one upstream fetch.
        clock: Returns the current aware UTC time; injectable for tests.

    Example:
        >>> cache = AdminCredentialCache(provider)  # doctest: +SKIP
        >>> credential = await cache.get()          # doctest: +SKIP
    """

    DEFAULT_SAFETY_MARGIN_SECONDS = 60.0
    DEFAULT_TIMEOUT_SECONDS = 10.0

    def __init__(
        self,
        provider: AdminCredentialProvider,
        safety_margin_seconds: float = DEFAULT_SAFETY_MARGIN_SECONDS,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if safety_margin_seconds < 0:
            raise ValueError(
                f"safety_margin_seconds must be non-negative, got: {safety_margin_seconds}"
            )
        if timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be positive, got: {timeout_seconds}")
        self._provider = provider
        self.safety_margin_seconds = safety_margin_seconds
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._credential: Optional[AdminCredential] = None
        self._inflight: Optional[asyncio.Future] = None
        self._closed = False
        self.fetch_count = 0

    def _cached(self) -> Optional[AdminCredential]:
        credential = self._credential
        if credential is not None and credential.is_usable(
            self._clock(), self.safety_margin_seconds
        ):
            return credential
        return None

    async def get(self, timeout: Optional[float] = None) -> AdminCredential:
        """Return a usable credential, fetching one if needed.

        Args:
            timeout: How long this caller waits for a shared fetch. The fetch
                itself is always bounded by ``timeout_seconds``.

        Raises:
            UpstreamAuthError: If the credential cannot be obtained.
        """
        if self._closed:
            raise UpstreamAuthError("Admin credential cache is closed")

        cached = self._cached()
        if cached is not None:
            return cached

        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._refresh())
        # shield: one caller giving up must not cancel the fetch for the others
        waiter = asyncio.shield(self._inflight)
        if timeout is None:
            return await waiter
        try:
            return await asyncio.wait_for(waiter, timeout=timeout)
        except TimeoutError as exc:
            raise UpstreamAuthError(
                f"Timed out after {timeout}s waiting for admin credential"
            ) from exc

    async def _refresh(self) -> AdminCredential:
        self.fetch_count += 1
        try:
            credential = await asyncio.wait_for(
                self._provider.fetch(), timeout=self.timeout_seconds
            )
        except UpstreamAuthError:
            logger.error("Admin credential rejected by upstream")
            raise
        except TimeoutError as exc:
            logger.error("Admin credential fetch exceeded %ss", self.timeout_seconds)
            raise UpstreamAuthError(
                f"Admin credential fetch exceeded {self.timeout_seconds}s timeout"
            ) from exc
        except UpstreamError as exc:
            logger.error("Admin credential fetch failed: %s", exc)
            raise UpstreamAuthError(f"Unable to obtain admin credential: {exc}") from exc
        finally:
            self._inflight = None

        now = self._clock()
        if not credential.is_usable(now):
            raise UpstreamAuthError(
                f"Upstream issued an admin credential that expired at "
                f"{credential.expires_at.isoformat()}"
            )
        if not credential.is_usable(now, self.safety_margin_seconds):
            logger.warning(
                "Fetched admin credential expires at %s, inside the %ss safety margin",
                credential.expires_at.isoformat(),
                self.safety_margin_seconds,
            )
        else:
            logger.info(
                "Admin credential refreshed, valid until %s", credential.expires_at.isoformat()
            )
        self._credential = credential
        return credential

    def invalidate(self, credential: Optional[AdminCredential] = None) -> None:
        """Drop the cached credential so the next ``get`` refreshes.

        When ``credential`` is given, only drop the cache if it still holds
        that credential; a newer one fetched meanwhile is kept.
        """
        if credential is None or self._credential == credential:
            if self._credential is not None:
                logger.info("Admin credential invalidated")
            self._credential = None

    @property
    def credential(self) -> Optional[AdminCredential]:
        """The cached credential, usable or not."""
        return self._credential

    async def close(self) -> None:
        """Cancel any in-flight fetch and forget the cached credential."""
        self._closed = True
        self._credential = None
        inflight, self._inflight = self._inflight, None
        if inflight is not None and not inflight.done():
            inflight.cancel()
        await self._provider.close()
