"""
Token Refresh Coordinator
Hands out valid access tokens, refreshing at most once per (org, provider) at a time.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Mapping, Optional, Union
from uuid import UUID

from app.integrations.audit import AuditKind, AuditLog
from app.integrations.credential_store import CredentialStore
from app.integrations.exceptions import (
    CredentialDisabled,
    NotConnected,
    ProviderPermanentError,
    ProviderTransientError,
    RefreshPermanentError,
    RefreshTransientError,
    UnsupportedCapabilityError,
)
from app.integrations.providers.base import ProviderAdapter
from app.integrations.token_refresh_lock import TokenRefreshLock
from app.integrations.types import AccessToken, Credential, CredentialKey, Provider

logger = logging.getLogger(__name__)

DEFAULT_MARGIN = timedelta(seconds=60)
DEFAULT_REFRESH_TIMEOUT = 15.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenRefreshCoordinator:
    """
    Sole writer of credential token state.

    Fast path: a credential that stays valid for longer than the safety
    margin is returned straight from the store with no network call.
    Otherwise the refresh runs through a TokenRefreshLock so concurrent
    callers for the same key share one provider call and its outcome.

    Failure handling:
    - Transient (network, 5xx, 429, timeout): lastRefreshError is recorded,
      the previous token and expiry are left untouched, and
      RefreshTransientError is raised. No internal retry loop.
    - Permanent (invalid_grant and friends): the credential is disabled and
      RefreshPermanentError is raised; later calls fail fast with
      CredentialDisabled.
    - Rejection of a refresh token that another process already rotated is
      stale, not permanent: the stored credential is re-read and either
      returned as-is or refreshed once with the rotated token.
    """

    def __init__(
        self,
        store: CredentialStore,
        adapters: Mapping[Provider, ProviderAdapter],
        audit: AuditLog,
        margin: timedelta = DEFAULT_MARGIN,
        refresh_timeout: float = DEFAULT_REFRESH_TIMEOUT,
        clock: Optional[Callable[[], datetime]] = None,
        lock: Optional[TokenRefreshLock] = None,
    ):
        """
        Initialize coordinator.

        Args:
            store: Credential storage
            adapters: Adapter per provider
            audit: Audit sink
            margin: Tokens expiring within this window are refreshed first
            refresh_timeout: Upper bound in seconds on one provider refresh call
            clock: Returns the current aware UTC time (tests pin it)
            lock: Single-flight lock (creates one if None)
        """
        self.store = store
        self.adapters = dict(adapters)
        self.audit = audit
        self.margin = margin
        self.refresh_timeout = refresh_timeout
        self._clock = clock or _utcnow
        self._lock = lock or TokenRefreshLock()

    # =========================================================================
    # Public API
    # =========================================================================

    async def ensure_valid_token(
        self,
        org_id: UUID,
        provider: Union[Provider, str],
        *,
        margin: Optional[timedelta] = None,
        force_refresh: bool = False,
    ) -> AccessToken:
        """
        Return an access token valid for at least the safety margin.

        Args:
            org_id: Organization UUID
            provider: Accounting provider
            margin: Override of the safety margin (the sweeper passes its lookahead)
            force_refresh: Refresh even if the cached token looks valid, used
                after the provider rejected it as expired

        Returns:
            AccessToken for the credential

        Raises:
            NotConnected: No credential for (org_id, provider)
            CredentialDisabled: Credential disabled by an earlier permanent failure
            RefreshTransientError: Refresh failed; retry later
            RefreshPermanentError: Refresh token rejected; credential now disabled
        """
        key = CredentialKey(org_id, Provider(provider))
        effective_margin = self.margin if margin is None else margin

        credential = self._require_usable(key, await self.store.get(key))

        if not force_refresh and credential.is_fresh(self._clock(), effective_margin):
            return self._issue(credential)

        rejected_access_token = credential.access_token if force_refresh else None
        refreshed = await self._lock.run(
            key,
            lambda: self._refresh(key, effective_margin, rejected_access_token),
        )
        return self._issue(refreshed)

    def is_refreshing(self, org_id: UUID, provider: Union[Provider, str]) -> bool:
        """Whether a refresh for the key is in flight in this process."""
        return self._lock.is_refreshing(CredentialKey(org_id, Provider(provider)))

    # =========================================================================
    # Refresh protocol
    # =========================================================================

    def _require_usable(
        self, key: CredentialKey, credential: Optional[Credential]
    ) -> Credential:
        if credential is None:
            raise NotConnected(
                f"{key.provider.value} is not connected for this organization",
                org_id=key.org_id,
                provider=key.provider.value,
            )
        if not credential.enabled:
            raise CredentialDisabled(
                f"{key.provider.value} connection is disabled; reconnect required",
                org_id=key.org_id,
                provider=key.provider.value,
            )
        return credential

    def _adapter(self, key: CredentialKey) -> ProviderAdapter:
        adapter = self.adapters.get(key.provider)
        if adapter is None:
            raise UnsupportedCapabilityError(
                f"No adapter configured for {key.provider.value}",
                org_id=key.org_id,
                provider=key.provider.value,
            )
        return adapter

    def _issue(self, credential: Credential) -> AccessToken:
        return AccessToken(
            value=credential.access_token,
            org_id=credential.org_id,
            provider=credential.provider,
            expires_at=credential.expires_at,
            external_tenant_id=credential.external_tenant_id,
        )

    async def _refresh(
        self,
        key: CredentialKey,
        margin: timedelta,
        rejected_access_token: Optional[str],
    ) -> Credential:
        """
        Body of the single in-flight refresh for ``key``.

        Re-reads the credential at dispatch time so the refresh is based on
        the latest stored state: a refresh that completed between the
        caller's read and this dispatch is reused instead of repeated.
        """
        credential = self._require_usable(key, await self.store.get(key))

        if rejected_access_token is None:
            if credential.is_fresh(self._clock(), margin):
                logger.debug("Token for %s/%s already refreshed", key.org_id, key.provider.value)
                return credential
        elif credential.access_token != rejected_access_token and credential.is_fresh(
            self._clock(), margin
        ):
            logger.debug("Rejected token for %s/%s already replaced", key.org_id, key.provider.value)
            return credential

        return await self._exchange(
            credential, margin, forced=rejected_access_token is not None
        )

    async def _exchange(
        self,
        credential: Credential,
        margin: timedelta,
        forced: bool = False,
        rotation_retry: bool = True,
    ) -> Credential:
        """Perform one provider refresh call and apply its outcome."""
        key = credential.key
        adapter = self._adapter(key)

        await self.audit.record(
            key.org_id,
            key.provider,
            AuditKind.REFRESH_ATTEMPT,
            context={"forced": forced, "expires_at": credential.expires_at.isoformat()},
        )
        logger.info("Refreshing %s token for organization %s", key.provider.value, key.org_id)

        try:
            grant = await asyncio.wait_for(
                adapter.refresh(credential.refresh_token),
                timeout=self.refresh_timeout,
            )
        except asyncio.TimeoutError as e:
            await self._record_transient(
                credential, f"Token refresh timed out after {self.refresh_timeout:.0f}s", "timeout"
            )
            raise RefreshTransientError(
                f"{key.provider.value} token refresh timed out",
                org_id=key.org_id,
                provider=key.provider.value,
            ) from e
        except ProviderTransientError as e:
            await self._record_transient(credential, e.message, e.error_code or "transient")
            raise RefreshTransientError(
                e.message, org_id=key.org_id, provider=key.provider.value
            ) from e
        except ProviderPermanentError as e:
            return await self._handle_rejection(credential, e, margin, rotation_retry)

        now = self._clock()
        updated = credential.copy(
            access_token=grant.access_token,
            refresh_token=grant.refresh_token or credential.refresh_token,
            expires_at=now + timedelta(seconds=grant.expires_in),
            last_refresh_error=None,
            last_refreshed_at=now,
        )
        saved = await self.store.save(updated)

        await self.audit.record(
            key.org_id,
            key.provider,
            AuditKind.REFRESH_SUCCESS,
            context={
                "expires_in": grant.expires_in,
                "refresh_token_rotated": updated.refresh_token != credential.refresh_token,
            },
        )
        logger.info(
            "Refreshed %s token for organization %s (expires in %ds)",
            key.provider.value,
            key.org_id,
            grant.expires_in,
        )
        return saved

    async def _handle_rejection(
        self,
        credential: Credential,
        error: ProviderPermanentError,
        margin: timedelta,
        rotation_retry: bool,
    ) -> Credential:
        """
        Decide whether a rejected refresh token means the grant is dead.

        The credential is re-read first. If the stored refresh token is no
        longer the one that was rejected, a sibling process rotated it and
        the rejection is stale.
        """
        key = credential.key
        current = await self.store.get(key)
        if current is None:
            raise NotConnected(
                f"{key.provider.value} was disconnected during refresh",
                org_id=key.org_id,
                provider=key.provider.value,
            )

        if current.enabled and current.refresh_token != credential.refresh_token:
            logger.warning(
                "Stale refresh token for %s/%s: rotated by another process",
                key.org_id,
                key.provider.value,
            )
            await self.audit.record(
                key.org_id,
                key.provider,
                AuditKind.REFRESH_FAILURE,
                detail=error.message,
                context={"error_kind": "stale_refresh_token", "error_code": error.error_code},
            )
            if current.is_fresh(self._clock(), margin):
                return current
            if rotation_retry:
                return await self._exchange(current, margin, rotation_retry=False)
            await self._record_transient(current, error.message, "stale_refresh_token")
            raise RefreshTransientError(
                f"{key.provider.value} refresh token was rotated concurrently; retry later",
                org_id=key.org_id,
                provider=key.provider.value,
            ) from error

        await self.store.save(current.copy(enabled=False, last_refresh_error=error.message))
        await self.audit.record(
            key.org_id,
            key.provider,
            AuditKind.REFRESH_FAILURE,
            detail=error.message,
            context={
                "error_kind": "permanent",
                "error_code": error.error_code,
                "status_code": error.status_code,
            },
        )
        logger.error(
            "Disabled %s credential for organization %s: %s",
            key.provider.value,
            key.org_id,
            error.message,
        )
        raise RefreshPermanentError(
            f"{key.provider.value} rejected the refresh token; reconnect required",
            org_id=key.org_id,
            provider=key.provider.value,
        ) from error

    async def _record_transient(
        self, credential: Credential, message: str, error_kind: str
    ) -> None:
        """Record a transient failure without touching token, expiry or enabled."""
        key = credential.key
        current = await self.store.get(key) or credential
        await self.store.save(current.copy(last_refresh_error=message))
        await self.audit.record(
            key.org_id,
            key.provider,
            AuditKind.REFRESH_FAILURE,
            detail=message,
            context={"error_kind": "transient", "error_code": error_kind},
        )
        logger.warning(
            "Transient %s refresh failure for organization %s: %s",
            key.provider.value,
            key.org_id,
            message,
        )
