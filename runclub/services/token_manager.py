"""
Token lifecycle management.

Produces a currently valid access token for an account. Credentials are
looked up through a chain of token sources (durable store first, legacy
snapshot second); an expired credential is refreshed through the OAuth
provider and written back to the source that supplied it.

Refreshes are single-flighted: concurrent callers for the same account and
source share one provider call and its outcome.
"""

import asyncio
import hashlib
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from pydantic import ValidationError as PydanticValidationError

from runclub.errors import StorageError, UpstreamAuthError, UpstreamError
from runclub.models import Account
from runclub.schemas.credential import Credential
from runclub.services.encryption import CredentialCipher
from runclub.services.legacy_store import LegacyFlatStore
from runclub.services.member_store import MemberStore

logger = logging.getLogger(__name__)

SAFETY_MARGIN_SECONDS = 3600


class OAuthProvider(Protocol):
    async def refresh(self, refresh_token: str) -> Credential: ...


class TokenOutcome(str, Enum):
    """How a token request was resolved."""

    cached = "cached"
    refreshed = "refreshed"
    no_credential = "no_credential"
    no_refresh_token = "no_refresh_token"
    revoked = "revoked"
    transient_failure = "transient_failure"


@dataclass(frozen=True)
class TokenResolution:
    access_token: str | None
    outcome: TokenOutcome
    source: str | None = None


# =============================================================================
# Token sources
# =============================================================================


class TokenSource(ABC):
    """A storage tier that may hold a credential for an account."""

    name: str = "source"

    @abstractmethod
    def load(self, account: Account) -> Credential | None:
        """Current decrypted credential, or None if this tier has none."""
        pass

    def persist(self, account: Account, credential: Credential) -> None:
        """Store a refreshed credential. Read-only tiers do nothing."""
        pass


class DurableTokenSource(TokenSource):
    """Credentials held by the relational MemberStore."""

    name = "durable"

    def __init__(self, store: MemberStore):
        self.store = store

    def load(self, account: Account) -> Credential | None:
        # Re-read so a credential refreshed by another caller is picked up
        try:
            current = self.store.get_by_external_id(account.external_id)
        except StorageError as e:
            logger.warning(f"Could not read athlete {account.external_id} from store: {e}")
            return None
        if current is None:
            return None
        return self.store.get_credential(current)

    def persist(self, account: Account, credential: Credential) -> None:
        if not self.store.update_credential(account.external_id, credential):
            raise StorageError(f"Athlete {account.external_id} no longer exists")


class LegacyTokenSource(TokenSource):
    """Credentials in the legacy snapshot, looked up by local id. Never written."""

    name = "legacy"

    def __init__(self, store: LegacyFlatStore, cipher: CredentialCipher):
        self.store = store
        self.cipher = cipher

    def load(self, account: Account) -> Credential | None:
        entry = self.store.get_by_local_id(account.local_id)
        if entry is None or entry.credential is None:
            return None
        payload = self.cipher.decrypt(entry.credential)
        if payload is None:
            return None
        try:
            return Credential.model_validate(payload)
        except PydanticValidationError as e:
            logger.warning(f"Legacy credential for user {account.local_id} is invalid: {e}")
            return None


# =============================================================================
# Manager
# =============================================================================


class TokenLifecycleManager:
    """
    Hands out valid access tokens, refreshing them when needed.

    Never raises for refresh or decryption failures: the caller gets None
    (or a TokenResolution explaining why).
    """

    def __init__(
        self,
        provider: OAuthProvider,
        member_store: MemberStore,
        legacy_store: LegacyFlatStore | None = None,
        sources: list[TokenSource] | None = None,
        margin_seconds: int = SAFETY_MARGIN_SECONDS,
        deactivate_on_revocation: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.provider = provider
        self.member_store = member_store
        self.margin_seconds = margin_seconds
        self.deactivate_on_revocation = deactivate_on_revocation
        self.clock = clock

        if sources is None:
            sources = [DurableTokenSource(member_store)]
            if legacy_store is not None:
                sources.append(LegacyTokenSource(legacy_store, member_store.cipher))
        self.sources = sources

        self._in_flight: dict[tuple[str, int], asyncio.Future] = {}
        self._revoked: set[str] = set()
        # (tier, external_id) -> (fingerprint of the spent refresh token, its replacement)
        self._superseded: dict[tuple[str, int], tuple[str, Credential]] = {}

    async def get_valid_access_token(self, account: Account) -> str | None:
        """
        Get a usable access token for an account.

        Returns:
            Access token, or None when no tier can supply one
        """
        return (await self.resolve(account)).access_token

    async def resolve(self, account: Account) -> TokenResolution:
        """
        Walk the token sources in order and return the first usable token.

        When every tier fails, the outcome of the first tier that had a
        credential is reported.
        """
        failures: list[TokenResolution] = []

        for source in self.sources:
            credential = self._load(source, account)
            if credential is None:
                continue

            resolution = await self._resolve_credential(source, account, credential)
            if resolution.access_token:
                if failures:
                    logger.info(
                        f"Athlete {account.external_id}: token served from {source.name} tier"
                    )
                return resolution
            failures.append(resolution)

        if failures:
            return failures[0]
        logger.debug(f"No credential for athlete {account.external_id} in any tier")
        return TokenResolution(None, TokenOutcome.no_credential)

    async def _resolve_credential(
        self, source: TokenSource, account: Account, credential: Credential
    ) -> TokenResolution:
        if not credential.is_expired(self.clock(), self.margin_seconds):
            return TokenResolution(credential.access_token, TokenOutcome.cached, source.name)

        if not credential.refresh_token:
            logger.warning(f"Athlete {account.external_id} token expired and no refresh token")
            return TokenResolution(None, TokenOutcome.no_refresh_token, source.name)

        key = (source.name, account.external_id)
        flight = self._in_flight.get(key)
        if flight is None:
            flight = asyncio.ensure_future(self._refresh(source, account, credential))
            self._in_flight[key] = flight
            flight.add_done_callback(lambda done: self._finish_flight(key, done))
        return await asyncio.shield(flight)

    def _finish_flight(self, key: tuple[str, int], flight: asyncio.Future) -> None:
        if self._in_flight.get(key) is flight:
            del self._in_flight[key]

    def _load(self, source: TokenSource, account: Account) -> Credential | None:
        credential = source.load(account)
        if credential is None:
            return None

        key = (source.name, account.external_id)
        superseded = self._superseded.get(key)
        if superseded is None:
            return credential

        spent, replacement = superseded
        if (
            credential.access_token == replacement.access_token
            or credential.refresh_token is None
            or _fingerprint(credential.refresh_token) != spent
        ):
            # The tier holds the replacement or something newer
            del self._superseded[key]
            return credential

        # The tier still holds the credential that was already refreshed
        self._save(source, account, replacement)
        return replacement

    def _save(self, source: TokenSource, account: Account, credential: Credential) -> bool:
        try:
            source.persist(account, credential)
        except StorageError as e:
            logger.error(f"Failed to save refreshed token for athlete {account.external_id}: {e}")
            return False
        return True

    async def _refresh(
        self, source: TokenSource, account: Account, credential: Credential
    ) -> TokenResolution:
        fingerprint = _fingerprint(credential.refresh_token)
        if fingerprint in self._revoked:
            logger.debug(f"Athlete {account.external_id}: refresh token already known revoked")
            return TokenResolution(None, TokenOutcome.revoked, source.name)

        logger.info(f"Refreshing token for athlete {account.external_id} ({source.name} tier)")
        try:
            refreshed = await self.provider.refresh(credential.refresh_token)
        except UpstreamAuthError as e:
            return self._revoke(source, account, fingerprint, e)
        except UpstreamError as e:
            logger.warning(f"Token refresh for athlete {account.external_id} failed: {e}")
            return TokenResolution(None, TokenOutcome.transient_failure, source.name)
        except Exception as e:
            if getattr(e, "status_code", None) == 401:
                return self._revoke(source, account, fingerprint, e)
            logger.exception(f"Unexpected error refreshing token for athlete {account.external_id}: {e}")
            return TokenResolution(None, TokenOutcome.transient_failure, source.name)

        self._superseded[(source.name, account.external_id)] = (fingerprint, refreshed)
        self._save(source, account, refreshed)

        logger.info(f"Token refreshed for athlete {account.external_id}")
        return TokenResolution(refreshed.access_token, TokenOutcome.refreshed, source.name)

    def _revoke(
        self, source: TokenSource, account: Account, fingerprint: str, error: Exception
    ) -> TokenResolution:
        self._revoked.add(fingerprint)
        logger.warning(f"Refresh token for athlete {account.external_id} revoked: {error}")
        if self.deactivate_on_revocation:
            self._deactivate(account)
        return TokenResolution(None, TokenOutcome.revoked, source.name)

    def _deactivate(self, account: Account) -> None:
        try:
            if self.member_store.deactivate(account.external_id):
                logger.info(f"Deactivated athlete {account.external_id} after token revocation")
        except StorageError as e:
            logger.error(f"Failed to deactivate athlete {account.external_id}: {e}")


def _fingerprint(refresh_token: str) -> str:
    return hashlib.sha256(refresh_token.encode("utf-8")).hexdigest()
