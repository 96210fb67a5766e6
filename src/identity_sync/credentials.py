"""Keyed credential lifecycle for the managed identity.

At most one active key is kept per identity. Rotation is triggered by an
opaque, externally supplied token: any change in its value is a rotation
request. There is no atomic swap in the underlying API, so rotation deletes
the old key before creating the new one and consumers see a short gap.
"""

from __future__ import annotations

import logging

from .provider import ProviderCaller, ProviderError, ServiceAccount, ServiceAccountKey
from .retry import RetryExecutor
from .security import log_security_audit_event

logger = logging.getLogger(__name__)


def rotation_requested(previous_token: str | None, desired_token: str | None) -> bool:
    """Any change in the token value requests a rotation; content is never parsed."""
    return previous_token != desired_token


class CredentialRotator:
    """Creates, rotates, refreshes and deletes the identity's key."""

    def __init__(self, caller: ProviderCaller, retry: RetryExecutor) -> None:
        self._caller = caller
        self._retry = retry

    async def ensure(
        self, identity: ServiceAccount, current: ServiceAccountKey | None
    ) -> ServiceAccountKey:
        """Return the current key, creating one if none exists."""
        if current is not None:
            return current
        return await self._create(identity)

    async def rotate(
        self, identity: ServiceAccount, old: ServiceAccountKey | None
    ) -> ServiceAccountKey:
        """Delete the old key (tolerating not-found), then create a new one.

        A failed delete is logged and does not block creation; the orphaned
        key expires or is cleaned up on teardown of the identity.

        Raises:
            ProviderError, RetryExhaustedError: If the new key cannot be created.
        """
        if old is not None:
            try:
                await self.delete(old.name)
            except ProviderError as e:
                logger.warning(
                    "Failed to delete old key during rotation",
                    extra={"key": old.name, "error": str(e)},
                )

        new_key = await self._create(identity)
        logger.info(
            "Rotated service account key",
            extra={
                "service_account": identity.email,
                "valid_after": new_key.valid_after,
            },
        )
        return new_key

    async def reconcile(
        self,
        identity: ServiceAccount,
        current: ServiceAccountKey | None,
        previous_token: str | None,
        desired_token: str | None,
    ) -> tuple[ServiceAccountKey, bool]:
        """Rotate on token change, ensure otherwise.

        A key recorded locally but deleted upstream is replaced.

        Returns:
            Tuple of (key to persist, whether a rotation happened). An
            unchanged token with a live key returns it untouched.
        """
        if current is not None and rotation_requested(previous_token, desired_token):
            return await self.rotate(identity, current), True
        if current is not None and not await self.exists(current.name):
            logger.warning(
                "Key deleted upstream, creating a replacement",
                extra={"key": current.name, "service_account": identity.email},
            )
            current = None
        return await self.ensure(identity, current), False

    async def exists(self, key_name: str) -> bool:
        """Whether the key is still present upstream.

        Only a not-found answer counts as absent; other read failures are
        logged and the key is assumed present.
        """
        try:
            await self._caller.call("get_service_account_key", key_name)
        except ProviderError as e:
            if e.not_found:
                return False
            logger.warning("Failed to read key", extra={"key": key_name, "error": str(e)})
        return True

    async def refresh(self, current: ServiceAccountKey) -> ServiceAccountKey | None:
        """Re-read validity times.

        Returns:
            The refreshed key, None if it no longer exists upstream, or
            `current` unchanged if it could not be read.
        """
        try:
            observed: ServiceAccountKey = await self._caller.call(
                "get_service_account_key", current.name
            )
        except ProviderError as e:
            if e.not_found:
                logger.warning("Key not found", extra={"key": current.name})
                return None
            logger.warning("Failed to read key", extra={"key": current.name, "error": str(e)})
            return current
        return ServiceAccountKey(
            name=current.name,
            valid_after=observed.valid_after,
            valid_before=observed.valid_before,
            private_key_data=current.private_key_data,
        )

    async def delete(self, key_name: str) -> bool:
        """Delete a key. Returns False if it was already absent.

        Raises:
            ProviderError: For failures other than not-found.
        """
        try:
            await self._caller.call("delete_service_account_key", key_name)
        except ProviderError as e:
            if not e.not_found:
                raise
            logger.warning("Key already deleted", extra={"key": key_name})
            return False
        log_security_audit_event(
            event_type="credential",
            target_resource=key_name,
            action="delete",
            result="success",
        )
        return True

    async def _create(self, identity: ServiceAccount) -> ServiceAccountKey:
        key: ServiceAccountKey = await self._retry.run(
            f"create key for {identity.email}",
            lambda: self._caller.call("create_service_account_key", identity.name),
        )
        log_security_audit_event(
            event_type="credential",
            target_resource=key.name,
            action="create",
            result="success",
        )
        return key
