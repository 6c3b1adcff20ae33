"""
Encryption key bootstrap for the signed-in user.

Runs once per observation of (current user id, published public key) and
makes sure that exactly one usable key pair exists for the user on this
device, migrating a key pair stored under the legacy unscoped id when
needed, and that the server holds the matching public key.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Tuple

from e2ee.cancellation import CancellationToken, OperationCancelled, check
from e2ee.keys import KeyPair, LEGACY_KEY_PAIR_ID, scoped_key_pair_id
from e2ee.primitives import generate_rsa_keypair
from e2ee.reporting import ErrorReporter, default_reporter


logger = logging.getLogger(__name__)

PublishPublicKey = Callable[[str], Awaitable[None]]


class KeyLifecycleManager:
    """
    Ensures a current, published key pair for the local user.

    A single instance belongs to one client session. Re-running it is safe:
    once the key pair exists and the server has its public key, a run only
    reads.
    """

    def __init__(
        self,
        key_store,
        publish_public_key: PublishPublicKey,
        reporter: Optional[ErrorReporter] = None,
        key_size: Optional[int] = None,
        publish_attempts: int = 3,
        publish_backoff: float = 0.5,
    ):
        """
        Args:
            key_store: Store with get/put/delete
            publish_public_key: Coroutine uploading the base64 SPKI public key
            reporter: Error sink for bootstrap failures
            key_size: RSA modulus length for newly generated keys
            publish_attempts: Tries before a publish failure is given up
            publish_backoff: Seconds to wait between publish tries (doubles)
        """
        self.key_store = key_store
        self.publish_public_key = publish_public_key
        self.reporter = reporter or default_reporter
        self.key_size = key_size
        self.publish_attempts = max(1, publish_attempts)
        self.publish_backoff = publish_backoff
        self.in_progress = False
        self._last_publish: Optional[Tuple[str, Optional[str], str]] = None

    async def ensure_keys(
        self,
        current_user_id: str,
        published_public_key: Optional[str],
        token: Optional[CancellationToken] = None,
    ) -> Optional[KeyPair]:
        """
        Make sure the user has a stored and published key pair.

        Args:
            current_user_id: Id of the signed-in user
            published_public_key: Public key the server currently holds, or None
            token: Cancelled when this observation goes stale

        Returns:
            The user's key pair, or None if the run was skipped, cancelled
            or failed. Failures are reported, never raised.
        """
        if self.in_progress:
            return None

        self.in_progress = True
        try:
            return await self._ensure(current_user_id, published_public_key, token)
        except OperationCancelled:
            logger.debug("Key bootstrap for %s cancelled", current_user_id)
            return None
        except Exception as e:
            self.reporter.report("Failed to initialize encryption keys", e, {"user_id": current_user_id})
            return None
        finally:
            self.in_progress = False

    async def _ensure(
        self,
        user_id: str,
        published_public_key: Optional[str],
        token: Optional[CancellationToken],
    ) -> KeyPair:
        if self._last_publish is not None and self._last_publish[:2] != (user_id, published_public_key):
            # The server moved on since our last publish
            self._last_publish = None

        scoped_id = scoped_key_pair_id(user_id)

        key_pair = await asyncio.to_thread(self.key_store.get, scoped_id)
        legacy = None
        if scoped_id != LEGACY_KEY_PAIR_ID:
            legacy = await asyncio.to_thread(self.key_store.get, LEGACY_KEY_PAIR_ID)
        check(token)

        if key_pair is None and legacy is not None:
            key_pair = await self._migrate(legacy, scoped_id, token)
        elif key_pair is not None and legacy is not None and published_public_key:
            # Migration half-done elsewhere: server has the legacy key
            if (published_public_key == legacy.exported_public_key()
                    and published_public_key != key_pair.exported_public_key()):
                key_pair = await self._migrate(legacy, scoped_id, token)

        if key_pair is None:
            private_key, public_key = await asyncio.to_thread(generate_rsa_keypair, self.key_size)
            check(token)
            key_pair = KeyPair(id=scoped_id, public_key=public_key, private_key=private_key)
            self.key_store.put(key_pair)
            logger.info("Generated new key pair %s", scoped_id)

        exported = key_pair.exported_public_key()
        check(token)

        if published_public_key != exported and not self._already_published(user_id, published_public_key, exported):
            await self._publish(exported, token)
            self._last_publish = (user_id, published_public_key, exported)

        return key_pair

    async def _migrate(self, legacy: KeyPair, scoped_id: str, token: Optional[CancellationToken]) -> Optional[KeyPair]:
        check(token)
        self.key_store.put(legacy.with_id(scoped_id))
        check(token)
        self.key_store.delete(LEGACY_KEY_PAIR_ID)
        logger.info("Migrated legacy key pair to %s", scoped_id)
        return await asyncio.to_thread(self.key_store.get, scoped_id)

    def _already_published(self, user_id: str, observed: Optional[str], exported: str) -> bool:
        # The same stale observation re-delivered after a successful publish
        return self._last_publish == (user_id, observed, exported)

    async def _publish(self, exported: str, token: Optional[CancellationToken]):
        delay = self.publish_backoff
        for attempt in range(1, self.publish_attempts + 1):
            check(token)
            try:
                await self.publish_public_key(exported)
                return
            except Exception as e:
                if attempt == self.publish_attempts:
                    raise
                logger.warning("Publishing public key failed (attempt %d): %s", attempt, type(e).__name__)
            await asyncio.sleep(delay)
            delay *= 2
