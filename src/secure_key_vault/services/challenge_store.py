"""
WebAuthn challenge store.

Holds exactly one live challenge per (user, ceremony type) pair in Redis.
Issuing a new challenge replaces the previous one with a single SET, so the
newest challenge is always authoritative. The TTL is enforced when a
challenge is read; the Redis key expiry and the periodic sweep only reclaim
space.

Key layout:
    webauthn_challenge:{ceremony_type}:{user_id} -> {"value", "created_at"}
"""

import json
import secrets
from datetime import datetime
from typing import Any, Callable, Optional

from redis.exceptions import RedisError

from secure_key_vault.exceptions import StoreUnavailableError
from secure_key_vault.managers.logging_manager import get_logger
from secure_key_vault.models.key_models import CeremonyType, ChallengeRecord, utc_now
from secure_key_vault.utils.logging_utils import log_performance

logger = get_logger(prefix="[Challenge Store]")

CHALLENGE_LENGTH_BYTES = 32
DEFAULT_CHALLENGE_TTL_SECONDS = 300
REDIS_CHALLENGE_PREFIX = "webauthn_challenge:"

# Deletes KEYS[1] only while it still holds ARGV[1]
DELETE_IF_UNCHANGED_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


def generate_secure_challenge() -> str:
    """Return a base64url challenge carrying 32 bytes of entropy."""
    return secrets.token_urlsafe(CHALLENGE_LENGTH_BYTES)


class ChallengeStore:
    """
    Redis-backed store of live ceremony challenges.

    Args:
        redis_manager: Object exposing ``async get_redis()``.
        ttl_seconds: Hard lifetime of a challenge.
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        redis_manager: Any,
        ttl_seconds: int = DEFAULT_CHALLENGE_TTL_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.redis_manager = redis_manager
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    @staticmethod
    def _key(user_id: str, ceremony_type: CeremonyType) -> str:
        return f"{REDIS_CHALLENGE_PREFIX}{ceremony_type.value}:{user_id}"

    @log_performance("challenge_issue")
    async def issue(self, user_id: str, ceremony_type: CeremonyType) -> str:
        """
        Issue a fresh challenge, replacing any live one for the pair.

        Returns:
            str: The new challenge value (base64url).

        Raises:
            StoreUnavailableError: If Redis cannot be reached.
        """
        value = generate_secure_challenge()
        payload = json.dumps({"value": value, "created_at": self.clock().isoformat()})
        try:
            redis_conn = await self.redis_manager.get_redis()
            # Expiry only reclaims space; liveness is checked on read
            await redis_conn.set(self._key(user_id, ceremony_type), payload, ex=self.ttl_seconds + 60)
        except RedisError as e:
            logger.error("Failed to store %s challenge for user %s: %s", ceremony_type.value, user_id, e)
            raise StoreUnavailableError("Challenge store unavailable", context={"operation": "issue"}) from e

        logger.debug("Issued %s challenge for user %s", ceremony_type.value, user_id)
        return value

    async def consume(self, user_id: str, ceremony_type: CeremonyType) -> Optional[ChallengeRecord]:
        """
        Return the live challenge for the pair without deleting it.

        A record older than the TTL is never returned; it is removed on the
        way out, unless a newer challenge replaced it meanwhile, and None is
        returned instead.
        """
        key = self._key(user_id, ceremony_type)
        try:
            redis_conn = await self.redis_manager.get_redis()
            raw = await redis_conn.get(key)
        except RedisError as e:
            logger.error("Failed to read %s challenge for user %s: %s", ceremony_type.value, user_id, e)
            raise StoreUnavailableError("Challenge store unavailable", context={"operation": "consume"}) from e

        if raw is None:
            logger.debug("No %s challenge for user %s", ceremony_type.value, user_id)
            return None

        record = self._parse(user_id, ceremony_type, raw)
        if record is None or record.is_expired(self.clock(), self.ttl_seconds):
            logger.info("Discarding expired %s challenge for user %s", ceremony_type.value, user_id)
            try:
                await self._delete_if_unchanged(redis_conn, key, raw)
            except RedisError as e:
                logger.error("Failed to discard %s challenge for user %s: %s", ceremony_type.value, user_id, e)
                raise StoreUnavailableError("Challenge store unavailable", context={"operation": "consume"}) from e
            return None
        return record

    async def delete(self, user_id: str, ceremony_type: CeremonyType) -> bool:
        """Delete the pair's challenge. Returns True if one existed."""
        try:
            redis_conn = await self.redis_manager.get_redis()
            deleted = await redis_conn.delete(self._key(user_id, ceremony_type))
        except RedisError as e:
            logger.error("Failed to delete %s challenge for user %s: %s", ceremony_type.value, user_id, e)
            raise StoreUnavailableError("Challenge store unavailable", context={"operation": "delete"}) from e
        return bool(deleted)

    @log_performance("challenge_sweep")
    async def expire(self) -> int:
        """
        Delete every challenge older than the TTL.

        Idempotent and safe to run concurrently with itself and with
        ceremonies: deleting an already-deleted key is a no-op, and a
        challenge re-issued after it was read is left in place.

        Returns:
            int: Number of challenges removed by this call.
        """
        now = self.clock()
        removed = 0
        try:
            redis_conn = await self.redis_manager.get_redis()
            async for key in redis_conn.scan_iter(match=f"{REDIS_CHALLENGE_PREFIX}*"):
                raw = await redis_conn.get(key)
                if raw is None:
                    continue
                try:
                    created_at = datetime.fromisoformat(json.loads(raw)["created_at"])
                except (ValueError, KeyError, TypeError):
                    created_at = None
                if created_at is None or (now - created_at).total_seconds() > self.ttl_seconds:
                    removed += await self._delete_if_unchanged(redis_conn, key, raw)
        except RedisError as e:
            logger.error("Challenge sweep failed: %s", e)
            raise StoreUnavailableError("Challenge store unavailable", context={"operation": "expire"}) from e

        if removed:
            logger.info("Swept %d expired challenges", removed)
        return removed

    @staticmethod
    async def _delete_if_unchanged(redis_conn: Any, key: str, raw: Any) -> int:
        return int(await redis_conn.eval(DELETE_IF_UNCHANGED_SCRIPT, 1, key, raw))

    def _parse(self, user_id: str, ceremony_type: CeremonyType, raw: str) -> Optional[ChallengeRecord]:
        try:
            data = json.loads(raw)
            return ChallengeRecord(
                user_id=user_id,
                ceremony_type=ceremony_type,
                value=data["value"],
                created_at=datetime.fromisoformat(data["created_at"]),
            )
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Corrupt %s challenge for user %s: %s", ceremony_type.value, user_id, e)
            return None
