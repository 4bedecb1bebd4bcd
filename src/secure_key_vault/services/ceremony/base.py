"""Shared challenge handling for both ceremonies."""

from datetime import datetime
from enum import Enum
import hmac
from typing import Callable

from webauthn.helpers import base64url_to_bytes

from secure_key_vault.config import CeremonyConfig
from secure_key_vault.exceptions import ChallengeExpiredOrMissingError
from secure_key_vault.managers.logging_manager import get_logger
from secure_key_vault.models.key_models import CeremonyType, ChallengeRecord, utc_now
from secure_key_vault.services.challenge_store import ChallengeStore

logger = get_logger(prefix="[Ceremony Engine]")


class CeremonyState(str, Enum):
    IDLE = "idle"
    OPTIONS_ISSUED = "options_issued"
    VERIFIED = "verified"
    FAILED = "failed"


class CeremonyBase:
    ceremony_type: CeremonyType

    def __init__(
        self,
        config: CeremonyConfig,
        challenges: ChallengeStore,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.challenges = challenges
        self.clock = clock

    def _transition(self, user_id: str, old: CeremonyState, new: CeremonyState) -> None:
        logger.info("%s ceremony for user %s: %s -> %s", self.ceremony_type.value, user_id, old.value, new.value)

    async def _live_challenge(self, user_id: str) -> ChallengeRecord:
        record = await self.challenges.consume(user_id, self.ceremony_type)
        if record is None:
            raise ChallengeExpiredOrMissingError(
                "No live challenge", context={"user_id": user_id, "ceremony": self.ceremony_type.value}
            )
        return record

    @staticmethod
    def _require_same_challenge(record: ChallengeRecord, signed_challenge: bytes) -> None:
        """The client must have signed the live challenge, not one it replaced."""
        if not hmac.compare_digest(base64url_to_bytes(record.value), signed_challenge):
            raise ChallengeExpiredOrMissingError(
                "Response was signed over a superseded challenge",
                context={"user_id": record.user_id, "ceremony": record.ceremony_type.value},
            )

    async def _recheck_live(self, record: ChallengeRecord) -> None:
        """The challenge must still be live and unchanged before any write."""
        current = await self.challenges.consume(record.user_id, self.ceremony_type)
        if current is None or not hmac.compare_digest(current.value, record.value):
            raise ChallengeExpiredOrMissingError(
                "Challenge expired or was replaced during verification",
                context={"user_id": record.user_id, "ceremony": self.ceremony_type.value},
            )
