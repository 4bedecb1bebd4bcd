"""
Background sweep of expired WebAuthn challenges.

What this file does:
- Runs `periodic_challenge_sweep()` forever, calling `ChallengeStore.expire()`
  every CHALLENGE_SWEEP_INTERVAL_SECONDS.
- Logs how many challenges each pass removed.

What this file does NOT do:
- Does NOT decide whether a challenge is live. Ceremonies check the TTL when
  they read a challenge, so a late or skipped sweep never lets an expired
  challenge through.

How to use:
- Start it with `asyncio.create_task(periodic_challenge_sweep(store))` from the
  application lifespan and cancel the task on shutdown.
"""

import asyncio
from typing import Optional

from secure_key_vault.config import settings
from secure_key_vault.exceptions import StoreUnavailableError
from secure_key_vault.managers.logging_manager import get_logger
from secure_key_vault.services.challenge_store import ChallengeStore

logger = get_logger(prefix="[Challenge Sweep]")


async def run_challenge_sweep(store: ChallengeStore) -> int:
    """Run a single sweep pass. Returns the number of challenges removed, 0 if Redis is down."""
    try:
        return await store.expire()
    except StoreUnavailableError as exc:
        logger.warning("Challenge sweep skipped: %s", exc)
        return 0


async def periodic_challenge_sweep(store: ChallengeStore, interval: Optional[int] = None) -> None:
    interval = interval or settings.CHALLENGE_SWEEP_INTERVAL_SECONDS
    logger.info("Starting periodic challenge sweep with interval %ds", interval)
    while True:
        await run_challenge_sweep(store)
        await asyncio.sleep(interval)
