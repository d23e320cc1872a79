"""Per-profile credential cache in front of the authentication pipeline."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from .errors import ExchangeRejectedError, StorageError
from .models import TemporaryCredentials

logger = logging.getLogger(__name__)

DEFAULT_SAFETY_MARGIN = timedelta(minutes=5)


def utcnow():
    return datetime.now(timezone.utc)


class CredentialCache:
    """Serve credentials from *storage* while they stay valid, else refresh.

    *pipeline* is an async callable ``pipeline(profile) -> TemporaryCredentials``
    run on a miss.  Entries are only served while more than *safety_margin*
    remains before expiration; an entry exactly at the margin is a miss.
    Refreshes of the same profile are serialized so a second caller waits
    for the first and then finds a hit.
    """

    def __init__(self, storage, pipeline, safety_margin=DEFAULT_SAFETY_MARGIN, clock=utcnow):
        self.storage = storage
        self.pipeline = pipeline
        self.safety_margin = safety_margin
        self.clock = clock
        self._locks = {}

    def _lock(self, profile):
        return self._locks.setdefault(profile.name, asyncio.Lock())

    async def _load(self, profile):
        try:
            data = await asyncio.to_thread(self.storage.read, profile.storage_key)
        except StorageError as exc:
            logger.warning("Ignoring cached credentials for %s: %s", profile.name, exc.reason)
            return None
        if data is None:
            return None
        try:
            return TemporaryCredentials.from_bytes(data)
        except (ValueError, KeyError, TypeError):
            logger.warning("Ignoring corrupt cached credentials for %s", profile.name)
            return None

    async def peek(self, profile):
        """Return the cached credentials if still valid, without refreshing."""
        credentials = await self._load(profile)
        if credentials is not None and credentials.valid_at(self.clock(), self.safety_margin):
            return credentials
        return None

    async def get(self, profile):
        async with self._lock(profile):
            credentials = await self.peek(profile)
            if credentials is not None:
                logger.info(
                    "Using cached credentials for %s (expire %s)",
                    profile.name,
                    credentials.expiration.strftime("%Y-%m-%d %H:%M:%S UTC"),
                )
                return credentials

            logger.debug("No valid cached credentials for %s", profile.name)
            credentials = await self.pipeline(profile)
            if not credentials.valid_at(self.clock(), timedelta(0)):
                raise ExchangeRejectedError("STS returned credentials that have already expired")
            await self.put(profile, credentials)
            return credentials

    async def put(self, profile, credentials):
        await asyncio.to_thread(self.storage.write, profile.storage_key, credentials.to_bytes())

    async def invalidate(self, profile):
        logger.debug("Invalidating cached credentials for %s", profile.name)
        await asyncio.to_thread(self.storage.delete, profile.storage_key)
