"""
Pending Challenge Store (Redis with in-memory fallback)

Holds, per login session, the one outstanding second-factor challenge and
the user it was issued for. Entries are single use: `take_and_clear`
removes the entry in the same step that reads it, so a challenge can be
honoured at most once. `put` overwrites, so only the most recent
challenge for a session is ever valid.
"""

import enum
import json
import logging
import time
from dataclasses import asdict, dataclass

import redis.asyncio as redis

from authgate.config import settings
from authgate.exceptions import NoActiveChallengeError

logger = logging.getLogger(__name__)


class ChallengePurpose(str, enum.Enum):
    """What the pending entry was issued for."""

    LOGIN = "login"  # first factor passed, no WebAuthn nonce outstanding
    AUTHENTICATION = "authentication"
    REGISTRATION = "registration"


@dataclass(frozen=True)
class PendingChallenge:
    user_id: int
    purpose: ChallengePurpose
    challenge: str | None = None
    created_at: float = 0.0

    def is_expired(self, ttl_seconds: int, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return now - self.created_at > ttl_seconds

    def to_json(self) -> str:
        data = asdict(self)
        data["purpose"] = self.purpose.value
        return json.dumps(data)

    @classmethod
    def from_json(cls, raw: str) -> "PendingChallenge":
        data = json.loads(raw)
        return cls(
            user_id=int(data["user_id"]),
            purpose=ChallengePurpose(data["purpose"]),
            challenge=data.get("challenge"),
            created_at=float(data["created_at"]),
        )


class InMemoryChallengeStore:
    """
    Process-local store.
    Note: entries are lost on restart and are not shared across workers.
    """

    def __init__(self, ttl_seconds: int | None = None):
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.pending_challenge_ttl_seconds
        self._entries: dict[str, PendingChallenge] = {}

    def _cleanup_expired(self) -> None:
        now = time.time()
        expired = [sid for sid, entry in self._entries.items() if entry.is_expired(self.ttl_seconds, now)]
        for sid in expired:
            self._entries.pop(sid, None)

    async def put(
        self,
        session_id: str,
        user_id: int,
        challenge: str | None = None,
        purpose: ChallengePurpose = ChallengePurpose.LOGIN,
        created_at: float | None = None,
    ) -> PendingChallenge:
        self._cleanup_expired()
        created_at = time.time() if created_at is None else created_at
        entry = PendingChallenge(user_id=user_id, purpose=purpose, challenge=challenge, created_at=created_at)
        self._entries[session_id] = entry
        logger.debug(f"Pending {purpose.value} challenge stored", extra={"user_id": user_id})
        return entry

    async def take_and_clear(self, session_id: str) -> PendingChallenge:
        # pop() reads and removes in one step; there is no await between them
        entry = self._entries.pop(session_id, None)
        if entry is None or entry.is_expired(self.ttl_seconds):
            raise NoActiveChallengeError()
        return entry

    async def peek(self, session_id: str) -> PendingChallenge | None:
        """Non-destructive read, used to identify the user awaiting a factor."""
        self._cleanup_expired()
        return self._entries.get(session_id)

    async def clear(self, session_id: str) -> bool:
        return self._entries.pop(session_id, None) is not None


class RedisChallengeStore:
    """
    Redis-backed store.

    Entries expire server-side after the TTL and are consumed with GETDEL,
    which is atomic across concurrent requests on the same session.
    """

    KEY_PREFIX = "mfa_challenge:"

    def __init__(self, redis_url: str | None = None, ttl_seconds: int | None = None):
        self.redis_url = redis_url or settings.redis_url
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.pending_challenge_ttl_seconds
        self._redis: redis.Redis | None = None

    def _key(self, session_id: str) -> str:
        return f"{self.KEY_PREFIX}{session_id}"

    async def connect(self):
        if self._redis is not None:
            return
        try:
            self._redis = redis.Redis.from_url(self.redis_url, decode_responses=True)
            await self._redis.ping()
            logger.info("Challenge store connected to Redis")
        except Exception as e:
            logger.error(f"Failed to connect challenge store to Redis: {type(e).__name__}")
            self._redis = None
            raise

    async def disconnect(self):
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def put(
        self,
        session_id: str,
        user_id: int,
        challenge: str | None = None,
        purpose: ChallengePurpose = ChallengePurpose.LOGIN,
        created_at: float | None = None,
    ) -> PendingChallenge:
        if not self._redis:
            await self.connect()

        now = time.time()
        created_at = now if created_at is None else created_at
        entry = PendingChallenge(user_id=user_id, purpose=purpose, challenge=challenge, created_at=created_at)
        # A re-put keeps the original deadline
        remaining = max(1, int(self.ttl_seconds - (now - created_at)))
        await self._redis.set(self._key(session_id), entry.to_json(), ex=remaining)
        logger.debug(f"Pending {purpose.value} challenge stored", extra={"user_id": user_id})
        return entry

    async def take_and_clear(self, session_id: str) -> PendingChallenge:
        if not self._redis:
            await self.connect()

        raw = await self._redis.getdel(self._key(session_id))
        if not raw:
            raise NoActiveChallengeError()

        try:
            entry = PendingChallenge.from_json(raw)
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Discarding unreadable pending challenge: {type(e).__name__}")
            raise NoActiveChallengeError() from e

        if entry.is_expired(self.ttl_seconds):
            raise NoActiveChallengeError()
        return entry

    async def peek(self, session_id: str) -> PendingChallenge | None:
        if not self._redis:
            await self.connect()

        raw = await self._redis.get(self._key(session_id))
        if not raw:
            return None
        try:
            return PendingChallenge.from_json(raw)
        except (ValueError, KeyError, TypeError):
            return None

    async def clear(self, session_id: str) -> bool:
        if not self._redis:
            await self.connect()
        return bool(await self._redis.delete(self._key(session_id)))


_challenge_store: RedisChallengeStore | InMemoryChallengeStore | None = None


async def get_challenge_store() -> RedisChallengeStore | InMemoryChallengeStore:
    """
    Dependency returning the process-wide challenge store.
    Uses Redis when REDIS_URL is configured and reachable, memory otherwise.
    """
    global _challenge_store

    if _challenge_store is not None:
        return _challenge_store

    if settings.redis_url:
        try:
            store = RedisChallengeStore()
            await store.connect()
            _challenge_store = store
            return _challenge_store
        except Exception as e:
            logger.warning(f"Redis not available, using in-memory challenge store: {type(e).__name__}")

    _challenge_store = InMemoryChallengeStore()
    logger.info("Challenge store using in-memory storage")
    return _challenge_store
