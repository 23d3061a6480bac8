import asyncio
import json
from typing import Any, Awaitable, Callable, List, Optional

from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from core.config import settings
from core.exceptions import PersistenceFailed
from core.logger import logger
from schemas.progress import AnswerRecord, SessionProgressSnapshot
from utils.clock import now_ms

PROGRESS_KEY = "studyquiz:progress:{user_id}_{quiz_id}"


class ProgressService:
    """Saves and restores resumable quiz progress, keyed by (user, quiz)."""

    def __init__(self, redis: Redis, clock: Callable[[], int] = now_ms):
        self.redis = redis
        self.clock = clock
        self.staleness_ms = settings.progress_staleness_ms
        self.timeout = settings.PERSISTENCE_TIMEOUT_SECONDS
        self.max_retries = settings.PERSISTENCE_MAX_RETRIES
        self.retry_delay = settings.PERSISTENCE_RETRY_DELAY_SECONDS

    @staticmethod
    def key(user_id: str, quiz_id: str) -> str:
        return PROGRESS_KEY.format(user_id=user_id, quiz_id=quiz_id)

    async def _call(self, operation: str, func: Callable[[], Awaitable[Any]]) -> Any:
        """Run a Redis call with a timeout and a small, bounded number of retries."""
        attempts = self.max_retries + 1
        last_error = None
        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(func(), timeout=self.timeout)
            except (RedisError, OSError, asyncio.TimeoutError) as e:
                last_error = e
                logger.warning("Progress store call failed", operation=operation,
                               attempt=attempt, attempts=attempts, error=repr(e))
                if attempt < attempts:
                    await asyncio.sleep(self.retry_delay)
        raise PersistenceFailed(f"{operation} failed after {attempts} attempts: {last_error!r}")

    async def save(self, user_id: Optional[str], quiz_id: Optional[str],
                   answers: List[AnswerRecord], cursor: int) -> Optional[SessionProgressSnapshot]:
        """Overwrite the progress snapshot for (user, quiz). No-op for guests."""
        if not user_id or not quiz_id:
            return None

        snapshot = SessionProgressSnapshot(
            quiz_id=quiz_id,
            answers=sorted(answers, key=lambda a: a.question_index),
            last_updated=self.clock(),
            current_question_index=cursor,
        )
        payload = json.dumps(snapshot.to_document())
        key = self.key(user_id, quiz_id)
        ttl_seconds = max(1, self.staleness_ms // 1000)

        await self._call("save", lambda: self.redis.set(key, payload, ex=ttl_seconds))
        logger.debug("Progress saved", user_id=user_id, quiz_id=quiz_id,
                     answers=len(snapshot.answers), cursor=cursor)
        return snapshot

    async def load(self, user_id: Optional[str], quiz_id: Optional[str]) -> Optional[SessionProgressSnapshot]:
        """Return the snapshot if it exists, is well-formed and is within the staleness window."""
        if not user_id or not quiz_id:
            return None

        raw = await self._call("load", lambda: self.redis.get(self.key(user_id, quiz_id)))
        if not raw:
            return None

        try:
            snapshot = SessionProgressSnapshot.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            logger.warning("Ignoring malformed progress snapshot", user_id=user_id, quiz_id=quiz_id, error=str(e))
            return None

        if snapshot.quiz_id != quiz_id:
            logger.warning("Ignoring progress snapshot for another quiz", user_id=user_id,
                           quiz_id=quiz_id, stored_quiz_id=snapshot.quiz_id)
            return None

        age_ms = self.clock() - snapshot.last_updated
        if age_ms >= self.staleness_ms:
            logger.info("Ignoring stale progress snapshot", user_id=user_id, quiz_id=quiz_id, age_ms=age_ms)
            return None

        return snapshot

    async def clear(self, user_id: Optional[str], quiz_id: Optional[str]) -> None:
        if not user_id or not quiz_id:
            return None
        await self._call("clear", lambda: self.redis.delete(self.key(user_id, quiz_id)))
        logger.debug("Progress cleared", user_id=user_id, quiz_id=quiz_id)
