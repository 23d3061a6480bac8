import asyncio
from typing import Dict, Optional

from core.logger import logger
from services.session_service import QuizSessionController
from utils.clock import now_ms


class SessionRegistry:
    """Live quiz sessions hosted by this process, plus their update listeners."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(SessionRegistry, cls).__new__(cls)
            cls._instance._sessions = {}
            cls._instance._listeners = {}
        return cls._instance

    def register(self, controller: QuizSessionController, listener: Optional[asyncio.Task] = None):
        """Register a session, replacing any live session of the same user for the same quiz."""
        if controller.user_id and controller.quiz.id:
            for existing in list(self._sessions.values()):
                if existing.user_id == controller.user_id and existing.quiz.id == controller.quiz.id:
                    self.remove(existing.session_id)

        self._sessions[controller.session_id] = controller
        if listener is not None:
            self._listeners[controller.session_id] = listener
            listener.add_done_callback(lambda t: self._cleanup_listener(controller.session_id, t))
        logger.debug("Session registered", session_id=controller.session_id, user_id=controller.user_id)

    def get(self, session_id: str) -> Optional[QuizSessionController]:
        return self._sessions.get(session_id)

    def remove(self, session_id: str):
        """Drop a session and cancel its update listener if it is still running."""
        self._sessions.pop(session_id, None)
        task = self._listeners.pop(session_id, None)
        if task and not task.done():
            task.cancel()
            logger.debug("Cancelled update listener", session_id=session_id)

    def _cleanup_listener(self, session_id: str, task: asyncio.Task):
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Quiz update listener stopped", session_id=session_id, error=repr(task.exception()))
        if self._listeners.get(session_id) is task:
            del self._listeners[session_id]

    def evict_idle(self, max_idle_seconds: int, now: Optional[int] = None) -> int:
        now = now if now is not None else now_ms()
        threshold = now - max_idle_seconds * 1000
        idle = [sid for sid, c in self._sessions.items() if c.last_activity < threshold]
        for sid in idle:
            self.remove(sid)
        if idle:
            logger.info("Evicted idle sessions", count=len(idle), remaining=len(self._sessions))
        return len(idle)

    def __len__(self) -> int:
        return len(self._sessions)

    def clear(self):
        for sid in list(self._sessions):
            self.remove(sid)

session_registry = SessionRegistry()
