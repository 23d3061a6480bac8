from core.config import settings
from core.logger import logger
from services.session_registry import session_registry


async def monitor_sessions():
    """
    Periodic job: drop hosted sessions nobody touched for a while.
    Progress of those sessions is already in Redis, so the learner can resume.
    """
    logger.debug("Starting session monitor scan...", live=len(session_registry))
    evicted = session_registry.evict_idle(settings.SESSION_IDLE_TIMEOUT_SECONDS)
    logger.debug("Session monitor scan completed.", evicted=evicted, live=len(session_registry))
    return evicted
