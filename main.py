import asyncio
import sys

import uvicorn
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from core.config import settings
from core.logger import setup_logging, logger
from services.monitoring_service import monitor_sessions


async def start_api(host: str = "0.0.0.0", port: int = 8000):
    from api.main import app
    config = uvicorn.Config(app, host=host, port=port, log_level="debug" if settings.DEBUG else "info")
    server = uvicorn.Server(config)
    await server.serve()


async def main():
    port = 8000
    if len(sys.argv) > 1 and sys.argv[1].isdigit():
        port = int(sys.argv[1])

    # Setup structured logging
    setup_logging()

    # Idle hosted sessions are evicted periodically; their progress stays in Redis
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        monitor_sessions,
        trigger="interval",
        seconds=settings.SESSION_MONITOR_INTERVAL_SECONDS,
        id="session_monitor",
        replace_existing=True
    )
    scheduler.start()
    logger.info("Scheduler started (Session Monitor).")

    logger.info("Starting StudyQuiz API...", env=settings.ENV, port=port)
    try:
        await start_api(port=port)
    finally:
        scheduler.shutdown(wait=False)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        logger.info("Application stopped.")
