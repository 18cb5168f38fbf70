import asyncio
import signal
from contextlib import asynccontextmanager
from fastapi import FastAPI
import uvicorn
from src.core.logger import logger, setup_logger
from src.config import settings
from src.api import router, monitor
from src.connectors.kraken_rest import KrakenTickerClient
from src.core.presenter import ConsoleTablePresenter
from src.core.scheduler import WindowScheduler
from src.core.sink import CsvBarSink

def build_scheduler() -> WindowScheduler:
    return WindowScheduler(
        price_source=KrakenTickerClient(),
        sink=CsvBarSink(settings.BARS_CSV_PATH),
        presenter=ConsoleTablePresenter() if settings.RUN_MODE == "CONSOLE" else None,
    )

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    setup_logger(level=settings.LOG_LEVEL, error_log_path=settings.ERROR_LOG_PATH)
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}", extra={"mode": settings.RUN_MODE})

    if not settings.has_credentials:
        logger.warning("Kraken API credentials not found. Continuing with public data only.")

    scheduler = build_scheduler()
    monitor.set_scheduler(scheduler)
    await scheduler.start()

    yield

    # Shutdown
    logger.info("Shutting down gracefully...")
    await scheduler.stop()
    await scheduler.price_source.close()
    logger.info(f"{settings.APP_NAME} Shutdown Complete")

app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)
app.include_router(router)

async def main():
    if settings.RUN_MODE == "API":
        # uvicorn drives the lifespan and handles the signals itself
        config = uvicorn.Config(app, host=settings.API_HOST, port=settings.API_PORT, log_level=settings.LOG_LEVEL.lower())
        await uvicorn.Server(config).serve()
        return

    # Keep the app running
    stop_event = asyncio.Event()

    def handle_signal():
        stop_event.set()

    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, handle_signal)
    loop.add_signal_handler(signal.SIGTERM, handle_signal)

    print("Starting Crypto Trading Monitor with Kraken...")
    print("Press Ctrl+C to stop\n")

    async with lifespan(app):
        await stop_event.wait()
        logger.info("Shutdown signal received")

if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
