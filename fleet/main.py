import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from fleet.api import router as api_router
from fleet.config import settings
from fleet.controller import FleetController
from fleet.logging_config import setup_logging
from fleet.metrics import MetricsMiddleware

logger = logging.getLogger(__name__)


def create_app(controller: FleetController | None = None, run_loops: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        logger.info(f"Starting fleet controller for {settings.SERVICE_NAME}")
        app.state.controller = controller or FleetController(settings)
        await app.state.controller.start(run_loops=run_loops)
        yield
        logger.info("Fleet controller shutting down")
        await app.state.controller.stop()

    app = FastAPI(title="Fleet Controller", version="1.0.0", lifespan=lifespan)
    app.add_middleware(MetricsMiddleware)
    app.include_router(api_router)
    return app


app = create_app()


def main() -> None:
    uvicorn.run("fleet.main:app", host=settings.HOST, port=settings.PORT, log_config=None)


if __name__ == "__main__":
    main()
