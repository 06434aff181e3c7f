import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .db import AsyncSessionLocal
from .deps import get_settings
from .generation import TogetherClient
from .jobs.scheduler import PipelineScheduler
from .routers import derivatives, ingest, readings
from .storage import PinataClient

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


app = FastAPI(title="AQI Ledger")

origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(ingest.router)
app.include_router(readings.router)
app.include_router(derivatives.router)


@app.on_event("startup")
async def _on_startup() -> None:
    # a ConfigurationError here aborts startup
    settings = get_settings()
    configure_logging(settings.log_level)

    app.state.scheduler = None
    if not settings.scheduler_enabled:
        logger.info("Pipeline scheduler disabled")
        return

    scheduler = PipelineScheduler(
        settings,
        AsyncSessionLocal,
        PinataClient.from_settings(settings),
        TogetherClient.from_settings(settings),
    )
    scheduler.start()
    app.state.scheduler = scheduler


@app.on_event("shutdown")
async def _on_shutdown() -> None:
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler is not None:
        await scheduler.stop()
        app.state.scheduler = None


@app.get("/health")
def health():
    scheduler = getattr(app.state, "scheduler", None)
    return {"ok": True, "scheduler": bool(scheduler and scheduler.running)}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("aqiledger.main:app", host="0.0.0.0", port=8000, reload=True)
