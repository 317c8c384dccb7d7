from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging

from lanbeacon import config
from lanbeacon.routers import system
from lanbeacon.services.discovery import BroadcastScheduler

logger = logging.getLogger("lanbeacon")


def _startup_tasks():
    if not config.DISCOVERY_ENABLED:
        logger.info("UDP discovery disabled (DISCOVERY_ENABLED=false)")
        return

    # Resolution and bind errors are fatal and abort startup
    scheduler = BroadcastScheduler(config.load_session_config(advertise_port=config.HTTP_PORT))
    scheduler.start()
    system.scheduler = scheduler


def _shutdown_tasks():
    if system.scheduler is not None:
        system.scheduler.stop()
        system.scheduler = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    _startup_tasks()
    try:
        yield
    finally:
        _shutdown_tasks()


app = FastAPI(title="LAN Beacon", version=config.VERSION, lifespan=lifespan)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(system.router, prefix="/api/system", tags=["system"])


@app.get("/")
@app.get("/health")
def health_check():
    return {
        "status": "healthy",
        "service": config.DISCOVERY_SERVICE_NAME,
        "version": config.VERSION,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("lanbeacon.main:app", host="0.0.0.0", port=config.HTTP_PORT, reload=False,
                log_level=config.LOG_LEVEL)
