"""Sprint Lifecycle - FastAPI application."""

import logging

from fastapi import FastAPI

from .api_v1 import router as api_v1_router
from .config import load_settings
from .database import close_db
from .health import router as health_router
from .notifications import close_dispatcher

logging.basicConfig(
    level=load_settings().log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Sprint Lifecycle")
app.include_router(health_router)
app.include_router(api_v1_router)


@app.on_event("shutdown")
async def shutdown_event():
    """Close the database connection and flush pending notifications."""
    close_dispatcher()
    close_db()
