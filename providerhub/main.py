import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

# Load env from providerhub/.env (settings also reads ./.env)
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

from providerhub.core.config import settings, validate_config
from providerhub.core.logging import configure_logging
from providerhub.core.middleware.request_id import RequestIdMiddleware
from providerhub.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from providerhub.core.database import dispose_engine
from providerhub.api import billing, health, realtime, relationships

configure_logging(settings.ENV)
validate_config(strict=settings.CONFIG_STRICT)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("providerhub")
    logger.info("Starting ProviderHub backend...")
    try:
        yield
    finally:
        dispose_engine()
        logger.info("Stopping ProviderHub backend...")


app = FastAPI(title="ProviderHub - Backend", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.APP_BASE_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(billing.router, prefix="/api", tags=["billing"])
app.include_router(relationships.router, prefix="/api", tags=["relationships"])
app.include_router(realtime.router, tags=["realtime"])
app.include_router(health.router, tags=["health"])
