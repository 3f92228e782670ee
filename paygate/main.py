import logging
import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from starlette.exceptions import HTTPException
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

# Load env from paygate/.env (tests configure the environment themselves)
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

from paygate.core.config import settings, validate_config
from paygate.core.database import create_all_tables, get_database_url
from paygate.core.logging import configure_logging
from paygate.core.middleware.request_id import RequestIdMiddleware
from paygate.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from paygate.api import access, billing, entitlements, health

configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("paygate")
    logger.info("Starting paygate...")
    app.state.startup_time = time.time()
    if get_database_url():
        create_all_tables()
    try:
        yield
    finally:
        logging.getLogger("paygate").info("Stopping paygate...")


app = FastAPI(title="paygate - entitlements & billing", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(health.root_router)
app.include_router(entitlements.router)
app.include_router(billing.router)
app.include_router(access.router)
