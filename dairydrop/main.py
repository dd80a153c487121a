# dairydrop/main.py

from contextlib import asynccontextmanager
import logging

from fastapi.middleware.cors import CORSMiddleware
from fastapi import FastAPI

from dairydrop.core.config import get_settings
from dairydrop.database import create_db_and_tables

# Import models so SQLModel metadata is populated before create_all()
from dairydrop.models import user as _user_models  # noqa: F401
from dairydrop.models import product as _product_models  # noqa: F401
from dairydrop.models import order as _order_models  # noqa: F401
from dairydrop.models import refund as _refund_models  # noqa: F401
from dairydrop.models import notification as _notification_models  # noqa: F401

# Routers
from dairydrop.routers.orders import router as orders_router
from dairydrop.routers.refunds import router as refunds_router
from dairydrop.routers.notifications import router as notifications_router

settings = get_settings()

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("uvicorn")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
      - Verify DB connectivity and create tables.
    """
    logger.info("Startup: connecting to database...")
    try:
        create_db_and_tables()
        logger.info("Startup: DB connection OK, tables verified.")
    except Exception as e:
        logger.error("Startup: DB connection FAILED: %s", e)
        raise
    yield


app = FastAPI(
    title=settings.PROJECT_NAME,
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Versioned API prefix, e.g. /api/v1
app.include_router(orders_router, prefix=settings.API_V1_STR)
app.include_router(refunds_router, prefix=settings.API_V1_STR)
app.include_router(notifications_router, prefix=settings.API_V1_STR)


@app.get("/")
def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "dairydrop-backend"}
