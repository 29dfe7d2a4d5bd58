# storefront/main.py
from contextlib import asynccontextmanager
import logging

from fastapi.middleware.cors import CORSMiddleware
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from storefront.core.config import get_settings
from storefront.core.errors import ERROR_STATUS_CODES, StorefrontError
from storefront.database import create_db_and_tables

# Import models so SQLModel metadata is populated before create_all()
from storefront.models import user as _user_models  # noqa: F401
from storefront.models import catalog as _catalog_models  # noqa: F401
from storefront.models import cart as _cart_models  # noqa: F401
from storefront.models import checkout as _checkout_models  # noqa: F401
from storefront.models import order as _order_models  # noqa: F401
from storefront.models import payment as _payment_models  # noqa: F401

# Routers
from storefront.routers.cart import router as cart_router
from storefront.routers.checkout import router as checkout_router
from storefront.routers.orders import router as orders_router
from storefront.routers.payments import router as payments_router

settings = get_settings()

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("uvicorn")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
      - Verify DB connectivity and create tables.

    Shutdown:
      - No special cleanup needed for sync engine.
    """
    logger.info("Startup: connecting to database...")
    try:
        create_db_and_tables()
        logger.info("Startup: DB connection OK, tables verified.")
    except Exception as e:
        logger.error(f"Startup: DB connection FAILED: {e}")
        raise
    yield


app = FastAPI(
    title=settings.PROJECT_NAME or "Hearthwood Storefront API",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError):
    """Map the error taxonomy to HTTP responses."""
    status_code = ERROR_STATUS_CODES.get(exc.kind, 400)
    if status_code >= 500:
        logger.error(f"{exc.kind} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "error_type": exc.kind, **exc.extra},
    )


# --- CORS configuration ---
origins = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://0.0.0.0:3000",
    "http://[::1]:3000",
    "http://localhost:3001",  # optional alternate port if needed
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Versioned API prefix, e.g. /api/v1
app.include_router(cart_router, prefix=settings.API_V1_STR)
app.include_router(checkout_router, prefix=settings.API_V1_STR)
app.include_router(orders_router, prefix=settings.API_V1_STR)
app.include_router(payments_router, prefix=settings.API_V1_STR)


@app.get("/")
def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "hearthwood-storefront"}
