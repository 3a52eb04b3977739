"""FastAPI application setup."""

import logging

from fastapi import FastAPI
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from wealthsync.db.database import init_db
from wealthsync.api.routes import brokers, portfolio
from wealthsync.api.routes.brokers import limiter
from wealthsync.config import PRODUCT_NAME, PRODUCT_TAGLINE, PRODUCT_VERSION, PRODUCT_DESCRIPTION
from wealthsync.core.brokers.runtime import get_runtime

logger = logging.getLogger(__name__)

app = FastAPI(
    title=f"{PRODUCT_NAME} API",
    description=PRODUCT_DESCRIPTION,
    version=PRODUCT_VERSION,
)

# Add rate limiter to app state
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.on_event("startup")
def startup():
    """Initialize database on startup."""
    init_db()


@app.on_event("shutdown")
def shutdown():
    """Remove leftover MitID work directories."""
    get_runtime().shutdown()
    logger.info("Broker runtime shut down")


@app.get("/api/health")
def health():
    """Health check endpoint."""
    return {
        "name": PRODUCT_NAME,
        "version": PRODUCT_VERSION,
        "status": "ok",
        "tagline": PRODUCT_TAGLINE,
    }


# Mount API routers
app.include_router(portfolio.router, prefix="/api/portfolio", tags=["portfolio"])
app.include_router(brokers.router, prefix="/api", tags=["brokers"])
