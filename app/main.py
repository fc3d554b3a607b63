# app/main.py
from fastapi import FastAPI
from app.core.config import settings
from app.api.endpoints import proxy, wallet, resources
import logging

# Configure basic logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json" # Standard location for OpenAPI spec
)

# Include the API router(s)
# The prefix ensures all routes start with /api/v1
app.include_router(proxy.router, prefix=f"{settings.API_V1_STR}", tags=["proxy"])
app.include_router(wallet.router, prefix=f"{settings.API_V1_STR}", tags=["wallet"])
app.include_router(resources.router, prefix=f"{settings.API_V1_STR}", tags=["resources"])

@app.get("/", summary="Health Check", tags=["default"])
def read_root():
    """ Basic health check endpoint. """
    logger.info("Root endpoint '/' accessed.")
    return {"status": "ok", "message": f"Welcome to {settings.PROJECT_NAME}"}

# TODO: Add CORS middleware once the browser frontend is served from a separate domain
