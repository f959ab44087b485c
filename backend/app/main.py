import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.shared.core.config import settings
from app.shared.core.logging import setup_logging
from app.shared.middleware.correlation import CorrelationIdMiddleware
from app.shared.utils.http_client import startup_http_client, shutdown_http_client
from app.modules.evolution.api import router as evolution_router, webhook_router

setup_logging(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Pooled HTTP client shared by the provider gateway and the automation relay
    await startup_http_client()
    yield
    await shutdown_http_client()


app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)

# Correlation ID on every request (X-Request-ID)
app.add_middleware(CorrelationIdMiddleware)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in settings.CORS_ORIGIN.split(",") if origin.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Instances & messages
app.include_router(evolution_router, prefix=f"{settings.API_PREFIX}/evolution")

# Provider webhook ingress
app.include_router(webhook_router, prefix=f"{settings.API_PREFIX}/webhooks/evolution", tags=["Evolution Webhooks"])


@app.get("/")
def root():
    return {"message": f"{settings.PROJECT_NAME} API is running"}
