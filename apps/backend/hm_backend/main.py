import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from hm_backend.api.routes import repositories, webhooks
from hm_backend.core.config import get_settings
from hm_backend.core.security import WEAK_SECRETS, InsecureSecretError

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

audit_logger = logging.getLogger("audit")
audit_handler = logging.StreamHandler()
audit_handler.setFormatter(logging.Formatter("%(message)s"))
audit_logger.handlers = [audit_handler]
audit_logger.propagate = False

logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting hubmirror API ({settings.environment})")
    yield
    logger.info("hubmirror API stopped")


app = FastAPI(
    title="hubmirror API",
    description="GitHub mirror with webhook ingestion and notification fan-out",
    version="0.1.0",
    lifespan=lifespan,
)

# Production refuses to start without a usable webhook secret
if settings.environment == "production":
    if not settings.github_webhook_secret or settings.github_webhook_secret in WEAK_SECRETS:
        raise InsecureSecretError("GITHUB_WEBHOOK_SECRET must be set to a strong value in production")
    if not settings.cors_origins:
        raise ValueError("CORS_ORIGINS must be configured in production")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins.split(",") if settings.cors_origins else ["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=86400,
)


@app.get("/health")
async def health_check():
    return {"status": "ok"}


app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
app.include_router(repositories.router, prefix="/repositories", tags=["repositories"])
