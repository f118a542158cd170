import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Note: Using absolute imports for compatibility with pytest pythonpath config
# When running the API, use: cd apps/api && uvicorn main:app --reload
from config import get_settings
from guardrails.audit_logger import SecurityAuditLog, set_audit_log
from guardrails.moderation_stack import ModerationStack, set_moderation_stack
from guardrails.validate_input import InputValidator, set_input_validator
from middleware.rate_limit import ActiveDebateRegistry, MemoryRateLimitStore, RateLimiter, set_rate_limiter
from middleware.security_headers import SecurityHeadersMiddleware, allowed_origins
from routers import security
from services.abuse_store import AbuseStore, InMemoryAbuseStore, PostgresAbuseStore
from services.abuse_tracker import AbuseTracker, set_abuse_tracker

logger = logging.getLogger(__name__)


async def build_abuse_store() -> AbuseStore:
    """Postgres when DATABASE_URL is set, otherwise a process-local store."""
    settings = get_settings()
    if not settings.database_url:
        logger.warning("DATABASE_URL not set, abuse tracking is in-memory and lost on restart")
        return InMemoryAbuseStore()

    store = PostgresAbuseStore(settings.database_url)
    await asyncio.to_thread(store.ensure_tables_exist)
    return store


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Construct the process-wide security services and expose them on app.state."""
    # Startup
    logger.info("Starting Debate Lab Guard API...")

    rate_limiter = RateLimiter(MemoryRateLimitStore())
    audit_log = SecurityAuditLog()
    abuse_tracker = AbuseTracker(await build_abuse_store())
    moderation_stack = ModerationStack.from_settings()
    input_validator = InputValidator(
        moderation_stack=moderation_stack,
        abuse_tracker=abuse_tracker,
        audit_log=audit_log,
    )

    app.state.rate_limiter = rate_limiter
    app.state.active_debates = ActiveDebateRegistry()
    app.state.audit_log = audit_log
    app.state.abuse_tracker = abuse_tracker
    app.state.moderation_stack = moderation_stack
    app.state.input_validator = input_validator

    # Module-level helpers share the same instances
    set_rate_limiter(rate_limiter)
    set_audit_log(audit_log)
    set_abuse_tracker(abuse_tracker)
    set_moderation_stack(moderation_stack)
    set_input_validator(input_validator)

    logger.info("API ready to accept requests")

    yield  # Application runs here

    # Shutdown
    logger.info("Shutting down Debate Lab Guard API...")
    set_input_validator(None)
    set_moderation_stack(None)
    set_abuse_tracker(None)
    set_audit_log(None)
    set_rate_limiter(None)
    logger.info("API shutdown complete")


app = FastAPI(
    title="Debate Lab Guard API",
    description="Content moderation and abuse prevention for debate creation",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins(),
    allow_origin_regex=r"https://.*\.vercel\.app",
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With", "X-Admin-Token", "X-Session-ID"],
    max_age=86400,
)

# Include routers
app.include_router(security.router)


@app.get("/")
async def root() -> dict[str, str]:
    return {"message": "Debate Lab Guard API"}


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "healthy"}
