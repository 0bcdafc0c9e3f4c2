"""Main FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from podlearn.api import health, quizzes, transcripts
from podlearn.config import get_settings
from podlearn.core.errors import register_exception_handlers
from podlearn.db.session import init_db
from podlearn.middleware.rate_limit import limiter

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    logger.info("Starting podlearn server...")
    logger.info(
        f"Upstreams: transcription configured={settings.transcription_configured}, "
        f"llm configured={settings.llm_configured}"
    )

    if settings.app_env == "development":
        try:
            await init_db()
            logger.info("Database initialized successfully")
        except Exception as e:
            logger.error(f"Database initialization failed: {e}")
            raise

    logger.info("Podlearn server started successfully")

    yield

    # Shutdown
    logger.info("Shutting down podlearn server...")


# Create FastAPI app
app = FastAPI(
    title="Podlearn Server",
    description="""
## Podcast transcripts and quizzes

- **Transcripts**: stream an episode's transcript as server-sent events, with
  diarized speakers named by an LLM
- **Quizzes**: generated questions per episode, graded answers and session progress

### Authentication
All transcript and quiz endpoints require a bearer access token:
```
Authorization: Bearer <jwt>
```

### Rate Limiting
Quiz creation and transcript streaming are rate-limited per user.
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

# Include routers
app.include_router(health.router)
app.include_router(transcripts.router)
app.include_router(quizzes.router)


# Root endpoint
@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with service info."""
    return {
        "service": "Podlearn Server",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "podlearn.main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=settings.debug,
    )
