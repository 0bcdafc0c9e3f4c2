"""Health check routes."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from podlearn.config import get_settings
from podlearn.db.session import get_db
from podlearn.schemas.schemas import HealthResponse

router = APIRouter(tags=["System"])

settings = get_settings()
logger = logging.getLogger(__name__)

VERSION = "1.0.0"


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health status of the service and its dependencies.",
)
async def health_check(db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.

    Returns the status of:
    - API server
    - Database connection
    - Speech-to-text and LLM credentials
    """
    db_status = "ok"
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.warning(f"Health check database probe failed: {e}")
        db_status = "error"

    transcription_status = "configured" if settings.transcription_configured else "missing"
    llm_status = "configured" if settings.llm_configured else "missing"

    overall_status = "healthy"
    if db_status == "error" or "missing" in (transcription_status, llm_status):
        overall_status = "degraded"

    return HealthResponse(
        status=overall_status,
        version=VERSION,
        database=db_status,
        transcription=transcription_status,
        llm=llm_status,
    )
