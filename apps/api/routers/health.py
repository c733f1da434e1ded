"""
Health probes for the API, its storage and the background worker queues.
"""

from typing import Dict, List

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings
from database import engine
from services.pipeline_queue import ANALYTICS_QUEUE_NAME, PIPELINE_QUEUE_NAME

router = APIRouter()

# RQ keeps each queue's pending job ids in this list
RQ_QUEUE_KEY = "rq:queue:{name}"


async def _check_database() -> str:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        return f"down: {e}"
    return "up"


async def _check_redis() -> Dict[str, object]:
    client = redis.from_url(settings.REDIS_URL)
    try:
        await client.ping()
        backlog = {
            name: int(await client.llen(RQ_QUEUE_KEY.format(name=name)))
            for name in (PIPELINE_QUEUE_NAME, ANALYTICS_QUEUE_NAME)
        }
    except Exception as e:
        return {"status": f"down: {e}", "queues": {}}
    finally:
        await client.aclose()
    return {"status": "up", "queues": backlog}


def _missing_publishing_config() -> List[str]:
    required = {
        "FACEBOOK_APP_ID": settings.FACEBOOK_APP_ID,
        "FACEBOOK_APP_SECRET": settings.FACEBOOK_APP_SECRET,
        "OPENAI_API_KEY": settings.OPENAI_API_KEY,
    }
    return [name for name, value in required.items() if not value]


@router.get("/health")
async def health_check():
    """
    Database, Redis and queue backlog status.

    `degraded` means the API answers but background steps cannot run.
    """
    database = await _check_database()
    redis_report = await _check_redis()
    missing = _missing_publishing_config()
    healthy = database == "up" and redis_report["status"] == "up"
    return {
        "status": "healthy" if healthy else "degraded",
        "api": "up",
        "database": database,
        "redis": redis_report["status"],
        "queues": redis_report["queues"],
        "configuration": "complete" if not missing else f"missing: {', '.join(missing)}",
    }


@router.get("/health/ready")
async def readiness_check():
    """Publishing needs the Meta app and captions need OpenAI."""
    missing = _missing_publishing_config()
    if missing:
        return JSONResponse(status_code=503, content={"ready": False, "missing": missing})
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
