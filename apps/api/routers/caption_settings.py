"""Caption generation settings shared by every video."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from multimodal.models import CaptionSettingsModel
from routers.auth_scope import AuthContext, require_scope
from services.captions import load_caption_settings, save_caption_settings
from services.connectors import SUPPORTED_PLATFORMS

router = APIRouter()


@router.get("/captions", response_model=CaptionSettingsModel)
async def get_caption_settings(
    auth: AuthContext = Depends(require_scope("videos")),
    db: AsyncSession = Depends(get_db),
):
    return await load_caption_settings(db)


@router.put("/captions", response_model=CaptionSettingsModel)
async def update_caption_settings(
    payload: CaptionSettingsModel,
    auth: AuthContext = Depends(require_scope("videos")),
    db: AsyncSession = Depends(get_db),
):
    unknown = sorted(
        (set(payload.platform_prompts) | set(payload.max_length) | set(payload.hashtag_count))
        - set(SUPPORTED_PLATFORMS)
    )
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unsupported platforms: {', '.join(unknown)}")
    if any(value <= 0 for value in payload.max_length.values()):
        raise HTTPException(status_code=400, detail="max_length values must be positive")
    if any(value < 0 for value in payload.hashtag_count.values()):
        raise HTTPException(status_code=400, detail="hashtag_count values must not be negative")
    return await save_caption_settings(db, payload)
