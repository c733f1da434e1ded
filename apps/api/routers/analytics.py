"""
Analytics API router.

Dashboard summary over a time window and manual metric refresh.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from analysis.models import AnalyticsSummary, RankingKey
from config import settings
from routers.auth_scope import AuthContext, require_scope
from routers.rate_limit import rate_limit
from services.analytics import AnalyticsAggregator
from services.connectors import SUPPORTED_PLATFORMS

router = APIRouter()


class RefreshRequest(BaseModel):
    platform: Optional[str] = None
    force_refresh: bool = False


class RefreshResponse(BaseModel):
    reports: List[Dict[str, Any]]


def get_analytics_aggregator() -> AnalyticsAggregator:
    return AnalyticsAggregator()


def _platform_filter(platform: Optional[str]) -> Optional[str]:
    if platform is None:
        return None
    key = platform.strip().lower()
    if key not in SUPPORTED_PLATFORMS:
        raise HTTPException(status_code=400, detail=f"Unsupported platform: {platform}")
    return key


@router.get("/summary", response_model=AnalyticsSummary)
async def get_summary(
    days: int = Query(30, ge=1, le=365),
    platform: Optional[str] = None,
    refresh: bool = False,
    force_refresh: bool = False,
    rank_by: RankingKey = RankingKey.ENGAGEMENT,
    auth: AuthContext = Depends(require_scope("analytics")),
    aggregator: AnalyticsAggregator = Depends(get_analytics_aggregator),
):
    """
    Totals, per-platform breakdown and top posts for the last `days` days.

    With `refresh=true` metrics are pulled from the platforms first; posts
    younger than the minimum age are skipped unless `force_refresh=true`.
    """
    return await aggregator.summarize(
        days=days,
        platform=_platform_filter(platform),
        ranking=rank_by,
        refresh=refresh,
        force_refresh=force_refresh,
    )


@router.post(
    "/refresh",
    response_model=RefreshResponse,
    dependencies=[Depends(rate_limit("analytics_refresh", settings.ANALYTICS_REFRESH_RATE_LIMIT_PER_HOUR, 3600))],
)
async def refresh_analytics(
    request: RefreshRequest,
    auth: AuthContext = Depends(require_scope("analytics")),
    aggregator: AnalyticsAggregator = Depends(get_analytics_aggregator),
):
    platform = _platform_filter(request.platform)
    if platform:
        reports = [await aggregator.refresh_platform(platform, force_refresh=request.force_refresh)]
    else:
        reports = await aggregator.refresh_all(force_refresh=request.force_refresh)
    return RefreshResponse(reports=[report.to_dict() for report in reports])
