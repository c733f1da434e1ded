"""
Authentication router for dashboard operator sessions.
"""

import hmac
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from config import settings
from routers.auth_scope import AuthContext, get_auth_context
from services.session_token import DEFAULT_SCOPES, create_session_token

router = APIRouter()


class CreateSessionRequest(BaseModel):
    api_key: str
    operator_id: str = Field(min_length=1, max_length=200)
    scopes: Optional[List[str]] = None


class CreateSessionResponse(BaseModel):
    operator_id: str
    session_token: str
    session_expires_at: int
    scopes: List[str]


class CurrentOperatorResponse(BaseModel):
    operator_id: str
    scopes: List[str]


@router.post("/session", response_model=CreateSessionResponse)
async def create_session(request: CreateSessionRequest):
    """Exchange the dashboard API key for a scoped Bearer session token."""
    expected = (settings.DASHBOARD_API_KEY or "").strip()
    if not expected:
        raise HTTPException(status_code=503, detail="DASHBOARD_API_KEY is not configured")
    if not hmac.compare_digest(request.api_key.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Invalid API key")

    scopes = list(request.scopes) if request.scopes is not None else list(DEFAULT_SCOPES)
    if not scopes:
        raise HTTPException(status_code=400, detail="At least one scope is required")
    unknown = sorted(set(scopes) - set(DEFAULT_SCOPES))
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unknown scopes: {', '.join(unknown)}")

    session = create_session_token(request.operator_id, scopes=scopes)
    return CreateSessionResponse(
        operator_id=request.operator_id,
        session_token=session["token"],
        session_expires_at=session["expires_at"],
        scopes=sorted(set(scopes)),
    )


@router.get("/me", response_model=CurrentOperatorResponse)
async def get_current_operator(auth: AuthContext = Depends(get_auth_context)):
    return CurrentOperatorResponse(operator_id=auth.operator_id, scopes=auth.scopes)
