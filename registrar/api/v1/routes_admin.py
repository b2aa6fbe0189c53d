from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from registrar.api.deps import AuthDependency, PipelineDependency
from registrar.core.config import Settings, get_settings
from registrar.ingest.thumbnails import ffmpeg_available

from .schemas import EnvCheckResponse


router = APIRouter(prefix="/admin", tags=["admin"])


class DevTokenRequest(BaseModel):
    scopes: list[str] = Field(default_factory=lambda: ["studio"])
    user_id: str | None = Field(default=None, examples=["curator-1"])


class DevTokenResponse(BaseModel):
    token: str


@router.get("/env-check", response_model=EnvCheckResponse, summary="Report toolchain and provider configuration")
async def env_check(context: AuthDependency, pipeline: PipelineDependency) -> EnvCheckResponse:
    settings = pipeline.settings
    return EnvCheckResponse(
        ffmpeg=ffmpeg_available(),
        storage_configured=settings.storage_configured,
        classifier_configured=settings.classifier_configured,
        storage_backend=settings.storage_backend,
        classifier_backend=settings.classifier_backend,
    )


@router.post("/dev-token", response_model=DevTokenResponse, summary="Mint development JWT")
async def mint_dev_token(payload: DevTokenRequest, settings: Settings = Depends(get_settings)) -> DevTokenResponse:
    if settings.environment_lower not in {"development", "dev", "test"}:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="dev_token_disabled")

    issued_at = datetime.now(timezone.utc)
    expires_at = issued_at + timedelta(hours=1)
    claims: dict[str, object] = {
        "scopes": payload.scopes,
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    if payload.user_id:
        claims["sub"] = payload.user_id
    if settings.jwt_issuer:
        claims["iss"] = settings.jwt_issuer
    if settings.jwt_audience:
        claims["aud"] = settings.jwt_audience

    token = jwt.encode(claims, settings.secrets.jwt_secret, algorithm=settings.jwt_algorithm)
    return DevTokenResponse(token=token)


__all__ = ["router"]
