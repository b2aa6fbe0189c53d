from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import Settings, get_settings


security = HTTPBearer(auto_error=False)

STUDIO_SCOPES = frozenset({"studio", "admin"})


@dataclass(frozen=True)
class AuthContext:
    user_id: Optional[str] = None
    scopes: tuple[str, ...] = ()

    @property
    def is_admin(self) -> bool:
        return "admin" in self.scopes


def _decode_token(token: str, settings: Settings) -> dict:
    try:
        payload = jwt.decode(
            token,
            settings.secrets.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"verify_aud": settings.jwt_audience is not None},
        )
    except jwt.PyJWTError as exc:  # pragma: no cover - library handles message
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token") from exc
    return payload


async def get_auth_context(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    settings: Settings = Depends(get_settings),
) -> AuthContext:
    """Resolve the caller and require studio access, as every ingest and catalog route does."""
    if not credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing_authorization")

    payload = _decode_token(credentials.credentials, settings)
    scopes = tuple(payload.get("scopes") or [])
    if not STUDIO_SCOPES.intersection(scopes):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="studio_access_required")

    context = AuthContext(user_id=payload.get("sub") or payload.get("user_id"), scopes=scopes)
    request.state.auth = context
    return context


__all__ = ["AuthContext", "get_auth_context", "STUDIO_SCOPES"]
