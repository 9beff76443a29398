from dataclasses import dataclass
from typing import Any

import jwt
from fastapi import Depends, Header, HTTPException, status
from jwt import PyJWKClient
from jwt.exceptions import InvalidTokenError, PyJWKClientError

from herald.core.settings import get_settings

ADMIN_ROLES = {"admin", "super_admin"}


@dataclass(frozen=True)
class VerifiedSupabaseAuth:
    access_token: str
    claims: dict[str, Any]


@dataclass(frozen=True)
class AdminActor:
    user_id: str
    role: str


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized",
        headers={"WWW-Authenticate": "Bearer"},
    )


def _extract_bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise _unauthorized()

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _unauthorized()

    return token.strip()


def _decode_supabase_token(token: str) -> dict[str, Any]:
    settings = get_settings()

    try:
        signing_key = PyJWKClient(settings.SUPABASE_JWKS_URL).get_signing_key_from_jwt(token).key
        decoded = jwt.decode(
            token,
            signing_key,
            algorithms=["RS256", "ES256"],
            issuer=settings.SUPABASE_ISSUER,
            options={"verify_aud": False},
        )
        if not isinstance(decoded, dict):
            raise _unauthorized()
        return decoded
    except HTTPException:
        raise
    except (InvalidTokenError, PyJWKClientError, ValueError):
        raise _unauthorized() from None


def verify_supabase_auth(authorization: str | None = Header(default=None)) -> VerifiedSupabaseAuth:
    token = _extract_bearer_token(authorization)
    return VerifiedSupabaseAuth(access_token=token, claims=_decode_supabase_token(token))


def admin_actor_from_claims(claims: dict[str, Any]) -> AdminActor | None:
    sub = claims.get("sub")
    if not isinstance(sub, str) or not sub.strip():
        return None
    app_metadata = claims.get("app_metadata")
    if not isinstance(app_metadata, dict):
        return None
    role = str(app_metadata.get("role") or "").strip().lower()
    if role in ADMIN_ROLES:
        return AdminActor(user_id=sub.strip(), role=role)
    if app_metadata.get("super_admin") is True:
        return AdminActor(user_id=sub.strip(), role="super_admin")
    return None


def require_admin(auth: VerifiedSupabaseAuth = Depends(verify_supabase_auth)) -> AdminActor:
    sub = auth.claims.get("sub")
    if not isinstance(sub, str) or not sub.strip():
        raise _unauthorized()
    actor = admin_actor_from_claims(auth.claims)
    if actor is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    return actor
