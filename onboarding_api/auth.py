import time
from typing import Any, Dict

import jwt
import requests
from fastapi import Depends, HTTPException, Request, status

from .deps import get_settings
from .settings import Settings

_OIDC_CACHE: Dict[str, Any] = {
    "jwks_uri_by_issuer": {},
    "expires_at_by_issuer": {},
}


def _jwks_uri(issuer: str, force: bool = False) -> str:
    cache_key = issuer.rstrip("/")
    now = int(time.time())
    cached = _OIDC_CACHE["jwks_uri_by_issuer"].get(cache_key)
    if not force and cached and now < int(_OIDC_CACHE["expires_at_by_issuer"].get(cache_key, 0)):
        return cached
    discovery = requests.get(f"{cache_key}/.well-known/openid-configuration", timeout=10)
    discovery.raise_for_status()
    jwks_uri = discovery.json().get("jwks_uri")
    if not jwks_uri:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="OIDC discovery missing jwks_uri")
    _OIDC_CACHE["jwks_uri_by_issuer"][cache_key] = jwks_uri
    _OIDC_CACHE["expires_at_by_issuer"][cache_key] = now + 3600
    return jwks_uri


def _verify_client(claims: Dict[str, Any], client_id: str) -> Dict[str, Any]:
    token_use = claims.get("token_use")
    if token_use == "id":
        audience = claims.get("aud")
        audiences = audience if isinstance(audience, list) else [audience]
        if client_id not in audiences:
            raise jwt.InvalidAudienceError("Token audience mismatch")
    elif token_use == "access":
        if claims.get("client_id") != client_id:
            raise jwt.InvalidAudienceError("Token client mismatch")
    else:
        raise jwt.InvalidTokenError("Unsupported token_use")
    return claims


def _decode_user_pool_token(token: str, settings: Settings) -> Dict[str, Any]:
    issuer = settings.cognito_issuer
    client_id = settings.cognito_app_client_id
    if not issuer or not client_id:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Missing required environment variable: COGNITO_USER_POOL_ID / COGNITO_APP_CLIENT_ID",
        )
    try:
        signing_key = jwt.PyJWKClient(_jwks_uri(issuer)).get_signing_key_from_jwt(token)
    except jwt.PyJWKClientError:
        # Rotated signing key; refresh discovery/JWKS and retry once.
        signing_key = jwt.PyJWKClient(_jwks_uri(issuer, force=True)).get_signing_key_from_jwt(token)
    claims = jwt.decode(
        token,
        signing_key.key,
        algorithms=["RS256"],
        issuer=issuer,
        options={"verify_aud": False},
    )
    return _verify_client(claims, client_id)


def decode_token(token: str, settings: Settings) -> Dict[str, Any]:
    if settings.auth_enabled:
        claims = _decode_user_pool_token(token, settings)
    else:
        if not settings.jwt_secret:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Missing required environment variable: ONBOARDING_JWT_SECRET",
            )
        claims = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
        )
    if claims.get("roles") is None:
        claims["roles"] = list(claims.get("cognito:groups") or [])
    return claims


def caller_identity(claims: Dict[str, Any]) -> str:
    return str(claims.get("email") or claims.get("username") or claims.get("cognito:username") or claims.get("sub") or "")


def require_user(request: Request, settings: Settings = Depends(get_settings)) -> Dict[str, Any]:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
        )
    token = auth_header.replace("Bearer ", "", 1).strip()
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
        )
    try:
        claims = decode_token(token, settings)
    except (jwt.PyJWTError, requests.RequestException) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {exc.__class__.__name__}",
        ) from exc
    request.state.user = claims
    return claims
