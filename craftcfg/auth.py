"""
auth.py – Vem laddar upp?

Identiteten blir nyckel för uppladdningskvoten och sparas på varje
uppladdningspost. AUTH_MODE väljer hur den tas fram:

  off      – ingen inloggning, alla blir "anonymous" och kvoten räknas per klientadress
  apikey   – X-API-Key mot CRAFTCFG_API_KEYS ("steve:nyckel1,alex:nyckel2";
             en nyckel utan ägare ger "anonymous")
  firebase – Firebase ID-token som Bearer

Okänt läge avvisas med 500 i stället för att släppa igenom anrop.
"""

import json
import logging
import os

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

logger = logging.getLogger("craftcfg.auth")

AUTH_MODE = os.getenv("AUTH_MODE", "off").lower()

ANONYMOUS = "anonymous"
UNAUTHORIZED = "unauthorized"


def _parse_api_keys(raw: str) -> dict[str, str]:
    keys: dict[str, str] = {}
    for entry in filter(None, (part.strip() for part in raw.split(","))):
        owner, sep, key = entry.partition(":")
        if sep:
            keys[key.strip()] = owner.strip()
        else:
            keys[entry] = ANONYMOUS
    return keys


_API_KEY_MAP = _parse_api_keys(os.getenv("CRAFTCFG_API_KEYS", ""))

_bearer_scheme = HTTPBearer(auto_error=False)


def _client_host(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _unauthorized(message: str) -> HTTPException:
    return HTTPException(status_code=401, detail={"reason": UNAUTHORIZED, "message": message})


def _firebase_app():
    """Initierar firebase_admin första gången, från fil, JSON-sträng eller miljön."""
    import firebase_admin
    from firebase_admin import credentials as fb_creds

    try:
        return firebase_admin.get_app()
    except ValueError:
        pass
    if creds_file := os.getenv("FIREBASE_CREDENTIALS_FILE"):
        return firebase_admin.initialize_app(fb_creds.Certificate(creds_file))
    if creds_json := os.getenv("FIREBASE_CREDENTIALS_JSON"):
        return firebase_admin.initialize_app(fb_creds.Certificate(json.loads(creds_json)))
    return firebase_admin.initialize_app()


async def _resolve_firebase_user(credentials: HTTPAuthorizationCredentials | None) -> str | None:
    if credentials is None or not credentials.credentials:
        return None
    try:
        from firebase_admin import auth as fb_auth

        decoded = fb_auth.verify_id_token(credentials.credentials, app=_firebase_app())
    except Exception as exc:
        logger.warning("Firebase token verification failed: %s", exc)
        return None
    return decoded.get("uid") or decoded.get("email")


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> str:
    if AUTH_MODE == "off":
        return ANONYMOUS

    if AUTH_MODE == "apikey":
        key = request.headers.get("X-API-Key", "").strip()
        user_id = _API_KEY_MAP.get(key) if key else None
        if user_id is None:
            logger.warning("Upload refused for %s: missing or unknown API key", _client_host(request))
            raise _unauthorized("Missing or invalid X-API-Key header")
        return user_id

    if AUTH_MODE == "firebase":
        user_id = await _resolve_firebase_user(credentials)
        if user_id is None:
            logger.warning("Upload refused for %s: invalid Firebase token", _client_host(request))
            raise _unauthorized("Missing or invalid Firebase ID token")
        return user_id

    logger.error("Unknown AUTH_MODE=%r, refusing all uploads", AUTH_MODE)
    raise HTTPException(status_code=500, detail=f"Unknown AUTH_MODE: {AUTH_MODE}")


def rate_limit_identity(user_id: str, request: Request) -> str:
    """Anonyma anrop begränsas per klientadress, inloggade per användare."""
    if user_id != ANONYMOUS:
        return f"user:{user_id}"
    return f"ip:{_client_host(request)}"
