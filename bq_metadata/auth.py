"""
Session resolution and optional authentication for BigQuery Metadata API
Binds uploaded credentials either to the signed session cookie or to a verified Firebase user
"""

import json
import threading
from typing import Any, Dict, Optional

import firebase_admin
import structlog
from cachetools import TTLCache
from fastapi import Request
from fastapi.responses import JSONResponse
from firebase_admin import auth as firebase_auth, credentials
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

from .config import Settings
from .credentials import Session
from .exceptions import (
    AuthenticationError,
    InvalidTokenError,
    MissingTokenError,
)

logger = structlog.get_logger()

# Verified users keyed by ID token (5 minute TTL, max 1000 entries)
user_cache = TTLCache(maxsize=1000, ttl=300)


class UserInfo:
    """Verified identity of the caller"""

    def __init__(self, uid: str, email: Optional[str]):
        self.uid = uid
        self.email = email


class PrincipalSessionRegistry:
    """
    Server-side session mappings keyed by authenticated user ID.

    With authentication enabled the credential store gets one of these mappings
    instead of the cookie session, so an uploaded key belongs to exactly one user.
    """

    def __init__(self):
        self._sessions: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def for_principal(self, uid: str) -> Dict[str, Any]:
        with self._lock:
            return self._sessions.setdefault(uid, {})

    def __len__(self) -> int:
        return len(self._sessions)


def init_firebase(settings: Settings) -> None:
    """Initialize Firebase Admin once; only needed when authentication is required"""
    if firebase_admin._apps:
        return

    try:
        if settings.firebase_service_account_key:
            # Use service account key from environment
            service_account_info = json.loads(settings.firebase_service_account_key)
            cred = credentials.Certificate(service_account_info)
        elif settings.service_account_key_path:
            # Use service account file
            cred = credentials.Certificate(settings.service_account_key_path)
        else:
            # Use default credentials (ADC)
            cred = credentials.ApplicationDefault()

        options = {'projectId': settings.firebase_project_id} if settings.firebase_project_id else None
        firebase_admin.initialize_app(cred, options)
        logger.info("Firebase Admin initialized successfully")
    except Exception as e:
        logger.error("Failed to initialize Firebase Admin", error=str(e))
        raise


async def validate_firebase_token(token: str) -> UserInfo:
    """
    Validate Firebase ID token.

    A token seen within the cache TTL is trusted without another round trip;
    otherwise the blocking verification (certificate fetch and revocation check)
    runs in the threadpool.
    """
    cached = user_cache.get(token)
    if cached is not None:
        return cached

    try:
        decoded_token = await run_in_threadpool(firebase_auth.verify_id_token, token, check_revoked=True)
    except (
        firebase_auth.InvalidIdTokenError,
        firebase_auth.ExpiredIdTokenError,
        firebase_auth.RevokedIdTokenError,
    ):
        raise InvalidTokenError()
    except Exception as e:
        logger.error("Token validation error", error=str(e))
        raise AuthenticationError(f"Token validation failed: {str(e)}")

    user_info = UserInfo(uid=decoded_token["uid"], email=decoded_token.get("email"))
    user_cache[token] = user_info
    return user_info


class AuthMiddleware(BaseHTTPMiddleware):
    """Bearer-token authentication for the /api surface"""

    def __init__(self, app, enabled: bool = False):
        super().__init__(app)
        self.enabled = enabled
        self.protected_prefix = "/api/"

    async def dispatch(self, request: Request, call_next):
        if not self.enabled or not request.url.path.startswith(self.protected_prefix):
            return await call_next(request)

        # CORS preflight never carries credentials
        if request.method == "OPTIONS":
            return await call_next(request)

        try:
            auth_header = request.headers.get("authorization")
            if not auth_header or not auth_header.startswith("Bearer "):
                raise MissingTokenError()

            token = auth_header[7:].strip()  # Remove "Bearer " prefix
            if not token:
                raise MissingTokenError()

            user_info = await validate_firebase_token(token)
            request.state.user = user_info

            logger.info(
                "User authenticated successfully",
                user_id=user_info.uid,
                email=user_info.email
            )
        except AuthenticationError as e:
            logger.warning(
                "Authentication failed",
                error=e.detail,
                path=request.url.path,
                method=request.method,
                client_ip=request.client.host if request.client else "unknown"
            )
            # Exceptions raised here would bypass the app's exception handlers
            return JSONResponse(
                status_code=e.status_code,
                content={"error": e.detail, "code": e.code}
            )

        return await call_next(request)


# Dependency functions for route handlers
def get_current_user(request: Request) -> Optional[UserInfo]:
    """The authenticated user, or None when authentication is disabled"""
    return getattr(request.state, "user", None)


def get_session(request: Request) -> Session:
    """
    The mapping that scopes uploaded credentials for this request:
    the verified user's server-side mapping when authenticated, else the cookie session.
    """
    user = get_current_user(request)
    if user is not None:
        return request.app.state.principal_sessions.for_principal(user.uid)
    return request.session


# Utility functions
def get_cache_stats() -> Dict[str, Any]:
    """Get cache statistics"""
    return {
        "size": len(user_cache),
        "max_size": user_cache.maxsize,
        "ttl": user_cache.ttl,
    }
