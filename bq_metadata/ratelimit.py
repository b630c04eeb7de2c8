"""
Rate limiter shared by the application and its routers
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import get_settings

limiter = Limiter(key_func=get_remote_address)


def upload_rate_limit() -> str:
    """Limit applied to endpoints that accept service account keys"""
    return get_settings().upload_rate_limit
