"""
Rate Limiter Configuration

One slowapi Limiter shared by every router. Authenticated callers are
keyed per user and address so a shared chat-bot address does not starve
individual users.
"""
import logging

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from prediction_system.config.settings import settings
from prediction_system.rbac.auth import decode_token, extract_bearer_token

logger = logging.getLogger(__name__)


def rate_limit_key(request: Request) -> str:
    address = get_remote_address(request)
    token = extract_bearer_token(request)
    if token:
        payload = decode_token(token)
        if payload and payload.get("sub"):
            return f"user:{payload['sub']}:{address}"
    return address


limiter = Limiter(key_func=rate_limit_key, enabled=settings.RATE_LIMIT_ENABLED)

PREDICTION_LIMIT = settings.RATE_LIMIT_PREDICTION
ADMIN_LIMIT = settings.RATE_LIMIT_ADMIN
READ_LIMIT = settings.RATE_LIMIT_DEFAULT
LOGIN_LIMIT = settings.RATE_LIMIT_LOGIN
REGISTER_LIMIT = settings.RATE_LIMIT_REGISTER
