"""
Bearer JWT dependencies. Tokens are issued by the auth service and carry
{"user_id": <uuid>, "user_type": "customer" | "provider" | "admin"}.
"""
import logging
import uuid

from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from fixmo.services.actors import Actor, ACTOR_TYPES, ADMIN

logger = logging.getLogger(__name__)
bearer_scheme = HTTPBearer()


def decode_actor(token: str) -> Actor:
    import jwt as pyjwt
    from fixmo.config import get_settings
    settings = get_settings()

    try:
        payload = pyjwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except pyjwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except pyjwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_type = payload.get("user_type")
    if user_type not in ACTOR_TYPES:
        raise HTTPException(status_code=401, detail="Invalid token payload")

    try:
        user_id = uuid.UUID(str(payload.get("user_id")))
    except (ValueError, AttributeError):
        raise HTTPException(status_code=401, detail="Invalid token payload")

    return Actor(user_id=user_id, user_type=user_type)


async def get_current_actor(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
) -> Actor:
    """Dependency to extract the caller from the JWT Bearer token."""
    return decode_actor(credentials.credentials)


async def get_current_admin(
    actor: Actor = Depends(get_current_actor),
) -> Actor:
    """Dependency that requires an admin token."""
    if actor.user_type != ADMIN:
        logger.warning("Non-admin %s attempted admin access", str(actor.user_id)[:8])
        raise HTTPException(status_code=403, detail="Admin access required")
    return actor
