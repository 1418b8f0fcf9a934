"""
PostgreSQL Auth Routes - bearer token identity
Tokens are issued by the identity provider sharing SECRET_KEY
"""
from fastapi import APIRouter, HTTPException, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
import os
import logging

from app.approvals.domain.models import Actor, Role

logger = logging.getLogger(__name__)

# JWT Settings
SECRET_KEY = os.environ.get('SECRET_KEY', 'your-secret-key-change-in-production')
ALGORITHM = "HS256"

# Security
security = HTTPBearer()

# Create router
pg_auth_router = APIRouter(prefix="/api/pg", tags=["PostgreSQL Auth"])

ROLES = {role.value for role in Role}


def actor_from_token(token: str) -> Actor:
    """Decode a bearer token into an Actor; raises HTTPException(401) when invalid."""
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError as e:
        logger.warning(f"Rejected token: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if user_id is None:
        raise HTTPException(status_code=401, detail="Invalid token")

    role = payload.get("role")
    if role not in ROLES:
        raise HTTPException(status_code=401, detail="Unknown role in token")

    return Actor(id=str(user_id), name=payload.get("name") or str(user_id), role=role)


async def get_current_actor(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Actor:
    """Get the acting user from the bearer token"""
    return actor_from_token(credentials.credentials)


# ==================== AUTH ROUTES ====================

@pg_auth_router.get("/auth/me")
async def get_me(current_user: Actor = Depends(get_current_actor)):
    """Who the bearer token says the caller is"""
    return {
        "id": current_user.id,
        "name": current_user.name,
        "role": current_user.role,
    }
