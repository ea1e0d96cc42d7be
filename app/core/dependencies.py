import logging

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.core.config import settings
from app.core.store import ChangeFeed, RowStore
from app.core.supabase_client import (
    SupabaseChangeFeed,
    SupabaseRowStore,
    get_supabase,
)
from app.utils.profiles import ProfileDirectory

logger = logging.getLogger(__name__)
security = HTTPBearer()


def decode_token(token: str) -> dict:
    return jwt.decode(
        token,
        settings.supabase_jwt_secret,
        algorithms=["HS256"],
        issuer=settings.jwt_issuer,
        options={"verify_aud": False},
        leeway=60,
    )


def verify_token(credentials: HTTPAuthorizationCredentials = Depends(security)):
    token = credentials.credentials

    try:
        return decode_token(token)

    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")

    except jwt.InvalidTokenError as e:
        logger.warning(f"JWT verification failed: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")


def get_current_user_id(user=Depends(verify_token)) -> str:
    user_id = user.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user_id


async def get_store() -> RowStore:
    return SupabaseRowStore(await get_supabase())


async def get_change_feed() -> ChangeFeed:
    return SupabaseChangeFeed(await get_supabase(), schema=settings.supabase_schema)


def get_profiles(store: RowStore = Depends(get_store)) -> ProfileDirectory:
    return ProfileDirectory(store)
