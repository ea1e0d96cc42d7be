import logging
from typing import Dict, Iterable, List, Optional

from app.core.store import PROFILES, RowStore
from app.friendship.schemas import UserProfile

logger = logging.getLogger(__name__)


class ProfileDirectory:
    """Read-only view over ``user_profile``, joined in memory by ``user_id``."""

    def __init__(self, store: RowStore):
        self.store = store

    async def list_all_profiles(self) -> List[UserProfile]:
        rows = await self.store.list(PROFILES, order=[("username", False)])
        return [UserProfile.model_validate(row) for row in rows if row.get("user_id")]

    async def get_profiles(self, user_ids: Iterable[str]) -> Dict[str, UserProfile]:
        """Batch lookup by id; unknown ids are simply absent from the result."""
        wanted = sorted({uid for uid in user_ids if uid})
        if not wanted:
            return {}
        rows = await self.store.list(PROFILES, filters={"user_id": wanted})
        profiles = [UserProfile.model_validate(row) for row in rows if row.get("user_id")]
        return {profile.user_id: profile for profile in profiles}

    async def get_username(self, user_id: str) -> Optional[str]:
        """Get a user username using their id"""
        profiles = await self.get_profiles([user_id])
        profile = profiles.get(user_id)
        return profile.username if profile else None

    async def search(
        self, query: str, exclude: Iterable[str] = (), limit: int = None
    ) -> List[UserProfile]:
        """Case-insensitive substring match on username over the full profile list."""
        needle = (query or "").strip().lower()
        if not needle:
            return []
        excluded = set(exclude)
        matches = [
            profile
            for profile in await self.list_all_profiles()
            if profile.user_id not in excluded and needle in profile.username.lower()
        ]
        logger.debug(f"profile_search query={needle!r} matches={len(matches)}")
        return matches[:limit] if limit else matches
