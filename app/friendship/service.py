import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from app.core.exceptions import (
    AuthorizationError,
    ConflictError,
    DuplicateRequest,
    NotFoundError,
    SelfFriendRequest,
)
from app.core.store import FRIENDSHIPS, RowStore

from .schemas import (
    Decision,
    Friendship,
    FriendshipStatus,
    FriendWithProfile,
    UserProfile,
)

logger = logging.getLogger(__name__)

_DECISIONS = {
    Decision.ACCEPT: FriendshipStatus.ACCEPTED,
    Decision.REJECT: FriendshipStatus.REJECTED,
    Decision.BLOCK: FriendshipStatus.BLOCKED,
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class FriendshipGraph:
    """Friendship state machine over unordered user pairs.

    pending -> accepted | rejected | blocked (receiver only)
    pending -> deleted (requester cancels)
    accepted -> deleted (either side unfriends)
    rejected and blocked are terminal.
    """

    def __init__(self, store: RowStore):
        self.store = store

    async def get(self, friendship_id: int) -> Friendship:
        row = await self.store.get(FRIENDSHIPS, {"id": friendship_id})
        if not row:
            raise NotFoundError("Friend request doesn't exist.")
        return Friendship.model_validate(row)

    async def find_between(self, user_a: str, user_b: str) -> List[Friendship]:
        rows = await self.store.list(
            FRIENDSHIPS,
            any_of=[
                {"user_1_id": user_a, "user_2_id": user_b},
                {"user_1_id": user_b, "user_2_id": user_a},
            ],
            order=[("id", False)],
        )
        return [Friendship.model_validate(row) for row in rows]

    async def find_active(self, user_a: str, user_b: str) -> Optional[Friendship]:
        for friendship in await self.find_between(user_a, user_b):
            if friendship.is_active:
                return friendship
        return None

    async def send_request(self, requester: str, target: str) -> Friendship:
        if requester == target:
            raise SelfFriendRequest()

        edges = await self.find_between(requester, target)
        if any(edge.is_active for edge in edges):
            raise DuplicateRequest()

        # The target blocked an earlier request from this requester.
        if any(
            edge.status == FriendshipStatus.BLOCKED and edge.user_1_id == requester
            for edge in edges
        ):
            raise AuthorizationError()

        try:
            row = await self.store.insert(
                FRIENDSHIPS,
                {
                    "user_1_id": requester,
                    "user_2_id": target,
                    "status": FriendshipStatus.PENDING.value,
                },
            )
        except ConflictError as e:
            # A concurrent request for the same pair won the unique index.
            raise DuplicateRequest() from e
        friendship = Friendship.model_validate(row)
        logger.info(f"friend_request_sent id={friendship.id} from={requester} to={target}")
        return friendship

    async def respond(self, friendship_id: int, actor: str, decision: Decision) -> Friendship:
        friendship = await self.get(friendship_id)

        # Only the receiver decides.
        if actor != friendship.user_2_id:
            raise AuthorizationError()
        if friendship.status != FriendshipStatus.PENDING:
            raise ConflictError("Friend request already handled.")

        status = _DECISIONS[Decision(decision)]
        row = await self.store.update(
            FRIENDSHIPS,
            {"id": friendship_id},
            {"status": status.value, "updated_at": _now()},
        )
        logger.info(f"friend_request_{status.value} id={friendship_id} by={actor}")
        return Friendship.model_validate(row)

    async def cancel(self, friendship_id: int, actor: str) -> None:
        friendship = await self.get(friendship_id)
        if actor != friendship.user_1_id:
            raise AuthorizationError()
        if friendship.status != FriendshipStatus.PENDING:
            raise ConflictError("No pending friend request to cancel.")

        await self.store.delete(FRIENDSHIPS, {"id": friendship_id})
        logger.info(f"friend_request_canceled id={friendship_id} by={actor}")

    async def unfriend(self, friendship_id: int, actor: str) -> None:
        friendship = await self.get(friendship_id)
        if actor not in (friendship.user_1_id, friendship.user_2_id):
            raise AuthorizationError()
        if friendship.status != FriendshipStatus.ACCEPTED:
            raise ConflictError("Friendship does not exist.")

        await self.store.delete(FRIENDSHIPS, {"id": friendship_id})
        logger.info(f"friend_removed id={friendship_id} by={actor}")

    async def list_accepted(self, user_id: str) -> List[Friendship]:
        rows = await self.store.list(
            FRIENDSHIPS,
            filters={"status": FriendshipStatus.ACCEPTED.value},
            any_of=[{"user_1_id": user_id}, {"user_2_id": user_id}],
            order=[("id", False)],
        )
        return [Friendship.model_validate(row) for row in rows]

    async def list_sent(self, user_id: str) -> List[Friendship]:
        rows = await self.store.list(
            FRIENDSHIPS,
            filters={"user_1_id": user_id, "status": FriendshipStatus.PENDING.value},
            order=[("id", False)],
        )
        return [Friendship.model_validate(row) for row in rows]

    async def list_received(self, user_id: str) -> List[Friendship]:
        rows = await self.store.list(
            FRIENDSHIPS,
            filters={"user_2_id": user_id, "status": FriendshipStatus.PENDING.value},
            order=[("id", False)],
        )
        return [Friendship.model_validate(row) for row in rows]

    async def ensure_friends(self, user_id: str, others: Iterable[str]) -> None:
        """Raise unless every id in ``others`` is an accepted friend of ``user_id``."""
        for other in others:
            friendship = await self.find_active(user_id, other)
            if friendship is None or friendship.status != FriendshipStatus.ACCEPTED:
                raise AuthorizationError()

    @staticmethod
    def friend_of(friendship: Friendship, user_id: str) -> str:
        if friendship.user_1_id == user_id:
            return friendship.user_2_id
        return friendship.user_1_id

    @classmethod
    def with_profiles(
        cls,
        friendships: Iterable[Friendship],
        user_id: str,
        profiles: Dict[str, UserProfile],
    ) -> List[FriendWithProfile]:
        # Edges whose counterpart has no profile are left out.
        paired = []
        for friendship in friendships:
            profile = profiles.get(cls.friend_of(friendship, user_id))
            if profile is not None:
                paired.append(FriendWithProfile(friendship=friendship, profile=profile))
        return paired
