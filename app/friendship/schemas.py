from enum import Enum
from typing import List, Optional
from datetime import datetime

from pydantic import BaseModel


class FriendshipStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    BLOCKED = "blocked"


class Decision(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    BLOCK = "block"


class UserProfile(BaseModel):
    user_id: str
    username: str
    mileage: int = 0


class Friendship(BaseModel):
    id: int
    user_1_id: str
    user_2_id: str
    status: FriendshipStatus
    created_at: datetime
    updated_at: datetime

    @property
    def is_active(self) -> bool:
        return self.status in (FriendshipStatus.PENDING, FriendshipStatus.ACCEPTED)


class FriendWithProfile(BaseModel):
    friendship: Friendship
    profile: UserProfile


# Friend search
class FriendsSearchResponseModel(BaseModel):
    users: List[UserProfile]


# friend request
class FriendRequestModel(BaseModel):
    target_user_id: str


class FriendRequestResponseModel(BaseModel):
    message: str
    request: Friendship


# accept / reject / block
class RespondFriendRequestModel(BaseModel):
    decision: Decision


class RespondFriendRequestResponseModel(BaseModel):
    friendship: Friendship


# cancel sent request
class CancelFriendshipRequestResponseModel(BaseModel):
    request_canceled: bool


# remove friend
class RemoveFriendResponseModel(BaseModel):
    friend_removed: bool


class FriendsOverviewResponseModel(BaseModel):
    friends: List[FriendWithProfile]
    sent: List[FriendWithProfile]
    received: List[FriendWithProfile]
