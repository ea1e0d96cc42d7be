import logging

from fastapi import APIRouter, Depends, HTTPException

from app.core.config import settings
from app.core.dependencies import get_current_user_id, get_profiles, get_store
from app.core.exceptions import CommunityError
from app.core.store import RowStore
from app.utils.profiles import ProfileDirectory

from .schemas import (
    CancelFriendshipRequestResponseModel,
    FriendRequestModel,
    FriendRequestResponseModel,
    FriendsOverviewResponseModel,
    FriendsSearchResponseModel,
    RemoveFriendResponseModel,
    RespondFriendRequestModel,
    RespondFriendRequestResponseModel,
)
from .service import FriendshipGraph

logger = logging.getLogger(__name__)
router = APIRouter()


def get_graph(store: RowStore = Depends(get_store)) -> FriendshipGraph:
    return FriendshipGraph(store)


@router.get("/search/{username}", response_model=FriendsSearchResponseModel, status_code=200)
async def username_search(
    username: str,
    user_id: str = Depends(get_current_user_id),
    graph: FriendshipGraph = Depends(get_graph),
    profiles: ProfileDirectory = Depends(get_profiles),
):
    """
    Search for users to befriend by username.

    Case-insensitive substring match over usernames. The caller, their
    friends, and anyone with a pending request in either direction are
    left out of the results.

    **Errors**
    - `400`: Empty search term.
    - `503`: Database error.
    """
    if not username.strip():
        raise HTTPException(status_code=400, detail="Search term cannot be empty.")

    try:
        accepted = await graph.list_accepted(user_id)
        pending = await graph.list_sent(user_id) + await graph.list_received(user_id)
        related = [FriendshipGraph.friend_of(f, user_id) for f in accepted + pending]

        users = await profiles.search(
            username, exclude=[user_id, *related], limit=settings.profile_search_limit
        )
    except CommunityError as e:
        raise e.to_http()

    return {"users": users}


@router.get("", response_model=FriendsOverviewResponseModel, status_code=200)
async def list_friends(
    user_id: str = Depends(get_current_user_id),
    graph: FriendshipGraph = Depends(get_graph),
    profiles: ProfileDirectory = Depends(get_profiles),
):
    """
    Accepted friends plus sent and received pending requests, each paired
    with the other user's profile.
    """
    try:
        accepted = await graph.list_accepted(user_id)
        sent = await graph.list_sent(user_id)
        received = await graph.list_received(user_id)
        by_id = await profiles.get_profiles(
            FriendshipGraph.friend_of(f, user_id) for f in accepted + sent + received
        )
    except CommunityError as e:
        raise e.to_http()

    return {
        "friends": FriendshipGraph.with_profiles(accepted, user_id, by_id),
        "sent": FriendshipGraph.with_profiles(sent, user_id, by_id),
        "received": FriendshipGraph.with_profiles(received, user_id, by_id),
    }


@router.post("/request", response_model=FriendRequestResponseModel, status_code=201)
async def create_friend_request(
    data: FriendRequestModel,
    user_id: str = Depends(get_current_user_id),
    graph: FriendshipGraph = Depends(get_graph),
    profiles: ProfileDirectory = Depends(get_profiles),
):
    """
    Send a friend request to another user.

    **Process**
    1. Validate that the target user has a profile.
    2. Prevent self-friend-requests.
    3. Prevent a request while a pending or accepted edge exists.
    4. Create a new `pending` friendship.

    **Errors**
    - `400`: Request to yourself.
    - `403`: Not allowed.
    - `404`: No such user.
    - `409`: Duplicate request or already friends.
    """
    try:
        if await profiles.get_username(data.target_user_id) is None:
            raise HTTPException(404, detail="No matching user.")

        friendship = await graph.send_request(user_id, data.target_user_id)
    except CommunityError as e:
        raise e.to_http()

    return {"message": "Friend request sent.", "request": friendship}


@router.post(
    "/request/{friendship_id}/respond",
    response_model=RespondFriendRequestResponseModel,
    status_code=200,
)
async def respond_friend_request(
    friendship_id: int,
    data: RespondFriendRequestModel,
    user_id: str = Depends(get_current_user_id),
    graph: FriendshipGraph = Depends(get_graph),
):
    """
    Accept, reject or block a pending request. Only the receiver can respond.

    **Errors**
    - `403`: Caller is not the receiver.
    - `404`: No such request.
    - `409`: Request already handled.
    """
    try:
        friendship = await graph.respond(friendship_id, user_id, data.decision)
    except CommunityError as e:
        raise e.to_http()

    return {"friendship": friendship}


# Only the sender can cancel.
@router.delete(
    "/request/{friendship_id}",
    response_model=CancelFriendshipRequestResponseModel,
    status_code=200,
)
async def cancel_friend_request(
    friendship_id: int,
    user_id: str = Depends(get_current_user_id),
    graph: FriendshipGraph = Depends(get_graph),
):
    try:
        await graph.cancel(friendship_id, user_id)
    except CommunityError as e:
        raise e.to_http()

    return {"request_canceled": True}


@router.delete(
    "/{friendship_id}",
    response_model=RemoveFriendResponseModel,
    status_code=200,
)
async def remove_friend(
    friendship_id: int,
    user_id: str = Depends(get_current_user_id),
    graph: FriendshipGraph = Depends(get_graph),
):
    """Remove an accepted friendship. Either side can unfriend."""
    try:
        await graph.unfriend(friendship_id, user_id)
    except CommunityError as e:
        raise e.to_http()

    return {"friend_removed": True}
