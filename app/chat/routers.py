import logging

from fastapi import APIRouter, Depends

from app.core.dependencies import get_current_user_id, get_profiles, get_store
from app.core.exceptions import AuthorizationError, CommunityError
from app.core.store import RowStore
from app.friendship.routers import get_graph
from app.friendship.service import FriendshipGraph
from app.utils.profiles import ProfileDirectory

from .directory import ConversationDirectory
from .message_log import MessageLog
from .schemas import (
    CreateDirectConversationModel,
    CreateDirectConversationResponseModel,
    CreateGroupConversationModel,
    CreateGroupConversationResponseModel,
    GetConversationsResponseModel,
    GetMessagesResponseModel,
    SendMessageModel,
    SendMessageResponseModel,
)

logger = logging.getLogger(__name__)
router = APIRouter()


def get_message_log(
    store: RowStore = Depends(get_store),
    profiles: ProfileDirectory = Depends(get_profiles),
) -> MessageLog:
    return MessageLog(store, profiles)


def get_directory(
    store: RowStore = Depends(get_store),
    profiles: ProfileDirectory = Depends(get_profiles),
    messages: MessageLog = Depends(get_message_log),
) -> ConversationDirectory:
    return ConversationDirectory(store, profiles, messages)


@router.post(
    "/conversations/direct",
    response_model=CreateDirectConversationResponseModel,
    status_code=200,
)
async def get_or_create_direct_conversation(
    data: CreateDirectConversationModel,
    user_id: str = Depends(get_current_user_id),
    directory: ConversationDirectory = Depends(get_directory),
    graph: FriendshipGraph = Depends(get_graph),
):
    """
    Get or create a private (1-on-1) conversation with a friend.

    If a private conversation between the two users already exists, it is
    returned. Otherwise a new conversation is created with both users as
    participants.

    **Errors**
    - 400: Receiver is the caller
    - 403: Users are not friends
    - 500: Conversation created but participants could not be attached
    """
    try:
        await graph.ensure_friends(user_id, [data.receiver_id])
        conversation, is_new = await directory.create_private(user_id, data.receiver_id)
    except CommunityError as e:
        raise e.to_http()

    return {"conversation_id": conversation.id, "is_new": is_new}


@router.post(
    "/conversations/group",
    response_model=CreateGroupConversationResponseModel,
    status_code=201,
)
async def create_group_conversation(
    data: CreateGroupConversationModel,
    user_id: str = Depends(get_current_user_id),
    directory: ConversationDirectory = Depends(get_directory),
    graph: FriendshipGraph = Depends(get_graph),
):
    """
    Create a named group conversation with the caller and their friends.

    **Errors**
    - 400: Missing name or no participants
    - 403: A participant is not a friend of the caller
    - 500: Conversation created but participants could not be attached
    """
    invitees = [uid for uid in data.participant_ids if uid != user_id]
    try:
        await graph.ensure_friends(user_id, invitees)
        conversation = await directory.create_group(data.name, user_id, invitees)
    except CommunityError as e:
        raise e.to_http()

    return {"conversation": conversation}


@router.post(
    "/messages",
    response_model=SendMessageResponseModel,
    status_code=201,
)
async def send_message(
    data: SendMessageModel,
    user_id: str = Depends(get_current_user_id),
    messages: MessageLog = Depends(get_message_log),
):
    """
    Send a message to a conversation the caller is a participant of.

    **Errors**
    - 400: Empty content
    - 403: Caller is not a participant
    """
    try:
        message = await messages.append(data.conversation_id, user_id, data.content)
    except CommunityError as e:
        raise e.to_http()

    return {"message": message}


@router.get(
    "/conversations",
    response_model=GetConversationsResponseModel,
    status_code=200,
)
async def get_conversations(
    q: str = "",
    user_id: str = Depends(get_current_user_id),
    directory: ConversationDirectory = Depends(get_directory),
):
    """
    Retrieve all conversations the caller participates in, most recent
    activity first, each with its display title, participants and last
    message. `q` filters on name, last message and participant usernames.
    """
    try:
        summaries = await directory.list_for_user(user_id)
    except CommunityError as e:
        raise e.to_http()

    return {
        "conversations": [
            {
                "id": summary.conversation.id,
                "type": summary.conversation.type,
                "title": ConversationDirectory.title_of(summary, user_id),
                "participants": summary.participant_profiles,
                "last_message": summary.last_message,
                "unread_count": summary.unread_count,
            }
            for summary in ConversationDirectory.filter_summaries(summaries, q)
        ]
    }


@router.get(
    "/messages/{conversation_id}",
    response_model=GetMessagesResponseModel,
    status_code=200,
)
async def get_messages(
    conversation_id: int,
    user_id: str = Depends(get_current_user_id),
    directory: ConversationDirectory = Depends(get_directory),
    messages: MessageLog = Depends(get_message_log),
):
    """
    Retrieve the full message history of a conversation, oldest first
    (ties on timestamp broken by id).

    **Errors**
    - 403: Caller is not a participant
    - 404: Conversation does not exist
    """
    try:
        await directory.get(conversation_id)
        if not await directory.is_participant(conversation_id, user_id):
            raise AuthorizationError()

        history = await messages.list_by_conversation(conversation_id)
    except CommunityError as e:
        raise e.to_http()

    return {
        "messages": [
            {
                **item.message.model_dump(),
                "sender_username": item.sender_profile.username if item.sender_profile else None,
            }
            for item in history
        ]
    }
