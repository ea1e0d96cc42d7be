from enum import Enum
from typing import List, Literal, Optional, Union
from datetime import datetime

from pydantic import BaseModel, ConfigDict

from app.friendship.schemas import UserProfile


class ConversationType(str, Enum):
    PRIVATE = "private"
    GROUP = "group"


class Conversation(BaseModel):
    id: int
    type: ConversationType
    name: Optional[str] = None
    description: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class ConversationParticipant(BaseModel):
    conversation_id: int
    user_id: str
    created_at: Optional[datetime] = None


class Message(BaseModel):
    id: int
    conversation_id: int
    sender_id: str
    content: str
    created_at: datetime
    updated_at: Optional[datetime] = None

    @property
    def order_key(self):
        return (self.created_at, self.id)


class MessageWithProfile(BaseModel):
    message: Message
    sender_profile: Optional[UserProfile] = None


class ConversationSummary(BaseModel):
    conversation: Conversation
    participants: List[ConversationParticipant]
    participant_profiles: List[UserProfile]
    last_message: Optional[Message] = None
    unread_count: int = 0

    @property
    def participant_ids(self) -> List[str]:
        return [p.user_id for p in self.participants]


# Which conversation the client has open.
class NoConversation(BaseModel):
    model_config = ConfigDict(frozen=True)
    kind: Literal["none"] = "none"


class PendingConversation(BaseModel):
    """Intent to message ``target_user_id`` before the private conversation exists."""

    model_config = ConfigDict(frozen=True)
    kind: Literal["pending"] = "pending"
    target_user_id: str


class ExistingConversation(BaseModel):
    model_config = ConfigDict(frozen=True)
    kind: Literal["existing"] = "existing"
    conversation_id: int


ActiveConversation = Union[NoConversation, PendingConversation, ExistingConversation]


# Send Messages
class SendMessageModel(BaseModel):
    conversation_id: int
    content: str


class SendMessageResponseModel(BaseModel):
    message: Message


# Direct messages
class CreateDirectConversationModel(BaseModel):
    receiver_id: str


class CreateDirectConversationResponseModel(BaseModel):
    conversation_id: int
    is_new: bool


# Group conversations
class CreateGroupConversationModel(BaseModel):
    name: str
    participant_ids: List[str]


class CreateGroupConversationResponseModel(BaseModel):
    conversation: Conversation


# Get Conversations
class ConversationData(BaseModel):
    id: int
    type: ConversationType
    title: str
    participants: List[UserProfile]
    last_message: Optional[Message] = None
    unread_count: int = 0


class GetConversationsResponseModel(BaseModel):
    conversations: List[ConversationData]


# Get messages
class MessagesData(BaseModel):
    id: int
    sender_id: str
    sender_username: Optional[str] = None
    content: str
    created_at: datetime


class GetMessagesResponseModel(BaseModel):
    messages: List[MessagesData]
