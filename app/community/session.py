import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel

from app.chat.directory import ConversationDirectory
from app.chat.fanout import FanoutController
from app.chat.message_log import MessageLog
from app.chat.schemas import (
    ActiveConversation,
    ConversationSummary,
    ExistingConversation,
    MessageWithProfile,
    NoConversation,
    PendingConversation,
)
from app.core.config import settings
from app.core.exceptions import (
    AuthorizationError,
    CommunityError,
    EmptyContent,
    InvalidParticipantCount,
    NoConversationSelected,
)
from app.core.store import ChangeFeed, RowStore
from app.friendship.schemas import Decision, FriendWithProfile, UserProfile
from app.friendship.service import FriendshipGraph
from app.utils.profiles import ProfileDirectory

logger = logging.getLogger(__name__)

DEFAULT_LABELS = {
    "privateConversation": "Private conversation",
    "unknownUser": "Unknown user",
}


class OperationResult(BaseModel):
    ok: bool
    error_key: Optional[str] = None
    detail: Optional[str] = None
    data: Any = None

    @classmethod
    def success(cls, data: Any = None) -> "OperationResult":
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, error: CommunityError) -> "OperationResult":
        return cls(ok=False, error_key=error.error_key, detail=error.detail)


class CommunitySession:
    """Community state for one connected user.

    Owns the friends lists, the conversation list, the open conversation and
    its messages, the compose draft, and the fanout controller keeping them
    live. Operations return ``OperationResult``; a failed operation never
    clears the draft or leaves the open conversation half-switched.
    """

    def __init__(
        self,
        store: RowStore,
        feed: ChangeFeed,
        profiles: ProfileDirectory,
        user_id: Optional[str],
        on_change: Optional[Callable[["CommunitySession"], Awaitable[None]]] = None,
        labels: Optional[Dict[str, str]] = None,
        retries: int = None,
        backoff: float = None,
        watch_membership: bool = None,
    ):
        self.user_id = user_id
        self.profiles = profiles
        self.on_change = on_change
        self.labels = {**DEFAULT_LABELS, **(labels or {})}

        self.friendships = FriendshipGraph(store)
        self.messages = MessageLog(store, profiles)
        self.directory = ConversationDirectory(store, profiles, self.messages)
        self.fanout = FanoutController(
            self.directory,
            feed,
            refresh_messages=self.refresh_messages,
            refresh_conversations=self.refresh_conversations,
            active_conversation_id=self.active_conversation_id,
            retries=settings.fanout_subscribe_retries if retries is None else retries,
            backoff=settings.fanout_subscribe_backoff if backoff is None else backoff,
            watch_membership=(
                settings.fanout_watch_membership if watch_membership is None else watch_membership
            ),
        )

        self.active: ActiveConversation = NoConversation()
        self.draft = ""
        self.conversations: List[ConversationSummary] = []
        self.selected_messages: List[MessageWithProfile] = []
        self.friends: List[FriendWithProfile] = []
        self.sent_invites: List[FriendWithProfile] = []
        self.received_invites: List[FriendWithProfile] = []

        self._conversations_version = 0
        self._conversations_applied = 0
        # Per conversation: an older fetch never overwrites a newer one.
        self._messages_version: Dict[int, int] = {}
        self._messages_applied: Dict[int, int] = {}

    # lifecycle

    async def start(self) -> None:
        if self.user_id is None:
            logger.info("community_session_anonymous")
            return
        try:
            await asyncio.gather(self.refresh_friends(), self.refresh_conversations())
        except CommunityError as e:
            logger.error(f"community_initial_load_failed user={self.user_id} error={e}")
        await self.fanout.start(self.user_id)

    async def stop(self) -> None:
        await self.fanout.stop()

    def active_conversation_id(self) -> Optional[int]:
        if isinstance(self.active, ExistingConversation):
            return self.active.conversation_id
        return None

    def _require_user(self) -> str:
        if self.user_id is None:
            raise AuthorizationError()
        return self.user_id

    async def _notify(self) -> None:
        if self.on_change is not None:
            await self.on_change(self)

    # refreshes

    async def refresh_messages(self, conversation_id: int) -> None:
        version = self._messages_version.get(conversation_id, 0) + 1
        self._messages_version[conversation_id] = version
        messages = await self.messages.list_by_conversation(conversation_id)
        if (
            self.active_conversation_id() != conversation_id
            or version < self._messages_applied.get(conversation_id, 0)
        ):
            logger.debug(f"stale_messages_dropped conversation={conversation_id} version={version}")
            return
        self._messages_applied[conversation_id] = version
        self.selected_messages = messages
        await self._notify()

    async def refresh_conversations(self) -> None:
        if self.user_id is None:
            return
        self._conversations_version += 1
        version = self._conversations_version
        summaries = await self.directory.list_for_user(self.user_id)
        if version < self._conversations_applied:
            return
        self._conversations_applied = version
        self.conversations = summaries
        await self._notify()

    async def refresh_friends(self) -> None:
        user_id = self._require_user()
        accepted, sent, received, profiles = await asyncio.gather(
            self.friendships.list_accepted(user_id),
            self.friendships.list_sent(user_id),
            self.friendships.list_received(user_id),
            self.profiles.list_all_profiles(),
        )
        by_id = {profile.user_id: profile for profile in profiles}
        self.friends = FriendshipGraph.with_profiles(accepted, user_id, by_id)
        self.sent_invites = FriendshipGraph.with_profiles(sent, user_id, by_id)
        self.received_invites = FriendshipGraph.with_profiles(received, user_id, by_id)
        await self._notify()

    # friends

    async def _friend_operation(self, name: str, operation) -> OperationResult:
        try:
            self._require_user()
            data = await operation()
        except CommunityError as e:
            logger.warning(f"{name}_failed user={self.user_id} error={e.detail}")
            return OperationResult.failure(e)
        try:
            await self.refresh_friends()
        except CommunityError as e:
            logger.error(f"friends_refresh_failed user={self.user_id} error={e}")
        return OperationResult.success(data)

    async def send_friend_request(self, target_user_id: str) -> OperationResult:
        return await self._friend_operation(
            "friend_request",
            lambda: self.friendships.send_request(self.user_id, target_user_id),
        )

    async def accept(self, friendship_id: int) -> OperationResult:
        return await self._friend_operation(
            "friend_accept",
            lambda: self.friendships.respond(friendship_id, self.user_id, Decision.ACCEPT),
        )

    async def decline(self, friendship_id: int) -> OperationResult:
        return await self._friend_operation(
            "friend_decline",
            lambda: self.friendships.respond(friendship_id, self.user_id, Decision.REJECT),
        )

    async def block(self, friendship_id: int) -> OperationResult:
        return await self._friend_operation(
            "friend_block",
            lambda: self.friendships.respond(friendship_id, self.user_id, Decision.BLOCK),
        )

    async def cancel_request(self, friendship_id: int) -> OperationResult:
        return await self._friend_operation(
            "friend_cancel", lambda: self.friendships.cancel(friendship_id, self.user_id)
        )

    async def unfriend(self, friendship_id: int) -> OperationResult:
        return await self._friend_operation(
            "friend_remove", lambda: self.friendships.unfriend(friendship_id, self.user_id)
        )

    def _related_user_ids(self) -> List[str]:
        related = self.friends + self.sent_invites + self.received_invites
        return [FriendshipGraph.friend_of(f.friendship, self.user_id) for f in related]

    async def search_users(self, query: str) -> OperationResult:
        """Users to invite: username match, minus self, friends and pending counterparts."""
        try:
            user_id = self._require_user()
            users = await self.profiles.search(
                query,
                exclude=[user_id, *self._related_user_ids()],
                limit=settings.profile_search_limit,
            )
        except CommunityError as e:
            logger.warning(f"user_search_failed user={self.user_id} error={e}")
            return OperationResult.failure(e)
        return OperationResult.success(users)

    def available_participants(self, query: str = "", selected=()) -> List[FriendWithProfile]:
        needle = (query or "").strip().lower()
        chosen = set(selected)
        return [
            friend
            for friend in self.friends
            if needle in friend.profile.username.lower()
            and friend.profile.user_id not in chosen
        ]

    # conversations

    async def open_conversation(self, conversation_id: int) -> OperationResult:
        try:
            user_id = self._require_user()
            if not await self.directory.is_participant(conversation_id, user_id):
                raise AuthorizationError()
        except CommunityError as e:
            return OperationResult.failure(e)

        self.active = ExistingConversation(conversation_id=conversation_id)
        self.selected_messages = []
        try:
            await self.refresh_messages(conversation_id)
        except CommunityError as e:
            logger.error(f"messages_refresh_failed conversation={conversation_id} error={e}")
            return OperationResult.failure(e)
        return OperationResult.success(conversation_id)

    async def close_conversation(self) -> OperationResult:
        self.active = NoConversation()
        self.selected_messages = []
        await self._notify()
        return OperationResult.success()

    async def message_friend(self, friend_id: str) -> OperationResult:
        """Open the private conversation with a friend, or enter the pending state."""
        try:
            user_id = self._require_user()
            await self.friendships.ensure_friends(user_id, [friend_id])
            existing = await self.directory.find_private_between(
                user_id, friend_id, known=self.conversations
            )
        except CommunityError as e:
            return OperationResult.failure(e)

        if existing is not None:
            return await self.open_conversation(existing.id)

        self.active = PendingConversation(target_user_id=friend_id)
        self.selected_messages = []
        await self._notify()
        return OperationResult.success()

    async def send_message(self, content: Optional[str] = None) -> OperationResult:
        if content is not None:
            self.draft = content

        try:
            user_id = self._require_user()
            text = self.draft.strip()
            if not text:
                raise EmptyContent()

            active = self.active
            if isinstance(active, PendingConversation):
                message = await self._send_first_message(user_id, active.target_user_id, text)
            elif isinstance(active, ExistingConversation):
                message = await self.messages.append(active.conversation_id, user_id, text)
            else:
                raise NoConversationSelected()
        except CommunityError as e:
            logger.warning(f"send_message_failed user={self.user_id} error={e.detail}")
            await self._notify()
            return OperationResult.failure(e)

        self.draft = ""
        try:
            await self.refresh_messages(message.conversation_id)
            await self.refresh_conversations()
        except CommunityError as e:
            logger.error(f"post_send_refresh_failed conversation={message.conversation_id} error={e}")
        return OperationResult.success(message)

    async def _send_first_message(self, user_id: str, target_user_id: str, text: str):
        await self.friendships.ensure_friends(user_id, [target_user_id])
        # Any failure here leaves the pending state untouched.
        conversation, is_new = await self.directory.create_private(user_id, target_user_id)

        try:
            message = await self.messages.append(conversation.id, user_id, text)
        finally:
            # The conversation exists now, whether or not the append went through.
            self.active = ExistingConversation(conversation_id=conversation.id)
            await self.fanout.resubscribe()

        if is_new:
            logger.info(f"private_conversation_started id={conversation.id} with={target_user_id}")
        return message

    async def create_conversation(
        self, name: Optional[str], participant_ids: List[str]
    ) -> OperationResult:
        """One invitee makes a private conversation, more make a named group."""
        try:
            user_id = self._require_user()
            invitees = [uid for uid in dict.fromkeys(participant_ids) if uid and uid != user_id]
            if not invitees:
                raise InvalidParticipantCount("Select at least one participant.")
            await self.friendships.ensure_friends(user_id, invitees)

            if len(invitees) == 1:
                conversation, _ = await self.directory.create_private(user_id, invitees[0])
            else:
                conversation = await self.directory.create_group(name, user_id, invitees)
        except CommunityError as e:
            logger.warning(f"create_conversation_failed user={self.user_id} error={e.detail}")
            return OperationResult.failure(e)

        await self.fanout.resubscribe()
        try:
            await self.refresh_conversations()
        except CommunityError as e:
            logger.error(f"conversations_refresh_failed user={user_id} error={e}")
        return OperationResult.success(conversation)

    # presentation

    def title_of(self, summary: ConversationSummary) -> str:
        return ConversationDirectory.title_of(
            summary, self.user_id, self.labels["privateConversation"]
        )

    def _active_title(self) -> Optional[str]:
        if isinstance(self.active, PendingConversation):
            for friend in self.friends:
                if friend.profile.user_id == self.active.target_user_id:
                    return friend.profile.username
            return self.labels["privateConversation"]
        for summary in self.conversations:
            if summary.conversation.id == self.active_conversation_id():
                return self.title_of(summary)
        return None

    def _sender_name(self, profile: Optional[UserProfile]) -> str:
        return profile.username if profile else self.labels["unknownUser"]

    def snapshot(self, query: str = "") -> dict:
        """JSON-ready view of the session for the client."""
        conversations = ConversationDirectory.filter_summaries(self.conversations, query)
        return {
            "user_id": self.user_id,
            "fanout_status": self.fanout.status,
            "active": {**self.active.model_dump(), "title": self._active_title()},
            "draft": self.draft,
            "conversations": [
                {
                    "id": s.conversation.id,
                    "type": s.conversation.type.value,
                    "title": self.title_of(s),
                    "participants": [p.model_dump() for p in s.participant_profiles],
                    "last_message": (
                        s.last_message.model_dump(mode="json") if s.last_message else None
                    ),
                    "unread_count": s.unread_count,
                }
                for s in conversations
            ],
            "messages": [
                {
                    **m.message.model_dump(mode="json"),
                    "sender_username": self._sender_name(m.sender_profile),
                    "is_own": m.message.sender_id == self.user_id,
                }
                for m in self.selected_messages
            ],
            "friends": [f.model_dump(mode="json") for f in self.friends],
            "sent_invites": [f.model_dump(mode="json") for f in self.sent_invites],
            "received_invites": [f.model_dump(mode="json") for f in self.received_invites],
        }
