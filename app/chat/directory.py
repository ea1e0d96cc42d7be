import asyncio
import logging
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from app.core.exceptions import (
    CommunityError,
    InvalidParticipantCount,
    MissingName,
    NotFoundError,
    PartialFailure,
)
from app.core.store import CONVERSATIONS, PARTICIPANTS, RowStore
from app.utils.profiles import ProfileDirectory

from .message_log import MessageLog
from .schemas import (
    Conversation,
    ConversationParticipant,
    ConversationSummary,
    ConversationType,
)

logger = logging.getLogger(__name__)

PRIVATE_CONVERSATION_LABEL = "Private conversation"


def _unique(ids: Iterable[str]) -> List[str]:
    seen = []
    for user_id in ids:
        if user_id and user_id not in seen:
            seen.append(user_id)
    return seen


class ConversationDirectory:
    """Conversations and their membership."""

    def __init__(self, store: RowStore, profiles: ProfileDirectory, messages: MessageLog):
        self.store = store
        self.profiles = profiles
        self.messages = messages

    async def get(self, conversation_id: int) -> Conversation:
        row = await self.store.get(CONVERSATIONS, {"id": conversation_id})
        if not row:
            raise NotFoundError("Conversation not found")
        return Conversation.model_validate(row)

    async def participant_ids(self, conversation_id: int) -> List[str]:
        rows = await self.store.list(PARTICIPANTS, filters={"conversation_id": conversation_id})
        return [row["user_id"] for row in rows]

    async def is_participant(self, conversation_id: int, user_id: str) -> bool:
        row = await self.store.get(
            PARTICIPANTS, {"conversation_id": conversation_id, "user_id": user_id}
        )
        return row is not None

    async def conversation_ids_for(self, user_id: str) -> List[int]:
        rows = await self.store.list(PARTICIPANTS, filters={"user_id": user_id})
        return sorted({row["conversation_id"] for row in rows})

    async def find_private_between(
        self, user_a: str, user_b: str, known: Optional[List[ConversationSummary]] = None
    ) -> Optional[Conversation]:
        """Private conversation whose participant set is exactly {user_a, user_b}.

        With ``known`` the search runs over already-loaded summaries only,
        which is correct as long as that list is complete and fresh.
        """
        pair = {user_a, user_b}

        if known is not None:
            for summary in known:
                ids = summary.participant_ids
                if (
                    summary.conversation.type == ConversationType.PRIVATE
                    and len(ids) == 2
                    and set(ids) == pair
                ):
                    return summary.conversation
            return None

        shared = set(await self.conversation_ids_for(user_a)) & set(
            await self.conversation_ids_for(user_b)
        )
        if not shared:
            return None

        rows = await self.store.list(
            CONVERSATIONS,
            filters={"id": sorted(shared), "type": ConversationType.PRIVATE.value},
            order=[("id", False)],
        )
        for row in rows:
            members = await self.participant_ids(row["id"])
            if len(members) == 2 and set(members) == pair:
                return Conversation.model_validate(row)
        return None

    async def create_private(
        self, user_a: str, user_b: str, known: Optional[List[ConversationSummary]] = None
    ) -> Tuple[Conversation, bool]:
        """Get or create the private conversation for a pair; returns (conversation, is_new)."""
        if not user_a or not user_b or user_a == user_b:
            raise InvalidParticipantCount("A private conversation needs exactly two users.")

        existing = await self.find_private_between(user_a, user_b, known=known)
        if existing is not None:
            return existing, False

        conversation = await self._create_with_participants(
            {"type": ConversationType.PRIVATE.value, "name": None}, [user_a, user_b]
        )
        return conversation, True

    async def create_group(
        self, name: str, creator_id: str, participant_ids: Iterable[str]
    ) -> Conversation:
        name = (name or "").strip()
        if not name:
            raise MissingName()

        members = _unique([creator_id, *participant_ids])
        if creator_id not in members or len(members) < 2:
            raise InvalidParticipantCount("Select at least one participant.")

        return await self._create_with_participants(
            {"type": ConversationType.GROUP.value, "name": name}, members
        )

    async def _create_with_participants(self, payload: dict, members: List[str]) -> Conversation:
        conversation = Conversation.model_validate(
            await self.store.insert(CONVERSATIONS, payload)
        )

        try:
            await self.store.insert_many(
                PARTICIPANTS,
                [{"conversation_id": conversation.id, "user_id": uid} for uid in members],
            )
        except CommunityError as e:
            logger.error(f"participant_attach_failed conversation={conversation.id} error={e}")
            try:
                await self.store.delete(CONVERSATIONS, {"id": conversation.id})
            except CommunityError as cleanup_error:
                logger.error(
                    f"orphan_conversation conversation={conversation.id} error={cleanup_error}"
                )
            raise PartialFailure() from e

        logger.info(
            f"conversation_created id={conversation.id} type={conversation.type.value} members={len(members)}"
        )
        return conversation

    async def list_for_user(self, user_id: str) -> List[ConversationSummary]:
        ids = await self.conversation_ids_for(user_id)
        if not ids:
            return []

        conversation_rows, participant_rows = await asyncio.gather(
            self.store.list(CONVERSATIONS, filters={"id": ids}),
            self.store.list(PARTICIPANTS, filters={"conversation_id": ids}),
        )
        conversations = [Conversation.model_validate(row) for row in conversation_rows]
        participants = [ConversationParticipant.model_validate(row) for row in participant_rows]

        profiles, last_messages = await asyncio.gather(
            self.profiles.get_profiles(p.user_id for p in participants),
            asyncio.gather(*(self.messages.last_message(c.id) for c in conversations)),
        )

        summaries = []
        for conversation, last_message in zip(conversations, last_messages):
            members = [p for p in participants if p.conversation_id == conversation.id]
            summaries.append(
                ConversationSummary(
                    conversation=conversation,
                    participants=members,
                    participant_profiles=[
                        profiles[p.user_id] for p in members if p.user_id in profiles
                    ],
                    last_message=last_message,
                    # TODO: derive from a per-participant read marker once the table has one
                    unread_count=0,
                )
            )

        summaries.sort(key=_recency, reverse=True)
        return summaries

    @staticmethod
    def title_of(
        summary: ConversationSummary,
        viewer_id: str,
        placeholder: str = PRIVATE_CONVERSATION_LABEL,
    ) -> str:
        conversation = summary.conversation
        if conversation.type == ConversationType.GROUP:
            return (conversation.name or "").strip() or placeholder

        for profile in summary.participant_profiles:
            if profile.user_id != viewer_id:
                return profile.username
        return placeholder

    @staticmethod
    def filter_summaries(
        summaries: List[ConversationSummary], query: str
    ) -> List[ConversationSummary]:
        needle = (query or "").strip().lower()
        if not needle:
            return list(summaries)

        def matches(summary: ConversationSummary) -> bool:
            haystack = [summary.conversation.name or ""]
            if summary.last_message:
                haystack.append(summary.last_message.content)
            haystack.extend(p.username for p in summary.participant_profiles)
            return any(needle in text.lower() for text in haystack)

        return [s for s in summaries if matches(s)]


def _recency(summary: ConversationSummary) -> Tuple[bool, datetime, int]:
    # Conversations with messages first, newest message first.
    if summary.last_message:
        return (True, summary.last_message.created_at, summary.last_message.id)
    return (False, summary.conversation.updated_at, summary.conversation.id)
