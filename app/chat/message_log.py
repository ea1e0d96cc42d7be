import logging
from datetime import datetime, timezone
from typing import List, Optional

from app.core.exceptions import AuthorizationError, CommunityError, EmptyContent
from app.core.store import CONVERSATIONS, MESSAGES, PARTICIPANTS, RowStore
from app.utils.profiles import ProfileDirectory

from .schemas import Message, MessageWithProfile

logger = logging.getLogger(__name__)

# Total order inside a conversation.
MESSAGE_ORDER = [("created_at", False), ("id", False)]
LATEST_FIRST = [("created_at", True), ("id", True)]


class MessageLog:
    """Append-only messages per conversation."""

    def __init__(self, store: RowStore, profiles: ProfileDirectory):
        self.store = store
        self.profiles = profiles

    async def append(self, conversation_id: int, sender_id: str, content: str) -> Message:
        text = (content or "").strip()
        if not text:
            raise EmptyContent()

        membership = await self.store.get(
            PARTICIPANTS, {"conversation_id": conversation_id, "user_id": sender_id}
        )
        if not membership:
            raise AuthorizationError()

        row = await self.store.insert(
            MESSAGES,
            {"conversation_id": conversation_id, "sender_id": sender_id, "content": text},
        )
        message = Message.model_validate(row)

        # The message is already stored; a failed bump only affects list ordering.
        try:
            await self.store.update(
                CONVERSATIONS,
                {"id": conversation_id},
                {"updated_at": datetime.now(timezone.utc).isoformat()},
            )
        except CommunityError as e:
            logger.warning(f"conversation_bump_failed id={conversation_id} error={e}")

        logger.info(f"message_sent id={message.id} conversation={conversation_id} sender={sender_id}")
        return message

    async def list_by_conversation(self, conversation_id: int) -> List[MessageWithProfile]:
        rows = await self.store.list(
            MESSAGES, filters={"conversation_id": conversation_id}, order=MESSAGE_ORDER
        )
        messages = sorted(
            (Message.model_validate(row) for row in rows), key=lambda m: m.order_key
        )

        try:
            profiles = await self.profiles.get_profiles(m.sender_id for m in messages)
        except CommunityError as e:
            logger.warning(f"sender_profiles_unavailable conversation={conversation_id} error={e}")
            profiles = {}

        return [
            MessageWithProfile(message=m, sender_profile=profiles.get(m.sender_id))
            for m in messages
        ]

    async def last_message(self, conversation_id: int) -> Optional[Message]:
        rows = await self.store.list(
            MESSAGES,
            filters={"conversation_id": conversation_id},
            order=LATEST_FIRST,
            limit=1,
        )
        return Message.model_validate(rows[0]) if rows else None
