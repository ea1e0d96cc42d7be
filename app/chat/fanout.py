import asyncio
import logging
from typing import Any, Awaitable, Callable, FrozenSet, List, Optional

from app.core.exceptions import CommunityError
from app.core.store import (
    MESSAGES,
    PARTICIPANTS,
    ChangeEvent,
    ChangeFeed,
    eq_filter,
    in_filter,
)

from .directory import ConversationDirectory

logger = logging.getLogger(__name__)

IDLE = "idle"
SUBSCRIBING = "subscribing"
SUBSCRIBED = "subscribed"
DEGRADED = "degraded"
CLOSED = "closed"

_BROKEN_STATES = {"CHANNEL_ERROR", "TIMED_OUT"}


def conversation_filter(conversation_ids: List[int]) -> str:
    """Realtime filter for the watched set (one id uses ``eq``, several use ``in``)."""
    if len(conversation_ids) == 1:
        return eq_filter("conversation_id", conversation_ids[0])
    return in_filter("conversation_id", conversation_ids)


class FanoutController:
    """Keeps one live ``messages`` subscription covering every conversation
    the local user participates in.

    Every insert event triggers a full re-fetch instead of a local patch:
    the open conversation's messages when the event belongs to it, and the
    conversation list always. Ordering therefore comes from the store query,
    not from event arrival.

    Optionally a second subscription watches the user's own
    ``conversation_participants`` rows, so conversations created by someone
    else rebuild the message subscription too.
    """

    def __init__(
        self,
        directory: ConversationDirectory,
        feed: ChangeFeed,
        refresh_messages: Callable[[int], Awaitable[None]],
        refresh_conversations: Callable[[], Awaitable[None]],
        active_conversation_id: Callable[[], Optional[int]],
        retries: int = 3,
        backoff: float = 0.5,
        watch_membership: bool = True,
    ):
        self.directory = directory
        self.feed = feed
        self._refresh_messages = refresh_messages
        self._refresh_conversations = refresh_conversations
        self._active_conversation_id = active_conversation_id
        self.retries = max(1, retries)
        self.backoff = backoff
        self.watch_membership = watch_membership

        self.user_id: Optional[str] = None
        self.watched_conversation_ids: FrozenSet[int] = frozenset()
        self.status = IDLE

        self._handle: Any = None
        self._membership_handle: Any = None
        self._generation = 0
        self._failed_generation = None
        self._rebuilds = 0
        self._lock = asyncio.Lock()
        self._tasks = set()

    @property
    def subscribed(self) -> bool:
        return self._handle is not None

    async def start(self, user_id: str) -> None:
        self.user_id = user_id
        if user_id is None:
            return
        if self.watch_membership and self._membership_handle is None:
            self._membership_handle = await self._open(
                PARTICIPANTS, eq_filter("user_id", user_id), self._on_membership_event, None
            )
        await self.resubscribe()

    async def resubscribe(self) -> None:
        """Replace the message subscription with one built from fresh membership."""
        async with self._lock:
            await self._close_messages()
            if self.user_id is None:
                return

            try:
                ids = await self.directory.conversation_ids_for(self.user_id)
            except CommunityError as e:
                logger.error(f"fanout_membership_query_failed user={self.user_id} error={e}")
                self.watched_conversation_ids = frozenset()
                self.status = DEGRADED
                return

            self.watched_conversation_ids = frozenset(ids)
            if not ids:
                logger.info(f"fanout_no_conversations user={self.user_id}")
                self.status = IDLE
                return

            self._generation += 1
            generation = self._generation
            self.status = SUBSCRIBING
            self._handle = await self._open(
                MESSAGES,
                conversation_filter(ids),
                self._on_message_event,
                lambda state: self._on_status(generation, state),
            )
            if self._handle is not None:
                logger.info(f"fanout_subscribed user={self.user_id} conversations={ids}")
            else:
                self.status = DEGRADED

    async def stop(self) -> None:
        async with self._lock:
            self.user_id = None
            await self._close_messages()
            handle, self._membership_handle = self._membership_handle, None
            if handle is not None:
                await self._close(handle)
            self.watched_conversation_ids = frozenset()
            self.status = CLOSED
        for task in list(self._tasks):
            task.cancel()

    async def _open(self, table: str, filter: str, on_event, on_status):
        for attempt in range(1, self.retries + 1):
            try:
                return await self.feed.subscribe(table, filter, on_event, on_status)
            except CommunityError as e:
                logger.warning(
                    f"fanout_subscribe_failed table={table} attempt={attempt}/{self.retries} error={e}"
                )
                if attempt < self.retries:
                    await asyncio.sleep(self.backoff * 2 ** (attempt - 1))
        logger.error(f"fanout_subscribe_gave_up table={table} user={self.user_id}")
        return None

    async def _close_messages(self) -> None:
        handle, self._handle = self._handle, None
        self._generation += 1
        if handle is not None:
            await self._close(handle)

    async def _close(self, handle) -> None:
        try:
            await self.feed.unsubscribe(handle)
        except CommunityError as e:
            logger.warning(f"fanout_unsubscribe_failed error={e}")

    def _on_status(self, generation: int, state: str) -> None:
        if generation != self._generation:
            return
        if state == "SUBSCRIBED":
            self.status = SUBSCRIBED
            self._rebuilds = 0
        elif state in _BROKEN_STATES:
            self.status = DEGRADED
            # One rebuild per broken channel, however many errors it reports.
            if self._failed_generation == generation:
                return
            self._failed_generation = generation
            if self._rebuilds >= self.retries:
                logger.error(
                    f"fanout_rebuild_gave_up user={self.user_id} status={state} attempts={self._rebuilds}"
                )
                return
            self._rebuilds += 1
            delay = self.backoff * 2 ** (self._rebuilds - 1)
            logger.warning(
                f"fanout_subscription_lost user={self.user_id} status={state} "
                f"rebuild={self._rebuilds}/{self.retries} in={delay}s"
            )
            self._spawn(self._rebuild_later(delay))
        elif state == "CLOSED":
            self.status = CLOSED

    async def _rebuild_later(self, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self.resubscribe()
        except Exception:
            logger.exception(f"fanout_rebuild_failed user={self.user_id}")

    def _spawn(self, coroutine) -> None:
        task = asyncio.create_task(coroutine)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _on_message_event(self, event: ChangeEvent) -> None:
        if event.type != "insert":
            return

        conversation_id = event.row.get("conversation_id")
        try:
            if conversation_id is not None and conversation_id == self._active_conversation_id():
                await self._refresh_messages(conversation_id)
            await self._refresh_conversations()
        except CommunityError as e:
            logger.error(f"fanout_refresh_failed conversation={conversation_id} error={e}")
        except Exception:
            # Nothing raised here may reach the realtime transport.
            logger.exception(f"fanout_event_handler_error conversation={conversation_id}")

    async def _on_membership_event(self, event: ChangeEvent) -> None:
        if event.type != "insert":
            return
        if event.row.get("conversation_id") in self.watched_conversation_ids:
            return

        logger.info(
            f"fanout_membership_changed user={self.user_id} conversation={event.row.get('conversation_id')}"
        )
        try:
            await self.resubscribe()
            await self._refresh_conversations()
        except CommunityError as e:
            logger.error(f"fanout_refresh_failed error={e}")
        except Exception:
            logger.exception(f"fanout_membership_handler_error user={self.user_id}")
