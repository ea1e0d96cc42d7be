"""
Unit tests for CommunitySession: the pending-to-existing transition on first
send, refresh ordering under interleaved events, draft handling on failure,
and the per-user views the client renders.
"""

import asyncio

import pytest

from app.chat.directory import ConversationDirectory
from app.chat.message_log import MessageLog
from app.chat.schemas import ExistingConversation, NoConversation, PendingConversation
from app.community.session import CommunitySession
from app.core.exceptions import TransientStoreError
from app.core.store import CONVERSATIONS, FRIENDSHIPS, MESSAGES, PARTICIPANTS, PROFILES
from app.utils.profiles import ProfileDirectory
from tests.conftest import ALICE, BOB, CAROL, DAVE, make_friends
from tests.fakes import FakeChangeFeed, InMemoryStore


def _contents(session):
    return [m.message.content for m in session.selected_messages]


class TestFirstMessage:

    @pytest.mark.asyncio
    async def test_pending_conversation_becomes_real_on_first_send(self, store, users, session_factory):
        await make_friends(store, ALICE, BOB)
        alice = await session_factory(ALICE)

        opened = await alice.message_friend(BOB)
        assert opened.ok
        assert alice.active == PendingConversation(target_user_id=BOB)
        assert store.tables[CONVERSATIONS] == []

        result = await alice.send_message("hello")

        assert result.ok
        conversation = store.tables[CONVERSATIONS][0]
        assert conversation["type"] == "private"
        assert {p["user_id"] for p in store.tables[PARTICIPANTS]} == {ALICE, BOB}
        assert alice.active == ExistingConversation(conversation_id=conversation["id"])
        assert _contents(alice) == ["hello"]
        assert alice.draft == ""
        assert alice.fanout.watched_conversation_ids == {conversation["id"]}

    @pytest.mark.asyncio
    async def test_message_friend_reopens_existing_conversation(self, store, users, session_factory):
        await make_friends(store, ALICE, BOB)
        alice = await session_factory(ALICE)
        await alice.message_friend(BOB)
        await alice.send_message("hello")
        await alice.close_conversation()

        await alice.message_friend(BOB)

        assert isinstance(alice.active, ExistingConversation)
        assert _contents(alice) == ["hello"]
        assert len(store.tables[CONVERSATIONS]) == 1

    @pytest.mark.asyncio
    async def test_receiver_sees_first_message_without_reconnecting(self, store, users, session_factory):
        await make_friends(store, ALICE, BOB)
        alice = await session_factory(ALICE)
        bob = await session_factory(BOB)
        assert bob.conversations == []

        await alice.message_friend(BOB)
        await alice.send_message("hello")

        conversation_id = alice.active_conversation_id()
        assert bob.fanout.watched_conversation_ids == {conversation_id}
        assert [s.last_message.content for s in bob.conversations] == ["hello"]

        await bob.open_conversation(conversation_id)
        await alice.send_message("still there?")

        assert _contents(bob) == ["hello", "still there?"]

    @pytest.mark.asyncio
    async def test_failed_create_keeps_pending_state(self, store, users, session_factory):
        await make_friends(store, ALICE, BOB)
        alice = await session_factory(ALICE)
        await alice.message_friend(BOB)
        store.fail_on[("insert", CONVERSATIONS)] = TransientStoreError()

        result = await alice.send_message("hello")

        assert not result.ok
        assert result.error_key == "errorStore"
        assert alice.active == PendingConversation(target_user_id=BOB)
        assert alice.draft == "hello"
        assert store.tables[MESSAGES] == []

    @pytest.mark.asyncio
    async def test_orphaned_conversation_is_reported(self, store, users, session_factory):
        await make_friends(store, ALICE, BOB)
        alice = await session_factory(ALICE)
        await alice.message_friend(BOB)
        store.fail_on[("insert_many", PARTICIPANTS)] = TransientStoreError()

        result = await alice.send_message("hello")

        assert result.error_key == "errorCreateConversation"
        assert isinstance(alice.active, PendingConversation)
        assert store.tables[CONVERSATIONS] == []
        assert store.tables[MESSAGES] == []

    @pytest.mark.asyncio
    async def test_cannot_message_a_stranger(self, store, users, session_factory):
        alice = await session_factory(ALICE)

        result = await alice.message_friend(DAVE)

        assert result.error_key == "errorNotAllowed"
        assert alice.active == NoConversation()


class TestSendMessage:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", ["", "   "])
    async def test_blank_message_keeps_draft(self, store, users, session_factory, content):
        await make_friends(store, ALICE, BOB)
        alice = await session_factory(ALICE)
        await alice.message_friend(BOB)
        await alice.send_message("hi")

        result = await alice.send_message(content)

        assert not result.ok
        assert result.error_key == "errorEmptyMessage"
        assert alice.draft == content
        assert len(store.tables[MESSAGES]) == 1

    @pytest.mark.asyncio
    async def test_send_without_conversation(self, users, session_factory):
        alice = await session_factory(ALICE)

        result = await alice.send_message("anyone?")

        assert result.error_key == "errorNoConversation"
        assert alice.draft == "anyone?"

    @pytest.mark.asyncio
    async def test_store_failure_keeps_draft(self, store, users, session_factory):
        await make_friends(store, ALICE, BOB)
        alice = await session_factory(ALICE)
        await alice.message_friend(BOB)
        await alice.send_message("first")
        store.fail_on[("insert", MESSAGES)] = TransientStoreError()

        result = await alice.send_message("second")

        assert result.error_key == "errorStore"
        assert alice.draft == "second"
        assert _contents(alice) == ["first"]

    @pytest.mark.asyncio
    async def test_draft_is_sent_when_no_content_given(self, store, users, session_factory):
        await make_friends(store, ALICE, BOB)
        alice = await session_factory(ALICE)
        await alice.message_friend(BOB)
        alice.draft = "  from the draft  "

        result = await alice.send_message()

        assert result.ok
        assert _contents(alice) == ["from the draft"]


class TestRefreshOrdering:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reverse", [False, True])
    async def test_delivery_order_does_not_change_final_history(self, reverse):
        feed = FakeChangeFeed(inline=False)
        store = InMemoryStore(feed)
        profiles = ProfileDirectory(store)
        for user_id, username in [(ALICE, "alice"), (BOB, "bob")]:
            await store.insert(PROFILES, {"user_id": user_id, "username": username})
        await make_friends(store, ALICE, BOB)
        log = MessageLog(store, profiles)
        conversation, _ = await ConversationDirectory(store, profiles, log).create_private(ALICE, BOB)

        alice = CommunitySession(store, feed, profiles, ALICE, retries=1, backoff=0)
        await alice.start()
        await alice.open_conversation(conversation.id)

        for text in ["one", "two", "three"]:
            await log.append(conversation.id, BOB, text)
        assert _contents(alice) == []

        if reverse:
            feed.pending.reverse()
        await feed.deliver_pending()

        assert _contents(alice) == ["one", "two", "three"]
        assert alice.conversations[0].last_message.content == "three"
        await alice.stop()

    @pytest.mark.asyncio
    async def test_messages_for_a_closed_conversation_are_dropped(self, store, users, session_factory):
        await make_friends(store, ALICE, BOB)
        await make_friends(store, ALICE, CAROL)
        alice = await session_factory(ALICE)
        with_bob, _ = await alice.directory.create_private(ALICE, BOB)
        with_carol, _ = await alice.directory.create_private(ALICE, CAROL)
        await alice.messages.append(with_bob.id, BOB, "from bob")
        await alice.open_conversation(with_carol.id)

        fetch = alice.messages.list_by_conversation

        async def slow_fetch(conversation_id):
            result = await fetch(conversation_id)
            alice.active = ExistingConversation(conversation_id=with_carol.id)
            return result

        alice.active = ExistingConversation(conversation_id=with_bob.id)
        alice.messages.list_by_conversation = slow_fetch
        await alice.refresh_messages(with_bob.id)

        assert alice.selected_messages == []

    @pytest.mark.asyncio
    async def test_older_message_fetch_never_overwrites_newer(self, store, users, session_factory):
        await make_friends(store, ALICE, BOB)
        alice = await session_factory(ALICE)
        conversation, _ = await alice.directory.create_private(ALICE, BOB)
        await alice.open_conversation(conversation.id)
        await alice.messages.append(conversation.id, BOB, "one")

        fetch = alice.messages.list_by_conversation
        fetched = asyncio.Event()
        release = asyncio.Event()
        calls = []

        async def held_fetch(conversation_id):
            calls.append(conversation_id)
            result = await fetch(conversation_id)
            if len(calls) == 1:
                fetched.set()
                await release.wait()
            return result

        alice.messages.list_by_conversation = held_fetch

        slow = asyncio.create_task(alice.refresh_messages(conversation.id))
        await fetched.wait()
        # The insert event drives a second, faster refresh through the fanout.
        await alice.messages.append(conversation.id, BOB, "two")
        assert _contents(alice) == ["one", "two"]

        release.set()
        await slow

        assert len(calls) == 2
        assert _contents(alice) == ["one", "two"]

    @pytest.mark.asyncio
    async def test_closed_socket_on_one_side_does_not_fail_the_other(
        self, store, users, session_factory
    ):
        await make_friends(store, ALICE, BOB)
        alice = await session_factory(ALICE)
        bob = await session_factory(BOB)

        async def socket_gone(session):
            raise RuntimeError("Cannot call send once a close message has been sent.")

        bob.on_change = socket_gone
        await alice.message_friend(BOB)

        first = await alice.send_message("first")
        second = await alice.send_message("second")

        assert first.ok and second.ok
        assert [m["content"] for m in store.tables[MESSAGES]] == ["first", "second"]

    @pytest.mark.asyncio
    async def test_older_conversation_list_never_overwrites_newer(self, users, session_factory):
        alice = await session_factory(ALICE)
        release = asyncio.Event()
        calls = []

        async def list_for_user(user_id):
            calls.append(user_id)
            if len(calls) == 1:
                await release.wait()
                return ["old"]
            return ["new"]

        alice.directory.list_for_user = list_for_user

        slow = asyncio.create_task(alice.refresh_conversations())
        await asyncio.sleep(0)
        await alice.refresh_conversations()
        release.set()
        await slow

        assert alice.conversations == ["new"]


class TestCreateConversation:

    @pytest.mark.asyncio
    async def test_single_invitee_reuses_private_conversation(self, store, users, session_factory):
        await make_friends(store, ALICE, BOB)
        alice = await session_factory(ALICE)

        first = await alice.create_conversation(None, [BOB])
        second = await alice.create_conversation("ignored", [BOB, ALICE])

        assert first.ok and second.ok
        assert first.data.id == second.data.id
        assert first.data.type == "private"
        assert len(store.tables[CONVERSATIONS]) == 1

    @pytest.mark.asyncio
    async def test_group_with_friends(self, store, users, session_factory):
        await make_friends(store, ALICE, BOB)
        await make_friends(store, CAROL, ALICE)
        alice = await session_factory(ALICE)

        result = await alice.create_conversation("  Alps 2026 ", [BOB, CAROL])

        assert result.ok
        assert result.data.name == "Alps 2026"
        assert alice.fanout.watched_conversation_ids == {result.data.id}
        assert [alice.title_of(s) for s in alice.conversations] == ["Alps 2026"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "name, participants, error_key",
        [
            ("Trip", [], "errorSelectParticipants"),
            ("Trip", [ALICE], "errorSelectParticipants"),
            ("   ", [BOB, CAROL], "errorConversationName"),
            ("Trip", [BOB, DAVE], "errorNotAllowed"),
        ],
    )
    async def test_rejected_creates_write_nothing(
        self, store, users, session_factory, name, participants, error_key
    ):
        await make_friends(store, ALICE, BOB)
        await make_friends(store, ALICE, CAROL)
        alice = await session_factory(ALICE)

        result = await alice.create_conversation(name, participants)

        assert result.error_key == error_key
        assert store.tables[CONVERSATIONS] == []


class TestFriends:

    @pytest.mark.asyncio
    async def test_request_then_accept_updates_both_sides(self, store, users, session_factory):
        alice = await session_factory(ALICE)
        bob = await session_factory(BOB)

        sent = await alice.send_friend_request(BOB)
        assert [f.profile.username for f in alice.sent_invites] == ["bob"]

        await bob.refresh_friends()
        assert [f.profile.username for f in bob.received_invites] == ["alice"]

        accepted = await bob.accept(sent.data.id)
        await alice.refresh_friends()

        assert accepted.ok
        assert [f.profile.username for f in bob.friends] == ["alice"]
        assert [f.profile.username for f in alice.friends] == ["bob"]
        assert alice.sent_invites == []

    @pytest.mark.asyncio
    async def test_duplicate_request_is_a_failure_result(self, store, users, session_factory):
        alice = await session_factory(ALICE)
        await alice.send_friend_request(BOB)

        result = await alice.send_friend_request(BOB)

        assert result.error_key == "errorDuplicateRequest"
        assert len(store.tables[FRIENDSHIPS]) == 1

    @pytest.mark.asyncio
    async def test_search_excludes_self_and_related_users(self, store, users, session_factory):
        await make_friends(store, ALICE, BOB)
        await store.insert(
            FRIENDSHIPS, {"user_1_id": CAROL, "user_2_id": ALICE, "status": "pending"}
        )
        alice = await session_factory(ALICE)

        everyone = await alice.search_users("a")
        nobody = await alice.search_users("  ")

        assert [p.username for p in everyone.data] == ["dave"]
        assert nobody.data == []

    @pytest.mark.asyncio
    async def test_available_participants(self, store, users, session_factory):
        await make_friends(store, ALICE, BOB)
        await make_friends(store, ALICE, CAROL)
        alice = await session_factory(ALICE)

        assert [f.profile.username for f in alice.available_participants()] == ["bob", "carol"]
        assert [f.profile.username for f in alice.available_participants("CAR")] == ["carol"]
        assert [f.profile.username for f in alice.available_participants("", [BOB])] == ["carol"]


class TestAnonymous:

    @pytest.mark.asyncio
    async def test_no_user_means_no_subscriptions_and_no_writes(self, store, feed, session_factory):
        session = await session_factory(None)

        result = await session.send_message("hi")

        assert result.error_key == "errorNotAllowed"
        assert feed.subscribe_calls == []
        assert session.conversations == []
        assert store.tables[MESSAGES] == []


class TestSnapshot:

    @pytest.mark.asyncio
    async def test_titles_and_sender_names(self, store, users, session_factory):
        await make_friends(store, ALICE, BOB)
        await make_friends(store, ALICE, CAROL)
        alice = await session_factory(ALICE)
        group = await alice.create_conversation("Ride club", [BOB, CAROL])
        await store.insert(PARTICIPANTS, {"conversation_id": group.data.id, "user_id": "user-ghost"})
        await alice.messages.append(group.data.id, "user-ghost", "boo")
        await alice.open_conversation(group.data.id)
        await alice.send_message("who is this?")
        await alice.message_friend(BOB)

        state = alice.snapshot()

        assert state["active"]["kind"] == "pending"
        assert state["active"]["title"] == "bob"
        assert [c["title"] for c in state["conversations"]] == ["Ride club"]

        await alice.open_conversation(group.data.id)
        state = alice.snapshot()

        assert state["active"] == {
            "kind": "existing",
            "conversation_id": group.data.id,
            "title": "Ride club",
        }
        assert [(m["sender_username"], m["is_own"]) for m in state["messages"]] == [
            ("Unknown user", False),
            ("alice", True),
        ]
        assert state["fanout_status"] == "subscribed"

    @pytest.mark.asyncio
    async def test_private_title_is_the_other_user(self, store, users, session_factory):
        await make_friends(store, ALICE, BOB)
        alice = await session_factory(ALICE)
        await alice.message_friend(BOB)
        await alice.send_message("hey")

        state = alice.snapshot()

        assert [c["title"] for c in state["conversations"]] == ["bob"]
        assert alice.snapshot(query="nothing matches")["conversations"] == []
