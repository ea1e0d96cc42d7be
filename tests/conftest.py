import pytest
import pytest_asyncio

from app.core.store import FRIENDSHIPS, PROFILES
from app.community.session import CommunitySession
from app.utils.profiles import ProfileDirectory
from tests.fakes import FakeChangeFeed, InMemoryStore

ALICE = "user-alice"
BOB = "user-bob"
CAROL = "user-carol"
DAVE = "user-dave"


@pytest.fixture
def feed():
    return FakeChangeFeed()


@pytest.fixture
def store(feed):
    return InMemoryStore(feed)


@pytest.fixture
def profiles(store):
    return ProfileDirectory(store)


@pytest_asyncio.fixture
async def users(store):
    """Profiles for four riders."""
    for user_id, username, mileage in [
        (ALICE, "alice", 1200),
        (BOB, "bob", 800),
        (CAROL, "carol", 15000),
        (DAVE, "dave", 40),
    ]:
        await store.insert(PROFILES, {"user_id": user_id, "username": username, "mileage": mileage})
    return {"alice": ALICE, "bob": BOB, "carol": CAROL, "dave": DAVE}


async def make_friends(store, user_a, user_b):
    row = await store.insert(
        FRIENDSHIPS, {"user_1_id": user_a, "user_2_id": user_b, "status": "accepted"}
    )
    return row["id"]


@pytest_asyncio.fixture
async def session_factory(store, feed, profiles):
    """Build started sessions; all of them are stopped at teardown."""
    sessions = []

    async def factory(user_id, start=True, **kwargs):
        kwargs.setdefault("retries", 2)
        kwargs.setdefault("backoff", 0)
        session = CommunitySession(store, feed, profiles, user_id, **kwargs)
        sessions.append(session)
        if start:
            await session.start()
        return session

    yield factory

    for session in sessions:
        await session.stop()
