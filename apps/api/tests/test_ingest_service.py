from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Union
from unittest.mock import patch

import pytest
import pytest_asyncio
from sqlalchemy import func
from sqlalchemy.future import select

from ingestion.feed_client import FeedApiError
from ingestion.types import FeedMedia, FeedPost, FeedUser, FollowingPage, PostPage
from models.author import Author
from models.ingest_run import IngestRun
from models.post import Post
from models.user import User
from models.user_following import UserFollowing
from services.ingest import IngestFailedError, UserNotFoundError, ingest_user_data
from services.ingest_runs import IngestRunInProgressError, create_ingest_run


USER_ID = "ingest-user"

BOB = FeedUser(id="101", user_name="bob", name="Bob")
CAROL = FeedUser(id="102", user_name="carol", name="Carol")
DAVE = FeedUser(id="103", user_name="dave", name="Dave")


def _ago(hours: float) -> str:
    moment = datetime.now(timezone.utc) - timedelta(hours=hours)
    return moment.strftime("%a %b %d %H:%M:%S +0000 %Y")


def _post(post_id: int, author: FeedUser, hours_ago: float, **extra) -> FeedPost:
    return FeedPost(
        id=str(post_id),
        url=f"https://x.com/{author.user_name}/status/{post_id}",
        text=f"post {post_id}",
        created_at=_ago(hours_ago),
        author=author,
        conversation_id=str(post_id),
        **extra,
    )


PageOrError = Union[PostPage, FollowingPage, Exception]


class FakeFeedClient:
    """In-memory feed keyed by (handle, cursor)."""

    def __init__(
        self,
        followings: Optional[Dict[Optional[str], PageOrError]] = None,
        posts: Optional[Dict[str, Dict[Optional[str], PageOrError]]] = None,
    ):
        self.followings = followings or {None: FollowingPage(users=[])}
        self.posts = posts or {}
        self.post_calls: List[tuple] = []
        self.following_calls: List[Optional[str]] = []
        self.closed = False

    async def get_user_followings(self, handle, cursor=None):
        self.following_calls.append(cursor)
        page = self.followings[cursor]
        if isinstance(page, Exception):
            raise page
        return page

    async def get_user_posts(self, handle, cursor=None):
        self.post_calls.append((handle, cursor))
        page = self.posts.get(handle, {}).get(cursor, PostPage(posts=[]))
        if isinstance(page, Exception):
            raise page
        return page

    async def aclose(self):
        self.closed = True


class FakeEnrichment:
    async def describe_images(self, urls):
        return [f"chart {index}" for index, _ in enumerate(urls, start=1)]

    async def transcribe_video(self, url, duration_seconds, size_bytes):
        raise RuntimeError("no transcription in tests")


@pytest_asyncio.fixture
async def ingest_db(session_maker):
    async with session_maker() as db:
        db.add(User(id=USER_ID, email="alice@example.com", x_username="alice"))
        db.add(User(id="unlinked-user", email="nobody@example.com"))
        await db.commit()

    with (
        patch("services.ingest.async_session_maker", session_maker),
        patch("services.ingest_runs.async_session_maker", session_maker),
        patch("services.ingest.build_enrichment_client", return_value=None),
    ):
        yield session_maker


@pytest.fixture
def delays():
    return []


@pytest.fixture
def fake_sleep(delays):
    async def _sleep(delay):
        delays.append(delay)

    return _sleep


async def _runs(session_maker) -> List[IngestRun]:
    async with session_maker() as db:
        result = await db.execute(select(IngestRun).where(IngestRun.user_id == USER_ID))
        return list(result.scalars().all())


async def _posts(session_maker) -> List[Post]:
    async with session_maker() as db:
        result = await db.execute(
            select(Post).where(Post.user_id == USER_ID).order_by(Post.published_at.desc())
        )
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_no_follows_completes_ok_with_zero_posts(ingest_db, fake_sleep):
    client = FakeFeedClient()

    summary = await ingest_user_data(USER_ID, 24, feed_client=client, sleep=fake_sleep)

    assert summary["status"] == "ok"
    assert summary["fetched_count"] == 0
    runs = await _runs(ingest_db)
    assert len(runs) == 1
    assert runs[0].status == "ok"
    assert runs[0].completed_at is not None
    assert runs[0].fetched_count == 0
    assert await _posts(ingest_db) == []
    assert client.closed is False


@pytest.mark.asyncio
async def test_backfill_keeps_original_posts_inside_window(ingest_db, fake_sleep):
    base = 1_860_000_000_000_000_000
    newest = _post(base + 5005, BOB, 1)
    client = FakeFeedClient(
        followings={None: FollowingPage(users=[BOB])},
        posts={
            "bob": {
                None: PostPage(
                    posts=[
                        newest,
                        _post(base + 5004, BOB, 2, is_retweet=True),
                        _post(base + 5003, BOB, 3, is_reply=True, in_reply_to_user_id="101"),
                        _post(base + 5002, BOB, 4, is_reply=True, in_reply_to_user_id="999"),
                        _post(base + 5001, BOB, 5, is_quote=True),
                        _post(base + 5000, BOB, 6),
                    ],
                    has_next_page=True,
                    next_cursor="bob-2",
                ),
                "bob-2": PostPage(
                    posts=[_post(base + 4000, BOB, 30), _post(base + 3999, BOB, 31)],
                    has_next_page=True,
                    next_cursor="bob-3",
                ),
            }
        },
    )

    summary = await ingest_user_data(USER_ID, 24, feed_client=client, sleep=fake_sleep)

    assert summary["fetched_count"] == 3
    posts = await _posts(ingest_db)
    assert [int(post.x_post_id) - base for post in posts] == [5005, 5003, 5000]
    assert all(post.edited_seen is False for post in posts)
    assert posts[0].url == f"https://x.com/bob/status/{base + 5005}"
    assert client.post_calls == [("bob", None), ("bob", "bob-2")]

    async with ingest_db() as db:
        author = await db.get(Author, 101)
    expected_last_seen = datetime.now(timezone.utc) - timedelta(hours=1)
    last_seen = author.last_seen_at.replace(tzinfo=timezone.utc) if author.last_seen_at.tzinfo is None else author.last_seen_at
    assert abs((last_seen - expected_last_seen).total_seconds()) < 120

    run = (await _runs(ingest_db))[0]
    assert run.status == "ok"
    assert run.fetched_count == 3
    assert int(run.since_id) == base + 5005


@pytest.mark.asyncio
async def test_repeat_runs_do_not_duplicate_posts(ingest_db, fake_sleep):
    def build_client():
        return FakeFeedClient(
            followings={None: FollowingPage(users=[BOB])},
            posts={"bob": {None: PostPage(posts=[_post(7002, BOB, 1), _post(7001, BOB, 2)])}},
        )

    first = await ingest_user_data(USER_ID, 24, feed_client=build_client(), sleep=fake_sleep)
    second = await ingest_user_data(USER_ID, 24, feed_client=build_client(), sleep=fake_sleep)

    assert first["fetched_count"] == 2
    assert second["fetched_count"] == 0
    assert len(await _posts(ingest_db)) == 2
    runs = await _runs(ingest_db)
    assert sorted(run.status for run in runs) == ["ok", "ok"]


@pytest.mark.asyncio
async def test_regular_mode_reads_a_single_page_per_author(ingest_db, fake_sleep):
    client = FakeFeedClient(
        followings={None: FollowingPage(users=[BOB])},
        posts={
            "bob": {
                None: PostPage(posts=[_post(8001, BOB, 200)], has_next_page=True, next_cursor="bob-2"),
                "bob-2": PostPage(posts=[_post(8000, BOB, 300)]),
            }
        },
    )

    summary = await ingest_user_data(USER_ID, 0, feed_client=client, sleep=fake_sleep)

    assert summary["fetched_count"] == 1
    assert client.post_calls == [("bob", None)]


@pytest.mark.asyncio
async def test_following_refresh_respects_cap_and_paginates(ingest_db, fake_sleep, delays):
    client = FakeFeedClient(
        followings={
            None: FollowingPage(users=[BOB], has_next_page=True, next_cursor="f-2"),
            "f-2": FollowingPage(users=[CAROL, DAVE], has_next_page=True, next_cursor="f-3"),
        }
    )

    with patch("services.ingest.settings.MAX_FOLLOWING_LIMIT", 2):
        summary = await ingest_user_data(USER_ID, 0, feed_client=client, sleep=fake_sleep)

    assert summary["following_count"] == 2
    assert client.following_calls == [None, "f-2"]
    async with ingest_db() as db:
        count = await db.execute(
            select(func.count()).select_from(UserFollowing).where(UserFollowing.user_id == USER_ID)
        )
        assert count.scalar_one() == 2
    assert delays[0] == pytest.approx(0.1)


@pytest.mark.asyncio
async def test_single_author_failure_is_skipped(ingest_db, fake_sleep):
    client = FakeFeedClient(
        followings={None: FollowingPage(users=[BOB, CAROL])},
        posts={
            "bob": {None: PostPage(posts=[_post(6001, BOB, 1)])},
            "carol": {None: FeedApiError(404, "not found")},
        },
    )

    summary = await ingest_user_data(USER_ID, 24, feed_client=client, sleep=fake_sleep)

    assert summary["status"] == "ok"
    assert summary["authors_skipped"] == 1
    assert [int(post.x_post_id) for post in await _posts(ingest_db)] == [6001]


@pytest.mark.asyncio
async def test_persistent_rate_limit_on_following_finalizes_rate_limited(ingest_db, fake_sleep, delays):
    client = FakeFeedClient(followings={None: FeedApiError(429, "too many requests")})

    with pytest.raises(IngestFailedError) as exc_info:
        await ingest_user_data(USER_ID, 24, feed_client=client, sleep=fake_sleep)

    assert exc_info.value.status == "rate_limited"
    run = (await _runs(ingest_db))[0]
    assert run.status == "rate_limited"
    assert run.completed_at is not None
    assert run.rate_limit_hits == 4
    assert run.retried == 3
    assert run.err_text
    assert len(run.err_text) <= 1000
    assert delays == sorted(delays) and len(set(delays)) == 3


@pytest.mark.asyncio
async def test_permanent_following_failure_finalizes_error(ingest_db, fake_sleep):
    client = FakeFeedClient(followings={None: FeedApiError(500, "x" * 3000)})

    with pytest.raises(IngestFailedError) as exc_info:
        await ingest_user_data(USER_ID, 24, feed_client=client, sleep=fake_sleep)

    assert exc_info.value.status == "error"
    run = (await _runs(ingest_db))[0]
    assert run.status == "error"
    assert len(run.err_text) == 1000


@pytest.mark.asyncio
async def test_active_run_blocks_second_ingest(ingest_db, fake_sleep):
    async with ingest_db() as db:
        active = await create_ingest_run(db, USER_ID)

    with pytest.raises(IngestRunInProgressError):
        await ingest_user_data(USER_ID, 24, feed_client=FakeFeedClient(), sleep=fake_sleep)

    runs = await _runs(ingest_db)
    assert [run.id for run in runs] == [active.id]
    assert runs[0].completed_at is None


@pytest.mark.asyncio
async def test_pre_opened_run_is_used_and_completed(ingest_db, fake_sleep):
    async with ingest_db() as db:
        opened = await create_ingest_run(db, USER_ID)

    summary = await ingest_user_data(USER_ID, 24, run_id=opened.id, feed_client=FakeFeedClient(), sleep=fake_sleep)

    assert summary["ingest_run_id"] == opened.id
    runs = await _runs(ingest_db)
    assert len(runs) == 1
    assert runs[0].status == "ok"


@pytest.mark.asyncio
async def test_user_without_handle_is_rejected(ingest_db, fake_sleep):
    with pytest.raises(UserNotFoundError):
        await ingest_user_data("unlinked-user", 24, feed_client=FakeFeedClient(), sleep=fake_sleep)
    with pytest.raises(UserNotFoundError):
        await ingest_user_data("missing-user", 24, feed_client=FakeFeedClient(), sleep=fake_sleep)


@pytest.mark.asyncio
async def test_media_descriptions_are_appended_before_insert(ingest_db, fake_sleep):
    post = _post(9101, BOB, 1, media=FeedMedia(photo_urls=["https://img.test/1.jpg"]))
    client = FakeFeedClient(
        followings={None: FollowingPage(users=[BOB])},
        posts={"bob": {None: PostPage(posts=[post])}},
    )

    await ingest_user_data(
        USER_ID,
        24,
        feed_client=client,
        enrichment_client=FakeEnrichment(),
        sleep=fake_sleep,
    )

    stored = (await _posts(ingest_db))[0]
    assert stored.text == "post 9101\n\n[Image 1: chart 1]"


@pytest.mark.asyncio
async def test_author_delay_between_authors(ingest_db, fake_sleep, delays):
    client = FakeFeedClient(followings={None: FollowingPage(users=[BOB, CAROL, DAVE])})

    await ingest_user_data(USER_ID, 0, feed_client=client, sleep=fake_sleep)

    assert delays == [pytest.approx(0.2), pytest.approx(0.2)]
    assert [handle for handle, _ in client.post_calls] == ["dave", "carol", "bob"]


class FailingImageEnrichment:
    async def describe_images(self, urls):
        raise RuntimeError("vision model unavailable")

    async def transcribe_video(self, url, duration_seconds, size_bytes):
        raise RuntimeError("no transcription in tests")


@pytest.mark.asyncio
async def test_unparsable_timestamp_skips_only_that_post(ingest_db, fake_sleep):
    broken = FeedPost(
        id="9202",
        url="https://x.com/bob/status/9202",
        text="broken clock",
        created_at="garbage",
        author=BOB,
        conversation_id="9202",
    )
    client = FakeFeedClient(
        followings={None: FollowingPage(users=[BOB])},
        posts={"bob": {None: PostPage(posts=[_post(9203, BOB, 1), broken, _post(9201, BOB, 2)])}},
    )

    summary = await ingest_user_data(USER_ID, 24, feed_client=client, sleep=fake_sleep)

    assert summary["status"] == "ok"
    assert summary["fetched_count"] == 2
    assert [int(post.x_post_id) for post in await _posts(ingest_db)] == [9203, 9201]
    assert (await _runs(ingest_db))[0].status == "ok"


@pytest.mark.asyncio
async def test_failed_image_description_still_stores_plain_post(ingest_db, fake_sleep):
    post = _post(9301, BOB, 1, media=FeedMedia(photo_urls=["https://img.test/1.jpg"]))
    client = FakeFeedClient(
        followings={None: FollowingPage(users=[BOB])},
        posts={"bob": {None: PostPage(posts=[post])}},
    )

    summary = await ingest_user_data(
        USER_ID,
        24,
        feed_client=client,
        enrichment_client=FailingImageEnrichment(),
        sleep=fake_sleep,
    )

    assert summary["status"] == "ok"
    [stored] = await _posts(ingest_db)
    assert stored.text == "post 9301"


@pytest.mark.asyncio
async def test_invalid_followed_accounts_do_not_use_up_the_cap(ingest_db, fake_sleep):
    nameless = FeedUser(id="104", user_name="", name="Nameless")
    bogus = FeedUser(id="not-a-number", user_name="bogus", name="Bogus")
    client = FakeFeedClient(
        followings={None: FollowingPage(users=[bogus, nameless, BOB, CAROL, DAVE])},
    )

    with patch("services.ingest.settings.MAX_FOLLOWING_LIMIT", 2):
        summary = await ingest_user_data(USER_ID, 0, feed_client=client, sleep=fake_sleep)

    assert summary["following_count"] == 2
    async with ingest_db() as db:
        result = await db.execute(
            select(UserFollowing.x_author_id)
            .where(UserFollowing.user_id == USER_ID)
            .order_by(UserFollowing.x_author_id)
        )
        assert list(result.scalars().all()) == [101, 102]
