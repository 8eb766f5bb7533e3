"""Typed payloads returned by the feed API client."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse


TWITTER_HOSTS = {"twitter.com", "x.com", "www.twitter.com", "www.x.com"}
RUBY_DATE_FORMAT = "%a %b %d %H:%M:%S %z %Y"


def _as_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _as_int(value: Any) -> Optional[int]:
    text = _as_str(value)
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        return None


def parse_feed_timestamp(value: Any) -> Optional[datetime]:
    """Parse upstream timestamps ("Mon Dec 01 08:24:02 +0000 2025" or ISO-8601) to UTC."""
    text = _as_str(value)
    if not text:
        return None
    try:
        parsed = datetime.strptime(text, RUBY_DATE_FORMAT)
    except ValueError:
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def normalize_post_url(raw_url: str, author_handle: str, post_id: str) -> str:
    """Return a canonical status URL without query string or fragment."""
    fallback = f"https://twitter.com/{author_handle}/status/{post_id}"
    if not raw_url:
        return fallback
    try:
        parsed = urlparse(raw_url)
    except ValueError:
        return fallback
    if parsed.netloc not in TWITTER_HOSTS or "/status/" not in parsed.path:
        return fallback
    scheme = parsed.scheme or "https"
    host = parsed.netloc.removeprefix("www.")
    return f"{scheme}://{host}{parsed.path}"


@dataclass(frozen=True)
class AuthorRecord:
    x_author_id: int
    handle: str
    display_name: Optional[str] = None


@dataclass(frozen=True)
class PostRecord:
    x_post_id: int
    author_id: int
    published_at: datetime
    url: str
    text: str
    conversation_id: Optional[int] = None


@dataclass(frozen=True)
class FeedUser:
    id: str
    user_name: str
    name: str = ""
    url: str = ""
    profile_picture: str = ""
    description: str = ""
    followers: int = 0
    following: int = 0
    created_at: str = ""

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "FeedUser":
        return cls(
            id=_as_str(payload.get("id")),
            user_name=_as_str(payload.get("userName")),
            name=_as_str(payload.get("name")),
            url=_as_str(payload.get("url")),
            profile_picture=_as_str(payload.get("profilePicture")),
            description=_as_str(payload.get("description")),
            followers=_as_int(payload.get("followers")) or 0,
            following=_as_int(payload.get("following")) or 0,
            created_at=_as_str(payload.get("createdAt")),
        )

    def to_author_record(self) -> AuthorRecord:
        author_id = _as_int(self.id)
        if author_id is None:
            raise ValueError(f"author id {self.id!r} is not numeric")
        if not self.user_name:
            raise ValueError(f"author {author_id} has no handle")
        return AuthorRecord(
            x_author_id=author_id,
            handle=self.user_name,
            display_name=self.name or None,
        )


@dataclass(frozen=True)
class FeedVideo:
    url: str
    duration_ms: int = 0
    thumbnail_url: str = ""

    @property
    def duration_seconds(self) -> int:
        return max(self.duration_ms, 0) // 1000


@dataclass(frozen=True)
class FeedMedia:
    photo_urls: List[str] = field(default_factory=list)
    videos: List[FeedVideo] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["FeedMedia"]:
        if not isinstance(payload, dict):
            return None
        photos = [
            _as_str(row.get("url"))
            for row in payload.get("photos") or []
            if isinstance(row, dict) and _as_str(row.get("url"))
        ]
        videos = [
            FeedVideo(
                url=_as_str(row.get("url")),
                duration_ms=_as_int(row.get("duration_ms")) or 0,
                thumbnail_url=_as_str(row.get("thumbnail_url")),
            )
            for row in payload.get("videos") or []
            if isinstance(row, dict) and _as_str(row.get("url"))
        ]
        if not photos and not videos:
            return None
        return cls(photo_urls=photos, videos=videos)


@dataclass(frozen=True)
class FeedPost:
    id: str
    url: str
    text: str
    created_at: str
    author: FeedUser
    is_reply: bool = False
    in_reply_to_id: str = ""
    in_reply_to_user_id: str = ""
    conversation_id: str = ""
    is_retweet: bool = False
    is_quote: bool = False
    media: Optional[FeedMedia] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "FeedPost":
        author = payload.get("author") if isinstance(payload.get("author"), dict) else {}
        return cls(
            id=_as_str(payload.get("id")),
            url=_as_str(payload.get("url")),
            text=str(payload.get("text") or ""),
            created_at=_as_str(payload.get("createdAt")),
            author=FeedUser.from_payload(author),
            is_reply=bool(payload.get("isReply")),
            in_reply_to_id=_as_str(payload.get("inReplyToId")),
            in_reply_to_user_id=_as_str(payload.get("inReplyToUserId")),
            conversation_id=_as_str(payload.get("conversationId")),
            is_retweet=bool(payload.get("retweeted_tweet")),
            is_quote=bool(payload.get("quoted_tweet")),
            media=FeedMedia.from_payload(payload.get("media")),
        )

    def is_original(self) -> bool:
        """Original posts: no reposts, no quotes, replies only to the author's own thread."""
        if self.is_retweet or self.is_quote:
            return False
        if not self.is_reply:
            return True
        author_id = _as_int(self.author.id)
        reply_target = _as_int(self.in_reply_to_user_id)
        return author_id is not None and reply_target == author_id

    def to_record(self, published_at: datetime, text: Optional[str] = None) -> PostRecord:
        post_id = _as_int(self.id)
        if post_id is None:
            raise ValueError(f"post id {self.id!r} is not numeric")
        author_id = _as_int(self.author.id)
        if author_id is None:
            raise ValueError(f"post {post_id} has no numeric author id")
        return PostRecord(
            x_post_id=post_id,
            author_id=author_id,
            published_at=published_at,
            url=normalize_post_url(self.url, self.author.user_name, self.id),
            text=self.text if text is None else text,
            conversation_id=_as_int(self.conversation_id),
        )


@dataclass(frozen=True)
class FollowingPage:
    users: List[FeedUser]
    has_next_page: bool = False
    next_cursor: str = ""


@dataclass(frozen=True)
class PostPage:
    posts: List[FeedPost]
    has_next_page: bool = False
    next_cursor: str = ""
