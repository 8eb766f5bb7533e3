"""Q&A over a user's stored posts: answer generation and question history."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from fastapi import HTTPException
from openai import AsyncOpenAI, OpenAIError, RateLimitError
from sqlalchemy import delete, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.author import Author
from models.ingest_run import new_sortable_id
from models.post import Post
from models.qa_message import QAMessage, QASource
from services.posts import get_posts_by_date_range, post_with_author

logger = logging.getLogger(__name__)

NO_CONTENT_ANSWER = "No posts were found in the selected date range. Try widening the range."
MIN_SOURCES = 3
PREVIEW_CHARS = 200
MAX_QA_PAGE = 50

SYSTEM_PROMPT = (
    "You answer questions about a user's social media feed using ONLY the posts provided. "
    "Do not use outside knowledge. Be concise and factual, use bullet points when there are "
    "several topics, and say so plainly when the posts do not cover the question. "
    "Cite the posts you rely on as [Post N]."
)

_CITATION_RE = re.compile(r"\[Post (\d+)\]")


class AnswerUnavailableError(RuntimeError):
    """Raised when the answering model cannot produce an answer."""


class AnswerRateLimitedError(RuntimeError):
    """Raised when the answering model rejects the call for rate limiting."""


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = _as_utc(value)
    return value.isoformat() if value else None


def _preview(text: str) -> str:
    text = text or ""
    if len(text) <= PREVIEW_CHARS:
        return text
    return text[:PREVIEW_CHARS] + "..."


def format_posts_for_prompt(posts: List[Dict[str, Any]]) -> str:
    blocks = []
    for index, post in enumerate(posts, start=1):
        display_name = post["author_display_name"] or post["author_handle"]
        published_at = post["published_at"].isoformat() if post["published_at"] else ""
        blocks.append(
            f"[Post {index}]\n"
            f"Author: {display_name} (@{post['author_handle']})\n"
            f"Published: {published_at}\n"
            f"URL: {post['url']}\n"
            f"Content: {post['text']}\n"
        )
    return "\n".join(blocks)


def select_source_indices(post_count: int) -> List[int]:
    """Spread fallback citations over the window: first, quartiles, middle, last."""
    if post_count <= 0:
        return []
    if post_count <= MIN_SOURCES:
        return list(range(post_count))
    indices = [0, post_count // 2]
    if post_count > 6:
        indices.extend([post_count // 4, (post_count * 3) // 4])
    indices.append(post_count - 1)
    return sorted(set(indices))


def extract_cited_post_ids(answer: str, posts: List[Dict[str, Any]]) -> List[int]:
    """Map ``[Post N]`` citations in the answer back to post ids, in order of first mention."""
    cited: List[int] = []
    for match in _CITATION_RE.finditer(answer or ""):
        position = int(match.group(1))
        if 1 <= position <= len(posts):
            post_id = posts[position - 1]["x_post_id"]
            if post_id not in cited:
                cited.append(post_id)
    return cited


def ensure_minimum_sources(source_ids: List[int], posts: List[Dict[str, Any]], minimum: int = MIN_SOURCES) -> List[int]:
    if len(source_ids) >= minimum or len(posts) <= minimum:
        return source_ids
    padded = list(source_ids)
    for post in posts:
        if post["x_post_id"] not in padded:
            padded.append(post["x_post_id"])
            if len(padded) >= minimum:
                break
    return padded


def _is_placeholder_key(api_key: str) -> bool:
    return not api_key or "your_" in api_key or api_key == "test-key"


class AnswerClient:
    """Chat-completion answering over an OpenAI-compatible endpoint (OpenRouter)."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.model = model or settings.QA_ANSWER_MODEL
        self._client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=base_url or settings.OPENROUTER_BASE_URL,
            timeout=settings.QA_ANSWER_TIMEOUT_SECONDS,
            default_headers={"X-Title": "AskYourFeed"},
        )

    async def generate_answer(self, question: str, posts: List[Dict[str, Any]]) -> Tuple[str, List[int]]:
        """Return the answer text and the ids of the posts it draws on."""
        user_prompt = (
            f"Here are the user's feed posts:\n\n{format_posts_for_prompt(posts)}\n"
            f"User's question: {question}"
        )
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": user_prompt},
                ],
            )
        except RateLimitError as exc:
            raise AnswerRateLimitedError(str(exc)) from exc
        except OpenAIError as exc:
            raise AnswerUnavailableError(str(exc)) from exc

        if not response.choices:
            raise AnswerUnavailableError("no choices in answer response")
        answer = (response.choices[0].message.content or "").strip()
        if not answer:
            raise AnswerUnavailableError("empty answer")

        source_ids = extract_cited_post_ids(answer, posts)
        if not source_ids:
            source_ids = [posts[index]["x_post_id"] for index in select_source_indices(len(posts))]
        return answer, ensure_minimum_sources(source_ids, posts)


def build_answer_client() -> Optional[AnswerClient]:
    """Return an answering client, or None when no usable credential is configured."""
    api_key = (settings.OPENROUTER_QA_API_KEY or settings.OPENROUTER_API_KEY or "").strip()
    if _is_placeholder_key(api_key):
        return None
    return AnswerClient(api_key)


def _serialize_source(post: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "x_post_id": str(post["x_post_id"]),
        "author_handle": post["author_handle"],
        "author_display_name": post["author_display_name"] or post["author_handle"],
        "published_at": _iso(post["published_at"]),
        "url": post["url"],
        "text_preview": _preview(post["text"]),
        "text": post["text"],
    }


def _serialize_detail(qa: QAMessage, sources: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "id": qa.id,
        "question": qa.question,
        "answer": qa.answer,
        "date_from": _iso(qa.date_from),
        "date_to": _iso(qa.date_to),
        "created_at": _iso(qa.created_at),
        "sources": [_serialize_source(post) for post in sources],
    }


async def create_qa_service(
    *,
    user_id: str,
    question: str,
    date_from: Optional[datetime],
    date_to: Optional[datetime],
    db: AsyncSession,
    answer_client: Optional[AnswerClient] = None,
) -> Dict[str, Any]:
    question = (question or "").strip()
    if not question:
        raise HTTPException(
            status_code=400,
            detail={"code": "QUESTION_REQUIRED", "message": "Question is required and cannot be empty."},
        )
    max_chars = int(settings.QA_MAX_QUESTION_CHARS)
    if len(question) > max_chars:
        raise HTTPException(
            status_code=400,
            detail={
                "code": "QUESTION_TOO_LONG",
                "message": f"Question exceeds the maximum length of {max_chars} characters.",
                "max_length": max_chars,
            },
        )

    now = datetime.now(timezone.utc)
    date_to = _as_utc(date_to) or now
    date_from = _as_utc(date_from) or now - timedelta(hours=int(settings.QA_DEFAULT_WINDOW_HOURS))
    if date_from > date_to:
        raise HTTPException(
            status_code=422,
            detail={"code": "INVALID_DATE_RANGE", "message": "date_from must be earlier than or equal to date_to."},
        )

    posts = await get_posts_by_date_range(db, user_id=user_id, date_from=date_from, date_to=date_to)
    if not posts:
        answer, source_ids = NO_CONTENT_ANSWER, []
    else:
        client = answer_client or build_answer_client()
        if client is None:
            raise HTTPException(status_code=503, detail="Answering is not configured.")
        try:
            answer, source_ids = await client.generate_answer(question, posts)
        except AnswerRateLimitedError as exc:
            logger.warning("Answer rate limited user=%s: %s", user_id, exc)
            raise HTTPException(status_code=429, detail="Answering is rate limited. Try again later.") from exc
        except AnswerUnavailableError as exc:
            logger.error("Answer generation failed user=%s: %s", user_id, exc)
            raise HTTPException(status_code=503, detail="Answering is temporarily unavailable.") from exc

    qa = QAMessage(
        id=new_sortable_id(),
        user_id=user_id,
        question=question,
        answer=answer,
        date_from=date_from,
        date_to=date_to,
        created_at=now,
    )
    qa.sources = [QASource(user_id=user_id, x_post_id=post_id) for post_id in source_ids]
    db.add(qa)
    await db.commit()
    logger.info("Stored qa=%s user=%s posts=%s sources=%s", qa.id, user_id, len(posts), len(source_ids))

    cited = set(source_ids)
    return _serialize_detail(qa, [post for post in posts if post["x_post_id"] in cited])


async def _get_owned_qa(db: AsyncSession, *, user_id: str, qa_id: str) -> QAMessage:
    result = await db.execute(
        select(QAMessage).where(QAMessage.id == qa_id, QAMessage.user_id == user_id)
    )
    qa = result.scalar_one_or_none()
    if qa is None:
        raise HTTPException(status_code=404, detail="Q&A not found.")
    return qa


async def get_qa_service(*, user_id: str, qa_id: str, db: AsyncSession) -> Dict[str, Any]:
    qa = await _get_owned_qa(db, user_id=user_id, qa_id=qa_id)
    result = await db.execute(
        select(Post, Author.handle, Author.display_name)
        .join(QASource, (QASource.x_post_id == Post.x_post_id) & (QASource.user_id == Post.user_id))
        .join(Author, Post.author_id == Author.x_author_id)
        .where(QASource.qa_id == qa_id, QASource.user_id == user_id)
        .order_by(Post.published_at.asc())
    )
    sources = [post_with_author(post, handle, display_name) for post, handle, display_name in result.all()]
    return _serialize_detail(qa, sources)


async def list_qa_service(
    *,
    user_id: str,
    limit: int,
    cursor: Optional[str],
    db: AsyncSession,
) -> Dict[str, Any]:
    """Newest first. ``cursor`` is the id of the last item of the previous page."""
    limit = max(1, min(int(limit), MAX_QA_PAGE))
    sources_count = (
        select(func.count(QASource.x_post_id))
        .where(QASource.qa_id == QAMessage.id)
        .correlate(QAMessage)
        .scalar_subquery()
    )
    stmt = select(QAMessage, sources_count).where(QAMessage.user_id == user_id)
    if cursor:
        stmt = stmt.where(QAMessage.id < cursor)
    result = await db.execute(stmt.order_by(QAMessage.id.desc()).limit(limit + 1))
    rows = result.all()

    has_more = len(rows) > limit
    rows = rows[:limit]
    items = [
        {
            "id": qa.id,
            "question": qa.question,
            "answer_preview": _preview(qa.answer),
            "date_from": _iso(qa.date_from),
            "date_to": _iso(qa.date_to),
            "created_at": _iso(qa.created_at),
            "sources_count": int(count or 0),
        }
        for qa, count in rows
    ]
    return {
        "items": items,
        "next_cursor": items[-1]["id"] if has_more and items else None,
        "has_more": has_more,
    }


async def delete_qa_service(*, user_id: str, qa_id: str, db: AsyncSession) -> Dict[str, Any]:
    await _get_owned_qa(db, user_id=user_id, qa_id=qa_id)
    await db.execute(delete(QASource).where(QASource.qa_id == qa_id, QASource.user_id == user_id))
    await db.execute(delete(QAMessage).where(QAMessage.id == qa_id, QAMessage.user_id == user_id))
    await db.commit()
    return {"deleted": True, "id": qa_id}


async def delete_all_qa_service(*, user_id: str, db: AsyncSession) -> Dict[str, Any]:
    await db.execute(delete(QASource).where(QASource.user_id == user_id))
    result = await db.execute(delete(QAMessage).where(QAMessage.user_id == user_id))
    await db.commit()
    logger.info("Deleted %s qa messages user=%s", result.rowcount, user_id)
    return {"deleted_count": int(result.rowcount or 0)}
