"""
Comment service — append-only comment creation for the Article aggregate.

Comment bodies are stored sanitised: markup is stripped, the remaining
text is HTML-escaped and trimmed, so nothing a reader submits can render
as HTML in a client that trusts the API.
"""
import html
import re

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Article, Comment, User
from app.schemas import CommentCreate

_TAG_RE = re.compile(r"<[^>]*>")


def sanitize_comment(content: str) -> str:
    return html.escape(_TAG_RE.sub("", content), quote=True).strip()


async def user_exists(db: AsyncSession, user_id: int) -> bool:
    result = await db.execute(select(User.id).where(User.id == user_id))
    return result.scalar_one_or_none() is not None


async def add_comment(
    db: AsyncSession,
    article_id: int,
    data: CommentCreate,
) -> dict | None:
    """
    Append a new comment to the article identified by *article_id*.

    Returns the serialised comment dict on success, or None when the
    target article does not exist.  The commenter must exist; the router
    checks that before calling.
    """
    article = await db.get(Article, article_id)
    if article is None:
        return None

    comment = Comment(
        content=sanitize_comment(data.content),
        user_id=data.user_id,
        article_id=article_id,
    )
    db.add(comment)
    await db.flush()
    await db.refresh(comment)

    user = await db.get(User, data.user_id)
    return {
        "id": comment.id,
        "content": comment.content,
        "user": user.name if user else None,
        "article_id": comment.article_id,
        "created_at": comment.created_at.isoformat() if comment.created_at else None,
    }
