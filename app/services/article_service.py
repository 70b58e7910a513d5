"""
Article service — business logic for the Article aggregate.

Design notes
------------
- The listing goes through ``CacheGateway.get_or_compute``: on a miss the
  projection below runs once and its JSON-ready result is stored for
  ``settings.CACHE_TTL_LIST`` seconds.  The cache key encodes page and
  per_page plus a namespace/version token.
- The projection is a single SELECT: the author name comes from an outer
  join and the comment count from a correlated scalar subquery, so the
  number of statements does not grow with the page size.
- Service functions flush but never commit.  Routers commit and only then
  trigger listing invalidation, so a cache flush can never run ahead of
  the write it reflects.
"""
import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import joinedload, selectinload

from app.cache import CacheGateway
from app.config import settings
from app.dependencies import PageRequest, build_listing_cache_key
from app.models import Article, Comment, User
from app.schemas import ArticleCreate, ArticleListingEntry, ArticleUpdate, SearchResult
from app.storage import LocalStorage, UnsafePath

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def truncate_content(content: str | None, limit: int | None = None) -> str:
    """Cut *content* to *limit* characters, adding "..." only if it was longer."""
    limit = limit or settings.CONTENT_PREVIEW_LENGTH
    content = content or ""
    if len(content) <= limit:
        return content
    return content[:limit] + "..."


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _image_url(storage: LocalStorage, image_path: str | None) -> str | None:
    return storage.url(image_path) if image_path else None


# ---------------------------------------------------------------------------
# Listing projection
# ---------------------------------------------------------------------------

def _listing_query(page_request: PageRequest):
    comments_count = (
        select(func.count(Comment.id))
        .where(Comment.article_id == Article.id)
        .correlate(Article)
        .scalar_subquery()
    )
    return (
        select(
            Article.id,
            Article.title,
            Article.content,
            Article.image_path,
            Article.published_at,
            Article.created_at,
            User.name.label("author_name"),
            comments_count.label("comments_count"),
        )
        .outerjoin(User, User.id == Article.author_id)
        # id breaks ties so equal timestamps still give a total order.
        .order_by(
            Article.published_at.desc().nulls_last(),
            Article.created_at.desc(),
            Article.id.desc(),
        )
        .offset(page_request.offset)
        .limit(page_request.per_page)
    )


def _row_to_listing_entry(row, storage: LocalStorage) -> dict:
    entry = ArticleListingEntry(
        id=row.id,
        title=row.title,
        content=truncate_content(row.content),
        author=row.author_name,
        comments_count=row.comments_count or 0,
        published_at=_isoformat(row.published_at),
        created_at=_isoformat(row.created_at),
        image_url=_image_url(storage, row.image_path),
    )
    return entry.model_dump()


async def project_articles(
    db: AsyncSession,
    page_request: PageRequest,
    storage: LocalStorage,
) -> list[dict]:
    """
    Run the listing query for *page_request* and shape each row into a
    cache-safe listing entry.  Read-only.

    Rows are mapped before anything is returned, so a failure on any row
    aborts the whole page and nothing reaches the cache.
    """
    result = await db.execute(_listing_query(page_request))
    return [_row_to_listing_entry(row, storage) for row in result.all()]


async def list_articles(
    db: AsyncSession,
    page_request: PageRequest,
    gateway: CacheGateway,
    storage: LocalStorage,
) -> list[dict]:
    """Return the listing page for *page_request*, read through the cache."""
    key = build_listing_cache_key(page_request)

    async def compute() -> list[dict]:
        return await project_articles(db, page_request, storage)

    return await gateway.get_or_compute(key, settings.CACHE_TTL_LIST, compute)


# ---------------------------------------------------------------------------
# Detail and search
# ---------------------------------------------------------------------------

async def get_article(db: AsyncSession, article_id: int, storage: LocalStorage) -> dict | None:
    """
    Return the full detail dict for *article_id* (content, author and
    comments with their authors), or None when it does not exist.
    """
    q = (
        select(Article)
        .where(Article.id == article_id)
        .options(
            joinedload(Article.author),
            selectinload(Article.comments).joinedload(Comment.user),
        )
    )
    result = await db.execute(q)
    article = result.unique().scalar_one_or_none()
    if article is None:
        return None

    return {
        "id": article.id,
        "title": article.title,
        "content": article.content,
        "author": article.author.name if article.author else None,
        "author_id": article.author_id,
        "image_path": article.image_path,
        "image_url": _image_url(storage, article.image_path),
        "published_at": _isoformat(article.published_at),
        "created_at": _isoformat(article.created_at),
        "comments": [
            {
                "id": c.id,
                "content": c.content,
                "user": c.user.name if c.user else None,
                "created_at": _isoformat(c.created_at),
            }
            for c in sorted(article.comments, key=lambda c: c.id)
        ],
    }


async def search_articles(db: AsyncSession, term: str | None) -> list[dict]:
    """
    Substring search over title and content.

    The term is bound as a parameter and LIKE wildcards in it are escaped,
    so user input is always matched literally.
    """
    if not term:
        return []
    q = (
        select(Article)
        .where(
            Article.title.contains(term, autoescape=True)
            | Article.content.contains(term, autoescape=True)
        )
        .order_by(Article.published_at.desc().nulls_last(), Article.id.desc())
    )
    result = await db.execute(q)
    return [
        SearchResult(
            id=a.id,
            title=a.title,
            content=(a.content or "")[: settings.CONTENT_PREVIEW_LENGTH],
            published_at=_isoformat(a.published_at),
        ).model_dump()
        for a in result.scalars().all()
    ]


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------

async def author_exists(db: AsyncSession, author_id: int) -> bool:
    result = await db.execute(select(User.id).where(User.id == author_id))
    return result.scalar_one_or_none() is not None


async def article_exists(db: AsyncSession, article_id: int) -> bool:
    result = await db.execute(select(Article.id).where(Article.id == article_id))
    return result.scalar_one_or_none() is not None


async def create_article(
    db: AsyncSession,
    data: ArticleCreate,
    image_versions: dict[str, str] | None = None,
) -> Article:
    """Insert a published article; the ``original`` variant becomes its image."""
    article = Article(
        title=data.title,
        content=data.content,
        author_id=data.author_id,
        image_path=(image_versions or {}).get("original"),
        image_versions=image_versions,
        published_at=datetime.now(timezone.utc),
    )
    db.add(article)
    await db.flush()
    await db.refresh(article)
    return article


async def update_article(db: AsyncSession, article_id: int, data: ArticleUpdate) -> Article | None:
    """
    Apply the fields present in *data* to the article.

    Returns None when the article does not exist.
    """
    article = await db.get(Article, article_id)
    if article is None:
        return None

    for field, value in data.model_dump(exclude_unset=True).items():
        setattr(article, field, value)

    await db.flush()
    await db.refresh(article)
    return article


async def delete_article(db: AsyncSession, article_id: int) -> Article | None:
    """
    Delete the article and its comments.

    Returns the deleted article, or None when it does not exist.  The stored
    image is left alone; call ``remove_image`` once the delete is committed.
    """
    article = await db.get(Article, article_id)
    if article is None:
        return None

    await db.execute(delete(Comment).where(Comment.article_id == article_id))
    await db.delete(article)
    await db.flush()
    return article


def remove_image(storage: LocalStorage, image_path: str | None) -> None:
    """
    Delete a stored article image.

    A path that does not normalise to a location inside the storage root is
    never handed to the filesystem.
    """
    if not image_path:
        return
    try:
        storage.delete(image_path)
    except UnsafePath:
        logger.warning("Refusing to delete image outside storage: %r", image_path)


def article_to_dict(article: Article) -> dict[str, Any]:
    return {
        "id": article.id,
        "title": article.title,
        "content": article.content,
        "author_id": article.author_id,
        "image_path": article.image_path,
        "image_versions": article.image_versions,
        "published_at": _isoformat(article.published_at),
        "created_at": _isoformat(article.created_at),
        "updated_at": _isoformat(article.updated_at),
    }
