import logging
import time

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.dependencies import (
    PageRequest,
    get_cache_gateway,
    get_image_service,
    get_invalidation,
    get_page_request,
    get_storage,
    read_request_fields,
    validate_fields,
)
from app.errors import NotFound, UpstreamFailure, ValidationFailed
from app.http_cache import build_conditional_response
from app.schemas import ArticleCreate, ArticleUpdate, CommentCreate, CommentResponse
from app.services import article_service, comment_service
from app.services.image_service import ensure_within_limit, image_errors
from app.services.invalidation import InvalidationCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/articles", tags=["articles"])

_TRUTHY = {"1", "true", "on", "yes"}


def _truthy(value: str | None) -> bool:
    return value is not None and value.strip().lower() in _TRUTHY


async def _commit_and_invalidate(db: AsyncSession, invalidation: InvalidationCoordinator) -> None:
    # The listing may only be cleared once the write is durable.
    await db.commit()
    await invalidation.on_article_mutated()


@router.get("")
async def list_articles(
    page_request: PageRequest = Depends(get_page_request),
    performance_test: str | None = Query(None),
    if_none_match: str | None = Header(None),
    db: AsyncSession = Depends(get_db),
    gateway=Depends(get_cache_gateway),
    storage=Depends(get_storage),
) -> Response:
    started = time.perf_counter()
    articles = await article_service.list_articles(db, page_request, gateway, storage)
    response = build_conditional_response(articles, if_none_match, settings.HTTP_CACHE_MAX_AGE)
    if response.status_code == 200 and _truthy(performance_test):
        duration_ms = round((time.perf_counter() - started) * 1000)
        response.headers["X-Debug-Response-Time"] = str(duration_ms)
    return response


@router.get("/search")
async def search_articles(q: str | None = Query(None), db: AsyncSession = Depends(get_db)):
    return await article_service.search_articles(db, q)


@router.post("/upload-image")
async def upload_image(request: Request, image_service=Depends(get_image_service), storage=Depends(get_storage)):
    _, image = await read_request_fields(request)
    if image is not None:
        ensure_within_limit(image, settings.MAX_IMAGE_BYTES)
    errors = image_errors(image, settings.ALLOWED_IMAGE_TYPES, required=True)
    if errors:
        raise ValidationFailed({"image": errors}, message="Image validation failed.")

    try:
        versions = image_service.optimize(image)
    except Exception:
        logger.exception("Image optimisation failed for %r", image.filename)
        raise UpstreamFailure()

    return {
        "success": True,
        "message": "Image optimised and variants generated.",
        "images": {name: storage.url(path) for name, path in versions.items()},
    }


@router.get("/{article_id}")
async def get_article(article_id: int, db: AsyncSession = Depends(get_db), storage=Depends(get_storage)):
    article = await article_service.get_article(db, article_id, storage)
    if article is None:
        raise NotFound("Article not found")
    return article


@router.post("", status_code=201)
async def create_article(
    request: Request,
    db: AsyncSession = Depends(get_db),
    invalidation: InvalidationCoordinator = Depends(get_invalidation),
    image_service=Depends(get_image_service),
    storage=Depends(get_storage),
):
    fields, image = await read_request_fields(request)
    # Size first: an oversized upload is refused before anything else runs.
    if image is not None:
        ensure_within_limit(image, settings.MAX_IMAGE_BYTES)

    data = validate_fields(
        ArticleCreate,
        fields,
        {"image": image_errors(image, settings.ALLOWED_IMAGE_TYPES)},
    )
    if not await article_service.author_exists(db, data.author_id):
        raise ValidationFailed({"author_id": ["The selected author id is invalid."]})

    versions = None
    if image is not None:
        try:
            versions = image_service.optimize(image)
        except Exception:
            logger.exception("Image optimisation failed for %r", image.filename)
            raise UpstreamFailure()

    article = await article_service.create_article(db, data, versions)
    await _commit_and_invalidate(db, invalidation)

    return {
        "success": True,
        "data": article_service.article_to_dict(article),
        "image_url": storage.url(article.image_path) if article.image_path else None,
        "images": {name: storage.url(path) for name, path in versions.items()} if versions else None,
    }


@router.put("/{article_id}")
async def update_article(
    article_id: int,
    request: Request,
    db: AsyncSession = Depends(get_db),
    invalidation: InvalidationCoordinator = Depends(get_invalidation),
):
    # A missing article is a 404 whatever the body holds.
    if not await article_service.article_exists(db, article_id):
        raise NotFound("Article not found")
    fields, _ = await read_request_fields(request)
    data = validate_fields(ArticleUpdate, fields)

    article = await article_service.update_article(db, article_id, data)
    if article is None:
        raise NotFound("Article not found")
    await _commit_and_invalidate(db, invalidation)
    return article_service.article_to_dict(article)


@router.delete("/{article_id}")
async def delete_article(
    article_id: int,
    db: AsyncSession = Depends(get_db),
    invalidation: InvalidationCoordinator = Depends(get_invalidation),
    storage=Depends(get_storage),
):
    article = await article_service.delete_article(db, article_id)
    if article is None:
        raise NotFound("Article not found")
    await _commit_and_invalidate(db, invalidation)
    # Only once the row is gone for good.
    article_service.remove_image(storage, article.image_path)
    return {"message": "Article deleted successfully"}


@router.post("/{article_id}/comments", status_code=201, response_model=CommentResponse)
async def add_comment(
    article_id: int,
    data: CommentCreate,
    db: AsyncSession = Depends(get_db),
    invalidation: InvalidationCoordinator = Depends(get_invalidation),
):
    if not await comment_service.user_exists(db, data.user_id):
        raise ValidationFailed({"user_id": ["The selected user id is invalid."]})
    if not comment_service.sanitize_comment(data.content):
        raise ValidationFailed({"content": ["The content field is required."]})

    comment = await comment_service.add_comment(db, article_id, data)
    if comment is None:
        raise NotFound("Article not found")
    # Comment counts are part of every listing entry.
    await _commit_and_invalidate(db, invalidation)
    return comment
