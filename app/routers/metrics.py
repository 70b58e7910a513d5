from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.cache import CacheGateway
from app.database import get_db
from app.dependencies import get_cache_gateway
from app.models import Article, Comment, User
from app.schemas import CacheStats, MetricsResponse

router = APIRouter(prefix="/metrics", tags=["metrics"])


def _count(model):
    return select(func.count()).select_from(model).scalar_subquery()


@router.get("", response_model=MetricsResponse)
async def get_metrics(
    db: AsyncSession = Depends(get_db),
    gateway: CacheGateway = Depends(get_cache_gateway),
) -> MetricsResponse:
    """Row counts in a single round trip, plus the listing cache counters."""
    row = (
        await db.execute(
            select(
                _count(Article).label("articles"),
                _count(Comment).label("comments"),
                _count(User).label("users"),
            )
        )
    ).one()

    avg_comments = row.comments / row.articles if row.articles else 0

    return MetricsResponse(
        total_articles=row.articles,
        total_comments=row.comments,
        total_users=row.users,
        avg_comments_per_article=round(avg_comments, 2),
        cache_info=CacheStats(**gateway.stats),
    )
