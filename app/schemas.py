from pydantic import BaseModel, ConfigDict, Field, field_validator


def _require_text(value: str) -> str:
    if not value.strip():
        raise ValueError("This field is required.")
    return value


# --- Article ---

class ArticleCreate(BaseModel):
    title: str = Field(max_length=255)
    content: str
    author_id: int

    @field_validator("title", "content")
    @classmethod
    def not_blank(cls, value: str) -> str:
        return _require_text(value)


class ArticleUpdate(BaseModel):
    title: str | None = Field(None, max_length=255)
    content: str | None = None

    @field_validator("title", "content")
    @classmethod
    def present_means_required(cls, value: str | None) -> str:
        # Omitting a field is fine; sending it empty or null is not.
        if value is None:
            raise ValueError("This field is required.")
        return _require_text(value)


class ArticleListingEntry(BaseModel):
    """One row of the cached article listing, exactly as served."""

    id: int
    title: str
    content: str
    author: str | None
    comments_count: int
    published_at: str | None
    created_at: str | None
    image_url: str | None
    model_config = ConfigDict(frozen=True)


class SearchResult(BaseModel):
    id: int
    title: str
    content: str
    published_at: str | None


# --- Comment ---

class CommentCreate(BaseModel):
    content: str = Field(max_length=5000)
    user_id: int

    @field_validator("content")
    @classmethod
    def not_blank(cls, value: str) -> str:
        return _require_text(value)


class CommentResponse(BaseModel):
    id: int
    content: str
    user: str | None
    article_id: int
    created_at: str | None


# --- Images ---

class ImageDelete(BaseModel):
    path: str = Field(min_length=1, max_length=500)


# --- Metrics ---

class CacheStats(BaseModel):
    driver: str
    supports_tags: bool
    hits: int
    misses: int
    errors: int
    hit_rate: float


class MetricsResponse(BaseModel):
    total_articles: int
    total_comments: int
    total_users: int
    avg_comments_per_article: float
    cache_info: CacheStats
