import json
from dataclasses import dataclass

from fastapi import Query, Request
from pydantic import BaseModel, ValidationError
from starlette.datastructures import UploadFile

from app.config import settings
from app.errors import ValidationFailed, field_errors
from app.services.image_service import ImageUpload, read_upload

MAX_SQL_OFFSET = 2**63 - 1


@dataclass(frozen=True)
class PageRequest:
    """
    Normalised pagination parameters for the article listing.

    Attributes
    ----------
    page:
        1-based page number (minimum 1).
    per_page:
        Items per page, always within ``[1, settings.MAX_PAGE_SIZE]``.
    """

    page: int
    per_page: int

    @property
    def offset(self) -> int:
        """SQL OFFSET value computed from the current page and page size."""
        return (self.page - 1) * self.per_page


def _parse_int(raw) -> int | None:
    if raw is None:
        return None
    if isinstance(raw, int):
        return raw
    try:
        return int(str(raw).strip())
    except ValueError:
        return None


def normalize_page_request(
    raw_page=None,
    raw_per_page=None,
    default_per_page: int | None = None,
    max_per_page: int | None = None,
) -> PageRequest:
    """
    Build a ``PageRequest`` from raw, possibly invalid input.  Never fails.

    Missing or unparseable values fall back to the defaults; a non-positive
    page becomes 1 and ``per_page`` is clamped into ``[1, max_per_page]``.
    Pages past the largest SQL OFFSET are capped; they are empty regardless.
    """
    default_per_page = default_per_page or settings.DEFAULT_PAGE_SIZE
    max_per_page = max_per_page or settings.MAX_PAGE_SIZE

    per_page = _parse_int(raw_per_page)
    if per_page is None:
        per_page = default_per_page
    per_page = max(1, min(max_per_page, per_page))

    page = _parse_int(raw_page)
    if page is None or page < 1:
        page = 1
    # OFFSET is a signed 64-bit integer in SQL; any page past this is empty anyway.
    page = min(page, MAX_SQL_OFFSET // per_page + 1)

    return PageRequest(page=page, per_page=per_page)


def build_listing_cache_key(
    page_request: PageRequest,
    namespace: str | None = None,
    version: str | None = None,
) -> str:
    """Deterministic listing cache key; distinct pages never share a key."""
    namespace = namespace or settings.LISTING_CACHE_NAMESPACE
    version = version or settings.LISTING_CACHE_VERSION
    return f"{namespace}:{version}:p={page_request.page}:pp={page_request.per_page}"


def default_listing_cache_key() -> str:
    """Key of the first page at the default page size."""
    return build_listing_cache_key(normalize_page_request())


def get_page_request(
    page: str | None = Query(None, description="Page number (1-based)."),
    per_page: str | None = Query(
        None,
        description="Items per page, clamped to [1, 50].",
    ),
) -> PageRequest:
    """
    FastAPI dependency for the listing endpoint.

    Query values are taken as raw strings so that out-of-range or garbage
    input is normalised instead of rejected with a 422.
    """
    return normalize_page_request(page, per_page)


async def read_request_fields(request: Request) -> tuple[dict, ImageUpload | None]:
    """
    Return ``(fields, image)`` from a JSON, urlencoded or multipart body.

    The ``image`` part is read into memory but not validated, so the caller
    can enforce the size limit before any other check runs.
    """
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(("multipart/form-data", "application/x-www-form-urlencoded")):
        form = await request.form()
        fields: dict = {}
        image = None
        for name, value in form.multi_items():
            if isinstance(value, UploadFile):
                if name == "image":
                    image = await read_upload(value)
            else:
                fields[name] = value
        return fields, image

    body = await request.body()
    if not body:
        return {}, None
    try:
        data = json.loads(body)
    except ValueError:
        raise ValidationFailed({"body": ["The request body must be valid JSON."]}) from None
    if not isinstance(data, dict):
        raise ValidationFailed({"body": ["The request body must be a JSON object."]})
    return data, None


def validate_fields(model: type[BaseModel], fields: dict, extra_errors: dict[str, list[str]] | None = None):
    """
    Validate *fields* against *model*, merging *extra_errors*.

    Raises ``ValidationFailed`` with every field problem at once.
    """
    errors: dict[str, list[str]] = {k: list(v) for k, v in (extra_errors or {}).items() if v}
    data = None
    try:
        data = model.model_validate(fields)
    except ValidationError as exc:
        for field, messages in field_errors(exc.errors()).items():
            errors.setdefault(field, []).extend(messages)
    if errors:
        raise ValidationFailed(errors)
    return data


# ---------------------------------------------------------------------------
# Collaborator handles wired in ``create_app``
# ---------------------------------------------------------------------------

def get_cache_gateway(request: Request):
    return request.app.state.cache_gateway


def get_invalidation(request: Request):
    return request.app.state.invalidation


def get_storage(request: Request):
    return request.app.state.storage


def get_image_service(request: Request):
    return request.app.state.image_service
