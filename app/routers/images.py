import logging

from fastapi import APIRouter, Depends, Request

from app.config import settings
from app.dependencies import get_image_service, get_storage, read_request_fields
from app.errors import NotFound, UpstreamFailure, ValidationFailed
from app.schemas import ImageDelete
from app.services.image_service import ensure_within_limit, image_errors
from app.storage import UnsafePath

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/images", tags=["images"])


@router.post("/upload", status_code=201)
async def upload_image(request: Request, image_service=Depends(get_image_service), storage=Depends(get_storage)):
    _, image = await read_request_fields(request)
    if image is not None:
        ensure_within_limit(image, settings.MAX_IMAGE_BYTES)
    errors = image_errors(image, settings.ALLOWED_IMAGE_TYPES, required=True)
    if errors:
        raise ValidationFailed({"image": errors}, message="Invalid or oversized file (max 2 MB).")

    try:
        path = image_service.store(image)
    except OSError:
        logger.exception("Storing upload %r failed", image.filename)
        raise UpstreamFailure()

    return {
        "message": "Image uploaded successfully",
        "path": path,
        "url": storage.url(path),
        "size": image.size,
    }


@router.delete("")
async def delete_image(data: ImageDelete, image_service=Depends(get_image_service), storage=Depends(get_storage)):
    try:
        path = storage.normalize(data.path, within=image_service.directory)
    except UnsafePath:
        raise ValidationFailed({"path": ["The path must point to a file inside the images directory."]}) from None

    if not storage.exists(path):
        raise NotFound("Image not found")
    storage.delete(path)
    return {"message": "Image deleted successfully"}
