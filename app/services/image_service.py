"""
Image upload handling.

``ImageOptimizationService`` is the boundary to the image pipeline: it
accepts an uploaded file and returns a mapping of named variants to storage
paths.  Only the ``original`` variant is produced here; resized variants
belong to the pipeline itself.
"""
import logging
import uuid
from dataclasses import dataclass
from pathlib import PurePosixPath

from starlette.datastructures import UploadFile

from app.errors import PayloadTooLarge
from app.storage import LocalStorage

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
}


@dataclass(frozen=True)
class ImageUpload:
    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


async def read_upload(upload: UploadFile) -> ImageUpload:
    data = await upload.read()
    return ImageUpload(
        filename=upload.filename or "",
        content_type=(upload.content_type or "").lower(),
        data=data,
    )


def ensure_within_limit(upload: ImageUpload, limit: int) -> None:
    """Raise ``PayloadTooLarge`` when *upload* is bigger than *limit* bytes."""
    if upload.size > limit:
        raise PayloadTooLarge(upload.size, limit)


def image_errors(upload: ImageUpload | None, allowed_types: list[str], required: bool = False) -> list[str]:
    """Validation messages for the ``image`` field (empty list when valid)."""
    if upload is None:
        return ["The image field is required."] if required else []
    if upload.size == 0:
        return ["The image must be a non-empty file."]
    if upload.content_type not in allowed_types:
        allowed = ", ".join(sorted(_EXTENSIONS[t] for t in allowed_types if t in _EXTENSIONS))
        return [f"The image must be a file of type: {allowed}."]
    return []


class ImageOptimizationService:
    def __init__(self, storage: LocalStorage, directory: str = "images") -> None:
        self.storage = storage
        self.directory = directory

    def _filename(self, upload: ImageUpload) -> str:
        extension = _EXTENSIONS.get(upload.content_type)
        if extension is None:
            extension = PurePosixPath(upload.filename).suffix.lstrip(".").lower() or "bin"
        return f"{uuid.uuid4().hex[:20]}.{extension}"

    def store(self, upload: ImageUpload) -> str:
        """Persist *upload* unchanged and return its relative storage path."""
        return self.storage.put(f"{self.directory}/{self._filename(upload)}", upload.data)

    def optimize(self, upload: ImageUpload) -> dict[str, str]:
        path = self.store(upload)
        logger.info("Stored image %s (%d bytes)", path, upload.size)
        return {"original": path}
