"""
Local public-disk storage: relative paths in, public URLs out.

All paths handed to this module are relative to ``root``.  Anything that
would resolve outside of it (``..`` segments, absolute paths) is rejected
with ``UnsafePath`` before the filesystem is touched.
"""
import logging
from pathlib import Path, PurePosixPath

logger = logging.getLogger(__name__)


class UnsafePath(ValueError):
    """A relative path tried to escape the storage root."""


class LocalStorage:
    def __init__(self, root: str | Path, base_url: str = "/storage") -> None:
        self.root = Path(root).resolve()
        self.base_url = base_url.rstrip("/")

    def normalize(self, relative: str, within: str | None = None) -> str:
        """
        Return *relative* as a clean POSIX path below the root.

        When *within* is given the path must also live under that
        sub-directory (e.g. ``images``).
        """
        candidate = PurePosixPath(relative.replace("\\", "/"))
        if candidate.is_absolute() or ".." in candidate.parts or not candidate.parts:
            raise UnsafePath(relative)
        resolved = (self.root / candidate).resolve()
        boundary = (self.root / within).resolve() if within else self.root
        if boundary not in resolved.parents:
            raise UnsafePath(relative)
        return resolved.relative_to(self.root).as_posix()

    def path(self, relative: str) -> Path:
        return self.root / self.normalize(relative)

    def url(self, relative: str) -> str:
        return f"{self.base_url}/{relative.lstrip('/')}"

    def put(self, relative: str, data: bytes) -> str:
        target = self.path(relative)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        return self.normalize(relative)

    def exists(self, relative: str) -> bool:
        return self.path(relative).is_file()

    def delete(self, relative: str) -> bool:
        target = self.path(relative)
        if not target.is_file():
            return False
        target.unlink()
        logger.info("Deleted stored file %s", relative)
        return True
