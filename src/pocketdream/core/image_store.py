"""File-backed storage for finished images.

The store is deliberately simple:

- every image is a single ``{id}.png`` file in ``outputs_dir``
- there is no metadata database; listing reads the directory itself
- list order is reverse-chronological (newest first), by file mtime

Users may add or remove files in the output directory by hand.  Anything
that is not a ``.png`` file is ignored when listing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from pocketdream.core.errors import ImageNotFoundError
from pocketdream.core.types import GenerationResult

logger = logging.getLogger(__name__)

IMAGE_SUFFIX = ".png"


@dataclass(frozen=True)
class StoredImage:
    """One image on disk.

    Attributes:
        id: Image identifier (the file stem).
        path: Absolute path of the PNG file.
        size_bytes: File size.
        created_at: Modification time, seconds since the epoch.
    """

    id: str
    path: Path
    size_bytes: int
    created_at: float

    @classmethod
    def from_path(cls, path: Path) -> StoredImage:
        stat = path.stat()
        return cls(id=path.stem, path=path, size_bytes=stat.st_size, created_at=stat.st_mtime)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "path": str(self.path),
            "size_bytes": self.size_bytes,
            "created_at": self.created_at,
        }


class ImageStore:
    """Saves, lists and deletes generated images under one directory."""

    def __init__(self, outputs_dir: Path) -> None:
        self.outputs_dir = Path(outputs_dir)
        self.outputs_dir.mkdir(parents=True, exist_ok=True)

    def _path_for(self, image_id: str) -> Path:
        # Identifiers are file stems; anything with a path component is not one.
        if not image_id or Path(image_id).name != image_id:
            raise ImageNotFoundError(f"Image not found: {image_id}")
        return self.outputs_dir / f"{image_id}{IMAGE_SUFFIX}"

    def save(self, result: GenerationResult) -> StoredImage:
        """Write ``result.image`` as ``{result.id}.png``."""
        path = self._path_for(result.id)
        result.image.save(path, format="PNG")
        logger.info("Saved image %s to %s", result.id, path)
        return StoredImage.from_path(path)

    def list_images(self) -> list[StoredImage]:
        """Return every stored image, newest first."""
        images = [
            StoredImage.from_path(path)
            for path in self.outputs_dir.iterdir()
            if path.is_file() and path.suffix.lower() == IMAGE_SUFFIX
        ]
        images.sort(key=lambda image: image.created_at, reverse=True)
        return images

    def get(self, image_id: str) -> StoredImage:
        """Look up one image.

        Raises:
            ImageNotFoundError: If no such image exists.
        """
        path = self._path_for(image_id)
        if not path.is_file():
            raise ImageNotFoundError(f"Image not found: {image_id}")
        return StoredImage.from_path(path)

    def delete(self, image_id: str) -> None:
        """Remove an image.

        Raises:
            ImageNotFoundError: If no such image exists.
        """
        path = self.get(image_id).path
        path.unlink()
        logger.info("Deleted image %s", image_id)
