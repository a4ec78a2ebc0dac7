"""File storage for generated images and lookup of reference images.

Generated images live in ``images_dir`` and are addressed by a web path of
the form ``/images/<filename>``; that web path is what the generation
records store.  Filenames are derived from the queue item id, so a queue
item that is processed twice after a crash overwrites its own file instead
of leaving a duplicate behind.
"""

from __future__ import annotations

import io
import logging
import re
from pathlib import Path

from PIL import Image, UnidentifiedImageError

from remixer.core.errors import InvalidImageError

logger = logging.getLogger(__name__)

_URL_PREFIX = "/images/"

# Reference ids are bare file stems.
_REFERENCE_ID_PATTERN = re.compile(r"[A-Za-z0-9_-]+")

# Pillow format name -> file extension.
_FORMAT_EXTENSIONS = {
    "PNG": "png",
    "JPEG": "jpg",
    "WEBP": "webp",
    "GIF": "gif",
}


class ImageStorage:
    """Validate and persist provider image bytes."""

    def __init__(self, images_dir: Path):
        self.images_dir = Path(images_dir)
        self.images_dir.mkdir(parents=True, exist_ok=True)

    def save(self, image_bytes: bytes, name: str) -> str:
        """Validate ``image_bytes`` and write them as ``<name>.<ext>``.

        Args:
            image_bytes: Encoded image returned by the provider
            name: File stem, normally the queue item id

        Returns:
            Web path of the stored image (``/images/<file>``)

        Raises:
            InvalidImageError: If the bytes are empty or not a decodable image
        """
        if not image_bytes:
            raise InvalidImageError("Provider returned an empty image")

        try:
            with Image.open(io.BytesIO(image_bytes)) as img:
                image_format = img.format
                img.verify()
        except (UnidentifiedImageError, OSError, SyntaxError) as e:
            raise InvalidImageError(f"Provider returned an invalid image: {e}") from e

        ext = _FORMAT_EXTENSIONS.get(image_format or "", "png")
        filename = f"{name}.{ext}"
        (self.images_dir / filename).write_bytes(image_bytes)
        logger.info(f"Saved image {filename} ({len(image_bytes)} bytes)")
        return f"{_URL_PREFIX}{filename}"

    def resolve(self, image_path: str) -> Path:
        """Map a stored web path back to a file under ``images_dir``."""
        filename = Path(image_path).name
        return self.images_dir / filename

    def open(self, image_path: str) -> Image.Image:
        """Load a stored image fully into memory."""
        with Image.open(self.resolve(image_path)) as img:
            img.load()
            return img.copy()

    def delete(self, image_path: str) -> bool:
        """Remove a stored image file.

        Returns:
            True if a file was removed, False if it did not exist
        """
        filepath = self.resolve(image_path)
        if not filepath.exists():
            logger.debug(f"Image already gone: {filepath}")
            return False
        filepath.unlink()
        logger.info(f"Deleted image {filepath.name}")
        return True


class ReferenceStore:
    """Resolve reference photo ids and inline component references to images.

    Reference photos are uploaded by the reference library as
    ``<references_dir>/<reference_id>.<ext>``.  Inline component references
    are stored as paths relative to ``data_dir``.
    """

    def __init__(self, references_dir: Path, data_dir: Path):
        self.references_dir = Path(references_dir)
        self.data_dir = Path(data_dir)

    def resolve_reference_ids(self, reference_ids: list[str]) -> list[Path]:
        paths: list[Path] = []
        for reference_id in reference_ids:
            if not _REFERENCE_ID_PATTERN.fullmatch(reference_id):
                logger.warning(f"Rejected invalid reference photo id: {reference_id!r}")
                continue
            matches = sorted(self.references_dir.glob(f"{reference_id}.*"))
            if not matches:
                logger.warning(f"Reference photo not found: {reference_id}")
                continue
            paths.append(matches[0])
        return paths

    def resolve_inline_paths(self, inline_paths: list[str]) -> list[Path]:
        """Resolve inline paths, skipping any that escape ``data_dir``."""
        root = self.data_dir.resolve()
        paths: list[Path] = []
        for inline_path in inline_paths:
            # Inline paths may be stored with a leading slash as web paths.
            candidate = (self.data_dir / inline_path.lstrip("/")).resolve()
            if not candidate.is_relative_to(root):
                logger.warning(f"Rejected inline reference outside data dir: {inline_path}")
                continue
            if not candidate.is_file():
                logger.warning(f"Inline reference not found: {inline_path}")
                continue
            paths.append(candidate)
        return paths

    def load(
        self,
        reference_ids: list[str] | None,
        inline_paths: list[str] | None,
    ) -> list[Image.Image]:
        """Load every resolvable reference image; missing files are skipped."""
        paths = self.resolve_reference_ids(reference_ids or [])
        paths += self.resolve_inline_paths(inline_paths or [])

        images: list[Image.Image] = []
        for path in paths:
            try:
                with Image.open(path) as img:
                    img.load()
                    images.append(img.copy())
            except (UnidentifiedImageError, OSError) as e:
                logger.warning(f"Skipping unreadable reference image {path}: {e}")
        return images
