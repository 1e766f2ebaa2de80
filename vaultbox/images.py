"""
Cover image storage on the local filesystem.

Images live under ``<store>/images/<vault_id>/<entry_id>.<ext>``. Entries
store only the path relative to the images directory; the format is
detected from file contents with Pillow, never from the file name.
"""

import logging
import shutil
from pathlib import Path

from .errors import InternalFailure, ValidationFailed

logger = logging.getLogger(__name__)

# Maximum accepted image size (10MB)
MAX_IMAGE_SIZE = 10 * 1024 * 1024

# Pillow format name → stored file extension
_FORMAT_EXTENSIONS = {
    "JPEG": "jpg",
    "PNG": "png",
    "WEBP": "webp",
    "GIF": "gif",
}


def detect_format(path: Path) -> str:
    """
    Detect an image's format and return the extension to store it under.

    Raises:
        ValidationFailed: If the file isn't a JPEG, PNG, WebP or GIF image
    """
    try:
        from PIL import Image, UnidentifiedImageError
    except ImportError:
        raise InternalFailure(
            "Cover images require the 'Pillow' library. Install with: pip install Pillow"
        )

    try:
        with Image.open(path) as img:
            fmt = img.format
    except (UnidentifiedImageError, OSError) as e:
        raise ValidationFailed(f"Failed to read image file: {e}")

    extension = _FORMAT_EXTENSIONS.get(fmt or "")
    if extension is None:
        raise ValidationFailed("Invalid image format. Supported: JPEG, PNG, WebP, GIF")
    return extension


class ImageStorage:
    """File-backed cover image storage."""

    def __init__(self, store_path: Path, max_size: int = MAX_IMAGE_SIZE):
        """
        Args:
            store_path: Store directory; images go in its ``images`` subdirectory
            max_size: Largest accepted image file, in bytes
        """
        self._images_dir = Path(store_path) / "images"
        self._max_size = max_size

    @property
    def images_dir(self) -> Path:
        return self._images_dir

    def _vault_dir(self, vault_id: int) -> Path:
        return self._images_dir / str(vault_id)

    def _check_size(self, path: Path) -> None:
        try:
            size = path.stat().st_size
        except OSError as e:
            raise ValidationFailed(f"Failed to read file metadata: {e}")
        if size > self._max_size:
            raise ValidationFailed(
                f"Image size exceeds {self._max_size // (1024 * 1024)}MB limit "
                f"({size // (1024 * 1024)}MB)"
            )

    def save_local_image(self, vault_id: int, entry_id: int, source: Path) -> str:
        """
        Copy an image file into storage.

        Returns:
            Path relative to the images directory, e.g. ``"3/42.png"``

        Raises:
            ValidationFailed: If the file is too large or not a supported image
        """
        source = Path(source)
        logger.info("Saving local image for vault %d entry %d", vault_id, entry_id)
        self._check_size(source)
        extension = detect_format(source)

        vault_dir = self._vault_dir(vault_id)
        try:
            vault_dir.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, vault_dir / f"{entry_id}.{extension}")
        except OSError as e:
            raise InternalFailure(f"Failed to copy image file: {e}")

        relative_path = f"{vault_id}/{entry_id}.{extension}"
        logger.info("Image saved to: %s", relative_path)
        return relative_path

    def get_full_path(self, relative_path: str) -> Path:
        """
        Absolute path for a stored image.

        Raises:
            ValidationFailed: If the path escapes the images directory
        """
        root = self._images_dir.resolve()
        full = (root / relative_path).resolve()
        if root != full and root not in full.parents:
            raise ValidationFailed(f"Image path outside storage: {relative_path}")
        return full

    def read_image(self, relative_path: str) -> bytes:
        """Raw bytes of a stored image."""
        full_path = self.get_full_path(relative_path)
        try:
            return full_path.read_bytes()
        except FileNotFoundError:
            raise InternalFailure(f"Cover image file not found: {relative_path}")
        except OSError as e:
            raise InternalFailure(f"Failed to read image file: {e}")

    def delete_image(self, relative_path: str) -> None:
        """Delete a stored image. A missing file is logged, not an error."""
        logger.info("Deleting image: %s", relative_path)
        full_path = self.get_full_path(relative_path)
        if not full_path.exists():
            logger.warning("Image file not found: %s", relative_path)
            return
        try:
            full_path.unlink()
        except OSError as e:
            raise InternalFailure(f"Failed to delete image file: {e}")

    def delete_vault_images(self, vault_id: int) -> None:
        """Remove a vault's whole image directory."""
        vault_dir = self._vault_dir(vault_id)
        if vault_dir.exists():
            try:
                shutil.rmtree(vault_dir)
            except OSError as e:
                raise InternalFailure(f"Failed to delete vault images: {e}")
