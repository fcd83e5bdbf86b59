import logging
import os
import uuid
import warnings
from io import BytesIO
from pathlib import Path

from PIL import Image, UnidentifiedImageError

from app.core.config import settings
from app.core.exceptions import InvalidAsset, StorageFailure

logger = logging.getLogger(__name__)

MIME_EXTENSIONS: dict[str, str] = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
}
_MIME_ALIASES = {"image/jpg": "image/jpeg", "image/pjpeg": "image/jpeg"}
_FORMAT_MIMES = {"JPEG": "image/jpeg", "PNG": "image/png", "WEBP": "image/webp", "GIF": "image/gif"}


def ensure_media_root(root: str | Path | None = None) -> Path:
    path = Path(root or settings.media_root)
    path.mkdir(parents=True, exist_ok=True)
    return path


def normalize_content_type(content_type: str | None) -> str:
    value = (content_type or "").split(";", 1)[0].strip().lower()
    return _MIME_ALIASES.get(value, value)


def extension_for_mime(content_type: str) -> str:
    return MIME_EXTENSIONS.get(normalize_content_type(content_type), ".bin")


def mime_for_format(image_format: str | None) -> str | None:
    if not image_format:
        return None
    return _FORMAT_MIMES.get(image_format.upper())


def public_url_for_key(storage_key: str) -> str:
    prefix = (settings.media_url_prefix or "/media").rstrip("/")
    return f"{prefix}/{storage_key.lstrip('/')}"


def path_for_key(storage_key: str) -> Path:
    base_root = ensure_media_root().resolve()
    path = (base_root / str(storage_key or "").lstrip("/")).resolve()
    try:
        path.relative_to(base_root)
    except ValueError:
        raise InvalidAsset("Invalid storage key")
    return path


def validate_upload(content: bytes, *, content_type: str | None, max_bytes: int | None = None) -> str:
    """Check size and type of an upload and return its normalized mime type.

    The declared content type must be allowed and must agree with what Pillow
    sniffs from the bytes themselves.
    """
    limit = settings.upload_max_bytes if max_bytes is None else max_bytes
    if not content:
        raise InvalidAsset("Empty file")
    if limit is not None and len(content) > limit:
        raise InvalidAsset(f"File too large. Maximum size: {limit // (1024 * 1024)}MB")

    allowed = {normalize_content_type(value) for value in settings.upload_allowed_content_types}
    declared = normalize_content_type(content_type)
    if declared not in allowed:
        raise InvalidAsset(f"Invalid file type. Allowed types: {', '.join(sorted(allowed))}")
    sniffed, dimensions = _sniff_image(content)
    if not sniffed or sniffed not in allowed:
        raise InvalidAsset("Invalid file type")
    if sniffed != declared:
        raise InvalidAsset("File content does not match declared type")
    max_pixels = int(settings.upload_max_pixels or 0)
    if max_pixels and dimensions[0] * dimensions[1] > max_pixels:
        raise InvalidAsset("Image dimensions too large")
    return sniffed


def write_file(path: Path, content: bytes) -> None:
    tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp.write_bytes(content)
        os.replace(tmp, path)
    except OSError as exc:
        remove_quietly(tmp)
        raise StorageFailure(f"Could not write {path.name}: {exc}") from exc


def remove_file(path: Path) -> bool:
    """Delete ``path``; return False when it was already gone.

    Any other OS error is raised as ``StorageFailure``.
    """
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    except OSError as exc:
        raise StorageFailure(f"Could not delete {path.name}: {exc}") from exc
    return True


def remove_quietly(path: Path) -> bool:
    """Best-effort delete used on cleanup paths; failures are logged, never raised."""
    try:
        remove_file(path)
    except StorageFailure as exc:
        logger.warning("storage_cleanup_failed", extra={"path": str(path), "error": exc.detail})
        return False
    return True


def _sniff_image(content: bytes) -> tuple[str | None, tuple[int, int]]:
    try:
        with warnings.catch_warnings():
            # Size is checked against upload_max_pixels by the caller.
            warnings.simplefilter("ignore", Image.DecompressionBombWarning)
            with Image.open(BytesIO(content)) as img:
                image_format = img.format
                size = img.size
                img.verify()
    except Image.DecompressionBombError:
        raise InvalidAsset("Image dimensions too large")
    except (UnidentifiedImageError, OSError, ValueError):
        return None, (0, 0)
    return mime_for_format(image_format), (int(size[0]), int(size[1]))
