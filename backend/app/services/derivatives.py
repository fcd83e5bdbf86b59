"""Resized renditions of uploaded images, one per configured size profile.

Every derivative is written as ``<asset_id>_<profile><ext>`` next to the
original. Rendering the same asset/profile again overwrites the previous file,
so regeneration is safe to repeat.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from uuid import UUID

import anyio
from PIL import Image, ImageOps

from app.core.config import settings
from app.core.exceptions import PartialDerivativeFailure
from app.services import storage

logger = logging.getLogger(__name__)

_LOSSY_FORMATS = {"JPEG", "WEBP"}
_EXTENSION_FORMATS = {".jpg": "JPEG", ".jpeg": "JPEG", ".png": "PNG", ".gif": "GIF", ".webp": "WEBP"}


@dataclass(frozen=True)
class DerivativeProfile:
    name: str
    max_width: int
    max_height: int


@dataclass(frozen=True)
class RenderedDerivative:
    profile: str
    storage_key: str
    width: int
    height: int
    size_bytes: int

    @property
    def public_url(self) -> str:
        return storage.public_url_for_key(self.storage_key)


def configured_profiles() -> list[DerivativeProfile]:
    profiles: list[DerivativeProfile] = []
    for name, dims in (settings.derivative_profiles or {}).items():
        width, height = (list(dims) + [0, 0])[:2]
        if int(width) <= 0 or int(height) <= 0:
            logger.warning("derivative_profile_ignored", extra={"profile": name, "dims": dims})
            continue
        profiles.append(DerivativeProfile(name=str(name), max_width=int(width), max_height=int(height)))
    return profiles


def derivative_key(asset_id: UUID | str, profile: str, extension: str) -> str:
    version = (settings.derivative_version or "").strip()
    suffix = f"{profile}-{version}" if version else profile
    return f"{asset_id}_{suffix}{extension}"


def format_for_extension(extension: str) -> str:
    return _EXTENSION_FORMATS.get(extension.lower(), "JPEG")


def fit_within(size: tuple[int, int], max_width: int | None, max_height: int | None) -> tuple[int, int]:
    """Aspect-preserving fit inside the box; never upscales past the source."""
    width, height = size
    scales = [1.0]
    if max_width:
        scales.append(max_width / width)
    if max_height:
        scales.append(max_height / height)
    scale = min(scales)
    return max(1, round(width * scale)), max(1, round(height * scale))


def _prepare_for_format(img: Image.Image, image_format: str) -> Image.Image:
    if image_format == "JPEG":
        if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
            background = Image.new("RGB", img.size, (255, 255, 255))
            rgba = img.convert("RGBA")
            background.paste(rgba, mask=rgba.split()[-1])
            return background
        return img.convert("RGB") if img.mode != "RGB" else img
    if img.mode == "P":
        return img.convert("RGBA")
    if img.mode not in ("RGB", "RGBA", "L", "LA"):
        return img.convert("RGB")
    return img


def encode_image(img: Image.Image, image_format: str, *, quality: int) -> bytes:
    buf = BytesIO()
    out = _prepare_for_format(img, image_format)
    if image_format in _LOSSY_FORMATS:
        out.save(buf, format=image_format, quality=int(quality), optimize=True)
    elif image_format == "PNG":
        out.save(buf, format="PNG", optimize=True)
    else:
        out.save(buf, format=image_format)
    return buf.getvalue()


def resize_image(source: Path, *, width: int | None, height: int | None) -> Image.Image:
    with Image.open(source) as img:
        img.seek(0)
        oriented = ImageOps.exif_transpose(img)
        if oriented.mode == "P":
            oriented = oriented.convert("RGBA")
        target = fit_within(oriented.size, width, height)
        if target == oriented.size:
            return oriented.copy()
        return oriented.resize(target, Image.Resampling.LANCZOS)


def render_derivative(source: Path, destination: Path, profile: DerivativeProfile, *, quality: int) -> tuple[int, int]:
    image_format = format_for_extension(destination.suffix)
    resized = resize_image(source, width=profile.max_width, height=profile.max_height)
    storage.write_file(destination, encode_image(resized, image_format, quality=quality))
    return resized.size


def generate_derivatives(
    asset_id: UUID | str,
    source: Path,
    *,
    profiles: list[DerivativeProfile] | None = None,
    quality: int | None = None,
) -> list[RenderedDerivative]:
    """Render every profile for one asset, stopping at the first failure.

    On failure ``PartialDerivativeFailure`` lists the keys already written so
    the caller can remove them; this function does not clean up itself.
    """
    selected = configured_profiles() if profiles is None else profiles
    q = int(quality or settings.derivative_quality)
    extension = source.suffix.lower()
    rendered: list[RenderedDerivative] = []
    for profile in selected:
        key = derivative_key(asset_id, profile.name, extension)
        destination = storage.path_for_key(key)
        try:
            width, height = render_derivative(source, destination, profile, quality=q)
        except Exception as exc:
            logger.warning(
                "derivative_render_failed",
                extra={"asset_id": str(asset_id), "profile": profile.name, "error": str(exc)},
            )
            raise PartialDerivativeFailure(
                f"Could not generate '{profile.name}' rendition: {exc}",
                profile=profile.name,
                written=[item.storage_key for item in rendered],
            ) from exc
        rendered.append(
            RenderedDerivative(
                profile=profile.name,
                storage_key=key,
                width=int(width),
                height=int(height),
                size_bytes=int(destination.stat().st_size),
            )
        )
    return rendered


async def generate_derivatives_async(
    asset_id: UUID | str,
    source: Path,
    *,
    profiles: list[DerivativeProfile] | None = None,
    quality: int | None = None,
) -> list[RenderedDerivative]:
    def _run() -> list[RenderedDerivative]:
        return generate_derivatives(asset_id, source, profiles=profiles, quality=quality)

    return await anyio.to_thread.run_sync(_run)
