"""
Photo variant rendering.

Each accepted photo is re-encoded into three sizes. Re-encoding through Pillow
drops EXIF and other ancillary chunks, which is how location and device
metadata gets stripped from stored photos.
"""

from dataclasses import dataclass
import io
import logging

from PIL import Image, ImageOps, UnidentifiedImageError

logger = logging.getLogger("intake.imaging")

# ~50000x50000, guards against decompression bombs
Image.MAX_IMAGE_PIXELS = 178956970

PASSTHROUGH_EXTENSIONS = {"heic", "heif"}


@dataclass(frozen=True)
class VariantSetting:
    max_size: int
    quality: int


VARIANT_SETTINGS: dict[str, VariantSetting] = {
    "standard": VariantSetting(max_size=4096, quality=85),
    "preview": VariantSetting(max_size=1600, quality=78),
    "thumb": VariantSetting(max_size=400, quality=75),
}


@dataclass(frozen=True)
class RenderedImage:
    data: bytes
    content_type: str
    extension: str
    metadata_stripped: bool


class ImageProcessingError(Exception):
    pass


def output_format(extension: str) -> tuple[str, str]:
    """Return (extension, content type) a variant of this source is stored as."""
    if extension == "png":
        return "png", "image/png"
    if extension in PASSTHROUGH_EXTENSIONS:
        return extension, f"image/{extension}"
    return "jpg", "image/jpeg"


def render_variant(content: bytes, extension: str, setting: VariantSetting) -> RenderedImage:
    out_ext, content_type = output_format(extension)

    if extension in PASSTHROUGH_EXTENSIONS:
        # Pillow cannot decode HEIF containers without an extra codec.
        logger.info("HEIC/HEIF variant stored unmodified (max_size=%s)", setting.max_size)
        return RenderedImage(
            data=content,
            content_type=content_type,
            extension=out_ext,
            metadata_stripped=False,
        )

    try:
        with Image.open(io.BytesIO(content)) as img:
            img = ImageOps.exif_transpose(img)
            img.thumbnail((setting.max_size, setting.max_size), Image.Resampling.LANCZOS)

            if out_ext != "png" and img.mode not in ("RGB", "L"):
                img = img.convert("RGB")
            # Pillow writers copy comment, ICC and XMP from info unless it is emptied.
            img.info = {}

            output = io.BytesIO()
            if out_ext == "png":
                img.save(output, format="PNG", optimize=True)
            else:
                img.save(output, format="JPEG", quality=setting.quality, optimize=True)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        raise ImageProcessingError(str(exc)) from exc

    return RenderedImage(
        data=output.getvalue(),
        content_type=content_type,
        extension=out_ext,
        metadata_stripped=True,
    )


def render_variants(content: bytes, extension: str) -> dict[str, RenderedImage]:
    return {
        name: render_variant(content, extension, setting)
        for name, setting in VARIANT_SETTINGS.items()
    }
