"""Image preparation: downscaling, OCR enhancement and transport encoding.

All transforms are best-effort. When the source cannot be decoded they log a
warning and hand back the input unchanged, so a scan can always proceed with
the original image.
"""

from __future__ import annotations

import base64
import binascii
import logging
import mimetypes
import re
from dataclasses import dataclass
from pathlib import Path

import numpy as np

from .models import ImageAsset, PreparedImage, Transferable

logger = logging.getLogger(__name__)

MID_GRAY = 128
DEFAULT_CONTRAST = 1.25

_DATA_URL_RE = re.compile(r"^data:(image/[\w.+-]+);base64,", re.IGNORECASE)


@dataclass(frozen=True)
class QualityTier:
    name: str
    max_dimension: int
    jpeg_quality: int


HIGH = QualityTier("high", 1024, 80)
LOW = QualityTier("low", 800, 60)
THUMBNAIL = QualityTier("thumbnail", 200, 60)


class ImageDecodeError(ValueError):
    pass


def _cv2():
    try:
        import cv2
    except ImportError:
        raise ImportError(
            "opencv-python is required: pip install opencv-python"
        ) from None
    return cv2


def decode(data: bytes) -> np.ndarray:
    """Decode encoded image bytes into an HxWx3 uint8 BGR array.

    The EXIF orientation tag is applied, so the pixels come out upright and
    re-encoding (which drops EXIF) keeps them that way. Alpha is discarded.
    """
    cv2 = _cv2()
    pixels = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_COLOR)
    if pixels is None:
        raise ImageDecodeError("image data could not be decoded")
    return pixels


def encode_jpeg(pixels: np.ndarray, quality: int = 90) -> ImageAsset:
    """Encode a pixel buffer as JPEG. Alpha is dropped."""
    cv2 = _cv2()
    if pixels.ndim == 3 and pixels.shape[2] == 4:
        pixels = cv2.cvtColor(pixels, cv2.COLOR_BGRA2BGR)
    ok, buf = cv2.imencode(".jpg", pixels, [cv2.IMWRITE_JPEG_QUALITY, int(quality)])
    if not ok:
        raise ValueError("JPEG encoding failed")
    height, width = pixels.shape[:2]
    return ImageAsset(
        data=buf.tobytes(), mime_type="image/jpeg", width=width, height=height
    )


def load_image(path: str | Path) -> ImageAsset:
    """Read an image file into an ImageAsset.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        ValueError: If the file is not an image type.
    """
    path = Path(path)
    data = path.read_bytes()
    mime_type = mimetypes.guess_type(str(path))[0] or "image/jpeg"
    if not mime_type.startswith("image/"):
        raise ValueError(f"not an image file: {path}")
    return _asset_from_bytes(data, mime_type)


def from_data_url(url: str) -> ImageAsset:
    """Decode a ``data:image/...;base64,`` URL into an ImageAsset."""
    match = _DATA_URL_RE.match(url)
    if not match:
        raise ValueError("not an image data URL")
    try:
        data = base64.b64decode(url[match.end():], validate=True)
    except binascii.Error as e:
        raise ValueError(f"invalid base64 payload: {e}") from e
    return _asset_from_bytes(data, match.group(1).lower())


def to_data_url(image: ImageAsset) -> str:
    encoded = base64.b64encode(image.data).decode("ascii")
    return f"data:{image.mime_type};base64,{encoded}"


def _asset_from_bytes(data: bytes, mime_type: str) -> ImageAsset:
    try:
        pixels = decode(data)
    except ImageDecodeError:
        logger.warning("Could not read image dimensions (%d bytes)", len(data))
        return ImageAsset(data=data, mime_type=mime_type, width=0, height=0)
    height, width = pixels.shape[:2]
    return ImageAsset(data=data, mime_type=mime_type, width=width, height=height)


def downscale(
    image: ImageAsset, max_width: int, max_height: int, quality: int = 90
) -> ImageAsset:
    """Fit ``image`` inside ``max_width`` x ``max_height`` preserving aspect ratio.

    Images that already fit are returned as-is.
    """
    if image.width <= max_width and image.height <= max_height:
        return image

    cv2 = _cv2()
    try:
        pixels = decode(image.data)
    except (ImageDecodeError, cv2.error):
        logger.warning("Downscale skipped: source image could not be decoded")
        return image

    height, width = pixels.shape[:2]
    ratio = min(max_width / width, max_height / height)
    new_width = max(1, int(width * ratio + 0.5))
    new_height = max(1, int(height * ratio + 0.5))
    resized = cv2.resize(pixels, (new_width, new_height), interpolation=cv2.INTER_AREA)
    return encode_jpeg(resized, quality)


def thumbnail(image: ImageAsset) -> ImageAsset:
    """Small copy of ``image`` for history storage."""
    return downscale(
        image, THUMBNAIL.max_dimension, THUMBNAIL.max_dimension, THUMBNAIL.jpeg_quality
    )


def adjust_contrast(pixels: np.ndarray, factor: float = DEFAULT_CONTRAST) -> np.ndarray:
    """Linear contrast stretch around mid-gray on the RGB channels.

    ``new = (old - 128) * factor + 128``, rounded and clamped to [0, 255].
    """
    out = pixels.copy()
    rgb = out[..., :3].astype(np.float64)
    stretched = np.rint((rgb - MID_GRAY) * factor + MID_GRAY)
    out[..., :3] = np.clip(stretched, 0, 255).astype(np.uint8)
    return out


def sharpen(pixels: np.ndarray) -> np.ndarray:
    """Apply the cross-shaped sharpen kernel to interior pixels.

    Kernel::

         0 -1  0
        -1  5 -1
         0 -1  0

    Border rows/columns and the alpha channel are left untouched.
    """
    out = pixels.copy()
    height, width = pixels.shape[:2]
    if height < 3 or width < 3:
        return out

    src = pixels[..., :3].astype(np.int32)
    value = (
        5 * src[1:-1, 1:-1]
        - src[1:-1, :-2]
        - src[1:-1, 2:]
        - src[:-2, 1:-1]
        - src[2:, 1:-1]
    )
    out[1:-1, 1:-1, :3] = np.clip(value, 0, 255).astype(np.uint8)
    return out


def enhance(image: ImageAsset, contrast: float = DEFAULT_CONTRAST) -> ImageAsset:
    """Contrast stretch followed by sharpening, for OCR readability."""
    cv2 = _cv2()
    try:
        pixels = decode(image.data)
    except (ImageDecodeError, cv2.error):
        logger.warning("Enhance skipped: source image could not be decoded")
        return image

    pixels = sharpen(adjust_contrast(pixels, contrast))
    return encode_jpeg(pixels, 90)


def to_transferable(source: ImageAsset | str) -> Transferable:
    """Return the bare base64 payload and mime type of an image or data URL."""
    if isinstance(source, ImageAsset):
        return Transferable(
            data=base64.b64encode(source.data).decode("ascii"),
            mime_type=source.mime_type,
        )

    match = _DATA_URL_RE.match(source)
    if match:
        return Transferable(data=source[match.end():], mime_type=match.group(1).lower())
    return Transferable(data=source, mime_type="image/jpeg")


def prepare(
    image: ImageAsset,
    tier: QualityTier = HIGH,
    *,
    enhance_image: bool = False,
    contrast: float = DEFAULT_CONTRAST,
) -> PreparedImage:
    """Produce the transmission copy of one image for the given quality tier."""
    asset = downscale(image, tier.max_dimension, tier.max_dimension, tier.jpeg_quality)
    if enhance_image:
        asset = enhance(asset, contrast)
    return PreparedImage(asset=asset, payload=to_transferable(asset), tier=tier.name)
