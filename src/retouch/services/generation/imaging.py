"""Image preprocessing and aspect ratio helpers (Pillow).

Preprocessing only keeps request payloads small: the source is auto-rotated by
its EXIF orientation, converted to RGB, downscaled to a bounded long edge and
re-encoded as JPEG.
"""

import io
from dataclasses import dataclass
from typing import Iterable, Optional

from PIL import Image, ImageOps, UnidentifiedImageError

from retouch.services.exceptions import ImageProcessingError

JPEG_QUALITY = 90

# Used when the caller does not pin an aspect ratio
PORTRAIT_DEFAULT = "3:4"
LANDSCAPE_DEFAULT = "4:3"
ORIGINAL = "original"


@dataclass
class PreparedImage:
    """Re-encoded image plus the dimensions of the oriented source."""

    data: bytes
    mime_type: str
    source_width: int
    source_height: int
    width: int
    height: int


def prepare_image(raw: bytes, max_dimension: int, quality: int = JPEG_QUALITY) -> PreparedImage:
    """Orient, downscale and JPEG-encode an image.

    Args:
        raw: Encoded source image bytes
        max_dimension: Bound on the long edge; smaller images are not enlarged
        quality: JPEG quality

    Returns:
        PreparedImage with JPEG bytes and dimensions

    Raises:
        ImageProcessingError: If the bytes are not a decodable image
    """
    try:
        with Image.open(io.BytesIO(raw)) as opened:
            image = ImageOps.exif_transpose(opened)
            image = image.convert("RGB")
    except (UnidentifiedImageError, OSError) as e:
        raise ImageProcessingError(f"Unsupported or corrupt image: {e}") from e

    source_width, source_height = image.size
    image.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)

    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=quality)
    return PreparedImage(
        data=buffer.getvalue(),
        mime_type="image/jpeg",
        source_width=source_width,
        source_height=source_height,
        width=image.width,
        height=image.height,
    )


def parse_ratio(value: str) -> float:
    """Parse ``"W:H"`` into a float ratio.

    Raises:
        ValueError: If the value is not a positive ``W:H`` pair
    """
    try:
        width_text, height_text = value.split(":")
        width, height = float(width_text), float(height_text)
    except ValueError as e:
        raise ValueError(f"Invalid aspect ratio {value!r}, expected W:H") from e
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid aspect ratio {value!r}, sides must be positive")
    return width / height


def resolve_aspect_ratio(requested: Optional[str], width: int, height: int) -> str:
    """Pick the target aspect ratio for a source image.

    - No ratio pinned: portrait sources get 3:4, everything else 4:3
    - ``"original"``: echo the source's raw ``W:H``
    - Anything else is returned unchanged
    """
    if not requested:
        return PORTRAIT_DEFAULT if width < height else LANDSCAPE_DEFAULT
    if requested.strip().lower() == ORIGINAL:
        return f"{width}:{height}"
    return requested.strip()


def snap_aspect_ratio(ratio: str | float, supported: Iterable[str]) -> str:
    """Map a ratio onto the supported member with the smallest absolute difference.

    Examples:
        >>> snap_aspect_ratio(1.78, ["1:1", "4:3", "16:9", "9:16"])
        '16:9'
    """
    target = parse_ratio(ratio) if isinstance(ratio, str) else float(ratio)
    best: Optional[str] = None
    best_diff = float("inf")
    for member in supported:
        diff = abs(target - parse_ratio(member))
        if diff < best_diff:
            best, best_diff = member, diff
    if best is None:
        raise ValueError("No supported aspect ratios given")
    return best
