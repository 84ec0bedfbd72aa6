"""Region cropping and OpenCV preprocessing for stat-table OCR.

Turns uploaded screenshot bytes plus annotated rectangles into binarized
sub-images ready for the recognizer. Every function here is a pure function
of pixel data — identical input always yields a byte-identical sub-image.
The only disk access is the opt-in ``save_debug_crop()``.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Sequence

import cv2
import numpy as np

from config import (
    BINARIZE_THRESHOLD,
    CONTRAST_LOWER_PERCENTILE,
    CONTRAST_UPPER_PERCENTILE,
    DEBUG_DIR,
    DEFAULT_REGION_HEIGHT_RATIO,
    DEFAULT_REGION_ID,
    DEFAULT_REGION_LEFT_RATIO,
    DEFAULT_REGION_TOP_RATIO,
    DEFAULT_REGION_WIDTH_RATIO,
    MIN_REGION_SIZE,
    SHARPEN_AMOUNT,
    SHARPEN_DIAMETER,
    SHARPEN_SIGMA_COLOR,
    SHARPEN_SIGMA_SPACE,
)
from exceptions import InvalidImageError, InvalidRegionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Region:
    """A pixel rectangle in source-image coordinates."""

    x: int
    y: int
    width: int
    height: int
    region_id: str = DEFAULT_REGION_ID

    @classmethod
    def from_dict(cls, data: dict, region_id: str = DEFAULT_REGION_ID) -> "Region":
        """Build a region from ``{"x", "y", "width", "height"}``.

        Fractional coordinates are floored, matching how annotators' canvas
        coordinates map onto pixels.
        """
        return cls(
            x=int(np.floor(float(data["x"]))),
            y=int(np.floor(float(data["y"]))),
            width=int(np.floor(float(data["width"]))),
            height=int(np.floor(float(data["height"]))),
            region_id=str(data.get("id", data.get("region_id", region_id))),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.region_id,
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
        }


def decode_image(data: bytes) -> np.ndarray:
    """Decode uploaded image bytes into a BGR numpy array.

    Args:
        data: Raw PNG/JPEG/etc. bytes.

    Returns:
        A ``uint8`` array of shape ``(H, W, 3)``.

    Raises:
        InvalidImageError: If *data* is empty or not a decodable image.
    """
    if not data:
        raise InvalidImageError("no image data")
    buffer = np.frombuffer(data, dtype=np.uint8)
    image = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    if image is None:
        raise InvalidImageError("bytes are not a decodable image")
    logger.debug("Decoded image: shape=%s", image.shape)
    return image


def default_region(shape: tuple[int, ...]) -> Region:
    """Return the fallback region: the right-hand stat column of a screenshot.

    Args:
        shape: The source image shape ``(H, W[, C])``.
    """
    height, width = shape[:2]
    return Region(
        x=int(width * DEFAULT_REGION_LEFT_RATIO),
        y=int(height * DEFAULT_REGION_TOP_RATIO),
        width=int(width * DEFAULT_REGION_WIDTH_RATIO),
        height=int(height * DEFAULT_REGION_HEIGHT_RATIO),
        region_id=DEFAULT_REGION_ID,
    )


def validate_region(region: Region, shape: tuple[int, ...]) -> None:
    """Check that *region* is usable on an image of the given shape.

    Raises:
        InvalidRegionError: If the origin is negative, the width or height is
            at or below ``MIN_REGION_SIZE``, or the rectangle extends past the
            image bounds.
    """
    img_h, img_w = shape[:2]
    if region.x < 0 or region.y < 0:
        raise InvalidRegionError(
            region.region_id,
            f"origin ({region.x}, {region.y}) must be non-negative",
        )
    if region.width <= MIN_REGION_SIZE or region.height <= MIN_REGION_SIZE:
        raise InvalidRegionError(
            region.region_id,
            f"size {region.width}x{region.height} is too small for OCR "
            f"(must exceed {MIN_REGION_SIZE}px)",
        )
    if region.x + region.width > img_w or region.y + region.height > img_h:
        raise InvalidRegionError(
            region.region_id,
            f"({region.x}, {region.y}, {region.width}, {region.height}) "
            f"exceeds image bounds ({img_w}x{img_h})",
        )


def to_grayscale(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
        return image.copy()
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)


def normalize_contrast(gray: np.ndarray) -> np.ndarray:
    """Stretch *gray* so the clipped percentile range spans 0-255.

    Corrects for brightness and exposure differences between capture
    sources. A flat image (no spread between the percentiles) is returned
    unchanged.
    """
    low, high = np.percentile(
        gray, (CONTRAST_LOWER_PERCENTILE, CONTRAST_UPPER_PERCENTILE),
    )
    if high <= low:
        return gray.copy()
    stretched = (gray.astype(np.float32) - low) * (255.0 / (high - low))
    return np.clip(stretched, 0, 255).astype(np.uint8)


def sharpen(gray: np.ndarray) -> np.ndarray:
    """Unsharp mask over a bilateral-filtered base so edges stay crisp."""
    base = cv2.bilateralFilter(
        gray, SHARPEN_DIAMETER, SHARPEN_SIGMA_COLOR, SHARPEN_SIGMA_SPACE,
    )
    return cv2.addWeighted(gray, 1.0 + SHARPEN_AMOUNT, base, -SHARPEN_AMOUNT, 0)


def binarize(gray: np.ndarray) -> np.ndarray:
    _, binary = cv2.threshold(gray, BINARIZE_THRESHOLD, 255, cv2.THRESH_BINARY)
    return binary


def preprocess(crop: np.ndarray) -> np.ndarray:
    """Run the fixed preprocessing chain on a cropped region.

    grayscale -> percentile contrast stretch -> edge-preserving sharpen ->
    fixed global threshold.

    Args:
        crop: A BGR, BGRA or single-channel ``uint8`` array.

    Returns:
        A single-channel ``uint8`` array containing only 0 and 255.
    """
    gray = to_grayscale(crop)
    gray = normalize_contrast(gray)
    gray = sharpen(gray)
    return binarize(gray)


def extract_region(image: np.ndarray, region: Region) -> np.ndarray:
    """Validate, crop and preprocess a single region.

    Raises:
        InvalidRegionError: If the region fails ``validate_region()``.
    """
    validate_region(region, image.shape)
    crop = image[region.y : region.y + region.height, region.x : region.x + region.width]
    sub_image = preprocess(crop)
    logger.debug(
        "Extracted region '%s' (%d, %d, %d, %d)",
        region.region_id, region.x, region.y, region.width, region.height,
    )
    return sub_image


def extract(image: np.ndarray, regions: Sequence[Region]) -> list[np.ndarray]:
    """Crop and preprocess every region, preserving input order.

    Args:
        image: The decoded source image.
        regions: Rectangles in source-image pixel coordinates.

    Returns:
        One preprocessed sub-image per region, in the same order.

    Raises:
        InvalidRegionError: On the first region that fails validation.
    """
    return [extract_region(image, region) for region in regions]


def save_debug_crop(sub_image: np.ndarray, context: str) -> Path:
    """Write a preprocessed sub-image to the debug directory for inspection.

    Args:
        sub_image: The image to save.
        context: A short label included in the filename (e.g. the region id).

    Returns:
        The path to the saved PNG file.
    """
    DEBUG_DIR.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    filepath = DEBUG_DIR / f"{timestamp}_{context}.png"

    cv2.imwrite(str(filepath), sub_image)
    logger.info("Debug crop saved: %s", filepath)
    return filepath
