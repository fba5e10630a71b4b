"""Image preprocessing: decoding, detector input preparation and face alignment.

Decoding applies EXIF orientation and converts to RGB. Alignment warps a face
onto the 112x112 ArcFace template using a similarity transform estimated from
five landmarks (eyes, nose, mouth corners).
"""

from __future__ import annotations

import io
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from facepay.errors import ImageDecodeFailed

if TYPE_CHECKING:
    from numpy.typing import NDArray

MIN_IMAGE_SIDE = 32
RECOGNITION_SIZE = 112

# RetinaFace was trained on BGR input with these channel means subtracted.
_RETINAFACE_MEAN_BGR = np.array([104.0, 117.0, 123.0], dtype=np.float32)

# Reference landmark positions for a 112x112 aligned face.
ARCFACE_TEMPLATE = np.array(
    [
        [38.2946, 51.6963],
        [73.5318, 51.5014],
        [56.0252, 71.7366],
        [41.5493, 92.3655],
        [70.7299, 92.2041],
    ],
    dtype=np.float64,
)


class ImagePreprocessor(Protocol):
    """Protocol for image preprocessing."""

    def decode_image(self, image_bytes: bytes) -> NDArray[np.uint8]:
        """Decode raw image bytes into an RGB uint8 numpy array.

        Raises:
            ImageDecodeFailed: If the image cannot be decoded or violates size limits.
        """
        ...

    def preprocess_for_detection(self, image: NDArray[np.uint8]) -> DetectionInput:
        """Prepare an image for the face detection model."""
        ...

    def preprocess_for_recognition(
        self, image: NDArray[np.uint8], landmarks: NDArray[np.float32]
    ) -> NDArray[np.float32]:
        """Align and crop a face for the recognition model, shape (3, 112, 112)."""
        ...


@dataclass(frozen=True)
class DetectionInput:
    """A letterboxed detector tensor and the factor mapping it back to the source image."""

    tensor: NDArray[np.float32]
    scale: float


class PillowPreprocessor:
    """Pillow/numpy implementation of ``ImagePreprocessor``."""

    def __init__(self, max_image_pixels: int, detection_size: int = 640) -> None:
        self._max_image_pixels = max_image_pixels
        self._detection_size = detection_size

    def decode_image(self, image_bytes: bytes) -> NDArray[np.uint8]:
        if not image_bytes:
            raise ImageDecodeFailed("Empty image payload")
        try:
            with Image.open(io.BytesIO(image_bytes)) as img:
                width, height = img.size
                if width * height > self._max_image_pixels:
                    raise ImageDecodeFailed(f"Image too large ({width}x{height})")
                if min(width, height) < MIN_IMAGE_SIDE:
                    raise ImageDecodeFailed(f"Image too small ({width}x{height})")
                oriented = ImageOps.exif_transpose(img)
                rgb = oriented.convert("RGB")
                return np.asarray(rgb, dtype=np.uint8).copy()
        except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
            raise ImageDecodeFailed(f"Cannot decode image: {exc}") from exc

    def preprocess_for_detection(self, image: NDArray[np.uint8]) -> DetectionInput:
        height, width = image.shape[:2]
        size = self._detection_size
        scale = size / max(height, width)
        new_w = max(1, round(width * scale))
        new_h = max(1, round(height * scale))
        resized = np.asarray(
            Image.fromarray(image).resize((new_w, new_h), Image.Resampling.BILINEAR),
            dtype=np.float32,
        )

        canvas = np.zeros((size, size, 3), dtype=np.float32)
        canvas[:new_h, :new_w] = resized[:, :, ::-1] - _RETINAFACE_MEAN_BGR
        tensor = np.ascontiguousarray(canvas.transpose(2, 0, 1)[np.newaxis])
        return DetectionInput(tensor=tensor, scale=scale)

    def preprocess_for_recognition(
        self, image: NDArray[np.uint8], landmarks: NDArray[np.float32]
    ) -> NDArray[np.float32]:
        forward = estimate_similarity_transform(np.asarray(landmarks, dtype=np.float64), ARCFACE_TEMPLATE)
        inverse = invert_affine(forward)
        aligned = Image.fromarray(image).transform(
            (RECOGNITION_SIZE, RECOGNITION_SIZE),
            Image.Transform.AFFINE,
            data=tuple(inverse.flatten()),
            resample=Image.Resampling.BILINEAR,
        )
        pixels = np.asarray(aligned, dtype=np.float32)
        normalized = (pixels - 127.5) / 127.5
        return np.ascontiguousarray(normalized.transpose(2, 0, 1))


def estimate_similarity_transform(src: NDArray[np.float64], dst: NDArray[np.float64]) -> NDArray[np.float64]:
    """Least-squares similarity transform (Umeyama) mapping ``src`` points onto ``dst``.

    Returns:
        2x3 affine matrix.
    """
    src_mean = src.mean(axis=0)
    dst_mean = dst.mean(axis=0)
    src_c = src - src_mean
    dst_c = dst - dst_mean

    cov = dst_c.T @ src_c / len(src)
    u, sigma, vt = np.linalg.svd(cov)
    d = np.ones(2)
    if np.linalg.det(u) * np.linalg.det(vt) < 0:
        d[-1] = -1.0
    rotation = u @ np.diag(d) @ vt

    src_var = float((src_c**2).sum() / len(src))
    scale = float((sigma * d).sum() / src_var) if src_var > 0 else 1.0

    matrix = np.zeros((2, 3), dtype=np.float64)
    matrix[:, :2] = scale * rotation
    matrix[:, 2] = dst_mean - scale * rotation @ src_mean
    return matrix


def invert_affine(matrix: NDArray[np.float64]) -> NDArray[np.float64]:
    """Invert a 2x3 affine matrix."""
    linear = np.linalg.inv(matrix[:, :2])
    inverse = np.zeros((2, 3), dtype=np.float64)
    inverse[:, :2] = linear
    inverse[:, 2] = -linear @ matrix[:, 2]
    return inverse
