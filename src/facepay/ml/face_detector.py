"""Face detection.

Implementations: RetinaFace (ResNet34, MobileNetV2) exported to ONNX with the
standard ``loc``/``conf``/``landms`` heads.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

from facepay.errors import LowConfidenceDetection, MultipleFacesDetected, NoFaceDetected

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

    from facepay.ml.preprocessing import ImagePreprocessor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RawDetection:
    """Face detection result in pixel space of the original image."""

    bbox: NDArray[np.float32]
    score: float
    landmarks: NDArray[np.float32]


class FaceDetector(Protocol):
    """Protocol for face detection models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def detect(self, image: NDArray[np.uint8]) -> list[RawDetection]:
        """Detect faces in an image.

        Args:
            image: HxWx3 RGB uint8 array.

        Returns:
            Detections sorted by score (descending).
        """
        ...


def select_single_face(detections: Sequence[RawDetection], min_confidence: float) -> RawDetection:
    """Return the one face at or above ``min_confidence``.

    Raises:
        NoFaceDetected: No detections at all.
        LowConfidenceDetection: Faces exist but none reaches the threshold.
        MultipleFacesDetected: More than one face reaches the threshold.
    """
    if not detections:
        raise NoFaceDetected("No face detected in the image")
    confident = [d for d in detections if d.score >= min_confidence]
    if not confident:
        raise LowConfidenceDetection(
            "Face detection confidence too low. Ensure good lighting and clear face visibility"
        )
    if len(confident) > 1:
        raise MultipleFacesDetected("Multiple faces detected. Ensure only one face is visible")
    return confident[0]


# ---------------------------------------------------------------------------
# RetinaFace
# ---------------------------------------------------------------------------

_MIN_SIZES = ((16, 32), (64, 128), (256, 512))
_STEPS = (8, 16, 32)
_VARIANCE = (0.1, 0.2)


def retinaface_priors(height: int, width: int) -> NDArray[np.float32]:
    """Anchor boxes (cx, cy, w, h), normalised to the input size."""
    anchors: list[list[float]] = []
    for step, min_sizes in zip(_STEPS, _MIN_SIZES, strict=True):
        rows = math.ceil(height / step)
        cols = math.ceil(width / step)
        for i in range(rows):
            for j in range(cols):
                cx = (j + 0.5) * step / width
                cy = (i + 0.5) * step / height
                for min_size in min_sizes:
                    anchors.append([cx, cy, min_size / width, min_size / height])
    return np.asarray(anchors, dtype=np.float32)


def non_max_suppression(boxes: NDArray[np.float32], scores: NDArray[np.float32], iou_threshold: float) -> list[int]:
    """Greedy NMS. Returns kept indices ordered by descending score."""
    x1, y1, x2, y2 = boxes[:, 0], boxes[:, 1], boxes[:, 2], boxes[:, 3]
    areas = np.maximum(0.0, x2 - x1) * np.maximum(0.0, y2 - y1)
    order = np.argsort(-scores, kind="stable")
    keep: list[int] = []
    while order.size > 0:
        i = int(order[0])
        keep.append(i)
        rest = order[1:]
        xx1 = np.maximum(x1[i], x1[rest])
        yy1 = np.maximum(y1[i], y1[rest])
        xx2 = np.minimum(x2[i], x2[rest])
        yy2 = np.minimum(y2[i], y2[rest])
        inter = np.maximum(0.0, xx2 - xx1) * np.maximum(0.0, yy2 - yy1)
        union = areas[i] + areas[rest] - inter
        iou = np.where(union > 0, inter / np.maximum(union, 1e-12), 0.0)
        order = rest[iou <= iou_threshold]
    return keep


class RetinaFaceDetector:
    """RetinaFace ONNX detector.

    Reports every face above ``min_score`` so that callers can distinguish
    "no face" from "face but low confidence". ``session`` is called on every
    detection so the model manager may unload the model between calls.
    """

    def __init__(
        self,
        name: str,
        session: Callable[[], InferenceSession],
        preprocessor: ImagePreprocessor,
        *,
        min_score: float = 0.5,
        nms_threshold: float = 0.4,
        max_detections: int = 20,
    ) -> None:
        self._name = name
        self._session = session
        self._preprocessor = preprocessor
        self._min_score = min_score
        self._nms_threshold = nms_threshold
        self._max_detections = max_detections
        self._priors_cache: dict[tuple[int, int], NDArray[np.float32]] = {}

    @property
    def model_name(self) -> str:
        return self._name

    def detect(self, image: NDArray[np.uint8]) -> list[RawDetection]:
        prepared = self._preprocessor.preprocess_for_detection(image)
        _, _, in_h, in_w = prepared.tensor.shape
        session = self._session()
        input_name = session.get_inputs()[0].name
        loc, conf, landms = session.run(None, {input_name: prepared.tensor})

        priors = self._priors(in_h, in_w)
        scores = conf[0][:, 1]
        mask = scores >= self._min_score
        if not mask.any():
            return []

        boxes = self._decode_boxes(loc[0][mask], priors[mask])
        points = self._decode_landmarks(landms[0][mask], priors[mask])
        scores = scores[mask]

        size = np.array([in_w, in_h], dtype=np.float32)
        boxes = boxes * np.tile(size, 2) / prepared.scale
        points = points * np.tile(size, 5) / prepared.scale

        keep = non_max_suppression(boxes, scores, self._nms_threshold)[: self._max_detections]
        detections = [
            RawDetection(
                bbox=boxes[i].astype(np.float32),
                score=float(scores[i]),
                landmarks=points[i].reshape(5, 2).astype(np.float32),
            )
            for i in keep
        ]
        logger.debug("Detected %d face(s) with %s", len(detections), self._name)
        return detections

    def _priors(self, height: int, width: int) -> NDArray[np.float32]:
        key = (height, width)
        cached = self._priors_cache.get(key)
        if cached is None:
            cached = retinaface_priors(height, width)
            self._priors_cache[key] = cached
        return cached

    @staticmethod
    def _decode_boxes(loc: NDArray[np.float32], priors: NDArray[np.float32]) -> NDArray[np.float32]:
        centers = priors[:, :2] + loc[:, :2] * _VARIANCE[0] * priors[:, 2:]
        sizes = priors[:, 2:] * np.exp(loc[:, 2:] * _VARIANCE[1])
        return np.concatenate([centers - sizes / 2, centers + sizes / 2], axis=1)

    @staticmethod
    def _decode_landmarks(landms: NDArray[np.float32], priors: NDArray[np.float32]) -> NDArray[np.float32]:
        points = [priors[:, :2] + landms[:, 2 * k : 2 * k + 2] * _VARIANCE[0] * priors[:, 2:] for k in range(5)]
        return np.concatenate(points, axis=1)
