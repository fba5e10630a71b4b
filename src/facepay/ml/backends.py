"""Embedding backends: neural descriptor, engineered geometry, and hash fallback.

One backend is chosen at startup by ``create_backend``; business logic only
ever sees the ``EmbeddingBackend`` protocol. Every backend is a pure function
of the decoded pixels plus static model state.
"""

from __future__ import annotations

import hashlib
import logging
import math
from typing import TYPE_CHECKING, Protocol

import numpy as np

from facepay.domain import EMBEDDING_DIM, Provenance, as_embedding
from facepay.errors import ModelUnavailable
from facepay.ml.face_detector import RetinaFaceDetector, select_single_face
from facepay.ml.face_recognizer import OnnxFaceRecognizer, descriptor_length
from facepay.ml.model_manager import ModelTask, session_source

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from facepay.config import Settings
    from facepay.domain import Embedding
    from facepay.ml.face_detector import FaceDetector, RawDetection
    from facepay.ml.face_recognizer import FaceRecognizer
    from facepay.ml.model_manager import ModelManager
    from facepay.ml.preprocessing import ImagePreprocessor

logger = logging.getLogger(__name__)


class EmbeddingBackend(Protocol):
    """Strategy turning a decoded RGB image into a fixed-length embedding."""

    @property
    def provenance(self) -> Provenance:
        """Tag stored alongside embeddings produced by this backend."""
        ...

    @property
    def description(self) -> str:
        """Human-readable backend summary for health and logs."""
        ...

    def embed(self, image: NDArray[np.uint8]) -> Embedding:
        """Compute the embedding of the single face in ``image``.

        Raises:
            ExtractionError: If the image does not contain exactly one confident face.
        """
        ...


def fold_to_dim(vector: NDArray[np.float32], dim: int = EMBEDDING_DIM) -> NDArray[np.float64]:
    """Reduce a descriptor to ``dim`` values by averaging contiguous blocks, then L2-normalise."""
    values = np.asarray(vector, dtype=np.float64).ravel()
    if values.size != dim:
        if values.size % dim != 0:
            raise ValueError(f"Cannot fold a {values.size}-d descriptor into {dim} dimensions")
        values = values.reshape(dim, -1).mean(axis=1)
    norm = float(np.linalg.norm(values))
    return values / norm if norm > 0 else values


class NeuralBackend:
    """Detect, align and describe a face with ONNX models."""

    provenance = Provenance.NEURAL

    def __init__(
        self,
        detector: FaceDetector,
        recognizer: FaceRecognizer,
        preprocessor: ImagePreprocessor,
        min_confidence: float,
    ) -> None:
        if recognizer.embedding_dim % EMBEDDING_DIM != 0:
            raise ModelUnavailable(
                f"Face recognition model '{recognizer.model_name}' emits {recognizer.embedding_dim}-d descriptors, "
                f"not a multiple of {EMBEDDING_DIM}"
            )
        self._detector = detector
        self._recognizer = recognizer
        self._preprocessor = preprocessor
        self._min_confidence = min_confidence

    @property
    def description(self) -> str:
        return f"neural ({self._detector.model_name} + {self._recognizer.model_name})"

    def embed(self, image: NDArray[np.uint8]) -> Embedding:
        face = select_single_face(self._detector.detect(image), self._min_confidence)
        crop = self._preprocessor.preprocess_for_recognition(image, face.landmarks)
        descriptor = self._recognizer.get_embeddings(crop[np.newaxis])[0]
        return as_embedding(fold_to_dim(descriptor))


def geometric_features(face: RawDetection, image_shape: tuple[int, ...]) -> list[float]:
    """Engineered face-geometry features, deterministically padded to ``EMBEDDING_DIM``."""
    height, width = image_shape[0], image_shape[1]
    x1, y1, x2, y2 = (float(v) for v in face.bbox)
    x1, x2 = max(0.0, x1), min(float(width), x2)
    y1, y2 = max(0.0, y1), min(float(height), y2)
    box_w = max(x2 - x1, 1e-6)
    box_h = max(y2 - y1, 1e-6)

    x, y = x1 / width, y1 / height
    w, h = box_w / width, box_h / height

    left_eye, right_eye, nose = face.landmarks[0], face.landmarks[1], face.landmarks[2]
    eye_dx = float(right_eye[0] - left_eye[0])
    eye_dy = float(right_eye[1] - left_eye[1])
    roll = math.atan2(eye_dy, eye_dx)
    eye_distance = math.hypot(eye_dx, eye_dy)
    eye_mid_x = float(left_eye[0] + right_eye[0]) / 2
    yaw = (float(nose[0]) - eye_mid_x) / eye_distance if eye_distance > 0 else 0.0

    longest = float(max(width, height))
    features = [
        x,
        y,
        w,
        h,
        float(face.score),
        roll,
        yaw,
        x + w / 2,
        y + h / 2,
        box_w / box_h,
        w * h,
        2 * (w + h),
        math.hypot(w, h),
        box_w / longest,
        box_h / longest,
        math.sin(x * 100),
        math.cos(y * 100),
        math.sin(w * 50),
        math.cos(h * 50),
    ]

    while len(features) < EMBEDDING_DIM:
        index = len(features)
        features.append(math.sin(index * 0.1) * features[index % 10] * 0.1)
    return features[:EMBEDDING_DIM]


class GeometricBackend:
    """Engineered features from the detected face box and landmarks."""

    provenance = Provenance.ENGINEERED

    def __init__(self, detector: FaceDetector, min_confidence: float) -> None:
        self._detector = detector
        self._min_confidence = min_confidence

    @property
    def description(self) -> str:
        return f"geometric ({self._detector.model_name})"

    def embed(self, image: NDArray[np.uint8]) -> Embedding:
        face = select_single_face(self._detector.detect(image), self._min_confidence)
        return as_embedding(geometric_features(face, image.shape))


class HashFallbackBackend:
    """SHA-256 of the pixel buffer spread over 128 values.

    Only identical pixel data matches. Performs no face detection.
    """

    provenance = Provenance.HASH_FALLBACK
    description = "hash fallback (sha256)"

    def embed(self, image: NDArray[np.uint8]) -> Embedding:
        digest = hashlib.sha256()
        digest.update(repr(image.shape).encode())
        digest.update(np.ascontiguousarray(image).tobytes())
        raw = digest.digest()
        return as_embedding(raw[i % len(raw)] / 255.0 for i in range(EMBEDDING_DIM))


def _load_detector(settings: Settings, model_manager: ModelManager, preprocessor: ImagePreprocessor) -> FaceDetector:
    name = settings.face_detection_model
    source = session_source(model_manager, ModelTask.FACE_DETECTION, name)
    try:
        source()
    except Exception as exc:
        raise ModelUnavailable(f"Face detection model '{name}' unavailable: {exc}") from exc
    return RetinaFaceDetector(name, source, preprocessor)


def _load_recognizer(settings: Settings, model_manager: ModelManager) -> FaceRecognizer:
    name = settings.face_recognition_model
    source = session_source(model_manager, ModelTask.FACE_RECOGNITION, name)
    try:
        width = descriptor_length(source(), model_manager.spec(name).output_dim)
    except Exception as exc:
        raise ModelUnavailable(f"Face recognition model '{name}' unavailable: {exc}") from exc
    if width is None:
        raise ModelUnavailable(f"Face recognition model '{name}' declares no descriptor length")
    return OnnxFaceRecognizer(name, source, width)


def create_backend(
    settings: Settings,
    model_manager: ModelManager,
    preprocessor: ImagePreprocessor,
) -> EmbeddingBackend:
    """Pick the embedding backend once, at startup.

    ``auto`` prefers the neural backend and only degrades to the hash fallback
    when ``allow_hash_fallback`` is set. The downgrade is logged.

    Raises:
        ModelUnavailable: If the requested backend cannot be built.
    """
    kind = settings.embedding_backend
    if kind == "hash":
        if not settings.allow_hash_fallback:
            raise ModelUnavailable("Hash embeddings require FACEPAY_ALLOW_HASH_FALLBACK=true")
        logger.warning("Hash fallback embedding backend configured: only identical images will match")
        return HashFallbackBackend()

    if kind == "geometric":
        return GeometricBackend(_load_detector(settings, model_manager, preprocessor), settings.detection_confidence)

    try:
        return NeuralBackend(
            _load_detector(settings, model_manager, preprocessor),
            _load_recognizer(settings, model_manager),
            preprocessor,
            settings.detection_confidence,
        )
    except ModelUnavailable as exc:
        if kind == "auto" and settings.allow_hash_fallback:
            logger.warning("Neural embedding backend unavailable (%s); falling back to hash embeddings", exc)
            return HashFallbackBackend()
        raise
