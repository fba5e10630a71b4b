"""Face recognition (embedding) models.

Implementations: AuraFace v1 (default), ArcFace w600k_r50 (opt-in).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Callable

    from numpy.typing import NDArray
    from onnxruntime import InferenceSession


class FaceRecognizer(Protocol):
    """Protocol for face recognition (embedding) models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    @property
    def embedding_dim(self) -> int:
        """Length of the descriptors ``get_embeddings`` returns."""
        ...

    def get_embeddings(self, face_crops: NDArray[np.float32]) -> NDArray[np.float32]:
        """Generate embeddings for a batch of aligned face crops.

        Args:
            face_crops: Batch of preprocessed face images, shape (N, 3, 112, 112).

        Returns:
            L2-normalized embedding vectors, shape (N, embedding_dim).
        """
        ...


def l2_normalize(vectors: NDArray[np.float32]) -> NDArray[np.float32]:
    norms = np.linalg.norm(vectors, axis=-1, keepdims=True)
    return (vectors / np.maximum(norms, 1e-12)).astype(np.float32)


def descriptor_length(session: InferenceSession, declared: int | None) -> int | None:
    """Output width read from the graph, or ``declared`` when the graph leaves it symbolic."""
    width = session.get_outputs()[0].shape[-1]
    return width if isinstance(width, int) else declared


class OnnxFaceRecognizer:
    """ArcFace-family ONNX recognizer.

    ``session`` is called per batch so the model may be unloaded while idle.
    """

    def __init__(self, name: str, session: Callable[[], InferenceSession], embedding_dim: int) -> None:
        self._name = name
        self._session = session
        self._embedding_dim = embedding_dim

    @property
    def model_name(self) -> str:
        return self._name

    @property
    def embedding_dim(self) -> int:
        return self._embedding_dim

    def get_embeddings(self, face_crops: NDArray[np.float32]) -> NDArray[np.float32]:
        session = self._session()
        outputs = session.run(None, {session.get_inputs()[0].name: face_crops.astype(np.float32)})
        return l2_normalize(np.asarray(outputs[0], dtype=np.float32))
