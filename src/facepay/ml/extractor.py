"""Image bytes -> embedding, single-shot and averaged over several samples."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import numpy as np

from facepay.domain import as_embedding
from facepay.errors import ExtractionError, NoUsableSamples

if TYPE_CHECKING:
    from collections.abc import Sequence

    from facepay.domain import Embedding, Provenance
    from facepay.ml.backends import EmbeddingBackend
    from facepay.ml.preprocessing import ImagePreprocessor

logger = logging.getLogger(__name__)


class EmbeddingExtractor:
    """Decodes images and delegates to the selected ``EmbeddingBackend``."""

    def __init__(self, backend: EmbeddingBackend, preprocessor: ImagePreprocessor) -> None:
        self._backend = backend
        self._preprocessor = preprocessor

    @property
    def provenance(self) -> Provenance:
        return self._backend.provenance

    @property
    def description(self) -> str:
        return self._backend.description

    def extract(self, image_bytes: bytes) -> Embedding:
        """Return the embedding of the single face in ``image_bytes``.

        Raises:
            ImageDecodeFailed, NoFaceDetected, LowConfidenceDetection, MultipleFacesDetected
        """
        image = self._preprocessor.decode_image(image_bytes)
        return self._backend.embed(image)

    def extract_average(self, images: Sequence[bytes]) -> Embedding:
        """Element-wise mean of the embeddings of every usable sample.

        Failed samples are logged and skipped.

        Raises:
            NoUsableSamples: If no sample produced an embedding.
        """
        embeddings: list[Embedding] = []
        errors: list[ExtractionError] = []
        for index, image_bytes in enumerate(images):
            try:
                embeddings.append(self.extract(image_bytes))
            except ExtractionError as exc:
                logger.info("Discarding sample %d/%d: %s", index + 1, len(images), exc)
                errors.append(exc)

        if not embeddings:
            raise NoUsableSamples(errors)

        logger.info("Averaging %d of %d samples", len(embeddings), len(images))
        mean = np.mean(np.asarray(embeddings, dtype=np.float64), axis=0)
        return as_embedding(mean)
